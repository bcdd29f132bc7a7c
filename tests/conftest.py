"""Shared fakes standing in for Playwright browsers, contexts and pages."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from crawlengine.config import EngineConfig

DEFAULT_HTML = """
<html lang="en">
<head>
    <title>Example Domain</title>
    <meta name="description" content="An example page">
</head>
<body>
    <h1>Example</h1>
    <p>Some text.</p>
    <a href="/about">About</a>
</body>
</html>
"""


def make_page(goto=None, html: str = DEFAULT_HTML):
    """Build a mock Playwright page.

    Args:
        goto: Optional async callable invoked with the URL on navigation.
            Raise from it to simulate navigation failures.
        html: Content returned by ``page.content()``
    """
    page = MagicMock()
    page.url = "about:blank"
    page.viewport_size = {"width": 1920, "height": 1080}

    async def _goto(url, **kwargs):
        if goto is not None:
            await goto(url)
        page.url = url

    page.goto = AsyncMock(side_effect=_goto)
    page.add_init_script = AsyncMock()
    page.set_extra_http_headers = AsyncMock()
    page.set_viewport_size = AsyncMock()
    page.route = AsyncMock()
    page.wait_for_selector = AsyncMock()
    page.evaluate = AsyncMock(return_value=[])
    page.content = AsyncMock(return_value=html)
    page.screenshot = AsyncMock(return_value=b"\xff\xd8jpeg")
    page.mouse.move = AsyncMock()
    page.mouse.click = AsyncMock()
    page.context.add_cookies = AsyncMock()
    return page


class FakeContext:
    def __init__(self, browser, options, page):
        self.browser = browser
        self.options = options
        self.page = page
        self.closed = False

    async def new_page(self):
        return self.page

    async def close(self):
        self.closed = True


class FakeBrowser:
    def __init__(self, page_factory=make_page):
        self.page_factory = page_factory
        self.connected = True
        self.closed = False
        self.contexts: list[FakeContext] = []

    def is_connected(self):
        return self.connected

    async def new_context(self, **options):
        context = FakeContext(self, options, self.page_factory())
        self.contexts.append(context)
        return context

    async def close(self):
        self.closed = True
        self.connected = False

    @property
    def open_contexts(self) -> int:
        return sum(1 for c in self.contexts if not c.closed)


class FakeLauncher:
    """Async browser factory recording every launched browser."""

    def __init__(self, page_factory=make_page):
        self.page_factory = page_factory
        self.browsers: list[FakeBrowser] = []

    async def __call__(self):
        browser = FakeBrowser(self.page_factory)
        self.browsers.append(browser)
        return browser


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest.fixture
def fast_config():
    """Engine config with no waiting anywhere."""
    return EngineConfig(
        poll_interval_seconds=0.01,
        acquire_timeout_seconds=5.0,
        retry_initial_delay_ms=0,
        retry_max_delay_ms=0,
        human_min_delay_ms=0,
        human_max_delay_ms=0,
        human_scroll_delay_ms=0,
    )
