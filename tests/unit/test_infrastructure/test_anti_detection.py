"""Unit tests for the anti-detection engine."""

from unittest.mock import AsyncMock

import pytest

from conftest import make_page
from crawlengine.browser_config import DEFAULT_HEADERS, USER_AGENTS, StealthOptions
from crawlengine.infrastructure.anti_detection import (
    BASE_STEPS,
    ENHANCED_STEPS,
    AntiDetectionEngine,
    StealthStep,
    build_analytics_cookies,
    verify_stealth,
)

BASE_ORDER = ["user_agent", "automation", "webgl", "canvas", "hardware", "headers", "viewport"]
ENHANCED_ORDER = ["timing", "screen", "webrtc", "audio", "cookies", "viewport_jitter"]


class TestStealthOptions:
    """Tests for StealthOptions."""

    def test_fixed_user_agent_wins(self):
        """Test that a fixed user agent overrides rotation."""
        options = StealthOptions(user_agent="Custom/1.0")
        assert options.get_user_agent() == "Custom/1.0"

    def test_random_user_agent_from_pool(self):
        """Test that user agents rotate through the pool."""
        assert StealthOptions().get_user_agent() in USER_AGENTS

    def test_resolved_pins_user_agent(self):
        """Test that resolve picks one user agent for the whole page."""
        resolved = StealthOptions().resolved()

        assert resolved.user_agent in USER_AGENTS
        assert all(resolved.get_user_agent() == resolved.user_agent for _ in range(10))


class TestAntiDetectionEngine:
    """Tests for AntiDetectionEngine."""

    @pytest.fixture
    def engine(self):
        return AntiDetectionEngine(StealthOptions(user_agent="TestAgent/1.0"))

    def test_step_order(self):
        """Test the fixed order of the base and enhanced steps."""
        assert [s.name for s in BASE_STEPS] == BASE_ORDER
        assert [s.name for s in ENHANCED_STEPS] == ENHANCED_ORDER

    def test_context_options(self, engine):
        """Test that context options agree with the page-level spoofing."""
        context = engine.context_options()

        assert context["user_agent"] == "TestAgent/1.0"
        assert context["viewport"] == {"width": 1920, "height": 1080}
        assert context["extra_http_headers"] == DEFAULT_HEADERS
        assert context["ignore_https_errors"] is True

    def test_context_options_without_normalization(self):
        """Test that disabled toggles leave viewport and headers out."""
        engine = AntiDetectionEngine(StealthOptions(normalize_viewport=False, normalize_headers=False))

        context = engine.context_options()

        assert "viewport" not in context
        assert "extra_http_headers" not in context

    @pytest.mark.asyncio
    async def test_apply_runs_base_steps(self, engine):
        """Test that all base steps run in order."""
        page = make_page()

        results = await engine.apply(page)

        assert [r.name for r in results] == BASE_ORDER
        assert all(r.ok and not r.skipped for r in results)
        # user agent, automation, webgl, canvas, hardware
        assert page.add_init_script.await_count == 5
        headers = page.set_extra_http_headers.call_args.args[0]
        assert headers["User-Agent"] == "TestAgent/1.0"
        page.set_viewport_size.assert_awaited_once_with({"width": 1920, "height": 1080})

    @pytest.mark.asyncio
    async def test_user_agent_injected(self, engine):
        """Test that the fixed user agent reaches the init script."""
        page = make_page()

        await engine.apply(page)

        first_script = page.add_init_script.call_args_list[0].args[0]
        assert '"TestAgent/1.0"' in first_script

    @pytest.mark.asyncio
    async def test_toggles_skip_steps(self):
        """Test that disabled toggles skip their step."""
        engine = AntiDetectionEngine(StealthOptions(webgl_spoofing=False, canvas_noise=False))
        page = make_page()

        results = {r.name: r for r in await engine.apply(page)}

        assert results["webgl"].skipped
        assert results["canvas"].skipped
        assert not results["automation"].skipped
        assert page.add_init_script.await_count == 3

    @pytest.mark.asyncio
    async def test_failing_step_does_not_stop_the_rest(self, engine):
        """Test that one failing step is logged and the others still run."""
        page = make_page()
        page.set_extra_http_headers = AsyncMock(side_effect=RuntimeError("page closed"))

        results = await engine.apply(page)

        by_name = {r.name: r for r in results}
        assert by_name["headers"].ok is False
        assert by_name["headers"].error == "page closed"
        assert by_name["viewport"].ok is True
        page.set_viewport_size.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_custom_steps(self):
        """Test that steps are pluggable."""
        calls = []

        async def first(page, options):
            calls.append("first")

        async def second(page, options):
            calls.append("second")

        engine = AntiDetectionEngine(
            base_steps=[StealthStep("first", first), StealthStep("second", second)],
            enhanced_steps=[],
        )

        await engine.apply(make_page())

        assert calls == ["first", "second"]

    @pytest.mark.asyncio
    async def test_apply_enhanced_includes_base(self, engine):
        """Test that enhanced mode runs the base steps first."""
        page = make_page()

        results = await engine.apply_enhanced(page, url="https://example.com/page")

        assert [r.name for r in results] == BASE_ORDER + ENHANCED_ORDER
        assert all(r.ok for r in results)

    @pytest.mark.asyncio
    async def test_enhanced_timing_replaces_date_constructor(self, engine):
        """Test that clock jitter covers new Date() and Date(), not just Date.now()."""
        page = make_page()

        await engine.apply_enhanced(page)

        scripts = [c.args[0] for c in page.add_init_script.call_args_list]
        timing = next(s for s in scripts if "maxJitter" in s)
        assert "const maxJitter = 100;" in timing
        assert "window.Date = JitteredDate;" in timing
        assert "JitteredDate.prototype = RealDate.prototype;" in timing
        assert "new RealDate(jitteredNow())" in timing
        assert "JitteredDate.now = jitteredNow;" in timing

    @pytest.mark.asyncio
    async def test_enhanced_seeds_cookies_for_url(self, engine):
        """Test that analytics cookies are scoped to the target URL."""
        page = make_page()

        await engine.apply_enhanced(page, url="https://example.com/page")

        cookies = page.context.add_cookies.call_args.args[0]
        assert {c["name"] for c in cookies} == {"_ga", "_gid", "visitor_id"}
        assert all(c["url"] == "https://example.com/page" for c in cookies)

    @pytest.mark.asyncio
    async def test_enhanced_without_url_skips_cookies(self, engine):
        """Test that no cookies are seeded without a target URL."""
        page = make_page()

        await engine.apply_enhanced(page)

        page.context.add_cookies.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_engine_options_not_mutated(self, engine):
        """Test that the cookie URL does not leak into the shared options."""
        await engine.apply_enhanced(make_page(), url="https://example.com/")

        assert engine.options.cookie_url is None


class TestHelpers:
    """Tests for module helpers."""

    def test_build_analytics_cookies(self):
        cookies = build_analytics_cookies("https://example.com/")

        assert len(cookies) == 3
        assert cookies[0]["value"].startswith("GA1.2.")

    @pytest.mark.asyncio
    async def test_verify_stealth_all_passed(self):
        """Test verification on a well-masked page."""
        page = make_page()
        page.evaluate = AsyncMock(return_value=True)

        results = await verify_stealth(page)

        assert results["all_passed"] is True
        assert results["webdriver_hidden"] is True

    @pytest.mark.asyncio
    async def test_verify_stealth_reports_failures(self):
        """Test that failed and erroring checks are reported."""
        page = make_page()
        page.evaluate = AsyncMock(side_effect=[False, True, RuntimeError("detached"), True])

        results = await verify_stealth(page)

        assert results["all_passed"] is False
        assert results["webdriver_hidden"] is False
        assert results["chrome_runtime_exists"].startswith("Error:")
