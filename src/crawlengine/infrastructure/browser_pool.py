"""
Browser Session Pool Management.

This module manages a bounded pool of headless browser sessions shared by
every running crawl job.

- Sessions are launched lazily, up to ``max_sessions``
- Each session hosts at most ``max_pages_per_session`` open pages, one
  isolated browser context per page
- Callers lease a session for exactly one URL and release it afterwards
- Dead sessions are discovered lazily, by the liveness probe that runs at
  the start of every ``acquire``; there is no background watchdog
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

try:
    import resource
except ImportError:  # Not available on Windows
    resource = None

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Lease state of a browser session."""
    FREE = "free"
    LEASED = "leased"


@dataclass
class PoolHealth:
    """Result of one pool health check."""
    timestamp: datetime
    success: bool
    response_time_ms: float = 0.0
    active_sessions: int = 0
    active_pages: int = 0
    peak_memory_kb: int = 0
    degraded: bool = False
    error: Optional[str] = None

    @property
    def healthy(self) -> bool:
        return self.success and not self.degraded

    def to_dict(self) -> dict:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        data["healthy"] = self.healthy
        return data


@dataclass
class PoolStatus:
    """Current status of the session pool."""
    max_sessions: int
    total_sessions: int
    leased: int
    free: int
    open_pages: int
    health: Optional[PoolHealth] = None

    def to_dict(self) -> dict:
        return {
            "max_sessions": self.max_sessions,
            "total_sessions": self.total_sessions,
            "leased": self.leased,
            "free": self.free,
            "open_pages": self.open_pages,
            "health": self.health.to_dict() if self.health else None,
        }


@dataclass
class _OpenPage:
    context: Any
    page: Any


class BrowserSession:
    """
    One live browser process, leased to a single caller at a time.

    Pages are opened through ``new_page`` so the session can enforce its
    page cap and close everything it opened on release.
    """

    def __init__(self, handle: int, browser: Any, max_pages: int = 10):
        self.handle = handle
        self.browser = browser
        self.max_pages = max_pages
        self.state = SessionState.FREE
        self.active_proxy: Optional[str] = None
        self.proxy_settings: Optional[dict] = None
        self.created_at = datetime.now()
        self.last_used: Optional[datetime] = None
        self._pages: list[_OpenPage] = []

    @property
    def open_page_count(self) -> int:
        return len(self._pages)

    @property
    def is_leased(self) -> bool:
        return self.state == SessionState.LEASED

    @property
    def has_capacity(self) -> bool:
        return self.open_page_count < self.max_pages

    async def new_page(self, **context_options) -> Any:
        """
        Open a page in a fresh browser context on this session.

        The session's proxy settings, if a proxy was applied, are passed to
        the new context.

        Args:
            **context_options: Options for ``browser.new_context`` (viewport,
                user_agent, extra_http_headers, ...)

        Returns:
            The new Playwright page
        """
        if not self.has_capacity:
            raise RuntimeError(
                f"Session {self.handle} already has {self.open_page_count} open pages "
                f"(limit {self.max_pages})"
            )

        options = dict(context_options)
        if self.proxy_settings:
            options["proxy"] = self.proxy_settings

        context = await self.browser.new_context(**options)
        try:
            page = await context.new_page()
        except Exception:
            await context.close()
            raise

        self._pages.append(_OpenPage(context=context, page=page))
        return page

    async def close_page(self, page: Any) -> None:
        """Close one page opened on this session, with its context."""
        for entry in list(self._pages):
            if entry.page is page:
                self._pages.remove(entry)
                await self._close_entry(entry)
                return

    async def close_pages(self) -> None:
        """Close every page opened on this session."""
        entries, self._pages = self._pages, []
        for entry in entries:
            await self._close_entry(entry)

    async def _close_entry(self, entry: _OpenPage) -> None:
        try:
            await entry.context.close()
        except Exception as e:
            logger.debug(f"Error closing page on session {self.handle}: {e}")

    async def probe(self) -> bool:
        """Liveness check: whether the browser process is still connected."""
        try:
            return bool(self.browser.is_connected())
        except Exception as e:
            logger.debug(f"Liveness probe failed for session {self.handle}: {e}")
            return False

    async def close(self) -> None:
        """Close all pages and the browser process."""
        await self.close_pages()
        try:
            await self.browser.close()
        except Exception as e:
            logger.warning(f"Error closing browser for session {self.handle}: {e}")


BrowserLauncher = Callable[[], Awaitable[Any]]


class BrowserSessionPool:
    """
    Bounded pool of browser sessions.

    Usage:
        async with BrowserSessionPool(max_sessions=5) as pool:
            async with pool.lease() as session:
                page = await session.new_page()
                await page.goto(url)

    The pool owns every session. Callers hold a session only between one
    ``acquire`` and the matching ``release``.
    """

    HEALTH_CHECK_URL = "about:blank"

    def __init__(
        self,
        max_sessions: int = 5,
        max_pages_per_session: int = 10,
        poll_interval: float = 1.0,
        headless: bool = True,
        launch_args: Optional[list[str]] = None,
        launcher: Optional[BrowserLauncher] = None,
        health_check_timeout_ms: int = 5000,
        degraded_response_ms: int = 5000,
    ):
        """
        Initialize the session pool.

        Args:
            max_sessions: Maximum number of live sessions
            max_pages_per_session: Maximum open pages per session
            poll_interval: Seconds between retries while the pool is at capacity
            headless: Run browsers in headless mode
            launch_args: Extra chromium command line arguments
            launcher: Async callable returning a new browser. Defaults to
                launching chromium through Playwright.
            health_check_timeout_ms: Navigation timeout of the health check
            degraded_response_ms: Health check response time above which the
                pool is reported degraded
        """
        if max_sessions < 1:
            raise ValueError("max_sessions must be at least 1")
        if max_pages_per_session < 1:
            raise ValueError("max_pages_per_session must be at least 1")

        self.max_sessions = max_sessions
        self.max_pages_per_session = max_pages_per_session
        self.poll_interval = poll_interval
        self.headless = headless
        self.launch_args = list(launch_args or [])
        self.health_check_timeout_ms = health_check_timeout_ms
        self.degraded_response_ms = degraded_response_ms

        self._launcher = launcher
        self._playwright = None
        self._sessions: dict[int, BrowserSession] = {}  # handle -> session
        self._next_handle = 0
        self._lock = asyncio.Lock()
        self._latest_health: Optional[PoolHealth] = None
        self._closed = False

    @classmethod
    def from_config(cls, config, launcher: Optional[BrowserLauncher] = None) -> "BrowserSessionPool":
        """Create a pool from an EngineConfig."""
        return cls(
            max_sessions=config.max_sessions,
            max_pages_per_session=config.max_pages_per_session,
            poll_interval=config.poll_interval_seconds,
            headless=config.headless,
            launch_args=config.launch_args,
            launcher=launcher,
            health_check_timeout_ms=config.health_check_timeout_ms,
            degraded_response_ms=config.degraded_response_ms,
        )

    async def __aenter__(self) -> "BrowserSessionPool":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.shutdown()

    async def _launch_browser(self) -> Any:
        if self._launcher is not None:
            return await self._launcher()

        if self._playwright is None:
            try:
                from playwright.async_api import async_playwright
            except ImportError:
                raise ImportError(
                    "playwright package not installed. "
                    "Install with: pip install playwright && playwright install chromium"
                )
            self._playwright = await async_playwright().start()

        return await self._playwright.chromium.launch(
            headless=self.headless,
            args=self.launch_args,
        )

    async def _create_session(self) -> BrowserSession:
        browser = await self._launch_browser()

        handle = self._next_handle
        self._next_handle += 1

        session = BrowserSession(handle, browser, max_pages=self.max_pages_per_session)
        self._sessions[handle] = session
        logger.info(f"Launched browser session {handle} ({len(self._sessions)}/{self.max_sessions})")
        return session

    async def _evict_dead_sessions(self) -> None:
        for handle, session in list(self._sessions.items()):
            if await session.probe():
                continue
            logger.warning(f"Session {handle} failed liveness probe, evicting")
            self._sessions.pop(handle, None)
            await session.close()

    def _find_free_session(self) -> Optional[BrowserSession]:
        for session in self._sessions.values():
            if not session.is_leased and session.has_capacity:
                return session
        return None

    async def acquire(self) -> BrowserSession:
        """
        Lease a browser session.

        Probes every tracked session and evicts dead ones, then returns a
        free session under its page cap, launching a new one while the pool
        is below ``max_sessions``. At capacity the caller waits, polling
        every ``poll_interval`` seconds. The pool imposes no upper bound on
        the wait; wrap the call in ``asyncio.wait_for`` to apply one.

        Returns:
            A leased BrowserSession
        """
        waited = False
        while True:
            async with self._lock:
                if self._closed:
                    raise RuntimeError("Browser pool has been shut down")

                await self._evict_dead_sessions()

                session = self._find_free_session()
                if session is None and len(self._sessions) < self.max_sessions:
                    session = await self._create_session()

                if session is not None:
                    session.state = SessionState.LEASED
                    session.last_used = datetime.now()
                    logger.debug(f"Leased session {session.handle}")
                    return session

            if not waited:
                logger.debug(f"Pool at capacity ({self.max_sessions} sessions), waiting")
                waited = True
            await asyncio.sleep(self.poll_interval)

    async def release(self, session: BrowserSession) -> None:
        """
        Return a session to the pool.

        Closes every page opened on the session and clears its proxy tag.
        The browser itself stays up. Releasing a session with no open pages
        only marks it free.
        """
        await session.close_pages()
        session.active_proxy = None
        session.proxy_settings = None
        session.state = SessionState.FREE
        session.last_used = datetime.now()

        if session.handle not in self._sessions:
            logger.debug(f"Released session {session.handle} is no longer tracked")
            return
        logger.debug(f"Released session {session.handle}")

    async def discard(self, session: BrowserSession) -> None:
        """Evict and close a session that crashed while leased."""
        self._sessions.pop(session.handle, None)
        session.state = SessionState.FREE
        await session.close()
        logger.warning(f"Discarded session {session.handle}")

    @asynccontextmanager
    async def lease(self):
        """
        Acquire a session for the duration of a block.

        Usage:
            async with pool.lease() as session:
                page = await session.new_page()
        """
        session = await self.acquire()
        try:
            yield session
        finally:
            await self.release(session)

    async def health_check(self) -> PoolHealth:
        """
        Launch a disposable browser and load a blank page.

        The pool is reported degraded when the response time exceeds
        ``degraded_response_ms`` or every session slot is taken. The result
        is cached and returned by ``latest_health``.

        Returns:
            PoolHealth snapshot
        """
        started = time.monotonic()
        browser = None
        success = False
        error = None

        try:
            browser = await self._launch_browser()
            context = await browser.new_context()
            page = await context.new_page()
            await page.goto(self.HEALTH_CHECK_URL, timeout=self.health_check_timeout_ms)
            success = True
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.error(f"Pool health check failed: {error}")
        finally:
            if browser is not None:
                try:
                    await browser.close()
                except Exception as e:
                    logger.warning(f"Error closing health check browser: {e}")

        response_time_ms = (time.monotonic() - started) * 1000
        at_capacity = len(self._sessions) >= self.max_sessions

        health = PoolHealth(
            timestamp=datetime.now(),
            success=success,
            response_time_ms=round(response_time_ms, 2),
            active_sessions=len(self._sessions),
            active_pages=self.open_page_count,
            peak_memory_kb=_peak_memory_kb(),
            degraded=response_time_ms > self.degraded_response_ms or at_capacity,
            error=error,
        )
        self._latest_health = health

        logger.info(
            f"Pool health: success={success}, {health.response_time_ms}ms, "
            f"{health.active_sessions} sessions, degraded={health.degraded}"
        )
        return health

    def latest_health(self) -> PoolHealth:
        """Last cached health snapshot, or a placeholder when none ran yet."""
        if self._latest_health is not None:
            return self._latest_health
        return PoolHealth(
            timestamp=datetime.now(),
            success=False,
            active_sessions=len(self._sessions),
            active_pages=self.open_page_count,
            degraded=True,
            error="No health check performed yet",
        )

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    @property
    def open_page_count(self) -> int:
        return sum(s.open_page_count for s in self._sessions.values())

    def get_status(self) -> PoolStatus:
        """Get current pool status."""
        leased = sum(1 for s in self._sessions.values() if s.is_leased)
        return PoolStatus(
            max_sessions=self.max_sessions,
            total_sessions=len(self._sessions),
            leased=leased,
            free=len(self._sessions) - leased,
            open_pages=self.open_page_count,
            health=self._latest_health,
        )

    async def shutdown(self) -> None:
        """Close every tracked session and stop Playwright."""
        async with self._lock:
            self._closed = True
            sessions = list(self._sessions.values())
            self._sessions.clear()

        for session in sessions:
            await session.close()

        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except Exception as e:
                logger.warning(f"Error stopping playwright: {e}")
            self._playwright = None

        logger.info(f"Browser pool shut down ({len(sessions)} sessions closed)")


def _peak_memory_kb() -> int:
    if resource is None:
        return 0
    return int(resource.getrusage(resource.RUSAGE_SELF).ru_maxrss)
