"""
Crawl engine error taxonomy.

Per-URL errors (navigation, selector wait, extraction, session crash, proxy)
are retried by the orchestrator and end up as PageError records. Job-level
errors (pool exhaustion, store failures) move the whole job to ``failed``.
"""

from typing import Optional

from .models import ErrorClass


class CrawlEngineError(Exception):
    """Base class for all crawl engine errors."""


class ValidationError(CrawlEngineError):
    """Malformed job submission. The job is never created."""

    def __init__(self, message: str, details: Optional[list] = None):
        super().__init__(message)
        self.details = details or []


class JobNotFound(CrawlEngineError):
    """No job exists with the requested identifier."""


class InvalidJobTransition(CrawlEngineError):
    """Requested status change is not allowed from the job's current status."""


class JobStoreError(CrawlEngineError):
    """The job store rejected a read or write."""


class PoolExhausted(CrawlEngineError):
    """Waiting for a browser session exceeded the caller-imposed ceiling."""

    error_class = ErrorClass.POOL_EXHAUSTED


class PageCrawlError(CrawlEngineError):
    """Base class for failures scoped to a single URL."""

    error_class = ErrorClass.NAVIGATION_ERROR

    def __init__(self, message: str, url: Optional[str] = None, retry_count: int = 0):
        super().__init__(message)
        self.url = url
        self.retry_count = retry_count
        self.proxy: Optional[str] = None  # address of the proxy the attempt used


class NavigationTimeout(PageCrawlError):
    error_class = ErrorClass.NAVIGATION_TIMEOUT


class NavigationError(PageCrawlError):
    error_class = ErrorClass.NAVIGATION_ERROR


class SelectorTimeout(PageCrawlError):
    error_class = ErrorClass.SELECTOR_TIMEOUT


class ExtractionFailure(PageCrawlError):
    error_class = ErrorClass.EXTRACTION_FAILURE


class SessionCrash(PageCrawlError):
    """The browser session died while in use. The pool evicts it."""

    error_class = ErrorClass.SESSION_CRASH


class ProxyFailure(PageCrawlError):
    """The active proxy refused or broke the connection."""

    error_class = ErrorClass.PROXY_FAILURE


# Chromium net error codes that point at the egress proxy rather than the target
PROXY_ERROR_MARKERS = (
    "ERR_PROXY_CONNECTION_FAILED",
    "ERR_TUNNEL_CONNECTION_FAILED",
    "ERR_PROXY_AUTH",
    "ERR_PROXY_CERTIFICATE_INVALID",
    "ERR_NO_SUPPORTED_PROXIES",
    "ERR_MANDATORY_PROXY_CONFIGURATION_FAILED",
    "407 Proxy Authentication Required",
)

SESSION_CRASH_MARKERS = (
    "Target closed",
    "Target page, context or browser has been closed",
    "Browser has been closed",
    "browser has disconnected",
    "Connection closed",
)


def _is_timeout(exc: BaseException) -> bool:
    # Playwright's TimeoutError is not a subclass of the builtin one
    if isinstance(exc, TimeoutError):
        return True
    return type(exc).__name__ == "TimeoutError"


def classify_error(exc: BaseException, stage: str, url: Optional[str] = None) -> PageCrawlError:
    """
    Map an exception raised while crawling a page to the error taxonomy.

    Args:
        exc: The original exception
        stage: Crawl stage that raised it ('session', 'navigation', 'selector',
               'extraction', 'screenshot')
        url: URL being crawled

    Returns:
        A PageCrawlError subclass instance chained to the original exception
    """
    if isinstance(exc, PageCrawlError):
        return exc

    message = str(exc) or type(exc).__name__

    if any(marker in message for marker in PROXY_ERROR_MARKERS):
        error: PageCrawlError = ProxyFailure(message, url=url)
    elif any(marker in message for marker in SESSION_CRASH_MARKERS):
        error = SessionCrash(message, url=url)
    elif stage == "selector":
        error = SelectorTimeout(message, url=url)
    elif stage in ("extraction", "screenshot"):
        error = ExtractionFailure(message, url=url)
    elif _is_timeout(exc):
        error = NavigationTimeout(message, url=url)
    else:
        error = NavigationError(message, url=url)

    error.__cause__ = exc
    return error
