"""Data models for crawl jobs and their per-URL outcomes."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from .browser_config import CrawlSettings


class JobStatus(str, Enum):
    """Crawl job lifecycle states."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    JobStatus.COMPLETED,
    JobStatus.PARTIAL,
    JobStatus.FAILED,
    JobStatus.CANCELLED,
})


class ErrorClass(str, Enum):
    """Error classes recorded on PageError and job failures."""
    VALIDATION_ERROR = "ValidationError"
    NAVIGATION_TIMEOUT = "NavigationTimeout"
    NAVIGATION_ERROR = "NavigationError"
    SELECTOR_TIMEOUT = "SelectorTimeout"
    EXTRACTION_FAILURE = "ExtractionFailure"
    SESSION_CRASH = "SessionCrash"
    PROXY_FAILURE = "ProxyFailure"
    POOL_EXHAUSTED = "PoolExhausted"


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class PageResult:
    """Successful outcome of crawling one URL."""

    url: str
    data: dict[str, Any] = field(default_factory=dict)
    screenshot: Optional[str] = None  # base64 payload or file path
    duration_ms: float = 0.0
    retry_count: int = 0
    status: str = "success"
    crawled_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "status": self.status,
            "data": self.data,
            "screenshot": self.screenshot,
            "duration_ms": self.duration_ms,
            "retry_count": self.retry_count,
            "crawled_at": _format_datetime(self.crawled_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PageResult":
        return cls(
            url=data["url"],
            data=data.get("data") or {},
            screenshot=data.get("screenshot"),
            duration_ms=data.get("duration_ms", 0.0),
            retry_count=data.get("retry_count", 0),
            status=data.get("status", "success"),
            crawled_at=_parse_datetime(data.get("crawled_at")) or datetime.now(),
        )


@dataclass
class PageError:
    """Failure outcome for one URL after its retries were exhausted."""

    url: str
    error_class: ErrorClass
    message: str
    retry_count: int = 0
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "error_class": self.error_class.value,
            "message": self.message,
            "retry_count": self.retry_count,
            "timestamp": _format_datetime(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PageError":
        return cls(
            url=data["url"],
            error_class=ErrorClass(data.get("error_class", ErrorClass.NAVIGATION_ERROR.value)),
            message=data.get("message", ""),
            retry_count=data.get("retry_count", 0),
            timestamp=_parse_datetime(data.get("timestamp")) or datetime.now(),
        )


@dataclass(frozen=True)
class JobSnapshot:
    """Point-in-time view of a job, pushed on the progress channel."""

    job_id: str
    status: JobStatus
    progress: int
    processed: int
    total: int
    result_count: int
    error_count: int
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass
class CrawlJob:
    """
    A unit of crawl work submitted by a caller.

    Owned and mutated only by the orchestrator. Results and errors are kept
    in submission order; a job in a terminal status is never mutated again.
    """

    id: str
    owner: str
    urls: list[str]
    settings: CrawlSettings = field(default_factory=CrawlSettings)
    vendor_id: Optional[str] = None
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    created_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    results: list[PageResult] = field(default_factory=list)
    errors: list[PageError] = field(default_factory=list)
    error: Optional[str] = None  # job-level failure message

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def total(self) -> int:
        return len(self.urls)

    @property
    def processed_count(self) -> int:
        return len(self.results) + len(self.errors)

    def compute_progress(self) -> int:
        """Integer percentage of URLs crawled successfully."""
        if not self.urls:
            return 0
        return (100 * len(self.results)) // len(self.urls)

    def snapshot(self) -> JobSnapshot:
        return JobSnapshot(
            job_id=self.id,
            status=self.status,
            progress=self.progress,
            processed=self.processed_count,
            total=self.total,
            result_count=len(self.results),
            error_count=len(self.errors),
            completed_at=self.completed_at,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner": self.owner,
            "vendor_id": self.vendor_id,
            "urls": list(self.urls),
            "settings": self.settings.to_dict(),
            "status": self.status.value,
            "progress": self.progress,
            "created_at": _format_datetime(self.created_at),
            "started_at": _format_datetime(self.started_at),
            "completed_at": _format_datetime(self.completed_at),
            "results": [r.to_dict() for r in self.results],
            "errors": [e.to_dict() for e in self.errors],
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CrawlJob":
        return cls(
            id=data["id"],
            owner=data["owner"],
            urls=list(data.get("urls", [])),
            settings=CrawlSettings.model_validate(data.get("settings") or {}),
            vendor_id=data.get("vendor_id"),
            status=JobStatus(data.get("status", JobStatus.PENDING.value)),
            progress=data.get("progress", 0),
            created_at=_parse_datetime(data.get("created_at")) or datetime.now(),
            started_at=_parse_datetime(data.get("started_at")),
            completed_at=_parse_datetime(data.get("completed_at")),
            results=[PageResult.from_dict(r) for r in data.get("results", [])],
            errors=[PageError.from_dict(e) for e in data.get("errors", [])],
            error=data.get("error"),
        )
