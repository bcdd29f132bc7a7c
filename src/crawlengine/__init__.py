"""Stealth crawl execution engine: pooled headless browsers, tracked crawl jobs."""

__version__ = "0.1.0"

from crawlengine.browser_config import CrawlSettings, ScreenshotSettings, StealthOptions
from crawlengine.config import EngineConfig, load_config, settings
from crawlengine.exceptions import (
    CrawlEngineError,
    ValidationError,
    JobNotFound,
    InvalidJobTransition,
    JobStoreError,
    PoolExhausted,
    PageCrawlError,
    NavigationTimeout,
    NavigationError,
    SelectorTimeout,
    ExtractionFailure,
    SessionCrash,
    ProxyFailure,
)
from crawlengine.models import (
    CrawlJob,
    ErrorClass,
    JobSnapshot,
    JobStatus,
    PageError,
    PageResult,
)
from crawlengine.job_store import (
    AbstractJobStore,
    InMemoryJobStore,
    SqliteJobStore,
    get_job_store,
)
from crawlengine.orchestrator import CrawlJobOrchestrator, RetryPolicy

# Infrastructure
from crawlengine.infrastructure import (
    AntiDetectionEngine,
    BrowserSession,
    BrowserSessionPool,
    PoolHealth,
    ProxyRotationService,
)
from crawlengine.utils import BehaviorConfig, HumanBehaviorSimulator

__all__ = [
    "__version__",
    "settings",
    "EngineConfig",
    "load_config",
    "CrawlSettings",
    "ScreenshotSettings",
    "StealthOptions",
    # Errors
    "CrawlEngineError",
    "ValidationError",
    "JobNotFound",
    "InvalidJobTransition",
    "JobStoreError",
    "PoolExhausted",
    "PageCrawlError",
    "NavigationTimeout",
    "NavigationError",
    "SelectorTimeout",
    "ExtractionFailure",
    "SessionCrash",
    "ProxyFailure",
    # Models
    "CrawlJob",
    "ErrorClass",
    "JobSnapshot",
    "JobStatus",
    "PageError",
    "PageResult",
    # Job store
    "AbstractJobStore",
    "InMemoryJobStore",
    "SqliteJobStore",
    "get_job_store",
    # Orchestration
    "CrawlJobOrchestrator",
    "RetryPolicy",
    # Infrastructure
    "AntiDetectionEngine",
    "BrowserSession",
    "BrowserSessionPool",
    "PoolHealth",
    "ProxyRotationService",
    "BehaviorConfig",
    "HumanBehaviorSimulator",
]
