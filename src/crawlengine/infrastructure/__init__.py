"""
Infrastructure Package.

Provides the browser session pool, fingerprint spoofing and proxy rotation
shared by every crawl job.
"""

from .browser_pool import (
    BrowserSession,
    BrowserSessionPool,
    PoolHealth,
    PoolStatus,
    SessionState,
)
from .anti_detection import (
    AntiDetectionEngine,
    StealthStep,
    StepResult,
    BASE_STEPS,
    ENHANCED_STEPS,
    verify_stealth,
)
from .proxy_rotation import (
    ProxyRecord,
    ProxyRotationService,
    load_proxies_from_file,
    create_proxy_service_from_config,
    mask_proxy_url,
)

__all__ = [
    # Browser Session Pool
    "BrowserSession",
    "BrowserSessionPool",
    "PoolHealth",
    "PoolStatus",
    "SessionState",
    # Anti-Detection
    "AntiDetectionEngine",
    "StealthStep",
    "StepResult",
    "BASE_STEPS",
    "ENHANCED_STEPS",
    "verify_stealth",
    # Proxy Rotation
    "ProxyRecord",
    "ProxyRotationService",
    "load_proxies_from_file",
    "create_proxy_service_from_config",
    "mask_proxy_url",
]
