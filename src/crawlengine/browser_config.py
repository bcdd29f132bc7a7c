"""
Browser and job settings models.

Pydantic models validated once, at job submission or engine startup:
- CrawlSettings: per-job options accepted from callers (camelCase or snake_case)
- StealthOptions: fingerprint surface applied to every page before navigation
"""
import random
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator


# User agent pool for rotation
USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:123.0) Gecko/20100101 Firefox/123.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.3 Safari/605.1.15",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36 Edg/123.0.0.0",
]

# Headers a desktop browser sends on a top-level navigation
DEFAULT_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,image/apng,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Accept-Encoding": "gzip, deflate, br",
    "Upgrade-Insecure-Requests": "1",
}

DEFAULT_VIEWPORT = {"width": 1920, "height": 1080}


def get_random_user_agent() -> str:
    """Get a random user agent from the pool."""
    return random.choice(USER_AGENTS)


class ScreenshotSettings(BaseModel):
    """Screenshot capture options for a job."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    enabled: bool = Field(default=True, description="Capture a screenshot of each page")
    full_page: bool = Field(
        default=True,
        alias="fullPage",
        description="Capture the full scrollable page instead of the viewport",
    )


class CrawlSettings(BaseModel):
    """
    Per-job crawl settings.

    Field aliases match the option names accepted from the routing layer
    (navigationTimeoutMs, maxRetries, ...); snake_case names work as well.
    Unknown keys are ignored.
    """

    model_config = ConfigDict(populate_by_name=True, validate_assignment=True, extra="ignore")

    navigation_timeout_ms: int = Field(
        default=30000,
        alias="navigationTimeoutMs",
        description="Navigation timeout in milliseconds",
        ge=1000,
        le=300000,
    )

    max_retries: int = Field(
        default=3,
        alias="maxRetries",
        description="Retries per URL after the first attempt",
        ge=0,
        le=10,
    )

    wait_for_selector: str = Field(
        default="body",
        alias="waitForSelector",
        description="Selector that must appear before extraction",
        min_length=1,
    )

    selector_timeout_ms: int = Field(
        default=10000,
        alias="selectorTimeoutMs",
        description="Timeout for the selector wait, in milliseconds",
        validate_default=True,
        ge=100,
        le=300000,
    )

    simulate_human_behavior: bool = Field(
        default=True,
        alias="simulateHumanBehavior",
        description="Run the human behavior simulator before extraction",
    )

    screenshots: ScreenshotSettings = Field(default_factory=ScreenshotSettings)

    @field_validator("selector_timeout_ms")
    @classmethod
    def cap_selector_timeout(cls, value: int, info: ValidationInfo) -> int:
        """The selector wait never outlasts the navigation timeout."""
        navigation_timeout = info.data.get("navigation_timeout_ms")
        if navigation_timeout is None:
            return value
        return min(value, navigation_timeout)

    def to_dict(self) -> dict:
        """Serialize using the external (camelCase) option names."""
        return self.model_dump(by_alias=True)


class StealthOptions(BaseModel):
    """
    Fingerprint options applied by the AntiDetectionEngine.

    Each toggle enables one configuration step. A fixed ``user_agent`` wins
    over random selection from ``user_agents``.
    """

    model_config = ConfigDict(validate_assignment=True)

    user_agent: Optional[str] = Field(
        default=None,
        description="Fixed user agent. None picks a random one from user_agents."
    )
    user_agents: List[str] = Field(default_factory=lambda: list(USER_AGENTS))

    mask_automation: bool = Field(default=True, description="Hide navigator.webdriver and empty plugin list")
    webgl_spoofing: bool = Field(default=True, description="Report fixed WebGL vendor/renderer")
    canvas_noise: bool = Field(default=True, description="Add pixel noise to canvas reads")
    hardware_spoofing: bool = Field(default=True, description="Report fixed CPU count and device memory")
    normalize_headers: bool = Field(default=True, description="Send desktop-browser default headers")
    normalize_viewport: bool = Field(default=True, description="Use a common desktop resolution")

    hardware_concurrency: int = Field(default=4, ge=1, le=128)
    device_memory: int = Field(default=8, ge=1, le=64)
    webgl_vendor: str = "Intel Inc."
    webgl_renderer: str = "Intel Iris Graphics 6100"
    canvas_noise_pixels: int = Field(default=10, ge=1, le=100)
    viewport_width: int = Field(default=DEFAULT_VIEWPORT["width"], ge=320)
    viewport_height: int = Field(default=DEFAULT_VIEWPORT["height"], ge=240)

    # Enhanced mode
    time_jitter_ms: int = Field(default=100, ge=0, le=5000)
    screen_width: int = 1920
    screen_height: int = 1080
    screen_avail_height: int = 1040
    color_depth: int = 24
    cookie_url: Optional[str] = Field(
        default=None,
        description="URL the seeded analytics cookies are scoped to"
    )

    def get_user_agent(self) -> str:
        """Get the user agent to use for one page."""
        if self.user_agent:
            return self.user_agent
        if self.user_agents:
            return random.choice(self.user_agents)
        return USER_AGENTS[0]

    def resolved(self) -> "StealthOptions":
        """Copy with the user agent pinned, so every step of one page agrees."""
        return self.model_copy(update={"user_agent": self.get_user_agent()})

    @property
    def viewport(self) -> dict:
        return {"width": self.viewport_width, "height": self.viewport_height}
