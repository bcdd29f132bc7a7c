from dotenv import load_dotenv
from dataclasses import dataclass, field, fields
from typing import Optional
from pathlib import Path
import json
import os

from crawlengine.browser_config import USER_AGENTS, StealthOptions
from crawlengine.utils.human_simulator import BehaviorConfig

load_dotenv()  # Loads variables from .env file


class Settings:
    """
    Manages process-level settings loaded from environment variables.
    """
    STORE_BACKEND = os.getenv("CRAWLER_STORE_BACKEND", "memory")  # 'memory' or 'sqlite'
    DB_PATH = os.getenv("CRAWLER_DB_PATH", "crawl_jobs.db")
    LOG_LEVEL = os.getenv("CRAWLER_LOG_LEVEL", "INFO")
    LOG_FILE = os.getenv("CRAWLER_LOG_FILE")
    CONFIG_FILE = os.getenv("CRAWLER_CONFIG_FILE")


settings = Settings()


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _parse_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class EngineConfig:
    """Static configuration for the crawl engine, loaded once at startup."""

    # Browser session pool
    max_sessions: int = 5
    max_pages_per_session: int = 10
    poll_interval_seconds: float = 1.0
    headless: bool = True
    launch_args: list[str] = field(default_factory=lambda: [
        "--no-sandbox",
        "--disable-setuid-sandbox",
        "--disable-dev-shm-usage",
        "--disable-accelerated-2d-canvas",
        "--disable-gpu",
        "--disable-blink-features=AutomationControlled",
        "--window-size=1920,1080",
    ])
    health_check_timeout_ms: int = 5000
    degraded_response_ms: int = 5000
    acquire_timeout_seconds: float = 300.0  # 0 waits forever

    # Finished jobs kept in memory for subscribers; older ones are read from the store
    finished_jobs_cache_size: int = 10

    # Retry backoff
    retry_initial_delay_ms: int = 2000
    retry_max_delay_ms: int = 10000
    retry_factor: float = 2.0

    # Anti-detection
    stealth_enabled: bool = True
    escalate_stealth_on_retry: bool = True
    user_agent: Optional[str] = None  # fixed UA; None rotates through user_agents
    user_agents: list[str] = field(default_factory=lambda: list(USER_AGENTS))
    mask_automation: bool = True
    webgl_spoofing: bool = True
    canvas_noise: bool = True
    hardware_spoofing: bool = True
    normalize_headers: bool = True
    normalize_viewport: bool = True
    hardware_concurrency: int = 4
    device_memory: int = 8
    webgl_vendor: str = "Intel Inc."
    webgl_renderer: str = "Intel Iris Graphics 6100"

    # Resource blocking at the network interception layer
    blocked_resources: list[str] = field(default_factory=lambda: ["image", "media", "font", "stylesheet"])

    # Proxy pool
    proxy_urls: list[str] = field(default_factory=list)
    proxy_file: Optional[str] = None
    proxy_rotation_enabled: bool = False
    rotate_proxy_on_failure: bool = True
    proxy_health_check_url: str = "https://httpbin.org/ip"
    proxy_probe_timeout_seconds: float = 10.0

    # Screenshots
    screenshot_quality: int = 80
    screenshot_dir: Optional[str] = None  # None keeps screenshots inline as base64

    # Human behavior simulation
    human_min_delay_ms: int = 300
    human_max_delay_ms: int = 1200
    human_scroll_delay_ms: int = 500
    human_max_scroll_steps: int = 8
    human_interaction_probability: float = 0.3

    @classmethod
    def from_env(cls, prefix: str = "CRAWLER_") -> "EngineConfig":
        """Load configuration from environment variables.

        Every field can be overridden with an upper-cased, prefixed variable,
        e.g. CRAWLER_MAX_SESSIONS=8 or CRAWLER_PROXY_URLS=http://a:1,http://b:2

        Returns:
            EngineConfig with values from environment
        """
        config = cls()

        for f in fields(config):
            env_value = os.getenv(f"{prefix}{f.name.upper()}")
            if env_value is None:
                continue

            default = getattr(config, f.name)
            try:
                if isinstance(default, bool):
                    setattr(config, f.name, _parse_bool(env_value))
                elif isinstance(default, int):
                    setattr(config, f.name, int(env_value))
                elif isinstance(default, float):
                    setattr(config, f.name, float(env_value))
                elif isinstance(default, list):
                    setattr(config, f.name, _parse_list(env_value))
                else:
                    setattr(config, f.name, env_value or None)
            except ValueError:
                pass  # Keep default if conversion fails

        return config

    @classmethod
    def from_file(cls, path: str) -> "EngineConfig":
        """Load configuration from a JSON file.

        The file may hold the fields at top level or under an "engine" key.

        Args:
            path: Path to JSON configuration file

        Returns:
            EngineConfig with values from file
        """
        config = cls()
        file_path = Path(path)

        if not file_path.exists():
            return config

        with open(file_path, 'r') as f:
            data = json.load(f)

        engine_config = data.get('engine', data)
        known = {f.name for f in fields(config)}

        for name, value in engine_config.items():
            if name in known:
                setattr(config, name, value)

        return config

    def to_dict(self) -> dict:
        """Convert configuration to dictionary."""
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def save_to_file(self, path: str) -> None:
        """Save current configuration to a JSON file."""
        with open(path, 'w') as f:
            json.dump({'engine': self.to_dict()}, f, indent=2)

    def retry_policy(self):
        from crawlengine.orchestrator import RetryPolicy

        return RetryPolicy(
            initial_delay_ms=self.retry_initial_delay_ms,
            max_delay_ms=self.retry_max_delay_ms,
            factor=self.retry_factor,
        )

    def stealth_options(self) -> StealthOptions:
        return StealthOptions(
            user_agent=self.user_agent,
            user_agents=self.user_agents,
            mask_automation=self.mask_automation,
            webgl_spoofing=self.webgl_spoofing,
            canvas_noise=self.canvas_noise,
            hardware_spoofing=self.hardware_spoofing,
            normalize_headers=self.normalize_headers,
            normalize_viewport=self.normalize_viewport,
            hardware_concurrency=self.hardware_concurrency,
            device_memory=self.device_memory,
            webgl_vendor=self.webgl_vendor,
            webgl_renderer=self.webgl_renderer,
        )

    def behavior_config(self) -> BehaviorConfig:
        return BehaviorConfig(
            min_delay_ms=self.human_min_delay_ms,
            max_delay_ms=self.human_max_delay_ms,
            scroll_delay_ms=self.human_scroll_delay_ms,
            max_scroll_steps=self.human_max_scroll_steps,
            interaction_probability=self.human_interaction_probability,
        )


def load_config(path: Optional[str] = None) -> EngineConfig:
    """Load the engine config from a JSON file if one is given, else from env."""
    path = path or settings.CONFIG_FILE
    if path:
        return EngineConfig.from_file(path)
    return EngineConfig.from_env()
