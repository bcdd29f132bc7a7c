# tests/test_config.py
import json

from crawlengine.config import EngineConfig, load_config


class TestEngineConfig:
    """Tests for EngineConfig loading."""

    def test_defaults(self):
        """Test default pool and retry values."""
        config = EngineConfig()

        assert config.max_sessions == 5
        assert config.max_pages_per_session == 10
        assert config.poll_interval_seconds == 1.0
        assert config.retry_initial_delay_ms == 2000
        assert config.retry_max_delay_ms == 10000
        assert config.proxy_rotation_enabled is False

    def test_from_env(self, monkeypatch):
        """Test that prefixed variables are coerced to the field types."""
        monkeypatch.setenv("CRAWLER_MAX_SESSIONS", "8")
        monkeypatch.setenv("CRAWLER_POLL_INTERVAL_SECONDS", "0.5")
        monkeypatch.setenv("CRAWLER_HEADLESS", "false")
        monkeypatch.setenv("CRAWLER_PROXY_URLS", "http://a:1, http://b:2")
        monkeypatch.setenv("CRAWLER_USER_AGENT", "Custom/1.0")

        config = EngineConfig.from_env()

        assert config.max_sessions == 8
        assert config.poll_interval_seconds == 0.5
        assert config.headless is False
        assert config.proxy_urls == ["http://a:1", "http://b:2"]
        assert config.user_agent == "Custom/1.0"

    def test_from_env_keeps_default_on_bad_value(self, monkeypatch):
        """Test that unparseable numbers fall back to defaults."""
        monkeypatch.setenv("CRAWLER_MAX_SESSIONS", "many")

        assert EngineConfig.from_env().max_sessions == 5

    def test_from_file_engine_key(self, tmp_path):
        """Test loading fields nested under an engine key."""
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"engine": {"max_sessions": 2, "unknown_field": 1}}))

        config = EngineConfig.from_file(str(path))

        assert config.max_sessions == 2
        assert not hasattr(config, "unknown_field")

    def test_from_file_top_level(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"retry_factor": 3.0}))

        assert EngineConfig.from_file(str(path)).retry_factor == 3.0

    def test_from_missing_file(self, tmp_path):
        """Test that a missing file yields defaults."""
        config = EngineConfig.from_file(str(tmp_path / "missing.json"))

        assert config == EngineConfig()

    def test_save_and_load(self, tmp_path):
        """Test that a saved config loads back."""
        path = tmp_path / "config.json"
        config = EngineConfig(max_sessions=3, blocked_resources=["image"])
        config.save_to_file(str(path))

        assert EngineConfig.from_file(str(path)) == config

    def test_load_config_prefers_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CRAWLER_MAX_SESSIONS", "9")
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"max_sessions": 4}))

        assert load_config(str(path)).max_sessions == 4


class TestDerivedOptions:
    """Tests for the component options built from EngineConfig."""

    def test_stealth_options(self):
        config = EngineConfig(user_agent="Fixed/1.0", canvas_noise=False, hardware_concurrency=16)

        options = config.stealth_options()

        assert options.get_user_agent() == "Fixed/1.0"
        assert options.canvas_noise is False
        assert options.hardware_concurrency == 16

    def test_stealth_toggles_from_env(self, monkeypatch):
        """Test that every fingerprint step can be switched off from the environment."""
        for name in ("MASK_AUTOMATION", "HARDWARE_SPOOFING", "NORMALIZE_HEADERS", "NORMALIZE_VIEWPORT"):
            monkeypatch.setenv(f"CRAWLER_{name}", "false")

        options = EngineConfig.from_env().stealth_options()

        assert options.mask_automation is False
        assert options.hardware_spoofing is False
        assert options.normalize_headers is False
        assert options.normalize_viewport is False
        assert options.webgl_spoofing is True

    def test_behavior_config(self):
        config = EngineConfig(human_min_delay_ms=10, human_max_delay_ms=20, human_interaction_probability=0.0)

        behavior = config.behavior_config()

        assert behavior.min_delay_ms == 10
        assert behavior.max_delay_ms == 20
        assert behavior.interaction_probability == 0.0

    def test_retry_policy(self):
        policy = EngineConfig(retry_initial_delay_ms=100, retry_max_delay_ms=250, retry_factor=2.0).retry_policy()

        assert [policy.delay_ms(k) for k in range(4)] == [100, 200, 250, 250]
