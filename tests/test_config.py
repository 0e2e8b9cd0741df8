"""
Tests for agent configuration loading.
"""

import pytest
from pydantic import ValidationError

from velocitypulse_agent.config import AgentConfig, load_config

VALID_KEY = "vp_acme_abcdefghijklmnopqrstuvwxyz"

ENV_NAMES = [
    "VELOCITYPULSE_URL", "DASHBOARD_URL", "VP_API_KEY", "AGENT_API_KEY",
    "AGENT_NAME", "HEARTBEAT_INTERVAL", "STATUS_CHECK_INTERVAL",
    "STATUS_FAILURE_THRESHOLD", "ENABLE_AUTO_SCAN", "AUTO_SCAN_INTERVAL",
    "SUPABASE_URL", "SUPABASE_ANON_KEY", "ENABLE_REALTIME",
    "ENABLE_AUTO_UPGRADE", "AUTO_UPGRADE_ON_MINOR", "ENABLE_UI",
    "AGENT_UI_HOST", "AGENT_UI_PORT", "LOG_LEVEL", "LOG_DIR",
]


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Empty environment and a working directory without a .env file."""
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    return monkeypatch


@pytest.fixture
def base_env(clean_env):
    clean_env.setenv("VELOCITYPULSE_URL", "https://dash.example.com/")
    clean_env.setenv("VP_API_KEY", VALID_KEY)
    return clean_env


class TestAgentConfigFromEnv:
    """Tests for environment-driven configuration."""

    def test_defaults(self, base_env):
        """Test defaults for everything but the required settings."""
        config = load_config()

        assert config.dashboard_url == "https://dash.example.com"
        assert config.api_key == VALID_KEY
        assert config.heartbeat_interval == 60
        assert config.status_check_interval == 30
        assert config.status_failure_threshold == 2
        assert config.enable_auto_scan is True
        assert config.auto_scan_interval == 300
        assert config.enable_realtime is True
        assert config.enable_auto_upgrade is False
        assert config.auto_upgrade_on_minor is True
        assert config.ui_enabled is True
        assert config.ui_port == 3001
        assert config.log_level == "info"

    def test_alternate_env_names(self, clean_env):
        """Test DASHBOARD_URL and AGENT_API_KEY are accepted."""
        clean_env.setenv("DASHBOARD_URL", "http://localhost:3000")
        clean_env.setenv("AGENT_API_KEY", "legacy-key")

        config = load_config()

        assert config.dashboard_url == "http://localhost:3000"
        assert config.api_key == "legacy-key"

    def test_missing_required_raises(self, clean_env):
        """Test missing URL and key fail validation."""
        with pytest.raises(ValidationError):
            load_config()

    def test_malformed_vp_key_rejected(self, base_env):
        """Test a vp_ key with a short secret is rejected."""
        base_env.setenv("VP_API_KEY", "vp_acme_short")
        with pytest.raises(ValidationError):
            load_config()

    def test_interval_floor(self, base_env):
        """Test heartbeat interval below 10 seconds is rejected."""
        base_env.setenv("HEARTBEAT_INTERVAL", "5")
        with pytest.raises(ValidationError):
            load_config()

    def test_warning_log_level_normalized(self, base_env):
        base_env.setenv("LOG_LEVEL", "WARNING")
        assert load_config().log_level == "warn"

    def test_unknown_log_level_rejected(self, base_env):
        base_env.setenv("LOG_LEVEL", "verbose")
        with pytest.raises(ValidationError):
            load_config()

    def test_boolean_parsing(self, base_env):
        base_env.setenv("ENABLE_AUTO_UPGRADE", "true")
        base_env.setenv("ENABLE_UI", "0")
        config = load_config()
        assert config.enable_auto_upgrade is True
        assert config.ui_enabled is False


class TestAgentConfigFromYaml:
    """Tests for YAML file configuration."""

    def test_yaml_values(self, clean_env, tmp_path):
        """Test field-name keys in YAML populate the config."""
        config_file = tmp_path / "agent.yaml"
        config_file.write_text(
            "dashboard_url: https://yaml.example.com\n"
            f"api_key: {VALID_KEY}\n"
            "status_check_interval: 45\n"
        )

        config = load_config(config_file)

        assert config.dashboard_url == "https://yaml.example.com"
        assert config.status_check_interval == 45

    def test_env_overrides_yaml(self, base_env, tmp_path):
        """Test environment variables win over file values."""
        config_file = tmp_path / "agent.yaml"
        config_file.write_text(
            "dashboard_url: https://yaml.example.com\n"
            "status_check_interval: 45\n"
        )
        base_env.setenv("STATUS_CHECK_INTERVAL", "90")

        config = load_config(config_file)

        assert config.dashboard_url == "https://dash.example.com"
        assert config.status_check_interval == 90

    def test_missing_file(self, clean_env, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")

    def test_non_mapping_file(self, clean_env, tmp_path):
        config_file = tmp_path / "agent.yaml"
        config_file.write_text("- just\n- a list\n")
        with pytest.raises(ValueError):
            load_config(config_file)


class TestValidateAssignment:
    """Tests for runtime mutation."""

    def test_invalid_assignment_rejected(self, base_env):
        """Test live updates are still range-checked."""
        config = load_config()
        with pytest.raises(ValidationError):
            config.status_check_interval = 1

    def test_valid_assignment(self, base_env):
        config = load_config()
        config.heartbeat_interval = 20
        assert config.heartbeat_interval == 20


def test_direct_construction_by_field_name(clean_env):
    """Test fields can be passed by name (populate_by_name)."""
    config = AgentConfig(dashboard_url="https://x.example.com", api_key="k")
    assert config.dashboard_url == "https://x.example.com"
