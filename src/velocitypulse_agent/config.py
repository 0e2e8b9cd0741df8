"""
Configuration for the VelocityPulse agent.

Settings come from environment variables (and an optional .env file).
A YAML file may supply the same fields by name; environment variables
override file values so service managers can patch single settings.
"""

import logging
import re
import socket
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

API_KEY_PATTERN = re.compile(r"^vp_[a-zA-Z0-9]+_[a-zA-Z0-9]{20,}$")

LOG_LEVELS = ("debug", "info", "warn", "error")


def _env(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class AgentConfig(BaseSettings):
    """Runtime configuration for the agent."""

    # ========================================================================
    # Dashboard connection
    # ========================================================================

    dashboard_url: str = Field(
        ...,
        validation_alias=_env("VELOCITYPULSE_URL", "DASHBOARD_URL"),
        description="Base URL of the VelocityPulse dashboard"
    )

    api_key: str = Field(
        ...,
        validation_alias=_env("VP_API_KEY", "AGENT_API_KEY"),
        description="Agent API key issued by the dashboard"
    )

    agent_name: str = Field(
        default_factory=socket.gethostname,
        validation_alias=_env("AGENT_NAME"),
        description="Display name for this agent"
    )

    # ========================================================================
    # Timing
    # ========================================================================

    heartbeat_interval: int = Field(
        default=60,
        ge=10,
        validation_alias=_env("HEARTBEAT_INTERVAL"),
        description="Seconds between heartbeats (capped at 60)"
    )

    status_check_interval: int = Field(
        default=30,
        ge=5,
        validation_alias=_env("STATUS_CHECK_INTERVAL"),
        description="Seconds between status-check cycles"
    )

    status_failure_threshold: int = Field(
        default=2,
        ge=0,
        validation_alias=_env("STATUS_FAILURE_THRESHOLD"),
        description="Consecutive failed probes before reporting offline"
    )

    # ========================================================================
    # Auto scan
    # ========================================================================

    enable_auto_scan: bool = Field(
        default=True,
        validation_alias=_env("ENABLE_AUTO_SCAN"),
        description="Register the primary local network when no segments are assigned"
    )

    auto_scan_interval: int = Field(
        default=300,
        ge=30,
        validation_alias=_env("AUTO_SCAN_INTERVAL"),
        description="Scan interval for auto-registered segments"
    )

    # ========================================================================
    # Realtime
    # ========================================================================

    supabase_url: Optional[str] = Field(
        default=None,
        validation_alias=_env("SUPABASE_URL"),
    )

    supabase_anon_key: Optional[str] = Field(
        default=None,
        validation_alias=_env("SUPABASE_ANON_KEY"),
    )

    enable_realtime: bool = Field(
        default=True,
        validation_alias=_env("ENABLE_REALTIME"),
        description="Use the realtime push channel for commands"
    )

    # ========================================================================
    # Upgrades
    # ========================================================================

    enable_auto_upgrade: bool = Field(
        default=False,
        validation_alias=_env("ENABLE_AUTO_UPGRADE"),
        description="Allow the dashboard to trigger self-upgrades"
    )

    auto_upgrade_on_minor: bool = Field(
        default=True,
        validation_alias=_env("AUTO_UPGRADE_ON_MINOR"),
        description="Allow minor-version auto upgrades"
    )

    # ========================================================================
    # Local UI
    # ========================================================================

    ui_enabled: bool = Field(
        default=True,
        validation_alias=_env("ENABLE_UI"),
    )

    ui_host: str = Field(
        default="127.0.0.1",
        validation_alias=_env("AGENT_UI_HOST"),
    )

    ui_port: int = Field(
        default=3001,
        ge=1,
        le=65535,
        validation_alias=_env("AGENT_UI_PORT"),
    )

    # ========================================================================
    # Logging
    # ========================================================================

    log_level: str = Field(
        default="info",
        validation_alias=_env("LOG_LEVEL"),
        description="Agent log level"
    )

    log_dir: Path = Field(
        default=Path("./logs"),
        validation_alias=_env("LOG_DIR"),
        description="Directory for rotating log files"
    )

    # ========================================================================
    # Validators
    # ========================================================================

    @field_validator("dashboard_url")
    @classmethod
    def validate_dashboard_url(cls, v):
        v = v.strip().rstrip("/")
        if not v:
            raise ValueError("dashboard_url must not be empty")
        return v

    @field_validator("api_key")
    @classmethod
    def validate_api_key(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("api_key must not be empty")
        if v.startswith("vp_") and not API_KEY_PATTERN.match(v):
            raise ValueError("api_key has invalid format (expected vp_<org>_<key>)")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        v = v.lower()
        if v == "warning":
            v = "warn"
        if v not in LOG_LEVELS:
            raise ValueError("log_level must be debug, info, warn, or error")
        return v

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
        validate_assignment=True,
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Environment beats the YAML values passed in as init kwargs.
        return env_settings, dotenv_settings, init_settings, file_secret_settings


def load_config(config_path: Optional[Path] = None) -> AgentConfig:
    """
    Load agent configuration.

    Args:
        config_path: Optional YAML file with field-name keys

    Returns:
        AgentConfig instance

    Raises:
        FileNotFoundError: If config_path is given but missing
        pydantic.ValidationError: If required settings are missing or invalid
    """
    file_values: dict[str, Any] = {}

    if config_path is not None:
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        logger.info(f"Loading config from {config_path}")
        with open(config_path, "r") as f:
            file_values = yaml.safe_load(f) or {}

        if not isinstance(file_values, dict):
            raise ValueError(f"Config file must contain a mapping: {config_path}")

    return AgentConfig(**file_values)
