"""
Shared fixtures.
"""

import pytest

from velocitypulse_agent.config import AgentConfig

CONFIG_ENV_NAMES = [
    "VELOCITYPULSE_URL", "DASHBOARD_URL", "VP_API_KEY", "AGENT_API_KEY",
    "HEARTBEAT_INTERVAL", "STATUS_CHECK_INTERVAL", "STATUS_FAILURE_THRESHOLD",
    "ENABLE_AUTO_SCAN", "AUTO_SCAN_INTERVAL", "SUPABASE_URL", "SUPABASE_ANON_KEY",
    "ENABLE_REALTIME", "ENABLE_AUTO_UPGRADE", "AUTO_UPGRADE_ON_MINOR", "ENABLE_UI",
    "LOG_LEVEL",
]


@pytest.fixture
def agent_config(monkeypatch, tmp_path):
    """Agent config built from field names, isolated from the environment."""
    for name in CONFIG_ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    return AgentConfig(
        dashboard_url="https://dash.example.com",
        api_key="vp_acme_abcdefghijklmnopqrstuvwxyz",
        agent_name="test-agent",
        ui_enabled=False,
        enable_realtime=False,
        log_dir=tmp_path / "logs",
    )
