"""
Tests for logging setup and the UI log mirror.
"""

import logging

import pytest

from velocitypulse_agent.log import attach_ui_handler, set_level, to_logging_level


@pytest.fixture
def ui_sink():
    entries = []
    handler = attach_ui_handler(lambda level, message: entries.append((level, message)))
    yield entries
    logging.getLogger().removeHandler(handler)


class TestUILogHandler:
    """Tests for mirroring agent log records into the UI."""

    def test_agent_records_forwarded(self, ui_sink):
        logging.getLogger("velocitypulse_agent.scanner").warning("ARP table unreadable")
        assert ("warn", "ARP table unreadable") in ui_sink

    def test_foreign_loggers_filtered(self, ui_sink):
        logging.getLogger("aiohttp.access").warning("GET /api/status")
        assert ui_sink == []

    def test_debug_not_forwarded(self, ui_sink):
        set_level("debug")
        try:
            logging.getLogger("velocitypulse_agent.agent").debug("tick")
        finally:
            set_level("info")
        assert ui_sink == []


@pytest.mark.parametrize("name,level", [
    ("debug", logging.DEBUG),
    ("warn", logging.WARNING),
    ("WARNING", logging.WARNING),
    ("bogus", logging.INFO),
])
def test_to_logging_level(name, level):
    assert to_logging_level(name) == level
