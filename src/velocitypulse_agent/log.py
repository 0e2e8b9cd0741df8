"""
Logging setup for the agent.

Console output always; a rotating file under the configured log directory
when it is writable; and an optional handler that mirrors records into the
local UI log stream.
"""

import logging
import logging.handlers
from pathlib import Path
from typing import Callable, Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

UI_LEVEL_NAMES = {
    logging.DEBUG: "debug",
    logging.INFO: "info",
    logging.WARNING: "warn",
    logging.ERROR: "error",
    logging.CRITICAL: "error",
}


def to_logging_level(level: str) -> int:
    return LEVELS.get(level.lower(), logging.INFO)


class UILogHandler(logging.Handler):
    """Forward log records to a callback (the UI server's add_log)."""

    def __init__(self, sink: Callable[[str, str], None], level: int = logging.INFO):
        super().__init__(level)
        self.sink = sink

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = UI_LEVEL_NAMES.get(record.levelno, "info")
            self.sink(level, record.getMessage())
        except Exception:
            self.handleError(record)


def setup_logging(level: str = "info", log_dir: Optional[Path] = None) -> None:
    """Configure root logging for the agent process."""
    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if log_dir is not None:
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.handlers.RotatingFileHandler(
                log_dir / "agent.log",
                maxBytes=10 * 1024 * 1024,
                backupCount=5,
            ))
        except OSError as e:
            logging.getLogger(__name__).warning(f"File logging disabled ({log_dir}): {e}")

    logging.basicConfig(
        level=to_logging_level(level),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


def set_level(level: str) -> None:
    """Apply a new level to the root logger at runtime."""
    logging.getLogger().setLevel(to_logging_level(level))


def attach_ui_handler(sink: Callable[[str, str], None]) -> UILogHandler:
    """Mirror agent INFO+ records into the UI log stream."""
    handler = UILogHandler(sink, level=logging.INFO)
    handler.addFilter(logging.Filter("velocitypulse_agent"))
    logging.getLogger().addHandler(handler)
    return handler
