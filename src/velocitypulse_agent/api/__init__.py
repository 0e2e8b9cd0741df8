"""Dashboard API client and realtime command channel."""

from .client import ControllerClient
from .realtime import RealtimeClient

__all__ = ["ControllerClient", "RealtimeClient"]
