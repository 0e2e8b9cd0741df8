"""Local status UI."""

from .server import AgentUIServer

__all__ = ["AgentUIServer"]
