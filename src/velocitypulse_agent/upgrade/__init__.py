"""Self-upgrade."""

from .upgrader import UpgradeResult, perform_upgrade

__all__ = ["UpgradeResult", "perform_upgrade"]
