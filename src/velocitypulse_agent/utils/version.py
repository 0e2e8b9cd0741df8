"""
Agent version and upgrade policy.
"""

import re
from typing import NamedTuple

VERSION = "1.0.0"
PRODUCT_NAME = "VelocityPulse Agent"

_LEADING_INT = re.compile(r"^\d+")


class VersionParts(NamedTuple):
    major: int
    minor: int
    patch: int


def _parts(version: str) -> list[int]:
    parts = []
    for piece in version.strip().lstrip("v").split("."):
        match = _LEADING_INT.match(piece)
        parts.append(int(match.group()) if match else 0)
    return parts


def parse_version(version: str) -> VersionParts:
    """Parse "v1.2.3" style strings; missing or junk parts become 0."""
    parts = _parts(version) + [0, 0, 0]
    return VersionParts(parts[0], parts[1], parts[2])


def compare_versions(a: str, b: str) -> int:
    """Return -1, 0 or 1 as a is older than, equal to or newer than b."""
    parts_a = _parts(a)
    parts_b = _parts(b)
    width = max(len(parts_a), len(parts_b))
    parts_a += [0] * (width - len(parts_a))
    parts_b += [0] * (width - len(parts_b))

    for x, y in zip(parts_a, parts_b):
        if x < y:
            return -1
        if x > y:
            return 1
    return 0


def is_newer_version(latest: str, current: str) -> bool:
    return compare_versions(latest, current) > 0


def should_auto_upgrade(latest: str, current: str, on_minor: bool = True) -> bool:
    """
    Decide whether an automatic upgrade from current to latest is allowed.

    Major upgrades are never automatic, minor upgrades follow on_minor,
    patch upgrades are always allowed.
    """
    if not is_newer_version(latest, current):
        return False

    new = parse_version(latest)
    old = parse_version(current)

    if new.major > old.major:
        return False
    if new.major == old.major and new.minor > old.minor:
        return on_minor
    return True
