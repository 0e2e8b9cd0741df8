"""Shared helpers: CIDR math, interface detection and version policy."""
