"""
VelocityPulse network monitoring agent.

Discovers devices on assigned network segments, probes their health and
reports results to the VelocityPulse dashboard.
"""

from .utils.version import VERSION

__version__ = VERSION
