"""Expose the gateway configuration.

The process-wide [`settings`](config/settings.py:1) instance is meant for the entry point
only. Services receive a `GatewaySettings` instance through their constructors so tests can
build isolated configurations.
"""

from .settings import GatewaySettings as GatewaySettings
from .settings import settings as settings

__all__ = ["GatewaySettings", "settings"]
