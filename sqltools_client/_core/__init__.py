"""
Core service management for sqltools-client.

This module handles:
- Platform detection and version channel selection
- Service download, verification and installation
- Process lifecycle and the language client channel
- Version compatibility
"""

from sqltools_client._core.version import (
    CLIENT_VERSION,
    SERVICE_COMPATIBLE_VERSION,
    is_service_compatible,
)
from sqltools_client._core.platform import (
    detect,
    resolve,
)
from sqltools_client._core.provider import ServerProvider
from sqltools_client._core.channel import ServiceChannel

__all__ = [
    # Version
    "CLIENT_VERSION",
    "SERVICE_COMPATIBLE_VERSION",
    "is_service_compatible",
    # Platform
    "detect",
    "resolve",
    # Provisioning
    "ServerProvider",
    # Transport
    "ServiceChannel",
]
