"""
Platform detection for sqltools-client.

Determines the OS family, architecture and runtime id of the current
machine and validates them against the supported service matrix.
"""

from __future__ import annotations

import logging
import platform
from typing import Optional

from sqltools_client._core.version import (
    LEGACY_MACOS_BELOW,
    MACOS_MIN_VERSION,
    parse_os_version,
)
from sqltools_client.errors import UnsupportedPlatformError
from sqltools_client.types import PlatformInfo, VersionChannel

logger = logging.getLogger(__name__)


_OS_PREFIXES = {
    "windows": "win",
    "darwin": "osx",
    "linux": "linux",
}

_SUPPORTED_ARCHITECTURES = ("x64", "arm64")


def normalize_os(system: str) -> str:
    """Normalize platform.system() output to an OS family name."""
    system = system.lower()
    if system.startswith("win") or system.startswith("cygwin"):
        return "windows"
    return system


def normalize_architecture(machine: str) -> str:
    """Normalize platform.machine() output to a runtime architecture name."""
    machine = machine.lower()
    if machine in ("x86_64", "amd64", "x64"):
        return "x64"
    if machine in ("arm64", "aarch64", "armv8"):
        return "arm64"
    return machine


def get_os_version(os_family: str) -> str:
    """Get the OS release string used for version gating and logging."""
    if os_family == "darwin":
        release = platform.mac_ver()[0]
        if release:
            return release
    if os_family == "windows":
        return platform.version()
    return platform.release()


def _macos_version(os_version: str) -> Optional[tuple]:
    try:
        return parse_os_version(os_version)
    except ValueError:
        return None


def get_runtime_id(os_family: str, architecture: str, os_version: str) -> Optional[str]:
    """
    Map a platform to its service runtime id.

    Returns:
        Runtime id such as "linux-x64", or None if unsupported
    """
    prefix = _OS_PREFIXES.get(os_family)
    if prefix is None or architecture not in _SUPPORTED_ARCHITECTURES:
        return None

    if os_family == "darwin":
        version = _macos_version(os_version)
        if version is None or version < MACOS_MIN_VERSION:
            return None

    return f"{prefix}-{architecture}"


def get_version_channel(os_family: str, os_version: str) -> VersionChannel:
    """
    Select the service build channel for a platform.

    Only macOS releases below LEGACY_MACOS_BELOW select the legacy channel.
    """
    if os_family == "darwin":
        version = _macos_version(os_version)
        if version is not None and version < LEGACY_MACOS_BELOW:
            return VersionChannel.LEGACY
    return VersionChannel.CURRENT


def detect() -> PlatformInfo:
    """
    Detect the current platform without validating it.

    Returns:
        PlatformInfo; runtime_id is None for unsupported platforms
    """
    os_family = normalize_os(platform.system())
    architecture = normalize_architecture(platform.machine())
    os_version = get_os_version(os_family)

    return PlatformInfo(
        os_family=os_family,
        architecture=architecture,
        runtime_id=get_runtime_id(os_family, architecture, os_version),
        os_version=os_version,
        version_channel=get_version_channel(os_family, os_version),
    )


def resolve() -> PlatformInfo:
    """
    Detect the current platform and validate it against the supported matrix.

    Returns:
        PlatformInfo with a runtime id

    Raises:
        UnsupportedPlatformError: If the platform is not supported
    """
    info = detect()
    if not info.is_valid_runtime:
        raise UnsupportedPlatformError(
            f"Unsupported platform: {info}",
            platform=info,
        )

    if info.version_channel is VersionChannel.LEGACY:
        logger.info(f"Platform {info} requires the legacy service channel")

    return info
