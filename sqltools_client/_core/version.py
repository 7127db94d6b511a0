"""
Version constants and compatibility checking for sqltools-client.

sqltools-client versions independently of the service it drives:
- CLIENT_VERSION: User-facing package version
- SERVICE_COMPATIBLE_VERSION: Prefix the running service version must carry
- LEGACY_MACOS_BELOW: macOS releases below this use the legacy service channel
"""

from __future__ import annotations

import re
from typing import Optional, Tuple

# sqltools-client version (user-facing, independent semver)
CLIENT_VERSION = "0.1.0"

# Running service must report a version starting with this string
SERVICE_COMPATIBLE_VERSION = "1.4"

# Oldest macOS the service runs on at all
MACOS_MIN_VERSION = (10, 10)

# macOS releases below this run the legacy (v1) service build
LEGACY_MACOS_BELOW = (10, 12)

SERVICE_NAME = "SQL Tools Service"


def parse_os_version(version: str) -> Tuple[int, ...]:
    """
    Parse a dotted OS version string into a tuple of ints.

    Args:
        version: Version string like "10.15.7" or "22.04"

    Returns:
        Tuple of numeric components, e.g. (10, 15, 7)

    Raises:
        ValueError: If version string has no leading numeric component
    """
    match = re.match(r"^\s*(\d+(?:\.\d+)*)", version)
    if not match:
        raise ValueError(f"Invalid version string: {version}")

    return tuple(int(part) for part in match.group(1).split("."))


def is_service_compatible(
    service_version: Optional[str],
    required_prefix: str = SERVICE_COMPATIBLE_VERSION,
) -> bool:
    """
    Check if a service version string satisfies the required prefix.

    This is a strict string prefix test, not a semantic version comparison:
    "1.4.0-alpha.12" is compatible with "1.4", "1.40.0" is too.

    Args:
        service_version: Version reported by the service (may be None)
        required_prefix: Prefix the version must start with

    Returns:
        True if compatible, False otherwise
    """
    if not isinstance(service_version, str):
        return False
    return service_version.startswith(required_prefix)


def get_download_url(url_template: str, version: str, file_name: str) -> str:
    """
    Expand a download URL template.

    Args:
        url_template: Template with {version} and {file_name} placeholders
        version: Service version (e.g., "1.4.0-alpha.12")
        file_name: Platform archive name (e.g., "linux-x64-netcoreapp2.2.tar.gz")

    Returns:
        Archive download URL
    """
    return url_template.format(version=version, file_name=file_name)
