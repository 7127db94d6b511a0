"""
Version compatibility gate for the service session.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, TYPE_CHECKING

from sqltools_client._core.version import is_service_compatible
from sqltools_client.errors import ResponseError, TransportCrashError
from sqltools_client.host import (
    EVENT_NOT_COMPATIBLE,
    SERVICE_NOT_COMPATIBLE_MESSAGE,
    show_error_prompt,
)

if TYPE_CHECKING:
    from sqltools_client._core.channel import ServiceChannel
    from sqltools_client.host import TelemetrySink, UserInterface

logger = logging.getLogger(__name__)

VERSION_REQUEST = "version"


async def request_service_version(
    channel: "ServiceChannel",
    timeout: Optional[float] = None,
) -> Optional[str]:
    """
    Ask the running service for its version.

    Returns:
        Version string, or None if the service did not answer with one

    Raises:
        TransportCrashError: If the channel closed while waiting
    """
    try:
        result = await channel.send_request(VERSION_REQUEST, None, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Version request timed out after {timeout}s")
        return None
    except ResponseError as e:
        logger.warning(f"Version request failed: {e}")
        return None

    if not isinstance(result, str):
        logger.warning(f"Version request returned a non-string result: {result!r}")
        return None
    return result


async def check_service_compatibility(
    channel: "ServiceChannel",
    required_prefix: str,
    ui: "UserInterface",
    telemetry: Optional["TelemetrySink"] = None,
    timeout: Optional[float] = None,
) -> bool:
    """
    Check the running service version against the required prefix.

    Runs once after the session is ready. The comparison is a strict
    string prefix test.

    Args:
        channel: Ready service channel
        required_prefix: Prefix the service version must start with
        ui: Shows the "not compatible" error on mismatch
        telemetry: Records one event on mismatch
        timeout: Seconds to wait for the version (None: no limit)

    Returns:
        True if compatible, False otherwise
    """
    try:
        version = await request_service_version(channel, timeout=timeout)
    except TransportCrashError as e:
        # The crash prompt is already on screen
        logger.warning(f"Version check aborted: {e}")
        return False

    logger.debug(f"Service version: {version}")

    if not is_service_compatible(version, required_prefix):
        logger.error(
            f"{SERVICE_NOT_COMPATIBLE_MESSAGE}: service={version!r}, required prefix={required_prefix!r}"
        )
        show_error_prompt(ui, SERVICE_NOT_COMPATIBLE_MESSAGE)
        if telemetry is not None:
            telemetry.send_event(
                EVENT_NOT_COMPATIBLE,
                {"serviceVersion": version or "", "requiredVersion": required_prefix},
            )
        return False

    logger.debug(f"Version check passed: service={version}")
    return True
