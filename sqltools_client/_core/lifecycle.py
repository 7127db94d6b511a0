"""
Service process lifecycle for sqltools-client.

Handles:
- Launch command construction (native vs. managed-runtime hosted builds)
- Graceful termination with a kill fallback

The process itself is spawned by the language client in _core.channel.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from sqltools_client.config import ClientConfig
from sqltools_client.types import LaunchStrategy, ResolvedServer

logger = logging.getLogger(__name__)

TERMINATE_GRACE_PERIOD = 5.0


def build_launch_command(server: ResolvedServer, config: ClientConfig) -> List[str]:
    """
    Build the service command line.

    <binary> [--enable-logging] [--locale <locale>]
    <runtime-host> <binary> [--enable-logging] [--locale <locale>]

    Args:
        server: Provisioned service with its launch strategy
        config: Client settings

    Returns:
        Command as an argument list
    """
    if server.launch is LaunchStrategy.MANAGED:
        cmd = [config.runtime_host, str(server.path)]
    else:
        cmd = [str(server.path)]

    if config.enable_logging:
        cmd.append("--enable-logging")

    if config.locale:
        cmd.extend(["--locale", config.locale])

    return cmd


async def terminate_process(
    process: asyncio.subprocess.Process,
    grace_period: Optional[float] = TERMINATE_GRACE_PERIOD,
) -> Optional[int]:
    """Terminate a process, killing it if it outlives the grace period."""
    if process.returncode is not None:
        return process.returncode

    try:
        process.terminate()
    except ProcessLookupError:
        return process.returncode

    try:
        return await asyncio.wait_for(process.wait(), timeout=grace_period)
    except asyncio.TimeoutError:
        logger.warning(f"Service process {process.pid} did not exit, killing it")
        try:
            process.kill()
        except ProcessLookupError:
            pass
        return await process.wait()

