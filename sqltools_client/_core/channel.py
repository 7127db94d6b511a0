"""
Language client channel to the service process.

pygls spawns the service over stdio, frames messages, answers unknown
server requests with MethodNotFound and dispatches notifications. The
channel adds what the session needs on top: request timeouts, failing
in-flight requests when the service exits, and error/close callbacks for
the crash policy.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, List, Optional

from pygls.exceptions import JsonRpcException
from pygls.lsp.client import LanguageClient

from sqltools_client._core.lifecycle import terminate_process
from sqltools_client.errors import ResponseError, TransportCrashError

logger = logging.getLogger(__name__)

NotificationHandler = Callable[[Any], None]
ErrorCallback = Callable[[Exception], None]
CloseCallback = Callable[[Optional[int]], None]


def to_plain(value: Any) -> Any:
    """
    Convert deserialized params or results into plain Python values.

    pygls hands custom-method payloads over as namedtuple-like objects;
    handlers here work with dicts and lists.
    """
    if hasattr(value, "_asdict"):
        return {k: to_plain(v) for k, v in value._asdict().items()}
    if isinstance(value, dict):
        return {k: to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_plain(v) for v in value]
    return value


def _consume_result(future: asyncio.Future) -> None:
    # Late answers to abandoned requests are dropped silently
    if not future.cancelled():
        future.exception()


class ServiceLanguageClient(LanguageClient):
    """LanguageClient that reports transport failures to its channel."""

    def __init__(self, channel: "ServiceChannel", name: str, version: str):
        super().__init__(name, version)
        self.channel = channel

    @property
    def process(self) -> Optional[asyncio.subprocess.Process]:
        return self._server

    def report_server_error(self, error: Exception, source: Any) -> None:
        self.channel._report_error(error)

    async def server_exit(self, server: asyncio.subprocess.Process) -> None:
        self.channel._mark_closed(server.returncode)


class ServiceChannel:
    """
    JSON-RPC channel to one service process.

    The process and the channel share one lifetime: close() terminates the
    process, and a process exit closes the channel.

    Usage:
        channel = ServiceChannel("sqltools-client", "1.0.0")
        channel.on_notification("status/changed", handler)
        await channel.start(["MicrosoftSqlToolsServiceLayer"])
        version = await channel.send_request("version", timeout=30)
        await channel.close()
    """

    def __init__(self, name: str, version: str):
        self.client = ServiceLanguageClient(self, name, version)
        self._on_error: Optional[ErrorCallback] = None
        self._on_close: Optional[CloseCallback] = None
        self._started = False
        self._closed: Optional[asyncio.Future] = None
        self._close_task: Optional[asyncio.Task] = None
        self._return_code: Optional[int] = None
        self._error_count = 0

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def on_notification(self, method: str, handler: NotificationHandler) -> None:
        """Route a service notification to handler with plain params."""

        @self.client.feature(method)
        def route(params: Any) -> None:
            handler(to_plain(params))

    def on_error(self, callback: ErrorCallback) -> None:
        self._on_error = callback

    def on_close(self, callback: CloseCallback) -> None:
        self._on_close = callback

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def is_started(self) -> bool:
        return self._started

    @property
    def is_closed(self) -> bool:
        return self._closed is not None and self._closed.done()

    @property
    def return_code(self) -> Optional[int]:
        return self._return_code

    @property
    def error_count(self) -> int:
        return self._error_count

    @property
    def process(self) -> Optional[asyncio.subprocess.Process]:
        return self.client.process

    @property
    def pid(self) -> Optional[int]:
        process = self.process
        return process.pid if process is not None else None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self, cmd: List[str]) -> None:
        """
        Spawn the service and start reading its stdout.

        Raises:
            TransportCrashError: If the process could not be started
        """
        self._closed = asyncio.get_running_loop().create_future()
        try:
            await self.client.start_io(*cmd)
        except OSError as e:
            self._closed.set_result(None)
            raise TransportCrashError(f"Failed to start service {cmd[0]}: {e}") from e

        self._started = True
        logger.debug(f"Started service process (PID: {self.pid}): {' '.join(cmd)}")

    async def wait_closed(self, timeout: Optional[float] = None) -> bool:
        """Wait for the service to exit on its own; False on timeout."""
        if self._closed is None:
            return True
        try:
            await asyncio.wait_for(asyncio.shield(self._closed), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def close(self, grace_period: Optional[float] = 5.0) -> None:
        """Terminate the process, stop the client and fail pending requests."""
        if not self.is_started:
            return
        if self._close_task is None:
            self._close_task = asyncio.ensure_future(self._close(grace_period))
        await asyncio.shield(self._close_task)

    async def _close(self, grace_period: Optional[float]) -> None:
        process = self.process
        if process is not None:
            await terminate_process(process, grace_period=grace_period)

        try:
            await asyncio.wait_for(self.client.stop(), timeout=grace_period)
        except asyncio.TimeoutError:
            logger.warning("Language client did not stop within the grace period")

        self._mark_closed(process.returncode if process is not None else None)

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    def _require_open(self, method: str) -> asyncio.Future:
        if self._closed is None:
            raise TransportCrashError(f"Cannot send {method}: service channel is not started")
        if self._closed.done():
            raise TransportCrashError(f"Cannot send {method}: service channel is closed")
        return self._closed

    async def send_request(self, method: str, params: Any = None, timeout: Optional[float] = None) -> Any:
        """
        Send a request and wait for its result.

        Args:
            method: JSON-RPC method name
            params: lsprotocol params object, or plain JSON values for
                service-specific methods
            timeout: Seconds to wait (None: no limit)

        Raises:
            TransportCrashError: If the channel is closed or closes while waiting
            ResponseError: If the service answered with an error
            asyncio.TimeoutError: If no answer arrived in time
        """
        closed = self._require_open(method)

        future = self.client.protocol.send_request_async(method, params)
        done, _ = await asyncio.wait({future, closed}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)

        if future not in done:
            future.add_done_callback(_consume_result)
            if closed in done:
                raise TransportCrashError(
                    f"Service exited with code {self._return_code} while waiting for {method}"
                )
            raise asyncio.TimeoutError(f"{method} timed out after {timeout}s")

        try:
            result = future.result()
        except JsonRpcException as e:
            raise ResponseError(e.code, e.message, getattr(e, "data", None)) from e
        return to_plain(result)

    def send_notification(self, method: str, params: Any = None) -> None:
        """
        Send a notification.

        Raises:
            TransportCrashError: If the channel is closed
        """
        self._require_open(method)
        self.client.protocol.notify(method, params)

    # -------------------------------------------------------------------------
    # Client hooks
    # -------------------------------------------------------------------------

    def _report_error(self, error: Exception) -> None:
        self._error_count += 1
        logger.error(f"Service transport error: {error}")
        if self._on_error is not None:
            self._on_error(error)

    def _mark_closed(self, return_code: Optional[int]) -> None:
        if self._closed is None or self._closed.done():
            return

        self._return_code = return_code
        self._closed.set_result(return_code)
        logger.debug(f"Service process exited with code {return_code}")
        if self._on_close is not None:
            self._on_close(return_code)
