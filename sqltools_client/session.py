"""
Service session supervision for sqltools-client.

A session is one spawned SQL Tools Service process plus its JSON-RPC
channel. The supervisor provisions the service, spawns it, performs the
protocol handshake, routes steady-state notifications to the host and
applies the crash policy: a crashed service is reported once and never
restarted.

Usage:
    factory = SessionFactory(host=Host())
    session = factory.create()
    result = await session.initialize(ClientConfig.from_env())

    if session.is_ready:
        response = await session.send_request("connection/list", {})

    await session.stop()
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Callable, Optional, Set, Tuple

from lsprotocol import types as lsp

from sqltools_client._core import platform as platform_resolver
from sqltools_client._core.channel import ServiceChannel
from sqltools_client._core.compatibility import check_service_compatibility
from sqltools_client._core.lifecycle import build_launch_command
from sqltools_client._core.provider import ServerProvider
from sqltools_client._core.version import CLIENT_VERSION, SERVICE_NAME
from sqltools_client.config import ClientConfig, ServiceConfig
from sqltools_client.errors import (
    AlreadyInitializedError,
    CompatibilityError,
    ConfigError,
    ProvisioningError,
    ResponseError,
    SessionNotReadyError,
    TransportCrashError,
    UnsupportedPlatformError,
)
from sqltools_client.host import (
    COMMANDS_NOT_AVAILABLE_WHILE_INSTALLING,
    EVENT_PROVISIONING_FAILED,
    EVENT_SERVICE_CRASH,
    EVENT_UNSUPPORTED_PLATFORM,
    PROVISIONING_FAILED_MESSAGE,
    SERVICE_CRASH_BUTTON,
    SERVICE_CRASH_LINK,
    SERVICE_CRASH_MESSAGE,
    SERVICE_NOT_COMPATIBLE_MESSAGE,
    UNSUPPORTED_PLATFORM_MESSAGE,
    Host,
    OutputProgressReporter,
    TelemetrySink,
    UserInterface,
    show_error_prompt,
)
from sqltools_client.types import (
    CloseAction,
    ErrorAction,
    InitializationResult,
    PlatformInfo,
    ResolvedServer,
    SessionState,
    VersionChannel,
)

logger = logging.getLogger(__name__)

CLIENT_NAME = "sqltools-client"
TELEMETRY_NOTIFICATION = lsp.TELEMETRY_EVENT
STATUS_CHANGED_NOTIFICATION = "status/changed"


# =============================================================================
# Crash policy
# =============================================================================


class ServiceErrorHandler:
    """
    Decides what happens when the service transport fails.

    Crashes leave the editor in a state that only a reload recovers from,
    so both callbacks prompt the user and stop the session.
    """

    def __init__(self, ui: UserInterface, telemetry: TelemetrySink):
        self.ui = ui
        self.telemetry = telemetry

    def show_on_error_prompt(self) -> None:
        """Record a crash and show the prompt linking to the known issues page."""
        self.telemetry.send_event(EVENT_SERVICE_CRASH)
        show_error_prompt(
            self.ui,
            SERVICE_CRASH_MESSAGE,
            SERVICE_CRASH_BUTTON,
            links={SERVICE_CRASH_BUTTON: SERVICE_CRASH_LINK},
        )

    def error(self, error: Exception, message: Optional[dict], count: int) -> ErrorAction:
        self.show_on_error_prompt()
        return ErrorAction.SHUTDOWN

    def closed(self) -> CloseAction:
        self.show_on_error_prompt()
        return CloseAction.DO_NOT_RESTART


# =============================================================================
# Notification routes
# =============================================================================


def _event_payload(params: Any) -> dict:
    # Telemetry arrives either as {"params": {...}} or flat
    if not isinstance(params, dict):
        return {}
    inner = params.get("params")
    return inner if isinstance(inner, dict) else params


def make_telemetry_handler(telemetry: TelemetrySink) -> Callable[[Any], None]:
    """Forward telemetry/event notifications verbatim to the telemetry sink."""

    def handle(params: Any) -> None:
        payload = _event_payload(params)
        event_name = payload.get("eventName")
        if not event_name:
            logger.warning(f"Ignoring telemetry notification without eventName: {params!r}")
            return
        telemetry.send_event(event_name, payload.get("properties"), payload.get("measures"))

    return handle


def make_status_handler(host: Host) -> Callable[[Any], None]:
    """Forward status/changed notifications to the status view."""

    def handle(params: Any) -> None:
        if not isinstance(params, dict):
            logger.warning(f"Ignoring malformed status notification: {params!r}")
            return
        host.status_view.language_service_status_changed(params.get("ownerUri", ""), params.get("status", ""))

    return handle


# =============================================================================
# Supervisor
# =============================================================================


class SessionSupervisor:
    """
    Owns one service process and its JSON-RPC channel.

    The process and the channel share one lifetime: closing the channel
    terminates the process and a process exit closes the channel.

    Create through SessionFactory; initialize() may be called once.
    """

    def __init__(
        self,
        host: Optional[Host] = None,
        service_config: Optional[ServiceConfig] = None,
        resolver: Callable[[], PlatformInfo] = platform_resolver.resolve,
        error_handler: Optional[ServiceErrorHandler] = None,
    ):
        self.host = host or Host()
        self.service_config = service_config or ServiceConfig.default()
        self.resolver = resolver
        self.error_handler = error_handler or ServiceErrorHandler(self.host.ui, self.host.telemetry)

        self._state = SessionState.UNINITIALIZED
        self._initialize_called = False
        self._config: Optional[ClientConfig] = None
        self._platform: Optional[PlatformInfo] = None
        self._server: Optional[ResolvedServer] = None

        self._channel: Optional[ServiceChannel] = None
        self._compatibility: Optional["asyncio.Task[bool]"] = None
        self._tasks: Set[asyncio.Task] = set()

        self._stopping = False
        self._crash_reported = False

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is SessionState.READY

    @property
    def platform(self) -> Optional[PlatformInfo]:
        return self._platform

    @property
    def server(self) -> Optional[ResolvedServer]:
        return self._server

    @property
    def channel(self) -> Optional[ServiceChannel]:
        return self._channel

    @property
    def process(self) -> Optional[asyncio.subprocess.Process]:
        if self._channel is None or self._channel.is_closed:
            return None
        return self._channel.process

    @property
    def compatibility(self) -> Optional["asyncio.Task[bool]"]:
        return self._compatibility

    def _set_state(self, state: SessionState) -> None:
        if state is not self._state:
            logger.debug(f"Session state {self._state.value} -> {state.value}")
            self._state = state

    def _spawn(self, coro: Any) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # -------------------------------------------------------------------------
    # Initialization
    # -------------------------------------------------------------------------

    async def initialize(
        self,
        config: Optional[ClientConfig] = None,
        wait_for_compatibility: bool = False,
    ) -> InitializationResult:
        """
        Provision, spawn and handshake with the service.

        Args:
            config: Client settings (default: ClientConfig.from_env())
            wait_for_compatibility: Also wait for the version check and
                raise CompatibilityError if it fails

        Returns:
            InitializationResult; result.compatibility is the version check task.
            success is False if stop() was called before the service was ready.

        Raises:
            AlreadyInitializedError: If called more than once
            UnsupportedPlatformError: If the platform is not supported
            ProvisioningError: If the service could not be installed
            TransportCrashError: If the service died during startup
            CompatibilityError: If wait_for_compatibility and the version check failed
        """
        if self._initialize_called:
            raise AlreadyInitializedError("Service session is already initialized")
        self._initialize_called = True

        config = config or ClientConfig.from_env()
        self._config = config
        output = self.host.output

        output.append_line(COMMANDS_NOT_AVAILABLE_WHILE_INSTALLING)
        output.append_line()

        self._set_state(SessionState.PROVISIONING)
        try:
            platform = self.resolver()
        except UnsupportedPlatformError as e:
            detected = e.platform if e.platform is not None else platform_resolver.detect()
            output.append_line(f"Platform: {detected}")
            show_error_prompt(self.host.ui, UNSUPPORTED_PLATFORM_MESSAGE)
            self.host.telemetry.send_event(EVENT_UNSUPPORTED_PLATFORM, {"platform": str(detected)})
            self._set_state(SessionState.SHUT_DOWN)
            raise

        self._platform = platform
        output.append(f"Platform: {platform}")
        if platform.runtime_id:
            output.append_line(f" ({platform.display_name})")
        else:
            output.append_line()
        output.append_line()

        server, installed = await self._provision(platform, config)
        self._server = server
        result = InitializationResult(
            success=False,
            server_path=server.path,
            platform=platform,
            installed=installed,
        )

        if self._stopping:
            logger.info(f"Session stopped during provisioning; not starting {SERVICE_NAME}")
            return result

        if not await self._start(server, config):
            return result

        self._compatibility = self._spawn(self._run_compatibility_gate(config))
        result.success = True
        result.compatibility = self._compatibility

        if wait_for_compatibility and not await self._compatibility:
            if self._state is SessionState.CRASHED:
                raise TransportCrashError(f"{SERVICE_NAME} crashed during the version check")
            raise CompatibilityError(
                SERVICE_NOT_COMPATIBLE_MESSAGE,
                required_prefix=config.required_server_version_prefix,
            )

        return result

    def _select_channel(self, platform: PlatformInfo, config: ClientConfig) -> VersionChannel:
        if config.use_legacy_service_version:
            return VersionChannel.LEGACY
        return platform.version_channel

    async def _provision(self, platform: PlatformInfo, config: ClientConfig) -> Tuple[ResolvedServer, bool]:
        reporter = OutputProgressReporter(self.host.output)

        try:
            channel = self._select_channel(platform, config)
            try:
                descriptor = self.service_config.descriptor_for(channel)
            except ConfigError as e:
                raise ProvisioningError(str(e)) from e
            logger.info(f"Using {channel.value} service channel ({descriptor.version})")

            provider = ServerProvider(
                descriptor,
                config.get_install_root(),
                on_event=reporter,
                override_path=config.service_path,
            )
            server = await provider.get_or_download_server(platform)
        except ProvisioningError as e:
            logger.error(f"Service provisioning failed: {e}")
            show_error_prompt(self.host.ui, PROVISIONING_FAILED_MESSAGE)
            self.host.telemetry.send_event(
                EVENT_PROVISIONING_FAILED,
                {"platform": str(platform), "error": type(e).__name__},
            )
            self._set_state(SessionState.SHUT_DOWN)
            raise

        return server, reporter.did_install

    def _open_channel(self) -> ServiceChannel:
        channel = ServiceChannel(CLIENT_NAME, CLIENT_VERSION)
        channel.on_notification(TELEMETRY_NOTIFICATION, make_telemetry_handler(self.host.telemetry))
        channel.on_notification(STATUS_CHANGED_NOTIFICATION, make_status_handler(self.host))
        channel.on_error(self._on_transport_error)
        channel.on_close(self._on_transport_close)
        return channel

    async def _start(self, server: ResolvedServer, config: ClientConfig) -> bool:
        """Spawn and handshake; False if the session was stopped meanwhile."""
        self._set_state(SessionState.STARTING)
        cmd = build_launch_command(server, config)
        logger.info(f"Starting {SERVICE_NAME}: {' '.join(cmd)}")

        channel = self._open_channel()
        self._channel = channel
        try:
            await channel.start(cmd)
        except TransportCrashError as e:
            self._report_crash(e)
            self._set_state(SessionState.CRASHED)
            raise

        try:
            await self._handshake(channel, config)
        except asyncio.TimeoutError:
            error = TransportCrashError(f"{SERVICE_NAME} did not answer initialize within {config.startup_timeout}s")
            await self._abort_start(channel, error)
            raise error from None
        except ResponseError as e:
            error = TransportCrashError(f"{SERVICE_NAME} rejected initialize: {e}")
            await self._abort_start(channel, error)
            raise error from e
        except TransportCrashError:
            await self._await_release()
            if self._stopping:
                return False
            raise

        if self._stopping:
            return False

        self._set_state(SessionState.READY)
        logger.info(f"{SERVICE_NAME} session is ready (PID: {channel.pid})")
        return True

    async def _abort_start(self, channel: ServiceChannel, error: TransportCrashError) -> None:
        self._on_transport_error(error)
        await channel.close()
        await self._await_release()

    async def _handshake(self, channel: ServiceChannel, config: ClientConfig) -> None:
        params = lsp.InitializeParams(
            capabilities=lsp.ClientCapabilities(),
            process_id=os.getpid(),
            client_info=lsp.ClientInfo(name=CLIENT_NAME, version=CLIENT_VERSION),
            locale=config.locale or None,
            root_uri=None,
            trace=lsp.TraceValue.Verbose if config.enable_logging else lsp.TraceValue.Off,
        )

        result = await channel.send_request(lsp.INITIALIZE, params, timeout=config.startup_timeout)
        logger.debug(f"Service capabilities: {getattr(result, 'capabilities', None)}")

        channel.send_notification(lsp.INITIALIZED, lsp.InitializedParams())

    async def _run_compatibility_gate(self, config: ClientConfig) -> bool:
        channel = self._channel
        if channel is None:
            return False

        compatible = await check_service_compatibility(
            channel,
            config.required_server_version_prefix,
            self.host.ui,
            telemetry=self.host.telemetry,
            timeout=config.request_timeout,
        )
        if not compatible and self._state is SessionState.READY:
            self._set_state(SessionState.COMPATIBILITY_FAILED)
        return compatible

    # -------------------------------------------------------------------------
    # Crash handling
    # -------------------------------------------------------------------------

    def _report_crash(self, error: Optional[Exception]) -> None:
        """Report a crash to the user once per session."""
        if self._crash_reported:
            return
        self._crash_reported = True

        if error is not None:
            count = self._channel.error_count if self._channel else 0
            action = self.error_handler.error(error, None, max(count, 1))
            if action is not ErrorAction.SHUTDOWN:
                logger.warning(f"Ignoring error action {action.value}: crashed sessions are not resumed")
        else:
            action = self.error_handler.closed()
            if action is not CloseAction.DO_NOT_RESTART:
                logger.warning(f"Ignoring close action {action.value}: crashed sessions are not restarted")

    def _on_transport_error(self, error: Exception) -> None:
        if self._stopping:
            logger.debug(f"Transport error during shutdown: {error}")
            return

        logger.error(f"{SERVICE_NAME} transport error: {error}")
        self._report_crash(error)
        self._set_state(SessionState.CRASHED)

        channel = self._channel
        if channel is not None and not channel.is_closed:
            self._spawn(channel.close())

    def _on_transport_close(self, return_code: Optional[int]) -> None:
        if self._stopping:
            if not self._state.is_terminal:
                self._set_state(SessionState.SHUT_DOWN)
            return

        logger.error(f"{SERVICE_NAME} exited unexpectedly with code {return_code}")
        self._report_crash(None)
        self._set_state(SessionState.CRASHED)

        if self._channel is not None:
            self._spawn(self._channel.close())

    async def _await_release(self) -> None:
        current = asyncio.current_task()
        pending = [
            t for t in self._tasks
            if not t.done() and t is not current and t is not self._compatibility
        ]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # -------------------------------------------------------------------------
    # Protocol access
    # -------------------------------------------------------------------------

    def _require_ready(self) -> ServiceChannel:
        if self._state is SessionState.COMPATIBILITY_FAILED:
            raise CompatibilityError(
                f"{SERVICE_NOT_COMPATIBLE_MESSAGE}; language features are disabled",
                required_prefix=self._config.required_server_version_prefix if self._config else None,
            )
        if self._state is not SessionState.READY or self._channel is None:
            raise SessionNotReadyError(self._state)
        return self._channel

    async def send_request(self, method: str, params: Any = None, timeout: Optional[float] = None) -> Any:
        """
        Send a request to the service.

        Raises:
            SessionNotReadyError: If the session is not Ready
            CompatibilityError: If the version check failed
        """
        return await self._require_ready().send_request(method, params, timeout=timeout)

    async def send_notification(self, method: str, params: Any = None) -> None:
        self._require_ready().send_notification(method, params)

    # -------------------------------------------------------------------------
    # Shutdown
    # -------------------------------------------------------------------------

    async def stop(self, timeout: float = 5.0) -> None:
        """
        Shut the service down gracefully.

        Sends shutdown/exit, closes the channel and terminates the process.
        Safe to call in any state; an initialize() still provisioning or
        starting returns without leaving a process behind.
        """
        self._stopping = True

        channel = self._channel
        if channel is not None and channel.is_started and not channel.is_closed:
            try:
                await channel.send_request(lsp.SHUTDOWN, None, timeout=timeout)
                channel.send_notification(lsp.EXIT)
                await channel.wait_closed(timeout)
            except (TransportCrashError, ResponseError, asyncio.TimeoutError) as e:
                logger.warning(f"{SERVICE_NAME} did not shut down cleanly: {e}")

        if channel is not None:
            await channel.close(grace_period=timeout)

        await self._await_release()

        if not self._state.is_terminal:
            self._set_state(SessionState.SHUT_DOWN)
        logger.debug(f"{SERVICE_NAME} session stopped")


# =============================================================================
# Factory
# =============================================================================


class SessionFactory:
    """
    Hands out the single session of an extension activation.

    A second create() fails instead of spawning a second service.
    """

    def __init__(
        self,
        host: Optional[Host] = None,
        service_config: Optional[ServiceConfig] = None,
        resolver: Callable[[], PlatformInfo] = platform_resolver.resolve,
    ):
        self.host = host or Host()
        self.service_config = service_config
        self.resolver = resolver
        self._session: Optional[SessionSupervisor] = None

    @property
    def session(self) -> Optional[SessionSupervisor]:
        return self._session

    def create(self) -> SessionSupervisor:
        """
        Create the session for this activation.

        Raises:
            AlreadyInitializedError: If a session was already created
        """
        if self._session is not None:
            raise AlreadyInitializedError("A service session already exists for this activation")

        self._session = SessionSupervisor(
            host=self.host,
            service_config=self.service_config,
            resolver=self.resolver,
        )
        return self._session
