"""
Tests for sqltools_client.session module.
"""

import asyncio
import json
import os
import sys
from dataclasses import replace
from unittest.mock import MagicMock, patch

import pytest
import requests

from sqltools_client._core.lifecycle import build_launch_command
from sqltools_client._core.provider import ServerProvider
from sqltools_client.config import DEFAULT_SERVICE_CONFIG, ClientConfig, ServiceConfig
from sqltools_client.errors import (
    AlreadyInitializedError,
    CompatibilityError,
    ConfigError,
    DownloadError,
    ProvisioningError,
    ResponseError,
    SessionNotReadyError,
    TransportCrashError,
    UnsupportedPlatformError,
)
from sqltools_client.host import (
    COMMANDS_NOT_AVAILABLE_WHILE_INSTALLING,
    EVENT_NOT_COMPATIBLE,
    EVENT_PROVISIONING_FAILED,
    EVENT_SERVICE_CRASH,
    EVENT_UNSUPPORTED_PLATFORM,
    PROVISIONING_FAILED_MESSAGE,
    SERVICE_CRASH_BUTTON,
    SERVICE_CRASH_MESSAGE,
    SERVICE_INSTALLED,
    SERVICE_NOT_COMPATIBLE_MESSAGE,
)
from sqltools_client.session import (
    ServiceErrorHandler,
    SessionFactory,
    SessionSupervisor,
    make_telemetry_handler,
)
from sqltools_client.types import (
    CloseAction,
    ErrorAction,
    ExecutableSpec,
    LaunchStrategy,
    PlatformInfo,
    ResolvedServer,
    SessionState,
    VersionChannel,
)

from tests.conftest import EXECUTABLE_NAME, mock_http_response, telemetry_events

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="fake service runs through a shell wrapper")

REQUESTS_GET = "sqltools_client._core.download.requests.get"


async def wait_until(condition, timeout: float = 5.0) -> None:
    """Poll until condition() is true."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not condition():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(0.02)


@pytest.fixture
def client_config(tmp_path, local_service, service_log):
    return ClientConfig(
        service_path=str(local_service),
        install_root=tmp_path / "install",
        startup_timeout=5.0,
        request_timeout=5.0,
    )


@pytest.fixture
async def supervisor(mock_host, linux_platform):
    supervisor = SessionSupervisor(host=mock_host, resolver=lambda: linux_platform)
    yield supervisor
    await supervisor.stop(timeout=1.0)


class TestInitialize:
    """Tests for SessionSupervisor.initialize."""

    @pytest.mark.asyncio
    async def test_reaches_ready(self, supervisor, client_config, local_service, service_log, mock_host):
        result = await supervisor.initialize(client_config)

        assert result.success is True
        assert result.installed is False
        assert result.server_path == local_service
        assert supervisor.state == SessionState.READY
        assert supervisor.is_ready
        assert supervisor.process is not None
        assert supervisor.process.pid == supervisor.channel.pid

        await service_log.wait_for(lambda ms: len(ms) >= 2)
        assert service_log.argv == []
        assert service_log.methods[:2] == ["initialize", "initialized"]
        params = service_log.messages[0]["params"]
        assert params["clientInfo"]["name"] == "sqltools-client"
        assert params["processId"] == os.getpid()

        mock_host.output.append_line.assert_any_call(COMMANDS_NOT_AVAILABLE_WHILE_INSTALLING)

        assert await result.compatibility is True
        assert supervisor.state == SessionState.READY

    @pytest.mark.asyncio
    async def test_launch_flags(self, supervisor, client_config, service_log):
        config = replace(client_config, enable_logging=True, locale="de")

        await supervisor.initialize(config)

        assert service_log.argv == ["--enable-logging", "--locale", "de"]
        params = service_log.messages[0]["params"]
        assert params["locale"] == "de"
        assert params["trace"] == "verbose"

    @pytest.mark.asyncio
    async def test_second_initialize_raises(self, supervisor, client_config, service_log):
        await supervisor.initialize(client_config)

        with pytest.raises(AlreadyInitializedError):
            await supervisor.initialize(client_config)

        assert service_log.spawned == 1
        assert supervisor.state == SessionState.READY

    @pytest.mark.asyncio
    async def test_wait_for_compatibility(self, supervisor, client_config):
        result = await supervisor.initialize(client_config, wait_for_compatibility=True)

        assert result.compatibility.done()
        assert result.compatibility.result() is True


class TestVersionChannels:
    """Tests for service channel selection."""

    @pytest.fixture
    def service_config(self, descriptor):
        legacy = replace(
            descriptor,
            version="1.0.0",
            executables={
                "linux": ExecutableSpec(f"{EXECUTABLE_NAME}.dll", LaunchStrategy.MANAGED),
                "darwin": ExecutableSpec(f"{EXECUTABLE_NAME}.dll", LaunchStrategy.MANAGED),
            },
        )
        current = replace(
            descriptor,
            executables={
                "linux": ExecutableSpec(EXECUTABLE_NAME),
                "darwin": ExecutableSpec(EXECUTABLE_NAME),
            },
        )
        return ServiceConfig({VersionChannel.CURRENT: current, VersionChannel.LEGACY: legacy})

    @pytest.fixture
    def managed_config(self, client_config):
        # The shell stands in for the managed runtime host
        return replace(client_config, runtime_host="/bin/sh")

    @pytest.mark.asyncio
    async def test_legacy_override(self, mock_host, linux_platform, service_config, managed_config, local_service, service_log):
        supervisor = SessionSupervisor(host=mock_host, service_config=service_config, resolver=lambda: linux_platform)
        config = replace(managed_config, use_legacy_service_version=True)

        await supervisor.initialize(config)

        assert supervisor.server.launch == LaunchStrategy.MANAGED
        assert build_launch_command(supervisor.server, config) == ["/bin/sh", str(local_service)]
        assert supervisor.is_ready
        assert service_log.spawned == 1
        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_legacy_platform(self, mock_host, legacy_macos_platform, service_config, managed_config, service_log):
        supervisor = SessionSupervisor(host=mock_host, service_config=service_config, resolver=lambda: legacy_macos_platform)

        await supervisor.initialize(managed_config)

        assert supervisor.server.launch == LaunchStrategy.MANAGED
        assert supervisor.is_ready
        assert service_log.spawned == 1
        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_current_platform(self, mock_host, linux_platform, service_config, client_config, local_service):
        supervisor = SessionSupervisor(host=mock_host, service_config=service_config, resolver=lambda: linux_platform)

        await supervisor.initialize(client_config)

        assert supervisor.server.launch == LaunchStrategy.NATIVE
        assert build_launch_command(supervisor.server, client_config) == [str(local_service)]
        await supervisor.stop()

    @pytest.mark.parametrize("use_legacy", [True, False])
    @pytest.mark.asyncio
    async def test_unconfigured_legacy_channel(
        self, mock_host, linux_platform, legacy_macos_platform, client_config, service_log, use_legacy
    ):
        platform = linux_platform if use_legacy else legacy_macos_platform
        service_config = ServiceConfig.from_dict({"current": DEFAULT_SERVICE_CONFIG["current"]})
        supervisor = SessionSupervisor(host=mock_host, service_config=service_config, resolver=lambda: platform)
        config = replace(client_config, use_legacy_service_version=use_legacy)

        with pytest.raises(ProvisioningError) as exc_info:
            await supervisor.initialize(config)
        await asyncio.sleep(0)

        assert isinstance(exc_info.value.__cause__, ConfigError)
        assert supervisor.state == SessionState.SHUT_DOWN
        mock_host.ui.show_error_message.assert_called_once_with(PROVISIONING_FAILED_MESSAGE)
        assert len(telemetry_events(mock_host, EVENT_PROVISIONING_FAILED)) == 1
        assert service_log.spawned == 0


class TestProvisioning:
    """Tests for provisioning inside initialize."""

    @pytest.mark.asyncio
    async def test_downloads_when_absent(self, tmp_path, mock_host, linux_platform, descriptor, service_archive, service_log):
        supervisor = SessionSupervisor(
            host=mock_host,
            service_config=ServiceConfig({VersionChannel.CURRENT: descriptor}),
            resolver=lambda: linux_platform,
        )
        config = ClientConfig(install_root=tmp_path / "install")

        with patch(REQUESTS_GET, return_value=mock_http_response(service_archive)):
            result = await supervisor.initialize(config)

        expected = tmp_path / "install" / "1.4.0-alpha.12" / "linux-x64" / EXECUTABLE_NAME
        assert result.server_path == expected
        assert result.installed is True
        assert expected.is_file()
        assert supervisor.is_ready
        assert service_log.spawned == 1
        mock_host.output.append_line.assert_any_call(SERVICE_INSTALLED)
        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_download_failure(self, tmp_path, mock_host, linux_platform, descriptor, service_log):
        supervisor = SessionSupervisor(
            host=mock_host,
            service_config=ServiceConfig({VersionChannel.CURRENT: descriptor}),
            resolver=lambda: linux_platform,
        )
        config = ClientConfig(install_root=tmp_path / "install")

        with patch(REQUESTS_GET, side_effect=requests.exceptions.ConnectionError("offline")):
            with pytest.raises(DownloadError):
                await supervisor.initialize(config)
        await asyncio.sleep(0)

        assert service_log.spawned == 0
        assert supervisor.state == SessionState.SHUT_DOWN
        assert len(telemetry_events(mock_host, EVENT_PROVISIONING_FAILED)) == 1
        mock_host.ui.show_error_message.assert_called_once()

    @pytest.mark.asyncio
    async def test_unsupported_platform(self, mock_host, client_config, service_log):
        platform = PlatformInfo("freebsd", "x64", None, "13.2")

        def resolver():
            raise UnsupportedPlatformError("Unsupported platform", platform=platform)

        supervisor = SessionSupervisor(host=mock_host, resolver=resolver)

        with pytest.raises(UnsupportedPlatformError):
            await supervisor.initialize(client_config)
        await asyncio.sleep(0)

        assert service_log.spawned == 0
        assert supervisor.state == SessionState.SHUT_DOWN
        events = telemetry_events(mock_host, EVENT_UNSUPPORTED_PLATFORM)
        assert len(events) == 1
        assert events[0].args[1] == {"platform": "freebsd 13.2, architecture: x64"}
        mock_host.ui.show_error_message.assert_called_once()


class TestNotificationRouting:
    """Tests for steady-state notification routing."""

    @pytest.mark.asyncio
    async def test_routes_telemetry_and_status(self, supervisor, client_config, mock_host, monkeypatch):
        monkeypatch.setenv("FAKE_SERVICE_NOTIFY", json.dumps([
            ["telemetry/event", {
                "params": {"eventName": "QueryExecuted", "properties": {"kind": "select"}, "measures": {"ms": 12.0}},
            }],
            ["unknown/notification", {}],
            ["status/changed", {"ownerUri": "file:///query.sql", "status": "IntelliSense ready"}],
        ]))

        await supervisor.initialize(client_config)
        status_changed = mock_host.status_view.language_service_status_changed
        await wait_until(lambda: status_changed.called)

        mock_host.telemetry.send_event.assert_any_call("QueryExecuted", {"kind": "select"}, {"ms": 12.0})
        status_changed.assert_called_once_with("file:///query.sql", "IntelliSense ready")
        assert supervisor.state == SessionState.READY

    def test_flat_telemetry_payload(self):
        telemetry = MagicMock()

        make_telemetry_handler(telemetry)({"eventName": "Connect", "properties": {"a": "b"}})
        make_telemetry_handler(telemetry)({"properties": {}})

        telemetry.send_event.assert_called_once_with("Connect", {"a": "b"}, None)


class TestRequests:
    """Tests for request gating."""

    @pytest.mark.asyncio
    async def test_request_before_ready(self, supervisor):
        with pytest.raises(SessionNotReadyError) as exc_info:
            await supervisor.send_request("connection/list")

        assert exc_info.value.state == SessionState.UNINITIALIZED

    @pytest.mark.asyncio
    async def test_request_when_ready(self, supervisor, client_config, service_log):
        await supervisor.initialize(client_config)

        assert await supervisor.send_request("echo", {"server": "localhost"}) == {"server": "localhost"}

        await supervisor.send_notification("sqltools/refresh", {"ownerUri": "file:///a.sql"})
        await service_log.wait_for(lambda ms: any(m.get("method") == "sqltools/refresh" for m in ms))

    @pytest.mark.asyncio
    async def test_error_response(self, supervisor, client_config):
        await supervisor.initialize(client_config)

        with pytest.raises(ResponseError) as exc_info:
            await supervisor.send_request("fail", {})

        assert exc_info.value.code == -32000
        assert supervisor.is_ready


class TestCompatibilityGate:
    """Tests for the version check after Ready."""

    @pytest.mark.asyncio
    async def test_incompatible_service(self, supervisor, client_config, mock_host, monkeypatch):
        monkeypatch.setenv("FAKE_SERVICE_VERSION", "3.9.0")

        result = await supervisor.initialize(client_config)

        assert await result.compatibility is False
        await asyncio.sleep(0)

        assert supervisor.state == SessionState.COMPATIBILITY_FAILED
        mock_host.ui.show_error_message.assert_called_once_with(SERVICE_NOT_COMPATIBLE_MESSAGE)
        assert len(telemetry_events(mock_host, EVENT_NOT_COMPATIBLE)) == 1

        with pytest.raises(CompatibilityError):
            await supervisor.send_request("connection/list")

        await supervisor.stop()
        assert supervisor.state == SessionState.SHUT_DOWN

    @pytest.mark.asyncio
    async def test_wait_raises(self, supervisor, client_config, monkeypatch):
        monkeypatch.setenv("FAKE_SERVICE_VERSION", "3.9.0")

        with pytest.raises(CompatibilityError):
            await supervisor.initialize(client_config, wait_for_compatibility=True)

    @pytest.mark.asyncio
    async def test_custom_prefix(self, supervisor, client_config, monkeypatch):
        monkeypatch.setenv("FAKE_SERVICE_VERSION", "4.2.1")
        config = replace(client_config, required_server_version_prefix="4.2")

        result = await supervisor.initialize(config, wait_for_compatibility=True)

        assert result.compatibility.result() is True

    @pytest.mark.asyncio
    async def test_crash_during_wait_raises_transport_error(self, supervisor, client_config, mock_host, monkeypatch):
        monkeypatch.setenv("FAKE_SERVICE_EXIT_ON", "version")

        with pytest.raises(TransportCrashError):
            await supervisor.initialize(client_config, wait_for_compatibility=True)

        assert supervisor.state == SessionState.CRASHED
        assert len(telemetry_events(mock_host, EVENT_SERVICE_CRASH)) == 1
        assert telemetry_events(mock_host, EVENT_NOT_COMPATIBLE) == []


class TestCrashPolicy:
    """Tests for crash reporting and the no-restart policy."""

    @pytest.mark.asyncio
    async def test_exit_after_ready_reported_once(self, supervisor, client_config, mock_host, service_log, monkeypatch):
        monkeypatch.setenv("FAKE_SERVICE_EXIT_ON", "sqltools/crash")
        result = await supervisor.initialize(client_config)
        await result.compatibility

        await supervisor.send_notification("sqltools/crash", {})
        await wait_until(lambda: supervisor.state == SessionState.CRASHED)
        await wait_until(lambda: supervisor.channel.is_closed)

        assert supervisor.process is None
        assert supervisor.channel.return_code == 3
        assert len(telemetry_events(mock_host, EVENT_SERVICE_CRASH)) == 1
        mock_host.ui.show_error_message.assert_called_once_with(SERVICE_CRASH_MESSAGE, SERVICE_CRASH_BUTTON)
        assert service_log.spawned == 1

        with pytest.raises(SessionNotReadyError):
            await supervisor.send_request("connection/list")

        await supervisor.stop()
        assert supervisor.state == SessionState.CRASHED
        assert len(telemetry_events(mock_host, EVENT_SERVICE_CRASH)) == 1

    @pytest.mark.asyncio
    async def test_pending_request_fails_on_crash(self, supervisor, client_config, monkeypatch):
        monkeypatch.setenv("FAKE_SERVICE_EXIT_ON", "echo")
        result = await supervisor.initialize(client_config)
        await result.compatibility

        with pytest.raises(TransportCrashError):
            await supervisor.send_request("echo", {})

        await wait_until(lambda: supervisor.state == SessionState.CRASHED)

    @pytest.mark.asyncio
    async def test_transport_error_after_ready(self, supervisor, client_config, mock_host):
        result = await supervisor.initialize(client_config)
        await result.compatibility

        supervisor.channel.client.report_server_error(ValueError("Invalid Content-Length: -1"), None)
        await wait_until(lambda: supervisor.channel.is_closed)

        assert supervisor.state == SessionState.CRASHED
        assert supervisor.process is None
        assert len(telemetry_events(mock_host, EVENT_SERVICE_CRASH)) == 1

    @pytest.mark.asyncio
    async def test_spawn_failure(self, supervisor, client_config, tmp_path, mock_host):
        not_executable = tmp_path / "noexec" / EXECUTABLE_NAME
        not_executable.parent.mkdir()
        not_executable.write_text("not a program")
        config = replace(client_config, service_path=str(not_executable))

        with pytest.raises(TransportCrashError, match="Failed to start service"):
            await supervisor.initialize(config)
        await asyncio.sleep(0)

        assert supervisor.state == SessionState.CRASHED
        assert len(telemetry_events(mock_host, EVENT_SERVICE_CRASH)) == 1

    @pytest.mark.asyncio
    async def test_handshake_timeout(self, supervisor, client_config, mock_host, monkeypatch):
        monkeypatch.setenv("FAKE_SERVICE_SILENT", "initialize")
        config = replace(client_config, startup_timeout=0.3)

        with pytest.raises(TransportCrashError, match="did not answer initialize"):
            await supervisor.initialize(config)

        assert supervisor.state == SessionState.CRASHED
        assert supervisor.channel.is_closed
        assert supervisor.process is None
        assert len(telemetry_events(mock_host, EVENT_SERVICE_CRASH)) == 1

    @pytest.mark.asyncio
    async def test_exit_during_handshake(self, supervisor, client_config, mock_host, monkeypatch):
        monkeypatch.setenv("FAKE_SERVICE_EXIT_ON", "initialize")

        with pytest.raises(TransportCrashError):
            await supervisor.initialize(client_config)

        assert supervisor.state == SessionState.CRASHED
        assert len(telemetry_events(mock_host, EVENT_SERVICE_CRASH)) == 1

    def test_error_handler_actions(self, mock_host):
        handler = ServiceErrorHandler(mock_host.ui, mock_host.telemetry)

        with patch("sqltools_client.session.show_error_prompt") as mock_prompt:
            assert handler.error(TransportCrashError("x"), None, 1) == ErrorAction.SHUTDOWN
            assert handler.closed() == CloseAction.DO_NOT_RESTART

        assert mock_prompt.call_count == 2
        assert len(telemetry_events(mock_host, EVENT_SERVICE_CRASH)) == 2


class TestStop:
    """Tests for SessionSupervisor.stop."""

    @pytest.mark.asyncio
    async def test_graceful_shutdown(self, supervisor, client_config, mock_host, service_log):
        result = await supervisor.initialize(client_config)
        await result.compatibility

        await supervisor.stop()

        assert supervisor.state == SessionState.SHUT_DOWN
        assert "shutdown" in service_log.methods
        assert service_log.methods[-1] == "exit"
        assert supervisor.channel.return_code == 0
        assert supervisor.process is None
        assert telemetry_events(mock_host, EVENT_SERVICE_CRASH) == []

    @pytest.mark.asyncio
    async def test_unresponsive_service_terminated(self, supervisor, client_config, mock_host, monkeypatch):
        monkeypatch.setenv("FAKE_SERVICE_SILENT", "shutdown")
        result = await supervisor.initialize(client_config)
        await result.compatibility

        await supervisor.stop(timeout=0.3)

        assert supervisor.state == SessionState.SHUT_DOWN
        assert supervisor.channel.return_code not in (None, 0)
        assert telemetry_events(mock_host, EVENT_SERVICE_CRASH) == []

    @pytest.mark.asyncio
    async def test_stop_before_initialize(self, supervisor):
        await supervisor.stop()
        assert supervisor.state == SessionState.SHUT_DOWN

    @pytest.mark.asyncio
    async def test_stop_during_provisioning_spawns_nothing(self, supervisor, client_config, local_service, mock_host, service_log):
        async def slow_provisioning(provider, platform):
            await asyncio.sleep(0.2)
            return ResolvedServer(local_service)

        with patch.object(ServerProvider, "get_or_download_server", slow_provisioning):
            initializing = asyncio.ensure_future(supervisor.initialize(client_config))
            await asyncio.sleep(0.05)
            await supervisor.stop()
            result = await initializing

        assert result.success is False
        assert result.compatibility is None
        assert supervisor.state == SessionState.SHUT_DOWN
        assert supervisor.channel is None
        assert supervisor.process is None
        assert service_log.spawned == 0
        assert telemetry_events(mock_host, EVENT_SERVICE_CRASH) == []

    @pytest.mark.asyncio
    async def test_stop_during_handshake(self, supervisor, client_config, mock_host, service_log, monkeypatch):
        monkeypatch.setenv("FAKE_SERVICE_SILENT", "initialize")

        initializing = asyncio.ensure_future(supervisor.initialize(client_config))
        await service_log.wait_for(lambda ms: "initialize" in [m.get("method") for m in ms])
        await supervisor.stop(timeout=1.0)
        result = await initializing

        assert result.success is False
        assert supervisor.state == SessionState.SHUT_DOWN
        assert supervisor.channel.is_closed
        assert supervisor.process is None
        assert telemetry_events(mock_host, EVENT_SERVICE_CRASH) == []


class TestSessionFactory:
    """Tests for SessionFactory."""

    def test_create_once(self, mock_host, linux_platform):
        factory = SessionFactory(host=mock_host, resolver=lambda: linux_platform)

        session = factory.create()

        assert factory.session is session
        assert session.host is mock_host
        assert session.state == SessionState.UNINITIALIZED

    def test_second_create_raises(self, mock_host):
        factory = SessionFactory(host=mock_host)
        first = factory.create()

        with pytest.raises(AlreadyInitializedError):
            factory.create()

        assert factory.session is first
