"""
Pytest configuration for sqltools-client tests.
"""

import asyncio
import io
import json
import sys
import tarfile
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from sqltools_client.host import Host
from sqltools_client.types import (
    ExecutableSpec,
    LaunchStrategy,
    PlatformInfo,
    ServerDescriptor,
    VersionChannel,
)

# Note: With pytest-asyncio in auto mode, no event_loop fixture needed

EXECUTABLE_NAME = "MicrosoftSqlToolsServiceLayer"
FAKE_SERVICE = Path(__file__).parent / "fake_service.py"

# Launches tests/fake_service.py under the running interpreter
SERVICE_WRAPPER = f'#!/bin/sh\nexec "{sys.executable}" "{FAKE_SERVICE}" "$@"\n'.encode("utf-8")


class ServiceLog:
    """Reads the JSON lines written by tests/fake_service.py."""

    def __init__(self, path: Path):
        self.path = path

    def entries(self) -> list:
        if not self.path.exists():
            return []
        return [json.loads(line) for line in self.path.read_text().splitlines() if line.strip()]

    @property
    def spawned(self) -> int:
        return sum(1 for e in self.entries() if "argv" in e)

    @property
    def argv(self) -> list:
        return next(e["argv"] for e in self.entries() if "argv" in e)

    @property
    def messages(self) -> list:
        return [e["received"] for e in self.entries() if "received" in e]

    @property
    def methods(self) -> list:
        return [m.get("method") for m in self.messages]

    async def wait_for(self, predicate, timeout: float = 5.0) -> list:
        """Poll until predicate(messages) is true."""
        deadline = asyncio.get_running_loop().time() + timeout
        while not predicate(self.messages):
            if asyncio.get_running_loop().time() > deadline:
                raise AssertionError(f"Service log never matched; got {self.methods}")
            await asyncio.sleep(0.02)
        return self.messages


class FakeProcess:
    """asyncio.subprocess.Process stand-in for terminate/kill tests."""

    def __init__(self):
        self.pid = 4242
        self.returncode = None
        self.terminate_calls = 0
        self._exited = asyncio.Event()

    def exit(self, code: int) -> None:
        if self.returncode is None:
            self.returncode = code
            self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def terminate(self) -> None:
        self.terminate_calls += 1
        self.exit(-15)

    def kill(self) -> None:
        self.exit(-9)


def make_tar_gz(files: dict) -> bytes:
    """Build a tar.gz archive in memory from {name: bytes}."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tf:
        for name, content in files.items():
            info = tarfile.TarInfo(name=name)
            info.size = len(content)
            info.mode = 0o644
            tf.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


def mock_http_response(data: bytes, chunk_size: int = 1024, content_length: bool = True) -> MagicMock:
    """requests.Response stand-in streaming data in chunks."""
    response = MagicMock()
    response.status_code = 200
    response.raise_for_status = MagicMock()
    response.headers = {"Content-Length": str(len(data))} if content_length else {}
    chunks = [data[i:i + chunk_size] for i in range(0, len(data), chunk_size)]
    response.iter_content = MagicMock(side_effect=lambda chunk_size=None: iter(chunks))
    response.__enter__.return_value = response
    response.__exit__.return_value = False
    return response


@pytest.fixture
def linux_platform():
    """Supported Linux x64 platform."""
    return PlatformInfo(
        os_family="linux",
        architecture="x64",
        runtime_id="linux-x64",
        os_version="6.1.0",
    )


@pytest.fixture
def legacy_macos_platform():
    """macOS release that runs the legacy service channel."""
    return PlatformInfo(
        os_family="darwin",
        architecture="x64",
        runtime_id="osx-x64",
        os_version="10.11.6",
        version_channel=VersionChannel.LEGACY,
    )


@pytest.fixture
def descriptor():
    """Service descriptor for a single tar.gz build."""
    return ServerDescriptor(
        version="1.4.0-alpha.12",
        download_url_template="https://example.com/v{version}/service-{file_name}",
        install_directory="{version}/{platform}",
        download_file_names={"linux-x64": "linux-x64.tar.gz", "osx-x64": "osx-x64.tar.gz"},
        executables={
            "linux": ExecutableSpec(EXECUTABLE_NAME),
            "darwin": ExecutableSpec(f"{EXECUTABLE_NAME}.dll", LaunchStrategy.MANAGED),
        },
    )


@pytest.fixture
def service_archive():
    """tar.gz archive containing the service executable."""
    return make_tar_gz({
        EXECUTABLE_NAME: SERVICE_WRAPPER,
        "lib/support.txt": b"support file",
    })


@pytest.fixture
def mock_host():
    """Host with mocked collaborators."""
    ui = MagicMock()
    ui.show_error_message = AsyncMock(return_value=None)
    return Host(
        ui=ui,
        telemetry=MagicMock(),
        status_view=MagicMock(),
        output=MagicMock(),
    )


@pytest.fixture
def local_service(tmp_path) -> Path:
    """Existing local service executable (skips provisioning)."""
    path = tmp_path / "local" / EXECUTABLE_NAME
    path.parent.mkdir(parents=True)
    path.write_bytes(SERVICE_WRAPPER)
    path.chmod(0o755)
    return path


@pytest.fixture
def service_log(tmp_path, monkeypatch) -> ServiceLog:
    """Event log of the fake service spawned by the test."""
    path = tmp_path / "service.log"
    monkeypatch.setenv("FAKE_SERVICE_LOG", str(path))
    return ServiceLog(path)


def telemetry_events(host: Host, name: str) -> list:
    """Telemetry calls recorded for an event name."""
    return [c for c in host.telemetry.send_event.call_args_list if c.args and c.args[0] == name]
