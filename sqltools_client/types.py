"""
Type definitions for sqltools-client.

Defines enums and dataclasses used across the package for:
- Platform detection and version channel selection
- Service descriptors and launch strategies
- Session states and initialization results
- Provisioning progress events
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Optional, Union


# =============================================================================
# Platform Types
# =============================================================================


class VersionChannel(str, Enum):
    """
    Service build channel.

    - CURRENT: Latest service build
    - LEGACY: Older build for platforms the current build no longer runs on
    """
    CURRENT = "current"
    LEGACY = "legacy"


_RUNTIME_DISPLAY_NAMES = {
    "win-x64": "Windows 64 bit",
    "win-arm64": "Windows ARM 64 bit",
    "osx-x64": "macOS",
    "osx-arm64": "macOS (Apple Silicon)",
    "linux-x64": "Linux 64 bit",
    "linux-arm64": "Linux ARM 64 bit",
}


@dataclass(frozen=True)
class PlatformInfo:
    """
    Current OS/architecture/runtime, computed once at process start.

    runtime_id is None when the combination is not in the supported matrix.
    """
    os_family: str
    architecture: str
    runtime_id: Optional[str]
    os_version: str
    version_channel: VersionChannel = VersionChannel.CURRENT

    @property
    def is_valid_runtime(self) -> bool:
        """Check if the platform maps to a supported service runtime."""
        return self.runtime_id is not None

    @property
    def is_windows(self) -> bool:
        return self.os_family == "windows"

    @property
    def is_macos(self) -> bool:
        return self.os_family == "darwin"

    @property
    def display_name(self) -> str:
        """Human readable runtime name for the output channel."""
        if self.runtime_id is None:
            return "Unknown"
        return _RUNTIME_DISPLAY_NAMES.get(self.runtime_id, self.runtime_id)

    def __str__(self) -> str:
        return f"{self.os_family} {self.os_version}, architecture: {self.architecture}"


# =============================================================================
# Service Descriptor Types
# =============================================================================


class LaunchStrategy(str, Enum):
    """
    How a provisioned service executable is started.

    - NATIVE: The executable is run directly
    - MANAGED: The executable is hosted by a managed runtime (e.g. dotnet)
    """
    NATIVE = "native"
    MANAGED = "managed"


@dataclass(frozen=True)
class ExecutableSpec:
    """Executable file name inside an install directory and how to launch it."""
    filename: str
    launch: LaunchStrategy = LaunchStrategy.NATIVE


@dataclass(frozen=True)
class ServerDescriptor:
    """
    Versioned download descriptor for one service channel.

    Attributes:
        version: Service version string
        download_url_template: URL with {version} and {file_name} placeholders
        install_directory: Install path relative to the install root,
            with {version} and {platform} placeholders
        download_file_names: Archive file name per runtime id
        executables: Executable per OS family (windows, darwin, linux)
        sha256: Optional expected digest per archive file name
    """
    version: str
    download_url_template: str
    install_directory: str
    download_file_names: Dict[str, str]
    executables: Dict[str, ExecutableSpec]
    sha256: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ResolvedServer:
    """A provisioned service executable with its launch strategy resolved."""
    path: Path
    launch: LaunchStrategy = LaunchStrategy.NATIVE


# =============================================================================
# Session Types
# =============================================================================


class SessionState(str, Enum):
    """
    Lifecycle state of the service session.

    UNINITIALIZED -> PROVISIONING -> STARTING -> READY
    READY -> COMPATIBILITY_FAILED | CRASHED | SHUT_DOWN
    """
    UNINITIALIZED = "uninitialized"
    PROVISIONING = "provisioning"
    STARTING = "starting"
    READY = "ready"
    COMPATIBILITY_FAILED = "compatibility_failed"
    CRASHED = "crashed"
    SHUT_DOWN = "shut_down"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.CRASHED, SessionState.SHUT_DOWN)


class ErrorAction(str, Enum):
    """Action taken after a transport error."""
    CONTINUE = "continue"
    SHUTDOWN = "shutdown"


class CloseAction(str, Enum):
    """Action taken after the transport closed."""
    DO_NOT_RESTART = "do_not_restart"
    RESTART = "restart"


@dataclass
class InitializationResult:
    """
    Result of SessionSupervisor.initialize().

    compatibility is the background version check; it resolves to
    True when the running service matches the required version.
    installed is True when this call downloaded and installed the service.
    """
    success: bool
    server_path: Optional[Path] = None
    platform: Optional[PlatformInfo] = None
    installed: bool = False
    compatibility: Optional["asyncio.Task[bool]"] = None


# =============================================================================
# Progress Events
# =============================================================================


@dataclass(frozen=True)
class InstallStart:
    install_path: Path


@dataclass(frozen=True)
class DownloadStart:
    url: str
    total_bytes: int


@dataclass(frozen=True)
class DownloadProgress:
    percent: int


@dataclass(frozen=True)
class DownloadEnd:
    pass


@dataclass(frozen=True)
class InstallEnd:
    install_path: Path


ProgressEvent = Union[InstallStart, DownloadStart, DownloadProgress, DownloadEnd, InstallEnd]

ProgressHandler = Callable[[ProgressEvent], None]
