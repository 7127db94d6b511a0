"""
Host collaborators for sqltools-client.

The editor side of the session is reached only through these narrow
interfaces:
- UserInterface: error prompts and external links
- TelemetrySink: telemetry events
- StatusView: per-document language service status
- OutputChannel: the service output pane

Logging-backed defaults are provided so the client runs headless.
"""

from __future__ import annotations

import asyncio
import logging
import math
import webbrowser
from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol, runtime_checkable

from sqltools_client._core.version import SERVICE_NAME
from sqltools_client.types import (
    DownloadEnd,
    DownloadProgress,
    DownloadStart,
    InstallEnd,
    InstallStart,
    ProgressEvent,
)

logger = logging.getLogger(__name__)


# =============================================================================
# User-facing text
# =============================================================================

OUTPUT_CHANNEL_NAME = "SQL Tools Service Initialization"
COMMANDS_NOT_AVAILABLE_WHILE_INSTALLING = (
    "Commands are not available while the SQL Tools Service is being installed."
)
UNSUPPORTED_PLATFORM_MESSAGE = "The platform is not supported by the SQL Tools Service."
PROVISIONING_FAILED_MESSAGE = (
    "Failed to install the SQL Tools Service. Reload the window to try again."
)
SERVICE_CRASH_MESSAGE = (
    "SQL Tools Service component could not start. Reload the window to restart it."
)
SERVICE_CRASH_BUTTON = "View Known Issues"
SERVICE_CRASH_LINK = "https://github.com/Microsoft/vscode-mssql/wiki/SqlToolsService-Known-Issues"
SERVICE_NOT_COMPATIBLE_MESSAGE = "Client is not compatible with the service layer"
SERVICE_INSTALLING_TO = f"Installing {SERVICE_NAME} to"
SERVICE_DOWNLOADING = "Downloading"
SERVICE_INSTALLED = f"{SERVICE_NAME} installed"

# Telemetry event names
EVENT_UNSUPPORTED_PLATFORM = "UnsupportedPlatform"
EVENT_PROVISIONING_FAILED = "ServiceProvisioningFailed"
EVENT_SERVICE_CRASH = "ServiceCrash"
EVENT_NOT_COMPATIBLE = "ServiceNotCompatible"


# =============================================================================
# Interfaces
# =============================================================================


@runtime_checkable
class UserInterface(Protocol):
    async def show_error_message(self, message: str, *actions: str) -> Optional[str]:
        """Show an error; resolves to the chosen action, if any."""
        ...

    def open_external(self, url: str) -> None:
        ...


@runtime_checkable
class TelemetrySink(Protocol):
    def send_event(
        self,
        event_name: str,
        properties: Optional[Dict[str, str]] = None,
        measures: Optional[Dict[str, float]] = None,
    ) -> None:
        ...


@runtime_checkable
class StatusView(Protocol):
    def language_service_status_changed(self, owner_uri: str, status: str) -> None:
        ...


@runtime_checkable
class OutputChannel(Protocol):
    def append(self, text: str) -> None:
        ...

    def append_line(self, text: str = "") -> None:
        ...

    def show(self) -> None:
        ...


# =============================================================================
# Logging-backed defaults
# =============================================================================


class LoggingUserInterface:
    """Reports errors to the log; never selects an action."""

    async def show_error_message(self, message: str, *actions: str) -> Optional[str]:
        logger.error(message)
        return None

    def open_external(self, url: str) -> None:
        webbrowser.open(url)


class LoggingTelemetry:
    def send_event(
        self,
        event_name: str,
        properties: Optional[Dict[str, str]] = None,
        measures: Optional[Dict[str, float]] = None,
    ) -> None:
        logger.info(f"telemetry: {event_name} properties={properties or {}} measures={measures or {}}")


class LoggingStatusView:
    def language_service_status_changed(self, owner_uri: str, status: str) -> None:
        logger.info(f"status: {owner_uri} -> {status}")


class LoggingOutputChannel:
    """Buffers appended text and logs it one line at a time."""

    def __init__(self, name: str = OUTPUT_CHANNEL_NAME):
        self.name = name
        self._line = ""

    def append(self, text: str) -> None:
        self._line += text

    def append_line(self, text: str = "") -> None:
        logger.info(f"[{self.name}] {self._line}{text}")
        self._line = ""

    def show(self) -> None:
        pass


_prompt_tasks: "set[asyncio.Task]" = set()


def show_error_prompt(
    ui: UserInterface,
    message: str,
    *actions: str,
    links: Optional[Dict[str, str]] = None,
) -> "asyncio.Task[Optional[str]]":
    """
    Show an error without waiting for the user.

    If the user picks an action listed in links, its URL is opened.

    Returns:
        Task resolving to the chosen action
    """

    async def prompt() -> Optional[str]:
        action = await ui.show_error_message(message, *actions)
        if action and links and action in links:
            ui.open_external(links[action])
        return action

    task = asyncio.ensure_future(prompt())
    _prompt_tasks.add(task)
    task.add_done_callback(_prompt_tasks.discard)
    return task


@dataclass
class Host:
    """Bundle of editor collaborators used by a session."""
    ui: UserInterface = field(default_factory=LoggingUserInterface)
    telemetry: TelemetrySink = field(default_factory=LoggingTelemetry)
    status_view: StatusView = field(default_factory=LoggingStatusView)
    output: OutputChannel = field(default_factory=LoggingOutputChannel)


# =============================================================================
# Progress rendering
# =============================================================================


class OutputProgressReporter:
    """
    Renders provisioning progress events to an output channel.

    Download progress is drawn as one dot per 5%.
    """

    DOT_STEP = 5

    def __init__(self, output: OutputChannel):
        self.output = output
        self.did_install = False
        self._dots = 0

    def __call__(self, event: ProgressEvent) -> None:
        self.output.show()

        if isinstance(event, InstallStart):
            self.did_install = True
            self.output.append_line(f"{SERVICE_INSTALLING_TO} {event.install_path}")
        elif isinstance(event, DownloadStart):
            self.output.append_line(f"{SERVICE_DOWNLOADING} {event.url}")
            self.output.append(f"({math.ceil(event.total_bytes / 1024)} KB)")
        elif isinstance(event, DownloadProgress):
            dots = math.ceil(event.percent / self.DOT_STEP)
            if dots > self._dots:
                self.output.append("." * (dots - self._dots))
                self._dots = dots
        elif isinstance(event, DownloadEnd):
            self.output.append_line()
        elif isinstance(event, InstallEnd):
            self.output.append_line(SERVICE_INSTALLED)
