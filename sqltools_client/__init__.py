"""
sqltools-client: Provisioning and session supervision for the SQL Tools Service.

This package provides:
- Platform detection with current/legacy service channel selection
- On-demand download and atomic install of the service build
- A supervised JSON-RPC session over the service's stdio
- A one-shot version compatibility gate
- A no-restart crash policy with a single user prompt per crash

Installation:
    pip install sqltools-client
    pip install sqltools-client[test]  # With the test suite dependencies

Quickstart:
    from sqltools_client import ClientConfig, Host, SessionFactory

    factory = SessionFactory(host=Host())
    session = factory.create()

    result = await session.initialize(ClientConfig(locale="en"))
    if await result.compatibility:
        version = await session.send_request("version")

    await session.stop()
"""

from sqltools_client.types import (
    VersionChannel,
    LaunchStrategy,
    SessionState,
    PlatformInfo,
    ExecutableSpec,
    ServerDescriptor,
    ResolvedServer,
    InitializationResult,
    ProgressEvent,
    InstallStart,
    InstallEnd,
    DownloadStart,
    DownloadProgress,
    DownloadEnd,
)
from sqltools_client.errors import (
    SqlToolsClientError,
    ConfigError,
    UnsupportedPlatformError,
    ProvisioningError,
    DownloadError,
    ExtractError,
    AlreadyInitializedError,
    SessionNotReadyError,
    TransportCrashError,
    CompatibilityError,
    ResponseError,
)
from sqltools_client.config import (
    ClientConfig,
    ServiceConfig,
)
from sqltools_client.host import (
    Host,
    OutputProgressReporter,
)
from sqltools_client.session import (
    SessionFactory,
    SessionSupervisor,
    ServiceErrorHandler,
)
from sqltools_client._core.version import CLIENT_VERSION

__version__ = CLIENT_VERSION

__all__ = [
    # Version
    "__version__",
    "CLIENT_VERSION",
    # Types
    "VersionChannel",
    "LaunchStrategy",
    "SessionState",
    "PlatformInfo",
    "ExecutableSpec",
    "ServerDescriptor",
    "ResolvedServer",
    "InitializationResult",
    "ProgressEvent",
    "InstallStart",
    "InstallEnd",
    "DownloadStart",
    "DownloadProgress",
    "DownloadEnd",
    # Errors
    "SqlToolsClientError",
    "ConfigError",
    "UnsupportedPlatformError",
    "ProvisioningError",
    "DownloadError",
    "ExtractError",
    "AlreadyInitializedError",
    "SessionNotReadyError",
    "TransportCrashError",
    "CompatibilityError",
    "ResponseError",
    # Configuration
    "ClientConfig",
    "ServiceConfig",
    # Host
    "Host",
    "OutputProgressReporter",
    # Session
    "SessionFactory",
    "SessionSupervisor",
    "ServiceErrorHandler",
]
