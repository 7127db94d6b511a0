"""
Exception types for sqltools-client.

Provides typed exceptions for:
- Platform detection errors
- Service provisioning (download / extract) errors
- Session lifecycle errors (double initialization, transport crashes)
- Service compatibility errors
"""

from __future__ import annotations

from typing import Any, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from sqltools_client.types import PlatformInfo, SessionState


class SqlToolsClientError(Exception):
    """Base exception for all sqltools-client errors."""
    pass


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigError(SqlToolsClientError):
    """
    Raised when client or service configuration is invalid.

    This includes:
    - Malformed service descriptor files
    - Missing version channels
    - Invalid timeout values
    """
    pass


# =============================================================================
# Platform Errors
# =============================================================================


class UnsupportedPlatformError(SqlToolsClientError):
    """
    Raised when the OS/architecture/version combination is not supported.

    There is no fallback: the service cannot be provisioned on this machine.
    """

    def __init__(self, message: str, platform: Optional["PlatformInfo"] = None):
        self.platform = platform
        super().__init__(message)


# =============================================================================
# Provisioning Errors
# =============================================================================


class ProvisioningError(SqlToolsClientError):
    """
    Raised when the service could not be installed.

    Fatal to the current activation. The user must retry manually,
    e.g. by reloading the editor.
    """
    pass


class DownloadError(ProvisioningError):
    """Raised when the service archive could not be downloaded."""

    def __init__(self, message: str, url: Optional[str] = None):
        self.url = url
        super().__init__(message)


class ExtractError(ProvisioningError):
    """
    Raised when the service archive could not be verified or unpacked.

    This includes:
    - Checksum mismatches
    - Corrupt or unsupported archives
    - Archives that do not contain the expected executable
    """
    pass


# =============================================================================
# Session Errors
# =============================================================================


class AlreadyInitializedError(SqlToolsClientError):
    """Raised when a second session is requested for the same activation."""
    pass


class SessionNotReadyError(SqlToolsClientError):
    """Raised when a protocol request is issued before the session is Ready."""

    def __init__(self, state: "SessionState"):
        self.state = state
        super().__init__(f"Service session is not ready (state={state.value})")


class TransportCrashError(SqlToolsClientError):
    """
    Raised when the service process died or the protocol framing broke.

    Crashes are never retried: the session is unusable until the
    extension is reloaded.
    """
    pass


class CompatibilityError(SqlToolsClientError):
    """
    Raised when the running service does not match the required version.

    The channel itself stays open, but language features should be
    treated as disabled.
    """

    def __init__(
        self,
        message: str,
        server_version: Optional[str] = None,
        required_prefix: Optional[str] = None,
    ):
        self.server_version = server_version
        self.required_prefix = required_prefix
        super().__init__(message)


class ResponseError(SqlToolsClientError):
    """JSON-RPC error response returned by the service."""

    def __init__(self, code: int, message: str, data: Any = None):
        self.code = code
        self.data = data
        super().__init__(f"{message} (code={code})")

    def __repr__(self) -> str:
        return f"ResponseError(code={self.code!r}, message={str(self)!r})"
