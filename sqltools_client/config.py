"""
Configuration for sqltools-client.

Two layers:
- ServiceConfig: static per-channel service descriptors (where to download
  the service from, where to install it, which executable to launch)
- ClientConfig: host settings (logging, locale, channel override, version gate)

Usage:
    config = ClientConfig.from_env(locale="de")
    descriptor = ServiceConfig.default().descriptor_for(VersionChannel.CURRENT)

    # Or from a JSON file with "current" / "legacy" sections
    service_config = ServiceConfig.from_file("service.json")
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from platformdirs import user_data_dir

from sqltools_client._core.version import SERVICE_COMPATIBLE_VERSION
from sqltools_client.errors import ConfigError
from sqltools_client.types import (
    ExecutableSpec,
    LaunchStrategy,
    ServerDescriptor,
    VersionChannel,
)

logger = logging.getLogger(__name__)


DEFAULT_RUNTIME_HOST = "dotnet"

_DOWNLOAD_URL = (
    "https://github.com/Microsoft/sqltoolsservice/releases/download/"
    "v{version}/microsoft.sqltools.servicelayer-{file_name}"
)

DEFAULT_SERVICE_CONFIG: Dict[str, Dict[str, Any]] = {
    "current": {
        "downloadUrl": _DOWNLOAD_URL,
        "version": "1.4.0-alpha.12",
        "installDir": "{version}/{platform}",
        "downloadFileNames": {
            "win-x64": "win-x64-net6.0.zip",
            "win-arm64": "win-arm64-net6.0.zip",
            "osx-x64": "osx-x64-net6.0.tar.gz",
            "osx-arm64": "osx-arm64-net6.0.tar.gz",
            "linux-x64": "linux-x64-net6.0.tar.gz",
            "linux-arm64": "linux-arm64-net6.0.tar.gz",
        },
        "executables": {
            "windows": {"filename": "MicrosoftSqlToolsServiceLayer.exe"},
            "darwin": {"filename": "MicrosoftSqlToolsServiceLayer"},
            "linux": {"filename": "MicrosoftSqlToolsServiceLayer"},
        },
    },
    # Portable build hosted by the dotnet runtime
    "legacy": {
        "downloadUrl": _DOWNLOAD_URL,
        "version": "1.4.0-alpha.2",
        "installDir": "{version}/{platform}",
        "downloadFileNames": {
            "win-x64": "portable-netcoreapp1.0.zip",
            "win-arm64": "portable-netcoreapp1.0.zip",
            "osx-x64": "portable-netcoreapp1.0.tar.gz",
            "osx-arm64": "portable-netcoreapp1.0.tar.gz",
            "linux-x64": "portable-netcoreapp1.0.tar.gz",
            "linux-arm64": "portable-netcoreapp1.0.tar.gz",
        },
        "executables": {
            "windows": {"filename": "MicrosoftSqlToolsServiceLayer.dll", "launch": "managed"},
            "darwin": {"filename": "MicrosoftSqlToolsServiceLayer.dll", "launch": "managed"},
            "linux": {"filename": "MicrosoftSqlToolsServiceLayer.dll", "launch": "managed"},
        },
    },
}


def _parse_descriptor(channel: str, raw: Mapping[str, Any]) -> ServerDescriptor:
    """Build a ServerDescriptor from one channel section of a config document."""
    try:
        executables = {
            os_family: ExecutableSpec(
                filename=entry["filename"],
                launch=LaunchStrategy(entry.get("launch", LaunchStrategy.NATIVE.value)),
            )
            for os_family, entry in raw["executables"].items()
        }
        return ServerDescriptor(
            version=raw["version"],
            download_url_template=raw["downloadUrl"],
            install_directory=raw.get("installDir", "{version}/{platform}"),
            download_file_names=dict(raw["downloadFileNames"]),
            executables=executables,
            sha256=dict(raw.get("sha256", {})),
        )
    except KeyError as e:
        raise ConfigError(f"Service config channel '{channel}' is missing {e}") from e
    except (TypeError, ValueError, AttributeError) as e:
        raise ConfigError(f"Service config channel '{channel}' is invalid: {e}") from e


@dataclass
class ServiceConfig:
    """
    Static service descriptors keyed by version channel.

    Loaded once; the session picks one descriptor per activation.
    """
    descriptors: Dict[VersionChannel, ServerDescriptor]

    @classmethod
    def from_dict(cls, document: Mapping[str, Any]) -> "ServiceConfig":
        """
        Parse a config document with "current" and optional "legacy" sections.

        Raises:
            ConfigError: If a section is malformed or "current" is missing
        """
        if not isinstance(document, Mapping):
            raise ConfigError("Service config must be a JSON object")

        descriptors = {}
        for channel in VersionChannel:
            section = document.get(channel.value)
            if section is not None:
                descriptors[channel] = _parse_descriptor(channel.value, section)

        if VersionChannel.CURRENT not in descriptors:
            raise ConfigError("Service config has no 'current' channel")

        return cls(descriptors=descriptors)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "ServiceConfig":
        """Load service descriptors from a JSON file."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                document = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Failed to read service config {path}: {e}") from e
        return cls.from_dict(document)

    @classmethod
    def default(cls) -> "ServiceConfig":
        return cls.from_dict(DEFAULT_SERVICE_CONFIG)

    def descriptor_for(self, channel: VersionChannel) -> ServerDescriptor:
        """
        Get the descriptor for a version channel.

        Raises:
            ConfigError: If the channel is not configured
        """
        try:
            return self.descriptors[channel]
        except KeyError:
            raise ConfigError(f"No service configured for the {channel.value} channel") from None


def _env_flag(value: Optional[str]) -> Optional[bool]:
    if value is None:
        return None
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class ClientConfig:
    """
    Host settings consumed by the session supervisor.

    Attributes:
        enable_logging: Pass --enable-logging to the service
        locale: Pass --locale <locale> to the service when non-empty
        use_legacy_service_version: Force the legacy service channel
        required_server_version_prefix: Prefix the running service version must have
        service_path: Local service executable (skips provisioning)
        install_root: Root of the service install layout
        runtime_host: Managed runtime host used for MANAGED executables
        startup_timeout: Seconds allowed for the protocol handshake (None: no limit)
        request_timeout: Seconds allowed for the version check (None: no limit)
    """
    enable_logging: bool = False
    locale: str = ""
    use_legacy_service_version: bool = False
    required_server_version_prefix: str = SERVICE_COMPATIBLE_VERSION
    service_path: Optional[str] = None
    install_root: Optional[Path] = None
    runtime_host: str = DEFAULT_RUNTIME_HOST
    startup_timeout: Optional[float] = 60.0
    request_timeout: Optional[float] = 30.0

    def __post_init__(self) -> None:
        """Validate configuration on creation."""
        self.validate()

    def validate(self) -> None:
        """Validate configuration values."""
        if not self.required_server_version_prefix:
            raise ConfigError("required_server_version_prefix must not be empty")

        for name in ("startup_timeout", "request_timeout"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ConfigError(f"{name} must be positive or None, got {value}")

        if not self.runtime_host:
            raise ConfigError("runtime_host must not be empty")

    def get_install_root(self) -> Path:
        """Get the root directory services are installed under."""
        if self.install_root is not None:
            return Path(self.install_root)
        return Path(user_data_dir("sqltools-client", "sqltools")) / "service"

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        **overrides: Any,
    ) -> "ClientConfig":
        """
        Build a config from SQLTOOLS_* environment variables.

        Environment Variables:
            SQLTOOLS_ENABLE_LOGGING: Enable service diagnostic logging
            SQLTOOLS_LOCALE: Locale passed to the service
            SQLTOOLS_USE_LEGACY_SERVICE: Force the legacy service channel
            SQLTOOLS_REQUIRED_VERSION: Required service version prefix
            SQLTOOLS_SERVICE_PATH: Local service executable (skips download)
            SQLTOOLS_INSTALL_ROOT: Install root directory
            SQLTOOLS_RUNTIME_HOST: Managed runtime host command

        Explicit keyword overrides win over the environment.
        """
        env = os.environ if environ is None else environ
        values: Dict[str, Any] = {}

        enable_logging = _env_flag(env.get("SQLTOOLS_ENABLE_LOGGING"))
        if enable_logging is not None:
            values["enable_logging"] = enable_logging

        use_legacy = _env_flag(env.get("SQLTOOLS_USE_LEGACY_SERVICE"))
        if use_legacy is not None:
            values["use_legacy_service_version"] = use_legacy

        if env.get("SQLTOOLS_LOCALE"):
            values["locale"] = env["SQLTOOLS_LOCALE"]
        if env.get("SQLTOOLS_REQUIRED_VERSION"):
            values["required_server_version_prefix"] = env["SQLTOOLS_REQUIRED_VERSION"]
        if env.get("SQLTOOLS_SERVICE_PATH"):
            values["service_path"] = env["SQLTOOLS_SERVICE_PATH"]
        if env.get("SQLTOOLS_INSTALL_ROOT"):
            values["install_root"] = Path(env["SQLTOOLS_INSTALL_ROOT"])
        if env.get("SQLTOOLS_RUNTIME_HOST"):
            values["runtime_host"] = env["SQLTOOLS_RUNTIME_HOST"]

        values.update(overrides)
        return cls(**values)
