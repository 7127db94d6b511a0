"""
Service provisioning for sqltools-client.

Resolves the install location of the service for a platform and
downloads/unpacks it on demand. Installs are atomic: the archive is
extracted into a staging directory that is only renamed into place once
the executable is present, so a failed install never looks valid on the
next launch.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import os
import shutil
import stat
import uuid
from pathlib import Path
from typing import Optional

from sqltools_client._core.download import (
    download_archive,
    extract_archive,
    verify_sha256,
)
from sqltools_client._core.version import get_download_url
from sqltools_client.errors import ExtractError, ProvisioningError
from sqltools_client.types import (
    ExecutableSpec,
    InstallEnd,
    InstallStart,
    LaunchStrategy,
    PlatformInfo,
    ProgressEvent,
    ProgressHandler,
    ResolvedServer,
    ServerDescriptor,
)

logger = logging.getLogger(__name__)


def _make_executable(path: Path) -> None:
    st = os.stat(path)
    os.chmod(path, st.st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


def _remove_path(path: Path) -> None:
    if path.is_dir():
        shutil.rmtree(path, ignore_errors=True)
    elif path.exists():
        path.unlink()


class ServerProvider:
    """
    Returns a local service executable, installing it if absent.

    Emits an ordered stream of progress events while installing:
    InstallStart, DownloadStart, DownloadProgress*, DownloadEnd, InstallEnd.
    """

    def __init__(
        self,
        descriptor: ServerDescriptor,
        install_root: Path,
        on_event: Optional[ProgressHandler] = None,
        override_path: Optional[str] = None,
    ):
        self.descriptor = descriptor
        self.install_root = Path(install_root)
        self.on_event = on_event
        self.override_path = override_path

    def _emit(self, event: ProgressEvent) -> None:
        if self.on_event is not None:
            self.on_event(event)

    def get_executable_spec(self, platform: PlatformInfo) -> ExecutableSpec:
        """
        Get the executable for the platform's OS family.

        Raises:
            ProvisioningError: If the descriptor has no executable for it
        """
        spec = self.descriptor.executables.get(platform.os_family)
        if spec is None:
            raise ProvisioningError(
                f"Service {self.descriptor.version} has no executable for {platform.os_family}"
            )
        return spec

    def get_archive_name(self, platform: PlatformInfo) -> str:
        """
        Get the archive file name for the platform's runtime id.

        Raises:
            ProvisioningError: If the descriptor has no archive for it
        """
        name = self.descriptor.download_file_names.get(platform.runtime_id or "")
        if name is None:
            raise ProvisioningError(
                f"Service {self.descriptor.version} has no download for {platform.runtime_id}"
            )
        return name

    def get_install_directory(self, platform: PlatformInfo) -> Path:
        """Get <install-root>/<version>/<runtime-id> for the platform."""
        relative = self.descriptor.install_directory.format(
            version=self.descriptor.version,
            platform=platform.runtime_id,
        )
        return self.install_root / relative

    def get_executable_path(self, platform: PlatformInfo) -> Path:
        spec = self.get_executable_spec(platform)
        return self.get_install_directory(platform) / spec.filename

    def get_download_url(self, platform: PlatformInfo) -> str:
        return get_download_url(
            self.descriptor.download_url_template,
            self.descriptor.version,
            self.get_archive_name(platform),
        )

    def get_or_download_server_sync(self, platform: PlatformInfo) -> ResolvedServer:
        """
        Get the service executable, downloading and installing it if absent.

        Args:
            platform: Resolved platform

        Returns:
            ResolvedServer with the executable path and launch strategy

        Raises:
            DownloadError: If the archive could not be downloaded
            ExtractError: If the archive could not be verified or unpacked
            ProvisioningError: If the descriptor does not cover the platform
        """
        spec = self.get_executable_spec(platform)

        if self.override_path:
            local = Path(self.override_path)
            if local.exists():
                logger.info(f"Using local service from SQLTOOLS_SERVICE_PATH: {local}")
                return ResolvedServer(path=local, launch=spec.launch)
            logger.warning(f"SQLTOOLS_SERVICE_PATH set but file not found: {local}")

        install_dir = self.get_install_directory(platform)
        executable = install_dir / spec.filename

        if executable.exists():
            logger.debug(f"Service already installed at {executable}")
            return ResolvedServer(path=executable, launch=spec.launch)

        self._install(platform, install_dir, spec)
        return ResolvedServer(path=executable, launch=spec.launch)

    def _install(self, platform: PlatformInfo, install_dir: Path, spec: ExecutableSpec) -> None:
        archive_name = self.get_archive_name(platform)
        url = self.get_download_url(platform)
        token = uuid.uuid4().hex[:8]

        parent = install_dir.parent
        staging_dir = parent / f".{install_dir.name}.staging-{token}"
        archive_path = parent / f".{archive_name}.{token}.download"

        self._emit(InstallStart(install_path=install_dir))
        logger.info(f"Installing {self.descriptor.version} for {platform.runtime_id} to {install_dir}")

        try:
            parent.mkdir(parents=True, exist_ok=True)
            download_archive(url, archive_path, self._emit)

            expected = self.descriptor.sha256.get(archive_name)
            if expected:
                verify_sha256(archive_path, expected)

            extract_archive(archive_path, staging_dir, archive_name=archive_name)

            staged_executable = staging_dir / spec.filename
            if not staged_executable.is_file():
                raise ExtractError(f"Service archive {archive_name} does not contain {spec.filename}")

            if spec.launch is LaunchStrategy.NATIVE and not platform.is_windows:
                _make_executable(staged_executable)

            # A directory without the executable is a stale partial install
            if install_dir.exists():
                shutil.rmtree(install_dir)
            os.replace(staging_dir, install_dir)

        except ProvisioningError:
            raise
        except OSError as e:
            raise ExtractError(f"Failed to install service to {install_dir}: {e}") from e
        finally:
            _remove_path(staging_dir)
            _remove_path(archive_path)

        logger.info(f"Successfully installed service {self.descriptor.version}")
        self._emit(InstallEnd(install_path=install_dir))

    async def get_or_download_server(self, platform: PlatformInfo) -> ResolvedServer:
        """
        Async wrapper around get_or_download_server_sync.

        The blocking work runs in the default executor; progress events are
        delivered on the event loop in the order they were emitted.
        """
        loop = asyncio.get_running_loop()
        handler = self.on_event

        def emit_threadsafe(event: ProgressEvent) -> None:
            if handler is not None:
                loop.call_soon_threadsafe(handler, event)

        worker = ServerProvider(
            self.descriptor,
            self.install_root,
            on_event=emit_threadsafe,
            override_path=self.override_path,
        )
        return await loop.run_in_executor(
            None,
            functools.partial(worker.get_or_download_server_sync, platform),
        )
