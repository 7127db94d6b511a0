"""
Archive download and extraction for sqltools-client.

Handles:
- Streaming HTTP download with coalesced progress events
- SHA-256 verification
- Zip / tar.gz extraction with path traversal checks
"""

from __future__ import annotations

import hashlib
import logging
import os
import tarfile
import zipfile
from pathlib import Path
from typing import Optional

import requests

from sqltools_client.errors import DownloadError, ExtractError
from sqltools_client.types import (
    DownloadEnd,
    DownloadProgress,
    DownloadStart,
    ProgressHandler,
)

logger = logging.getLogger(__name__)

# (connect, read) timeouts; there is no overall deadline for the transfer
DOWNLOAD_TIMEOUT = (15, 60)
CHUNK_SIZE = 64 * 1024


class ProgressCoalescer:
    """
    Turns byte counts into DownloadProgress events.

    Emits at most one event per whole-percent step, and percent values
    never decrease.
    """

    def __init__(self, total_bytes: int, on_event: ProgressHandler):
        self.total_bytes = total_bytes
        self.on_event = on_event
        self.received = 0
        self.last_percent = -1

    def update(self, num_bytes: int) -> None:
        self.received += num_bytes
        if self.total_bytes <= 0:
            return

        percent = min(100, self.received * 100 // self.total_bytes)
        if percent > self.last_percent:
            self.last_percent = percent
            self.on_event(DownloadProgress(percent=percent))


def download_archive(
    url: str,
    destination: Path,
    on_event: ProgressHandler,
    chunk_size: int = CHUNK_SIZE,
) -> Path:
    """
    Stream an archive to disk.

    Emits DownloadStart, DownloadProgress* and DownloadEnd in that order.

    Args:
        url: Archive URL
        destination: File to write
        on_event: Progress event handler

    Returns:
        Path to the downloaded archive

    Raises:
        DownloadError: If the request or the write fails
    """
    logger.info(f"Downloading {url}")

    try:
        with requests.get(url, stream=True, timeout=DOWNLOAD_TIMEOUT) as response:
            response.raise_for_status()

            total_bytes = int(response.headers.get("Content-Length") or 0)
            on_event(DownloadStart(url=url, total_bytes=total_bytes))
            progress = ProgressCoalescer(total_bytes, on_event)

            destination.parent.mkdir(parents=True, exist_ok=True)
            with open(destination, "wb") as f:
                for chunk in response.iter_content(chunk_size=chunk_size):
                    if not chunk:
                        continue
                    f.write(chunk)
                    progress.update(len(chunk))

        on_event(DownloadEnd())
        logger.debug(f"Downloaded {progress.received} bytes to {destination}")
        return destination

    except requests.exceptions.RequestException as e:
        raise DownloadError(f"Failed to download service from {url}: {e}", url=url) from e
    except OSError as e:
        raise DownloadError(f"Failed to write service archive {destination}: {e}", url=url) from e


def verify_sha256(path: Path, expected: str) -> None:
    """
    Verify the SHA-256 digest of a file.

    Raises:
        ExtractError: If the digest does not match
    """
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(block)

    actual = digest.hexdigest()
    if actual.lower() != expected.lower():
        raise ExtractError(
            f"Checksum mismatch for {path.name}: expected {expected}, got {actual}"
        )
    logger.debug(f"Checksum verified for {path.name}")


def _is_within(target_dir: Path, member_name: str) -> bool:
    """Check an archive member stays inside the target directory."""
    parts = member_name.replace("\\", "/").split("/")
    if ".." in parts:
        return False

    abs_target = os.path.abspath(target_dir)
    abs_member = os.path.abspath(os.path.join(target_dir, member_name))
    return abs_member == abs_target or abs_member.startswith(abs_target + os.sep)


def get_archive_type(name: str) -> Optional[str]:
    """Map an archive file name to "zip", "gztar" or None."""
    lowered = name.lower()
    if lowered.endswith(".zip"):
        return "zip"
    if lowered.endswith(".tar.gz") or lowered.endswith(".tgz"):
        return "gztar"
    return None


def extract_archive(archive_path: Path, target_dir: Path, archive_name: Optional[str] = None) -> None:
    """
    Extract a zip or tar.gz archive.

    Args:
        archive_path: Archive on disk
        target_dir: Directory to extract into (created if missing)
        archive_name: Name used to detect the archive type (default: file name)

    Raises:
        ExtractError: If the archive is unsupported, unsafe or corrupt
    """
    name = archive_name or archive_path.name
    archive_type = get_archive_type(name)
    if archive_type is None:
        raise ExtractError(f"Unsupported archive type: {name}")

    target_dir.mkdir(parents=True, exist_ok=True)
    logger.debug(f"Extracting {name} to {target_dir}")

    try:
        if archive_type == "zip":
            with zipfile.ZipFile(archive_path, "r") as zf:
                for member in zf.namelist():
                    if not _is_within(target_dir, member):
                        raise ExtractError(f"Unsafe archive member (path traversal): {member}")
                zf.extractall(target_dir)
        else:
            with tarfile.open(archive_path, "r:gz") as tf:
                for member in tf.getmembers():
                    if not _is_within(target_dir, member.name):
                        raise ExtractError(f"Unsafe archive member (path traversal): {member.name}")
                    if member.issym() or member.islnk():
                        if not _is_within(target_dir, os.path.join(os.path.dirname(member.name), member.linkname)):
                            raise ExtractError(f"Unsafe archive link: {member.name}")
                if hasattr(tarfile, "data_filter"):
                    tf.extractall(target_dir, filter="data")
                else:
                    tf.extractall(target_dir)
    except (zipfile.BadZipFile, tarfile.TarError, EOFError) as e:
        raise ExtractError(f"Corrupt service archive {name}: {e}") from e
    except OSError as e:
        raise ExtractError(f"Failed to extract service archive {name}: {e}") from e
