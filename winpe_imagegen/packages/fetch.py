"""Runtime package fetch module.

This module handles:
- URL discovery for official PowerShell release archives
- Streaming download with incremental SHA-256
- Mapping HTTP failures onto transient and permanent errors
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from pathlib import Path

import httpx

from winpe_imagegen.errors import DownloadError, NetworkError

logger = logging.getLogger(__name__)

# Official PowerShell release download base URL
POWERSHELL_DOWNLOAD_BASE = "https://github.com/PowerShell/PowerShell/releases/download"

# Timeout for downloads (seconds)
DOWNLOAD_TIMEOUT = 1800

# Chunk size for downloads (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB

VERSION_PATTERN = re.compile(r"^\d+\.\d+\.\d+$")

# HTTP statuses worth retrying
RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}


@dataclass
class DownloadResult:
    """Result of a package download."""

    path: Path
    checksum: str
    size_bytes: int


def validate_version(version: str) -> str:
    """Validate an ``X.Y.Z`` runtime version string.

    Raises:
        ValueError: If the version is not in X.Y.Z form.
    """
    if not VERSION_PATTERN.match(version):
        raise ValueError(f"Runtime version must be in X.Y.Z form, got '{version}'")
    return version


def runtime_archive_name(version: str, arch: str = "x64") -> str:
    """Return the release archive filename for a PowerShell version."""
    return f"PowerShell-{version}-win-{arch}.zip"


def build_runtime_url(
    version: str,
    arch: str = "x64",
    base_url: str = POWERSHELL_DOWNLOAD_BASE,
) -> str:
    """Build the download URL for a PowerShell release archive.

    Args:
        version: PowerShell version (e.g., '7.5.0').
        arch: Windows architecture (x64, x86, arm64).
        base_url: Base URL for release downloads.

    Returns:
        Archive URL.
    """
    return f"{base_url}/v{version}/{runtime_archive_name(version, arch)}"


def compute_file_sha256(file_path: Path, chunk_size: int = DOWNLOAD_CHUNK_SIZE) -> str:
    """Compute SHA256 checksum of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks to read.

    Returns:
        SHA256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def download_file(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    timeout: float = DOWNLOAD_TIMEOUT,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> DownloadResult:
    """Download a file, hashing it as it streams.

    A partially written destination is removed on failure.

    Args:
        client: HTTPX client instance.
        url: URL to download from.
        dest_path: Destination path for the downloaded file.
        timeout: Download timeout in seconds.
        chunk_size: Size of chunks to download.

    Returns:
        DownloadResult with path, checksum, and size.

    Raises:
        NetworkError: On timeouts, connection errors and retryable statuses.
        DownloadError: On other HTTP errors.
    """
    logger.info("Downloading %s to %s", url, dest_path)

    try:
        with client.stream("GET", url, timeout=timeout) as response:
            response.raise_for_status()

            total_bytes = 0
            sha256 = hashlib.sha256()

            dest_path.parent.mkdir(parents=True, exist_ok=True)

            with dest_path.open("wb") as f:
                for chunk in response.iter_bytes(chunk_size):
                    f.write(chunk)
                    sha256.update(chunk)
                    total_bytes += len(chunk)

            computed_checksum = sha256.hexdigest()

            logger.info(
                "Downloaded %s (%d bytes, checksum: %s)",
                dest_path.name,
                total_bytes,
                computed_checksum[:16] + "...",
            )

            return DownloadResult(
                path=dest_path,
                checksum=computed_checksum,
                size_bytes=total_bytes,
            )

    except httpx.HTTPStatusError as e:
        dest_path.unlink(missing_ok=True)
        status = e.response.status_code
        message = (
            f"HTTP error downloading {url}: {status} {e.response.reason_phrase}"
        )
        if status in RETRYABLE_STATUS_CODES:
            raise NetworkError(message, code="http_retryable") from e
        raise DownloadError(message, code="http_error") from e
    except httpx.TimeoutException as e:
        dest_path.unlink(missing_ok=True)
        raise NetworkError(f"Timeout downloading {url}", code="timeout") from e
    except httpx.RequestError as e:
        dest_path.unlink(missing_ok=True)
        raise NetworkError(
            f"Network error downloading {url}: {e}",
            code="network_error",
        ) from e


__all__ = [
    "DOWNLOAD_CHUNK_SIZE",
    "DownloadResult",
    "POWERSHELL_DOWNLOAD_BASE",
    "build_runtime_url",
    "compute_file_sha256",
    "download_file",
    "runtime_archive_name",
    "validate_version",
]
