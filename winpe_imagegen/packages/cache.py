"""Content-verified local cache of runtime packages.

Layout under the cache directory::

    <cache_dir>/
        .locks/<version>.lock           per-version download lock
        .staging/                       in-flight downloads
        <version>/<archive>.zip         promoted package
        <version>/entry.json            sidecar: version, sha256, validated_at

An entry exists only once its sidecar has been written, and both the archive
and the sidecar are moved into place with an atomic rename, so readers never
observe a partially written entry.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

import httpx

from winpe_imagegen.errors import IntegrityError, OfflineModeError
from winpe_imagegen.locks import file_lock
from winpe_imagegen.packages.catalog import RuntimeCatalog, load_catalog
from winpe_imagegen.packages.fetch import (
    DOWNLOAD_TIMEOUT,
    compute_file_sha256,
    download_file,
    validate_version,
)
from winpe_imagegen.retry import RetryPolicy, download_retryable

if TYPE_CHECKING:
    from winpe_imagegen.config import Settings

logger = logging.getLogger(__name__)

SIDECAR_NAME = "entry.json"
LOCKS_DIRNAME = ".locks"
STAGING_DIRNAME = ".staging"

# Default wait for another caller's download of the same version (seconds)
CACHE_LOCK_TIMEOUT = 1800.0


@dataclass(frozen=True)
class CacheEntry:
    """One verified runtime package in the cache."""

    version: str
    sha256: str
    path: Path
    validated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the sidecar representation."""
        return {
            "version": self.version,
            "sha256": self.sha256,
            "filename": self.path.name,
            "validated_at": self.validated_at.isoformat(),
        }

    @classmethod
    def from_sidecar(cls, sidecar: Path) -> CacheEntry:
        """Load an entry from its sidecar file."""
        data = json.loads(sidecar.read_text(encoding="utf-8"))
        return cls(
            version=data["version"],
            sha256=data["sha256"],
            path=sidecar.parent / data["filename"],
            validated_at=datetime.fromisoformat(data["validated_at"]),
        )


class PackageCache:
    """Runtime package cache with verified, idempotent fetches."""

    def __init__(
        self,
        cache_dir: Path,
        catalog: RuntimeCatalog,
        retry_policy: RetryPolicy | None = None,
        client: httpx.Client | None = None,
        offline: bool = False,
        download_timeout: float = DOWNLOAD_TIMEOUT,
        lock_timeout: float = CACHE_LOCK_TIMEOUT,
    ) -> None:
        """Initialize PackageCache.

        Args:
            cache_dir: Root cache directory.
            catalog: Known-good hash table.
            retry_policy: Policy used around downloads (download_retryable
                predicate is always applied).
            client: HTTPX client (one is created per download if not provided).
            offline: Refuse to download when True.
            download_timeout: Timeout for a single download attempt.
            lock_timeout: Seconds to wait for another caller's download or
                prune of the same version before giving up.
        """
        self.cache_dir = cache_dir
        self.catalog = catalog
        self.retry_policy = (retry_policy or RetryPolicy()).with_predicate(
            download_retryable
        )
        self.client = client
        self.offline = offline
        self.download_timeout = download_timeout
        self.lock_timeout = lock_timeout

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        catalog: RuntimeCatalog | None = None,
        client: httpx.Client | None = None,
    ) -> PackageCache:
        """Create a cache configured from application settings."""
        if catalog is None:
            catalog = load_catalog(settings.effective_catalog_path())
        return cls(
            cache_dir=settings.cache_dir,
            catalog=catalog,
            retry_policy=RetryPolicy(
                max_attempts=settings.retry_max_attempts,
                base_delay=settings.retry_base_delay,
                max_delay=settings.retry_max_delay,
            ),
            client=client,
            offline=settings.offline,
            download_timeout=settings.download_timeout,
            lock_timeout=settings.cache_lock_timeout,
        )

    def entry_dir(self, version: str) -> Path:
        """Return the directory holding a version's entry."""
        return self.cache_dir / version

    def lookup(self, version: str) -> CacheEntry | None:
        """Return the recorded entry for a version without verifying it."""
        sidecar = self.entry_dir(version) / SIDECAR_NAME
        if not sidecar.exists():
            return None
        try:
            return CacheEntry.from_sidecar(sidecar)
        except (OSError, ValueError, KeyError) as e:
            logger.warning("Unreadable cache sidecar %s: %s", sidecar, e)
            return None

    def verify(self, entry: CacheEntry, expected_sha256: str) -> bool:
        """Check a stored entry against the expected hash.

        Both the recorded hash and the file content must match.
        """
        if entry.sha256 != expected_sha256:
            logger.warning(
                "Cached runtime %s was recorded with a different hash", entry.version
            )
            return False
        if not entry.path.is_file():
            logger.warning("Cached runtime file missing: %s", entry.path)
            return False
        actual = compute_file_sha256(entry.path)
        if actual != expected_sha256:
            logger.warning(
                "Cached runtime %s failed verification (got %s)",
                entry.version,
                actual[:16] + "...",
            )
            return False
        return True

    def invalidate(self, version: str) -> bool:
        """Remove a version's entry from the cache.

        Returns:
            True if an entry directory was removed.
        """
        entry_dir = self.entry_dir(version)
        if not entry_dir.exists():
            return False
        logger.info("Invalidating cached runtime %s", version)
        # Sidecar first so the entry disappears before its payload
        (entry_dir / SIDECAR_NAME).unlink(missing_ok=True)
        shutil.rmtree(entry_dir)
        return True

    def get_or_fetch(self, version: str, timeout: float | None = None) -> CacheEntry:
        """Return a verified entry for ``version``, downloading it if needed.

        Args:
            version: Runtime version (X.Y.Z).
            timeout: Per-attempt download timeout override. Also caps the wait
                for another caller's download of the same version.

        Returns:
            Verified CacheEntry.

        Raises:
            ValueError: If the version is malformed.
            UnsupportedVersionError: If the catalog has no hash for the version.
            IntegrityError: If the downloaded content does not match.
            OfflineModeError: If a download is required in offline mode.
            NetworkError: If the download keeps failing transiently.
            DownloadError: If the download fails permanently.
            AcquireTimeoutError: If another caller holds the lock too long.
        """
        validate_version(version)
        expected = self.catalog.expected_hash(version)

        entry = self.lookup(version)
        if entry is not None and self.verify(entry, expected):
            logger.info("Using cached runtime %s at %s", version, entry.path)
            return entry

        lock_wait = self.lock_timeout if timeout is None else min(self.lock_timeout, timeout)
        lock_file = self.cache_dir / LOCKS_DIRNAME / f"{version}.lock"
        with file_lock(lock_file, timeout=lock_wait, description=f"runtime {version}"):
            # Re-check after acquiring lock (another caller may have promoted it)
            entry = self.lookup(version)
            if entry is not None:
                if self.verify(entry, expected):
                    logger.info(
                        "Runtime %s became available while waiting for lock",
                        version,
                    )
                    return entry
                self.invalidate(version)
            elif self.entry_dir(version).exists():
                # Leftover without a sidecar (interrupted promotion)
                self.invalidate(version)

            if self.offline:
                raise OfflineModeError(
                    f"Cannot download runtime {version} in offline mode"
                )

            return self._fetch_and_promote(version, expected, timeout)

    def _fetch_and_promote(
        self, version: str, expected: str, timeout: float | None
    ) -> CacheEntry:
        url = self.catalog.url_for(version)
        filename = self.catalog.filename_for(version)

        staging_dir = self.cache_dir / STAGING_DIRNAME
        staging_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            dir=staging_dir, prefix=f"{version}-", suffix=".part", delete=False
        ) as tmp_file:
            tmp_path = Path(tmp_file.name)

        manage_client = self.client is None
        client: httpx.Client = (
            httpx.Client(follow_redirects=True) if manage_client else self.client  # type: ignore[assignment]
        )

        try:
            result = self.retry_policy.execute(
                lambda: download_file(
                    client,
                    url,
                    tmp_path,
                    timeout=timeout or self.download_timeout,
                ),
                description=f"download runtime {version}",
            )

            # Integrity mismatch is fatal: corruption or tampering, not transience
            if result.checksum != expected:
                raise IntegrityError(version, expected, result.checksum)

            entry_dir = self.entry_dir(version)
            entry_dir.mkdir(parents=True, exist_ok=True)
            final_path = entry_dir / filename
            os.replace(tmp_path, final_path)

            entry = CacheEntry(
                version=version,
                sha256=result.checksum,
                path=final_path,
                validated_at=datetime.now(timezone.utc),
            )
            _write_json_atomic(entry_dir / SIDECAR_NAME, entry.to_dict())

            logger.info("Cached runtime %s at %s", version, final_path)
            return entry

        finally:
            tmp_path.unlink(missing_ok=True)
            if manage_client:
                client.close()

    def list_entries(self) -> list[CacheEntry]:
        """List recorded entries, sorted by version."""
        entries: list[CacheEntry] = []
        if not self.cache_dir.exists():
            return entries
        for child in sorted(self.cache_dir.iterdir()):
            if child.name.startswith(".") or not child.is_dir():
                continue
            entry = self.lookup(child.name)
            if entry is not None:
                entries.append(entry)
        return entries

    def prune(self, keep_versions: list[str] | None = None) -> list[str]:
        """Remove cached versions not in ``keep_versions``.

        Returns:
            Versions that were removed.
        """
        keep = set(keep_versions or [])
        removed: list[str] = []
        for entry in self.list_entries():
            if entry.version in keep:
                continue
            lock_file = self.cache_dir / LOCKS_DIRNAME / f"{entry.version}.lock"
            with file_lock(lock_file, timeout=self.lock_timeout):
                if self.invalidate(entry.version):
                    removed.append(entry.version)
        return removed

    def cache_info(self) -> dict[str, object]:
        """Summarize the cache directory."""
        total = 0
        if self.cache_dir.exists():
            for path in self.cache_dir.rglob("*"):
                if path.is_file():
                    total += path.stat().st_size
        return {
            "cache_dir": str(self.cache_dir),
            "entries": len(self.list_entries()),
            "total_size_bytes": total,
            "exists": self.cache_dir.exists(),
        }


def _write_json_atomic(path: Path, data: dict[str, Any]) -> None:
    """Write JSON to ``path`` via a temporary file and atomic rename."""
    tmp_path = path.with_name(f".{path.name}.tmp")
    with tmp_path.open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, sort_keys=True)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)


__all__ = ["CACHE_LOCK_TIMEOUT", "CacheEntry", "PackageCache", "SIDECAR_NAME"]
