"""Error taxonomy for winpe_imagegen.

Errors fall into four families:

- TransientError: retryable (network timeouts, image busy on mount/dismount).
- PermanentError: never retried (integrity mismatch, malformed image,
  unsupported version, insufficient disk space, ...).
- OperationTimeoutError: an acquisition or task deadline was exceeded.
- AggregateError: composite of several failed customization tasks.

Every error carries a machine-readable ``code`` for structured reporting.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from winpe_imagegen.types import BuildStage, TaskResult


class ImagegenError(Exception):
    """Base class for all winpe_imagegen errors."""

    default_code = "imagegen_error"

    def __init__(self, message: str, code: str | None = None) -> None:
        """Initialize ImagegenError.

        Args:
            message: Error description.
            code: Error code for structured error handling.
        """
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code


class TransientError(ImagegenError):
    """A failure that may succeed when retried."""

    default_code = "transient_error"


class PermanentError(ImagegenError):
    """A failure that retrying cannot fix."""

    default_code = "permanent_error"


class NetworkError(TransientError):
    """Network timeout, connection failure or server-side HTTP error."""

    default_code = "network_error"


class ImageBusyError(TransientError):
    """The image or mount directory is transiently locked by another process."""

    default_code = "image_busy"


class DownloadError(PermanentError):
    """A download failed in a way that retrying will not fix (e.g. HTTP 404)."""

    default_code = "download_error"


class IntegrityError(PermanentError):
    """Downloaded or cached content does not match its known-good hash."""

    default_code = "integrity_error"

    def __init__(self, version: str, expected: str, actual: str) -> None:
        super().__init__(
            f"Checksum mismatch for runtime {version}: "
            f"expected {expected}, got {actual}"
        )
        self.version = version
        self.expected = expected
        self.actual = actual


class UnsupportedVersionError(PermanentError):
    """No known-good hash is recorded for the requested runtime version."""

    default_code = "unsupported_version"

    def __init__(self, version: str) -> None:
        super().__init__(f"No known hash recorded for runtime version {version}")
        self.version = version


class OfflineModeError(PermanentError):
    """Raised when a download is required but offline mode is enabled."""

    default_code = "offline_mode"


class MalformedImageError(PermanentError):
    """The image file is not a valid or supported image."""

    default_code = "malformed_image"


class ImageNotFoundError(PermanentError):
    """The image file, index or mount directory does not exist."""

    default_code = "image_not_found"


class InsufficientDiskSpaceError(PermanentError):
    """Not enough free space to run the build."""

    default_code = "insufficient_disk_space"

    def __init__(self, path: Path, required_bytes: int, free_bytes: int) -> None:
        super().__init__(
            f"Insufficient disk space at {path}: "
            f"{required_bytes // (1024 * 1024)} MiB required, "
            f"{free_bytes // (1024 * 1024)} MiB free"
        )
        self.path = path
        self.required_bytes = required_bytes
        self.free_bytes = free_bytes


class StaleSessionError(PermanentError):
    """A previous holder of the mount session died without releasing it."""

    default_code = "stale_session"

    def __init__(self, image_path: Path, owner: dict[str, object]) -> None:
        super().__init__(
            f"Stale mount session for {image_path} "
            f"(owner pid={owner.get('pid')} on {owner.get('host')}, "
            f"mount_dir={owner.get('mount_dir')}, "
            f"acquired_at={owner.get('acquired_at')}). "
            "Check 'dism /Get-MountedImageInfo', then run "
            f"'winpe-imagegen sessions recover {image_path}' to discard the "
            "leftover mount."
        )
        self.image_path = image_path
        self.owner = owner


class ConfigurationError(PermanentError):
    """A pipeline collaborator or task list is misconfigured."""

    default_code = "configuration_error"


class InvalidRequestError(PermanentError):
    """A build request failed pre-flight validation."""

    default_code = "invalid_request"


class DismountError(PermanentError):
    """The image could not be dismounted."""

    default_code = "dismount_error"


class PackagingError(PermanentError):
    """The packaging engine failed to produce an artifact."""

    default_code = "packaging_error"


class OperationTimeoutError(ImagegenError, TimeoutError):
    """A blocking operation exceeded its deadline."""

    default_code = "timeout"


class AcquireTimeoutError(OperationTimeoutError):
    """The mount critical section could not be acquired in time."""

    default_code = "acquire_timeout"


class TaskTimeoutError(OperationTimeoutError):
    """A customization task exceeded its allotted duration."""

    default_code = "task_timeout"


class TaskCancelledError(ImagegenError):
    """A customization task observed its cancellation signal."""

    default_code = "task_cancelled"


class AggregateError(ImagegenError):
    """One or more customization tasks failed."""

    default_code = "aggregate_error"

    def __init__(self, results: list[TaskResult]) -> None:
        failed = [r for r in results if not r.success]
        lines = [f"{r.name}: {r.error}" for r in failed]
        super().__init__(
            f"{len(failed)} of {len(results)} customization task(s) failed: "
            + "; ".join(lines)
        )
        self.results = results
        self.failures = failed


class BuildFailedError(ImagegenError):
    """A build failed at a specific pipeline stage."""

    default_code = "build_failed"

    def __init__(
        self,
        stage: BuildStage,
        cause: BaseException,
        diagnostics_path: Path | None = None,
        task_results: list[TaskResult] | None = None,
    ) -> None:
        super().__init__(
            f"Build failed during {stage.value}: {cause}",
            code=getattr(cause, "code", None) or self.default_code,
        )
        self.stage = stage
        self.cause = cause
        self.diagnostics_path = diagnostics_path
        self.task_results = task_results or []


__all__ = [
    "AcquireTimeoutError",
    "AggregateError",
    "BuildFailedError",
    "ConfigurationError",
    "DismountError",
    "DownloadError",
    "ImageBusyError",
    "ImageNotFoundError",
    "ImagegenError",
    "InsufficientDiskSpaceError",
    "IntegrityError",
    "InvalidRequestError",
    "MalformedImageError",
    "NetworkError",
    "OfflineModeError",
    "OperationTimeoutError",
    "PackagingError",
    "PermanentError",
    "StaleSessionError",
    "TaskCancelledError",
    "TaskTimeoutError",
    "TransientError",
    "UnsupportedVersionError",
]
