"""Shared type definitions for winpe_imagegen.

This module contains dataclasses, enums, and type aliases shared across
subpackages to avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class BuildStatus(str, Enum):
    """Status of a recorded build."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class BuildStage(str, Enum):
    """Stage of the build pipeline state machine."""

    INIT = "init"
    ACQUIRE_MOUNT = "acquire_mount"
    CUSTOMIZE = "customize"
    DISMOUNT = "dismount"
    ASSEMBLE = "assemble"
    CLEANUP = "cleanup"
    DONE = "done"
    FAILED = "failed"


class MountState(str, Enum):
    """State of a mount session."""

    UNMOUNTED = "unmounted"
    MOUNTING = "mounting"
    MOUNTED = "mounted"
    DISMOUNTING = "dismounting"
    FAILED = "failed"


class ArtifactFormat(str, Enum):
    """Output format of the packaged artifact."""

    ISO = "iso"
    USB = "usb"


@dataclass
class TaskResult:
    """Outcome of one customization task."""

    name: str
    success: bool
    duration_seconds: float
    error: str | None = None
    error_type: str | None = None
    cancelled: bool = False


@dataclass
class BuildArtifact:
    """The packaged output of a successful build.

    Attributes:
        path: Path to the artifact (ISO file or USB staging directory).
        size_bytes: Artifact size in bytes.
        sha256: SHA-256 of the artifact (of the manifest listing for USB trees).
        includes_recovery: Whether a recovery image was embedded.
        runtime_version: PowerShell runtime version injected.
        manifest_path: Path to the written build manifest.
        task_results: Results of the customization tasks.
    """

    path: Path
    size_bytes: int
    sha256: str
    includes_recovery: bool
    runtime_version: str
    manifest_path: Path | None = None
    task_results: list[TaskResult] = field(default_factory=list)


__all__ = [
    "ArtifactFormat",
    "BuildArtifact",
    "BuildStage",
    "BuildStatus",
    "MountState",
    "TaskResult",
]
