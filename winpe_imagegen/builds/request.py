"""Pydantic models describing a build request.

A BuildRequest is created once per invocation and never mutated: every model
here is frozen.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from winpe_imagegen.packages.fetch import VERSION_PATTERN
from winpe_imagegen.types import ArtifactFormat

if TYPE_CHECKING:
    from winpe_imagegen.config import Settings


class BuildFlags(BaseModel):
    """Feature switches that decide which customization tasks run."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    include_recovery: bool = Field(
        default=False, description="Embed a recovery image into the boot image"
    )
    optimize_size: bool = Field(
        default=True, description="Remove unused locale resources"
    )
    configure_startup: bool = Field(
        default=True, description="Launch PowerShell from startnet.cmd"
    )
    preserve_artifacts: bool = Field(
        default=False, description="Keep the per-build work directory"
    )


class StageTimeouts(BaseModel):
    """Per-stage timeouts in seconds."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    acquire: float = Field(default=600, gt=0)
    mount: float = Field(default=900, gt=0)
    dismount: float = Field(default=900, gt=0)
    task: float = Field(default=1800, gt=0)
    download: float = Field(default=1800, gt=0)
    assemble: float = Field(default=1800, gt=0)

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: float | None) -> StageTimeouts:
        """Build timeouts from settings, applying non-None overrides."""
        values: dict[str, float] = {
            "acquire": settings.acquire_timeout,
            "mount": settings.mount_timeout,
            "dismount": settings.dismount_timeout,
            "task": settings.task_timeout,
            "download": settings.download_timeout,
            "assemble": settings.assemble_timeout,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


class BuildRequest(BaseModel):
    """Immutable input to a single build.

    Attributes:
        source_image: Boot image (``.wim``) to customize in place.
        image_index: Image index inside the WIM.
        output_path: ISO file, or USB staging directory, to produce.
        runtime_version: PowerShell version to inject (X.Y.Z).
        media_dir: Media tree packaged around the image.
        artifact_format: ``iso`` or ``usb``.
        flags: Feature switches.
        recovery_image: Recovery image, required with ``include_recovery``.
        startup_script: Custom PowerShell startup script.
        keep_locales: Locale directories kept by size optimization.
        volume_label: Volume label of the artifact.
        timeouts: Per-stage timeouts.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    source_image: Path
    image_index: int = Field(default=1, ge=1)
    output_path: Path
    runtime_version: str
    media_dir: Path | None = None
    artifact_format: ArtifactFormat = ArtifactFormat.ISO
    flags: BuildFlags = Field(default_factory=BuildFlags)
    recovery_image: Path | None = None
    startup_script: Path | None = None
    keep_locales: tuple[str, ...] = ("en-US",)
    volume_label: str = Field(default="WINPE", min_length=1, max_length=32)
    timeouts: StageTimeouts = Field(default_factory=StageTimeouts)

    @field_validator("runtime_version")
    @classmethod
    def validate_runtime_version(cls, v: str) -> str:
        """Validate the runtime version is X.Y.Z."""
        if not VERSION_PATTERN.match(v):
            raise ValueError(f"runtime_version must be in X.Y.Z form, got '{v}'")
        return v

    @model_validator(mode="after")
    def validate_recovery(self) -> BuildRequest:
        """Require a recovery image when recovery embedding is enabled."""
        if self.flags.include_recovery and self.recovery_image is None:
            raise ValueError("recovery_image is required when include_recovery is set")
        return self

    def resolved_media_dir(self) -> Path:
        """Return the media tree to package.

        Defaults to the directory above ``sources/`` when the image lives in
        a ``sources`` folder (the layout of WinPE media and ADK copype
        output), otherwise the image's own directory.
        """
        if self.media_dir is not None:
            return self.media_dir
        parent = self.source_image.parent
        if parent.name.lower() == "sources":
            return parent.parent
        return parent

    def to_inputs(self) -> dict[str, Any]:
        """Serialize the request for manifests and build history."""
        return self.model_dump(mode="json")


__all__ = ["BuildFlags", "BuildRequest", "StageTimeouts"]
