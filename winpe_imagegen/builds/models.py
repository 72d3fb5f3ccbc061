"""Build history ORM model.

One BuildRecord is stored per build invocation, whether it succeeded or not,
so failed builds can be traced to their stage and diagnostics snapshot.
"""

from datetime import datetime

from sqlalchemy import JSON, BigInteger, DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from winpe_imagegen.db import Base
from winpe_imagegen.types import BuildArtifact, BuildStatus


class BuildRecord(Base):
    """ORM model for build execution records.

    Attributes:
        id: Primary key.
        status: Build status (pending, running, succeeded, failed).
        stage: Last pipeline stage entered (the failing stage on failure).
        source_image: Image the build customized.
        output_path: Requested artifact path.
        runtime_version: Injected runtime version.
        artifact_format: iso or usb.
        requested_at: Timestamp when build was requested.
        started_at: Timestamp when build started executing.
        finished_at: Timestamp when build finished.
        input_snapshot: JSON representation of the build request.
        artifact_sha256: Checksum of the produced artifact.
        artifact_size_bytes: Size of the produced artifact.
        manifest_path: Path to the written manifest.
        diagnostics_path: Diagnostics snapshot taken on failure.
        error_type: Type of error if build failed.
        error_code: Machine-readable error code if build failed.
        error_message: Error message if build failed.
    """

    __tablename__ = "build_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Status and timing
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BuildStatus.PENDING.value, index=True
    )
    stage: Mapped[str | None] = mapped_column(String(32), nullable=True)
    requested_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Inputs
    source_image: Mapped[str] = mapped_column(String(500), nullable=False)
    output_path: Mapped[str] = mapped_column(String(500), nullable=False)
    runtime_version: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    artifact_format: Mapped[str] = mapped_column(String(8), nullable=False)
    input_snapshot: Mapped[dict[str, object] | None] = mapped_column(
        JSON, nullable=True
    )

    # Outputs
    artifact_sha256: Mapped[str | None] = mapped_column(String(64), nullable=True)
    artifact_size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    manifest_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    diagnostics_path: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Error tracking
    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (Index("ix_build_records_image_status", "source_image", "status"),)

    def __repr__(self) -> str:
        """Return string representation of BuildRecord."""
        return (
            f"<BuildRecord(id={self.id}, status='{self.status}', "
            f"stage='{self.stage}', runtime='{self.runtime_version}')>"
        )

    def mark_running(self) -> None:
        """Mark this build as running."""
        self.status = BuildStatus.RUNNING.value
        self.started_at = datetime.now()

    def mark_succeeded(self, artifact: BuildArtifact) -> None:
        """Mark this build as succeeded and record its artifact."""
        self.status = BuildStatus.SUCCEEDED.value
        self.finished_at = datetime.now()
        self.artifact_sha256 = artifact.sha256
        self.artifact_size_bytes = artifact.size_bytes
        if artifact.manifest_path is not None:
            self.manifest_path = str(artifact.manifest_path)

    def mark_failed(
        self,
        error_type: str | None = None,
        message: str | None = None,
        code: str | None = None,
        diagnostics_path: str | None = None,
    ) -> None:
        """Mark this build as failed.

        Args:
            error_type: Type/category of the error.
            message: Error message details.
            code: Machine-readable error code.
            diagnostics_path: Diagnostics snapshot location, if any.
        """
        self.status = BuildStatus.FAILED.value
        self.finished_at = datetime.now()
        if error_type:
            self.error_type = error_type
        if message:
            self.error_message = message
        if code:
            self.error_code = code
        if diagnostics_path:
            self.diagnostics_path = diagnostics_path

    def is_succeeded(self) -> bool:
        """Check if this build succeeded."""
        return self.status == BuildStatus.SUCCEEDED.value


__all__ = ["BuildRecord"]
