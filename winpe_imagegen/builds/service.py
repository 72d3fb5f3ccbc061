"""Build service module.

This module provides the high-level build API used by the CLI:
- run_build(): run the orchestrator and persist a BuildRecord either way
- get_build() / list_builds(): query build history
"""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from winpe_imagegen.builds.models import BuildRecord
from winpe_imagegen.builds.orchestrator import BuildOrchestrator
from winpe_imagegen.builds.request import BuildRequest
from winpe_imagegen.errors import BuildFailedError, ImagegenError
from winpe_imagegen.types import BuildArtifact, BuildStage, BuildStatus

logger = logging.getLogger(__name__)


class BuildNotFoundError(ImagegenError):
    """Raised when a build record is not found."""

    default_code = "build_not_found"

    def __init__(self, build_id: int) -> None:
        super().__init__(f"Build not found: {build_id}")
        self.build_id = build_id


def _create_build_record(session: Session, request: BuildRequest) -> BuildRecord:
    """Create a new BuildRecord in pending state."""
    build = BuildRecord(
        source_image=str(request.source_image),
        output_path=str(request.output_path),
        runtime_version=request.runtime_version,
        artifact_format=request.artifact_format.value,
        input_snapshot=request.to_inputs(),
        status=BuildStatus.PENDING.value,
        stage=BuildStage.INIT.value,
    )
    session.add(build)
    session.flush()
    return build


def run_build(
    session: Session,
    orchestrator: BuildOrchestrator,
    request: BuildRequest,
) -> tuple[BuildRecord, BuildArtifact]:
    """Run a build and record its outcome.

    The record is committed before the build starts and again when it ends,
    so failed builds stay visible in the history.

    Args:
        session: Database session.
        orchestrator: Configured orchestrator.
        request: Build request.

    Returns:
        Tuple of (BuildRecord, BuildArtifact).

    Raises:
        BuildFailedError: Re-raised after the failure has been recorded.
    """
    build = _create_build_record(session, request)
    build.mark_running()
    session.commit()
    logger.info("Recorded build %d for %s", build.id, request.source_image)

    try:
        artifact = orchestrator.run(request)
    except BuildFailedError as e:
        build.stage = e.stage.value
        build.mark_failed(
            error_type=type(e.cause).__name__,
            message=str(e.cause),
            code=e.code,
            diagnostics_path=str(e.diagnostics_path) if e.diagnostics_path else None,
        )
        session.commit()
        raise

    build.stage = BuildStage.DONE.value
    build.mark_succeeded(artifact)
    session.commit()
    return build, artifact


def get_build(session: Session, build_id: int) -> BuildRecord:
    """Get a build record by ID.

    Raises:
        BuildNotFoundError: If build not found.
    """
    build = session.get(BuildRecord, build_id)
    if build is None:
        raise BuildNotFoundError(build_id)
    return build


def list_builds(
    session: Session,
    status: BuildStatus | None = None,
    runtime_version: str | None = None,
    limit: int = 100,
) -> list[BuildRecord]:
    """List build records with optional filters, newest first.

    Args:
        session: Database session.
        status: Filter by status.
        runtime_version: Filter by runtime version.
        limit: Maximum results to return.

    Returns:
        List of BuildRecord instances.
    """
    stmt = select(BuildRecord)

    if status is not None:
        stmt = stmt.where(BuildRecord.status == status.value)
    if runtime_version is not None:
        stmt = stmt.where(BuildRecord.runtime_version == runtime_version)

    stmt = stmt.order_by(BuildRecord.id.desc()).limit(limit)

    return list(session.execute(stmt).scalars().all())


__all__ = [
    "BuildNotFoundError",
    "get_build",
    "list_builds",
    "run_build",
]
