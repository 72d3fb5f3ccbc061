"""Build orchestrator: the top-level pipeline state machine.

Stages run in order::

    init -> acquire_mount -> customize -> dismount -> assemble -> cleanup -> done

and any stage may end in ``failed``. Every failure reaches the caller as a
BuildFailedError naming the stage it happened in. When a mount was acquired,
a diagnostics snapshot is taken and a live mount is dismounted with
``save=False`` before the error is raised. Errors during that recovery are
logged and never replace the original cause.
"""

from __future__ import annotations

import logging
import shutil
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol, runtime_checkable

from winpe_imagegen.builds.artifacts import finalize_artifact
from winpe_imagegen.builds.coordinator import ParallelTaskCoordinator
from winpe_imagegen.builds.diagnostics import DiagnosticsCollector
from winpe_imagegen.builds.packager import DirectoryPackager, Packager
from winpe_imagegen.builds.request import BuildRequest
from winpe_imagegen.builds.tasks import (
    ConfigureStartupTask,
    CustomizationTask,
    EmbedRecoveryTask,
    InjectRuntimeTask,
    OptimizeSizeTask,
    check_disjoint,
)
from winpe_imagegen.config import Settings
from winpe_imagegen.errors import (
    AggregateError,
    BuildFailedError,
    ConfigurationError,
    ImageNotFoundError,
    InsufficientDiskSpaceError,
    InvalidRequestError,
)
from winpe_imagegen.mount.engine import ImageEngine
from winpe_imagegen.mount.session import MountSession, MountSessionManager
from winpe_imagegen.packages.cache import CacheEntry
from winpe_imagegen.types import (
    ArtifactFormat,
    BuildArtifact,
    BuildStage,
    MountState,
    TaskResult,
)

logger = logging.getLogger(__name__)

MIB = 1024 * 1024


@runtime_checkable
class RuntimeProvider(Protocol):
    """Source of verified runtime packages (the package cache)."""

    def get_or_fetch(self, version: str, timeout: float | None = None) -> CacheEntry:
        """Return a verified entry for ``version``."""
        ...


@dataclass
class BuildContext:
    """Mutable bookkeeping for one run of the pipeline."""

    build_id: str
    request: BuildRequest
    stage: BuildStage = BuildStage.INIT
    work_dir: Path | None = None
    session: MountSession | None = None
    diagnostics_path: Path | None = None
    task_results: list[TaskResult] = field(default_factory=list)

    @property
    def scratch_dir(self) -> Path | None:
        return self.work_dir / "scratch" if self.work_dir else None

    @property
    def mount_dir(self) -> Path | None:
        return self.work_dir / "mount" if self.work_dir else None


def _free_bytes(path: Path) -> int:
    """Free space on the filesystem holding ``path`` (or its nearest parent)."""
    existing = path
    while not existing.exists() and existing != existing.parent:
        existing = existing.parent
    return shutil.disk_usage(existing).free


def _tree_size(path: Path) -> int:
    if path.is_file():
        return path.stat().st_size
    return sum(p.stat().st_size for p in path.rglob("*") if p.is_file())


def _packager_logs(output_path: Path) -> list[Path]:
    """Tool logs a packager left beside the artifact (``<stem>.<tool>.log``)."""
    if not output_path.parent.is_dir():
        return []
    return sorted(output_path.parent.glob(f"{output_path.stem}.*.log"))


class BuildOrchestrator:
    """Drive a build from request to packaged artifact."""

    def __init__(
        self,
        engine: ImageEngine,
        packager: Packager,
        cache: RuntimeProvider,
        settings: Settings,
        sessions: MountSessionManager | None = None,
        diagnostics: DiagnosticsCollector | None = None,
        usb_packager: Packager | None = None,
        on_stage: Callable[[BuildStage], None] | None = None,
    ) -> None:
        """Initialize BuildOrchestrator.

        Args:
            engine: Mount/edit engine.
            packager: Packager used for ISO artifacts.
            cache: Runtime package provider.
            settings: Application settings (directories, limits).
            sessions: Mount session manager (built from settings if omitted).
            diagnostics: Diagnostics collector (built from settings if omitted).
            usb_packager: Packager used for USB artifacts.
            on_stage: Called with each stage as the pipeline enters it.

        Raises:
            ConfigurationError: If a collaborator does not implement its
                protocol.
        """
        if not isinstance(engine, ImageEngine):
            raise ConfigurationError(
                f"{type(engine).__name__} does not implement the ImageEngine protocol"
            )
        usb_packager = usb_packager or DirectoryPackager()
        for candidate in (packager, usb_packager):
            if not isinstance(candidate, Packager):
                raise ConfigurationError(
                    f"{type(candidate).__name__} does not implement the Packager protocol"
                )
        if not isinstance(cache, RuntimeProvider):
            raise ConfigurationError(
                f"{type(cache).__name__} does not provide get_or_fetch()"
            )

        self.engine = engine
        self.packagers: dict[ArtifactFormat, Packager] = {
            ArtifactFormat.ISO: packager,
            ArtifactFormat.USB: usb_packager,
        }
        self.cache = cache
        self.settings = settings
        self.sessions = sessions or MountSessionManager.from_settings(engine, settings)
        self.diagnostics = diagnostics or DiagnosticsCollector(
            include_registry_hives=settings.collect_registry_hives
        )
        self.on_stage = on_stage

    def _enter(self, ctx: BuildContext, stage: BuildStage) -> None:
        ctx.stage = stage
        logger.info("Build %s: entering stage %s", ctx.build_id, stage.value)
        if self.on_stage is not None:
            self.on_stage(stage)

    def run(self, request: BuildRequest) -> BuildArtifact:
        """Run the full pipeline for one request.

        Returns:
            The verified BuildArtifact.

        Raises:
            BuildFailedError: On any failure, carrying the failing stage, the
                original cause, the diagnostics path (if a snapshot was taken)
                and the task results (if customization ran).
        """
        started = datetime.now(timezone.utc)
        ctx = BuildContext(
            build_id=f"{started.strftime('%Y%m%dT%H%M%S')}-{uuid.uuid4().hex[:8]}",
            request=request,
        )
        logger.info(
            "Build %s: %s -> %s (runtime %s, format %s)",
            ctx.build_id,
            request.source_image,
            request.output_path,
            request.runtime_version,
            request.artifact_format.value,
        )

        try:
            try:
                artifact = self._run_stages(ctx)
            except Exception as e:
                failed_stage = ctx.stage
                self._recover(ctx)
                if isinstance(e, AggregateError):
                    ctx.task_results = list(e.results)
                logger.error(
                    "Build %s failed during %s: %s", ctx.build_id, failed_stage.value, e
                )
                self._enter(ctx, BuildStage.FAILED)
                raise BuildFailedError(
                    failed_stage,
                    e,
                    diagnostics_path=ctx.diagnostics_path,
                    task_results=ctx.task_results,
                ) from e
        finally:
            self._cleanup(ctx)

        self._enter(ctx, BuildStage.DONE)
        logger.info(
            "Build %s finished in %.1fs: %s (sha256 %s)",
            ctx.build_id,
            (datetime.now(timezone.utc) - started).total_seconds(),
            artifact.path,
            artifact.sha256,
        )
        return artifact

    def _run_stages(self, ctx: BuildContext) -> BuildArtifact:
        request = ctx.request

        self._enter(ctx, BuildStage.INIT)
        tasks, work_dir = self._initialize(ctx)

        self._enter(ctx, BuildStage.ACQUIRE_MOUNT)
        ctx.session = self.sessions.acquire(
            request.source_image,
            timeout=request.timeouts.acquire,
            index=request.image_index,
            mount_dir=work_dir / "mount",
            mount_timeout=request.timeouts.mount,
        )

        self._enter(ctx, BuildStage.CUSTOMIZE)
        coordinator = ParallelTaskCoordinator(self.engine, work_dir / "scratch" / "tasks")
        ctx.task_results = coordinator.run_all(ctx.session, tasks, request.timeouts.task)

        self._enter(ctx, BuildStage.DISMOUNT)
        self.sessions.release(
            ctx.session, save=True, dismount_timeout=request.timeouts.dismount
        )

        self._enter(ctx, BuildStage.ASSEMBLE)
        packager = self.packagers[request.artifact_format]
        output = packager.assemble(
            request.resolved_media_dir(),
            request.output_path,
            timeout=request.timeouts.assemble,
            label=request.volume_label,
        )
        return finalize_artifact(
            output,
            runtime_version=request.runtime_version,
            includes_recovery=request.flags.include_recovery,
            task_results=ctx.task_results,
            build_inputs=request.to_inputs(),
        )

    def _initialize(self, ctx: BuildContext) -> tuple[list[CustomizationTask], Path]:
        """Validate inputs, check disk space, resolve packages, plan tasks.

        Returns:
            The planned tasks and the build's work directory.
        """
        request = ctx.request
        self.validate_request(request)
        self.check_disk_space(request)

        work_dir = self.settings.work_dir / ctx.build_id
        ctx.work_dir = work_dir
        (work_dir / "scratch").mkdir(parents=True, exist_ok=True)

        entry = self.cache.get_or_fetch(
            request.runtime_version, timeout=request.timeouts.download
        )
        tasks = self.plan_tasks(request, entry)
        check_disjoint(tasks)
        return tasks, work_dir

    def validate_request(self, request: BuildRequest) -> None:
        """Check that every input of a request exists and is usable.

        Raises:
            ImageNotFoundError: If an input file or directory is missing.
            InvalidRequestError: If paths are inconsistent.
        """
        if not request.source_image.is_file():
            raise ImageNotFoundError(f"Source image not found: {request.source_image}")

        media_dir = request.resolved_media_dir()
        if not media_dir.is_dir():
            raise ImageNotFoundError(f"Media tree not found: {media_dir}")
        if not request.source_image.resolve().is_relative_to(media_dir.resolve()):
            raise InvalidRequestError(
                f"Source image {request.source_image} is not inside media tree {media_dir}"
            )

        output = request.output_path.resolve()
        if output.is_relative_to(media_dir.resolve()):
            raise InvalidRequestError(
                f"Output {request.output_path} must not be inside media tree {media_dir}"
            )
        if request.artifact_format == ArtifactFormat.ISO and output.is_dir():
            raise InvalidRequestError(f"ISO output {output} is a directory")

        if request.flags.include_recovery:
            if request.recovery_image is None:
                raise InvalidRequestError("include_recovery requires a recovery image")
            if not request.recovery_image.is_file():
                raise ImageNotFoundError(
                    f"Recovery image not found: {request.recovery_image}"
                )
        if request.startup_script is not None and not request.startup_script.is_file():
            raise ImageNotFoundError(f"Startup script not found: {request.startup_script}")

        try:
            output.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise InvalidRequestError(
                f"Cannot create output directory {output.parent}: {e}"
            ) from e

    def check_disk_space(self, request: BuildRequest) -> None:
        """Pre-flight free space for the work area and the artifact.

        Raises:
            InsufficientDiskSpaceError: If either location is short of space.
        """
        reserve = self.settings.min_free_space_mb * MIB
        checks = [
            # Committing a mounted WIM can need roughly its own size again
            (self.settings.work_dir, reserve + request.source_image.stat().st_size),
            (request.output_path.parent, _tree_size(request.resolved_media_dir())),
        ]
        for path, required in checks:
            free = _free_bytes(path)
            if free < required:
                raise InsufficientDiskSpaceError(path, required, free)
            logger.debug("Free space at %s: %d MiB", path, free // MIB)

    def plan_tasks(
        self, request: BuildRequest, entry: CacheEntry
    ) -> list[CustomizationTask]:
        """Build the customization task list from the request's flags."""
        tasks: list[CustomizationTask] = [InjectRuntimeTask(entry)]
        if request.flags.configure_startup:
            tasks.append(ConfigureStartupTask(request.startup_script))
        if request.flags.optimize_size:
            tasks.append(OptimizeSizeTask(list(request.keep_locales)))
        if request.flags.include_recovery and request.recovery_image is not None:
            tasks.append(EmbedRecoveryTask(request.recovery_image))
        return tasks

    def _recover(self, ctx: BuildContext) -> None:
        """Snapshot diagnostics and discard a live mount after a failure.

        A failure after the image was committed (e.g. during assembly) still
        gets a snapshot of the host-side logs.
        """
        session = ctx.session
        if session is None:
            return

        try:
            ctx.diagnostics_path = self.diagnostics.snapshot(
                session,
                self.settings.diagnostics_dir,
                extra_files=_packager_logs(ctx.request.output_path),
            )
        except Exception as e:
            logger.error("Diagnostics snapshot failed: %s", e)

        if session.holds_lock:
            try:
                self.sessions.release(
                    session, save=False, dismount_timeout=ctx.request.timeouts.dismount
                )
            except Exception as e:
                logger.error(
                    "Discard dismount of %s failed: %s", session.image_path, e
                )

    def _cleanup(self, ctx: BuildContext) -> None:
        """Remove temporary directories. Errors are logged, never raised."""
        if ctx.work_dir is None:
            return
        if ctx.stage != BuildStage.FAILED:
            self._enter(ctx, BuildStage.CLEANUP)
        else:
            logger.info("Build %s: cleaning up after failure", ctx.build_id)

        session = ctx.session
        if session is not None and session.holds_lock:
            # Only reachable when the run was interrupted (e.g. KeyboardInterrupt)
            try:
                self.sessions.release(
                    session, save=False, dismount_timeout=ctx.request.timeouts.dismount
                )
            except Exception as e:
                logger.error("Discard dismount during cleanup failed: %s", e)

        mount_left = session is not None and session.state != MountState.UNMOUNTED
        try:
            if ctx.request.flags.preserve_artifacts or mount_left:
                if ctx.scratch_dir is not None and ctx.scratch_dir.exists():
                    shutil.rmtree(ctx.scratch_dir)
                if mount_left:
                    logger.warning(
                        "Mount directory left in place for inspection: %s",
                        session.mount_dir if session else ctx.mount_dir,
                    )
                else:
                    logger.info("Preserved build work directory %s", ctx.work_dir)
            elif ctx.work_dir.exists():
                shutil.rmtree(ctx.work_dir)
        except OSError as e:
            logger.error("Cleanup of %s failed: %s", ctx.work_dir, e)


__all__ = ["BuildContext", "BuildOrchestrator", "RuntimeProvider"]
