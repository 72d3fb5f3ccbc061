"""Customization tasks applied to a mounted image.

Every task implements the CustomizationTask interface and declares the
mount-relative paths it writes (``fnmatch`` patterns allowed). Tasks that run
in the same build must have disjoint paths, which is checked when the task
list is planned, not while the tasks run.

Tasks run on worker threads and must call ``context.checkpoint()`` at safe
points so a timed-out task stops without leaving a half-written file behind.
"""

from __future__ import annotations

import fnmatch
import logging
import re
import shutil
import threading
import time
import zipfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from winpe_imagegen.errors import (
    ConfigurationError,
    ImageNotFoundError,
    PermanentError,
    TaskCancelledError,
)
from winpe_imagegen.mount.engine import ImageEngine, RegistryValue
from winpe_imagegen.packages.cache import CacheEntry

logger = logging.getLogger(__name__)

# Chunk size for cancellable file copies
COPY_CHUNK_SIZE = 4 * 1024 * 1024

# Offline registry location of the machine environment
ENVIRONMENT_KEY = "ControlSet001\\Control\\Session Manager\\Environment"

# WinPE default Path plus the injected runtime
WINPE_PATH = (
    "%SystemRoot%\\system32;%SystemRoot%;%SystemRoot%\\System32\\Wbem;"
    "%SYSTEMROOT%\\System32\\WindowsPowerShell\\v1.0\\;"
    "X:\\Program Files\\PowerShell\\7\\"
)
WINPE_PSMODULEPATH = (
    "%ProgramFiles%\\WindowsPowerShell\\Modules;"
    "%SystemRoot%\\system32\\WindowsPowerShell\\v1.0\\Modules;"
    "X:\\Program Files\\PowerShell\\7\\Modules"
)

LOCALE_DIR_PATTERN = re.compile(r"^[a-z]{2,3}(-[A-Za-z]{2,4}){1,2}$")

DEFAULT_STARTUP_SCRIPT = """\
$ErrorActionPreference = 'Continue'
Write-Host "WinPE $([Environment]::OSVersion.Version) - PowerShell $($PSVersionTable.PSVersion)"
Start-Transcript -Path "$env:TEMP\\Startnet.log" -Append | Out-Null
"""


@dataclass
class TaskContext:
    """Everything a task may touch while running.

    Attributes:
        mount_dir: Root of the mounted image.
        engine: Mount/edit engine for registry edits.
        scratch_dir: Task-private scratch directory outside the image.
        cancel_event: Set when the task must stop.
        deadline: ``time.monotonic()`` value after which the task is late.
    """

    mount_dir: Path
    engine: ImageEngine
    scratch_dir: Path
    cancel_event: threading.Event
    deadline: float | None = None

    def checkpoint(self) -> None:
        """Stop here if cancellation was requested.

        Raises:
            TaskCancelledError: If the cancel event is set.
        """
        if self.cancel_event.is_set():
            raise TaskCancelledError("Task cancelled at checkpoint")

    def remaining(self, default: float = 300.0) -> float:
        """Seconds left before the deadline (``default`` if unbounded)."""
        if self.deadline is None:
            return default
        return max(self.deadline - time.monotonic(), 1.0)


class CustomizationTask(ABC):
    """A unit of work applied to a mounted image."""

    name: str = "task"

    @property
    @abstractmethod
    def paths(self) -> tuple[str, ...]:
        """Mount-relative POSIX paths (or fnmatch patterns) this task writes."""

    @abstractmethod
    def run(self, context: TaskContext) -> None:
        """Apply the customization. Raise on failure."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} name={self.name!r}>"


def paths_overlap(a: str, b: str) -> bool:
    """Whether two declared paths can touch the same file.

    Paths overlap when one is a prefix of the other, component by component,
    with components compared case-insensitively as fnmatch patterns.
    """
    a_parts = PurePosixPath(a.lower()).parts
    b_parts = PurePosixPath(b.lower()).parts
    return all(
        fnmatch.fnmatchcase(x, y) or fnmatch.fnmatchcase(y, x)
        for x, y in zip(a_parts, b_parts, strict=False)
    )


def check_disjoint(tasks: list[CustomizationTask]) -> None:
    """Ensure tasks scheduled together write disjoint subtrees.

    Raises:
        ConfigurationError: On duplicate task names or overlapping paths.
    """
    names = [t.name for t in tasks]
    duplicates = {n for n in names if names.count(n) > 1}
    if duplicates:
        raise ConfigurationError(f"Duplicate task names: {sorted(duplicates)}")

    for i, first in enumerate(tasks):
        for second in tasks[i + 1 :]:
            for a in first.paths:
                for b in second.paths:
                    if paths_overlap(a, b):
                        raise ConfigurationError(
                            f"Tasks {first.name} and {second.name} both write {a} / {b}"
                        )


def copy_file_cancellable(source: Path, dest: Path, context: TaskContext) -> int:
    """Copy a file in chunks, checking for cancellation between chunks.

    The copy goes to a temporary name and is renamed into place at the end,
    so a cancelled copy never leaves a truncated destination.

    Returns:
        Number of bytes copied.
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    partial = dest.with_name(dest.name + ".partial")
    copied = 0
    try:
        with source.open("rb") as src, partial.open("wb") as dst:
            while chunk := src.read(COPY_CHUNK_SIZE):
                context.checkpoint()
                dst.write(chunk)
                copied += len(chunk)
        partial.replace(dest)
    finally:
        partial.unlink(missing_ok=True)
    return copied


class InjectRuntimeTask(CustomizationTask):
    """Extract the PowerShell runtime into the image and register it."""

    name = "inject-runtime"

    def __init__(
        self,
        entry: CacheEntry,
        install_dir: str = "Program Files/PowerShell/7",
    ) -> None:
        self.entry = entry
        self.install_dir = install_dir

    @property
    def paths(self) -> tuple[str, ...]:
        return (self.install_dir, "Windows/System32/config")

    def run(self, context: TaskContext) -> None:
        target = context.mount_dir / self.install_dir
        target_resolved = target.resolve()
        logger.info("Injecting PowerShell %s into %s", self.entry.version, target)

        try:
            archive = zipfile.ZipFile(self.entry.path)
        except (OSError, zipfile.BadZipFile) as e:
            raise PermanentError(
                f"Runtime archive {self.entry.path} is unreadable: {e}",
                code="bad_runtime_archive",
            ) from e

        with archive:
            for member in archive.infolist():
                context.checkpoint()
                member_path = PurePosixPath(member.filename)
                # Security: prevent path traversal
                if member_path.is_absolute() or ".." in member_path.parts:
                    raise PermanentError(
                        f"Refusing to extract {member.filename}: path traversal detected",
                        code="path_traversal",
                    )
                dest = (target / member_path).resolve()
                if not dest.is_relative_to(target_resolved):
                    raise PermanentError(
                        f"Refusing to extract {member.filename} outside {target}",
                        code="path_traversal",
                    )
                archive.extract(member, target)

        if not (target / "pwsh.exe").is_file():
            raise PermanentError(
                f"Runtime archive {self.entry.path.name} does not contain pwsh.exe",
                code="bad_runtime_archive",
            )

        context.checkpoint()
        context.engine.set_registry_values(
            context.mount_dir,
            "SYSTEM",
            ENVIRONMENT_KEY,
            [
                RegistryValue("Path", WINPE_PATH, "REG_EXPAND_SZ"),
                RegistryValue("PSModulePath", WINPE_PSMODULEPATH, "REG_EXPAND_SZ"),
                RegistryValue("POWERSHELL_UPDATECHECK", "Off"),
            ],
            timeout=context.remaining(),
        )
        logger.info("PowerShell %s injected", self.entry.version)


class ConfigureStartupTask(CustomizationTask):
    """Make WinPE start the injected runtime after wpeinit."""

    name = "configure-startup"

    STARTNET = "Windows/System32/startnet.cmd"
    SCRIPT = "Windows/System32/Startnet.ps1"

    def __init__(self, startup_script: Path | None = None) -> None:
        self.startup_script = startup_script

    @property
    def paths(self) -> tuple[str, ...]:
        return (self.STARTNET, self.SCRIPT)

    def render_startnet(self) -> str:
        """Return the startnet.cmd content."""
        return (
            "@ECHO OFF\r\n"
            "wpeinit\r\n"
            "cd\\\r\n"
            'start "PowerShell" /wait "X:\\Program Files\\PowerShell\\7\\pwsh.exe" '
            "-NoLogo -ExecutionPolicy Bypass -File X:\\Windows\\System32\\Startnet.ps1\r\n"
        )

    def run(self, context: TaskContext) -> None:
        if self.startup_script is not None:
            if not self.startup_script.is_file():
                raise ImageNotFoundError(
                    f"Startup script not found: {self.startup_script}"
                )
            script = self.startup_script.read_text(encoding="utf-8")
        else:
            script = DEFAULT_STARTUP_SCRIPT

        system32 = context.mount_dir / "Windows" / "System32"
        system32.mkdir(parents=True, exist_ok=True)

        context.checkpoint()
        (context.mount_dir / self.SCRIPT).write_text(script, encoding="utf-8")
        context.checkpoint()
        # startnet.cmd is read by cmd.exe: ASCII with CRLF line endings
        (context.mount_dir / self.STARTNET).write_bytes(
            self.render_startnet().encode("ascii")
        )
        logger.info("Configured startnet.cmd to launch PowerShell")


class OptimizeSizeTask(CustomizationTask):
    """Remove unused locale resource directories from the image."""

    name = "optimize-size"

    ROOTS = ("Windows/System32", "Windows/SysWOW64")

    def __init__(self, keep_locales: list[str] | None = None) -> None:
        self.keep_locales = {loc.lower() for loc in (keep_locales or ["en-US"])}

    @property
    def paths(self) -> tuple[str, ...]:
        return tuple(f"{root}/*-*" for root in self.ROOTS)

    def find_removable(self, mount_dir: Path) -> list[Path]:
        """List locale directories that are not kept."""
        removable: list[Path] = []
        for root in self.ROOTS:
            base = mount_dir / root
            if not base.is_dir():
                continue
            for child in sorted(base.iterdir()):
                if (
                    child.is_dir()
                    and not child.is_symlink()
                    and LOCALE_DIR_PATTERN.match(child.name)
                    and child.name.lower() not in self.keep_locales
                ):
                    removable.append(child)
        return removable

    def run(self, context: TaskContext) -> None:
        removed = 0
        freed = 0
        for directory in self.find_removable(context.mount_dir):
            context.checkpoint()
            size = sum(p.stat().st_size for p in directory.rglob("*") if p.is_file())
            shutil.rmtree(directory)
            removed += 1
            freed += size
            logger.debug("Removed locale directory %s", directory)
        logger.info(
            "Removed %d unused locale directories (%d bytes)", removed, freed
        )


class EmbedRecoveryTask(CustomizationTask):
    """Embed a recovery environment image into the boot image."""

    name = "embed-recovery"

    DESTINATION = "Windows/System32/Recovery"

    def __init__(self, recovery_image: Path) -> None:
        self.recovery_image = recovery_image

    @property
    def paths(self) -> tuple[str, ...]:
        return (self.DESTINATION,)

    def run(self, context: TaskContext) -> None:
        if not self.recovery_image.is_file():
            raise ImageNotFoundError(f"Recovery image not found: {self.recovery_image}")
        dest = context.mount_dir / self.DESTINATION / "Winre.wim"
        copied = copy_file_cancellable(self.recovery_image, dest, context)
        logger.info("Embedded recovery image %s (%d bytes)", dest, copied)


__all__ = [
    "ConfigureStartupTask",
    "CustomizationTask",
    "EmbedRecoveryTask",
    "InjectRuntimeTask",
    "OptimizeSizeTask",
    "TaskContext",
    "check_disjoint",
    "copy_file_cancellable",
    "paths_overlap",
]
