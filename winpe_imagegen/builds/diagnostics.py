"""Best-effort diagnostics snapshots of a mounted image.

A snapshot copies a fixed list of log and configuration locations out of the
mount directory into ``<destination>/<timestamp>_<image>/`` and writes a
``summary.txt``. Once the image has been dismounted only host-side files
(the engine log and any extra logs such as the packager's) are collected. Nothing here raises: every failed item is logged and listed
as skipped, so collecting diagnostics never hides the failure that caused it.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from winpe_imagegen.mount.session import MountSession
from winpe_imagegen.types import MountState

logger = logging.getLogger(__name__)

# Mount-relative locations worth keeping after a failed build
DIAGNOSTIC_ITEMS = (
    "Windows/Logs/DISM/dism.log",
    "Windows/Logs/CBS/CBS.log",
    "Windows/INF/setupapi.offline.log",
    "Windows/Panther",
    "Windows/System32/startnet.cmd",
    "Windows/System32/winpeshl.ini",
)

REGISTRY_HIVES = (
    "Windows/System32/config/SYSTEM",
    "Windows/System32/config/SOFTWARE",
)

VERSION_FILE = "Windows/servicing/Version"

# Upper bound for a single copied item
MAX_ITEM_BYTES = 512 * 1024 * 1024


@dataclass
class SnapshotReport:
    """What a snapshot collected and what it had to skip."""

    path: Path
    collected: list[str] = field(default_factory=list)
    skipped: list[tuple[str, str]] = field(default_factory=list)


def detect_image_version(mount_dir: Path) -> str | None:
    """Read the image version from the servicing folder, if present.

    ``Windows/servicing/Version`` holds a single subdirectory named after the
    image build, e.g. ``10.0.26100.1``.
    """
    version_dir = mount_dir / VERSION_FILE
    try:
        names = sorted(p.name for p in version_dir.iterdir() if p.is_dir())
    except OSError:
        return None
    return names[-1] if names else None


def _tree_size(path: Path) -> int:
    if path.is_file():
        return path.stat().st_size
    return sum(p.stat().st_size for p in path.rglob("*") if p.is_file())


class DiagnosticsCollector:
    """Snapshot logs and configuration from a mount directory."""

    def __init__(
        self,
        include_registry_hives: bool = False,
        host_log: Path | None = None,
        items: tuple[str, ...] = DIAGNOSTIC_ITEMS,
    ) -> None:
        """Initialize DiagnosticsCollector.

        Args:
            include_registry_hives: Also copy the offline SYSTEM/SOFTWARE hives.
            host_log: Host-side engine log (e.g. the DISM /LogPath file).
            items: Mount-relative paths to collect.
        """
        self.include_registry_hives = include_registry_hives
        self.host_log = host_log
        self.items = items

    def snapshot(
        self,
        session: MountSession,
        destination: Path,
        extra_files: Sequence[Path] = (),
    ) -> Path:
        """Copy diagnostics out of a session's mount directory.

        Args:
            session: Session whose mount directory is inspected.
            destination: Parent directory for the snapshot.
            extra_files: Host-side files to keep alongside the engine log.

        Returns:
            The snapshot directory (created even if every item was skipped).
        """
        return self.collect(session, destination, extra_files).path

    def collect(
        self,
        session: MountSession,
        destination: Path,
        extra_files: Sequence[Path] = (),
    ) -> SnapshotReport:
        """Take a snapshot and return the detailed report."""
        now = datetime.now(timezone.utc)
        name = f"{now.strftime('%Y%m%dT%H%M%S%fZ')}_{session.image_path.stem}"
        report = SnapshotReport(path=destination / name)

        try:
            report.path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning("Cannot create diagnostics directory %s: %s", report.path, e)
            return report

        items = list(self.items)
        if self.include_registry_hives:
            items.extend(REGISTRY_HIVES)

        if session.state == MountState.UNMOUNTED:
            report.skipped.extend((item, "image not mounted") for item in items)
        else:
            for item in items:
                self._copy_item(
                    session.mount_dir / item, report.path / "image" / item, item, report
                )

        host_files = [self.host_log] if self.host_log is not None else []
        host_files.extend(extra_files)
        for host_file in host_files:
            self._copy_item(
                host_file, report.path / "host" / host_file.name, str(host_file), report
            )

        self._write_summary(session, report, now)
        logger.info(
            "Diagnostics snapshot written to %s (%d collected, %d skipped)",
            report.path,
            len(report.collected),
            len(report.skipped),
        )
        return report

    def _copy_item(
        self, source: Path, dest: Path, label: str, report: SnapshotReport
    ) -> None:
        try:
            if not source.exists():
                report.skipped.append((label, "not present"))
                return
            size = _tree_size(source)
            if size > MAX_ITEM_BYTES:
                report.skipped.append((label, f"too large ({size} bytes)"))
                return
            dest.parent.mkdir(parents=True, exist_ok=True)
            if source.is_dir():
                shutil.copytree(source, dest, dirs_exist_ok=True)
            else:
                shutil.copy2(source, dest)
            report.collected.append(label)
        except OSError as e:
            logger.warning("Diagnostics: could not copy %s: %s", label, e)
            report.skipped.append((label, str(e)))

    def _write_summary(
        self, session: MountSession, report: SnapshotReport, collected_at: datetime
    ) -> None:
        lines = [
            f"image_path: {session.image_path}",
            f"image_index: {session.index}",
            f"mount_path: {session.mount_dir}",
            f"session_state: {session.state.value}",
            f"collected_at: {collected_at.isoformat()}",
            f"image_version: {detect_image_version(session.mount_dir) or 'unknown'}",
            "",
            "collected:",
            *(f"  {item}" for item in report.collected),
            "skipped:",
            *(f"  {item}: {reason}" for item, reason in report.skipped),
            "",
        ]
        try:
            (report.path / "summary.txt").write_text("\n".join(lines), encoding="utf-8")
        except OSError as e:
            logger.warning("Diagnostics: could not write summary: %s", e)


__all__ = [
    "DIAGNOSTIC_ITEMS",
    "DiagnosticsCollector",
    "REGISTRY_HIVES",
    "SnapshotReport",
    "detect_image_version",
]
