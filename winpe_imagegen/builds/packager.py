"""Packaging of a media tree into a bootable artifact.

The packaging engine is external. ``Packager`` is the narrow protocol the
orchestrator talks to:

- OscdimgPackager builds a dual BIOS/UEFI bootable ISO with ``oscdimg.exe``.
- DirectoryPackager lays the media tree out as a USB staging directory.

Both write to a temporary sibling of the output and rename it into place, so
a failed or interrupted run never leaves a half-written artifact at the
output path.
"""

from __future__ import annotations

import logging
import shlex
import shutil
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol, runtime_checkable

from winpe_imagegen.errors import (
    ConfigurationError,
    ImageNotFoundError,
    OperationTimeoutError,
    PackagingError,
)

logger = logging.getLogger(__name__)

BIOS_BOOT_SECTOR = "boot/etfsboot.com"
UEFI_BOOT_IMAGE = "efi/microsoft/boot/efisys.bin"

DEFAULT_LABEL = "WINPE"


@runtime_checkable
class Packager(Protocol):
    """Turns a media tree into an artifact at ``output_path``."""

    def assemble(
        self,
        source_dir: Path,
        output_path: Path,
        timeout: float,
        label: str = DEFAULT_LABEL,
    ) -> Path:
        """Build the artifact and return its path."""
        ...


def compose_oscdimg_command(
    oscdimg_path: str,
    source_dir: Path,
    output_path: Path,
    label: str = DEFAULT_LABEL,
) -> list[str]:
    """Compose the oscdimg command for a dual-boot ISO.

    Args:
        oscdimg_path: oscdimg executable.
        source_dir: Media tree root.
        output_path: ISO file to write.
        label: Volume label.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    etfsboot = source_dir / BIOS_BOOT_SECTOR
    efisys = source_dir / UEFI_BOOT_IMAGE
    bootdata = f"2#p0,e,b{etfsboot}#pEF,e,b{efisys}"
    return [
        oscdimg_path,
        "-m",
        "-o",
        "-u2",
        "-udfver102",
        f"-l{label}",
        f"-bootdata:{bootdata}",
        str(source_dir),
        str(output_path),
    ]


class OscdimgPackager:
    """Packager producing a bootable ISO with oscdimg.exe."""

    def __init__(self, oscdimg_path: str = "oscdimg.exe", log_dir: Path | None = None) -> None:
        self.oscdimg_path = oscdimg_path
        self.log_dir = log_dir

    def assemble(
        self,
        source_dir: Path,
        output_path: Path,
        timeout: float,
        label: str = DEFAULT_LABEL,
    ) -> Path:
        """Build an ISO from ``source_dir``.

        Raises:
            ImageNotFoundError: If boot files are missing from the media tree.
            OperationTimeoutError: If oscdimg exceeds ``timeout``.
            PackagingError: If oscdimg fails or produces no output.
        """
        for boot_file in (BIOS_BOOT_SECTOR, UEFI_BOOT_IMAGE):
            if not (source_dir / boot_file).is_file():
                raise ImageNotFoundError(
                    f"Media tree {source_dir} is missing {boot_file}"
                )

        output_path.parent.mkdir(parents=True, exist_ok=True)
        partial = output_path.with_name(output_path.name + ".partial")
        partial.unlink(missing_ok=True)

        cmd = compose_oscdimg_command(self.oscdimg_path, source_dir, partial, label)
        cmd_str = shlex.join(cmd)
        log_path = (self.log_dir or output_path.parent) / f"{output_path.stem}.oscdimg.log"
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Executing packaging: %s", cmd_str)

        started_at = datetime.now(timezone.utc)
        try:
            with log_path.open("w") as log_file:
                log_file.write(f"# Command: {cmd_str}\n")
                log_file.write(f"# Started: {started_at.isoformat()}\n\n")
                log_file.flush()
                result = subprocess.run(
                    cmd,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    timeout=timeout,
                    check=False,
                )
        except subprocess.TimeoutExpired as e:
            partial.unlink(missing_ok=True)
            raise OperationTimeoutError(
                f"oscdimg timed out after {timeout} seconds. See log: {log_path}"
            ) from e
        except OSError as e:
            partial.unlink(missing_ok=True)
            raise ConfigurationError(
                f"Failed to execute {self.oscdimg_path}: {e}", code="tool_missing"
            ) from e

        if result.returncode != 0:
            partial.unlink(missing_ok=True)
            raise PackagingError(
                f"oscdimg failed with exit code {result.returncode}. See log: {log_path}"
            )
        if not partial.is_file():
            raise PackagingError(f"oscdimg reported success but wrote no ISO ({log_path})")

        partial.replace(output_path)
        logger.info("Assembled ISO %s", output_path)
        return output_path


class DirectoryPackager:
    """Packager producing a USB staging directory from the media tree."""

    def assemble(
        self,
        source_dir: Path,
        output_path: Path,
        timeout: float,
        label: str = DEFAULT_LABEL,
    ) -> Path:
        """Copy the media tree to ``output_path``.

        ``output_path`` must not exist or be an empty directory. ``label`` is
        written to ``<output>/.volume-label`` for the tool that formats the
        stick.

        Raises:
            ImageNotFoundError: If the media tree does not exist.
            PackagingError: If the output exists or the copy fails.
            OperationTimeoutError: If the copy exceeds ``timeout``.
        """
        if not source_dir.is_dir():
            raise ImageNotFoundError(f"Media tree not found: {source_dir}")
        if output_path.exists() and (not output_path.is_dir() or any(output_path.iterdir())):
            raise PackagingError(f"USB output {output_path} already exists and is not empty")

        deadline = datetime.now(timezone.utc).timestamp() + timeout
        partial = output_path.with_name(output_path.name + ".partial")
        if partial.exists():
            shutil.rmtree(partial)

        def copy_with_deadline(src: str, dst: str) -> object:
            if datetime.now(timezone.utc).timestamp() > deadline:
                raise OperationTimeoutError(
                    f"USB staging copy timed out after {timeout} seconds"
                )
            return shutil.copy2(src, dst)

        try:
            shutil.copytree(source_dir, partial, copy_function=copy_with_deadline)
            (partial / ".volume-label").write_text(label + "\n", encoding="utf-8")
            if output_path.exists():
                output_path.rmdir()
            partial.rename(output_path)
        except OperationTimeoutError:
            shutil.rmtree(partial, ignore_errors=True)
            raise
        except shutil.Error as e:
            shutil.rmtree(partial, ignore_errors=True)
            # copytree collects per-file errors, including timeouts
            failures = e.args[0] if e.args and isinstance(e.args[0], list) else []
            for _, _, reason in failures:
                if "timed out" in str(reason):
                    raise OperationTimeoutError(str(reason)) from e
            raise PackagingError(f"Failed to stage USB tree: {e}") from e
        except OSError as e:
            shutil.rmtree(partial, ignore_errors=True)
            raise PackagingError(f"Failed to stage USB tree: {e}") from e

        logger.info("Staged USB media at %s", output_path)
        return output_path


__all__ = [
    "BIOS_BOOT_SECTOR",
    "DirectoryPackager",
    "OscdimgPackager",
    "Packager",
    "UEFI_BOOT_IMAGE",
    "compose_oscdimg_command",
]
