"""Offline image engine boundary.

The mount/edit engine is an external, already-correct toolchain. This module
defines the narrow protocol the pipeline talks to and a DISM-backed
implementation that shells out to ``dism.exe`` and ``reg.exe``.

DISM reports failures as HRESULT codes in its output; these are mapped onto
the transient/permanent error taxonomy so retry policies can decide.
"""

from __future__ import annotations

import logging
import re
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path, PureWindowsPath
from typing import Protocol, runtime_checkable

from winpe_imagegen.errors import (
    ConfigurationError,
    DismountError,
    ImageBusyError,
    ImagegenError,
    ImageNotFoundError,
    MalformedImageError,
    OperationTimeoutError,
    PermanentError,
)
from winpe_imagegen.locks import lock_key

logger = logging.getLogger(__name__)

# HRESULTs meaning the image or mount directory is transiently in use
BUSY_CODES = {
    "0x800700aa",  # ERROR_BUSY
    "0x80070020",  # ERROR_SHARING_VIOLATION
    "0x80070021",  # ERROR_LOCK_VIOLATION
    "0xc1420117",  # directory could not be completely unmounted (open handles)
    "0xc1420127",  # image already mounted for read/write access
}

# HRESULTs meaning the image file or index does not exist
NOT_FOUND_CODES = {
    "0x80070002",  # ERROR_FILE_NOT_FOUND
    "0x80070003",  # ERROR_PATH_NOT_FOUND
    "0xc1420115",  # mount directory not found / not a mount point
}

# HRESULTs meaning the image itself is unusable
MALFORMED_CODES = {
    "0x8007000b",  # ERROR_BAD_FORMAT
    "0x8007000d",  # ERROR_INVALID_DATA
    "0x80070057",  # ERROR_INVALID_PARAMETER (e.g. bad image index)
    "0xc1510111",  # not a valid WIM / access to the image denied
    "0xc142011c",  # mount directory is not empty
}

ERROR_CODE_PATTERN = re.compile(r"Error:\s*(0x[0-9a-fA-F]{8}|\d+)")

# Prefix of the host registry key an offline hive is loaded under
OFFLINE_HIVE_PREFIX = "HKLM\\WinPE_"


@dataclass(frozen=True)
class RegistryValue:
    """A registry value to write into an offline hive."""

    name: str
    data: str
    kind: str = "REG_SZ"


@runtime_checkable
class ImageEngine(Protocol):
    """Mount/edit engine for offline images."""

    def mount(self, image_path: Path, index: int, dest_dir: Path, timeout: float) -> None:
        """Mount image ``index`` of ``image_path`` read/write at ``dest_dir``."""
        ...

    def dismount(self, dest_dir: Path, save: bool, timeout: float) -> None:
        """Dismount ``dest_dir``, committing changes if ``save`` else discarding."""
        ...

    def set_registry_values(
        self,
        mount_dir: Path,
        hive: str,
        key: str,
        values: list[RegistryValue],
        timeout: float,
    ) -> None:
        """Write values under ``key`` in the offline ``hive`` of a mounted image."""
        ...

    def cleanup_mountpoints(self, timeout: float) -> None:
        """Release resources held by orphaned mounts."""
        ...


def parse_error_code(output: str) -> str | None:
    """Extract the last DISM error code from its output."""
    matches = ERROR_CODE_PATTERN.findall(output)
    if not matches:
        return None
    code = matches[-1].lower()
    if not code.startswith("0x"):
        # Win32 error numbers: promote to HRESULT form
        code = f"0x8007{int(code):04x}"
    return code


def classify_dism_failure(
    output: str,
    operation: str,
    default: type[ImagegenError] = PermanentError,
) -> ImagegenError:
    """Map DISM output to an error of the right family."""
    code = parse_error_code(output)
    summary = output.strip().splitlines()[-1] if output.strip() else "no output"
    message = f"DISM {operation} failed ({code or 'unknown code'}): {summary}"

    if code in BUSY_CODES:
        return ImageBusyError(message, code="image_busy")
    if code in NOT_FOUND_CODES:
        return ImageNotFoundError(message)
    if code in MALFORMED_CODES:
        return MalformedImageError(message)
    return default(message, code="dism_error")


def offline_hive_key(mount_dir: Path, hive: str) -> str:
    """Return the host registry key an image's offline hive is loaded under.

    The key is unique per mount directory so builds of different images can
    edit their hives at the same time.
    """
    return f"{OFFLINE_HIVE_PREFIX}{hive}_{lock_key(str(mount_dir))[:12]}"


class DismEngine:
    """ImageEngine implementation backed by dism.exe and reg.exe."""

    def __init__(
        self,
        dism_path: str = "dism.exe",
        reg_path: str = "reg.exe",
        log_path: Path | None = None,
    ) -> None:
        """Initialize DismEngine.

        Args:
            dism_path: DISM executable.
            reg_path: reg.exe executable.
            log_path: Optional DISM log file (passed via /LogPath).
        """
        self.dism_path = dism_path
        self.reg_path = reg_path
        self.log_path = log_path

    def _run(self, cmd: list[str], timeout: float, operation: str) -> subprocess.CompletedProcess[str]:
        logger.info("Executing %s: %s", operation, shlex.join(cmd))
        try:
            return subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise OperationTimeoutError(
                f"{operation} timed out after {timeout} seconds"
            ) from e
        except OSError as e:
            raise ConfigurationError(
                f"Failed to execute {cmd[0]}: {e}", code="tool_missing"
            ) from e

    def _dism(self, args: list[str]) -> list[str]:
        cmd = [self.dism_path, "/English", *args]
        if self.log_path is not None:
            cmd.append(f"/LogPath:{self.log_path}")
        return cmd

    def mount(self, image_path: Path, index: int, dest_dir: Path, timeout: float) -> None:
        """Mount an image with ``dism /Mount-Image``."""
        cmd = self._dism(
            [
                "/Mount-Image",
                f"/ImageFile:{image_path}",
                f"/Index:{index}",
                f"/MountDir:{dest_dir}",
            ]
        )
        result = self._run(cmd, timeout, "mount")
        if result.returncode != 0:
            raise classify_dism_failure(result.stdout + result.stderr, "mount")
        logger.info("Mounted %s index %d at %s", image_path, index, dest_dir)

    def dismount(self, dest_dir: Path, save: bool, timeout: float) -> None:
        """Dismount with ``dism /Unmount-Image /Commit|/Discard``."""
        commit_arg = "/Commit" if save else "/Discard"
        cmd = self._dism(["/Unmount-Image", f"/MountDir:{dest_dir}", commit_arg])
        result = self._run(cmd, timeout, "dismount")
        if result.returncode != 0:
            raise classify_dism_failure(
                result.stdout + result.stderr, "dismount", default=DismountError
            )
        logger.info("Dismounted %s (save=%s)", dest_dir, save)

    def cleanup_mountpoints(self, timeout: float) -> None:
        """Run ``dism /Cleanup-Mountpoints``."""
        result = self._run(self._dism(["/Cleanup-Mountpoints"]), timeout, "cleanup")
        if result.returncode != 0:
            raise classify_dism_failure(result.stdout + result.stderr, "cleanup")

    def set_registry_values(
        self,
        mount_dir: Path,
        hive: str,
        key: str,
        values: list[RegistryValue],
        timeout: float,
    ) -> None:
        """Load an offline hive, write values, and unload it again."""
        hive_file = mount_dir / "Windows" / "System32" / "config" / hive
        if not hive_file.exists():
            raise ImageNotFoundError(f"Offline hive not found: {hive_file}")

        mount_point = offline_hive_key(mount_dir, hive)
        full_key = str(PureWindowsPath(mount_point) / key)

        result = self._run(
            [self.reg_path, "load", mount_point, str(hive_file)], timeout, "reg load"
        )
        if result.returncode != 0:
            raise ImageBusyError(
                f"reg load {hive} failed: {result.stderr.strip() or result.stdout.strip()}"
            )

        try:
            for value in values:
                result = self._run(
                    [
                        self.reg_path,
                        "add",
                        full_key,
                        "/v",
                        value.name,
                        "/t",
                        value.kind,
                        "/d",
                        value.data,
                        "/f",
                    ],
                    timeout,
                    "reg add",
                )
                if result.returncode != 0:
                    raise PermanentError(
                        f"reg add {full_key}\\{value.name} failed: "
                        f"{result.stderr.strip() or result.stdout.strip()}",
                        code="registry_error",
                    )
        finally:
            self._unload_hive(mount_point, timeout)

    def _unload_hive(self, mount_point: str, timeout: float) -> None:
        try:
            result = self._run([self.reg_path, "unload", mount_point], timeout, "reg unload")
        except ImagegenError as e:
            logger.error("reg unload %s failed: %s", mount_point, e)
            return
        if result.returncode != 0:
            logger.error("reg unload %s failed: %s", mount_point, result.stderr.strip())


__all__ = [
    "BUSY_CODES",
    "DismEngine",
    "ImageEngine",
    "MALFORMED_CODES",
    "NOT_FOUND_CODES",
    "RegistryValue",
    "classify_dism_failure",
    "offline_hive_key",
    "parse_error_code",
]
