"""Shared fixtures: fake mount/packaging engines and a sample media tree."""

from __future__ import annotations

import hashlib
import io
import shutil
import threading
import zipfile
from datetime import datetime, timezone
from pathlib import Path

import pytest

from winpe_imagegen.config import Settings
from winpe_imagegen.mount.engine import RegistryValue
from winpe_imagegen.packages.cache import CacheEntry

# Files a freshly mounted WinPE image contains in these tests
IMAGE_FILES = {
    "Windows/System32/config/SYSTEM": b"regf-system",
    "Windows/System32/config/SOFTWARE": b"regf-software",
    "Windows/System32/startnet.cmd": b"wpeinit\r\n",
    "Windows/System32/en-US/winpe.mui": b"en",
    "Windows/System32/de-DE/winpe.mui": b"de" * 100,
    "Windows/System32/fr-FR/winpe.mui": b"fr" * 100,
    "Windows/SysWOW64/ja-JP/winpe.mui": b"ja" * 100,
    "Windows/Logs/DISM/dism.log": b"DISM log\n",
    "Windows/servicing/Version/10.0.26100.1/placeholder": b"",
}


class FakeEngine:
    """In-memory ImageEngine.

    ``mount`` populates the mount directory with IMAGE_FILES; ``dismount``
    records the tree and empties the directory. Errors queued in
    ``mount_errors`` / ``dismount_errors`` are raised in order. The timeout
    passed to each mount and dismount is kept in ``timeouts``.
    """

    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.timeouts: list[tuple[str, float]] = []
        self.mount_errors: list[BaseException] = []
        self.dismount_errors: list[BaseException] = []
        self.registry: dict[tuple[str, str], dict[str, RegistryValue]] = {}
        self.committed: list[list[str]] = []
        self.mounted: dict[Path, Path] = {}
        self._lock = threading.Lock()

    def mount(self, image_path: Path, index: int, dest_dir: Path, timeout: float) -> None:
        with self._lock:
            self.calls.append(("mount", image_path, index, dest_dir))
            self.timeouts.append(("mount", timeout))
            if self.mount_errors:
                raise self.mount_errors.pop(0)
        for rel, content in IMAGE_FILES.items():
            target = dest_dir / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
        self.mounted[dest_dir] = image_path

    def dismount(self, dest_dir: Path, save: bool, timeout: float) -> None:
        with self._lock:
            self.calls.append(("dismount", dest_dir, save))
            self.timeouts.append(("dismount", timeout))
            if self.dismount_errors:
                raise self.dismount_errors.pop(0)
        if save:
            self.committed.append(
                sorted(p.relative_to(dest_dir).as_posix() for p in dest_dir.rglob("*") if p.is_file())
            )
        for child in (list(dest_dir.iterdir()) if dest_dir.exists() else []):
            if child.is_dir():
                shutil.rmtree(child)
            else:
                child.unlink()
        self.mounted.pop(dest_dir, None)

    def set_registry_values(
        self,
        mount_dir: Path,
        hive: str,
        key: str,
        values: list[RegistryValue],
        timeout: float,
    ) -> None:
        with self._lock:
            self.calls.append(("registry", hive, key))
            bucket = self.registry.setdefault((hive, key), {})
            for value in values:
                bucket[value.name] = value

    def cleanup_mountpoints(self, timeout: float) -> None:
        with self._lock:
            self.calls.append(("cleanup",))

    def call_names(self) -> list[str]:
        return [c[0] for c in self.calls]


class FakePackager:
    """Packager writing a small fake ISO listing the media tree."""

    def __init__(self, error: BaseException | None = None, empty: bool = False) -> None:
        self.error = error
        self.empty = empty
        self.calls: list[tuple[Path, Path, str]] = []

    def assemble(
        self, source_dir: Path, output_path: Path, timeout: float, label: str = "WINPE"
    ) -> Path:
        self.calls.append((source_dir, output_path, label))
        if self.error is not None:
            raise self.error
        output_path.parent.mkdir(parents=True, exist_ok=True)
        if self.empty:
            output_path.write_bytes(b"")
            return output_path
        listing = sorted(
            p.relative_to(source_dir).as_posix() for p in source_dir.rglob("*") if p.is_file()
        )
        output_path.write_text(f"ISO {label}\n" + "\n".join(listing), encoding="utf-8")
        return output_path


class FakeProvider:
    """Runtime provider returning a pre-built archive."""

    def __init__(self, entry: CacheEntry) -> None:
        self.entry = entry
        self.requested: list[str] = []

    def get_or_fetch(self, version: str, timeout: float | None = None) -> CacheEntry:
        self.requested.append(version)
        return self.entry


def make_runtime_zip(extra: dict[str, bytes] | None = None) -> bytes:
    """Build a small zip shaped like a PowerShell release archive."""
    members = {
        "pwsh.exe": b"MZ-pwsh",
        "pwsh.dll": b"MZ-dll",
        "Modules/Microsoft.PowerShell.Utility/Microsoft.PowerShell.Utility.psd1": b"@{}",
    }
    members.update(extra or {})
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, data in members.items():
            archive.writestr(name, data)
    return buffer.getvalue()


@pytest.fixture
def engine() -> FakeEngine:
    """A fresh fake mount engine."""
    return FakeEngine()


@pytest.fixture
def packager() -> FakePackager:
    """A fake packager that succeeds."""
    return FakePackager()


@pytest.fixture
def runtime_zip() -> bytes:
    """Bytes of a fake PowerShell archive."""
    return make_runtime_zip()


@pytest.fixture
def runtime_entry(tmp_path: Path, runtime_zip: bytes) -> CacheEntry:
    """A cache entry pointing at a fake PowerShell 7.5.0 archive."""
    path = tmp_path / "runtime" / "PowerShell-7.5.0-win-x64.zip"
    path.parent.mkdir(parents=True)
    path.write_bytes(runtime_zip)
    return CacheEntry(
        version="7.5.0",
        sha256=hashlib.sha256(runtime_zip).hexdigest(),
        path=path,
        validated_at=datetime.now(timezone.utc),
    )


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings rooted in a temporary directory, with no backoff delays."""
    return Settings(
        cache_dir=tmp_path / "cache",
        work_dir=tmp_path / "work",
        diagnostics_dir=tmp_path / "diagnostics",
        lock_dir=tmp_path / "locks",
        db_url="sqlite:///:memory:",
        min_free_space_mb=0,
        retry_base_delay=0,
        retry_max_delay=0,
        collect_registry_hives=True,
    )


@pytest.fixture
def media_dir(tmp_path: Path) -> Path:
    """A minimal WinPE media tree with sources/boot.wim."""
    root = tmp_path / "media"
    files = {
        "bootmgr": b"bootmgr",
        "boot/etfsboot.com": b"etfs",
        "efi/microsoft/boot/efisys.bin": b"efisys",
        "sources/boot.wim": b"MSWIM\x00\x00\x00" + b"\x00" * 64,
    }
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
    return root


@pytest.fixture
def boot_wim(media_dir: Path) -> Path:
    """The boot image inside the media tree."""
    return media_dir / "sources" / "boot.wim"


@pytest.fixture
def provider(runtime_entry: CacheEntry) -> FakeProvider:
    """A runtime provider serving the fake 7.5.0 archive."""
    return FakeProvider(runtime_entry)


@pytest.fixture
def fake_packager_cls() -> type[FakePackager]:
    """The fake packager class, for tests needing a failing packager."""
    return FakePackager


@pytest.fixture
def fake_provider_cls() -> type[FakeProvider]:
    """The fake provider class, for tests serving a custom archive."""
    return FakeProvider
