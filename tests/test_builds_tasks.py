"""Tests for builds/tasks.py module."""

import hashlib
import io
import threading
import time
import zipfile
from datetime import datetime, timezone

import pytest

from winpe_imagegen.builds.tasks import (
    ENVIRONMENT_KEY,
    ConfigureStartupTask,
    EmbedRecoveryTask,
    InjectRuntimeTask,
    OptimizeSizeTask,
    TaskContext,
    check_disjoint,
    copy_file_cancellable,
    paths_overlap,
)
from winpe_imagegen.errors import (
    ConfigurationError,
    ImageNotFoundError,
    PermanentError,
    TaskCancelledError,
)
from winpe_imagegen.packages.cache import CacheEntry


@pytest.fixture
def context(tmp_path, engine, boot_wim):
    """A task context over a freshly mounted fake image."""
    mount_dir = tmp_path / "mount"
    mount_dir.mkdir()
    engine.mount(boot_wim, 1, mount_dir, timeout=5)
    scratch = tmp_path / "scratch"
    scratch.mkdir()
    return TaskContext(
        mount_dir=mount_dir,
        engine=engine,
        scratch_dir=scratch,
        cancel_event=threading.Event(),
    )


def zip_entry(tmp_path, members):
    """Write a zip with the given members and return a CacheEntry for it."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, data in members.items():
            archive.writestr(name, data)
    path = tmp_path / "PowerShell-7.5.0-win-x64.zip"
    path.write_bytes(buffer.getvalue())
    return CacheEntry(
        version="7.5.0",
        sha256=hashlib.sha256(buffer.getvalue()).hexdigest(),
        path=path,
        validated_at=datetime.now(timezone.utc),
    )


class TestTaskContext:
    """Tests for TaskContext."""

    def test_checkpoint(self, context):
        """checkpoint raises only after cancellation."""
        context.checkpoint()
        context.cancel_event.set()
        with pytest.raises(TaskCancelledError):
            context.checkpoint()

    def test_remaining(self, context):
        """remaining honors the deadline with a one second floor."""
        assert context.remaining(default=42) == 42
        context.deadline = time.monotonic() - 10
        assert context.remaining() == 1.0
        context.deadline = time.monotonic() + 100
        assert 90 < context.remaining() <= 100


class TestPathsOverlap:
    """Tests for paths_overlap and check_disjoint."""

    @pytest.mark.parametrize(
        "a,b",
        [
            ("Windows/System32", "Windows/System32/config"),
            ("Windows/System32/*-*", "Windows/System32/en-US/winpe.mui"),
            ("windows/system32/STARTNET.cmd", "Windows/System32/startnet.cmd"),
        ],
    )
    def test_overlapping(self, a, b):
        """Prefixes, patterns and case variants overlap."""
        assert paths_overlap(a, b)
        assert paths_overlap(b, a)

    @pytest.mark.parametrize(
        "a,b",
        [
            ("Program Files/PowerShell/7", "Windows/System32/config"),
            ("Windows/System32/*-*", "Windows/System32/startnet.cmd"),
            ("Windows/System32/*-*", "Windows/System32/Recovery"),
            ("Windows/System32/config", "Windows/SysWOW64/config"),
        ],
    )
    def test_disjoint(self, a, b):
        """Sibling subtrees do not overlap."""
        assert not paths_overlap(a, b)

    def test_standard_tasks_are_disjoint(self, runtime_entry, tmp_path):
        """The standard task set can run together."""
        check_disjoint(
            [
                InjectRuntimeTask(runtime_entry),
                ConfigureStartupTask(),
                OptimizeSizeTask(["en-US"]),
                EmbedRecoveryTask(tmp_path / "winre.wim"),
            ]
        )

    def test_overlap_rejected(self, runtime_entry):
        """Two tasks writing the same subtree are rejected."""

        class RegistryTweak(ConfigureStartupTask):
            name = "registry-tweak"

            @property
            def paths(self):
                return ("Windows/System32/config/SOFTWARE",)

        with pytest.raises(ConfigurationError, match="both write"):
            check_disjoint([InjectRuntimeTask(runtime_entry), RegistryTweak()])

    def test_duplicate_names_rejected(self):
        """Task names must be unique."""
        with pytest.raises(ConfigurationError, match="Duplicate"):
            check_disjoint([ConfigureStartupTask(), ConfigureStartupTask()])


class TestCopyFileCancellable:
    """Tests for copy_file_cancellable."""

    def test_copy(self, context, tmp_path):
        """Content is copied and the temporary file removed."""
        source = tmp_path / "src.bin"
        source.write_bytes(b"abc" * 1000)
        dest = tmp_path / "out" / "dst.bin"

        assert copy_file_cancellable(source, dest, context) == 3000
        assert dest.read_bytes() == source.read_bytes()
        assert not (tmp_path / "out" / "dst.bin.partial").exists()

    def test_cancelled_copy_leaves_nothing(self, context, tmp_path):
        """A cancelled copy leaves neither the destination nor a partial file."""
        source = tmp_path / "src.bin"
        source.write_bytes(b"abc")
        dest = tmp_path / "out" / "dst.bin"
        context.cancel_event.set()

        with pytest.raises(TaskCancelledError):
            copy_file_cancellable(source, dest, context)
        assert list((tmp_path / "out").iterdir()) == []


class TestInjectRuntimeTask:
    """Tests for InjectRuntimeTask."""

    def test_inject(self, context, engine, runtime_entry):
        """The runtime is extracted and the environment registered."""
        InjectRuntimeTask(runtime_entry).run(context)

        install = context.mount_dir / "Program Files" / "PowerShell" / "7"
        assert (install / "pwsh.exe").read_bytes() == b"MZ-pwsh"
        assert (install / "Modules" / "Microsoft.PowerShell.Utility").is_dir()

        values = engine.registry[("SYSTEM", ENVIRONMENT_KEY)]
        assert values["Path"].kind == "REG_EXPAND_SZ"
        assert "X:\\Program Files\\PowerShell\\7" in values["Path"].data
        assert values["PSModulePath"].data.endswith("PowerShell\\7\\Modules")
        assert values["POWERSHELL_UPDATECHECK"].data == "Off"

    def test_path_traversal_rejected(self, context, tmp_path):
        """Archive members escaping the install directory are refused."""
        entry = zip_entry(tmp_path, {"pwsh.exe": b"MZ", "../../evil.cmd": b"x"})

        with pytest.raises(PermanentError) as exc_info:
            InjectRuntimeTask(entry).run(context)

        assert exc_info.value.code == "path_traversal"
        assert not (context.mount_dir / "Program Files" / "evil.cmd").exists()

    def test_missing_pwsh(self, context, engine, tmp_path):
        """An archive without pwsh.exe is rejected before registry edits."""
        entry = zip_entry(tmp_path, {"README.md": b"hello"})

        with pytest.raises(PermanentError) as exc_info:
            InjectRuntimeTask(entry).run(context)

        assert exc_info.value.code == "bad_runtime_archive"
        assert "registry" not in engine.call_names()

    def test_corrupt_archive(self, context, tmp_path):
        """A file that is not a zip is rejected."""
        path = tmp_path / "broken.zip"
        path.write_bytes(b"not a zip")
        entry = CacheEntry("7.5.0", "0" * 64, path, datetime.now(timezone.utc))

        with pytest.raises(PermanentError) as exc_info:
            InjectRuntimeTask(entry).run(context)
        assert exc_info.value.code == "bad_runtime_archive"

    def test_cancelled(self, context, engine, runtime_entry):
        """A cancelled inject stops before touching the registry."""
        context.cancel_event.set()
        with pytest.raises(TaskCancelledError):
            InjectRuntimeTask(runtime_entry).run(context)
        assert "registry" not in engine.call_names()


class TestConfigureStartupTask:
    """Tests for ConfigureStartupTask."""

    def test_default_script(self, context):
        """startnet.cmd launches pwsh after wpeinit."""
        ConfigureStartupTask().run(context)

        startnet = (context.mount_dir / ConfigureStartupTask.STARTNET).read_bytes()
        assert startnet.startswith(b"@ECHO OFF\r\nwpeinit\r\n")
        assert b"pwsh.exe" in startnet
        assert b"Startnet.ps1" in startnet
        assert b"\n" not in startnet.replace(b"\r\n", b"")
        script = (context.mount_dir / ConfigureStartupTask.SCRIPT).read_text()
        assert "PSVersionTable" in script

    def test_custom_script(self, context, tmp_path):
        """A provided script is copied verbatim."""
        custom = tmp_path / "custom.ps1"
        custom.write_text("Write-Host 'hello'\n")

        ConfigureStartupTask(custom).run(context)

        assert (context.mount_dir / ConfigureStartupTask.SCRIPT).read_text() == (
            "Write-Host 'hello'\n"
        )

    def test_missing_script(self, context, tmp_path):
        """A missing custom script fails the task."""
        with pytest.raises(ImageNotFoundError):
            ConfigureStartupTask(tmp_path / "missing.ps1").run(context)


class TestOptimizeSizeTask:
    """Tests for OptimizeSizeTask."""

    def test_removes_unused_locales(self, context):
        """Only kept locales remain."""
        OptimizeSizeTask(["en-US"]).run(context)

        system32 = context.mount_dir / "Windows" / "System32"
        assert (system32 / "en-US").is_dir()
        assert not (system32 / "de-DE").exists()
        assert not (system32 / "fr-FR").exists()
        assert not (context.mount_dir / "Windows" / "SysWOW64" / "ja-JP").exists()
        assert (system32 / "config" / "SYSTEM").exists()

    def test_keep_is_case_insensitive(self, context):
        """Kept locales match regardless of case."""
        task = OptimizeSizeTask(["EN-us", "de-de"])
        names = [p.name for p in task.find_removable(context.mount_dir)]
        assert names == ["fr-FR", "ja-JP"]

    def test_non_locale_dirs_kept(self, context):
        """Directories that only contain a dash are not locales."""
        odd = context.mount_dir / "Windows" / "System32" / "drivers-backup"
        odd.mkdir()
        task = OptimizeSizeTask(["en-US"])
        assert odd not in task.find_removable(context.mount_dir)


class TestEmbedRecoveryTask:
    """Tests for EmbedRecoveryTask."""

    def test_embed(self, context, tmp_path):
        """The recovery image is copied into the image."""
        winre = tmp_path / "winre.wim"
        winre.write_bytes(b"MSWIM recovery")

        EmbedRecoveryTask(winre).run(context)

        dest = context.mount_dir / "Windows" / "System32" / "Recovery" / "Winre.wim"
        assert dest.read_bytes() == b"MSWIM recovery"

    def test_missing_recovery_image(self, context, tmp_path):
        """A missing recovery image fails the task."""
        with pytest.raises(ImageNotFoundError):
            EmbedRecoveryTask(tmp_path / "missing.wim").run(context)
