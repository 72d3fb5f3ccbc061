"""Mount session management.

A MountSession represents exclusive ownership of one mounted image. The
manager enforces that at most one live session exists per image path, across
threads and processes, with a named critical section: a file lock keyed on
the normalized image path.

While a session is held, an owner record (JSON) sits next to the lock file.
It is removed on a clean release. Because the kernel drops the file lock
when its holder exits, finding an owner record after acquiring the lock
means the previous holder died or failed to dismount: the session is stale
and is reported rather than silently taken over.
"""

from __future__ import annotations

import json
import logging
import os
import socket
from collections.abc import Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from winpe_imagegen.errors import (
    ImageNotFoundError,
    PermanentError,
    StaleSessionError,
)
from winpe_imagegen.locks import file_lock, lock_key
from winpe_imagegen.mount.engine import ImageEngine
from winpe_imagegen.retry import RetryPolicy, dismount_retryable, mount_retryable
from winpe_imagegen.types import MountState

if TYPE_CHECKING:
    from winpe_imagegen.config import Settings

logger = logging.getLogger(__name__)


@dataclass
class MountSession:
    """Exclusive ownership of one mounted image.

    Attributes:
        image_path: Normalized path of the mounted image.
        mount_dir: Directory the image is mounted at.
        index: Image index inside the WIM.
        acquired_at: When the critical section was acquired.
        state: Current mount state.
    """

    image_path: Path
    mount_dir: Path
    index: int
    acquired_at: datetime
    state: MountState = MountState.UNMOUNTED
    owner_file: Path | None = field(default=None, repr=False)
    _lock: ExitStack | None = field(default=None, repr=False)

    @property
    def holds_lock(self) -> bool:
        """Whether this session still holds its critical section."""
        return self._lock is not None

    def owner_record(self) -> dict[str, Any]:
        """Return the owner record written next to the lock file."""
        return {
            "pid": os.getpid(),
            "host": socket.gethostname(),
            "image_path": str(self.image_path),
            "mount_dir": str(self.mount_dir),
            "index": self.index,
            "acquired_at": self.acquired_at.isoformat(),
            "state": self.state.value,
        }


def normalize_image_path(image_path: Path) -> Path:
    """Return the canonical form of an image path used as the lock key."""
    return Path(os.path.normcase(os.path.abspath(image_path.expanduser()))).resolve()


def read_owner(owner_file: Path) -> dict[str, Any] | None:
    """Read an owner record, tolerating a missing or truncated file."""
    if not owner_file.exists():
        return None
    try:
        data = json.loads(owner_file.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return {"state": "unknown", "path": str(owner_file)}
    return data if isinstance(data, dict) else {"state": "unknown"}


def _write_owner(owner_file: Path, record: dict[str, Any]) -> None:
    tmp = owner_file.with_name(f".{owner_file.name}.tmp")
    tmp.write_text(json.dumps(record, indent=2, sort_keys=True), encoding="utf-8")
    os.replace(tmp, owner_file)


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class MountSessionManager:
    """Acquire and release exclusive, timeout-bound mount sessions."""

    def __init__(
        self,
        engine: ImageEngine,
        lock_dir: Path,
        mount_root: Path,
        retry_policy: RetryPolicy | None = None,
        mount_timeout: float = 900,
        dismount_timeout: float = 900,
        stale_session_timeout: float = 3600,
    ) -> None:
        """Initialize MountSessionManager.

        Args:
            engine: External mount engine.
            lock_dir: Directory for lock and owner files.
            mount_root: Default parent for mount directories.
            retry_policy: Base retry policy; mount and dismount predicates
                are applied on top of it.
            mount_timeout: Timeout for a single mount attempt.
            dismount_timeout: Timeout for a single dismount attempt.
            stale_session_timeout: Minimum age before a stale session owned
                by another host may be recovered.
        """
        base = retry_policy or RetryPolicy()
        self.engine = engine
        self.lock_dir = lock_dir
        self.mount_root = mount_root
        self.mount_retry = base.with_predicate(mount_retryable)
        self.dismount_retry = base.with_predicate(dismount_retryable)
        self.mount_timeout = mount_timeout
        self.dismount_timeout = dismount_timeout
        self.stale_session_timeout = stale_session_timeout

    @classmethod
    def from_settings(
        cls, engine: ImageEngine, settings: Settings
    ) -> MountSessionManager:
        """Create a manager configured from application settings."""
        return cls(
            engine=engine,
            lock_dir=settings.lock_dir,
            mount_root=settings.work_dir / "mounts",
            retry_policy=RetryPolicy(
                max_attempts=settings.retry_max_attempts,
                base_delay=settings.retry_base_delay,
                max_delay=settings.retry_max_delay,
            ),
            mount_timeout=settings.mount_timeout,
            dismount_timeout=settings.dismount_timeout,
            stale_session_timeout=settings.stale_session_timeout,
        )

    def _paths(self, image_path: Path) -> tuple[Path, str, Path, Path]:
        normalized = normalize_image_path(image_path)
        key = lock_key(str(normalized))
        return (
            normalized,
            key,
            self.lock_dir / f"mount_{key}.lock",
            self.lock_dir / f"mount_{key}.owner.json",
        )

    def acquire(
        self,
        image_path: Path,
        timeout: float,
        index: int = 1,
        mount_dir: Path | None = None,
        mount_timeout: float | None = None,
    ) -> MountSession:
        """Acquire exclusive access to an image and mount it.

        Blocks until the image's critical section is free or ``timeout``
        elapses.

        Args:
            image_path: Image file to mount.
            timeout: Seconds to wait for the critical section.
            index: Image index inside the WIM.
            mount_dir: Mount directory (defaults to a per-image directory
                under the mount root).
            mount_timeout: Per-attempt mount timeout (defaults to the
                manager's).

        Returns:
            MountSession in the mounted state.

        Raises:
            AcquireTimeoutError: If the critical section stays held.
            StaleSessionError: If a dead holder left a session behind.
            ImageNotFoundError: If the image does not exist.
            MalformedImageError: If the engine rejects the image.
            ImageBusyError: If the image stays locked after all retries.
        """
        normalized, key, lock_file, owner_file = self._paths(image_path)
        if mount_timeout is None:
            mount_timeout = self.mount_timeout
        if not normalized.is_file():
            raise ImageNotFoundError(f"Image not found: {image_path}")

        stack = ExitStack()
        stack.enter_context(
            file_lock(lock_file, timeout=timeout, description=f"image {normalized}")
        )

        try:
            owner = read_owner(owner_file)
            if owner is not None:
                logger.error("Stale mount session detected for %s: %s", normalized, owner)
                raise StaleSessionError(normalized, owner)

            target = mount_dir or (self.mount_root / key)
            target.mkdir(parents=True, exist_ok=True)
            if any(target.iterdir()):
                raise PermanentError(
                    f"Mount directory is not empty: {target}", code="mount_dir_not_empty"
                )

            session = MountSession(
                image_path=normalized,
                mount_dir=target,
                index=index,
                acquired_at=datetime.now(timezone.utc),
                state=MountState.MOUNTING,
                owner_file=owner_file,
            )
            _write_owner(owner_file, session.owner_record())

            try:
                self.mount_retry.execute(
                    lambda: self.engine.mount(
                        normalized, index, target, mount_timeout
                    ),
                    description=f"mount {normalized.name}",
                )
            except Exception:
                session.state = MountState.FAILED
                owner_file.unlink(missing_ok=True)
                raise

        except BaseException:
            stack.close()
            raise

        session.state = MountState.MOUNTED
        session._lock = stack
        _write_owner(owner_file, session.owner_record())
        logger.info("Mount session acquired: %s at %s", normalized, session.mount_dir)
        return session

    def release(
        self,
        session: MountSession,
        save: bool,
        dismount_timeout: float | None = None,
    ) -> None:
        """Dismount a session and free its critical section.

        The critical section is always freed, even when dismount fails. On an
        irrecoverable dismount failure the session becomes FAILED, and both
        the mount directory and the owner record are left in place so the
        mount can be diagnosed and later recovered.

        ``dismount_timeout`` bounds each dismount attempt and defaults to the
        manager's.

        Raises:
            ValueError: If the session is not live.
            ImageBusyError: If the mount stays busy after all retries.
            DismountError: If the engine fails to dismount.
        """
        if not session.holds_lock:
            raise ValueError(f"Mount session for {session.image_path} is not live")
        if dismount_timeout is None:
            dismount_timeout = self.dismount_timeout

        session.state = MountState.DISMOUNTING
        owner_file = session.owner_file
        try:
            if owner_file is not None:
                _write_owner(owner_file, session.owner_record())

            self.dismount_retry.execute(
                lambda: self.engine.dismount(
                    session.mount_dir, save, dismount_timeout
                ),
                description=f"dismount {session.image_path.name}",
            )
        except BaseException:
            session.state = MountState.FAILED
            if owner_file is not None:
                _write_owner(owner_file, session.owner_record())
            logger.error(
                "Dismount failed for %s; mount directory left at %s",
                session.image_path,
                session.mount_dir,
            )
            raise
        else:
            session.state = MountState.UNMOUNTED
            if owner_file is not None:
                owner_file.unlink(missing_ok=True)
            try:
                session.mount_dir.rmdir()
            except OSError:
                logger.debug("Mount directory not removed: %s", session.mount_dir)
            logger.info(
                "Mount session released: %s (save=%s)", session.image_path, save
            )
        finally:
            lock = session._lock
            session._lock = None
            if lock is not None:
                lock.close()

    @contextmanager
    def mounted(
        self,
        image_path: Path,
        timeout: float,
        index: int = 1,
        mount_dir: Path | None = None,
        mount_timeout: float | None = None,
        dismount_timeout: float | None = None,
    ) -> Iterator[MountSession]:
        """Hold a session for the duration of a block.

        Changes are saved if the block completes and discarded if it raises.
        """
        session = self.acquire(
            image_path,
            timeout,
            index=index,
            mount_dir=mount_dir,
            mount_timeout=mount_timeout,
        )
        try:
            yield session
        except BaseException:
            try:
                self.release(session, save=False, dismount_timeout=dismount_timeout)
            except Exception as e:
                logger.error("Discard dismount failed: %s", e)
            raise
        self.release(session, save=True, dismount_timeout=dismount_timeout)

    def inspect(self, image_path: Path) -> dict[str, Any] | None:
        """Return the owner record for an image, if any."""
        _, _, _, owner_file = self._paths(image_path)
        return read_owner(owner_file)

    def is_stale(self, owner: dict[str, Any]) -> bool:
        """Decide whether an owner record may be recovered.

        A record is recoverable when its dismount failed, when its process
        is gone on this host, or when it belongs to another host and is older
        than the stale session timeout.
        """
        if owner.get("state") in (MountState.FAILED.value, "unknown"):
            return True
        pid = owner.get("pid")
        if owner.get("host") == socket.gethostname() and isinstance(pid, int):
            return not _pid_alive(pid) or pid == os.getpid()
        acquired = owner.get("acquired_at")
        if not isinstance(acquired, str):
            return True
        age = datetime.now(timezone.utc) - datetime.fromisoformat(acquired)
        return age.total_seconds() >= self.stale_session_timeout

    def recover_stale(self, image_path: Path, timeout: float) -> dict[str, Any] | None:
        """Discard a stale session left behind by a dead or failed holder.

        Returns:
            The removed owner record, or None if there was nothing to recover.

        Raises:
            AcquireTimeoutError: If a live holder has the critical section.
            StaleSessionError: If the record is not yet old enough to recover.
        """
        normalized, _, lock_file, owner_file = self._paths(image_path)

        with file_lock(lock_file, timeout=timeout, description=f"image {normalized}"):
            owner = read_owner(owner_file)
            if owner is None:
                logger.info("No stale session for %s", normalized)
                return None
            if not self.is_stale(owner):
                raise StaleSessionError(normalized, owner)

            mount_dir = owner.get("mount_dir")
            if mount_dir:
                try:
                    self.engine.dismount(Path(mount_dir), False, self.dismount_timeout)
                except Exception as e:
                    logger.warning("Discarding stale mount %s failed: %s", mount_dir, e)
            try:
                self.engine.cleanup_mountpoints(self.dismount_timeout)
            except Exception as e:
                logger.warning("Mount point cleanup failed: %s", e)

            owner_file.unlink(missing_ok=True)
            logger.info("Recovered stale mount session for %s", normalized)
            return owner


__all__ = [
    "MountSession",
    "MountSessionManager",
    "normalize_image_path",
    "read_owner",
]
