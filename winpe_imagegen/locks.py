"""Cross-process file locks.

Locks are advisory ``fcntl.flock`` locks on files in a lock directory. They
serialize independent processes as well as threads of one process (each
acquisition opens its own file description). The kernel drops the lock when
the holding process exits, so a crashed holder never blocks later callers.
"""

from __future__ import annotations

import fcntl
import hashlib
import logging
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from winpe_imagegen.errors import AcquireTimeoutError

logger = logging.getLogger(__name__)

# Polling interval while waiting for a lock with a timeout (seconds)
LOCK_POLL_INTERVAL = 0.1


def lock_key(value: str) -> str:
    """Return a filesystem-safe lock name for an arbitrary key."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:32]


@contextmanager
def file_lock(
    lock_file: Path,
    timeout: float | None = None,
    description: str | None = None,
) -> Iterator[None]:
    """Hold an exclusive lock on ``lock_file``.

    Args:
        lock_file: Path of the lock file (created if missing).
        timeout: Lock acquisition timeout in seconds (None = blocking).
        description: What the lock protects, for log and error messages.

    Yields:
        None when lock is acquired.

    Raises:
        AcquireTimeoutError: If lock cannot be acquired within timeout.
    """
    what = description or lock_file.name
    lock_file.parent.mkdir(parents=True, exist_ok=True)

    logger.debug("Acquiring lock for %s", what)

    fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
    lock_acquired = False
    try:
        if timeout is not None:
            start = time.monotonic()
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    lock_acquired = True
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= timeout:
                        raise AcquireTimeoutError(
                            f"Timeout after {timeout}s waiting for lock on {what}"
                        ) from None
                    time.sleep(LOCK_POLL_INTERVAL)
        else:
            fcntl.flock(fd, fcntl.LOCK_EX)
            lock_acquired = True

        logger.debug("Lock acquired for %s", what)
        yield
    finally:
        if lock_acquired:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("Lock released for %s", what)
        os.close(fd)


__all__ = ["LOCK_POLL_INTERVAL", "file_lock", "lock_key"]
