"""Bounded retry with exponential backoff.

A RetryPolicy wraps any callable that may fail transiently. Only errors
accepted by the policy's predicate are retried; everything else propagates
immediately. The final error is re-raised as the same exception object,
annotated with the number of attempts made and the elapsed time.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

from winpe_imagegen.errors import ImageBusyError, NetworkError, TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient(error: BaseException) -> bool:
    """Default predicate: retry only TransientError."""
    return isinstance(error, TransientError)


def download_retryable(error: BaseException) -> bool:
    """Network timeouts, connection errors and 5xx responses."""
    return isinstance(error, NetworkError)


def mount_retryable(error: BaseException) -> bool:
    """Image transiently locked; malformed or missing images are not retried."""
    return isinstance(error, ImageBusyError)


def dismount_retryable(error: BaseException) -> bool:
    """Mount directory busy (open handles, antivirus scans)."""
    return isinstance(error, ImageBusyError)


@dataclass
class RetryPolicy:
    """Retry an operation with exponential backoff.

    Attributes:
        max_attempts: Total number of invocations allowed (>= 1).
        base_delay: Delay before the second attempt, in seconds.
        max_delay: Upper bound for any single delay, in seconds.
        is_retryable: Predicate deciding whether an error may be retried.
        sleep: Sleep function (injectable for tests).
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    is_retryable: Callable[[BaseException], bool] = is_transient
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must not be negative")

    def delay_for(self, attempt: int) -> float:
        """Return the backoff delay after a failed ``attempt`` (1-based)."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def with_predicate(
        self, is_retryable: Callable[[BaseException], bool]
    ) -> RetryPolicy:
        """Return a copy of this policy using a different predicate."""
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            is_retryable=is_retryable,
            sleep=self.sleep,
        )

    def execute(self, operation: Callable[[], T], description: str = "operation") -> T:
        """Run ``operation``, retrying retryable failures.

        Args:
            operation: Zero-argument callable to run.
            description: Human-readable name used in log messages.

        Returns:
            The operation's return value.

        Raises:
            BaseException: The last error raised by the operation, annotated
                with ``retry_attempts`` and ``retry_elapsed``.
        """
        start = time.monotonic()
        attempt = 0

        while True:
            attempt += 1
            try:
                result = operation()
            except Exception as e:
                elapsed = time.monotonic() - start
                retryable = self.is_retryable(e)

                if not retryable or attempt >= self.max_attempts:
                    _annotate(e, attempt, elapsed)
                    if retryable:
                        logger.error(
                            "%s failed after %d attempt(s) in %.1fs: %s",
                            description,
                            attempt,
                            elapsed,
                            e,
                        )
                    raise

                delay = self.delay_for(attempt)
                logger.warning(
                    "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                    description,
                    attempt,
                    self.max_attempts,
                    e,
                    delay,
                )
                self.sleep(delay)
                continue

            if attempt > 1:
                logger.info("%s succeeded on attempt %d", description, attempt)
            return result


def _annotate(error: BaseException, attempts: int, elapsed: float) -> None:
    """Attach attempt count and elapsed time to an error."""
    error.retry_attempts = attempts  # type: ignore[attr-defined]
    error.retry_elapsed = elapsed  # type: ignore[attr-defined]
    error.add_note(f"after {attempts} attempt(s) in {elapsed:.1f}s")


__all__ = [
    "RetryPolicy",
    "dismount_retryable",
    "download_retryable",
    "is_transient",
    "mount_retryable",
]
