"""Tests for retry.py module."""

import pytest

from winpe_imagegen.errors import (
    ImageBusyError,
    IntegrityError,
    MalformedImageError,
    NetworkError,
)
from winpe_imagegen.retry import (
    RetryPolicy,
    download_retryable,
    is_transient,
    mount_retryable,
)


def make_policy(**kwargs):
    """Create a policy that records sleeps instead of sleeping."""
    sleeps: list[float] = []
    policy = RetryPolicy(sleep=sleeps.append, **kwargs)
    return policy, sleeps


class TestDelay:
    """Tests for backoff delay computation."""

    def test_exponential_growth(self):
        """Delay doubles with each attempt."""
        policy = RetryPolicy(base_delay=1.0, max_delay=100.0)
        assert [policy.delay_for(n) for n in range(1, 5)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped_at_max_delay(self):
        """Delay never exceeds max_delay."""
        policy = RetryPolicy(base_delay=10.0, max_delay=15.0)
        assert policy.delay_for(1) == 10.0
        assert policy.delay_for(2) == 15.0
        assert policy.delay_for(10) == 15.0

    def test_invalid_attempts(self):
        """max_attempts below one is rejected."""
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)


class TestExecute:
    """Tests for RetryPolicy.execute."""

    def test_success_first_try(self):
        """No retries when the operation succeeds."""
        policy, sleeps = make_policy()
        assert policy.execute(lambda: "ok") == "ok"
        assert sleeps == []

    def test_transient_then_success(self):
        """Transient failures are retried with backoff."""
        policy, sleeps = make_policy(max_attempts=3, base_delay=1.0)
        attempts = []

        def operation():
            attempts.append(1)
            if len(attempts) < 3:
                raise NetworkError("connection reset")
            return "done"

        assert policy.execute(operation, description="download") == "done"
        assert len(attempts) == 3
        assert sleeps == [1.0, 2.0]

    def test_bound_reached_before_success(self):
        """An operation that would succeed on its third call fails with two attempts."""
        policy, sleeps = make_policy(max_attempts=2, base_delay=1.0)
        attempts = []

        def operation():
            attempts.append(1)
            if len(attempts) <= 2:
                raise NetworkError(f"connection reset {len(attempts)}")
            return "done"

        with pytest.raises(NetworkError) as exc_info:
            policy.execute(operation, description="download")

        assert len(attempts) == 2
        assert str(exc_info.value) == "connection reset 2"
        assert exc_info.value.retry_attempts == 2
        assert sleeps == [1.0]

    def test_exhausted_reraises_last_error(self):
        """After the last attempt the last error is re-raised unchanged."""
        policy, sleeps = make_policy(max_attempts=3, base_delay=0.5)
        raised: list[ImageBusyError] = []

        def operation():
            err = ImageBusyError(f"busy {len(raised)}")
            raised.append(err)
            raise err

        with pytest.raises(ImageBusyError) as exc_info:
            policy.execute(operation)

        assert exc_info.value is raised[-1]
        assert len(raised) == 3
        assert exc_info.value.retry_attempts == 3
        assert exc_info.value.retry_elapsed >= 0
        assert "after 3 attempt(s)" in exc_info.value.__notes__[0]
        assert sleeps == [0.5, 1.0]

    def test_permanent_not_retried(self):
        """Permanent errors propagate on the first attempt."""
        policy, sleeps = make_policy(max_attempts=5)
        calls = []

        def operation():
            calls.append(1)
            raise IntegrityError("7.5.0", "a" * 64, "b" * 64)

        with pytest.raises(IntegrityError) as exc_info:
            policy.execute(operation)

        assert len(calls) == 1
        assert sleeps == []
        assert exc_info.value.retry_attempts == 1

    def test_foreign_exceptions_not_retried(self):
        """Exceptions outside the taxonomy propagate immediately."""
        policy, sleeps = make_policy(max_attempts=5)

        def operation():
            raise KeyError("boom")

        with pytest.raises(KeyError):
            policy.execute(operation)
        assert sleeps == []


class TestPredicates:
    """Tests for operation-specific retry predicates."""

    def test_is_transient(self):
        """Only TransientError is transient."""
        assert is_transient(NetworkError("x"))
        assert is_transient(ImageBusyError("x"))
        assert not is_transient(MalformedImageError("x"))

    def test_download_predicate(self):
        """Downloads retry network errors but not a busy image."""
        assert download_retryable(NetworkError("x"))
        assert not download_retryable(ImageBusyError("x"))

    def test_mount_predicate(self):
        """Mounts retry busy images, never malformed ones."""
        assert mount_retryable(ImageBusyError("x"))
        assert not mount_retryable(MalformedImageError("x"))
        assert not mount_retryable(NetworkError("x"))

    def test_with_predicate_keeps_settings(self):
        """with_predicate copies attempts, delays and sleep."""
        policy, sleeps = make_policy(max_attempts=4, base_delay=3.0)
        derived = policy.with_predicate(mount_retryable)

        assert derived.max_attempts == 4
        assert derived.base_delay == 3.0
        assert derived.sleep is policy.sleep
        assert derived.is_retryable is mount_retryable

        with pytest.raises(NetworkError):
            derived.execute(lambda: (_ for _ in ()).throw(NetworkError("net")))
        assert sleeps == []
