"""
Tests for escrow_kernel.services.retry.

Validates that only transient failures are retried, the attempt ceiling,
the backoff curve and the per-call timeout.
"""

import threading

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from escrow_kernel.exceptions import TransientStoreError
from escrow_kernel.services.retry import (
    MAX_ATTEMPTS,
    RetryPolicy,
    call_with_retry,
    is_transient,
)


class Flaky:
    """Fails with ``error`` for the first ``failures`` calls."""

    def __init__(self, failures, error=None, result="ok"):
        self.failures = failures
        self.error = error or ConnectionError("reset by peer")
        self.result = result
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.result


@pytest.fixture
def sleeps():
    return []


def _retry(operation, sleeps, **policy):
    return call_with_retry(
        operation,
        policy=RetryPolicy(**policy),
        operation_name="test_op",
        sleep=sleeps.append,
    )


class TestClassification:
    @pytest.mark.parametrize("exc", [
        ConnectionError("reset"),
        TimeoutError("slow"),
        TransientStoreError("claim_earning", 3, "locked"),
        OperationalError("UPDATE", {}, Exception("database is locked")),
    ])
    def test_transient(self, exc):
        assert is_transient(exc)

    @pytest.mark.parametrize("exc", [
        ValueError("bad"),
        KeyError("missing"),
        IntegrityError("INSERT", {}, Exception("unique")),
    ])
    def test_not_transient(self, exc):
        assert not is_transient(exc)


class TestCallWithRetry:
    def test_success_first_try(self, sleeps):
        op = Flaky(0)
        assert _retry(op, sleeps) == "ok"
        assert op.calls == 1
        assert sleeps == []

    def test_recovers_after_transient_failures(self, sleeps):
        op = Flaky(2)
        assert _retry(op, sleeps, attempts=3, backoff_seconds=0.1) == "ok"
        assert op.calls == 3
        assert sleeps == [0.1, 0.2]

    def test_exhausted_reraises_last_error(self, sleeps):
        op = Flaky(5)
        with pytest.raises(ConnectionError):
            _retry(op, sleeps, attempts=3)
        assert op.calls == 3

    def test_non_transient_not_retried(self, sleeps):
        op = Flaky(1, error=ValueError("invalid amount"))
        with pytest.raises(ValueError):
            _retry(op, sleeps, attempts=3)
        assert op.calls == 1

    def test_retry_is_logged(self, sleeps, captured_logs):
        _retry(Flaky(1), sleeps, attempts=2, backoff_seconds=0)
        (record,) = [r for r in captured_logs() if r["message"] == "transient_failure_retrying"]
        assert record["operation"] == "test_op"
        assert record["attempt"] == 1

    def test_timeout_counts_as_transient(self, sleeps):
        release = threading.Event()
        calls = []

        def slow_then_fast():
            calls.append(1)
            if len(calls) == 1:
                release.wait(timeout=5)
                return "late"
            return "fast"

        try:
            result = _retry(slow_then_fast, sleeps, attempts=2, timeout_seconds=0.05)
        finally:
            release.set()
        assert result == "fast"
        assert len(calls) == 2

    def test_timeout_exhausted(self, sleeps):
        release = threading.Event()
        try:
            with pytest.raises(TimeoutError):
                _retry(lambda: release.wait(timeout=5), sleeps, attempts=1, timeout_seconds=0.05)
        finally:
            release.set()


class TestRetryPolicy:
    def test_backoff_capped(self):
        policy = RetryPolicy(attempts=5, backoff_seconds=1.0, max_backoff_seconds=3.0)
        assert [policy.delay_for(n) for n in range(1, 5)] == [1.0, 2.0, 3.0, 3.0]

    @pytest.mark.parametrize("attempts", [0, MAX_ATTEMPTS + 1])
    def test_attempt_bounds(self, attempts):
        with pytest.raises(ValueError):
            RetryPolicy(attempts=attempts)

    def test_negative_backoff(self):
        with pytest.raises(ValueError):
            RetryPolicy(backoff_seconds=-1)
