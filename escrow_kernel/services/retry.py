"""
Bounded retry for transient I/O.

Responsibility:
    Wraps every external call the release engine makes (store writes,
    notification delivery, payout hook) with a bounded attempt count,
    exponential backoff, and an optional wall-clock timeout.

Architecture position:
    Kernel > Services -- imperative shell helper.  No domain knowledge.

Invariants enforced:
    - MAX_ATTEMPTS: safety limit (10) prevents unbounded retry loops.
    - Only transient failures are retried (``is_transient``).  A claim that
      returned False is a result, not an exception, so it is never retried.

Failure modes:
    - The last transient exception is re-raised once attempts are exhausted.
    - Non-transient exceptions propagate immediately.
    - ``TimeoutError`` when a timed call exceeds ``timeout_seconds``.  The
      worker thread running the call is abandoned, not killed.

Usage:
    policy = RetryPolicy(attempts=3, backoff_seconds=0.2)
    claimed = call_with_retry(
        lambda: store.claim_earning(earning_id, EarningStatus.ESCROWED, ...),
        policy=policy,
        operation_name="claim_earning",
    )
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Callable, TypeVar

from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from escrow_kernel.exceptions import TransientStoreError
from escrow_kernel.logging_config import get_logger

logger = get_logger("services.retry")

T = TypeVar("T")

# INVARIANT: Safety limit -- prevents unbounded retry loops
MAX_ATTEMPTS = 10


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt ceiling, backoff curve, and per-attempt timeout."""

    attempts: int = 3
    backoff_seconds: float = 0.2
    max_backoff_seconds: float = 2.0
    timeout_seconds: float | None = None

    def __post_init__(self) -> None:
        if not 1 <= self.attempts <= MAX_ATTEMPTS:
            raise ValueError(
                f"attempts must be between 1 and {MAX_ATTEMPTS}, got {self.attempts}"
            )
        if self.backoff_seconds < 0 or self.max_backoff_seconds < 0:
            raise ValueError("backoff must be non-negative")

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based)."""
        return min(
            self.backoff_seconds * (2 ** (attempt - 1)),
            self.max_backoff_seconds,
        )


def is_transient(exc: BaseException) -> bool:
    """True for failures worth retrying: connection, lock and timeout errors."""
    if isinstance(exc, (TransientStoreError, TimeoutError, ConnectionError)):
        return True
    if isinstance(exc, (OperationalError, PoolTimeoutError)):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return False


_timeout_pool: ThreadPoolExecutor | None = None
_timeout_pool_lock = threading.Lock()


def _get_timeout_pool() -> ThreadPoolExecutor:
    global _timeout_pool
    with _timeout_pool_lock:
        if _timeout_pool is None:
            _timeout_pool = ThreadPoolExecutor(
                max_workers=16, thread_name_prefix="escrow-timed-io",
            )
        return _timeout_pool


def _call_once(operation: Callable[[], T], timeout_seconds: float | None) -> T:
    if timeout_seconds is None:
        return operation()
    future = _get_timeout_pool().submit(operation)
    try:
        return future.result(timeout=timeout_seconds)
    except FutureTimeoutError:
        future.cancel()
        raise TimeoutError(f"call exceeded {timeout_seconds}s") from None


def call_with_retry(
    operation: Callable[[], T],
    *,
    policy: RetryPolicy,
    operation_name: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation`` with bounded retries on transient failures.

    Args:
        operation: Zero-argument callable performing one attempt.
        policy: Attempt ceiling, backoff, and per-attempt timeout.
        operation_name: Label for log records.
        sleep: Injected for tests.

    Returns:
        Whatever ``operation`` returns on the first successful attempt.
    """
    for attempt in range(1, policy.attempts + 1):
        try:
            return _call_once(operation, policy.timeout_seconds)
        except Exception as exc:
            if not is_transient(exc) or attempt >= policy.attempts:
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "transient_failure_retrying",
                extra={
                    "operation": operation_name,
                    "attempt": attempt,
                    "max_attempts": policy.attempts,
                    "delay_seconds": delay,
                    "error": str(exc),
                },
            )
            sleep(delay)

    # Unreachable: the loop either returns or raises
    raise RuntimeError("call_with_retry exhausted without result")
