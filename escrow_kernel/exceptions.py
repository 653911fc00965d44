"""
Typed Exception Hierarchy for the Escrow Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Release runs touch money. Callers (the run orchestrator, the scheduler, the
CLI) must decide whether a failure is item-scoped, run-scoped, or a
deliberate hold without parsing message strings.  Every error therefore:

  1. Has a TYPED exception class (catch by type, not message)
  2. Has a CODE class attribute (machine-readable, log-safe)
  3. Carries structured DATA as attributes (not just a message string)

Example - WRONG way to handle errors:
    try:
        engine.run_once()
    except Exception as e:
        if "store" in str(e):  # FRAGILE
            page_operator()

Example - RIGHT way:
    try:
        engine.run_once()
    except ReleaseRunError as e:
        alert(code=e.code, run_id=e.run_id, errors=len(e.summary.errors))

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    EscrowKernelError (base)
    |
    +-- StoreError
    |   +-- TransientStoreError
    |   +-- DealNotFoundError
    |   +-- EarningNotFoundError
    |
    +-- ConcurrencyError
    |   +-- OptimisticLockError
    |
    +-- ReleaseError
    |   +-- ScanError
    |   +-- ReleaseRunError
    |   +-- PayoutFailedError
    |   +-- InvalidReleaseScheduleError
    |   +-- EarningNotEscrowedError
    |   +-- NothingToReleaseError
    |
    +-- NotificationError
    |   +-- NotificationDeliveryError
    |
    +-- ScheduleError
    |   +-- InvalidCronExpressionError
    |
    +-- ReleaseConfigError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category      | Code                        | When Raised
--------------|-----------------------------|-----------------------------------
Store         | TRANSIENT_STORE_ERROR       | Retryable I/O failure exhausted
              | DEAL_NOT_FOUND              | Deal ID doesn't exist
              | EARNING_NOT_FOUND           | Earning ID doesn't exist
--------------|-----------------------------|-----------------------------------
Concurrency   | OPTIMISTIC_LOCK_CONFLICT    | Earning metadata changed under us
--------------|-----------------------------|-----------------------------------
Release       | SCAN_FAILED                 | Eligibility query cannot reach store
              | RELEASE_RUN_FAILED          | Run-scoped fatal failure
              | PAYOUT_FAILED               | Payout hook failed after retries
              | INVALID_RELEASE_SCHEDULE    | Scheduled date not in the future
              | EARNING_NOT_ESCROWED        | Operator action on released earning
              | NOTHING_TO_RELEASE          | Manual release matched no escrow
--------------|-----------------------------|-----------------------------------
Notification  | NOTIFICATION_DELIVERY_FAILED| Sink rejected a notification
--------------|-----------------------------|-----------------------------------
Schedule      | INVALID_CRON_EXPRESSION     | Trigger cron cannot be parsed
--------------|-----------------------------|-----------------------------------
Config        | RELEASE_CONFIG_INVALID      | YAML rules fail validation

===============================================================================
HANDLING PATTERNS
===============================================================================

1. A LOST CLAIM IS NOT AN ERROR.  ``ReleaseStore.claim_earning`` returns
   False when another run got there first; nothing is raised.

2. ITEM-SCOPED ERRORS NEVER ESCALATE.  The transactor converts any
   exception raised while processing one candidate into an ItemResult.

3. RUN-SCOPED ERRORS CARRY THE BEST-EFFORT SUMMARY:

    except ReleaseRunError as e:
        log_summary(e.summary)
        raise

4. RETRY ONLY TRANSIENT I/O (TransientStoreError, OperationalError,
   TimeoutError).  Never retry a claim that returned False.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from escrow_release.domain.types import RunSummary


class EscrowKernelError(Exception):
    """
    Base exception for all escrow engine errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "ESCROW_KERNEL_ERROR"


# Store-related exceptions


class StoreError(EscrowKernelError):
    """Base exception for data store errors."""

    code: str = "STORE_ERROR"


class TransientStoreError(StoreError):
    """A retryable store operation kept failing."""

    code: str = "TRANSIENT_STORE_ERROR"

    def __init__(self, operation: str, attempts: int, cause: str):
        self.operation = operation
        self.attempts = attempts
        self.cause = cause
        super().__init__(
            f"Store operation {operation} failed after {attempts} attempt(s): {cause}"
        )


class DealNotFoundError(StoreError):
    """Deal with given ID was not found."""

    code: str = "DEAL_NOT_FOUND"

    def __init__(self, deal_id: str):
        self.deal_id = deal_id
        super().__init__(f"Deal not found: {deal_id}")


class EarningNotFoundError(StoreError):
    """Earning with given ID was not found."""

    code: str = "EARNING_NOT_FOUND"

    def __init__(self, earning_id: str):
        self.earning_id = earning_id
        super().__init__(f"Earning not found: {earning_id}")


# Concurrency-related exceptions


class ConcurrencyError(EscrowKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class OptimisticLockError(ConcurrencyError):
    """Optimistic locking conflict detected."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"Optimistic lock conflict on {entity_type} {entity_id}: "
            "entity was modified by another transaction"
        )


# Release-related exceptions


class ReleaseError(EscrowKernelError):
    """Base exception for release engine errors."""

    code: str = "RELEASE_ERROR"


class ScanError(ReleaseError):
    """An eligibility query could not be executed against the store."""

    code: str = "SCAN_FAILED"

    def __init__(self, eligibility_class: str, cause: str):
        self.eligibility_class = eligibility_class
        self.cause = cause
        super().__init__(
            f"Eligibility scan '{eligibility_class}' failed: {cause}"
        )


class ReleaseRunError(ReleaseError):
    """A release run failed at run scope.

    Claims made before the failure remain valid; ``summary`` is the
    best-effort RunSummary assembled at the point of failure.
    """

    code: str = "RELEASE_RUN_FAILED"

    def __init__(self, run_id: str, reason: str, summary: RunSummary | None = None):
        self.run_id = run_id
        self.reason = reason
        self.summary = summary
        super().__init__(f"Release run {run_id} failed: {reason}")


class PayoutFailedError(ReleaseError):
    """The payout hook failed for a claimed earning."""

    code: str = "PAYOUT_FAILED"

    def __init__(self, earning_id: str, attempts: int, cause: str):
        self.earning_id = earning_id
        self.attempts = attempts
        self.cause = cause
        super().__init__(
            f"Payout for earning {earning_id} failed after {attempts} attempt(s): {cause}"
        )


class InvalidReleaseScheduleError(ReleaseError):
    """A scheduled release date is not acceptable."""

    code: str = "INVALID_RELEASE_SCHEDULE"

    def __init__(self, release_date: Any, reason: str):
        self.release_date = release_date
        self.reason = reason
        super().__init__(f"Invalid release schedule {release_date}: {reason}")


class EarningNotEscrowedError(ReleaseError):
    """An operator action targeted an earning that is no longer escrowed."""

    code: str = "EARNING_NOT_ESCROWED"

    def __init__(self, earning_id: str, status: str):
        self.earning_id = earning_id
        self.status = status
        super().__init__(
            f"Earning {earning_id} is not escrowed (status: {status})"
        )


class NothingToReleaseError(ReleaseError):
    """A manual release found no escrowed earnings on the deal."""

    code: str = "NOTHING_TO_RELEASE"

    def __init__(self, deal_id: str):
        self.deal_id = deal_id
        super().__init__(f"No escrowed earnings to release on deal {deal_id}")


# Notification-related exceptions


class NotificationError(EscrowKernelError):
    """Base exception for notification errors."""

    code: str = "NOTIFICATION_ERROR"


class NotificationDeliveryError(NotificationError):
    """A notification sink rejected or timed out on a delivery."""

    code: str = "NOTIFICATION_DELIVERY_FAILED"

    def __init__(self, kind: str, attempts: int, cause: str):
        self.kind = kind
        self.attempts = attempts
        self.cause = cause
        super().__init__(
            f"Notification '{kind}' failed after {attempts} attempt(s): {cause}"
        )


# Schedule-related exceptions


class ScheduleError(EscrowKernelError):
    """Base exception for trigger schedule errors."""

    code: str = "SCHEDULE_ERROR"


class InvalidCronExpressionError(ScheduleError):
    """A trigger cron expression could not be parsed."""

    code: str = "INVALID_CRON_EXPRESSION"

    def __init__(self, expression: str, reason: str):
        self.expression = expression
        self.reason = reason
        super().__init__(f"Invalid cron expression '{expression}': {reason}")


# Configuration-related exceptions


class ReleaseConfigError(EscrowKernelError):
    """Release rule configuration failed validation."""

    code: str = "RELEASE_CONFIG_INVALID"

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__(
            "Release configuration invalid: " + "; ".join(errors)
        )
