"""
ClaimAndReleaseTransactor -- moves one candidate out of escrow.

Contract:
    ``process(candidate, now)`` never raises.  It returns an ``ItemResult``
    whose outcome is one of RELEASED, AWAITING_APPROVAL, ALREADY_CLAIMED or
    FAILED.

Architecture: escrow_release/services.  Writes through ReleaseStore,
    publishes to NotificationDispatcher.

Invariants enforced:
    - Approval gate runs before the claim: a candidate that requires
      approval and has no recorded approval is never claimed.  The
      approval request is published once per Earning.
    - The claim (conditional UPDATE) is the only release gate.  A lost
      claim is ``ALREADY_CLAIMED``, not an error, and nothing else is
      written for it.
    - Follow-up writes (milestone, payment-info mirror) only happen after a
      won claim, and are themselves guarded, so re-processing is a no-op.
    - A won claim is reported RELEASED and publishes ReleaseCompleted even
      when a follow-up write fails.  Only a payout failure makes it FAILED.
    - Every other exception is converted into a FAILED ItemResult.

Failure modes:
    - PAYOUT_FAILED when the payout hook gives up; the Earning is moved
      ``completed -> release_failed``.
    - A follow-up write failing after a won claim is attached to the
      RELEASED result as its error; the finalizer settles the milestone later.
"""

from __future__ import annotations

import time
from datetime import datetime
from typing import Callable, Protocol

from escrow_kernel.exceptions import (
    EarningNotEscrowedError,
    OptimisticLockError,
    PayoutFailedError,
)
from escrow_kernel.logging_config import LogContext, get_logger
from escrow_kernel.models.earning import META_APPROVAL_REQUESTED_AT, EarningStatus
from escrow_kernel.services.retry import RetryPolicy, call_with_retry
from escrow_release.domain.events import ApprovalRequired, ReleaseCompleted, ReleaseEvent
from escrow_release.domain.rules import escrow_age_days
from escrow_release.domain.types import (
    Candidate,
    DealSnapshot,
    EarningSnapshot,
    ItemOutcome,
    ItemResult,
    MilestoneSnapshot,
)
from escrow_release.services.store import ReleaseStore

logger = get_logger("release.transactor")


class PayoutInitiator(Protocol):
    """External payout call.  Must be idempotent by ``earning.earning_id``.

    Returns the provider's transaction id, if any.
    """

    def initiate(self, earning: EarningSnapshot, deal: DealSnapshot) -> str | None:
        ...


class ClaimAndReleaseTransactor:
    """Claims and releases candidates one at a time (thread-safe)."""

    def __init__(
        self,
        store: ReleaseStore,
        publish: Callable[[ReleaseEvent], None],
        payout: PayoutInitiator | None = None,
        payout_retry: RetryPolicy | None = None,
    ):
        self._store = store
        self._publish = publish
        self._payout = payout
        self._payout_retry = payout_retry or RetryPolicy()

    def process(self, candidate: Candidate, now: datetime) -> ItemResult:
        earning = candidate.earning
        deal = candidate.deal
        start = time.monotonic()

        with LogContext.bind(deal_id=str(deal.deal_id), earning_id=str(earning.earning_id)):
            try:
                outcome, follow_up_error = self._process(candidate, now)
            except Exception as exc:
                code = getattr(exc, "code", "UNHANDLED_EXCEPTION")
                logger.error(
                    "release_item_failed",
                    extra={
                        "eligibility_class": candidate.eligibility_class.value,
                        "error_code": code,
                        "error": str(exc),
                    },
                    exc_info=True,
                )
                return self._result(
                    candidate, ItemOutcome.FAILED, start,
                    error_code=code, error_message=str(exc),
                )

        if follow_up_error is not None:
            return self._result(
                candidate, outcome, start,
                error_code=getattr(follow_up_error, "code", "UNHANDLED_EXCEPTION"),
                error_message=f"Released; follow-up write failed: {follow_up_error}",
            )
        return self._result(candidate, outcome, start)

    def _process(
        self, candidate: Candidate, now: datetime,
    ) -> tuple[ItemOutcome, Exception | None]:
        earning = candidate.earning
        deal = candidate.deal

        # Approval gate
        if candidate.requires_approval and not earning.is_approved:
            self._request_approval(candidate, now)
            return ItemOutcome.AWAITING_APPROVAL, None

        # Claim
        claimed = self._store.claim_earning(
            earning.earning_id,
            EarningStatus.ESCROWED,
            released_at=now,
            release_type=candidate.release_type.value,
            release_reason=candidate.release_reason,
        )
        if not claimed:
            logger.info(
                "earning_claim_lost",
                extra={"eligibility_class": candidate.eligibility_class.value},
            )
            return ItemOutcome.ALREADY_CLAIMED, None

        logger.info(
            "earning_claimed",
            extra={
                "eligibility_class": candidate.eligibility_class.value,
                "release_type": candidate.release_type.value,
                "amount": earning.amount,
                "currency": earning.currency,
            },
        )

        # The claim stands from here on; follow-up failures are reported
        # with the release and settled by the finalizer on a later run.
        milestone = candidate.milestone
        errors: list[Exception | None] = []
        if milestone is not None:
            errors.append(self._follow_up(
                "update_milestone", lambda: self._complete_milestone(milestone, now),
            ))
        errors.append(self._follow_up(
            "mirror_transaction", lambda: self._mirror(candidate, now),
        ))

        if self._payout is not None:
            transaction_id = self._initiate_payout(candidate)
            if transaction_id:
                errors.append(self._follow_up(
                    "set_transaction_id",
                    lambda: self._store.set_transaction_id(earning.earning_id, transaction_id),
                ))

        self._publish(ReleaseCompleted(
            earning_id=earning.earning_id,
            deal_id=deal.deal_id,
            deal_number=deal.deal_number,
            marketer_id=deal.marketer_id,
            creator_id=earning.creator_id or deal.creator_id,
            amount=earning.amount,
            currency=earning.currency,
            release_type=candidate.release_type,
            release_reason=candidate.release_reason,
            milestone_name=milestone.name if milestone else None,
            days_escrowed=escrow_age_days(earning.created_at, now),
        ))
        return ItemOutcome.RELEASED, next((e for e in errors if e is not None), None)

    def _request_approval(self, candidate: Candidate, now: datetime) -> None:
        """Log the hold; notify only for the first hold of this Earning.

        The ``approval_requested_at`` stamp is written under the version
        read by the scan.  Only the writer that lands it publishes, so the
        same Earning held by two classes or by successive runs notifies once.
        """
        earning = candidate.earning
        deal = candidate.deal
        logger.info(
            "release_awaiting_approval",
            extra={
                "eligibility_class": candidate.eligibility_class.value,
                "policy": candidate.policy.kind.value,
                "amount": earning.amount,
                "dispute_flag": bool(candidate.milestone and candidate.milestone.dispute_flag),
                "already_requested": earning.approval_requested,
            },
        )
        if earning.approval_requested:
            return
        try:
            self._store.update_earning_metadata(
                earning.earning_id,
                {META_APPROVAL_REQUESTED_AT: now.isoformat()},
                expected_version=earning.version,
            )
        except (OptimisticLockError, EarningNotEscrowedError) as exc:
            logger.debug("approval_request_skipped", extra={"reason": str(exc)})
            return

        self._publish(ApprovalRequired(
            earning_id=earning.earning_id,
            deal_id=deal.deal_id,
            deal_number=deal.deal_number,
            marketer_id=deal.marketer_id,
            amount=earning.amount,
            currency=earning.currency,
            policy_kind=candidate.policy.kind.value,
            release_reason=candidate.release_reason,
        ))

    def _complete_milestone(self, milestone: MilestoneSnapshot, now: datetime) -> None:
        if self._store.update_milestone(milestone.milestone_id, completed_at=now):
            logger.info(
                "milestone_completed",
                extra={"milestone_id": str(milestone.milestone_id)},
            )

    def _mirror(self, candidate: Candidate, now: datetime) -> None:
        earning = candidate.earning
        milestone = candidate.milestone
        mirrored = self._store.mirror_transaction(
            candidate.deal.deal_id,
            earning_id=earning.earning_id,
            amount=earning.amount,
            released_at=now,
            release_type=candidate.release_type.value,
            milestone_id=milestone.milestone_id if milestone else None,
            transaction_id=earning.transaction_id,
        )
        logger.debug("payment_info_mirrored", extra={"mirror_result": mirrored})

    @staticmethod
    def _follow_up(step: str, write: Callable[[], object]) -> Exception | None:
        try:
            write()
        except Exception as exc:
            logger.error(
                "release_follow_up_failed",
                extra={
                    "step": step,
                    "error_code": getattr(exc, "code", "UNHANDLED_EXCEPTION"),
                    "error": str(exc),
                },
                exc_info=True,
            )
            return exc
        return None

    def _initiate_payout(self, candidate: Candidate) -> str | None:
        earning = candidate.earning
        try:
            transaction_id = call_with_retry(
                lambda: self._payout.initiate(earning, candidate.deal),
                policy=self._payout_retry,
                operation_name="payout_initiate",
            )
        except Exception as exc:
            reason = f"Payout failed: {exc}"
            self._store.mark_release_failed(earning.earning_id, reason)
            logger.error(
                "payout_failed",
                extra={"attempts": self._payout_retry.attempts, "error": str(exc)},
            )
            raise PayoutFailedError(
                str(earning.earning_id), self._payout_retry.attempts, str(exc),
            ) from exc

        logger.info("payout_initiated", extra={"transaction_id": transaction_id})
        return transaction_id

    @staticmethod
    def _result(
        candidate: Candidate,
        outcome: ItemOutcome,
        start: float,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> ItemResult:
        released = outcome == ItemOutcome.RELEASED
        return ItemResult(
            earning_id=candidate.earning.earning_id,
            deal_id=candidate.deal.deal_id,
            eligibility_class=candidate.eligibility_class,
            outcome=outcome,
            amount=candidate.earning.amount,
            release_type=candidate.release_type if released else None,
            high_value=released and candidate.is_high_value,
            error_code=error_code,
            error_message=error_message,
            duration_ms=int((time.monotonic() - start) * 1000),
        )
