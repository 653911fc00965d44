"""
EscrowOperatorService -- operator-facing release actions and status.

Contract:
    - ``release_status(deal_id)`` reports the applicable policy, escrowed and
      released totals and a per-Earning release state.  Read-only.
    - ``approve_release(earning_ids, actor_id)`` records an explicit approval
      on escrowed Earnings so the next run may claim them.
    - ``schedule_release(deal_id, release_date, actor_id)`` sets a release
      date on escrowed Earnings (the marketer_scheduled class).
    - ``release_now(deal_id, actor_id)`` releases escrowed Earnings of a deal
      immediately through the same claim the release run uses.

Architecture: escrow_release/services.  Writes only metadata, never status:
    moving money out of escrow stays with the claim in the transactor.

Invariants enforced:
    - Metadata writes are optimistic (version check) and only apply to
      Earnings still escrowed.
    - ``approve_release`` validates every Earning before writing any.
    - A scheduled release date must be strictly in the future.
    - ``release_now`` releases only Earnings whose release state is
      eligible, overdue or awaiting approval, unless ``force`` is set.
      The releasing operator is recorded as ``released_by`` and counts as
      the approver.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Callable, Iterable
from uuid import UUID

from escrow_kernel.domain.clock import Clock, SystemClock, as_utc
from escrow_kernel.exceptions import (
    EarningNotEscrowedError,
    InvalidReleaseScheduleError,
    NothingToReleaseError,
    OptimisticLockError,
)
from escrow_kernel.logging_config import LogContext, get_logger
from escrow_kernel.models.deal import DealStatus
from escrow_kernel.models.earning import (
    META_APPROVAL_NOTE,
    META_APPROVED_AT,
    META_APPROVED_BY,
    META_RELEASE_NOTE,
    META_RELEASED_BY,
    META_SCHEDULE_REASON,
    META_SCHEDULED_BY,
    META_SCHEDULED_RELEASE_DATE,
    EarningStatus,
    ReleaseType,
)
from escrow_release.domain.events import ReleaseEvent, ReleaseScheduled
from escrow_release.domain.rules import (
    RuleCatalog,
    escrow_age_days,
    overdue_date,
    release_date,
)
from escrow_release.domain.types import (
    Candidate,
    DealReleaseStatus,
    DealSnapshot,
    EarningReleaseState,
    EarningReleaseStatus,
    EarningSnapshot,
    EligibilityClass,
    ItemOutcome,
    ItemResult,
    ReleasePolicy,
)
from escrow_release.services.scanner import milestone_due
from escrow_release.services.store import MalformedRow, ReleaseStore
from escrow_release.services.transactor import ClaimAndReleaseTransactor

logger = get_logger("release.operator")

_RELEASABLE_STATES = frozenset({
    EarningReleaseState.ELIGIBLE,
    EarningReleaseState.OVERDUE,
    EarningReleaseState.AWAITING_APPROVAL,
})


class EscrowOperatorService:
    """Operator API over the release store."""

    def __init__(
        self,
        store: ReleaseStore,
        catalog: RuleCatalog,
        publish: Callable[[ReleaseEvent], None],
        clock: Clock | None = None,
        transactor: ClaimAndReleaseTransactor | None = None,
    ):
        self._store = store
        self._catalog = catalog
        self._publish = publish
        self._clock = clock or SystemClock()
        self._transactor = transactor or ClaimAndReleaseTransactor(store, publish)

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def release_status(
        self,
        deal_id: UUID,
        now: datetime | None = None,
    ) -> DealReleaseStatus:
        """Release status of one deal.

        Raises:
            DealNotFoundError: If the deal does not exist.
        """
        now = as_utc(now) if now is not None else self._clock.now()
        deal = self._store.get_deal(deal_id)
        policy = self._catalog.resolve_policy(deal)

        statuses: list[EarningReleaseStatus] = []
        escrowed = Decimal("0")
        released = Decimal("0")

        for row in self._store.earnings_for_deal(deal_id):
            if isinstance(row, MalformedRow):
                logger.warning(
                    "release_status_row_skipped",
                    extra={"entity_id": row.entity_id, "reason": row.reason},
                )
                continue
            try:
                status = self._earning_status(deal, row, policy, now)
            except ValueError as exc:
                logger.warning(
                    "release_status_row_skipped",
                    extra={"entity_id": str(row.earning_id), "reason": str(exc)},
                )
                continue
            statuses.append(status)
            if row.status == EarningStatus.ESCROWED:
                escrowed += row.amount
            elif row.status == EarningStatus.COMPLETED:
                released += row.amount

        pending = [
            s for s in statuses
            if s.state not in (EarningReleaseState.RELEASED, EarningReleaseState.RELEASE_FAILED)
        ]
        upcoming = [s.next_release_date for s in pending if s.next_release_date is not None]

        return DealReleaseStatus(
            deal_id=deal.deal_id,
            deal_number=deal.deal_number,
            deal_status=deal.status,
            policy=policy,
            escrowed_amount=escrowed,
            released_amount=released,
            earnings=tuple(statuses),
            next_release_date=min(upcoming) if upcoming else None,
            days_since_escrowed=max((s.days_since_escrowed for s in pending), default=0),
        )

    def _earning_status(
        self,
        deal: DealSnapshot,
        earning: EarningSnapshot,
        policy: ReleasePolicy,
        now: datetime,
    ) -> EarningReleaseStatus:
        if earning.status == EarningStatus.COMPLETED:
            return EarningReleaseStatus(
                earning_id=earning.earning_id,
                amount=earning.amount,
                state=EarningReleaseState.RELEASED,
                released_at=earning.released_at,
                release_type=earning.release_type,
            )
        if earning.status == EarningStatus.RELEASE_FAILED:
            return EarningReleaseStatus(
                earning_id=earning.earning_id,
                amount=earning.amount,
                state=EarningReleaseState.RELEASE_FAILED,
                released_at=earning.released_at,
                release_type=earning.release_type,
            )

        milestone = None
        if earning.milestone_id is not None:
            milestone = deal.milestone(earning.milestone_id)
        scheduled = earning.scheduled_release_date
        overdue_at = overdue_date(earning.created_at, policy)
        grace_until = (
            release_date(deal.completed_at, policy)
            if deal.completed_at is not None and deal.status == DealStatus.COMPLETED
            else None
        )

        future: list[datetime] = [overdue_at] if overdue_at > now else []
        if scheduled is not None and scheduled > now:
            future.append(scheduled)
        if grace_until is not None and grace_until > now:
            future.append(grace_until)
        if (
            milestone is not None
            and milestone.auto_release_date is not None
            and milestone.auto_release_date > now
        ):
            future.append(milestone.auto_release_date)

        if overdue_at <= now:
            state = EarningReleaseState.OVERDUE
        elif (
            (scheduled is not None and scheduled <= now)
            or (grace_until is not None and grace_until <= now)
            or (milestone is not None and milestone_due(milestone, now))
        ):
            state = EarningReleaseState.ELIGIBLE
        elif scheduled is not None:
            state = EarningReleaseState.SCHEDULED
        elif grace_until is not None:
            state = EarningReleaseState.GRACE_PERIOD
        else:
            state = EarningReleaseState.PENDING

        if state in (EarningReleaseState.OVERDUE, EarningReleaseState.ELIGIBLE):
            needs_approval = policy.requires_approval or bool(
                milestone is not None and milestone.dispute_flag
            )
            if needs_approval and not earning.is_approved:
                state = EarningReleaseState.AWAITING_APPROVAL

        return EarningReleaseStatus(
            earning_id=earning.earning_id,
            amount=earning.amount,
            state=state,
            next_release_date=min(future) if future else None,
            days_since_escrowed=escrow_age_days(earning.created_at, now),
        )

    # -------------------------------------------------------------------------
    # Actions
    # -------------------------------------------------------------------------

    def approve_release(
        self,
        earning_ids: Iterable[UUID],
        actor_id: UUID,
        now: datetime | None = None,
        note: str | None = None,
    ) -> list[EarningSnapshot]:
        """Record an explicit release approval on escrowed Earnings.

        Raises:
            EarningNotFoundError: If any earning does not exist.
            EarningNotEscrowedError: If any earning has left escrow.
            OptimisticLockError: If an earning changed concurrently.
        """
        now = as_utc(now) if now is not None else self._clock.now()
        earnings = [self._escrowed(eid) for eid in earning_ids]

        approved: list[EarningSnapshot] = []
        with LogContext.bind(actor_id=str(actor_id)):
            for earning in earnings:
                updates = {
                    META_APPROVED_BY: str(actor_id),
                    META_APPROVED_AT: now.isoformat(),
                }
                if note:
                    updates[META_APPROVAL_NOTE] = note
                approved.append(self._store.update_earning_metadata(
                    earning.earning_id, updates, expected_version=earning.version,
                ))
                logger.info(
                    "release_approved",
                    extra={
                        "earning_id": str(earning.earning_id),
                        "deal_id": str(earning.deal_id),
                        "amount": earning.amount,
                    },
                )
        return approved

    def schedule_release(
        self,
        deal_id: UUID,
        release_date: datetime,
        actor_id: UUID,
        now: datetime | None = None,
        earning_ids: Iterable[UUID] | None = None,
        reason: str | None = None,
        notify: bool = True,
    ) -> list[EarningSnapshot]:
        """Schedule escrowed Earnings of a deal for release at ``release_date``.

        Raises:
            DealNotFoundError: If the deal does not exist.
            InvalidReleaseScheduleError: If the date is not in the future or
                no matching escrowed Earnings exist.
        """
        now = as_utc(now) if now is not None else self._clock.now()
        release_at = as_utc(release_date)
        if release_at <= now:
            raise InvalidReleaseScheduleError(
                release_at.isoformat(), "release date must be in the future",
            )

        deal = self._store.get_deal(deal_id)
        wanted = set(earning_ids) if earning_ids is not None else None
        targets = [
            row for row in self._store.earnings_for_deal(deal_id)
            if isinstance(row, EarningSnapshot)
            and row.status == EarningStatus.ESCROWED
            and (wanted is None or row.earning_id in wanted)
        ]
        if not targets:
            raise InvalidReleaseScheduleError(
                release_at.isoformat(), "no escrowed earnings to schedule",
            )

        updates = {
            META_SCHEDULED_RELEASE_DATE: release_at.isoformat(),
            META_SCHEDULED_BY: str(actor_id),
        }
        if reason:
            updates[META_SCHEDULE_REASON] = reason

        scheduled: list[EarningSnapshot] = []
        with LogContext.bind(actor_id=str(actor_id), deal_id=str(deal_id)):
            for earning in targets:
                scheduled.append(self._store.update_earning_metadata(
                    earning.earning_id, updates, expected_version=earning.version,
                ))

            total = sum((e.amount for e in scheduled), Decimal("0"))
            logger.info(
                "release_scheduled",
                extra={
                    "release_date": release_at,
                    "earning_count": len(scheduled),
                    "amount": total,
                },
            )

        if notify:
            self._publish(ReleaseScheduled(
                deal_id=deal.deal_id,
                deal_number=deal.deal_number,
                marketer_id=deal.marketer_id,
                creator_id=deal.creator_id,
                release_date=release_at,
                amount=total,
                currency=scheduled[0].currency,
                earning_count=len(scheduled),
                reason=reason,
            ))
        return scheduled

    def release_now(
        self,
        deal_id: UUID,
        actor_id: UUID,
        earning_ids: Iterable[UUID] | None = None,
        force: bool = False,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> list[ItemResult]:
        """Release escrowed Earnings of a deal immediately.

        Each Earning is checked against its deal's policy the way
        ``release_status`` reports it; one that is not yet due comes back
        ``NOT_ELIGIBLE`` and stays in escrow.  ``force`` skips that check.
        Everything else goes through the transactor's claim, so an Earning
        a concurrent run already took comes back ``ALREADY_CLAIMED``.

        Raises:
            DealNotFoundError: If the deal does not exist.
            NothingToReleaseError: If no matching escrowed Earnings exist.
        """
        now = as_utc(now) if now is not None else self._clock.now()
        deal = self._store.get_deal(deal_id)
        policy = self._catalog.resolve_policy(deal)
        wanted = set(earning_ids) if earning_ids is not None else None
        targets = [
            row for row in self._store.earnings_for_deal(deal_id)
            if isinstance(row, EarningSnapshot)
            and row.status == EarningStatus.ESCROWED
            and (wanted is None or row.earning_id in wanted)
        ]
        if not targets:
            raise NothingToReleaseError(str(deal_id))

        with LogContext.bind(actor_id=str(actor_id), deal_id=str(deal_id)):
            logger.info(
                "manual_release_requested",
                extra={"earning_count": len(targets), "force": force},
            )
            results = [
                self._release_one(deal, earning, policy, actor_id, force, reason, now)
                for earning in targets
            ]
            released = [r for r in results if r.outcome == ItemOutcome.RELEASED]
            logger.info(
                "manual_release_completed",
                extra={
                    "released_count": len(released),
                    "refused_count": len(results) - len(released),
                    "amount": sum((r.amount for r in released), Decimal("0")),
                },
            )
        return results

    def _release_one(
        self,
        deal: DealSnapshot,
        earning: EarningSnapshot,
        policy: ReleasePolicy,
        actor_id: UUID,
        force: bool,
        reason: str | None,
        now: datetime,
    ) -> ItemResult:
        with LogContext.bind(earning_id=str(earning.earning_id)):
            try:
                state = self._earning_status(deal, earning, policy, now).state
                milestone_id = earning.milestone_id
            except ValueError as exc:
                logger.warning("manual_release_row_skipped", extra={"reason": str(exc)})
                return _refused(earning, ItemOutcome.FAILED, "MALFORMED_EARNING", str(exc))

            if not force and state not in _RELEASABLE_STATES:
                logger.info("manual_release_not_eligible", extra={"state": state.value})
                return _refused(
                    earning, ItemOutcome.NOT_ELIGIBLE, "NOT_ELIGIBLE",
                    f"Not eligible for release yet ({state.value})",
                )

            updates = {META_RELEASED_BY: str(actor_id)}
            if reason:
                updates[META_RELEASE_NOTE] = reason
            if not earning.is_approved:
                updates[META_APPROVED_BY] = str(actor_id)
                updates[META_APPROVED_AT] = now.isoformat()
            try:
                stamped = self._store.update_earning_metadata(
                    earning.earning_id, updates, expected_version=earning.version,
                )
            except EarningNotEscrowedError:
                return _refused(earning, ItemOutcome.ALREADY_CLAIMED)
            except OptimisticLockError as exc:
                return _refused(earning, ItemOutcome.FAILED, exc.code, str(exc))

            if reason:
                release_reason = reason
            elif force:
                release_reason = f"Forced release by operator {actor_id}"
            else:
                release_reason = f"Released by operator {actor_id}"

            return self._transactor.process(Candidate(
                eligibility_class=EligibilityClass.MANUAL,
                deal=deal,
                earning=stamped,
                policy=policy,
                release_type=ReleaseType.MANUAL,
                release_reason=release_reason,
                milestone=deal.milestone(milestone_id) if milestone_id else None,
            ), now)

    def _escrowed(self, earning_id: UUID) -> EarningSnapshot:
        earning = self._store.get_earning(earning_id)
        if earning.status != EarningStatus.ESCROWED:
            raise EarningNotEscrowedError(str(earning_id), earning.status.value)
        return earning


def _refused(
    earning: EarningSnapshot,
    outcome: ItemOutcome,
    error_code: str | None = None,
    error_message: str | None = None,
) -> ItemResult:
    return ItemResult(
        earning_id=earning.earning_id,
        deal_id=earning.deal_id,
        eligibility_class=EligibilityClass.MANUAL,
        outcome=outcome,
        amount=earning.amount,
        error_code=error_code,
        error_message=error_message,
    )
