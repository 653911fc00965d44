"""
DealFinalizer -- completes deals whose escrow has fully drained.

Contract:
    ``finalize(touched_deal_ids, now)`` examines every deal touched by the
    run plus every active/accepted deal with no escrowed Earnings, and
    completes those that qualify.  Re-running is a no-op.

Architecture: escrow_release/services.  Reads/writes through ReleaseStore,
    publishes DealCompleted.

Invariants enforced:
    - A deal is completed only if every milestone is terminal, no Earning
      is still escrowed, and it has milestones or a released Earning.
    - The write is conditional on status active/accepted; ``completed_at``
      is only set if unset.
    - Before the check, a releasable milestone whose linked Earnings are
      all released is completed.  This settles a milestone write that
      failed after its Earning was claimed.
    - A failure on one deal never stops the others.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable
from uuid import UUID

from escrow_kernel.exceptions import DealNotFoundError
from escrow_kernel.logging_config import LogContext, get_logger
from escrow_kernel.models.deal import DEAL_FINALIZABLE, MILESTONE_RELEASABLE
from escrow_kernel.models.earning import EarningStatus
from escrow_release.domain.events import DealCompleted, ReleaseEvent
from escrow_release.domain.types import DealSnapshot, EarningSnapshot, ItemError
from escrow_release.services.store import MalformedRow, ReleaseStore

logger = get_logger("release.finalizer")


@dataclass(frozen=True)
class FinalizationResult:
    finalized: tuple[UUID, ...] = ()
    errors: tuple[ItemError, ...] = ()


class DealFinalizer:
    def __init__(
        self,
        store: ReleaseStore,
        publish: Callable[[ReleaseEvent], None],
        page_size: int = 200,
    ):
        self._store = store
        self._publish = publish
        self._page_size = page_size

    def candidate_deal_ids(self, touched_deal_ids: Iterable[UUID]) -> list[UUID]:
        """Touched deals plus active/accepted deals with no escrow, in id order."""
        ids = set(touched_deal_ids)
        after_id: UUID | str | None = None
        while True:
            page = self._store.page_finalizable_deal_ids(
                after_id=after_id, limit=self._page_size,
            )
            ids.update(page)
            if len(page) < self._page_size:
                break
            after_id = page[-1]
        return sorted(ids, key=str)

    def is_finalizable(self, deal: DealSnapshot) -> bool:
        if deal.status not in DEAL_FINALIZABLE:
            return False
        if any(not m.is_terminal for m in deal.milestones):
            return False
        if self._store.count_earnings(deal.deal_id, EarningStatus.ESCROWED) > 0:
            return False
        if deal.has_milestones:
            return True
        return self._store.count_earnings(deal.deal_id, EarningStatus.COMPLETED) > 0

    def finalize(
        self,
        touched_deal_ids: Iterable[UUID],
        now: datetime,
    ) -> FinalizationResult:
        finalized: list[UUID] = []
        errors: list[ItemError] = []

        for deal_id in self.candidate_deal_ids(touched_deal_ids):
            with LogContext.bind(deal_id=str(deal_id)):
                try:
                    if self._finalize_one(deal_id, now):
                        finalized.append(deal_id)
                except DealNotFoundError:
                    logger.warning("deal_finalization_skipped", extra={"reason": "not_found"})
                except ValueError as exc:
                    logger.warning(
                        "deal_finalization_skipped",
                        extra={"reason": "malformed", "error": str(exc)},
                    )
                except Exception as exc:
                    code = getattr(exc, "code", "UNHANDLED_EXCEPTION")
                    logger.error(
                        "deal_finalization_failed",
                        extra={"error_code": code, "error": str(exc)},
                        exc_info=True,
                    )
                    errors.append(ItemError(
                        eligibility_class=None,
                        earning_id=None,
                        deal_id=deal_id,
                        code=code,
                        message=str(exc),
                    ))

        return FinalizationResult(finalized=tuple(finalized), errors=tuple(errors))

    def settle_milestones(self, deal: DealSnapshot, now: datetime) -> int:
        """Complete releasable milestones whose linked Earnings were all released.

        Returns how many milestones moved.  Nothing is settled while any of
        the deal's Earnings is malformed, since its link is unknown.
        """
        open_ids = {m.milestone_id for m in deal.milestones if m.status in MILESTONE_RELEASABLE}
        if not open_ids:
            return 0

        linked: dict[UUID, list[EarningSnapshot]] = {}
        for row in self._store.earnings_for_deal(deal.deal_id):
            if isinstance(row, MalformedRow):
                logger.warning(
                    "milestone_settlement_skipped",
                    extra={"entity_id": row.entity_id, "reason": row.reason},
                )
                return 0
            try:
                milestone_id = row.milestone_id
            except ValueError:
                continue
            if milestone_id in open_ids:
                linked.setdefault(milestone_id, []).append(row)

        settled = 0
        for milestone_id, earnings in linked.items():
            if any(e.status != EarningStatus.COMPLETED for e in earnings):
                continue
            completed_at = max(e.released_at or now for e in earnings)
            if self._store.update_milestone(milestone_id, completed_at=completed_at):
                settled += 1
                logger.info(
                    "milestone_settled",
                    extra={"milestone_id": str(milestone_id), "earning_count": len(earnings)},
                )
        return settled

    def _finalize_one(self, deal_id: UUID, now: datetime) -> bool:
        deal = self._store.get_deal(deal_id)
        if self.settle_milestones(deal, now):
            deal = self._store.get_deal(deal_id)
        if not self.is_finalizable(deal):
            return False
        if not self._store.complete_deal(deal_id, now):
            return False

        logger.info(
            "deal_finalized",
            extra={
                "deal_number": deal.deal_number,
                "milestone_count": len(deal.milestones),
            },
        )
        self._publish(DealCompleted(
            deal_id=deal.deal_id,
            deal_number=deal.deal_number,
            deal_name=deal.deal_name,
            marketer_id=deal.marketer_id,
            creator_id=deal.creator_id,
        ))
        return True
