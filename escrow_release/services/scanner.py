"""
EligibilityScanner -- finds release candidates per eligibility class.

Contract:
    ``scan(eligibility_class, now)`` returns a ``CandidateStream``: a lazy,
    restartable iterable.  Each iteration walks the store in keyset pages
    (short sessions, no open cursor) and yields ``Candidate`` values built
    against the single ``now`` passed in.

Architecture: escrow_release/services.  Reads through ReleaseStore only.

Invariants enforced:
    - Classes are independent; the same Earning may be yielded by several.
    - Only ``escrowed`` Earnings are ever yielded.
    - Malformed rows are skipped and logged, never fatal.

Failure modes:
    - ScanError (run-scoped) when the store cannot be reached.  Raised
      lazily, from inside iteration.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Iterator
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError

from escrow_kernel.exceptions import ScanError, StoreError
from escrow_kernel.logging_config import get_logger
from escrow_kernel.models.deal import MILESTONE_RELEASABLE, DealStatus, MilestoneStatus
from escrow_release.domain.rules import RuleCatalog, escrow_age_days, release_date
from escrow_release.domain.types import (
    RELEASE_TYPE_BY_CLASS,
    Candidate,
    DealSnapshot,
    EarningSnapshot,
    EligibilityClass,
    MilestoneSnapshot,
)
from escrow_release.services.store import MalformedRow, ReleaseStore

logger = get_logger("release.scanner")

DEFAULT_PAGE_SIZE = 200


class CandidateStream:
    """Lazy, restartable sequence of candidates for one class.

    ``skipped_malformed`` counts rows skipped during the most recent
    iteration.
    """

    def __init__(
        self,
        eligibility_class: EligibilityClass,
        source: Callable[["CandidateStream"], Iterator[Candidate]],
    ):
        self.eligibility_class = eligibility_class
        self._source = source
        self.skipped_malformed = 0

    def __iter__(self) -> Iterator[Candidate]:
        self.skipped_malformed = 0
        try:
            yield from self._source(self)
        except (StoreError, SQLAlchemyError) as exc:
            raise ScanError(self.eligibility_class.value, str(exc)) from exc

    def skip(self, row: MalformedRow) -> None:
        self.skipped_malformed += 1
        logger.warning(
            "scan_item_malformed",
            extra={
                "eligibility_class": self.eligibility_class.value,
                "entity": row.entity,
                "entity_id": row.entity_id,
                "reason": row.reason,
            },
        )


class EligibilityScanner:
    """Builds candidate streams for the four eligibility classes."""

    def __init__(
        self,
        store: ReleaseStore,
        catalog: RuleCatalog,
        page_size: int = DEFAULT_PAGE_SIZE,
    ):
        self._store = store
        self._catalog = catalog
        self._page_size = page_size

    def scan(self, eligibility_class: EligibilityClass, now: datetime) -> CandidateStream:
        sources = {
            EligibilityClass.COMPLETED_GRACE: self._completed_grace,
            EligibilityClass.MILESTONE_AUTO_RELEASE: self._milestone_auto_release,
            EligibilityClass.MARKETER_SCHEDULED: self._marketer_scheduled,
            EligibilityClass.OVERDUE_ESCROW: self._overdue_escrow,
        }
        source = sources[eligibility_class]
        return CandidateStream(eligibility_class, lambda stream: source(stream, now))

    # -------------------------------------------------------------------------
    # Paging helpers
    # -------------------------------------------------------------------------

    def _escrowed_pages(
        self,
        stream: CandidateStream,
        *,
        deal_id: UUID | None = None,
        created_before: datetime | None = None,
    ) -> Iterator[list[EarningSnapshot]]:
        after_id: UUID | str | None = None
        while True:
            rows = self._store.page_escrowed_earnings(
                after_id=after_id,
                limit=self._page_size,
                deal_id=deal_id,
                created_before=created_before,
            )
            if not rows:
                return
            page: list[EarningSnapshot] = []
            for row in rows:
                if isinstance(row, MalformedRow):
                    stream.skip(row)
                else:
                    page.append(row)
            yield page
            if len(rows) < self._page_size:
                return
            last = rows[-1]
            # a malformed row's id may not be a UUID; its stored text still orders
            after_id = last.earning_id if isinstance(last, EarningSnapshot) else last.entity_id

    def _with_deals(
        self,
        stream: CandidateStream,
        page: list[EarningSnapshot],
    ) -> Iterator[tuple[EarningSnapshot, DealSnapshot]]:
        deals = self._store.load_deals(e.deal_id for e in page)
        for earning in page:
            deal = deals.get(earning.deal_id)
            if deal is None:
                stream.skip(MalformedRow(
                    "earning", str(earning.earning_id),
                    f"dangling deal reference {earning.deal_id}",
                ))
                continue
            if isinstance(deal, MalformedRow):
                stream.skip(deal)
                continue
            yield earning, deal

    def _milestone_for(
        self,
        stream: CandidateStream,
        earning: EarningSnapshot,
        deal: DealSnapshot,
    ) -> tuple[bool, MilestoneSnapshot | None]:
        """(ok, milestone).  ``ok`` is False when the milestone id is unparseable."""
        try:
            milestone_id = earning.milestone_id
        except ValueError as exc:
            stream.skip(MalformedRow(
                "earning", str(earning.earning_id),
                f"invalid milestone_id: {exc}",
            ))
            return False, None
        if milestone_id is None:
            return True, None
        return True, deal.milestone(milestone_id)

    def _candidate(
        self,
        eligibility_class: EligibilityClass,
        deal: DealSnapshot,
        earning: EarningSnapshot,
        milestone: MilestoneSnapshot | None,
        reason: str,
    ) -> Candidate:
        return Candidate(
            eligibility_class=eligibility_class,
            deal=deal,
            earning=earning,
            milestone=milestone,
            policy=self._catalog.resolve_policy(deal),
            release_type=RELEASE_TYPE_BY_CLASS[eligibility_class],
            release_reason=reason,
        )

    # -------------------------------------------------------------------------
    # Classes
    # -------------------------------------------------------------------------

    def _completed_grace(self, stream: CandidateStream, now: datetime) -> Iterator[Candidate]:
        completed_before = now - timedelta(days=self._catalog.shortest_grace_days)
        after_id: UUID | str | None = None
        while True:
            rows = self._store.page_deals(
                [DealStatus.COMPLETED],
                after_id=after_id,
                limit=self._page_size,
                completed_before=completed_before,
            )
            if not rows:
                return
            for deal in rows:
                if isinstance(deal, MalformedRow):
                    stream.skip(deal)
                    continue
                policy = self._catalog.resolve_policy(deal)
                if deal.completed_at is None or release_date(deal.completed_at, policy) > now:
                    continue
                for page in self._escrowed_pages(stream, deal_id=deal.deal_id):
                    for earning in page:
                        ok, milestone = self._milestone_for(stream, earning, deal)
                        if not ok:
                            continue
                        yield self._candidate(
                            EligibilityClass.COMPLETED_GRACE, deal, earning, milestone,
                            "Deal completed and grace period passed",
                        )
            if len(rows) < self._page_size:
                return
            last = rows[-1]
            after_id = last.deal_id if isinstance(last, DealSnapshot) else last.entity_id

    def _milestone_auto_release(
        self, stream: CandidateStream, now: datetime,
    ) -> Iterator[Candidate]:
        for page in self._escrowed_pages(stream):
            with_milestone = []
            for earning in page:
                try:
                    if earning.milestone_id is not None:
                        with_milestone.append(earning)
                except ValueError as exc:
                    stream.skip(MalformedRow(
                        "earning", str(earning.earning_id),
                        f"invalid milestone_id: {exc}",
                    ))
            for earning, deal in self._with_deals(stream, with_milestone):
                milestone = deal.milestone(earning.milestone_id)
                if milestone is None:
                    stream.skip(MalformedRow(
                        "earning", str(earning.earning_id),
                        f"dangling milestone reference {earning.milestone_id}",
                    ))
                    continue
                if not milestone_due(milestone, now):
                    continue
                yield self._candidate(
                    EligibilityClass.MILESTONE_AUTO_RELEASE, deal, earning, milestone,
                    f'Milestone "{milestone.name}" completed and auto-release date reached',
                )

    def _marketer_scheduled(self, stream: CandidateStream, now: datetime) -> Iterator[Candidate]:
        for page in self._escrowed_pages(stream):
            due = []
            for earning in page:
                try:
                    scheduled = earning.scheduled_release_date
                except ValueError as exc:
                    stream.skip(MalformedRow(
                        "earning", str(earning.earning_id),
                        f"invalid scheduled_release_date: {exc}",
                    ))
                    continue
                if scheduled is not None and scheduled <= now:
                    due.append(earning)
            for earning, deal in self._with_deals(stream, due):
                ok, milestone = self._milestone_for(stream, earning, deal)
                if not ok:
                    continue
                yield self._candidate(
                    EligibilityClass.MARKETER_SCHEDULED, deal, earning, milestone,
                    earning.schedule_reason or "Scheduled automatic release",
                )

    def _overdue_escrow(self, stream: CandidateStream, now: datetime) -> Iterator[Candidate]:
        created_before = now - timedelta(days=self._catalog.shortest_max_escrow_days)
        for page in self._escrowed_pages(stream, created_before=created_before):
            for earning, deal in self._with_deals(stream, page):
                policy = self._catalog.resolve_policy(deal)
                if escrow_age_days(earning.created_at, now) < policy.max_escrow_days:
                    continue
                ok, milestone = self._milestone_for(stream, earning, deal)
                if not ok:
                    continue
                yield self._candidate(
                    EligibilityClass.OVERDUE_ESCROW, deal, earning, milestone,
                    f"Maximum escrow period of {policy.max_escrow_days} days exceeded",
                )


def milestone_due(milestone: MilestoneSnapshot, now: datetime) -> bool:
    if milestone.auto_release_date is None or milestone.auto_release_date > now:
        return False
    if milestone.status == MilestoneStatus.COMPLETED:
        return True
    return milestone.status in MILESTONE_RELEASABLE and milestone.release_scheduled
