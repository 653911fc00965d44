"""
escrow_release.domain.types -- Pure frozen dataclasses for the release engine.

ZERO I/O.  Frozen dataclasses with enum status fields and tuples for
immutable collections.  Snapshots are read from the store once per page and
never mutated; every decision in a run is made against them.

Invariants enforced:
    - All DTOs are frozen (immutable) and safe to share between worker threads.
    - ``ReleasePolicy`` is derived from a ``DealSnapshot`` and never persisted.
    - A lost claim (``ItemOutcome.ALREADY_CLAIMED``) and an approval hold
      (``ItemOutcome.AWAITING_APPROVAL``) are outcomes, not errors.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from escrow_kernel.domain.clock import as_utc
from escrow_kernel.models.deal import MILESTONE_TERMINAL, DealStatus, MilestoneStatus
from escrow_kernel.models.earning import (
    META_APPROVAL_REQUESTED_AT,
    META_APPROVED_AT,
    META_MILESTONE_ID,
    META_SCHEDULE_REASON,
    META_SCHEDULED_RELEASE_DATE,
    EarningStatus,
    ReleaseType,
)

# =============================================================================
# Enums
# =============================================================================


class EligibilityClass(str, Enum):
    """Independent release categories.  An Earning may qualify for several."""

    COMPLETED_GRACE = "completed_grace"
    MILESTONE_AUTO_RELEASE = "milestone_auto_release"
    MARKETER_SCHEDULED = "marketer_scheduled"
    OVERDUE_ESCROW = "overdue_escrow"
    # operator-triggered release; never scanned, so not in CLASS_ORDER
    MANUAL = "manual"


# Processing order within one run: most specific first, overdue safety net last
CLASS_ORDER: tuple[EligibilityClass, ...] = (
    EligibilityClass.COMPLETED_GRACE,
    EligibilityClass.MILESTONE_AUTO_RELEASE,
    EligibilityClass.MARKETER_SCHEDULED,
    EligibilityClass.OVERDUE_ESCROW,
)

# Error scope label for failures outside any eligibility class
FINALIZATION_SCOPE = "finalization"

RELEASE_TYPE_BY_CLASS: dict[EligibilityClass, ReleaseType] = {
    EligibilityClass.COMPLETED_GRACE: ReleaseType.AUTOMATIC_COMPLETION,
    EligibilityClass.MILESTONE_AUTO_RELEASE: ReleaseType.AUTOMATIC_MILESTONE,
    EligibilityClass.MARKETER_SCHEDULED: ReleaseType.SCHEDULED,
    EligibilityClass.OVERDUE_ESCROW: ReleaseType.OVERDUE_ESCROW,
    EligibilityClass.MANUAL: ReleaseType.MANUAL,
}


class PolicyKind(str, Enum):
    DISPUTE = "dispute"
    HIGH_VALUE = "high_value"
    MILESTONE = "milestone"
    STANDARD = "standard"


class ItemOutcome(str, Enum):
    """Per-candidate result of the transactor."""

    RELEASED = "released"
    AWAITING_APPROVAL = "awaiting_approval"
    ALREADY_CLAIMED = "already_claimed"
    FAILED = "failed"
    # operator release refused before any claim
    NOT_ELIGIBLE = "not_eligible"


class RunStatus(str, Enum):
    """Run-level lifecycle status."""

    RUNNING = "running"
    COMPLETED = "completed"  # No item errors
    PARTIALLY_COMPLETED = "partially_completed"  # Some items failed
    FAILED = "failed"  # Run-scoped failure
    CANCELLED = "cancelled"  # Stopped by cancel event or deadline


# =============================================================================
# Policy
# =============================================================================


@dataclass(frozen=True)
class ReleasePolicy:
    """Release rule applying to one deal."""

    kind: PolicyKind
    grace_period_days: int
    max_escrow_days: int
    requires_approval: bool


# =============================================================================
# Snapshots
# =============================================================================


@dataclass(frozen=True)
class MilestoneSnapshot:
    milestone_id: UUID
    deal_id: UUID
    name: str
    sequence: int
    status: MilestoneStatus
    amount: Decimal | None = None
    auto_release_date: datetime | None = None
    release_scheduled: bool = False
    dispute_flag: bool = False
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in MILESTONE_TERMINAL


@dataclass(frozen=True)
class DealSnapshot:
    """Immutable view of a Deal and its milestones."""

    deal_id: UUID
    deal_number: str
    deal_name: str
    marketer_id: UUID
    creator_id: UUID
    status: DealStatus
    payment_amount: Decimal
    currency: str = "USD"
    completed_at: datetime | None = None
    milestones: tuple[MilestoneSnapshot, ...] = ()

    @property
    def has_milestones(self) -> bool:
        return len(self.milestones) > 0

    def milestone(self, milestone_id: UUID) -> MilestoneSnapshot | None:
        for m in self.milestones:
            if m.milestone_id == milestone_id:
                return m
        return None


@dataclass(frozen=True)
class EarningSnapshot:
    """Immutable view of an Earning.

    The metadata accessors raise ``ValueError`` for unparseable values so
    the scanner can skip the row as malformed.
    """

    earning_id: UUID
    deal_id: UUID
    amount: Decimal
    status: EarningStatus
    created_at: datetime
    creator_id: UUID | None = None
    currency: str = "USD"
    released_at: datetime | None = None
    release_type: str | None = None
    transaction_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    version: int = 1

    @property
    def milestone_id(self) -> UUID | None:
        raw = self.metadata.get(META_MILESTONE_ID)
        if raw in (None, ""):
            return None
        return UUID(str(raw))

    @property
    def scheduled_release_date(self) -> datetime | None:
        return parse_meta_datetime(self.metadata.get(META_SCHEDULED_RELEASE_DATE))

    @property
    def schedule_reason(self) -> str | None:
        return self.metadata.get(META_SCHEDULE_REASON) or None

    @property
    def is_approved(self) -> bool:
        return bool(self.metadata.get(META_APPROVED_AT))

    @property
    def approval_requested(self) -> bool:
        return bool(self.metadata.get(META_APPROVAL_REQUESTED_AT))


def parse_meta_datetime(raw: Any) -> datetime | None:
    """Parse an ISO-8601 metadata timestamp to aware UTC.

    Raises:
        ValueError: If ``raw`` is present but not a valid timestamp.
    """
    if raw in (None, ""):
        return None
    if isinstance(raw, datetime):
        return as_utc(raw)
    if not isinstance(raw, str):
        raise ValueError(f"Expected ISO timestamp, got {type(raw).__name__}")
    text = raw.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(text))


# =============================================================================
# Candidates and results
# =============================================================================


@dataclass(frozen=True)
class Candidate:
    """One (deal, milestone?, earning) triple eligible under one class."""

    eligibility_class: EligibilityClass
    deal: DealSnapshot
    earning: EarningSnapshot
    policy: ReleasePolicy
    release_type: ReleaseType
    release_reason: str
    milestone: MilestoneSnapshot | None = None

    @property
    def requires_approval(self) -> bool:
        if self.policy.requires_approval:
            return True
        return self.milestone is not None and self.milestone.dispute_flag

    @property
    def is_high_value(self) -> bool:
        return self.policy.kind == PolicyKind.HIGH_VALUE


@dataclass(frozen=True)
class ItemResult:
    """Immutable result of processing a single candidate."""

    earning_id: UUID
    deal_id: UUID
    eligibility_class: EligibilityClass
    outcome: ItemOutcome
    amount: Decimal = Decimal("0")
    release_type: ReleaseType | None = None
    high_value: bool = False
    error_code: str | None = None
    error_message: str | None = None
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "earning_id": str(self.earning_id),
            "deal_id": str(self.deal_id),
            "class": self.eligibility_class.value,
            "outcome": self.outcome.value,
            "amount": str(self.amount),
            "release_type": self.release_type.value if self.release_type else None,
            "error_code": self.error_code,
            "error_message": self.error_message,
        }


@dataclass(frozen=True)
class ItemError:
    """An item-scoped failure recorded in the RunSummary.

    ``eligibility_class`` is None for failures raised while finalizing deals.
    """

    eligibility_class: EligibilityClass | None
    earning_id: UUID | None
    deal_id: UUID | None
    code: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "class": (
                self.eligibility_class.value if self.eligibility_class else FINALIZATION_SCOPE
            ),
            "earning_id": str(self.earning_id) if self.earning_id else None,
            "deal_id": str(self.deal_id) if self.deal_id else None,
            "code": self.code,
            "message": self.message,
        }


@dataclass(frozen=True)
class ClassStats:
    """Counters for one eligibility class within a run."""

    eligibility_class: EligibilityClass
    scanned: int = 0
    released: int = 0
    awaiting_approval: int = 0
    already_claimed: int = 0
    errored: int = 0
    skipped_malformed: int = 0
    released_amount: Decimal = Decimal("0")

    @classmethod
    def from_results(
        cls,
        eligibility_class: EligibilityClass,
        results: list[ItemResult] | tuple[ItemResult, ...],
        skipped_malformed: int = 0,
    ) -> ClassStats:
        released = [r for r in results if r.outcome == ItemOutcome.RELEASED]
        return cls(
            eligibility_class=eligibility_class,
            scanned=len(results),
            released=len(released),
            awaiting_approval=sum(
                1 for r in results if r.outcome == ItemOutcome.AWAITING_APPROVAL
            ),
            already_claimed=sum(
                1 for r in results if r.outcome == ItemOutcome.ALREADY_CLAIMED
            ),
            errored=sum(1 for r in results if r.outcome == ItemOutcome.FAILED),
            skipped_malformed=skipped_malformed,
            released_amount=sum((r.amount for r in released), Decimal("0")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "scanned": self.scanned,
            "released": self.released,
            "awaiting_approval": self.awaiting_approval,
            "already_claimed": self.already_claimed,
            "errored": self.errored,
            "skipped_malformed": self.skipped_malformed,
            "released_amount": str(self.released_amount),
        }


@dataclass(frozen=True)
class RunSummary:
    """Immutable result of one release run.

    Returned by ``ReleaseEngine.run_once()`` and persisted as a
    ``release_runs`` row.  The CLI prints ``to_dict()`` verbatim.
    """

    run_id: UUID
    trigger: str
    status: RunStatus
    started_at: datetime
    completed_at: datetime | None = None
    classes: tuple[ClassStats, ...] = ()
    errors: tuple[ItemError, ...] = ()
    awaiting_approval: tuple[UUID, ...] = ()
    high_value_releases: tuple[UUID, ...] = ()
    finalized_deals: tuple[UUID, ...] = ()
    config_checksum: str | None = None
    cancelled: bool = False
    fatal_error: str | None = None

    @property
    def total_scanned(self) -> int:
        return sum(c.scanned for c in self.classes)

    @property
    def total_released(self) -> int:
        return sum(c.released for c in self.classes)

    @property
    def released_amount(self) -> Decimal:
        return sum((c.released_amount for c in self.classes), Decimal("0"))

    @property
    def error_count(self) -> int:
        return len(self.errors)

    @property
    def duration_ms(self) -> int:
        if self.completed_at is None:
            return 0
        return int((self.completed_at - self.started_at).total_seconds() * 1000)

    def stats_for(self, eligibility_class: EligibilityClass) -> ClassStats | None:
        for stats in self.classes:
            if stats.eligibility_class == eligibility_class:
                return stats
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": str(self.run_id),
            "trigger": self.trigger,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "total_scanned": self.total_scanned,
            "total_released": self.total_released,
            "released_amount": str(self.released_amount),
            "classes": {
                c.eligibility_class.value: c.to_dict() for c in self.classes
            },
            "errors": [e.to_dict() for e in self.errors],
            "awaiting_approval": [str(e) for e in self.awaiting_approval],
            "high_value_releases": [str(e) for e in self.high_value_releases],
            "finalized_deals": [str(d) for d in self.finalized_deals],
            "config_checksum": self.config_checksum,
            "cancelled": self.cancelled,
            "fatal_error": self.fatal_error,
        }


# =============================================================================
# Operator views
# =============================================================================


class EarningReleaseState(str, Enum):
    """Operator-facing release state of a single Earning."""

    SCHEDULED = "scheduled"
    GRACE_PERIOD = "grace_period"
    ELIGIBLE = "eligible"
    OVERDUE = "overdue"
    AWAITING_APPROVAL = "awaiting_approval"
    PENDING = "pending"
    RELEASED = "released"
    RELEASE_FAILED = "release_failed"


@dataclass(frozen=True)
class EarningReleaseStatus:
    earning_id: UUID
    amount: Decimal
    state: EarningReleaseState
    next_release_date: datetime | None = None
    days_since_escrowed: int = 0
    released_at: datetime | None = None
    release_type: str | None = None


@dataclass(frozen=True)
class DealReleaseStatus:
    """Release status of a deal as reported to operators."""

    deal_id: UUID
    deal_number: str
    deal_status: DealStatus
    policy: ReleasePolicy
    escrowed_amount: Decimal
    released_amount: Decimal
    earnings: tuple[EarningReleaseStatus, ...] = ()
    next_release_date: datetime | None = None
    days_since_escrowed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "deal_id": str(self.deal_id),
            "deal_number": self.deal_number,
            "deal_status": self.deal_status.value,
            "policy": {
                "kind": self.policy.kind.value,
                "grace_period_days": self.policy.grace_period_days,
                "max_escrow_days": self.policy.max_escrow_days,
                "requires_approval": self.policy.requires_approval,
            },
            "escrowed_amount": str(self.escrowed_amount),
            "released_amount": str(self.released_amount),
            "next_release_date": (
                self.next_release_date.isoformat() if self.next_release_date else None
            ),
            "days_since_escrowed": self.days_since_escrowed,
            "earnings": [
                {
                    "earning_id": str(e.earning_id),
                    "amount": str(e.amount),
                    "state": e.state.value,
                    "next_release_date": (
                        e.next_release_date.isoformat() if e.next_release_date else None
                    ),
                    "days_since_escrowed": e.days_since_escrowed,
                    "released_at": e.released_at.isoformat() if e.released_at else None,
                    "release_type": e.release_type,
                }
                for e in self.earnings
            ],
        }
