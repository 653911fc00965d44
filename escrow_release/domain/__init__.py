"""Pure release domain: types, rule catalog, trigger schedules, events."""

from escrow_release.domain.rules import (
    RuleCatalog,
    escrow_age_days,
    overdue_date,
    release_date,
)
from escrow_release.domain.types import (
    CLASS_ORDER,
    Candidate,
    ClassStats,
    DealReleaseStatus,
    DealSnapshot,
    EarningReleaseState,
    EarningReleaseStatus,
    EarningSnapshot,
    EligibilityClass,
    ItemError,
    ItemOutcome,
    ItemResult,
    MilestoneSnapshot,
    PolicyKind,
    ReleasePolicy,
    RunStatus,
    RunSummary,
)

__all__ = [
    "CLASS_ORDER",
    "Candidate",
    "ClassStats",
    "DealReleaseStatus",
    "DealSnapshot",
    "EarningReleaseState",
    "EarningReleaseStatus",
    "EarningSnapshot",
    "EligibilityClass",
    "ItemError",
    "ItemOutcome",
    "ItemResult",
    "MilestoneSnapshot",
    "PolicyKind",
    "ReleasePolicy",
    "RuleCatalog",
    "RunStatus",
    "RunSummary",
    "escrow_age_days",
    "overdue_date",
    "release_date",
]
