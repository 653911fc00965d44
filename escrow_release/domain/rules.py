"""
Rule Catalog -- release policy resolution.

Contract:
    ``RuleCatalog.resolve_policy(deal)`` is PURE: no I/O, no clock, no
    mutable module state.  The catalog is built once from a frozen
    ``RuleSet`` and may be shared across worker threads.

Architecture: escrow_release/domain.  ZERO I/O.

Invariants enforced:
    - First match wins, in this order:
        1. deal disputed                          -> dispute
        2. payment_amount > high_value_threshold  -> high_value
        3. deal has at least one milestone        -> milestone
        4. otherwise                              -> standard
    - Escrow age is counted in whole days, rounded down.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal

from escrow_config.schema import PolicyRule, RuleSet
from escrow_kernel.domain.clock import as_utc
from escrow_kernel.models.deal import DealStatus
from escrow_release.domain.types import DealSnapshot, PolicyKind, ReleasePolicy


def _to_policy(kind: PolicyKind, rule: PolicyRule) -> ReleasePolicy:
    return ReleasePolicy(
        kind=kind,
        grace_period_days=rule.grace_period_days,
        max_escrow_days=rule.max_escrow_days,
        requires_approval=rule.requires_approval,
    )


class RuleCatalog:
    """Maps a deal snapshot to the release policy that governs it."""

    def __init__(self, rules: RuleSet):
        self._threshold = rules.high_value_threshold
        self._dispute = _to_policy(PolicyKind.DISPUTE, rules.dispute)
        self._high_value = _to_policy(PolicyKind.HIGH_VALUE, rules.high_value)
        self._milestone = _to_policy(PolicyKind.MILESTONE, rules.milestone)
        self._standard = _to_policy(PolicyKind.STANDARD, rules.standard)

    @property
    def high_value_threshold(self) -> Decimal:
        return self._threshold

    def policy(self, kind: PolicyKind) -> ReleasePolicy:
        return {
            PolicyKind.DISPUTE: self._dispute,
            PolicyKind.HIGH_VALUE: self._high_value,
            PolicyKind.MILESTONE: self._milestone,
            PolicyKind.STANDARD: self._standard,
        }[kind]

    def resolve_policy(self, deal: DealSnapshot) -> ReleasePolicy:
        if deal.status == DealStatus.DISPUTED:
            return self._dispute
        if deal.payment_amount > self._threshold:
            return self._high_value
        if deal.has_milestones:
            return self._milestone
        return self._standard

    @property
    def shortest_grace_days(self) -> int:
        return min(
            p.grace_period_days
            for p in (self._dispute, self._high_value, self._milestone, self._standard)
        )

    @property
    def shortest_max_escrow_days(self) -> int:
        return min(
            p.max_escrow_days
            for p in (self._dispute, self._high_value, self._milestone, self._standard)
        )


def release_date(completed_at: datetime, policy: ReleasePolicy) -> datetime:
    """Earliest moment a completed deal's escrow may release."""
    return as_utc(completed_at) + timedelta(days=policy.grace_period_days)


def overdue_date(created_at: datetime, policy: ReleasePolicy) -> datetime:
    """Moment an Earning becomes overdue under ``policy``."""
    return as_utc(created_at) + timedelta(days=policy.max_escrow_days)


def escrow_age_days(created_at: datetime, now: datetime) -> int:
    """Whole days an Earning has been escrowed (floor, never negative)."""
    delta = as_utc(now) - as_utc(created_at)
    return max(delta.days, 0)
