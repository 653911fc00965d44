"""
Module: escrow_kernel.models.earning
Responsibility: ORM persistence for Earnings, the creator ledger entries that
    hold escrowed funds until the release engine transitions them.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - ``escrowed -> completed`` happens exactly once per Earning.  The only
      code path that performs it is ``ReleaseStore.claim_earning``, a
      single conditional UPDATE guarded by ``status = 'escrowed'``.
    - ``version`` increases on every write so metadata edits (approval,
      scheduling) can detect concurrent modification.

Failure modes:
    - OptimisticLockError (raised by callers) when a versioned metadata
      update matches zero rows.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, BigInteger, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from escrow_kernel.db.base import TrackedBase, UUIDString


class EarningStatus(str, Enum):
    """Earning lifecycle.

    State machine:
        ESCROWED -> COMPLETED           (claim)
        COMPLETED -> RELEASE_FAILED     (payout hook failed after claim)
    """

    ESCROWED = "escrowed"
    COMPLETED = "completed"
    RELEASE_FAILED = "release_failed"


class ReleaseType(str, Enum):
    """How an Earning left escrow."""

    AUTOMATIC_COMPLETION = "automatic_completion"
    AUTOMATIC_MILESTONE = "automatic_milestone"
    SCHEDULED = "scheduled"
    OVERDUE_ESCROW = "overdue_escrow"
    MANUAL = "manual"


# Keys used inside Earning.meta
META_MILESTONE_ID = "milestone_id"
META_SCHEDULED_RELEASE_DATE = "scheduled_release_date"
META_SCHEDULE_REASON = "schedule_reason"
META_SCHEDULED_BY = "scheduled_by"
META_APPROVED_BY = "approved_by"
META_APPROVED_AT = "approved_at"
META_APPROVAL_NOTE = "approval_note"
META_APPROVAL_REQUESTED_AT = "approval_requested_at"
META_RELEASED_BY = "released_by"
META_RELEASE_NOTE = "release_note"


class EarningModel(TrackedBase):
    """Creator ledger entry for one funded unit of escrow."""

    __tablename__ = "earnings"

    __table_args__ = (
        Index("ix_earnings_status", "status"),
        Index("ix_earnings_deal_status", "deal_id", "status"),
    )

    deal_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("deals.id"), nullable=False,
    )
    creator_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    released_at: Mapped[datetime | None] = mapped_column(nullable=True)
    release_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    release_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    # "metadata" is reserved on declarative classes
    meta: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)
    version: Mapped[int] = mapped_column(BigInteger, nullable=False, default=1)
