"""
Module: escrow_kernel.models.deal
Responsibility: ORM persistence for the Deal aggregate: the deal row, its
    milestones, and the payment-info transaction projection.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Milestone status transitions are monotonic.  The release engine only
      ever moves a milestone ``funded|approved -> completed`` (see
      MILESTONE_RELEASABLE) and never out of a terminal status.
    - ``status = completed`` on a Deal is only written by the finalizer
      after every milestone is terminal.

Failure modes:
    - IntegrityError on a second projection row for the same earning
      (uq_deal_transaction_earning).

Audit relevance:
    DealTransaction rows mirror each release on the deal's payment-info
    projection (status, released_at, release_type).
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from escrow_kernel.db.base import TrackedBase, UUIDString


class DealStatus(str, Enum):
    """Deal lifecycle status."""

    ACTIVE = "active"
    ACCEPTED = "accepted"
    DISPUTED = "disputed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class MilestoneStatus(str, Enum):
    """Milestone lifecycle status."""

    PENDING = "pending"
    FUNDED = "funded"
    APPROVED = "approved"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


MILESTONE_TERMINAL: frozenset[MilestoneStatus] = frozenset({
    MilestoneStatus.COMPLETED, MilestoneStatus.CANCELLED,
})

# Statuses a release may move to COMPLETED
MILESTONE_RELEASABLE: frozenset[MilestoneStatus] = frozenset({
    MilestoneStatus.FUNDED, MilestoneStatus.APPROVED,
})

# Statuses the finalizer may promote to COMPLETED
DEAL_FINALIZABLE: frozenset[DealStatus] = frozenset({
    DealStatus.ACTIVE, DealStatus.ACCEPTED,
})


class DealModel(TrackedBase):
    """Deal aggregate root."""

    __tablename__ = "deals"

    __table_args__ = (
        Index("ix_deals_status", "status"),
        Index("ix_deals_status_completed_at", "status", "completed_at"),
    )

    deal_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    deal_name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    marketer_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    creator_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    payment_amount: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    milestones: Mapped[list["MilestoneModel"]] = relationship(
        "MilestoneModel",
        back_populates="deal",
        order_by="MilestoneModel.sequence",
        cascade="all, delete-orphan",
    )
    transactions: Mapped[list["DealTransactionModel"]] = relationship(
        "DealTransactionModel",
        back_populates="deal",
        cascade="all, delete-orphan",
    )


class MilestoneModel(TrackedBase):
    """Milestone embedded in a Deal (owned row)."""

    __tablename__ = "milestones"

    __table_args__ = (
        Index("ix_milestones_deal_id", "deal_id"),
        Index("ix_milestones_status_auto_release", "status", "auto_release_date"),
    )

    deal_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("deals.id"), nullable=False,
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    auto_release_date: Mapped[datetime | None] = mapped_column(nullable=True)
    release_scheduled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    dispute_flag: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    deal: Mapped[DealModel] = relationship("DealModel", back_populates="milestones")


class DealTransactionModel(TrackedBase):
    """Transaction record on a Deal's payment-info projection."""

    __tablename__ = "deal_transactions"

    __table_args__ = (
        UniqueConstraint("earning_id", name="uq_deal_transaction_earning"),
        Index("ix_deal_transactions_deal_id", "deal_id"),
    )

    deal_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("deals.id"), nullable=False,
    )
    milestone_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    earning_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    transaction_type: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="pending")
    amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(nullable=True)
    release_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    is_automatic: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    deal: Mapped[DealModel] = relationship("DealModel", back_populates="transactions")
