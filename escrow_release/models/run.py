"""
ORM model for release run persistence.

Contract:
    ``ReleaseRunModel`` persists one row per ``run_once`` call: a RUNNING row
    when the run starts, overwritten with the final RunSummary when it ends
    (including failed and cancelled runs).  ``to_dto()`` / ``from_dto()``
    round-trip the summary.

Architecture: escrow_release/models.  Imports from escrow_kernel.db.base only.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from escrow_kernel.db.base import TrackedBase

if TYPE_CHECKING:
    from escrow_release.domain.types import RunSummary


class ReleaseRunModel(TrackedBase):
    """Persistent record of a release run."""

    __tablename__ = "release_runs"

    __table_args__ = (
        Index("ix_release_runs_started_at", "started_at"),
        Index("ix_release_runs_status", "status"),
    )

    trigger: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    total_scanned: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_released: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    released_amount: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    error_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    cancelled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    config_checksum: Mapped[str | None] = mapped_column(String(64), nullable=True)
    class_stats: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    errors: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)
    awaiting_approval: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    high_value_releases: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    finalized_deals: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    fatal_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    def apply_summary(self, summary: RunSummary) -> None:
        """Overwrite this row with the state of ``summary``."""
        data = summary.to_dict()
        self.trigger = summary.trigger
        self.status = summary.status.value
        self.started_at = summary.started_at
        self.completed_at = summary.completed_at
        self.total_scanned = summary.total_scanned
        self.total_released = summary.total_released
        self.released_amount = summary.released_amount
        self.error_count = summary.error_count
        self.cancelled = summary.cancelled
        self.config_checksum = summary.config_checksum
        self.class_stats = data["classes"]
        self.errors = data["errors"]
        self.awaiting_approval = data["awaiting_approval"]
        self.high_value_releases = data["high_value_releases"]
        self.finalized_deals = data["finalized_deals"]
        self.fatal_error = summary.fatal_error

    @classmethod
    def from_dto(cls, summary: RunSummary) -> ReleaseRunModel:
        row = cls(id=summary.run_id)
        row.apply_summary(summary)
        return row

    def to_dto(self) -> RunSummary:
        from escrow_kernel.domain.clock import as_utc
        from escrow_release.domain.types import (
            FINALIZATION_SCOPE,
            ClassStats,
            EligibilityClass,
            ItemError,
            RunStatus,
            RunSummary,
        )

        classes = tuple(
            ClassStats(
                eligibility_class=EligibilityClass(name),
                scanned=stats["scanned"],
                released=stats["released"],
                awaiting_approval=stats["awaiting_approval"],
                already_claimed=stats["already_claimed"],
                errored=stats["errored"],
                skipped_malformed=stats.get("skipped_malformed", 0),
                released_amount=Decimal(stats["released_amount"]),
            )
            for name, stats in (self.class_stats or {}).items()
        )
        errors = tuple(
            ItemError(
                eligibility_class=(
                    None if e["class"] == FINALIZATION_SCOPE else EligibilityClass(e["class"])
                ),
                earning_id=UUID(e["earning_id"]) if e.get("earning_id") else None,
                deal_id=UUID(e["deal_id"]) if e.get("deal_id") else None,
                code=e["code"],
                message=e["message"],
            )
            for e in (self.errors or [])
        )
        return RunSummary(
            run_id=self.id,
            trigger=self.trigger,
            status=RunStatus(self.status),
            started_at=as_utc(self.started_at),
            completed_at=as_utc(self.completed_at),
            classes=classes,
            errors=errors,
            awaiting_approval=tuple(UUID(v) for v in self.awaiting_approval or []),
            high_value_releases=tuple(UUID(v) for v in self.high_value_releases or []),
            finalized_deals=tuple(UUID(v) for v in self.finalized_deals or []),
            config_checksum=self.config_checksum,
            cancelled=self.cancelled,
            fatal_error=self.fatal_error,
        )
