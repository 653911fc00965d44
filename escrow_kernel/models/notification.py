"""
Module: escrow_kernel.models.notification
Responsibility: ORM persistence for user-facing notifications produced by
    the release engine (one row per recipient per dispatched event).
Architecture position: Kernel > Models.  May import from db/base.py only.

Notifications are at-least-once from the dispatcher's point of view and are
never read back by the engine.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy import JSON, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from escrow_kernel.db.base import TrackedBase, UUIDString


class NotificationModel(TrackedBase):
    __tablename__ = "notifications"

    __table_args__ = (
        Index("ix_notifications_recipient", "recipient_id"),
        Index("ix_notifications_kind", "kind"),
    )

    recipient_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    recipient: Mapped[str] = mapped_column(String(200), nullable=False)
    kind: Mapped[str] = mapped_column(String(100), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    subtitle: Mapped[str] = mapped_column(Text, nullable=False, default="")
    payload: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
