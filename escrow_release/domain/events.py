"""
Release domain events and their notification rendering.

Services publish these frozen events to the NotificationDispatcher; the
dispatcher renders each one to zero or more ``RenderedNotification``
values on its own thread.  Rendering is pure.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Union
from uuid import UUID

from escrow_kernel.models.earning import ReleaseType


class NotificationKind(str, Enum):
    PAYMENT_AUTO_RELEASED = "payment_auto_released"
    MILESTONE_AUTO_RELEASED = "milestone_auto_released"
    SCHEDULED_RELEASE_COMPLETED = "scheduled_release_completed"
    OVERDUE_RELEASE_COMPLETED = "overdue_release_completed"
    MANUAL_RELEASE_COMPLETED = "manual_release_completed"
    DEAL_COMPLETED = "deal_completed"
    RELEASE_APPROVAL_REQUIRED = "release_approval_required"
    PAYMENT_RELEASE_SCHEDULED = "payment_release_scheduled"
    ADMIN_ERROR_ALERT = "admin_error_alert"
    CRITICAL_ERROR_ALERT = "critical_error_alert"
    HIGH_VALUE_RELEASE_REPORT = "high_value_release_report"


_KIND_BY_RELEASE_TYPE: dict[ReleaseType, NotificationKind] = {
    ReleaseType.AUTOMATIC_COMPLETION: NotificationKind.PAYMENT_AUTO_RELEASED,
    ReleaseType.AUTOMATIC_MILESTONE: NotificationKind.MILESTONE_AUTO_RELEASED,
    ReleaseType.SCHEDULED: NotificationKind.SCHEDULED_RELEASE_COMPLETED,
    ReleaseType.OVERDUE_ESCROW: NotificationKind.OVERDUE_RELEASE_COMPLETED,
    ReleaseType.MANUAL: NotificationKind.MANUAL_RELEASE_COMPLETED,
}


# =============================================================================
# Events
# =============================================================================


@dataclass(frozen=True)
class ReleaseCompleted:
    earning_id: UUID
    deal_id: UUID
    deal_number: str
    marketer_id: UUID
    creator_id: UUID
    amount: Decimal
    currency: str
    release_type: ReleaseType
    release_reason: str
    milestone_name: str | None = None
    days_escrowed: int = 0


@dataclass(frozen=True)
class ApprovalRequired:
    earning_id: UUID
    deal_id: UUID
    deal_number: str
    marketer_id: UUID
    amount: Decimal
    currency: str
    policy_kind: str
    release_reason: str


@dataclass(frozen=True)
class DealCompleted:
    deal_id: UUID
    deal_number: str
    deal_name: str
    marketer_id: UUID
    creator_id: UUID


@dataclass(frozen=True)
class ReleaseScheduled:
    deal_id: UUID
    deal_number: str
    marketer_id: UUID
    creator_id: UUID
    release_date: datetime
    amount: Decimal
    currency: str
    earning_count: int
    reason: str | None = None


class AlertKind(str, Enum):
    ADMIN_ERROR = "admin_error_alert"
    CRITICAL_ERROR = "critical_error_alert"
    HIGH_VALUE_REPORT = "high_value_release_report"


@dataclass(frozen=True)
class RunAlert:
    """Operational alert addressed to the configured admin recipients."""

    kind: AlertKind
    run_id: UUID
    trigger: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)


ReleaseEvent = Union[
    ReleaseCompleted, ApprovalRequired, DealCompleted, ReleaseScheduled, RunAlert,
]


# =============================================================================
# Rendering
# =============================================================================


@dataclass(frozen=True)
class RenderedNotification:
    """``notify(kind, recipients, payload)`` in value form."""

    kind: NotificationKind
    recipients: tuple[str, ...]
    title: str
    subtitle: str
    payload: dict[str, Any] = field(default_factory=dict)


def _money(amount: Decimal) -> str:
    return f"${amount:,.2f}"


def _release_subtitles(event: ReleaseCompleted) -> tuple[str, str]:
    """(creator subtitle, marketer subtitle)"""
    money = _money(event.amount)
    if event.release_type == ReleaseType.AUTOMATIC_MILESTONE:
        text = (
            f'Milestone "{event.milestone_name}" payment of {money} '
            "has been automatically released"
        )
        return text, text
    if event.release_type == ReleaseType.SCHEDULED:
        return (
            f"Your scheduled payment of {money} has been released",
            f"Your scheduled payment of {money} has been released to the creator",
        )
    if event.release_type == ReleaseType.OVERDUE_ESCROW:
        text = (
            f"Payment of {money} held in escrow for {event.days_escrowed} days "
            "has been automatically released"
        )
        return text, text
    if event.release_type == ReleaseType.MANUAL:
        return (
            f"{money} has been released for deal {event.deal_number}",
            f"{money} has been released to the creator for deal {event.deal_number}",
        )
    return (
        f"{money} has been automatically released for deal {event.deal_number}",
        f"{money} has been automatically released to the creator "
        f"for deal {event.deal_number}",
    )


_RELEASE_TITLES: dict[NotificationKind, str] = {
    NotificationKind.PAYMENT_AUTO_RELEASED: "Payment Automatically Released",
    NotificationKind.MILESTONE_AUTO_RELEASED: "Milestone Payment Released",
    NotificationKind.SCHEDULED_RELEASE_COMPLETED: "Scheduled Payment Released",
    NotificationKind.OVERDUE_RELEASE_COMPLETED: "Overdue Payment Released",
    NotificationKind.MANUAL_RELEASE_COMPLETED: "Payment Released",
}

_ALERT_TITLES: dict[AlertKind, str] = {
    AlertKind.ADMIN_ERROR: "High Error Count in Payment Releases",
    AlertKind.CRITICAL_ERROR: "Critical Error in Payment Release System",
    AlertKind.HIGH_VALUE_REPORT: "High-Value Release Report",
}


def render(
    event: ReleaseEvent,
    admin_recipients: tuple[str, ...] = (),
) -> list[RenderedNotification]:
    """Render a domain event into per-audience notifications."""
    if isinstance(event, ReleaseCompleted):
        kind = _KIND_BY_RELEASE_TYPE[event.release_type]
        creator_text, marketer_text = _release_subtitles(event)
        payload = {
            "deal_id": str(event.deal_id),
            "deal_number": event.deal_number,
            "earning_id": str(event.earning_id),
            "amount": str(event.amount),
            "currency": event.currency,
            "release_type": event.release_type.value,
            "release_reason": event.release_reason,
        }
        return [
            RenderedNotification(
                kind, (str(event.creator_id),), _RELEASE_TITLES[kind],
                creator_text, payload,
            ),
            RenderedNotification(
                kind, (str(event.marketer_id),), _RELEASE_TITLES[kind],
                marketer_text, payload,
            ),
        ]

    if isinstance(event, DealCompleted):
        text = (
            f'Deal "{event.deal_name}" has been completed. '
            "All payments have been released."
        )
        return [
            RenderedNotification(
                NotificationKind.DEAL_COMPLETED,
                (str(event.creator_id), str(event.marketer_id)),
                "Deal Completed",
                text,
                {"deal_id": str(event.deal_id), "deal_number": event.deal_number},
            )
        ]

    if isinstance(event, ApprovalRequired):
        payload = {
            "deal_id": str(event.deal_id),
            "deal_number": event.deal_number,
            "earning_id": str(event.earning_id),
            "amount": str(event.amount),
            "currency": event.currency,
            "policy": event.policy_kind,
            "release_reason": event.release_reason,
        }
        recipients = tuple(admin_recipients) + (str(event.marketer_id),)
        return [
            RenderedNotification(
                NotificationKind.RELEASE_APPROVAL_REQUIRED,
                recipients,
                "Payment Release Requires Approval",
                f"{_money(event.amount)} for deal {event.deal_number} "
                "is awaiting approval before release",
                payload,
            )
        ]

    if isinstance(event, ReleaseScheduled):
        text = (
            f"{_money(event.amount)} is scheduled for automatic release on "
            f"{event.release_date.date().isoformat()}"
        )
        return [
            RenderedNotification(
                NotificationKind.PAYMENT_RELEASE_SCHEDULED,
                (str(event.creator_id), str(event.marketer_id)),
                "Payment Release Scheduled",
                text,
                {
                    "deal_id": str(event.deal_id),
                    "deal_number": event.deal_number,
                    "release_date": event.release_date.isoformat(),
                    "amount": str(event.amount),
                    "earning_count": event.earning_count,
                    "reason": event.reason,
                },
            )
        ]

    if isinstance(event, RunAlert):
        if not admin_recipients:
            return []
        return [
            RenderedNotification(
                NotificationKind(event.kind.value),
                tuple(admin_recipients),
                _ALERT_TITLES[event.kind],
                event.message,
                {"run_id": str(event.run_id), "trigger": event.trigger, **event.details},
            )
        ]

    raise TypeError(f"Unknown release event: {type(event).__name__}")
