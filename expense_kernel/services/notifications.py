"""
Notification delivery (``expense_kernel.services.notifications``).

Responsibility:
    Implementations of the ``NotificationSink`` contract and the single
    helper (``deliver``) the controller uses to emit after a transition has
    been flushed.  Delivery is fire-and-forget: a failing sink is logged
    and swallowed, never retried, and never affects the transition.

Event types:
    expense_requires_approval, expense_approved, expense_rejected,
    expense_step_approved, expense_step_rejected, expense_auto_approved,
    expense_cancelled, expense_escalated, approval_overdue.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from expense_kernel.domain.clock import Clock, SystemClock
from expense_kernel.domain.collaborators import NotificationSink
from expense_kernel.logging_config import get_logger
from expense_kernel.models.notification import NotificationModel
from expense_kernel.services.base import BaseService

logger = get_logger("services.notifications")

EXPENSE_REQUIRES_APPROVAL = "expense_requires_approval"
EXPENSE_APPROVED = "expense_approved"
EXPENSE_REJECTED = "expense_rejected"
EXPENSE_STEP_APPROVED = "expense_step_approved"
EXPENSE_STEP_REJECTED = "expense_step_rejected"
EXPENSE_AUTO_APPROVED = "expense_auto_approved"
EXPENSE_CANCELLED = "expense_cancelled"
EXPENSE_ESCALATED = "expense_escalated"
APPROVAL_OVERDUE = "approval_overdue"

# event type -> (title, message template, priority)
_TEMPLATES: dict[str, tuple[str, str, str]] = {
    EXPENSE_REQUIRES_APPROVAL: (
        "Expense Requires Your Approval",
        "An expense of {amount} {currency} requires your approval.",
        "high",
    ),
    EXPENSE_APPROVED: (
        "Expense Approved",
        "Your expense of {amount} {currency} has been approved.",
        "medium",
    ),
    EXPENSE_REJECTED: (
        "Expense Rejected",
        "Your expense of {amount} {currency} has been rejected. {reason}",
        "medium",
    ),
    EXPENSE_STEP_APPROVED: (
        "Approval Step Completed",
        "An approver approved your expense of {amount} {currency}.",
        "low",
    ),
    EXPENSE_STEP_REJECTED: (
        "Approval Step Rejected",
        "An approver rejected your expense of {amount} {currency}. {reason}",
        "low",
    ),
    EXPENSE_AUTO_APPROVED: (
        "Expense Auto-Approved",
        "Your expense of {amount} {currency} was approved automatically.",
        "low",
    ),
    EXPENSE_CANCELLED: (
        "Expense Cancelled",
        "An expense of {amount} {currency} awaiting your approval was cancelled.",
        "low",
    ),
    EXPENSE_ESCALATED: (
        "Approval Escalated",
        "An overdue approval of {amount} {currency} was escalated.",
        "medium",
    ),
    APPROVAL_OVERDUE: (
        "Approval Overdue",
        "An expense of {amount} {currency} is still waiting for your approval.",
        "urgent",
    ),
}


def render(event_type: str, payload: dict[str, Any]) -> tuple[str, str, str]:
    """Return (title, message, priority) for an event."""
    title, template, priority = _TEMPLATES.get(
        event_type, (event_type.replace("_", " ").title(), "{summary}", "medium"),
    )
    reason = payload.get("reason")
    message = template.format(
        amount=payload.get("converted_amount", ""),
        currency=payload.get("base_currency", ""),
        reason=f"Reason: {reason}" if reason else "",
        summary=payload.get("summary", ""),
    ).strip()
    return title, message, priority


def deliver(
    sink: NotificationSink,
    user_id: UUID,
    event_type: str,
    payload: dict[str, Any],
) -> bool:
    """Emit one notification; failures are logged and swallowed."""
    try:
        sink.emit(user_id, event_type, payload)
    except Exception:
        logger.warning(
            "notification_delivery_failed",
            extra={"recipient_id": str(user_id), "event_type": event_type},
            exc_info=True,
        )
        return False
    logger.debug(
        "notification_delivered",
        extra={"recipient_id": str(user_id), "event_type": event_type},
    )
    return True


@dataclass(frozen=True)
class SentNotification:
    user_id: UUID
    event_type: str
    payload: dict[str, Any]


class InMemoryNotificationSink:
    """Collects notifications in a list (tests, dry runs)."""

    def __init__(self) -> None:
        self.sent: list[SentNotification] = []

    def emit(self, user_id: UUID, event_type: str, payload: dict[str, Any]) -> None:
        self.sent.append(SentNotification(user_id, event_type, dict(payload)))

    def for_user(self, user_id: UUID) -> list[SentNotification]:
        return [n for n in self.sent if n.user_id == user_id]

    def of_type(self, event_type: str) -> list[SentNotification]:
        return [n for n in self.sent if n.event_type == event_type]

    def clear(self) -> None:
        self.sent.clear()


class SqlNotificationSink(BaseService):
    """Writes notifications to the ``notifications`` table.

    Each write runs in its own savepoint so a failed insert cannot poison
    the caller's transaction.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session)
        self._clock = clock or SystemClock()

    def emit(self, user_id: UUID, event_type: str, payload: dict[str, Any]) -> None:
        title, message, priority = render(event_type, payload)
        expense_id = payload.get("expense_id")
        with self.session.begin_nested():
            self.session.add(NotificationModel(
                user_id=user_id,
                event_type=event_type,
                title=title,
                message=message,
                priority=priority,
                related_expense_id=UUID(str(expense_id)) if expense_id else None,
                payload={k: str(v) if v is not None else None for k, v in payload.items()},
                created_at=self._clock.now(),
            ))
            self.session.flush()
