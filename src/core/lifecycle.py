"""
Reminder Engine — Lifecycle state machine.

The transition table is the single authority on which status changes are
legal. No I/O: the reminder service applies the resulting patch through a
status-guarded store write.

    scheduled --trigger-->  triggered
    scheduled --complete--> completed
    triggered --complete--> completed
    scheduled/triggered --cancel--> cancelled
    scheduled/triggered --acknowledge--> (same status, acknowledged_at set)
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from src.core.errors import (
    AcknowledgmentNotRequired,
    AlreadyCompleted,
    AlreadyTerminal,
    StaleState,
)
from src.data.models import Reminder, ReminderStatus


class LifecycleEvent(str, Enum):
    TRIGGER = "trigger"
    COMPLETE = "complete"
    ACKNOWLEDGE = "acknowledge"
    CANCEL = "cancel"
    UPDATE = "update"


_S = ReminderStatus

# (from status, event) -> to status
TRANSITIONS: dict[tuple[ReminderStatus, LifecycleEvent], ReminderStatus] = {
    (_S.SCHEDULED, LifecycleEvent.TRIGGER): _S.TRIGGERED,
    (_S.SCHEDULED, LifecycleEvent.COMPLETE): _S.COMPLETED,
    (_S.TRIGGERED, LifecycleEvent.COMPLETE): _S.COMPLETED,
    (_S.SCHEDULED, LifecycleEvent.ACKNOWLEDGE): _S.SCHEDULED,
    (_S.TRIGGERED, LifecycleEvent.ACKNOWLEDGE): _S.TRIGGERED,
    (_S.SCHEDULED, LifecycleEvent.CANCEL): _S.CANCELLED,
    (_S.TRIGGERED, LifecycleEvent.CANCEL): _S.CANCELLED,
    (_S.SCHEDULED, LifecycleEvent.UPDATE): _S.SCHEDULED,
    (_S.TRIGGERED, LifecycleEvent.UPDATE): _S.TRIGGERED,
}


def target_status(reminder: Reminder, event: LifecycleEvent) -> ReminderStatus:
    """Return the status `event` leads to, or raise the typed rejection."""
    if event is LifecycleEvent.COMPLETE and reminder.status is _S.COMPLETED:
        raise AlreadyCompleted(
            f"Reminder {reminder.id} is already completed",
            reminder_id=reminder.id, status=reminder.status.value,
        )
    if reminder.status.is_terminal:
        raise AlreadyTerminal(
            f"Reminder {reminder.id} is {reminder.status.value} and cannot be changed",
            reminder_id=reminder.id, status=reminder.status.value,
        )
    try:
        return TRANSITIONS[(reminder.status, event)]
    except KeyError:
        raise StaleState(
            f"Cannot {event.value} reminder {reminder.id} while it is {reminder.status.value}",
            reminder_id=reminder.id, status=reminder.status.value,
        ) from None


def transition_patch(reminder: Reminder, event: LifecycleEvent, now: datetime) -> dict[str, Any]:
    """Column patch for a lifecycle event, including its timestamp side effect."""
    to_status = target_status(reminder, event)

    if event is LifecycleEvent.TRIGGER:
        return {"status": to_status, "triggered_at": now}
    if event is LifecycleEvent.COMPLETE:
        return {"status": to_status, "completed_at": now}
    if event is LifecycleEvent.CANCEL:
        return {"status": to_status}
    if event is LifecycleEvent.ACKNOWLEDGE:
        if not reminder.action_required:
            raise AcknowledgmentNotRequired(
                f"Reminder {reminder.id} does not require acknowledgment",
                reminder_id=reminder.id, status=reminder.status.value,
            )
        if reminder.acknowledged_at is not None:
            # set exactly once; a repeat acknowledgment changes nothing
            return {}
        return {"acknowledged_at": now}
    return {}


def rejection_for(reminder_id: str, event: LifecycleEvent, actual: ReminderStatus) -> Exception:
    """Typed error for a conditional write that lost to another actor."""
    if event is LifecycleEvent.COMPLETE and actual is _S.COMPLETED:
        return AlreadyCompleted(
            f"Reminder {reminder_id} is already completed",
            reminder_id=reminder_id, status=actual.value,
        )
    if actual.is_terminal:
        return AlreadyTerminal(
            f"Reminder {reminder_id} is {actual.value} and cannot be changed",
            reminder_id=reminder_id, status=actual.value,
        )
    return StaleState(
        f"Reminder {reminder_id} changed to {actual.value} concurrently; re-read and retry",
        reminder_id=reminder_id, status=actual.value,
    )
