"""
Reminder Engine — Data Models.

A Reminder is the only entity with a lifecycle. Principals are the parties
that schedule reminders (scheduler role) or must act on them (assignees).
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


def new_reminder_id() -> str:
    return str(uuid.uuid4())


class ReminderStatus(str, Enum):
    SCHEDULED = "scheduled"
    TRIGGERED = "triggered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ReminderStatus.COMPLETED, ReminderStatus.CANCELLED)


class ReminderPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class TransitionKind(str, Enum):
    """What happened to a reminder, as published to notification delivery."""

    TRIGGERED = "triggered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass
class Principal:
    """A party known to the engine.

    Scheduler-role principals create, edit and cancel reminders; any
    principal can be the assignee of one.
    """

    principal_id: str
    display_name: str
    is_scheduler: bool = False
    telegram_chat_id: int | None = None
    created_at: str = ""


@dataclass
class Reminder:
    """A point-in-time notification for one assignee.

    `recurrence_pattern` is either a shorthand string ("daily") or a
    structured rule dict, see src.core.recurrence.
    """

    id: str
    created_by: str
    assigned_to: str
    title: str
    message: str
    fire_at: datetime                      # always timezone-aware UTC
    status: ReminderStatus = ReminderStatus.SCHEDULED
    priority: ReminderPriority = ReminderPriority.MEDIUM
    is_recurring: bool = False
    recurrence_pattern: str | dict | None = None
    action_required: bool = True
    action_url: str | None = None
    data: dict[str, Any] | None = None
    triggered_at: datetime | None = None
    completed_at: datetime | None = None
    acknowledged_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None
    origin_key: str | None = None          # set on synthesized successors
    origin_id: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass
class ReminderFilter:
    """Query filter for the reminder store. None means 'any'."""

    assigned_to: str | None = None
    created_by: str | None = None
    status: ReminderStatus | None = None
    priority: ReminderPriority | None = None
    is_recurring: bool | None = None
    fire_at_from: datetime | None = None
    fire_at_to: datetime | None = None
    limit: int | None = None
    offset: int | None = None
    statuses: list[ReminderStatus] = field(default_factory=list)
