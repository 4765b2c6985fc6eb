"""
Reminder Engine — Validation & Normalization.

Turns create/update payloads into normalized values before anything reaches
the store. Pure: no I/O, the current time is passed in.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import pydantic
from pydantic import BaseModel

from src.core.errors import (
    InvalidField,
    InvalidScheduleTime,
    MissingRecurrenceRule,
    MissingRequiredField,
)
from src.core.recurrence import normalize_pattern, reanchor_pattern
from src.data.models import ReminderPriority, ReminderStatus

if TYPE_CHECKING:
    from src.data.models import Reminder

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------


class ReminderCreate(BaseModel):
    """Payload for scheduling a new reminder.

    JSON example:
    {
        "assigned_to": "emp-42",
        "title": "Submit timesheet",
        "message": "Your weekly timesheet is due.",
        "fire_at": "2026-10-20T09:00:00+00:00",
        "is_recurring": true,
        "recurrence_pattern": "weekly",
        "priority": "high"
    }
    """
    assigned_to: str = ""
    title: str = ""
    message: str = ""
    fire_at: datetime | None = None
    is_recurring: bool = False
    recurrence_pattern: str | dict | None = None
    priority: ReminderPriority = ReminderPriority.MEDIUM
    action_required: bool = True
    action_url: str | None = None
    data: dict[str, Any] | None = None


class ReminderUpdate(BaseModel):
    """Partial update. Only fields explicitly set are applied."""
    assigned_to: str | None = None
    title: str | None = None
    message: str | None = None
    fire_at: datetime | None = None
    is_recurring: bool | None = None
    recurrence_pattern: str | dict | None = None
    priority: ReminderPriority | None = None
    action_required: bool | None = None
    action_url: str | None = None
    data: dict[str, Any] | None = None


def _coerce(model: type[BaseModel], payload: BaseModel | dict) -> Any:
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload)
    except pydantic.ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
        raise InvalidField(f"Invalid reminder fields: {fields}") from exc


# ---------------------------------------------------------------------------
# Field rules
# ---------------------------------------------------------------------------


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _require_text(name: str, value: str | None) -> str:
    if value is None or not value.strip():
        raise MissingRequiredField(f"'{name}' is required and cannot be empty")
    return value.strip()


def _future_fire_at(value: datetime, now: datetime) -> datetime:
    fire_at = as_utc(value)
    if fire_at <= now:
        raise InvalidScheduleTime(
            f"Reminder time must be in the future (got {fire_at.isoformat()}, "
            f"now is {now.isoformat()})"
        )
    return fire_at


def normalize_optional(value: str | None) -> str | None:
    """Blank strings are stored as absent."""
    if value is None:
        return None
    value = value.strip()
    return value or None


def _recurrence(is_recurring: bool, pattern: str | dict | None, anchor: datetime) -> str | dict | None:
    if not is_recurring:
        return None
    if pattern is None or (isinstance(pattern, str) and not pattern.strip()):
        raise MissingRecurrenceRule("A recurring reminder needs a recurrence pattern")
    return normalize_pattern(pattern, anchor)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def normalize_create(payload: ReminderCreate | dict, now: datetime) -> ReminderCreate:
    """Validate a create payload and return its normalized form.

    Raises ValidationError subclasses; never touches the store.
    """
    data = _coerce(ReminderCreate, payload)
    now = as_utc(now)

    assigned_to = _require_text("assigned_to", data.assigned_to)
    title = _require_text("title", data.title)
    message = _require_text("message", data.message)
    if data.fire_at is None:
        raise MissingRequiredField("'fire_at' is required")
    fire_at = _future_fire_at(data.fire_at, now)
    pattern = _recurrence(data.is_recurring, data.recurrence_pattern, fire_at)

    return data.model_copy(update={
        "assigned_to": assigned_to,
        "title": title,
        "message": message,
        "fire_at": fire_at,
        "recurrence_pattern": pattern,
        "action_url": normalize_optional(data.action_url),
    })


def normalize_update(
    existing: Reminder,
    payload: ReminderUpdate | dict,
    now: datetime,
) -> dict[str, Any]:
    """Validate an update against the stored reminder and return the column patch.

    Only fields present in the payload appear in the patch (plus
    recurrence_pattern when recurrence is switched off, or when a new fire_at
    moves the day of month the pattern was anchored on).
    """
    data = _coerce(ReminderUpdate, payload)
    provided = data.model_fields_set
    now = as_utc(now)
    patch: dict[str, Any] = {}

    for name in ("assigned_to", "title", "message"):
        if name in provided:
            patch[name] = _require_text(name, getattr(data, name))

    if "fire_at" in provided:
        if data.fire_at is None:
            raise MissingRequiredField("'fire_at' cannot be cleared")
        if existing.status is not ReminderStatus.SCHEDULED:
            raise InvalidScheduleTime(
                f"Reminder time can only be changed while scheduled (status is {existing.status.value})"
            )
        patch["fire_at"] = _future_fire_at(data.fire_at, now)

    anchor = patch.get("fire_at", existing.fire_at)
    stored_pattern = existing.recurrence_pattern
    if "fire_at" in patch and stored_pattern is not None:
        stored_pattern = reanchor_pattern(stored_pattern, existing.fire_at, anchor)

    if "is_recurring" in provided and data.is_recurring is not None:
        pattern = (
            data.recurrence_pattern
            if "recurrence_pattern" in provided and data.recurrence_pattern is not None
            else stored_pattern
        )
        patch["is_recurring"] = data.is_recurring
        patch["recurrence_pattern"] = _recurrence(data.is_recurring, pattern, anchor)
    elif "recurrence_pattern" in provided:
        patch["recurrence_pattern"] = _recurrence(
            existing.is_recurring, data.recurrence_pattern, anchor,
        )
    elif existing.is_recurring and stored_pattern != existing.recurrence_pattern:
        patch["recurrence_pattern"] = stored_pattern

    if "priority" in provided:
        if data.priority is None:
            raise MissingRequiredField("'priority' cannot be cleared")
        patch["priority"] = data.priority

    if "action_required" in provided:
        if data.action_required is None:
            raise MissingRequiredField("'action_required' cannot be cleared")
        if not data.action_required and existing.acknowledged_at is not None:
            raise InvalidField(
                "Reminder was already acknowledged; action_required cannot be turned off"
            )
        patch["action_required"] = data.action_required

    if "action_url" in provided:
        patch["action_url"] = normalize_optional(data.action_url)

    if "data" in provided:
        patch["data"] = data.data

    return patch
