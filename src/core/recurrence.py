"""
Reminder Engine — Recurrence rules and successor synthesis.

A recurrence pattern is either a shorthand string ("daily", "weekly",
"monthly", "yearly") or a structured rule:

    {
        "type": "weekly",
        "interval": 2,              # every 2 weeks (default 1)
        "days_of_week": [1, 4],     # ISO: 1=Monday .. 7=Sunday
        "day_of_month": 31,         # monthly and yearly; clamps to month end
        "end_date": "2026-12-31"    # inclusive; no occurrences after it
    }

The next occurrence is always computed from the completed reminder's
fire_at, never from the completion time, so a series keeps its cadence
however late each instance is completed. Time of day is preserved.
"""

from __future__ import annotations

import calendar
import copy
import json
import logging
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Literal

import pydantic
from pydantic import BaseModel, Field, field_validator

from src.core.errors import (
    DuplicateError,
    InvalidRecurrenceRule,
    RecurrenceComputationError,
)
from src.data.db import to_db_time
from src.data.models import Reminder, ReminderStatus, new_reminder_id

if TYPE_CHECKING:
    from src.ports.reminder_store_port import ReminderStorePort

logger = logging.getLogger(__name__)


class RecurrenceRule(BaseModel):
    """Structured recurrence rule."""

    type: Literal["daily", "weekly", "monthly", "yearly"]
    interval: int = Field(default=1, ge=1)
    days_of_week: list[int] | None = None
    day_of_month: int | None = Field(default=None, ge=1, le=31)
    end_date: date | None = None

    @field_validator("type", mode="before")
    @classmethod
    def lower_type(cls, v: object) -> object:
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("days_of_week")
    @classmethod
    def check_days(cls, v: list[int] | None) -> list[int] | None:
        if not v:
            return None
        for day in v:
            if not 1 <= day <= 7:
                raise ValueError(f"day of week must be 1..7, got {day}")
        return sorted(set(v))


def parse_rule(pattern: str | dict | RecurrenceRule | None) -> RecurrenceRule:
    """Parse a stored or submitted pattern. Raises InvalidRecurrenceRule."""
    if isinstance(pattern, RecurrenceRule):
        return pattern

    if isinstance(pattern, str):
        text = pattern.strip()
        if text.startswith("{"):
            try:
                data = json.loads(text)
            except json.JSONDecodeError as exc:
                raise InvalidRecurrenceRule(f"Recurrence pattern is not valid JSON: {exc}") from exc
        else:
            data = {"type": text}
    elif isinstance(pattern, dict):
        data = pattern
    else:
        raise InvalidRecurrenceRule(f"Unsupported recurrence pattern: {pattern!r}")

    try:
        return RecurrenceRule.model_validate(data)
    except pydantic.ValidationError as exc:
        raise InvalidRecurrenceRule(f"Invalid recurrence pattern {pattern!r}: {exc}") from exc


def normalize_pattern(pattern: str | dict, anchor: datetime) -> str | dict:
    """Validate a pattern and return the form to store.

    Shorthand strings are kept as-is, except "monthly" and "yearly", which
    are expanded so the series stays on the anchor's day of month (the 31st
    stays at month end instead of drifting to the 28th after February, and
    Feb 29 comes back in leap years).
    """
    rule = parse_rule(pattern)
    if rule.type in ("monthly", "yearly") and rule.day_of_month is None:
        rule = rule.model_copy(update={"day_of_month": anchor.day})
    elif isinstance(pattern, str) and not pattern.strip().startswith("{"):
        return pattern.strip().lower()
    return rule.model_dump(mode="json", exclude_defaults=True)


def reanchor_pattern(pattern: str | dict, old_anchor: datetime, new_anchor: datetime) -> str | dict:
    """Move a stored day_of_month along with a rescheduled fire_at.

    Only a day_of_month that matches the old fire_at (after month-end
    clamping) is moved; a day chosen independently of fire_at is kept.
    """
    try:
        rule = parse_rule(pattern)
    except InvalidRecurrenceRule:
        return pattern
    if rule.type not in ("monthly", "yearly") or rule.day_of_month is None:
        return pattern
    last_day = calendar.monthrange(old_anchor.year, old_anchor.month)[1]
    if min(rule.day_of_month, last_day) != old_anchor.day:
        return pattern
    rule = rule.model_copy(update={"day_of_month": new_anchor.day})
    return rule.model_dump(mode="json", exclude_defaults=True)


def _add_months(value: datetime, months: int, day: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return value.replace(year=year, month=month, day=min(day, last_day))


def next_occurrence(fire_at: datetime, pattern: str | dict | RecurrenceRule) -> datetime | None:
    """Return the occurrence after `fire_at`, or None once the series has ended."""
    rule = parse_rule(pattern)

    if rule.type == "daily":
        nxt = fire_at + timedelta(days=rule.interval)

    elif rule.type == "weekly":
        if rule.days_of_week:
            current = fire_at.isoweekday()
            later = [d for d in rule.days_of_week if d > current]
            if later:
                nxt = fire_at + timedelta(days=later[0] - current)
            else:
                # wrap to the first listed day, skipping (interval - 1) weeks
                offset = 7 - current + rule.days_of_week[0] + (rule.interval - 1) * 7
                nxt = fire_at + timedelta(days=offset)
        else:
            nxt = fire_at + timedelta(weeks=rule.interval)

    elif rule.type == "monthly":
        nxt = _add_months(fire_at, rule.interval, rule.day_of_month or fire_at.day)

    else:  # yearly
        nxt = _add_months(fire_at, 12 * rule.interval, rule.day_of_month or fire_at.day)

    if rule.end_date is not None and nxt.date() > rule.end_date:
        return None
    return nxt


# ---------------------------------------------------------------------------
# Successor synthesis
# ---------------------------------------------------------------------------


def successor_key(reminder: Reminder) -> str:
    """Uniqueness key for the successor of one completed instance."""
    return f"{reminder.id}:{to_db_time(reminder.completed_at)}"


def synthesize_successor(store: ReminderStorePort, completed: Reminder) -> Reminder | None:
    """Create the next scheduled instance of a completed recurring reminder.

    Returns the successor (an existing one if synthesis already ran for this
    completion), or None for non-recurring reminders and ended series.

    Raises:
        RecurrenceComputationError: the stored pattern cannot produce a next
            occurrence. The series is NOT silently dropped.
    """
    if not completed.is_recurring:
        return None
    if completed.status is not ReminderStatus.COMPLETED or completed.completed_at is None:
        raise ValueError(f"Reminder {completed.id} is not completed")

    try:
        if completed.recurrence_pattern is None:
            raise InvalidRecurrenceRule("Recurring reminder has no recurrence pattern")
        next_fire_at = next_occurrence(completed.fire_at, completed.recurrence_pattern)
    except (InvalidRecurrenceRule, ValueError, OverflowError) as exc:
        logger.error(
            "Recurrence computation failed for reminder %s (assigned to %s, "
            "fire_at=%s, pattern=%r): %s",
            completed.id, completed.assigned_to, completed.fire_at.isoformat(),
            completed.recurrence_pattern, exc,
        )
        raise RecurrenceComputationError(
            f"Could not compute the next occurrence of reminder {completed.id}: {exc}",
            reminder_id=completed.id,
            pattern=completed.recurrence_pattern,
        ) from exc

    if next_fire_at is None:
        logger.warning(
            "Recurring series of reminder %s ended (pattern=%r)",
            completed.id, completed.recurrence_pattern,
        )
        return None

    key = successor_key(completed)
    existing = store.find_by_origin_key(key)
    if existing is not None:
        logger.info("Successor for reminder %s already exists: %s", completed.id, existing.id)
        return existing

    successor = Reminder(
        id=new_reminder_id(),
        created_by=completed.created_by,
        assigned_to=completed.assigned_to,
        title=completed.title,
        message=completed.message,
        fire_at=next_fire_at,
        status=ReminderStatus.SCHEDULED,
        priority=completed.priority,
        is_recurring=True,
        recurrence_pattern=copy.deepcopy(completed.recurrence_pattern),
        action_required=completed.action_required,
        action_url=completed.action_url,
        data=copy.deepcopy(completed.data),
        origin_key=key,
        origin_id=completed.id,
    )

    try:
        stored = store.insert(successor)
    except DuplicateError:
        # A concurrent synthesis for the same completion won the insert
        existing = store.find_by_origin_key(key)
        if existing is None:
            raise
        return existing

    logger.info(
        "Successor %s synthesized from reminder %s, fires at %s",
        stored.id, completed.id, next_fire_at.isoformat(),
    )
    return stored
