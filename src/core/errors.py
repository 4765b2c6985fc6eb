"""Typed errors raised by the reminder engine.

Every rejected operation surfaces one of these; callers branch on the type,
users see the message.
"""

from __future__ import annotations


class ReminderError(Exception):
    """Base class for all reminder engine errors."""


# ---------------------------------------------------------------------------
# Bad input, never retried automatically
# ---------------------------------------------------------------------------


class ValidationError(ReminderError):
    """A create/update payload violates a field invariant."""


class InvalidScheduleTime(ValidationError):
    """fire_at is not strictly in the future (or may no longer be changed)."""


class MissingRecurrenceRule(ValidationError):
    """is_recurring is set but no recurrence pattern was given."""


class MissingRequiredField(ValidationError):
    """A required text field is empty."""


class InvalidRecurrenceRule(ValidationError):
    """The recurrence pattern does not parse."""


class InvalidField(ValidationError):
    """A field has the wrong type or an unknown value."""


# ---------------------------------------------------------------------------
# Authorization / existence
# ---------------------------------------------------------------------------


class Unauthorized(ReminderError):
    """The acting principal may not perform this operation."""


class NotFound(ReminderError):
    """The reminder does not exist or is soft-deleted."""


# ---------------------------------------------------------------------------
# Lifecycle rejections, expected under concurrency
# ---------------------------------------------------------------------------


class TransitionRejected(ReminderError):
    """A lifecycle event is not legal for the reminder's current state."""

    def __init__(self, message: str, reminder_id: str | None = None, status: str | None = None) -> None:
        super().__init__(message)
        self.reminder_id = reminder_id
        self.status = status


class AlreadyTerminal(TransitionRejected):
    """The reminder is completed or cancelled and can no longer change."""


class AlreadyCompleted(AlreadyTerminal):
    """complete() was called on a reminder that is already completed."""


class StaleState(TransitionRejected):
    """Another actor moved the reminder between read and write."""


class AcknowledgmentNotRequired(TransitionRejected):
    """acknowledge() on a reminder with action_required = False."""


# ---------------------------------------------------------------------------
# Store boundary
# ---------------------------------------------------------------------------


class PreconditionFailed(ReminderError):
    """A conditional update found a status other than the expected one."""

    def __init__(self, reminder_id: str, expected: str, actual: str) -> None:
        super().__init__(
            f"Reminder {reminder_id} is {actual!r}, expected {expected!r}"
        )
        self.reminder_id = reminder_id
        self.expected = expected
        self.actual = actual


class DuplicateError(ReminderError):
    """An insert collided with an existing id or origin key."""


class StoreTimeout(ReminderError):
    """The store did not acknowledge the write within the configured timeout.

    The write may or may not have committed; callers must re-read.
    """


# ---------------------------------------------------------------------------
# Recurrence
# ---------------------------------------------------------------------------


class RecurrenceComputationError(ReminderError):
    """The next occurrence of a recurring reminder could not be computed."""

    def __init__(self, message: str, reminder_id: str | None = None, pattern: object = None) -> None:
        super().__init__(message)
        self.reminder_id = reminder_id
        self.pattern = pattern
