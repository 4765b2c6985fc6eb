"""
Reminder Engine — Reminder Service (lifecycle controller).

Stateless service layer that orchestrates every request-driven operation:
validate -> authorize -> check the transition -> status-guarded store write
-> publish the event.

Request handlers (Telegram, web, jobs) call this service with an already
authenticated Principal and render the returned objects themselves.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable

from src.core import authorization as auth
from src.core.errors import (
    AlreadyCompleted,
    NotFound,
    PreconditionFailed,
    RecurrenceComputationError,
)
from src.core.lifecycle import (
    LifecycleEvent,
    rejection_for,
    target_status,
    transition_patch,
)
from src.core.recurrence import synthesize_successor
from src.core.validation import (
    ReminderCreate,
    ReminderUpdate,
    as_utc,
    normalize_create,
    normalize_update,
)
from src.data.models import (
    Reminder,
    ReminderFilter,
    ReminderStatus,
    TransitionKind,
    new_reminder_id,
)

if TYPE_CHECKING:
    from src.data.models import Principal
    from src.ports.notification_port import ReminderEventPort
    from src.ports.reminder_store_port import ReminderStorePort

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CompletionResult:
    """Outcome of complete(): the completed reminder plus its successor.

    `recurrence_error` is set when the reminder was completed but its next
    occurrence could not be created; the completion itself still stands.
    """

    reminder: Reminder
    successor: Reminder | None = None
    recurrence_error: RecurrenceComputationError | None = None


class ReminderService:
    """Applies lifecycle operations to reminders on behalf of a principal."""

    def __init__(
        self,
        store: ReminderStorePort,
        publisher: ReminderEventPort | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._publisher = publisher
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return as_utc(self._clock())

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load(self, reminder_id: str) -> Reminder:
        reminder = self._store.get(reminder_id)
        if reminder is None:
            raise NotFound(f"Reminder {reminder_id} not found")
        return reminder

    def _apply(
        self,
        reminder: Reminder,
        event: LifecycleEvent,
        patch: dict,
        now: datetime,
    ) -> Reminder:
        """Write `patch` guarded by the status the decision was made on."""
        try:
            return self._store.conditional_update(reminder.id, reminder.status, patch, now=now)
        except PreconditionFailed as exc:
            raise rejection_for(reminder.id, event, ReminderStatus(exc.actual)) from exc

    def _transition(
        self,
        reminder: Reminder,
        event: LifecycleEvent,
        expected_null: tuple[str, ...] = (),
    ) -> Reminder:
        """Apply a lifecycle event through a status-guarded write.

        A reminder that moved to another live status between our read and
        write (usually the sweeper triggering it) is re-read and tried once
        more; a terminal one is rejected.
        """
        for attempt in range(2):
            now = self._now()
            patch = transition_patch(reminder, event, now)
            if not patch:
                return reminder
            try:
                return self._store.conditional_update(
                    reminder.id, reminder.status, patch,
                    now=now, expected_null=expected_null,
                )
            except PreconditionFailed as exc:
                actual = ReminderStatus(exc.actual)
                if attempt or actual.is_terminal:
                    raise rejection_for(reminder.id, event, actual) from exc
                reminder = self._load(reminder.id)

        raise rejection_for(reminder.id, event, reminder.status)

    async def _publish(self, reminder: Reminder, kind: TransitionKind) -> None:
        if self._publisher is None:
            return
        try:
            await self._publisher.publish(reminder, kind)
        except Exception as exc:
            # The write is committed; a delivery failure must not undo it
            logger.error("Failed to publish %s for reminder %s: %s", kind.value, reminder.id, exc)

    async def _alert_operator(self, text: str) -> None:
        if self._publisher is None:
            return
        try:
            await self._publisher.alert_operator(text)
        except Exception as exc:
            logger.error("Failed to alert operator: %s", exc)

    # ------------------------------------------------------------------
    # Scheduling (scheduler role)
    # ------------------------------------------------------------------

    async def create(self, principal: Principal, payload: ReminderCreate | dict) -> Reminder:
        """Schedule a new reminder. The acting principal becomes `created_by`."""
        auth.require(auth.can_create(principal), principal, "create")
        now = self._now()
        data = normalize_create(payload, now)

        reminder = Reminder(
            id=new_reminder_id(),
            created_by=principal.principal_id,
            assigned_to=data.assigned_to,
            title=data.title,
            message=data.message,
            fire_at=data.fire_at,
            status=ReminderStatus.SCHEDULED,
            priority=data.priority,
            is_recurring=data.is_recurring,
            recurrence_pattern=data.recurrence_pattern,
            action_required=data.action_required,
            action_url=data.action_url,
            data=copy.deepcopy(data.data),
            created_at=now,
            updated_at=now,
        )
        stored = self._store.insert(reminder)
        logger.info(
            "Reminder %s created by %s for %s",
            stored.id, principal.principal_id, stored.assigned_to,
        )
        return stored

    async def update(
        self,
        principal: Principal,
        reminder_id: str,
        payload: ReminderUpdate | dict,
    ) -> Reminder:
        """Edit fields of a live, non-terminal reminder."""
        auth.require(auth.can_update_or_cancel(principal), principal, "update")
        existing = self._load(reminder_id)
        target_status(existing, LifecycleEvent.UPDATE)
        now = self._now()
        patch = normalize_update(existing, payload, now)

        if not patch:
            return existing

        updated = self._apply(existing, LifecycleEvent.UPDATE, patch, now)
        logger.info(
            "Reminder %s updated by %s: %s",
            reminder_id, principal.principal_id, ", ".join(sorted(patch)),
        )
        return updated

    async def cancel(self, principal: Principal, reminder_id: str) -> Reminder:
        """Cancel a scheduled or triggered reminder."""
        auth.require(auth.can_update_or_cancel(principal), principal, "cancel")
        reminder = self._load(reminder_id)

        cancelled = self._transition(reminder, LifecycleEvent.CANCEL)
        logger.info("Reminder %s cancelled by %s", reminder_id, principal.principal_id)
        await self._publish(cancelled, TransitionKind.CANCELLED)
        return cancelled

    async def delete(self, principal: Principal, reminder_id: str) -> None:
        """Soft-delete a reminder in any state."""
        auth.require(auth.can_delete(principal), principal, "delete")
        self._store.soft_delete(reminder_id, now=self._now())
        logger.info("Reminder %s deleted by %s", reminder_id, principal.principal_id)

    # ------------------------------------------------------------------
    # Disposition (assignee only)
    # ------------------------------------------------------------------

    async def complete(self, principal: Principal, reminder_id: str) -> CompletionResult:
        """Mark a reminder completed and, if recurring, schedule its successor.

        A second complete() still raises AlreadyCompleted, but first re-runs
        successor synthesis for a recurring reminder whose successor is
        missing (e.g. the store failed right after the completion committed).
        """
        reminder = self._load(reminder_id)
        auth.require(auth.can_complete(principal, reminder), principal, "complete", reminder_id)

        try:
            completed = self._transition(reminder, LifecycleEvent.COMPLETE)
        except AlreadyCompleted:
            self._resume_series(reminder_id)
            raise
        logger.info("Reminder %s completed by %s", reminder_id, principal.principal_id)
        result = CompletionResult(reminder=completed)

        if completed.is_recurring:
            try:
                result.successor = synthesize_successor(self._store, completed)
            except RecurrenceComputationError as exc:
                result.recurrence_error = exc
            except Exception as exc:
                logger.error("Successor of reminder %s could not be stored: %s", completed.id, exc)
                result.recurrence_error = RecurrenceComputationError(
                    f"Next occurrence of reminder {completed.id} could not be stored: {exc}",
                    reminder_id=completed.id,
                    pattern=completed.recurrence_pattern,
                )
            if result.recurrence_error is not None:
                await self._alert_operator(
                    f"Recurring reminder {completed.id} ('{completed.title}', assigned to "
                    f"{completed.assigned_to}) was completed but its next occurrence "
                    f"could not be scheduled: {result.recurrence_error}"
                )

        await self._publish(completed, TransitionKind.COMPLETED)
        return result

    def _resume_series(self, reminder_id: str) -> Reminder | None:
        """Synthesize a missing successor for an already completed reminder."""
        completed = self._store.get(reminder_id)
        if completed is None or not completed.is_recurring:
            return None
        try:
            return synthesize_successor(self._store, completed)
        except Exception as exc:
            logger.error("Could not resume series of reminder %s: %s", reminder_id, exc)
            return None

    async def acknowledge(self, principal: Principal, reminder_id: str) -> Reminder:
        """Record that the assignee has seen a reminder that requires action.

        Does not change status. acknowledged_at is set once; repeating the
        call returns the reminder unchanged.
        """
        reminder = self._load(reminder_id)
        auth.require(auth.can_acknowledge(principal, reminder), principal, "acknowledge", reminder_id)

        first_ack = reminder.acknowledged_at is None
        acknowledged = self._transition(
            reminder, LifecycleEvent.ACKNOWLEDGE, expected_null=("acknowledged_at",),
        )
        if first_ack:
            logger.info("Reminder %s acknowledged by %s", reminder_id, principal.principal_id)
        return acknowledged

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, principal: Principal, reminder_id: str) -> Reminder:
        """Fetch one reminder. Reminders the principal may not see are NotFound."""
        reminder = self._store.get(reminder_id)
        if reminder is None or not auth.can_view(principal, reminder):
            raise NotFound(f"Reminder {reminder_id} not found")
        return reminder

    async def list_reminders(
        self,
        principal: Principal,
        filters: ReminderFilter | None = None,
    ) -> list[Reminder]:
        """Query reminders. Non-schedulers only ever see their own."""
        filters = copy.copy(filters) if filters is not None else ReminderFilter()
        if not principal.is_scheduler:
            filters.assigned_to = principal.principal_id
        return self._store.query(filters)
