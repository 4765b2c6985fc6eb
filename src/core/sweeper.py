"""
Reminder Engine — Trigger Sweeper.

One tick promotes every due `scheduled` reminder to `triggered` and hands it
to notification delivery. Runs as an independent periodic job (see
src.bot.telegram_bot); it shares nothing with request handlers except the
store, and every promotion is a status-guarded write, so any number of
sweepers and users can race on the same reminder safely.

The sweeper never completes reminders and never synthesizes successors.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Callable

from src.core.errors import NotFound, PreconditionFailed, TransitionRejected
from src.core.lifecycle import LifecycleEvent, transition_patch
from src.core.reminder_service import utcnow
from src.core.validation import as_utc
from src.data.models import ReminderStatus, TransitionKind

if TYPE_CHECKING:
    from src.ports.notification_port import ReminderEventPort
    from src.ports.reminder_store_port import ReminderStorePort

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """What one tick did, by reminder id."""

    due: int = 0
    triggered: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)      # another actor got there first
    failed: list[str] = field(default_factory=list)
    undelivered: list[str] = field(default_factory=list)  # triggered, but publish failed


async def run_sweep(
    store: ReminderStorePort,
    publisher: ReminderEventPort | None = None,
    clock: Callable[[], datetime] | None = None,
    limit: int | None = None,
) -> SweepReport:
    """Run one sweeper tick.

    Each record is isolated: a lost race is skipped, any other failure is
    logged and the sweep moves on to the next due reminder.
    """
    if limit is None:
        from src.config import settings
        limit = settings.SWEEP_BATCH_LIMIT or None

    now = as_utc((clock or utcnow)())
    report = SweepReport()

    try:
        due = store.find_due(now, limit=limit)
    except Exception as exc:
        logger.error("Sweep aborted: could not read due reminders: %s", exc)
        return report

    report.due = len(due)
    if not due:
        logger.debug("Sweep at %s: nothing due", now.isoformat())
        return report

    for reminder in due:
        try:
            patch = transition_patch(reminder, LifecycleEvent.TRIGGER, now)
            triggered = store.conditional_update(
                reminder.id, ReminderStatus.SCHEDULED, patch, now=now,
            )
        except (PreconditionFailed, NotFound, TransitionRejected) as exc:
            logger.warning("Sweep skipped reminder %s: %s", reminder.id, exc)
            report.skipped.append(reminder.id)
            continue
        except Exception as exc:
            logger.error("Sweep failed to trigger reminder %s: %s", reminder.id, exc)
            report.failed.append(reminder.id)
            continue

        report.triggered.append(triggered.id)
        logger.info(
            "Reminder %s triggered for %s (due %s)",
            triggered.id, triggered.assigned_to, triggered.fire_at.isoformat(),
        )

        if publisher is None:
            continue
        try:
            await publisher.publish(triggered, TransitionKind.TRIGGERED)
        except Exception as exc:
            logger.error("Failed to deliver triggered reminder %s: %s", triggered.id, exc)
            report.undelivered.append(triggered.id)

    logger.info(
        "Sweep at %s: %d due, %d triggered, %d skipped, %d failed",
        now.isoformat(), report.due, len(report.triggered),
        len(report.skipped), len(report.failed),
    )
    return report
