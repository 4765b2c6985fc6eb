"""Reminder event publisher — implements ReminderEventPort.

Turns lifecycle events into chat messages: triggered and cancelled
reminders go to the assignee, completions go back to whoever scheduled the
reminder. Principals without a linked chat are skipped.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

from src.data.models import ReminderPriority, TransitionKind

if TYPE_CHECKING:
    from src.data.db import PrincipalDB
    from src.data.models import Reminder
    from src.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)

_PRIORITY_MARK = {
    ReminderPriority.LOW: "",
    ReminderPriority.MEDIUM: "",
    ReminderPriority.HIGH: "❗ ",
    ReminderPriority.URGENT: "🚨 ",
}


def format_reminder_message(reminder: Reminder, kind: TransitionKind, tz_name: str = "UTC") -> str:
    """Render a lifecycle event as a Telegram (Markdown) message."""
    when = reminder.fire_at.astimezone(ZoneInfo(tz_name)).strftime("%Y-%m-%d %H:%M")
    mark = _PRIORITY_MARK[reminder.priority]

    if kind is TransitionKind.TRIGGERED:
        lines = [
            f"⏰ {mark}*{reminder.title}*",
            reminder.message,
            f"Priority: {reminder.priority.value} · due {when}",
        ]
        if reminder.action_url:
            lines.append(reminder.action_url)
        if reminder.action_required:
            lines.append(f"\n/ack {reminder.id} · /done {reminder.id}")
        else:
            lines.append(f"\n/done {reminder.id}")
        return "\n".join(lines)

    if kind is TransitionKind.COMPLETED:
        return f"✅ *{reminder.title}* (due {when}) was completed by {reminder.assigned_to}."

    return f"🚫 Reminder *{reminder.title}* (due {when}) was cancelled."


class ReminderPublisher:
    """Delivers reminder events through a NotificationPort."""

    def __init__(
        self,
        notifier: NotificationPort,
        principals: PrincipalDB,
        operator_chat_ids: list[int] | None = None,
        tz_name: str | None = None,
    ) -> None:
        if operator_chat_ids is None or tz_name is None:
            from src.config import settings
            operator_chat_ids = (
                operator_chat_ids if operator_chat_ids is not None else settings.OPERATOR_CHAT_IDS
            )
            tz_name = tz_name or settings.TIMEZONE

        self._notifier = notifier
        self._principals = principals
        self._operator_chat_ids = operator_chat_ids
        self._tz_name = tz_name

    async def publish(self, reminder: Reminder, kind: TransitionKind) -> None:
        recipient_id = (
            reminder.created_by if kind is TransitionKind.COMPLETED else reminder.assigned_to
        )
        principal = self._principals.get_principal(recipient_id)
        if principal is None or principal.telegram_chat_id is None:
            logger.warning(
                "No chat linked for %s; %s event for reminder %s not delivered",
                recipient_id, kind.value, reminder.id,
            )
            return

        text = format_reminder_message(reminder, kind, self._tz_name)
        await self._notifier.send_message(principal.telegram_chat_id, text)
        logger.info("Reminder %s %s event sent to %s", reminder.id, kind.value, recipient_id)

    async def alert_operator(self, text: str) -> None:
        if not self._operator_chat_ids:
            logger.error("Operator alert (no operator chat configured): %s", text)
            return
        for chat_id in self._operator_chat_ids:
            try:
                await self._notifier.send_message(chat_id, f"⚠️ {text}")
            except Exception as exc:
                logger.error("Failed to alert operator chat %d: %s", chat_id, exc)
