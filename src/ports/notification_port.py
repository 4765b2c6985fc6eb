"""Notification ports — abstract interfaces for delivering reminder events.

Core modules depend on these protocols, never on a specific messaging provider.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from src.data.models import Reminder, TransitionKind


class NotificationPort(Protocol):
    """Sends a plain text message to a chat."""

    async def send_message(self, chat_id: int, text: str) -> None: ...


class ReminderEventPort(Protocol):
    """Receives lifecycle events emitted by the engine."""

    async def publish(self, reminder: Reminder, kind: TransitionKind) -> None: ...

    async def alert_operator(self, text: str) -> None: ...
