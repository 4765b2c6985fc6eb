"""Telegram delivery adapter — implements NotificationPort.

Reminder texts are sent as Markdown. Titles typed by schedulers can contain
unbalanced `*` or `_`, which Telegram rejects; those messages are re-sent as
plain text rather than dropped.
"""

from __future__ import annotations

import logging

from telegram import Bot
from telegram.constants import MessageLimit
from telegram.error import BadRequest

logger = logging.getLogger(__name__)


def is_markdown_error(exc: BadRequest) -> bool:
    """True when Telegram rejected a message because of its Markdown markup."""
    return "parse entities" in str(exc).lower()


def _truncate(text: str) -> str:
    limit = MessageLimit.MAX_TEXT_LENGTH
    if len(text) <= limit:
        return text
    return text[: limit - 1] + "…"


class TelegramNotifier:
    """Sends reminder messages through a telegram.Bot."""

    def __init__(self, bot: Bot) -> None:
        self._bot = bot

    async def send_message(self, chat_id: int, text: str) -> None:
        text = _truncate(text)
        try:
            await self._bot.send_message(chat_id=chat_id, text=text, parse_mode="Markdown")
        except BadRequest as exc:
            if not is_markdown_error(exc):
                raise
            logger.warning("Markdown rejected for chat %d, sending plain text: %s", chat_id, exc)
            await self._bot.send_message(chat_id=chat_id, text=text)
        logger.debug("Message sent to chat %d", chat_id)
