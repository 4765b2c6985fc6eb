"""
Reminder Engine — Telegram Bot.

Delivery channel and assignee surface: triggered reminders arrive here, and
assignees list, acknowledge and complete them with commands. The bot also
hosts the periodic trigger sweeper on its JobQueue.

Security-first: chats that are not linked to a registered principal are
silently ignored.
"""

from __future__ import annotations

import logging
from functools import wraps
from typing import TYPE_CHECKING, Any, Callable, Coroutine
from zoneinfo import ZoneInfo

from telegram import Update
from telegram.error import BadRequest
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CommandHandler,
    ContextTypes,
)

from src.adapters.telegram_notifier import is_markdown_error
from src.config import settings
from src.core.errors import (
    AcknowledgmentNotRequired,
    AlreadyCompleted,
    AlreadyTerminal,
    ReminderError,
    StoreTimeout,
)
from src.data.models import ReminderFilter, ReminderStatus

if TYPE_CHECKING:
    from src.core.reminder_service import ReminderService
    from src.data.db import PrincipalDB, ReminderDB
    from src.data.models import Principal, Reminder
    from src.ports.notification_port import NotificationPort, ReminderEventPort

logger = logging.getLogger(__name__)

_OPEN_STATUSES = [ReminderStatus.SCHEDULED, ReminderStatus.TRIGGERED]


# ---------------------------------------------------------------------------
# Security: silent-ignore decorator
# ---------------------------------------------------------------------------


def authorized_only(
    func: Callable[..., Coroutine[Any, Any, None]],
) -> Callable[..., Coroutine[Any, Any, None]]:
    """Decorator that resolves the caller to a Principal or silently ignores them.

    Does NOT send any response to strangers — the bot must not reveal
    its existence to unregistered users.
    """

    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        user = update.effective_user
        principals: PrincipalDB = context.bot_data["principals"]
        principal = principals.find_by_chat_id(user.id) if user is not None else None
        if principal is None:
            uid = user.id if user else "unknown"
            logger.warning("Unauthorized access attempt from user_id=%s", uid)
            return  # Silent ignore
        return await func(update, context, principal)

    return wrapper


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


def _format_when(reminder: Reminder) -> str:
    return reminder.fire_at.astimezone(ZoneInfo(settings.TIMEZONE)).strftime("%Y-%m-%d %H:%M")


def _format_reminder_line(reminder: Reminder) -> str:
    flags = []
    if reminder.status is ReminderStatus.TRIGGERED:
        flags.append("due")
    if reminder.is_recurring:
        flags.append("recurring")
    if reminder.acknowledged_at is not None:
        flags.append("seen")
    suffix = f" [{', '.join(flags)}]" if flags else ""
    return f"`{reminder.id}` — {reminder.title} ({_format_when(reminder)}, {reminder.priority.value}){suffix}"


def _error_text(exc: ReminderError) -> str:
    """User-facing text for a rejected operation."""
    if isinstance(exc, StoreTimeout):
        return "The reminder store didn't answer in time. Check /reminders before retrying."
    if isinstance(exc, AlreadyCompleted):
        return "That reminder is already completed."
    if isinstance(exc, AlreadyTerminal):
        return "That reminder is closed and can't be changed."
    if isinstance(exc, AcknowledgmentNotRequired):
        return "That reminder doesn't need acknowledgment."
    return str(exc)


async def _reply_markdown(update: Update, text: str) -> None:
    """Reply with Markdown, resending as plain text if Telegram rejects the markup."""
    try:
        await update.message.reply_text(text, parse_mode="Markdown")
    except BadRequest as exc:
        if not is_markdown_error(exc):
            raise
        logger.warning("Markdown reply rejected, sending plain text: %s", exc)
        await update.message.reply_text(text)


def _reminder_id_arg(context: ContextTypes.DEFAULT_TYPE) -> str | None:
    args = context.args or []
    if not args or not args[0].strip():
        return None
    return args[0].strip()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE, principal: Principal) -> None:
    """Handle /start — greet a registered principal."""
    await update.message.reply_text(
        f"Hi {principal.display_name}! Your reminders will show up here.\n\n"
        "/reminders — your open reminders\n"
        "/ack <id> — acknowledge a reminder\n"
        "/done <id> — mark a reminder complete"
    )


@authorized_only
async def cmd_reminders(update: Update, context: ContextTypes.DEFAULT_TYPE, principal: Principal) -> None:
    """Handle /reminders — list the caller's open reminders."""
    service: ReminderService = context.bot_data["service"]

    try:
        reminders = await service.list_reminders(
            principal,
            ReminderFilter(assigned_to=principal.principal_id, statuses=_OPEN_STATUSES),
        )
    except ReminderError as exc:
        logger.error("/reminders error: %s", exc)
        await update.message.reply_text("Couldn't load reminders. Please try again.")
        return

    if not reminders:
        await update.message.reply_text("No open reminders.")
        return

    lines = ["*Open reminders:*\n"]
    lines.extend(_format_reminder_line(r) for r in reminders)
    await _reply_markdown(update, "\n".join(lines))


@authorized_only
async def cmd_done(update: Update, context: ContextTypes.DEFAULT_TYPE, principal: Principal) -> None:
    """Handle /done <id> — complete one of the caller's reminders."""
    service: ReminderService = context.bot_data["service"]

    reminder_id = _reminder_id_arg(context)
    if reminder_id is None:
        await update.message.reply_text("Usage: /done <reminder_id>\nUse /reminders to see IDs.")
        return

    try:
        result = await service.complete(principal, reminder_id)
    except ReminderError as exc:
        logger.info("/done %s rejected: %s", reminder_id, exc)
        await update.message.reply_text(_error_text(exc))
        return

    lines = [f"✅ Marked '*{result.reminder.title}*' as done."]
    if result.successor is not None:
        lines.append(f"Next one: {_format_when(result.successor)}")
    elif result.recurrence_error is not None:
        lines.append("The next occurrence couldn't be scheduled; an operator has been notified.")
    await _reply_markdown(update, "\n".join(lines))


@authorized_only
async def cmd_ack(update: Update, context: ContextTypes.DEFAULT_TYPE, principal: Principal) -> None:
    """Handle /ack <id> — acknowledge one of the caller's reminders."""
    service: ReminderService = context.bot_data["service"]

    reminder_id = _reminder_id_arg(context)
    if reminder_id is None:
        await update.message.reply_text("Usage: /ack <reminder_id>\nUse /reminders to see IDs.")
        return

    try:
        reminder = await service.acknowledge(principal, reminder_id)
    except ReminderError as exc:
        logger.info("/ack %s rejected: %s", reminder_id, exc)
        await update.message.reply_text(_error_text(exc))
        return

    await _reply_markdown(
        update,
        f"👍 Acknowledged '*{reminder.title}*'. Use /done {reminder.id} when it's finished.",
    )


# ---------------------------------------------------------------------------
# App builder
# ---------------------------------------------------------------------------


def build_app(
    store: ReminderDB | None = None,
    principals: PrincipalDB | None = None,
    notifier: NotificationPort | None = None,
) -> Application:
    """Build and configure the Telegram Application with all handlers.

    Args:
        store: Reminder store. Defaults to ReminderDB at DATABASE_PATH.
        principals: Principal directory. Defaults to PrincipalDB at DATABASE_PATH.
        notifier: Notification port implementation. Defaults to TelegramNotifier
                  (created from the bot instance after app is built).
    """
    from src.adapters.reminder_publisher import ReminderPublisher
    from src.core.reminder_service import ReminderService
    from src.data.db import PrincipalDB, ReminderDB

    app = ApplicationBuilder().token(settings.TELEGRAM_BOT_TOKEN).build()

    # Wire default adapters if not provided
    if store is None:
        store = ReminderDB()
    if principals is None:
        principals = PrincipalDB()
    if notifier is None:
        from src.adapters.telegram_notifier import TelegramNotifier
        notifier = TelegramNotifier(app.bot)

    publisher = ReminderPublisher(notifier, principals)

    # Store ports in bot_data for handler access
    app.bot_data["store"] = store
    app.bot_data["principals"] = principals
    app.bot_data["publisher"] = publisher
    app.bot_data["service"] = ReminderService(store, publisher)

    app.add_handler(CommandHandler("start", cmd_start))
    app.add_handler(CommandHandler("help", cmd_start))
    app.add_handler(CommandHandler("reminders", cmd_reminders))
    app.add_handler(CommandHandler("done", cmd_done))
    app.add_handler(CommandHandler("ack", cmd_ack))

    _setup_sweeper(app, store, publisher)

    logger.info("Telegram bot application built with %d handlers", len(app.handlers[0]))
    return app


def _setup_sweeper(
    app: Application,
    store: ReminderDB,
    publisher: ReminderEventPort,
) -> None:
    """Register the trigger sweeper as a repeating job."""
    from src.core.sweeper import run_sweep

    async def _sweep_job_callback(context: ContextTypes.DEFAULT_TYPE) -> None:
        await run_sweep(store, publisher)

    app.job_queue.run_repeating(
        _sweep_job_callback,
        interval=settings.SWEEP_INTERVAL_SECONDS,
        first=settings.SWEEP_FIRST_DELAY_SECONDS,
        name="reminder_sweeper",
        job_kwargs={"max_instances": 1, "coalesce": True},
    )

    logger.info("Reminder sweeper scheduled every %ds", settings.SWEEP_INTERVAL_SECONDS)


def main() -> None:
    """Entry point: build the app and start polling."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger.info("Starting reminder engine bot...")
    app = build_app()
    app.run_polling()


if __name__ == "__main__":
    main()
