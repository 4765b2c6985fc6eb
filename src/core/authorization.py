"""
Reminder Engine — Authorization Guard.

One decision function per operation. Scheduling (create, edit, cancel,
delete) belongs to scheduler-role principals; disposition (complete,
acknowledge) belongs to the assignee alone, and the scheduler role does not
override that.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from src.core.errors import Unauthorized

if TYPE_CHECKING:
    from src.data.models import Principal, Reminder

logger = logging.getLogger(__name__)


def can_create(principal: Principal) -> bool:
    return principal.is_scheduler


def can_update_or_cancel(principal: Principal) -> bool:
    return principal.is_scheduler


def can_delete(principal: Principal) -> bool:
    return principal.is_scheduler


def can_complete(principal: Principal, reminder: Reminder) -> bool:
    return principal.principal_id == reminder.assigned_to


def can_acknowledge(principal: Principal, reminder: Reminder) -> bool:
    return principal.principal_id == reminder.assigned_to


def can_view(principal: Principal, reminder: Reminder) -> bool:
    return principal.is_scheduler or principal.principal_id == reminder.assigned_to


def require(allowed: bool, principal: Principal, action: str, reminder_id: str | None = None) -> None:
    """Raise Unauthorized unless `allowed`.

    For operations on an existing reminder the message is the same one a
    missing reminder produces, so non-owners learn nothing about existence.
    """
    if allowed:
        return
    logger.warning(
        "Unauthorized %s attempt by %s%s",
        action, principal.principal_id,
        f" on reminder {reminder_id}" if reminder_id else "",
    )
    if reminder_id is not None:
        raise Unauthorized(f"Reminder {reminder_id} not found")
    raise Unauthorized(f"Only schedulers can {action} reminders")
