"""Reminder store port — the storage contract the engine relies on.

Core modules depend on this protocol, never on SQLite directly. Any backend
must provide atomic status-guarded updates, soft delete and basic filtering.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Protocol

from src.data.models import Reminder, ReminderFilter, ReminderStatus


class ReminderStorePort(Protocol):
    """Abstract reminder store used by core modules."""

    def insert(self, reminder: Reminder) -> Reminder: ...

    def conditional_update(
        self,
        reminder_id: str,
        expected_status: ReminderStatus,
        patch: dict[str, Any],
        now: datetime | None = None,
        expected_null: Iterable[str] = (),
    ) -> Reminder: ...

    def soft_delete(self, reminder_id: str, now: datetime | None = None) -> None: ...

    def get(self, reminder_id: str) -> Reminder | None: ...

    def find_by_origin_key(self, origin_key: str) -> Reminder | None: ...

    def query(self, filters: ReminderFilter | None = None) -> list[Reminder]: ...

    def find_due(self, now: datetime, limit: int | None = None) -> list[Reminder]: ...
