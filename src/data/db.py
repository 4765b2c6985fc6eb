"""
Reminder Engine — SQLite storage.

ReminderDB is the Reminder Store: insert, status-guarded conditional update,
soft delete and filtered reads. Every status change goes through
`conditional_update`, whose WHERE clause carries the expected prior status,
so concurrent writers to one reminder are linearized by SQLite itself.

PrincipalDB is the directory of principals (roles + delivery chat ids).
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator

from src.core.errors import DuplicateError, NotFound, PreconditionFailed, StoreTimeout
from src.data.models import (
    Principal,
    Reminder,
    ReminderFilter,
    ReminderPriority,
    ReminderStatus,
)

logger = logging.getLogger(__name__)

# Columns a conditional update may touch. id, created_by, created_at and
# deleted_at are never patched.
_PATCHABLE = frozenset({
    "assigned_to", "title", "message", "fire_at", "status", "priority",
    "is_recurring", "recurrence_pattern", "action_required", "action_url",
    "data", "triggered_at", "completed_at", "acknowledged_at",
})


def to_db_time(value: datetime | None) -> str | None:
    """Serialize a timestamp as fixed-width UTC ISO text (sorts lexically)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _is_lock_error(exc: sqlite3.OperationalError) -> bool:
    text = str(exc).lower()
    return "locked" in text or "busy" in text


class _SQLiteDB:
    """Connection handling shared by the tables in one SQLite file."""

    def __init__(self, db_path: str | None = None, timeout: float | None = None) -> None:
        if db_path is None or timeout is None:
            from src.config import settings
            db_path = db_path if db_path is not None else settings.DATABASE_PATH
            timeout = timeout if timeout is not None else settings.STORE_TIMEOUT_SECONDS

        self._db_path = db_path
        self._timeout = timeout
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Open a connection, commit on success, always close.

        A lock held longer than the store timeout surfaces as StoreTimeout;
        the statement is rolled back, so no partial effect is left behind.
        """
        conn = sqlite3.connect(self._db_path, timeout=self._timeout)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        except sqlite3.OperationalError as exc:
            if _is_lock_error(exc):
                raise StoreTimeout(
                    f"Store did not respond within {self._timeout:g}s: {exc}"
                ) from exc
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        raise NotImplementedError


class ReminderDB(_SQLiteDB):
    """SQLite-backed Reminder Store."""

    def _init_db(self) -> None:
        """Create the reminders table if it doesn't exist, and migrate schema."""
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS reminders (
                    id                 TEXT    PRIMARY KEY,
                    created_by         TEXT    NOT NULL,
                    assigned_to        TEXT    NOT NULL,
                    title              TEXT    NOT NULL,
                    message            TEXT    NOT NULL,
                    fire_at            TEXT    NOT NULL,
                    status             TEXT    NOT NULL DEFAULT 'scheduled',
                    priority           TEXT    NOT NULL DEFAULT 'medium',
                    is_recurring       INTEGER NOT NULL DEFAULT 0,
                    recurrence_pattern TEXT,
                    action_required    INTEGER NOT NULL DEFAULT 1,
                    action_url         TEXT,
                    data               TEXT,
                    triggered_at       TEXT,
                    completed_at       TEXT,
                    acknowledged_at    TEXT,
                    created_at         TEXT    NOT NULL,
                    updated_at         TEXT    NOT NULL,
                    deleted_at         TEXT
                )
            """)
            # Migrate existing DBs: successor bookkeeping came later
            existing_cols = {
                row[1] for row in conn.execute("PRAGMA table_info(reminders)").fetchall()
            }
            if "origin_key" not in existing_cols:
                conn.execute("ALTER TABLE reminders ADD COLUMN origin_key TEXT")
            if "origin_id" not in existing_cols:
                conn.execute("ALTER TABLE reminders ADD COLUMN origin_id TEXT")
            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_reminders_origin_key "
                "ON reminders(origin_key) WHERE origin_key IS NOT NULL"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_reminders_due "
                "ON reminders(status, fire_at) WHERE deleted_at IS NULL"
            )
        logger.debug("Reminders table initialized at %s", self._db_path)

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_reminder(row: sqlite3.Row) -> Reminder:
        pattern = row["recurrence_pattern"]
        data = row["data"]
        return Reminder(
            id=row["id"],
            created_by=row["created_by"],
            assigned_to=row["assigned_to"],
            title=row["title"],
            message=row["message"],
            fire_at=from_db_time(row["fire_at"]),
            status=ReminderStatus(row["status"]),
            priority=ReminderPriority(row["priority"]),
            is_recurring=bool(row["is_recurring"]),
            recurrence_pattern=json.loads(pattern) if pattern is not None else None,
            action_required=bool(row["action_required"]),
            action_url=row["action_url"],
            data=json.loads(data) if data is not None else None,
            triggered_at=from_db_time(row["triggered_at"]),
            completed_at=from_db_time(row["completed_at"]),
            acknowledged_at=from_db_time(row["acknowledged_at"]),
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
            deleted_at=from_db_time(row["deleted_at"]),
            origin_key=row["origin_key"],
            origin_id=row["origin_id"],
        )

    @staticmethod
    def _to_column(name: str, value: Any) -> Any:
        if name in ("recurrence_pattern", "data"):
            return json.dumps(value) if value is not None else None
        if name in ("is_recurring", "action_required"):
            return int(bool(value))
        if isinstance(value, datetime):
            return to_db_time(value)
        if isinstance(value, (ReminderStatus, ReminderPriority)):
            return value.value
        return value

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert(self, reminder: Reminder) -> Reminder:
        """Insert a new reminder. Raises DuplicateError on id/origin collision."""
        now = datetime.now(timezone.utc)
        created_at = reminder.created_at or now
        updated_at = reminder.updated_at or created_at

        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO reminders
                        (id, created_by, assigned_to, title, message, fire_at,
                         status, priority, is_recurring, recurrence_pattern,
                         action_required, action_url, data,
                         triggered_at, completed_at, acknowledged_at,
                         created_at, updated_at, deleted_at,
                         origin_key, origin_id)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, ?, ?)
                    """,
                    (
                        reminder.id, reminder.created_by, reminder.assigned_to,
                        reminder.title, reminder.message, to_db_time(reminder.fire_at),
                        reminder.status.value, reminder.priority.value,
                        int(reminder.is_recurring),
                        self._to_column("recurrence_pattern", reminder.recurrence_pattern),
                        int(reminder.action_required), reminder.action_url,
                        self._to_column("data", reminder.data),
                        to_db_time(reminder.triggered_at),
                        to_db_time(reminder.completed_at),
                        to_db_time(reminder.acknowledged_at),
                        to_db_time(created_at), to_db_time(updated_at),
                        reminder.origin_key, reminder.origin_id,
                    ),
                )
                row = conn.execute(
                    "SELECT * FROM reminders WHERE id = ?", (reminder.id,)
                ).fetchone()
        except sqlite3.IntegrityError as exc:
            raise DuplicateError(f"Reminder {reminder.id} already exists: {exc}") from exc

        stored = self._row_to_reminder(row)
        logger.info(
            "Reminder inserted: %s '%s' for %s at %s",
            stored.id, stored.title, stored.assigned_to, row["fire_at"],
        )
        return stored

    def conditional_update(
        self,
        reminder_id: str,
        expected_status: ReminderStatus,
        patch: dict[str, Any],
        now: datetime | None = None,
        expected_null: Iterable[str] = (),
    ) -> Reminder:
        """Apply `patch` only if the reminder is still in `expected_status`.

        Columns named in `expected_null` must also still be NULL, which keeps
        set-once timestamps from being overwritten by a concurrent writer.

        Raises:
            NotFound: no live reminder with that id.
            PreconditionFailed: the reminder exists but its status differs.
        """
        expected_null = tuple(expected_null)
        unknown = (set(patch) | set(expected_null)) - _PATCHABLE
        if unknown:
            raise ValueError(f"Cannot patch columns: {sorted(unknown)}")

        now = now or datetime.now(timezone.utc)
        columns = sorted(patch)
        assignments = ", ".join(f"{c} = ?" for c in columns)
        params: list = [self._to_column(c, patch[c]) for c in columns]
        params.extend([to_db_time(now), reminder_id, expected_status.value])
        null_guard = "".join(f" AND {c} IS NULL" for c in expected_null)

        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE reminders SET {assignments}, updated_at = ? "
                f"WHERE id = ? AND status = ? AND deleted_at IS NULL{null_guard}",
                params,
            )
            row = conn.execute(
                "SELECT * FROM reminders WHERE id = ? AND deleted_at IS NULL",
                (reminder_id,),
            ).fetchone()

        if row is None:
            raise NotFound(f"Reminder {reminder_id} not found")
        if cursor.rowcount == 0:
            raise PreconditionFailed(reminder_id, expected_status.value, row["status"])

        logger.debug("Reminder %s updated: %s", reminder_id, ", ".join(columns))
        return self._row_to_reminder(row)

    def soft_delete(self, reminder_id: str, now: datetime | None = None) -> None:
        """Mark a reminder deleted. Raises NotFound if missing or already deleted."""
        stamp = to_db_time(now or datetime.now(timezone.utc))
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE reminders SET deleted_at = ?, updated_at = ? "
                "WHERE id = ? AND deleted_at IS NULL",
                (stamp, stamp, reminder_id),
            )
        if cursor.rowcount == 0:
            raise NotFound(f"Reminder {reminder_id} not found")
        logger.info("Reminder %s soft-deleted", reminder_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, reminder_id: str) -> Reminder | None:
        """Fetch a single live reminder by id."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM reminders WHERE id = ? AND deleted_at IS NULL",
                (reminder_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_reminder(row)

    def find_by_origin_key(self, origin_key: str) -> Reminder | None:
        """Return the successor synthesized under `origin_key`, deleted or not."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM reminders WHERE origin_key = ?", (origin_key,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_reminder(row)

    def query(self, filters: ReminderFilter | None = None) -> list[Reminder]:
        """Return live reminders matching `filters`, ordered by fire_at ascending."""
        filters = filters or ReminderFilter()
        conditions: list[str] = ["deleted_at IS NULL"]
        params: list = []

        if filters.assigned_to is not None:
            conditions.append("assigned_to = ?")
            params.append(filters.assigned_to)
        if filters.created_by is not None:
            conditions.append("created_by = ?")
            params.append(filters.created_by)
        if filters.status is not None:
            conditions.append("status = ?")
            params.append(ReminderStatus(filters.status).value)
        if filters.statuses:
            conditions.append(
                "status IN (" + ", ".join("?" for _ in filters.statuses) + ")"
            )
            params.extend(ReminderStatus(s).value for s in filters.statuses)
        if filters.priority is not None:
            conditions.append("priority = ?")
            params.append(ReminderPriority(filters.priority).value)
        if filters.is_recurring is not None:
            conditions.append("is_recurring = ?")
            params.append(int(filters.is_recurring))
        if filters.fire_at_from is not None:
            conditions.append("fire_at >= ?")
            params.append(to_db_time(filters.fire_at_from))
        if filters.fire_at_to is not None:
            conditions.append("fire_at <= ?")
            params.append(to_db_time(filters.fire_at_to))

        query = "SELECT * FROM reminders WHERE " + " AND ".join(conditions)
        query += " ORDER BY fire_at, created_at"

        limit = filters.limit
        if filters.offset and not limit:
            from src.config import settings
            limit = settings.DEFAULT_PAGE_SIZE
        if limit:
            query += " LIMIT ?"
            params.append(limit)
            if filters.offset:
                query += " OFFSET ?"
                params.append(filters.offset)

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()

        return [self._row_to_reminder(r) for r in rows]

    def find_due(self, now: datetime, limit: int | None = None) -> list[Reminder]:
        """Scheduled reminders whose fire time has arrived, oldest first."""
        return self.query(ReminderFilter(
            status=ReminderStatus.SCHEDULED,
            fire_at_to=now,
            limit=limit,
        ))


class PrincipalDB(_SQLiteDB):
    """SQLite-backed directory of principals."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS principals (
                    principal_id     TEXT PRIMARY KEY,
                    display_name     TEXT NOT NULL,
                    is_scheduler     INTEGER NOT NULL DEFAULT 0,
                    telegram_chat_id INTEGER,
                    created_at       TEXT NOT NULL
                )
            """)
        logger.debug("Principals table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_principal(row: sqlite3.Row) -> Principal:
        return Principal(
            principal_id=row["principal_id"],
            display_name=row["display_name"],
            is_scheduler=bool(row["is_scheduler"]),
            telegram_chat_id=row["telegram_chat_id"],
            created_at=row["created_at"],
        )

    def add_principal(
        self,
        principal_id: str,
        display_name: str,
        is_scheduler: bool = False,
        telegram_chat_id: int | None = None,
    ) -> Principal:
        """Register a new principal."""
        now = datetime.now(timezone.utc).isoformat()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO principals
                        (principal_id, display_name, is_scheduler, telegram_chat_id, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (principal_id, display_name, int(is_scheduler), telegram_chat_id, now),
                )
        except sqlite3.IntegrityError as exc:
            raise DuplicateError(f"Principal {principal_id} already exists") from exc

        principal = Principal(
            principal_id=principal_id,
            display_name=display_name,
            is_scheduler=is_scheduler,
            telegram_chat_id=telegram_chat_id,
            created_at=now,
        )
        logger.info(
            "Principal registered: %s '%s'%s",
            principal_id, display_name, " (scheduler)" if is_scheduler else "",
        )
        return principal

    def get_principal(self, principal_id: str) -> Principal | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM principals WHERE principal_id = ?", (principal_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_principal(row)

    def find_by_chat_id(self, chat_id: int) -> Principal | None:
        """Resolve the principal linked to a Telegram chat."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM principals WHERE telegram_chat_id = ?", (chat_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_principal(row)

    def set_chat_id(self, principal_id: str, chat_id: int | None) -> None:
        """Link (or unlink) a principal's Telegram chat for delivery."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE principals SET telegram_chat_id = ? WHERE principal_id = ?",
                (chat_id, principal_id),
            )
        if cursor.rowcount == 0:
            raise NotFound(f"Principal {principal_id} not found")
        logger.info("Chat id set for principal %s", principal_id)

    def list_principals(self) -> list[Principal]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM principals ORDER BY created_at"
            ).fetchall()
        return [self._row_to_principal(r) for r in rows]
