"""Shared test fixtures and configuration.

Sets up fake environment variables so src.config doesn't sys.exit(),
and provides common fixtures like a temp DB and a controllable clock.
"""

import os

# Patch env vars BEFORE any src imports
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "fake-token-for-tests")
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("OPERATOR_CHAT_IDS", "")
os.environ.setdefault("TIMEZONE", "UTC")

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest


class FakeClock:
    """Callable clock that tests can move forward."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path."""
    return str(tmp_path / "test_reminders.db")


@pytest.fixture
def reminder_db(tmp_db_path):
    """Return a ReminderDB instance backed by a temp file."""
    from src.data.db import ReminderDB
    return ReminderDB(db_path=tmp_db_path, timeout=5.0)


@pytest.fixture
def principal_db(tmp_db_path):
    """Return a PrincipalDB instance sharing the temp file."""
    from src.data.db import PrincipalDB
    return PrincipalDB(db_path=tmp_db_path, timeout=5.0)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def publisher():
    pub = AsyncMock()
    pub.publish = AsyncMock()
    pub.alert_operator = AsyncMock()
    return pub


@pytest.fixture
def service(reminder_db, publisher, clock):
    from src.core.reminder_service import ReminderService
    return ReminderService(reminder_db, publisher=publisher, clock=clock)


@pytest.fixture
def scheduler():
    from src.data.models import Principal
    return Principal(principal_id="boss", display_name="Dana", is_scheduler=True)


@pytest.fixture
def assignee():
    from src.data.models import Principal
    return Principal(principal_id="emp-1", display_name="Amit")


@pytest.fixture
def other_user():
    from src.data.models import Principal
    return Principal(principal_id="emp-2", display_name="Noa")


@pytest.fixture
def make_payload(clock):
    """Factory for a valid create payload, fire_at one hour after the clock."""

    def _make(**overrides):
        payload = {
            "assigned_to": "emp-1",
            "title": "Submit timesheet",
            "message": "Weekly timesheet is due.",
            "fire_at": clock.now + timedelta(hours=1),
        }
        payload.update(overrides)
        return payload

    return _make
