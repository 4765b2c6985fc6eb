"""Tests for src.core.sweeper — the periodic trigger sweep."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.core.errors import PreconditionFailed
from src.core.sweeper import SweepReport, run_sweep
from src.data.models import ReminderStatus, TransitionKind


async def _create_due(service, scheduler, make_payload, clock, count=1, **overrides):
    created = [await service.create(scheduler, make_payload(**overrides)) for _ in range(count)]
    clock.advance(hours=2)
    return created


class TestRunSweep:
    @pytest.mark.asyncio
    async def test_nothing_due(self, reminder_db, publisher, clock):
        report = await run_sweep(reminder_db, publisher, clock=clock)
        assert report == SweepReport()
        publisher.publish.assert_not_called()

    @pytest.mark.asyncio
    async def test_triggers_due_reminders(
        self, service, reminder_db, publisher, scheduler, make_payload, clock,
    ):
        created = await _create_due(service, scheduler, make_payload, clock, count=2)

        report = await run_sweep(reminder_db, publisher, clock=clock)

        assert report.due == 2
        assert sorted(report.triggered) == sorted(r.id for r in created)
        for r in created:
            stored = reminder_db.get(r.id)
            assert stored.status is ReminderStatus.TRIGGERED
            assert stored.triggered_at == clock.now
        assert publisher.publish.await_count == 2
        kinds = {c.args[1] for c in publisher.publish.await_args_list}
        assert kinds == {TransitionKind.TRIGGERED}

    @pytest.mark.asyncio
    async def test_future_reminders_untouched(
        self, service, reminder_db, publisher, scheduler, make_payload, clock,
    ):
        reminder = await service.create(scheduler, make_payload(fire_at=clock.now + timedelta(days=1)))
        clock.advance(hours=2)
        report = await run_sweep(reminder_db, publisher, clock=clock)
        assert report.due == 0
        assert reminder_db.get(reminder.id).status is ReminderStatus.SCHEDULED

    @pytest.mark.asyncio
    async def test_second_sweep_does_not_retrigger(
        self, service, reminder_db, publisher, scheduler, make_payload, clock,
    ):
        await _create_due(service, scheduler, make_payload, clock)
        await run_sweep(reminder_db, publisher, clock=clock)
        report = await run_sweep(reminder_db, publisher, clock=clock)
        assert report.due == 0
        assert publisher.publish.await_count == 1

    @pytest.mark.asyncio
    async def test_completed_before_sweep_is_not_triggered(
        self, service, reminder_db, publisher, scheduler, assignee, make_payload, clock,
    ):
        (reminder,) = await _create_due(service, scheduler, make_payload, clock)
        await service.complete(assignee, reminder.id)
        publisher.publish.reset_mock()

        report = await run_sweep(reminder_db, publisher, clock=clock)

        assert report.due == 0
        assert reminder_db.get(reminder.id).status is ReminderStatus.COMPLETED
        publisher.publish.assert_not_called()

    @pytest.mark.asyncio
    async def test_acknowledged_reminder_still_triggers(
        self, service, reminder_db, publisher, scheduler, assignee, make_payload, clock,
    ):
        (reminder,) = await _create_due(service, scheduler, make_payload, clock)
        await service.acknowledge(assignee, reminder.id)
        report = await run_sweep(reminder_db, publisher, clock=clock)
        assert report.triggered == [reminder.id]
        assert reminder_db.get(reminder.id).acknowledged_at is not None

    @pytest.mark.asyncio
    async def test_lost_race_is_skipped(
        self, service, reminder_db, publisher, scheduler, make_payload, clock,
    ):
        first, second = await _create_due(service, scheduler, make_payload, clock, count=2)
        original_update = reminder_db.conditional_update

        def racing_update(reminder_id, expected_status, patch, **kwargs):
            if reminder_id == first.id:
                raise PreconditionFailed(reminder_id, expected_status.value, "completed")
            return original_update(reminder_id, expected_status, patch, **kwargs)

        reminder_db.conditional_update = racing_update
        report = await run_sweep(reminder_db, publisher, clock=clock)

        assert report.skipped == [first.id]
        assert report.triggered == [second.id]
        assert report.failed == []

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_sweep(
        self, service, reminder_db, publisher, scheduler, make_payload, clock, caplog,
    ):
        first, second = await _create_due(service, scheduler, make_payload, clock, count=2)
        original_update = reminder_db.conditional_update

        def flaky_update(reminder_id, expected_status, patch, **kwargs):
            if reminder_id == first.id:
                raise RuntimeError("disk on fire")
            return original_update(reminder_id, expected_status, patch, **kwargs)

        reminder_db.conditional_update = flaky_update
        with caplog.at_level("ERROR"):
            report = await run_sweep(reminder_db, publisher, clock=clock)

        assert report.failed == [first.id]
        assert report.triggered == [second.id]
        assert first.id in caplog.text

    @pytest.mark.asyncio
    async def test_delivery_failure_keeps_trigger(
        self, service, reminder_db, publisher, scheduler, make_payload, clock,
    ):
        (reminder,) = await _create_due(service, scheduler, make_payload, clock)
        publisher.publish.side_effect = RuntimeError("telegram down")

        report = await run_sweep(reminder_db, publisher, clock=clock)

        assert report.triggered == [reminder.id]
        assert report.undelivered == [reminder.id]
        assert reminder_db.get(reminder.id).status is ReminderStatus.TRIGGERED

    @pytest.mark.asyncio
    async def test_store_read_failure_returns_empty_report(self, publisher, clock):
        store = MagicMock()
        store.find_due.side_effect = RuntimeError("db gone")
        report = await run_sweep(store, publisher, clock=clock)
        assert report == SweepReport()

    @pytest.mark.asyncio
    async def test_batch_limit(self, service, reminder_db, publisher, scheduler, make_payload, clock):
        await _create_due(service, scheduler, make_payload, clock, count=3)
        report = await run_sweep(reminder_db, publisher, clock=clock, limit=2)
        assert report.due == 2
        report = await run_sweep(reminder_db, publisher, clock=clock, limit=2)
        assert report.due == 1

    @pytest.mark.asyncio
    async def test_works_without_publisher(self, service, reminder_db, scheduler, make_payload, clock):
        (reminder,) = await _create_due(service, scheduler, make_payload, clock)
        report = await run_sweep(reminder_db, clock=clock)
        assert report.triggered == [reminder.id]

    @pytest.mark.asyncio
    async def test_triggered_then_completed_with_successor(
        self, service, reminder_db, publisher, scheduler, assignee, make_payload, clock,
    ):
        (reminder,) = await _create_due(
            service, scheduler, make_payload, clock,
            is_recurring=True, recurrence_pattern="daily",
        )
        await run_sweep(reminder_db, publisher, clock=clock)
        result = await service.complete(assignee, reminder.id)

        assert result.successor.fire_at == reminder.fire_at + timedelta(days=1)
        clock.advance(days=1)
        report = await run_sweep(reminder_db, AsyncMock(), clock=clock)
        assert report.triggered == [result.successor.id]
