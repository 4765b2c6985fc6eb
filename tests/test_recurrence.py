"""Tests for src.core.recurrence — rule parsing, next occurrence, successors."""

from datetime import date, datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from src.core.errors import (
    DuplicateError,
    InvalidRecurrenceRule,
    RecurrenceComputationError,
)
from src.core.recurrence import (
    RecurrenceRule,
    next_occurrence,
    normalize_pattern,
    parse_rule,
    reanchor_pattern,
    successor_key,
    synthesize_successor,
)
from src.data.models import Reminder, ReminderPriority, ReminderStatus

UTC = timezone.utc


def _at(year, month, day, hour=9, minute=0):
    return datetime(year, month, day, hour, minute, tzinfo=UTC)


def _completed(**overrides):
    fields = dict(
        id="r-1",
        created_by="boss",
        assigned_to="emp-1",
        title="Water plants",
        message="Office plants need water.",
        fire_at=_at(2026, 3, 2),
        status=ReminderStatus.COMPLETED,
        priority=ReminderPriority.HIGH,
        is_recurring=True,
        recurrence_pattern="daily",
        action_url="https://plants.example",
        data={"room": "4B"},
        completed_at=_at(2026, 3, 2, 10, 15),
    )
    fields.update(overrides)
    return Reminder(**fields)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class TestParseRule:
    def test_shorthand(self):
        rule = parse_rule("Daily")
        assert rule.type == "daily"
        assert rule.interval == 1

    def test_dict(self):
        rule = parse_rule({"type": "weekly", "interval": 2, "days_of_week": [5, 1, 5]})
        assert rule.interval == 2
        assert rule.days_of_week == [1, 5]

    def test_json_string(self):
        rule = parse_rule('{"type": "monthly", "day_of_month": 15, "end_date": "2026-12-31"}')
        assert rule.day_of_month == 15
        assert rule.end_date == date(2026, 12, 31)

    def test_rule_instance_passthrough(self):
        rule = RecurrenceRule(type="yearly")
        assert parse_rule(rule) is rule

    @pytest.mark.parametrize("pattern", [
        "fortnightly",
        "",
        "{not json",
        {"type": "weekly", "interval": 0},
        {"type": "weekly", "days_of_week": [0]},
        {"type": "weekly", "days_of_week": [8]},
        {"type": "monthly", "day_of_month": 32},
        {"interval": 2},
        None,
        42,
    ])
    def test_invalid(self, pattern):
        with pytest.raises(InvalidRecurrenceRule):
            parse_rule(pattern)


class TestNormalizePattern:
    def test_shorthand_lowercased(self):
        assert normalize_pattern(" WEEKLY ", _at(2026, 3, 2)) == "weekly"

    def test_monthly_shorthand_expanded(self):
        assert normalize_pattern("monthly", _at(2026, 1, 31)) == {"type": "monthly", "day_of_month": 31}

    def test_yearly_shorthand_expanded(self):
        assert normalize_pattern("yearly", _at(2026, 7, 14)) == {"type": "yearly", "day_of_month": 14}

    def test_monthly_dict_keeps_explicit_day(self):
        pattern = {"type": "monthly", "day_of_month": 15}
        assert normalize_pattern(pattern, _at(2026, 1, 31)) == pattern

    def test_dict_drops_defaults(self):
        assert normalize_pattern({"type": "daily", "interval": 1}, _at(2026, 3, 2)) == {"type": "daily"}

    def test_end_date_serialized(self):
        result = normalize_pattern({"type": "daily", "end_date": "2026-04-01"}, _at(2026, 3, 2))
        assert result == {"type": "daily", "end_date": "2026-04-01"}

    def test_invalid_raises(self):
        with pytest.raises(InvalidRecurrenceRule):
            normalize_pattern("hourly", _at(2026, 3, 2))


class TestReanchorPattern:
    def test_day_follows_fire_at(self):
        pattern = {"type": "monthly", "day_of_month": 31}
        assert reanchor_pattern(pattern, _at(2026, 3, 31), _at(2026, 3, 15)) == {
            "type": "monthly", "day_of_month": 15,
        }

    def test_yearly_day_follows_fire_at(self):
        pattern = {"type": "yearly", "day_of_month": 29}
        assert reanchor_pattern(pattern, _at(2028, 2, 29), _at(2028, 3, 5)) == {
            "type": "yearly", "day_of_month": 5,
        }

    def test_unrelated_day_kept(self):
        pattern = {"type": "monthly", "day_of_month": 1}
        assert reanchor_pattern(pattern, _at(2026, 3, 20), _at(2026, 3, 25)) is pattern

    def test_other_types_untouched(self):
        assert reanchor_pattern("weekly", _at(2026, 3, 2), _at(2026, 3, 4)) == "weekly"

    def test_unparseable_pattern_untouched(self):
        assert reanchor_pattern("every blue moon", _at(2026, 3, 2), _at(2026, 3, 4)) == "every blue moon"


# ---------------------------------------------------------------------------
# Next occurrence
# ---------------------------------------------------------------------------


class TestNextOccurrence:
    def test_daily(self):
        assert next_occurrence(_at(2026, 3, 2, 8, 30), "daily") == _at(2026, 3, 3, 8, 30)

    def test_daily_interval(self):
        assert next_occurrence(_at(2026, 3, 2), {"type": "daily", "interval": 3}) == _at(2026, 3, 5)

    def test_weekly(self):
        assert next_occurrence(_at(2026, 3, 2), "weekly") == _at(2026, 3, 9)

    def test_weekly_interval(self):
        assert next_occurrence(_at(2026, 3, 2), {"type": "weekly", "interval": 2}) == _at(2026, 3, 16)

    def test_weekly_days_same_week(self):
        # 2026-03-02 is a Monday; next listed day is Thursday
        rule = {"type": "weekly", "days_of_week": [1, 4]}
        assert next_occurrence(_at(2026, 3, 2), rule) == _at(2026, 3, 5)

    def test_weekly_days_wrap(self):
        # Thursday -> next Monday
        rule = {"type": "weekly", "days_of_week": [1, 4]}
        assert next_occurrence(_at(2026, 3, 5), rule) == _at(2026, 3, 9)

    def test_weekly_days_wrap_with_interval(self):
        # Thursday -> Monday two weeks on
        rule = {"type": "weekly", "interval": 2, "days_of_week": [1, 4]}
        assert next_occurrence(_at(2026, 3, 5), rule) == _at(2026, 3, 16)

    def test_weekly_single_day_is_a_week(self):
        rule = {"type": "weekly", "days_of_week": [3]}
        assert next_occurrence(_at(2026, 3, 4), rule) == _at(2026, 3, 11)

    def test_monthly(self):
        assert next_occurrence(_at(2026, 3, 15), "monthly") == _at(2026, 4, 15)

    def test_monthly_clamps_to_month_end(self):
        assert next_occurrence(_at(2026, 1, 31), "monthly") == _at(2026, 2, 28)

    def test_monthly_anchor_day_restored_after_short_month(self):
        rule = {"type": "monthly", "day_of_month": 31}
        assert next_occurrence(_at(2026, 2, 28), rule) == _at(2026, 3, 31)

    def test_monthly_crosses_year(self):
        assert next_occurrence(_at(2026, 12, 10), {"type": "monthly", "interval": 2}) == _at(2027, 2, 10)

    def test_yearly(self):
        assert next_occurrence(_at(2026, 6, 1), "yearly") == _at(2027, 6, 1)

    def test_yearly_leap_day_clamps(self):
        assert next_occurrence(_at(2028, 2, 29), "yearly") == _at(2029, 2, 28)

    def test_yearly_leap_day_returns_in_leap_years(self):
        pattern = normalize_pattern("yearly", _at(2028, 2, 29))
        assert pattern == {"type": "yearly", "day_of_month": 29}

        fire_at = _at(2028, 2, 29)
        seen = []
        for _ in range(4):
            fire_at = next_occurrence(fire_at, pattern)
            seen.append(fire_at)
        assert seen == [_at(2029, 2, 28), _at(2030, 2, 28), _at(2031, 2, 28), _at(2032, 2, 29)]

    def test_end_date_inclusive(self):
        rule = {"type": "daily", "end_date": "2026-03-03"}
        assert next_occurrence(_at(2026, 3, 2), rule) == _at(2026, 3, 3)

    def test_end_date_passed_returns_none(self):
        rule = {"type": "daily", "end_date": "2026-03-02"}
        assert next_occurrence(_at(2026, 3, 2), rule) is None

    def test_preserves_time_of_day(self):
        result = next_occurrence(_at(2026, 3, 2, 23, 45), "weekly")
        assert (result.hour, result.minute) == (23, 45)


# ---------------------------------------------------------------------------
# Successor synthesis
# ---------------------------------------------------------------------------


class TestSynthesizeSuccessor:
    def test_creates_next_instance(self, reminder_db):
        completed = _completed()
        successor = synthesize_successor(reminder_db, completed)

        assert successor is not None
        assert successor.id != completed.id
        assert successor.status is ReminderStatus.SCHEDULED
        assert successor.fire_at == _at(2026, 3, 3)
        assert successor.assigned_to == "emp-1"
        assert successor.created_by == "boss"
        assert successor.priority is ReminderPriority.HIGH
        assert successor.recurrence_pattern == "daily"
        assert successor.action_url == "https://plants.example"
        assert successor.data == {"room": "4B"}
        assert successor.origin_id == "r-1"
        assert successor.origin_key == successor_key(completed)
        assert successor.acknowledged_at is None
        assert successor.completed_at is None
        assert reminder_db.get(successor.id) is not None

    def test_cadence_follows_fire_at_not_completion(self, reminder_db):
        completed = _completed(completed_at=_at(2026, 3, 6, 17, 0))
        successor = synthesize_successor(reminder_db, completed)
        assert successor.fire_at == _at(2026, 3, 3)

    def test_idempotent_for_same_completion(self, reminder_db):
        completed = _completed()
        first = synthesize_successor(reminder_db, completed)
        second = synthesize_successor(reminder_db, completed)
        assert first.id == second.id
        assert len(reminder_db.query()) == 1

    def test_data_is_copied(self, reminder_db):
        completed = _completed()
        successor = synthesize_successor(reminder_db, completed)
        completed.data["room"] = "changed"
        assert reminder_db.get(successor.id).data == {"room": "4B"}

    def test_not_recurring_returns_none(self, reminder_db):
        assert synthesize_successor(reminder_db, _completed(is_recurring=False)) is None
        assert reminder_db.query() == []

    def test_not_completed_raises(self, reminder_db):
        with pytest.raises(ValueError):
            synthesize_successor(reminder_db, _completed(status=ReminderStatus.TRIGGERED))

    def test_series_ended(self, reminder_db, caplog):
        completed = _completed(recurrence_pattern={"type": "daily", "end_date": "2026-03-02"})
        with caplog.at_level("WARNING"):
            assert synthesize_successor(reminder_db, completed) is None
        assert "ended" in caplog.text
        assert reminder_db.query() == []

    def test_bad_stored_pattern_raises(self, reminder_db, caplog):
        completed = _completed(recurrence_pattern="every full moon")
        with caplog.at_level("ERROR"):
            with pytest.raises(RecurrenceComputationError) as exc_info:
                synthesize_successor(reminder_db, completed)
        assert exc_info.value.reminder_id == "r-1"
        assert exc_info.value.pattern == "every full moon"
        assert "r-1" in caplog.text
        assert reminder_db.query() == []

    def test_missing_pattern_raises(self, reminder_db):
        with pytest.raises(RecurrenceComputationError):
            synthesize_successor(reminder_db, _completed(recurrence_pattern=None))

    def test_lost_insert_race_returns_winner(self):
        completed = _completed()
        winner = MagicMock(id="winner")
        store = MagicMock()
        store.find_by_origin_key.side_effect = [None, winner]
        store.insert.side_effect = DuplicateError("origin key taken")

        assert synthesize_successor(store, completed) is winner
        assert store.find_by_origin_key.call_count == 2

    def test_duplicate_without_winner_propagates(self):
        store = MagicMock()
        store.find_by_origin_key.return_value = None
        store.insert.side_effect = DuplicateError("id collision")
        with pytest.raises(DuplicateError):
            synthesize_successor(store, _completed())

    def test_successor_key_distinguishes_completions(self):
        first = _completed(completed_at=_at(2026, 3, 2, 10, 0))
        second = _completed(completed_at=_at(2026, 3, 2, 10, 1))
        assert successor_key(first) != successor_key(second)
        assert successor_key(first).startswith("r-1:")


class TestRecurrenceRuleModel:
    def test_defaults(self):
        rule = RecurrenceRule(type="daily")
        assert rule.interval == 1
        assert rule.days_of_week is None
        assert rule.day_of_month is None
        assert rule.end_date is None

    def test_empty_days_normalized(self):
        assert RecurrenceRule(type="weekly", days_of_week=[]).days_of_week is None

    def test_type_case_insensitive(self):
        assert RecurrenceRule(type="  Monthly ").type == "monthly"

    def test_chain_of_successors(self, reminder_db):
        completed = _completed()
        fire_times = []
        for i in range(3):
            successor = synthesize_successor(reminder_db, completed)
            fire_times.append(successor.fire_at)
            completed = _completed(
                id=successor.id,
                fire_at=successor.fire_at,
                completed_at=successor.fire_at + timedelta(hours=1),
            )
        assert fire_times == [_at(2026, 3, 3), _at(2026, 3, 4), _at(2026, 3, 5)]
