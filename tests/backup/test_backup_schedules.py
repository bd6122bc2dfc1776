"""Tests for backup schedule slot math."""

from datetime import UTC, datetime

import pytest

from supamanager.backup.models import BackupSchedule
from supamanager.backup.schedules import is_due, latest_slot, next_run, parse_time
from supamanager.core.errors import ValidationError

T0 = datetime(2026, 3, 4, 10, 15, tzinfo=UTC)  # a Wednesday


def _schedule(**kwargs) -> BackupSchedule:
    kwargs.setdefault("created_at", datetime(2026, 1, 1, tzinfo=UTC))
    return BackupSchedule(project_id="p1", **kwargs)


class TestParseTime:
    def test_valid(self):
        assert parse_time("02:30") == (2, 30)

    @pytest.mark.parametrize("raw", ["24:00", "12:60", "noon", "1:2:3"])
    def test_invalid(self, raw):
        with pytest.raises(ValidationError):
            parse_time(raw)


class TestSlots:
    def test_daily_slot_today(self):
        assert latest_slot(_schedule(time="02:00"), T0) == datetime(2026, 3, 4, 2, 0, tzinfo=UTC)

    def test_daily_slot_yesterday(self):
        assert latest_slot(_schedule(time="23:00"), T0) == datetime(2026, 3, 3, 23, 0, tzinfo=UTC)

    def test_hourly_uses_minute_only(self):
        schedule = _schedule(frequency="hourly", time="07:45")
        assert latest_slot(schedule, T0) == datetime(2026, 3, 4, 9, 45, tzinfo=UTC)
        assert next_run(schedule, T0) == datetime(2026, 3, 4, 10, 45, tzinfo=UTC)

    def test_weekly(self):
        schedule = _schedule(frequency="weekly", time="03:00", weekday=0)
        assert latest_slot(schedule, T0) == datetime(2026, 3, 2, 3, 0, tzinfo=UTC)
        assert next_run(schedule, T0) == datetime(2026, 3, 9, 3, 0, tzinfo=UTC)

    def test_weekday_range(self):
        with pytest.raises(ValidationError):
            _schedule(frequency="weekly", weekday=7)

    def test_unknown_frequency(self):
        with pytest.raises(ValidationError):
            _schedule(frequency="monthly")


class TestIsDue:
    def test_due_after_creation(self):
        assert is_due(_schedule(time="02:00"), T0)

    def test_not_due_before_first_slot(self):
        schedule = _schedule(time="02:00", created_at=datetime(2026, 3, 4, 3, 0, tzinfo=UTC))
        assert not is_due(schedule, T0)

    def test_not_due_after_run(self):
        schedule = _schedule(time="02:00", last_run_at=datetime(2026, 3, 4, 2, 5, tzinfo=UTC))
        assert not is_due(schedule, T0)

    def test_disabled(self):
        assert not is_due(_schedule(time="02:00", enabled=False), T0)
