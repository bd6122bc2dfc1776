"""Schedule math for automated backups.

A schedule has one slot per period (hour, day or week). The driver asks
:func:`is_due` on every tick; a schedule is due when the most recent slot at
or before ``now`` is later than its last run, so any number of missed slots
collapses into a single catch-up run.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from supamanager.backup.models import BackupSchedule, ScheduleFrequency
from supamanager.core.errors import ValidationError

_PERIODS = {
    ScheduleFrequency.HOURLY: timedelta(hours=1),
    ScheduleFrequency.DAILY: timedelta(days=1),
    ScheduleFrequency.WEEKLY: timedelta(weeks=1),
}


def parse_time(raw: str) -> tuple[int, int]:
    """Parse "HH:MM" into (hour, minute)."""
    try:
        hour_text, minute_text = raw.strip().split(":")
        hour, minute = int(hour_text), int(minute_text)
    except (AttributeError, ValueError):
        raise ValidationError(f"schedule time must be HH:MM, got {raw!r}") from None
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValidationError(f"schedule time out of range: {raw!r}")
    return hour, minute


def latest_slot(schedule: BackupSchedule, now: datetime) -> datetime:
    """Most recent scheduled instant at or before ``now``."""
    hour, minute = parse_time(schedule.time)
    if schedule.frequency == ScheduleFrequency.HOURLY:
        slot = now.replace(minute=minute, second=0, microsecond=0)
        if slot > now:
            slot -= _PERIODS[ScheduleFrequency.HOURLY]
        return slot

    slot = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if schedule.frequency == ScheduleFrequency.WEEKLY:
        slot -= timedelta(days=(slot.weekday() - schedule.weekday) % 7)
    if slot > now:
        slot -= _PERIODS[schedule.frequency]
    return slot


def next_run(schedule: BackupSchedule, now: datetime) -> datetime:
    """First scheduled instant strictly after ``now``."""
    return latest_slot(schedule, now) + _PERIODS[schedule.frequency]


def is_due(schedule: BackupSchedule, now: datetime) -> bool:
    """True when a slot has passed since the last run (or since creation)."""
    if not schedule.enabled:
        return False
    slot = latest_slot(schedule, now)
    reference = schedule.last_run_at or schedule.created_at
    return slot > reference
