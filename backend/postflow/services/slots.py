"""
Publish slot assignment from a recurring weekly schedule.

Each post gets the next preferred weekday at the preferred wall-clock time
in the schedule's zone. Posts scheduled in the same call are not staggered
by ``minimum_interval_hours``.
"""
from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

from postflow.services.domain import PublishingSchedule


def _next_preferred_date(start: date, schedule: PublishingSchedule) -> date:
    for offset in range(7):
        candidate = start + timedelta(days=offset)
        if candidate.weekday() in schedule.preferred_days:
            return candidate
    # preferred_days is validated non-empty, so a week always contains a hit
    raise RuntimeError("No preferred weekday found within a week")


def compute_schedule_time(schedule: PublishingSchedule, now: datetime) -> datetime:
    """Earliest preferred slot strictly after ``now``, returned in UTC.

    A slot that falls today but is already past jumps a full week ahead and
    re-searches the weekday set from there.
    """
    tz = schedule.tz
    local_now = now.astimezone(tz)

    slot_date = _next_preferred_date(local_now.date(), schedule)
    slot = datetime.combine(slot_date, schedule.preferred_time, tzinfo=tz)
    if slot <= local_now:
        slot_date = _next_preferred_date(slot_date + timedelta(days=7), schedule)
        slot = datetime.combine(slot_date, schedule.preferred_time, tzinfo=tz)

    return slot.astimezone(timezone.utc)


def bucket_start(moment: datetime, bucket_minutes: int) -> datetime:
    """Floor ``moment`` to a ``bucket_minutes`` boundary."""
    floored = moment.replace(second=0, microsecond=0)
    return floored - timedelta(minutes=floored.minute % bucket_minutes)
