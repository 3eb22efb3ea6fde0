from __future__ import annotations

from datetime import datetime, time, timezone

import pytest

from postflow.errors import ValidationError
from postflow.services.domain import PublishingSchedule, Weekday
from postflow.services.slots import bucket_start, compute_schedule_time


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


MONDAY_ONLY = PublishingSchedule(preferred_days=frozenset({"monday"}))


def test_tuesday_goes_to_next_monday():
    assert compute_schedule_time(MONDAY_ONLY, utc(2026, 1, 6, 10, 0)) == utc(2026, 1, 12, 9, 0)


def test_same_day_before_slot_keeps_today():
    assert compute_schedule_time(MONDAY_ONLY, utc(2026, 1, 5, 8, 0)) == utc(2026, 1, 5, 9, 0)


def test_same_day_after_slot_jumps_a_week():
    assert compute_schedule_time(MONDAY_ONLY, utc(2026, 1, 5, 9, 30)) == utc(2026, 1, 12, 9, 0)


def test_exactly_at_slot_is_not_after_now():
    assert compute_schedule_time(MONDAY_ONLY, utc(2026, 1, 5, 9, 0)) == utc(2026, 1, 12, 9, 0)


def test_result_depends_only_on_the_day():
    early = compute_schedule_time(MONDAY_ONLY, utc(2026, 1, 6, 0, 5))
    late = compute_schedule_time(MONDAY_ONLY, utc(2026, 1, 6, 23, 55))
    assert early == late == utc(2026, 1, 12, 9, 0)


def test_picks_nearest_preferred_day():
    schedule = PublishingSchedule(preferred_days=frozenset({Weekday.monday, Weekday.wednesday, Weekday.friday}))
    assert compute_schedule_time(schedule, utc(2026, 1, 6, 10, 0)) == utc(2026, 1, 7, 9, 0)
    assert compute_schedule_time(schedule, utc(2026, 1, 8, 10, 0)) == utc(2026, 1, 9, 9, 0)
    assert compute_schedule_time(schedule, utc(2026, 1, 10, 10, 0)) == utc(2026, 1, 12, 9, 0)


def test_past_slot_today_searches_again_from_a_week_later():
    schedule = PublishingSchedule(preferred_days=frozenset({"monday", "wednesday"}))
    # Wednesday is skipped; the search restarts from next Monday
    assert compute_schedule_time(schedule, utc(2026, 1, 5, 10, 0)) == utc(2026, 1, 12, 9, 0)


def test_slot_is_wall_clock_time_in_schedule_zone():
    schedule = PublishingSchedule(preferred_days=frozenset({"monday"}), time_zone="Europe/Berlin")
    # 08:30 UTC is 09:30 in Berlin, so today's 09:00 slot is gone
    assert compute_schedule_time(schedule, utc(2026, 1, 5, 8, 30)) == utc(2026, 1, 12, 8, 0)
    assert compute_schedule_time(schedule, utc(2026, 1, 5, 7, 30)) == utc(2026, 1, 5, 8, 0)


def test_custom_preferred_time():
    schedule = PublishingSchedule(preferred_days=frozenset({"friday"}), preferred_time="17:45")
    assert schedule.preferred_time == time(17, 45)
    assert compute_schedule_time(schedule, utc(2026, 1, 6, 10, 0)) == utc(2026, 1, 9, 17, 45)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"preferred_days": frozenset()},
        {"preferred_days": frozenset({"someday"})},
        {"time_zone": "Mars/Olympus_Mons"},
        {"preferred_time": "25:99"},
        {"minimum_interval_hours": 0},
    ],
)
def test_invalid_schedule(kwargs):
    with pytest.raises(ValidationError):
        PublishingSchedule(**kwargs)


def test_bucket_start_floors_to_boundary():
    assert bucket_start(utc(2026, 1, 12, 10, 7, 31), 5) == utc(2026, 1, 12, 10, 5)
    assert bucket_start(utc(2026, 1, 12, 10, 5, 0), 5) == utc(2026, 1, 12, 10, 5)
    assert bucket_start(utc(2026, 1, 12, 10, 59, 59), 15) == utc(2026, 1, 12, 10, 45)
