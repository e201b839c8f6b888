"""Pure helpers for work schedules and time windows."""

from __future__ import annotations

from datetime import date, datetime, timedelta, tzinfo
from typing import List, Optional, Protocol, Sequence

from .models import StatusType, TimeRange, WorkSchedule


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock in a fixed timezone."""

    def __init__(self, tz: Optional[tzinfo] = None) -> None:
        self._tz = tz

    def now(self) -> datetime:
        if self._tz is None:
            return datetime.now().astimezone()
        return datetime.now(self._tz)


class FixedClock:
    """Clock frozen at a given instant; ``advance`` moves it forward."""

    def __init__(self, instant: datetime) -> None:
        self._instant = instant

    def now(self) -> datetime:
        return self._instant

    def set(self, instant: datetime) -> None:
        self._instant = instant

    def advance(self, **kwargs: float) -> datetime:
        self._instant = self._instant + timedelta(**kwargs)
        return self._instant


def parse_time_of_day(value: str, reference: datetime) -> datetime:
    """Combine an ``HH:MM`` string with the calendar day of ``reference``."""

    try:
        hours_text, minutes_text = value.strip().split(":")
        hours, minutes = int(hours_text), int(minutes_text)
    except (AttributeError, ValueError) as exc:
        raise ValueError(f"Invalid time of day {value!r}. Use HH:MM") from exc
    if not (0 <= hours <= 23 and 0 <= minutes <= 59):
        raise ValueError(f"Invalid time of day {value!r}. Use HH:MM")
    return reference.replace(hour=hours, minute=minutes, second=0, microsecond=0)


def is_within_work_hours(instant: datetime, schedule: WorkSchedule) -> bool:
    start = parse_time_of_day(schedule.start_time, instant)
    end = parse_time_of_day(schedule.end_time, instant)
    return start <= instant <= end


def is_working_day(instant: datetime | date) -> bool:
    return instant.weekday() < 5


def is_same_day(first: datetime, second: datetime) -> bool:
    return first.date() == second.date()


def work_day_end(schedule: WorkSchedule, reference: datetime) -> datetime:
    return parse_time_of_day(schedule.end_time, reference)


def next_working_day_start(schedule: WorkSchedule, from_date: datetime) -> datetime:
    """Return the scheduled start on the first working day after ``from_date``."""

    day = from_date + timedelta(days=1)
    while not is_working_day(day):
        day += timedelta(days=1)
    return parse_time_of_day(schedule.start_time, day)


def expiration_for_status(
    status: StatusType,
    schedule: WorkSchedule,
    reference: datetime,
    end: datetime | None = None,
) -> datetime:
    if status in (StatusType.MEETING, StatusType.ON_LEAVE):
        return end or work_day_end(schedule, reference)
    if status is StatusType.OFF_DUTY:
        return next_working_day_start(schedule, reference)
    return work_day_end(schedule, reference)


def ranges_overlap(first: TimeRange, second: TimeRange) -> bool:
    # half-open: touching endpoints do not overlap
    return first.start < second.end and second.start < first.end


def is_expired(expires_at: datetime, now: datetime) -> bool:
    return now > expires_at


def merge_overlapping_ranges(ranges: Sequence[TimeRange]) -> List[TimeRange]:
    """Coalesce overlapping or touching ranges into maximal spans."""

    ordered = sorted(ranges, key=lambda item: (item.start, item.end))
    merged: List[TimeRange] = []
    for item in ordered:
        if merged and item.start <= merged[-1].end:
            last = merged[-1]
            merged[-1] = TimeRange(last.start, max(last.end, item.end))
        else:
            merged.append(TimeRange(item.start, item.end))
    return merged


__all__ = [
    "Clock",
    "SystemClock",
    "FixedClock",
    "parse_time_of_day",
    "is_within_work_hours",
    "is_working_day",
    "is_same_day",
    "work_day_end",
    "next_working_day_start",
    "expiration_for_status",
    "ranges_overlap",
    "is_expired",
    "merge_overlapping_ranges",
]
