"""Attendance and calendar fact sources feeding the synchronizer."""

from __future__ import annotations

import asyncio
import random
from collections.abc import AsyncIterator
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx

from .models import AttendanceRecord, CalendarEvent, StatusType, User
from .timeutils import parse_time_of_day

MEETING_TITLES = [
    "Daily Standup",
    "Sprint Planning",
    "Client Review",
    "Team Sync",
    "Product Demo",
    "Code Review",
]


class FactSourceError(RuntimeError):
    """Raised when an external fact feed returns an error response."""

    def __init__(self, resource: str, error: str) -> None:
        super().__init__(f"Fact feed error for {resource}: {error}")
        self.resource = resource
        self.error = error


class FactSource(Protocol):
    async def fetch_attendance(
        self, users: Sequence[User], day: date
    ) -> List[AttendanceRecord]: ...

    async def fetch_calendar(
        self, users: Sequence[User], day: date
    ) -> List[CalendarEvent]: ...


class SimulatedFactSource:
    """Generates plausible attendance and meetings for a day.

    Each user gets one of four scenarios (checked in, working from home, on
    leave, late) and zero to two meetings during office hours.
    """

    def __init__(
        self,
        tz: Optional[tzinfo] = None,
        rng: Optional[random.Random] = None,
        now: Optional[datetime] = None,
    ) -> None:
        self._tz = tz
        self._rng = rng or random.Random()
        self._now = now

    def _current_time(self) -> datetime:
        if self._now is not None:
            return self._now
        return datetime.now(self._tz) if self._tz else datetime.now().astimezone()

    def _midnight(self, day: date) -> datetime:
        tz = self._tz or self._current_time().tzinfo
        return datetime.combine(day, time.min, tzinfo=tz)

    async def fetch_attendance(
        self, users: Sequence[User], day: date
    ) -> List[AttendanceRecord]:
        records: List[AttendanceRecord] = []
        for user in users:
            record = self._attendance_for(user, day)
            if record is not None:
                records.append(record)
        return records

    def _attendance_for(self, user: User, day: date) -> Optional[AttendanceRecord]:
        midnight = self._midnight(day)
        start = parse_time_of_day(user.schedule.start_time, midnight)
        end = parse_time_of_day(user.schedule.end_time, midnight)
        record_id = f"att-{user.id}-{day.isoformat()}"
        scenario = self._rng.choice(["checked_in", "wfh", "on_leave", "late"])

        if scenario == "checked_in":
            return AttendanceRecord(
                id=record_id,
                user_id=user.id,
                date=day,
                status=StatusType.ON_DUTY,
                work_type="office",
                start=start,
                end=end,
                check_in=start + timedelta(minutes=self._rng.uniform(0, 30)),
            )
        if scenario == "wfh":
            return AttendanceRecord(
                id=record_id,
                user_id=user.id,
                date=day,
                status=StatusType.WFH,
                work_type="wfh",
                start=start,
                end=end,
                check_in=start + timedelta(minutes=self._rng.uniform(0, 15)),
            )
        if scenario == "on_leave":
            return AttendanceRecord(
                id=record_id,
                user_id=user.id,
                date=day,
                status=StatusType.ON_LEAVE,
                work_type="office",
                start=start,
                end=end,
            )
        # late: only recorded once the scheduled start has passed
        if self._current_time() > start:
            return AttendanceRecord(
                id=record_id,
                user_id=user.id,
                date=day,
                status=StatusType.OFF_DUTY,
                work_type="office",
                start=start,
                end=end,
            )
        return None

    async def fetch_calendar(
        self, users: Sequence[User], day: date
    ) -> List[CalendarEvent]:
        now = self._current_time()
        midnight = self._midnight(day)
        events: List[CalendarEvent] = []
        for user in users:
            for index in range(self._rng.randint(0, 2)):
                start = midnight.replace(
                    hour=self._rng.randint(9, 16), minute=self._rng.choice([0, 15, 30, 45])
                )
                end = start + timedelta(minutes=self._rng.choice([30, 60, 90]))
                if end < now:
                    state = "completed"
                elif start <= now <= end:
                    state = "ongoing"
                else:
                    state = "scheduled"
                events.append(
                    CalendarEvent(
                        id=f"event-{user.id}-{day.isoformat()}-{index}",
                        user_id=user.id,
                        title=self._rng.choice(MEETING_TITLES),
                        start=start,
                        end=end,
                        state=state,
                    )
                )
        return events


class HttpFactSource:
    """Async client for a JSON attendance/calendar feed.

    The feed serves ``GET /attendance?date=YYYY-MM-DD`` and
    ``GET /calendar?date=YYYY-MM-DD``, each answering
    ``{"ok": true, "items": [...], "next_cursor": "..."}``.
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        tz: Optional[tzinfo] = None,
    ) -> None:
        self._tz = tz
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url, headers=headers, timeout=timeout, transport=transport
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _paginate(self, resource: str, day: date) -> AsyncIterator[dict[str, Any]]:
        cursor: Optional[str] = None
        while True:
            params: Dict[str, Any] = {"date": day.isoformat()}
            if cursor:
                params["cursor"] = cursor
            try:
                response = await self._client.get(resource, params=params)
                response.raise_for_status()
            except httpx.HTTPError as exc:
                raise FactSourceError(resource, str(exc)) from exc
            data = response.json()
            if not data.get("ok"):
                raise FactSourceError(resource, data.get("error", "unknown_error"))

            for item in data.get("items", []):
                yield item

            cursor = data.get("next_cursor")
            if not cursor:
                break
            await asyncio.sleep(0.2)

    async def fetch_attendance(
        self, users: Sequence[User], day: date
    ) -> List[AttendanceRecord]:
        known = {user.id for user in users}
        records: List[AttendanceRecord] = []
        async for item in self._paginate("attendance", day):
            if item.get("user_id") not in known:
                continue
            records.append(attendance_from_payload(item, self._tz))
        return records

    async def fetch_calendar(
        self, users: Sequence[User], day: date
    ) -> List[CalendarEvent]:
        known = {user.id for user in users}
        events: List[CalendarEvent] = []
        async for item in self._paginate("calendar", day):
            if item.get("user_id") not in known:
                continue
            events.append(event_from_payload(item, self._tz))
        return events


def _parse_dt(value: str, tz: Optional[tzinfo]) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is not None:
        return parsed
    # naive feed times are wall-clock times in the configured zone
    return parsed.replace(tzinfo=tz) if tz else parsed.astimezone()


def _optional_dt(value: Optional[str], tz: Optional[tzinfo]) -> Optional[datetime]:
    return _parse_dt(value, tz) if value else None


def attendance_from_payload(
    item: Dict[str, Any], tz: Optional[tzinfo] = None
) -> AttendanceRecord:
    try:
        return AttendanceRecord(
            id=str(item["id"]),
            user_id=item["user_id"],
            date=date.fromisoformat(item["date"]),
            status=StatusType(item["status"]),
            work_type=item.get("work_type", "office"),
            start=_parse_dt(item["start_time"], tz),
            end=_parse_dt(item["end_time"], tz),
            check_in=_optional_dt(item.get("check_in"), tz),
            check_out=_optional_dt(item.get("check_out"), tz),
        )
    except (KeyError, ValueError) as exc:
        raise FactSourceError("attendance", f"malformed record: {exc}") from exc


def event_from_payload(
    item: Dict[str, Any], tz: Optional[tzinfo] = None
) -> CalendarEvent:
    try:
        return CalendarEvent(
            id=str(item["id"]),
            user_id=item["user_id"],
            title=item.get("title", "Meeting"),
            start=_parse_dt(item["start_time"], tz),
            end=_parse_dt(item["end_time"], tz),
            state=item.get("status", "scheduled"),
        )
    except (KeyError, ValueError) as exc:
        raise FactSourceError("calendar", f"malformed event: {exc}") from exc


__all__ = [
    "FactSource",
    "FactSourceError",
    "SimulatedFactSource",
    "HttpFactSource",
    "attendance_from_payload",
    "event_from_payload",
]
