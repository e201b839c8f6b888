"""Dataclasses representing Status Pulse domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Generic, List, Optional, TypeVar

from .errors import ErrorKind

T = TypeVar("T")


class StatusType(str, Enum):
    ON_DUTY = "on_duty"
    OFF_DUTY = "off_duty"
    ON_LEAVE = "on_leave"
    WFH = "wfh"
    OUT = "out"
    MEETING = "meeting"

    @property
    def label(self) -> str:
        return self.value.replace("_", " ")


class SlotSource(str, Enum):
    ATTENDANCE = "attendance"
    CALENDAR = "calendar"
    AI_MODIFIED = "ai_modified"


class ChangeSource(str, Enum):
    SYSTEM = "system"
    AI_MODIFIED = "ai_modified"


SOURCE_PRIORITY = {
    SlotSource.CALENDAR: 1,
    SlotSource.ATTENDANCE: 2,
    SlotSource.AI_MODIFIED: 3,
}


@dataclass(slots=True)
class WorkSchedule:
    start_time: str = "08:30"
    end_time: str = "17:30"


@dataclass(slots=True)
class User:
    id: str
    name: str
    department: str
    schedule: WorkSchedule = field(default_factory=WorkSchedule)
    tag: str | None = None
    custom_tags: List[str] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class TimeRange:
    start: datetime
    end: datetime


@dataclass(slots=True, frozen=True)
class TimeSlot:
    """A claim that a user holds ``status`` during ``[start, end)``."""

    id: str
    status: StatusType
    start: datetime
    end: datetime
    source: SlotSource
    priority: int
    created_at: datetime
    expires_at: datetime
    detail: str | None = None


@dataclass(slots=True, frozen=True)
class StatusChange:
    status: StatusType
    timestamp: datetime
    source: ChangeSource
    detail: str | None = None


@dataclass(slots=True)
class UserStatus:
    user_id: str
    name: str
    status: StatusType
    last_updated: datetime
    expires_at: datetime
    detail: str | None = None
    time_slots: List[TimeSlot] = field(default_factory=list)
    history: List[StatusChange] = field(default_factory=list)


@dataclass(slots=True)
class AttendanceRecord:
    id: str
    user_id: str
    date: date
    status: StatusType
    work_type: str
    start: datetime
    end: datetime
    check_in: datetime | None = None
    check_out: datetime | None = None


@dataclass(slots=True)
class CalendarEvent:
    id: str
    user_id: str
    title: str
    start: datetime
    end: datetime
    state: str = "scheduled"


@dataclass(slots=True)
class OperationResult(Generic[T]):
    """Explicit success/failure envelope returned by every core operation."""

    success: bool
    data: Optional[T] = None
    error: str | None = None
    kind: ErrorKind | None = None

    @classmethod
    def ok(cls, data: Optional[T] = None) -> "OperationResult[T]":
        return cls(success=True, data=data)

    @classmethod
    def fail(
        cls, error: str, kind: ErrorKind, data: Optional[T] = None
    ) -> "OperationResult[T]":
        return cls(success=False, data=data, error=error, kind=kind)


@dataclass(slots=True)
class SyncOptions:
    force_refresh: bool = False
    user_ids: List[str] | None = None
    sync_attendance: bool = True
    sync_calendar: bool = True


@dataclass(slots=True)
class SyncResult:
    attendance_synced: int = 0
    calendar_synced: int = 0
    statuses_updated: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass(slots=True)
class ConsistencyReport:
    is_consistent: bool
    issues: List[str]


__all__ = [
    "StatusType",
    "SlotSource",
    "ChangeSource",
    "SOURCE_PRIORITY",
    "WorkSchedule",
    "User",
    "TimeRange",
    "TimeSlot",
    "StatusChange",
    "UserStatus",
    "AttendanceRecord",
    "CalendarEvent",
    "OperationResult",
    "SyncOptions",
    "SyncResult",
    "ConsistencyReport",
]
