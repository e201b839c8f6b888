"""SQLite persistence layer for Status Pulse."""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Protocol

from .models import (
    AttendanceRecord,
    CalendarEvent,
    ChangeSource,
    SlotSource,
    StatusChange,
    StatusType,
    TimeSlot,
    User,
    UserStatus,
    WorkSchedule,
)

Connection = sqlite3.Connection
Row = sqlite3.Row


class StatusStore(Protocol):
    """What the status core needs from persistence."""

    def get_user(self, user_id: str) -> Optional[User]: ...

    def list_users(self) -> List[User]: ...

    def upsert_user(self, user: User) -> None: ...

    def get_status(self, user_id: str) -> Optional[UserStatus]: ...

    def set_status(self, status: UserStatus) -> None: ...

    def list_statuses(self) -> List[UserStatus]: ...

    def set_statuses(self, statuses: Iterable[UserStatus]) -> None: ...

    def get_attendance_for_user(self, user_id: str) -> List[AttendanceRecord]: ...

    def get_calendar_for_user(self, user_id: str) -> List[CalendarEvent]: ...


class Database:
    """Lightweight wrapper around SQLite operations."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize()

    @contextmanager
    def connect(self) -> Iterator[Connection]:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _initialize(self) -> None:
        with self.connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    department TEXT NOT NULL,
                    start_time TEXT NOT NULL,
                    end_time TEXT NOT NULL,
                    tag TEXT,
                    custom_tags TEXT NOT NULL DEFAULT '[]',
                    updated_at TEXT
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS attendance (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    date TEXT NOT NULL,
                    status TEXT NOT NULL,
                    work_type TEXT NOT NULL,
                    start_time TEXT NOT NULL,
                    end_time TEXT NOT NULL,
                    check_in TEXT,
                    check_out TEXT,
                    FOREIGN KEY(user_id) REFERENCES users(id)
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS calendar_events (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    start_time TEXT NOT NULL,
                    end_time TEXT NOT NULL,
                    date TEXT NOT NULL,
                    state TEXT NOT NULL,
                    FOREIGN KEY(user_id) REFERENCES users(id)
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS user_statuses (
                    user_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    status TEXT NOT NULL,
                    detail TEXT,
                    last_updated TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    time_slots TEXT NOT NULL DEFAULT '[]',
                    history TEXT NOT NULL DEFAULT '[]'
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS sync_state (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )
            conn.commit()

    # region Users
    def upsert_user(self, user: User) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO users (id, name, department, start_time, end_time, tag, custom_tags, updated_at)
                VALUES (:id, :name, :department, :start_time, :end_time, :tag, :custom_tags, :updated_at)
                ON CONFLICT(id) DO UPDATE SET
                    name=excluded.name,
                    department=excluded.department,
                    start_time=excluded.start_time,
                    end_time=excluded.end_time,
                    tag=excluded.tag,
                    custom_tags=excluded.custom_tags,
                    updated_at=excluded.updated_at
                """,
                _user_to_row(user),
            )
            conn.commit()

    def get_user(self, user_id: str) -> Optional[User]:
        with self.connect() as conn:
            cursor = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,))
            row = cursor.fetchone()
            return _user_from_row(row) if row else None

    def list_users(self) -> List[User]:
        with self.connect() as conn:
            cursor = conn.execute("SELECT * FROM users ORDER BY name")
            return [_user_from_row(row) for row in cursor.fetchall()]

    def update_schedule(self, user_id: str, schedule: WorkSchedule) -> Optional[User]:
        user = self.get_user(user_id)
        if user is None:
            return None
        user.schedule = schedule
        self.upsert_user(user)
        return user

    def update_tag(self, user_id: str, tag: str | None) -> Optional[User]:
        user = self.get_user(user_id)
        if user is None:
            return None
        user.tag = tag or None
        self.upsert_user(user)
        return user

    def add_custom_tag(self, user_id: str, tag: str) -> Optional[User]:
        user = self.get_user(user_id)
        if user is None:
            return None
        if tag not in user.custom_tags:
            user.custom_tags.append(tag)
            self.upsert_user(user)
        return user

    def remove_custom_tag(self, user_id: str, tag: str) -> Optional[User]:
        user = self.get_user(user_id)
        if user is None:
            return None
        if tag in user.custom_tags:
            user.custom_tags.remove(tag)
            self.upsert_user(user)
        return user

    # endregion

    # region Attendance
    def upsert_attendance(self, records: Iterable[AttendanceRecord]) -> int:
        rows = [_attendance_to_row(record) for record in records]
        with self.connect() as conn:
            conn.executemany(
                """
                INSERT INTO attendance (id, user_id, date, status, work_type, start_time, end_time, check_in, check_out)
                VALUES (:id, :user_id, :date, :status, :work_type, :start_time, :end_time, :check_in, :check_out)
                ON CONFLICT(id) DO UPDATE SET
                    status=excluded.status,
                    work_type=excluded.work_type,
                    start_time=excluded.start_time,
                    end_time=excluded.end_time,
                    check_in=excluded.check_in,
                    check_out=excluded.check_out
                """,
                rows,
            )
            conn.commit()
        return len(rows)

    def get_attendance_for_user(self, user_id: str) -> List[AttendanceRecord]:
        with self.connect() as conn:
            cursor = conn.execute(
                "SELECT * FROM attendance WHERE user_id = ? ORDER BY date, start_time",
                (user_id,),
            )
            return [_attendance_from_row(row) for row in cursor.fetchall()]

    def get_attendance_by_date(self, day: date) -> List[AttendanceRecord]:
        with self.connect() as conn:
            cursor = conn.execute(
                "SELECT * FROM attendance WHERE date = ? ORDER BY user_id",
                (day.isoformat(),),
            )
            return [_attendance_from_row(row) for row in cursor.fetchall()]

    # endregion

    # region Calendar
    def upsert_calendar_events(self, events: Iterable[CalendarEvent]) -> int:
        rows = [_event_to_row(event) for event in events]
        with self.connect() as conn:
            conn.executemany(
                """
                INSERT INTO calendar_events (id, user_id, title, start_time, end_time, date, state)
                VALUES (:id, :user_id, :title, :start_time, :end_time, :date, :state)
                ON CONFLICT(id) DO UPDATE SET
                    title=excluded.title,
                    start_time=excluded.start_time,
                    end_time=excluded.end_time,
                    date=excluded.date,
                    state=excluded.state
                """,
                rows,
            )
            conn.commit()
        return len(rows)

    def get_calendar_for_user(self, user_id: str) -> List[CalendarEvent]:
        with self.connect() as conn:
            cursor = conn.execute(
                "SELECT * FROM calendar_events WHERE user_id = ? ORDER BY start_time",
                (user_id,),
            )
            return [_event_from_row(row) for row in cursor.fetchall()]

    def get_calendar_by_date(self, day: date) -> List[CalendarEvent]:
        with self.connect() as conn:
            cursor = conn.execute(
                "SELECT * FROM calendar_events WHERE date = ? ORDER BY start_time",
                (day.isoformat(),),
            )
            return [_event_from_row(row) for row in cursor.fetchall()]

    # endregion

    # region Statuses
    def get_status(self, user_id: str) -> Optional[UserStatus]:
        with self.connect() as conn:
            cursor = conn.execute(
                "SELECT * FROM user_statuses WHERE user_id = ?", (user_id,)
            )
            row = cursor.fetchone()
            return _status_from_row(row) if row else None

    def set_status(self, status: UserStatus) -> None:
        with self.connect() as conn:
            conn.execute(_STATUS_UPSERT, _status_to_row(status))
            conn.commit()

    def list_statuses(self) -> List[UserStatus]:
        with self.connect() as conn:
            cursor = conn.execute("SELECT * FROM user_statuses ORDER BY name")
            return [_status_from_row(row) for row in cursor.fetchall()]

    def set_statuses(self, statuses: Iterable[UserStatus]) -> None:
        """Replace the whole status collection."""

        rows = [_status_to_row(status) for status in statuses]
        with self.connect() as conn:
            conn.execute("DELETE FROM user_statuses")
            conn.executemany(_STATUS_UPSERT, rows)
            conn.commit()

    # endregion

    # region Sync state
    def set_sync_state(self, key: str, value: str) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO sync_state (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (key, value),
            )
            conn.commit()

    def get_sync_state(self, key: str) -> Optional[str]:
        with self.connect() as conn:
            cursor = conn.execute("SELECT value FROM sync_state WHERE key = ?", (key,))
            row = cursor.fetchone()
            return row["value"] if row else None

    # endregion


_STATUS_UPSERT = """
    INSERT INTO user_statuses (user_id, name, status, detail, last_updated, expires_at, time_slots, history)
    VALUES (:user_id, :name, :status, :detail, :last_updated, :expires_at, :time_slots, :history)
    ON CONFLICT(user_id) DO UPDATE SET
        name=excluded.name,
        status=excluded.status,
        detail=excluded.detail,
        last_updated=excluded.last_updated,
        expires_at=excluded.expires_at,
        time_slots=excluded.time_slots,
        history=excluded.history
"""


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _format_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _user_to_row(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "name": user.name,
        "department": user.department,
        "start_time": user.schedule.start_time,
        "end_time": user.schedule.end_time,
        "tag": user.tag,
        "custom_tags": json.dumps(user.custom_tags),
        "updated_at": datetime.now().astimezone().isoformat(),
    }


def _user_from_row(row: Row) -> User:
    return User(
        id=row["id"],
        name=row["name"],
        department=row["department"],
        schedule=WorkSchedule(row["start_time"], row["end_time"]),
        tag=row["tag"],
        custom_tags=json.loads(row["custom_tags"] or "[]"),
    )


def _attendance_to_row(record: AttendanceRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "user_id": record.user_id,
        "date": record.date.isoformat(),
        "status": record.status.value,
        "work_type": record.work_type,
        "start_time": record.start.isoformat(),
        "end_time": record.end.isoformat(),
        "check_in": _format_dt(record.check_in),
        "check_out": _format_dt(record.check_out),
    }


def _attendance_from_row(row: Row) -> AttendanceRecord:
    return AttendanceRecord(
        id=row["id"],
        user_id=row["user_id"],
        date=date.fromisoformat(row["date"]),
        status=StatusType(row["status"]),
        work_type=row["work_type"],
        start=datetime.fromisoformat(row["start_time"]),
        end=datetime.fromisoformat(row["end_time"]),
        check_in=_parse_dt(row["check_in"]),
        check_out=_parse_dt(row["check_out"]),
    )


def _event_to_row(event: CalendarEvent) -> Dict[str, Any]:
    return {
        "id": event.id,
        "user_id": event.user_id,
        "title": event.title,
        "start_time": event.start.isoformat(),
        "end_time": event.end.isoformat(),
        "date": event.start.date().isoformat(),
        "state": event.state,
    }


def _event_from_row(row: Row) -> CalendarEvent:
    return CalendarEvent(
        id=row["id"],
        user_id=row["user_id"],
        title=row["title"],
        start=datetime.fromisoformat(row["start_time"]),
        end=datetime.fromisoformat(row["end_time"]),
        state=row["state"],
    )


def slot_to_dict(slot: TimeSlot) -> Dict[str, Any]:
    return {
        "id": slot.id,
        "status": slot.status.value,
        "detail": slot.detail,
        "start": slot.start.isoformat(),
        "end": slot.end.isoformat(),
        "source": slot.source.value,
        "priority": slot.priority,
        "created_at": slot.created_at.isoformat(),
        "expires_at": slot.expires_at.isoformat(),
    }


def slot_from_dict(data: Dict[str, Any]) -> TimeSlot:
    return TimeSlot(
        id=data["id"],
        status=StatusType(data["status"]),
        detail=data.get("detail"),
        start=datetime.fromisoformat(data["start"]),
        end=datetime.fromisoformat(data["end"]),
        source=SlotSource(data["source"]),
        priority=int(data["priority"]),
        created_at=datetime.fromisoformat(data["created_at"]),
        expires_at=datetime.fromisoformat(data["expires_at"]),
    )


def change_to_dict(change: StatusChange) -> Dict[str, Any]:
    return {
        "status": change.status.value,
        "detail": change.detail,
        "timestamp": change.timestamp.isoformat(),
        "source": change.source.value,
    }


def change_from_dict(data: Dict[str, Any]) -> StatusChange:
    return StatusChange(
        status=StatusType(data["status"]),
        detail=data.get("detail"),
        timestamp=datetime.fromisoformat(data["timestamp"]),
        source=ChangeSource(data["source"]),
    )


def _status_to_row(status: UserStatus) -> Dict[str, Any]:
    return {
        "user_id": status.user_id,
        "name": status.name,
        "status": status.status.value,
        "detail": status.detail,
        "last_updated": status.last_updated.isoformat(),
        "expires_at": status.expires_at.isoformat(),
        "time_slots": json.dumps([slot_to_dict(slot) for slot in status.time_slots]),
        "history": json.dumps([change_to_dict(change) for change in status.history]),
    }


def _status_from_row(row: Row) -> UserStatus:
    return UserStatus(
        user_id=row["user_id"],
        name=row["name"],
        status=StatusType(row["status"]),
        detail=row["detail"],
        last_updated=datetime.fromisoformat(row["last_updated"]),
        expires_at=datetime.fromisoformat(row["expires_at"]),
        time_slots=[slot_from_dict(item) for item in json.loads(row["time_slots"])],
        history=[change_from_dict(item) for item in json.loads(row["history"])],
    )


__all__ = [
    "Database",
    "StatusStore",
    "slot_to_dict",
    "slot_from_dict",
    "change_to_dict",
    "change_from_dict",
]
