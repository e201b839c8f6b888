"""FastAPI application exposing the Status Pulse REST API."""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, status
from pydantic import BaseModel, Field

from .config import Settings, load_settings
from .db import Database, change_to_dict, slot_to_dict
from .errors import ErrorKind
from .facts import FactSource, HttpFactSource, SimulatedFactSource
from .models import (
    AttendanceRecord,
    CalendarEvent,
    OperationResult,
    StatusType,
    SyncOptions,
    User,
    UserStatus,
    WorkSchedule,
)
from .service import StatusManager
from .sync import DataSynchronizer
from .timeutils import Clock, SystemClock

logger = logging.getLogger(__name__)

TIME_OF_DAY = r"^([01]\d|2[0-3]):[0-5]\d$"

ERROR_STATUS_CODES = {
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.VALIDATION_FAILED: 422,
}


class StatusUpdateBody(BaseModel):
    status: StatusType
    detail: Optional[str] = Field(default=None, max_length=500)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration_minutes: Optional[int] = Field(default=None, ge=1, le=7 * 24 * 60)


class UserBody(BaseModel):
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    department: str = ""
    start_time: Optional[str] = Field(default=None, pattern=TIME_OF_DAY)
    end_time: Optional[str] = Field(default=None, pattern=TIME_OF_DAY)
    tag: Optional[str] = None
    custom_tags: List[str] = Field(default_factory=list)


class ScheduleBody(BaseModel):
    start_time: str = Field(..., pattern=TIME_OF_DAY)
    end_time: str = Field(..., pattern=TIME_OF_DAY)


class TagBody(BaseModel):
    tag: Optional[str] = None


class CustomTagBody(BaseModel):
    tag: str = Field(..., min_length=1)


class SyncBody(BaseModel):
    force_refresh: bool = False
    user_ids: Optional[List[str]] = None
    sync_attendance: bool = True
    sync_calendar: bool = True


class AttendanceBody(BaseModel):
    id: str
    user_id: str
    work_date: date = Field(..., alias="date")
    status: StatusType
    work_type: str = "office"
    start_time: datetime
    end_time: datetime
    check_in: Optional[datetime] = None
    check_out: Optional[datetime] = None


class CalendarBody(BaseModel):
    id: str
    user_id: str
    title: str = "Meeting"
    start_time: datetime
    end_time: datetime
    status: str = Field(default="scheduled", pattern="^(scheduled|ongoing|completed|canceled)$")


def user_to_dict(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "name": user.name,
        "department": user.department,
        "work_schedule": {
            "start_time": user.schedule.start_time,
            "end_time": user.schedule.end_time,
        },
        "tag": user.tag,
        "custom_tags": list(user.custom_tags),
    }


def status_to_dict(user_status: UserStatus) -> Dict[str, Any]:
    return {
        "user_id": user_status.user_id,
        "name": user_status.name,
        "status": user_status.status.value,
        "detail": user_status.detail,
        "last_updated": user_status.last_updated.isoformat(),
        "expires_at": user_status.expires_at.isoformat(),
        "time_slots": [slot_to_dict(slot) for slot in user_status.time_slots],
        "history": [change_to_dict(change) for change in user_status.history],
    }


def _unwrap(result: OperationResult[Any]) -> Any:
    if result.success:
        return result.data
    code = ERROR_STATUS_CODES.get(result.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
    raise HTTPException(status_code=code, detail=result.error)


def create_app(
    settings: Optional[Settings] = None,
    *,
    database: Optional[Database] = None,
    facts: Optional[FactSource] = None,
    clock: Optional[Clock] = None,
) -> FastAPI:
    settings = settings or load_settings()
    database = database or Database(settings.database_path)
    clock = clock or SystemClock(settings.timezone)
    if facts is None:
        if settings.facts_api_url:
            facts = HttpFactSource(
                settings.facts_api_url, settings.facts_api_token, tz=settings.timezone
            )
        else:
            facts = SimulatedFactSource(tz=settings.timezone)
    manager = StatusManager(database, clock)
    synchronizer = DataSynchronizer(database, manager, facts, clock)

    def localize(value: Optional[datetime]) -> Optional[datetime]:
        if value is None or value.tzinfo is not None:
            return value
        return value.replace(tzinfo=settings.timezone)

    async def verify_api_key(x_api_key: Optional[str] = Header(None, alias="X-API-Key")) -> None:
        if not settings.api_key:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="API key is not configured"
            )
        if x_api_key != settings.api_key:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid api key")

    app = FastAPI(title="Status Pulse API", version="1.0.0")
    app.state.manager = manager
    app.state.synchronizer = synchronizer

    async def periodic_sync() -> None:  # pragma: no cover - io bound
        while True:
            try:
                await synchronizer.scheduled_sync()
            except Exception:  # noqa: BLE001
                logger.exception("Scheduled sync failed")
            await asyncio.sleep(settings.sync_interval_seconds)

    @app.on_event("startup")
    async def startup_event() -> None:  # pragma: no cover - io bound
        roster = synchronizer.sync_roster(settings.team_roster_path, settings.default_schedule)
        if not roster.success:
            logger.warning("Roster import incomplete: %s", roster.error)
        app.state.sync_task = asyncio.create_task(periodic_sync())

    @app.on_event("shutdown")
    async def shutdown_event() -> None:  # pragma: no cover - io bound
        task = getattr(app.state, "sync_task", None)
        if task is not None:
            task.cancel()
        if isinstance(facts, HttpFactSource):
            await facts.close()

    @app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    # region Users
    @app.get("/api/users", dependencies=[Depends(verify_api_key)])
    def list_users() -> dict[str, object]:
        return {"users": [user_to_dict(user) for user in database.list_users()]}

    @app.post(
        "/api/users",
        status_code=status.HTTP_201_CREATED,
        dependencies=[Depends(verify_api_key)],
    )
    def create_user(body: UserBody) -> dict[str, object]:
        defaults = settings.default_schedule
        user = User(
            id=body.id,
            name=body.name,
            department=body.department,
            schedule=WorkSchedule(
                body.start_time or defaults.start_time, body.end_time or defaults.end_time
            ),
            tag=body.tag,
            custom_tags=body.custom_tags,
        )
        created = _unwrap(manager.provision_user(user))
        return {"user": user_to_dict(user), "status": status_to_dict(created)}

    @app.put("/api/users/{user_id}/schedule", dependencies=[Depends(verify_api_key)])
    def update_schedule(user_id: str, body: ScheduleBody) -> dict[str, object]:
        user = database.update_schedule(user_id, WorkSchedule(body.start_time, body.end_time))
        if user is None:
            raise HTTPException(status_code=404, detail="user not found")
        refreshed = _unwrap(manager.refresh_status(user_id))
        return {"user": user_to_dict(user), "status": status_to_dict(refreshed)}

    @app.put("/api/users/{user_id}/tag", dependencies=[Depends(verify_api_key)])
    def update_tag(user_id: str, body: TagBody) -> dict[str, object]:
        user = database.update_tag(user_id, body.tag)
        if user is None:
            raise HTTPException(status_code=404, detail="user not found")
        return {"user": user_to_dict(user)}

    @app.post("/api/users/{user_id}/custom-tags", dependencies=[Depends(verify_api_key)])
    def add_custom_tag(user_id: str, body: CustomTagBody) -> dict[str, object]:
        user = database.add_custom_tag(user_id, body.tag)
        if user is None:
            raise HTTPException(status_code=404, detail="user not found")
        return {"user": user_to_dict(user)}

    @app.delete("/api/users/{user_id}/custom-tags/{tag}", dependencies=[Depends(verify_api_key)])
    def remove_custom_tag(user_id: str, tag: str) -> dict[str, object]:
        user = database.remove_custom_tag(user_id, tag)
        if user is None:
            raise HTTPException(status_code=404, detail="user not found")
        return {"user": user_to_dict(user)}

    # endregion

    # region Statuses
    @app.get("/api/statuses", dependencies=[Depends(verify_api_key)])
    def query_statuses(
        user_id: Optional[List[str]] = Query(None),
        status_type: Optional[List[StatusType]] = Query(None, alias="status"),
        details: bool = False,
    ) -> dict[str, object]:
        statuses = _unwrap(
            manager.query_statuses(
                user_ids=user_id, status_types=status_type, include_details=details
            )
        )
        return {"statuses": [status_to_dict(item) for item in statuses]}

    # registered before /{user_id} so "refresh" is not taken for an id
    @app.post("/api/statuses/refresh", dependencies=[Depends(verify_api_key)])
    def refresh_all() -> dict[str, object]:
        result = manager.refresh_all()
        return {
            "success": result.success,
            "error": result.error,
            "statuses": [status_to_dict(item) for item in result.data or []],
        }

    @app.get("/api/statuses/{user_id}", dependencies=[Depends(verify_api_key)])
    def get_status(user_id: str) -> dict[str, object]:
        return {"status": status_to_dict(_unwrap(manager.get_status(user_id)))}

    @app.post("/api/statuses/{user_id}", dependencies=[Depends(verify_api_key)])
    def update_status(user_id: str, body: StatusUpdateBody) -> dict[str, object]:
        updated = _unwrap(
            manager.update_status(
                user_id,
                body.status,
                body.detail,
                start=localize(body.start_time),
                end=localize(body.end_time),
                duration_minutes=body.duration_minutes,
            )
        )
        return {"status": status_to_dict(updated)}

    @app.post("/api/statuses/{user_id}/refresh", dependencies=[Depends(verify_api_key)])
    def refresh_status(user_id: str) -> dict[str, object]:
        return {"status": status_to_dict(_unwrap(manager.refresh_status(user_id)))}

    @app.get("/api/statuses/{user_id}/slots", dependencies=[Depends(verify_api_key)])
    def list_slots(user_id: str, days: int = Query(7, ge=1, le=90)) -> dict[str, object]:
        slots = _unwrap(manager.get_time_slots(user_id, days))
        return {"time_slots": [slot_to_dict(slot) for slot in slots]}

    @app.delete("/api/statuses/{user_id}/slots/{slot_id}", dependencies=[Depends(verify_api_key)])
    def remove_slot(user_id: str, slot_id: str) -> dict[str, object]:
        return {"status": status_to_dict(_unwrap(manager.remove_time_slot(user_id, slot_id)))}

    @app.post("/api/cleanup", dependencies=[Depends(verify_api_key)])
    def cleanup() -> dict[str, object]:
        return {"cleaned": _unwrap(manager.cleanup_expired())}

    # endregion

    # region Sync
    @app.post("/api/sync", dependencies=[Depends(verify_api_key)])
    async def sync(body: Optional[SyncBody] = None) -> dict[str, object]:
        body = body or SyncBody()
        result = await synchronizer.sync_all(
            SyncOptions(
                force_refresh=body.force_refresh,
                user_ids=body.user_ids,
                sync_attendance=body.sync_attendance,
                sync_calendar=body.sync_calendar,
            )
        )
        data = result.data
        return {
            "success": result.success,
            "error": result.error,
            "attendance_synced": data.attendance_synced if data else 0,
            "calendar_synced": data.calendar_synced if data else 0,
            "statuses_updated": data.statuses_updated if data else 0,
            "errors": data.errors if data else [],
        }

    @app.get("/api/sync", dependencies=[Depends(verify_api_key)])
    def sync_info() -> dict[str, object]:
        info = _unwrap(synchronizer.last_sync_info())
        last = info["last_sync_at"]
        return {**info, "last_sync_at": last.isoformat() if last else None}

    @app.get("/api/consistency", dependencies=[Depends(verify_api_key)])
    def consistency() -> dict[str, object]:
        report = _unwrap(synchronizer.validate_consistency())
        return {"is_consistent": report.is_consistent, "issues": report.issues}

    @app.post("/api/attendance", dependencies=[Depends(verify_api_key)])
    def post_attendance(body: AttendanceBody) -> dict[str, object]:
        record = AttendanceRecord(
            id=body.id,
            user_id=body.user_id,
            date=body.work_date,
            status=body.status,
            work_type=body.work_type,
            start=localize(body.start_time),
            end=localize(body.end_time),
            check_in=localize(body.check_in),
            check_out=localize(body.check_out),
        )
        return {"status": status_to_dict(_unwrap(synchronizer.handle_attendance_update(record)))}

    @app.post("/api/calendar", dependencies=[Depends(verify_api_key)])
    def post_calendar(body: CalendarBody) -> dict[str, object]:
        event = CalendarEvent(
            id=body.id,
            user_id=body.user_id,
            title=body.title,
            start=localize(body.start_time),
            end=localize(body.end_time),
            state=body.status,
        )
        return {"status": status_to_dict(_unwrap(synchronizer.handle_calendar_update(event)))}

    # endregion

    return app


__all__ = ["create_app", "status_to_dict", "user_to_dict"]
