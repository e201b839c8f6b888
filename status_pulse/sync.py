"""Synchronization orchestrator: pulls external facts and re-resolves statuses."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .db import Database
from .errors import ErrorKind
from .facts import FactSource
from .models import (
    AttendanceRecord,
    CalendarEvent,
    ConsistencyReport,
    OperationResult,
    SyncOptions,
    SyncResult,
    User,
    UserStatus,
    WorkSchedule,
)
from .resolver import expired_slots
from .service import StatusManager, load_roster_csv
from .timeutils import Clock

logger = logging.getLogger(__name__)

LAST_SYNC_KEY = "last_sync_at"


class DataSynchronizer:
    """Batch entry point driving fact ingestion and bulk resolution."""

    def __init__(
        self,
        database: Database,
        manager: StatusManager,
        facts: FactSource,
        clock: Optional[Clock] = None,
    ) -> None:
        self.database = database
        self.manager = manager
        self.facts = facts
        self.clock = clock or manager.clock
        self._sync_lock = asyncio.Lock()

    def _target_users(self, options: SyncOptions) -> List[User]:
        users = self.database.list_users()
        if options.user_ids:
            wanted = set(options.user_ids)
            users = [user for user in users if user.id in wanted]
        return users

    # region Sync phases
    async def sync_all(self, options: Optional[SyncOptions] = None) -> OperationResult[SyncResult]:
        options = options or SyncOptions()
        result = SyncResult()
        async with self._sync_lock:
            logger.info("Starting data sync (force=%s)", options.force_refresh)
            if options.sync_attendance:
                attendance = await self.sync_attendance(options)
                if attendance.success:
                    result.attendance_synced = attendance.data or 0
                else:
                    result.errors.append(f"Attendance sync failed: {attendance.error}")

            if options.sync_calendar:
                calendar = await self.sync_calendar(options)
                if calendar.success:
                    result.calendar_synced = calendar.data or 0
                else:
                    result.errors.append(f"Calendar sync failed: {calendar.error}")

            statuses = self.refresh_statuses(options)
            result.statuses_updated = statuses.data or 0
            if not statuses.success:
                result.errors.append(f"Status refresh failed: {statuses.error}")

            try:
                self.database.set_sync_state(LAST_SYNC_KEY, self.clock.now().isoformat())
            except Exception as exc:  # noqa: BLE001
                result.errors.append(f"Recording sync time failed: {exc}")

        if result.errors:
            logger.warning("Data sync finished with errors: %s", "; ".join(result.errors))
            return OperationResult.fail("; ".join(result.errors), ErrorKind.PARTIAL_FAILURE, data=result)
        logger.info(
            "Data sync complete: %s attendance, %s events, %s statuses",
            result.attendance_synced,
            result.calendar_synced,
            result.statuses_updated,
        )
        return OperationResult.ok(result)

    async def sync_attendance(self, options: SyncOptions) -> OperationResult[int]:
        try:
            today = self.clock.now().date()
            if not options.force_refresh and self.database.get_attendance_by_date(today):
                logger.debug("Attendance for %s already present; skipping", today)
                return OperationResult.ok(0)
            records = await self.facts.fetch_attendance(self._target_users(options), today)
            return OperationResult.ok(self.database.upsert_attendance(records))
        except Exception as exc:  # noqa: BLE001
            logger.error("Attendance sync failed: %s", exc)
            return OperationResult.fail(str(exc), ErrorKind.INTERNAL)

    async def sync_calendar(self, options: SyncOptions) -> OperationResult[int]:
        try:
            today = self.clock.now().date()
            if not options.force_refresh and self.database.get_calendar_by_date(today):
                logger.debug("Calendar for %s already present; skipping", today)
                return OperationResult.ok(0)
            events = await self.facts.fetch_calendar(self._target_users(options), today)
            return OperationResult.ok(self.database.upsert_calendar_events(events))
        except Exception as exc:  # noqa: BLE001
            logger.error("Calendar sync failed: %s", exc)
            return OperationResult.fail(str(exc), ErrorKind.INTERNAL)

    def refresh_statuses(self, options: SyncOptions) -> OperationResult[int]:
        refreshed = self.manager.refresh_many(options.user_ids or None)
        count = len(refreshed.data or [])
        if refreshed.success:
            return OperationResult.ok(count)
        return OperationResult.fail(refreshed.error or "refresh failed", ErrorKind.PARTIAL_FAILURE, data=count)

    async def scheduled_sync(self) -> OperationResult[SyncResult]:
        """Periodic tick: drop expired claims, then sync only what is missing."""

        cleaned = self.manager.cleanup_expired()
        if not cleaned.success:
            logger.warning("Cleanup before scheduled sync failed: %s", cleaned.error)
        expired = self.manager.refresh_expired()
        if not expired.success:
            logger.warning("Refreshing expired statuses failed: %s", expired.error)
        return await self.sync_all(SyncOptions(force_refresh=False))

    # endregion

    # region Single fact updates
    def handle_attendance_update(self, record: AttendanceRecord) -> OperationResult[UserStatus]:
        if self.database.get_user(record.user_id) is None:
            return OperationResult.fail(f"User {record.user_id} not found", ErrorKind.NOT_FOUND)
        try:
            self.database.upsert_attendance([record])
        except Exception as exc:  # noqa: BLE001
            logger.exception("Storing attendance %s failed", record.id)
            return OperationResult.fail(str(exc), ErrorKind.INTERNAL)
        return self.manager.refresh_status(record.user_id)

    def handle_calendar_update(self, event: CalendarEvent) -> OperationResult[UserStatus]:
        if self.database.get_user(event.user_id) is None:
            return OperationResult.fail(f"User {event.user_id} not found", ErrorKind.NOT_FOUND)
        try:
            self.database.upsert_calendar_events([event])
        except Exception as exc:  # noqa: BLE001
            logger.exception("Storing calendar event %s failed", event.id)
            return OperationResult.fail(str(exc), ErrorKind.INTERNAL)
        return self.manager.refresh_status(event.user_id)

    # endregion

    # region Roster and diagnostics
    def sync_roster(self, path: Path, default_schedule: Optional[WorkSchedule] = None) -> OperationResult[int]:
        """Provision every user listed in a roster CSV."""

        if not path.exists():
            logger.info("Roster %s not found; skipping", path)
            return OperationResult.ok(0)
        provisioned = 0
        errors: List[str] = []
        try:
            users = list(load_roster_csv(path, default_schedule))
        except (OSError, ValueError) as exc:
            return OperationResult.fail(f"Cannot read roster: {exc}", ErrorKind.INTERNAL)
        for user in users:
            result = self.manager.provision_user(user)
            if result.success:
                provisioned += 1
            else:
                errors.append(f"{user.id}: {result.error}")
        if errors:
            return OperationResult.fail(
                f"Some users failed: {', '.join(errors)}", ErrorKind.PARTIAL_FAILURE, data=provisioned
            )
        return OperationResult.ok(provisioned)

    def last_sync_info(self) -> OperationResult[Dict[str, Any]]:
        try:
            value = self.database.get_sync_state(LAST_SYNC_KEY)
            today = self.clock.now().date()
            return OperationResult.ok(
                {
                    "last_sync_at": datetime.fromisoformat(value) if value else None,
                    "attendance_records_today": len(self.database.get_attendance_by_date(today)),
                    "calendar_events_today": len(self.database.get_calendar_by_date(today)),
                }
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("Reading sync state failed")
            return OperationResult.fail(str(exc), ErrorKind.INTERNAL)

    def validate_consistency(self) -> OperationResult[ConsistencyReport]:
        """Report missing, orphaned and stale status records without changing them."""

        try:
            users = self.database.list_users()
            statuses = self.database.list_statuses()
        except Exception as exc:  # noqa: BLE001
            logger.exception("Consistency check failed")
            return OperationResult.fail(str(exc), ErrorKind.INTERNAL)

        issues: List[str] = []
        user_ids = {user.id for user in users}
        status_ids = {status.user_id for status in statuses}

        for user in users:
            if user.id not in status_ids:
                issues.append(f"User {user.name} ({user.id}) has no status record")
        for status in statuses:
            if status.user_id not in user_ids:
                issues.append(f"Status record for non-existent user {status.user_id}")

        now = self.clock.now()
        for status in statuses:
            stale = expired_slots(status.time_slots, now)
            if stale:
                issues.append(f"User {status.name} has {len(stale)} expired time slots")

        return OperationResult.ok(ConsistencyReport(is_consistent=not issues, issues=issues))

    # endregion


__all__ = ["DataSynchronizer", "LAST_SYNC_KEY"]
