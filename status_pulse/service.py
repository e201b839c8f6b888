"""Status manager: turns update requests and refresh ticks into persisted statuses."""

from __future__ import annotations

import csv
import logging
import threading
from collections.abc import Callable
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, TypeVar

from .db import StatusStore
from .errors import ErrorKind, NotFoundError, StatusPulseError, ValidationFailedError
from .models import (
    ChangeSource,
    OperationResult,
    StatusChange,
    StatusType,
    TimeSlot,
    User,
    UserStatus,
    WorkSchedule,
)
from .resolver import (
    Resolution,
    ResolutionContext,
    create_override_slot,
    expired_slots,
    remove_conflicting,
    resolve,
    validate_transition,
)
from .timeutils import Clock, SystemClock, expiration_for_status, is_expired

logger = logging.getLogger(__name__)

T = TypeVar("T")

ACTIVE_STATUSES = (StatusType.ON_DUTY, StatusType.MEETING, StatusType.OUT, StatusType.WFH)


class StatusManager:
    """High-level service that updates, refreshes and lists user statuses.

    Every read-modify-write sequence against one user's status runs under
    that user's lock; different users never block each other.
    """

    def __init__(self, store: StatusStore, clock: Optional[Clock] = None) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _user_lock(self, user_id: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.setdefault(user_id, threading.Lock())
        with lock:
            yield

    def _guarded(self, action: str, func: Callable[[], T]) -> OperationResult[T]:
        try:
            return OperationResult.ok(func())
        except StatusPulseError as exc:
            logger.info("%s rejected: %s", action, exc)
            return OperationResult.fail(str(exc), exc.kind)
        except Exception as exc:  # noqa: BLE001
            logger.exception("%s failed", action)
            return OperationResult.fail(str(exc), ErrorKind.INTERNAL)

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user

    def _resolve(self, user: User, slots: Sequence[TimeSlot], now: datetime) -> Resolution:
        return resolve(
            ResolutionContext(
                user=user,
                now=now,
                attendance_records=self.store.get_attendance_for_user(user.id),
                calendar_events=self.store.get_calendar_for_user(user.id),
                existing_slots=slots,
            )
        )

    def _persist(
        self,
        user: User,
        existing: Optional[UserStatus],
        resolution: Resolution,
        source: ChangeSource,
    ) -> UserStatus:
        history = list(existing.history) if existing else []
        if (
            existing is None
            or existing.status != resolution.status
            or existing.detail != resolution.detail
        ):
            history.append(
                StatusChange(
                    status=resolution.status,
                    timestamp=resolution.last_updated,
                    source=source,
                    detail=resolution.detail,
                )
            )
            logger.info(
                "Status of %s is now %s (%s)", user.id, resolution.status.value, source.value
            )
        status = UserStatus(
            user_id=user.id,
            name=user.name,
            status=resolution.status,
            detail=resolution.detail,
            last_updated=resolution.last_updated,
            expires_at=resolution.expires_at,
            time_slots=resolution.time_slots,
            history=history,
        )
        self.store.set_status(status)
        return status

    # region Updates
    def update_status(
        self,
        user_id: str,
        status: StatusType | str,
        detail: str | None = None,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        duration_minutes: int | None = None,
    ) -> OperationResult[UserStatus]:
        """Apply a manual override and re-resolve the user's status."""

        return self._guarded(
            "update_status",
            lambda: self._update_status(
                user_id, status, detail, start, end, duration_minutes
            ),
        )

    def _update_status(
        self,
        user_id: str,
        status: StatusType | str,
        detail: str | None,
        start: datetime | None,
        end: datetime | None,
        duration_minutes: int | None,
    ) -> UserStatus:
        user = self._require_user(user_id)
        try:
            target = StatusType(status)
        except ValueError as exc:
            raise ValidationFailedError(f"Unknown status {status!r}") from exc

        now = self.clock.now()
        start = start or now
        if end is None and duration_minutes:
            end = start + timedelta(minutes=duration_minutes)
        if end is None:
            end = expiration_for_status(target, user.schedule, start)
        if end <= start:
            raise ValidationFailedError("End time must be after start time")

        check = validate_transition(target, user, start)
        if not check.valid:
            raise ValidationFailedError(check.reason or "Transition rejected")

        with self._user_lock(user_id):
            existing = self.store.get_status(user_id)
            slots = existing.time_slots if existing else []
            override = create_override_slot(target, detail, start, end, user, now)
            kept = remove_conflicting(slots, override)
            resolution = self._resolve(user, [*kept, override], now)
            return self._persist(user, existing, resolution, ChangeSource.AI_MODIFIED)

    def remove_time_slot(self, user_id: str, slot_id: str) -> OperationResult[UserStatus]:
        return self._guarded(
            "remove_time_slot", lambda: self._remove_time_slot(user_id, slot_id)
        )

    def _remove_time_slot(self, user_id: str, slot_id: str) -> UserStatus:
        with self._user_lock(user_id):
            existing = self.store.get_status(user_id)
            if existing is None:
                raise NotFoundError(f"Status for user {user_id} not found")
            remaining = [slot for slot in existing.time_slots if slot.id != slot_id]
            if len(remaining) == len(existing.time_slots):
                raise NotFoundError(f"Time slot {slot_id} not found")
            user = self._require_user(user_id)
            resolution = self._resolve(user, remaining, self.clock.now())
            return self._persist(user, existing, resolution, ChangeSource.AI_MODIFIED)

    def provision_user(self, user: User) -> OperationResult[UserStatus]:
        """Store a user and give it an initial resolved status."""

        def _provision() -> UserStatus:
            self.store.upsert_user(user)
            return self._refresh_status(user.id)

        return self._guarded("provision_user", _provision)

    # endregion

    # region Refresh
    def refresh_status(self, user_id: str) -> OperationResult[UserStatus]:
        return self._guarded("refresh_status", lambda: self._refresh_status(user_id))

    def _refresh_status(self, user_id: str) -> UserStatus:
        user = self._require_user(user_id)
        with self._user_lock(user_id):
            existing = self.store.get_status(user_id)
            slots = existing.time_slots if existing else []
            resolution = self._resolve(user, slots, self.clock.now())
            if (
                existing is not None
                and not resolution.changed
                and existing.status == resolution.status
                and existing.detail == resolution.detail
                and existing.expires_at == resolution.expires_at
            ):
                logger.debug("Status of %s unchanged", user_id)
                return existing
            return self._persist(user, existing, resolution, ChangeSource.SYSTEM)

    def refresh_all(self) -> OperationResult[List[UserStatus]]:
        return self.refresh_many(None)

    def refresh_many(self, user_ids: Iterable[str] | None) -> OperationResult[List[UserStatus]]:
        """Refresh several users; one failure never stops the others."""

        try:
            users = self.store.list_users()
        except Exception as exc:  # noqa: BLE001
            logger.exception("Listing users failed")
            return OperationResult.fail(str(exc), ErrorKind.INTERNAL)
        if user_ids is not None:
            wanted = set(user_ids)
            users = [user for user in users if user.id in wanted]

        refreshed: List[UserStatus] = []
        errors: List[str] = []
        for user in users:
            result = self.refresh_status(user.id)
            if result.success and result.data is not None:
                refreshed.append(result.data)
            else:
                errors.append(f"{user.name}: {result.error}")

        if errors:
            return OperationResult.fail(
                f"Some updates failed: {', '.join(errors)}",
                ErrorKind.PARTIAL_FAILURE,
                data=refreshed,
            )
        return OperationResult.ok(refreshed)

    def refresh_expired(self) -> OperationResult[int]:
        """Refresh users whose resolved status has passed its expiration."""

        def _refresh() -> int:
            now = self.clock.now()
            count = 0
            for status in self.store.list_statuses():
                if not is_expired(status.expires_at, now):
                    continue
                result = self.refresh_status(status.user_id)
                if result.success:
                    count += 1
                else:
                    logger.warning("Refreshing %s failed: %s", status.user_id, result.error)
            return count

        return self._guarded("refresh_expired", _refresh)

    def cleanup_expired(self) -> OperationResult[int]:
        """Re-resolve every user holding slots that have expired."""

        def _cleanup() -> int:
            now = self.clock.now()
            count = 0
            for status in self.store.list_statuses():
                if not expired_slots(status.time_slots, now):
                    continue
                result = self.refresh_status(status.user_id)
                if result.success:
                    count += 1
                else:
                    logger.warning("Cleanup of %s failed: %s", status.user_id, result.error)
            return count

        return self._guarded("cleanup_expired", _cleanup)

    # endregion

    # region Queries
    def query_statuses(
        self,
        user_ids: Sequence[str] | None = None,
        status_types: Sequence[StatusType | str] | None = None,
        include_details: bool = False,
    ) -> OperationResult[List[UserStatus]]:
        def _query() -> List[UserStatus]:
            statuses = self.store.list_statuses()
            if user_ids:
                statuses = [status for status in statuses if status.user_id in user_ids]
            if status_types:
                try:
                    wanted = {StatusType(value) for value in status_types}
                except ValueError as exc:
                    raise ValidationFailedError(f"Unknown status filter: {exc}") from exc
                statuses = [status for status in statuses if status.status in wanted]
            if not include_details:
                statuses = [
                    replace(status, detail=None, time_slots=[], history=[])
                    for status in statuses
                ]
            return statuses

        return self._guarded("query_statuses", _query)

    def get_status(self, user_id: str) -> OperationResult[UserStatus]:
        def _get() -> UserStatus:
            status = self.store.get_status(user_id)
            if status is None:
                raise NotFoundError(f"Status for user {user_id} not found")
            return status

        return self._guarded("get_status", _get)

    def get_time_slots(self, user_id: str, days: int = 7) -> OperationResult[List[TimeSlot]]:
        """Return slots that started within the last ``days`` days, newest first."""

        def _slots() -> List[TimeSlot]:
            status = self.store.get_status(user_id)
            if status is None:
                raise NotFoundError(f"Status for user {user_id} not found")
            cutoff = self.clock.now() - timedelta(days=days)
            recent = [slot for slot in status.time_slots if slot.start >= cutoff]
            return sorted(recent, key=lambda slot: slot.start, reverse=True)

        return self._guarded("get_time_slots", _slots)

    def find_user(self, query: str) -> Optional[User]:
        """Look a user up by id, falling back to a name substring match."""

        user = self.store.get_user(query)
        if user is not None:
            return user
        needle = query.strip().lower()
        if not needle:
            return None
        for candidate in self.store.list_users():
            if needle in candidate.name.lower():
                return candidate
        return None

    def active_users(self) -> OperationResult[List[UserStatus]]:
        return self.query_statuses(status_types=ACTIVE_STATUSES, include_details=True)

    def users_in_meetings(self) -> OperationResult[List[UserStatus]]:
        return self.query_statuses(status_types=[StatusType.MEETING], include_details=True)

    def users_on_leave(self) -> OperationResult[List[UserStatus]]:
        return self.query_statuses(status_types=[StatusType.ON_LEAVE], include_details=True)

    def users_working_from_home(self) -> OperationResult[List[UserStatus]]:
        return self.query_statuses(status_types=[StatusType.WFH], include_details=True)

    def department_roster(
        self, department: str
    ) -> OperationResult[List[Tuple[User, Optional[UserStatus]]]]:
        def _roster() -> List[Tuple[User, Optional[UserStatus]]]:
            wanted = department.strip().lower()
            return [
                (user, self.store.get_status(user.id))
                for user in self.store.list_users()
                if user.department.lower() == wanted
            ]

        return self._guarded("department_roster", _roster)

    # endregion


def load_roster_csv(path: Path, default_schedule: WorkSchedule | None = None) -> Iterable[User]:
    default_schedule = default_schedule or WorkSchedule()
    with path.open(newline="", encoding="utf-8") as handle:
        reader = csv.DictReader(handle)
        for row in reader:
            if not row.get("user_id"):
                continue
            custom_tags = [tag.strip() for tag in (row.get("custom_tags") or "").split(";") if tag.strip()]
            yield User(
                id=row["user_id"],
                name=row.get("name") or row["user_id"],
                department=row.get("department") or "",
                schedule=WorkSchedule(
                    row.get("start_time") or default_schedule.start_time,
                    row.get("end_time") or default_schedule.end_time,
                ),
                tag=row.get("tag") or None,
                custom_tags=custom_tags,
            )


__all__ = ["StatusManager", "load_roster_csv", "ACTIVE_STATUSES"]
