"""Status resolution: merge time-windowed claims into one authoritative status."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from .models import (
    SOURCE_PRIORITY,
    AttendanceRecord,
    CalendarEvent,
    SlotSource,
    StatusType,
    TimeSlot,
    User,
)
from .timeutils import (
    expiration_for_status,
    is_same_day,
    is_within_work_hours,
    is_working_day,
    ranges_overlap,
    work_day_end,
)

logger = logging.getLogger(__name__)

WORK_HOUR_STATUSES = frozenset({StatusType.ON_DUTY, StatusType.OUT, StatusType.MEETING})


@dataclass(slots=True)
class ResolutionContext:
    user: User
    now: datetime | None = None
    attendance_records: Sequence[AttendanceRecord] = field(default_factory=list)
    calendar_events: Sequence[CalendarEvent] = field(default_factory=list)
    existing_slots: Sequence[TimeSlot] = field(default_factory=list)


@dataclass(slots=True)
class Resolution:
    status: StatusType
    detail: str | None
    last_updated: datetime
    expires_at: datetime
    time_slots: List[TimeSlot]
    changed: bool


@dataclass(slots=True)
class TransitionCheck:
    valid: bool
    reason: str | None = None


def resolve(context: ResolutionContext) -> Resolution:
    """Compute the current status for ``context.user``.

    Persisted slots are merged with slots derived from today's attendance and
    calendar facts, expired claims are dropped and the highest-priority slot
    covering ``now`` wins. Without an active slot the work schedule decides.
    """

    now = context.now or datetime.now().astimezone()
    user = context.user

    derived = derive_slots(context.attendance_records, context.calendar_events, user, now)
    merged = merge_slots([*context.existing_slots, *derived])
    current = live_slots(merged, now)

    active = find_active_slot(current, now)
    if active is not None:
        status, detail = active.status, active.detail
        expires_at = active.expires_at
    else:
        status, detail, upcoming = _fallback_status(current, user, now)
        expires_at = expiration_for_status(
            status, user.schedule, now, upcoming.end if upcoming else None
        )

    return Resolution(
        status=status,
        detail=detail,
        last_updated=now,
        expires_at=expires_at,
        time_slots=current,
        changed=slots_changed(context.existing_slots, current),
    )


def derive_slots(
    attendance_records: Iterable[AttendanceRecord],
    calendar_events: Iterable[CalendarEvent],
    user: User,
    now: datetime,
) -> List[TimeSlot]:
    slots: List[TimeSlot] = []
    today = now.date()
    for record in attendance_records:
        if record.date != today:
            continue
        slots.extend(slots_from_attendance(record, user, now))
    for event in calendar_events:
        if not is_same_day(event.start, now):
            continue
        slot = slot_from_calendar(event, now)
        if slot is not None:
            slots.append(slot)
    return slots


def slots_from_attendance(
    record: AttendanceRecord, user: User, now: datetime
) -> List[TimeSlot]:
    priority = SOURCE_PRIORITY[SlotSource.ATTENDANCE]
    if record.status is StatusType.ON_LEAVE:
        return [
            TimeSlot(
                id=f"attendance-leave-{record.id}",
                status=StatusType.ON_LEAVE,
                start=record.start,
                end=record.end,
                source=SlotSource.ATTENDANCE,
                priority=priority,
                created_at=now,
                expires_at=record.end,
            )
        ]
    if record.check_in is None:
        return []

    end = record.check_out or work_day_end(user.schedule, record.check_in)
    if end <= record.check_in:
        logger.debug("Skipping attendance %s with empty checked-in window", record.id)
        return []
    return [
        TimeSlot(
            id=f"attendance-work-{record.id}",
            status=record.status,
            start=record.check_in,
            end=end,
            source=SlotSource.ATTENDANCE,
            priority=priority,
            created_at=now,
            expires_at=max(
                expiration_for_status(record.status, user.schedule, record.check_in, end),
                end,
            ),
        )
    ]


def slot_from_calendar(event: CalendarEvent, now: datetime) -> Optional[TimeSlot]:
    if event.state == "canceled" or event.end <= event.start:
        return None
    return TimeSlot(
        id=f"calendar-{event.id}",
        status=StatusType.MEETING,
        start=event.start,
        end=event.end,
        source=SlotSource.CALENDAR,
        priority=SOURCE_PRIORITY[SlotSource.CALENDAR],
        created_at=now,
        expires_at=event.end,
        detail=event.title,
    )


def merge_slots(slots: Iterable[TimeSlot]) -> List[TimeSlot]:
    """Deduplicate by id and order by priority desc, then start asc.

    On an id collision the later slot replaces the earlier one unless the
    earlier one has strictly higher priority.
    """

    by_id: Dict[str, TimeSlot] = {}
    for slot in slots:
        kept = by_id.get(slot.id)
        if kept is None or slot.priority >= kept.priority:
            by_id[slot.id] = slot
    return sorted(by_id.values(), key=lambda slot: (-slot.priority, slot.start))


def live_slots(slots: Iterable[TimeSlot], now: datetime) -> List[TimeSlot]:
    return [slot for slot in slots if slot.expires_at > now]


def expired_slots(slots: Iterable[TimeSlot], now: datetime) -> List[TimeSlot]:
    return [slot for slot in slots if slot.expires_at <= now]


def find_active_slot(slots: Iterable[TimeSlot], now: datetime) -> Optional[TimeSlot]:
    for slot in slots:
        if slot.start <= now <= slot.end:
            return slot
    return None


def _fallback_status(
    slots: Sequence[TimeSlot], user: User, now: datetime
) -> tuple[StatusType, str | None, Optional[TimeSlot]]:
    if not is_working_day(now) or not is_within_work_hours(now, user.schedule):
        return StatusType.OFF_DUTY, None, None

    for slot in slots:
        if (
            slot.start > now
            and is_same_day(slot.start, now)
            and slot.priority >= SOURCE_PRIORITY[SlotSource.ATTENDANCE]
            and slot.status is StatusType.ON_LEAVE
        ):
            return StatusType.ON_LEAVE, slot.detail, slot
    return StatusType.ON_DUTY, None, None


def slots_changed(old: Sequence[TimeSlot], new: Sequence[TimeSlot]) -> bool:
    old_by_id = {slot.id: slot for slot in old}
    new_by_id = {slot.id: slot for slot in new}
    if old_by_id.keys() != new_by_id.keys():
        return True
    for slot_id, slot in new_by_id.items():
        previous = old_by_id[slot_id]
        if (
            previous.status != slot.status
            or previous.start != slot.start
            or previous.end != slot.end
        ):
            return True
    return False


def create_override_slot(
    status: StatusType,
    detail: str | None,
    start: datetime,
    end: datetime,
    user: User,
    now: datetime | None = None,
) -> TimeSlot:
    """Build a manual/AI override claim, which always has the top priority."""

    created_at = now or datetime.now().astimezone()
    expires_at = max(expiration_for_status(status, user.schedule, start, end), end)
    return TimeSlot(
        id=f"ai-{uuid.uuid4().hex[:16]}",
        status=status,
        start=start,
        end=end,
        source=SlotSource.AI_MODIFIED,
        priority=SOURCE_PRIORITY[SlotSource.AI_MODIFIED],
        created_at=created_at,
        expires_at=expires_at,
        detail=detail,
    )


def remove_conflicting(existing: Iterable[TimeSlot], new_slot: TimeSlot) -> List[TimeSlot]:
    """Drop slots displaced by ``new_slot``.

    A slot is displaced when it shares the id, or when it overlaps the new
    slot and its priority is not higher.
    """

    kept: List[TimeSlot] = []
    for slot in existing:
        if slot.id == new_slot.id:
            continue
        if ranges_overlap(slot, new_slot) and slot.priority <= new_slot.priority:
            continue
        kept.append(slot)
    return kept


def validate_transition(to_status: StatusType, user: User, at: datetime) -> TransitionCheck:
    if to_status not in WORK_HOUR_STATUSES:
        return TransitionCheck(valid=True)
    if is_working_day(at) and is_within_work_hours(at, user.schedule):
        return TransitionCheck(valid=True)
    if to_status is StatusType.ON_DUTY:
        reason = "Cannot set on_duty status outside working hours"
    else:
        reason = f"Cannot set work-related status {to_status.value} outside working hours"
    return TransitionCheck(valid=False, reason=reason)


__all__ = [
    "ResolutionContext",
    "Resolution",
    "TransitionCheck",
    "resolve",
    "derive_slots",
    "slots_from_attendance",
    "slot_from_calendar",
    "merge_slots",
    "live_slots",
    "expired_slots",
    "find_active_slot",
    "slots_changed",
    "create_override_slot",
    "remove_conflicting",
    "validate_transition",
]
