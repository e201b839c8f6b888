import threading
from datetime import date, datetime, timezone
from pathlib import Path

from status_pulse.db import Database
from status_pulse.errors import ErrorKind
from status_pulse.models import (
    AttendanceRecord,
    ChangeSource,
    SlotSource,
    StatusType,
    TimeSlot,
    User,
    UserStatus,
    WorkSchedule,
)
from status_pulse.service import StatusManager, load_roster_csv


def _at(day: int, hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 10, day, hour, minute, tzinfo=timezone.utc)


class FlakyDatabase(Database):
    """Fails attendance lookups for one user."""

    def __init__(self, path: Path, broken_user: str) -> None:
        super().__init__(path)
        self.broken_user = broken_user

    def get_attendance_for_user(self, user_id):
        if user_id == self.broken_user:
            raise RuntimeError("disk unavailable")
        return super().get_attendance_for_user(user_id)


def test_refresh_on_working_morning_is_on_duty(manager):
    result = manager.refresh_status("U1")
    assert result.success
    assert result.data.status is StatusType.ON_DUTY
    assert result.data.expires_at == _at(20, 18)
    assert [change.source for change in result.data.history] == [ChangeSource.SYSTEM]


def test_refresh_is_idempotent(manager, clock):
    first = manager.refresh_status("U1").data
    clock.advance(minutes=5)
    second = manager.refresh_status("U1").data
    assert second.last_updated == first.last_updated
    assert second.status is first.status
    assert len(second.history) == 1


def test_refresh_unknown_user_is_not_found(manager):
    result = manager.refresh_status("NOPE")
    assert not result.success
    assert result.kind is ErrorKind.NOT_FOUND


def test_update_outside_work_hours_is_rejected(manager, clock):
    clock.set(_at(20, 22))
    before = manager.refresh_status("U1").data
    result = manager.update_status("U1", StatusType.ON_DUTY)
    assert not result.success
    assert result.kind is ErrorKind.VALIDATION_FAILED
    assert manager.get_status("U1").data == before


def test_update_rejects_unknown_status_and_inverted_range(manager):
    unknown = manager.update_status("U1", "sleeping")
    assert unknown.kind is ErrorKind.VALIDATION_FAILED

    inverted = manager.update_status(
        "U1", StatusType.OUT, start=_at(20, 11), end=_at(20, 10)
    )
    assert inverted.kind is ErrorKind.VALIDATION_FAILED
    assert manager.get_status("U1").kind is ErrorKind.NOT_FOUND


def test_update_unknown_user_is_not_found(manager):
    result = manager.update_status("NOPE", StatusType.WFH)
    assert result.kind is ErrorKind.NOT_FOUND


def test_update_with_duration(manager):
    result = manager.update_status("U1", "out", "dentist", duration_minutes=30)
    assert result.success
    status = result.data
    assert status.status is StatusType.OUT
    assert status.detail == "dentist"
    [override] = status.time_slots
    assert override.source is SlotSource.AI_MODIFIED
    assert override.end == _at(20, 10, 30)
    assert status.history[-1].source is ChangeSource.AI_MODIFIED


def test_wfh_override_displaces_attendance_slot(manager, database, clock):
    attendance_slot = TimeSlot(
        id="attendance-work-att-1",
        status=StatusType.ON_DUTY,
        start=_at(20, 9),
        end=_at(20, 18),
        source=SlotSource.ATTENDANCE,
        priority=2,
        created_at=_at(20, 9),
        expires_at=_at(20, 18),
    )
    database.set_status(
        UserStatus(
            user_id="U1",
            name="Alice Chen",
            status=StatusType.ON_DUTY,
            last_updated=_at(20, 9),
            expires_at=_at(20, 18),
            time_slots=[attendance_slot],
        )
    )

    result = manager.update_status("U1", StatusType.WFH, "home office")
    assert result.success
    assert result.data.status is StatusType.WFH
    assert result.data.expires_at == _at(20, 18)
    assert [slot.source for slot in result.data.time_slots] == [SlotSource.AI_MODIFIED]

    clock.set(_at(20, 17, 59))
    assert manager.refresh_status("U1").data.status is StatusType.WFH


def test_override_beats_todays_attendance(manager, database):
    database.upsert_attendance(
        [
            AttendanceRecord(
                id="att-1",
                user_id="U1",
                date=date(2026, 10, 20),
                status=StatusType.ON_DUTY,
                work_type="office",
                start=_at(20, 9),
                end=_at(20, 18),
                check_in=_at(20, 9, 5),
            )
        ]
    )
    assert manager.refresh_status("U1").data.status is StatusType.ON_DUTY

    status = manager.update_status("U1", StatusType.OUT, "client visit", duration_minutes=60).data
    assert status.status is StatusType.OUT
    assert status.detail == "client visit"
    assert status.time_slots[0].priority == 3


def test_remove_time_slot(manager):
    status = manager.update_status("U1", StatusType.OUT, "lunch", duration_minutes=45).data
    slot_id = status.time_slots[0].id

    removed = manager.remove_time_slot("U1", slot_id)
    assert removed.success
    assert removed.data.status is StatusType.ON_DUTY
    assert removed.data.time_slots == []

    again = manager.remove_time_slot("U1", slot_id)
    assert again.kind is ErrorKind.NOT_FOUND


def test_remove_time_slot_without_status(manager):
    result = manager.remove_time_slot("U1", "ai-missing")
    assert result.kind is ErrorKind.NOT_FOUND


def test_history_records_every_change(manager, clock):
    manager.refresh_status("U1")
    manager.update_status(
        "U1", StatusType.MEETING, "Planning", start=_at(20, 10), end=_at(20, 10, 30)
    )
    clock.set(_at(20, 10, 45))
    status = manager.refresh_status("U1").data

    assert [(change.status, change.source) for change in status.history] == [
        (StatusType.ON_DUTY, ChangeSource.SYSTEM),
        (StatusType.MEETING, ChangeSource.AI_MODIFIED),
        (StatusType.ON_DUTY, ChangeSource.SYSTEM),
    ]
    assert status.history[1].detail == "Planning"


def test_cleanup_expired_drops_stale_claims(manager, clock):
    manager.update_status(
        "U1", StatusType.MEETING, "Standup", start=_at(20, 10), end=_at(20, 10, 30)
    )
    clock.set(_at(20, 10, 45))

    cleaned = manager.cleanup_expired()
    assert cleaned.success
    assert cleaned.data == 1
    status = manager.get_status("U1").data
    assert status.status is StatusType.ON_DUTY
    assert status.time_slots == []

    assert manager.cleanup_expired().data == 0


def test_refresh_expired_only_touches_expired_statuses(manager, clock):
    manager.refresh_status("U1")
    assert manager.refresh_expired().data == 0

    clock.set(_at(20, 18, 30))
    assert manager.refresh_expired().data == 1
    assert manager.get_status("U1").data.status is StatusType.OFF_DUTY


def test_refresh_all_reports_partial_failure(tmp_path, clock):
    database = FlakyDatabase(tmp_path / "flaky.db", broken_user="U2")
    database.upsert_user(User("U1", "Alice Chen", "Engineering", WorkSchedule("09:00", "18:00")))
    database.upsert_user(User("U2", "Bob Stone", "Design", WorkSchedule("09:00", "18:00")))
    manager = StatusManager(database, clock)

    result = manager.refresh_all()
    assert not result.success
    assert result.kind is ErrorKind.PARTIAL_FAILURE
    assert "Bob Stone: disk unavailable" in result.error
    assert [item.user_id for item in result.data] == ["U1"]
    assert database.get_status("U1") is not None
    assert database.get_status("U2") is None


def test_query_statuses_filters_and_strips(manager, database):
    database.upsert_user(User("U2", "Bob Stone", "Design", WorkSchedule("09:00", "18:00")))
    manager.refresh_all()
    manager.update_status("U2", StatusType.WFH, "waiting for a delivery")

    plain = manager.query_statuses(status_types=["wfh"]).data
    assert [item.user_id for item in plain] == ["U2"]
    assert plain[0].detail is None
    assert plain[0].time_slots == []
    assert plain[0].history == []

    detailed = manager.query_statuses(user_ids=["U2"], include_details=True).data
    assert detailed[0].detail == "waiting for a delivery"
    assert detailed[0].time_slots

    assert [item.user_id for item in manager.users_working_from_home().data] == ["U2"]
    assert {item.user_id for item in manager.active_users().data} == {"U1", "U2"}
    assert manager.users_on_leave().data == []


def test_get_time_slots_newest_first(manager):
    manager.update_status("U1", StatusType.OUT, "early", start=_at(20, 10), end=_at(20, 11))
    manager.update_status("U1", StatusType.OUT, "late", start=_at(20, 14), end=_at(20, 15))
    slots = manager.get_time_slots("U1").data
    assert [slot.detail for slot in slots] == ["late", "early"]
    assert manager.get_time_slots("NOPE").kind is ErrorKind.NOT_FOUND


def test_find_user_by_id_or_name(manager):
    assert manager.find_user("U1").name == "Alice Chen"
    assert manager.find_user("alice").id == "U1"
    assert manager.find_user("nobody") is None
    assert manager.find_user("  ") is None


def test_provision_user_creates_status(manager, database):
    result = manager.provision_user(User("U3", "Carol Diaz", "Support", WorkSchedule("09:00", "18:00")))
    assert result.success
    assert database.get_user("U3").department == "Support"
    assert database.get_status("U3").status is StatusType.ON_DUTY


def test_department_roster(manager, database):
    manager.refresh_status("U1")
    database.upsert_user(User("U2", "Bob Stone", "Design"))
    roster = manager.department_roster("engineering").data
    assert [(user.id, status.status) for user, status in roster] == [("U1", StatusType.ON_DUTY)]


def test_concurrent_updates_leave_one_override(manager):
    manager.refresh_status("U1")
    threads = [
        threading.Thread(
            target=manager.update_status,
            args=("U1", StatusType.OUT, f"errand {index}"),
            kwargs={"duration_minutes": 30},
        )
        for index in range(8)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    status = manager.get_status("U1").data
    overrides = [slot for slot in status.time_slots if slot.source is SlotSource.AI_MODIFIED]
    assert len(overrides) == 1
    assert status.detail == overrides[0].detail
    assert len(status.history) == 9


def test_load_roster_csv(tmp_path):
    roster = tmp_path / "roster.csv"
    roster.write_text(
        "user_id,name,department,start_time,end_time,tag,custom_tags\n"
        "U1,Alice Chen,Engineering,09:00,18:00,,oncall;lead\n"
        "U2,Bob Stone,Design,,,contractor,\n"
        ",Nobody,Ghosts,,,,\n",
        encoding="utf-8",
    )
    users = list(load_roster_csv(roster, WorkSchedule("08:00", "16:00")))
    assert [user.id for user in users] == ["U1", "U2"]
    assert users[0].custom_tags == ["oncall", "lead"]
    assert users[1].schedule == WorkSchedule("08:00", "16:00")
    assert users[1].tag == "contractor"


def test_query_with_unknown_status_is_a_validation_error(manager):
    manager.refresh_status("U1")
    result = manager.query_statuses(status_types=["sleeping"])
    assert not result.success
    assert result.kind is ErrorKind.VALIDATION_FAILED


def test_cleanup_counts_only_successful_refreshes(tmp_path, clock):
    database = FlakyDatabase(tmp_path / "flaky.db", broken_user="U2")
    stale = TimeSlot(
        id="ai-stale",
        status=StatusType.OUT,
        start=_at(20, 9),
        end=_at(20, 9, 30),
        source=SlotSource.AI_MODIFIED,
        priority=3,
        created_at=_at(20, 9),
        expires_at=_at(20, 9, 30),
    )
    for user_id, name in (("U1", "Alice Chen"), ("U2", "Bob Stone")):
        database.upsert_user(User(user_id, name, "Engineering", WorkSchedule("09:00", "18:00")))
        database.set_status(
            UserStatus(
                user_id=user_id,
                name=name,
                status=StatusType.OUT,
                last_updated=_at(20, 9),
                expires_at=_at(20, 9, 30),
                time_slots=[stale],
            )
        )
    manager = StatusManager(database, clock)

    cleaned = manager.cleanup_expired()
    assert cleaned.success
    assert cleaned.data == 1
    assert database.get_status("U1").time_slots == []
    assert database.get_status("U2").time_slots == [stale]
