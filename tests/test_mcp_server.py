import asyncio
from datetime import datetime, timezone

from status_pulse.mcp_server import (
    build_server,
    claimed_spans,
    describe_listing,
    describe_status,
    describe_transition,
    tag_display,
)
from status_pulse.models import SlotSource, StatusType, TimeSlot, User, UserStatus
from status_pulse.sync import DataSynchronizer


def _at(hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 10, 20, hour, minute, tzinfo=timezone.utc)


def _slot(slot_id: str, start: datetime, end: datetime) -> TimeSlot:
    return TimeSlot(
        id=slot_id,
        status=StatusType.MEETING,
        start=start,
        end=end,
        source=SlotSource.CALENDAR,
        priority=1,
        created_at=start,
        expires_at=end,
        detail="Sync",
    )


def _status(status=StatusType.ON_DUTY, detail=None, slots=None) -> UserStatus:
    return UserStatus(
        user_id="U1",
        name="Alice Chen",
        status=status,
        last_updated=_at(10),
        expires_at=_at(18),
        detail=detail,
        time_slots=slots or [],
    )


def test_tag_display():
    assert tag_display(None) == ""
    assert tag_display(User("U1", "Alice Chen", "Engineering")) == ""
    assert tag_display(User("U1", "Alice Chen", "Engineering", tag="offsite")) == " [TEMP_STATUS:offsite]"


def test_claimed_spans_merge_adjacent_slots():
    status = _status(
        slots=[
            _slot("a", _at(10), _at(11)),
            _slot("b", _at(11), _at(11, 30)),
            _slot("c", _at(14), _at(15)),
        ]
    )
    assert claimed_spans(status) == "10:00-11:30, 14:00-15:00"


def test_describe_status():
    user = User("U1", "Alice Chen", "Engineering", tag="offsite")
    text = describe_status(user, _status(StatusType.MEETING, "Planning", [_slot("a", _at(10), _at(11))]))
    assert text.startswith("Alice Chen [TEMP_STATUS:offsite] is currently meeting - Planning.")
    assert "next change due 2026-10-20 18:00" in text
    assert text.endswith("Claimed time: 10:00-11:00.")


def test_describe_transition():
    user = User("U1", "Alice Chen", "Engineering")
    before = _status()
    after = _status(StatusType.OUT, "lunch")
    assert describe_transition(user, before, after, "Updated") == (
        "Updated Alice Chen's status from on duty to out - lunch."
    )
    assert describe_transition(user, before, _status(), "Refreshed") == (
        "Alice Chen's status remains on duty."
    )
    assert describe_transition(user, None, after, "Updated") == (
        "Updated Alice Chen's status to out - lunch."
    )


def test_describe_listing():
    user = User("U1", "Alice Chen", "Engineering")
    text = describe_listing("Users currently wfh:", [(user, _status(StatusType.WFH))])
    assert text == "Users currently wfh:\n• Alice Chen: wfh"


def test_server_registers_tools(database, manager):
    class NoFacts:
        async def fetch_attendance(self, users, day):
            return []

        async def fetch_calendar(self, users, day):
            return []

    server = build_server(manager, DataSynchronizer(database, manager, NoFacts()))
    names = {tool.name for tool in asyncio.run(server.list_tools())}
    assert {
        "get_user_status",
        "get_users_in_status",
        "get_all_user_statuses",
        "query_users_by_department",
        "update_user_status",
        "refresh_user_status",
        "refresh_all_statuses",
        "sync_data",
        "validate_consistency",
    } <= names
