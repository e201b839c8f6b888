"""MCP server exposing Status Pulse status tools."""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from mcp.server.fastmcp import FastMCP

from .config import load_settings
from .db import Database
from .facts import HttpFactSource, SimulatedFactSource
from .models import StatusType, SyncOptions, TimeRange, User, UserStatus
from .service import StatusManager
from .sync import DataSynchronizer
from .timeutils import SystemClock, merge_overlapping_ranges

logger = logging.getLogger(__name__)


def tag_display(user: Optional[User]) -> str:
    if user is None or not user.tag:
        return ""
    return f" [TEMP_STATUS:{user.tag}]"


def _detail(value: Optional[str], template: str = " - {}") -> str:
    return template.format(value) if value else ""


def claimed_spans(user_status: UserStatus) -> str:
    spans = merge_overlapping_ranges(
        [TimeRange(slot.start, slot.end) for slot in user_status.time_slots]
    )
    return ", ".join(f"{span.start:%H:%M}-{span.end:%H:%M}" for span in spans)


def describe_status(user: Optional[User], user_status: UserStatus) -> str:
    name = user.name if user else user_status.name
    text = (
        f"{name}{tag_display(user)} is currently {user_status.status.label}"
        f"{_detail(user_status.detail)}. "
        f"Last updated: {user_status.last_updated:%Y-%m-%d %H:%M}, "
        f"next change due {user_status.expires_at:%Y-%m-%d %H:%M}."
    )
    spans = claimed_spans(user_status)
    if spans:
        text += f" Claimed time: {spans}."
    return text


def describe_transition(
    user: User, previous: Optional[UserStatus], current: UserStatus, verb: str
) -> str:
    if previous is None:
        return f"{verb} {user.name}{tag_display(user)}'s status to {current.status.label}{_detail(current.detail)}."
    if previous.status == current.status and previous.detail == current.detail:
        return f"{user.name}{tag_display(user)}'s status remains {current.status.label}{_detail(current.detail)}."
    return (
        f"{verb} {user.name}{tag_display(user)}'s status from "
        f"{previous.status.label}{_detail(previous.detail)} to "
        f"{current.status.label}{_detail(current.detail)}."
    )


def describe_listing(
    heading: str, entries: Sequence[tuple[Optional[User], UserStatus]]
) -> str:
    lines = [
        f"• {user.name if user else item.name}{tag_display(user)}: "
        f"{item.status.label}{_detail(item.detail)}"
        for user, item in entries
    ]
    return "\n".join([heading, *lines])


def build_server(manager: StatusManager, synchronizer: DataSynchronizer) -> FastMCP:
    mcp = FastMCP("status-pulse")

    def _not_found(query: str) -> str:
        names = ", ".join(user.name for user in manager.store.list_users())
        return f'User "{query}" not found. Available users: {names}'

    def _with_users(statuses: Sequence[UserStatus]) -> List[tuple[Optional[User], UserStatus]]:
        return [(manager.store.get_user(item.user_id), item) for item in statuses]

    @mcp.tool()
    async def get_user_status(user_id: str) -> str:
        """Get the current status of a user by id or name."""

        user = manager.find_user(user_id)
        if user is None:
            return _not_found(user_id)
        result = manager.get_status(user.id)
        if not result.success or result.data is None:
            return f"No status recorded for {user.name}: {result.error}"
        return describe_status(user, result.data)

    @mcp.tool()
    async def get_users_in_status(status: str) -> str:
        """List every user currently holding the given status."""

        try:
            wanted = StatusType(status)
        except ValueError:
            return f"Unknown status {status!r}. Use one of: {', '.join(s.value for s in StatusType)}"
        result = manager.query_statuses(status_types=[wanted], include_details=True)
        if not result.success:
            return f"Query failed: {result.error}"
        if not result.data:
            return f"No users are currently {wanted.label}."
        return describe_listing(f"Users currently {wanted.label}:", _with_users(result.data))

    @mcp.tool()
    async def get_all_user_statuses() -> str:
        """Get the current status of every user."""

        result = manager.query_statuses(include_details=True)
        if not result.success:
            return f"Query failed: {result.error}"
        if not result.data:
            return "No user status data available."
        return describe_listing("Current status of all users:", _with_users(result.data))

    @mcp.tool()
    async def query_users_by_department(department: str) -> str:
        """List the members of a department with their statuses."""

        result = manager.department_roster(department)
        if not result.success:
            return f"Query failed: {result.error}"
        if not result.data:
            return f"No users found in department {department}."
        lines = [
            f"• {user.name}{tag_display(user)} ({user.id}): "
            + (f"{item.status.label}{_detail(item.detail)}" if item else "unknown")
            for user, item in result.data
        ]
        return "\n".join([f"{department} has {len(result.data)} members:", *lines])

    @mcp.tool()
    async def update_user_status(
        user_id: str,
        status: str,
        status_detail: Optional[str] = None,
        duration_minutes: Optional[int] = None,
    ) -> str:
        """Set a user's status, optionally with a detail and a duration in minutes."""

        user = manager.find_user(user_id)
        if user is None:
            return _not_found(user_id)
        previous = manager.store.get_status(user.id)
        result = manager.update_status(
            user.id, status, status_detail, duration_minutes=duration_minutes
        )
        if not result.success or result.data is None:
            return f"Could not update {user.name}: {result.error}"
        return describe_transition(user, previous, result.data, "Updated")

    @mcp.tool()
    async def refresh_user_status(user_id: str) -> str:
        """Re-apply time-based status logic to one user."""

        user = manager.find_user(user_id)
        if user is None:
            return _not_found(user_id)
        previous = manager.store.get_status(user.id)
        result = manager.refresh_status(user.id)
        if not result.success or result.data is None:
            return f"Could not refresh {user.name}: {result.error}"
        return describe_transition(user, previous, result.data, "Refreshed")

    @mcp.tool()
    async def refresh_all_statuses() -> str:
        """Re-apply time-based status logic to every user."""

        before = {item.user_id: item for item in manager.store.list_statuses()}
        result = manager.refresh_all()
        changes = []
        for item in result.data or []:
            previous = before.get(item.user_id)
            if previous is None or previous.status != item.status or previous.detail != item.detail:
                user = manager.store.get_user(item.user_id)
                if user is not None:
                    changes.append(f"• {describe_transition(user, previous, item, 'Changed')}")
        text = "Refreshed all user statuses."
        text += "\n" + "\n".join(changes) if changes else " No changes were needed."
        if not result.success:
            text += f"\n{result.error}"
        return text

    @mcp.tool()
    async def sync_data(force_refresh: bool = False) -> str:
        """Pull today's attendance and calendar facts and re-resolve all statuses."""

        result = await synchronizer.sync_all(SyncOptions(force_refresh=force_refresh))
        data = result.data
        summary = (
            f"Synced {data.attendance_synced} attendance records and "
            f"{data.calendar_synced} calendar events; refreshed {data.statuses_updated} statuses."
            if data
            else "Sync did not run."
        )
        if not result.success:
            summary += f"\nErrors: {result.error}"
        return summary

    @mcp.tool()
    async def validate_consistency() -> str:
        """Check that every user has a status and no stale claims linger."""

        result = synchronizer.validate_consistency()
        if not result.success or result.data is None:
            return f"Consistency check failed: {result.error}"
        if result.data.is_consistent:
            return "All status records are consistent."
        return "\n".join(["Found consistency issues:", *(f"• {issue}" for issue in result.data.issues)])

    return mcp


def main() -> None:  # pragma: no cover - io bound
    settings = load_settings()
    logging.basicConfig(level=settings.log_level.upper())
    database = Database(settings.database_path)
    clock = SystemClock(settings.timezone)
    manager = StatusManager(database, clock)
    if settings.facts_api_url:
        facts = HttpFactSource(
            settings.facts_api_url, settings.facts_api_token, tz=settings.timezone
        )
    else:
        facts = SimulatedFactSource(tz=settings.timezone)
    synchronizer = DataSynchronizer(database, manager, facts, clock)
    synchronizer.sync_roster(settings.team_roster_path, settings.default_schedule)
    build_server(manager, synchronizer).run()


if __name__ == "__main__":  # pragma: no cover
    main()


__all__ = [
    "build_server",
    "describe_status",
    "describe_transition",
    "describe_listing",
    "claimed_spans",
    "tag_display",
    "main",
]
