"""Test configuration ensuring local package import when editable install not active.

The project root is added to sys.path so `import status_pulse` works, and the
shared fixtures pin every test to a known Tuesday morning in UTC.
"""

from __future__ import annotations

import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from status_pulse.db import Database  # noqa: E402
from status_pulse.models import User, WorkSchedule  # noqa: E402
from status_pulse.service import StatusManager  # noqa: E402
from status_pulse.timeutils import FixedClock  # noqa: E402

# 2026-10-20 is a Tuesday
TUESDAY_10AM = datetime(2026, 10, 20, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(TUESDAY_10AM)


@pytest.fixture
def database(tmp_path: Path) -> Database:
    return Database(tmp_path / "status.db")


@pytest.fixture
def user() -> User:
    return User("U1", "Alice Chen", "Engineering", WorkSchedule("09:00", "18:00"))


@pytest.fixture
def manager(database: Database, clock: FixedClock, user: User) -> StatusManager:
    database.upsert_user(user)
    return StatusManager(database, clock)
