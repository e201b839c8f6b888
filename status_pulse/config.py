"""Configuration helpers for Status Pulse."""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timezone as dt_timezone, tzinfo
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

from .models import WorkSchedule
from .timeutils import parse_time_of_day

@dataclass(slots=True)
class Settings:
    """Runtime configuration values loaded from environment variables."""

    database_path: Path
    team_roster_path: Path
    timezone: tzinfo
    api_key: Optional[str] = None
    sync_interval_seconds: int = 300
    facts_api_url: Optional[str] = None
    facts_api_token: Optional[str] = None
    default_start_time: str = "08:30"
    default_end_time: str = "17:30"
    log_level: str = "info"

    @property
    def default_schedule(self) -> WorkSchedule:
        return WorkSchedule(self.default_start_time, self.default_end_time)

def load_settings(env_file: str | None = None) -> Settings:
    """Load settings from the environment, optionally from a specific file."""

    if env_file:
        load_dotenv(env_file)
    else:
        load_dotenv()

    db_path = Path(os.getenv("DATABASE_PATH", "status_pulse.db")).expanduser()
    roster_path = Path(
        os.getenv("TEAM_ROSTER_PATH", "team_roster.csv")
    ).expanduser()

    tz_name = os.getenv("STATUS_TIMEZONE", "UTC")
    timezone: tzinfo
    if tz_name.upper() == "UTC":
        timezone = dt_timezone.utc
    else:
        try:
            timezone = ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise RuntimeError(f"STATUS_TIMEZONE {tz_name!r} is not a known timezone") from exc

    interval_text = os.getenv("SYNC_INTERVAL_SECONDS", "300")
    try:
        interval = int(interval_text)
    except ValueError as exc:
        raise RuntimeError("SYNC_INTERVAL_SECONDS must be an integer") from exc

    start_time = os.getenv("DEFAULT_START_TIME", "08:30")
    end_time = os.getenv("DEFAULT_END_TIME", "17:30")
    for name, value in (("DEFAULT_START_TIME", start_time), ("DEFAULT_END_TIME", end_time)):
        try:
            parse_time_of_day(value, datetime(2000, 1, 3))
        except ValueError as exc:
            raise RuntimeError(f"{name} must use HH:MM") from exc

    return Settings(
        database_path=db_path,
        team_roster_path=roster_path,
        timezone=timezone,
        api_key=os.getenv("API_KEY") or None,
        sync_interval_seconds=interval,
        facts_api_url=os.getenv("FACTS_API_URL") or None,
        facts_api_token=os.getenv("FACTS_API_TOKEN") or None,
        default_start_time=start_time,
        default_end_time=end_time,
        log_level=os.getenv("LOG_LEVEL", "info"),
    )


__all__ = ["Settings", "load_settings"]
