# services/datetimex.py
from __future__ import annotations
import os
from datetime import datetime, date, timezone
from zoneinfo import ZoneInfo
import pandas as pd

# Periods are calendar months in this zone; ticket resolution times are
# stored as naive wall-clock values of the same zone.
APP_TZ = ZoneInfo(os.getenv("APP_TZ", "UTC"))

MONTH_NAMES = ["January", "February", "March", "April", "May", "June", "July",
               "August", "September", "October", "November", "December"]


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def today_local() -> date:
    return datetime.now(APP_TZ).date()


def to_iso_z(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def month_window(year: int, month: int) -> tuple[datetime, datetime]:
    """[first instant of the month, first instant of the next month) as naive local times."""
    start = datetime(year, month, 1)
    end = datetime(year + 1, 1, 1) if month == 12 else datetime(year, month + 1, 1)
    return start, end


def mid_month(year: int, month: int) -> date:
    """Fixed as-of anchor for a period so results don't depend on the run day."""
    return date(year, month, 15)


def period_label(year: int, month: int) -> str:
    return f"{MONTH_NAMES[month - 1]} {year}"


def parse_date(s: str | None) -> date | None:
    if not s:
        return None
    ts = pd.to_datetime(s, errors="coerce")
    if pd.isna(ts):
        return None
    return ts.date()
