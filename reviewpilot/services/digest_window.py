"""
Weekly digest windows in an account's local timezone

A reporting week ends at Sunday 00:00 local time. Windows are exactly 168
elapsed hours long, so a week that contains a DST change starts at 23:00 or
01:00 local on the previous Saturday/Sunday instead of drifting by an hour.
"""
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

WEEK = timedelta(hours=168)
SUNDAY = 6  # datetime.weekday()


@dataclass(frozen=True)
class WeekWindow:
    period_start: datetime
    period_end: datetime
    prev_start: datetime
    prev_end: datetime


def _load_zone(tz_name: str) -> ZoneInfo:
    if not tz_name:
        raise ValueError("Timezone name is required")
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Unknown timezone: {tz_name}") from e


def _as_utc(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def compute_week_window(tz_name: str, now: Optional[datetime] = None) -> WeekWindow:
    """
    Compute the current and previous reporting weeks.

    Args:
        tz_name: IANA timezone of the account, e.g. "America/New_York"
        now: Reference instant; naive values are taken as UTC

    Returns:
        WeekWindow with UTC-aware boundaries. period_end is the most recent
        Sunday 00:00 local (today's, when now is a Sunday).

    Raises:
        ValueError: If the timezone is unknown
    """
    tz = _load_zone(tz_name)
    local_now = _as_utc(now).astimezone(tz)

    days_since_sunday = (local_now.weekday() - SUNDAY) % 7
    last_sunday = local_now.date() - timedelta(days=days_since_sunday)
    period_end = datetime.combine(last_sunday, time.min, tzinfo=tz).astimezone(timezone.utc)

    period_start = period_end - WEEK
    return WeekWindow(
        period_start=period_start,
        period_end=period_end,
        prev_start=period_start - WEEK,
        prev_end=period_start,
    )


def is_digest_time(tz_name: str, now: Optional[datetime] = None,
                   weekday: int = SUNDAY, hour: int = 9) -> bool:
    """True only during the given local weekday/hour slot, whatever its UTC offset"""
    local_now = _as_utc(now).astimezone(_load_zone(tz_name))
    return local_now.weekday() == weekday and local_now.hour == hour
