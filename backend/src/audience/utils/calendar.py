"""Calendar helpers for UTC metric days and civil-timezone reporting weeks."""
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterator, Optional, Tuple
from zoneinfo import ZoneInfo


def utc_now() -> datetime:
    """Current instant as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def store_today(now: Optional[datetime] = None) -> date:
    """
    Today's date in the snapshot store's calendar (UTC).

    Days strictly before this date are closed: no event can still arrive for them.
    """
    now = now or utc_now()
    return now.astimezone(timezone.utc).date()


def utc_day_bounds(day: date) -> Tuple[datetime, datetime]:
    """Half-open ``[start, end)`` UTC instants covering one metric day."""
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def iter_days(start: date, end: date) -> Iterator[date]:
    """Yield every date in the inclusive range ``[start, end]``."""
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def previous_week_bounds(now: datetime, tz_name: str) -> Tuple[datetime, datetime]:
    """
    Previous calendar week in a civil timezone.

    Returns aware datetimes for Monday 00:00 and the following Monday 00:00
    (exclusive) in ``tz_name``. Wall-clock midnight is resolved per date, so
    a week spanning a DST change is 167 or 169 hours long.

    Args:
        now: Reference instant (aware)
        tz_name: IANA timezone name, e.g. "Europe/London"

    Returns:
        (week_start, week_end)
    """
    tz = ZoneInfo(tz_name)
    local_today = now.astimezone(tz).date()
    this_monday = local_today - timedelta(days=local_today.weekday())
    previous_monday = this_monday - timedelta(days=7)
    week_start = datetime.combine(previous_monday, time.min, tzinfo=tz)
    week_end = datetime.combine(this_monday, time.min, tzinfo=tz)
    return week_start, week_end


def iso_week_key(day: date) -> str:
    """ISO week identifier, e.g. ``2025-W07``."""
    iso_year, iso_week, _ = day.isocalendar()
    return f"{iso_year}-W{iso_week:02d}"
