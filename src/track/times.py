"""Parsing of user-supplied times and formatting of times and durations."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from enum import Enum

from track.query import TimeRange

TIMESPEC_HELP = "[dd/mm/yy HH:MM], [dd/mm/yy], [HH:MM], YYYY-MM-DD or ISO 8601"


class SpecKind(str, Enum):
    DATETIME = "datetime"
    DATE = "date"
    TIME = "time"


@dataclass(frozen=True, slots=True)
class TimeSpec:
    """A user-supplied point in time that may lack a date or a time of day.

    Whether a bare date means the start or the end of that day, and which
    day a bare time belongs to, depends on whether it is used as a start or
    an end; see to_start() and to_end().
    """

    kind: SpecKind
    value: datetime | date | time

    def to_start(self, *, today: date | None = None) -> datetime:
        """Resolve as a start: dates at 00:00, bare times on today's date."""
        value = self.value
        if isinstance(value, datetime):
            return _localize(value)
        if isinstance(value, date):
            return _localize(datetime.combine(value, time()))
        if today is None:
            today = datetime.now().date()
        return _localize(datetime.combine(today, value))

    def to_end(self, start: datetime | None = None) -> datetime:
        """Resolve as an end: dates at 00:00 of the following day, bare
        times on the start's (local) date, or today without a start."""
        value = self.value
        if isinstance(value, datetime):
            return _localize(value)
        if isinstance(value, date):
            return _localize(datetime.combine(value + timedelta(days=1), time()))
        day = start.astimezone().date() if start is not None else datetime.now().date()
        return _localize(datetime.combine(day, value))


def _localize(value: datetime) -> datetime:
    """Attach the local timezone to naive datetimes."""
    if value.tzinfo is None:
        return value.astimezone()
    return value


def parse_timespec(text: str) -> TimeSpec:
    """Parse a user-supplied time.

    Raises:
        ValueError: If text matches none of the accepted formats.
    """
    text = text.strip()
    for fmt in ("%d/%m/%y", "%Y-%m-%d"):
        try:
            return TimeSpec(SpecKind.DATE, datetime.strptime(text, fmt).date())
        except ValueError:
            pass
    try:
        return TimeSpec(SpecKind.TIME, datetime.strptime(text, "%H:%M").time())
    except ValueError:
        pass
    try:
        return TimeSpec(SpecKind.DATETIME, datetime.strptime(text, "%d/%m/%y %H:%M"))
    except ValueError:
        pass
    try:
        return TimeSpec(SpecKind.DATETIME, datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        raise ValueError(f"must be in the form {TIMESPEC_HELP}") from None


def past_range(
    now: datetime,
    *,
    weeks: int = 0,
    days: int = 0,
    hours: int = 0,
    minutes: int = 0,
) -> TimeRange:
    """Range from some amount of time ago until now.

    With every amount zero the range starts at the first recorded session.
    """
    delta = timedelta(weeks=weeks, days=days, hours=hours, minutes=minutes)
    if not delta:
        return TimeRange(None, now)
    return TimeRange(now - delta, now)


def since_range(start: TimeSpec | None, now: datetime) -> TimeRange:
    return TimeRange(start.to_start() if start else None, now)


def between_range(start: TimeSpec | None, end: TimeSpec | None) -> TimeRange:
    start_dt = start.to_start() if start else None
    end_dt = end.to_end(start_dt) if end else None
    return TimeRange(start_dt, end_dt)


def day_range(day: date) -> TimeRange:
    """Local midnight to the next local midnight."""
    spec = TimeSpec(SpecKind.DATE, day)
    return TimeRange(spec.to_start(), spec.to_end())


def format_duration(seconds: int) -> str:
    """Format seconds as 'Xh Ym', 'Ym', or '<1m'.

    Args:
        seconds: Duration in seconds.

    Returns:
        Formatted duration string.
    """
    if seconds < 60:
        return "<1m" if seconds > 0 else "0m"
    total_minutes = seconds // 60
    hours = total_minutes // 60
    minutes = total_minutes % 60
    if hours > 0:
        return f"{hours}h {minutes:2d}m"
    return f"{minutes}m"


def format_stat_duration(seconds: int) -> str:
    """Format seconds exactly, e.g. '2h 5m 3s', '45m', '12s'."""
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours == 0 and minutes == 0:
        return f"{secs}s"
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs:
        parts.append(f"{secs}s")
    return " ".join(parts)


def format_timestamp(value: datetime) -> str:
    """Local 'dd/mm/yy HH:MM'."""
    return value.astimezone().strftime("%d/%m/%y %H:%M")


def format_range(start: datetime, end: datetime | None) -> str:
    """Format an interval, omitting the end's date when it matches the start's."""
    local_start = start.astimezone()
    if end is None:
        return f"{format_timestamp(start)} to now"
    local_end = end.astimezone()
    if local_start.date() == local_end.date():
        return f"{format_timestamp(start)} to {local_end.strftime('%H:%M')}"
    return f"{format_timestamp(start)} to {format_timestamp(end)}"
