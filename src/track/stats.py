"""Statistics over a range of sessions."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Iterator
from datetime import date, datetime, time, timedelta, timezone, tzinfo

from pydantic import BaseModel, Field

from track.query import UNBOUNDED, TimeRange, clip, intersects, resolve
from track.sessions import Session, now_utc, to_utc

SECONDS_PER_DAY = 86_400


class Summary(BaseModel):
    """Aggregated durations for the sessions inside a range.

    All durations are whole seconds. ``by_activity`` always sums to
    ``total_seconds``. Averages are floored; ``proportion`` is the share of
    the resolved span spent in sessions.
    """

    range_start: datetime | None = None
    range_end: datetime | None = None
    activity: str | None = None
    total_seconds: int = 0
    by_activity: dict[str, int] = Field(default_factory=dict)
    session_counts: dict[str, int] = Field(default_factory=dict)
    session_count: int = 0
    longest: Session | None = None
    longest_seconds: int = 0
    busiest_day: date | None = None
    busiest_day_seconds: int = 0
    span_seconds: int = 0
    average_session_seconds: int = 0
    average_per_day_seconds: int = 0
    proportion: float = 0.0


def _local_timezone() -> tzinfo:
    return datetime.now().astimezone().tzinfo or timezone.utc


def split_by_day(start: datetime, end: datetime, tz: tzinfo) -> Iterator[tuple[date, int]]:
    """Yield (local date, seconds) pieces of [start, end) cut at local midnight."""
    cursor = start
    while cursor < end:
        local = cursor.astimezone(tz)
        next_midnight = datetime.combine(local.date() + timedelta(days=1), time(), tzinfo=tz)
        boundary = min(next_midnight.astimezone(timezone.utc), end)
        yield local.date(), int((boundary - cursor).total_seconds())
        cursor = boundary


def summarize(
    sessions: Iterable[Session],
    window: TimeRange = UNBOUNDED,
    activity: str | None = None,
    *,
    now: datetime | None = None,
    tz: tzinfo | None = None,
) -> Summary:
    """Summarize sessions clipped to ``window``.

    Args:
        sessions: Candidate sessions, typically the result of query().
            Sessions with no time inside the window are ignored.
        window: Range to clip durations to.
        activity: Only count sessions of this activity.
        now: Effective end of an ongoing session (default: current time).
        tz: Zone used to assign time to calendar days (default: local).

    Returns:
        Summary with totals, per-activity breakdown, longest session and
        busiest day. Ties go to the earliest start / earliest date.
    """
    now = to_utc(now) if now is not None else now_utc()
    if tz is None:
        tz = _local_timezone()

    candidates = sorted(
        (
            session
            for session in sessions
            if intersects(session, window)
            and (activity is None or session.activity == activity)
        ),
        key=lambda session: session.start,
    )
    # An ongoing session can meet a range that starts after now; it has no
    # time inside the range, so it is left out entirely.
    clipped: list[tuple[Session, datetime, datetime]] = []
    for session in candidates:
        start, end = clip(session, window, now)
        if end > start:
            clipped.append((session, start, end))
    selected = [session for session, _, _ in clipped]

    by_activity: dict[str, int] = defaultdict(int)
    counts: dict[str, int] = defaultdict(int)
    per_day: dict[date, int] = defaultdict(int)
    longest: Session | None = None
    longest_seconds = 0

    for session, start, end in clipped:
        seconds = int((end - start).total_seconds())
        by_activity[session.activity] += seconds
        counts[session.activity] += 1
        # Strict comparison keeps the earliest start on ties
        if longest is None or seconds > longest_seconds:
            longest, longest_seconds = session, seconds
        for day, part in split_by_day(start, end, tz):
            per_day[day] += part

    busiest_day: date | None = None
    busiest_seconds = 0
    for day in sorted(per_day):
        if busiest_day is None or per_day[day] > busiest_seconds:
            busiest_day, busiest_seconds = day, per_day[day]

    total = sum(by_activity.values())
    summary = Summary(
        range_start=window.start,
        range_end=window.end,
        activity=activity,
        total_seconds=total,
        by_activity=dict(by_activity),
        session_counts=dict(counts),
        session_count=len(selected),
        longest=longest,
        longest_seconds=longest_seconds,
        busiest_day=busiest_day,
        busiest_day_seconds=busiest_seconds,
    )

    if selected:
        span = resolve(window, selected, now).seconds() or 0
        summary.span_seconds = span
        summary.average_session_seconds = total // len(selected)
        if span > 0:
            summary.proportion = total / span
            summary.average_per_day_seconds = total * SECONDS_PER_DAY // span
    return summary
