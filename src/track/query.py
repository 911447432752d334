"""Range queries over the session store."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone

from track.errors import InvalidInterval, NotFound
from track.sessions import Session, SessionStore, to_utc


@dataclass(frozen=True, slots=True)
class TimeRange:
    """Half-open interval [start, end); either bound may be None (unbounded)."""

    start: datetime | None = None
    end: datetime | None = None

    def __post_init__(self) -> None:
        if self.start is not None:
            object.__setattr__(self, "start", to_utc(self.start))
        if self.end is not None:
            object.__setattr__(self, "end", to_utc(self.end))
        if self.start is not None and self.end is not None and self.end <= self.start:
            raise InvalidInterval("Start of range must be before end")

    @property
    def is_unbounded(self) -> bool:
        return self.start is None and self.end is None

    def seconds(self) -> int | None:
        if self.start is None or self.end is None:
            return None
        return int((self.end - self.start).total_seconds())


UNBOUNDED = TimeRange()


def intersects(session: Session, window: TimeRange) -> bool:
    """Whether a session's interval meets the range.

    Session [s, e) intersects range [f, t) iff s < t and e > f. Missing range
    bounds are infinite and an ongoing session extends to +infinity. Touching
    a boundary (e == f or s == t) is not an intersection. Both the range
    query and the statistics clip use this predicate.
    """
    if window.end is not None and session.start >= window.end:
        return False
    if window.start is not None and session.end is not None and session.end <= window.start:
        return False
    return True


def effective_end(session: Session, now: datetime) -> datetime:
    """End used for durations: now for the ongoing session."""
    if session.end is None:
        return to_utc(now)
    return session.end


def clip(session: Session, window: TimeRange, now: datetime) -> tuple[datetime, datetime]:
    """The part of the session inside the range, as (start, end).

    Returns an empty interval (start == end) when nothing remains, which
    happens for an ongoing session when now lies before the range.
    """
    start = session.start
    end = effective_end(session, now)
    if window.start is not None and window.start > start:
        start = window.start
    if window.end is not None and window.end < end:
        end = window.end
    if end < start:
        end = start
    return start, end


def clipped_seconds(session: Session, window: TimeRange, now: datetime) -> int:
    """Whole seconds of the session that fall inside the range."""
    if not intersects(session, window):
        return 0
    start, end = clip(session, window, now)
    return int((end - start).total_seconds())


def query(store: SessionStore, window: TimeRange = UNBOUNDED) -> list[Session]:
    """Sessions intersecting the range, in ascending start order.

    Sessions crossing a range boundary are included whole. Bisection on
    start times skips everything that starts at or after the range end, and
    everything before the last session starting at or before the range start
    (stored sessions are disjoint, so only that one can still reach into it).
    """
    lo = 0
    if window.start is not None:
        lo = max(store.bisect_right(window.start) - 1, 0)
    hi = len(store)
    if window.end is not None:
        hi = store.bisect_left(window.end)
    return [session for session in store.slice(lo, hi) if intersects(session, window)]


def resolve(
    window: TimeRange,
    sessions: Iterable[Session],
    now: datetime | None = None,
) -> TimeRange:
    """Fill unbounded sides with the first start / last effective end.

    Raises NotFound when a bound is missing and there are no sessions to take
    it from.
    """
    if window.start is not None and window.end is not None:
        return window
    if now is None:
        now = datetime.now(timezone.utc)
    ordered = list(sessions)
    if not ordered:
        raise NotFound("There are no recorded sessions")
    start = window.start if window.start is not None else min(s.start for s in ordered)
    end = window.end
    if end is None:
        end = max(effective_end(s, now) for s in ordered)
    return TimeRange(start, end)
