"""Session model and the ordered session store."""

from __future__ import annotations

import bisect
import logging
from collections.abc import Iterable, Iterator
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from track.activities import ActivityRegistry, DeletePolicy
from track.errors import (
    ActivityInUse,
    InvalidEnd,
    InvalidInterval,
    NoOngoing,
    NotFound,
    OngoingConflict,
    OverlapConflict,
    TrackError,
)

logger = logging.getLogger(__name__)

FUTURE_END_MESSAGE = "Session cannot have ended in the future"


def to_utc(value: datetime) -> datetime:
    """Normalize a timestamp to timezone-aware UTC with whole-second precision.

    Naive timestamps are taken to already be in UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(microsecond=0)


def now_utc() -> datetime:
    """Current time in UTC, truncated to whole seconds."""
    return datetime.now(timezone.utc).replace(microsecond=0)


def _resolve_now(now: datetime | None) -> datetime:
    return to_utc(now) if now is not None else now_utc()


class Session(BaseModel):
    """One continuous span of tracked time.

    ``end`` is None while the session is ongoing. Instances are immutable;
    the store replaces them wholesale on edit.
    """

    model_config = ConfigDict(frozen=True)

    id: int = Field(gt=0)
    activity: str
    start: datetime
    end: datetime | None = None
    notes: str = ""

    @field_validator("start", "end")
    @classmethod
    def _normalize_timestamp(cls, value: datetime | None) -> datetime | None:
        return None if value is None else to_utc(value)

    @model_validator(mode="after")
    def _check_interval(self) -> Session:
        if self.end is not None and self.end <= self.start:
            raise ValueError("Session must end after it starts")
        return self

    @property
    def is_ongoing(self) -> bool:
        return self.end is None

    def duration_seconds(self, now: datetime | None = None) -> int:
        """Whole seconds from start to end, or to now for an ongoing session."""
        end = self.end
        if end is None:
            end = _resolve_now(now)
        return max(0, int((end - self.start).total_seconds()))


class SessionStore:
    """All sessions, kept in ascending start order.

    Starts are unique (sessions never overlap and always have positive
    length), so a parallel list of start keys supports bisect lookups. Every
    mutation validates against at most two neighbours before changing
    anything; a raised TrackError means the store is untouched.

    When a registry is given, operations that name an activity check it
    exists. Without one, activity names are not validated.
    """

    def __init__(self, registry: ActivityRegistry | None = None) -> None:
        self.registry = registry
        self._sessions: list[Session] = []
        self._starts: list[datetime] = []
        self._by_id: dict[int, Session] = {}
        self._ongoing_id: int | None = None
        self._next_id = 1

    @classmethod
    def from_sessions(
        cls,
        sessions: Iterable[Session],
        registry: ActivityRegistry | None = None,
    ) -> SessionStore:
        """Materialize a store from persisted sessions.

        Sorts once by start, then checks each session against its predecessor.
        Sessions referencing unknown activities are kept (orphans).
        """
        store = cls(registry)
        for session in sorted(sessions, key=lambda s: s.start):
            if session.id in store._by_id:
                raise TrackError(f"Duplicate session id #{session.id}")
            store._check_free(session.start, session.end)
            store._insert(session)
        logger.debug("Loaded %d sessions", len(store))
        return store

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[Session]:
        return iter(tuple(self._sessions))

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._by_id

    @property
    def sessions(self) -> tuple[Session, ...]:
        """Snapshot of all sessions in start order."""
        return tuple(self._sessions)

    @property
    def ongoing_id(self) -> int | None:
        return self._ongoing_id

    @property
    def is_tracking(self) -> bool:
        return self._ongoing_id is not None

    def current_ongoing(self) -> Session | None:
        if self._ongoing_id is None:
            return None
        return self._by_id[self._ongoing_id]

    def get(self, session_id: int) -> Session:
        try:
            return self._by_id[session_id]
        except KeyError:
            raise NotFound(f"No session with id #{session_id} exists") from None

    def last(self) -> Session:
        """The chronologically last-starting session."""
        if not self._sessions:
            raise NotFound("There are no recorded sessions")
        return self._sessions[-1]

    def bisect_left(self, at: datetime) -> int:
        """Index of the first session starting at or after ``at``."""
        return bisect.bisect_left(self._starts, to_utc(at))

    def bisect_right(self, at: datetime) -> int:
        """Index of the first session starting strictly after ``at``."""
        return bisect.bisect_right(self._starts, to_utc(at))

    def slice(self, lo: int, hi: int) -> list[Session]:
        return self._sessions[lo:hi]

    def count_for(self, activity: str) -> int:
        return sum(1 for session in self._sessions if session.activity == activity)

    # Mutations

    def start(self, activity: str, at: datetime) -> Session:
        """Open a new ongoing session at ``at``."""
        self._require_activity(activity)
        at = to_utc(at)
        ongoing = self.current_ongoing()
        if ongoing is not None:
            raise OngoingConflict(ongoing)
        self._check_free(at, None)
        session = Session(id=self._allocate_id(), activity=activity, start=at)
        self._insert(session)
        logger.debug("Started session #%d of %r at %s", session.id, activity, at)
        return session

    def end(
        self,
        at: datetime,
        notes: str | None = None,
        *,
        now: datetime | None = None,
    ) -> Session:
        """Close the ongoing session at ``at``, which must not be after ``now``."""
        ongoing = self.current_ongoing()
        if ongoing is None:
            raise NoOngoing()
        at = to_utc(at)
        if at <= ongoing.start:
            raise InvalidEnd("Session must end after it starts")
        if at > _resolve_now(now):
            raise InvalidEnd(FUTURE_END_MESSAGE)
        update: dict[str, object] = {"end": at}
        if notes is not None:
            update["notes"] = notes
        closed = ongoing.model_copy(update=update)
        self._replace(ongoing, closed)
        logger.debug("Ended session #%d at %s", closed.id, at)
        return closed

    def cancel(self) -> Session:
        """Discard the ongoing session."""
        ongoing = self.current_ongoing()
        if ongoing is None:
            raise NoOngoing()
        self._delete(ongoing)
        logger.debug("Cancelled session #%d", ongoing.id)
        return ongoing

    def add(
        self,
        activity: str,
        start: datetime,
        end: datetime,
        notes: str = "",
        *,
        now: datetime | None = None,
    ) -> Session:
        """Insert a closed session at its chronological position.

        Raises InvalidInterval when the session does not end after it starts
        or ends after ``now`` (default: the current time).
        """
        self._require_activity(activity)
        start, end = to_utc(start), to_utc(end)
        if end <= start:
            raise InvalidInterval()
        if end > _resolve_now(now):
            raise InvalidInterval(FUTURE_END_MESSAGE)
        self._check_free(start, end)
        session = Session(
            id=self._allocate_id(), activity=activity, start=start, end=end, notes=notes
        )
        self._insert(session)
        logger.debug("Added session #%d of %r [%s, %s)", session.id, activity, start, end)
        return session

    def past(
        self,
        activity: str,
        start: datetime,
        now: datetime,
        notes: str = "",
    ) -> Session:
        """Record a session that started at ``start`` and ends now."""
        return self.add(activity, start, now, notes, now=now)

    def edit(
        self,
        session_id: int,
        *,
        activity: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> Session:
        """Change fields of a session, revalidating against all other sessions.

        The ongoing session's end cannot be edited; end or cancel it instead.
        A closed session must not end after ``now``.
        """
        current = self.get(session_id)
        if activity is not None and activity != current.activity:
            self._require_activity(activity)
        if current.is_ongoing and end is not None:
            raise InvalidEnd(
                "The end of the ongoing session cannot be edited; end or cancel it instead"
            )
        new_start = to_utc(start) if start is not None else current.start
        new_end = to_utc(end) if end is not None else current.end
        if new_end is not None and new_end <= new_start:
            raise InvalidInterval()
        if new_end is not None and new_end > _resolve_now(now):
            raise InvalidInterval(FUTURE_END_MESSAGE)
        self._check_free(new_start, new_end, exclude=session_id)

        update: dict[str, object] = {"start": new_start, "end": new_end}
        if activity is not None:
            update["activity"] = activity
        if notes is not None:
            update["notes"] = notes
        edited = current.model_copy(update=update)
        self._replace(current, edited)
        logger.debug("Edited session #%d", session_id)
        return edited

    def remove(self, session_id: int) -> Session:
        """Delete a session. Removing the ongoing session cancels it."""
        session = self.get(session_id)
        if session.is_ongoing:
            return self.cancel()
        self._delete(session)
        logger.debug("Removed session #%d", session_id)
        return session

    def rename_activity(self, old: str, new: str) -> str:
        """Rename an activity and every session referencing it."""
        if self.registry is not None:
            new = self.registry.rename(old, new)
        for index, session in enumerate(self._sessions):
            if session.activity == old:
                renamed = session.model_copy(update={"activity": new})
                self._sessions[index] = renamed
                self._by_id[renamed.id] = renamed
        return new

    def delete_activity(
        self,
        name: str,
        policy: DeletePolicy = DeletePolicy.REJECT,
    ) -> list[Session]:
        """Delete an activity, applying ``policy`` to its sessions.

        Returns the sessions removed (only non-empty under CASCADE).
        """
        referencing = [session for session in self._sessions if session.activity == name]
        if self.registry is not None:
            if policy is DeletePolicy.REJECT and not self.registry.can_delete(
                name, len(referencing)
            ):
                raise ActivityInUse(name, len(referencing))
            self.registry.delete(name)
        elif policy is DeletePolicy.REJECT and referencing:
            raise ActivityInUse(name, len(referencing))

        if policy is not DeletePolicy.CASCADE:
            return []
        for session in referencing:
            self._delete(session)
        logger.debug("Deleted %d sessions of %r", len(referencing), name)
        return referencing

    # Internals

    def _require_activity(self, activity: str) -> None:
        if self.registry is not None:
            self.registry.require(activity)

    def _allocate_id(self) -> int:
        session_id = self._next_id
        self._next_id += 1
        return session_id

    def _check_free(
        self,
        start: datetime,
        end: datetime | None,
        *,
        exclude: int | None = None,
    ) -> None:
        """Raise OverlapConflict if [start, end) meets another session.

        Only the immediate predecessor and successor at the insertion point
        can overlap, since stored sessions are disjoint and ordered. An end of
        None means the interval is open. ``exclude`` skips the session being
        edited.
        """
        index = bisect.bisect_left(self._starts, start)

        before = index - 1
        if before >= 0 and self._sessions[before].id == exclude:
            before -= 1
        if before >= 0:
            predecessor = self._sessions[before]
            if predecessor.end is None or predecessor.end > start:
                raise OverlapConflict(predecessor)

        after = index
        if after < len(self._sessions) and self._sessions[after].id == exclude:
            after += 1
        if after < len(self._sessions):
            successor = self._sessions[after]
            if end is None or successor.start < end:
                raise OverlapConflict(successor)

    def _insert(self, session: Session) -> None:
        index = bisect.bisect_left(self._starts, session.start)
        self._sessions.insert(index, session)
        self._starts.insert(index, session.start)
        self._by_id[session.id] = session
        if session.end is None:
            self._ongoing_id = session.id
        self._next_id = max(self._next_id, session.id + 1)

    def _delete(self, session: Session) -> None:
        index = bisect.bisect_left(self._starts, session.start)
        del self._sessions[index]
        del self._starts[index]
        del self._by_id[session.id]
        if self._ongoing_id == session.id:
            self._ongoing_id = None

    def _replace(self, old: Session, new: Session) -> None:
        self._delete(old)
        self._insert(new)
