"""Exceptions raised by the session store and activity registry."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from track.sessions import Session


class TrackError(Exception):
    """Base exception for recoverable tracking errors.

    The store never applies a mutation partially before raising one of these.
    """

    pass


class InvalidInterval(TrackError):
    """Raised when an interval does not end after it starts."""

    def __init__(self, message: str = "Session must end after it starts") -> None:
        super().__init__(message)


class OverlapConflict(TrackError):
    """Raised when a candidate interval intersects an existing session."""

    def __init__(self, conflict: Session) -> None:
        self.conflict = conflict
        super().__init__(f"Session overlaps existing session #{conflict.id}")


class OngoingConflict(TrackError):
    """Raised when starting a session while another one is ongoing."""

    def __init__(self, ongoing: Session) -> None:
        self.ongoing = ongoing
        super().__init__(f'There is already an ongoing session of "{ongoing.activity}"')


class NoOngoing(TrackError):
    """Raised when ending or cancelling with nothing being tracked."""

    def __init__(self) -> None:
        super().__init__("There is no ongoing session")


class InvalidEnd(TrackError):
    pass


class NotFound(TrackError):
    pass


class UnknownActivity(TrackError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f'No activity named "{name}" exists')


class ActivityExists(TrackError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f'An activity named "{name}" already exists')


class ActivityInUse(TrackError):
    def __init__(self, name: str, count: int) -> None:
        self.name = name
        self.count = count
        super().__init__(
            f'Activity "{name}" still has {count} session{"s" if count != 1 else ""}'
        )
