"""Activity registry: the set of known activity names."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from enum import Enum

from track.errors import ActivityExists, UnknownActivity

logger = logging.getLogger(__name__)


class DeletePolicy(str, Enum):
    """What happens to sessions when their activity is deleted."""

    REJECT = "reject"
    CASCADE = "cascade"
    ORPHAN = "orphan"


def normalize_name(name: str) -> str:
    """Strip surrounding whitespace, rejecting empty names."""
    stripped = name.strip()
    if not stripped:
        raise ValueError("Activity name must not be empty")
    return stripped


class ActivityRegistry:
    """Known activities plus the currently selected ("active") one.

    Sessions reference activities by name, so renames and deletions are
    coordinated through SessionStore.rename_activity/delete_activity.
    """

    def __init__(
        self,
        activities: Mapping[str, datetime] | Iterable[str] = (),
        *,
        active: str | None = None,
    ) -> None:
        if isinstance(activities, Mapping):
            self._created: dict[str, datetime] = dict(activities)
        else:
            now = datetime.now(timezone.utc).replace(microsecond=0)
            self._created = {name: now for name in activities}
        self._active = active if active in self._created else None

    def __contains__(self, name: object) -> bool:
        return name in self._created

    def __len__(self) -> int:
        return len(self._created)

    @property
    def names(self) -> list[str]:
        """Activity names in creation order."""
        return sorted(self._created, key=lambda name: (self._created[name], name))

    @property
    def active(self) -> str | None:
        return self._active

    def created_at(self, name: str) -> datetime:
        if name not in self._created:
            raise UnknownActivity(name)
        return self._created[name]

    def exists(self, name: str) -> bool:
        return name in self._created

    def require(self, name: str) -> str:
        """Return name if registered, raise UnknownActivity otherwise."""
        if name not in self._created:
            raise UnknownActivity(name)
        return name

    def create(self, name: str, *, created_at: datetime | None = None) -> str:
        name = normalize_name(name)
        if name in self._created:
            raise ActivityExists(name)
        if created_at is None:
            created_at = datetime.now(timezone.utc).replace(microsecond=0)
        self._created[name] = created_at
        logger.debug("Created activity %r", name)
        return name

    def set_active(self, name: str | None) -> None:
        if name is not None:
            self.require(name)
        self._active = name

    def rename(self, old: str, new: str) -> str:
        """Rename an activity in the registry only.

        Use SessionStore.rename_activity to keep sessions in step.
        """
        self.require(old)
        new = normalize_name(new)
        if new == old:
            return new
        if new in self._created:
            raise ActivityExists(new)
        # Rebuild to keep the creation timestamp attached to the new name
        self._created = {
            (new if name == old else name): created
            for name, created in self._created.items()
        }
        if self._active == old:
            self._active = new
        logger.debug("Renamed activity %r to %r", old, new)
        return new

    def can_delete(self, name: str, referencing: int) -> bool:
        """True when no session references the activity."""
        self.require(name)
        return referencing == 0

    def delete(self, name: str) -> None:
        self.require(name)
        del self._created[name]
        if self._active == name:
            self._active = None
        logger.debug("Deleted activity %r", name)
