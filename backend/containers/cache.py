"""In-memory cache of per-user containers.

The cache is a read-through/write-through view over the registry, rebuilt
at startup. It is never persisted and never trusted for liveness.
"""

import time
from dataclasses import dataclass, field

from models.schemas import ContainerStatus


@dataclass
class ContainerInfo:
    """A user's container as tracked in memory."""

    id: str
    name: str
    user_id: int
    status: ContainerStatus = ContainerStatus.RUNNING
    created_at: float = field(default_factory=time.time)
    last_active: float = field(default_factory=time.time)

    def touch(self) -> None:
        """Mark the container as used now."""
        self.last_active = time.time()


class ContainerCache:
    """Maps user id to ``ContainerInfo``."""

    def __init__(self) -> None:
        self._entries: dict[int, ContainerInfo] = {}

    def get(self, user_id: int) -> ContainerInfo | None:
        return self._entries.get(user_id)

    def put(self, info: ContainerInfo) -> None:
        self._entries[info.user_id] = info

    def evict(self, user_id: int) -> ContainerInfo | None:
        """Remove and return the entry for a user, if present."""
        return self._entries.pop(user_id, None)

    def evict_container(self, container_id: str) -> ContainerInfo | None:
        """Remove the entry pointing at ``container_id``, if any."""
        for user_id, info in list(self._entries.items()):
            if info.id == container_id:
                return self._entries.pop(user_id)
        return None

    def snapshot(self) -> list[ContainerInfo]:
        """Return a copy of all entries, safe to iterate while mutating."""
        return list(self._entries.values())

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)
