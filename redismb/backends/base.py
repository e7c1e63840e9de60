"""Stream store protocol.

The delivery engine, publisher and dead-letter reprocessor never talk to
Redis directly. They receive a store implementing this protocol, which
exposes the raw stream primitives they coordinate through. All policy
(retries, rejection, replay) lives in the core; all atomicity
(ownership, pending-entry exclusivity) lives in the store.
"""

from dataclasses import dataclass
from typing import Protocol

from redismb.core.message import StreamEntry

# Only entries never delivered to any consumer of the group
NEW_ENTRIES = ">"


@dataclass(frozen=True)
class PendingEntry:
    """A delivered but unacknowledged entry of a consumer group."""

    id: str
    consumer: str
    idle_ms: int
    deliveries: int


class StreamStore(Protocol):
    """Protocol defining the stream primitives the core depends on."""

    @property
    def is_connected(self) -> bool:
        """Whether the store currently holds an open connection."""
        ...

    async def append(
        self,
        stream: str,
        values: list[str],
        *,
        max_length: int | None = None,
        approximate: bool = True,
        id: str = "*",
    ) -> str:
        """Append an entry and return its id, trimming to about ``max_length``."""
        ...

    async def create_group(
        self, stream: str, group: str, start_id: str = "0", mkstream: bool = True
    ) -> bool:
        """Create a consumer group.

        Returns:
            True if created, False if the group already existed.
        """
        ...

    async def delete_consumer(self, stream: str, group: str, consumer: str) -> int:
        """Remove a consumer, returning how many pending entries it owned."""
        ...

    async def read_group(
        self,
        group: str,
        consumer: str,
        streams: list[str],
        *,
        count: int,
        block_ms: int,
    ) -> list[tuple[str, list[StreamEntry]]]:
        """Read never-delivered entries of every stream for ``consumer``."""
        ...

    async def pending(
        self,
        stream: str,
        group: str,
        *,
        min_idle_ms: int,
        start: str = "-",
        end: str = "+",
        count: int = 20,
    ) -> list[PendingEntry]:
        """List pending entries idle for at least ``min_idle_ms``."""
        ...

    async def claim(
        self, stream: str, group: str, consumer: str, min_idle_ms: int, ids: list[str]
    ) -> list[StreamEntry | None]:
        """Reassign pending entries to ``consumer``, incrementing their delivery count."""
        ...

    async def ack(self, stream: str, group: str, ids: list[str]) -> int:
        """Acknowledge entries, removing them from the group's pending list."""
        ...

    async def delete(self, stream: str, ids: list[str]) -> int:
        """Delete entries from a stream."""
        ...

    async def range(self, stream: str, start: str = "-", end: str = "+") -> list[StreamEntry]:
        """Return the entries between two ids (inclusive)."""
        ...

    async def close(self) -> None:
        """Release the connection."""
        ...
