"""In-memory stream store with consumer-group semantics.

This store is suitable for development and testing. It provides no
durability guarantees: streams are lost when the process terminates.
It mirrors the Redis Streams behaviour the core relies on:

- ids are ``<millis>-<seq>`` and strictly increasing per stream
- XREADGROUP ``>`` delivers each entry once per group and records it as
  pending with a delivery count of 1
- XCLAIM reassigns an idle entry, resets its idle time and increments its
  delivery count; entries deleted meanwhile come back as ``None``
- DELCONSUMER drops the consumer's pending entries
"""

import asyncio
import sys
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from redismb.backends.base import PendingEntry
from redismb.core.message import StreamEntry

_MAX_SEQ = sys.maxsize


class NoGroupError(LookupError):
    """Raised when a stream or consumer group does not exist."""

    def __init__(self, stream: str, group: str) -> None:
        self.stream = stream
        self.group = group
        super().__init__(f"NOGROUP No such key '{stream}' or consumer group '{group}'")


def parse_id(entry_id: str) -> tuple[int, int]:
    millis, _, seq = entry_id.partition("-")
    return int(millis), int(seq or 0)


def _start_bound(start: str) -> tuple[int, int]:
    if start == "-":
        return (0, 0)
    return parse_id(start)


def _end_bound(end: str) -> tuple[int, int]:
    if end == "+":
        return (sys.maxsize, _MAX_SEQ)
    millis, sep, seq = end.partition("-")
    # A bare millisecond bound covers every sequence number of that millisecond
    return (int(millis), int(seq) if sep else _MAX_SEQ)


@dataclass
class _PendingState:
    consumer: str
    delivered_at: float
    deliveries: int = 1


@dataclass
class _Group:
    last_id: tuple[int, int]
    consumers: set[str] = field(default_factory=set)
    pending: dict[str, _PendingState] = field(default_factory=dict)


@dataclass
class _Stream:
    entries: list[StreamEntry] = field(default_factory=list)
    groups: dict[str, _Group] = field(default_factory=dict)
    last_id: tuple[int, int] = (0, 0)


class InMemoryStreamStore:
    """Async stream store kept in process memory.

    Args:
        clock: Monotonic clock in seconds used for idle times. Defaults to
            ``time.monotonic``; tests can inject a controllable clock.
    """

    def __init__(self, clock: Callable[[], float] | None = None) -> None:
        self._streams: dict[str, _Stream] = {}
        self._clock = clock or time.monotonic
        self._condition = asyncio.Condition()
        self._connected = True

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _now_ms(self) -> float:
        return self._clock() * 1000

    def _group(self, stream: str, group: str) -> _Group:
        try:
            return self._streams[stream].groups[group]
        except KeyError:
            raise NoGroupError(stream, group) from None

    def _next_id(self, stream: _Stream, requested: str) -> tuple[int, int]:
        if requested != "*":
            new_id = parse_id(requested)
            if new_id <= stream.last_id:
                raise ValueError(
                    "The ID specified in XADD is equal or smaller than the target stream top item"
                )
            return new_id
        millis = int(time.time() * 1000)
        last_millis, last_seq = stream.last_id
        if millis > last_millis:
            return (millis, 0)
        return (last_millis, last_seq + 1)

    async def append(
        self,
        stream: str,
        values: list[str],
        *,
        max_length: int | None = None,
        approximate: bool = True,
        id: str = "*",
    ) -> str:
        async with self._condition:
            target = self._streams.setdefault(stream, _Stream())
            new_id = self._next_id(target, id)
            target.last_id = new_id
            entry_id = f"{new_id[0]}-{new_id[1]}"
            target.entries.append((entry_id, list(values)))
            # Exact trimming satisfies the approximate contract too
            if max_length is not None and len(target.entries) > max_length:
                del target.entries[: len(target.entries) - max_length]
            self._condition.notify_all()
        return entry_id

    async def create_group(
        self, stream: str, group: str, start_id: str = "0", mkstream: bool = True
    ) -> bool:
        if stream not in self._streams:
            if not mkstream:
                raise NoGroupError(stream, group)
            self._streams[stream] = _Stream()
        target = self._streams[stream]
        if group in target.groups:
            return False
        last_id = target.last_id if start_id == "$" else parse_id(start_id)
        target.groups[group] = _Group(last_id=last_id)
        return True

    async def delete_consumer(self, stream: str, group: str, consumer: str) -> int:
        state = self._group(stream, group)
        owned = [entry_id for entry_id, p in state.pending.items() if p.consumer == consumer]
        for entry_id in owned:
            del state.pending[entry_id]
        state.consumers.discard(consumer)
        return len(owned)

    def _deliver(
        self, group: str, consumer: str, streams: list[str], count: int
    ) -> list[tuple[str, list[StreamEntry]]]:
        result = []
        now = self._now_ms()
        for name in streams:
            state = self._group(name, group)
            state.consumers.add(consumer)
            batch = [
                entry for entry in self._streams[name].entries if parse_id(entry[0]) > state.last_id
            ][:count]
            if not batch:
                continue
            for entry_id, _ in batch:
                state.pending[entry_id] = _PendingState(consumer=consumer, delivered_at=now)
            state.last_id = parse_id(batch[-1][0])
            result.append((name, [(entry_id, list(values)) for entry_id, values in batch]))
        return result

    async def read_group(
        self,
        group: str,
        consumer: str,
        streams: list[str],
        *,
        count: int,
        block_ms: int | None = None,
    ) -> list[tuple[str, list[StreamEntry]]]:
        loop = asyncio.get_running_loop()
        deadline = None if not block_ms else loop.time() + block_ms / 1000
        async with self._condition:
            while True:
                result = self._deliver(group, consumer, streams, count)
                if result or block_ms is None:
                    return result
                if deadline is None:
                    # BLOCK 0 waits forever
                    await self._condition.wait()
                    continue
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return []
                try:
                    await asyncio.wait_for(self._condition.wait(), remaining)
                except TimeoutError:
                    return self._deliver(group, consumer, streams, count)

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
        state = self._group(stream, group)
        low, high = _start_bound(start), _end_bound(end)
        now = self._now_ms()
        rows = []
        for entry_id in sorted(state.pending, key=parse_id):
            if not low <= parse_id(entry_id) <= high:
                continue
            p = state.pending[entry_id]
            idle = int(now - p.delivered_at)
            if idle < min_idle_ms:
                continue
            rows.append(PendingEntry(entry_id, p.consumer, idle, p.deliveries))
            if len(rows) >= count:
                break
        return rows

    async def claim(
        self, stream: str, group: str, consumer: str, min_idle_ms: int, ids: list[str]
    ) -> list[StreamEntry | None]:
        state = self._group(stream, group)
        entries = dict(self._streams[stream].entries)
        now = self._now_ms()
        claimed: list[StreamEntry | None] = []
        for entry_id in ids:
            p = state.pending.get(entry_id)
            if p is None or now - p.delivered_at < min_idle_ms:
                continue
            if entry_id not in entries:
                del state.pending[entry_id]
                claimed.append(None)
                continue
            p.consumer = consumer
            p.delivered_at = now
            p.deliveries += 1
            state.consumers.add(consumer)
            claimed.append((entry_id, list(entries[entry_id])))
        return claimed

    async def ack(self, stream: str, group: str, ids: list[str]) -> int:
        state = self._group(stream, group)
        return sum(1 for entry_id in ids if state.pending.pop(entry_id, None) is not None)

    async def delete(self, stream: str, ids: list[str]) -> int:
        target = self._streams.get(stream)
        if target is None:
            return 0
        before = len(target.entries)
        doomed = set(ids)
        target.entries = [entry for entry in target.entries if entry[0] not in doomed]
        return before - len(target.entries)

    async def range(self, stream: str, start: str = "-", end: str = "+") -> list[StreamEntry]:
        target = self._streams.get(stream)
        if target is None:
            return []
        low, high = _start_bound(start), _end_bound(end)
        return [
            (entry_id, list(values))
            for entry_id, values in target.entries
            if low <= parse_id(entry_id) <= high
        ]

    async def close(self) -> None:
        self._connected = False

    def length(self, stream: str) -> int:
        """Number of entries currently held by a stream."""
        target = self._streams.get(stream)
        return len(target.entries) if target else 0

    def consumers(self, stream: str, group: str) -> set[str]:
        """Consumers currently registered in a group."""
        return set(self._group(stream, group).consumers)

    def pending_count(self, stream: str, group: str) -> int:
        """Number of delivered but unacknowledged entries of a group."""
        return len(self._group(stream, group).pending)

    def last_delivered_id(self, stream: str, group: str) -> str:
        millis, seq = self._group(stream, group).last_id
        return f"{millis}-{seq}"
