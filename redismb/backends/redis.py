"""Redis Streams store backed by redis.asyncio.

Maps the :class:`~redismb.backends.base.StreamStore` primitives onto
XADD/XGROUP/XREADGROUP/XPENDING/XCLAIM/XACK/XDEL/XRANGE.
"""

import asyncio
from collections.abc import Mapping
from typing import Any
from urllib.parse import urlparse, urlunparse

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from redismb.backends.base import NEW_ENTRIES, PendingEntry
from redismb.core.errors import BrokerConnectionError, ConnectTimeoutError
from redismb.core.logging import get_logger
from redismb.core.message import StreamEntry

DEFAULT_URL = "redis://localhost:6379"


def _sanitize_url(url: str) -> str:
    """Mask password in Redis URL for logging."""
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = f"{parsed.username or ''}:****@{parsed.hostname}"
            if parsed.port:
                netloc += f":{parsed.port}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return f"{parsed.hostname}:{parsed.port or 6379}"
    except Exception:
        return "<url>"


# Stream replies are kept as flat field-value lists: the entry layout is
# positional and may repeat a field name, which a dict would collapse
RAW_REPLY_COMMANDS = ("XRANGE", "XREADGROUP", "XCLAIM")


def _raw_reply(response: Any, **options: Any) -> Any:
    return response


def _use_raw_replies(client: Redis) -> Redis:
    for command in RAW_REPLY_COMMANDS:
        client.set_response_callback(command, _raw_reply)
    return client


def _xadd_args(
    stream: str,
    values: list[str],
    max_length: int | None = None,
    approximate: bool = True,
    id: str = "*",
) -> list[Any]:
    """Build an XADD command keeping the field-values in their given order."""
    args: list[Any] = ["XADD", stream]
    if max_length is not None:
        args += ["MAXLEN", "~", max_length] if approximate else ["MAXLEN", max_length]
    return [*args, id, *values]


def _to_entry(raw: Any) -> StreamEntry | None:
    # XCLAIM yields nil (or an id without fields) for entries deleted meanwhile
    if not raw:
        return None
    entry_id, fields = raw
    if entry_id is None or fields is None:
        return None
    return entry_id, list(fields)


class RedisStreamStore:
    """Stream store over a pooled redis.asyncio client.

    Args:
        url: Redis connection URL.
        pool_size: Connection pool size.
        client: Pre-built client to use instead of creating one from ``url``.
    """

    def __init__(
        self,
        url: str = DEFAULT_URL,
        pool_size: int = 10,
        client: Redis | None = None,
    ) -> None:
        self._url = url
        self._url_safe = _sanitize_url(url)
        self._pool_size = pool_size
        self._client: Redis | None = _use_raw_replies(client) if client is not None else None
        self._log = get_logger("redismb.redis")

    @property
    def url(self) -> str:
        return self._url

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    @property
    def client(self) -> Redis:
        if self._client is None:
            raise BrokerConnectionError("No redis connection has been established")
        return self._client

    @classmethod
    async def connect(
        cls, url: str = DEFAULT_URL, ttl: int = 30, pool_size: int = 10
    ) -> "RedisStreamStore":
        """Open a connection and wait until Redis answers.

        Args:
            url: Redis connection URL.
            ttl: Seconds to wait for Redis to become ready.
            pool_size: Connection pool size.

        Raises:
            ConnectTimeoutError: If Redis is not ready within ``ttl`` seconds.
        """
        store = cls(url, pool_size=pool_size)
        pool = ConnectionPool.from_url(url, max_connections=pool_size, decode_responses=True)
        store._client = _use_raw_replies(Redis(connection_pool=pool))
        try:
            await store._wait_ready(ttl)
        except ConnectTimeoutError:
            await store.close()
            raise
        return store

    async def _wait_ready(self, ttl: int) -> None:
        wait = ttl
        while True:
            try:
                await self.client.ping()
                self._log.info(f"Connected to Redis at {self._url_safe}")
                return
            except (RedisConnectionError, RedisTimeoutError, OSError) as e:
                wait -= 1
                if wait < 1:
                    raise ConnectTimeoutError(
                        f"Redis is not connecting (waited for {ttl} seconds)"
                    ) from e
                self._log.warning(f"Redis at {self._url_safe} not ready: {e}")
                await asyncio.sleep(1)

    async def append(
        self,
        stream: str,
        values: list[str],
        *,
        max_length: int | None = None,
        approximate: bool = True,
        id: str = "*",
    ) -> str:
        return await self.client.execute_command(
            *_xadd_args(stream, values, max_length, approximate, id)
        )

    async def create_group(
        self, stream: str, group: str, start_id: str = "0", mkstream: bool = True
    ) -> bool:
        try:
            await self.client.xgroup_create(stream, group, id=start_id, mkstream=mkstream)
        except ResponseError as e:
            if "BUSYGROUP" in str(e):
                return False
            raise
        return True

    async def delete_consumer(self, stream: str, group: str, consumer: str) -> int:
        return await self.client.xgroup_delconsumer(stream, group, consumer)

    async def read_group(
        self,
        group: str,
        consumer: str,
        streams: list[str],
        *,
        count: int,
        block_ms: int,
    ) -> list[tuple[str, list[StreamEntry]]]:
        response = await self.client.xreadgroup(
            groupname=group,
            consumername=consumer,
            streams={stream: NEW_ENTRIES for stream in streams},
            count=count,
            block=block_ms,
        )
        if not response:
            return []
        # RESP3 connections answer with a mapping instead of a list of pairs
        batches = response.items() if isinstance(response, Mapping) else response
        result = []
        for stream, entries in batches:
            parsed = [entry for entry in map(_to_entry, entries or []) if entry is not None]
            result.append((stream, parsed))
        return result

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
        rows = await self.client.xpending_range(
            stream, group, min=start, max=end, count=count, idle=min_idle_ms
        )
        return [
            PendingEntry(
                id=row["message_id"],
                consumer=row["consumer"],
                idle_ms=row["time_since_delivered"],
                deliveries=row["times_delivered"],
            )
            for row in rows
        ]

    async def claim(
        self, stream: str, group: str, consumer: str, min_idle_ms: int, ids: list[str]
    ) -> list[StreamEntry | None]:
        claimed = await self.client.xclaim(
            stream, group, consumer, min_idle_time=min_idle_ms, message_ids=ids
        )
        return [_to_entry(raw) for raw in claimed or []]

    async def ack(self, stream: str, group: str, ids: list[str]) -> int:
        return await self.client.xack(stream, group, *ids)

    async def delete(self, stream: str, ids: list[str]) -> int:
        return await self.client.xdel(stream, *ids)

    async def range(self, stream: str, start: str = "-", end: str = "+") -> list[StreamEntry]:
        records = await self.client.xrange(stream, min=start, max=end)
        return [entry for entry in map(_to_entry, records) if entry is not None]

    async def delete_stream(self, stream: str) -> None:
        """Delete a whole stream (for testing)."""
        await self.client.delete(stream)

    async def close(self) -> None:
        """Close Redis connection."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            self._log.info("Closed Redis connection")


async def bootstrap(url: str = DEFAULT_URL, ttl: int = 30) -> RedisStreamStore:
    """Connect to Redis and wait until it is ready.

    Args:
        url: Redis connection URL.
        ttl: Seconds waiting until Redis is connected.
    """
    return await RedisStreamStore.connect(url, ttl=ttl)


async def stop(store: RedisStreamStore | None) -> None:
    """Terminate a store connection, if any."""
    if store is not None:
        await store.close()
