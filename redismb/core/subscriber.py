"""Subscriber: consumer-group delivery and retry engine.

A Subscriber reads one or more channels as a member of a consumer group
and runs a read/dispatch cycle:

1. Read entries never delivered to the group, skip (ack) those reserved
   for another group and hand the rest to the processing callback.
2. Sweep the group's pending entries idle for longer than ``timeout``:
   reclaim and retry those still within the retry budget, move the rest
   to the dead-letter stream.

Ownership and pending-entry exclusivity are delegated to the store; the
Subscriber keeps no shared state besides its own read flag.
"""

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, Protocol

from redismb.core.errors import (
    BrokerConnectionError,
    ConfigError,
    ErrorKind,
    InvalidCallbackError,
    MaxRetriesExceeded,
    ProcessingError,
)
from redismb.core.logging import get_logger, log_message_status
from redismb.core.message import DEAD_LETTER_STREAM, Message, StreamEntry, rejection_values

if TYPE_CHECKING:
    from redismb.backends.base import StreamStore

# Store-side BLOCK for continuous reads: nothing to do until a message arrives
CONTINUOUS_BLOCK_MS = 3000
# Store-side BLOCK for interval reads: a message is likely already waiting
INTERVAL_BLOCK_MS = 1
# Pending entries inspected per sweep and channel
PENDING_PAGE_SIZE = 20

RETRY_BASE_DELAY = 0.1
RETRY_MAX_DELAY = 30.0

MessageCallback = Callable[[Message], Awaitable[Any] | Any]


class ErrorHandler(Protocol):
    """Shape of the error callback: ``(error, channel?, message?)``.

    The handler must not raise; an exception escaping it is not caught
    and ends the task that invoked it.
    """

    def __call__(
        self, error: Exception, channel: str | None = None, message: Message | None = None
    ) -> Awaitable[None] | None: ...


def error_handler_arity(callback: Any) -> int:
    """Number of positional arguments (1 to 3) the error callback is called with.

    Raises:
        InvalidCallbackError: If the callback is not callable or cannot be
            called with between one and three positional arguments.
    """
    if not callable(callback):
        raise InvalidCallbackError("Callback must be a function")
    try:
        parameters = list(inspect.signature(callback).parameters.values())
    except (TypeError, ValueError):
        return 3

    if any(p.kind is p.VAR_POSITIONAL for p in parameters):
        arity = 3
    else:
        positional = [p for p in parameters if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD)]
        arity = min(len(positional), 3)

    required = [
        p
        for p in parameters
        if p.default is p.empty and p.kind not in (p.VAR_POSITIONAL, p.VAR_KEYWORD)
    ]
    if arity < 1 or len(required) > arity or any(p.kind is p.KEYWORD_ONLY for p in required):
        raise InvalidCallbackError(
            "Callback function must accept between 1 and 3 parameters: (err, channel?, message?)"
        )
    return arity


def _validate_channels(channels: Any) -> list[str]:
    if isinstance(channels, str):
        channels = [channels]
    if not channels:
        raise ConfigError("No channels in Subscriber provided")
    channels = list(channels)
    if not all(isinstance(channel, str) and channel for channel in channels):
        raise ConfigError("Channel names must be non-empty strings", kind=ErrorKind.INVALID_VALUE)
    return channels


class Subscriber:
    """Consumer-group subscriber with bounded retries and dead-lettering.

    If ``interval`` is 0 the channels are read continuously; otherwise a
    full cycle runs every ``interval`` milliseconds.

    Args:
        store: Stream store the subscriber reads through.
        channels: Channels to consume.
        group: Consumer group shared by competing subscribers.
        client_id: Consumer name. Defaults to ``{group}:sub:{epoch-millis}``.
        timeout: Milliseconds a delivered message may stay unacknowledged
            before it can be reclaimed.
        interval: Milliseconds between read cycles, 0 for continuous reading.
        messages: Maximum messages read per channel and cycle.
        retries: Reclaims allowed before a message is rejected.
        on_error: Error callback ``(error, channel?, message?)``; it must
            not raise. Defaults to logging the error.
    """

    def __init__(
        self,
        store: "StreamStore",
        channels: list[str] | str,
        group: str,
        client_id: str | None = None,
        timeout: int = 10000,
        interval: int = 0,
        messages: int = 1,
        retries: int = 3,
        on_error: ErrorHandler | None = None,
    ) -> None:
        self.channels = _validate_channels(channels)
        if not group:
            raise ConfigError("No group in Subscriber provided")
        for name, value, minimum in (
            ("timeout", timeout, 0),
            ("interval", interval, 0),
            ("messages", messages, 1),
            ("retries", retries, 0),
        ):
            if not isinstance(value, int) or value < minimum:
                raise ConfigError(
                    f"{name} must be an integer >= {minimum}, got {value!r}",
                    kind=ErrorKind.INVALID_VALUE,
                )

        self.on_error = on_error or self._log_error
        self._error_arity = error_handler_arity(self.on_error)

        self._store = store
        self.group = group
        self.client_id = client_id or f"{group}:sub:{int(time.time() * 1000)}"
        self.timeout = timeout
        self.interval = interval
        self.messages = messages
        self.retries = retries
        self.block = INTERVAL_BLOCK_MS if interval else CONTINUOUS_BLOCK_MS

        self._log = get_logger("redismb.subscriber")
        self._continue_reading = False
        self._stop_event: asyncio.Event | None = None
        self._task: asyncio.Task | None = None
        self._inflight: set[asyncio.Task] = set()
        self._retry_delay = RETRY_BASE_DELAY

    def _require_store(self) -> "StreamStore":
        if self._store is None or not self._store.is_connected:
            raise BrokerConnectionError("No redis connection has been established")
        return self._store

    @property
    def is_reading(self) -> bool:
        return self._continue_reading

    async def ensure_groups(self) -> None:
        """Create the consumer group on every channel or join the existing one.

        Groups start from the beginning of the stream and the stream is
        created if missing. Any failure other than "already exists" propagates.
        """
        store = self._require_store()
        for channel in self.channels:
            created = await store.create_group(channel, self.group, start_id="0", mkstream=True)
            if created:
                self._log.info(
                    f"Group {self.group} has been created in stream {channel}.",
                    extra={"group": self.group, "channel": channel},
                )
            else:
                self._log.info(
                    f"Group {self.group} already exists at stream {channel}.",
                    extra={"group": self.group, "channel": channel},
                )

    async def subscribe(self, callback: MessageCallback) -> asyncio.Task:
        """Start consuming messages.

        Args:
            callback: Called with each :class:`Message`; may be a plain
                function or a coroutine function. Raising marks the
                message as failed.

        Returns:
            The background task running the read cycle.
        """
        if self._task is not None and not self._task.done():
            raise RuntimeError(f"Subscriber {self.client_id} is already subscribed")
        await self.ensure_groups()

        self._continue_reading = True
        self._stop_event = asyncio.Event()
        if self.interval > 0:
            reader = self._interval_read(callback)
        else:
            reader = self._continual_read(callback)
        self._task = asyncio.create_task(reader, name=f"redismb:{self.client_id}")
        return self._task

    async def unsubscribe(self, timeout: int = 60000) -> dict[str, Any]:
        """Stop reading and remove this consumer from its groups.

        Args:
            timeout: Milliseconds to wait after reading stops and before the
                consumer is deleted, so messages claimed just before stopping
                are settled instead of left pending under a deleted consumer.
                The consumer is never deleted before the read cycle running
                when reading stopped has finished.
        """
        self._stop_reading()
        await asyncio.sleep(timeout / 1000)
        if self._task is not None and self._task is not asyncio.current_task():
            # A blocking read still in flight would register the consumer again
            await self._task

        store = self._require_store()
        for channel in self.channels:
            await store.delete_consumer(channel, self.group, self.client_id)
            self._log.info(
                f"Consumer {self.client_id} has been removed from consumer group "
                f"{self.group} in channel {channel}.",
                extra={"group": self.group, "channel": channel, "consumer": self.client_id},
            )

        return {"channels": list(self.channels), "result": "OK"}

    def _stop_reading(self) -> None:
        self._continue_reading = False
        if self._stop_event is not None:
            self._stop_event.set()

    async def join(self) -> None:
        """Wait for in-flight messages and, once stopped, for the read task."""
        if self._task is not None and not self._continue_reading:
            await self._task
        while self._inflight:
            await asyncio.gather(*list(self._inflight))

    async def _sleep(self, seconds: float) -> None:
        """Sleep, waking early when reading is stopped."""
        if self._stop_event is None:
            await asyncio.sleep(seconds)
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), seconds)
        except TimeoutError:
            pass

    async def _continual_read(self, callback: MessageCallback) -> None:
        self._log.info(
            f"Client {self.client_id} connecting to {self.channels} channel for Continual Read",
            extra={"group": self.group, "consumer": self.client_id},
        )
        while self._continue_reading:
            await self._run_cycle(callback)
            # Yield so processing tasks progress between cycles
            await asyncio.sleep(0)

    async def _interval_read(self, callback: MessageCallback) -> None:
        self._log.info(
            f"Client {self.client_id} connecting to {self.channels} channel for Interval Read",
            extra={"group": self.group, "consumer": self.client_id},
        )
        loop = asyncio.get_running_loop()
        next_run = loop.time() + self.interval / 1000
        while self._continue_reading:
            await self._sleep(max(0.0, next_run - loop.time()))
            if not self._continue_reading:
                break
            await self._run_cycle(callback)
            # A cycle slower than the interval delays the next one instead of overlapping it
            next_run = max(next_run + self.interval / 1000, loop.time())

    async def _run_cycle(self, callback: MessageCallback) -> None:
        try:
            await self.poll(callback)
        except Exception as e:
            self._log.error(
                f"Read cycle failed, retrying in {self._retry_delay}s: {e}",
                extra={"group": self.group, "consumer": self.client_id, "error": str(e)},
            )
            await self._report(e)
            await self._sleep(self._retry_delay)
            self._retry_delay = min(self._retry_delay * 2, RETRY_MAX_DELAY)
        else:
            self._retry_delay = RETRY_BASE_DELAY

    async def poll(self, callback: MessageCallback) -> None:
        """Run one full cycle: read new messages, then sweep pending ones.

        Processing runs in background tasks; use :meth:`join` to wait for them.

        Raises:
            BrokerConnectionError: If the store has no open connection.
        """
        self._require_store()
        await self._read_messages(callback)
        await self._read_pending_messages(callback)

    async def _read_messages(self, callback: MessageCallback) -> None:
        streams = await self._store.read_group(
            self.group,
            self.client_id,
            self.channels,
            count=self.messages,
            block_ms=self.block,
        )
        for channel, entries in streams:
            if not entries:
                continue
            receive, skip = self._filter_messages(self._parse_messages(channel, entries))
            if receive:
                self._process_messages(channel, receive, callback)
            if skip:
                # Messages reserved for another group are acked without processing
                await self._ack_messages(channel, skip, "SKIPPED")

    async def _read_pending_messages(self, callback: MessageCallback) -> None:
        for channel in self.channels:
            pending = await self._store.pending(
                channel,
                self.group,
                min_idle_ms=self.timeout,
                start="-",
                end="+",
                count=PENDING_PAGE_SIZE,
            )
            receive = [entry for entry in pending if entry.deliveries <= self.retries]
            reject = [entry for entry in pending if entry.deliveries > self.retries]
            if receive:
                claimed = await self._claim_messages(channel, [entry.id for entry in receive])
                if claimed:
                    self._process_messages(channel, claimed, callback)
            if reject:
                claimed = await self._claim_messages(channel, [entry.id for entry in reject])
                if claimed:
                    attempts = {entry.id: entry.deliveries for entry in reject}
                    await self._reject_messages(channel, claimed, attempts)

    def _parse_messages(self, channel: str, entries: list[StreamEntry]) -> list[Message]:
        return [Message.from_entry(channel, entry, self.client_id) for entry in entries]

    def _filter_messages(self, messages: list[Message]) -> tuple[list[Message], list[Message]]:
        receive, skip = [], []
        for message in messages:
            if not message.group or message.group == self.group:
                receive.append(message)
            else:
                skip.append(message)
        return receive, skip

    def _process_messages(
        self, channel: str, messages: list[Message], callback: MessageCallback
    ) -> list[asyncio.Task]:
        tasks = []
        for message in messages:
            task = asyncio.create_task(self._process_message(channel, message, callback))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
            tasks.append(task)
        return tasks

    async def _process_message(
        self, channel: str, message: Message, callback: MessageCallback
    ) -> None:
        self._log_status("RECEIVED", message)
        try:
            result = callback(message)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            error = ProcessingError(str(e) or type(e).__name__, channel=channel, message=message)
            error.__cause__ = e
            self._log.warning(
                f"Processing failed for {channel} {message.action} {message.id}: {e}",
                extra={"channel": channel, "action": message.action, "message_id": message.id},
            )
            await self._report(error, channel, message)
            return

        try:
            await self._ack_messages(channel, [message], "CONFIRMED")
        except Exception as e:
            # Left pending; a later sweep delivers it again
            self._log.error(
                f"Failed to ack {channel} {message.id}: {e}",
                extra={"channel": channel, "message_id": message.id, "error": str(e)},
            )
            await self._report(e, channel, message)

    async def _claim_messages(self, channel: str, ids: list[str]) -> list[Message]:
        """Take ownership of idle pending entries, dropping those gone meanwhile."""
        claimed = await self._store.claim(channel, self.group, self.client_id, self.timeout, ids)
        entries = [entry for entry in claimed if entry]
        return self._parse_messages(channel, entries)

    async def _ack_messages(self, channel: str, messages: list[Message], status: str) -> None:
        await self._store.ack(channel, self.group, [message.id for message in messages])
        for message in messages:
            self._log_status(status, message)

    async def _reject_messages(
        self, channel: str, messages: list[Message], attempts: dict[str, int]
    ) -> None:
        """Ack messages out of the pending list and record them as dead letters."""
        await self._ack_messages(channel, messages, "REJECTED")

        for message in messages:
            try:
                await self._store.append(
                    DEAD_LETTER_STREAM,
                    rejection_values(message.action, message.data, self.group, channel),
                )
            except Exception as e:
                # Already acked on the channel: the log line is the only remaining copy
                self._log.error(
                    f"Failed to record rejected message {channel} {message.id}: {e}",
                    extra={
                        "channel": channel,
                        "action": message.action,
                        "message_id": message.id,
                        "group": self.group,
                        "data": message.data,
                        "error": str(e),
                    },
                )
                await self._report(e, channel, message)

            error = MaxRetriesExceeded(
                "Event exceed max retries",
                attempts=attempts.get(message.id),
                channel=channel,
                message=message,
            )
            await self._report(error, channel, message)

    async def _report(
        self, error: Exception, channel: str | None = None, message: Message | None = None
    ) -> None:
        result = self.on_error(*(error, channel, message)[: self._error_arity])
        if inspect.isawaitable(result):
            await result

    def _log_status(self, status: str, message: Message) -> None:
        log_message_status(
            self._log,
            status,
            message.channel,
            message.action,
            message.id,
            group=self.group,
            consumer=self.client_id,
        )

    def _log_error(
        self, error: Exception, channel: str | None = None, message: Message | None = None
    ) -> None:
        self._log.error(
            str(error),
            extra={
                "channel": channel,
                "message_id": message.id if message else None,
                "kind": getattr(getattr(error, "kind", None), "value", None),
            },
        )
