"""Dead-letter reprocessing.

Messages that exceed their retry budget are moved by the Subscriber to
the ``rejections`` stream together with the group and channel they came
from. :class:`Rejections` queries that stream and replays records back
into a channel, optionally redirecting them or patching their payload.
"""

import asyncio
from collections.abc import Iterable
from datetime import datetime
from typing import TYPE_CHECKING, Any

from redismb.core.errors import BrokerConnectionError, ReprocessError
from redismb.core.logging import get_logger
from redismb.core.message import (
    DEAD_LETTER_STREAM,
    MessageOverride,
    RejectedMessage,
    StreamEntry,
    message_values,
    to_millis,
)

if TYPE_CHECKING:
    from redismb.backends.base import StreamStore

TimeBound = datetime | int | float


class Rejections:
    """Reads and replays the dead-letter stream.

    Args:
        store: Stream store holding the dead-letter stream.
        stream: Name of the dead-letter stream.
    """

    def __init__(self, store: "StreamStore", stream: str = DEAD_LETTER_STREAM) -> None:
        self._store = store
        self.stream = stream
        self._log = get_logger("redismb.rejections")

    def _require_store(self) -> "StreamStore":
        if self._store is None or not self._store.is_connected:
            raise BrokerConnectionError("No redis connection has been established")
        return self._store

    async def _select(
        self,
        ids: list[str],
        start: TimeBound | None,
        end: TimeBound | None,
    ) -> list[StreamEntry]:
        store = self._require_store()
        if ids:
            found = await asyncio.gather(*(store.range(self.stream, i, i) for i in ids))
            return [batch[0] for batch in found if batch]
        if start is not None and end is not None:
            return await store.range(self.stream, str(to_millis(start)), str(to_millis(end)))
        return await store.range(self.stream, "-", "+")

    async def read(
        self,
        ids: Iterable[str] | None = None,
        start: TimeBound | None = None,
        end: TimeBound | None = None,
        action: str | None = None,
    ) -> dict[str, Any]:
        """Read rejected messages.

        Selection is by ``ids`` if given, else by the inclusive time range
        ``start``..``end`` if both are given, else everything. ``action``
        then keeps only records with that exact action.

        Returns:
            ``{"messages": [RejectedMessage, ...], "count": int}``
        """
        entries = await self._select(list(ids or []), start, end)
        messages = [RejectedMessage.from_entry(entry) for entry in entries]
        if action:
            messages = [message for message in messages if message.action == action]

        return {"messages": messages, "count": len(messages)}

    async def reprocess(
        self,
        ids: Iterable[str] | None = None,
        start: TimeBound | None = None,
        end: TimeBound | None = None,
        action: str | None = None,
        overrides: Iterable[MessageOverride | dict[str, Any]] | None = None,
    ) -> dict[str, list]:
        """Replay rejected messages into their channel and drop them from the dead-letter stream.

        Records are selected like :meth:`read`. An override applies to the
        selected record with the same id: it replaces the record's
        ``channel`` and ``group`` and shallow-merges its ``data`` over the
        recorded payload. Overrides for records outside the selection are
        ignored.

        Every record is handled on its own: a failure is captured next to
        the record and the remaining records are still processed. A record
        that cannot be decoded is reported by its entry id.

        Returns:
            ``{"succeeded": [RejectedMessage, ...],
            "failed": [(RejectedMessage | entry id, str), ...]}``
        """
        by_id = {
            override.id: override
            for override in (MessageOverride.model_validate(o) for o in overrides or [])
        }
        entries = await self._select(list(ids or []), start, end)

        succeeded: list[RejectedMessage] = []
        failed: list[tuple[RejectedMessage | str, str]] = []

        for entry in entries:
            record: RejectedMessage | str = entry[0]
            try:
                record = RejectedMessage.from_entry(entry)
                if action and record.action != action:
                    continue
                record = self._apply_override(record, by_id.get(record.id))
                await self._replay(record)
                succeeded.append(record)
            except Exception as e:
                self._log.error(
                    f"Failed to reprocess rejected message {entry[0]}: {e}",
                    extra={
                        "message_id": entry[0],
                        "action": getattr(record, "action", None),
                        "channel": getattr(record, "channel", None),
                        "group": getattr(record, "group", None),
                        "error": str(e),
                    },
                )
                failed.append((record, str(e)))

        return {"succeeded": succeeded, "failed": failed}

    def _apply_override(
        self, record: RejectedMessage, override: MessageOverride | None
    ) -> RejectedMessage:
        if override is None:
            return record
        update: dict[str, Any] = {}
        if override.channel:
            update["channel"] = override.channel
        if override.group:
            update["group"] = override.group
        if override.data is not None:
            if record.data is not None and not isinstance(record.data, dict):
                raise ReprocessError(
                    f"Cannot merge data override into non-object payload of {record.id}",
                    message=record,
                )
            update["data"] = {**(record.data or {}), **override.data}
        return record.model_copy(update=update)

    async def _replay(self, record: RejectedMessage) -> None:
        if not record.channel:
            raise ReprocessError(
                f"No destination channel for rejected message {record.id}", message=record
            )
        new_id = await self._store.append(
            record.channel, message_values(record.action, record.data, record.group)
        )
        await self._store.delete(self.stream, [record.id])
        self._log.info(
            f"REPROCESSED {record.channel} {record.action} {record.id} -> {new_id}",
            extra={
                "status": "REPROCESSED",
                "channel": record.channel,
                "action": record.action,
                "message_id": new_id,
                "group": record.group,
                "rejected_id": record.id,
            },
        )
