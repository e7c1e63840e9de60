"""Message models and the stream entry codec.

Entries are stored with a positional field layout::

    channel message:   [action, json-data, "group", group]   (group pair optional)
    dead-letter entry: [action, json-data, group, channel]

The layout is shared with the Node.js ``redismb`` library so both can
read and write the same streams.
"""

import json
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

# (entry id, flat field-values)
StreamEntry = tuple[str, list[str]]

GROUP_FIELD = "group"

# Well-known stream holding messages that exceeded their retry budget
DEAD_LETTER_STREAM = "rejections"


def encode_data(data: Any) -> str:
    """Serialize a payload for storage."""
    return json.dumps(data)


def decode_data(raw: str | None) -> Any:
    """Deserialize a stored payload, returning the raw string if it is not JSON."""
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return raw


def entry_timestamp(entry_id: str) -> datetime:
    """Creation time encoded in the millisecond part of a stream entry id."""
    millis = int(entry_id.split("-", 1)[0])
    return datetime.fromtimestamp(millis / 1000, UTC)


def to_millis(value: datetime | int | float) -> int:
    """Convert a datetime (or epoch milliseconds) to epoch milliseconds."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return int(value.timestamp() * 1000)
    return int(value)


def message_values(action: str, data: Any, group: str | None = None) -> list[str]:
    """Build the field-values of a channel message."""
    values = [action, encode_data(data)]
    if group:
        values += [GROUP_FIELD, group]
    return values


def rejection_values(action: str, data: Any, group: str, channel: str) -> list[str]:
    """Build the field-values of a dead-letter record."""
    return [action, encode_data(data), group, channel]


def _value(values: list[str], index: int) -> str | None:
    return values[index] if len(values) > index else None


class Message(BaseModel):
    """A message delivered to a processing callback.

    Attributes:
        id: Store-assigned entry id.
        channel: Stream the message was read from.
        action: Tag naming the message's handler/semantic type.
        data: Deserialized payload.
        date: Creation time derived from the id.
        group: Consumer group the message is reserved for, if any.
        client_id: Consumer that received the message.
    """

    id: str
    channel: str
    action: str
    data: Any = None
    date: datetime
    group: str | None = None
    client_id: str | None = None

    model_config = {
        "extra": "forbid",
        "frozen": True,
    }

    @classmethod
    def from_entry(
        cls, channel: str, entry: StreamEntry, client_id: str | None = None
    ) -> "Message":
        entry_id, values = entry
        return cls(
            id=entry_id,
            channel=channel,
            action=_value(values, 0) or "",
            data=decode_data(_value(values, 1)),
            date=entry_timestamp(entry_id),
            group=_value(values, 3) or None,
            client_id=client_id,
        )


class RejectedMessage(BaseModel):
    """A record of the dead-letter stream."""

    id: str
    action: str
    data: Any = None
    group: str | None = None
    channel: str | None = None
    date: datetime

    @classmethod
    def from_entry(cls, entry: StreamEntry) -> "RejectedMessage":
        entry_id, values = entry
        return cls(
            id=entry_id,
            action=_value(values, 0) or "",
            data=decode_data(_value(values, 1)),
            group=_value(values, 2) or None,
            channel=_value(values, 3) or None,
            date=entry_timestamp(entry_id),
        )


class MessageOverride(BaseModel):
    """Replacement values applied to a dead-letter record when it is replayed.

    ``channel`` and ``group`` replace the recorded values, ``data`` is
    shallow-merged into the recorded payload.
    """

    id: str
    channel: str | None = None
    group: str | None = None
    data: dict[str, Any] | None = Field(default=None)
