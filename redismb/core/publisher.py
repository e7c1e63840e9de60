"""Publisher: appends typed messages to a channel."""

from typing import TYPE_CHECKING, Any

from redismb.core.errors import BrokerConnectionError, ConfigError, ErrorKind
from redismb.core.logging import get_logger, log_message_status
from redismb.core.message import message_values

if TYPE_CHECKING:
    from redismb.backends.base import StreamStore


class Publisher:
    """Stream publisher for a single channel.

    Args:
        store: Stream store to append through.
        channel: Channel the messages are appended to.
        max_length: Approximate number of entries, read and unread, the
            channel retains. Older entries are evicted once it is exceeded.
    """

    def __init__(self, store: "StreamStore", channel: str, max_length: int = 5000) -> None:
        if not channel:
            raise ConfigError("No channel in Publisher provided")
        if not isinstance(max_length, int) or max_length < 1:
            raise ConfigError(
                f"max_length must be a positive integer, got {max_length!r}",
                kind=ErrorKind.INVALID_VALUE,
            )
        self._store = store
        self.channel = channel
        self.max_length = max_length
        self._log = get_logger("redismb.publisher")

    async def publish(self, action: str, data: Any = None, group: str | None = None) -> str:
        """Publish a message.

        Args:
            action: Action the consumers should perform.
            data: JSON-serializable payload.
            group: Only this consumer group processes the message; other
                groups reading the channel skip it.

        Returns:
            The id the store assigned to the message.

        Raises:
            BrokerConnectionError: If the store has no open connection.
        """
        if self._store is None or not self._store.is_connected:
            raise BrokerConnectionError("No redis connection has been established")

        # MAXLEN ~: the channel may hold somewhat more than max_length entries
        message_id = await self._store.append(
            self.channel,
            message_values(action, data, group),
            max_length=self.max_length,
            approximate=True,
        )

        log_message_status(self._log, "PUBLISHED", self.channel, action, message_id)
        return message_id
