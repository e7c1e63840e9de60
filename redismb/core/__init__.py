"""Core components for redismb.

Types:
    Message: A message handed to processing callbacks.
    RejectedMessage: A record of the dead-letter stream.
    MessageOverride: Replacement values for replaying a dead letter.
    Subscriber: Consumer-group delivery and retry engine.
    Publisher: Appends messages to a channel.
    Rejections: Reads and replays the dead-letter stream.

Errors:
    ErrorKind: Stable symbolic error kinds.
    RedisMBError: Base error carrying a kind plus channel/message context.
    ConfigError, InvalidCallbackError: Bad construction parameters.
    BrokerConnectionError, ConnectTimeoutError: Store connection problems.
    ProcessingError, MaxRetriesExceeded, ReprocessError: Message-level failures.

Constants:
    DEAD_LETTER_STREAM: Name of the dead-letter stream ("rejections").
"""

from redismb.core.errors import (
    BrokerConnectionError,
    ConfigError,
    ConnectTimeoutError,
    ErrorKind,
    InvalidCallbackError,
    MaxRetriesExceeded,
    ProcessingError,
    RedisMBError,
    ReprocessError,
)
from redismb.core.message import DEAD_LETTER_STREAM, Message, MessageOverride, RejectedMessage
from redismb.core.publisher import Publisher
from redismb.core.rejections import Rejections
from redismb.core.subscriber import Subscriber

__all__ = [
    "Message",
    "RejectedMessage",
    "MessageOverride",
    "Subscriber",
    "Publisher",
    "Rejections",
    "DEAD_LETTER_STREAM",
    "ErrorKind",
    "RedisMBError",
    "ConfigError",
    "InvalidCallbackError",
    "BrokerConnectionError",
    "ConnectTimeoutError",
    "ProcessingError",
    "MaxRetriesExceeded",
    "ReprocessError",
]
