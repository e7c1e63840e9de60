"""redismb - consumer-group messaging over Redis Streams for asyncio services."""

from redismb.backends import (
    InMemoryStreamStore,
    PendingEntry,
    RedisStreamStore,
    StreamStore,
    bootstrap,
    stop,
)
from redismb.core import (
    DEAD_LETTER_STREAM,
    BrokerConnectionError,
    ConfigError,
    ConnectTimeoutError,
    ErrorKind,
    InvalidCallbackError,
    MaxRetriesExceeded,
    Message,
    MessageOverride,
    ProcessingError,
    Publisher,
    RedisMBError,
    RejectedMessage,
    Rejections,
    ReprocessError,
    Subscriber,
)

__version__ = "0.1.0"

__all__ = [
    # Core
    "Message",
    "RejectedMessage",
    "MessageOverride",
    "Subscriber",
    "Publisher",
    "Rejections",
    "DEAD_LETTER_STREAM",
    # Errors
    "ErrorKind",
    "RedisMBError",
    "ConfigError",
    "InvalidCallbackError",
    "BrokerConnectionError",
    "ConnectTimeoutError",
    "ProcessingError",
    "MaxRetriesExceeded",
    "ReprocessError",
    # Stores
    "StreamStore",
    "PendingEntry",
    "InMemoryStreamStore",
    "RedisStreamStore",
    "bootstrap",
    "stop",
    # Meta
    "__version__",
]
