"""Error types for redismb.

Every error carries a stable ``kind`` so callers can dispatch on it
instead of matching message text. Message-level errors also carry the
channel and message they relate to.
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Symbolic error kinds."""

    MISSED_VALUE = "MISSED_VALUE"
    INVALID_VALUE = "INVALID_VALUE"
    REDIS_CONNECTION = "REDIS_CONNECTION"
    TIMEOUT = "TIMEOUT"
    PROCESSING = "PROCESSING"
    MAX_RETRIES = "MAX_RETRIES"
    REPROCESS = "REPROCESS"


class RedisMBError(Exception):
    """Base class for all redismb errors.

    Attributes:
        kind: Stable symbolic kind of the error.
        description: Human readable detail.
        channel: Channel the error relates to, if any.
        message: Message the error relates to, if any.
    """

    kind: ErrorKind = ErrorKind.INVALID_VALUE

    def __init__(
        self,
        description: str = "",
        *,
        kind: ErrorKind | None = None,
        channel: str | None = None,
        message: Any = None,
    ) -> None:
        if kind is not None:
            self.kind = kind
        self.description = description
        self.channel = channel
        self.message = message
        super().__init__(self.kind.value)

    def __str__(self) -> str:
        if self.description:
            return f"{self.kind.value}: {self.description}"
        return self.kind.value


class ConfigError(RedisMBError, ValueError):
    """Raised when a required construction parameter is missing or malformed."""

    kind = ErrorKind.MISSED_VALUE


class InvalidCallbackError(ConfigError, TypeError):
    """Raised when the error callback is not callable or has the wrong shape."""

    kind = ErrorKind.INVALID_VALUE


class BrokerConnectionError(RedisMBError):
    """Raised when an operation needs a store connection and there is none."""

    kind = ErrorKind.REDIS_CONNECTION


class ConnectTimeoutError(RedisMBError):
    """Raised when the store is not ready within the bootstrap budget."""

    kind = ErrorKind.TIMEOUT


class ProcessingError(RedisMBError):
    """The processing callback failed for a message.

    The original exception is available as ``__cause__``.
    """

    kind = ErrorKind.PROCESSING


class MaxRetriesExceeded(RedisMBError):
    """A pending message exceeded its retry budget and was dead-lettered."""

    kind = ErrorKind.MAX_RETRIES

    def __init__(self, description: str = "", *, attempts: int | None = None, **kwargs: Any) -> None:
        self.attempts = attempts
        super().__init__(description, **kwargs)


class ReprocessError(RedisMBError):
    """Replaying a dead-letter record failed."""

    kind = ErrorKind.REPROCESS
