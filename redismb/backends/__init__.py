"""Stream store implementations."""

from redismb.backends.base import PendingEntry, StreamStore
from redismb.backends.inmemory import InMemoryStreamStore, NoGroupError
from redismb.backends.redis import RedisStreamStore, bootstrap, stop

__all__ = [
    "PendingEntry",
    "StreamStore",
    "InMemoryStreamStore",
    "NoGroupError",
    "RedisStreamStore",
    "bootstrap",
    "stop",
]
