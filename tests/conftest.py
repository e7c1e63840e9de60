"""Pytest configuration, shared fixtures and Hypothesis profiles."""

import logging

import pytest
from hypothesis import settings
from hypothesis import strategies as st

from redismb.backends.inmemory import InMemoryStreamStore

# Register Hypothesis profiles
settings.register_profile("ci", max_examples=100)
settings.register_profile("dev", max_examples=20)

# Load dev profile by default, CI can override via --hypothesis-profile=ci
settings.load_profile("dev")


def valid_actions() -> st.SearchStrategy[str]:
    """Action tags such as ``order.created``."""
    return st.from_regex(r"[a-z]{1,10}\.[a-z]{1,10}", fullmatch=True)


def valid_payloads() -> st.SearchStrategy[dict]:
    """Small JSON-compatible payloads."""
    return st.fixed_dictionaries(
        {},
        optional={
            "index": st.integers(min_value=0, max_value=1000),
            "name": st.text(max_size=20),
            "flag": st.booleans(),
            "items": st.lists(st.integers(), max_size=5),
        },
    )


class FakeClock:
    """Controllable monotonic clock (seconds) for idle-time checks."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms / 1000


class ErrorRecorder:
    """Error callback collecting every call."""

    def __init__(self) -> None:
        self.calls: list[tuple] = []

    def __call__(self, error, channel=None, message=None) -> None:
        self.calls.append((error, channel, message))

    @property
    def errors(self) -> list[Exception]:
        return [call[0] for call in self.calls]


class LogCapture(logging.Handler):
    """Custom handler to capture log records for testing."""

    def __init__(self):
        super().__init__()
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)

    def statuses(self) -> list[str]:
        return [r.status for r in self.records if hasattr(r, "status")]


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Use asyncio as the async backend for pytest-asyncio."""
    return "asyncio"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> InMemoryStreamStore:
    return InMemoryStreamStore(clock=clock)


@pytest.fixture
def errors() -> ErrorRecorder:
    return ErrorRecorder()


@pytest.fixture
def capture_logs():
    """Attach a capturing handler to redismb loggers for the test's duration."""
    handler = LogCapture()
    loggers = [
        logging.getLogger(name)
        for name in ("redismb.subscriber", "redismb.publisher", "redismb.rejections")
    ]
    for logger in loggers:
        logger.addHandler(handler)
    yield handler
    for logger in loggers:
        logger.removeHandler(handler)
