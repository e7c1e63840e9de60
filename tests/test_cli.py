"""Tests for the ``redismb`` command line tool."""

import json
from datetime import UTC, datetime

import pytest

from redismb import cli
from redismb.backends.inmemory import InMemoryStreamStore
from redismb.core.errors import ConnectTimeoutError
from redismb.core.message import DEAD_LETTER_STREAM, rejection_values


@pytest.fixture
def fake_redis(monkeypatch):
    """Replace the Redis connection with a pre-populated in-memory store."""
    store = InMemoryStreamStore()
    connected = {}

    async def connect(url, ttl=30):
        connected.update(url=url, ttl=ttl)
        # Populated inside the CLI's event loop
        await store.append(
            DEAD_LETTER_STREAM, rejection_values("a", {"n": 1}, "g", "c"), id="1000-0"
        )
        await store.append(
            DEAD_LETTER_STREAM, rejection_values("b", {"n": 2}, "g", "c"), id="2000-0"
        )
        return store

    monkeypatch.setattr(cli.RedisStreamStore, "connect", connect)
    return store, connected


class TestParser:
    def test_list_filters(self):
        args = cli.build_parser().parse_args(
            [
                "rejections",
                "list",
                "--id",
                "1-0",
                "--id",
                "2-0",
                "--from",
                "2024-01-01T00:00:00+00:00",
                "--to",
                "2024-01-02T00:00:00+00:00",
                "--action",
                "x",
            ]
        )

        assert (args.topic, args.command) == ("rejections", "list")
        assert args.ids == ["1-0", "2-0"]
        assert args.start == datetime(2024, 1, 1, tzinfo=UTC)
        assert args.end == datetime(2024, 1, 2, tzinfo=UTC)
        assert args.action == "x"

    def test_reprocess_overrides(self):
        args = cli.build_parser().parse_args(
            ["rejections", "reprocess", "--channel", "c2", "--data", '{"fixed": true}']
        )

        assert args.channel == "c2"
        assert args.data == {"fixed": True}
        assert args.group is None

    def test_url_from_environment(self, monkeypatch):
        monkeypatch.setenv("REDISMB_URL", "redis://cache:6380")

        args = cli.build_parser().parse_args(["rejections", "list"])

        assert args.url == "redis://cache:6380"

    def test_command_required(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["rejections"])


def test_list_prints_records(fake_redis, capsys):
    store, connected = fake_redis

    assert cli.main(["--url", "redis://example:6379", "--ttl", "5", "rejections", "list"]) == 0

    output = json.loads(capsys.readouterr().out)
    assert output["count"] == 2
    assert [m["id"] for m in output["messages"]] == ["1000-0", "2000-0"]
    assert output["messages"][0]["channel"] == "c"
    assert connected == {"url": "redis://example:6379", "ttl": 5}
    assert not store.is_connected


def test_list_with_action_filter(fake_redis, capsys):
    assert cli.main(["rejections", "list", "--action", "b"]) == 0

    output = json.loads(capsys.readouterr().out)
    assert [m["action"] for m in output["messages"]] == ["b"]


def test_reprocess_with_overrides(fake_redis, capsys):
    store, _ = fake_redis

    code = cli.main(
        ["rejections", "reprocess", "--id", "1000-0", "--channel", "c2", "--data", '{"n": 5}']
    )

    assert code == 0
    output = json.loads(capsys.readouterr().out)
    (succeeded,) = output["succeeded"]
    assert (succeeded["channel"], succeeded["data"]) == ("c2", {"n": 5})
    assert output["failed"] == []
    assert store.length("c2") == 1
    assert store.length(DEAD_LETTER_STREAM) == 1


def test_reprocess_nothing_selected(fake_redis, capsys):
    assert cli.main(["rejections", "reprocess", "--action", "missing"]) == 0

    assert json.loads(capsys.readouterr().out) == {"succeeded": [], "failed": []}


def test_connection_failure_exit_code(monkeypatch, capsys):
    async def connect(url, ttl=30):
        raise ConnectTimeoutError(f"Redis is not connecting (waited for {ttl} seconds)")

    monkeypatch.setattr(cli.RedisStreamStore, "connect", connect)

    assert cli.main(["--ttl", "1", "rejections", "list"]) == 1
    assert "TIMEOUT" in capsys.readouterr().err
