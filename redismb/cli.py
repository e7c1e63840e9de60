"""Command line tool for inspecting and replaying dead-lettered messages.

Usage:
  redismb rejections list [--id ID ...] [--from ISO --to ISO] [--action ACTION]
  redismb rejections reprocess [filters] [--channel C] [--group G] [--data JSON]

The Redis URL comes from --url or the REDISMB_URL environment variable.
"""

import argparse
import asyncio
import json
import os
import sys
from datetime import datetime
from typing import Any

from redismb.backends.redis import DEFAULT_URL, RedisStreamStore
from redismb.core.errors import RedisMBError
from redismb.core.message import DEAD_LETTER_STREAM, RejectedMessage
from redismb.core.rejections import Rejections


def _filters(args: argparse.Namespace) -> dict[str, Any]:
    return {
        "ids": args.ids or None,
        "start": args.start,
        "end": args.end,
        "action": args.action,
    }


def _overrides(args: argparse.Namespace, ids: list[str]) -> list[dict[str, Any]]:
    if not (args.channel or args.group or args.data):
        return []
    return [
        {"id": i, "channel": args.channel, "group": args.group, "data": args.data} for i in ids
    ]


def _dump(record: RejectedMessage | str) -> dict[str, Any] | str:
    # Undecodable records are reported by their entry id
    return record.model_dump(mode="json") if isinstance(record, RejectedMessage) else record


async def _list(rejections: Rejections, args: argparse.Namespace) -> dict[str, Any]:
    result = await rejections.read(**_filters(args))
    return {
        "messages": [m.model_dump(mode="json") for m in result["messages"]],
        "count": result["count"],
    }


async def _reprocess(rejections: Rejections, args: argparse.Namespace) -> dict[str, Any]:
    filters = _filters(args)
    selected = await rejections.read(**filters)
    ids = [m.id for m in selected["messages"]]
    if not ids:
        return {"succeeded": [], "failed": []}
    result = await rejections.reprocess(ids=ids, overrides=_overrides(args, ids))
    return {
        "succeeded": [_dump(m) for m in result["succeeded"]],
        "failed": [[_dump(m), error] for m, error in result["failed"]],
    }


async def run(args: argparse.Namespace) -> dict[str, Any]:
    store = await RedisStreamStore.connect(args.url, ttl=args.ttl)
    try:
        rejections = Rejections(store, stream=args.stream)
        if args.command == "list":
            return await _list(rejections, args)
        return await _reprocess(rejections, args)
    finally:
        await store.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="redismb", description=__doc__.splitlines()[0])
    parser.add_argument(
        "--url",
        default=os.environ.get("REDISMB_URL", DEFAULT_URL),
        help="Redis URL (default: $REDISMB_URL or %(default)s)",
    )
    parser.add_argument("--ttl", type=int, default=30, help="Seconds to wait for Redis")
    parser.add_argument("--stream", default=DEAD_LETTER_STREAM, help="Dead-letter stream name")

    topics = parser.add_subparsers(dest="topic", required=True)
    rejections = topics.add_parser("rejections", help="Dead-lettered messages")
    commands = rejections.add_subparsers(dest="command", required=True)

    for name, help_text in (("list", "Show rejected messages"), ("reprocess", "Replay rejected messages")):
        command = commands.add_parser(name, help=help_text)
        command.add_argument("--id", dest="ids", action="append", help="Record id (repeatable)")
        command.add_argument("--from", dest="start", type=datetime.fromisoformat, help="ISO start time")
        command.add_argument("--to", dest="end", type=datetime.fromisoformat, help="ISO end time")
        command.add_argument("--action", help="Only records with this action")
        if name == "reprocess":
            command.add_argument("--channel", help="Replay into this channel instead")
            command.add_argument("--group", help="Reserve replayed messages for this group")
            command.add_argument("--data", type=json.loads, help="JSON object merged into the payload")

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        output = asyncio.run(run(args))
    except RedisMBError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(json.dumps(output, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
