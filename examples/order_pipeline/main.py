#!/usr/bin/env python3
"""
Order Pipeline - redismb Demo Application

Two billing workers compete for orders inside one consumer group while a
shipping worker receives every order through its own group. Orders with a
missing amount keep failing, end up in the dead-letter stream and are
replayed with a corrected payload.

Run modes:
  python main.py                              # In-memory store
  python main.py --url redis://localhost:6379 # Real Redis
  python main.py --count 50 --quiet           # More orders, summary only
"""

import argparse
import asyncio
import logging
import random
import sys
import time
from collections import Counter

from redismb import (
    InMemoryStreamStore,
    Message,
    Publisher,
    Rejections,
    Subscriber,
    bootstrap,
    stop,
)

logging.basicConfig(level=logging.INFO, format="%(message)s", stream=sys.stderr)

CHANNEL = "orders"
RECLAIM_TIMEOUT_MS = 200
RETRIES = 2


class Worker:
    """Processing callback keeping per-worker counters."""

    def __init__(self, name: str, require_amount: bool = False):
        self.name = name
        self.require_amount = require_amount
        self.handled: Counter[str] = Counter()
        self.failures = 0

    async def __call__(self, message: Message) -> None:
        if self.require_amount and message.data.get("amount") is None:
            self.failures += 1
            raise ValueError(f"order {message.data.get('order_id')} has no amount")
        await asyncio.sleep(random.uniform(0, 0.01))
        self.handled[message.action] += 1


def create_orders(count: int) -> list[tuple[str, dict, str | None]]:
    """Create (action, data, group) triples; every fifth order lacks an amount."""
    orders = []
    for i in range(count):
        data = {"order_id": 10000 + i, "amount": None if i % 5 == 4 else random.randint(5, 500)}
        orders.append(("order.created", data, None))
    # Refunds only concern billing
    orders.append(("order.refunded", {"order_id": 10000, "amount": 5}, "billing"))
    return orders


async def wait_until(predicate, timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.05)
    return False


async def run_pipeline(url: str | None, count: int, verbose: bool = True):
    store = await bootstrap(url, ttl=5) if url else InMemoryStreamStore()
    publisher = Publisher(store, CHANNEL, max_length=1000)
    errors: Counter[str] = Counter()

    def on_error(error, channel, message):
        errors[type(error).__name__] += 1

    billing = [Worker(f"billing-{i}", require_amount=True) for i in (1, 2)]
    shipping = Worker("shipping")
    subscribers = [
        Subscriber(
            store,
            [CHANNEL],
            "billing",
            client_id=worker.name,
            timeout=RECLAIM_TIMEOUT_MS,
            interval=50,
            messages=5,
            retries=RETRIES,
            on_error=on_error,
        )
        for worker in billing
    ]
    subscribers.append(
        Subscriber(store, [CHANNEL], "shipping", client_id=shipping.name, on_error=on_error)
    )

    try:
        for subscriber, worker in zip(subscribers, [*billing, shipping]):
            await subscriber.subscribe(worker)

        orders = create_orders(count)
        if verbose:
            print("=" * 60)
            print("ORDER PIPELINE")
            print("=" * 60)
            print(f"\nPublishing {len(orders)} orders to '{CHANNEL}'...\n")
        for action, data, group in orders:
            await publisher.publish(action, data, group=group)

        broken = sum(1 for _, data, _ in orders if data["amount"] is None)
        await wait_until(lambda: errors["MaxRetriesExceeded"] >= broken)

        rejections = Rejections(store)
        dead = await rejections.read(action="order.created")
        overrides = [{"id": m.id, "data": {"amount": 0}} for m in dead["messages"]]
        replayed = await rejections.reprocess(action="order.created", overrides=overrides)

        expected = len(orders) - 1
        await wait_until(lambda: sum(w.handled["order.created"] for w in billing) >= expected)
    finally:
        for subscriber in subscribers:
            await subscriber.unsubscribe(100)
            await subscriber.join()
        if url:
            await stop(store)

    if verbose:
        print("=" * 60)
        print("RESULTS")
        print("=" * 60)
        for worker in [*billing, shipping]:
            print(f"  {worker.name}: {dict(worker.handled)} (failures: {worker.failures})")
        print(f"\n  Errors reported: {dict(errors)}")
        print(f"  Dead letters found: {dead['count']}")
        print(f"  Replayed: {len(replayed['succeeded'])}, failed: {len(replayed['failed'])}")

    return billing, shipping, replayed


def main():
    parser = argparse.ArgumentParser(description="Order Pipeline Demo")
    parser.add_argument("--url", help="Redis URL (default: in-memory store)")
    parser.add_argument("--count", type=int, default=10, help="Number of orders to publish")
    parser.add_argument("--quiet", "-q", action="store_true", help="Minimal output")
    args = parser.parse_args()

    asyncio.run(run_pipeline(args.url, args.count, verbose=not args.quiet))


if __name__ == "__main__":
    main()
