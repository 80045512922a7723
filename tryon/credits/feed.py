"""In-process change feed for store balance records.

The ledger publishes one ``AccountChanged`` event per committed mutation.
Subscribers receive events for a single store through an async iterator.
Delivery is at-least-once: consumers must tolerate duplicates and must not
assume strict ordering (``version`` lets them discard stale events).

Examples:
    >>> feed = ChangeFeed()
    >>> subscription = feed.subscribe("store-1")
    >>> async for event in subscription:
    ...     print(event.plan_credits, event.extra_credits)

Tests:
    - tests/unit/test_feed.py
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime

from pydantic import BaseModel

from tryon.config import Plan
from tryon.credits.eligibility import AccountSnapshot

logger = logging.getLogger(__name__)

_CLOSED = object()


class FeedClosed(Exception):
    """Raised when subscribing to a feed that has been shut down."""


class AccountChanged(BaseModel):
    """Change event for one store record mutation."""

    store_id: str
    plan_credits: int
    extra_credits: int
    plan: Plan
    trial_ends_at: datetime | None = None
    plan_renews_at: datetime | None = None
    version: int = 0

    @classmethod
    def from_snapshot(cls, snapshot: AccountSnapshot) -> "AccountChanged":
        return cls(**snapshot.model_dump())

    def to_snapshot(self) -> AccountSnapshot:
        return AccountSnapshot(**self.model_dump())


class Subscription:
    """Async iterator over one store's change events.

    Iteration ends when the subscription is closed, either by the consumer
    or because the feed dropped it.
    """

    def __init__(self, feed: "ChangeFeed", store_id: str) -> None:
        self.feed = feed
        self.store_id = store_id
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def _deliver(self, item: object) -> None:
        if not self.closed:
            self._queue.put_nowait(item)

    def close(self) -> None:
        """Stop receiving events; pending iteration ends."""
        if self.closed:
            return
        self._queue.put_nowait(_CLOSED)
        self.closed = True
        self.feed._remove(self)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> AccountChanged:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


class ChangeFeed:
    """Fan-out of account change events to per-store subscribers."""

    def __init__(self) -> None:
        self._subscriptions: dict[str, set[Subscription]] = defaultdict(set)
        self.closed = False

    def subscribe(self, store_id: str) -> Subscription:
        """Open a subscription for one store.

        Raises:
            FeedClosed: If the feed has been shut down.
        """
        if self.closed:
            raise FeedClosed("Change feed is closed")
        subscription = Subscription(self, store_id)
        self._subscriptions[store_id].add(subscription)
        logger.debug(f"Subscribed to store {store_id}")
        return subscription

    def publish(self, event: AccountChanged) -> int:
        """Deliver an event to every subscriber of its store.

        Returns:
            int: Number of subscribers the event was queued for.
        """
        subscribers = list(self._subscriptions.get(event.store_id, ()))
        for subscription in subscribers:
            subscription._deliver(event)
        return len(subscribers)

    def subscriber_count(self, store_id: str) -> int:
        return len(self._subscriptions.get(store_id, ()))

    def disconnect(self, store_id: str) -> None:
        """Drop every subscription of a store, as a lost connection would."""
        for subscription in list(self._subscriptions.get(store_id, ())):
            subscription.close()

    def close(self) -> None:
        """Shut the feed down and end all subscriptions."""
        self.closed = True
        for store_id in list(self._subscriptions):
            self.disconnect(store_id)

    def _remove(self, subscription: Subscription) -> None:
        subscribers = self._subscriptions.get(subscription.store_id)
        if subscribers is not None:
            subscribers.discard(subscription)
            if not subscribers:
                del self._subscriptions[subscription.store_id]
