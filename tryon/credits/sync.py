"""Client-side balance reconciliation against the ledger and change feed.

A ``BalanceSync`` keeps one store's ``BalanceView`` current:

- on start it pulls the account from the ledger;
- change events are applied directly, without a refetch;
- a consume result may be applied optimistically before the feed echo;
- on feed disconnect the view is marked stale, the feed is resubscribed
  and the account refetched to confirm.

All updates are absolute, so applying the same event or result twice is
a no-op, and events older than the current ``version`` are ignored.

Tests:
    - tests/unit/test_sync.py
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable

from tryon.credits.eligibility import (
    AccountSnapshot,
    BalanceView,
    build_balance_view,
    utcnow,
)
from tryon.credits.feed import AccountChanged, ChangeFeed, FeedClosed, Subscription
from tryon.credits.ledger import LedgerStore
from tryon.errors import LedgerUnavailable

logger = logging.getLogger(__name__)


class BalanceSync:
    """Keeps one store's balance view consistent with the ledger.

    Attributes:
        store_id: Store being tracked
        view: Latest projection, None until the first successful pull
        stale: True until the ledger has confirmed the current state
    """

    def __init__(
        self,
        store_id: str,
        ledger: LedgerStore,
        feed: ChangeFeed,
        clock: Callable[[], datetime] = utcnow,
        low_credits_threshold: int = 20,
        reconnect_delay: float = 1.0,
    ) -> None:
        self.store_id = store_id
        self.ledger = ledger
        self.feed = feed
        self._clock = clock
        self._low_credits_threshold = low_credits_threshold
        self._reconnect_delay = reconnect_delay
        self._snapshot: AccountSnapshot | None = None
        self.view: BalanceView | None = None
        self.stale = True
        self._subscription: Subscription | None = None
        self._stopped = asyncio.Event()
        self._task: asyncio.Task | None = None

    def _rebuild(self) -> BalanceView | None:
        if self._snapshot is None:
            self.view = None
        else:
            self.view = build_balance_view(
                self._snapshot,
                now=self._clock(),
                low_credits_threshold=self._low_credits_threshold,
                stale=self.stale,
            )
        return self.view

    def _is_older(self, version: int) -> bool:
        current = self._snapshot.version if self._snapshot is not None else 0
        return bool(version and current and version <= current)

    async def refresh(self) -> BalanceView | None:
        """Pull the account from the ledger and rebuild the view.

        Raises:
            LedgerUnavailable: If the ledger cannot be reached.
        """
        snapshot = await self.ledger.get_account(self.store_id)
        if snapshot is None:
            logger.warning(f"Store {self.store_id} not found during refresh")
            self._snapshot = None
        elif self._snapshot is None or snapshot.version >= self._snapshot.version:
            self._snapshot = snapshot
        self.stale = False
        return self._rebuild()

    def apply_event(self, event: AccountChanged) -> bool:
        """Apply a pushed change without refetching.

        Returns:
            bool: True if the view changed.
        """
        if event.store_id != self.store_id:
            return False
        if self._is_older(event.version):
            logger.debug(
                f"Ignoring stale event v{event.version} for store {self.store_id}"
            )
            return False

        snapshot = event.to_snapshot()
        if snapshot == self._snapshot:
            return False
        self._snapshot = snapshot
        self._rebuild()
        return True

    def apply_consume_result(self, credits_remaining: int | None) -> bool:
        """Optimistically reflect a successful consume before its feed echo.

        The remaining total is absolute: the difference from the current
        total is taken from extra credits first, then plan credits. A value
        that is already reflected changes nothing.

        Returns:
            bool: True if the view changed.
        """
        if credits_remaining is None or self._snapshot is None:
            return False

        delta = self._snapshot.total_credits - credits_remaining
        if delta <= 0:
            return False

        from_extra = min(delta, self._snapshot.extra_credits)
        from_plan = min(delta - from_extra, self._snapshot.plan_credits)
        self._snapshot = self._snapshot.model_copy(
            update={
                "extra_credits": self._snapshot.extra_credits - from_extra,
                "plan_credits": self._snapshot.plan_credits - from_plan,
            }
        )
        self._rebuild()
        return True

    def mark_stale(self) -> None:
        """Flag the view as unconfirmed (e.g. after a feed disconnect)."""
        self.stale = True
        self._rebuild()

    async def run(self) -> None:
        """Subscribe, pull, and apply events until stopped.

        Resubscribes and refetches whenever the feed drops the subscription.
        Returns when ``stop`` is called or the feed is shut down.
        """
        while not self._stopped.is_set():
            try:
                self._subscription = self.feed.subscribe(self.store_id)
            except FeedClosed:
                logger.info(f"Change feed closed, stopping sync for store {self.store_id}")
                break

            # Subscribe first so nothing committed during the pull is missed
            try:
                await self.refresh()
            except LedgerUnavailable as e:
                logger.warning(f"Balance refresh failed for store {self.store_id}: {e}")

            async for event in self._subscription:
                self.apply_event(event)

            if not self._stopped.is_set():
                logger.warning(
                    f"Change feed disconnected for store {self.store_id}, resubscribing"
                )
                self.mark_stale()
                await asyncio.sleep(self._reconnect_delay)

    def start(self) -> asyncio.Task:
        """Run the sync loop in a background task."""
        if self._task is None or self._task.done():
            self._stopped.clear()
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        """Stop the sync loop and wait for it to finish."""
        self._stopped.set()
        if self._subscription is not None:
            self._subscription.close()
        if self._task is not None:
            await self._task
            self._task = None
