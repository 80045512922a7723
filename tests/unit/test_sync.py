"""Unit tests for client-side balance reconciliation.

Run with:
    pytest tests/unit/test_sync.py -v
"""

import asyncio

import pytest

from tryon.config import Plan
from tryon.credits import AccountChanged, BalanceSync, BlockReason


async def wait_until(predicate, timeout: float = 2.0) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout=timeout)


def change(store_id="store-1", plan_credits=50, extra_credits=0, version=5) -> AccountChanged:
    return AccountChanged(
        store_id=store_id,
        plan=Plan.STARTER,
        plan_credits=plan_credits,
        extra_credits=extra_credits,
        version=version,
    )


@pytest.fixture
def sync(ledger, feed, clock, store):
    return BalanceSync(store.store_id, ledger, feed, clock=clock, reconnect_delay=0)


@pytest.mark.fast
class TestRefresh:
    """Tests for pulling the account from the ledger."""

    async def test_initial_refresh(self, sync):
        assert sync.view is None
        assert sync.stale

        view = await sync.refresh()
        assert view.total_credits == 100
        assert view.plan_name == "Starter"
        assert not view.stale
        assert not sync.stale

    async def test_unknown_store(self, ledger, feed, clock):
        sync = BalanceSync("missing", ledger, feed, clock=clock)
        assert await sync.refresh() is None


@pytest.mark.fast
class TestApplyEvent:
    """Events are absolute and versioned."""

    async def test_applies_newer_event(self, sync, store):
        await sync.refresh()
        assert sync.apply_event(change(plan_credits=80, version=store.version + 1))
        assert sync.view.total_credits == 80

    async def test_duplicate_is_noop(self, sync, store):
        await sync.refresh()
        newer = change(plan_credits=80, version=store.version + 1)
        assert sync.apply_event(newer)
        assert not sync.apply_event(newer)
        assert sync.view.total_credits == 80

    async def test_out_of_order_event_ignored(self, sync):
        await sync.refresh()
        sync.apply_event(change(plan_credits=70, version=10))
        assert not sync.apply_event(change(plan_credits=90, version=9))
        assert sync.view.total_credits == 70

    async def test_other_store_ignored(self, sync):
        await sync.refresh()
        assert not sync.apply_event(change(store_id="store-2", version=99))

    async def test_event_before_refresh(self, sync):
        assert sync.apply_event(change(plan_credits=0, version=3))
        assert sync.view.is_blocked
        assert sync.view.block_reason == BlockReason.NO_CREDITS


@pytest.mark.fast
class TestApplyConsumeResult:
    """Optimistic consume results."""

    async def test_draws_extra_first(self, sync, ledger, store):
        await ledger.add_extra_credits(store.store_id, 2)
        await sync.refresh()

        assert sync.apply_consume_result(101)
        assert sync.view.extra_credits == 1
        assert sync.view.plan_credits == 100

    async def test_idempotent(self, sync):
        await sync.refresh()
        assert sync.apply_consume_result(99)
        assert not sync.apply_consume_result(99)
        assert sync.view.total_credits == 99

    async def test_feed_echo_after_optimistic_update(self, sync, ledger, store):
        await sync.refresh()
        result = await ledger.consume(store.store_id, "key-1")
        sync.apply_consume_result(result.credits_remaining)

        echo = change(plan_credits=99, version=store.version + 1)
        sync.apply_event(echo)
        assert sync.view.total_credits == 99

    async def test_none_ignored(self, sync):
        await sync.refresh()
        assert not sync.apply_consume_result(None)


@pytest.mark.fast
class TestRun:
    """Tests for the subscribe/refresh/apply loop."""

    async def test_receives_ledger_changes(self, sync, ledger, store):
        sync.start()
        try:
            await wait_until(lambda: sync.view is not None and not sync.stale)
            await ledger.consume(store.store_id, "key-1")
            await wait_until(lambda: sync.view.total_credits == 99)
        finally:
            await sync.stop()

    async def test_resubscribes_after_disconnect(self, sync, ledger, feed, store):
        sync.start()
        try:
            await wait_until(lambda: sync.view is not None and not sync.stale)

            feed.disconnect(store.store_id)
            # Changes made while disconnected are picked up by the refetch
            await ledger.add_extra_credits(store.store_id, 50)

            await wait_until(lambda: sync.view.total_credits == 150 and not sync.stale)
            assert feed.subscriber_count(store.store_id) == 1
        finally:
            await sync.stop()

    async def test_stops_when_feed_closes(self, sync, feed):
        task = sync.start()
        await wait_until(lambda: sync.view is not None)
        feed.close()
        await asyncio.wait_for(task, timeout=2)

    async def test_stop_right_after_start(self, sync, feed, store):
        task = sync.start()
        await asyncio.wait_for(sync.stop(), timeout=2)

        assert task.done()
        assert feed.subscriber_count(store.store_id) == 0

    async def test_stop_during_first_refresh(self, sync, feed, store):
        task = sync.start()
        # Let the task subscribe and begin its pull before stopping
        await asyncio.sleep(0)
        await asyncio.wait_for(sync.stop(), timeout=2)

        assert task.done()
        assert feed.subscriber_count(store.store_id) == 0

    async def test_restart_after_stop(self, sync, ledger, store):
        sync.start()
        await sync.stop()

        sync.start()
        try:
            await wait_until(lambda: sync.view is not None and not sync.stale)
            await ledger.consume(store.store_id, "key-1")
            await wait_until(lambda: sync.view.total_credits == 99)
        finally:
            await sync.stop()
