"""Unit tests for the credit ledger.

Runs against a file-backed SQLite database so concurrent consumes hit
real write locking.

Run with:
    pytest tests/unit/test_ledger.py -v
"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from tryon.config import Plan
from tryon.credits import BlockReason, LedgerStore, StoreNotFound
from tryon.database import create_engine_for, create_session_factory
from tryon.errors import LedgerUnavailable
from tryon.models import CreditConsumption, CreditSource


async def consumption_count(session_factory, store_id: str) -> int:
    async with session_factory() as session:
        result = await session.execute(
            select(func.count()).select_from(CreditConsumption).where(
                CreditConsumption.store_id == store_id
            )
        )
        return result.scalar_one()


@pytest.mark.fast
class TestCreateStore:
    """Tests for store onboarding."""

    async def test_trial_store(self, ledger, clock):
        account = await ledger.create_store(name="Loja Trial")
        assert account.plan == Plan.TRIAL
        assert account.plan_credits == 10
        assert account.extra_credits == 0
        assert account.trial_ends_at == clock.now + timedelta(days=7)
        assert account.version == 1

    async def test_paid_store(self, ledger, clock):
        account = await ledger.create_store(store_id="pro-1", plan=Plan.PRO)
        assert account.store_id == "pro-1"
        assert account.plan_credits == 800
        assert account.plan_renews_at == clock.now + timedelta(days=30)
        assert account.trial_ends_at is None

    async def test_get_account_round_trip(self, ledger, store):
        account = await ledger.get_account(store.store_id)
        assert account.plan_credits == 100
        assert account.plan == Plan.STARTER

    async def test_unknown_account(self, ledger):
        assert await ledger.get_account("missing") is None


@pytest.mark.fast
class TestConsume:
    """Tests for single-credit consumption."""

    async def test_consumes_one_credit(self, ledger, store):
        result = await ledger.consume(store.store_id, "key-1")
        assert result.success
        assert result.credits_remaining == 99
        assert not result.replayed

        account = await ledger.get_account(store.store_id)
        assert account.plan_credits == 99
        assert account.version == store.version + 1

    async def test_extra_credits_drawn_first(self, ledger, store, session_factory):
        await ledger.add_extra_credits(store.store_id, 2)

        await ledger.consume(store.store_id, "key-1")
        account = await ledger.get_account(store.store_id)
        assert account.extra_credits == 1
        assert account.plan_credits == 100

        await ledger.consume(store.store_id, "key-2")
        await ledger.consume(store.store_id, "key-3")
        account = await ledger.get_account(store.store_id)
        assert account.extra_credits == 0
        assert account.plan_credits == 99

        async with session_factory() as session:
            result = await session.execute(select(CreditConsumption.source))
            sources = sorted(s.value for s in result.scalars())
        assert sources == [CreditSource.EXTRA.value, CreditSource.EXTRA.value, CreditSource.PLAN.value]

    async def test_replay_returns_recorded_result(self, ledger, store, session_factory):
        first = await ledger.consume(store.store_id, "key-1")
        await ledger.consume(store.store_id, "key-2")
        replay = await ledger.consume(store.store_id, "key-1")

        assert replay.success
        assert replay.replayed
        assert replay.credits_remaining == first.credits_remaining
        assert (await ledger.get_account(store.store_id)).total_credits == 98
        assert await consumption_count(session_factory, store.store_id) == 2

    async def test_n_plus_one_fails(self, ledger):
        # Trial stores start with 10 credits; drain to exactly three
        account = await ledger.create_store(store_id="small")
        for i in range(7):
            await ledger.consume(account.store_id, f"drain-{i}")

        results = [await ledger.consume(account.store_id, f"k-{i}") for i in range(4)]
        assert [r.success for r in results] == [True, True, True, False]
        assert results[-1].error == BlockReason.NO_CREDITS.value
        assert (await ledger.get_account(account.store_id)).total_credits == 0

    async def test_refused_after_trial_expiry(self, ledger, clock):
        account = await ledger.create_store(store_id="trial-1")
        await ledger.add_extra_credits(account.store_id, 5)
        clock.advance(days=8)

        result = await ledger.consume(account.store_id, "late")
        assert not result.success
        assert result.error == BlockReason.TRIAL_EXPIRED.value

        after = await ledger.get_account(account.store_id)
        assert after.plan_credits == 10
        assert after.extra_credits == 5

    async def test_unknown_store(self, ledger):
        result = await ledger.consume("missing", "key-1")
        assert not result.success
        assert result.error == BlockReason.STORE_NOT_FOUND.value

    async def test_key_reused_by_another_store(self, ledger, store):
        other = await ledger.create_store(store_id="store-2", plan=Plan.STARTER)
        await ledger.consume(store.store_id, "shared-key")

        result = await ledger.consume(other.store_id, "shared-key")
        assert not result.success
        assert result.error == "IDEMPOTENCY_KEY_CONFLICT"
        assert (await ledger.get_account(other.store_id)).total_credits == 100

    async def test_unreachable_database(self, tmp_path, test_settings):
        engine = create_engine_for(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'x.db'}")
        broken = LedgerStore(create_session_factory(engine), settings=test_settings)
        try:
            with pytest.raises(LedgerUnavailable):
                await broken.consume("store-1", "key-1")
        finally:
            await engine.dispose()


@pytest.mark.fast
class TestConcurrentConsume:
    """Concurrent consumes never overdraw or double-charge."""

    async def test_parallel_consumes_never_overdraw(self, ledger, session_factory):
        account = await ledger.create_store(store_id="busy")
        for i in range(5):
            await ledger.consume(account.store_id, f"drain-{i}")

        results = await asyncio.gather(
            *(ledger.consume(account.store_id, f"parallel-{i}") for i in range(12))
        )

        assert sum(r.success for r in results) == 5
        # Each winner saw a distinct, correctly decremented balance
        assert sorted(r.credits_remaining for r in results if r.success) == [0, 1, 2, 3, 4]
        assert all(r.error == BlockReason.NO_CREDITS.value for r in results if not r.success)
        final = await ledger.get_account(account.store_id)
        assert final.total_credits == 0
        assert await consumption_count(session_factory, account.store_id) == 10

    async def test_same_key_in_parallel_charges_once(self, ledger, store, session_factory):
        results = await asyncio.gather(
            *(ledger.consume(store.store_id, "same-key") for _ in range(4))
        )

        assert all(r.success for r in results)
        assert {r.credits_remaining for r in results} == {99}
        assert (await ledger.get_account(store.store_id)).total_credits == 99
        assert await consumption_count(session_factory, store.store_id) == 1


@pytest.mark.fast
class TestEligibility:
    """Tests for the ledger's authoritative eligibility check."""

    async def test_allowed(self, ledger, store):
        assert (await ledger.check_eligibility(store.store_id)).allowed

    async def test_store_not_found(self, ledger):
        result = await ledger.check_eligibility("missing")
        assert result.reason == BlockReason.STORE_NOT_FOUND

    async def test_trial_expired(self, ledger, clock):
        account = await ledger.create_store(store_id="trial-1")
        clock.advance(days=7, seconds=1)
        result = await ledger.check_eligibility(account.store_id)
        assert result.reason == BlockReason.TRIAL_EXPIRED

    async def test_error_when_unreachable(self, tmp_path, test_settings):
        engine = create_engine_for(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'x.db'}")
        broken = LedgerStore(create_session_factory(engine), settings=test_settings)
        try:
            result = await broken.check_eligibility("store-1")
        finally:
            await engine.dispose()
        assert not result.allowed
        assert result.reason == BlockReason.ERROR


@pytest.mark.fast
class TestBillingMutations:
    """Tests for renewals and extra credit purchases."""

    async def test_renew_resets_plan_credits_keeps_extra(self, ledger, store, clock):
        await ledger.add_extra_credits(store.store_id, 50)
        await ledger.consume(store.store_id, "k1")
        await ledger.consume(store.store_id, "k2")

        clock.advance(days=30)
        account = await ledger.renew_plan(store.store_id, Plan.GROWTH)
        assert account.plan == Plan.GROWTH
        assert account.plan_credits == 300
        assert account.extra_credits == 48
        assert account.plan_renews_at == clock.now + timedelta(days=30)

    async def test_trial_upgrade(self, ledger, clock):
        account = await ledger.create_store(store_id="trial-1")
        clock.advance(days=10)
        assert not (await ledger.check_eligibility(account.store_id)).allowed

        await ledger.renew_plan(account.store_id, Plan.STARTER)
        assert (await ledger.check_eligibility(account.store_id)).allowed

    async def test_renew_onto_trial_rejected(self, ledger, store):
        with pytest.raises(ValueError, match="trial"):
            await ledger.renew_plan(store.store_id, Plan.TRIAL)

    async def test_renew_unknown_store(self, ledger):
        with pytest.raises(StoreNotFound):
            await ledger.renew_plan("missing", Plan.PRO)

    async def test_add_extra_credits(self, ledger, store):
        account = await ledger.add_extra_credits(store.store_id, 100)
        assert account.extra_credits == 100
        assert account.version == store.version + 1

    @pytest.mark.parametrize("amount", [0, -5])
    async def test_add_extra_credits_rejects_non_positive(self, ledger, store, amount):
        with pytest.raises(ValueError, match="positive"):
            await ledger.add_extra_credits(store.store_id, amount)


@pytest.mark.fast
class TestChangeEvents:
    """Every committed mutation publishes one event."""

    async def test_consume_publishes(self, ledger, store, feed):
        subscription = feed.subscribe(store.store_id)
        await ledger.consume(store.store_id, "key-1")

        event = await asyncio.wait_for(subscription.__anext__(), timeout=1)
        assert event.plan_credits == 99
        assert event.version == store.version + 1
        subscription.close()

    async def test_refusal_and_replay_do_not_publish(self, ledger, store, feed):
        await ledger.consume(store.store_id, "key-1")
        subscription = feed.subscribe(store.store_id)

        await ledger.consume(store.store_id, "key-1")
        await ledger.consume("missing", "key-2")
        subscription.close()

        assert [event async for event in subscription] == []

    async def test_purchase_publishes(self, ledger, store, feed):
        subscription = feed.subscribe(store.store_id)
        await ledger.add_extra_credits(store.store_id, 50)
        subscription.close()

        events = [event async for event in subscription]
        assert len(events) == 1
        assert events[0].extra_credits == 50
