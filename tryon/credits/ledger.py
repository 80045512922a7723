"""Credit ledger: eligibility, atomic consumption and billing mutations.

The store row is the only shared mutable state in the service and it is
changed only here, always through single-statement conditional UPDATEs
(compare-and-decrement), never by reading a balance and writing it back.
Every committed mutation publishes one ``AccountChanged`` event.

Examples:
    >>> ledger = LedgerStore(get_session_factory(), feed=ChangeFeed())
    >>> store = await ledger.create_store(name="Loja Fit")
    >>> await ledger.consume(store.store_id, "request-123")
    ConsumeResult(success=True, credits_remaining=9, error=None, replayed=False)

Tests:
    - tests/unit/test_ledger.py
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from pydantic import BaseModel
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tryon.config import PLAN_CATALOG, Plan, Settings, get_settings
from tryon.credits.eligibility import (
    AccountSnapshot,
    BlockReason,
    Eligibility,
    evaluate,
    utcnow,
)
from tryon.credits.feed import AccountChanged, ChangeFeed
from tryon.errors import LedgerUnavailable
from tryon.models import CreditConsumption, CreditSource, Store

logger = logging.getLogger(__name__)

RENEWAL_PERIOD = timedelta(days=30)

_stores = Store.__table__
_RETURNING = (
    _stores.c.id,
    _stores.c.plan,
    _stores.c.plan_credits,
    _stores.c.extra_credits,
    _stores.c.trial_ends_at,
    _stores.c.plan_renews_at,
    _stores.c.version,
)


class StoreNotFound(ValueError):
    """No store exists with the given id."""


class ConsumeResult(BaseModel):
    """Outcome of a consume call.

    ``replayed`` is set when the idempotency key had already been consumed
    and the recorded result is returned without a new deduction.
    """

    success: bool
    credits_remaining: int | None = None
    error: str | None = None
    replayed: bool = False


def _utc(moment: datetime | None) -> datetime | None:
    # SQLite returns naive datetimes; every stored timestamp is UTC
    if moment is not None and moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def _snapshot(row: Any) -> AccountSnapshot:
    return AccountSnapshot(
        store_id=row.id,
        plan=row.plan,
        plan_credits=row.plan_credits,
        extra_credits=row.extra_credits,
        trial_ends_at=_utc(row.trial_ends_at),
        plan_renews_at=_utc(row.plan_renews_at),
        version=row.version,
    )


class LedgerStore:
    """Transactional owner of every store's credit balance.

    Attributes:
        feed: Change feed that receives one event per committed mutation
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        feed: ChangeFeed | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self.feed = feed
        self._settings = settings or get_settings()
        self._clock = clock

    def _publish(self, snapshot: AccountSnapshot) -> None:
        if self.feed is not None:
            self.feed.publish(AccountChanged.from_snapshot(snapshot))

    async def _fetch(self, session: AsyncSession, store_id: str) -> AccountSnapshot | None:
        result = await session.execute(select(*_RETURNING).where(_stores.c.id == store_id))
        row = result.first()
        return _snapshot(row) if row is not None else None

    async def get_account(self, store_id: str) -> AccountSnapshot | None:
        """Read a store's current credit record.

        Raises:
            LedgerUnavailable: If the database cannot be reached.
        """
        try:
            async with self._session_factory() as session:
                return await self._fetch(session, store_id)
        except SQLAlchemyError as e:
            raise LedgerUnavailable(f"Failed to read store {store_id}: {e}") from e

    async def check_eligibility(self, store_id: str) -> Eligibility:
        """Authoritative re-evaluation of the eligibility rules.

        Never raises: an unreachable ledger reports ``ERROR``.
        """
        try:
            snapshot = await self.get_account(store_id)
        except LedgerUnavailable as e:
            logger.error(f"Eligibility check failed for store {store_id}: {e}")
            return Eligibility(allowed=False, reason=BlockReason.ERROR)

        if snapshot is None:
            return Eligibility(allowed=False, reason=BlockReason.STORE_NOT_FOUND)
        return evaluate(snapshot, self._clock())

    async def consume(self, store_id: str, idempotency_key: str) -> ConsumeResult:
        """Deduct exactly one credit for an idempotency key.

        Extra credits are drawn before plan credits. Each candidate
        deduction is a single conditional UPDATE, so concurrent callers can
        never drive a balance negative; the deduction and its consumption
        record commit together.

        Args:
            store_id: Store to charge.
            idempotency_key: Ties the deduction to one generation request.

        Returns:
            ConsumeResult. Replaying a key returns the first call's result.

        Raises:
            LedgerUnavailable: If the database fails mid-operation.
        """
        try:
            async with self._session_factory() as session:
                existing = await self._find_consumption(session, idempotency_key)
                if existing is not None:
                    return self._replay(existing, store_id)

                now = self._clock()
                deducted = await self._decrement(session, store_id, now)
                if deducted is None:
                    await session.rollback()
                    return await self._refusal(session, store_id, now)

                source, snapshot = deducted
                session.add(
                    CreditConsumption(
                        store_id=store_id,
                        idempotency_key=idempotency_key,
                        source=source,
                        credits_remaining=snapshot.total_credits,
                    )
                )
                try:
                    await session.commit()
                except IntegrityError:
                    # Lost a race on the same key: undo our deduction, report theirs
                    await session.rollback()
                    existing = await self._find_consumption(session, idempotency_key)
                    if existing is None:
                        raise
                    return self._replay(existing, store_id)
        except SQLAlchemyError as e:
            raise LedgerUnavailable(
                f"Consume failed for store {store_id} key {idempotency_key}: {e}"
            ) from e

        logger.info(
            f"Consumed 1 {source.value} credit for store {store_id} "
            f"(key={idempotency_key}, remaining={snapshot.total_credits})"
        )
        self._publish(snapshot)
        return ConsumeResult(success=True, credits_remaining=snapshot.total_credits)

    async def _decrement(
        self,
        session: AsyncSession,
        store_id: str,
        now: datetime,
    ) -> tuple[CreditSource, AccountSnapshot] | None:
        not_expired = or_(
            _stores.c.plan != Plan.TRIAL,
            _stores.c.trial_ends_at.is_(None),
            _stores.c.trial_ends_at >= now,
        )
        for source, column in (
            (CreditSource.EXTRA, _stores.c.extra_credits),
            (CreditSource.PLAN, _stores.c.plan_credits),
        ):
            result = await session.execute(
                update(_stores)
                .where(_stores.c.id == store_id)
                .where(column > 0)
                .where(not_expired)
                .values({column: column - 1, _stores.c.version: _stores.c.version + 1})
                .returning(*_RETURNING)
            )
            row = result.first()
            if row is not None:
                return source, _snapshot(row)
        return None

    async def _refusal(self, session: AsyncSession, store_id: str, now: datetime) -> ConsumeResult:
        snapshot = await self._fetch(session, store_id)
        if snapshot is None:
            reason = BlockReason.STORE_NOT_FOUND
        else:
            reason = evaluate(snapshot, now).reason or BlockReason.NO_CREDITS
        logger.warning(f"Consume refused for store {store_id}: {reason.value}")
        return ConsumeResult(success=False, error=reason.value)

    async def _find_consumption(
        self,
        session: AsyncSession,
        idempotency_key: str,
    ) -> CreditConsumption | None:
        result = await session.execute(
            select(CreditConsumption).where(
                CreditConsumption.idempotency_key == idempotency_key
            )
        )
        return result.scalar_one_or_none()

    def _replay(self, consumption: CreditConsumption, store_id: str) -> ConsumeResult:
        if consumption.store_id != store_id:
            logger.warning(
                f"Idempotency key {consumption.idempotency_key} belongs to store "
                f"{consumption.store_id}, not {store_id}"
            )
            return ConsumeResult(success=False, error="IDEMPOTENCY_KEY_CONFLICT")
        return ConsumeResult(
            success=True,
            credits_remaining=consumption.credits_remaining,
            replayed=True,
        )

    # Billing mutations

    async def create_store(
        self,
        name: str | None = None,
        store_id: str | None = None,
        plan: Plan = Plan.TRIAL,
    ) -> AccountSnapshot:
        """Onboard a store.

        Trial stores get ``TRIAL_CREDITS`` for ``TRIAL_DAYS``; paid plans
        start with their monthly allowance and a renewal date.
        """
        now = self._clock()
        store = Store(name=name, plan=plan, extra_credits=0, version=1)
        if store_id is not None:
            store.id = store_id
        if plan == Plan.TRIAL:
            store.plan_credits = self._settings.TRIAL_CREDITS
            store.trial_ends_at = now + timedelta(days=self._settings.TRIAL_DAYS)
        else:
            store.plan_credits = PLAN_CATALOG[plan]["monthly_credits"]
            store.plan_renews_at = now + RENEWAL_PERIOD

        try:
            async with self._session_factory() as session:
                session.add(store)
                await session.commit()
        except SQLAlchemyError as e:
            raise LedgerUnavailable(f"Failed to create store: {e}") from e

        snapshot = AccountSnapshot(
            store_id=store.id,
            plan=store.plan,
            plan_credits=store.plan_credits,
            extra_credits=store.extra_credits,
            trial_ends_at=store.trial_ends_at,
            plan_renews_at=store.plan_renews_at,
            version=store.version,
        )
        logger.info(f"Created store {store.id} on plan {plan.value}")
        self._publish(snapshot)
        return snapshot

    async def renew_plan(
        self,
        store_id: str,
        plan: Plan,
        renews_at: datetime | None = None,
    ) -> AccountSnapshot:
        """Apply a subscription renewal or plan change.

        Plan credits are reset to the plan's allowance; extra credits are
        untouched since they never expire.

        Raises:
            StoreNotFound: If the store does not exist.
            ValueError: If asked to renew onto the trial plan.
        """
        if plan == Plan.TRIAL:
            raise ValueError("Cannot renew onto the trial plan")

        return await self._mutate(
            store_id,
            {
                _stores.c.plan: plan,
                _stores.c.plan_credits: PLAN_CATALOG[plan]["monthly_credits"],
                _stores.c.plan_renews_at: renews_at or self._clock() + RENEWAL_PERIOD,
            },
            action=f"renewed on {plan.value}",
        )

    async def add_extra_credits(self, store_id: str, amount: int) -> AccountSnapshot:
        """Add purchased, non-expiring credits.

        Raises:
            StoreNotFound: If the store does not exist.
            ValueError: If amount is not positive.
        """
        if amount <= 0:
            raise ValueError(f"Credit amount must be positive, got {amount}")

        return await self._mutate(
            store_id,
            {_stores.c.extra_credits: _stores.c.extra_credits + amount},
            action=f"added {amount} extra credits",
        )

    async def _mutate(self, store_id: str, values: dict, action: str) -> AccountSnapshot:
        values = {**values, _stores.c.version: _stores.c.version + 1}
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    update(_stores)
                    .where(_stores.c.id == store_id)
                    .values(values)
                    .returning(*_RETURNING)
                )
                row = result.first()
                if row is None:
                    await session.rollback()
                    raise StoreNotFound(f"No store {store_id}")
                await session.commit()
        except SQLAlchemyError as e:
            raise LedgerUnavailable(f"Failed to update store {store_id}: {e}") from e

        snapshot = _snapshot(row)
        logger.info(f"Store {store_id} {action}")
        self._publish(snapshot)
        return snapshot
