"""Store credit API endpoints: eligibility, consume, billing, balance, change feed.

Endpoints:
    GET  /api/v1/stores/{store_id}/eligibility - Authoritative eligibility check
    POST /api/v1/stores/{store_id}/consume     - Consume one credit (Idempotency-Key header)
    POST /api/v1/stores/{store_id}/renew       - Apply a subscription renewal
    POST /api/v1/stores/{store_id}/credits     - Add purchased extra credits
    GET  /api/v1/stores/{store_id}/balance     - Balance view for display
    GET  /api/v1/stores/{store_id}/events      - SSE stream of account changes
    GET  /api/v1/plans                         - Plan catalog and credit packages

Tests:
    - tests/integration/test_api.py::TestStoreEndpoints
    - tests/integration/test_api.py::TestAccountEventStream
"""

from __future__ import annotations

import logging
from typing import Any, AsyncGenerator

from fastapi import APIRouter, Depends, Header, HTTPException, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, model_validator

from tryon.api.deps import get_feed, get_ledger
from tryon.config import EXTRA_CREDIT_PACKAGES, PLAN_CATALOG, Plan, get_settings
from tryon.credits import (
    AccountChanged,
    AccountSnapshot,
    BalanceView,
    ChangeFeed,
    ConsumeResult,
    Eligibility,
    FeedClosed,
    LedgerStore,
    StoreNotFound,
    build_balance_view,
)
from tryon.credits.eligibility import utcnow

logger = logging.getLogger(__name__)

router = APIRouter(tags=["stores"])


class StreamEvent(BaseModel):
    """SSE event for the account change stream.

    Attributes:
        event: ``snapshot`` for the initial state, ``change`` afterwards
        data: The account record as of this event
    """

    event: str
    data: AccountChanged


class PlanResponse(BaseModel):
    """One entry of the plan catalog."""

    plan: str
    name: str
    monthly_credits: int


class RenewRequest(BaseModel):
    """Subscription renewal or plan change."""

    plan: Plan = Field(..., description="Paid plan to renew onto")


class CreditPurchaseRequest(BaseModel):
    """Purchase of extra credits, by amount or by package name."""

    amount: int | None = Field(default=None, gt=0, description="Number of credits")
    package: str | None = Field(default=None, description="Package name (small, medium, large)")

    @model_validator(mode="after")
    def validate_choice(self) -> "CreditPurchaseRequest":
        if (self.amount is None) == (self.package is None):
            raise ValueError("Give exactly one of amount or package")
        if self.package is not None and self.package not in EXTRA_CREDIT_PACKAGES:
            raise ValueError(f"Unknown package: {self.package}")
        return self

    @property
    def credits(self) -> int:
        return self.amount if self.amount is not None else EXTRA_CREDIT_PACKAGES[self.package]


class PlansResponse(BaseModel):
    """Plan catalog and purchasable credit packages."""

    plans: list[PlanResponse]
    packages: dict[str, int]
    trial_days: int
    trial_credits: int


async def stream_account_events(
    store_id: str,
    ledger: LedgerStore,
    feed: ChangeFeed,
) -> AsyncGenerator[str, None]:
    """Yield SSE-formatted account events for one store.

    Subscribes before reading the current record so that no change
    committed in between is lost; the subscriber drops duplicates by
    ``version``.

    Yields:
        SSE-formatted event strings
    """

    def format_sse(event: StreamEvent) -> str:
        return f"data: {event.model_dump_json()}\n\n"

    try:
        subscription = feed.subscribe(store_id)
    except FeedClosed:
        logger.info(f"Change feed closed, not streaming store {store_id}")
        return

    try:
        snapshot = await ledger.get_account(store_id)
        if snapshot is not None:
            yield format_sse(
                StreamEvent(event="snapshot", data=AccountChanged.from_snapshot(snapshot))
            )

        async for change in subscription:
            yield format_sse(StreamEvent(event="change", data=change))
    finally:
        subscription.close()


def _balance_view(snapshot: AccountSnapshot) -> BalanceView:
    settings = get_settings()
    return build_balance_view(
        snapshot,
        now=utcnow(),
        low_credits_threshold=settings.LOW_CREDITS_THRESHOLD,
    )


@router.get("/stores/{store_id}/eligibility", response_model=Eligibility)
async def get_eligibility(
    store_id: str,
    ledger: LedgerStore = Depends(get_ledger),
) -> Eligibility:
    """Re-evaluate whether the store may generate right now."""
    return await ledger.check_eligibility(store_id)


@router.post("/stores/{store_id}/consume", response_model=ConsumeResult)
async def consume_credit(
    store_id: str,
    idempotency_key: str = Header(..., alias="Idempotency-Key", min_length=1, max_length=128),
    ledger: LedgerStore = Depends(get_ledger),
) -> ConsumeResult:
    """Consume one credit for the request identified by the key.

    Replaying a key returns the original result without a second deduction.
    A refusal (no credits, trial expired) is reported in the body.
    """
    return await ledger.consume(store_id, idempotency_key)


@router.post("/stores/{store_id}/renew", response_model=BalanceView)
async def renew_plan(
    store_id: str,
    request: RenewRequest,
    ledger: LedgerStore = Depends(get_ledger),
) -> BalanceView:
    """Apply a subscription renewal, resetting plan credits.

    Extra credits are untouched. Subscribers of the store's event stream
    receive the new state.
    """
    try:
        snapshot = await ledger.renew_plan(store_id, request.plan)
    except StoreNotFound:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Store not found: {store_id}",
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return _balance_view(snapshot)


@router.post("/stores/{store_id}/credits", response_model=BalanceView)
async def purchase_credits(
    store_id: str,
    request: CreditPurchaseRequest,
    ledger: LedgerStore = Depends(get_ledger),
) -> BalanceView:
    """Add purchased, non-expiring extra credits."""
    try:
        snapshot = await ledger.add_extra_credits(store_id, request.credits)
    except StoreNotFound:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Store not found: {store_id}",
        )

    return _balance_view(snapshot)


@router.get("/stores/{store_id}/balance", response_model=BalanceView)
async def get_balance(
    store_id: str,
    ledger: LedgerStore = Depends(get_ledger),
) -> BalanceView:
    """Return the store's balance view."""
    snapshot = await ledger.get_account(store_id)
    if snapshot is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Store not found: {store_id}",
        )

    return _balance_view(snapshot)


@router.get("/stores/{store_id}/events")
async def stream_store_events(
    store_id: str,
    ledger: LedgerStore = Depends(get_ledger),
    feed: ChangeFeed = Depends(get_feed),
) -> StreamingResponse:
    """Stream account changes as Server-Sent Events.

    Event types:
        - snapshot: Current record, sent once on connect
        - change: A committed mutation (consume, renewal, purchase)

    Example:
        ```javascript
        const source = new EventSource('/api/v1/stores/s1/events');
        source.onmessage = (event) => {
            const { event: type, data } = JSON.parse(event.data);
            console.log(type, data.plan_credits + data.extra_credits);
        };
        ```
    """
    if await ledger.get_account(store_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Store not found: {store_id}",
        )

    return StreamingResponse(
        stream_account_events(store_id, ledger, feed),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )


@router.get("/plans", response_model=PlansResponse)
async def list_plans() -> PlansResponse:
    """Return the plan catalog so clients can show upgrade options."""
    settings = get_settings()
    plans: list[dict[str, Any]] = [
        {"plan": plan.value, **info} for plan, info in PLAN_CATALOG.items()
    ]
    return PlansResponse(
        plans=[PlanResponse(**entry) for entry in plans],
        packages=EXTRA_CREDIT_PACKAGES,
        trial_days=settings.TRIAL_DAYS,
        trial_credits=settings.TRIAL_CREDITS,
    )
