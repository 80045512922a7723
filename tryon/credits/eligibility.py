"""Eligibility evaluation and balance projection.

Pure functions over an account snapshot: no I/O, safe to call
speculatively. The ledger applies the same ``evaluate`` server-side, so the
client-side result is advisory and the ledger's is authoritative.

Examples:
    >>> snapshot = AccountSnapshot(store_id="s1", plan=Plan.STARTER, plan_credits=0)
    >>> evaluate(snapshot)
    Eligibility(allowed=False, reason=<BlockReason.NO_CREDITS: 'NO_CREDITS'>)

Tests:
    - tests/unit/test_eligibility.py
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field

from tryon.config import Plan, get_plan_name


class BlockReason(str, Enum):
    """Why a store may not generate.

    TRIAL_EXPIRED and NO_CREDITS come from the rules; STORE_NOT_FOUND and
    ERROR are only produced by the ledger when it cannot evaluate.
    """

    TRIAL_EXPIRED = "TRIAL_EXPIRED"
    NO_CREDITS = "NO_CREDITS"
    STORE_NOT_FOUND = "STORE_NOT_FOUND"
    ERROR = "ERROR"


class AccountSnapshot(BaseModel):
    """Storage-independent view of a store's credit record."""

    store_id: str
    plan: Plan = Plan.TRIAL
    plan_credits: int = Field(default=0, ge=0)
    extra_credits: int = Field(default=0, ge=0)
    trial_ends_at: datetime | None = None
    plan_renews_at: datetime | None = None
    version: int = 0

    @property
    def total_credits(self) -> int:
        return self.plan_credits + self.extra_credits


class Eligibility(BaseModel):
    """Result of an eligibility check."""

    allowed: bool
    reason: BlockReason | None = None


class BalanceView(BaseModel):
    """Derived, read-only projection shown to clients. Never persisted."""

    store_id: str
    plan: Plan
    plan_name: str
    plan_credits: int
    extra_credits: int
    total_credits: int
    trial_ends_at: datetime | None = None
    plan_renews_at: datetime | None = None
    is_blocked: bool
    block_reason: BlockReason | None = None
    days_to_renew: int
    days_to_trial_end: int
    is_low_credits: bool
    version: int = 0
    stale: bool = False


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(moment: datetime) -> datetime:
    # SQLite hands back naive datetimes; they are stored as UTC
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def days_remaining(moment: datetime | None, now: datetime | None = None) -> int:
    """Whole days until ``moment``, rounded up, never negative.

    Args:
        moment: Target timestamp, or None.
        now: Reference time (defaults to current UTC time).

    Returns:
        int: 0 when ``moment`` is None or already past.
    """
    if moment is None:
        return 0
    now = _aware(now or utcnow())
    seconds = (_aware(moment) - now).total_seconds()
    return max(0, math.ceil(seconds / 86400))


def evaluate(account: AccountSnapshot, now: datetime | None = None) -> Eligibility:
    """Decide whether a store may issue a generation request.

    Rules, in order:
        1. Trial plan whose ``trial_ends_at`` is in the past → TRIAL_EXPIRED,
           even when extra credits remain.
        2. No credits left → NO_CREDITS.
        3. Otherwise allowed.

    Args:
        account: Snapshot of the store's credit record.
        now: Reference time (defaults to current UTC time).

    Returns:
        Eligibility
    """
    now = _aware(now or utcnow())

    if (
        account.plan == Plan.TRIAL
        and account.trial_ends_at is not None
        and _aware(account.trial_ends_at) < now
    ):
        return Eligibility(allowed=False, reason=BlockReason.TRIAL_EXPIRED)

    if account.total_credits <= 0:
        return Eligibility(allowed=False, reason=BlockReason.NO_CREDITS)

    return Eligibility(allowed=True)


def build_balance_view(
    account: AccountSnapshot,
    now: datetime | None = None,
    low_credits_threshold: int = 20,
    stale: bool = False,
) -> BalanceView:
    """Project a snapshot into the view clients render.

    Args:
        account: Snapshot of the store's credit record.
        now: Reference time (defaults to current UTC time).
        low_credits_threshold: Balance at or below which ``is_low_credits`` is set.
        stale: Whether the view awaits confirmation from the ledger.

    Returns:
        BalanceView
    """
    now = now or utcnow()
    eligibility = evaluate(account, now)
    total = account.total_credits

    return BalanceView(
        store_id=account.store_id,
        plan=account.plan,
        plan_name=get_plan_name(account.plan),
        plan_credits=account.plan_credits,
        extra_credits=account.extra_credits,
        total_credits=total,
        trial_ends_at=account.trial_ends_at,
        plan_renews_at=account.plan_renews_at,
        is_blocked=not eligibility.allowed,
        block_reason=eligibility.reason,
        days_to_renew=days_remaining(account.plan_renews_at, now),
        days_to_trial_end=days_remaining(account.trial_ends_at, now),
        is_low_credits=0 < total <= low_credits_threshold,
        version=account.version,
        stale=stale,
    )
