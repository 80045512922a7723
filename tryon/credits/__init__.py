"""Credit eligibility, ledger, change feed and balance sync.

Re-exports the public types for convenient imports.
"""

from tryon.credits.eligibility import (
    AccountSnapshot,
    BalanceView,
    BlockReason,
    Eligibility,
    build_balance_view,
    days_remaining,
    evaluate,
)
from tryon.credits.feed import AccountChanged, ChangeFeed, FeedClosed, Subscription
from tryon.credits.ledger import ConsumeResult, LedgerStore, StoreNotFound
from tryon.credits.sync import BalanceSync

__all__ = [
    "AccountChanged",
    "AccountSnapshot",
    "BalanceSync",
    "BalanceView",
    "BlockReason",
    "ChangeFeed",
    "ConsumeResult",
    "Eligibility",
    "FeedClosed",
    "LedgerStore",
    "StoreNotFound",
    "Subscription",
    "build_balance_view",
    "days_remaining",
    "evaluate",
]
