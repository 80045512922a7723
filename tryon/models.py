"""SQLAlchemy models for store accounts and credit consumption.

Defines Store (the per-tenant credit account) and CreditConsumption
(one row per idempotency key, append-only).

Examples:
    >>> from tryon.models import Store
    >>> store = Store(name="Loja Fit", plan=Plan.GROWTH, plan_credits=300)

Tests:
    - tests/unit/test_models.py::TestStore
    - tests/unit/test_models.py::TestCreditConsumption
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    String,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from tryon.config import Plan


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class."""

    pass


class CreditSource(str, Enum):
    """Which balance a consumption was drawn from."""

    EXTRA = "extra"
    PLAN = "plan"


class Store(Base):
    """Tenant credit account. Mutated only through the ledger."""

    __tablename__ = "stores"
    __table_args__ = (
        CheckConstraint("plan_credits >= 0", name="ck_stores_plan_credits_nonneg"),
        CheckConstraint("extra_credits >= 0", name="ck_stores_extra_credits_nonneg"),
    )

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    name: Mapped[str | None] = mapped_column(String(255), default=None)
    plan: Mapped[Plan] = mapped_column(SQLEnum(Plan), default=Plan.TRIAL, nullable=False)
    plan_credits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    extra_credits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    trial_ends_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    plan_renews_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    # Bumped on every mutation so feed consumers can discard stale events
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    consumptions: Mapped[list["CreditConsumption"]] = relationship(
        back_populates="store"
    )

    @property
    def total_credits(self) -> int:
        return self.plan_credits + self.extra_credits

    def __repr__(self) -> str:
        return (
            f"<Store(id={self.id!r}, plan={self.plan.value}, "
            f"plan_credits={self.plan_credits}, extra_credits={self.extra_credits})>"
        )


class CreditConsumption(Base):
    """Record of a single successful deduction. Append-only.

    The unique idempotency key is what makes ``consume`` exactly-once.
    """

    __tablename__ = "credit_consumptions"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    store_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("stores.id"),
        index=True,
        nullable=False,
    )
    idempotency_key: Mapped[str] = mapped_column(
        String(128), unique=True, nullable=False
    )
    source: Mapped[CreditSource] = mapped_column(SQLEnum(CreditSource), nullable=False)
    credits_remaining: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    store: Mapped["Store"] = relationship(back_populates="consumptions")

    def __repr__(self) -> str:
        return (
            f"<CreditConsumption(key={self.idempotency_key!r}, "
            f"source={self.source.value}, remaining={self.credits_remaining})>"
        )
