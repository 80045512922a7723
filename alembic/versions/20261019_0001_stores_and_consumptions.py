"""Create stores and credit_consumptions tables.

Revision ID: 0001
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

plan_enum = sa.Enum("TRIAL", "STARTER", "GROWTH", "PRO", name="plan")
source_enum = sa.Enum("EXTRA", "PLAN", name="creditsource")


def upgrade() -> None:
    """Create the store credit account and consumption record tables."""

    # --- Stores (one credit account per tenant) ---
    op.create_table(
        "stores",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("plan", plan_enum, nullable=False),
        sa.Column("plan_credits", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("extra_credits", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("trial_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("plan_renews_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.CheckConstraint("plan_credits >= 0", name="ck_stores_plan_credits_nonneg"),
        sa.CheckConstraint("extra_credits >= 0", name="ck_stores_extra_credits_nonneg"),
    )

    # --- Credit consumptions (append-only, one per idempotency key) ---
    op.create_table(
        "credit_consumptions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "store_id",
            sa.String(36),
            sa.ForeignKey("stores.id"),
            nullable=False,
        ),
        sa.Column("idempotency_key", sa.String(128), nullable=False, unique=True),
        sa.Column("source", source_enum, nullable=False),
        sa.Column("credits_remaining", sa.Integer(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_credit_consumptions_store_id",
        "credit_consumptions",
        ["store_id"],
    )


def downgrade() -> None:
    """Drop the credit tables."""
    op.drop_index("ix_credit_consumptions_store_id", table_name="credit_consumptions")
    op.drop_table("credit_consumptions")
    op.drop_table("stores")
    plan_enum.drop(op.get_bind(), checkfirst=True)
    source_enum.drop(op.get_bind(), checkfirst=True)
