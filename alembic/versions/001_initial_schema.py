"""Initial schema: kv_entries, index_entries, market_history.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── kv_entries: asset:{id}, portfolio:{user}, schedule:{id} ───────────────
    op.create_table(
        "kv_entries",
        sa.Column("key", sa.String(length=200), nullable=False),
        sa.Column("value", postgresql.JSONB(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=True,
        ),
        sa.PrimaryKeyConstraint("key"),
    )

    # ── index_entries: asset_index, category:{name} ───────────────────────────
    op.create_table(
        "index_entries",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("index_key", sa.String(length=200), nullable=False),
        sa.Column("member", sa.String(length=100), nullable=False),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=True,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("index_key", "member", name="uq_index_member"),
    )
    op.create_index("idx_index_key", "index_entries", ["index_key", "id"])

    # ── market_history ────────────────────────────────────────────────────────
    op.create_table(
        "market_history",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("asset_id", sa.String(length=100), nullable=False),
        sa.Column("timestamp", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("previous_price", sa.DECIMAL(precision=20, scale=8), nullable=True),
        sa.Column("current_price", sa.DECIMAL(precision=20, scale=8), nullable=False),
        sa.Column("price_change_percent", sa.DECIMAL(precision=10, scale=6), nullable=True),
        sa.Column("market_cap", sa.DECIMAL(precision=30, scale=8), nullable=True),
        sa.Column("engagement_score", sa.DECIMAL(precision=20, scale=4), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("asset_id", "timestamp", name="uq_history_asset_time"),
    )
    op.create_index("idx_history_asset", "market_history", ["asset_id", "timestamp"])


def downgrade() -> None:
    op.drop_index("idx_history_asset", table_name="market_history")
    op.drop_table("market_history")

    op.drop_index("idx_index_key", table_name="index_entries")
    op.drop_table("index_entries")

    op.drop_table("kv_entries")
