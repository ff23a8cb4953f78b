# ruff: noqa: I001
"""Categorization core tables: categories, transactions, rules, decisions, corrections.

Revision ID: 0001_categorizer_core
Revises: None
Create Date: 2026-10-19
"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "0001_categorizer_core"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    ]


def upgrade() -> None:
    # categories (global when org_id IS NULL)
    op.create_table(
        "categories",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("tier", sa.Text(), nullable=True),
        sa.Column("org_id", sa.Text(), nullable=True),
        sa.Column("parent_id", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("sort_order", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["parent_id"],
            ["categories.id"],
            name="fk_categories_parent",
            deferrable=True,
            initially="DEFERRED",
        ),
        sa.CheckConstraint(
            "tier IS NULL OR tier in ('revenue','cogs','opex')",
            name="ck_categories_tier",
        ),
    )
    op.create_index("ix_categories_org_id", "categories", ["org_id"])

    # transactions
    op.create_table(
        "transactions",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("org_id", sa.Text(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.CHAR(3), nullable=False, server_default=sa.text("'USD'")),
        sa.Column("description", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("merchant_name", sa.Text(), nullable=True),
        sa.Column("mcc", sa.String(4), nullable=True),
        sa.Column("source", sa.Text(), nullable=False, server_default=sa.text("'unknown'")),
        sa.Column("raw", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("category_id", sa.Text(), nullable=True),
        sa.Column("confidence", sa.Numeric(4, 3), nullable=True),
        sa.Column("needs_review", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("reviewed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["category_id"],
            ["categories.id"],
            name="fk_transactions_category",
            deferrable=True,
            initially="DEFERRED",
        ),
        sa.CheckConstraint(
            "confidence IS NULL OR (confidence >= 0 AND confidence <= 1)",
            name="ck_transactions_confidence",
        ),
    )
    # Review queue: org filter, then date DESC / confidence ASC scan
    op.create_index(
        "ix_transactions_review",
        "transactions",
        ["org_id", "needs_review", "date", "confidence"],
    )

    # rules: one row per (org, vendor, mcc); '' stands in for "absent"
    op.create_table(
        "rules",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("org_id", sa.Text(), nullable=True),
        sa.Column("vendor", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("mcc", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("category_id", sa.Text(), nullable=False),
        sa.Column("weight", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("description", sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["category_id"],
            ["categories.id"],
            name="fk_rules_category",
            deferrable=True,
            initially="DEFERRED",
        ),
        sa.UniqueConstraint("org_id", "vendor", "mcc", name="uq_rules_org_vendor_mcc"),
        sa.CheckConstraint("weight >= 1", name="ck_rules_weight_positive"),
        sa.CheckConstraint("vendor <> '' OR mcc <> ''", name="ck_rules_pattern_non_empty"),
    )

    # decisions (append-only audit)
    op.create_table(
        "decisions",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tx_id", sa.Text(), nullable=False),
        sa.Column("org_id", sa.Text(), nullable=False),
        sa.Column("source", sa.Text(), nullable=False),
        sa.Column("category_id", sa.Text(), nullable=True),
        sa.Column("confidence", sa.Numeric(4, 3), nullable=False),
        sa.Column("rationale", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("decided_by", sa.Text(), nullable=False, server_default=sa.text("'system'")),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.ForeignKeyConstraint(["tx_id"], ["transactions.id"], name="fk_decisions_tx"),
        sa.CheckConstraint("source in ('pass1','llm','manual')", name="ck_decisions_source"),
        sa.CheckConstraint(
            "confidence >= 0 AND confidence <= 1",
            name="ck_decisions_confidence",
        ),
    )
    op.create_index("ix_decisions_tx_created", "decisions", ["tx_id", "created_at"])

    # corrections (append-only audit of human category changes)
    op.create_table(
        "corrections",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("org_id", sa.Text(), nullable=False),
        sa.Column("tx_id", sa.Text(), nullable=False),
        sa.Column("old_category_id", sa.Text(), nullable=True),
        sa.Column("new_category_id", sa.Text(), nullable=False),
        sa.Column("user_id", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.ForeignKeyConstraint(["tx_id"], ["transactions.id"], name="fk_corrections_tx"),
    )


def downgrade() -> None:
    op.drop_table("corrections")
    op.drop_index("ix_decisions_tx_created", table_name="decisions")
    op.drop_table("decisions")
    op.drop_table("rules")
    op.drop_index("ix_transactions_review", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_categories_org_id", table_name="categories")
    op.drop_table("categories")
