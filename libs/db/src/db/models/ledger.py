from __future__ import annotations

from datetime import date, datetime
from typing import Any

from sqlalchemy import (
    CHAR,
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# BIGINT on Postgres; SQLite only autoincrements an INTEGER PRIMARY KEY (rowid).
_BigIntPk = BigInteger().with_variant(Integer(), "sqlite")

# Confidence is stored with three decimals and read back as float.
_Confidence = Numeric(4, 3, asdecimal=False)


class Base(DeclarativeBase):
    pass


# ---------------------------
# Reference: categories
# ---------------------------


class LedgerCategory(Base):
    __tablename__ = "categories"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    tier: Mapped[str | None] = mapped_column(String, nullable=True)
    # NULL means global (visible to every organization).
    org_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    # Children are only inserted after their parent exists (see
    # ``categorizer.categories.seed_categories``), which keeps the tree acyclic.
    parent_id: Mapped[str | None] = mapped_column(
        String,
        ForeignKey("categories.id", deferrable=True, initially="DEFERRED"),
        nullable=True,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("true"))
    sort_order: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("now()")
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("now()")
    )

    __table_args__ = (
        CheckConstraint(
            "tier IS NULL OR tier in ('revenue','cogs','opex')",
            name="ck_categories_tier",
        ),
    )


# ---------------------------
# Core: transactions
# ---------------------------


class LedgerTransaction(Base):
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    org_id: Mapped[str] = mapped_column(String, nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    # Signed amount in integer minor units (cents); never a float.
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(CHAR(3), nullable=False, server_default=text("'USD'"))
    description: Mapped[str] = mapped_column(Text, nullable=False, server_default=text("''"))
    merchant_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    mcc: Mapped[str | None] = mapped_column(String(4), nullable=True)
    source: Mapped[str] = mapped_column(String, nullable=False, server_default=text("'unknown'"))
    raw: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    category_id: Mapped[str | None] = mapped_column(
        String,
        ForeignKey("categories.id", deferrable=True, initially="DEFERRED"),
        nullable=True,
    )
    confidence: Mapped[float | None] = mapped_column(_Confidence, nullable=True)
    needs_review: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("true")
    )
    reviewed: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("false"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("now()")
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("now()")
    )

    __table_args__ = (
        CheckConstraint(
            "confidence IS NULL OR (confidence >= 0 AND confidence <= 1)",
            name="ck_transactions_confidence",
        ),
        Index("ix_transactions_review", "org_id", "needs_review", "date", "confidence"),
    )


# ---------------------------
# Learned rules
# ---------------------------


class CategoryRule(Base):
    __tablename__ = "rules"

    id: Mapped[int] = mapped_column(_BigIntPk, primary_key=True, autoincrement=True)
    # NULL org_id marks a global fallback rule.
    org_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Normalized vendor key; '' marks an MCC-only rule.
    vendor: Mapped[str] = mapped_column(String, nullable=False, server_default=text("''"))
    # '' means "any MCC". Absent values are never NULL so the unique key below
    # cannot be bypassed by NULL distinctness.
    mcc: Mapped[str] = mapped_column(String, nullable=False, server_default=text("''"))
    category_id: Mapped[str] = mapped_column(
        String,
        ForeignKey("categories.id", deferrable=True, initially="DEFERRED"),
        nullable=False,
    )
    weight: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("1"))
    # 1 on insert, incremented by every conflict-driven reinforcement.
    version: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("1"))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("now()")
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("now()")
    )

    __table_args__ = (
        UniqueConstraint("org_id", "vendor", "mcc", name="uq_rules_org_vendor_mcc"),
        CheckConstraint("weight >= 1", name="ck_rules_weight_positive"),
        CheckConstraint("vendor <> '' OR mcc <> ''", name="ck_rules_pattern_non_empty"),
    )


# ---------------------------
# Append-only audit: decisions, corrections
# ---------------------------


class CategoryDecision(Base):
    __tablename__ = "decisions"

    id: Mapped[int] = mapped_column(_BigIntPk, primary_key=True, autoincrement=True)
    tx_id: Mapped[str] = mapped_column(String, ForeignKey("transactions.id"), nullable=False)
    org_id: Mapped[str] = mapped_column(String, nullable=False)
    source: Mapped[str] = mapped_column(String, nullable=False)
    category_id: Mapped[str | None] = mapped_column(String, nullable=True)
    confidence: Mapped[float] = mapped_column(_Confidence, nullable=False)
    rationale: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    decided_by: Mapped[str] = mapped_column(
        String, nullable=False, server_default=text("'system'")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("now()")
    )

    __table_args__ = (
        CheckConstraint("source in ('pass1','llm','manual')", name="ck_decisions_source"),
        CheckConstraint(
            "confidence >= 0 AND confidence <= 1",
            name="ck_decisions_confidence",
        ),
        Index("ix_decisions_tx_created", "tx_id", "created_at"),
    )


class CategoryCorrection(Base):
    __tablename__ = "corrections"

    id: Mapped[int] = mapped_column(_BigIntPk, primary_key=True, autoincrement=True)
    org_id: Mapped[str] = mapped_column(String, nullable=False)
    tx_id: Mapped[str] = mapped_column(String, ForeignKey("transactions.id"), nullable=False)
    old_category_id: Mapped[str | None] = mapped_column(String, nullable=True)
    new_category_id: Mapped[str] = mapped_column(String, nullable=False)
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("now()")
    )


__all__ = [
    "Base",
    "CategoryCorrection",
    "CategoryDecision",
    "CategoryRule",
    "LedgerCategory",
    "LedgerTransaction",
]
