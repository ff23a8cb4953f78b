"""Transaction Store and audit stores backed by ``libs/db``.

Scope:
- Load transactions (as :class:`~categorizer.models.NormalizedTransaction`)
  and apply category patches to ``transactions``.
- Append-only writes to ``decisions`` and ``corrections``. Each append runs
  inside a SAVEPOINT so a failed audit insert rolls back only itself; callers
  receive :class:`~categorizer.errors.AuditWriteError` and decide whether it is
  fatal.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from db.models.ledger import CategoryCorrection, CategoryDecision, LedgerTransaction

from .errors import AuditWriteError, AuthorizationError, NotFoundError, ValidationError
from .models import CategorizationResult, DecisionSource, NormalizedTransaction

_PATCHABLE = frozenset({"category_id", "confidence", "needs_review", "reviewed"})


def dialect_insert(session: Session, table: Any):
    """Return the dialect-specific ``insert`` supporting ``ON CONFLICT``."""

    name = session.get_bind().dialect.name
    if name == "postgresql":
        return postgresql.insert(table)
    if name == "sqlite":
        return sqlite.insert(table)
    raise RuntimeError(f"Unsupported database dialect for upserts: {name}")


def to_normalized(row: LedgerTransaction) -> NormalizedTransaction:
    return NormalizedTransaction(
        id=row.id,
        org_id=row.org_id,
        date=row.date,
        amount_cents=int(row.amount_cents),
        currency=row.currency,
        description=row.description or "",
        merchant_name=row.merchant_name,
        mcc=row.mcc,
        source=row.source,
        raw=row.raw,
    )


def get_transaction_row(session: Session, tx_id: str) -> LedgerTransaction:
    row = session.get(LedgerTransaction, tx_id)
    if row is None:
        raise NotFoundError(f"Transaction not found: {tx_id!r}")
    return row


def ensure_same_org(row: LedgerTransaction, org_id: str) -> None:
    """Reject cross-tenant access before anything is written."""

    if row.org_id != org_id:
        raise AuthorizationError(
            f"Transaction {row.id!r} does not belong to organization {org_id!r}"
        )


def load_transaction(session: Session, tx_id: str, *, org_id: str) -> NormalizedTransaction:
    row = get_transaction_row(session, tx_id)
    ensure_same_org(row, org_id)
    return to_normalized(row)


def update_transaction(session: Session, tx_id: str, patch: Mapping[str, Any]) -> None:
    """Apply a category/review patch to one transaction row."""

    unknown = set(patch) - _PATCHABLE
    if unknown:
        raise ValidationError(f"Unsupported transaction patch fields: {sorted(unknown)}")
    res = session.execute(
        update(LedgerTransaction)
        .where(LedgerTransaction.id == tx_id)
        .values(**patch, updated_at=func.now())
    )
    if res.rowcount == 0:
        raise NotFoundError(f"Transaction not found: {tx_id!r}")


def add_transactions(session: Session, transactions: Iterable[NormalizedTransaction]) -> int:
    """Insert transactions, skipping ids that already exist.

    Ingestion lives upstream; this is the narrow write path the CLI and tests
    use to stage input rows. Returns the number of rows inserted.
    """

    payloads = [
        {
            "id": tx.id,
            "org_id": tx.org_id,
            "date": tx.date,
            "amount_cents": tx.amount_cents,
            "currency": tx.currency,
            "description": tx.description,
            "merchant_name": tx.merchant_name,
            "mcc": tx.mcc,
            "source": tx.source,
            "raw": dict(tx.raw) if tx.raw is not None else None,
        }
        for tx in transactions
    ]
    if not payloads:
        return 0
    stmt = dialect_insert(session, LedgerTransaction).values(payloads)
    stmt = stmt.on_conflict_do_nothing(index_elements=["id"])
    res = session.execute(stmt)
    return int(res.rowcount or 0)


def append_decision(
    session: Session,
    *,
    tx_id: str,
    org_id: str,
    source: DecisionSource,
    result: CategorizationResult,
    decided_by: str,
) -> int:
    """Append one Decision row and return its id.

    Raises :class:`AuditWriteError` when the insert fails; the enclosing
    transaction stays usable because only the savepoint is rolled back.
    """

    row = CategoryDecision(
        tx_id=tx_id,
        org_id=org_id,
        source=source,
        category_id=result.category_id,
        confidence=float(result.confidence),
        rationale=list(result.rationale),
        decided_by=decided_by,
        created_at=datetime.now(UTC),
    )
    try:
        with session.begin_nested():
            session.add(row)
            session.flush()
    except SQLAlchemyError as e:
        raise AuditWriteError(f"Failed to append decision for transaction {tx_id!r}: {e}") from e
    return row.id


def append_correction(
    session: Session,
    *,
    tx_id: str,
    org_id: str,
    old_category_id: str | None,
    new_category_id: str,
    user_id: str | None,
) -> int:
    row = CategoryCorrection(
        tx_id=tx_id,
        org_id=org_id,
        old_category_id=old_category_id,
        new_category_id=new_category_id,
        user_id=user_id,
        created_at=datetime.now(UTC),
    )
    try:
        with session.begin_nested():
            session.add(row)
            session.flush()
    except SQLAlchemyError as e:
        raise AuditWriteError(f"Failed to append correction for transaction {tx_id!r}: {e}") from e
    return row.id


__all__ = [
    "add_transactions",
    "append_correction",
    "append_decision",
    "dialect_insert",
    "ensure_same_org",
    "get_transaction_row",
    "load_transaction",
    "to_normalized",
    "update_transaction",
]
