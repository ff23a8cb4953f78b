"""Review Queue Reader: prioritized, cursor-paginated reads for reviewers.

Ordering is ``date DESC, confidence ASC NULLS LAST, id ASC``: the most recent
and least certain items come first. A cursor carries the ``(date,
confidence)`` of the last item returned (plus its id as a tiebreaker) and the
next page continues strictly after it, so pages stay stable while new rows are
being inserted. One extra row is fetched to compute ``has_more``; the full
result set is never counted.
"""

from __future__ import annotations

import base64
import binascii
import json
from collections.abc import Mapping
from datetime import date
from typing import Any

import pydantic
from sqlalchemy import and_, false, or_, select
from sqlalchemy.sql.elements import ColumnElement

from db.models.ledger import CategoryDecision, LedgerCategory, LedgerTransaction

from .errors import ValidationError
from .logging_setup import get_logger
from .models import ExecutionContext, ReviewCursor, ReviewFilter, ReviewPage, ReviewQueueItem

_logger = get_logger("categorizer.review_queue")

DEFAULT_LIMIT = 100
MAX_LIMIT = 1000
MAX_REASONS = 3


# ---- Rationale normalization ---------------------------------------------------


def normalize_rationale(raw: Any, *, limit: int = MAX_REASONS) -> tuple[str, ...]:
    """Collapse every stored rationale shape into at most ``limit`` strings.

    Accepted shapes: a list of strings, an object with a ``reasons`` list (or
    string), or a bare string. Anything else yields an empty tuple.
    """

    items: list[Any]
    if isinstance(raw, str):
        items = [raw]
    elif isinstance(raw, Mapping):
        reasons = raw.get("reasons")
        if isinstance(reasons, str):
            items = [reasons]
        elif isinstance(reasons, (list, tuple)):
            items = list(reasons)
        else:
            items = []
    elif isinstance(raw, (list, tuple)):
        items = list(raw)
    else:
        items = []
    cleaned = [s.strip() for s in items if isinstance(s, str) and s.strip()]
    return tuple(cleaned[:limit])


# ---- Cursor ---------------------------------------------------------------------


def encode_cursor(d: date, confidence: float | None, tx_id: str | None = None) -> str:
    payload: dict[str, Any] = {"d": d.isoformat(), "c": confidence}
    if tx_id is not None:
        payload["i"] = tx_id
    raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(text: str) -> ReviewCursor:
    """Decode a cursor produced by :func:`encode_cursor`.

    Raises :class:`ValidationError` for anything that is not a well-formed
    cursor; a bad cursor is a client error.
    """

    if not isinstance(text, str) or not text.strip():
        raise ValidationError("Invalid cursor: empty")
    s = text.strip()
    try:
        raw = base64.urlsafe_b64decode(s + "=" * (-len(s) % 4))
        payload = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError, ValueError) as e:
        raise ValidationError("Invalid cursor: not decodable") from e
    if not isinstance(payload, dict):
        raise ValidationError("Invalid cursor: unexpected payload")

    try:
        d = date.fromisoformat(payload["d"])
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError("Invalid cursor: bad date") from e

    c = payload.get("c")
    if c is not None:
        if isinstance(c, bool) or not isinstance(c, (int, float)) or not 0.0 <= c <= 1.0:
            raise ValidationError("Invalid cursor: bad confidence")
        c = float(c)

    tx_id = payload.get("i")
    if tx_id is not None and not isinstance(tx_id, str):
        raise ValidationError("Invalid cursor: bad id")
    return ReviewCursor(date=d, confidence=c, tx_id=tx_id)


def _after_cursor(cur: ReviewCursor) -> ColumnElement[bool]:
    """Rows strictly after ``cur`` in queue order.

    Earlier date, or same date with a greater confidence. Unknown confidence
    sorts after every known value; equal keys fall back to the id tiebreaker
    when the cursor carries one.
    """

    tx = LedgerTransaction
    if cur.confidence is None:
        same_date_tail = (
            and_(tx.confidence.is_(None), tx.id > cur.tx_id) if cur.tx_id is not None else false()
        )
    else:
        same_date_tail = or_(tx.confidence > cur.confidence, tx.confidence.is_(None))
        if cur.tx_id is not None:
            same_date_tail = or_(
                same_date_tail, and_(tx.confidence == cur.confidence, tx.id > cur.tx_id)
            )
    return or_(tx.date < cur.date, and_(tx.date == cur.date, same_date_tail))


# ---- Filter ---------------------------------------------------------------------


def build_review_filter(values: ReviewFilter | Mapping[str, Any] | None = None) -> ReviewFilter:
    if isinstance(values, ReviewFilter):
        return values
    try:
        return ReviewFilter.model_validate(dict(values or {}))
    except pydantic.ValidationError as e:
        first = e.errors()[0]
        loc = ".".join(str(p) for p in first.get("loc", ())) or "filter"
        raise ValidationError(f"Invalid review filter ({loc}): {first.get('msg')}") from e


def _escape_like(s: str) -> str:
    return s.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _filter_clauses(org_id: str, flt: ReviewFilter) -> list[ColumnElement[bool]]:
    tx = LedgerTransaction
    clauses: list[ColumnElement[bool]] = [tx.org_id == org_id]
    if flt.needs_review_only:
        clauses.append(tx.needs_review.is_(True))
    # Default bounds admit rows with unknown confidence; narrowed bounds do not.
    if flt.min_confidence > 0.0:
        clauses.append(tx.confidence >= flt.min_confidence)
    if flt.max_confidence < 1.0:
        clauses.append(tx.confidence <= flt.max_confidence)
    if flt.date_from is not None:
        clauses.append(tx.date >= flt.date_from)
    if flt.date_to is not None:
        clauses.append(tx.date <= flt.date_to)
    if flt.search:
        pattern = f"%{_escape_like(flt.search)}%"
        clauses.append(
            or_(
                tx.description.ilike(pattern, escape="\\"),
                tx.merchant_name.ilike(pattern, escape="\\"),
            )
        )
    return clauses


# ---- Reader ---------------------------------------------------------------------


def read_review_queue(
    ctx: ExecutionContext,
    review_filter: ReviewFilter | Mapping[str, Any] | None = None,
    *,
    cursor: str | None = None,
    limit: int = DEFAULT_LIMIT,
) -> ReviewPage:
    """Return one page of the review queue for ``ctx.org_id``.

    Raises :class:`ValidationError` for a bad filter, an out-of-range
    ``limit`` or an unparseable ``cursor``.
    """

    if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= MAX_LIMIT:
        raise ValidationError(f"limit must be an integer within [1,{MAX_LIMIT}], got {limit!r}")
    flt = build_review_filter(review_filter)
    clauses = _filter_clauses(ctx.org_id, flt)
    if cursor is not None:
        clauses.append(_after_cursor(decode_cursor(cursor)))

    tx = LedgerTransaction
    latest_decision_id = (
        select(CategoryDecision.id)
        .where(CategoryDecision.tx_id == tx.id)
        .order_by(CategoryDecision.created_at.desc(), CategoryDecision.id.desc())
        .limit(1)
        .correlate(tx)
        .scalar_subquery()
    )
    stmt = (
        select(tx, LedgerCategory.name, CategoryDecision)
        .outerjoin(LedgerCategory, LedgerCategory.id == tx.category_id)
        .outerjoin(CategoryDecision, CategoryDecision.id == latest_decision_id)
        .where(*clauses)
        .order_by(tx.date.desc(), tx.confidence.asc().nulls_last(), tx.id.asc())
        .limit(limit + 1)
    )
    rows = ctx.session.execute(stmt).all()

    has_more = len(rows) > limit
    page = rows[:limit]
    items = tuple(
        ReviewQueueItem(
            id=t.id,
            date=t.date,
            amount_cents=int(t.amount_cents),
            currency=t.currency,
            description=t.description,
            merchant_name=t.merchant_name,
            mcc=t.mcc,
            category_id=t.category_id,
            category_name=category_name,
            confidence=t.confidence,
            needs_review=t.needs_review,
            reviewed=t.reviewed,
            decision_source=decision.source if decision is not None else None,
            decision_created_at=decision.created_at if decision is not None else None,
            decided_by=decision.decided_by if decision is not None else None,
            why=normalize_rationale(decision.rationale if decision is not None else None),
        )
        for t, category_name, decision in page
    )
    next_cursor = None
    if has_more and items:
        last = items[-1]
        next_cursor = encode_cursor(last.date, last.confidence, last.id)

    _logger.info(
        "review_queue:page org_id=%s items=%d has_more=%s cursor=%s",
        ctx.org_id,
        len(items),
        has_more,
        "yes" if cursor else "no",
    )
    return ReviewPage(items=items, next_cursor=next_cursor, has_more=has_more)


__all__ = [
    "DEFAULT_LIMIT",
    "MAX_LIMIT",
    "build_review_filter",
    "decode_cursor",
    "encode_cursor",
    "normalize_rationale",
    "read_review_queue",
]
