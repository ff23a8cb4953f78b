"""Rule Store and Rule Learner.

Rules map a pattern ``(vendor, mcc)`` to a category for one organization
(``org_id IS NULL`` marks a global fallback rule). Absent pattern parts are
stored as ``''`` so the ``(org_id, vendor, mcc)`` unique key always applies.

Learning goes through a single ``INSERT ... ON CONFLICT DO UPDATE``: two
concurrent corrections for a vendor never seen before both land on the same
row, and their weight deltas add up.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from db.models.ledger import CategoryRule, LedgerCategory

from .categories import resolve_category, visible_to
from .errors import NotFoundError, ValidationError
from .logging_setup import get_logger
from .models import ExecutionContext, RuleUpsertResult
from .persistence import dialect_insert
from .vendors import normalize_vendor

_logger = get_logger("categorizer.rules")

_RULE_PATCHABLE = frozenset({"category_id", "weight", "description"})


def mcc_key(mcc: str | None) -> str:
    return (mcc or "").strip()


# ---- Rule Store -------------------------------------------------------------


def find_rule_by_pattern(
    session: Session, org_id: str | None, vendor: str, mcc: str | None
) -> CategoryRule | None:
    org_clause = CategoryRule.org_id.is_(None) if org_id is None else CategoryRule.org_id == org_id
    return session.execute(
        select(CategoryRule).where(
            org_clause,
            CategoryRule.vendor == vendor,
            CategoryRule.mcc == mcc_key(mcc),
        )
    ).scalar_one_or_none()


def insert_rule(
    session: Session,
    *,
    org_id: str | None,
    vendor: str,
    mcc: str | None,
    category_id: str,
    weight: int = 1,
    description: str | None = None,
) -> CategoryRule:
    now = datetime.now(UTC)
    row = CategoryRule(
        org_id=org_id,
        vendor=vendor,
        mcc=mcc_key(mcc),
        category_id=category_id,
        weight=weight,
        version=1,
        description=description,
        created_at=now,
        updated_at=now,
    )
    session.add(row)
    session.flush()
    return row


def update_rule(session: Session, rule_id: int, **patch: Any) -> None:
    unknown = set(patch) - _RULE_PATCHABLE
    if unknown:
        raise ValidationError(f"Unsupported rule patch fields: {sorted(unknown)}")
    res = session.execute(
        update(CategoryRule)
        .where(CategoryRule.id == rule_id)
        .values(**patch, version=CategoryRule.version + 1, updated_at=datetime.now(UTC))
    )
    if res.rowcount == 0:
        raise NotFoundError(f"Rule not found: {rule_id}")


def upsert_rule(
    session: Session,
    *,
    org_id: str,
    vendor: str,
    mcc: str | None,
    category_id: str,
    weight_delta: int = 1,
    description: str | None = None,
) -> tuple[int, bool]:
    """Atomically create or reinforce the rule for ``(org_id, vendor, mcc)``.

    On conflict the existing weight grows by ``weight_delta``, the category is
    overwritten, and ``version`` is bumped. Returns ``(rule_id, is_new)``.
    """

    now = datetime.now(UTC)
    ins = dialect_insert(session, CategoryRule).values(
        org_id=org_id,
        vendor=vendor,
        mcc=mcc_key(mcc),
        category_id=category_id,
        weight=weight_delta,
        version=1,
        description=description,
        created_at=now,
        updated_at=now,
    )
    stmt = ins.on_conflict_do_update(
        index_elements=["org_id", "vendor", "mcc"],
        set_={
            "weight": CategoryRule.weight + ins.excluded.weight,
            "category_id": ins.excluded.category_id,
            "description": func.coalesce(ins.excluded.description, CategoryRule.description),
            "version": CategoryRule.version + 1,
            "updated_at": ins.excluded.updated_at,
        },
    ).returning(CategoryRule.id, CategoryRule.version)
    rule_id, version = session.execute(stmt).one()
    return int(rule_id), int(version) == 1


def upsert_mcc_rule(
    session: Session,
    org_id: str | None,
    mcc: str,
    category_id: str,
    weight: int = 1,
) -> tuple[int, bool]:
    """Create or replace a coarse MCC-only mapping (``vendor = ''``).

    The category must be visible to the rule's owner; a global mapping may
    only point at a global category.

    Global mappings (``org_id=None``) are operator-seeded, so a plain
    lookup-then-write is used for them; NULL org ids never collide on the
    unique key.
    """

    key = mcc_key(mcc)
    if not key:
        raise ValidationError("MCC-only rules require a non-empty MCC")
    category_id = resolve_category(session, category_id, org_id).id
    if org_id is not None:
        return upsert_rule(
            session,
            org_id=org_id,
            vendor="",
            mcc=key,
            category_id=category_id,
            weight_delta=weight,
        )
    existing = find_rule_by_pattern(session, None, "", key)
    if existing is None:
        row = insert_rule(
            session, org_id=None, vendor="", mcc=key, category_id=category_id, weight=weight
        )
        return row.id, True
    update_rule(session, existing.id, category_id=category_id, weight=weight)
    return existing.id, False


def load_candidate_rules(
    session: Session, org_id: str, vendor: str, mcc: str | None
) -> Sequence[CategoryRule]:
    """Single query for every rule that could match a transaction.

    Candidates: org-scoped or global rules whose vendor is ``vendor`` (or
    ``''`` for MCC-only rules) and whose MCC is the transaction's (or ``''``).
    Rules pointing at a category ``org_id`` cannot see (inactive, or private
    to another organization) are never candidates.
    """

    vendors = [vendor, ""] if vendor else [""]
    mcc_values = [""]
    if mcc_key(mcc):
        mcc_values.append(mcc_key(mcc))
    return (
        session.execute(
            select(CategoryRule)
            .join(LedgerCategory, LedgerCategory.id == CategoryRule.category_id)
            .where(
                or_(CategoryRule.org_id == org_id, CategoryRule.org_id.is_(None)),
                LedgerCategory.is_active.is_(True),
                visible_to(org_id),
                CategoryRule.vendor.in_(vendors),
                CategoryRule.mcc.in_(mcc_values),
            )
            .execution_options(populate_existing=True)
        )
        .scalars()
        .all()
    )


# ---- Rule Learner -----------------------------------------------------------


def learn_rule(
    ctx: ExecutionContext,
    vendor: str,
    category_id: str,
    *,
    mcc: str | None = None,
    weight_delta: int = 1,
    description: str | None = None,
) -> RuleUpsertResult:
    """Turn a human correction into a new or reinforced rule.

    ``vendor`` is the raw merchant text; it is canonicalized with the same
    :func:`~categorizer.vendors.normalize_vendor` Pass1 uses.
    """

    if isinstance(weight_delta, bool) or not isinstance(weight_delta, int) or weight_delta < 1:
        raise ValidationError(f"weight_delta must be a positive integer, got {weight_delta!r}")
    key = normalize_vendor(vendor)
    if not key:
        raise ValidationError(f"Invalid vendor name: {vendor!r}")
    category = resolve_category(ctx.session, category_id, ctx.org_id)

    rule_id, is_new = upsert_rule(
        ctx.session,
        org_id=ctx.org_id,
        vendor=key,
        mcc=mcc,
        category_id=category.id,
        weight_delta=weight_delta,
        description=description,
    )
    verb = "Created" if is_new else "Updated"
    message = f"{verb} rule: {vendor.strip()} → {category.name}"
    _logger.info(
        "rules:%s rule_id=%d org_id=%s vendor=%r mcc=%s category_id=%s delta=%d",
        "created" if is_new else "updated",
        rule_id,
        ctx.org_id,
        key,
        mcc_key(mcc) or "-",
        category.id,
        weight_delta,
    )
    return RuleUpsertResult(rule_id=rule_id, is_new=is_new, message=message)


__all__ = [
    "find_rule_by_pattern",
    "insert_rule",
    "learn_rule",
    "load_candidate_rules",
    "mcc_key",
    "update_rule",
    "upsert_mcc_rule",
    "upsert_rule",
]
