"""Category Directory: resolve, list, and seed org-scoped/global categories.

A category is visible to an organization when it is active and either global
(``org_id IS NULL``) or owned by that organization. Every category reference
the engine writes must pass :func:`resolve_category` first.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from db.models.ledger import LedgerCategory

from .errors import NotFoundError, ValidationError
from .logging_setup import get_logger
from .models import CategoryRef

_logger = get_logger("categorizer.categories")

_TIERS = frozenset({"revenue", "cogs", "opex"})


def _to_ref(row: LedgerCategory) -> CategoryRef:
    return CategoryRef(
        id=row.id,
        name=row.name,
        tier=row.tier,
        org_id=row.org_id,
        parent_id=row.parent_id,
    )


def visible_to(org_id: str | None):
    """Clause admitting global categories plus those owned by ``org_id``."""

    if org_id is None:
        return LedgerCategory.org_id.is_(None)
    return or_(LedgerCategory.org_id.is_(None), LedgerCategory.org_id == org_id)


def resolve_category(session: Session, category_id: str, org_id: str | None) -> CategoryRef:
    """Return the category if it is visible to ``org_id``.

    ``org_id=None`` stands for a global owner (a global rule), which can only
    see global categories.

    Raises :class:`NotFoundError` when the id is unknown, inactive, or owned
    by a different organization. The three cases are indistinguishable to the
    caller so category ids of other tenants are not disclosed.
    """

    row = session.execute(
        select(LedgerCategory).where(
            LedgerCategory.id == category_id,
            LedgerCategory.is_active.is_(True),
            visible_to(org_id),
        )
    ).scalar_one_or_none()
    if row is None:
        raise NotFoundError(f"Category not found: {category_id!r}")
    return _to_ref(row)


def category_root(session: Session, category_id: str) -> str:
    """Id of the top-level ancestor of ``category_id`` (itself for a root)."""

    seen: set[str] = set()
    current = category_id
    while current not in seen:
        seen.add(current)
        parent_id = session.execute(
            select(LedgerCategory.parent_id).where(LedgerCategory.id == current)
        ).scalar_one_or_none()
        if parent_id is None:
            break
        current = parent_id
    return current


def list_visible_categories(session: Session, org_id: str) -> list[CategoryRef]:
    rows = (
        session.execute(
            select(LedgerCategory)
            .where(LedgerCategory.is_active.is_(True), visible_to(org_id))
            .order_by(LedgerCategory.sort_order.asc().nulls_last(), LedgerCategory.name.asc())
        )
        .scalars()
        .all()
    )
    return [_to_ref(r) for r in rows]


# ---- Seeding ----------------------------------------------------------------


def _flatten(
    nodes: Iterable[Mapping[str, Any]], parent_id: str | None, out: list[dict[str, Any]]
) -> None:
    for node in nodes:
        cid = str(node.get("id") or "").strip()
        name = str(node.get("name") or "").strip()
        if not cid or not name:
            raise ValidationError(f"Category node requires non-empty id and name: {dict(node)!r}")
        tier = node.get("tier")
        if tier is not None and tier not in _TIERS:
            raise ValidationError(f"Invalid tier {tier!r} for category {cid!r}")
        out.append(
            {
                "id": cid,
                "name": name,
                "tier": tier,
                "parent_id": node.get("parent_id", parent_id),
            }
        )
        _flatten(node.get("children") or [], cid, out)


def _parent_settled(
    parent_id: str | None,
    parents: Mapping[str, str | None],
    unwritten: set[str],
) -> bool:
    """True when ``parent_id``'s ancestor chain contains no node still waiting.

    ``parents`` reflects the rows as written so far in this call, so a parent
    that is about to be moved is only trusted after it has been moved.
    """

    seen: set[str] = set()
    node = parent_id
    while node is not None:
        if node in unwritten or node in seen:
            return False
        seen.add(node)
        node = parents.get(node)
    return True


def seed_categories(
    session: Session,
    tree: Sequence[Mapping[str, Any]],
    *,
    org_id: str | None = None,
) -> int:
    """Insert or update a category tree, parents strictly before children.

    ``tree`` is a list of ``{id, name, tier?, children?}`` nodes; a flat list
    with explicit ``parent_id`` is accepted too. A node is written only once
    every ancestor is settled: written earlier in this call, or already stored
    and not itself being rewritten. Reparenting can therefore never close a
    cycle; such nodes, dangling parents, and parents owned by another
    organization raise :class:`ValidationError` instead.

    Returns the number of categories written.
    """

    pending: list[dict[str, Any]] = []
    _flatten(tree, None, pending)

    seen: set[str] = set()
    for node in pending:
        if node["id"] in seen:
            raise ValidationError(f"Duplicate category id in tree: {node['id']!r}")
        seen.add(node["id"])

    stored = session.execute(
        select(LedgerCategory.id, LedgerCategory.parent_id, LedgerCategory.org_id)
    ).all()
    parents: dict[str, str | None] = {r.id: r.parent_id for r in stored}
    owners: dict[str, str | None] = {r.id: r.org_id for r in stored}
    for node in pending:
        parent_id = node["parent_id"]
        if parent_id is None or parent_id in seen or parent_id not in owners:
            continue
        if owners[parent_id] is not None and owners[parent_id] != org_id:
            raise ValidationError(
                f"Parent {parent_id!r} of category {node['id']!r} is not visible to its owner"
            )

    now = datetime.now(UTC)
    written = 0
    sort_order = 0
    pass_no = 0
    unwritten = set(seen)
    while pending:
        pass_no += 1
        ready = [n for n in pending if _parent_settled(n["parent_id"], parents, unwritten)]
        ready = [n for n in ready if n["parent_id"] is None or n["parent_id"] in parents]
        if not ready:
            orphans = ", ".join(sorted(n["id"] for n in pending))
            raise ValidationError(f"Categories reference missing or cyclic parents: {orphans}")
        for node in ready:
            row = session.get(LedgerCategory, node["id"])
            if row is None:
                row = LedgerCategory(id=node["id"], created_at=now)
                session.add(row)
            elif row.org_id != org_id:
                raise ValidationError(
                    f"Category {node['id']!r} already exists with a different owner"
                )
            row.name = node["name"]
            row.tier = node["tier"]
            row.org_id = org_id
            row.parent_id = node["parent_id"]
            row.is_active = True
            row.sort_order = sort_order
            row.updated_at = now
            sort_order += 1
            parents[node["id"]] = node["parent_id"]
            unwritten.discard(node["id"])
            written += 1
        session.flush()
        ready_ids = {n["id"] for n in ready}
        pending = [n for n in pending if n["id"] not in ready_ids]
        _logger.info("categories:seed_pass pass=%d written=%d", pass_no, len(ready))

    return written


__all__ = [
    "category_root",
    "list_visible_categories",
    "resolve_category",
    "seed_categories",
    "visible_to",
]
