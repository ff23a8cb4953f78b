from __future__ import annotations

import pytest
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from categorizer.categories import list_visible_categories, resolve_category, seed_categories
from categorizer.errors import NotFoundError, ValidationError
from db.models.ledger import LedgerCategory
from tests.helpers.db import ORG_A, ORG_B, TEST_CATEGORY_TREE


def test_global_category_resolves_for_any_org(session: Session) -> None:
    for org in (ORG_A, ORG_B):
        ref = resolve_category(session, "cat_meals", org)
        assert ref.name == "Meals"
        assert ref.is_global
        assert ref.parent_id == "cat_opex"


def test_org_category_is_hidden_from_other_orgs(session: Session) -> None:
    assert resolve_category(session, "cat_b_private", ORG_B).org_id == ORG_B
    with pytest.raises(NotFoundError):
        resolve_category(session, "cat_b_private", ORG_A)


def test_unknown_and_inactive_categories_are_not_found(session: Session) -> None:
    with pytest.raises(NotFoundError):
        resolve_category(session, "cat_nope", ORG_A)
    session.execute(
        update(LedgerCategory).where(LedgerCategory.id == "cat_travel").values(is_active=False)
    )
    with pytest.raises(NotFoundError):
        resolve_category(session, "cat_travel", ORG_A)
    assert "cat_travel" not in {c.id for c in list_visible_categories(session, ORG_A)}


def test_list_visible_categories_is_scoped_and_ordered(session: Session) -> None:
    org_a = [c.id for c in list_visible_categories(session, ORG_A)]
    assert org_a == [
        "cat_opex",
        "cat_revenue",
        "cat_food_beverage",
        "cat_meals",
        "cat_software",
        "cat_travel",
    ]
    org_b = {c.id for c in list_visible_categories(session, ORG_B)}
    assert org_b == set(org_a) | {"cat_b_private"}


def test_reseeding_is_idempotent(session: Session) -> None:
    assert seed_categories(session, TEST_CATEGORY_TREE) == 6
    count = session.execute(select(LedgerCategory.id)).scalars().all()
    assert len(count) == 7


def test_flat_list_with_parent_ids_is_seeded_parent_first(session: Session) -> None:
    written = seed_categories(
        session,
        [
            {"id": "cat_child", "name": "Child", "parent_id": "cat_parent"},
            {"id": "cat_parent", "name": "Parent", "tier": "cogs"},
        ],
        org_id=ORG_A,
    )
    assert written == 2
    child = resolve_category(session, "cat_child", ORG_A)
    assert child.parent_id == "cat_parent"
    assert child.org_id == ORG_A


@pytest.mark.parametrize(
    "tree",
    [
        [{"id": "x", "name": "X", "parent_id": "missing"}],
        [{"id": "x", "name": "X", "parent_id": "y"}, {"id": "y", "name": "Y", "parent_id": "x"}],
        [{"id": "x", "name": "X"}, {"id": "x", "name": "X again"}],
        [{"id": "x", "name": "X", "tier": "assets"}],
        [{"id": "", "name": "Nameless"}],
    ],
)
def test_malformed_trees_are_rejected(session: Session, tree: list[dict]) -> None:
    with pytest.raises(ValidationError):
        seed_categories(session, tree)


def test_seeding_cannot_change_category_owner(session: Session) -> None:
    with pytest.raises(ValidationError):
        seed_categories(session, [{"id": "cat_meals", "name": "Meals"}], org_id=ORG_B)


def _parent_of(session: Session, category_id: str) -> str | None:
    return session.execute(
        select(LedgerCategory.parent_id).where(LedgerCategory.id == category_id)
    ).scalar_one()


def test_reseeding_cannot_swap_parent_and_child(session: Session) -> None:
    seed_categories(session, [{"id": "p", "name": "P", "children": [{"id": "q", "name": "Q"}]}])
    with pytest.raises(ValidationError):
        seed_categories(
            session,
            [
                {"id": "p", "name": "P", "parent_id": "q"},
                {"id": "q", "name": "Q", "parent_id": "p"},
            ],
        )
    assert (_parent_of(session, "p"), _parent_of(session, "q")) == (None, "p")


def test_category_cannot_move_under_its_stored_descendant(session: Session) -> None:
    seed_categories(
        session,
        [{"id": "a", "name": "A", "children": [{"id": "b", "name": "B"}]}],
    )
    with pytest.raises(ValidationError):
        seed_categories(session, [{"id": "a", "name": "A", "parent_id": "b"}])
    assert _parent_of(session, "a") is None


def test_subtree_can_be_reordered_in_one_call(session: Session) -> None:
    seed_categories(
        session,
        [
            {
                "id": "a",
                "name": "A",
                "children": [{"id": "b", "name": "B", "children": [{"id": "c", "name": "C"}]}],
            }
        ],
    )
    written = seed_categories(
        session,
        [
            {"id": "a", "name": "A", "parent_id": "c"},
            {"id": "c", "name": "C"},
        ],
    )
    assert written == 2
    assert [_parent_of(session, x) for x in ("a", "b", "c")] == ["c", "a", None]


@pytest.mark.parametrize("owner", [ORG_A, None])
def test_parent_must_be_visible_to_the_owner(session: Session, owner: str | None) -> None:
    with pytest.raises(ValidationError):
        seed_categories(
            session, [{"id": "cat_x", "name": "X", "parent_id": "cat_b_private"}], org_id=owner
        )
    assert session.get(LedgerCategory, "cat_x") is None
