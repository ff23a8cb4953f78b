from __future__ import annotations

import base64
import json
from datetime import date

import pytest
from sqlalchemy.orm import Session

from categorizer.decisions import decide_and_apply
from categorizer.errors import ValidationError
from categorizer.models import CategorizationResult, ExecutionContext, ReviewCursor
from categorizer.persistence import update_transaction
from categorizer.review_queue import (
    MAX_LIMIT,
    decode_cursor,
    encode_cursor,
    normalize_rationale,
    read_review_queue,
)
from tests.helpers.db import ORG_B, make_tx, stage

D1 = date(2026, 3, 14)
D0 = date(2026, 3, 13)


def _b64(payload: object) -> str:
    return base64.urlsafe_b64encode(json.dumps(payload).encode()).decode().rstrip("=")


def _ids(page) -> list[str]:
    return [item.id for item in page.items]


@pytest.fixture
def queue(session: Session) -> Session:
    """Five reviewable rows across two dates plus one auto-applied row."""

    stage(
        session,
        [
            make_tx("a", on=D1, description="Lunch at Cafe", merchant_name="Cafe Luna"),
            make_tx("b", on=D1, description="AWS EMEA"),
            make_tx("c", on=D1, description="Wire 100% refund"),
            make_tx("d", on=D1, description="Uber trip"),
            make_tx("e", on=D0, description="Delta Air"),
            make_tx("done", on=D1, description="Applied already"),
        ],
    )
    update_transaction(session, "a", {"confidence": 0.3})
    update_transaction(session, "b", {"confidence": 0.7})
    update_transaction(session, "d", {"confidence": 0.3})
    update_transaction(session, "e", {"confidence": 0.1})
    update_transaction(session, "done", {"confidence": 0.95, "needs_review": False})
    return session


# ---- Cursor ---------------------------------------------------------------------


def test_cursor_round_trip() -> None:
    assert decode_cursor(encode_cursor(D1, 0.42, "tx_1")) == ReviewCursor(D1, 0.42, "tx_1")
    assert decode_cursor(encode_cursor(D1, None)) == ReviewCursor(D1, None, None)


def test_cursor_is_url_safe() -> None:
    token = encode_cursor(D1, 0.5, "tx/with+odd?chars")
    assert "=" not in token
    assert set(token) <= set("ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_")


@pytest.mark.parametrize(
    "token",
    [
        "",
        "   ",
        "!!!not-base64!!!",
        _b64([1, 2]),
        _b64({"c": 0.5}),
        _b64({"d": "yesterday", "c": 0.5}),
        _b64({"d": "2026-03-14", "c": 1.5}),
        _b64({"d": "2026-03-14", "c": True}),
        _b64({"d": "2026-03-14", "c": "0.5"}),
        _b64({"d": "2026-03-14", "c": 0.5, "i": 7}),
    ],
)
def test_malformed_cursor_is_a_validation_error(token: str) -> None:
    with pytest.raises(ValidationError):
        decode_cursor(token)


# ---- Rationale -------------------------------------------------------------------


@pytest.mark.parametrize(
    "raw, expected",
    [
        (["a", "b"], ("a", "b")),
        ({"reasons": ["a", " b "]}, ("a", "b")),
        ({"reasons": "only"}, ("only",)),
        ("bare reason", ("bare reason",)),
        (["a", "", 3, None, "b"], ("a", "b")),
        (["1", "2", "3", "4", "5"], ("1", "2", "3")),
        ({"other": "x"}, ()),
        (None, ()),
        (42, ()),
    ],
)
def test_normalize_rationale(raw: object, expected: tuple[str, ...]) -> None:
    assert normalize_rationale(raw) == expected


# ---- Validation ------------------------------------------------------------------


@pytest.mark.parametrize("limit", [0, -5, MAX_LIMIT + 1, True])
def test_limit_is_bounded(ctx: ExecutionContext, limit: int) -> None:
    with pytest.raises(ValidationError):
        read_review_queue(ctx, limit=limit)


@pytest.mark.parametrize(
    "flt",
    [
        {"min_confidence": -0.1},
        {"max_confidence": 1.5},
        {"min_confidence": 0.8, "max_confidence": 0.2},
        {"date_from": "2026-03-14", "date_to": "2026-03-01"},
        {"unknown_field": True},
        {"min_confidence": "0.5"},
        {"max_confidence": "1"},
        {"needs_review_only": "no"},
        {"needs_review_only": 0},
    ],
)
def test_invalid_filter_is_rejected(ctx: ExecutionContext, flt: dict) -> None:
    with pytest.raises(ValidationError):
        read_review_queue(ctx, flt)


def test_bad_cursor_is_rejected_by_reader(ctx: ExecutionContext) -> None:
    with pytest.raises(ValidationError):
        read_review_queue(ctx, cursor="garbage")


# ---- Ordering and pagination ---------------------------------------------------------


def test_order_is_recent_first_then_least_confident(queue: Session, ctx: ExecutionContext) -> None:
    page = read_review_queue(ctx)
    assert _ids(page) == ["a", "d", "b", "c", "e"]
    assert not page.has_more
    assert page.next_cursor is None


def test_pages_cover_queue_without_gaps_or_duplicates(
    queue: Session, ctx: ExecutionContext
) -> None:
    first = read_review_queue(ctx, limit=2)
    assert _ids(first) == ["a", "d"]
    assert first.has_more and first.next_cursor

    second = read_review_queue(ctx, cursor=first.next_cursor, limit=2)
    assert _ids(second) == ["b", "c"]
    assert second.has_more

    third = read_review_queue(ctx, cursor=second.next_cursor, limit=2)
    assert _ids(third) == ["e"]
    assert not third.has_more
    assert third.next_cursor is None


def test_newer_rows_do_not_shift_later_pages(queue: Session, ctx: ExecutionContext) -> None:
    first = read_review_queue(ctx, limit=2)
    stage(queue, [make_tx("late", on=date(2026, 3, 20)), make_tx("aa", on=D1)])
    update_transaction(queue, "aa", {"confidence": 0.2})

    second = read_review_queue(ctx, cursor=first.next_cursor, limit=10)
    assert _ids(second) == ["b", "c", "e"]


def test_exact_limit_has_no_more(queue: Session, ctx: ExecutionContext) -> None:
    page = read_review_queue(ctx, limit=5)
    assert len(page.items) == 5
    assert not page.has_more


# ---- Filters ---------------------------------------------------------------------------


def test_needs_review_only_can_be_disabled(queue: Session, ctx: ExecutionContext) -> None:
    assert "done" not in _ids(read_review_queue(ctx))
    assert "done" in _ids(read_review_queue(ctx, {"needs_review_only": False}))


def test_confidence_bounds_exclude_unknown_confidence(
    queue: Session, ctx: ExecutionContext
) -> None:
    page = read_review_queue(ctx, {"min_confidence": 0.2, "max_confidence": 0.5})
    assert _ids(page) == ["a", "d"]


def test_date_range(queue: Session, ctx: ExecutionContext) -> None:
    assert _ids(read_review_queue(ctx, {"date_to": D0})) == ["e"]
    assert _ids(read_review_queue(ctx, {"date_from": D1, "date_to": D1})) == ["a", "d", "b", "c"]


def test_search_matches_description_and_merchant(queue: Session, ctx: ExecutionContext) -> None:
    assert _ids(read_review_queue(ctx, {"search": "luna"})) == ["a"]
    assert _ids(read_review_queue(ctx, {"search": "aws"})) == ["b"]
    assert _ids(read_review_queue(ctx, {"search": "100%"})) == ["c"]
    assert _ids(read_review_queue(ctx, {"search": "   "})) == ["a", "d", "b", "c", "e"]


def test_other_org_rows_are_invisible(queue: Session, ctx: ExecutionContext) -> None:
    stage(queue, [make_tx("other", org_id=ORG_B, on=D1)])
    assert "other" not in _ids(read_review_queue(ctx, {"needs_review_only": False}))


# ---- Item content ------------------------------------------------------------------------


def test_item_carries_latest_decision(session: Session, ctx: ExecutionContext) -> None:
    stage(session, [make_tx("t1", merchant_name="Starbucks")])
    decide_and_apply("t1", CategorizationResult("cat_meals", 0.6, ("first",)), "pass1", ctx)
    decide_and_apply(
        "t1", CategorizationResult("cat_food_beverage", 0.7, ("Coffee", "Morning")), "llm", ctx
    )

    (item,) = read_review_queue(ctx).items
    assert item.category_id == "cat_food_beverage"
    assert item.category_name == "Food & Beverage"
    assert item.confidence == 0.7
    assert item.amount_cents == -450
    assert item.merchant_name == "Starbucks"
    assert item.decision_source == "llm"
    assert item.decided_by == "system"
    assert item.decision_created_at is not None
    assert item.why == ("Coffee", "Morning")


def test_item_without_decision(queue: Session, ctx: ExecutionContext) -> None:
    item = read_review_queue(ctx).items[0]
    assert item.decision_source is None
    assert item.why == ()
    assert item.category_name is None
