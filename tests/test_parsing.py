from __future__ import annotations

import pytest

from categorizer.parsing import (
    ModelReply,
    ReplyParseFailure,
    extract_json_object,
    parse_model_reply,
)

ALLOWED = {"cat_meals", "cat_software"}


def test_extracts_object_surrounded_by_prose() -> None:
    text = 'I think this is {"category_id": "cat_meals", "confidence": 0.8, "rationale": "coffee"}.'
    assert extract_json_object(text) == {
        "category_id": "cat_meals",
        "confidence": 0.8,
        "rationale": "coffee",
    }


def test_fenced_block_wins_over_earlier_braces() -> None:
    text = (
        "Thinking about {this} for a second.\n"
        "```json\n"
        '{"category_id": "cat_software", "confidence": 0.7, "rationale": ["saas"]}\n'
        "```"
    )
    assert extract_json_object(text)["category_id"] == "cat_software"


def test_skips_undecodable_braces() -> None:
    text = '{not json} then {"category_id": "cat_meals", "confidence": 0.5, "rationale": "x"}'
    assert extract_json_object(text)["category_id"] == "cat_meals"


def test_valid_reply_is_parsed() -> None:
    parsed = parse_model_reply(
        '{"category_id": "cat_software", "confidence": 0.93, '
        '"rationale": ["Recurring SaaS charge"], "attributes": {"subscription_period": "monthly"}}',
        ALLOWED,
    )
    assert parsed == ModelReply(
        category_id="cat_software",
        confidence=0.93,
        rationale=("Recurring SaaS charge",),
        attributes={"subscription_period": "monthly"},
    )


def test_string_rationale_becomes_single_item() -> None:
    parsed = parse_model_reply(
        '{"category_id": "cat_meals", "confidence": 0.6, "rationale": "  coffee shop "}', ALLOWED
    )
    assert isinstance(parsed, ModelReply)
    assert parsed.rationale == ("coffee shop",)
    assert dict(parsed.attributes) == {}


@pytest.mark.parametrize(
    "text, fragment",
    [
        (None, "empty"),
        ("   ", "empty"),
        ("I cannot help with that.", "no JSON object"),
        ('{"category_id": "cat_unknown", "confidence": 0.9, "rationale": "x"}', "category_id"),
        ('{"category_id": "", "confidence": 0.9, "rationale": "x"}', "category_id"),
        ('{"category_id": "cat_meals", "confidence": 1.4, "rationale": "x"}', "confidence"),
        ('{"category_id": "cat_meals", "confidence": -0.1, "rationale": "x"}', "confidence"),
        ('{"category_id": "cat_meals", "confidence": "0.9", "rationale": "x"}', "confidence"),
        ('{"category_id": "cat_meals", "confidence": 0.9}', "rationale"),
        ('{"category_id": "cat_meals", "confidence": 0.9, "rationale": ["", " "]}', "rationale"),
        ('{"confidence": 0.9, "rationale": "x"}', "category_id"),
    ],
)
def test_invalid_replies_fail_closed(text: str | None, fragment: str) -> None:
    parsed = parse_model_reply(text, ALLOWED)
    assert isinstance(parsed, ReplyParseFailure)
    assert fragment in parsed.reason


def test_failure_excerpt_is_bounded() -> None:
    parsed = parse_model_reply("no json here " * 50, ALLOWED)
    assert isinstance(parsed, ReplyParseFailure)
    assert 0 < len(parsed.excerpt) <= 120
