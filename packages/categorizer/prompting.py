"""Prompt construction for the Pass2 model scorer.

The prompt is bounded regardless of input size: the description is truncated,
at most :data:`MAX_HINTS` Pass1 hints and :data:`MAX_CATEGORIES` categories
are embedded, and the transaction is serialized with a fixed field order
between ``BEGIN_TRANSACTION_JSON`` / ``END_TRANSACTION_JSON`` markers.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any

from .models import CategorizationResult, CategoryRef, NormalizedTransaction

MAX_DESCRIPTION_CHARS = 200
MAX_HINTS = 3
MAX_CATEGORIES = 60

BEGIN_MARKER = "BEGIN_TRANSACTION_JSON"
END_MARKER = "END_TRANSACTION_JSON"

TX_FIELD_ORDER: tuple[str, ...] = (
    "id",
    "date",
    "amount",
    "currency",
    "description",
    "merchant",
    "mcc",
)


def format_amount(amount_cents: int) -> str:
    """Render integer minor units as a decimal string without float math."""

    sign = "-" if amount_cents < 0 else ""
    major, minor = divmod(abs(amount_cents), 100)
    return f"{sign}{major}.{minor:02d}"


def _truncate(text: str, limit: int) -> str:
    s = " ".join(text.split())
    if len(s) <= limit:
        return s
    return s[: limit - 1].rstrip() + "…"


def serialize_transaction(tx: NormalizedTransaction) -> str:
    values: dict[str, Any] = {
        "id": tx.id,
        "date": tx.date.isoformat(),
        "amount": format_amount(tx.amount_cents),
        "currency": tx.currency,
        "description": _truncate(tx.description, MAX_DESCRIPTION_CHARS),
        "merchant": (
            _truncate(tx.merchant_name, MAX_DESCRIPTION_CHARS) if tx.merchant_name else None
        ),
        "mcc": tx.mcc,
    }
    return json.dumps({k: values[k] for k in TX_FIELD_ORDER}, ensure_ascii=False)


def build_prompt(
    tx: NormalizedTransaction,
    *,
    pass1: CategorizationResult | None,
    categories: Sequence[CategoryRef],
) -> str:
    """Return the full prompt for one transaction.

    Pass1 rationale is offered as hints only; the model may disagree with it.
    """

    lines: list[str] = [
        "You categorize business bank and card transactions for bookkeeping.",
        "Choose exactly one category id from the list below. Never invent ids.",
        "",
        "Categories (id: name):",
    ]
    for cat in categories[:MAX_CATEGORIES]:
        lines.append(f"- {cat.id}: {cat.name}")

    hints = list(pass1.rationale[:MAX_HINTS]) if pass1 is not None else []
    if pass1 is not None and pass1.category_id:
        hints = [f"Rule suggestion: {pass1.category_id} ({pass1.confidence:.2f})", *hints]
        hints = hints[:MAX_HINTS]
    if hints:
        lines.append("")
        lines.append("Hints from deterministic rules (may be wrong):")
        lines.extend(f"- {h}" for h in hints)

    lines += [
        "",
        BEGIN_MARKER,
        serialize_transaction(tx),
        END_MARKER,
        "",
        "Respond with a single JSON object and nothing else:",
        '{"category_id": "<id>", "confidence": <0..1>, "rationale": ["<reason>", ...], '
        '"attributes": {}}',
        "Use attributes for structured facts you recognize "
        '(e.g. {"subscription_period": "monthly"}).',
    ]
    return "\n".join(lines)


__all__ = [
    "BEGIN_MARKER",
    "END_MARKER",
    "MAX_CATEGORIES",
    "MAX_HINTS",
    "build_prompt",
    "format_amount",
    "serialize_transaction",
]
