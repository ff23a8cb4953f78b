"""Guardrails: checks that can veto an automatic decision.

A result that would be auto-applied is checked against the transaction before
it is written. Any violation holds it for review instead; the category and
confidence are kept so the reviewer sees what the engine would have done, and
each violation is recorded as a ``"Guardrail: ..."`` rationale entry.

Checks, in order:

- MCC compatibility: when the transaction's MCC has an MCC-only mapping, the
  proposed category must share the mapped category's top-level ancestor.
- Amount realism: the sign of the amount must fit the category tier (no
  revenue on an outflow, no expense on an inflow), and the amount must stay
  below any configured per-category ceiling.
- Suspicious patterns: refunds, bank transfers and test charges.
- Minimum confidence: ``guardrail_min_confidence`` applies even when the
  auto-apply threshold is configured lower.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from typing import Literal

from .categories import category_root, resolve_category
from .logging_setup import get_logger
from .models import CategorizationResult, CategoryRef, ExecutionContext, NormalizedTransaction
from .rules import load_candidate_rules, mcc_key

_logger = get_logger("categorizer.guardrails")

type ViolationKind = Literal[
    "mcc_incompatible", "amount_unrealistic", "suspicious_pattern", "confidence_too_low"
]

_EXPENSE_TIERS = frozenset({"cogs", "opex"})

_SUSPICIOUS_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"\b(?:refund|return|reversal|chargeback)\b", re.IGNORECASE),
        "Refund or reversal needs special handling",
    ),
    (
        re.compile(r"\b(?:transfer|deposit|withdrawal)\b", re.IGNORECASE),
        "Bank transfers are not business income or expenses",
    ),
    (
        re.compile(r"\b(?:test|demo|sample)\b", re.IGNORECASE),
        "Looks like a test transaction",
    ),
)


@dataclass(frozen=True, slots=True)
class GuardrailViolation:
    kind: ViolationKind
    reason: str


def _mcc_mapping(tx: NormalizedTransaction, ctx: ExecutionContext) -> str | None:
    key = mcc_key(tx.mcc)
    if not key:
        return None
    mappings = [
        r
        for r in load_candidate_rules(ctx.session, ctx.org_id, "", key)
        if r.vendor == "" and r.mcc == key
    ]
    if not mappings:
        return None
    best = min(mappings, key=lambda r: (r.org_id is None, -r.weight, r.id))
    return best.category_id


def check_mcc_compatibility(
    tx: NormalizedTransaction, category: CategoryRef, ctx: ExecutionContext
) -> GuardrailViolation | None:
    mapped = _mcc_mapping(tx, ctx)
    if mapped is None or mapped == category.id:
        return None
    if category_root(ctx.session, mapped) == category_root(ctx.session, category.id):
        return None
    return GuardrailViolation(
        "mcc_incompatible",
        f"MCC {mcc_key(tx.mcc)} maps to {mapped}, outside the family of {category.id}",
    )


def check_amount(
    tx: NormalizedTransaction, category: CategoryRef, ctx: ExecutionContext
) -> GuardrailViolation | None:
    if category.tier == "revenue" and tx.amount_cents < 0:
        return GuardrailViolation("amount_unrealistic", "Revenue category on an outflow")
    if category.tier in _EXPENSE_TIERS and tx.amount_cents > 0:
        return GuardrailViolation("amount_unrealistic", "Expense category on an inflow")
    ceiling = ctx.settings.amount_ceilings.get(category.id)
    if ceiling is not None and abs(tx.amount_cents) >= ceiling:
        return GuardrailViolation(
            "amount_unrealistic",
            f"Amount {abs(tx.amount_cents)} reaches the {category.name} ceiling of {ceiling}",
        )
    return None


def check_patterns(tx: NormalizedTransaction) -> GuardrailViolation | None:
    texts = (tx.description, tx.merchant_name or "")
    for pattern, reason in _SUSPICIOUS_PATTERNS:
        if any(pattern.search(t) for t in texts):
            return GuardrailViolation("suspicious_pattern", reason)
    return None


def check_confidence(
    result: CategorizationResult, ctx: ExecutionContext
) -> GuardrailViolation | None:
    minimum = ctx.settings.guardrail_min_confidence
    if result.confidence >= minimum:
        return None
    return GuardrailViolation(
        "confidence_too_low",
        f"Confidence {result.confidence:.3f} below minimum {minimum:.2f}",
    )


def check_guardrails(
    tx: NormalizedTransaction, result: CategorizationResult, ctx: ExecutionContext
) -> tuple[GuardrailViolation, ...]:
    """Every violation ``result`` raises for ``tx`` (empty when it may auto-apply)."""

    if result.category_id is None or not ctx.settings.guardrails_enabled:
        return ()
    category = resolve_category(ctx.session, result.category_id, ctx.org_id)
    found = (
        check_mcc_compatibility(tx, category, ctx),
        check_amount(tx, category, ctx),
        check_patterns(tx),
        check_confidence(result, ctx),
    )
    return tuple(v for v in found if v is not None)


def hold_for_review(
    result: CategorizationResult, violations: tuple[GuardrailViolation, ...]
) -> CategorizationResult:
    """Put guardrail reasons first so they survive the review queue's reason cap."""

    notes = tuple(f"Guardrail: {v.reason}" for v in violations)
    return replace(result, rationale=(*notes, *result.rationale))


def apply_guardrails(
    tx: NormalizedTransaction, result: CategorizationResult, ctx: ExecutionContext
) -> tuple[CategorizationResult, tuple[GuardrailViolation, ...]]:
    violations = check_guardrails(tx, result, ctx)
    if not violations:
        return result, ()
    _logger.info(
        "guardrails:held tx_id=%s category_id=%s kinds=%s",
        tx.id,
        result.category_id,
        ",".join(v.kind for v in violations),
    )
    return hold_for_review(result, violations), violations


__all__ = [
    "GuardrailViolation",
    "ViolationKind",
    "apply_guardrails",
    "check_guardrails",
    "hold_for_review",
]
