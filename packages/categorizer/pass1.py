"""Pass1: deterministic rule matching.

The matcher performs one rule query and then ranks candidates in memory:

1. specificity: ``(vendor, mcc)`` > ``(vendor)`` > MCC-only
2. org-scoped rules before global fallback rules
3. higher weight first
4. lower rule id first (stable tiebreak)

Confidence depends only on the winning rule's specificity, scope, and weight,
so identical input and rule sets always produce identical output. It is
capped below 1.0; only an explicit correction reaches 1.0.
"""

from __future__ import annotations

import time
from collections.abc import Iterable
from dataclasses import dataclass

from .logging_setup import get_logger
from .models import CategorizationResult, ExecutionContext, NormalizedTransaction
from .rules import load_candidate_rules, mcc_key
from .vendors import vendor_key

_logger = get_logger("categorizer.pass1")

# ---- Tunables (private) ------------------------------------------------------

SPECIFICITY_VENDOR_MCC = 2
SPECIFICITY_VENDOR = 1
SPECIFICITY_MCC_ONLY = 0

_BASE_CONFIDENCE: dict[int, float] = {
    SPECIFICITY_VENDOR_MCC: 0.90,
    SPECIFICITY_VENDOR: 0.85,
    SPECIFICITY_MCC_ONLY: 0.60,
}
_GLOBAL_PENALTY: float = 0.05
_WEIGHT_BONUS_STEP: float = 0.01
# Kept below the gap between adjacent specificity levels so weight never lets
# a less specific rule out-score a more specific one.
_WEIGHT_BONUS_MAX: float = 0.04
CONFIDENCE_CAP: float = 0.98


@dataclass(frozen=True, slots=True)
class RuleCandidate:
    id: int
    org_id: str | None
    vendor: str
    mcc: str
    category_id: str
    weight: int

    @property
    def specificity(self) -> int:
        if self.vendor and self.mcc:
            return SPECIFICITY_VENDOR_MCC
        if self.vendor:
            return SPECIFICITY_VENDOR
        return SPECIFICITY_MCC_ONLY

    @property
    def is_global(self) -> bool:
        return self.org_id is None


def rule_confidence(specificity: int, *, is_global: bool, weight: int) -> float:
    """Monotonic in specificity; reinforced by weight; capped below 1.0."""

    score = _BASE_CONFIDENCE[specificity]
    if is_global:
        score -= _GLOBAL_PENALTY
    score += min(_WEIGHT_BONUS_MAX, _WEIGHT_BONUS_STEP * max(0, weight - 1))
    return round(min(score, CONFIDENCE_CAP), 3)


def _applies(rule: RuleCandidate, vendor: str, mcc: str) -> bool:
    if rule.vendor and rule.vendor != vendor:
        return False
    if rule.mcc and rule.mcc != mcc:
        return False
    return bool(rule.vendor or rule.mcc)


def _rank_key(rule: RuleCandidate) -> tuple[int, int, int, int]:
    return (-rule.specificity, 1 if rule.is_global else 0, -rule.weight, rule.id)


def match_rules(tx: NormalizedTransaction, rules: Iterable[RuleCandidate]) -> CategorizationResult:
    """Pick the best rule for ``tx`` among ``rules`` (pure; no I/O)."""

    vendor = vendor_key(tx)
    mcc = mcc_key(tx.mcc)
    applicable = sorted((r for r in rules if _applies(r, vendor, mcc)), key=_rank_key)
    if not applicable:
        return CategorizationResult.no_match("No matching rule")

    best = applicable[0]
    reasons: list[str] = []
    if best.vendor:
        reasons.append(f"Matched vendor rule '{best.vendor}'")
        if best.mcc:
            reasons.append(f"MCC {best.mcc} matched")
    else:
        reasons.append(f"Matched MCC {best.mcc} mapping")
    if best.is_global:
        reasons.append("Global fallback rule")
    reasons.append(f"Rule weight {best.weight}")

    return CategorizationResult(
        category_id=best.category_id,
        confidence=rule_confidence(best.specificity, is_global=best.is_global, weight=best.weight),
        rationale=tuple(reasons),
    )


def run_pass1(tx: NormalizedTransaction, ctx: ExecutionContext) -> CategorizationResult:
    """Load candidate rules for ``tx`` in one query and match them."""

    t0 = time.perf_counter()
    vendor = vendor_key(tx)
    rows = load_candidate_rules(ctx.session, ctx.org_id, vendor, tx.mcc)
    candidates = [
        RuleCandidate(
            id=int(r.id),
            org_id=r.org_id,
            vendor=r.vendor,
            mcc=r.mcc,
            category_id=r.category_id,
            weight=int(r.weight),
        )
        for r in rows
    ]
    result = match_rules(tx, candidates)
    dt_ms = (time.perf_counter() - t0) * 1000.0
    if result.category_id is None:
        _logger.info(
            "pass1:miss tx_id=%s vendor=%r mcc=%s candidates=%d latency_ms=%.2f",
            tx.id,
            vendor,
            mcc_key(tx.mcc) or "-",
            len(candidates),
            dt_ms,
        )
    else:
        _logger.info(
            "pass1:match tx_id=%s category_id=%s confidence=%.3f latency_ms=%.2f",
            tx.id,
            result.category_id,
            result.confidence,
            dt_ms,
        )
    return result


__all__ = ["CONFIDENCE_CAP", "RuleCandidate", "match_rules", "rule_confidence", "run_pass1"]
