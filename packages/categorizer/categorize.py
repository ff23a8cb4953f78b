"""Hybrid categorization: Pass1 rules first, the model only when needed.

Public API:
    - :func:`categorize_transaction`
    - :func:`categorize_transaction_by_id`
    - :func:`batch_categorize`

Flow for one transaction:

1. Pass1. A category at or above the auto-apply threshold is applied directly.
2. Otherwise Pass2 (when enabled). Its result is applied when Pass1 found
   nothing or the model is more confident; otherwise Pass1 is applied.
3. If the model call fails, the Pass1 result (when it has a category) is
   applied instead; with nothing to fall back to, the transaction goes to
   review with zero confidence and a rationale naming the failure.
4. A result about to be auto-applied passes the guardrails first; any
   violation sends it to review with the reasons in its rationale.

Exactly one decision is applied per call, so every attempt leaves exactly one
Decision row.
"""

from __future__ import annotations

import time
from collections.abc import Iterable

from sqlalchemy.exc import SQLAlchemyError

from .categories import list_visible_categories
from .decisions import decide_and_apply, should_auto_apply
from .errors import CategorizerError, ExternalServiceError
from .guardrails import GuardrailViolation, apply_guardrails
from .logging_setup import get_logger
from .models import (
    BatchCategorizeSummary,
    BatchFailure,
    CategorizationOutcome,
    CategorizationResult,
    DecisionSource,
    ExecutionContext,
    NormalizedTransaction,
)
from .pass1 import run_pass1
from .pass2 import Pass2Scorer
from .persistence import load_transaction

_logger = get_logger("categorizer.categorize")


def _fallback_after_model_failure(
    pass1: CategorizationResult, error: ExternalServiceError
) -> CategorizationResult:
    if pass1.category_id is not None:
        return CategorizationResult(
            category_id=pass1.category_id,
            confidence=pass1.confidence,
            rationale=(*pass1.rationale, f"Model categorization failed: {error}"),
        )
    return CategorizationResult.no_match(
        "Pass1 found no match",
        f"Model categorization failed: {error}",
    )


def categorize_transaction(
    tx: NormalizedTransaction,
    ctx: ExecutionContext,
    *,
    scorer: Pass2Scorer | None = None,
) -> CategorizationOutcome:
    """Categorize one transaction and apply the decision.

    ``scorer`` defaults to an OpenAI-backed :class:`Pass2Scorer` built from
    ``ctx.settings`` and is only created when Pass2 actually runs.
    """

    t_start = time.perf_counter()
    pass1 = run_pass1(tx, ctx)
    pass1_ms = (time.perf_counter() - t_start) * 1000.0

    chosen: CategorizationResult = pass1
    engine: DecisionSource = "pass1"
    llm_attempted = False
    pass2_ms: float | None = None

    threshold = ctx.settings.auto_apply_threshold
    if not should_auto_apply(pass1, threshold) and ctx.settings.llm_enabled:
        llm_attempted = True
        active = scorer or Pass2Scorer(settings=ctx.settings)
        t_llm = time.perf_counter()
        try:
            pass2 = active.score(
                tx,
                pass1=pass1,
                categories=list_visible_categories(ctx.session, ctx.org_id),
            )
        except ExternalServiceError as e:
            _logger.warning("categorize:llm_fallback tx_id=%s error=%s", tx.id, e)
            chosen = _fallback_after_model_failure(pass1, e)
            engine = "pass1" if pass1.category_id is not None else "llm"
        else:
            if pass1.category_id is None or pass2.confidence > pass1.confidence:
                chosen, engine = pass2, "llm"
        pass2_ms = (time.perf_counter() - t_llm) * 1000.0

    violations: tuple[GuardrailViolation, ...] = ()
    if should_auto_apply(chosen, threshold):
        chosen, violations = apply_guardrails(tx, chosen, ctx)

    applied = decide_and_apply(tx.id, chosen, engine, ctx, force_review=bool(violations))
    total_ms = (time.perf_counter() - t_start) * 1000.0
    _logger.info(
        "categorize:done tx_id=%s engine=%s llm_attempted=%s needs_review=%s total_ms=%.2f",
        tx.id,
        engine,
        llm_attempted,
        applied.needs_review,
        total_ms,
    )
    return CategorizationOutcome(
        tx_id=tx.id,
        result=chosen,
        engine=engine,
        llm_attempted=llm_attempted,
        needs_review=applied.needs_review,
        audit_written=applied.audit_written,
        pass1_ms=pass1_ms,
        pass2_ms=pass2_ms,
        total_ms=total_ms,
        guardrails=tuple(v.kind for v in violations),
    )


def categorize_transaction_by_id(
    tx_id: str,
    ctx: ExecutionContext,
    *,
    scorer: Pass2Scorer | None = None,
) -> CategorizationOutcome:
    tx = load_transaction(ctx.session, tx_id, org_id=ctx.org_id)
    return categorize_transaction(tx, ctx, scorer=scorer)


def batch_categorize(
    tx_ids: Iterable[str],
    ctx: ExecutionContext,
    *,
    scorer: Pass2Scorer | None = None,
) -> BatchCategorizeSummary:
    """Categorize many transactions; each one succeeds or fails on its own."""

    active = scorer
    if active is None and ctx.settings.llm_enabled:
        active = Pass2Scorer(settings=ctx.settings)

    outcomes: list[CategorizationOutcome] = []
    failures: list[BatchFailure] = []
    for index, tx_id in enumerate(tx_ids):
        try:
            with ctx.session.begin_nested():
                outcomes.append(categorize_transaction_by_id(tx_id, ctx, scorer=active))
        except (CategorizerError, SQLAlchemyError) as e:
            failures.append(BatchFailure(index=index, tx_id=tx_id, error=str(e)))
            _logger.warning(
                "categorize:batch_item_failed index=%d tx_id=%s error=%s",
                index,
                tx_id,
                e.__class__.__name__,
            )

    avg = sum(o.result.confidence for o in outcomes) / len(outcomes) if outcomes else 0.0
    summary = BatchCategorizeSummary(
        total=len(outcomes) + len(failures),
        pass1_only=sum(1 for o in outcomes if not o.llm_attempted),
        llm_used=sum(1 for o in outcomes if o.engine == "llm"),
        needs_review=sum(1 for o in outcomes if o.needs_review),
        failed=len(failures),
        avg_confidence=round(avg, 3),
        failures=tuple(failures),
        outcomes=tuple(outcomes),
    )
    _logger.info(
        "categorize:batch_done total=%d pass1_only=%d llm_used=%d needs_review=%d failed=%d",
        summary.total,
        summary.pass1_only,
        summary.llm_used,
        summary.needs_review,
        summary.failed,
    )
    return summary


__all__ = ["batch_categorize", "categorize_transaction", "categorize_transaction_by_id"]
