"""Decision Policy Engine.

``decide_and_apply`` turns one categorization result into a transaction state
change plus an audit row:

- ``confidence >= threshold`` with a category: auto-apply
  (``needs_review=False``)
- anything else, or ``force_review`` (a guardrail held it): ``needs_review=True``;
  category/confidence are still recorded so reviewers have context

Organization ownership is checked before any write. The Decision row is
appended after the mutation inside its own savepoint; if that append fails the
mutation stands and the failure is only logged.
"""

from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy.exc import SQLAlchemyError

from .categories import resolve_category
from .errors import AuditWriteError, CategorizerError
from .logging_setup import get_logger
from .models import (
    AppliedDecision,
    BatchFailure,
    BatchOutcome,
    CategorizationResult,
    DecisionSource,
    ExecutionContext,
)
from .persistence import append_decision, ensure_same_org, get_transaction_row, update_transaction

_logger = get_logger("categorizer.decisions")


def should_auto_apply(result: CategorizationResult, threshold: float) -> bool:
    return result.category_id is not None and result.confidence >= threshold


def decide_and_apply(
    tx_id: str,
    result: CategorizationResult,
    source: DecisionSource,
    ctx: ExecutionContext,
    *,
    force_review: bool = False,
) -> AppliedDecision:
    """Apply ``result`` to transaction ``tx_id`` and append a Decision row.

    Raises
    ------
    NotFoundError
        The transaction does not exist, or the result's category is not
        visible to ``ctx.org_id``.
    AuthorizationError
        The transaction belongs to another organization. Nothing is written.
    """

    session = ctx.session
    row = get_transaction_row(session, tx_id)
    ensure_same_org(row, ctx.org_id)
    if result.category_id is not None:
        resolve_category(session, result.category_id, ctx.org_id)

    auto = not force_review and should_auto_apply(result, ctx.settings.auto_apply_threshold)
    update_transaction(
        session,
        tx_id,
        {
            "category_id": result.category_id,
            "confidence": float(result.confidence),
            "needs_review": not auto,
            # Auto-applied results are never marked reviewed; only a human
            # correction sets this flag.
            "reviewed": False,
        },
    )
    session.flush()
    _logger.info(
        "decisions:%s tx_id=%s source=%s category_id=%s confidence=%.3f",
        "auto_applied" if auto else "needs_review",
        tx_id,
        source,
        result.category_id or "-",
        result.confidence,
    )

    audit_written = True
    try:
        append_decision(
            session,
            tx_id=tx_id,
            org_id=ctx.org_id,
            source=source,
            result=result,
            decided_by=ctx.decided_by,
        )
    except AuditWriteError as e:
        audit_written = False
        _logger.warning("decisions:audit_write_failed tx_id=%s error=%s", tx_id, e)

    return AppliedDecision(tx_id=tx_id, needs_review=not auto, audit_written=audit_written)


def batch_decide_and_apply(
    items: Iterable[tuple[str, CategorizationResult, DecisionSource]],
    ctx: ExecutionContext,
) -> BatchOutcome:
    """Apply each ``(tx_id, result, source)`` independently.

    Every item runs in its own savepoint; a failing item is rolled back alone
    and reported in ``failed`` while later items still run.
    """

    successful = 0
    failed: list[BatchFailure] = []
    for index, (tx_id, result, source) in enumerate(items):
        try:
            with ctx.session.begin_nested():
                decide_and_apply(tx_id, result, source, ctx)
        except (CategorizerError, SQLAlchemyError) as e:
            failed.append(BatchFailure(index=index, tx_id=tx_id, error=str(e)))
            _logger.warning(
                "decisions:batch_item_failed index=%d tx_id=%s error=%s",
                index,
                tx_id,
                e.__class__.__name__,
            )
            continue
        successful += 1

    _logger.info("decisions:batch_done successful=%d failed=%d", successful, len(failed))
    return BatchOutcome(successful_count=successful, failed=tuple(failed))


__all__ = ["batch_decide_and_apply", "decide_and_apply", "should_auto_apply"]
