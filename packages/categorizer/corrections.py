"""Human corrections: apply the chosen category and reinforce the vendor rule.

A correction is a ``manual`` decision with confidence 1.0 routed through the
same Decision Policy Engine as automated results, so it is audited the same
way. It additionally marks the transaction as reviewed, records a
``corrections`` audit row, and feeds the Rule Learner so the next transaction
from the same vendor is handled by Pass1.
"""

from __future__ import annotations

from collections.abc import Sequence

from sqlalchemy.exc import SQLAlchemyError

from .categories import resolve_category
from .decisions import decide_and_apply
from .errors import AuditWriteError, CategorizerError, ValidationError
from .logging_setup import get_logger
from .models import (
    BatchFailure,
    BatchOutcome,
    CategorizationResult,
    CorrectionResult,
    ExecutionContext,
    RuleUpsertResult,
)
from .persistence import (
    append_correction,
    ensure_same_org,
    get_transaction_row,
    to_normalized,
    update_transaction,
)
from .rules import learn_rule
from .vendors import vendor_key, vendor_source

_logger = get_logger("categorizer.corrections")

MAX_BULK_CORRECTIONS = 100


def correct_transaction(
    ctx: ExecutionContext,
    tx_id: str,
    new_category_id: str,
    *,
    user_id: str | None = None,
    create_rule: bool = True,
) -> CorrectionResult:
    """Correct ``tx_id`` to ``new_category_id``.

    Raises ``NotFoundError`` for an unknown transaction or category and
    ``AuthorizationError`` for a transaction of another organization; nothing
    is written in either case.
    """

    session = ctx.session
    row = get_transaction_row(session, tx_id)
    ensure_same_org(row, ctx.org_id)
    category = resolve_category(session, new_category_id, ctx.org_id)
    old_category_id = row.category_id
    tx = to_normalized(row)

    decide_and_apply(
        tx_id,
        CategorizationResult(
            category_id=category.id,
            confidence=1.0,
            rationale=("Manual correction",),
        ),
        "manual",
        ctx,
    )
    update_transaction(session, tx_id, {"reviewed": True})

    try:
        append_correction(
            session,
            tx_id=tx_id,
            org_id=ctx.org_id,
            old_category_id=old_category_id,
            new_category_id=category.id,
            user_id=user_id,
        )
    except AuditWriteError as e:
        _logger.warning("corrections:audit_write_failed tx_id=%s error=%s", tx_id, e)

    rule: RuleUpsertResult | None = None
    if create_rule and vendor_key(tx):
        rule = learn_rule(
            ctx,
            vendor_source(tx),
            category.id,
            mcc=tx.mcc,
            description=f"Learned from correction of {tx_id}",
        )

    _logger.info(
        "corrections:applied tx_id=%s old=%s new=%s rule=%s",
        tx_id,
        old_category_id or "-",
        category.id,
        rule.rule_id if rule else "-",
    )
    return CorrectionResult(
        tx_id=tx_id,
        old_category_id=old_category_id,
        new_category_id=category.id,
        rule=rule,
    )


def bulk_correct(
    ctx: ExecutionContext,
    tx_ids: Sequence[str],
    new_category_id: str,
    *,
    user_id: str | None = None,
    create_rule: bool = True,
) -> BatchOutcome:
    """Correct up to :data:`MAX_BULK_CORRECTIONS` transactions independently."""

    if not tx_ids:
        raise ValidationError("tx_ids must not be empty")
    if len(tx_ids) > MAX_BULK_CORRECTIONS:
        raise ValidationError(
            f"At most {MAX_BULK_CORRECTIONS} transactions can be corrected at once"
        )

    successful = 0
    failed: list[BatchFailure] = []
    for index, tx_id in enumerate(tx_ids):
        try:
            with ctx.session.begin_nested():
                correct_transaction(
                    ctx, tx_id, new_category_id, user_id=user_id, create_rule=create_rule
                )
        except (CategorizerError, SQLAlchemyError) as e:
            failed.append(BatchFailure(index=index, tx_id=tx_id, error=str(e)))
            _logger.warning(
                "corrections:bulk_item_failed index=%d tx_id=%s error=%s",
                index,
                tx_id,
                e.__class__.__name__,
            )
            continue
        successful += 1
    return BatchOutcome(successful_count=successful, failed=tuple(failed))


__all__ = ["MAX_BULK_CORRECTIONS", "bulk_correct", "correct_transaction"]
