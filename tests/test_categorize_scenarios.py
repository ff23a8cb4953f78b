"""End-to-end categorization flows against a real (SQLite) database.

The model provider is scripted; everything else (rules, decisions, review
queue, corrections) runs for real.
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from categorizer.categorize import (
    batch_categorize,
    categorize_transaction,
    categorize_transaction_by_id,
)
from categorizer.corrections import correct_transaction
from categorizer.models import ExecutionContext
from categorizer.pass2 import Pass2Scorer
from categorizer.review_queue import read_review_queue
from categorizer.rules import insert_rule, upsert_mcc_rule
from categorizer.settings import EngineSettings
from db.models.ledger import CategoryDecision, CategoryRule, LedgerTransaction
from tests.helpers.db import ORG_A, ORG_B, make_tx, stage
from tests.helpers.model_stub import HttpError, StubProvider, reply


def _scorer(ctx: ExecutionContext, script: list[str | BaseException]):
    provider = StubProvider(script)
    return Pass2Scorer(provider, settings=ctx.settings), provider


def _tx_state(session: Session, tx_id: str):
    return session.execute(
        select(
            LedgerTransaction.category_id,
            LedgerTransaction.confidence,
            LedgerTransaction.needs_review,
        ).where(LedgerTransaction.id == tx_id)
    ).one()


def _decision_sources(session: Session, tx_id: str) -> list[str]:
    return list(
        session.execute(
            select(CategoryDecision.source)
            .where(CategoryDecision.tx_id == tx_id)
            .order_by(CategoryDecision.id)
        )
        .scalars()
        .all()
    )


# ---- Specified scenarios -------------------------------------------------------


def test_scenario_a_model_categorizes_unknown_vendor(
    session: Session, ctx: ExecutionContext
) -> None:
    tx = make_tx("tx_a", description="STARBUCKS #1234", amount_cents=-450, mcc="5814")
    stage(session, [tx])
    scorer, provider = _scorer(ctx, [reply("cat_food_beverage", 0.90, "Coffee shop purchase")])

    outcome = categorize_transaction(tx, ctx, scorer=scorer)

    assert outcome.engine == "llm"
    assert outcome.llm_attempted
    assert not outcome.needs_review
    assert outcome.audit_written
    assert outcome.pass2_ms is not None
    assert tuple(_tx_state(session, "tx_a")) == ("cat_food_beverage", 0.9, False)
    assert _decision_sources(session, "tx_a") == ["llm"]
    assert "Hints from deterministic rules" in provider.calls[0]["prompt"]
    assert "No matching rule" in provider.calls[0]["prompt"]


def test_scenario_b_low_confidence_lands_in_review_queue(
    session: Session, ctx: ExecutionContext
) -> None:
    stage(session, [make_tx("tx_b")])
    scorer, _ = _scorer(ctx, [reply("cat_food_beverage", 0.50, "Possibly coffee")])

    outcome = categorize_transaction_by_id("tx_b", ctx, scorer=scorer)

    assert outcome.needs_review
    assert tuple(_tx_state(session, "tx_b")) == ("cat_food_beverage", 0.5, True)
    page = read_review_queue(ctx, {"needs_review_only": True})
    (item,) = page.items
    assert item.id == "tx_b"
    assert item.why == ("Possibly coffee",)
    assert item.decision_source == "llm"


def test_scenario_c_corrections_teach_pass1(session: Session, ctx: ExecutionContext) -> None:
    stage(session, [make_tx("tx_b"), make_tx("tx_b2", description="STARBUCKS #1234")])
    scorer, _ = _scorer(ctx, [reply("cat_food_beverage", 0.50, "Possibly coffee")])
    categorize_transaction_by_id("tx_b", ctx, scorer=scorer)

    first = correct_transaction(ctx, "tx_b", "cat_meals")
    assert first.rule is not None and first.rule.is_new
    second = correct_transaction(ctx, "tx_b2", "cat_meals")
    assert second.rule is not None and not second.rule.is_new

    rules = session.execute(
        select(CategoryRule.vendor, CategoryRule.category_id, CategoryRule.weight)
    )
    assert [tuple(r) for r in rules] == [("starbucks", "cat_meals", 2)]

    # The next Starbucks charge is resolved by the learned rule alone.
    stage(session, [make_tx("tx_next", description="STARBUCKS #5678")])
    idle, provider = _scorer(ctx, [])
    outcome = categorize_transaction_by_id("tx_next", ctx, scorer=idle)
    assert outcome.engine == "pass1"
    assert not outcome.llm_attempted
    assert not outcome.needs_review
    assert provider.calls == []
    assert _tx_state(session, "tx_next").category_id == "cat_meals"


# ---- Pass1 / Pass2 interplay -----------------------------------------------------


def test_confident_rule_skips_the_model(session: Session, ctx: ExecutionContext) -> None:
    insert_rule(session, org_id=ORG_A, vendor="starbucks", mcc="5814", category_id="cat_meals")
    stage(session, [make_tx("t1")])
    scorer, provider = _scorer(ctx, [])

    outcome = categorize_transaction_by_id("t1", ctx, scorer=scorer)

    assert (outcome.engine, outcome.llm_attempted, outcome.pass2_ms) == ("pass1", False, None)
    assert outcome.result.confidence == 0.9
    assert provider.calls == []
    assert _decision_sources(session, "t1") == ["pass1"]


def test_weak_rule_kept_when_model_is_less_confident(
    session: Session, ctx: ExecutionContext
) -> None:
    upsert_mcc_rule(session, None, "5814", "cat_meals")
    stage(session, [make_tx("t1", description="Corner Diner")])
    scorer, provider = _scorer(ctx, [reply("cat_food_beverage", 0.40)])

    outcome = categorize_transaction_by_id("t1", ctx, scorer=scorer)

    assert outcome.engine == "pass1"
    assert outcome.llm_attempted
    assert outcome.result.category_id == "cat_meals"
    assert outcome.needs_review
    assert len(provider.calls) == 1
    assert "Rule suggestion: cat_meals" in provider.calls[0]["prompt"]


def test_model_wins_when_more_confident(session: Session, ctx: ExecutionContext) -> None:
    upsert_mcc_rule(session, None, "5814", "cat_meals")
    stage(session, [make_tx("t1", description="Corner Diner")])
    scorer, _ = _scorer(ctx, [reply("cat_food_beverage", 0.93, "Diner")])

    outcome = categorize_transaction_by_id("t1", ctx, scorer=scorer)

    assert outcome.engine == "llm"
    assert not outcome.needs_review
    assert _tx_state(session, "t1").category_id == "cat_food_beverage"


def test_model_failure_falls_back_to_rule(session: Session, ctx: ExecutionContext) -> None:
    upsert_mcc_rule(session, None, "5814", "cat_meals")
    stage(session, [make_tx("t1", description="Corner Diner")])
    scorer, provider = _scorer(ctx, [TimeoutError("slow"), HttpError(503)])

    outcome = categorize_transaction_by_id("t1", ctx, scorer=scorer)

    assert len(provider.calls) == 2
    assert outcome.engine == "pass1"
    assert outcome.result.category_id == "cat_meals"
    assert outcome.result.rationale[-1].startswith("Model categorization failed:")
    assert outcome.needs_review
    assert _decision_sources(session, "t1") == ["pass1"]


def test_model_failure_without_rule_goes_to_review(
    session: Session, ctx: ExecutionContext
) -> None:
    stage(session, [make_tx("t1")])
    scorer, _ = _scorer(ctx, [HttpError(400)])

    outcome = categorize_transaction_by_id("t1", ctx, scorer=scorer)

    assert outcome.result.category_id is None
    assert outcome.result.rationale[0] == "Pass1 found no match"
    assert outcome.needs_review
    assert tuple(_tx_state(session, "t1")) == (None, 0.0, True)
    assert _decision_sources(session, "t1") == ["llm"]


def test_unparseable_model_output_goes_to_review(session: Session, ctx: ExecutionContext) -> None:
    stage(session, [make_tx("t1")])
    scorer, _ = _scorer(ctx, [reply("cat_invented", 0.99)])

    outcome = categorize_transaction_by_id("t1", ctx, scorer=scorer)

    assert outcome.result.category_id is None
    assert outcome.needs_review


def test_model_can_be_disabled(session: Session) -> None:
    ctx = ExecutionContext(
        org_id=ORG_A, session=session, settings=EngineSettings(llm_enabled=False)
    )
    stage(session, [make_tx("t1")])
    scorer, provider = _scorer(ctx, [])

    outcome = categorize_transaction_by_id("t1", ctx, scorer=scorer)

    assert not outcome.llm_attempted
    assert outcome.needs_review
    assert provider.calls == []


# ---- Batch ---------------------------------------------------------------------------


def test_batch_summary_and_isolated_failures(session: Session, ctx: ExecutionContext) -> None:
    insert_rule(session, org_id=ORG_A, vendor="starbucks", mcc="5814", category_id="cat_meals")
    stage(
        session,
        [
            make_tx("t1"),
            make_tx("t2", description="NOTION LABS", mcc="5734"),
            make_tx("t3", description="MYSTERY CHARGE", mcc=None),
            make_tx("tb", org_id=ORG_B),
        ],
    )
    scorer, _ = _scorer(
        ctx,
        [reply("cat_software", 0.93, "Workspace SaaS"), reply("cat_meals", 0.40, "Unclear")],
    )

    summary = batch_categorize(["t1", "t2", "missing", "t3", "tb"], ctx, scorer=scorer)

    assert summary.total == 5
    assert summary.failed == 2
    assert [(f.index, f.tx_id) for f in summary.failures] == [(2, "missing"), (4, "tb")]
    assert summary.pass1_only == 1
    assert summary.llm_used == 2
    assert summary.needs_review == 1
    assert summary.avg_confidence == 0.743
    assert [o.tx_id for o in summary.outcomes] == ["t1", "t2", "t3"]
    assert _tx_state(session, "tb").category_id is None
