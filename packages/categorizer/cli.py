# ruff: noqa: I001
"""CLI for the ``categorizer`` package.

A thin Typer front-end over the engine. The root callback loads a local
``.env`` with ``python-dotenv`` (never overriding variables already set) and
configures logging once; every command opens one ``session_scope`` and builds
an :class:`~categorizer.models.ExecutionContext` for the given organization.
Business logic lives in the engine modules.
"""

from __future__ import annotations

import json
import sys
from datetime import date
from pathlib import Path
from typing import NoReturn

import typer
from dotenv import load_dotenv

from .logging_setup import configure_logging

app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help=(
        "Categorize transactions with learned rules and an LLM fallback, and work "
        "the review queue. Loads DATABASE_URL and OPENAI_API_KEY from a local .env."
    ),
)

DATABASE_URL_OPTION = typer.Option(None, help="Override DATABASE_URL (falls back to env var).")
ORG_ID_OPTION = typer.Option(..., "--org-id", help="Organization the command acts for.")


def _fail(message: str) -> NoReturn:
    print(f"Error: {message}", file=sys.stderr)
    raise typer.Exit(code=1)


def _fmt_conf(value: float | None) -> str:
    return "" if value is None else f"{value:.3f}"


@app.command("seed-categories")
def seed_categories_cmd(
    json_path: Path,
    *,
    org_id: str | None = typer.Option(None, help="Owner org; omit for global categories."),
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Seed a category tree (roots first, then children) from a JSON file."""

    from db.client import session_scope

    from .categories import seed_categories
    from .errors import CategorizerError

    try:
        with json_path.open("r", encoding="utf-8") as f:
            tree = json.load(f)
    except FileNotFoundError:
        _fail(f"File not found: {json_path}")
    except json.JSONDecodeError as e:
        _fail(f"Invalid JSON in {json_path}: {e}")
    if not isinstance(tree, list):
        _fail("Category file must contain a JSON array of category nodes")

    try:
        with session_scope(database_url=database_url) as session:
            written = seed_categories(session, tree, org_id=org_id)
    except CategorizerError as e:
        _fail(str(e))
    print(f"seeded\t{written}")


@app.command("mcc-rule")
def mcc_rule_cmd(
    mcc: str,
    category_id: str,
    *,
    org_id: str | None = typer.Option(None, help="Owner org; omit for a global mapping."),
    weight: int = typer.Option(1, min=1, help="Rule weight."),
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Create or replace a coarse MCC-only mapping."""

    from db.client import session_scope

    from .errors import CategorizerError
    from .rules import upsert_mcc_rule

    try:
        with session_scope(database_url=database_url) as session:
            rule_id, is_new = upsert_mcc_rule(session, org_id, mcc, category_id, weight)
    except CategorizerError as e:
        _fail(str(e))
    print(f"{'created' if is_new else 'updated'}\t{rule_id}")


@app.command("categorize")
def categorize_cmd(
    tx_ids: list[str],
    *,
    org_id: str = ORG_ID_OPTION,
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Categorize stored transactions and print one line per transaction."""

    from db.client import session_scope

    from .categorize import batch_categorize
    from .errors import CategorizerError
    from .models import ExecutionContext
    from .settings import load_settings

    try:
        settings = load_settings()
        with session_scope(database_url=database_url) as session:
            ctx = ExecutionContext(org_id=org_id, session=session, settings=settings)
            summary = batch_categorize(tx_ids, ctx)
    except CategorizerError as e:
        _fail(str(e))

    for outcome in summary.outcomes:
        print(
            f"{outcome.tx_id}\t{outcome.result.category_id or ''}\t"
            f"{_fmt_conf(outcome.result.confidence)}\t{outcome.engine}\t"
            f"{'review' if outcome.needs_review else 'applied'}"
        )
    for failure in summary.failures:
        print(f"{failure.tx_id}\tERROR\t{failure.error}", file=sys.stderr)
    print(
        f"total={summary.total} pass1_only={summary.pass1_only} llm_used={summary.llm_used} "
        f"needs_review={summary.needs_review} failed={summary.failed} "
        f"avg_confidence={summary.avg_confidence:.3f}"
    )
    if summary.failed:
        raise typer.Exit(code=1)


@app.command("review-queue")
def review_queue_cmd(
    *,
    org_id: str = ORG_ID_OPTION,
    all_items: bool = typer.Option(False, "--all", help="Include items not flagged for review."),
    min_confidence: float = typer.Option(0.0, help="Lower confidence bound."),
    max_confidence: float = typer.Option(1.0, help="Upper confidence bound."),
    date_from: str | None = typer.Option(None, help="Earliest date (YYYY-MM-DD)."),
    date_to: str | None = typer.Option(None, help="Latest date (YYYY-MM-DD)."),
    search: str | None = typer.Option(None, help="Substring of description or merchant."),
    cursor: str | None = typer.Option(None, help="Cursor from a previous page."),
    limit: int = typer.Option(100, help="Page size (1-1000)."),
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Print one page of the review queue as tab-separated rows."""

    from db.client import session_scope

    from .errors import CategorizerError
    from .models import ExecutionContext
    from .review_queue import read_review_queue

    try:
        flt = {
            "needs_review_only": not all_items,
            "min_confidence": min_confidence,
            "max_confidence": max_confidence,
            "date_from": date.fromisoformat(date_from) if date_from else None,
            "date_to": date.fromisoformat(date_to) if date_to else None,
            "search": search,
        }
    except ValueError as e:
        _fail(f"Invalid date: {e}")

    try:
        with session_scope(database_url=database_url) as session:
            ctx = ExecutionContext(org_id=org_id, session=session)
            page = read_review_queue(ctx, flt, cursor=cursor, limit=limit)
    except CategorizerError as e:
        _fail(str(e))

    for item in page.items:
        print(
            "\t".join(
                [
                    item.id,
                    item.date.isoformat(),
                    str(item.amount_cents),
                    item.description,
                    item.category_name or "",
                    _fmt_conf(item.confidence),
                    "; ".join(item.why),
                ]
            )
        )
    if page.next_cursor:
        print(f"next_cursor\t{page.next_cursor}")


@app.command("correct")
def correct_cmd(
    tx_id: str,
    category_id: str,
    *,
    org_id: str = ORG_ID_OPTION,
    user_id: str | None = typer.Option(None, help="Reviewer identifier for the audit trail."),
    rule: bool = typer.Option(True, "--rule/--no-rule", help="Learn a vendor rule."),
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Correct a transaction's category and reinforce the vendor rule."""

    from db.client import session_scope

    from .corrections import correct_transaction
    from .errors import CategorizerError
    from .models import ExecutionContext

    try:
        with session_scope(database_url=database_url) as session:
            ctx = ExecutionContext(
                org_id=org_id, session=session, decided_by=user_id or "user"
            )
            result = correct_transaction(
                ctx, tx_id, category_id, user_id=user_id, create_rule=rule
            )
    except CategorizerError as e:
        _fail(str(e))

    print(f"{result.tx_id}\t{result.old_category_id or ''}\t{result.new_category_id}")
    if result.rule is not None:
        print(result.rule.message)


@app.callback(invoke_without_command=True)
def _root(ctx: typer.Context) -> None:
    """Load ``.env`` from the working directory and configure logging."""

    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)
    configure_logging()

    if ctx.invoked_subcommand is None:
        typer.echo("No subcommand provided. Use --help to see available commands.")
        raise typer.Exit(1)


if __name__ == "__main__":  # pragma: no cover - exercised via console script
    app()
