# ruff: noqa: I001
"""Migration environment for the ledger schema (categories, rules, decisions).

``DATABASE_URL`` wins over ``sqlalchemy.url`` in alembic.ini; a ``.env`` found
from the working directory fills it in without overriding the real
environment. SQLite targets (local runs and tests) migrate in batch mode.
"""

from __future__ import annotations

import os
from logging.config import fileConfig

from alembic import context
from dotenv import find_dotenv, load_dotenv
from sqlalchemy import engine_from_config, pool

import db

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = db.metadata


def _resolve_url() -> str:
    env_file = find_dotenv(usecwd=True)
    if env_file:
        load_dotenv(dotenv_path=env_file, override=False)
    url = os.getenv("DATABASE_URL") or config.get_main_option("sqlalchemy.url")
    if not url:
        raise RuntimeError("No ledger database configured: set DATABASE_URL or sqlalchemy.url")
    config.set_main_option("sqlalchemy.url", url)
    return url


def _context_options(url: str) -> dict[str, object]:
    return {
        "target_metadata": target_metadata,
        "compare_type": True,
        "render_as_batch": url.startswith("sqlite"),
    }


def migrate_offline(url: str) -> None:
    """Emit SQL to stdout instead of connecting."""
    context.configure(url=url, literal_binds=True, **_context_options(url))
    with context.begin_transaction():
        context.run_migrations()


def migrate_online(url: str) -> None:
    ini_section = dict(config.get_section(config.config_ini_section) or {})
    ini_section["sqlalchemy.url"] = url
    engine = engine_from_config(ini_section, prefix="sqlalchemy.", poolclass=pool.NullPool)
    with engine.connect() as connection:
        context.configure(connection=connection, **_context_options(url))
        with context.begin_transaction():
            context.run_migrations()


_url = _resolve_url()
if context.is_offline_mode():
    migrate_offline(_url)
else:
    migrate_online(_url)
