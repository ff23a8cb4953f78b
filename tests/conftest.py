"""Pytest configuration and shared fixtures.

Every test gets its own file-backed SQLite database and a clean
``CATEGORIZER_*`` environment so configuration and rows never leak between
tests.
"""

from __future__ import annotations

import os
from collections.abc import Iterator
from pathlib import Path

import pytest
from db.client import dispose_engines, get_session
from sqlalchemy.orm import Session

from categorizer import pass2 as pass2_mod
from categorizer.models import ExecutionContext
from categorizer.settings import EngineSettings
from tests.helpers.db import ORG_A, bootstrap_sqlite_db, seed_test_categories


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Drop ambient configuration and make retry backoff instantaneous."""

    for key in list(os.environ):
        if key.startswith("CATEGORIZER_") or key == "DATABASE_URL":
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr(pass2_mod, "_sleep_backoff", lambda attempt_no: None)


@pytest.fixture
def database_url(tmp_path: Path) -> Iterator[str]:
    url = bootstrap_sqlite_db(tmp_path / "categorizer.sqlite3")
    yield url
    dispose_engines()


@pytest.fixture
def session(database_url: str) -> Iterator[Session]:
    s = get_session(database_url=database_url)
    try:
        seed_test_categories(s)
        yield s
    finally:
        s.rollback()
        s.close()


@pytest.fixture
def ctx(session: Session) -> ExecutionContext:
    return ExecutionContext(org_id=ORG_A, session=session, settings=EngineSettings())
