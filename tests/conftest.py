"""
Shared pytest fixtures for pg-migrate tests.

This module provides:
- SQLite ledger databases in a per-test temporary directory
- A provisioned ApplicationProtocol bound to that database
- Settings cache isolation

Usage:
    Fixtures are auto-discovered by pytest.

    def test_something(protocol, ledger_rows):
        protocol.apply(Migration("0000_init", 0, "CREATE TABLE t (id INTEGER)"))
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

import pytest

from pg_migrate.database import connect_sqlite
from pg_migrate.ledger import LedgerRepository
from pg_migrate.models import Migration, ProvenanceTuple
from pg_migrate.protocol import ApplicationProtocol
from pg_migrate.settings import get_settings


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Mark tests without explicit markers as unit tests."""
    for item in items:
        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration", "postgres"}):
            item.add_marker(pytest.mark.unit)


@pytest.fixture(autouse=True)
def _fresh_settings():
    """Drop cached settings so env changes in one test never leak."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "ledger.db")


@pytest.fixture
def conn(db_path: str):
    """Autocommit SQLite connection to a fresh database file."""
    c = connect_sqlite(db_path)
    yield c
    c.close()


@pytest.fixture
def provenance() -> ProvenanceTuple:
    return ProvenanceTuple(
        template_version="tmpl-1.0",
        builder_version="build-2.1",
        migrator_version="0.3.0",
    )


@pytest.fixture
def protocol(conn, provenance: ProvenanceTuple) -> ApplicationProtocol:
    """Protocol with the ledger already provisioned."""
    p = ApplicationProtocol(conn, provenance=provenance)
    p.ensure_ledger()
    return p


@pytest.fixture
def ledger(protocol: ApplicationProtocol) -> LedgerRepository:
    return protocol.ledger


@pytest.fixture
def make_migration() -> Callable[..., Migration]:
    """Build a migration that creates one table named after its ordinal."""

    def _make(ordinal: int, name: str | None = None, body: Any = None) -> Migration:
        name = name or f"{ordinal:04d}_create_t{ordinal}"
        if body is None:
            body = f"CREATE TABLE t{ordinal} (id INTEGER PRIMARY KEY, label TEXT);"
        return Migration(name, ordinal, body)

    return _make


def table_exists(conn, table: str) -> bool:
    row = conn.execute(
        "SELECT count(*) FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
    ).fetchone()
    return row[0] == 1
