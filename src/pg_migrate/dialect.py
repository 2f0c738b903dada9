"""SQL dialect abstraction for the migration ledger.

Provides a ``Dialect`` protocol and the two concrete backends the ledger
runs on. Ledger code asks the dialect for every engine-specific fragment
(placeholders, transaction begin, the exclusive lock, catalog lookups, DDL,
the live engine version) and never imports a driver itself.

Manifesto:
    The ledger protocol is the same state machine on every engine; only the
    way each engine spells "serializable", "exclusive lock" and "does this
    relation exist" differs.

    - **One interface:** Dialect protocol for all ledger SQL
    - **Zero coupling:** Ledger code never imports database drivers
    - **Auto-detection:** dialect_for_connection() picks the right dialect
    - **Testable:** SQLiteDialect for tests, PostgreSQLDialect for prod

Architecture::

    ┌──────────────────────────┬───────────────────────────────────────┐
    │ SQLiteDialect            │ PostgreSQLDialect                     │
    ├──────────────────────────┼───────────────────────────────────────┤
    │ ?, ?, ?                  │ %s, %s, %s                            │
    │ BEGIN EXCLUSIVE          │ BEGIN ISOLATION LEVEL SERIALIZABLE    │
    │ (database-wide lock)     │ LOCK TABLE ... IN ACCESS EXCLUSIVE    │
    │ busy timeout             │ SET LOCAL lock_timeout                │
    │ sqlite_master            │ pg_catalog.pg_class / pg_namespace    │
    │ sqlite_version()         │ version()                             │
    │ no namespaces            │ CREATE SCHEMA                         │
    └──────────────────────────┴───────────────────────────────────────┘

Guardrails:
    ❌ DON'T: Write backend-specific SQL in the ledger components
    ✅ DO: Add a Dialect method and implement it for both backends

Tags:
    dialect, sql, abstraction, portability, postgresql, sqlite, ledger
"""

from __future__ import annotations

import sqlite3
from typing import Any, Protocol, runtime_checkable

from pg_migrate.errors import (
    LockTimeoutError,
    MigrateError,
    SerializationConflictError,
)

# Transaction-scoped advisory lock key for provisioning ("pgmigrat" as int64).
PROVISIONING_LOCK_KEY = 0x70676D6967726174

_PG_LOCK_NOT_AVAILABLE = "55P03"
_PG_SERIALIZATION_FAILURE = "40001"
_PG_DEADLOCK_DETECTED = "40P01"


@runtime_checkable
class Dialect(Protocol):
    """SQL dialect contract for the ledger.

    Every method returns a SQL fragment or statement valid for the target
    engine, except ``execute_script`` and ``classify_error`` which act on a
    live connection or exception.
    """

    @property
    def name(self) -> str:
        """Human-readable dialect name (e.g. ``'sqlite'``)."""
        ...

    @property
    def has_namespaces(self) -> bool:
        """Whether the engine supports schema-qualified relation names."""
        ...

    # -- Placeholders ------------------------------------------------------

    def placeholder(self, index: int) -> str:
        ...

    def placeholders(self, count: int) -> str:
        ...

    # -- Transactions ------------------------------------------------------

    def begin_serializable(self) -> str:
        """Statement opening the strongest available isolation level."""
        ...

    def begin_provisioning(self) -> str:
        """Statement opening the short provisioning transaction."""
        ...

    def provisioning_lock(self) -> str | None:
        """Statement serializing concurrent provisioners, if one is needed."""
        ...

    def lock_timeout(self, milliseconds: int) -> str | None:
        """In-transaction statement bounding the wait for the exclusive lock."""
        ...

    def lock_table(self, relation: str) -> str | None:
        """Statement taking an exclusive lock on ``relation``, if needed."""
        ...

    # -- Catalog -----------------------------------------------------------

    def namespace_count(self, schema: str) -> tuple[str, tuple[Any, ...]]:
        """Query counting catalog entries for ``schema``."""
        ...

    def relation_count(self, relation: str, schema: str | None) -> tuple[str, tuple[Any, ...]]:
        """Query counting catalog entries for ``relation`` in ``schema``."""
        ...

    def database_version(self) -> str:
        """Query returning the engine version string."""
        ...

    # -- DDL / DML ---------------------------------------------------------

    def qualify(self, relation: str, schema: str | None) -> str:
        ...

    def create_namespace(self, schema: str) -> str:
        ...

    def auto_increment(self) -> str:
        ...

    def timestamp_default_now(self) -> str:
        ...

    def now(self) -> str:
        ...

    def insert_or_ignore(self, table: str, columns: list[str]) -> str:
        ...

    # -- Execution ---------------------------------------------------------

    def execute_script(self, conn: Any, script: str) -> None:
        """Execute a multi-statement SQL script inside the open transaction."""
        ...

    def classify_error(self, exc: BaseException) -> MigrateError | None:
        """Map a driver exception onto a ledger error, or ``None``."""
        ...


# =========================================================================
# Concrete Dialect Implementations
# =========================================================================


class SQLiteDialect:
    """SQLite dialect: ``?`` placeholders, database-wide exclusive lock.

    SQLite has no namespaces, so the ledger always uses unqualified names.
    ``BEGIN EXCLUSIVE`` both opens the transaction and takes the lock that
    serializes concurrent attempts; SQLite transactions are serializable.
    """

    @property
    def name(self) -> str:
        return "sqlite"

    @property
    def has_namespaces(self) -> bool:
        return False

    def placeholder(self, index: int) -> str:  # noqa: ARG002
        return "?"

    def placeholders(self, count: int) -> str:
        return ", ".join("?" for _ in range(count))

    def begin_serializable(self) -> str:
        return "BEGIN EXCLUSIVE"

    def begin_provisioning(self) -> str:
        return "BEGIN EXCLUSIVE"

    def provisioning_lock(self) -> str | None:
        return None

    def lock_timeout(self, milliseconds: int) -> str | None:  # noqa: ARG002
        # BEGIN EXCLUSIVE is the wait; it is bounded by the connection busy timeout
        return None

    def lock_table(self, relation: str) -> str | None:  # noqa: ARG002
        return None

    def namespace_count(self, schema: str) -> tuple[str, tuple[Any, ...]]:
        return ("SELECT count(*) FROM pragma_database_list WHERE name = ?", (schema,))

    def relation_count(self, relation: str, schema: str | None) -> tuple[str, tuple[Any, ...]]:  # noqa: ARG002
        return (
            "SELECT count(*) FROM sqlite_master WHERE type = 'table' AND name = ?",
            (relation,),
        )

    def database_version(self) -> str:
        return "SELECT 'SQLite ' || sqlite_version()"

    def qualify(self, relation: str, schema: str | None) -> str:  # noqa: ARG002
        return relation

    def create_namespace(self, schema: str) -> str:
        raise NotImplementedError("SQLite has no namespaces")

    def auto_increment(self) -> str:
        return "INTEGER PRIMARY KEY AUTOINCREMENT"

    def timestamp_default_now(self) -> str:
        return "DEFAULT CURRENT_TIMESTAMP"

    def now(self) -> str:
        return "CURRENT_TIMESTAMP"

    def insert_or_ignore(self, table: str, columns: list[str]) -> str:
        cols = ", ".join(columns)
        ph = self.placeholders(len(columns))
        return f"INSERT OR IGNORE INTO {table} ({cols}) VALUES ({ph})"

    def execute_script(self, conn: Any, script: str) -> None:
        # executescript() would COMMIT the open transaction first
        for statement in split_sqlite_script(script):
            conn.execute(statement)

    def classify_error(self, exc: BaseException) -> MigrateError | None:
        if isinstance(exc, sqlite3.OperationalError) and "locked" in str(exc):
            return LockTimeoutError(f"Ledger lock not acquired: {exc}", cause=exc)
        return None


class PostgreSQLDialect:
    """PostgreSQL dialect: ``%s`` placeholders (psycopg 3), table-level lock.

    Runs the ledger either schema-qualified (``pgmigrate.pg_migrations``) or
    unqualified (resolved through ``search_path``).
    """

    @property
    def name(self) -> str:
        return "postgresql"

    @property
    def has_namespaces(self) -> bool:
        return True

    def placeholder(self, index: int) -> str:  # noqa: ARG002
        return "%s"

    def placeholders(self, count: int) -> str:
        return ", ".join("%s" for _ in range(count))

    def begin_serializable(self) -> str:
        return "BEGIN ISOLATION LEVEL SERIALIZABLE"

    def begin_provisioning(self) -> str:
        return "BEGIN"

    def provisioning_lock(self) -> str | None:
        return f"SELECT pg_advisory_xact_lock({PROVISIONING_LOCK_KEY})"

    def lock_timeout(self, milliseconds: int) -> str | None:
        return f"SET LOCAL lock_timeout = '{int(milliseconds)}ms'"

    def lock_table(self, relation: str) -> str | None:
        return f"LOCK TABLE {relation} IN ACCESS EXCLUSIVE MODE"

    def namespace_count(self, schema: str) -> tuple[str, tuple[Any, ...]]:
        return ("SELECT count(*) FROM pg_catalog.pg_namespace WHERE nspname = %s", (schema,))

    def relation_count(self, relation: str, schema: str | None) -> tuple[str, tuple[Any, ...]]:
        return (
            "SELECT count(*) FROM pg_catalog.pg_class c "
            "JOIN pg_catalog.pg_namespace n ON n.oid = c.relnamespace "
            "WHERE c.relname = %s AND c.relkind IN ('r', 'p') "
            "AND n.nspname = COALESCE(%s, current_schema())",
            (relation, schema),
        )

    def database_version(self) -> str:
        return "SELECT version()"

    def qualify(self, relation: str, schema: str | None) -> str:
        if schema:
            return f"{schema}.{relation}"
        return relation

    def create_namespace(self, schema: str) -> str:
        return f"CREATE SCHEMA IF NOT EXISTS {schema}"

    def auto_increment(self) -> str:
        return "SERIAL PRIMARY KEY"

    def timestamp_default_now(self) -> str:
        return "DEFAULT NOW()"

    def now(self) -> str:
        return "NOW()"

    def insert_or_ignore(self, table: str, columns: list[str]) -> str:
        cols = ", ".join(columns)
        ph = self.placeholders(len(columns))
        return f"INSERT INTO {table} ({cols}) VALUES ({ph}) ON CONFLICT DO NOTHING"

    def execute_script(self, conn: Any, script: str) -> None:
        # No parameters: psycopg sends the whole script in one round trip
        conn.execute(script)

    def classify_error(self, exc: BaseException) -> MigrateError | None:
        sqlstate = getattr(exc, "sqlstate", None)
        if sqlstate == _PG_LOCK_NOT_AVAILABLE:
            return LockTimeoutError(f"Ledger lock not acquired: {exc}", cause=exc)
        if sqlstate in (_PG_SERIALIZATION_FAILURE, _PG_DEADLOCK_DETECTED):
            return SerializationConflictError(
                f"Concurrent migration attempt conflicted: {exc}", cause=exc
            )
        return None


def split_sqlite_script(script: str) -> list[str]:
    """Split a script into complete statements, respecting quotes and triggers."""
    statements: list[str] = []
    buffer = ""
    for piece in script.split(";"):
        buffer += piece + ";"
        if sqlite3.complete_statement(buffer):
            statement = buffer.strip()
            if statement.strip(";").strip():
                statements.append(statement)
            buffer = ""
    if buffer.strip(" \t\r\n;"):
        statements.append(buffer.strip())
    return statements


# =========================================================================
# Registry / Factory
# =========================================================================

_DIALECTS: dict[str, Dialect] = {
    "sqlite": SQLiteDialect(),
    "postgresql": PostgreSQLDialect(),
    "postgres": PostgreSQLDialect(),  # alias
}


def get_dialect(db_type: str) -> Dialect:
    """Get a dialect by database type name.

    Raises:
        ValueError: If ``db_type`` is not recognised.
    """
    key = db_type.lower()
    if key not in _DIALECTS:
        raise ValueError(
            f"Unknown dialect '{db_type}'. "
            f"Supported: {sorted(set(_DIALECTS) - {'postgres'})}"
        )
    return _DIALECTS[key]


def dialect_for_url(url: str) -> Dialect:
    """Pick the dialect from a database URL scheme."""
    scheme = url.split(":", 1)[0].split("+", 1)[0]
    return get_dialect(scheme)


def dialect_for_connection(conn: Any) -> Dialect:
    """Pick the dialect from a live DB-API connection."""
    if isinstance(conn, sqlite3.Connection):
        return get_dialect("sqlite")
    module = type(conn).__module__
    if module.startswith("psycopg"):
        return get_dialect("postgresql")
    raise ValueError(f"Cannot infer dialect for connection type {type(conn).__qualname__}")


__all__ = [
    "Dialect",
    "SQLiteDialect",
    "PostgreSQLDialect",
    "PROVISIONING_LOCK_KEY",
    "split_sqlite_script",
    "get_dialect",
    "dialect_for_url",
    "dialect_for_connection",
]
