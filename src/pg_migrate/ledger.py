"""Ledger repository - the only SQL that touches the ledger relations.

Two relations make up the ledger:

``pg_migrate``
    One row per distinct provenance tuple (template, builder, migrator and
    database version). Unique on the four version columns.

``pg_migrations``
    One row per applied migration, append-only, referencing the run row
    that produced it.

Every lookup used for a decision is an explicit count or collection query;
callers branch on 0 / 1 / >1 themselves.
"""

from __future__ import annotations

import re
from typing import Any

from pg_migrate.dialect import Dialect, dialect_for_connection
from pg_migrate.errors import ConfigError
from pg_migrate.models import MigrationRecord, MigrationRun

DEFAULT_SCHEMA = "pgmigrate"
RUNS_TABLE = "pg_migrate"
RECORDS_TABLE = "pg_migrations"

RUN_VERSION_COLUMNS = ["template_version", "builder_version", "migrator_version", "database_version"]
DATABASE_VERSION_MAX_LENGTH = 1024

# Lower case only: PostgreSQL folds unquoted identifiers before the catalog sees them
_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]{0,62}$")


class LedgerRepository:
    """Reads and writes the ledger on one connection.

    All methods run inside whatever transaction the caller has open; none of
    them commit.
    """

    def __init__(self, conn: Any, dialect: Dialect | None = None, schema: str | None = DEFAULT_SCHEMA):
        self.conn = conn
        self.dialect = dialect or dialect_for_connection(conn)
        if schema is not None and not _IDENTIFIER.match(schema):
            raise ConfigError(f"Invalid ledger schema name: {schema!r}")
        self.schema = schema if self.dialect.has_namespaces else None
        self.runs_table = self.dialect.qualify(RUNS_TABLE, self.schema)
        self.records_table = self.dialect.qualify(RECORDS_TABLE, self.schema)

    def _ph(self, count: int = 1) -> str:
        return self.dialect.placeholders(count)

    def _scalar(self, sql: str, params: tuple[Any, ...] = ()) -> Any:
        row = self.conn.execute(sql, params).fetchone()
        return row[0] if row else None

    # -- Catalog -----------------------------------------------------------

    def namespace_count(self) -> int:
        if self.schema is None:
            return 1
        sql, params = self.dialect.namespace_count(self.schema)
        return int(self._scalar(sql, params))

    def relation_count(self, relation: str) -> int:
        sql, params = self.dialect.relation_count(relation, self.schema)
        return int(self._scalar(sql, params))

    def create_namespace(self) -> None:
        self.conn.execute(self.dialect.create_namespace(self.schema))

    def create_runs_table(self) -> None:
        self.conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {self.runs_table} (
                id {self.dialect.auto_increment()},
                template_version VARCHAR(255) NOT NULL,
                builder_version VARCHAR(255) NOT NULL,
                migrator_version VARCHAR(255) NOT NULL,
                database_version VARCHAR(1024) NOT NULL,
                UNIQUE (template_version, builder_version, migrator_version, database_version)
            )
            """
        )

    def create_records_table(self) -> None:
        self.conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {self.records_table} (
                name VARCHAR(255) PRIMARY KEY,
                ordinal INTEGER NOT NULL,
                created TIMESTAMP {self.dialect.timestamp_default_now()},
                finalized SMALLINT DEFAULT 1,
                pg_migrate_id INTEGER NOT NULL REFERENCES {self.runs_table} (id)
            )
            """
        )

    # -- Locking -----------------------------------------------------------

    def lock_records(self) -> None:
        """Take the exclusive lock on the records relation, where the engine needs one."""
        statement = self.dialect.lock_table(self.records_table)
        if statement:
            self.conn.execute(statement)

    # -- Migration records -------------------------------------------------

    def records_named(self, name: str) -> list[MigrationRecord]:
        rows = self.conn.execute(
            f"SELECT name, ordinal, created, finalized, pg_migrate_id "
            f"FROM {self.records_table} WHERE name = {self._ph()}",
            (name,),
        ).fetchall()
        return [MigrationRecord.from_row(tuple(row)) for row in rows]

    def max_ordinal(self) -> int:
        """Highest recorded ordinal, or -1 for an empty ledger."""
        value = self._scalar(f"SELECT MAX(ordinal) FROM {self.records_table}")
        return -1 if value is None else int(value)

    def list_records(self) -> list[MigrationRecord]:
        rows = self.conn.execute(
            f"SELECT name, ordinal, created, finalized, pg_migrate_id "
            f"FROM {self.records_table} ORDER BY ordinal"
        ).fetchall()
        return [MigrationRecord.from_row(tuple(row)) for row in rows]

    def insert_record(self, name: str, ordinal: int, run_id: int) -> MigrationRecord:
        self.conn.execute(
            f"INSERT INTO {self.records_table} (name, ordinal, created, finalized, pg_migrate_id) "
            f"VALUES ({self._ph()}, {self._ph()}, {self.dialect.now()}, 1, {self._ph()})",
            (name, ordinal, run_id),
        )
        return self.records_named(name)[0]

    # -- Migration runs ----------------------------------------------------

    def find_runs(self, versions: tuple[str, str, str, str]) -> list[MigrationRun]:
        where = " AND ".join(f"{col} = {self._ph()}" for col in RUN_VERSION_COLUMNS)
        rows = self.conn.execute(
            f"SELECT id, {', '.join(RUN_VERSION_COLUMNS)} FROM {self.runs_table} "
            f"WHERE {where} ORDER BY id",
            versions,
        ).fetchall()
        return [MigrationRun.from_row(tuple(row)) for row in rows]

    def insert_run_if_absent(self, versions: tuple[str, str, str, str]) -> None:
        """Insert the version tuple, leaving an existing identical row untouched."""
        self.conn.execute(self.dialect.insert_or_ignore(self.runs_table, RUN_VERSION_COLUMNS), versions)

    def list_runs(self) -> list[MigrationRun]:
        rows = self.conn.execute(
            f"SELECT id, {', '.join(RUN_VERSION_COLUMNS)} FROM {self.runs_table} ORDER BY id"
        ).fetchall()
        return [MigrationRun.from_row(tuple(row)) for row in rows]

    # -- Session -----------------------------------------------------------

    def database_version(self) -> str:
        version = str(self._scalar(self.dialect.database_version()))
        return version[:DATABASE_VERSION_MAX_LENGTH]
