"""Idempotent provisioning of the ledger namespace and relations."""

from __future__ import annotations

from typing import Any

from pg_migrate.errors import DuplicateCatalogEntryError
from pg_migrate.ledger import RECORDS_TABLE, RUNS_TABLE, LedgerRepository
from pg_migrate.logging import get_logger

logger = get_logger(__name__)


class SchemaProvisioner:
    """Ensures the ledger exists before any migration attempt.

    Safe to call before every attempt and from many processes at once: each
    call runs one short transaction behind the dialect's provisioning lock,
    checks every ledger object individually and creates only what is missing.
    """

    def __init__(self, ledger: LedgerRepository):
        self.ledger = ledger

    def _exists(self, object_name: str, count: int) -> bool:
        if count > 1:
            raise DuplicateCatalogEntryError(object_name, count=count).with_context(
                ledger_schema=self.ledger.schema
            )
        return count == 1

    def ensure_ledger_exists(self) -> list[str]:
        """Create any missing ledger object; return the names created."""
        conn: Any = self.ledger.conn
        dialect = self.ledger.dialect
        created: list[str] = []

        conn.execute(dialect.begin_provisioning())
        try:
            lock = dialect.provisioning_lock()
            if lock:
                conn.execute(lock)

            if self.ledger.schema is not None and not self._exists(
                self.ledger.schema, self.ledger.namespace_count()
            ):
                self.ledger.create_namespace()
                created.append(self.ledger.schema)

            if not self._exists(RUNS_TABLE, self.ledger.relation_count(RUNS_TABLE)):
                self.ledger.create_runs_table()
                created.append(self.ledger.runs_table)

            if not self._exists(RECORDS_TABLE, self.ledger.relation_count(RECORDS_TABLE)):
                self.ledger.create_records_table()
                created.append(self.ledger.records_table)

            conn.execute("COMMIT")
        except BaseException:
            try:
                conn.execute("ROLLBACK")
            except Exception as exc:
                logger.warning("rollback_failed", error=str(exc))
            raise

        for name in created:
            logger.info("ledger_object_created", object=name, dialect=dialect.name)
        return created
