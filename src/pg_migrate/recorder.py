"""Provenance recording: the sole writer of both ledger relations."""

from __future__ import annotations

from pg_migrate.errors import RunsUniquenessError
from pg_migrate.ledger import LedgerRepository
from pg_migrate.logging import get_logger
from pg_migrate.models import MigrationRecord, ProvenanceTuple

logger = get_logger(__name__)


class ProvenanceRecorder:
    """Resolves the run row for a provenance tuple and appends the migration record.

    Called exactly once per successful migration, after the body has run and
    before the surrounding transaction commits.
    """

    def __init__(self, ledger: LedgerRepository):
        self.ledger = ledger

    def resolve_run(self, provenance: ProvenanceTuple) -> int:
        """Return the run id for ``provenance`` plus the live database version.

        Insert-or-ignore on the unique tuple followed by a fetch, so two
        writers racing on a new tuple converge on the same row.
        """
        versions = provenance.with_database(self.ledger.database_version())
        self.ledger.insert_run_if_absent(versions)
        runs = self.ledger.find_runs(versions)
        if len(runs) != 1:
            raise RunsUniquenessError(versions, count=len(runs))
        return runs[0].id

    def record(self, name: str, ordinal: int, provenance: ProvenanceTuple) -> MigrationRecord:
        run_id = self.resolve_run(provenance)
        record = self.ledger.insert_record(name, ordinal, run_id)
        logger.debug("migration_recorded", migration=name, ordinal=ordinal, run_id=run_id)
        return record
