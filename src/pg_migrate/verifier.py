"""Ordering checks against ledger history.

``OrdinalVerifier`` runs before any migration body so that a skipped,
reordered or renumbered migration is rejected without side effects.
``ManifestGuard`` rejects a whole manifest that is older than the ledger.
"""

from __future__ import annotations

from pg_migrate.errors import (
    IncorrectOrdinalError,
    MigrationsUniquenessError,
    MissingMigrationError,
    OldManifestError,
)
from pg_migrate.ledger import LedgerRepository
from pg_migrate.result import Err, Ok, Result


class OrdinalVerifier:
    """Checks a proposed (name, ordinal) pair for ordering violations."""

    def __init__(self, ledger: LedgerRepository):
        self.ledger = ledger

    def verify(self, name: str, proposed_ordinal: int) -> Result[int]:
        """Return ``Ok(proposed_ordinal)`` or ``Err`` describing the violation.

        Raises:
            MigrationsUniquenessError: more than one record shares ``name``.
                The primary key makes this unreachable; it is not a result.
        """
        if proposed_ordinal < 0:
            return Err(
                MissingMigrationError(
                    name,
                    proposed_ordinal=proposed_ordinal,
                    last_ordinal=self.ledger.max_ordinal(),
                )
            )

        records = self.ledger.records_named(name)

        if not records:
            last_ordinal = self.ledger.max_ordinal()
            if proposed_ordinal != last_ordinal + 1:
                return Err(
                    MissingMigrationError(
                        name, proposed_ordinal=proposed_ordinal, last_ordinal=last_ordinal
                    )
                )
            return Ok(proposed_ordinal)

        if len(records) == 1:
            actual = records[0].ordinal
            if actual != proposed_ordinal:
                return Err(
                    IncorrectOrdinalError(
                        name, expected_ordinal=proposed_ordinal, actual_ordinal=actual
                    )
                )
            return Ok(proposed_ordinal)

        raise MigrationsUniquenessError(name, count=len(records))


class ManifestGuard:
    """Rejects a manifest whose last ordinal is behind the ledger."""

    def __init__(self, ledger: LedgerRepository):
        self.ledger = ledger

    def check(self, manifest_max_ordinal: int) -> Result[int]:
        """Return ``Ok(ledger max ordinal)`` or ``Err(OldManifestError)``."""
        ledger_ordinal = self.ledger.max_ordinal()
        if ledger_ordinal > manifest_max_ordinal:
            return Err(
                OldManifestError(
                    manifest_ordinal=manifest_max_ordinal, ledger_ordinal=ledger_ordinal
                )
            )
        return Ok(ledger_ordinal)
