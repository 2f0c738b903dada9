"""Sequential migration runner.

Applies an ordered manifest of migrations through the application protocol,
one transaction per migration, after rejecting manifests that are stale or
internally inconsistent.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from pg_migrate.errors import ManifestError, MigrateError
from pg_migrate.logging import get_logger
from pg_migrate.models import Migration, MigrationRecord
from pg_migrate.protocol import ApplicationProtocol

logger = get_logger(__name__)


@dataclass
class RunnerResult:
    """Result of a runner pass."""

    applied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    error: MigrateError | None = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class LedgerStatus:
    """Snapshot of the ledger for operators."""

    records: list[MigrationRecord]
    last_ordinal: int

    @property
    def applied_names(self) -> list[str]:
        return [r.name for r in self.records]


class MigrationRunner:
    """Applies a manifest of migrations in ordinal order.

    Parameters
    ----------
    protocol
        The ``ApplicationProtocol`` bound to the target connection.

    Example::

        from pg_migrate import ApplicationProtocol, Migration, MigrationRunner, connect

        conn = connect("postgresql://localhost/app")
        runner = MigrationRunner(ApplicationProtocol.from_settings(conn))
        result = runner.apply_all([
            Migration("0000_init", 0, "CREATE TABLE users (id SERIAL PRIMARY KEY)"),
            Migration("0001_email", 1, "ALTER TABLE users ADD COLUMN email TEXT"),
        ])
        print(f"Applied {len(result.applied)} migrations")
    """

    def __init__(self, protocol: ApplicationProtocol) -> None:
        self._protocol = protocol

    @classmethod
    def for_connection(cls, conn: Any, **kwargs: Any) -> MigrationRunner:
        return cls(ApplicationProtocol.from_settings(conn, **kwargs))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def apply_all(self, migrations: Iterable[Migration]) -> RunnerResult:
        """Apply every migration not yet recorded, stopping at the first error.

        Manifest problems (duplicates, stale manifest) are reported before
        any migration runs. Each migration commits independently, so a
        failure leaves every earlier migration applied.
        """
        result = RunnerResult()
        try:
            manifest = self._validate_manifest(migrations)
            if manifest:
                self._protocol.check_manifest(manifest[-1].ordinal)
        except MigrateError as exc:
            result.error = exc
            return result

        for migration in manifest:
            try:
                outcome = self._protocol.apply(migration)
            except MigrateError as exc:
                result.error = exc
                break  # Stop on first error
            if outcome.skipped:
                result.skipped.append(migration.name)
            else:
                result.applied.append(migration.name)

        logger.info(
            "runner_finished",
            applied=len(result.applied),
            skipped=len(result.skipped),
            error=result.error.code if result.error else None,
        )
        return result

    def status(self) -> LedgerStatus:
        """Return the recorded migrations and the last ordinal."""
        self._protocol.ensure_ledger()
        ledger = self._protocol.ledger
        return LedgerStatus(records=ledger.list_records(), last_ordinal=ledger.max_ordinal())

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_manifest(migrations: Iterable[Migration]) -> list[Migration]:
        manifest = sorted(migrations, key=lambda m: m.ordinal)
        names: set[str] = set()
        for expected, migration in enumerate(manifest, start=manifest[0].ordinal if manifest else 0):
            if migration.name in names:
                raise ManifestError(f"Manifest lists migration {migration.name!r} twice")
            if migration.ordinal != expected:
                raise ManifestError(
                    f"Manifest ordinals are not contiguous at {migration.name!r}: "
                    f"expected {expected}, found {migration.ordinal}"
                )
            names.add(migration.name)
        return manifest
