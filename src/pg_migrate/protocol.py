"""Application protocol: apply one migration exactly once, in order.

Manifesto:
    A migration must run at most once, in a strict gapless order, even when
    several deployers invoke the migrator against the same database at the
    same moment. The protocol turns every attempt into one serializable
    transaction whose first statement takes an exclusive lock on the
    migration records, so the check-then-act sequence below can never
    interleave with another attempt.

Architecture:
    ::

        START ─► LOCK_ACQUIRED ─► GATED ──(ALREADY_APPLIED, ordinal ok)─► COMMITTED
                                    │
                                 (PROCEED)
                                    ▼
                            ORDINAL_VERIFIED ─► BODY_EXECUTED ─► RECORDED ─► COMMITTED

        any state after START ──(error)──► ABORTED  (ROLLBACK, error re-raised)

    ┌─────────────────────┬──────────────────────────────────────────────┐
    │ SchemaProvisioner   │ once per protocol instance, own transaction  │
    │ IdempotencyGate     │ Ok(PROCEED) / Ok(ALREADY_APPLIED) / Err      │
    │ OrdinalVerifier     │ both paths; Ok(ordinal) / Err(missing, ...)  │
    │ migration body      │ SQL script or callable(conn)                 │
    │ ProvenanceRecorder  │ find-or-insert run, append record            │
    └─────────────────────┴──────────────────────────────────────────────┘

Guardrails:
    ❌ DON'T: Commit or roll back inside a migration body
    ✅ DO: Let the protocol own the transaction boundary

    ❌ DON'T: Treat ``ALREADY_APPLIED`` as a failure
    ✅ DO: Check ``outcome.skipped``; only raised errors are failures

    ❌ DON'T: Expect the protocol to retry lock timeouts
    ✅ DO: Inspect ``error.retryable`` and decide in the caller

Examples:
    >>> from pg_migrate import ApplicationProtocol, Migration, connect
    >>> conn = connect("sqlite:///app.db")
    >>> protocol = ApplicationProtocol(conn)
    >>> outcome = protocol.apply(Migration("0000_init", 0, "CREATE TABLE t (id INTEGER)"))
    >>> outcome.applied
    True
    >>> protocol.apply(Migration("0000_init", 0, "CREATE TABLE t (id INTEGER)")).skipped
    True

Tags:
    migrations, ledger, idempotency, serializable, locking, state-machine
"""

from __future__ import annotations

from typing import Any

from pg_migrate.dialect import Dialect, dialect_for_connection
from pg_migrate.errors import LedgerDatabaseError, MigrateError, MigrationBodyError
from pg_migrate.gate import IdempotencyGate
from pg_migrate.ledger import DEFAULT_SCHEMA, LedgerRepository
from pg_migrate.logging import LogContext, get_logger
from pg_migrate.models import (
    ApplyOutcome,
    GateDecision,
    Migration,
    ProtocolState,
    ProvenanceTuple,
)
from pg_migrate.provisioner import SchemaProvisioner
from pg_migrate.recorder import ProvenanceRecorder
from pg_migrate.result import Err, Ok, Result
from pg_migrate.settings import Settings, get_settings
from pg_migrate.verifier import ManifestGuard, OrdinalVerifier

logger = get_logger(__name__)


def _unwrap(result: Result[Any]) -> Any:
    match result:
        case Ok(value):
            return value
        case Err(error):
            raise error


class ApplicationProtocol:
    """Drives one migration attempt through the ledger state machine.

    Args:
        conn: Autocommit DB-API connection (see ``pg_migrate.database.connect``).
            The protocol issues its own BEGIN / COMMIT / ROLLBACK.
        provenance: Tool versions recorded with every applied migration.
        schema: Ledger namespace; ``None`` for unqualified relation names.
        dialect: Overrides dialect detection from ``conn``.
        lock_timeout_ms: Bound on the wait for the exclusive lock.
        provision: Ensure the ledger exists before the first attempt.
    """

    def __init__(
        self,
        conn: Any,
        *,
        provenance: ProvenanceTuple | None = None,
        schema: str | None = DEFAULT_SCHEMA,
        dialect: Dialect | None = None,
        lock_timeout_ms: int | None = None,
        provision: bool = True,
    ):
        self.conn = conn
        self.dialect = dialect or dialect_for_connection(conn)
        self.ledger = LedgerRepository(conn, self.dialect, schema)
        self.provenance = provenance or ProvenanceTuple("unknown", "unknown", "unknown")
        self.lock_timeout_ms = lock_timeout_ms

        self.provisioner = SchemaProvisioner(self.ledger)
        self.gate = IdempotencyGate(self.ledger)
        self.verifier = OrdinalVerifier(self.ledger)
        self.guard = ManifestGuard(self.ledger)
        self.recorder = ProvenanceRecorder(self.ledger)

        self._provision = provision
        self._provisioned = False

    @classmethod
    def from_settings(cls, conn: Any, settings: Settings | None = None, **kwargs: Any) -> ApplicationProtocol:
        """Build a protocol using provenance, schema and lock timeout from settings."""
        settings = settings or get_settings()
        kwargs.setdefault(
            "provenance",
            ProvenanceTuple(
                template_version=settings.template_version,
                builder_version=settings.builder_version,
                migrator_version=settings.migrator_version,
            ),
        )
        kwargs.setdefault("schema", settings.ledger_schema)
        kwargs.setdefault("lock_timeout_ms", settings.lock_timeout_ms)
        return cls(conn, **kwargs)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def ensure_ledger(self) -> list[str]:
        """Provision the ledger now; safe to call any number of times."""
        created = self.provisioner.ensure_ledger_exists()
        self._provisioned = True
        return created

    def apply(self, migration: Migration) -> ApplyOutcome:
        """Apply ``migration`` unless the ledger already records it.

        Returns:
            ``ApplyOutcome`` with ``applied`` or ``skipped`` set.

        Raises:
            MigrateError: every other outcome; the transaction was rolled back.
        """
        outcome = ApplyOutcome(migration.name, migration.ordinal)
        with LogContext(migration=migration.name, ordinal=migration.ordinal):
            began = False
            try:
                self._ensure_provisioned()
                self.conn.execute(self.dialect.begin_serializable())
                began = True
                self._apply_lock_timeout()
                self.ledger.lock_records()
                outcome.advance(ProtocolState.LOCK_ACQUIRED)

                decision = _unwrap(self.gate.check(migration.name))
                outcome.decision = decision
                outcome.advance(ProtocolState.GATED)

                # A recorded name must still sit at its recorded ordinal
                _unwrap(self.verifier.verify(migration.name, migration.ordinal))

                if decision is GateDecision.PROCEED:
                    outcome.advance(ProtocolState.ORDINAL_VERIFIED)

                    self._run_body(migration)
                    outcome.advance(ProtocolState.BODY_EXECUTED)

                    outcome.record = self.recorder.record(
                        migration.name, migration.ordinal, self.provenance
                    )
                    outcome.advance(ProtocolState.RECORDED)

                self.conn.execute("COMMIT")
                outcome.advance(ProtocolState.COMMITTED)
            except Exception as exc:
                failed_in = outcome.state
                if began:
                    self._rollback()
                outcome.advance(ProtocolState.ABORTED)
                error = self._as_migrate_error(exc, migration, failed_in)
                error.with_context(failed_in=failed_in.value)
                logger.error(
                    "migration_aborted",
                    code=error.code,
                    error=error.message,
                    retryable=error.retryable,
                    failed_in=failed_in.value,
                )
                if error is exc:
                    raise
                raise error from exc
            except BaseException:
                # Interrupts propagate unchanged, but never with the lock held
                failed_in = outcome.state
                if began:
                    self._rollback()
                outcome.advance(ProtocolState.ABORTED)
                logger.warning("migration_interrupted", failed_in=failed_in.value)
                raise

        if outcome.skipped:
            logger.info("migration_skipped", migration=migration.name, ordinal=migration.ordinal)
        else:
            logger.info("migration_applied", migration=migration.name, ordinal=migration.ordinal)
        return outcome

    def check_manifest(self, manifest_max_ordinal: int) -> int:
        """Reject a manifest older than the ledger before anything is applied.

        Returns:
            The ledger's highest recorded ordinal (-1 when empty).

        Raises:
            OldManifestError: the ledger records an ordinal beyond the manifest.
        """
        began = False
        try:
            self._ensure_provisioned()
            self.conn.execute(self.dialect.begin_serializable())
            began = True
            self._apply_lock_timeout()
            self.ledger.lock_records()
            ledger_ordinal = _unwrap(self.guard.check(manifest_max_ordinal))
            self.conn.execute("COMMIT")
        except Exception as exc:
            if began:
                self._rollback()
            error = self._as_migrate_error(exc, None, ProtocolState.LOCK_ACQUIRED)
            logger.error("manifest_rejected", code=error.code, error=error.message)
            if error is exc:
                raise
            raise error from exc
        except BaseException:
            if began:
                self._rollback()
            raise
        return ledger_ordinal

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _ensure_provisioned(self) -> None:
        if self._provision and not self._provisioned:
            self.ensure_ledger()

    def _apply_lock_timeout(self) -> None:
        if self.lock_timeout_ms is not None:
            statement = self.dialect.lock_timeout(self.lock_timeout_ms)
            if statement:
                self.conn.execute(statement)

    def _rollback(self) -> None:
        try:
            self.conn.execute("ROLLBACK")
        except Exception as exc:
            logger.warning("rollback_failed", error=str(exc))

    def _run_body(self, migration: Migration) -> None:
        body = migration.body
        if isinstance(body, str):
            if body.strip():
                self.dialect.execute_script(self.conn, body)
        else:
            body(self.conn)

    def _as_migrate_error(
        self, exc: Exception, migration: Migration | None, failed_in: ProtocolState
    ) -> MigrateError:
        if isinstance(exc, MigrateError):
            return exc
        classified = self.dialect.classify_error(exc)
        if classified is not None:
            error = classified
        elif migration is not None and failed_in is ProtocolState.ORDINAL_VERIFIED:
            error = MigrationBodyError(migration.name, ordinal=migration.ordinal, cause=exc)
        else:
            error = LedgerDatabaseError(f"Ledger operation failed: {exc}", cause=exc)
        if migration is not None:
            error.with_context(migration=migration.name, ordinal=migration.ordinal)
        return error.with_context(ledger_schema=self.ledger.schema)
