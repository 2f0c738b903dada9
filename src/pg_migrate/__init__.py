"""pg-migrate -- exactly-once, strictly ordered migration ledger.

Applies named, ordinal-numbered migrations against PostgreSQL (or SQLite)
exactly once each, in strict order, safely under concurrent invocation.

Architecture::

    Layer 1 -- Types & Errors
        errors.py        MigrateError hierarchy with stable codes
        result.py        Ok / Err envelope for ledger checks
        models.py        Migration, MigrationRecord, MigrationRun, ApplyOutcome

    Layer 2 -- Database
        settings.py      pydantic-settings configuration (PGMIGRATE_*)
        logging.py       structlog configuration
        dialect.py       SQLite / PostgreSQL SQL fragments
        database.py      autocommit connections, psycopg pool
        ledger.py        LedgerRepository (all ledger SQL)

    Layer 3 -- Protocol
        provisioner.py   SchemaProvisioner
        gate.py          IdempotencyGate
        verifier.py      OrdinalVerifier, ManifestGuard
        recorder.py      ProvenanceRecorder
        protocol.py      ApplicationProtocol (state machine)
        runner.py        MigrationRunner (ordered manifest)
"""

__version__ = "0.3.0"

from pg_migrate.database import connect, get_connection
from pg_migrate.errors import (
    MIGRATION_EXISTS,
    IncorrectOrdinalError,
    LockTimeoutError,
    MigrateError,
    MigrationBodyError,
    MissingMigrationError,
    OldManifestError,
)
from pg_migrate.models import (
    ApplyOutcome,
    GateDecision,
    Migration,
    MigrationRecord,
    MigrationRun,
    ProtocolState,
    ProvenanceTuple,
)
from pg_migrate.protocol import ApplicationProtocol
from pg_migrate.runner import MigrationRunner, RunnerResult

__all__ = [
    "__version__",
    "connect",
    "get_connection",
    "MIGRATION_EXISTS",
    "MigrateError",
    "MissingMigrationError",
    "IncorrectOrdinalError",
    "OldManifestError",
    "MigrationBodyError",
    "LockTimeoutError",
    "ApplyOutcome",
    "GateDecision",
    "Migration",
    "MigrationRecord",
    "MigrationRun",
    "ProtocolState",
    "ProvenanceTuple",
    "ApplicationProtocol",
    "MigrationRunner",
    "RunnerResult",
]
