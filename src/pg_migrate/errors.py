"""
Structured error types for the migration ledger.

Every fault the application protocol can surface is a ``MigrateError``
subclass carrying a stable ``code`` (the protocol's external vocabulary),
an ``ErrorCategory``, an explicit ``retryable`` flag and an ``ErrorContext``
with the offending migration name and ordinals. Callers surface the code and
message to an operator verbatim.

Manifesto:
    - **Typed Error Hierarchy:** One class per code, grouped by category
    - **Explicit Retry Semantics:** Invariant violations are never retryable;
      lock and serialization conflicts are, but the protocol never retries
    - **Rich Context:** name / ordinal / expected-vs-actual travel with the error
    - **Error Chaining:** Driver exceptions and body failures kept as ``cause``

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                        MigrateError                          │
        │           (code, category, retryable, context, cause)        │
        ├──────────────────────────────────────────────────────────────┤
        │  LedgerViolation (VALIDATION)     TransientLedgerError       │
        │     │                             (DATABASE, retryable)      │
        │  MissingMigrationError               │                       │
        │  IncorrectOrdinalError            LockTimeoutError           │
        │  OldManifestError                 SerializationConflictError │
        │  ManifestError                                               │
        │                                                              │
        │  UniquenessError (INTERNAL)       MigrationBodyError         │
        │     │                             (MIGRATION)                │
        │  MigrationsUniquenessError                                   │
        │  RunsUniquenessError              ConfigError (CONFIG)       │
        │  DuplicateCatalogEntryError       LedgerDatabaseError        │
        │                                   (DATABASE)                 │
        └──────────────────────────────────────────────────────────────┘

    The "already applied" outcome is deliberately absent: it is a
    ``GateDecision``, not an exception. ``MIGRATION_EXISTS`` is exported so
    callers that map outcomes to codes use the same vocabulary.

Examples:
    >>> err = MissingMigrationError("0003_add_index", proposed_ordinal=3, last_ordinal=1)
    >>> err.code
    'missing_migration'
    >>> err.retryable
    False
    >>> err.to_dict()["context"]["last_ordinal"]
    1

Tags:
    error-handling, exception-hierarchy, migrations, ledger, retry-logic
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

MISSING_MIGRATION = "missing_migration"
INCORRECT_ORDINAL = "incorrect_ordinal"
MIGRATIONS_UNIQUENESS_ERROR = "pg_migrations_uniqueness_error"
RUNS_UNIQUENESS_ERROR = "pg_migrate_uniqueness_error"
MIGRATION_EXISTS = "migration_exists"
OLD_MANIFEST = "old_manifest"
DUPLICATE_CATALOG_ENTRY = "duplicate_catalog_entry"
MIGRATION_BODY_FAILED = "migration_body_failed"
LOCK_TIMEOUT = "lock_timeout"
SERIALIZATION_CONFLICT = "serialization_conflict"
INVALID_MANIFEST = "invalid_manifest"
INVALID_CONFIG = "invalid_config"
LEDGER_DATABASE_ERROR = "ledger_database_error"


class ErrorCategory(str, Enum):
    """
    Error categories for classification and routing.

    Attributes:
        VALIDATION: Ledger history contradicts the proposed migration
        DATABASE: Lock waits, serialization conflicts, driver faults
        MIGRATION: The caller-supplied body raised
        CONFIG: Missing or invalid settings
        INTERNAL: Invariant the schema should make impossible
    """

    VALIDATION = "VALIDATION"
    DATABASE = "DATABASE"
    MIGRATION = "MIGRATION"
    CONFIG = "CONFIG"
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """Structured metadata attached to a migration error."""

    migration: str | None = None
    ordinal: int | None = None
    ledger_schema: str | None = None
    relation: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["migration", "ordinal", "ledger_schema", "relation"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class MigrateError(Exception):
    """
    Base exception for every fault raised by the migration protocol.

    Subclasses set ``code``, ``default_category`` and ``default_retryable``.
    A raised ``MigrateError`` always means the surrounding transaction was
    (or must be) rolled back.
    """

    code: str = "migrate_error"
    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> MigrateError:
        """
        Add context to this error (fluent API).

        Usage:
            raise MigrationBodyError("0004_backfill", cause=exc).with_context(
                ledger_schema="pgmigrate"
            )
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, code={self.code})"


# =============================================================================
# LEDGER VIOLATIONS (never retryable)
# =============================================================================


class LedgerViolation(MigrateError):
    """
    The proposed migration contradicts recorded ledger history.

    Never retryable: repeating the same attempt hits the same history.
    """

    default_category = ErrorCategory.VALIDATION
    default_retryable = False


class MissingMigrationError(LedgerViolation):
    """A new migration's ordinal is not exactly one past the last recorded one."""

    code = MISSING_MIGRATION

    def __init__(self, name: str, *, proposed_ordinal: int, last_ordinal: int, **kwargs: Any):
        self.name = name
        self.proposed_ordinal = proposed_ordinal
        self.last_ordinal = last_ordinal
        super().__init__(
            f"Migration {name!r} proposes ordinal {proposed_ordinal} but the last "
            f"recorded ordinal is {last_ordinal}; expected {last_ordinal + 1}",
            context=ErrorContext(
                migration=name,
                ordinal=proposed_ordinal,
                metadata={"last_ordinal": last_ordinal},
            ),
            **kwargs,
        )


class IncorrectOrdinalError(LedgerViolation):
    """A recorded migration's stored ordinal differs from the proposed one."""

    code = INCORRECT_ORDINAL

    def __init__(self, name: str, *, expected_ordinal: int, actual_ordinal: int, **kwargs: Any):
        self.name = name
        self.expected_ordinal = expected_ordinal
        self.actual_ordinal = actual_ordinal
        super().__init__(
            f"Migration {name!r} is recorded at ordinal {actual_ordinal} "
            f"but was proposed at ordinal {expected_ordinal}",
            context=ErrorContext(
                migration=name,
                ordinal=expected_ordinal,
                metadata={"expected_ordinal": expected_ordinal, "actual_ordinal": actual_ordinal},
            ),
            **kwargs,
        )


class OldManifestError(LedgerViolation):
    """The ledger already records ordinals beyond the caller's manifest."""

    code = OLD_MANIFEST

    def __init__(self, *, manifest_ordinal: int, ledger_ordinal: int, **kwargs: Any):
        self.manifest_ordinal = manifest_ordinal
        self.ledger_ordinal = ledger_ordinal
        super().__init__(
            f"Manifest ends at ordinal {manifest_ordinal} but the ledger already "
            f"records ordinal {ledger_ordinal}",
            context=ErrorContext(
                ordinal=manifest_ordinal,
                metadata={"manifest_ordinal": manifest_ordinal, "ledger_ordinal": ledger_ordinal},
            ),
            **kwargs,
        )


class ManifestError(LedgerViolation):
    """A manifest handed to the runner is internally inconsistent."""

    code = INVALID_MANIFEST


# =============================================================================
# DEFENSIVE INVARIANT FAULTS
# =============================================================================


class UniquenessError(MigrateError):
    """A lookup that the schema makes unique returned more than one row."""

    default_category = ErrorCategory.INTERNAL
    default_retryable = False


class MigrationsUniquenessError(UniquenessError):
    """More than one migration record shares a name."""

    code = MIGRATIONS_UNIQUENESS_ERROR

    def __init__(self, name: str, *, count: int, **kwargs: Any):
        self.name = name
        self.count = count
        super().__init__(
            f"Found {count} migration records named {name!r}",
            context=ErrorContext(migration=name, metadata={"count": count}),
            **kwargs,
        )


class RunsUniquenessError(UniquenessError):
    """More than one run row matches one provenance tuple."""

    code = RUNS_UNIQUENESS_ERROR

    def __init__(self, versions: tuple[str, str, str, str], *, count: int, **kwargs: Any):
        self.versions = versions
        self.count = count
        super().__init__(
            f"Found {count} migration runs for version tuple {versions!r}",
            context=ErrorContext(metadata={"versions": list(versions), "count": count}),
            **kwargs,
        )


class DuplicateCatalogEntryError(UniquenessError):
    """A catalog lookup for a ledger object matched more than one entry."""

    code = DUPLICATE_CATALOG_ENTRY

    def __init__(self, object_name: str, *, count: int, **kwargs: Any):
        self.object_name = object_name
        self.count = count
        super().__init__(
            f"Catalog lookup for {object_name!r} returned {count} entries",
            context=ErrorContext(relation=object_name, metadata={"count": count}),
            **kwargs,
        )


# =============================================================================
# BODY / DATABASE / CONFIG ERRORS
# =============================================================================


class MigrationBodyError(MigrateError):
    """The caller-supplied migration body raised; the attempt was rolled back."""

    code = MIGRATION_BODY_FAILED
    default_category = ErrorCategory.MIGRATION
    default_retryable = False

    def __init__(self, name: str, *, ordinal: int | None = None, cause: Exception | None = None):
        self.name = name
        super().__init__(
            f"Migration {name!r} failed: {cause}",
            context=ErrorContext(migration=name, ordinal=ordinal),
            cause=cause,
        )


class TransientLedgerError(MigrateError):
    """A concurrency conflict aborted the attempt before anything was recorded."""

    default_category = ErrorCategory.DATABASE
    default_retryable = True


class LockTimeoutError(TransientLedgerError):
    """The exclusive ledger lock was not acquired within the lock timeout."""

    code = LOCK_TIMEOUT


class SerializationConflictError(TransientLedgerError):
    """The serializable transaction lost a conflict (or deadlock) and was aborted."""

    code = SERIALIZATION_CONFLICT


class LedgerDatabaseError(MigrateError):
    """A driver error outside the body that is not a known concurrency conflict."""

    code = LEDGER_DATABASE_ERROR
    default_category = ErrorCategory.DATABASE
    default_retryable = False


class ConfigError(MigrateError):
    """Configuration error. Never retryable."""

    code = INVALID_CONFIG
    default_category = ErrorCategory.CONFIG
    default_retryable = False


def is_retryable(error: Exception) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, MigrateError):
        return error.retryable
    return False


__all__ = [
    # Codes
    "MISSING_MIGRATION",
    "INCORRECT_ORDINAL",
    "MIGRATIONS_UNIQUENESS_ERROR",
    "RUNS_UNIQUENESS_ERROR",
    "MIGRATION_EXISTS",
    "OLD_MANIFEST",
    "DUPLICATE_CATALOG_ENTRY",
    "MIGRATION_BODY_FAILED",
    "LOCK_TIMEOUT",
    "SERIALIZATION_CONFLICT",
    "INVALID_MANIFEST",
    "INVALID_CONFIG",
    "LEDGER_DATABASE_ERROR",
    # Category / context
    "ErrorCategory",
    "ErrorContext",
    # Base
    "MigrateError",
    # Ledger violations
    "LedgerViolation",
    "MissingMigrationError",
    "IncorrectOrdinalError",
    "OldManifestError",
    "ManifestError",
    # Invariant faults
    "UniquenessError",
    "MigrationsUniquenessError",
    "RunsUniquenessError",
    "DuplicateCatalogEntryError",
    # Body / database / config
    "MigrationBodyError",
    "TransientLedgerError",
    "LockTimeoutError",
    "SerializationConflictError",
    "LedgerDatabaseError",
    "ConfigError",
    # Utilities
    "is_retryable",
]
