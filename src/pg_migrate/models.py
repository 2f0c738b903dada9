"""Domain models for the migration ledger."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Union

from pg_migrate.errors import MIGRATION_EXISTS

MigrationBody = Union[str, Callable[[Any], None]]


class GateDecision(str, Enum):
    """Outcome of the idempotency gate."""

    PROCEED = "proceed"
    ALREADY_APPLIED = "already_applied"


class ProtocolState(str, Enum):
    """States of one migration attempt."""

    START = "start"
    LOCK_ACQUIRED = "lock_acquired"
    GATED = "gated"
    ORDINAL_VERIFIED = "ordinal_verified"
    BODY_EXECUTED = "body_executed"
    RECORDED = "recorded"
    COMMITTED = "committed"
    ABORTED = "aborted"


@dataclass(frozen=True)
class Migration:
    """One named, ordered migration.

    ``body`` is either a SQL script or a callable receiving the open
    connection. It runs inside the protocol's transaction and must not
    commit or roll back itself.
    """

    name: str
    ordinal: int
    body: MigrationBody

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Migration name must not be empty")
        if len(self.name) > 255:
            raise ValueError(f"Migration name exceeds 255 characters: {self.name[:40]!r}...")


@dataclass(frozen=True)
class ProvenanceTuple:
    """Tool versions supplied by the caller; the database version is read live."""

    template_version: str
    builder_version: str
    migrator_version: str

    def with_database(self, database_version: str) -> tuple[str, str, str, str]:
        return (
            self.template_version,
            self.builder_version,
            self.migrator_version,
            database_version,
        )


@dataclass
class MigrationRun:
    """Row of the run-metadata relation."""

    id: int
    template_version: str
    builder_version: str
    migrator_version: str
    database_version: str

    @classmethod
    def from_row(cls, row: tuple) -> MigrationRun:
        id_, template, builder, migrator, database = row
        return cls(id_, template, builder, migrator, database)


@dataclass
class MigrationRecord:
    """Row of the migration-records relation."""

    name: str
    ordinal: int
    created: datetime | str | None
    finalized: int
    run_id: int

    @classmethod
    def from_row(cls, row: tuple) -> MigrationRecord:
        name, ordinal, created, finalized, run_id = row
        return cls(name, int(ordinal), created, int(finalized), int(run_id))


@dataclass
class ApplyOutcome:
    """Result of one pass through the application protocol."""

    name: str
    ordinal: int
    decision: GateDecision | None = None
    state: ProtocolState = ProtocolState.START
    states: list[ProtocolState] = field(default_factory=lambda: [ProtocolState.START])
    record: MigrationRecord | None = None

    @property
    def applied(self) -> bool:
        return self.state is ProtocolState.COMMITTED and self.decision is GateDecision.PROCEED

    @property
    def skipped(self) -> bool:
        return self.state is ProtocolState.COMMITTED and self.decision is GateDecision.ALREADY_APPLIED

    def advance(self, state: ProtocolState) -> None:
        self.state = state
        self.states.append(state)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "ordinal": self.ordinal,
            "decision": self.decision.value if self.decision else None,
            "state": self.state.value,
            "states": [s.value for s in self.states],
            "code": MIGRATION_EXISTS if self.skipped else None,
        }
