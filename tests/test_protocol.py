"""
Tests for the application protocol.

Tests verify:
- Gapless ordering and exactly-once application
- Skip path commits without running the body
- Ordinal mismatch and gap rejection before any body runs
- Body failures roll back both the body and the ledger
"""

import pytest

from pg_migrate.database import connect_sqlite
from pg_migrate.errors import (
    IncorrectOrdinalError,
    LedgerDatabaseError,
    MigrateError,
    MigrationBodyError,
    MissingMigrationError,
    OldManifestError,
)
from pg_migrate.models import GateDecision, Migration, ProtocolState, ProvenanceTuple
from pg_migrate.protocol import ApplicationProtocol
from pg_migrate.settings import Settings

from conftest import table_exists

APPLIED_PATH = [
    ProtocolState.START,
    ProtocolState.LOCK_ACQUIRED,
    ProtocolState.GATED,
    ProtocolState.ORDINAL_VERIFIED,
    ProtocolState.BODY_EXECUTED,
    ProtocolState.RECORDED,
    ProtocolState.COMMITTED,
]

SKIPPED_PATH = [
    ProtocolState.START,
    ProtocolState.LOCK_ACQUIRED,
    ProtocolState.GATED,
    ProtocolState.COMMITTED,
]


# =========================================================================
# Happy path
# =========================================================================


class TestApply:
    def test_applies_new_migration(self, protocol, conn, make_migration):
        outcome = protocol.apply(make_migration(0))

        assert outcome.applied
        assert outcome.decision is GateDecision.PROCEED
        assert outcome.states == APPLIED_PATH
        assert outcome.record.name == "0000_create_t0"
        assert table_exists(conn, "t0")
        assert not conn.in_transaction

    def test_gapless_ordering(self, protocol, ledger, make_migration):
        for ordinal in range(4):
            protocol.apply(make_migration(ordinal))

        assert [r.ordinal for r in ledger.list_records()] == [0, 1, 2, 3]
        assert ledger.max_ordinal() == 3

    def test_callable_body_receives_connection(self, protocol, conn):
        seen = []

        def body(c):
            seen.append(c)
            c.execute("CREATE TABLE from_callable (id INTEGER)")

        protocol.apply(Migration("0000_callable", 0, body))

        assert seen == [conn]
        assert table_exists(conn, "from_callable")

    def test_blank_body_is_recorded(self, protocol, ledger):
        assert protocol.apply(Migration("0000_noop", 0, "   ")).applied
        assert ledger.max_ordinal() == 0

    def test_provisions_on_first_apply(self, conn, provenance, make_migration):
        protocol = ApplicationProtocol(conn, provenance=provenance)

        assert protocol.apply(make_migration(0)).applied
        assert table_exists(conn, "pg_migrations")

    def test_outcome_to_dict(self, protocol, make_migration):
        d = protocol.apply(make_migration(0)).to_dict()

        assert d["decision"] == "proceed"
        assert d["state"] == "committed"
        assert d["code"] is None


# =========================================================================
# Idempotence
# =========================================================================


class TestIdempotence:
    def test_second_apply_is_skipped(self, protocol, make_migration):
        calls = []

        def body(c):
            calls.append(1)

        migration = Migration("0000_once", 0, body)
        first = protocol.apply(migration)
        second = protocol.apply(migration)

        assert first.applied
        assert second.skipped
        assert second.states == SKIPPED_PATH
        assert second.record is None
        assert second.to_dict()["code"] == "migration_exists"
        assert calls == [1]

    def test_skip_leaves_ledger_unchanged(self, protocol, ledger, make_migration):
        protocol.apply(make_migration(0))
        before = ledger.list_records()

        protocol.apply(make_migration(0))

        assert ledger.list_records() == before
        assert len(ledger.list_runs()) == 1

    def test_earlier_migration_skipped_after_later_ones(self, protocol, make_migration):
        for ordinal in range(3):
            protocol.apply(make_migration(ordinal))

        assert protocol.apply(make_migration(1)).skipped


# =========================================================================
# Ordering violations
# =========================================================================


class TestOrderingViolations:
    def test_renumbered_migration(self, protocol, conn, make_migration):
        protocol.apply(make_migration(0))
        protocol.apply(make_migration(1))

        with pytest.raises(IncorrectOrdinalError) as exc_info:
            protocol.apply(Migration("0001_create_t1", 2, "CREATE TABLE never (id INTEGER)"))

        err = exc_info.value
        assert err.code == "incorrect_ordinal"
        assert err.expected_ordinal == 2
        assert err.actual_ordinal == 1
        assert err.context.metadata["failed_in"] == "gated"
        assert not table_exists(conn, "never")
        assert not conn.in_transaction

    def test_gap_is_rejected(self, protocol, conn, ledger, make_migration):
        protocol.apply(make_migration(0))
        protocol.apply(make_migration(1))

        with pytest.raises(MissingMigrationError) as exc_info:
            protocol.apply(make_migration(3))

        assert exc_info.value.code == "missing_migration"
        assert exc_info.value.context.metadata["last_ordinal"] == 1
        assert not table_exists(conn, "t3")
        assert ledger.max_ordinal() == 1

    def test_first_migration_must_be_zero(self, protocol, make_migration):
        with pytest.raises(MissingMigrationError):
            protocol.apply(make_migration(1))

    def test_violation_is_not_retryable(self, protocol, make_migration):
        with pytest.raises(MigrateError) as exc_info:
            protocol.apply(make_migration(5))
        assert exc_info.value.retryable is False


# =========================================================================
# Body failures
# =========================================================================


class TestBodyFailure:
    def test_sql_failure_rolls_back_everything(self, protocol, conn, ledger):
        migration = Migration(
            "0000_broken",
            0,
            "CREATE TABLE half (id INTEGER); INSERT INTO does_not_exist VALUES (1);",
        )

        with pytest.raises(MigrationBodyError) as exc_info:
            protocol.apply(migration)

        err = exc_info.value
        assert err.code == "migration_body_failed"
        assert err.context.metadata["failed_in"] == "ordinal_verified"
        assert err.context.ordinal == 0
        assert err.__cause__ is not None
        assert not table_exists(conn, "half")
        assert ledger.list_records() == []
        assert ledger.list_runs() == []
        assert not conn.in_transaction

    def test_callable_failure_is_wrapped(self, protocol):
        def body(c):
            raise ValueError("bad backfill")

        with pytest.raises(MigrationBodyError, match="bad backfill") as exc_info:
            protocol.apply(Migration("0000_backfill", 0, body))

        assert isinstance(exc_info.value.cause, ValueError)

    def test_retry_after_fix_succeeds(self, protocol, make_migration):
        with pytest.raises(MigrationBodyError):
            protocol.apply(Migration("0000_create_t0", 0, "CREATE TABLE ("))

        assert protocol.apply(make_migration(0)).applied


class TestInterrupts:
    def test_interrupted_body_releases_lock(self, protocol, conn, db_path, provenance, make_migration):
        def body(c):
            c.execute("CREATE TABLE half (id INTEGER)")
            raise KeyboardInterrupt

        with pytest.raises(KeyboardInterrupt):
            protocol.apply(Migration("0000_interrupted", 0, body))

        assert not conn.in_transaction
        assert not table_exists(conn, "half")
        assert protocol.ledger.list_records() == []

        other = connect_sqlite(db_path, lock_timeout_ms=100)
        try:
            assert ApplicationProtocol(other, provenance=provenance).apply(make_migration(0)).applied
        finally:
            other.close()

    def test_system_exit_propagates_unchanged(self, protocol, conn):
        def body(c):
            raise SystemExit(3)

        with pytest.raises(SystemExit) as exc_info:
            protocol.apply(Migration("0000_exit", 0, body))

        assert exc_info.value.code == 3
        assert not conn.in_transaction

    def test_interrupted_manifest_check_releases_lock(self, protocol, conn, monkeypatch):
        def interrupted(manifest_max_ordinal):
            raise KeyboardInterrupt

        monkeypatch.setattr(protocol.guard, "check", interrupted)

        with pytest.raises(KeyboardInterrupt):
            protocol.check_manifest(0)

        assert not conn.in_transaction


class TestLedgerFailure:
    def test_failure_outside_body_is_ledger_error(self, protocol, conn, make_migration):
        conn.execute("DROP TABLE pg_migrations")

        with pytest.raises(LedgerDatabaseError) as exc_info:
            protocol.apply(make_migration(0))

        assert exc_info.value.context.metadata["failed_in"] == "lock_acquired"
        assert not conn.in_transaction


# =========================================================================
# Manifest check
# =========================================================================


class TestCheckManifest:
    def test_empty_ledger(self, protocol):
        assert protocol.check_manifest(3) == -1

    def test_stale_manifest(self, protocol, conn, make_migration):
        for ordinal in range(3):
            protocol.apply(make_migration(ordinal))

        with pytest.raises(OldManifestError) as exc_info:
            protocol.check_manifest(1)

        assert exc_info.value.code == "old_manifest"
        assert exc_info.value.ledger_ordinal == 2
        assert not conn.in_transaction


# =========================================================================
# Construction
# =========================================================================


class TestFromSettings:
    def test_uses_settings_provenance(self, conn, ledger):
        settings = Settings(template_version="t9", builder_version="b9", lock_timeout_ms=50)

        protocol = ApplicationProtocol.from_settings(conn, settings)
        protocol.apply(Migration("0000_init", 0, ""))

        run = ledger.list_runs()[0]
        assert (run.template_version, run.builder_version) == ("t9", "b9")
        assert protocol.lock_timeout_ms == 50
        assert protocol.ledger.schema is None

    def test_explicit_kwargs_win(self, conn):
        settings = Settings(template_version="t9")
        provenance = ProvenanceTuple("mine", "mine", "mine")

        protocol = ApplicationProtocol.from_settings(conn, settings, provenance=provenance)

        assert protocol.provenance is provenance
