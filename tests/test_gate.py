"""Tests for the idempotency gate."""

from unittest.mock import MagicMock

from pg_migrate.errors import MigrationsUniquenessError
from pg_migrate.gate import IdempotencyGate
from pg_migrate.models import GateDecision
from pg_migrate.result import Err, Ok


class TestIdempotencyGate:
    def test_unknown_name_proceeds(self, ledger):
        assert IdempotencyGate(ledger).check("0000_init") == Ok(GateDecision.PROCEED)

    def test_recorded_name_is_already_applied(self, protocol, make_migration):
        protocol.apply(make_migration(0))

        result = protocol.gate.check("0000_create_t0")

        assert result == Ok(GateDecision.ALREADY_APPLIED)

    def test_duplicate_records_are_an_error(self):
        ledger = MagicMock()
        ledger.records_named.return_value = [object(), object()]

        result = IdempotencyGate(ledger).check("0001_users")

        assert isinstance(result, Err)
        assert isinstance(result.error, MigrationsUniquenessError)
        assert result.error.count == 2
