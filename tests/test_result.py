"""Tests for the Ok / Err envelope."""

import pytest

from pg_migrate.errors import MissingMigrationError
from pg_migrate.result import Err, Ok


class TestOk:
    def test_unwrap(self):
        assert Ok(3).unwrap() == 3
        assert Ok(3).unwrap_or(0) == 3

    def test_flags(self):
        assert Ok(1).is_ok() and not Ok(1).is_err()

    def test_map(self):
        assert Ok(2).map(lambda v: v + 1) == Ok(3)

    def test_to_dict(self):
        assert Ok("proceed").to_dict() == {"ok": True, "value": "proceed"}


class TestErr:
    def test_unwrap_raises_error(self):
        error = MissingMigrationError("0002_x", proposed_ordinal=2, last_ordinal=0)
        with pytest.raises(MissingMigrationError):
            Err(error).unwrap()

    def test_unwrap_or_default(self):
        assert Err(ValueError("x")).unwrap_or(7) == 7

    def test_map_is_noop(self):
        err = Err(ValueError("x"))
        assert err.map(lambda v: v + 1).is_err()

    def test_to_dict_with_migrate_error(self):
        error = MissingMigrationError("0002_x", proposed_ordinal=2, last_ordinal=0)
        d = Err(error).to_dict()
        assert d["ok"] is False
        assert d["error"]["code"] == "missing_migration"

    def test_to_dict_with_plain_exception(self):
        d = Err(ValueError("nope")).to_dict()
        assert d["error"] == {"error_type": "ValueError", "message": "nope"}


class TestPatternMatching:
    def test_match_ok(self):
        match Ok(5):
            case Ok(value):
                assert value == 5
            case Err():
                pytest.fail("expected Ok")

    def test_match_err(self):
        match Err(ValueError("x")):
            case Ok():
                pytest.fail("expected Err")
            case Err(error):
                assert isinstance(error, ValueError)
