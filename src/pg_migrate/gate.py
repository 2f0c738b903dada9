"""Idempotency gate: has this migration already been recorded?"""

from __future__ import annotations

from pg_migrate.errors import MigrationsUniquenessError
from pg_migrate.ledger import LedgerRepository
from pg_migrate.models import GateDecision
from pg_migrate.result import Err, Ok, Result


class IdempotencyGate:
    """Tri-state check of a migration name against the ledger.

    ``Ok(PROCEED)`` means run the body. ``Ok(ALREADY_APPLIED)`` is the skip
    signal: the transaction still commits but the body must not run again.
    ``Err`` carries an invariant violation.
    """

    def __init__(self, ledger: LedgerRepository):
        self.ledger = ledger

    def check(self, name: str) -> Result[GateDecision]:
        records = self.ledger.records_named(name)
        if not records:
            return Ok(GateDecision.PROCEED)
        if len(records) == 1:
            return Ok(GateDecision.ALREADY_APPLIED)
        return Err(MigrationsUniquenessError(name, count=len(records)))
