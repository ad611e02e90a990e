"""
LEDGER ENGINE - LEDGER INVARIANT VALIDATOR

Checks the stored ledger figures against their source of truth:
1. committed >= 0
2. actual >= 0
3. committed == SUM(commit) - SUM(release)   (ledger_movements)
4. actual    == SUM(realize)                  (ledger_movements)

`available` is not checked: it is never stored, so it cannot drift.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from decimal import Decimal
from typing import Dict, List
from datetime import datetime
import logging

from approval_ledger.financial_precision import to_decimal, round_financial, to_float
from approval_ledger.errors import LedgerInvariantError
from approval_ledger.budget_ledger import (
    BudgetLedger, MOVEMENT_COMMIT, MOVEMENT_RELEASE, MOVEMENT_REALIZE
)

logger = logging.getLogger(__name__)


class LedgerInvariantValidator:
    """
    Drift detection for sub-account figures.
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.ledger = BudgetLedger(db)

    async def _movement_totals(self, sub_account_id: str, session=None) -> Dict[str, Decimal]:
        totals = {
            MOVEMENT_COMMIT: Decimal('0'),
            MOVEMENT_RELEASE: Decimal('0'),
            MOVEMENT_REALIZE: Decimal('0'),
        }
        cursor = self.db.ledger_movements.find(
            {"sub_account_id": sub_account_id},
            session=session
        )
        async for movement in cursor:
            kind = movement.get("kind")
            if kind in totals:
                totals[kind] += to_decimal(movement.get("amount", 0))
        return totals

    async def verify_sub_account(self, sub_account_id: str, session=None) -> bool:
        """
        Validate every invariant for one sub-account.

        Raises LedgerInvariantError listing ALL violations.
        Returns True if all constraints pass.
        """
        sub = await self.ledger.get_sub_account(sub_account_id, session=session)
        totals = await self._movement_totals(sub_account_id, session=session)

        committed = round_financial(sub.get("committed", 0))
        actual = round_financial(sub.get("actual", 0))
        expected_committed = round_financial(totals[MOVEMENT_COMMIT] - totals[MOVEMENT_RELEASE])
        expected_actual = round_financial(totals[MOVEMENT_REALIZE])

        violations = []

        if committed < Decimal('0'):
            violations.append({
                "type": "NEGATIVE_COMMITTED",
                "message": f"committed ({to_float(committed)}) is negative",
                "committed": to_float(committed)
            })

        if actual < Decimal('0'):
            violations.append({
                "type": "NEGATIVE_ACTUAL",
                "message": f"actual ({to_float(actual)}) is negative",
                "actual": to_float(actual)
            })

        if committed != expected_committed:
            violations.append({
                "type": "COMMITTED_DRIFT",
                "message": f"committed ({to_float(committed)}) != movements ({to_float(expected_committed)})",
                "committed": to_float(committed),
                "expected": to_float(expected_committed)
            })

        if actual != expected_actual:
            violations.append({
                "type": "ACTUAL_DRIFT",
                "message": f"actual ({to_float(actual)}) != movements ({to_float(expected_actual)})",
                "actual": to_float(actual),
                "expected": to_float(expected_actual)
            })

        if violations:
            logger.error(f"[LEDGER] Invariant violation(s) on sub-account {sub_account_id}: {violations}")
            raise LedgerInvariantError(
                violation_type="MULTIPLE_VIOLATIONS" if len(violations) > 1 else violations[0]["type"],
                message="Ledger invariant violation(s) detected",
                details={
                    "sub_account_id": sub_account_id,
                    "violations": violations
                }
            )

        logger.debug(f"Invariants validated for sub-account {sub_account_id}")
        return True

    async def verify_project(self, project_id: str, session=None) -> Dict[str, List[dict]]:
        """
        Validate ledger invariants across ALL sub-accounts of a project.

        Does NOT raise - collects all violations for reporting.
        """
        result = {
            "project_id": project_id,
            "valid": [],
            "violations": [],
            "validated_at": datetime.utcnow()
        }

        cursor = self.db.sub_accounts.find({"project_id": project_id}, session=session)
        async for sub in cursor:
            sub_account_id = str(sub["_id"])
            try:
                await self.verify_sub_account(sub_account_id, session=session)
                result["valid"].append({"sub_account_id": sub_account_id, "status": "VALID"})
            except LedgerInvariantError as e:
                result["violations"].append({
                    "sub_account_id": sub_account_id,
                    "status": "VIOLATION",
                    "details": e.details
                })

        return result
