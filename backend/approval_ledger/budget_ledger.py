"""
LEDGER ENGINE - BUDGET LEDGER

Per sub-account figures:
- budgeted   (set by the budget owner)
- committed  (reserved by approved, not-yet-paid purchase orders)
- actual     (consumed by realized payments)
- available  = budgeted - committed - actual   (DERIVED, never stored)

RULES:
- commit / realize are atomic $inc operations
- release is a compare-and-set loop that clamps committed at zero
- every movement is appended to ledger_movements (used for drift checks)
- the ledger is advisory: negative `available` is accepted, never blocked
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from decimal import Decimal
from datetime import datetime
from typing import Optional, Dict, Any
from bson import ObjectId
import asyncio
import logging

from approval_ledger.financial_precision import (
    to_decimal, to_float, round_financial,
    validate_non_negative, safe_subtract, safe_add, Amount
)
from approval_ledger.errors import (
    SubAccountNotFoundError, ConcurrentModificationError, DocumentNotFoundError,
    AccountNotEmptyError, SubAccountInUseError
)
from approval_ledger.optimistic import MAX_RETRIES, RETRY_DELAY_MS

logger = logging.getLogger(__name__)

MOVEMENT_COMMIT = "commit"
MOVEMENT_RELEASE = "release"
MOVEMENT_REALIZE = "realize"


# =============================================================================
# DERIVED FIGURES
# =============================================================================

def compute_available(sub_account: Dict[str, Any]) -> Decimal:
    """available = budgeted - committed - actual, recomputed on every read."""
    return safe_subtract(
        sub_account.get("budgeted", 0),
        safe_add(sub_account.get("committed", 0), sub_account.get("actual", 0))
    )


def is_over_budget(sub_account: Dict[str, Any], amount: Amount) -> bool:
    """True when committing `amount` would push available below zero."""
    return to_decimal(amount) > compute_available(sub_account)


def balance_view(sub_account: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "sub_account_id": str(sub_account["_id"]),
        "project_id": sub_account.get("project_id"),
        "account_id": sub_account.get("account_id"),
        "code": sub_account.get("code"),
        "description": sub_account.get("description"),
        "budgeted": to_float(sub_account.get("budgeted", 0)),
        "committed": to_float(sub_account.get("committed", 0)),
        "actual": to_float(sub_account.get("actual", 0)),
        "available": to_float(compute_available(sub_account)),
    }


def _oid(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return None


class BudgetLedger:
    """
    Budget ledger over the `accounts` / `sub_accounts` collections.
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    # =========================================================================
    # ACCOUNT STRUCTURE
    # =========================================================================

    async def create_account(
        self,
        project_id: str,
        code: str,
        description: str = "",
        session=None
    ) -> str:
        doc = {
            "project_id": project_id,
            "code": code,
            "description": description,
            "created_at": datetime.utcnow(),
            "updated_at": datetime.utcnow()
        }
        result = await self.db.accounts.insert_one(doc, session=session)
        logger.info(f"[LEDGER] Account {code} created in project {project_id}")
        return str(result.inserted_id)

    async def create_sub_account(
        self,
        project_id: str,
        account_id: str,
        code: str,
        budgeted: Amount,
        description: str = "",
        session=None
    ) -> str:
        validate_non_negative(budgeted, "budgeted")

        oid = _oid(account_id)
        account = await self.db.accounts.find_one(
            {"_id": oid, "project_id": project_id},
            session=session
        ) if oid else None
        if not account:
            raise DocumentNotFoundError("account", account_id)

        doc = {
            "project_id": project_id,
            "account_id": account_id,
            "code": code,
            "description": description,
            "budgeted": to_float(budgeted),
            "committed": 0.0,
            "actual": 0.0,
            "created_at": datetime.utcnow(),
            "updated_at": datetime.utcnow()
        }
        result = await self.db.sub_accounts.insert_one(doc, session=session)
        logger.info(
            f"[LEDGER] Sub-account {code} created under account {account_id} "
            f"(budgeted={doc['budgeted']})"
        )
        return str(result.inserted_id)

    async def set_budget(
        self,
        sub_account_id: str,
        budgeted: Amount,
        session=None
    ) -> Dict[str, Any]:
        validate_non_negative(budgeted, "budgeted")
        sub = await self.db.sub_accounts.find_one_and_update(
            {"_id": _oid(sub_account_id)},
            {"$set": {"budgeted": to_float(budgeted), "updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
            session=session
        )
        if not sub:
            raise SubAccountNotFoundError(sub_account_id)
        logger.info(f"[LEDGER] Budget of {sub_account_id} set to {sub['budgeted']}")
        return balance_view(sub)

    async def delete_account(self, project_id: str, account_id: str, session=None) -> None:
        """An account cannot be deleted while it owns sub-accounts."""
        owned = await self.db.sub_accounts.count_documents(
            {"project_id": project_id, "account_id": account_id},
            session=session
        )
        if owned:
            raise AccountNotEmptyError(
                f"Account {account_id} still owns {owned} sub-account(s)",
                details={"account_id": account_id, "sub_accounts": owned}
            )

        result = await self.db.accounts.delete_one(
            {"_id": _oid(account_id), "project_id": project_id},
            session=session
        )
        if result.deleted_count == 0:
            raise DocumentNotFoundError("account", account_id)
        logger.info(f"[LEDGER] Account {account_id} deleted")

    async def delete_sub_account(self, project_id: str, sub_account_id: str, session=None) -> None:
        """A sub-account referenced by any PO or invoice is never deleted."""
        query = {"project_id": project_id, "sub_account_id": sub_account_id}
        po_refs = await self.db.purchase_orders.count_documents(query, session=session)
        invoice_refs = await self.db.invoices.count_documents(query, session=session)
        if po_refs or invoice_refs:
            raise SubAccountInUseError(
                f"Sub-account {sub_account_id} is referenced by "
                f"{po_refs} purchase order(s) and {invoice_refs} invoice(s)",
                details={
                    "sub_account_id": sub_account_id,
                    "purchase_orders": po_refs,
                    "invoices": invoice_refs
                }
            )

        result = await self.db.sub_accounts.delete_one(
            {"_id": _oid(sub_account_id), "project_id": project_id},
            session=session
        )
        if result.deleted_count == 0:
            raise SubAccountNotFoundError(sub_account_id)
        logger.info(f"[LEDGER] Sub-account {sub_account_id} deleted")

    # =========================================================================
    # READS
    # =========================================================================

    async def get_sub_account(self, sub_account_id: str, session=None) -> Dict[str, Any]:
        oid = _oid(sub_account_id)
        sub = await self.db.sub_accounts.find_one({"_id": oid}, session=session) if oid else None
        if not sub:
            raise SubAccountNotFoundError(sub_account_id)
        return sub

    async def get_balance(self, sub_account_id: str, session=None) -> Dict[str, Any]:
        sub = await self.get_sub_account(sub_account_id, session=session)
        return balance_view(sub)

    async def project_summary(self, project_id: str, session=None) -> Dict[str, Any]:
        """Totals over every sub-account of a project."""
        budgeted = committed = actual = Decimal('0')
        count = 0
        cursor = self.db.sub_accounts.find({"project_id": project_id}, session=session)
        async for sub in cursor:
            budgeted += to_decimal(sub.get("budgeted", 0))
            committed += to_decimal(sub.get("committed", 0))
            actual += to_decimal(sub.get("actual", 0))
            count += 1

        return {
            "project_id": project_id,
            "sub_accounts": count,
            "budgeted": to_float(budgeted),
            "committed": to_float(committed),
            "actual": to_float(actual),
            "available": to_float(budgeted - committed - actual),
        }

    # =========================================================================
    # MOVEMENTS
    # =========================================================================

    async def commit(
        self,
        sub_account_id: str,
        amount: Amount,
        source_type: Optional[str] = None,
        source_id: Optional[str] = None,
        once_key: Optional[str] = None,
        session=None
    ) -> Optional[Dict[str, Any]]:
        """
        Add to committed (PO approval).

        With once_key the increment is applied at most once per key: the key
        is pushed onto the sub-account's `applied_movements` in the same
        update. Returns None when the key was already applied.
        """
        return await self._increment(
            sub_account_id, "committed", amount, MOVEMENT_COMMIT,
            source_type, source_id, session, once_key=once_key
        )

    async def realize(
        self,
        sub_account_id: str,
        amount: Amount,
        source_type: Optional[str] = None,
        source_id: Optional[str] = None,
        session=None
    ) -> Dict[str, Any]:
        """
        Add to actual (payment).
        Pair with an equal `release` when the money was committed by a PO.
        """
        return await self._increment(
            sub_account_id, "actual", amount, MOVEMENT_REALIZE,
            source_type, source_id, session
        )

    async def release(
        self,
        sub_account_id: str,
        amount: Amount,
        source_type: Optional[str] = None,
        source_id: Optional[str] = None,
        session=None
    ) -> Dict[str, Any]:
        """
        Subtract from committed (cancellation, deletion, payment of a PO-backed invoice).
        committed never goes below zero; a clamp is logged.
        """
        validate_non_negative(amount, "amount")
        requested = round_financial(amount)

        for attempt in range(MAX_RETRIES):
            sub = await self.get_sub_account(sub_account_id, session=session)

            current = to_decimal(sub.get("committed", 0))
            new_committed = current - requested
            if new_committed < Decimal('0'):
                logger.warning(
                    f"[LEDGER] Release of {requested} exceeds committed {current} "
                    f"on {sub_account_id}; clamping at zero"
                )
                new_committed = Decimal('0')
            released = current - new_committed

            if "committed" in sub:
                guard = {"_id": sub["_id"], "committed": sub["committed"]}
            else:
                guard = {"_id": sub["_id"], "committed": {"$exists": False}}

            result = await self.db.sub_accounts.update_one(
                guard,
                {"$set": {"committed": to_float(new_committed), "updated_at": datetime.utcnow()}},
                session=session
            )

            if result.matched_count == 1:
                sub["committed"] = to_float(new_committed)
                await self._record_movement(
                    sub, MOVEMENT_RELEASE, released, source_type, source_id, session
                )
                logger.info(
                    f"[LEDGER] release {to_float(released)} on {sub_account_id} "
                    f"(committed={sub['committed']}, available={to_float(compute_available(sub))})"
                )
                return balance_view(sub)

            logger.warning(
                f"[LEDGER] Sub-account {sub_account_id} changed during release, "
                f"retry {attempt + 1}/{MAX_RETRIES}"
            )
            await asyncio.sleep(RETRY_DELAY_MS * (attempt + 1) / 1000)

        raise ConcurrentModificationError("sub_accounts", sub_account_id, MAX_RETRIES)

    async def _increment(
        self,
        sub_account_id: str,
        field: str,
        amount: Amount,
        movement_kind: str,
        source_type: Optional[str],
        source_id: Optional[str],
        session,
        once_key: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        validate_non_negative(amount, "amount")
        value = round_financial(amount)

        oid = _oid(sub_account_id)
        query = {"_id": oid}
        update = {
            "$inc": {field: to_float(value)},
            "$set": {"updated_at": datetime.utcnow()}
        }
        if once_key:
            query["applied_movements"] = {"$ne": once_key}
            update["$push"] = {"applied_movements": once_key}

        sub = await self.db.sub_accounts.find_one_and_update(
            query, update,
            return_document=ReturnDocument.AFTER,
            session=session
        ) if oid else None

        if not sub and once_key and await self.db.sub_accounts.count_documents({"_id": oid}, session=session):
            logger.info(f"[LEDGER] {movement_kind} {once_key} already applied on {sub_account_id}")
            return None

        if not sub:
            logger.error(f"[LEDGER] {movement_kind} against missing sub-account {sub_account_id}")
            raise SubAccountNotFoundError(sub_account_id)

        await self._record_movement(sub, movement_kind, value, source_type, source_id, session)

        available = compute_available(sub)
        logger.info(
            f"[LEDGER] {movement_kind} {to_float(value)} on {sub_account_id} "
            f"({field}={to_float(sub[field])}, available={to_float(available)})"
        )
        if available < Decimal('0'):
            logger.warning(f"[LEDGER] Sub-account {sub_account_id} is over budget: available={to_float(available)}")

        return balance_view(sub)

    async def _record_movement(
        self,
        sub: Dict[str, Any],
        kind: str,
        amount: Decimal,
        source_type: Optional[str],
        source_id: Optional[str],
        session
    ) -> None:
        await self.db.ledger_movements.insert_one(
            {
                "project_id": sub.get("project_id"),
                "sub_account_id": str(sub["_id"]),
                "kind": kind,
                "amount": to_float(amount),
                "source_type": source_type,
                "source_id": source_id,
                "created_at": datetime.utcnow()
            },
            session=session
        )
