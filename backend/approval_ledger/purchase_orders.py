"""
LEDGER ENGINE - PURCHASE ORDERS

Lifecycle operations around the approval engine:
create -> (submit) -> approved -> closed | cancelled, plus delete.

Ledger effects:
- approval commits the amount (ApprovalWorkflowEngine.ensure_budget_committed)
- cancel and delete release whatever is still committed
- paying a linked invoice releases progressively (PaymentReconciler)
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Any, Dict, List, Optional
import asyncio
import logging

from approval_ledger.approval_workflow import ApprovalWorkflowEngine, DecisionResult
from approval_ledger.budget_ledger import BudgetLedger
from approval_ledger.enums import DocumentKind, InvoiceStatus, POStatus
from approval_ledger.errors import (
    BusinessRuleViolation, ConcurrentModificationError, DocumentNotFoundError, POHasInvoicesError
)
from approval_ledger.financial_precision import to_decimal, to_float, validate_positive
from approval_ledger.optimistic import (
    MAX_RETRIES, RETRY_DELAY_MS, as_object_id, update_with_retry, version_filter
)
from approval_ledger.policy_service import PolicyService
from approval_ledger.sequence_allocator import SequenceAllocator, format_number
from approval_ledger.state_machine import purchase_order_machine

logger = logging.getLogger(__name__)

ENTITY = "PURCHASE_ORDER"
KIND = DocumentKind.PURCHASE_ORDER.value

# Invoices in these states no longer hold a PO in place
INACTIVE_INVOICE_STATUSES = [InvoiceStatus.CANCELLED.value, InvoiceStatus.REJECTED.value]


class PurchaseOrderService:

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        policy: Optional[PolicyService] = None,
        audit=None,
        engine: Optional[ApprovalWorkflowEngine] = None
    ):
        self.db = db
        self.policy = policy or PolicyService(db)
        self.audit = audit
        self.engine = engine or ApprovalWorkflowEngine(db, self.policy, audit)
        self.ledger = BudgetLedger(db)
        self.sequences = SequenceAllocator(db)

    async def _audit(self, project_id, po, action, user_id, old=None, new=None, reason=None):
        if self.audit is not None:
            await self.audit.log_action(
                project_id, ENTITY, str(po["_id"]), action, user_id, old, new,
                display_number=po.get("display_number"), reason=reason
            )

    # =========================================================================
    # CREATE / SUBMIT
    # =========================================================================

    async def create(
        self,
        project_id: str,
        data: Dict[str, Any],
        user_id: str,
        submit: bool = False,
        session=None
    ) -> Dict[str, Any]:
        """
        Create a draft PO with the next sequential number.
        With submit=True the PO goes straight into approval.
        """
        validate_positive(data.get("amount"), "amount")
        sub_account_id = data.get("sub_account_id")
        sub = await self.ledger.get_sub_account(sub_account_id, session=session)
        if sub.get("project_id") != project_id:
            raise DocumentNotFoundError("sub_account", sub_account_id)

        number = await self.sequences.next_number(project_id, KIND, session=session)
        now = datetime.utcnow()
        po = {
            "project_id": project_id,
            "number": number,
            "display_number": format_number(KIND, number),
            "supplier_id": data.get("supplier_id"),
            "sub_account_id": sub_account_id,
            "amount": to_float(data["amount"]),
            "description": data.get("description", ""),
            "department": data.get("department"),
            "status": POStatus.DRAFT.value,
            "approval_status": None,
            "approval_steps": [],
            "current_approval_step": 0,
            "invoiced_amount": 0.0,
            "committed_amount": 0.0,
            "budget_committed": False,
            "over_budget": False,
            "state_history": [],
            "created_by": user_id,
            "created_at": now,
            "updated_at": now,
            "lock_version": 0
        }
        result = await self.db.purchase_orders.insert_one(po, session=session)
        po["_id"] = result.inserted_id

        logger.info(f"[PO] {po['display_number']} created in project {project_id} by {user_id}")
        await self._audit(project_id, po, "CREATE", user_id,
                          new={"amount": po["amount"]})

        if submit:
            await self.submit(project_id, str(po["_id"]), user_id, session=session)
            return await self.get(project_id, str(po["_id"]), session=session)
        return po

    async def submit(self, project_id: str, po_id: str, user_id: str, session=None) -> DecisionResult:
        return await self.engine.submit(project_id, KIND, po_id, user_id, session=session)

    # =========================================================================
    # TERMINAL TRANSITIONS
    # =========================================================================

    async def close(self, project_id: str, po_id: str, user_id: str, session=None) -> Dict[str, Any]:
        """approved -> closed. Outstanding commitment stays as recorded."""

        async def mutate(po):
            changes = purchase_order_machine.apply(po, POStatus.CLOSED.value, user_id)
            changes.update({"closed_at": datetime.utcnow(), "closed_by": user_id})
            return changes

        po = await update_with_retry(
            self.db.purchase_orders, po_id, mutate, ENTITY,
            extra_filter={"project_id": project_id}, session=session
        )
        await self._audit(project_id, po, "CLOSE", user_id, new={"status": po["status"]})
        return po

    async def cancel(
        self,
        project_id: str,
        po_id: str,
        user_id: str,
        reason: Optional[str] = None,
        session=None
    ) -> Dict[str, Any]:
        """
        approved -> cancelled, only while nothing has been invoiced.
        Releases the outstanding commitment.
        """
        reason = (reason or "").strip() or None
        if not reason and await self.policy.is_cancellation_reason_required():
            raise BusinessRuleViolation(
                "A cancellation must state a reason", code="CANCELLATION_REASON_REQUIRED"
            )

        released = {}

        async def mutate(po):
            changes = purchase_order_machine.apply(po, POStatus.CANCELLED.value, user_id, {"reason": reason})
            released["amount"] = to_decimal(po.get("committed_amount", 0))
            changes.update({
                "committed_amount": 0.0,
                "cancellation_reason": reason,
                "cancelled_at": datetime.utcnow(),
                "cancelled_by": user_id
            })
            return changes

        po = await update_with_retry(
            self.db.purchase_orders, po_id, mutate, ENTITY,
            extra_filter={"project_id": project_id}, session=session
        )

        if released["amount"] > 0:
            await self.ledger.release(
                po["sub_account_id"], released["amount"],
                source_type="purchase_order", source_id=str(po["_id"]), session=session
            )

        logger.info(f"[PO] {po['display_number']} cancelled by {user_id}, released {to_float(released['amount'])}")
        await self._audit(project_id, po, "CANCEL", user_id,
                          new={"released": to_float(released["amount"])}, reason=reason)
        return po

    # =========================================================================
    # DELETE
    # =========================================================================

    async def delete(self, project_id: str, po_id: str, user_id: str, session=None) -> Dict[str, Any]:
        """
        Delete a PO, release its outstanding commitment and reclaim its
        number if it is the latest one and no invoice links to it.

        Raises:
            POHasInvoicesError: a live (not cancelled or rejected) invoice
                still links to the PO
        """
        oid = as_object_id(po_id, ENTITY)

        for attempt in range(MAX_RETRIES):
            po = await self.db.purchase_orders.find_one({"_id": oid, "project_id": project_id}, session=session)
            if not po:
                raise DocumentNotFoundError(ENTITY, po_id)

            # an invoice create bumps lock_version, failing the delete below
            live = await self.db.invoices.count_documents(
                {
                    "project_id": project_id,
                    "po_id": str(po["_id"]),
                    "status": {"$nin": INACTIVE_INVOICE_STATUSES}
                },
                session=session
            )
            invoiced = to_decimal(po.get("invoiced_amount", 0))
            if live > 0 or invoiced != 0:
                raise POHasInvoicesError(
                    f"Purchase order {po['display_number']} has {live} linked invoice(s); "
                    f"cancel or delete them first",
                    details={"po_id": po_id, "linked_invoices": live, "invoiced_amount": to_float(invoiced)}
                )

            result = await self.db.purchase_orders.delete_one(version_filter(po), session=session)
            if result.deleted_count == 1:
                break

            logger.warning(f"[PO] {po_id} changed during delete, retry {attempt + 1}/{MAX_RETRIES}")
            await asyncio.sleep(RETRY_DELAY_MS * (attempt + 1) / 1000)
        else:
            raise ConcurrentModificationError(ENTITY, po_id, MAX_RETRIES)

        outstanding = to_decimal(po.get("committed_amount", 0))
        if outstanding > 0:
            await self.ledger.release(
                po["sub_account_id"], outstanding,
                source_type="purchase_order", source_id=str(po["_id"]), session=session
            )

        # cancelled or rejected invoices still carry the number
        linked = await self.db.invoices.count_documents(
            {"project_id": project_id, "po_id": str(po["_id"])},
            session=session
        )
        reclaimed = await self.sequences.reclaim(
            project_id, KIND, po["number"], has_dependents=linked > 0, session=session
        )

        logger.info(
            f"[PO] {po['display_number']} deleted by {user_id} "
            f"(released={to_float(outstanding)}, reclaimed={reclaimed})"
        )
        await self._audit(project_id, po, "DELETE", user_id,
                          old={"display_number": po["display_number"], "status": po["status"]},
                          new={"released": to_float(outstanding), "number_reclaimed": reclaimed})

        return {
            "po_id": po_id,
            "display_number": po["display_number"],
            "released": to_float(outstanding),
            "number_reclaimed": reclaimed
        }

    # =========================================================================
    # READS
    # =========================================================================

    async def get(self, project_id: str, po_id: str, session=None) -> Dict[str, Any]:
        po = await self.db.purchase_orders.find_one(
            {"_id": as_object_id(po_id, ENTITY), "project_id": project_id},
            session=session
        )
        if not po:
            raise DocumentNotFoundError(ENTITY, po_id)
        return po

    async def list(self, project_id: str, status: Optional[str] = None, session=None) -> List[Dict[str, Any]]:
        query = {"project_id": project_id}
        if status:
            query["status"] = status
        return await self.db.purchase_orders.find(query, session=session).sort("number", 1).to_list(length=None)

