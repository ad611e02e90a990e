"""
LEDGER ENGINE - INVOICES

Invoices have no draft: creation allocates the number and submits in one
go. Approval leaves the invoice `pending` (payable). A linked PO counts the
invoice in its invoiced_amount from creation on.

`overdue` is never stored. effective_status() derives it on read from
`pending` + due_date.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union
import asyncio
import logging

from approval_ledger.approval_workflow import ApprovalWorkflowEngine
from approval_ledger.budget_ledger import BudgetLedger
from approval_ledger.enums import DocumentKind, InvoiceStatus, POStatus
from approval_ledger.errors import (
    BusinessRuleViolation, ConcurrentModificationError, DocumentNotFoundError,
    InvoiceHasPaymentsError, LinkedPurchaseOrderNotApprovedError
)
from approval_ledger.financial_precision import (
    to_decimal, to_float, validate_positive, safe_subtract
)
from approval_ledger.optimistic import (
    LOCK_FIELD, MAX_RETRIES, RETRY_DELAY_MS, as_object_id, update_with_retry, version_filter
)
from approval_ledger.policy_service import PolicyService
from approval_ledger.sequence_allocator import SequenceAllocator, format_number
from approval_ledger.state_machine import invoice_machine

logger = logging.getLogger(__name__)

ENTITY = "INVOICE"
KIND = DocumentKind.INVOICE.value


# =============================================================================
# DERIVED FIELDS
# =============================================================================

def _as_date(value: Union[str, date, datetime, None]) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.fromisoformat(str(value)).date()


def effective_status(invoice: Dict[str, Any], today: Optional[date] = None) -> str:
    """Stored status, except a `pending` invoice past its due date reads as `overdue`."""
    status = invoice.get("status")
    if status != InvoiceStatus.PENDING.value:
        return status

    due = _as_date(invoice.get("due_date"))
    today = today or datetime.utcnow().date()
    if due is not None and due < today:
        return InvoiceStatus.OVERDUE.value
    return status


def outstanding_amount(invoice: Dict[str, Any]) -> Decimal:
    remaining = safe_subtract(invoice.get("amount", 0), invoice.get("paid_amount", 0))
    return remaining if remaining > 0 else Decimal('0')


def invoice_view(invoice: Dict[str, Any], today: Optional[date] = None) -> Dict[str, Any]:
    view = dict(invoice)
    view["effective_status"] = effective_status(invoice, today)
    view["outstanding_amount"] = to_float(outstanding_amount(invoice))
    return view


class InvoiceService:

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

    async def _audit(self, project_id, invoice, action, user_id, old=None, new=None, reason=None):
        if self.audit is not None:
            await self.audit.log_action(
                project_id, ENTITY, str(invoice["_id"]), action, user_id, old, new,
                display_number=invoice.get("display_number"), reason=reason
            )

    # =========================================================================
    # CREATE
    # =========================================================================

    async def create(
        self,
        project_id: str,
        data: Dict[str, Any],
        user_id: str,
        session=None
    ) -> Dict[str, Any]:
        """
        Create and submit an invoice.

        A PO-backed invoice adds its amount to the PO's invoiced_amount
        right away; rejection, cancellation and deletion take it back off.

        Raises:
            LinkedPurchaseOrderNotApprovedError: po_id given but PO not approved
        """
        validate_positive(data.get("amount"), "amount")
        amount = to_float(data["amount"])

        po_id = data.get("po_id")
        sub_account_id = data.get("sub_account_id")
        if po_id:
            po = await self.db.purchase_orders.find_one(
                {"_id": as_object_id(po_id, "PURCHASE_ORDER"), "project_id": project_id},
                session=session
            )
            if not po:
                raise DocumentNotFoundError("PURCHASE_ORDER", po_id)
            if po.get("status") != POStatus.APPROVED.value:
                raise LinkedPurchaseOrderNotApprovedError(
                    f"Purchase order {po.get('display_number')} is '{po.get('status')}', not approved",
                    details={"po_id": po_id, "status": po.get("status")}
                )
            sub_account_id = sub_account_id or po.get("sub_account_id")

        if not sub_account_id:
            raise BusinessRuleViolation(
                "An invoice needs a sub-account or a purchase order to charge",
                code="MISSING_SUB_ACCOUNT"
            )
        sub = await self.ledger.get_sub_account(sub_account_id, session=session)
        if sub.get("project_id") != project_id:
            raise DocumentNotFoundError("sub_account", sub_account_id)

        due = _as_date(data.get("due_date"))
        invoice = {
            "project_id": project_id,
            "po_id": str(po_id) if po_id else None,
            "supplier_id": data.get("supplier_id"),
            "sub_account_id": sub_account_id,
            "amount": amount,
            "due_date": datetime.combine(due, datetime.min.time()) if due else None,
            "description": data.get("description", ""),
            "status": InvoiceStatus.PENDING_APPROVAL.value,
            "approval_status": None,
            "approval_steps": [],
            "current_approval_step": 0,
            "paid_amount": 0.0,
            "payments": [],
            "po_invoiced_applied": bool(po_id),
            "state_history": [],
            "created_by": user_id,
            LOCK_FIELD: 0
        }

        if po_id:
            # Re-checks the PO status atomically; a cancel in between loses
            await self.engine.add_invoice_to_po(project_id, po_id, amount, session=session)
        try:
            number = await self.sequences.next_number(project_id, KIND, session=session)
            now = datetime.utcnow()
            invoice.update({
                "number": number,
                "display_number": format_number(KIND, number),
                "created_at": now,
                "updated_at": now
            })
            result = await self.db.invoices.insert_one(invoice, session=session)
        except Exception:
            if po_id:
                await self.engine.remove_invoice_from_po(invoice, session=session)
            raise
        invoice["_id"] = result.inserted_id

        logger.info(f"[INVOICE] {invoice['display_number']} created in project {project_id} by {user_id}")
        await self._audit(project_id, invoice, "CREATE", user_id,
                          new={"amount": invoice["amount"]})

        await self.engine.submit(project_id, KIND, str(invoice["_id"]), user_id, session=session)
        return await self.get(project_id, str(invoice["_id"]), session=session)

    # =========================================================================
    # CANCEL / DELETE
    # =========================================================================

    async def cancel(
        self,
        project_id: str,
        invoice_id: str,
        user_id: str,
        reason: Optional[str] = None,
        session=None
    ) -> Dict[str, Any]:
        """Cancel an unpaid invoice; reverses its contribution to the PO."""
        reversal = {}

        async def mutate(invoice):
            if to_decimal(invoice.get("paid_amount", 0)) > 0:
                raise InvoiceHasPaymentsError(
                    f"Invoice {invoice.get('display_number')} already has payments applied",
                    details={"paid_amount": invoice.get("paid_amount")}
                )
            changes = invoice_machine.apply(invoice, InvoiceStatus.CANCELLED.value, user_id, {"reason": reason})
            reversal["applied"] = bool(invoice.get("po_invoiced_applied"))
            changes.update({
                "po_invoiced_applied": False,
                "cancellation_reason": reason,
                "cancelled_at": datetime.utcnow(),
                "cancelled_by": user_id
            })
            return changes

        invoice = await update_with_retry(
            self.db.invoices, invoice_id, mutate, ENTITY,
            extra_filter={"project_id": project_id}, session=session
        )
        if reversal["applied"] and invoice.get("po_id"):
            await self.engine.remove_invoice_from_po(invoice, session=session)

        await self._audit(project_id, invoice, "CANCEL", user_id,
                          new={"status": invoice["status"]}, reason=reason)
        return invoice

    async def delete(self, project_id: str, invoice_id: str, user_id: str, session=None) -> Dict[str, Any]:
        """
        Delete an unpaid invoice and reclaim its number when it is the latest.

        Raises:
            InvoiceHasPaymentsError: any payment has been applied
        """
        oid = as_object_id(invoice_id, ENTITY)

        for attempt in range(MAX_RETRIES):
            invoice = await self.db.invoices.find_one({"_id": oid, "project_id": project_id}, session=session)
            if not invoice:
                raise DocumentNotFoundError(ENTITY, invoice_id)
            if to_decimal(invoice.get("paid_amount", 0)) > 0:
                raise InvoiceHasPaymentsError(
                    f"Invoice {invoice.get('display_number')} already has payments applied",
                    details={"paid_amount": invoice.get("paid_amount")}
                )

            result = await self.db.invoices.delete_one(version_filter(invoice), session=session)
            if result.deleted_count == 1:
                break

            logger.warning(f"[INVOICE] {invoice_id} changed during delete, retry {attempt + 1}/{MAX_RETRIES}")
            await asyncio.sleep(RETRY_DELAY_MS * (attempt + 1) / 1000)
        else:
            raise ConcurrentModificationError(ENTITY, invoice_id, MAX_RETRIES)

        if invoice.get("po_invoiced_applied") and invoice.get("po_id"):
            await self.engine.remove_invoice_from_po(invoice, session=session)

        scheduled = await self.db.payment_forecasts.count_documents(
            {"project_id": project_id, "items.invoice_id": invoice_id},
            session=session
        )
        reclaimed = await self.sequences.reclaim(
            project_id, KIND, invoice["number"], has_dependents=scheduled > 0, session=session
        )

        logger.info(f"[INVOICE] {invoice['display_number']} deleted by {user_id} (reclaimed={reclaimed})")
        await self._audit(project_id, invoice, "DELETE", user_id,
                          old={"display_number": invoice["display_number"], "status": invoice["status"]},
                          new={"number_reclaimed": reclaimed})

        return {
            "invoice_id": invoice_id,
            "display_number": invoice["display_number"],
            "number_reclaimed": reclaimed
        }

    # =========================================================================
    # READS
    # =========================================================================

    async def get(self, project_id: str, invoice_id: str, session=None) -> Dict[str, Any]:
        invoice = await self.db.invoices.find_one(
            {"_id": as_object_id(invoice_id, ENTITY), "project_id": project_id},
            session=session
        )
        if not invoice:
            raise DocumentNotFoundError(ENTITY, invoice_id)
        return invoice

    async def list(self, project_id: str, status: Optional[str] = None, session=None) -> List[Dict[str, Any]]:
        """`overdue` filters on the derived status."""
        query = {"project_id": project_id}
        if status == InvoiceStatus.OVERDUE.value:
            query["status"] = InvoiceStatus.PENDING.value
        elif status:
            query["status"] = status

        invoices = await self.db.invoices.find(query, session=session).sort("number", 1).to_list(length=None)
        if status == InvoiceStatus.OVERDUE.value:
            invoices = [i for i in invoices if effective_status(i) == InvoiceStatus.OVERDUE.value]
        return invoices
