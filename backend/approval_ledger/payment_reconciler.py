"""
LEDGER ENGINE - PAYMENT RECONCILER

Applies full or partial payments from a payment forecast.

pay(item, amount_paid, receipt_ref):
1. receipt reference is a HARD precondition (MissingReceiptError)
2. item -> completed, partial_amount = amount_paid
3. invoice.paid_amount += amount_paid
   paid_amount >= amount * tolerance -> paid, else partial_paid
4. ledger: realize(amount_paid) on the invoice's sub-account; for a
   PO-backed invoice also release min(amount_paid, po.committed_amount)
5. forecast -> completed once every item is completed

Concurrent payments against one invoice are serialized by the caller.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from bson import ObjectId
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
import logging

from approval_ledger.budget_ledger import BudgetLedger
from approval_ledger.enums import ForecastStatus, InvoiceStatus, PaymentItemStatus
from approval_ledger.errors import (
    BusinessRuleViolation, DocumentNotFoundError, InvalidDocumentStateError,
    MissingReceiptError, PaymentAlreadyCompletedError, PaymentExceedsItemError
)
from approval_ledger.financial_precision import (
    Amount, meets_tolerance, safe_add, safe_min, to_decimal, to_float, validate_positive
)
from approval_ledger.invoices import effective_status, outstanding_amount
from approval_ledger.optimistic import LOCK_FIELD, as_object_id, update_with_retry
from approval_ledger.policy_service import PolicyService
from approval_ledger.state_machine import invoice_machine

logger = logging.getLogger(__name__)

ENTITY = "PAYMENT_FORECAST"

PAYABLE_STATUSES = {
    InvoiceStatus.PENDING.value,
    InvoiceStatus.PARTIAL_PAID.value,
    InvoiceStatus.OVERDUE.value,
}


def forecast_totals(forecast: Dict[str, Any]) -> Dict[str, Any]:
    """Scheduled vs. paid figures for a forecast."""
    items = forecast.get("items") or []
    scheduled = safe_add(*[i.get("amount", 0) for i in items])
    completed = [i for i in items if i.get("status") == PaymentItemStatus.COMPLETED.value]
    paid = safe_add(*[i.get("partial_amount") or 0 for i in completed])
    return {
        "items": len(items),
        "completed_items": len(completed),
        "scheduled": to_float(scheduled),
        "paid": to_float(paid),
        "remaining": to_float(scheduled - paid),
    }


def _payment_date(value) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, datetime.min.time())
    return datetime.fromisoformat(str(value))


class PaymentReconciler:

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        policy: Optional[PolicyService] = None,
        audit=None
    ):
        self.db = db
        self.policy = policy or PolicyService(db)
        self.audit = audit
        self.ledger = BudgetLedger(db)

    async def _audit(self, project_id, entity_type, entity_id, action, user_id, new=None):
        if self.audit is not None:
            await self.audit.log_action(project_id, entity_type, str(entity_id), action, user_id, None, new)

    async def _payable_invoice(self, project_id: str, invoice_id: str, session=None) -> Dict[str, Any]:
        invoice = await self.db.invoices.find_one(
            {"_id": as_object_id(invoice_id, "INVOICE"), "project_id": project_id},
            session=session
        )
        if not invoice:
            raise DocumentNotFoundError("INVOICE", invoice_id)
        status = effective_status(invoice)
        if status not in PAYABLE_STATUSES:
            raise InvalidDocumentStateError(
                f"Invoice {invoice.get('display_number')} is '{status}' and cannot be paid",
                details={"invoice_id": invoice_id, "status": status}
            )
        return invoice

    async def _linked_po(self, project_id: str, invoice: Dict[str, Any], session=None) -> Dict[str, Any]:
        po = await self.db.purchase_orders.find_one(
            {"_id": as_object_id(invoice["po_id"], "PURCHASE_ORDER"), "project_id": project_id},
            session=session
        )
        if not po:
            logger.error(
                f"[PAYMENT] {invoice.get('display_number')} links to missing PO {invoice['po_id']}"
            )
            raise DocumentNotFoundError("PURCHASE_ORDER", invoice["po_id"])
        return po

    # =========================================================================
    # FORECASTS
    # =========================================================================

    async def _build_item(self, project_id: str, item: Dict[str, Any], session=None) -> Dict[str, Any]:
        invoice_id = item.get("invoice_id")
        if invoice_id:
            invoice = await self._payable_invoice(project_id, invoice_id, session=session)
            amount = item.get("amount")
            amount = to_decimal(amount) if amount is not None else outstanding_amount(invoice)
            sub_account_id = invoice.get("sub_account_id")
            payee = item.get("payee") or invoice.get("supplier_id")
        else:
            if not item.get("payee"):
                raise BusinessRuleViolation(
                    "An ad-hoc payment item needs a payee", code="MISSING_PAYEE"
                )
            amount = to_decimal(item.get("amount"))
            sub_account_id = item.get("sub_account_id")
            payee = item["payee"]

        validate_positive(amount, "amount")
        return {
            "item_id": str(ObjectId()),
            "invoice_id": invoice_id,
            "payee": payee,
            "sub_account_id": sub_account_id,
            "amount": to_float(amount),
            "partial_amount": None,
            "status": PaymentItemStatus.PENDING.value,
            "receipt_ref": None,
        }

    async def create_forecast(
        self,
        project_id: str,
        name: str,
        payment_date,
        items: List[Dict[str, Any]],
        user_id: str,
        session=None
    ) -> Dict[str, Any]:
        built = [await self._build_item(project_id, item, session=session) for item in items]
        now = datetime.utcnow()
        forecast = {
            "project_id": project_id,
            "name": name,
            "payment_date": _payment_date(payment_date),
            "status": ForecastStatus.PENDING.value,
            "items": built,
            "created_by": user_id,
            "created_at": now,
            "updated_at": now,
            LOCK_FIELD: 0
        }
        result = await self.db.payment_forecasts.insert_one(forecast, session=session)
        forecast["_id"] = result.inserted_id

        logger.info(f"[PAYMENT] Forecast '{name}' created with {len(built)} item(s) in project {project_id}")
        await self._audit(project_id, ENTITY, forecast["_id"], "CREATE", user_id, forecast_totals(forecast))
        return forecast

    async def add_item(
        self,
        project_id: str,
        forecast_id: str,
        item: Dict[str, Any],
        session=None
    ) -> Dict[str, Any]:
        """Append an item; a completed forecast becomes pending again."""
        built = await self._build_item(project_id, item, session=session)

        async def mutate(forecast):
            return {
                "items": list(forecast.get("items") or []) + [built],
                "status": ForecastStatus.PENDING.value
            }

        return await update_with_retry(
            self.db.payment_forecasts, forecast_id, mutate, ENTITY,
            extra_filter={"project_id": project_id}, session=session
        )

    async def get_forecast(self, project_id: str, forecast_id: str, session=None) -> Dict[str, Any]:
        forecast = await self.db.payment_forecasts.find_one(
            {"_id": as_object_id(forecast_id, ENTITY), "project_id": project_id},
            session=session
        )
        if not forecast:
            raise DocumentNotFoundError(ENTITY, forecast_id)
        return forecast

    # =========================================================================
    # PAYMENT
    # =========================================================================

    async def pay(
        self,
        project_id: str,
        forecast_id: str,
        item_id: str,
        amount_paid: Amount,
        receipt_ref: Optional[str],
        user_id: str,
        session=None
    ) -> Dict[str, Any]:
        """
        Pay one forecast item.

        Raises:
            MissingReceiptError: no receipt reference
            PaymentExceedsItemError: amount_paid > item amount
            PaymentAlreadyCompletedError: item already paid
            InvalidDocumentStateError: linked invoice is not payable
            DocumentNotFoundError: unknown item, or the invoice's PO is gone
        """
        receipt_ref = (receipt_ref or "").strip()
        if not receipt_ref:
            raise MissingReceiptError("A receipt reference is required before a payment can be completed")
        validate_positive(amount_paid, "amount_paid")
        paid = to_decimal(amount_paid)

        forecast = await self.get_forecast(project_id, forecast_id, session=session)
        item = next((i for i in forecast.get("items") or [] if i.get("item_id") == item_id), None)
        if item is None:
            raise DocumentNotFoundError("PAYMENT_ITEM", item_id)
        if item.get("invoice_id"):
            invoice = await self._payable_invoice(project_id, item["invoice_id"], session=session)
            if invoice.get("po_id"):
                # before any write
                await self._linked_po(project_id, invoice, session=session)

        paid_item = {}

        async def complete_item(forecast):
            items = [dict(i) for i in forecast.get("items") or []]
            target = next((i for i in items if i.get("item_id") == item_id), None)
            if target is None:
                raise DocumentNotFoundError("PAYMENT_ITEM", item_id)
            if target.get("status") == PaymentItemStatus.COMPLETED.value:
                raise PaymentAlreadyCompletedError(
                    f"Payment item {item_id} is already completed",
                    details={"item_id": item_id, "partial_amount": target.get("partial_amount")}
                )
            if paid > to_decimal(target.get("amount", 0)):
                raise PaymentExceedsItemError(
                    f"Amount paid {to_float(paid)} exceeds scheduled amount {target.get('amount')}",
                    details={"item_id": item_id, "amount": target.get("amount"), "amount_paid": to_float(paid)}
                )

            target.update({
                "status": PaymentItemStatus.COMPLETED.value,
                "partial_amount": to_float(paid),
                "receipt_ref": receipt_ref,
                "paid_at": datetime.utcnow(),
                "paid_by": user_id
            })
            paid_item.update(target)

            all_done = all(i.get("status") == PaymentItemStatus.COMPLETED.value for i in items)
            return {
                "items": items,
                "status": ForecastStatus.COMPLETED.value if all_done else ForecastStatus.PENDING.value
            }

        forecast = await update_with_retry(
            self.db.payment_forecasts, forecast_id, complete_item, ENTITY,
            extra_filter={"project_id": project_id}, session=session
        )

        invoice = None
        released = Decimal('0')
        if paid_item.get("invoice_id"):
            invoice = await self._apply_to_invoice(project_id, paid_item, paid, user_id, session)
            sub_account_id = invoice.get("sub_account_id")
            if invoice.get("po_id"):
                released = await self._release_po_commitment(project_id, invoice, paid, session)
        else:
            sub_account_id = paid_item.get("sub_account_id")

        if sub_account_id:
            await self.ledger.realize(
                sub_account_id, paid,
                source_type="payment", source_id=f"{forecast_id}:{item_id}", session=session
            )
        else:
            logger.warning(f"[PAYMENT] Item {item_id} has no sub-account; nothing realized")

        logger.info(
            f"[PAYMENT] Paid {to_float(paid)} on item {item_id} of forecast {forecast_id} "
            f"(receipt={receipt_ref}, released={to_float(released)}, forecast={forecast['status']})"
        )
        await self._audit(project_id, ENTITY, forecast_id, "PAY", user_id, {
            "item_id": item_id,
            "amount_paid": to_float(paid),
            "receipt_ref": receipt_ref,
            "invoice_id": paid_item.get("invoice_id")
        })

        return {
            "forecast_id": forecast_id,
            "forecast_status": forecast["status"],
            "item": paid_item,
            "invoice_status": invoice["status"] if invoice else None,
            "invoice_paid_amount": invoice.get("paid_amount") if invoice else None,
            "realized": to_float(paid) if sub_account_id else 0.0,
            "released": to_float(released),
        }

    async def _apply_to_invoice(
        self,
        project_id: str,
        item: Dict[str, Any],
        paid: Decimal,
        user_id: str,
        session
    ) -> Dict[str, Any]:
        tolerance = await self.policy.payment_tolerance()

        async def mutate(invoice):
            total = to_decimal(invoice.get("paid_amount", 0)) + paid
            target = (
                InvoiceStatus.PAID.value
                if meets_tolerance(total, invoice.get("amount", 0), tolerance)
                else InvoiceStatus.PARTIAL_PAID.value
            )
            changes = invoice_machine.apply(
                invoice, target, user_id,
                {"amount_paid": to_float(paid), "receipt_ref": item["receipt_ref"]}
            )
            changes["paid_amount"] = to_float(total)
            changes["payments"] = list(invoice.get("payments") or []) + [{
                "item_id": item["item_id"],
                "amount": to_float(paid),
                "receipt_ref": item["receipt_ref"],
                "paid_at": item["paid_at"],
                "paid_by": user_id
            }]
            return changes

        invoice = await update_with_retry(
            self.db.invoices, item["invoice_id"], mutate, "INVOICE",
            extra_filter={"project_id": project_id}, session=session
        )
        logger.info(
            f"[PAYMENT] {invoice.get('display_number')} paid_amount={invoice['paid_amount']} "
            f"of {invoice.get('amount')} -> {invoice['status']}"
        )
        return invoice

    async def _release_po_commitment(
        self,
        project_id: str,
        invoice: Dict[str, Any],
        paid: Decimal,
        session
    ) -> Decimal:
        """Move min(paid, outstanding commitment) off the PO."""
        released = {"amount": Decimal('0')}

        async def mutate(po):
            outstanding = to_decimal(po.get("committed_amount", 0))
            amount = safe_min(paid, outstanding)
            released["amount"] = amount
            if amount <= 0:
                return None
            return {"committed_amount": to_float(outstanding - amount)}

        po = await update_with_retry(
            self.db.purchase_orders, invoice["po_id"], mutate, "PURCHASE_ORDER",
            extra_filter={"project_id": project_id}, session=session
        )

        if released["amount"] > 0:
            await self.ledger.release(
                po["sub_account_id"], released["amount"],
                source_type="purchase_order", source_id=str(po["_id"]), session=session
            )
        return released["amount"]
