"""
Payment Reconciler Tests
Testing: receipt precondition, full/partial payments, tolerance,
commitment release, forecast completion, end-to-end ledger flow,
PO delete/cancel around linked invoices
"""
from datetime import date

import pytest
from bson import ObjectId

from approval_ledger.approval_config import ApprovalConfigService
from approval_ledger.approval_workflow import ApprovalWorkflowEngine
from approval_ledger.budget_ledger import BudgetLedger
from approval_ledger.errors import (
    BusinessRuleViolation, DocumentNotFoundError, InvalidDocumentStateError,
    LinkedPurchaseOrderNotApprovedError, MissingReceiptError, PaymentAlreadyCompletedError,
    PaymentExceedsItemError, POHasInvoicesError
)
from approval_ledger.invariant_validator import LedgerInvariantValidator
from approval_ledger.invoices import InvoiceService, outstanding_amount
from approval_ledger.payment_reconciler import PaymentReconciler, forecast_totals
from approval_ledger.purchase_orders import PurchaseOrderService

from conftest import PROJECT_ID, role_step

PAY_DATE = date(2024, 2, 1)


@pytest.fixture
def engine(db, policy):
    return ApprovalWorkflowEngine(db, policy)


@pytest.fixture
def reconciler(db, policy):
    return PaymentReconciler(db, policy)


@pytest.fixture
async def config(db):
    await ApprovalConfigService(db).save_config(PROJECT_ID, [role_step("PM")], [role_step("Controller")], "admin")


@pytest.fixture
async def approved_invoice(db, policy, engine, sub_account_id, members, config):
    """Approved 1000 invoice against an approved 4000 PO"""
    pos = PurchaseOrderService(db, policy, engine=engine)
    po = await pos.create(PROJECT_ID, {"sub_account_id": sub_account_id, "amount": 4000}, "crew-1", submit=True)
    await engine.approve(PROJECT_ID, "pos", str(po["_id"]), "pm-1")

    invoice = await InvoiceService(db, policy, engine=engine).create(
        PROJECT_ID, {"po_id": str(po["_id"]), "amount": 1000}, "crew-1"
    )
    await engine.approve(PROJECT_ID, "invoices", str(invoice["_id"]), "ctl-1")
    return str(invoice["_id"])


async def schedule(reconciler, invoice_id, amount=None):
    item = {"invoice_id": invoice_id}
    if amount is not None:
        item["amount"] = amount
    forecast = await reconciler.create_forecast(PROJECT_ID, "Week 5", PAY_DATE, [item], "ctl-1")
    return str(forecast["_id"]), forecast["items"][0]["item_id"]


class TestForecasts:
    """Building payment forecasts"""

    async def test_item_defaults_to_outstanding(self, reconciler, approved_invoice):
        forecast_id, _ = await schedule(reconciler, approved_invoice)
        forecast = await reconciler.get_forecast(PROJECT_ID, forecast_id)

        assert forecast["status"] == "pending"
        assert forecast["items"][0]["amount"] == 1000.0
        assert forecast_totals(forecast)["remaining"] == 1000.0

    async def test_unapproved_invoice_cannot_be_scheduled(self, db, policy, engine, reconciler, sub_account_id, members, config):
        invoice = await InvoiceService(db, policy, engine=engine).create(
            PROJECT_ID, {"sub_account_id": sub_account_id, "amount": 50}, "crew-1"
        )
        with pytest.raises(InvalidDocumentStateError):
            await schedule(reconciler, str(invoice["_id"]))

    async def test_adhoc_item_needs_payee(self, reconciler, sub_account_id):
        with pytest.raises(BusinessRuleViolation) as exc:
            await reconciler.create_forecast(
                PROJECT_ID, "Petty", PAY_DATE, [{"amount": 20, "sub_account_id": sub_account_id}], "ctl-1"
            )
        assert exc.value.code == "MISSING_PAYEE"

    async def test_adding_item_reopens_forecast(self, reconciler, sub_account_id):
        forecast = await reconciler.create_forecast(
            PROJECT_ID, "Petty", PAY_DATE,
            [{"payee": "Taxi Co", "amount": 20, "sub_account_id": sub_account_id}], "ctl-1"
        )
        forecast_id = str(forecast["_id"])
        await reconciler.pay(PROJECT_ID, forecast_id, forecast["items"][0]["item_id"], 20, "R-1", "ctl-1")
        assert (await reconciler.get_forecast(PROJECT_ID, forecast_id))["status"] == "completed"

        updated = await reconciler.add_item(
            PROJECT_ID, forecast_id, {"payee": "Catering", "amount": 30, "sub_account_id": sub_account_id}
        )
        assert updated["status"] == "pending"
        assert len(updated["items"]) == 2


class TestPay:
    """Applying payments"""

    async def test_receipt_is_required(self, reconciler, approved_invoice):
        forecast_id, item_id = await schedule(reconciler, approved_invoice)

        with pytest.raises(MissingReceiptError):
            await reconciler.pay(PROJECT_ID, forecast_id, item_id, 1000, "  ", "ctl-1")

        forecast = await reconciler.get_forecast(PROJECT_ID, forecast_id)
        assert forecast["items"][0]["status"] == "pending"

    async def test_full_payment_marks_invoice_paid(self, db, reconciler, approved_invoice):
        forecast_id, item_id = await schedule(reconciler, approved_invoice)

        result = await reconciler.pay(PROJECT_ID, forecast_id, item_id, 1000, "RCPT-100", "ctl-1")

        assert result["invoice_status"] == "paid"
        assert result["forecast_status"] == "completed"
        assert result["item"]["partial_amount"] == 1000.0
        assert result["released"] == 1000.0

    async def test_half_payment_is_partial(self, db, reconciler, approved_invoice):
        forecast_id, item_id = await schedule(reconciler, approved_invoice)

        result = await reconciler.pay(PROJECT_ID, forecast_id, item_id, 500, "RCPT-101", "ctl-1")

        assert result["invoice_status"] == "partial_paid"
        invoice = await db.invoices.find_one({"project_id": PROJECT_ID})
        assert invoice["paid_amount"] == 500.0
        assert outstanding_amount(invoice) == 500
        assert len(invoice["payments"]) == 1

        second_id, second_item = await schedule(reconciler, approved_invoice)
        second = await reconciler.pay(PROJECT_ID, second_id, second_item, 500, "RCPT-102", "ctl-1")
        assert second["invoice_status"] == "paid"

    async def test_tolerance_counts_as_paid(self, reconciler, approved_invoice):
        """995 of 1000 is within the default 0.99 tolerance"""
        forecast_id, item_id = await schedule(reconciler, approved_invoice, amount=995)
        result = await reconciler.pay(PROJECT_ID, forecast_id, item_id, 995, "RCPT-103", "ctl-1")
        assert result["invoice_status"] == "paid"

    async def test_amount_cannot_exceed_item(self, reconciler, approved_invoice):
        forecast_id, item_id = await schedule(reconciler, approved_invoice)
        with pytest.raises(PaymentExceedsItemError):
            await reconciler.pay(PROJECT_ID, forecast_id, item_id, 1000.01, "RCPT-104", "ctl-1")

    async def test_item_paid_only_once(self, reconciler, approved_invoice):
        forecast_id, item_id = await schedule(reconciler, approved_invoice, amount=300)
        await reconciler.pay(PROJECT_ID, forecast_id, item_id, 300, "RCPT-105", "ctl-1")

        with pytest.raises(PaymentAlreadyCompletedError):
            await reconciler.pay(PROJECT_ID, forecast_id, item_id, 300, "RCPT-106", "ctl-1")

    async def test_forecast_completes_after_last_item(self, reconciler, approved_invoice, sub_account_id):
        forecast = await reconciler.create_forecast(
            PROJECT_ID, "Week 6", PAY_DATE,
            [{"invoice_id": approved_invoice}, {"payee": "Taxi Co", "amount": 25, "sub_account_id": sub_account_id}],
            "ctl-1"
        )
        forecast_id = str(forecast["_id"])
        first, second = [i["item_id"] for i in forecast["items"]]

        result = await reconciler.pay(PROJECT_ID, forecast_id, first, 1000, "R-1", "ctl-1")
        assert result["forecast_status"] == "pending"

        result = await reconciler.pay(PROJECT_ID, forecast_id, second, 25, "R-2", "ctl-1")
        assert result["forecast_status"] == "completed"
        assert forecast_totals(await reconciler.get_forecast(PROJECT_ID, forecast_id))["paid"] == 1025.0


class TestLedgerFlow:
    """Budget figures through the whole lifecycle"""

    async def test_end_to_end_po_invoice_payment(self, db, policy, engine, reconciler, sub_account_id, members):
        """budget 10000 -> PO 4000 approved -> invoice 4000 paid in full"""
        ledger = BudgetLedger(db)
        pos = PurchaseOrderService(db, policy, engine=engine)

        po = await pos.create(PROJECT_ID, {"sub_account_id": sub_account_id, "amount": 4000}, "crew-1", submit=True)
        await engine.approve(PROJECT_ID, "pos", str(po["_id"]), "pm-1")

        balance = await ledger.get_balance(sub_account_id)
        assert balance["committed"] == 4000.0
        assert balance["available"] == 6000.0

        invoice = await InvoiceService(db, policy, engine=engine).create(
            PROJECT_ID, {"po_id": str(po["_id"]), "amount": 4000}, "crew-1"
        )
        await engine.approve(PROJECT_ID, "invoices", str(invoice["_id"]), "ctl-1")

        forecast_id, item_id = await schedule(reconciler, str(invoice["_id"]))
        result = await reconciler.pay(PROJECT_ID, forecast_id, item_id, 4000, "RCPT-200", "ctl-1")

        assert result["invoice_status"] == "paid"
        balance = await ledger.get_balance(sub_account_id)
        assert balance["actual"] == 4000.0
        assert balance["committed"] == 0.0
        assert balance["available"] == 6000.0

        po = await pos.get(PROJECT_ID, str(po["_id"]))
        assert po["committed_amount"] == 0.0
        print(f"✓ Ledger after payment: {balance}")

    async def test_partial_payment_releases_proportionally(self, db, reconciler, approved_invoice, sub_account_id):
        forecast_id, item_id = await schedule(reconciler, approved_invoice, amount=400)
        await reconciler.pay(PROJECT_ID, forecast_id, item_id, 400, "RCPT-201", "ctl-1")

        balance = await BudgetLedger(db).get_balance(sub_account_id)
        assert balance["committed"] == 3600.0
        assert balance["actual"] == 400.0
        assert balance["available"] == 6000.0

    async def test_adhoc_payment_only_realizes(self, db, reconciler, sub_account_id):
        forecast = await reconciler.create_forecast(
            PROJECT_ID, "Petty", PAY_DATE,
            [{"payee": "Taxi Co", "amount": 80, "sub_account_id": sub_account_id}], "ctl-1"
        )
        result = await reconciler.pay(
            PROJECT_ID, str(forecast["_id"]), forecast["items"][0]["item_id"], 80, "R-9", "ctl-1"
        )

        assert result["invoice_status"] is None
        assert result["released"] == 0.0
        balance = await BudgetLedger(db).get_balance(sub_account_id)
        assert balance["actual"] == 80.0
        assert balance["available"] == 9920.0


async def po_with_invoice(db, policy, engine, sub_account_id, approve_invoice):
    """Approved 4000 PO with a 4000 invoice, approved or still awaiting approval"""
    pos = PurchaseOrderService(db, policy, engine=engine)
    po = await pos.create(PROJECT_ID, {"sub_account_id": sub_account_id, "amount": 4000}, "crew-1", submit=True)
    po_id = str(po["_id"])
    await engine.approve(PROJECT_ID, "pos", po_id, "pm-1")

    invoices = InvoiceService(db, policy, engine=engine)
    invoice = await invoices.create(PROJECT_ID, {"po_id": po_id, "amount": 4000}, "crew-1")
    if approve_invoice:
        await engine.approve(PROJECT_ID, "invoices", str(invoice["_id"]), "ctl-1")
    return pos, invoices, po_id, str(invoice["_id"])


async def change_po(pos, po_id, change):
    if change == "delete":
        return await pos.delete(PROJECT_ID, po_id, "pm-1")
    return await pos.cancel(PROJECT_ID, po_id, "pm-1", "changed")


async def assert_ledger(db, sub_account_id, committed, actual):
    balance = await BudgetLedger(db).get_balance(sub_account_id)
    assert (balance["committed"], balance["actual"]) == (committed, actual)
    assert await LedgerInvariantValidator(db).verify_sub_account(sub_account_id) is True


class TestPurchaseOrderChangesAroundInvoices:
    """Deleting or cancelling a PO that invoices link to, then paying"""

    @pytest.mark.parametrize("change", ["delete", "cancel"])
    async def test_change_after_invoice_approved_is_refused(self, db, policy, engine, reconciler, sub_account_id, members, config, change):
        pos, _, po_id, invoice_id = await po_with_invoice(db, policy, engine, sub_account_id, approve_invoice=True)

        with pytest.raises(POHasInvoicesError):
            await change_po(pos, po_id, change)

        forecast_id, item_id = await schedule(reconciler, invoice_id)
        result = await reconciler.pay(PROJECT_ID, forecast_id, item_id, 4000, "RCPT-300", "ctl-1")

        assert result["invoice_status"] == "paid"
        assert result["released"] == 4000.0
        await assert_ledger(db, sub_account_id, committed=0.0, actual=4000.0)

    @pytest.mark.parametrize("change", ["delete", "cancel"])
    async def test_change_before_invoice_approved_is_refused(self, db, policy, engine, reconciler, sub_account_id, members, config, change):
        pos, _, po_id, invoice_id = await po_with_invoice(db, policy, engine, sub_account_id, approve_invoice=False)

        with pytest.raises(POHasInvoicesError):
            await change_po(pos, po_id, change)

        await engine.approve(PROJECT_ID, "invoices", invoice_id, "ctl-1")
        po = await pos.get(PROJECT_ID, po_id)
        assert po["status"] == "approved"
        assert po["invoiced_amount"] == 4000.0

        forecast_id, item_id = await schedule(reconciler, invoice_id)
        result = await reconciler.pay(PROJECT_ID, forecast_id, item_id, 4000, "RCPT-301", "ctl-1")

        assert result["invoice_status"] == "paid"
        await assert_ledger(db, sub_account_id, committed=0.0, actual=4000.0)

    @pytest.mark.parametrize("change", ["delete", "cancel"])
    async def test_change_allowed_once_invoice_cancelled(self, db, policy, engine, reconciler, sub_account_id, members, config, change):
        pos, invoices, po_id, invoice_id = await po_with_invoice(db, policy, engine, sub_account_id, approve_invoice=True)
        await invoices.cancel(PROJECT_ID, invoice_id, "pm-1", "Supplier withdrew")

        await change_po(pos, po_id, change)

        with pytest.raises(InvalidDocumentStateError):
            await schedule(reconciler, invoice_id)
        expected = DocumentNotFoundError if change == "delete" else LinkedPurchaseOrderNotApprovedError
        with pytest.raises(expected):
            await invoices.create(PROJECT_ID, {"po_id": po_id, "amount": 100}, "crew-1")
        await assert_ledger(db, sub_account_id, committed=0.0, actual=0.0)

    async def test_payment_refused_when_po_is_gone(self, db, policy, engine, reconciler, sub_account_id, members, config):
        """Nothing is marked paid when the invoice's PO no longer exists"""
        _, invoices, po_id, invoice_id = await po_with_invoice(db, policy, engine, sub_account_id, approve_invoice=True)
        forecast_id, item_id = await schedule(reconciler, invoice_id)
        await db.purchase_orders.delete_one({"_id": ObjectId(po_id)})

        with pytest.raises(DocumentNotFoundError):
            await reconciler.pay(PROJECT_ID, forecast_id, item_id, 4000, "RCPT-302", "ctl-1")

        forecast = await reconciler.get_forecast(PROJECT_ID, forecast_id)
        assert forecast["items"][0]["status"] == "pending"
        invoice = await invoices.get(PROJECT_ID, invoice_id)
        assert (invoice["status"], invoice["paid_amount"]) == ("pending", 0.0)
        assert (await BudgetLedger(db).get_balance(sub_account_id))["actual"] == 0.0
