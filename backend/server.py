from fastapi import FastAPI, APIRouter, HTTPException, Header, Request, status, Depends
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from bson import ObjectId
from dataclasses import asdict
import os
import logging
from pathlib import Path
from typing import List, Optional, Dict, Any
from datetime import datetime

from models import (
    AccountCreate, SubAccountCreate, BudgetUpdate, SubAccountBalance,
    ApprovalConfigUpdate,
    PurchaseOrderCreate, DecisionRequest, ReasonRequest, DecisionResponse,
    InvoiceCreate,
    PaymentForecastCreate, PaymentItemCreate, PaymentRequest,
    PolicyUpdate
)
from audit_service import AuditService
from approval_ledger import (
    ApprovalConfigService, ApprovalWorkflowEngine, BudgetLedger, InvoiceService,
    LedgerInvariantValidator, PaymentReconciler, PolicyService, PurchaseOrderService,
    forecast_totals
)
from approval_ledger.enums import DocumentKind
from approval_ledger.errors import BusinessRuleViolation, DocumentNotFoundError, LedgerIntegrityError
from approval_ledger.financial_precision import FinancialPrecisionError, NegativeValueError
from approval_ledger.invoices import invoice_view


def serialize_doc(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Serialize MongoDB document for JSON response (handles ObjectId, datetime)"""
    if doc is None:
        return None
    result = {}
    for key, value in doc.items():
        if key == "_id":
            key = "id"
        if isinstance(value, ObjectId):
            result[key] = str(value)
        elif isinstance(value, datetime):
            result[key] = value.isoformat()
        elif isinstance(value, dict):
            result[key] = serialize_doc(value)
        elif isinstance(value, list):
            result[key] = [
                serialize_doc(item) if isinstance(item, dict)
                else str(item) if isinstance(item, ObjectId)
                else item
                for item in value
            ]
        else:
            result[key] = value
    return result

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# MongoDB connection (the client connects lazily)
mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
client = AsyncIOMotorClient(mongo_url)
db = client[os.environ.get('DB_NAME', 'approval_ledger')]

# Create the main app
app = FastAPI(
    title="Approval & Budget Ledger Engine",
    version="1.0.0",
    description="Multi-level approvals, budget ledger and payment reconciliation"
)

# Create router with /api prefix
api_router = APIRouter(prefix="/api")

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# ============================================
# DEPENDENCIES
# ============================================

async def get_db() -> AsyncIOMotorDatabase:
    return db


async def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Acting user; authentication happens upstream of this service."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-Id header is required"
        )
    return x_user_id


# Long-lived so the policy TTL cache survives across requests
policy_service = PolicyService(db)
_policy_services: Dict[int, Any] = {id(db): (db, policy_service)}


def policy_for(database: AsyncIOMotorDatabase) -> PolicyService:
    """One PolicyService per database handle; `db` maps to policy_service."""
    entry = _policy_services.get(id(database))
    if entry is None or entry[0] is not database:
        entry = (database, PolicyService(database))
        _policy_services[id(database)] = entry
    return entry[1]


class Services:
    """Per-request engine wiring over one database handle"""

    def __init__(self, database: AsyncIOMotorDatabase, policy: Optional[PolicyService] = None):
        self.audit = AuditService(database)
        self.policy = policy or policy_for(database)
        self.ledger = BudgetLedger(database)
        self.configs = ApprovalConfigService(database)
        self.engine = ApprovalWorkflowEngine(database, self.policy, self.audit)
        self.purchase_orders = PurchaseOrderService(database, self.policy, self.audit, self.engine)
        self.invoices = InvoiceService(database, self.policy, self.audit, self.engine)
        self.payments = PaymentReconciler(database, self.policy, self.audit)
        self.validator = LedgerInvariantValidator(database)


async def get_services(database: AsyncIOMotorDatabase = Depends(get_db)) -> Services:
    return Services(database, policy_for(database))


# ============================================
# ERROR MAPPING
# ============================================

@app.exception_handler(BusinessRuleViolation)
async def business_rule_handler(request: Request, exc: BusinessRuleViolation):
    return JSONResponse(
        status_code=422,
        content=jsonable_encoder(exc.to_dict())
    )


@app.exception_handler(LedgerIntegrityError)
async def integrity_handler(request: Request, exc: LedgerIntegrityError):
    logger.error(f"[INTEGRITY] {exc.violation_type}: {exc.message}")
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content=jsonable_encoder({
            "violation_type": exc.violation_type,
            "message": exc.message,
            "details": exc.details
        })
    )


@app.exception_handler(DocumentNotFoundError)
async def not_found_handler(request: Request, exc: DocumentNotFoundError):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(NegativeValueError)
@app.exception_handler(FinancialPrecisionError)
async def amount_handler(request: Request, exc: Exception):
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


def decision_response(result) -> DecisionResponse:
    return DecisionResponse(**asdict(result))


# ============================================
# HEALTH
# ============================================

@api_router.get("/health")
async def health():
    return {"status": "healthy", "service": "approval-ledger"}


# ============================================
# BUDGET ENDPOINTS
# ============================================

@api_router.post("/projects/{project_id}/accounts", status_code=status.HTTP_201_CREATED)
async def create_account(
    project_id: str,
    data: AccountCreate,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services)
):
    account_id = await services.ledger.create_account(project_id, data.code, data.description)
    return {"account_id": account_id}


@api_router.delete("/projects/{project_id}/accounts/{account_id}")
async def delete_account(
    project_id: str,
    account_id: str,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services)
):
    await services.ledger.delete_account(project_id, account_id)
    return {"deleted": account_id}


@api_router.post(
    "/projects/{project_id}/sub-accounts",
    response_model=SubAccountBalance,
    status_code=status.HTTP_201_CREATED
)
async def create_sub_account(
    project_id: str,
    data: SubAccountCreate,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services)
):
    sub_account_id = await services.ledger.create_sub_account(
        project_id, data.account_id, data.code, data.budgeted, data.description
    )
    await services.audit.log_action(project_id, "SUB_ACCOUNT", sub_account_id, "CREATE", user_id,
                                    new_value={"code": data.code, "budgeted": data.budgeted})
    return await services.ledger.get_balance(sub_account_id)


@api_router.put("/projects/{project_id}/sub-accounts/{sub_account_id}/budget", response_model=SubAccountBalance)
async def set_budget(
    project_id: str,
    sub_account_id: str,
    data: BudgetUpdate,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services)
):
    balance = await services.ledger.set_budget(sub_account_id, data.budgeted)
    await services.audit.log_action(project_id, "SUB_ACCOUNT", sub_account_id, "UPDATE", user_id,
                                    new_value={"budgeted": data.budgeted})
    return balance


@api_router.delete("/projects/{project_id}/sub-accounts/{sub_account_id}")
async def delete_sub_account(
    project_id: str,
    sub_account_id: str,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services)
):
    await services.ledger.delete_sub_account(project_id, sub_account_id)
    return {"deleted": sub_account_id}


@api_router.get("/projects/{project_id}/sub-accounts/{sub_account_id}/balance", response_model=SubAccountBalance)
async def get_balance(project_id: str, sub_account_id: str, services: Services = Depends(get_services)):
    return await services.ledger.get_balance(sub_account_id)


@api_router.get("/projects/{project_id}/budget-summary")
async def budget_summary(project_id: str, services: Services = Depends(get_services)):
    return await services.ledger.project_summary(project_id)


@api_router.get("/projects/{project_id}/ledger/verify")
async def verify_ledger(project_id: str, services: Services = Depends(get_services)):
    report = await services.validator.verify_project(project_id)
    return jsonable_encoder(report)


# ============================================
# APPROVAL CONFIGURATION
# ============================================

@api_router.get("/projects/{project_id}/approval-config")
async def get_approval_config(project_id: str, services: Services = Depends(get_services)):
    return {
        "po_approvals": await services.configs.get_steps(project_id, DocumentKind.PURCHASE_ORDER.value),
        "invoice_approvals": await services.configs.get_steps(project_id, DocumentKind.INVOICE.value)
    }


@api_router.put("/projects/{project_id}/approval-config")
async def save_approval_config(
    project_id: str,
    data: ApprovalConfigUpdate,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services)
):
    saved = await services.configs.save_config(
        project_id,
        [step.model_dump() for step in data.po_approvals],
        [step.model_dump() for step in data.invoice_approvals],
        user_id
    )
    await services.audit.log_action(project_id, "APPROVAL_CONFIG", project_id, "UPDATE", user_id, new_value=saved)
    return saved


@api_router.get("/projects/{project_id}/approvals/pending")
async def pending_approvals(
    project_id: str,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services)
):
    return await services.engine.pending_for_user(project_id, user_id)


# ============================================
# PURCHASE ORDER ENDPOINTS
# ============================================

PO_KIND = DocumentKind.PURCHASE_ORDER.value
INVOICE_KIND = DocumentKind.INVOICE.value


@api_router.post("/projects/{project_id}/purchase-orders", status_code=status.HTTP_201_CREATED)
async def create_purchase_order(
    project_id: str,
    data: PurchaseOrderCreate,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services)
):
    payload = data.model_dump(exclude={"submit"})
    po = await services.purchase_orders.create(project_id, payload, user_id, submit=data.submit)
    return serialize_doc(po)


@api_router.get("/projects/{project_id}/purchase-orders")
async def list_purchase_orders(
    project_id: str,
    status_filter: Optional[str] = None,
    services: Services = Depends(get_services)
):
    pos = await services.purchase_orders.list(project_id, status_filter)
    return [serialize_doc(po) for po in pos]


@api_router.get("/projects/{project_id}/purchase-orders/{po_id}")
async def get_purchase_order(project_id: str, po_id: str, services: Services = Depends(get_services)):
    return serialize_doc(await services.purchase_orders.get(project_id, po_id))


@api_router.get("/projects/{project_id}/purchase-orders/{po_id}/progress")
async def purchase_order_progress(project_id: str, po_id: str, services: Services = Depends(get_services)):
    return asdict(await services.engine.get_progress(project_id, PO_KIND, po_id))


@api_router.post("/projects/{project_id}/purchase-orders/{po_id}/submit", response_model=DecisionResponse)
async def submit_purchase_order(
    project_id: str,
    po_id: str,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services)
):
    return decision_response(await services.purchase_orders.submit(project_id, po_id, user_id))


@api_router.post("/projects/{project_id}/purchase-orders/{po_id}/decision", response_model=DecisionResponse)
async def decide_purchase_order(
    project_id: str,
    po_id: str,
    data: DecisionRequest,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services)
):
    result = await services.engine.decide(project_id, PO_KIND, po_id, user_id, data.decision, data.reason)
    return decision_response(result)


@api_router.post("/projects/{project_id}/purchase-orders/{po_id}/close")
async def close_purchase_order(
    project_id: str,
    po_id: str,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services)
):
    return serialize_doc(await services.purchase_orders.close(project_id, po_id, user_id))


@api_router.post("/projects/{project_id}/purchase-orders/{po_id}/cancel")
async def cancel_purchase_order(
    project_id: str,
    po_id: str,
    data: ReasonRequest,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services)
):
    return serialize_doc(await services.purchase_orders.cancel(project_id, po_id, user_id, data.reason))


@api_router.delete("/projects/{project_id}/purchase-orders/{po_id}")
async def delete_purchase_order(
    project_id: str,
    po_id: str,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services)
):
    return await services.purchase_orders.delete(project_id, po_id, user_id)


# ============================================
# INVOICE ENDPOINTS
# ============================================

@api_router.post("/projects/{project_id}/invoices", status_code=status.HTTP_201_CREATED)
async def create_invoice(
    project_id: str,
    data: InvoiceCreate,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services)
):
    invoice = await services.invoices.create(project_id, data.model_dump(), user_id)
    return serialize_doc(invoice_view(invoice))


@api_router.get("/projects/{project_id}/invoices")
async def list_invoices(
    project_id: str,
    status_filter: Optional[str] = None,
    services: Services = Depends(get_services)
):
    invoices = await services.invoices.list(project_id, status_filter)
    return [serialize_doc(invoice_view(invoice)) for invoice in invoices]


@api_router.get("/projects/{project_id}/invoices/{invoice_id}")
async def get_invoice(project_id: str, invoice_id: str, services: Services = Depends(get_services)):
    return serialize_doc(invoice_view(await services.invoices.get(project_id, invoice_id)))


@api_router.get("/projects/{project_id}/invoices/{invoice_id}/progress")
async def invoice_progress(project_id: str, invoice_id: str, services: Services = Depends(get_services)):
    return asdict(await services.engine.get_progress(project_id, INVOICE_KIND, invoice_id))


@api_router.post("/projects/{project_id}/invoices/{invoice_id}/decision", response_model=DecisionResponse)
async def decide_invoice(
    project_id: str,
    invoice_id: str,
    data: DecisionRequest,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services)
):
    result = await services.engine.decide(project_id, INVOICE_KIND, invoice_id, user_id, data.decision, data.reason)
    return decision_response(result)


@api_router.post("/projects/{project_id}/invoices/{invoice_id}/cancel")
async def cancel_invoice(
    project_id: str,
    invoice_id: str,
    data: ReasonRequest,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services)
):
    invoice = await services.invoices.cancel(project_id, invoice_id, user_id, data.reason)
    return serialize_doc(invoice_view(invoice))


@api_router.delete("/projects/{project_id}/invoices/{invoice_id}")
async def delete_invoice(
    project_id: str,
    invoice_id: str,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services)
):
    return await services.invoices.delete(project_id, invoice_id, user_id)


# ============================================
# PAYMENT ENDPOINTS
# ============================================

def forecast_response(forecast: Dict[str, Any]) -> Dict[str, Any]:
    result = serialize_doc(forecast)
    result["totals"] = forecast_totals(forecast)
    return result


@api_router.post("/projects/{project_id}/payment-forecasts", status_code=status.HTTP_201_CREATED)
async def create_payment_forecast(
    project_id: str,
    data: PaymentForecastCreate,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services)
):
    forecast = await services.payments.create_forecast(
        project_id, data.name, data.payment_date,
        [item.model_dump() for item in data.items], user_id
    )
    return forecast_response(forecast)


@api_router.get("/projects/{project_id}/payment-forecasts/{forecast_id}")
async def get_payment_forecast(project_id: str, forecast_id: str, services: Services = Depends(get_services)):
    return forecast_response(await services.payments.get_forecast(project_id, forecast_id))


@api_router.post("/projects/{project_id}/payment-forecasts/{forecast_id}/items")
async def add_payment_item(
    project_id: str,
    forecast_id: str,
    data: PaymentItemCreate,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services)
):
    forecast = await services.payments.add_item(project_id, forecast_id, data.model_dump())
    return forecast_response(forecast)


@api_router.post("/projects/{project_id}/payment-forecasts/{forecast_id}/items/{item_id}/pay")
async def pay_item(
    project_id: str,
    forecast_id: str,
    item_id: str,
    data: PaymentRequest,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services)
):
    result = await services.payments.pay(
        project_id, forecast_id, item_id, data.amount_paid, data.receipt_ref, user_id
    )
    return serialize_doc(result)


# ============================================
# SETTINGS & AUDIT
# ============================================

@api_router.get("/settings/policies")
async def get_policies(services: Services = Depends(get_services)):
    return await services.policy.get_all_policies()


@api_router.put("/settings/policies")
async def update_policy(
    data: PolicyUpdate,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services)
):
    try:
        return await services.policy.update_policy(data.key, data.value)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@api_router.get("/projects/{project_id}/audit-logs")
async def get_audit_logs(
    project_id: str,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    action_type: Optional[str] = None,
    limit: int = 100,
    services: Services = Depends(get_services)
) -> List[Dict[str, Any]]:
    logs = await services.audit.get_audit_logs(project_id, entity_type, entity_id, action_type, limit)
    return [serialize_doc(log) for log in logs]


# Include the router in the main app
app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("shutdown")
async def shutdown_db_client():
    client.close()
