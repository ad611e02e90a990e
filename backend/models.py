from pydantic import BaseModel, Field
from typing import Optional, List, Any
from datetime import date

from approval_ledger.approval_config import ApprovalStepConfig

# ============================================
# BUDGET MODELS
# ============================================
class AccountCreate(BaseModel):
    code: str
    description: str = ""

class SubAccountCreate(BaseModel):
    account_id: str
    code: str
    budgeted: float = Field(ge=0)
    description: str = ""

class BudgetUpdate(BaseModel):
    budgeted: float = Field(ge=0)

class SubAccountBalance(BaseModel):
    sub_account_id: str
    project_id: Optional[str] = None
    account_id: Optional[str] = None
    code: Optional[str] = None
    description: Optional[str] = None
    budgeted: float
    committed: float
    actual: float
    available: float

# ============================================
# APPROVAL CONFIG MODELS
# ============================================
class ApprovalConfigUpdate(BaseModel):
    po_approvals: List[ApprovalStepConfig] = []
    invoice_approvals: List[ApprovalStepConfig] = []

# ============================================
# PURCHASE ORDER MODELS
# ============================================
class PurchaseOrderCreate(BaseModel):
    supplier_id: Optional[str] = None
    sub_account_id: str
    amount: float = Field(gt=0)
    description: str = ""
    department: Optional[str] = None
    submit: bool = False

class DecisionRequest(BaseModel):
    decision: str  # approve, reject
    reason: Optional[str] = None

class ReasonRequest(BaseModel):
    reason: Optional[str] = None

class DecisionResponse(BaseModel):
    document_id: str
    document_status: str
    step_index: Optional[int] = None
    step_completed: bool = False
    document_completed: bool = False
    stalled: bool = False
    stalled_step: Optional[int] = None

# ============================================
# INVOICE MODELS
# ============================================
class InvoiceCreate(BaseModel):
    po_id: Optional[str] = None
    supplier_id: Optional[str] = None
    sub_account_id: Optional[str] = None
    amount: float = Field(gt=0)
    due_date: Optional[date] = None
    description: str = ""

# ============================================
# PAYMENT MODELS
# ============================================
class PaymentItemCreate(BaseModel):
    invoice_id: Optional[str] = None
    payee: Optional[str] = None
    sub_account_id: Optional[str] = None
    amount: Optional[float] = Field(default=None, gt=0)  # defaults to the invoice's outstanding amount

class PaymentForecastCreate(BaseModel):
    name: str
    payment_date: date
    items: List[PaymentItemCreate] = []

class PaymentRequest(BaseModel):
    amount_paid: float = Field(gt=0)
    receipt_ref: Optional[str] = None

# ============================================
# SETTINGS MODELS
# ============================================
class PolicyUpdate(BaseModel):
    key: str
    value: Any
