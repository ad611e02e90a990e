"""
Status and type vocabularies shared by the engine.
Values are the strings stored in MongoDB.
"""

from enum import Enum


class DocumentKind(str, Enum):
    PURCHASE_ORDER = "pos"
    INVOICE = "invoices"


class POStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CLOSED = "closed"
    CANCELLED = "cancelled"


class InvoiceStatus(str, Enum):
    PENDING_APPROVAL = "pending_approval"
    PENDING = "pending"          # approved, awaiting payment
    PAID = "paid"
    PARTIAL_PAID = "partial_paid"
    OVERDUE = "overdue"          # derived on read, never stored
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ApproverType(str, Enum):
    FIXED = "fixed"
    ROLE = "role"
    HOD = "hod"
    COORDINATOR = "coordinator"


class StepStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Decision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class AmountCondition(str, Enum):
    ABOVE = "above"
    BELOW = "below"
    BETWEEN = "between"


class PaymentItemStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class ForecastStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


# Member positions that the department-scoped approver types look for
POSITION_FOR_APPROVER_TYPE = {
    ApproverType.HOD: "HOD",
    ApproverType.COORDINATOR: "Coordinator",
}
