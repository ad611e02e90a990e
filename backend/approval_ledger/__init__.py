"""
Approval & Budget Ledger Engine
"""
from .financial_precision import (
    to_decimal,
    round_financial,
    to_float,
    validate_non_negative,
    validate_positive,
    meets_tolerance,
    FinancialPrecisionError,
    NegativeValueError
)

from .errors import (
    LedgerIntegrityError,
    DuplicateSequenceError,
    ConcurrentModificationError,
    SubAccountNotFoundError,
    LedgerInvariantError,
    BusinessRuleViolation,
    DocumentNotFoundError
)

from .sequence_allocator import (
    SequenceAllocator,
    format_number
)

from .budget_ledger import (
    BudgetLedger,
    compute_available,
    is_over_budget
)

from .invariant_validator import LedgerInvariantValidator

from .policy_service import PolicyService

from .approval_config import (
    ApprovalConfigService,
    ApprovalStepConfig
)

from .approval_resolver import (
    ApprovalStepResolver,
    resolve_approvers
)

from .approval_workflow import (
    ApprovalWorkflowEngine,
    ApprovalProgress,
    DecisionResult
)

from .purchase_orders import PurchaseOrderService

from .invoices import (
    InvoiceService,
    effective_status,
    outstanding_amount
)

from .payment_reconciler import (
    PaymentReconciler,
    forecast_totals
)

__all__ = [
    # Financial Precision
    'to_decimal',
    'round_financial',
    'to_float',
    'validate_non_negative',
    'validate_positive',
    'meets_tolerance',
    'FinancialPrecisionError',
    'NegativeValueError',
    # Errors
    'LedgerIntegrityError',
    'DuplicateSequenceError',
    'ConcurrentModificationError',
    'SubAccountNotFoundError',
    'LedgerInvariantError',
    'BusinessRuleViolation',
    'DocumentNotFoundError',
    # Sequence Allocator
    'SequenceAllocator',
    'format_number',
    # Budget Ledger
    'BudgetLedger',
    'compute_available',
    'is_over_budget',
    'LedgerInvariantValidator',
    # Policies
    'PolicyService',
    # Approval
    'ApprovalConfigService',
    'ApprovalStepConfig',
    'ApprovalStepResolver',
    'resolve_approvers',
    'ApprovalWorkflowEngine',
    'ApprovalProgress',
    'DecisionResult',
    # Documents
    'PurchaseOrderService',
    'InvoiceService',
    'effective_status',
    'outstanding_amount',
    # Payments
    'PaymentReconciler',
    'forecast_totals',
]
