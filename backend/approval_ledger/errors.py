"""
LEDGER ENGINE - ERROR TAXONOMY

Two families with different propagation rules:

1. LedgerIntegrityError - fatal. Duplicate sequence numbers, exhausted
   optimistic-lock retries, missing ledger accounts, drifted figures.
   Abort the operation and surface to the caller.
2. BusinessRuleViolation - recoverable. Carries a machine `code` and a
   human `reason` the calling layer can render (attach a receipt, adjust
   an amount, give a rejection reason...).

Stalled approval steps are NOT errors; see ApprovalProgress.
Not-found conditions use DocumentNotFoundError and are mapped by the caller.
"""

from typing import Optional, Dict, Any


# =============================================================================
# INTEGRITY ERRORS
# =============================================================================

class LedgerIntegrityError(Exception):
    """Raised when a data-integrity guarantee would be broken"""
    def __init__(self, violation_type: str, message: str, details: dict = None):
        self.violation_type = violation_type
        self.message = message
        self.details = details or {}
        super().__init__(message)


class DuplicateSequenceError(LedgerIntegrityError):
    """Raised when a counter issues a number already held by a live document"""
    def __init__(self, project_id: str, kind: str, number: int, existing_id: str):
        super().__init__(
            violation_type="DUPLICATE_SEQUENCE",
            message=(
                f"Sequence number {number} for {kind} in project {project_id} "
                f"is already used by document {existing_id}"
            ),
            details={
                "project_id": project_id,
                "kind": kind,
                "number": number,
                "existing_id": existing_id
            }
        )


class ConcurrentModificationError(LedgerIntegrityError):
    """Raised when an optimistic read-modify-write keeps losing the race"""
    def __init__(self, collection: str, document_id: str, attempts: int):
        super().__init__(
            violation_type="CONCURRENT_MODIFICATION",
            message=(
                f"{collection} {document_id} changed concurrently; "
                f"gave up after {attempts} attempts"
            ),
            details={
                "collection": collection,
                "document_id": document_id,
                "attempts": attempts
            }
        )


class SubAccountNotFoundError(LedgerIntegrityError):
    """Raised when a ledger movement targets a sub-account that does not exist"""
    def __init__(self, sub_account_id: str):
        self.sub_account_id = sub_account_id
        super().__init__(
            violation_type="MISSING_SUB_ACCOUNT",
            message=f"Sub-account {sub_account_id} not found",
            details={"sub_account_id": sub_account_id}
        )


class LedgerInvariantError(LedgerIntegrityError):
    """Raised when stored ledger figures disagree with their movements"""
    pass


# =============================================================================
# BUSINESS-RULE VIOLATIONS
# =============================================================================

class BusinessRuleViolation(Exception):
    """Typed, recoverable rejection of a request"""
    code = "BUSINESS_RULE_VIOLATION"

    def __init__(self, reason: str, details: Optional[Dict[str, Any]] = None, code: Optional[str] = None):
        if code:
            self.code = code
        self.reason = reason
        self.details = details or {}
        super().__init__(reason)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "reason": self.reason, "details": self.details}


class ApproverNotEligibleError(BusinessRuleViolation):
    code = "APPROVER_NOT_ELIGIBLE"


class DuplicateDecisionError(BusinessRuleViolation):
    code = "DUPLICATE_DECISION"


class RejectionReasonRequiredError(BusinessRuleViolation):
    code = "REJECTION_REASON_REQUIRED"


class OverCommitmentError(BusinessRuleViolation):
    code = "OVER_COMMITMENT"


class MissingReceiptError(BusinessRuleViolation):
    code = "MISSING_RECEIPT"


class PaymentExceedsItemError(BusinessRuleViolation):
    code = "PAYMENT_EXCEEDS_ITEM"


class PaymentAlreadyCompletedError(BusinessRuleViolation):
    code = "PAYMENT_ALREADY_COMPLETED"


class InvalidDocumentStateError(BusinessRuleViolation):
    code = "INVALID_DOCUMENT_STATE"


class POHasInvoicesError(BusinessRuleViolation):
    code = "PO_HAS_INVOICES"


class InvoiceHasPaymentsError(BusinessRuleViolation):
    code = "INVOICE_HAS_PAYMENTS"


class LinkedPurchaseOrderNotApprovedError(BusinessRuleViolation):
    code = "LINKED_PO_NOT_APPROVED"


class AccountNotEmptyError(BusinessRuleViolation):
    code = "ACCOUNT_NOT_EMPTY"


class SubAccountInUseError(BusinessRuleViolation):
    code = "SUB_ACCOUNT_IN_USE"


class InvalidApprovalConfigError(BusinessRuleViolation):
    code = "INVALID_APPROVAL_CONFIG"


# =============================================================================
# NOT FOUND
# =============================================================================

class DocumentNotFoundError(LookupError):
    """Raised when a referenced document does not exist"""
    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} not found")
