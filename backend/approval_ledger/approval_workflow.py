"""
LEDGER ENGINE - APPROVAL WORKFLOW ENGINE

Drives a purchase order or invoice through the approval steps cloned into
it at submission.

RULES:
1. Every decision is checked against the CURRENT step's approvers, resolved
   again from the membership table at decision time
2. requireAll=true  -> step completes when every currently eligible approver
                       has approved (people who lost eligibility drop out)
   requireAll=false -> step completes on the first eligible approval
3. Any rejection at any step rejects the whole document (terminal)
4. Zero steps -> approved immediately on submission
5. Final PO approval commits the budget exactly once (claim flag on the
   PO plus a per-PO movement key on the sub-account)
6. A step resolving to nobody is STALLED: reported as data, never skipped
7. An invoice counts against its PO's invoiced_amount from creation until
   it is rejected, cancelled or deleted

All document writes go through update_with_retry, so a lost race re-reads
the document and re-resolves approvers before trying again.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set
import copy
import logging

from approval_ledger.approval_config import ApprovalConfigService
from approval_ledger.approval_resolver import ApprovalStepResolver, resolve_approvers
from approval_ledger.budget_ledger import BudgetLedger, compute_available, is_over_budget
from approval_ledger.enums import (
    ApprovalStatus, Decision, DocumentKind, InvoiceStatus, POStatus, StepStatus
)
from approval_ledger.errors import (
    ApproverNotEligibleError, BusinessRuleViolation, DocumentNotFoundError, DuplicateDecisionError,
    InvalidDocumentStateError, LinkedPurchaseOrderNotApprovedError, OverCommitmentError,
    RejectionReasonRequiredError
)
from approval_ledger.financial_precision import to_decimal, to_float
from approval_ledger.optimistic import LOCK_FIELD, as_object_id, update_with_retry
from approval_ledger.policy_service import PolicyService
from approval_ledger.sequence_allocator import DOCUMENT_KINDS
from approval_ledger.state_machine import (
    StateMachine, invoice_machine, purchase_order_machine
)

logger = logging.getLogger(__name__)


def commit_key(po_id) -> str:
    """Sub-account movement key for a PO's one budget commit."""
    return f"purchase_order:{po_id}:commit"


# =============================================================================
# PER-KIND LIFECYCLE MAPPING
# =============================================================================

class KindLifecycle:
    """Status names a document kind uses for the approval phase."""

    def __init__(
        self,
        entity_type: str,
        machine: StateMachine,
        submittable: str,
        in_progress: str,
        approved: str,
        rejected: str
    ):
        self.entity_type = entity_type
        self.machine = machine
        self.submittable = submittable
        self.in_progress = in_progress
        self.approved = approved
        self.rejected = rejected


LIFECYCLES = {
    DocumentKind.PURCHASE_ORDER.value: KindLifecycle(
        entity_type="PURCHASE_ORDER",
        machine=purchase_order_machine,
        submittable=POStatus.DRAFT.value,
        in_progress=POStatus.PENDING.value,
        approved=POStatus.APPROVED.value,
        rejected=POStatus.REJECTED.value,
    ),
    # Invoices are born in pending_approval; approval moves them to pending (payable)
    DocumentKind.INVOICE.value: KindLifecycle(
        entity_type="INVOICE",
        machine=invoice_machine,
        submittable=InvoiceStatus.PENDING_APPROVAL.value,
        in_progress=InvoiceStatus.PENDING_APPROVAL.value,
        approved=InvoiceStatus.PENDING.value,
        rejected=InvoiceStatus.REJECTED.value,
    ),
}


def lifecycle_for(kind: str) -> KindLifecycle:
    if kind not in LIFECYCLES:
        raise ValueError(f"Unknown document kind: {kind}")
    return LIFECYCLES[kind]


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class DecisionResult:
    """Outcome of submit / decide / reevaluate"""
    document_id: str
    document_status: str
    step_index: Optional[int]
    step_completed: bool = False
    document_completed: bool = False
    stalled: bool = False
    stalled_step: Optional[int] = None


@dataclass
class ApprovalProgress:
    """Read-time view of where a document stands, with approvers resolved now"""
    document_id: str
    status: str
    current_step: Optional[int]
    total_steps: int
    eligible_approvers: List[str] = field(default_factory=list)
    approved_by: List[str] = field(default_factory=list)
    stalled: bool = False
    stalled_step: Optional[int] = None


# =============================================================================
# PURE STEP LOGIC
# =============================================================================

def step_is_complete(step: Dict[str, Any], eligible: Set[str]) -> bool:
    """
    requireAll: every currently eligible approver approved (empty set never completes).
    otherwise: any currently eligible approver approved.
    """
    approved = set(step.get("approved_by") or [])
    if step.get("require_all"):
        return bool(eligible) and eligible.issubset(approved)
    return bool(eligible & approved)


def advance_steps(
    steps: List[Dict[str, Any]],
    index: int,
    document: Dict[str, Any],
    members: List[Dict[str, Any]]
) -> int:
    """
    Mark completed steps approved starting at `index`, refreshing each
    step's resolved approvers. Returns the index of the first incomplete
    step (len(steps) when everything is approved).
    """
    while index < len(steps):
        step = steps[index]
        eligible = resolve_approvers(step, document, members)
        step["approvers"] = sorted(eligible)
        if not step_is_complete(step, eligible):
            break
        step["status"] = StepStatus.APPROVED.value
        step["completed_at"] = datetime.utcnow()
        index += 1
    return index


class ApprovalWorkflowEngine:
    """
    Approval state machine over the cloned `approval_steps` of a document.
    """

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
        self.configs = ApprovalConfigService(db)
        self.resolver = ApprovalStepResolver(db)

    def _collection(self, kind: str):
        return self.db[DOCUMENT_KINDS[kind]["collection"]]

    async def _audit(self, project_id, kind, doc, action, user_id, old=None, new=None, step=None, reason=None):
        if self.audit is None:
            return
        await self.audit.log_action(
            project_id=project_id,
            entity_type=lifecycle_for(kind).entity_type,
            entity_id=str(doc["_id"]),
            action_type=action,
            user_id=user_id,
            old_value=old,
            new_value=new,
            display_number=doc.get("display_number"),
            step=step,
            reason=reason
        )

    # =========================================================================
    # SUBMISSION
    # =========================================================================

    async def submit(
        self,
        project_id: str,
        kind: str,
        document_id: str,
        user_id: str,
        session=None
    ) -> DecisionResult:
        """
        Snapshot the applicable steps into the document and start approval.

        Raises:
            InvalidDocumentStateError: Already submitted / wrong status
            OverCommitmentError: PO beyond available budget under strict policy
        """
        lifecycle = lifecycle_for(kind)
        collection = self._collection(kind)
        strict = await self.policy.is_strict_budget_enabled()
        outcome: Dict[str, Any] = {}

        async def mutate(doc):
            if doc.get("submitted_at") or doc.get("status") != lifecycle.submittable:
                raise InvalidDocumentStateError(
                    f"{lifecycle.entity_type} {doc.get('display_number')} cannot be submitted "
                    f"from status '{doc.get('status')}'",
                    details={"status": doc.get("status")}
                )

            changes: Dict[str, Any] = {}
            if kind == DocumentKind.PURCHASE_ORDER.value:
                changes.update(await self._check_budget(doc, strict, session))

            # Fresh snapshot on every attempt; config may have changed meanwhile
            steps = await self.configs.snapshot_for(project_id, kind, doc.get("amount", 0), session=session)
            members = await self.resolver.load_members(project_id, session=session)
            index = advance_steps(steps, 0, doc, members)

            changes.update({
                "approval_steps": steps,
                "current_approval_step": index,
                "approval_status": ApprovalStatus.PENDING.value,
                "submitted_at": datetime.utcnow(),
                "submitted_by": user_id,
            })

            if index >= len(steps):
                changes.update(self._approval_changes(lifecycle, doc, user_id, "no approval steps"))
            elif lifecycle.in_progress != doc.get("status"):
                changes.update(lifecycle.machine.apply(doc, lifecycle.in_progress, user_id))

            outcome["steps"] = steps
            outcome["index"] = index
            return changes

        doc = await update_with_retry(
            collection, document_id, mutate, lifecycle.entity_type,
            extra_filter={"project_id": project_id}, session=session
        )

        logger.info(
            f"[APPROVAL] {doc.get('display_number')} submitted by {user_id} "
            f"with {len(outcome['steps'])} step(s) -> {doc['status']}"
        )
        await self._audit(project_id, kind, doc, "SUBMIT", user_id,
                          new={"status": doc["status"], "steps": len(outcome["steps"])})

        completed = doc["status"] == lifecycle.approved
        if completed:
            await self._on_approved(kind, doc, session)

        return self._result(doc, outcome["steps"], outcome["index"], completed, completed)

    async def _check_budget(self, doc: Dict[str, Any], strict: bool, session) -> Dict[str, Any]:
        sub_account_id = doc.get("sub_account_id")
        if not sub_account_id:
            return {"over_budget": False}

        sub = await self.ledger.get_sub_account(sub_account_id, session=session)
        if not is_over_budget(sub, doc.get("amount", 0)):
            return {"over_budget": False}

        available = to_float(compute_available(sub))
        if strict:
            raise OverCommitmentError(
                f"Amount {doc.get('amount')} exceeds available budget {available} "
                f"on sub-account {sub_account_id}",
                details={
                    "sub_account_id": sub_account_id,
                    "amount": doc.get("amount"),
                    "available": available
                }
            )

        logger.warning(
            f"[APPROVAL] {doc.get('display_number')} exceeds available budget "
            f"({doc.get('amount')} > {available}) on {sub_account_id}"
        )
        return {"over_budget": True}

    # =========================================================================
    # DECISIONS
    # =========================================================================

    async def decide(
        self,
        project_id: str,
        kind: str,
        document_id: str,
        user_id: str,
        decision: str,
        reason: Optional[str] = None,
        session=None
    ) -> DecisionResult:
        """
        Record one user's decision on the current step.

        Raises:
            ApproverNotEligibleError: user not in the currently resolved set
            DuplicateDecisionError: user already decided this step
            RejectionReasonRequiredError: reject without a reason
            InvalidDocumentStateError: document is not awaiting approval
        """
        try:
            decision = Decision(decision).value
        except ValueError:
            raise BusinessRuleViolation(
                f"Unknown decision '{decision}'", code="INVALID_DECISION"
            )

        reason = (reason or "").strip() or None
        if decision == Decision.REJECT.value and not reason:
            if await self.policy.is_rejection_reason_required():
                raise RejectionReasonRequiredError("A rejection must state a reason")

        lifecycle = lifecycle_for(kind)
        outcome: Dict[str, Any] = {}

        async def mutate(doc):
            steps = copy.deepcopy(doc.get("approval_steps") or [])
            index = doc.get("current_approval_step", 0)
            if doc.get("status") != lifecycle.in_progress or index >= len(steps):
                raise InvalidDocumentStateError(
                    f"{lifecycle.entity_type} {doc.get('display_number')} is not awaiting approval "
                    f"(status '{doc.get('status')}')",
                    details={"status": doc.get("status")}
                )

            # Membership re-read on every attempt
            members = await self.resolver.load_members(project_id, session=session)
            step = steps[index]
            eligible = resolve_approvers(step, doc, members)
            step["approvers"] = sorted(eligible)

            if user_id not in eligible:
                raise ApproverNotEligibleError(
                    f"User {user_id} is not an eligible approver for step {step.get('order')}",
                    details={"step": step.get("order"), "eligible": sorted(eligible)}
                )
            if user_id in (step.get("decisions") or {}):
                raise DuplicateDecisionError(
                    f"User {user_id} already decided step {step.get('order')}",
                    details={"step": step.get("order"), "decision": step["decisions"][user_id]}
                )

            step.setdefault("decisions", {})[user_id] = decision
            changes: Dict[str, Any] = {}

            if decision == Decision.REJECT.value:
                step.setdefault("rejected_by", []).append(user_id)
                step["status"] = StepStatus.REJECTED.value
                step["completed_at"] = datetime.utcnow()
                changes.update(lifecycle.machine.apply(
                    doc, lifecycle.rejected, user_id,
                    {"reason": reason, "step": step.get("order")}
                ))
                changes.update({
                    "approval_status": ApprovalStatus.REJECTED.value,
                    "rejection_reason": reason,
                    "rejected_by": user_id,
                    "rejected_at": datetime.utcnow(),
                })
                if kind == DocumentKind.INVOICE.value:
                    outcome["uncounted"] = bool(doc.get("po_invoiced_applied"))
                    changes["po_invoiced_applied"] = False
                new_index = index
            else:
                step.setdefault("approved_by", []).append(user_id)
                new_index = advance_steps(steps, index, doc, members)
                if new_index >= len(steps):
                    changes.update(self._approval_changes(lifecycle, doc, user_id, "all steps approved"))

            changes["approval_steps"] = steps
            changes["current_approval_step"] = new_index
            outcome.update({"steps": steps, "index": index, "new_index": new_index})
            return changes

        doc = await update_with_retry(
            self._collection(kind), document_id, mutate, lifecycle.entity_type,
            extra_filter={"project_id": project_id}, session=session
        )

        verb = StepStatus.APPROVED.value if decision == Decision.APPROVE.value else StepStatus.REJECTED.value
        logger.info(
            f"[APPROVAL] {user_id} {verb} step {outcome['index'] + 1} of "
            f"{doc.get('display_number')} -> {doc['status']}"
        )
        await self._audit(project_id, kind, doc, decision.upper(), user_id,
                          new={"status": doc["status"]}, step=outcome["index"] + 1, reason=reason)

        if outcome.get("uncounted") and doc.get("po_id"):
            await self.remove_invoice_from_po(doc, session=session)

        completed = doc["status"] == lifecycle.approved
        if completed:
            await self._on_approved(kind, doc, session)

        return self._result(
            doc, outcome["steps"], outcome["new_index"],
            step_completed=decision == Decision.APPROVE.value and outcome["new_index"] > outcome["index"],
            document_completed=completed
        )

    async def approve(self, project_id: str, kind: str, document_id: str, user_id: str, session=None) -> DecisionResult:
        return await self.decide(project_id, kind, document_id, user_id, Decision.APPROVE.value, session=session)

    async def reject(
        self,
        project_id: str,
        kind: str,
        document_id: str,
        user_id: str,
        reason: Optional[str],
        session=None
    ) -> DecisionResult:
        return await self.decide(project_id, kind, document_id, user_id, Decision.REJECT.value, reason, session=session)

    async def reevaluate(
        self,
        project_id: str,
        kind: str,
        document_id: str,
        user_id: Optional[str] = None,
        session=None
    ) -> DecisionResult:
        """
        Re-resolve the current step against today's membership and complete
        it if the remaining eligible approvers have all approved.
        Used after membership changes; a no-op for documents not in approval.
        """
        lifecycle = lifecycle_for(kind)
        outcome: Dict[str, Any] = {}

        async def mutate(doc):
            steps = copy.deepcopy(doc.get("approval_steps") or [])
            index = doc.get("current_approval_step", 0)
            outcome.update({"steps": steps, "index": index, "new_index": index})
            if doc.get("status") != lifecycle.in_progress or index >= len(steps):
                return None

            members = await self.resolver.load_members(project_id, session=session)
            new_index = advance_steps(steps, index, doc, members)
            outcome["new_index"] = new_index

            if new_index == index and steps[index]["approvers"] == doc["approval_steps"][index].get("approvers"):
                return None

            changes = {"approval_steps": steps, "current_approval_step": new_index}
            if new_index >= len(steps):
                changes.update(self._approval_changes(lifecycle, doc, user_id, "remaining approvers satisfied"))
            return changes

        doc = await update_with_retry(
            self._collection(kind), document_id, mutate, lifecycle.entity_type,
            extra_filter={"project_id": project_id}, session=session
        )

        step_completed = outcome["new_index"] > outcome["index"]
        completed = step_completed and doc["status"] == lifecycle.approved
        if step_completed:
            logger.info(f"[APPROVAL] Re-evaluation advanced {doc.get('display_number')} to step {outcome['new_index'] + 1}")
            await self._audit(project_id, kind, doc, "REEVALUATE", user_id,
                              new={"status": doc["status"], "current_approval_step": outcome["new_index"]})
        if doc["status"] == lifecycle.approved:
            # Idempotent; applies a claimed commit whose ledger write never landed
            await self._on_approved(kind, doc, session)

        return self._result(doc, outcome["steps"], outcome["new_index"], step_completed, completed)

    # =========================================================================
    # TERMINAL APPROVAL
    # =========================================================================

    def _approval_changes(
        self,
        lifecycle: KindLifecycle,
        doc: Dict[str, Any],
        user_id: Optional[str],
        note: str
    ) -> Dict[str, Any]:
        changes = lifecycle.machine.apply(doc, lifecycle.approved, user_id, {"note": note})
        changes.update({
            "approval_status": ApprovalStatus.APPROVED.value,
            "approved_at": datetime.utcnow(),
        })
        return changes

    async def _on_approved(self, kind: str, doc: Dict[str, Any], session) -> None:
        # invoices already count against their PO from creation
        if kind == DocumentKind.PURCHASE_ORDER.value:
            await self.ensure_budget_committed(doc["project_id"], str(doc["_id"]), session=session)

    async def ensure_budget_committed(self, project_id: str, po_id: str, session=None) -> bool:
        """
        Commit an approved PO's amount exactly once.

        Two guards:
        - the `budget_committed` flag on the PO, claimed with a single
          conditional update together with committed_amount
        - a per-PO movement key on the sub-account, applied atomically with
          the `committed` increment (BudgetLedger.commit once_key)

        A PO whose flag was claimed but whose ledger commit never landed
        (crash or error between the two writes) is committed by the next
        call, and the movement key stops a second commit.

        Returns:
            True if this call applied the ledger commit, False otherwise
        """
        oid = as_object_id(po_id, "PURCHASE_ORDER")
        current = await self.db.purchase_orders.find_one({"_id": oid, "project_id": project_id}, session=session)
        if not current:
            raise DocumentNotFoundError("PURCHASE_ORDER", po_id)
        if current.get("status") != POStatus.APPROVED.value:
            return False
        amount = to_decimal(current.get("amount", 0))

        # amount is fixed at creation, so it can be folded into the claim
        claimed = await self.db.purchase_orders.find_one_and_update(
            {
                "_id": oid,
                "project_id": project_id,
                "status": POStatus.APPROVED.value,
                "budget_committed": {"$ne": True}
            },
            {
                "$set": {
                    "budget_committed": True,
                    "budget_committed_at": datetime.utcnow(),
                    "updated_at": datetime.utcnow()
                },
                "$inc": {"committed_amount": to_float(amount), LOCK_FIELD: 1}
            },
            return_document=ReturnDocument.AFTER,
            session=session
        )
        po = claimed or current
        if not po.get("budget_committed") or not po.get("sub_account_id"):
            return False

        balance = await self.ledger.commit(
            po["sub_account_id"], amount,
            source_type="purchase_order", source_id=str(po["_id"]),
            once_key=commit_key(po["_id"]), session=session
        )
        if balance is None:
            logger.debug(f"[APPROVAL] Budget for {po.get('display_number')} already committed")
            return False

        if claimed is None:
            logger.warning(f"[APPROVAL] Applied missing ledger commit for {po.get('display_number')}")
        logger.info(f"[APPROVAL] Committed {to_float(amount)} for {po.get('display_number')}")
        return True

    # =========================================================================
    # INVOICED AMOUNT ON THE PO
    # =========================================================================

    async def add_invoice_to_po(
        self,
        project_id: str,
        po_id: str,
        amount,
        session=None
    ) -> Dict[str, Any]:
        """
        Add a new invoice's amount to an approved PO's invoiced_amount.

        The status check and the increment are one conditional update, so a
        concurrent cancel either sees the invoiced amount or wins first.

        Raises:
            LinkedPurchaseOrderNotApprovedError: PO exists but is not approved
        """
        oid = as_object_id(po_id, "PURCHASE_ORDER")
        po = await self.db.purchase_orders.find_one_and_update(
            {"_id": oid, "project_id": project_id, "status": POStatus.APPROVED.value},
            {
                "$inc": {"invoiced_amount": to_float(amount), LOCK_FIELD: 1},
                "$set": {"updated_at": datetime.utcnow()}
            },
            return_document=ReturnDocument.AFTER,
            session=session
        )
        if po is not None:
            logger.info(f"[APPROVAL] {po.get('display_number')} invoiced_amount -> {po['invoiced_amount']}")
            return po

        existing = await self.db.purchase_orders.find_one({"_id": oid, "project_id": project_id}, session=session)
        if not existing:
            raise DocumentNotFoundError("PURCHASE_ORDER", po_id)
        raise LinkedPurchaseOrderNotApprovedError(
            f"Purchase order {existing.get('display_number')} is '{existing.get('status')}', not approved",
            details={"po_id": po_id, "status": existing.get("status")}
        )

    async def remove_invoice_from_po(self, invoice: Dict[str, Any], session=None) -> None:
        """Reverse add_invoice_to_po once an invoice stops counting against the PO."""
        await self.db.purchase_orders.update_one(
            {"_id": as_object_id(invoice["po_id"], "PURCHASE_ORDER")},
            {
                "$inc": {"invoiced_amount": -to_float(invoice.get("amount", 0)), LOCK_FIELD: 1},
                "$set": {"updated_at": datetime.utcnow()}
            },
            session=session
        )
        logger.info(
            f"[APPROVAL] {invoice.get('display_number')} removed {invoice.get('amount')} "
            f"from invoiced amount of PO {invoice['po_id']}"
        )

    # =========================================================================
    # READS
    # =========================================================================

    def _result(
        self,
        doc: Dict[str, Any],
        steps: List[Dict[str, Any]],
        index: int,
        step_completed: bool,
        document_completed: bool
    ) -> DecisionResult:
        in_flight = index < len(steps) and doc.get("approval_status") == ApprovalStatus.PENDING.value
        stalled = in_flight and not steps[index].get("approvers")
        if stalled:
            logger.warning(f"[APPROVAL] {doc.get('display_number')} is stalled at step {index + 1}: nobody can approve")
        return DecisionResult(
            document_id=str(doc["_id"]),
            document_status=doc["status"],
            step_index=index if in_flight else None,
            step_completed=step_completed,
            document_completed=document_completed,
            stalled=stalled,
            stalled_step=index + 1 if stalled else None
        )

    async def get_progress(
        self,
        project_id: str,
        kind: str,
        document_id: str,
        session=None
    ) -> ApprovalProgress:
        """Where the document stands, resolving the current step now."""
        lifecycle = lifecycle_for(kind)
        doc = await self._collection(kind).find_one(
            {"_id": as_object_id(document_id, lifecycle.entity_type), "project_id": project_id},
            session=session
        )
        if not doc:
            raise DocumentNotFoundError(lifecycle.entity_type, document_id)

        steps = doc.get("approval_steps") or []
        index = doc.get("current_approval_step", 0)
        progress = ApprovalProgress(
            document_id=str(doc["_id"]),
            status=doc.get("status"),
            current_step=None,
            total_steps=len(steps)
        )
        if doc.get("status") != lifecycle.in_progress or index >= len(steps):
            return progress

        step = steps[index]
        eligible = await self.resolver.resolve(step, doc, session=session)
        progress.current_step = index + 1
        progress.eligible_approvers = sorted(eligible)
        progress.approved_by = list(step.get("approved_by") or [])
        progress.stalled = not eligible
        progress.stalled_step = index + 1 if not eligible else None
        return progress

    async def pending_for_user(self, project_id: str, user_id: str, session=None) -> List[Dict[str, Any]]:
        """Documents whose current step `user_id` can decide right now."""
        members = await self.resolver.load_members(project_id, session=session)
        pending = []

        for kind, lifecycle in LIFECYCLES.items():
            cursor = self._collection(kind).find(
                {
                    "project_id": project_id,
                    "status": lifecycle.in_progress,
                    "approval_status": ApprovalStatus.PENDING.value
                },
                session=session
            )
            async for doc in cursor:
                steps = doc.get("approval_steps") or []
                index = doc.get("current_approval_step", 0)
                if index >= len(steps):
                    continue
                step = steps[index]
                if user_id in (step.get("decisions") or {}):
                    continue
                if user_id in resolve_approvers(step, doc, members):
                    pending.append({
                        "kind": kind,
                        "document_id": str(doc["_id"]),
                        "display_number": doc.get("display_number"),
                        "amount": doc.get("amount"),
                        "step": index + 1,
                        "total_steps": len(steps),
                    })

        return pending
