"""
LEDGER ENGINE - DOCUMENT STATE MACHINES

A small registry of allowed status transitions with:
- Transition registration with optional guards
- Transition validation (unregistered moves are rejected)
- Status update + state_history entry generation

The machine does not write anything itself. Services build the `$set`
payload with `apply()` inside their optimistic read-modify-write, so the
status change and its history entry land in the same atomic update.

Usage:
    po_machine.validate_transition("approved", "cancelled")
    changes = po_machine.apply(po_doc, "cancelled", user_id, {"reason": reason})
"""

from typing import Dict, Any, Optional, Callable, List, Set, Tuple, Type
from datetime import datetime
import logging

from approval_ledger.enums import POStatus, InvoiceStatus
from approval_ledger.errors import BusinessRuleViolation, POHasInvoicesError
from approval_ledger.financial_precision import to_decimal

logger = logging.getLogger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class InvalidTransitionError(BusinessRuleViolation):
    """Raised when attempting an invalid state transition."""
    code = "INVALID_TRANSITION"

    def __init__(self, entity: str, from_state: str, to_state: str, allowed: List[str] = None):
        self.entity = entity
        self.from_state = from_state
        self.to_state = to_state
        self.allowed = allowed or []

        allowed_str = f" Allowed transitions from '{from_state}': {self.allowed}" if self.allowed else ""
        super().__init__(
            f"Invalid transition for {entity}: '{from_state}' -> '{to_state}'.{allowed_str}",
            details={"from_state": from_state, "to_state": to_state, "allowed": self.allowed}
        )


class GuardConditionError(BusinessRuleViolation):
    """Raised when a guard condition prevents a transition."""
    code = "TRANSITION_BLOCKED"


# =============================================================================
# TYPE DEFINITIONS
# =============================================================================

# Guard signature: def guard(entity_doc) -> Tuple[bool, str]
GuardCondition = Callable[[Dict[str, Any]], Tuple[bool, str]]


class Transition:
    """Definition of a state transition."""

    def __init__(
        self,
        from_state: str,
        to_state: str,
        guard: Optional[GuardCondition] = None,
        guard_error: Type[BusinessRuleViolation] = GuardConditionError,
        description: str = ""
    ):
        self.from_state = from_state
        self.to_state = to_state
        self.guard = guard
        self.guard_error = guard_error
        self.description = description

    def __repr__(self):
        return f"Transition({self.from_state} -> {self.to_state})"


# =============================================================================
# STATE MACHINE
# =============================================================================

class StateMachine:
    """
    Status transition table for one entity type.

    Example:
        machine = StateMachine("purchase_order")
        machine.register("draft", "pending")
        machine.register("approved", "cancelled", guard=nothing_invoiced)
    """

    def __init__(
        self,
        entity_name: str,
        status_field: str = "status",
        history_field: Optional[str] = "state_history"
    ):
        self.entity_name = entity_name
        self.status_field = status_field
        self.history_field = history_field

        # Transitions indexed by (from_state, to_state)
        self._transitions: Dict[Tuple[str, str], Transition] = {}
        self._states: Set[str] = set()

    # =========================================================================
    # REGISTRATION
    # =========================================================================

    def register(
        self,
        from_state: str,
        to_state: str,
        guard: Optional[GuardCondition] = None,
        guard_error: Type[BusinessRuleViolation] = GuardConditionError,
        description: str = ""
    ) -> "StateMachine":
        key = (from_state, to_state)

        if key in self._transitions:
            logger.warning(
                f"[STATE_MACHINE] Overwriting transition {self.entity_name}: "
                f"'{from_state}' -> '{to_state}'"
            )

        self._transitions[key] = Transition(
            from_state=from_state,
            to_state=to_state,
            guard=guard,
            guard_error=guard_error,
            description=description
        )
        self._states.add(from_state)
        self._states.add(to_state)
        return self

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def get_allowed_transitions(self, from_state: str) -> List[str]:
        return [dst for (src, dst) in self._transitions.keys() if src == from_state]

    def can_transition(self, from_state: str, to_state: str) -> bool:
        """Check if transition is registered (does not check guards)."""
        return (from_state, to_state) in self._transitions

    def validate_transition(self, from_state: str, to_state: str) -> None:
        """
        Validate that a transition is registered.
        Raises InvalidTransitionError if not valid.
        """
        if not self.can_transition(from_state, to_state):
            raise InvalidTransitionError(
                entity=self.entity_name,
                from_state=from_state,
                to_state=to_state,
                allowed=self.get_allowed_transitions(from_state)
            )

    def check_guard(self, entity_doc: Dict[str, Any], from_state: str, to_state: str) -> None:
        transition = self._transitions.get((from_state, to_state))

        if transition and transition.guard:
            allowed, reason = transition.guard(entity_doc)
            if not allowed:
                raise transition.guard_error(
                    reason,
                    details={"from_state": from_state, "to_state": to_state}
                )

    # =========================================================================
    # UPDATE BUILDERS
    # =========================================================================

    def get_status_update(self, to_state: str) -> Dict[str, Any]:
        return {
            self.status_field: to_state,
            f"{self.status_field}_changed_at": datetime.utcnow()
        }

    def get_history_entry(
        self,
        from_state: str,
        to_state: str,
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        return {
            "from_state": from_state,
            "to_state": to_state,
            "transitioned_at": datetime.utcnow(),
            "transitioned_by": user_id,
            "metadata": metadata or {}
        }

    def apply(
        self,
        entity_doc: Dict[str, Any],
        to_state: str,
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Validate a move from the document's current status and return the
        fields to $set (status, status_changed_at, state_history).

        Raises:
            InvalidTransitionError: Transition not registered
            BusinessRuleViolation: Guard refused the transition
        """
        from_state = entity_doc.get(self.status_field)

        self.validate_transition(from_state, to_state)
        self.check_guard(entity_doc, from_state, to_state)

        changes = self.get_status_update(to_state)
        if self.history_field:
            history = list(entity_doc.get(self.history_field) or [])
            history.append(self.get_history_entry(from_state, to_state, user_id, metadata))
            changes[self.history_field] = history

        logger.info(
            f"[STATE_MACHINE] {self.entity_name} {entity_doc.get('_id')}: "
            f"'{from_state}' -> '{to_state}'"
        )
        return changes

    # =========================================================================
    # INTROSPECTION
    # =========================================================================

    def get_states(self) -> List[str]:
        return list(self._states)

    def get_graph(self) -> Dict[str, List[str]]:
        """Get state graph as adjacency list."""
        graph = {state: [] for state in self._states}
        for (src, dst) in self._transitions.keys():
            graph[src].append(dst)
        return graph

    def __repr__(self):
        return (
            f"StateMachine({self.entity_name}, "
            f"states={len(self._states)}, "
            f"transitions={len(self._transitions)})"
        )


# =============================================================================
# DOCUMENT LIFECYCLES
# =============================================================================

def _nothing_invoiced(po: Dict[str, Any]) -> Tuple[bool, str]:
    invoiced = to_decimal(po.get("invoiced_amount", 0))
    if invoiced != 0:
        return False, f"Purchase order has {invoiced} invoiced; only uninvoiced orders can be cancelled"
    return True, ""


def build_purchase_order_machine() -> StateMachine:
    machine = StateMachine("purchase_order")
    machine.register(POStatus.DRAFT.value, POStatus.PENDING.value, description="Submit for approval")
    machine.register(POStatus.DRAFT.value, POStatus.APPROVED.value, description="Submit with no approval steps")
    machine.register(POStatus.PENDING.value, POStatus.APPROVED.value, description="All steps approved")
    machine.register(POStatus.PENDING.value, POStatus.REJECTED.value, description="Rejected at any step")
    machine.register(POStatus.APPROVED.value, POStatus.CLOSED.value, description="Manual close")
    machine.register(
        POStatus.APPROVED.value, POStatus.CANCELLED.value,
        guard=_nothing_invoiced,
        guard_error=POHasInvoicesError,
        description="Cancel an uninvoiced order"
    )
    return machine


def build_invoice_machine() -> StateMachine:
    machine = StateMachine("invoice")
    machine.register(InvoiceStatus.PENDING_APPROVAL.value, InvoiceStatus.PENDING.value, description="Approved for payment")
    machine.register(InvoiceStatus.PENDING_APPROVAL.value, InvoiceStatus.REJECTED.value, description="Rejected at any step")
    machine.register(InvoiceStatus.PENDING_APPROVAL.value, InvoiceStatus.CANCELLED.value)
    machine.register(InvoiceStatus.PENDING.value, InvoiceStatus.PARTIAL_PAID.value)
    machine.register(InvoiceStatus.PENDING.value, InvoiceStatus.PAID.value)
    machine.register(InvoiceStatus.PARTIAL_PAID.value, InvoiceStatus.PARTIAL_PAID.value, description="Further partial payment")
    machine.register(InvoiceStatus.PARTIAL_PAID.value, InvoiceStatus.PAID.value)
    machine.register(InvoiceStatus.PENDING.value, InvoiceStatus.CANCELLED.value)
    return machine


purchase_order_machine = build_purchase_order_machine()
invoice_machine = build_invoice_machine()
