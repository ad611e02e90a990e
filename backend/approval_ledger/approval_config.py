"""
LEDGER ENGINE - APPROVAL CONFIGURATION

Per-project ordered approval steps for purchase orders and invoices,
stored in `approval_configs` (po_approvals / invoice_approvals).

At submission the applicable steps are DEEP-COPIED into the document.
Later edits to the configuration never reach in-flight documents.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import BaseModel, ValidationError, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime
import copy
import logging

from approval_ledger.enums import (
    ApproverType, AmountCondition, DocumentKind, StepStatus
)
from approval_ledger.errors import InvalidApprovalConfigError
from approval_ledger.financial_precision import to_decimal, Amount

logger = logging.getLogger(__name__)


# =============================================================================
# STEP CONFIG MODEL
# =============================================================================

class ApprovalStepConfig(BaseModel):
    id: Optional[str] = None
    order: int = 0
    approver_type: ApproverType
    approvers: List[str] = []       # fixed
    roles: List[str] = []           # role
    department: Optional[str] = None  # hod / coordinator override
    require_all: bool = False
    has_amount_threshold: bool = False
    amount_threshold: Optional[float] = None
    amount_condition: AmountCondition = AmountCondition.ABOVE
    amount_threshold_max: Optional[float] = None

    class Config:
        use_enum_values = True

    @model_validator(mode="after")
    def check_step(self):
        if self.approver_type == ApproverType.FIXED.value and not self.approvers:
            raise ValueError("fixed step needs at least one approver")
        if self.approver_type == ApproverType.ROLE.value and not self.roles:
            raise ValueError("role step needs at least one role")
        if self.has_amount_threshold:
            if self.amount_threshold is None:
                raise ValueError("amount_threshold is required when has_amount_threshold is set")
            if self.amount_condition == AmountCondition.BETWEEN.value:
                if self.amount_threshold_max is None or self.amount_threshold_max < self.amount_threshold:
                    raise ValueError("between needs amount_threshold_max >= amount_threshold")
        return self


DEFAULT_STEPS = {
    DocumentKind.PURCHASE_ORDER.value: [
        {"id": "default-po-1", "order": 1, "approver_type": "role",
         "roles": ["PM", "EP"], "require_all": False, "has_amount_threshold": False},
    ],
    DocumentKind.INVOICE.value: [
        {"id": "default-inv-1", "order": 1, "approver_type": "role",
         "roles": ["Controller", "PM", "EP"], "require_all": False, "has_amount_threshold": False},
    ],
}

CONFIG_FIELDS = {
    DocumentKind.PURCHASE_ORDER.value: "po_approvals",
    DocumentKind.INVOICE.value: "invoice_approvals",
}


def step_applies(step: Dict[str, Any], amount: Amount) -> bool:
    """Amount threshold check; steps without a threshold always apply."""
    if not step.get("has_amount_threshold"):
        return True

    value = to_decimal(amount)
    threshold = to_decimal(step.get("amount_threshold") or 0)
    condition = step.get("amount_condition") or AmountCondition.ABOVE.value

    if condition == AmountCondition.ABOVE.value:
        return value > threshold
    if condition == AmountCondition.BELOW.value:
        return value < threshold
    if condition == AmountCondition.BETWEEN.value:
        upper = to_decimal(step.get("amount_threshold_max") or 0)
        return threshold <= value <= upper
    return True


def build_runtime_step(config_step: Dict[str, Any], order: int) -> Dict[str, Any]:
    """Runtime copy embedded in the document. `approvers` is refreshed on every evaluation."""
    step = copy.deepcopy(config_step)
    return {
        "id": step.get("id"),
        "order": order,
        "approver_type": step["approver_type"],
        "approvers": list(step.get("approvers") or []),
        "roles": list(step.get("roles") or []),
        "department": step.get("department") or None,
        "require_all": bool(step.get("require_all", False)),
        "decisions": {},
        "approved_by": [],
        "rejected_by": [],
        "status": StepStatus.PENDING.value,
    }


def validate_steps(steps: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Validate and renumber a step list; raises InvalidApprovalConfigError."""
    cleaned = []
    for index, raw in enumerate(steps):
        try:
            model = ApprovalStepConfig(**raw)
        except ValidationError as e:
            raise InvalidApprovalConfigError(
                f"Invalid approval step {index + 1}: {e.errors()[0].get('msg')}",
                details={"step": index + 1, "errors": [err.get("msg") for err in e.errors()]}
            )
        data = model.model_dump()
        data["order"] = index + 1
        cleaned.append(data)
    return cleaned


class ApprovalConfigService:
    """
    Reads and writes the per-project approval configuration.
    """

    COLLECTION = "approval_configs"

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def get_steps(self, project_id: str, kind: str, session=None) -> List[Dict[str, Any]]:
        """
        Configured steps for a document kind.
        Missing config document -> defaults; saved empty list -> zero steps.
        """
        field = CONFIG_FIELDS[kind]
        doc = await self.db[self.COLLECTION].find_one({"project_id": project_id}, session=session)

        if doc is None or field not in doc:
            logger.debug(f"[APPROVAL] Using default {kind} approval steps for project {project_id}")
            return copy.deepcopy(DEFAULT_STEPS[kind])

        return sorted(doc.get(field) or [], key=lambda s: s.get("order", 0))

    async def save_config(
        self,
        project_id: str,
        po_steps: List[Dict[str, Any]],
        invoice_steps: List[Dict[str, Any]],
        user_id: str,
        session=None
    ) -> Dict[str, Any]:
        po_clean = validate_steps(po_steps)
        invoice_clean = validate_steps(invoice_steps)

        await self.db[self.COLLECTION].update_one(
            {"project_id": project_id},
            {
                "$set": {
                    "po_approvals": po_clean,
                    "invoice_approvals": invoice_clean,
                    "updated_by": user_id,
                    "updated_at": datetime.utcnow()
                },
                "$setOnInsert": {
                    "project_id": project_id,
                    "created_at": datetime.utcnow()
                }
            },
            upsert=True,
            session=session
        )

        logger.info(
            f"[APPROVAL] Config saved for project {project_id}: "
            f"{len(po_clean)} PO step(s), {len(invoice_clean)} invoice step(s)"
        )
        return {"po_approvals": po_clean, "invoice_approvals": invoice_clean}

    async def snapshot_for(
        self,
        project_id: str,
        kind: str,
        amount: Amount,
        session=None
    ) -> List[Dict[str, Any]]:
        """
        Deep copy of the steps that apply to a document of `amount`,
        renumbered 1..n, in runtime shape.
        """
        steps = await self.get_steps(project_id, kind, session=session)
        applicable = [s for s in steps if step_applies(s, amount)]
        return [build_runtime_step(step, index + 1) for index, step in enumerate(applicable)]
