"""
LEDGER ENGINE - APPROVAL STEP RESOLVER

Turns an approval step into the concrete set of user ids that may decide it.

Resolution is LATE-BOUND: it runs against the membership table as it is at
decision time, never against what was true at submission. Moving the
creator to another department, or changing someone's role, changes who
must approve an in-flight document.

    fixed        -> step.approvers verbatim
    role         -> members whose role is in step.roles
    hod          -> members with position HOD in the department
    coordinator  -> members with position Coordinator in the department

department = step.department, else the creator's CURRENT department.
An empty result is valid: the step is stalled until someone qualifies.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from typing import Any, Dict, Iterable, List, Optional, Set
import logging

from approval_ledger.enums import ApproverType, POSITION_FOR_APPROVER_TYPE

logger = logging.getLogger(__name__)


def _is_active(member: Dict[str, Any]) -> bool:
    return member.get("active", True)


def find_member(members: Iterable[Dict[str, Any]], user_id: Optional[str]) -> Optional[Dict[str, Any]]:
    if not user_id:
        return None
    for member in members:
        if member.get("user_id") == user_id:
            return member
    return None


def resolve_department(
    step: Dict[str, Any],
    document: Dict[str, Any],
    members: List[Dict[str, Any]]
) -> Optional[str]:
    """Step override first, then the creator's department as of now."""
    if step.get("department"):
        return step["department"]
    creator = find_member(members, document.get("created_by"))
    if creator and creator.get("department"):
        return creator["department"]
    return None


def resolve_approvers(
    step: Dict[str, Any],
    document: Dict[str, Any],
    members: List[Dict[str, Any]]
) -> Set[str]:
    """
    Pure resolution of a step against a membership snapshot.

    Args:
        step: Config or runtime step (approver_type, approvers, roles, department)
        document: The requesting PO / invoice (needs created_by)
        members: Current project membership records

    Returns:
        Set of eligible user ids (possibly empty)
    """
    approver_type = step.get("approver_type")

    if approver_type == ApproverType.FIXED.value:
        return set(step.get("approvers") or [])

    if approver_type == ApproverType.ROLE.value:
        roles = set(step.get("roles") or [])
        return {
            m["user_id"] for m in members
            if _is_active(m) and m.get("role") in roles
        }

    if approver_type in (ApproverType.HOD.value, ApproverType.COORDINATOR.value):
        department = resolve_department(step, document, members)
        if not department:
            return set()
        position = POSITION_FOR_APPROVER_TYPE[ApproverType(approver_type)]
        return {
            m["user_id"] for m in members
            if _is_active(m)
            and m.get("position") == position
            and m.get("department") == department
        }

    logger.warning(f"[APPROVAL] Unknown approver type: {approver_type}")
    return set()


class ApprovalStepResolver:
    """
    Loads the current project membership and resolves steps against it.
    Nothing is cached: every call reads the membership table again.
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def load_members(self, project_id: str, session=None) -> List[Dict[str, Any]]:
        return await self.db.project_members.find(
            {"project_id": project_id},
            session=session
        ).to_list(length=None)

    async def resolve(
        self,
        step: Dict[str, Any],
        document: Dict[str, Any],
        members: Optional[List[Dict[str, Any]]] = None,
        session=None
    ) -> Set[str]:
        if members is None:
            members = await self.load_members(document["project_id"], session=session)
        resolved = resolve_approvers(step, document, members)
        if not resolved:
            logger.warning(
                f"[APPROVAL] Step {step.get('order')} ({step.get('approver_type')}) of "
                f"{document.get('display_number', document.get('_id'))} resolves to nobody"
            )
        return resolved
