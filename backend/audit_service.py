from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Optional, Dict, Any
import logging

logger = logging.getLogger(__name__)

# Entity types written by the ledger engine
AUDITED_ENTITY_TYPES = [
    "PURCHASE_ORDER",
    "INVOICE",
    "PAYMENT_FORECAST",
    "APPROVAL_CONFIG",
    "SUB_ACCOUNT"
]


class AuditService:
    """
    Insert-only trail of approval and ledger actions.

    Besides the old/new snapshots, entries carry the fields the trail is read by:
    the document's display number, the approval step a decision was
    made at, and the stated reason of a rejection or cancellation.
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db.audit_logs

    async def log_action(
        self,
        project_id: str,
        entity_type: str,
        entity_id: str,
        action_type: str,
        user_id: Optional[str],
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None,
        display_number: Optional[str] = None,
        step: Optional[int] = None,
        reason: Optional[str] = None
    ):
        """
        Log an action to audit trail (INSERT ONLY).

        Args:
            display_number: e.g. "PO-0007", when the entity is numbered
            step: 1-based approval step of an APPROVE / REJECT decision
            reason: rejection or cancellation reason
        """
        try:
            audit_entry = {
                "project_id": project_id,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "display_number": display_number,
                "action_type": action_type,
                "step": step,
                "reason": reason,
                "old_value_json": old_value,
                "new_value_json": new_value,
                "user_id": user_id,
                "timestamp": datetime.utcnow()
            }

            await self.collection.insert_one(audit_entry)
            label = display_number or f"{entity_type}:{entity_id}"
            at_step = f" at step {step}" if step is not None else ""
            logger.info(f"[AUDIT] {action_type} on {label}{at_step} by user:{user_id}")
        except Exception as e:
            # Don't fail the main operation if audit logging fails
            logger.error(f"[AUDIT] Failed to create audit log: {str(e)}")

    async def get_audit_logs(
        self,
        project_id: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        action_type: Optional[str] = None,
        limit: int = 100
    ):
        """Retrieve audit logs (READ ONLY), newest first"""
        query = {"project_id": project_id}

        if entity_type:
            query["entity_type"] = entity_type
        if entity_id:
            query["entity_id"] = entity_id
        if action_type:
            query["action_type"] = action_type

        cursor = self.collection.find(query).sort("timestamp", -1).limit(limit)
        logs = await cursor.to_list(length=limit)

        # Convert ObjectId to string
        for log in logs:
            log["audit_id"] = str(log.pop("_id"))

        return logs
