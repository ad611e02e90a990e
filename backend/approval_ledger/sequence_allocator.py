"""
LEDGER ENGINE - RECLAIMABLE DOCUMENT NUMBERING

Provides:
1. Per-project, per-kind counters (`count` = last number issued)
2. Atomic increment via findOneAndUpdate + $inc
3. Reclaim of the most recently issued number only
4. Duplicate detection against live documents (fatal, never retried)

Numbers are never reused out of order: deleting anything but the latest
document leaves a permanent gap.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from datetime import datetime
import logging

from approval_ledger.errors import DuplicateSequenceError

logger = logging.getLogger(__name__)


# Document kinds -> counter key, owning collection, display prefix
KIND_PO = "pos"
KIND_INVOICE = "invoices"

DOCUMENT_KINDS = {
    KIND_PO: {"collection": "purchase_orders", "prefix": "PO"},
    KIND_INVOICE: {"collection": "invoices", "prefix": "INV"},
}

NUMBER_WIDTH = 4


def format_number(kind: str, number: int) -> str:
    """PO-0001 / INV-0042"""
    prefix = DOCUMENT_KINDS[kind]["prefix"]
    return f"{prefix}-{number:0{NUMBER_WIDTH}d}"


class SequenceAllocator:
    """
    Counter resource for document numbers.

    `next_number` and `reclaim` are single-document atomic operations on
    the `counters` collection, so concurrent callers serialize on the
    counter key.
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    def _check_kind(self, kind: str) -> None:
        if kind not in DOCUMENT_KINDS:
            raise ValueError(f"Unknown document kind: {kind}")

    async def next_number(
        self,
        project_id: str,
        kind: str,
        session=None
    ) -> int:
        """
        Issue count + 1 and persist the increment.

        Raises:
            DuplicateSequenceError: a live document already holds the number
        """
        self._check_kind(kind)

        result = await self.db.counters.find_one_and_update(
            {"project_id": project_id, "kind": kind},
            {
                "$inc": {"count": 1},
                "$set": {"updated_at": datetime.utcnow()},
                "$setOnInsert": {"created_at": datetime.utcnow()}
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
            session=session
        )
        number = result["count"]

        # A hit here means the counter was rewound behind a live document
        collection = self.db[DOCUMENT_KINDS[kind]["collection"]]
        existing = await collection.find_one(
            {"project_id": project_id, "number": number},
            {"_id": 1},
            session=session
        )
        if existing:
            logger.error(
                f"[SEQUENCE] Duplicate {kind} number {number} in project {project_id}"
            )
            raise DuplicateSequenceError(project_id, kind, number, str(existing["_id"]))

        logger.info(f"[SEQUENCE] Issued {format_number(kind, number)} for project {project_id}")
        return number

    async def current(self, project_id: str, kind: str, session=None) -> int:
        """Last number issued (0 when nothing has been issued yet)."""
        self._check_kind(kind)
        doc = await self.db.counters.find_one(
            {"project_id": project_id, "kind": kind},
            session=session
        )
        return doc.get("count", 0) if doc else 0

    async def reclaim(
        self,
        project_id: str,
        kind: str,
        number: int,
        has_dependents: bool = False,
        session=None
    ) -> bool:
        """
        Give back `number` if it is the most recently issued one.

        The decrement is conditional on count == number inside a single
        findOneAndUpdate, so a concurrent `next_number` makes it a no-op.

        Returns:
            True if the counter was decremented, False if a gap remains
        """
        self._check_kind(kind)

        if has_dependents:
            logger.info(
                f"[SEQUENCE] Not reclaiming {format_number(kind, number)}: dependent documents exist"
            )
            return False

        result = await self.db.counters.find_one_and_update(
            {"project_id": project_id, "kind": kind, "count": number},
            {
                "$inc": {"count": -1},
                "$set": {"updated_at": datetime.utcnow()}
            },
            return_document=ReturnDocument.AFTER,
            session=session
        )

        if result is None:
            logger.warning(
                f"[SEQUENCE] {format_number(kind, number)} is not the latest number "
                f"in project {project_id}; leaving a permanent gap"
            )
            return False

        logger.info(f"[SEQUENCE] Reclaimed {format_number(kind, number)} in project {project_id}")
        return True

    async def create_unique_constraints(self):
        """
        Create unique indexes on counters and document numbers.
        """
        try:
            await self.db.counters.create_index(
                [("project_id", 1), ("kind", 1)],
                unique=True,
                name="unique_counter_key"
            )

            for kind, meta in DOCUMENT_KINDS.items():
                await self.db[meta["collection"]].create_index(
                    [("project_id", 1), ("number", 1)],
                    unique=True,
                    name=f"unique_{kind}_number"
                )

            logger.info("Created unique document number constraints")
        except Exception as e:
            logger.warning(f"Index creation result: {str(e)}")
