"""
LEDGER ENGINE - OPTIMISTIC READ-MODIFY-WRITE

Purchase orders, invoices and payment forecasts carry a `lock_version`.
Every mutation reads the document, derives the new fields from that exact
snapshot and writes them back only if `lock_version` is unchanged.
A lost race re-reads fresh state and tries again; stale state is never
written.
"""

from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Union
from bson import ObjectId
import asyncio
import logging

from approval_ledger.errors import ConcurrentModificationError, DocumentNotFoundError

logger = logging.getLogger(__name__)

MAX_RETRIES = 5
RETRY_DELAY_MS = 50  # Base delay in milliseconds

LOCK_FIELD = "lock_version"

# async def mutate(doc) -> Optional[Dict[str, Any]]  (None means nothing to write)
Mutation = Callable[[Dict[str, Any]], Awaitable[Optional[Dict[str, Any]]]]


def as_object_id(value: Union[str, ObjectId], entity_type: str = "document") -> ObjectId:
    """Coerce a string id to ObjectId; unknown formats are treated as not found."""
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    raise DocumentNotFoundError(entity_type, str(value))


def version_filter(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Filter matching `doc` only if nobody has written it since it was read."""
    if LOCK_FIELD in doc:
        return {"_id": doc["_id"], LOCK_FIELD: doc[LOCK_FIELD]}
    return {"_id": doc["_id"], LOCK_FIELD: {"$exists": False}}


async def update_with_retry(
    collection,
    document_id: Union[str, ObjectId],
    mutate: Mutation,
    entity_type: str,
    extra_filter: Optional[Dict[str, Any]] = None,
    session=None,
    max_retries: int = MAX_RETRIES
) -> Dict[str, Any]:
    """
    Apply `mutate` to the current version of a document atomically.

    Args:
        collection: Motor collection
        document_id: Target document id
        mutate: Async function returning the fields to $set (or None)
        entity_type: Name used in errors and logs
        extra_filter: Additional scoping (e.g. project_id)
        session: Optional MongoDB session

    Returns:
        The document as written (or as read, when mutate returned None)

    Raises:
        DocumentNotFoundError: Document does not exist
        ConcurrentModificationError: Retries exhausted
        Anything raised by `mutate` (propagates unchanged)
    """
    oid = as_object_id(document_id, entity_type)
    query = {"_id": oid, **(extra_filter or {})}

    for attempt in range(max_retries):
        doc = await collection.find_one(query, session=session)
        if not doc:
            raise DocumentNotFoundError(entity_type, str(document_id))

        changes = await mutate(doc)
        if not changes:
            return doc

        changes = {**changes, "updated_at": datetime.utcnow()}
        result = await collection.update_one(
            version_filter(doc),
            {"$set": changes, "$inc": {LOCK_FIELD: 1}},
            session=session
        )

        if result.matched_count == 1:
            doc.update(changes)
            doc[LOCK_FIELD] = doc.get(LOCK_FIELD, 0) + 1
            return doc

        logger.warning(
            f"[OPTIMISTIC] {entity_type} {document_id} changed concurrently, "
            f"retry {attempt + 1}/{max_retries}"
        )
        await asyncio.sleep(RETRY_DELAY_MS * (attempt + 1) / 1000)

    logger.error(f"[OPTIMISTIC] Giving up on {entity_type} {document_id}")
    raise ConcurrentModificationError(entity_type, str(document_id), max_retries)
