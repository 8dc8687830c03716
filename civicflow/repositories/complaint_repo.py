"""Complaint Repository - Durable complaint snapshots and dashboard queries"""
from typing import Any, Dict, List, Optional
from motor.motor_asyncio import AsyncIOMotorCollection
from pymongo import ASCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from .async_mongo import COMPLAINTS_COLLECTION, get_async_collection
from ..domain.models import Complaint, ComplaintFilter
from ..domain.enums import ReviewTag
from ..domain.errors import PersistenceError, StaleSnapshotError
from ..utils.logger import get_logger

logger = get_logger(__name__)


def build_complaint_query(complaint_filter: ComplaintFilter) -> Dict[str, Any]:
    """Translate a dashboard filter into a conjunctive Mongo query"""
    and_conditions: List[Dict[str, Any]] = []

    if complaint_filter.complaint_type is not None:
        and_conditions.append({"complaint_type": complaint_filter.complaint_type.value})
    if complaint_filter.status is not None:
        and_conditions.append({"status": complaint_filter.status.value})
    if complaint_filter.department_id is not None:
        and_conditions.append({"routing.department_id": complaint_filter.department_id})

    if complaint_filter.date_from or complaint_filter.date_to:
        date_query: Dict[str, Any] = {}
        if complaint_filter.date_from:
            date_query["$gte"] = complaint_filter.date_from
        if complaint_filter.date_to:
            date_query["$lte"] = complaint_filter.date_to
        and_conditions.append({"created_at": date_query})

    if not and_conditions:
        return {}
    if len(and_conditions) == 1:
        return and_conditions[0]
    return {"$and": and_conditions}


def _to_document(complaint: Complaint) -> Dict[str, Any]:
    # Don't use mode="json" - it converts datetime to strings, breaking range queries
    doc = complaint.model_dump()
    doc["_id"] = complaint.complaint_id
    return doc


def _from_document(doc: Dict[str, Any]) -> Complaint:
    doc.pop("_id", None)
    return Complaint.model_validate(doc)


class ComplaintRepository:
    """
    Stores complaint snapshots written by the orchestrator

    Writes are versioned: a snapshot only replaces a stored document with a
    lower version, so out-of-order writes cannot regress a complaint.
    Queries return the full matching set; pagination belongs to presentation.
    """

    def __init__(self, collection: Optional[AsyncIOMotorCollection] = None):
        self._complaints = collection if collection is not None else get_async_collection(COMPLAINTS_COLLECTION)

    async def save(self, complaint: Complaint) -> Complaint:
        """Upsert a snapshot unless a newer version is already stored"""
        try:
            await self._complaints.replace_one(
                {"_id": complaint.complaint_id, "version": {"$lt": complaint.version}},
                _to_document(complaint),
                upsert=True
            )
        except DuplicateKeyError:
            # Filter missed an existing _id: the stored version is newer or equal
            raise StaleSnapshotError(
                f"Complaint {complaint.complaint_id} already stored at version >= {complaint.version}",
                details={"complaint_id": complaint.complaint_id, "version": complaint.version}
            )
        except PyMongoError as e:
            raise PersistenceError(
                f"Failed to save complaint {complaint.complaint_id}: {e}",
                details={"complaint_id": complaint.complaint_id}
            ) from e

        logger.debug(
            f"Saved complaint {complaint.complaint_id} v{complaint.version}",
            extra={"complaint_id": complaint.complaint_id, "status": complaint.status.value}
        )
        return complaint

    async def get(self, complaint_id: str) -> Optional[Complaint]:
        """Get complaint by ID"""
        try:
            doc = await self._complaints.find_one({"_id": complaint_id})
        except PyMongoError as e:
            raise PersistenceError(f"Failed to load complaint {complaint_id}: {e}") from e
        return _from_document(doc) if doc else None

    async def list(self, complaint_filter: ComplaintFilter) -> List[Complaint]:
        """All complaints matching the filter, oldest first"""
        query = build_complaint_query(complaint_filter)
        cursor = self._complaints.find(query).sort("created_at", ASCENDING)
        return [_from_document(doc) async for doc in cursor]

    async def list_review_queue(self) -> List[Complaint]:
        """Complaints tagged for administrative review"""
        cursor = self._complaints.find(
            {"review_tags": ReviewTag.MANUAL_REVIEW.value}
        ).sort("created_at", ASCENDING)
        return [_from_document(doc) async for doc in cursor]
