"""Audit Repository - Data access for audit events"""
from typing import Any, Dict, List, Optional
from motor.motor_asyncio import AsyncIOMotorCollection
from pymongo import ASCENDING

from .async_mongo import AUDIT_EVENTS_COLLECTION, get_async_collection
from ..domain.models import AuditEvent
from ..domain.enums import AuditEventType
from ..utils.logger import get_logger

logger = get_logger(__name__)


class AuditRepository:
    """Repository for audit event operations (append-only)"""

    def __init__(self, collection: Optional[AsyncIOMotorCollection] = None):
        self._audit_events = collection if collection is not None else get_async_collection(AUDIT_EVENTS_COLLECTION)

    async def create_event(self, event: AuditEvent) -> AuditEvent:
        """Create an audit event (append-only)"""
        doc = event.model_dump()
        doc["_id"] = event.audit_event_id

        await self._audit_events.insert_one(doc)
        logger.debug(
            f"Created audit event: {event.event_type.value}",
            extra={"complaint_id": event.complaint_id, "event_type": event.event_type.value}
        )
        return event

    async def get_events_for_complaint(
        self,
        complaint_id: str,
        event_types: Optional[List[AuditEventType]] = None
    ) -> List[AuditEvent]:
        """Audit trail of one complaint, oldest first"""
        query: Dict[str, Any] = {"complaint_id": complaint_id}
        if event_types:
            query["event_type"] = {"$in": [et.value for et in event_types]}

        cursor = self._audit_events.find(query).sort("timestamp", ASCENDING)
        events = []
        async for doc in cursor:
            doc.pop("_id", None)
            events.append(AuditEvent.model_validate(doc))
        return events
