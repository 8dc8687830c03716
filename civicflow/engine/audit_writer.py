"""Audit Writer - Append-only audit events"""
from typing import Any, Dict, Optional, TYPE_CHECKING

from ..domain.models import AuditEvent, RoutingAttempt
from ..domain.enums import AuditEventType, ComplaintStatus, ComplaintType, RoutingFailureReason
from ..utils.idgen import generate_audit_event_id
from ..utils.time import utc_now
from ..utils.logger import get_logger, get_correlation_id

if TYPE_CHECKING:
    from ..services.collaborators import AuditStore

logger = get_logger(__name__)


class AuditWriter:
    """
    Write audit events (append-only)

    Every routing attempt, routing failure, accepted transition and
    administrator alert produces one event. A failing audit store is logged
    and never blocks the lifecycle step that produced the event.
    """

    def __init__(self, store: "AuditStore"):
        self.store = store

    async def write_event(
        self,
        complaint_id: str,
        event_type: AuditEventType,
        details: Optional[Dict[str, Any]] = None
    ) -> Optional[AuditEvent]:
        """Write a single audit event"""
        event = AuditEvent(
            audit_event_id=generate_audit_event_id(),
            complaint_id=complaint_id,
            event_type=event_type,
            details=details or {},
            timestamp=utc_now(),
            correlation_id=get_correlation_id()
        )
        try:
            return await self.store.create_event(event)
        except Exception as e:
            logger.error(
                f"Failed to write audit event {event_type.value}: {e}",
                extra={"complaint_id": complaint_id, "event_type": event_type.value}
            )
            return None

    async def write_complaint_created(
        self,
        complaint_id: str,
        complaint_type: ComplaintType,
        local_id: Optional[str] = None
    ) -> Optional[AuditEvent]:
        return await self.write_event(
            complaint_id,
            AuditEventType.COMPLAINT_CREATED,
            {"complaint_type": complaint_type.value, "local_id": local_id}
        )

    async def write_transition(
        self,
        complaint_id: str,
        from_status: ComplaintStatus,
        to_status: ComplaintStatus,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[AuditEvent]:
        return await self.write_event(
            complaint_id,
            AuditEventType.STATUS_TRANSITION,
            {
                "from_status": from_status.value,
                "to_status": to_status.value,
                "metadata": metadata or {},
            }
        )

    async def write_routing_attempt(self, attempt: RoutingAttempt) -> Optional[AuditEvent]:
        """One record per work-order creation attempt"""
        return await self.write_event(
            attempt.complaint_id,
            AuditEventType.ROUTING_ATTEMPT,
            attempt.model_dump(mode="json", exclude={"complaint_id"})
        )

    async def write_routing_failure(
        self,
        complaint_id: str,
        reason: RoutingFailureReason,
        details: Optional[Dict[str, Any]] = None
    ) -> Optional[AuditEvent]:
        payload = {"reason": reason.value}
        payload.update(details or {})
        return await self.write_event(complaint_id, AuditEventType.ROUTING_FAILURE, payload)

    async def write_admin_notified(
        self,
        complaint_id: str,
        reason: RoutingFailureReason,
        delivered: bool
    ) -> Optional[AuditEvent]:
        return await self.write_event(
            complaint_id,
            AuditEventType.ADMIN_NOTIFIED,
            {"reason": reason.value, "delivered": delivered}
        )

    async def write_reclassified(
        self,
        complaint_id: str,
        previous_type: ComplaintType,
        new_type: ComplaintType
    ) -> Optional[AuditEvent]:
        return await self.write_event(
            complaint_id,
            AuditEventType.RECLASSIFIED,
            {"previous_type": previous_type.value, "new_type": new_type.value}
        )

    async def write_duplicate_submission(
        self,
        complaint_id: str,
        local_id: str
    ) -> Optional[AuditEvent]:
        return await self.write_event(
            complaint_id,
            AuditEventType.DUPLICATE_SUBMISSION,
            {"local_id": local_id}
        )
