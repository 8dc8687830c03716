"""Collaborator contracts consumed by the orchestration core"""
from datetime import datetime
from typing import List, Optional, Protocol

from ..domain.models import (
    AuditEvent, Complaint, ComplaintFilter, Department, DraftComplaint,
    NotificationRequest, SubmissionKey, WorkOrderRequest
)
from ..domain.enums import RoutingFailureReason


class DepartmentEndpoint(Protocol):
    """Creates work orders in a department's own system"""

    async def create_work_order(self, department: Department, request: WorkOrderRequest) -> str:
        """Return the new work order id or raise ExternalServiceError"""
        ...


class NotificationSender(Protocol):
    """Delivers reporter / administrator notifications"""

    async def send(self, request: NotificationRequest) -> bool:
        ...


class AdminNotifier(Protocol):
    """Alerts administrators about complaints needing manual routing"""

    async def notify_routing_failure(
        self,
        complaint: Complaint,
        reason: RoutingFailureReason
    ) -> None:
        ...


class ComplaintStore(Protocol):
    """Durable complaint store shared with the dashboard query surface"""

    async def save(self, complaint: Complaint) -> Complaint:
        """Persist a snapshot; raise StaleSnapshotError if a newer one is stored"""
        ...

    async def get(self, complaint_id: str) -> Optional[Complaint]:
        ...

    async def list(self, complaint_filter: ComplaintFilter) -> List[Complaint]:
        ...

    async def list_review_queue(self) -> List[Complaint]:
        ...


class SubmissionKeyStore(Protocol):
    """Idempotency keys for offline draft submissions"""

    async def find_active(self, local_id: str, since: datetime) -> Optional[SubmissionKey]:
        ...

    async def claim(self, local_id: str, complaint_id: str, since: datetime) -> SubmissionKey:
        """Claim the key or raise DuplicateSubmissionError with the original id"""
        ...

    async def release(self, local_id: str, complaint_id: str) -> None:
        ...


class AuditStore(Protocol):
    """Append-only audit log"""

    async def create_event(self, event: AuditEvent) -> AuditEvent:
        ...

    async def get_events_for_complaint(self, complaint_id: str) -> List[AuditEvent]:
        ...


class DraftStore(Protocol):
    """Client-side storage for offline drafts"""

    async def list_drafts(self) -> List[DraftComplaint]:
        ...

    async def save_draft(self, draft: DraftComplaint) -> None:
        ...

    async def remove_draft(self, local_id: str) -> None:
        ...


class ConnectivityProbe(Protocol):
    """Reports whether the client can reach the server"""

    async def is_online(self) -> bool:
        ...
