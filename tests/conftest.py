"""
Pytest Configuration and Fixtures

In-memory collaborators and a fully wired orchestration core. Async
scenarios are driven with asyncio.run() from plain test functions.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

import pytest

from civicflow.domain.enums import AuditEventType, ComplaintType, RoutingFailureReason, SyncState
from civicflow.domain.errors import (
    DepartmentUnavailableError, DuplicateSubmissionError, PersistenceError, StaleSnapshotError
)
from civicflow.domain.models import (
    AuditEvent, ClassificationResult, Complaint, ComplaintFilter, Coordinates, Department,
    DraftComplaint, DraftPayload, LocationResult, NotificationRequest, SubmissionKey,
    WorkOrderRequest
)
from civicflow.engine.audit_writer import AuditWriter
from civicflow.engine.registry import DepartmentRegistry
from civicflow.engine.retry import RetryPolicy, RetryScheduler
from civicflow.engine.routing import RoutingEngine
from civicflow.engine.state_machine import ComplaintStateMachine
from civicflow.services.complaint_service import ComplaintService
from civicflow.services.notification_service import LifecycleEventPublisher, NotificationDispatcher
from civicflow.services.offline_sync import OfflineSyncReconciler
from civicflow.utils.time import utc_now


# =============================================================================
# In-memory collaborators
# =============================================================================

class RecordingSleep:
    """
    Scheduler sleep that records delays and only yields to the loop

    hold() parks every later sleep until release(), so a test can act
    while retries are still waiting.
    """

    def __init__(self):
        self.delays: List[float] = []
        self._gate: Optional[asyncio.Event] = None

    def hold(self) -> None:
        self._gate = asyncio.Event()

    def release(self) -> None:
        if self._gate is not None:
            self._gate.set()

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        if self._gate is not None:
            await self._gate.wait()
        else:
            await asyncio.sleep(0)


class InMemoryComplaintStore:
    """ComplaintStore with the same versioning rule as the Mongo repository"""

    def __init__(self):
        self.complaints: Dict[str, Complaint] = {}
        self.saved_order: List[str] = []
        self.fail_next = 0

    async def save(self, complaint: Complaint) -> Complaint:
        if self.fail_next > 0:
            self.fail_next -= 1
            raise PersistenceError("store unavailable")
        current = self.complaints.get(complaint.complaint_id)
        if current is not None and current.version >= complaint.version:
            raise StaleSnapshotError(f"stale snapshot of {complaint.complaint_id}")
        if current is None:
            self.saved_order.append(complaint.complaint_id)
        self.complaints[complaint.complaint_id] = complaint.model_copy(deep=True)
        return complaint

    async def get(self, complaint_id: str) -> Optional[Complaint]:
        complaint = self.complaints.get(complaint_id)
        return complaint.model_copy(deep=True) if complaint else None

    async def list(self, complaint_filter: ComplaintFilter) -> List[Complaint]:
        matches = [c for c in self.complaints.values() if complaint_filter.matches(c)]
        return sorted(matches, key=lambda c: c.created_at)

    async def list_review_queue(self) -> List[Complaint]:
        return [c for c in self.complaints.values() if c.needs_review]


class InMemorySubmissionKeys:
    """SubmissionKeyStore keyed on local_id"""

    def __init__(self):
        self.keys: Dict[str, SubmissionKey] = {}

    async def find_active(self, local_id: str, since: datetime) -> Optional[SubmissionKey]:
        key = self.keys.get(local_id)
        if key is not None and key.claimed_at >= since:
            return key
        return None

    async def claim(self, local_id: str, complaint_id: str, since: datetime) -> SubmissionKey:
        active = await self.find_active(local_id, since)
        if active is not None:
            raise DuplicateSubmissionError(
                f"local_id {local_id} already submitted",
                original_complaint_id=active.complaint_id
            )
        key = SubmissionKey(local_id=local_id, complaint_id=complaint_id, claimed_at=utc_now())
        self.keys[local_id] = key
        return key

    async def release(self, local_id: str, complaint_id: str) -> None:
        key = self.keys.get(local_id)
        if key is not None and key.complaint_id == complaint_id:
            del self.keys[local_id]


class SlowClaimSubmissionKeys(InMemorySubmissionKeys):
    """Claim yields after the insert, like a round trip to Mongo"""

    async def claim(self, local_id: str, complaint_id: str, since: datetime) -> SubmissionKey:
        key = await super().claim(local_id, complaint_id, since)
        await asyncio.sleep(0)
        return key


class InMemoryAuditStore:
    def __init__(self):
        self.events: List[AuditEvent] = []

    async def create_event(self, event: AuditEvent) -> AuditEvent:
        self.events.append(event)
        return event

    async def get_events_for_complaint(self, complaint_id: str) -> List[AuditEvent]:
        return [e for e in self.events if e.complaint_id == complaint_id]

    def of_type(self, event_type: AuditEventType, complaint_id: Optional[str] = None) -> List[AuditEvent]:
        return [
            e for e in self.events
            if e.event_type == event_type and (complaint_id is None or e.complaint_id == complaint_id)
        ]


class FakeDepartmentEndpoint:
    """
    Department endpoint with scripted failures

    failures[department_id] is the number of calls that fail before the
    department starts answering; a negative value fails forever.
    """

    def __init__(self):
        self.failures: Dict[str, int] = {}
        self.calls: List[WorkOrderRequest] = []
        self.call_departments: List[str] = []
        self.hook: Optional[Callable[[Department, WorkOrderRequest], None]] = None
        self._counter = 0

    def fail(self, department_id: str, times: int = -1) -> None:
        self.failures[department_id] = times

    def calls_to(self, department_id: str) -> int:
        return self.call_departments.count(department_id)

    async def create_work_order(self, department: Department, request: WorkOrderRequest) -> str:
        self.calls.append(request)
        self.call_departments.append(department.department_id)
        if self.hook is not None:
            self.hook(department, request)
        remaining = self.failures.get(department.department_id, 0)
        if remaining != 0:
            if remaining > 0:
                self.failures[department.department_id] = remaining - 1
            raise DepartmentUnavailableError(f"{department.department_id} is down")
        self._counter += 1
        return f"WO-{department.department_id}-{self._counter}"


class RecordingSender:
    def __init__(self, deliver: bool = True):
        self.deliver = deliver
        self.sent: List[NotificationRequest] = []

    async def send(self, request: NotificationRequest) -> bool:
        self.sent.append(request)
        return self.deliver


class RecordingAdminNotifier:
    def __init__(self):
        self.alerts: List[tuple] = []

    async def notify_routing_failure(self, complaint: Complaint, reason: RoutingFailureReason) -> None:
        self.alerts.append((complaint.complaint_id, reason))

    def alerts_for(self, complaint_id: str) -> List[RoutingFailureReason]:
        return [reason for cid, reason in self.alerts if cid == complaint_id]


class InMemoryDraftStore:
    def __init__(self, drafts: Optional[List[DraftComplaint]] = None):
        self.drafts: Dict[str, DraftComplaint] = {d.local_id: d for d in drafts or []}
        self.removed: List[str] = []

    async def list_drafts(self) -> List[DraftComplaint]:
        return list(self.drafts.values())

    async def save_draft(self, draft: DraftComplaint) -> None:
        self.drafts[draft.local_id] = draft

    async def remove_draft(self, local_id: str) -> None:
        self.drafts.pop(local_id, None)
        self.removed.append(local_id)


class StaticConnectivity:
    def __init__(self, online: bool = True):
        self.online = online

    async def is_online(self) -> bool:
        return self.online


# =============================================================================
# Builders
# =============================================================================

def make_classification(
    complaint_type: ComplaintType = ComplaintType.POTHOLE,
    confidence: float = 0.92,
    requires_manual_review: bool = False
) -> ClassificationResult:
    return ClassificationResult(
        complaint_type=complaint_type,
        confidence=confidence,
        requires_manual_review=requires_manual_review,
    )


def make_location(inside: bool = True) -> LocationResult:
    return LocationResult(
        coordinates=Coordinates(latitude=40.7128, longitude=-74.0060),
        address="12 Main St",
        is_within_boundaries=inside,
    )


def make_draft(
    local_id: str,
    created_at: datetime,
    complaint_type: ComplaintType = ComplaintType.POTHOLE
) -> DraftComplaint:
    return DraftComplaint(
        local_id=local_id,
        created_at_local=created_at,
        payload=DraftPayload(
            classification=make_classification(complaint_type),
            location=make_location(),
            photo_ref=f"photos/{local_id}.jpg",
            contact="reporter@example.com",
        ),
        sync_state=SyncState.PENDING,
    )


ROADS = Department(department_id="roads", name="Roads", endpoint_ref="/roads/work-orders", is_primary=True)
ROADS_BACKUP = Department(department_id="roads-east", name="Roads East", endpoint_ref="/roads-east/work-orders", priority=5)
ELECTRICAL = Department(department_id="electrical", name="Electrical", endpoint_ref="/electrical/work-orders", is_primary=True)
PARKS = Department(department_id="parks", name="Parks", endpoint_ref="/parks/work-orders", is_primary=True)


def default_mapping() -> Dict[ComplaintType, List[Department]]:
    # garbage deliberately has no mapping
    return {
        ComplaintType.POTHOLE: [ROADS_BACKUP, ROADS],
        ComplaintType.BROKEN_STREETLIGHT: [ELECTRICAL],
        ComplaintType.GRAFFITI: [PARKS],
    }


class Harness:
    """Fully wired orchestration core over in-memory collaborators"""

    def __init__(self):
        self.sleep = RecordingSleep()
        self.scheduler = RetryScheduler(sleep=self.sleep)
        self.store = InMemoryComplaintStore()
        self.keys = InMemorySubmissionKeys()
        self.audit_store = InMemoryAuditStore()
        self.audit_writer = AuditWriter(self.audit_store)
        self.endpoint = FakeDepartmentEndpoint()
        self.sender = RecordingSender()
        self.admin = RecordingAdminNotifier()
        self.registry = DepartmentRegistry(default_mapping())
        self.state_machine = ComplaintStateMachine()

        self.events = LifecycleEventPublisher()
        self.events.subscribe(NotificationDispatcher(self.sender))

        self.routing = RoutingEngine(
            registry=self.registry,
            endpoint=self.endpoint,
            scheduler=self.scheduler,
            audit_writer=self.audit_writer,
            admin_notifier=self.admin,
            policy=RetryPolicy.fixed_interval(delay=300.0, max_attempts=3, attempt_timeout=30.0),
        )
        self.service = ComplaintService(
            state_machine=self.state_machine,
            routing_engine=self.routing,
            store=self.store,
            submission_keys=self.keys,
            audit_writer=self.audit_writer,
            events=self.events,
            scheduler=self.scheduler,
            persistence_policy=RetryPolicy.exponential(
                base=0.5, max_attempts=3, retry_on=(PersistenceError,)
            ),
            review_confidence_threshold=0.6,
            dedup_retention=timedelta(hours=24),
        )
        self.reconciler = OfflineSyncReconciler(
            self.service,
            self.scheduler,
            policy=RetryPolicy.exponential(
                base=1.0, max_attempts=3, retry_on=(DepartmentUnavailableError, PersistenceError)
            ),
        )

    async def submit(self, complaint_type: ComplaintType = ComplaintType.POTHOLE, **kwargs) -> Complaint:
        return await self.service.submit(
            classification=kwargs.pop("classification", None) or make_classification(complaint_type),
            location=kwargs.pop("location", None) or make_location(),
            photo_ref=kwargs.pop("photo_ref", "photos/1.jpg"),
            contact=kwargs.pop("contact", "reporter@example.com"),
            **kwargs
        )


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def harness() -> Harness:
    return Harness()


@pytest.fixture
def base_time() -> datetime:
    return datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)
