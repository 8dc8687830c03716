"""Domain Models - Pydantic schemas for all entities"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, ConfigDict, model_validator

from .enums import (
    ComplaintType, ComplaintStatus, RoutingStatus, RoutingFailureReason,
    AttemptOutcome, SyncState, LifecycleEventType, NotificationKind,
    ReviewTag, AuditEventType
)


# ============================================================================
# Collaborator Inputs (classification, location)
# ============================================================================

class Coordinates(BaseModel):
    """WGS84 point"""
    model_config = ConfigDict(extra="forbid", frozen=True)

    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class AlternativeClassification(BaseModel):
    """A runner-up label from the classifier"""
    model_config = ConfigDict(extra="forbid", frozen=True)

    complaint_type: ComplaintType
    confidence: float = Field(..., ge=0.0, le=1.0)


class ClassificationResult(BaseModel):
    """Output of the classification collaborator"""
    model_config = ConfigDict(extra="forbid")

    complaint_type: ComplaintType = Field(..., description="Top label")
    confidence: float = Field(..., ge=0.0, le=1.0, description="Confidence of the top label")
    alternatives: List[AlternativeClassification] = Field(
        default_factory=list,
        description="Runner-up labels, most likely first"
    )
    requires_manual_review: bool = Field(default=False)


class LocationResult(BaseModel):
    """Output of the location collaborator"""
    model_config = ConfigDict(extra="forbid")

    coordinates: Coordinates
    address: Optional[str] = None
    is_within_boundaries: bool = Field(..., description="Inside the municipal boundary polygon")


# ============================================================================
# Complaint Aggregate
# ============================================================================

class StatusHistoryEntry(BaseModel):
    """One accepted status transition (append-only)"""
    model_config = ConfigDict(extra="forbid")

    status: ComplaintStatus
    timestamp: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RoutingInfo(BaseModel):
    """Where the complaint is routed; department resolved by id at read time"""
    model_config = ConfigDict(extra="forbid")

    department_id: str
    work_order_id: Optional[str] = None
    routed_at: datetime


class Complaint(BaseModel):
    """Complaint aggregate root"""
    model_config = ConfigDict(extra="ignore")

    complaint_id: str = Field(..., description="Server-assigned id, never reassigned")
    complaint_type: ComplaintType
    classification: ClassificationResult
    location: LocationResult
    photo_ref: str = Field(..., description="Reference to the stored photo")
    contact: Optional[str] = Field(None, description="Reporter contact for notifications")

    status: ComplaintStatus = ComplaintStatus.SUBMITTED
    status_history: List[StatusHistoryEntry] = Field(default_factory=list)
    routing: Optional[RoutingInfo] = None
    review_tags: List[ReviewTag] = Field(default_factory=list)
    local_id: Optional[str] = Field(None, description="Idempotency key of the originating draft")

    version: int = Field(default=0, description="Bumped on every state machine write")
    created_at: datetime
    updated_at: datetime
    resolved_at: Optional[datetime] = None

    @property
    def needs_review(self) -> bool:
        return ReviewTag.MANUAL_REVIEW in self.review_tags


# ============================================================================
# Departments & Routing
# ============================================================================

class Department(BaseModel):
    """Department able to handle one or more complaint types"""
    model_config = ConfigDict(extra="forbid", frozen=True)

    department_id: str
    name: str
    endpoint_ref: str = Field(..., description="Work-order endpoint reference (path or URL)")
    is_primary: bool = False
    priority: int = Field(default=100, description="Lower value wins")


class WorkOrderRequest(BaseModel):
    """Payload sent to a department endpoint"""
    model_config = ConfigDict(extra="forbid")

    complaint_id: str
    complaint_type: ComplaintType
    idempotency_key: str = Field(..., description="Stable across retries of one routing run")
    address: Optional[str] = None
    coordinates: Coordinates
    photo_ref: str


class RoutingAttempt(BaseModel):
    """One work-order creation attempt (audit only)"""
    model_config = ConfigDict(extra="forbid")

    complaint_id: str
    attempt_number: int
    scheduled_at: datetime
    outcome: AttemptOutcome
    department_id: Optional[str] = None
    error: Optional[str] = None


class RoutingResult(BaseModel):
    """Result of a routing run"""
    model_config = ConfigDict(extra="forbid")

    status: RoutingStatus
    department_id: Optional[str] = None
    work_order_id: Optional[str] = None
    routed_at: Optional[datetime] = None
    reason: Optional[RoutingFailureReason] = None
    attempts: List[RoutingAttempt] = Field(default_factory=list)


# ============================================================================
# Offline Drafts
# ============================================================================

class DraftPayload(BaseModel):
    """Not-yet-submitted complaint captured on a disconnected client"""
    model_config = ConfigDict(extra="forbid")

    classification: ClassificationResult
    location: LocationResult
    photo_ref: str
    contact: Optional[str] = None


class DraftComplaint(BaseModel):
    """Locally queued complaint awaiting sync"""
    model_config = ConfigDict(extra="forbid")

    local_id: str = Field(..., description="Client-side id, also the idempotency key")
    created_at_local: datetime
    payload: DraftPayload
    sync_state: SyncState = SyncState.PENDING
    attempt_count: int = 0
    last_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    server_id: Optional[str] = None


class DraftSyncOutcome(BaseModel):
    """Per-draft result of a reconciliation pass"""
    model_config = ConfigDict(extra="forbid")

    local_id: str
    sync_state: SyncState
    complaint_id: Optional[str] = None
    duplicate: bool = False
    error_code: Optional[str] = None
    error: Optional[str] = None
    draft: Optional[DraftComplaint] = Field(None, description="Draft with updated sync bookkeeping")


class SubmissionKey(BaseModel):
    """Idempotency record for a draft submission"""
    model_config = ConfigDict(extra="forbid")

    local_id: str
    complaint_id: str
    claimed_at: datetime


# ============================================================================
# Events, Notifications, Audit
# ============================================================================

class LifecycleEvent(BaseModel):
    """Emitted after every accepted lifecycle step"""
    model_config = ConfigDict(extra="forbid")

    event_id: str
    event_type: LifecycleEventType
    complaint_id: str
    status: ComplaintStatus
    contact: Optional[str] = None
    occurred_at: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)


class NotificationRequest(BaseModel):
    """Request handed to the notification delivery collaborator"""
    model_config = ConfigDict(extra="forbid")

    notification_id: str
    complaint_id: str
    kind: NotificationKind
    contact: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class AuditEvent(BaseModel):
    """Append-only audit record"""
    model_config = ConfigDict(extra="forbid")

    audit_event_id: str
    complaint_id: str
    event_type: AuditEventType
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
    correlation_id: Optional[str] = None


# ============================================================================
# Queries
# ============================================================================

class ComplaintFilter(BaseModel):
    """Conjunctive dashboard filter; unset fields match everything"""
    model_config = ConfigDict(extra="forbid")

    complaint_type: Optional[ComplaintType] = None
    status: Optional[ComplaintStatus] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    department_id: Optional[str] = None

    @model_validator(mode="after")
    def _check_range(self) -> "ComplaintFilter":
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError("date_from must not be after date_to")
        return self

    def matches(self, complaint: Complaint) -> bool:
        """Evaluate the filter against an in-memory complaint"""
        if self.complaint_type is not None and complaint.complaint_type != self.complaint_type:
            return False
        if self.status is not None and complaint.status != self.status:
            return False
        if self.date_from is not None and complaint.created_at < self.date_from:
            return False
        if self.date_to is not None and complaint.created_at > self.date_to:
            return False
        if self.department_id is not None:
            if complaint.routing is None or complaint.routing.department_id != self.department_id:
                return False
        return True
