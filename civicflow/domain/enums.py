"""Domain Enumerations - All status and type definitions"""
from enum import Enum


class ComplaintType(str, Enum):
    """Closed set of complaint types produced by the classifier"""
    POTHOLE = "pothole"
    GARBAGE = "garbage"
    GRAFFITI = "graffiti"
    BROKEN_STREETLIGHT = "broken_streetlight"
    DAMAGED_SIGNAGE = "damaged_signage"
    ILLEGAL_DUMPING = "illegal_dumping"


class ComplaintStatus(str, Enum):
    """Canonical lifecycle status of a complaint"""
    SUBMITTED = "SUBMITTED"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    RESOLVED = "RESOLVED"
    REJECTED = "REJECTED"
    PENDING_MANUAL_ROUTING = "PENDING_MANUAL_ROUTING"


class RoutingStatus(str, Enum):
    """Outcome reported by the routing engine"""
    ROUTED = "routed"
    QUEUED = "queued"  # First attempt failed, retries running on the scheduler
    FAILED = "failed"


class RoutingFailureReason(str, Enum):
    """Why routing ended without a work order"""
    NO_MAPPING = "NO_MAPPING"
    ROUTING_EXHAUSTED = "ROUTING_EXHAUSTED"


class AttemptOutcome(str, Enum):
    """Result of one scheduled attempt"""
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"


class DelayStrategy(str, Enum):
    """Retry delay strategies supported by the scheduler"""
    EXPONENTIAL = "EXPONENTIAL"
    FIXED_INTERVAL = "FIXED_INTERVAL"


class SyncState(str, Enum):
    """Offline draft sync state"""
    PENDING = "pending"
    SYNCING = "syncing"
    FAILED = "failed"
    SYNCED = "synced"


class LifecycleEventType(str, Enum):
    """Lifecycle events emitted for the notification collaborator"""
    SUBMITTED = "submitted"
    ASSIGNED = "assigned"
    PENDING_MANUAL_ROUTING = "pending_manual_routing"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    REJECTED = "rejected"


class NotificationKind(str, Enum):
    """Notification types accepted by the delivery collaborator"""
    CONFIRMATION = "confirmation"
    STATUS_UPDATE = "status_update"
    RESOLUTION = "resolution"


class ReviewTag(str, Enum):
    """Administrative queue tags"""
    MANUAL_REVIEW = "manual_review"


class AuditEventType(str, Enum):
    """Types of audit events"""
    COMPLAINT_CREATED = "COMPLAINT_CREATED"
    STATUS_TRANSITION = "STATUS_TRANSITION"
    ROUTING_ATTEMPT = "ROUTING_ATTEMPT"
    ROUTING_FAILURE = "ROUTING_FAILURE"
    ADMIN_NOTIFIED = "ADMIN_NOTIFIED"
    RECLASSIFIED = "RECLASSIFIED"
    DUPLICATE_SUBMISSION = "DUPLICATE_SUBMISSION"
