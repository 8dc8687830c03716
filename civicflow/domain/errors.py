"""Domain Errors - Centralized Exception Hierarchy"""
from typing import Any, Dict, Optional


class DomainError(Exception):
    """Base domain error - all errors extend this"""

    error_code: str = "DOMAIN_ERROR"

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if error_code:
            self.error_code = error_code

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to a caller-facing dict"""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "details": self.details
            }
        }


# Validation Errors
class ValidationError(DomainError):
    """Input validation failed"""
    error_code = "VALIDATION_ERROR"


class OutOfBoundaryError(ValidationError):
    """Complaint location is outside municipal boundaries"""
    error_code = "OUT_OF_BOUNDARY"


# Not Found Errors
class NotFoundError(DomainError):
    """Resource not found"""
    error_code = "NOT_FOUND"


class ComplaintNotFoundError(NotFoundError):
    """Complaint not found"""
    error_code = "COMPLAINT_NOT_FOUND"


class DepartmentNotFoundError(NotFoundError):
    """Department not found in the registry"""
    error_code = "DEPARTMENT_NOT_FOUND"


# Conflict Errors
class ConflictError(DomainError):
    """Resource conflict"""
    error_code = "CONFLICT"


class InvalidTransitionError(ConflictError):
    """Requested status transition is not in the transition table"""
    error_code = "INVALID_TRANSITION"


class DuplicateSubmissionError(ConflictError):
    """A submission with the same local_id was already accepted"""
    error_code = "DUPLICATE_SUBMISSION"

    def __init__(self, message: str, original_complaint_id: Optional[str], **kwargs: Any):
        super().__init__(message, **kwargs)
        self.original_complaint_id = original_complaint_id
        self.details.setdefault("original_complaint_id", original_complaint_id)


class StaleSnapshotError(ConflictError):
    """A newer complaint snapshot is already stored"""
    error_code = "STALE_SNAPSHOT"


class RetryExhaustedError(DomainError):
    """A scheduled operation failed on every attempt"""
    error_code = "RETRY_EXHAUSTED"


# External Service Errors
class ExternalServiceError(DomainError):
    """External collaborator failure"""
    error_code = "EXTERNAL_SERVICE_ERROR"


class DepartmentUnavailableError(ExternalServiceError):
    """Department endpoint could not be reached or refused the request"""
    error_code = "DEPARTMENT_UNAVAILABLE"


class MalformedResponseError(ExternalServiceError):
    """Department endpoint answered without a usable work order id"""
    error_code = "MALFORMED_RESPONSE"


class PersistenceError(ExternalServiceError):
    """Complaint store write failed"""
    error_code = "PERSISTENCE_ERROR"


class NotificationError(ExternalServiceError):
    """Notification delivery failed"""
    error_code = "NOTIFICATION_ERROR"
