"""Repository modules - Data access layer"""
from .complaint_repo import ComplaintRepository, build_complaint_query
from .submission_key_repo import SubmissionKeyRepository
from .audit_repo import AuditRepository
from .department_repo import DepartmentRepository

__all__ = [
    "ComplaintRepository",
    "build_complaint_query",
    "SubmissionKeyRepository",
    "AuditRepository",
    "DepartmentRepository",
]
