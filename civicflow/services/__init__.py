"""Service modules - Orchestration and collaborator adapters"""
from .complaint_service import ComplaintService, SubmissionReceipt
from .offline_sync import OfflineSyncReconciler
from .department_client import HttpDepartmentEndpoint
from .notification_service import (
    AdminAlertNotifier, HttpNotificationSender, LifecycleEventPublisher, NotificationDispatcher
)

__all__ = [
    "ComplaintService",
    "SubmissionReceipt",
    "OfflineSyncReconciler",
    "HttpDepartmentEndpoint",
    "AdminAlertNotifier",
    "HttpNotificationSender",
    "LifecycleEventPublisher",
    "NotificationDispatcher",
]
