"""Notification Service - lifecycle events and their delivery

Lifecycle events are published after every accepted lifecycle step. Delivery
outcomes are logged; a failed delivery never blocks or reverses a transition.
"""
from typing import Awaitable, Callable, Dict, List, Optional
import httpx

from ..config.settings import settings
from ..domain.models import Complaint, LifecycleEvent, NotificationRequest
from ..domain.enums import (
    ComplaintStatus, LifecycleEventType, NotificationKind, RoutingFailureReason
)
from ..domain.errors import NotificationError
from ..utils.idgen import generate_event_id, generate_notification_id
from ..utils.time import format_iso, utc_now
from ..utils.logger import get_logger
from .collaborators import NotificationSender

logger = get_logger(__name__)

EventHandler = Callable[[LifecycleEvent], Awaitable[None]]

STATUS_TO_EVENT: Dict[ComplaintStatus, LifecycleEventType] = {
    ComplaintStatus.SUBMITTED: LifecycleEventType.SUBMITTED,
    ComplaintStatus.ASSIGNED: LifecycleEventType.ASSIGNED,
    ComplaintStatus.PENDING_MANUAL_ROUTING: LifecycleEventType.PENDING_MANUAL_ROUTING,
    ComplaintStatus.IN_PROGRESS: LifecycleEventType.IN_PROGRESS,
    ComplaintStatus.RESOLVED: LifecycleEventType.RESOLVED,
    ComplaintStatus.REJECTED: LifecycleEventType.REJECTED,
}

EVENT_TO_KIND: Dict[LifecycleEventType, NotificationKind] = {
    LifecycleEventType.SUBMITTED: NotificationKind.CONFIRMATION,
    LifecycleEventType.RESOLVED: NotificationKind.RESOLUTION,
}


def build_event(complaint: Complaint, metadata: Optional[Dict] = None) -> LifecycleEvent:
    """Lifecycle event describing the complaint's current status"""
    return LifecycleEvent(
        event_id=generate_event_id(),
        event_type=STATUS_TO_EVENT[complaint.status],
        complaint_id=complaint.complaint_id,
        status=complaint.status,
        contact=complaint.contact,
        occurred_at=utc_now(),
        metadata=metadata or {},
    )


class LifecycleEventPublisher:
    """Fan-out of lifecycle events to subscribed handlers"""

    def __init__(self):
        self._handlers: List[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    async def publish(self, event: LifecycleEvent) -> None:
        logger.info(
            f"Lifecycle event {event.event_type.value} for {event.complaint_id}",
            extra={"complaint_id": event.complaint_id, "event_type": event.event_type.value}
        )
        for handler in self._handlers:
            try:
                await handler(event)
            except Exception as e:
                # Don't fail the lifecycle step if a subscriber fails
                logger.warning(
                    f"Lifecycle event handler failed: {e}",
                    extra={"complaint_id": event.complaint_id, "event_type": event.event_type.value}
                )


class NotificationDispatcher:
    """Maps lifecycle events onto the notification collaborator contract"""

    def __init__(self, sender: NotificationSender):
        self.sender = sender

    async def __call__(self, event: LifecycleEvent) -> None:
        await self.dispatch(event)

    async def dispatch(self, event: LifecycleEvent) -> bool:
        if not event.contact:
            logger.debug(
                f"No contact for {event.complaint_id}; skipping notification",
                extra={"complaint_id": event.complaint_id}
            )
            return False

        request = NotificationRequest(
            notification_id=generate_notification_id(),
            complaint_id=event.complaint_id,
            kind=EVENT_TO_KIND.get(event.event_type, NotificationKind.STATUS_UPDATE),
            contact=event.contact,
            payload={
                "status": event.status.value,
                "event": event.event_type.value,
                "occurred_at": format_iso(event.occurred_at),
            },
        )

        try:
            delivered = await self.sender.send(request)
        except Exception as e:
            delivered = False
            logger.warning(
                f"Notification {request.notification_id} failed: {e}",
                extra={"complaint_id": event.complaint_id}
            )

        if delivered:
            logger.info(
                f"Notification {request.notification_id} delivered ({request.kind.value})",
                extra={"complaint_id": event.complaint_id}
            )
        else:
            logger.warning(
                f"Notification {request.notification_id} not delivered ({request.kind.value})",
                extra={"complaint_id": event.complaint_id}
            )
        return delivered


class HttpNotificationSender:
    """Notification collaborator reached through a webhook"""

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.webhook_url = webhook_url or settings.notification_webhook_url
        self.timeout = timeout if timeout is not None else settings.notification_timeout_seconds
        self._client = client

    async def send(self, request: NotificationRequest) -> bool:
        payload = request.model_dump(mode="json")
        try:
            if self._client is not None:
                response = await self._client.post(self.webhook_url, json=payload, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.webhook_url, json=payload)
        except httpx.HTTPError as e:
            logger.warning(
                f"Notification webhook unreachable: {e}",
                extra={"complaint_id": request.complaint_id}
            )
            return False
        return response.status_code < 400


class AdminAlertNotifier:
    """Alerts routing administrators through the notification collaborator"""

    def __init__(self, sender: NotificationSender, recipients: Optional[List[str]] = None):
        self.sender = sender
        self.recipients = recipients if recipients is not None else settings.admin_recipients_list

    async def notify_routing_failure(
        self,
        complaint: Complaint,
        reason: RoutingFailureReason
    ) -> None:
        """
        Send one alert per administrator

        Raises:
            NotificationError: No administrator could be reached
        """
        delivered = 0
        for recipient in self.recipients:
            request = NotificationRequest(
                notification_id=generate_notification_id(),
                complaint_id=complaint.complaint_id,
                kind=NotificationKind.STATUS_UPDATE,
                contact=recipient,
                payload={
                    "audience": "admin",
                    "reason": reason.value,
                    "complaint_type": complaint.complaint_type.value,
                    "address": complaint.location.address,
                },
            )
            try:
                if await self.sender.send(request):
                    delivered += 1
            except Exception as e:
                logger.warning(
                    f"Admin alert to {recipient} failed: {e}",
                    extra={"complaint_id": complaint.complaint_id}
                )

        if self.recipients and delivered == 0:
            raise NotificationError(
                f"No administrator reached for {complaint.complaint_id}",
                details={"reason": reason.value}
            )
