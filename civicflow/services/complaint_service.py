"""Complaint Service - top-level orchestration of the complaint lifecycle"""
from datetime import timedelta
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict

from ..config.settings import settings
from ..domain.models import (
    AuditEvent, ClassificationResult, Complaint, ComplaintFilter, Department,
    DraftComplaint, LocationResult, RoutingInfo, RoutingResult
)
from ..domain.enums import (
    ComplaintStatus, ComplaintType, ReviewTag, RoutingStatus
)
from ..domain.errors import (
    ComplaintNotFoundError, DuplicateSubmissionError, InvalidTransitionError,
    OutOfBoundaryError, PersistenceError, StaleSnapshotError
)
from ..engine.audit_writer import AuditWriter
from ..engine.retry import RetryPolicy, RetryScheduler
from ..engine.routing import RoutingEngine
from ..engine.state_machine import ComplaintStateMachine
from ..utils.idgen import generate_complaint_id, generate_correlation_id
from ..utils.time import utc_now
from ..utils.logger import get_logger, get_correlation_id, set_correlation_id
from .collaborators import ComplaintStore, SubmissionKeyStore
from .notification_service import LifecycleEventPublisher, build_event

logger = get_logger(__name__)

_KEEP: Any = object()


class SubmissionReceipt(BaseModel):
    """Result of an idempotent submission"""
    model_config = ConfigDict(extra="forbid")

    complaint: Complaint
    duplicate: bool = False


def default_persistence_policy() -> RetryPolicy:
    return RetryPolicy.exponential(
        base=settings.persistence_retry_base_seconds,
        factor=2.0,
        max_attempts=settings.persistence_retry_max_attempts,
        attempt_timeout=settings.persistence_attempt_timeout_seconds,
        retry_on=(PersistenceError,),
    )


class ComplaintService:
    """
    Complaint Orchestrator

    submit():     boundary gate -> create -> confidence gate -> route -> transition
    reclassify(): new type -> supersede current route -> route again

    Per-complaint locks live in the state machine and cover only in-memory
    transitions; persistence, routing and notification calls happen outside.
    """

    def __init__(
        self,
        state_machine: ComplaintStateMachine,
        routing_engine: RoutingEngine,
        store: ComplaintStore,
        submission_keys: SubmissionKeyStore,
        audit_writer: AuditWriter,
        events: LifecycleEventPublisher,
        scheduler: RetryScheduler,
        persistence_policy: Optional[RetryPolicy] = None,
        review_confidence_threshold: Optional[float] = None,
        dedup_retention: Optional[timedelta] = None
    ):
        self.state_machine = state_machine
        self.routing_engine = routing_engine
        self.store = store
        self.submission_keys = submission_keys
        self.audit_writer = audit_writer
        self.events = events
        self.scheduler = scheduler
        self.persistence_policy = persistence_policy or default_persistence_policy()
        self.review_confidence_threshold = (
            review_confidence_threshold
            if review_confidence_threshold is not None
            else settings.manual_review_confidence_threshold
        )
        self.dedup_retention = dedup_retention or timedelta(seconds=settings.dedup_retention_seconds)

    # =========================================================================
    # Intake
    # =========================================================================

    async def submit(
        self,
        classification: ClassificationResult,
        location: LocationResult,
        photo_ref: str,
        contact: Optional[str] = None,
        local_id: Optional[str] = None
    ) -> Complaint:
        """
        Accept a classified and located complaint

        Args:
            classification: Classifier output
            location: Geocoder output
            photo_ref: Stored photo reference
            contact: Reporter contact for notifications
            local_id: Draft idempotency key (offline submissions)

        Returns:
            The complaint after routing was applied (SUBMITTED while retries
            are queued). A repeated local_id returns the original complaint.

        Raises:
            OutOfBoundaryError: Location outside municipal boundaries
            PersistenceError: The complaint could not be stored
        """
        receipt = await self._submit(classification, location, photo_ref, contact, local_id)
        return receipt.complaint

    async def submit_draft(self, draft: DraftComplaint) -> SubmissionReceipt:
        """Submit an offline draft using its local_id as idempotency key"""
        payload = draft.payload
        return await self._submit(
            payload.classification,
            payload.location,
            payload.photo_ref,
            payload.contact,
            draft.local_id,
        )

    async def _submit(
        self,
        classification: ClassificationResult,
        location: LocationResult,
        photo_ref: str,
        contact: Optional[str],
        local_id: Optional[str]
    ) -> SubmissionReceipt:
        if not get_correlation_id():
            set_correlation_id(generate_correlation_id())

        if not location.is_within_boundaries:
            logger.info(
                "Rejected complaint outside municipal boundaries",
                extra={"local_id": local_id}
            )
            raise OutOfBoundaryError(
                "Complaint location is outside municipal boundaries",
                details={
                    "latitude": location.coordinates.latitude,
                    "longitude": location.coordinates.longitude,
                }
            )

        complaint_id = generate_complaint_id()
        since = utc_now() - self.dedup_retention
        if local_id:
            existing = await self.submission_keys.find_active(local_id, since)
            if existing is not None:
                return await self._duplicate_receipt(existing.complaint_id, local_id)

        review_tags: List[ReviewTag] = []
        if classification.requires_manual_review or classification.confidence < self.review_confidence_threshold:
            review_tags.append(ReviewTag.MANUAL_REVIEW)

        # Live before the claim so a concurrent duplicate can read it
        complaint = self.state_machine.create(
            complaint_id=complaint_id,
            classification=classification,
            location=location,
            photo_ref=photo_ref,
            contact=contact,
            local_id=local_id,
            review_tags=review_tags,
        )

        if local_id:
            try:
                await self.submission_keys.claim(local_id, complaint_id, since)
            except DuplicateSubmissionError as e:
                self.state_machine.discard(complaint_id)
                return await self._duplicate_receipt(e.original_complaint_id, local_id)
            except Exception:
                self.state_machine.discard(complaint_id)
                raise

        try:
            await self._persist(complaint)
        except PersistenceError:
            self.state_machine.discard(complaint_id)
            if local_id:
                await self.submission_keys.release(local_id, complaint_id)
            raise

        await self.audit_writer.write_complaint_created(complaint_id, complaint.complaint_type, local_id)
        if review_tags:
            logger.info(
                f"Complaint {complaint_id} tagged for manual review",
                extra={"complaint_id": complaint_id}
            )
        await self.events.publish(build_event(complaint))

        result = await self.routing_engine.route(complaint, on_settled=self._on_routing_settled)
        routed = await self._apply_routing(complaint_id, result)
        return SubmissionReceipt(complaint=routed)

    async def _duplicate_receipt(self, complaint_id: Optional[str], local_id: str) -> SubmissionReceipt:
        if not complaint_id:
            raise DuplicateSubmissionError(
                f"local_id {local_id} is claimed but its complaint is unknown",
                original_complaint_id=None,
                details={"local_id": local_id}
            )
        original = await self.get_complaint(complaint_id)
        logger.info(
            f"Duplicate submission for local_id {local_id}; returning {complaint_id}",
            extra={"complaint_id": complaint_id, "local_id": local_id}
        )
        await self.audit_writer.write_duplicate_submission(complaint_id, local_id)
        return SubmissionReceipt(complaint=original, duplicate=True)

    # =========================================================================
    # Routing
    # =========================================================================

    async def _apply_routing(self, complaint_id: str, result: RoutingResult) -> Complaint:
        """Apply the status transition matching a routing result"""
        current = self.state_machine.get(complaint_id)
        if current is None:
            return await self.get_complaint(complaint_id)

        if result.status == RoutingStatus.QUEUED:
            return current

        if result.status == RoutingStatus.ROUTED:
            routing = RoutingInfo(
                department_id=result.department_id,
                work_order_id=result.work_order_id,
                routed_at=result.routed_at or utc_now(),
            )
            metadata = {
                "department_id": result.department_id,
                "work_order_id": result.work_order_id,
                "attempts": len(result.attempts),
            }
            return await self._transition(
                complaint_id, ComplaintStatus.ASSIGNED, metadata=metadata, routing=routing
            )

        metadata = {"reason": result.reason.value if result.reason else None}
        if result.department_id:
            metadata["department_id"] = result.department_id
            metadata["attempts"] = len(result.attempts)
        if current.status == ComplaintStatus.PENDING_MANUAL_ROUTING:
            # Already queued for manual routing; no duplicate history entry
            logger.info(
                f"Complaint {complaint_id} remains in manual routing ({metadata['reason']})",
                extra={"complaint_id": complaint_id}
            )
            return current
        return await self._transition(
            complaint_id, ComplaintStatus.PENDING_MANUAL_ROUTING, metadata=metadata
        )

    async def _on_routing_settled(self, complaint: Complaint, result: RoutingResult) -> None:
        try:
            await self._apply_routing(complaint.complaint_id, result)
        except (InvalidTransitionError, ComplaintNotFoundError) as e:
            logger.warning(
                f"Late routing result for {complaint.complaint_id} not applied: {e.message}",
                extra={"complaint_id": complaint.complaint_id}
            )
        except PersistenceError as e:
            logger.error(
                f"Routing result for {complaint.complaint_id} applied but not stored: {e.message}",
                extra={"complaint_id": complaint.complaint_id}
            )

    async def reclassify(self, complaint_id: str, new_type: ComplaintType) -> Complaint:
        """
        Change the complaint type and route it again

        The review flag is carried over unchanged: it reflects classifier
        confidence, not type correctness. A current work order is superseded
        (recorded in history metadata), never deleted.

        Raises:
            ComplaintNotFoundError: Unknown complaint
            InvalidTransitionError: Complaint is terminal
        """
        complaint = await self._load_active(complaint_id)
        previous_type = complaint.complaint_type
        if new_type == previous_type:
            logger.info(
                f"Reclassification of {complaint_id} to the same type ignored",
                extra={"complaint_id": complaint_id}
            )
            return complaint

        self.routing_engine.cancel(complaint_id)
        classification = complaint.classification.model_copy(update={"complaint_type": new_type})
        complaint = await self.state_machine.amend(complaint_id, classification=classification)
        await self.audit_writer.write_reclassified(complaint_id, previous_type, new_type)

        if complaint.status in (ComplaintStatus.ASSIGNED, ComplaintStatus.IN_PROGRESS):
            routing = complaint.routing
            complaint = await self._transition(
                complaint_id,
                ComplaintStatus.PENDING_MANUAL_ROUTING,
                metadata={
                    "reason": "reclassified",
                    "previous_type": previous_type.value,
                    "new_type": new_type.value,
                    "superseded_work_order_id": routing.work_order_id if routing else None,
                    "superseded_department_id": routing.department_id if routing else None,
                },
                routing=None,
            )
        else:
            await self._persist(complaint)

        result = await self.routing_engine.route(complaint, on_settled=self._on_routing_settled)
        return await self._apply_routing(complaint_id, result)

    # =========================================================================
    # Administrative / lifecycle operations
    # =========================================================================

    async def start_work(self, complaint_id: str) -> Complaint:
        """Department started remediation"""
        await self._load_active(complaint_id)
        return await self._transition(complaint_id, ComplaintStatus.IN_PROGRESS)

    async def resolve(self, complaint_id: str, note: Optional[str] = None) -> Complaint:
        """Department finished remediation"""
        await self._load_active(complaint_id)
        metadata = {"note": note} if note else None
        return await self._transition(complaint_id, ComplaintStatus.RESOLVED, metadata=metadata)

    async def reject(self, complaint_id: str, reason: str) -> Complaint:
        """Administrative close (the only way out of manual routing besides assignment)"""
        await self._load_active(complaint_id)
        return await self._transition(
            complaint_id,
            ComplaintStatus.REJECTED,
            metadata={"reason": reason},
            cancel_routing=True,
        )

    async def assign_manually(
        self,
        complaint_id: str,
        department_id: str,
        work_order_id: Optional[str] = None
    ) -> Complaint:
        """Administrator routes a complaint out of the manual queue"""
        department = self.routing_engine.registry.get_department(department_id)
        await self._load_active(complaint_id)
        routing = RoutingInfo(
            department_id=department.department_id,
            work_order_id=work_order_id,
            routed_at=utc_now(),
        )
        return await self._transition(
            complaint_id,
            ComplaintStatus.ASSIGNED,
            metadata={
                "department_id": department.department_id,
                "work_order_id": work_order_id,
                "manual": True,
            },
            routing=routing,
            expected_status=ComplaintStatus.PENDING_MANUAL_ROUTING,
            cancel_routing=True,
        )

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_complaint(self, complaint_id: str) -> Complaint:
        """Live snapshot if active or not yet stored, otherwise the stored copy"""
        live = self.state_machine.get(complaint_id) or self.state_machine.terminal_snapshot(complaint_id)
        if live is not None:
            return live
        stored = await self.store.get(complaint_id)
        if stored is None:
            raise ComplaintNotFoundError(f"Complaint {complaint_id} not found")
        return stored

    async def list_complaints(self, complaint_filter: Optional[ComplaintFilter] = None) -> List[Complaint]:
        """Dashboard query: conjunctive filters, full result set"""
        return await self.store.list(complaint_filter or ComplaintFilter())

    async def pending_manual_routing(self) -> List[Complaint]:
        return await self.store.list(ComplaintFilter(status=ComplaintStatus.PENDING_MANUAL_ROUTING))

    async def review_queue(self) -> List[Complaint]:
        return await self.store.list_review_queue()

    async def audit_trail(self, complaint_id: str) -> List[AuditEvent]:
        """Audit events of one complaint, oldest first"""
        return await self.audit_writer.store.get_events_for_complaint(complaint_id)

    def department_for(self, complaint: Complaint) -> Optional[Department]:
        """Resolve the routed department at read time"""
        if complaint.routing is None:
            return None
        return self.routing_engine.registry.get_department(complaint.routing.department_id)

    async def drain(self) -> None:
        """Wait for queued routing retries and pending scheduled work"""
        await self.routing_engine.drain()
        await self.scheduler.drain()
        await self.store_unsaved()

    async def store_unsaved(self) -> int:
        """
        Retry storing closed complaints whose final snapshot was never saved

        Returns:
            Number of snapshots still unsaved
        """
        remaining = 0
        for complaint in self.state_machine.unsaved_terminal():
            try:
                await self._persist(complaint)
            except PersistenceError as e:
                remaining += 1
                logger.error(
                    f"Final snapshot of {complaint.complaint_id} still not stored: {e.message}",
                    extra={"complaint_id": complaint.complaint_id}
                )
                continue
            self.state_machine.mark_stored(complaint)
        return remaining

    # =========================================================================
    # Internals
    # =========================================================================

    async def _load_active(self, complaint_id: str) -> Complaint:
        live = self.state_machine.get(complaint_id)
        if live is not None:
            return live

        closing = self.state_machine.terminal_snapshot(complaint_id)
        if closing is not None:
            try:
                await self._persist(closing)
                self.state_machine.mark_stored(closing)
            except PersistenceError as e:
                logger.warning(
                    f"Final snapshot of {complaint_id} still not stored: {e.message}",
                    extra={"complaint_id": complaint_id}
                )
            raise self._closed_error(complaint_id, closing.status)

        stored = await self.store.get(complaint_id)
        if stored is None:
            raise ComplaintNotFoundError(f"Complaint {complaint_id} not found")
        if self.state_machine.is_terminal(stored.status):
            raise self._closed_error(complaint_id, stored.status)
        self.state_machine.adopt(stored)
        return self.state_machine.get(complaint_id)

    @staticmethod
    def _closed_error(complaint_id: str, status: ComplaintStatus) -> InvalidTransitionError:
        return InvalidTransitionError(
            f"Complaint {complaint_id} is {status.value} and accepts no changes",
            details={"complaint_id": complaint_id, "current_status": status.value}
        )

    async def _transition(
        self,
        complaint_id: str,
        target: ComplaintStatus,
        metadata: Optional[Dict[str, Any]] = None,
        routing: Any = _KEEP,
        expected_status: Optional[ComplaintStatus] = None,
        cancel_routing: bool = False
    ) -> Complaint:
        kwargs: Dict[str, Any] = {"metadata": metadata, "expected_status": expected_status}
        if routing is not _KEEP:
            kwargs["routing"] = routing
        try:
            updated = await self.state_machine.transition(complaint_id, target, **kwargs)
        except ComplaintNotFoundError:
            # Closed and stored while this call waited for the lock
            stored = await self.store.get(complaint_id)
            if stored is not None and self.state_machine.is_terminal(stored.status):
                raise self._closed_error(complaint_id, stored.status)
            raise
        if cancel_routing:
            self.routing_engine.cancel(complaint_id)

        source = updated.status_history[-2].status
        await self.audit_writer.write_transition(complaint_id, source, target, metadata)
        await self._persist(updated)
        if self.state_machine.is_terminal(target):
            self.state_machine.mark_stored(updated)
        await self.events.publish(build_event(updated, metadata))
        return updated

    async def _persist(self, complaint: Complaint) -> None:
        """Store a snapshot with bounded exponential retries"""
        async def save(attempt_number: int) -> Complaint:
            return await self.store.save(complaint)

        outcome = await self.scheduler.run(
            save,
            self.persistence_policy,
            name=f"persist {complaint.complaint_id} v{complaint.version}",
        )
        if outcome.succeeded:
            return
        if isinstance(outcome.last_error, StaleSnapshotError):
            logger.debug(
                f"Skipped stale snapshot of {complaint.complaint_id} v{complaint.version}",
                extra={"complaint_id": complaint.complaint_id}
            )
            return
        raise PersistenceError(
            f"Could not store complaint {complaint.complaint_id} after {len(outcome.attempts)} attempts",
            details={"complaint_id": complaint.complaint_id, "version": complaint.version}
        ) from outcome.last_error
