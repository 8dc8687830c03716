"""Routing Engine - department resolution, work-order creation, escalation"""
import asyncio
import itertools
from typing import Awaitable, Callable, Dict, List, Optional, TYPE_CHECKING

from ..config.settings import settings
from ..domain.models import (
    Complaint, Department, RoutingAttempt, RoutingResult, WorkOrderRequest
)
from ..domain.enums import AttemptOutcome, RoutingFailureReason, RoutingStatus
from ..domain.errors import MalformedResponseError
from .audit_writer import AuditWriter
from .registry import DepartmentRegistry
from .retry import AttemptRecord, RetryOutcome, RetryPolicy, RetryScheduler
from ..utils.time import utc_now
from ..utils.logger import get_logger

if TYPE_CHECKING:
    from ..services.collaborators import AdminNotifier, DepartmentEndpoint

logger = get_logger(__name__)

SettledCallback = Callable[[Complaint, RoutingResult], Awaitable[None]]


def default_routing_policy() -> RetryPolicy:
    """Fixed interval policy from settings (3 attempts, 5 minutes apart)"""
    return RetryPolicy.fixed_interval(
        delay=settings.routing_retry_interval_seconds,
        max_attempts=settings.routing_max_attempts,
        attempt_timeout=settings.routing_attempt_timeout_seconds,
    )


class RoutingEngine:
    """
    Route a complaint to its primary department

    1. Resolve departments for the complaint type (empty -> NO_MAPPING)
    2. Pick the primary department
    3. Create a work order; the first attempt is awaited inline
    4. On failure the remaining attempts run on the scheduler and route()
       returns QUEUED; on_settled receives the final result
    5. Exhaustion -> FAILED / ROUTING_EXHAUSTED, administrators alerted once

    The engine never touches complaint status; the caller applies the
    transition that matches the result.
    """

    def __init__(
        self,
        registry: DepartmentRegistry,
        endpoint: "DepartmentEndpoint",
        scheduler: RetryScheduler,
        audit_writer: AuditWriter,
        admin_notifier: "AdminNotifier",
        policy: Optional[RetryPolicy] = None
    ):
        self.registry = registry
        self.endpoint = endpoint
        self.scheduler = scheduler
        self.audit_writer = audit_writer
        self.admin_notifier = admin_notifier
        self.policy = policy or default_routing_policy()
        self._generation_counter = itertools.count(1)
        self._generations: Dict[str, int] = {}
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._attempt_tasks: Dict[str, asyncio.Task] = {}

    # =========================================================================
    # Public API
    # =========================================================================

    async def route(
        self,
        complaint: Complaint,
        on_settled: Optional[SettledCallback] = None
    ) -> RoutingResult:
        """
        Run the routing algorithm for a complaint

        Args:
            complaint: Snapshot of the complaint to route
            on_settled: Awaited with the final result when route() returned QUEUED

        Returns:
            ROUTED, FAILED, or QUEUED (retries pending)
        """
        complaint_id = complaint.complaint_id
        generation = self._begin(complaint_id)

        departments = self.registry.resolve(complaint.complaint_type)
        if not departments:
            logger.warning(
                f"No department mapping for {complaint.complaint_type.value}",
                extra={"complaint_id": complaint_id}
            )
            await self.audit_writer.write_routing_failure(
                complaint_id,
                RoutingFailureReason.NO_MAPPING,
                {"complaint_type": complaint.complaint_type.value}
            )
            await self._notify_admins(complaint, RoutingFailureReason.NO_MAPPING)
            self._release(complaint_id, generation)
            return RoutingResult(status=RoutingStatus.FAILED, reason=RoutingFailureReason.NO_MAPPING)

        department = departments[0]
        request = WorkOrderRequest(
            complaint_id=complaint_id,
            complaint_type=complaint.complaint_type,
            idempotency_key=f"{complaint_id}:{generation}",
            address=complaint.location.address,
            coordinates=complaint.location.coordinates,
            photo_ref=complaint.photo_ref,
        )

        attempts: List[RoutingAttempt] = []
        first_attempt: asyncio.Future = asyncio.get_running_loop().create_future()

        async def create(attempt_number: int) -> str:
            return await self._create_work_order(department, request)

        async def record(attempt: AttemptRecord) -> None:
            routing_attempt = RoutingAttempt(
                complaint_id=complaint_id,
                attempt_number=attempt.attempt_number,
                scheduled_at=attempt.scheduled_at,
                outcome=attempt.outcome,
                department_id=department.department_id,
                error=attempt.error_message,
            )
            attempts.append(routing_attempt)
            await self.audit_writer.write_routing_attempt(routing_attempt)
            if not first_attempt.done():
                first_attempt.set_result(attempt)

        task = self.scheduler.schedule(
            create,
            self.policy,
            name=f"route {complaint_id} -> {department.department_id}",
            on_attempt=record,
        )

        await asyncio.wait({task, first_attempt}, return_when=asyncio.FIRST_COMPLETED)
        if self._generations.get(complaint_id) != generation:
            # A newer routing run (reclassification) owns this complaint now
            if not task.done():
                task.cancel()
            return RoutingResult(
                status=RoutingStatus.QUEUED,
                department_id=department.department_id,
                attempts=list(attempts),
            )

        first = first_attempt.result() if first_attempt.done() else None
        if first is None or self._is_final(first):
            outcome = await task
            try:
                return await self._finish(complaint, department, outcome, attempts)
            finally:
                self._release(complaint_id, generation)

        logger.info(
            f"Routing queued for retry: {complaint_id}",
            extra={"complaint_id": complaint_id, "department_id": department.department_id}
        )
        follow_up = asyncio.ensure_future(
            self._settle_later(complaint, department, generation, task, attempts, on_settled)
        )
        self._in_flight[complaint_id] = follow_up
        self._attempt_tasks[complaint_id] = task
        follow_up.add_done_callback(
            lambda t, cid=complaint_id, gen=generation: self._forget(cid, gen, t)
        )

        return RoutingResult(
            status=RoutingStatus.QUEUED,
            department_id=department.department_id,
            attempts=list(attempts),
        )

    def cancel(self, complaint_id: str) -> bool:
        """Abandon any queued routing for a complaint; its late result is ignored"""
        self._generations.pop(complaint_id, None)
        attempts = self._attempt_tasks.pop(complaint_id, None)
        if attempts is not None and not attempts.done():
            attempts.cancel()
        task = self._in_flight.pop(complaint_id, None)
        if task is not None and not task.done():
            task.cancel()
            logger.info(
                f"Cancelled queued routing for {complaint_id}",
                extra={"complaint_id": complaint_id}
            )
            return True
        return False

    def is_queued(self, complaint_id: str) -> bool:
        task = self._in_flight.get(complaint_id)
        return task is not None and not task.done()

    async def drain(self) -> None:
        """Wait until no queued routing remains"""
        while True:
            pending = [t for t in self._in_flight.values() if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # =========================================================================
    # Internals
    # =========================================================================

    def _begin(self, complaint_id: str) -> int:
        """Start a new routing generation, superseding any queued one"""
        self.cancel(complaint_id)
        generation = next(self._generation_counter)
        self._generations[complaint_id] = generation
        return generation

    def _release(self, complaint_id: str, generation: int) -> None:
        if self._generations.get(complaint_id) == generation:
            del self._generations[complaint_id]

    def _forget(self, complaint_id: str, generation: int, task: asyncio.Task) -> None:
        if self._in_flight.get(complaint_id) is task:
            del self._in_flight[complaint_id]
            self._attempt_tasks.pop(complaint_id, None)
        self._release(complaint_id, generation)

    def _is_final(self, attempt: AttemptRecord) -> bool:
        if attempt.outcome == AttemptOutcome.SUCCEEDED:
            return True
        if self.policy.max_attempts <= 1:
            return True
        return attempt.error is not None and not self.policy.is_retryable(attempt.error)

    async def _create_work_order(self, department: Department, request: WorkOrderRequest) -> str:
        work_order_id = await self.endpoint.create_work_order(department, request)
        if not isinstance(work_order_id, str) or not work_order_id.strip():
            raise MalformedResponseError(
                f"Department {department.department_id} returned no work order id",
                details={"department_id": department.department_id}
            )
        return work_order_id

    async def _settle_later(
        self,
        complaint: Complaint,
        department: Department,
        generation: int,
        task: "asyncio.Task[RetryOutcome]",
        attempts: List[RoutingAttempt],
        on_settled: Optional[SettledCallback]
    ) -> None:
        try:
            outcome = await task
        except asyncio.CancelledError:
            task.cancel()
            raise

        if self._generations.get(complaint.complaint_id) != generation:
            logger.info(
                f"Discarding superseded routing result for {complaint.complaint_id}",
                extra={"complaint_id": complaint.complaint_id}
            )
            return

        result = await self._finish(complaint, department, outcome, attempts)
        if on_settled is not None:
            await on_settled(complaint, result)

    async def _finish(
        self,
        complaint: Complaint,
        department: Department,
        outcome: RetryOutcome,
        attempts: List[RoutingAttempt]
    ) -> RoutingResult:
        if outcome.succeeded:
            logger.info(
                f"Complaint {complaint.complaint_id} routed to {department.department_id}",
                extra={
                    "complaint_id": complaint.complaint_id,
                    "department_id": department.department_id,
                    "work_order_id": outcome.result,
                }
            )
            return RoutingResult(
                status=RoutingStatus.ROUTED,
                department_id=department.department_id,
                work_order_id=outcome.result,
                routed_at=utc_now(),
                attempts=list(attempts),
            )

        await self.audit_writer.write_routing_failure(
            complaint.complaint_id,
            RoutingFailureReason.ROUTING_EXHAUSTED,
            {
                "department_id": department.department_id,
                "attempts": len(attempts),
                "last_error": str(outcome.last_error) if outcome.last_error else None,
            }
        )
        await self._notify_admins(complaint, RoutingFailureReason.ROUTING_EXHAUSTED)
        return RoutingResult(
            status=RoutingStatus.FAILED,
            department_id=department.department_id,
            reason=RoutingFailureReason.ROUTING_EXHAUSTED,
            attempts=list(attempts),
        )

    async def _notify_admins(self, complaint: Complaint, reason: RoutingFailureReason) -> None:
        delivered = True
        try:
            await self.admin_notifier.notify_routing_failure(complaint, reason)
        except Exception as e:
            delivered = False
            logger.error(
                f"Administrator notification failed for {complaint.complaint_id}: {e}",
                extra={"complaint_id": complaint.complaint_id}
            )
        await self.audit_writer.write_admin_notified(complaint.complaint_id, reason, delivered)
