"""Complaint State Machine - sole writer of complaint status and history"""
import asyncio
from typing import Any, Callable, Dict, FrozenSet, List, Optional

from ..domain.models import (
    Complaint, ClassificationResult, LocationResult, RoutingInfo, StatusHistoryEntry
)
from ..domain.enums import ComplaintStatus, ReviewTag
from ..domain.errors import (
    ComplaintNotFoundError, ConflictError, InvalidTransitionError
)
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)


TRANSITIONS: Dict[ComplaintStatus, FrozenSet[ComplaintStatus]] = {
    ComplaintStatus.SUBMITTED: frozenset({
        ComplaintStatus.ASSIGNED,
        ComplaintStatus.PENDING_MANUAL_ROUTING,
        ComplaintStatus.REJECTED,
    }),
    ComplaintStatus.ASSIGNED: frozenset({
        ComplaintStatus.IN_PROGRESS,
        ComplaintStatus.PENDING_MANUAL_ROUTING,
    }),
    ComplaintStatus.IN_PROGRESS: frozenset({
        ComplaintStatus.RESOLVED,
        ComplaintStatus.PENDING_MANUAL_ROUTING,
    }),
    ComplaintStatus.PENDING_MANUAL_ROUTING: frozenset({
        ComplaintStatus.ASSIGNED,
        ComplaintStatus.REJECTED,
    }),
    ComplaintStatus.RESOLVED: frozenset(),
    ComplaintStatus.REJECTED: frozenset(),
}

# Statuses that can only be entered with a route attached
ROUTED_STATUSES: FrozenSet[ComplaintStatus] = frozenset({
    ComplaintStatus.ASSIGNED,
    ComplaintStatus.IN_PROGRESS,
    ComplaintStatus.RESOLVED,
})

TERMINAL_STATUSES: FrozenSet[ComplaintStatus] = frozenset(
    status for status, targets in TRANSITIONS.items() if not targets
)


def _check_table() -> None:
    missing = set(ComplaintStatus) - set(TRANSITIONS)
    if missing:
        raise RuntimeError(
            f"Transition table is missing statuses: {sorted(s.value for s in missing)}"
        )
    for source, targets in TRANSITIONS.items():
        if source in targets:
            raise RuntimeError(f"Self transition declared for {source.value}")


_check_table()

_UNSET: Any = object()


class ComplaintStateMachine:
    """
    Owns the canonical status of active complaints

    - Holds the in-memory working set of non-terminal complaints
    - Validates every transition against TRANSITIONS
    - Serializes writes per complaint with an asyncio.Lock that is held only
      for the in-memory mutation, never across collaborator calls
    - Hands out deep-copied snapshots; callers persist those
    - Keeps a terminal snapshot only until the caller reports it stored
    """

    def __init__(self, clock: Callable[[], Any] = utc_now):
        self._clock = clock
        self._active: Dict[str, Complaint] = {}
        self._unsaved: Dict[str, Complaint] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    # =========================================================================
    # Table queries
    # =========================================================================

    @staticmethod
    def can_transition(source: ComplaintStatus, target: ComplaintStatus) -> bool:
        return target in TRANSITIONS[source]

    @staticmethod
    def is_terminal(status: ComplaintStatus) -> bool:
        return status in TERMINAL_STATUSES

    @staticmethod
    def allowed_targets(status: ComplaintStatus) -> FrozenSet[ComplaintStatus]:
        return TRANSITIONS[status]

    # =========================================================================
    # Working set
    # =========================================================================

    def create(
        self,
        complaint_id: str,
        classification: ClassificationResult,
        location: LocationResult,
        photo_ref: str,
        contact: Optional[str] = None,
        local_id: Optional[str] = None,
        review_tags: Optional[List[ReviewTag]] = None
    ) -> Complaint:
        """Create a complaint in SUBMITTED with its first history entry"""
        if complaint_id in self._active or complaint_id in self._unsaved:
            raise ConflictError(
                f"Complaint {complaint_id} already exists",
                details={"complaint_id": complaint_id}
            )

        now = self._clock()
        complaint = Complaint(
            complaint_id=complaint_id,
            complaint_type=classification.complaint_type,
            classification=classification,
            location=location,
            photo_ref=photo_ref,
            contact=contact,
            status=ComplaintStatus.SUBMITTED,
            status_history=[StatusHistoryEntry(status=ComplaintStatus.SUBMITTED, timestamp=now)],
            review_tags=list(review_tags or []),
            local_id=local_id,
            version=1,
            created_at=now,
            updated_at=now,
        )
        self._active[complaint_id] = complaint
        logger.info(
            f"Complaint created: {complaint_id}",
            extra={"complaint_id": complaint_id, "status": complaint.status.value}
        )
        return complaint.model_copy(deep=True)

    def adopt(self, complaint: Complaint) -> None:
        """Bring a stored complaint into the working set (no-op if known or terminal)"""
        if complaint.complaint_id in self._active or complaint.complaint_id in self._unsaved:
            return
        if not self.is_terminal(complaint.status):
            self._active[complaint.complaint_id] = complaint.model_copy(deep=True)

    def discard(self, complaint_id: str) -> None:
        """Drop a complaint whose creation was never persisted"""
        self._active.pop(complaint_id, None)
        self._locks.pop(complaint_id, None)

    def get(self, complaint_id: str) -> Optional[Complaint]:
        complaint = self._active.get(complaint_id)
        return complaint.model_copy(deep=True) if complaint else None

    def terminal_snapshot(self, complaint_id: str) -> Optional[Complaint]:
        """Terminal complaint whose final snapshot is not stored yet"""
        complaint = self._unsaved.get(complaint_id)
        return complaint.model_copy(deep=True) if complaint else None

    def unsaved_terminal(self) -> List[Complaint]:
        return [c.model_copy(deep=True) for c in self._unsaved.values()]

    def mark_stored(self, complaint: Complaint) -> None:
        """Release a terminal snapshot once this version (or a later one) is stored"""
        current = self._unsaved.get(complaint.complaint_id)
        if current is not None and current.version <= complaint.version:
            del self._unsaved[complaint.complaint_id]

    def active_complaints(self) -> List[Complaint]:
        return [c.model_copy(deep=True) for c in self._active.values()]

    def _lock_for(self, complaint_id: str) -> asyncio.Lock:
        lock = self._locks.get(complaint_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[complaint_id] = lock
        return lock

    def _require_active(self, complaint_id: str) -> Complaint:
        complaint = self._active.get(complaint_id)
        if complaint is not None:
            return complaint
        closed = self._unsaved.get(complaint_id)
        if closed is not None:
            raise InvalidTransitionError(
                f"Complaint {complaint_id} is {closed.status.value} and accepts no transitions",
                details={"complaint_id": complaint_id, "current_status": closed.status.value}
            )
        raise ComplaintNotFoundError(f"Complaint {complaint_id} not found")

    # =========================================================================
    # Writes
    # =========================================================================

    async def transition(
        self,
        complaint_id: str,
        target: ComplaintStatus,
        metadata: Optional[Dict[str, Any]] = None,
        routing: Optional[RoutingInfo] = _UNSET,
        expected_status: Optional[ComplaintStatus] = None
    ) -> Complaint:
        """
        Apply one transition and append exactly one history entry

        Args:
            complaint_id: Complaint to move
            target: Target status
            metadata: Stored on the new history entry
            routing: New routing info (omit to keep the current one)
            expected_status: Reject if the complaint moved since the caller looked

        Returns:
            Snapshot of the updated complaint

        Raises:
            InvalidTransitionError: Transition not allowed; complaint unchanged
            ComplaintNotFoundError: Unknown complaint
        """
        async with self._lock_for(complaint_id):
            complaint = self._require_active(complaint_id)
            source = complaint.status

            if expected_status is not None and source != expected_status:
                raise InvalidTransitionError(
                    f"Complaint {complaint_id} is {source.value}, expected {expected_status.value}",
                    details={
                        "complaint_id": complaint_id,
                        "current_status": source.value,
                        "expected_status": expected_status.value,
                    }
                )

            if not self.can_transition(source, target):
                raise InvalidTransitionError(
                    f"Transition {source.value} -> {target.value} is not allowed",
                    details={
                        "complaint_id": complaint_id,
                        "current_status": source.value,
                        "target_status": target.value,
                        "allowed": sorted(s.value for s in TRANSITIONS[source]),
                    }
                )

            new_routing = complaint.routing if routing is _UNSET else routing
            if target in ROUTED_STATUSES and new_routing is None:
                raise InvalidTransitionError(
                    f"Transition to {target.value} requires a routing assignment",
                    details={"complaint_id": complaint_id, "target_status": target.value}
                )

            now = self._clock()
            updates: Dict[str, Any] = {
                "status": target,
                "status_history": complaint.status_history + [
                    StatusHistoryEntry(status=target, timestamp=now, metadata=dict(metadata or {}))
                ],
                "routing": new_routing,
                "updated_at": now,
                "version": complaint.version + 1,
            }
            if target == ComplaintStatus.RESOLVED:
                updates["resolved_at"] = now

            updated = complaint.model_copy(update=updates)

            if self.is_terminal(target):
                self._active.pop(complaint_id, None)
                self._locks.pop(complaint_id, None)
                self._unsaved[complaint_id] = updated
            else:
                self._active[complaint_id] = updated

        logger.info(
            f"Complaint {complaint_id}: {source.value} -> {target.value}",
            extra={"complaint_id": complaint_id, "status": target.value}
        )
        return updated.model_copy(deep=True)

    async def amend(
        self,
        complaint_id: str,
        classification: Optional[ClassificationResult] = None,
        review_tags: Optional[List[ReviewTag]] = None
    ) -> Complaint:
        """Update non-status fields (reclassification, review tags) under the lock"""
        async with self._lock_for(complaint_id):
            complaint = self._require_active(complaint_id)
            updates: Dict[str, Any] = {
                "updated_at": self._clock(),
                "version": complaint.version + 1,
            }
            if classification is not None:
                updates["classification"] = classification
                updates["complaint_type"] = classification.complaint_type
            if review_tags is not None:
                updates["review_tags"] = list(review_tags)

            updated = complaint.model_copy(update=updates)
            self._active[complaint_id] = updated
        return updated.model_copy(deep=True)
