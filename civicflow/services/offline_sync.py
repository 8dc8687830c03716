"""Offline Sync Reconciler - FIFO replay of locally queued drafts"""
import asyncio
from typing import List, Optional, Sequence, TYPE_CHECKING

from ..config.settings import settings
from ..domain.models import DraftComplaint, DraftSyncOutcome
from ..domain.enums import SyncState
from ..domain.errors import DomainError, ExternalServiceError, RetryExhaustedError
from ..engine.retry import RetryPolicy, RetryScheduler
from ..utils.time import ensure_utc, utc_now
from ..utils.logger import get_context_logger, get_logger

if TYPE_CHECKING:
    from .complaint_service import ComplaintService, SubmissionReceipt

logger = get_logger(__name__)


def default_upload_policy() -> RetryPolicy:
    """Exponential policy for transient network failures (1s, 2s, 4s ...)"""
    return RetryPolicy.exponential(
        base=settings.upload_retry_base_seconds,
        factor=settings.upload_retry_factor,
        max_attempts=settings.upload_retry_max_attempts,
        attempt_timeout=settings.upload_attempt_timeout_seconds,
        retry_on=(ExternalServiceError, TimeoutError),
    )


def fifo_order(drafts: Sequence[DraftComplaint]) -> List[DraftComplaint]:
    """Creation order with local_id as tie-break"""
    return sorted(drafts, key=lambda d: (ensure_utc(d.created_at_local), d.local_id))


class OfflineSyncReconciler:
    """
    Submits drafts one at a time in creation order

    Draft N+1 is not started until draft N is synced or failed, so server ids
    are handed out in the order the reporter created the drafts. A failed
    draft keeps its payload and position and is retried on the next pass.
    """

    def __init__(
        self,
        service: "ComplaintService",
        scheduler: RetryScheduler,
        policy: Optional[RetryPolicy] = None
    ):
        self.service = service
        self.scheduler = scheduler
        self.policy = policy or default_upload_policy()
        self._pass_lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._pass_lock.locked()

    async def reconcile(self, drafts: Sequence[DraftComplaint]) -> List[DraftSyncOutcome]:
        """
        Run one reconciliation pass

        Args:
            drafts: Drafts awaiting sync (already synced drafts are skipped)

        Returns:
            One outcome per submitted draft, in submission order
        """
        async with self._pass_lock:
            queue = [d for d in fifo_order(drafts) if d.sync_state != SyncState.SYNCED]
            if not queue:
                return []

            logger.info(f"Reconciliation pass started with {len(queue)} drafts")
            outcomes: List[DraftSyncOutcome] = []
            for draft in queue:
                outcomes.append(await self._sync_one(draft))

            synced = sum(1 for o in outcomes if o.sync_state == SyncState.SYNCED)
            logger.info(
                f"Reconciliation pass finished: {synced} synced, {len(outcomes) - synced} failed"
            )
            return outcomes

    async def _sync_one(self, draft: DraftComplaint) -> DraftSyncOutcome:
        log = get_context_logger(__name__, local_id=draft.local_id)
        started_at = utc_now()
        syncing = draft.model_copy(update={
            "sync_state": SyncState.SYNCING,
            "last_attempt_at": started_at,
        })

        async def submit(attempt_number: int) -> "SubmissionReceipt":
            return await self.service.submit_draft(syncing)

        outcome = await self.scheduler.run(
            submit, self.policy, name=f"sync draft {draft.local_id}"
        )

        if outcome.succeeded:
            receipt = outcome.result
            complaint_id = receipt.complaint.complaint_id
            synced = syncing.model_copy(update={
                "sync_state": SyncState.SYNCED,
                "server_id": complaint_id,
                "attempt_count": draft.attempt_count + len(outcome.attempts),
                "last_error": None,
            })
            log.info(
                f"Draft {draft.local_id} synced as {complaint_id}"
                + (" (duplicate)" if receipt.duplicate else ""),
                extra={"complaint_id": complaint_id}
            )
            return DraftSyncOutcome(
                local_id=draft.local_id,
                sync_state=SyncState.SYNCED,
                complaint_id=complaint_id,
                duplicate=receipt.duplicate,
                error_code="DUPLICATE_SUBMISSION" if receipt.duplicate else None,
                draft=synced,
            )

        error = outcome.last_error
        error_code = None
        if outcome.exhausted:
            error_code = RetryExhaustedError.error_code
        if isinstance(error, DomainError):
            error_code = error.error_code
        message = str(error) if error is not None else "unknown failure"

        failed = syncing.model_copy(update={
            "sync_state": SyncState.FAILED,
            "attempt_count": draft.attempt_count + len(outcome.attempts),
            "last_error": message,
        })
        log.warning(f"Draft {draft.local_id} failed to sync: {message}")
        return DraftSyncOutcome(
            local_id=draft.local_id,
            sync_state=SyncState.FAILED,
            error_code=error_code,
            error=message,
            draft=failed,
        )
