"""Sync Scheduler - runs offline reconciliation passes

Handles:
- A reconciliation pass as soon as connectivity is reported restored
- Periodic passes while the client stays online and drafts remain
- Writing sync bookkeeping back to client storage
"""
from typing import List, Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..config.settings import settings
from ..domain.enums import SyncState
from ..domain.models import DraftSyncOutcome
from ..services.collaborators import ConnectivityProbe, DraftStore
from ..services.offline_sync import OfflineSyncReconciler
from ..utils.idgen import generate_correlation_id
from ..utils.logger import get_logger, set_correlation_id

logger = get_logger(__name__)


class SyncScheduler:
    """
    APScheduler wrapper around OfflineSyncReconciler

    Only one pass runs at a time: the interval job has max_instances=1 and
    the reconciler serializes passes triggered by connectivity changes.
    """

    JOB_ID = "offline_reconciliation"

    def __init__(
        self,
        reconciler: OfflineSyncReconciler,
        draft_store: DraftStore,
        connectivity: ConnectivityProbe,
        interval_seconds: Optional[int] = None
    ):
        self.reconciler = reconciler
        self.draft_store = draft_store
        self.connectivity = connectivity
        self.interval_seconds = interval_seconds or settings.reconciliation_interval_seconds
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._is_running = False
        self._pass_count = 0

    def start(self) -> None:
        """Start the periodic reconciliation job"""
        if self._is_running:
            logger.warning("Sync scheduler already running")
            return

        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            self.run_pass,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=self.JOB_ID,
            name="Reconcile offline drafts",
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )
        self.scheduler.start()
        self._is_running = True
        logger.info(f"Sync scheduler started (every {self.interval_seconds}s)")

    def stop(self) -> None:
        """Stop the scheduler"""
        if self.scheduler:
            self.scheduler.shutdown(wait=False)
            self._is_running = False
            logger.info("Sync scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._is_running

    @property
    def pass_count(self) -> int:
        return self._pass_count

    async def connectivity_restored(self) -> List[DraftSyncOutcome]:
        """Client storage reports that the network is back"""
        logger.info("Connectivity restored; starting reconciliation")
        return await self.run_pass()

    async def run_pass(self) -> List[DraftSyncOutcome]:
        """
        One reconciliation pass against client storage

        Synced drafts are removed from storage; failed drafts are written back
        with their updated attempt bookkeeping and stay queued.
        """
        if not await self.connectivity.is_online():
            logger.debug("Offline; skipping reconciliation pass")
            return []

        drafts = [
            d for d in await self.draft_store.list_drafts()
            if d.sync_state != SyncState.SYNCED
        ]
        if not drafts:
            return []

        set_correlation_id(generate_correlation_id())
        outcomes = await self.reconciler.reconcile(drafts)
        self._pass_count += 1

        for outcome in outcomes:
            try:
                if outcome.sync_state == SyncState.SYNCED:
                    await self.draft_store.remove_draft(outcome.local_id)
                elif outcome.draft is not None:
                    await self.draft_store.save_draft(outcome.draft)
            except Exception as e:
                # Storage bookkeeping is retried on the next pass
                logger.error(
                    f"Failed to update draft storage for {outcome.local_id}: {e}",
                    extra={"local_id": outcome.local_id}
                )

        return outcomes
