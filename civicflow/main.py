"""
CivicFlow - complaint lifecycle orchestration core

Composition root: wires repositories, engine and services together and
manages their startup/shutdown.
"""
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from . import __version__
from .config.settings import settings
from .engine.audit_writer import AuditWriter
from .engine.registry import DepartmentRegistry
from .engine.retry import RetryScheduler
from .engine.routing import RoutingEngine
from .engine.state_machine import ComplaintStateMachine
from .repositories.async_mongo import async_health_check, close_async_connection
from .repositories.audit_repo import AuditRepository
from .repositories.complaint_repo import ComplaintRepository
from .repositories.department_repo import DepartmentRepository
from .repositories.mongo_client import close_connection, create_indexes, health_check
from .repositories.submission_key_repo import SubmissionKeyRepository
from .scheduler.sync_scheduler import SyncScheduler
from .services.collaborators import ConnectivityProbe, DraftStore
from .services.complaint_service import ComplaintService
from .services.department_client import HttpDepartmentEndpoint
from .services.notification_service import (
    AdminAlertNotifier, HttpNotificationSender, LifecycleEventPublisher, NotificationDispatcher
)
from .services.offline_sync import OfflineSyncReconciler
from .utils.logger import setup_logging, get_logger

logger = get_logger(__name__)


# =============================================================================
# Application Container
# =============================================================================

class Application:
    """Wired components of one orchestration core instance"""

    def __init__(
        self,
        service: ComplaintService,
        registry: DepartmentRegistry,
        reconciler: OfflineSyncReconciler,
        sync_scheduler: Optional[SyncScheduler] = None
    ):
        self.service = service
        self.registry = registry
        self.reconciler = reconciler
        self.sync_scheduler = sync_scheduler


def build_application(
    draft_store: Optional[DraftStore] = None,
    connectivity: Optional[ConnectivityProbe] = None
) -> Application:
    """
    Create the production object graph

    Args:
        draft_store: Client-side draft storage (enables the sync scheduler)
        connectivity: Client connectivity probe (required with draft_store)

    Returns:
        Application with Mongo-backed stores and HTTP collaborators
    """
    scheduler = RetryScheduler()
    audit_writer = AuditWriter(AuditRepository())
    registry = DepartmentRegistry(repository=DepartmentRepository())

    sender = HttpNotificationSender()
    events = LifecycleEventPublisher()
    events.subscribe(NotificationDispatcher(sender))

    routing_engine = RoutingEngine(
        registry=registry,
        endpoint=HttpDepartmentEndpoint(),
        scheduler=scheduler,
        audit_writer=audit_writer,
        admin_notifier=AdminAlertNotifier(sender),
    )
    service = ComplaintService(
        state_machine=ComplaintStateMachine(),
        routing_engine=routing_engine,
        store=ComplaintRepository(),
        submission_keys=SubmissionKeyRepository(),
        audit_writer=audit_writer,
        events=events,
        scheduler=scheduler,
    )
    reconciler = OfflineSyncReconciler(service, scheduler)

    sync_scheduler = None
    if draft_store is not None and connectivity is not None:
        sync_scheduler = SyncScheduler(reconciler, draft_store, connectivity)

    return Application(service, registry, reconciler, sync_scheduler)


# =============================================================================
# Lifecycle
# =============================================================================

@asynccontextmanager
async def lifespan(
    draft_store: Optional[DraftStore] = None,
    connectivity: Optional[ConnectivityProbe] = None
) -> AsyncIterator[Application]:
    """
    Application lifespan

    Startup:
        - Configures logging
        - Creates MongoDB indexes
        - Loads the department registry
        - Starts the offline sync scheduler (when client storage is attached)

    Shutdown:
        - Stops the scheduler
        - Waits for queued routing and retries
        - Closes database connections
    """
    setup_logging()
    logger.info("Starting CivicFlow orchestration core...")

    try:
        create_indexes()
        logger.info("MongoDB indexes created")
    except Exception as e:
        logger.error(f"Failed to create indexes: {e}")

    app = build_application(draft_store, connectivity)

    try:
        snapshot = app.registry.load_from_repository()
        logger.info(
            f"Department registry loaded ({len(snapshot.mapping)} complaint types)",
            extra={"registry_version": snapshot.version}
        )
    except Exception as e:
        logger.error(f"Failed to load department registry: {e}")

    if app.sync_scheduler is not None:
        app.sync_scheduler.start()

    logger.info("Orchestration core started")
    try:
        yield app
    finally:
        logger.info("Shutting down...")
        if app.sync_scheduler is not None:
            app.sync_scheduler.stop()
        await app.service.drain()
        await close_async_connection()
        close_connection()
        logger.info("Shutdown complete")


async def health() -> Dict[str, Any]:
    """Health summary including both database clients"""
    mongo_health = health_check()
    async_mongo_health = await async_health_check()
    healthy = (
        mongo_health.get("status") == "healthy"
        and async_mongo_health.get("status") == "healthy"
    )
    return {
        "status": "healthy" if healthy else "degraded",
        "version": __version__,
        "environment": settings.environment,
        "mongo": mongo_health,
        "mongo_async": async_mongo_health,
    }
