"""Background jobs"""
from .sync_scheduler import SyncScheduler

__all__ = ["SyncScheduler"]
