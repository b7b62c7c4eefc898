"""Bulk catalog/content synchronization."""

from shop_worker.sync.events import SyncEvent, SyncEventType
from shop_worker.sync.orchestrator import SYNC_PHASES, SyncCancelledError, SyncOrchestrator
from shop_worker.sync.pagination import PaginationError, paginate_connection

__all__ = [
    "SYNC_PHASES",
    "PaginationError",
    "SyncCancelledError",
    "SyncEvent",
    "SyncEventType",
    "SyncOrchestrator",
    "paginate_connection",
]
