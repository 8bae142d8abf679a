"""Service layer for coordinating components."""
from .health_service import HealthMonitor
from .query_service import QueryResult, QueryService, RetrievalQuery
from .scheduler import BackgroundJobs
from .sync_service import SyncCoordinator, SyncOptions, SyncResult, SyncState

__all__ = [
    "BackgroundJobs",
    "HealthMonitor",
    "QueryResult",
    "QueryService",
    "RetrievalQuery",
    "SyncCoordinator",
    "SyncOptions",
    "SyncResult",
    "SyncState",
]
