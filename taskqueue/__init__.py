"""Remote task queue access: models, store client, change feed and ingestion loops."""

from taskqueue.ingestion import IngestionChannel
from taskqueue.models import InvalidTransition, Task, TaskStatus
from taskqueue.realtime import RealtimeError, RealtimeFeed
from taskqueue.store import StoreWriteError, TaskStoreClient

__all__ = [
    "IngestionChannel",
    "InvalidTransition",
    "RealtimeError",
    "RealtimeFeed",
    "StoreWriteError",
    "Task",
    "TaskStatus",
    "TaskStoreClient",
]
