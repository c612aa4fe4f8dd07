from .backoff import BackoffPolicy
from .lease import SYNC_PROCESSOR_LOCK, ProcessorLease
from .queue import SyncQueueService, classify_error

__all__ = [
    "BackoffPolicy",
    "ProcessorLease",
    "SYNC_PROCESSOR_LOCK",
    "SyncQueueService",
    "classify_error",
]
