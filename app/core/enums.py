"""
Shared enums and constants used across the application.
"""

from enum import Enum

class Marketplace(str, Enum):
    SHOPIFY = "shopify"
    EBAY = "ebay"

    @property
    def label(self):
        return {"shopify": "Shopify", "ebay": "eBay"}[self.value]


class ItemType(str, Enum):
    GRADED = "graded"
    RAW = "raw"
    OTHER = "other"


class ListingSyncStatus(str, Enum):
    """Per-marketplace sync state stored on a listing row."""
    PENDING = "pending"      # Not pushed yet, or linkage cleared for a clean re-sync
    QUEUED = "queued"        # A queue job exists for this listing
    SYNCED = "synced"        # Marketplace matches local state
    ERROR = "error"          # Last push failed permanently (see dead letters)
    REMOVED = "removed"      # Listing removed from the marketplace


class SyncAction(str, Enum):
    PUSH = "push"            # set marketplace quantity to the aggregate total
    ZERO = "zero"            # set marketplace quantity to 0, keep the listing
    REMOVE = "remove"        # delete the listing


class SyncJobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"
    CANCELLED = "cancelled"

    @classmethod
    def active(cls):
        return (cls.QUEUED.value, cls.PROCESSING.value)


class SyncErrorType(str, Enum):
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    TIMEOUT = "timeout"
    CLIENT_ERROR = "client_error"
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"

    @property
    def is_transient(self) -> bool:
        return self in (SyncErrorType.RATE_LIMIT, SyncErrorType.NETWORK,
                        SyncErrorType.TIMEOUT, SyncErrorType.UNKNOWN)


class ReconcileAction(str, Enum):
    CONFIRMED_SOLD = "confirmed_sold"
    QUANTITY_CORRECTED = "quantity_corrected"
    CLEARED_REFS = "cleared_refs"
    IN_SYNC = "in_sync"
    DRIFT_DETECTED = "drift_detected"
    ERROR = "error"


class TruthMode(str, Enum):
    """Which side reconciliation believes when local and marketplace disagree."""
    MARKETPLACE = "marketplace"
    DATABASE = "database"


class RuleType(str, Enum):
    INCLUDE = "include"
    EXCLUDE = "exclude"


class DrainStopReason(str, Enum):
    IDLE = "idle"                    # queue reported nothing eligible
    CAP_REACHED = "cap_reached"      # iteration safety valve hit, re-invoke to continue
    CIRCUIT_OPEN = "circuit_open"    # too many consecutive failures
    LOCKED = "locked"                # another session holds the processor lease
    LOCK_LOST = "lock_lost"          # lease expired and was taken over mid-drain
