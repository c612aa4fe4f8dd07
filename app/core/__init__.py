"""
Core module exports.
"""
from .enums import (
    DrainStopReason,
    ListingSyncStatus,
    Marketplace,
    ReconcileAction,
    RuleType,
    SyncAction,
    SyncErrorType,
    SyncJobStatus,
    TruthMode,
)

from .exceptions import (
    BaseServiceError,
    InventoryItemNotFoundError,
    ListingNotFoundError,
    MarketplaceNotConfiguredError,
    MarketplaceUnavailableError,
    MarketplaceValidationError,
    PlatformServiceError,
    QueueConflictError,
    RateLimitError,
    ValidationError,
)

from .utils import (
    as_utc,
    chunked,
    utcnow,
)
