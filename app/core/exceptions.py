from typing import Optional

from app.core.enums import SyncErrorType


class BaseServiceError(Exception):
    """Base exception for all service-related errors."""
    pass

class ValidationError(BaseServiceError):
    """Raised when data validation fails."""
    pass

class InventoryItemNotFoundError(BaseServiceError):
    """Raised when an inventory item is not found."""
    pass


class PlatformServiceError(BaseServiceError):
    """
    Base exception for marketplace boundary errors.

    ``error_type`` is what the sync queue records on the job, so operators can
    filter dead letters without retrying them.
    """
    error_type: SyncErrorType = SyncErrorType.UNKNOWN

    def __init__(self, message: str = "", *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_transient(self) -> bool:
        return self.error_type.is_transient

class RateLimitError(PlatformServiceError):
    """Raised when the marketplace throttles us (HTTP 429)."""
    error_type = SyncErrorType.RATE_LIMIT

    def __init__(self, message: str = "", *, retry_after: Optional[float] = None, status_code: Optional[int] = 429):
        super().__init__(message, status_code=status_code)
        self.retry_after = retry_after

class MarketplaceUnavailableError(PlatformServiceError):
    """Raised on network failures and 5xx responses."""
    error_type = SyncErrorType.NETWORK

class MarketplaceValidationError(PlatformServiceError):
    """Raised when the marketplace rejects the request (4xx other than 404/429)."""
    error_type = SyncErrorType.CLIENT_ERROR

class ListingNotFoundError(PlatformServiceError):
    """Raised when a marketplace listing reference no longer resolves."""
    error_type = SyncErrorType.NOT_FOUND

class MarketplaceNotConfiguredError(BaseServiceError):
    """Raised when no client is registered for a marketplace."""
    pass


class SyncQueueError(BaseServiceError):
    """Base exception for sync queue errors."""
    pass

class QueueConflictError(SyncQueueError):
    """Raised when an item already has a job being processed."""
    pass

class JobNotFoundError(SyncQueueError):
    """Raised when a queue job or dead letter entry is not found."""
    pass

class InvalidJobStateError(SyncQueueError):
    """Raised when a job cannot make the requested transition."""
    pass

class SyncRuleNotFoundError(BaseServiceError):
    """Raised when a sync rule is not found."""
    pass
