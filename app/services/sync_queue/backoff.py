import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from app.core.config import Settings
from app.core.enums import SyncErrorType
from app.core.utils import utcnow


@dataclass
class BackoffPolicy:
    """
    Exponential backoff with jitter for re-queued sync jobs.

    delay(n) = min(base * 2 ** (n - 1), max_delay) + uniform(0, jitter)

    Rate-limit failures start from a longer base, and a Retry-After supplied by
    the marketplace is honoured when it asks for more than we would wait anyway.
    """

    base_seconds: float = 30.0
    max_seconds: float = 300.0
    rate_limit_base_seconds: float = 120.0
    jitter_seconds: float = 1.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "BackoffPolicy":
        return cls(
            base_seconds=settings.SYNC_BACKOFF_BASE_SECONDS,
            max_seconds=settings.SYNC_BACKOFF_MAX_SECONDS,
            rate_limit_base_seconds=settings.SYNC_RATE_LIMIT_BACKOFF_BASE_SECONDS,
            jitter_seconds=settings.SYNC_BACKOFF_JITTER_SECONDS,
        )

    def delay_seconds(
        self,
        attempt: int,
        error_type: Optional[SyncErrorType] = None,
        retry_after: Optional[float] = None,
    ) -> float:
        attempt = max(attempt, 1)
        base = self.rate_limit_base_seconds if error_type == SyncErrorType.RATE_LIMIT else self.base_seconds
        cap = max(self.max_seconds, base)
        delay = min(base * (2 ** (attempt - 1)), cap)
        if retry_after is not None and retry_after > delay:
            delay = retry_after
        if self.jitter_seconds > 0:
            delay += random.uniform(0, self.jitter_seconds)
        return delay

    def next_retry_at(
        self,
        attempt: int,
        error_type: Optional[SyncErrorType] = None,
        retry_after: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> datetime:
        now = now or utcnow()
        return now + timedelta(seconds=self.delay_seconds(attempt, error_type, retry_after))
