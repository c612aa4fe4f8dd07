# app/core/config.py - Consolidated

import os
from functools import lru_cache
from typing import Optional
from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings.
    Loads values from environment variables (.env file)
    """
    # Database settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./inventory_sync.db"
    DATABASE_ECHO: bool = False

    # Shopify Admin API
    SHOPIFY_SHOP_URL: Optional[str] = None
    SHOPIFY_ADMIN_API_ACCESS_TOKEN: Optional[str] = None
    SHOPIFY_LOCATION_GID: Optional[str] = None
    SHOPIFY_API_VERSION: str = "2024-07"

    # eBay Sell Inventory API
    EBAY_ACCESS_TOKEN: str = ""
    EBAY_SANDBOX_MODE: bool = False
    EBAY_MARKETPLACE_ID: str = "EBAY_US"
    EBAY_CATEGORY_ID: Optional[str] = None
    EBAY_MERCHANT_LOCATION_KEY: Optional[str] = None
    EBAY_FULFILLMENT_POLICY_ID: Optional[str] = None
    EBAY_PAYMENT_POLICY_ID: Optional[str] = None
    EBAY_RETURN_POLICY_ID: Optional[str] = None

    # Marketplace HTTP behaviour
    MARKETPLACE_TIMEOUT_SECONDS: float = 30.0

    # Sync queue
    SYNC_MAX_RETRIES: int = 3
    SYNC_HEARTBEAT_TIMEOUT_SECONDS: float = 300     # processing job with older heartbeat is reclaimable
    SYNC_HEARTBEAT_INTERVAL_SECONDS: float = 30
    SYNC_LOCK_TTL_SECONDS: int = 600
    SYNC_BACKOFF_BASE_SECONDS: float = 30.0
    SYNC_BACKOFF_MAX_SECONDS: float = 300.0
    SYNC_RATE_LIMIT_BACKOFF_BASE_SECONDS: float = 120.0
    SYNC_BACKOFF_JITTER_SECONDS: float = 1.0

    # Drain controller
    DRAIN_ITEM_DELAY_MS: int = 2000
    DRAIN_MAX_ITERATIONS: int = 100
    DRAIN_MAX_CONSECUTIVE_ERRORS: int = 3
    DRAIN_CONCURRENCY: int = 1
    DRAIN_BATCH_SIZE: int = 1
    DRAIN_TURBO_MULTIPLIER: int = 3

    # Auto-drain supervisor
    AUTO_DRAIN_SCHEDULER_ENABLED: bool = False
    AUTO_DRAIN_INTERVAL_SECONDS: int = 15

    # Batch sizes
    RECONCILE_BATCH_SIZE: int = 50
    RECONCILE_TRUTH_MODE: str = "marketplace"     # marketplace overwrites local; database only flags drift
    AGGREGATE_BATCH_SIZE: int = 50

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = False

    model_config = ConfigDict(
        env_file=os.environ.get('ENV_FILE', '.env') if os.path.exists(os.environ.get('ENV_FILE', '.env')) else None,
        case_sensitive=True,
        extra="ignore",
    )


@lru_cache()
def get_settings():
    """Cached settings to avoid loading .env file for every request"""
    return Settings()

def clear_settings_cache():
    """Clear the settings cache - useful when switching between environments"""
    get_settings.cache_clear()
