"""
Schemas for the sync engine API endpoints.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from app.core.enums import Marketplace, RuleType, SyncAction, TruthMode
from app.schemas.base import BaseSchema, TimestampedSchema


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

class EnqueueRequest(BaseModel):
    inventory_item_id: int
    marketplace: Marketplace
    action: SyncAction = SyncAction.PUSH
    payload: Optional[Dict[str, Any]] = None
    max_retries: Optional[int] = Field(default=None, ge=0)


class SyncJobRead(TimestampedSchema):
    id: int
    inventory_item_id: int
    marketplace: str
    action: str
    status: str
    queue_position: int
    retry_count: int
    max_retries: int
    retry_after: Optional[datetime] = None
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    processor_id: Optional[str] = None
    processor_heartbeat: Optional[datetime] = None
    payload: Optional[Dict[str, Any]] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    dead_lettered_at: Optional[datetime] = None


class StepResultRead(BaseModel):
    claimed: bool
    job_id: Optional[int] = None
    outcome: Optional[str] = None
    error_type: Optional[str] = None
    error: Optional[str] = None


class DrainRequest(BaseModel):
    """Overrides for one drain session; anything left out comes from settings."""
    marketplace: Optional[Marketplace] = None
    concurrency: Optional[int] = Field(default=None, ge=1, le=20)
    batch_size: Optional[int] = Field(default=None, ge=1, le=100)
    item_delay_ms: Optional[int] = Field(default=None, ge=0)
    max_iterations: Optional[int] = Field(default=None, ge=1, le=1000)
    max_consecutive_errors: Optional[int] = Field(default=None, ge=1)
    turbo: bool = False


class AutoDrainToggle(BaseModel):
    enabled: bool


# ---------------------------------------------------------------------------
# Dead letters
# ---------------------------------------------------------------------------

class DeadLetterRead(BaseSchema):
    id: int
    original_job_id: int
    inventory_item_id: int
    marketplace: str
    action: str
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    retry_count: int
    failure_context: Optional[Dict[str, Any]] = None
    item_snapshot: Optional[Dict[str, Any]] = None
    archived_at: datetime
    resolved_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None


class DismissRequest(BaseModel):
    notes: Optional[str] = None


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------

class AggregateRead(TimestampedSchema):
    id: int
    store_key: str
    marketplace: str
    sku: str
    total_quantity: int
    location_quantities: Dict[str, int] = {}
    marketplace_quantity: Optional[int] = None
    needs_sync: bool
    last_synced_at: Optional[datetime] = None


class StoreScope(BaseModel):
    store_key: str
    marketplace: Marketplace

    @field_validator("store_key")
    @classmethod
    def store_key_not_blank(cls, v):
        if not v or not v.strip():
            raise ValueError("store_key is required")
        return v.strip()


class RecalculateRequest(StoreScope):
    sku: Optional[str] = None
    batch_size: Optional[int] = Field(default=None, ge=1, le=1000)


class WaterfallRequest(BaseModel):
    store_key: str
    sku: str
    quantity: int = Field(gt=0)
    marketplace: Optional[Marketplace] = None
    dry_run: bool = True


# ---------------------------------------------------------------------------
# Reconciliation & duplicates
# ---------------------------------------------------------------------------

class ReconcileRequest(StoreScope):
    item_ids: Optional[List[int]] = None
    dry_run: bool = False
    batch_size: Optional[int] = Field(default=None, ge=1, le=500)
    truth_mode: Optional[TruthMode] = None      # None falls back to RECONCILE_TRUTH_MODE
    drift_only: bool = False


class DuplicateResolveRequest(StoreScope):
    natural_key: Optional[str] = None
    dry_run: bool = False


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

class SyncRuleFields(BaseModel):
    category_match: List[str] = []
    brand_match: List[str] = []
    min_price: Optional[float] = Field(default=None, ge=0)
    max_price: Optional[float] = Field(default=None, ge=0)
    graded_only: bool = False
    priority: int = 0
    is_active: bool = True
    auto_queue: bool = False


class SyncRuleCreate(SyncRuleFields):
    store_key: str
    marketplace: Marketplace
    name: str
    rule_type: RuleType = RuleType.INCLUDE

    @model_validator(mode="after")
    def check_price_range(self):
        if self.min_price is not None and self.max_price is not None and self.min_price > self.max_price:
            raise ValueError("min_price cannot be greater than max_price")
        return self


class SyncRuleUpdate(BaseModel):
    name: Optional[str] = None
    rule_type: Optional[RuleType] = None
    category_match: Optional[List[str]] = None
    brand_match: Optional[List[str]] = None
    min_price: Optional[float] = Field(default=None, ge=0)
    max_price: Optional[float] = Field(default=None, ge=0)
    graded_only: Optional[bool] = None
    priority: Optional[int] = None
    is_active: Optional[bool] = None
    auto_queue: Optional[bool] = None


class SyncRuleRead(TimestampedSchema):
    id: int
    store_key: str
    marketplace: str
    name: str
    rule_type: str
    category_match: List[str] = []
    brand_match: List[str] = []
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    graded_only: bool
    priority: int
    is_active: bool
    auto_queue: bool
