"""
Schema exports for the application.
"""

# Base schemas
from .base import BaseSchema, TimestampedSchema

# Sync engine schemas
from .sync import (
    AggregateRead,
    AutoDrainToggle,
    DeadLetterRead,
    DismissRequest,
    DrainRequest,
    DuplicateResolveRequest,
    EnqueueRequest,
    ReconcileRequest,
    RecalculateRequest,
    StepResultRead,
    StoreScope,
    SyncJobRead,
    SyncRuleCreate,
    SyncRuleRead,
    SyncRuleUpdate,
    WaterfallRequest,
)
