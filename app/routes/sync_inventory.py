# app/routes/sync_inventory.py
"""Aggregates, reconciliation and duplicate resolution endpoints."""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, get_settings
from app.core.enums import Marketplace
from app.core.exceptions import BaseServiceError
from app.dependencies import get_db, get_registry
from app.integrations.setup import MarketplaceRegistry
from app.routes.sync_queue import http_error
from app.schemas.sync import (
    AggregateRead,
    DuplicateResolveRequest,
    RecalculateRequest,
    ReconcileRequest,
    StoreScope,
    WaterfallRequest,
)
from app.services.aggregation_service import AggregationService
from app.services.duplicate_service import DuplicateService
from app.services.reconciliation_service import ReconciliationService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/sync", tags=["Inventory Sync"])


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------

@router.get("/aggregates", response_model=List[AggregateRead])
async def list_aggregates(
    store_key: Optional[str] = None,
    marketplace: Optional[Marketplace] = None,
    needs_sync: Optional[bool] = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    return await AggregationService(db, settings=settings).list_aggregates(
        store_key, marketplace, needs_sync, limit, offset
    )


@router.post("/aggregates/recalculate")
async def recalculate_aggregates(
    request: RecalculateRequest,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Recalculate one SKU when ``sku`` is given, otherwise every SKU of the store."""
    service = AggregationService(db, settings=settings)
    try:
        if request.sku:
            aggregate = await service.recalculate_sku(request.store_key, request.marketplace, request.sku)
            await db.commit()
            return AggregateRead.from_orm_model(aggregate)
        return await service.recalculate_all(request.store_key, request.marketplace, request.batch_size)
    except BaseServiceError as e:
        raise http_error(e)


@router.post("/aggregates/queue-out-of-sync")
async def queue_out_of_sync(
    request: StoreScope,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    return await AggregationService(db, settings=settings).queue_out_of_sync(request.store_key, request.marketplace)


@router.post("/aggregates/waterfall")
async def waterfall_decrement(
    request: WaterfallRequest,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    try:
        return await AggregationService(db, settings=settings).decrement_waterfall(
            request.store_key, request.sku, request.quantity,
            marketplace=request.marketplace, dry_run=request.dry_run,
        )
    except BaseServiceError as e:
        raise http_error(e)


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

@router.post("/reconcile")
async def reconcile(
    request: ReconcileRequest,
    db: AsyncSession = Depends(get_db),
    registry: MarketplaceRegistry = Depends(get_registry),
    settings: Settings = Depends(get_settings),
):
    try:
        report = await ReconciliationService(db, registry, settings=settings).reconcile(
            request.store_key,
            request.marketplace,
            item_ids=request.item_ids,
            dry_run=request.dry_run,
            batch_size=request.batch_size,
            truth_mode=request.truth_mode,
            drift_only=request.drift_only,
        )
    except BaseServiceError as e:
        raise http_error(e)
    return report.to_dict()


# ---------------------------------------------------------------------------
# Duplicates
# ---------------------------------------------------------------------------

@router.get("/duplicates")
async def scan_duplicates(
    store_key: str,
    marketplace: Marketplace,
    db: AsyncSession = Depends(get_db),
    registry: MarketplaceRegistry = Depends(get_registry),
    settings: Settings = Depends(get_settings),
):
    try:
        groups = await DuplicateService(db, registry, settings=settings).find_duplicate_groups(store_key, marketplace)
    except BaseServiceError as e:
        raise http_error(e)
    return {"groups": [g.to_dict() for g in groups], "count": len(groups)}


@router.post("/duplicates/resolve")
async def resolve_duplicates(
    request: DuplicateResolveRequest,
    db: AsyncSession = Depends(get_db),
    registry: MarketplaceRegistry = Depends(get_registry),
    settings: Settings = Depends(get_settings),
):
    """Resolve one group when ``natural_key`` is given, otherwise every group."""
    service = DuplicateService(db, registry, settings=settings)
    try:
        if request.natural_key:
            return await service.resolve_group(
                request.store_key, request.marketplace, request.natural_key, dry_run=request.dry_run
            )
        return await service.resolve_all(request.store_key, request.marketplace, dry_run=request.dry_run)
    except BaseServiceError as e:
        raise http_error(e)
