# app/routes/sync_queue.py
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, get_settings
from app.core.enums import Marketplace, SyncErrorType, SyncJobStatus
from app.core.exceptions import (
    BaseServiceError,
    InvalidJobStateError,
    InventoryItemNotFoundError,
    JobNotFoundError,
    MarketplaceNotConfiguredError,
    QueueConflictError,
    SyncRuleNotFoundError,
    ValidationError,
)
from app.dependencies import get_db, get_registry, get_session_factory, get_supervisor
from app.integrations.setup import MarketplaceRegistry
from app.schemas.sync import (
    AutoDrainToggle,
    DeadLetterRead,
    DismissRequest,
    DrainRequest,
    EnqueueRequest,
    StepResultRead,
    SyncJobRead,
)
from app.services.sync_queue.drain_controller import DrainConfig, DrainController
from app.services.sync_queue.lease import ProcessorLease
from app.services.sync_queue.queue import SyncQueueService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/sync", tags=["Sync Queue"])


def http_error(e: BaseServiceError) -> HTTPException:
    """Translate a service exception into the matching HTTP error."""
    if isinstance(e, (JobNotFoundError, InventoryItemNotFoundError, SyncRuleNotFoundError)):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (QueueConflictError, InvalidJobStateError)):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, (ValidationError, MarketplaceNotConfiguredError)):
        return HTTPException(status_code=400, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

@router.get("/queue/stats")
async def queue_stats(
    marketplace: Optional[Marketplace] = None,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    return await SyncQueueService(db, settings=settings).queue_stats(marketplace)


@router.get("/queue/jobs", response_model=List[SyncJobRead])
async def list_jobs(
    status: Optional[SyncJobStatus] = None,
    marketplace: Optional[Marketplace] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    return await SyncQueueService(db, settings=settings).list_jobs(status, marketplace, limit, offset)


@router.get("/queue/errors", response_model=List[SyncJobRead])
async def recent_errors(
    limit: int = Query(20, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    return await SyncQueueService(db, settings=settings).recent_errors(limit)


@router.post("/queue/enqueue", response_model=SyncJobRead)
async def enqueue(
    request: EnqueueRequest,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    try:
        return await SyncQueueService(db, settings=settings).enqueue(
            request.inventory_item_id,
            request.marketplace,
            request.action,
            payload=request.payload,
            max_retries=request.max_retries,
        )
    except BaseServiceError as e:
        raise http_error(e)


@router.post("/queue/jobs/{job_id}/cancel", response_model=SyncJobRead)
async def cancel_job(
    job_id: int,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    try:
        return await SyncQueueService(db, settings=settings).cancel(job_id)
    except BaseServiceError as e:
        raise http_error(e)


@router.post("/queue/process-next", response_model=StepResultRead)
async def process_next(
    marketplace: Optional[Marketplace] = None,
    session_factory=Depends(get_session_factory),
    registry: MarketplaceRegistry = Depends(get_registry),
    settings: Settings = Depends(get_settings),
):
    controller = DrainController(session_factory, registry, settings=settings)
    step = await controller.process_next(marketplace.value if marketplace else None)
    return StepResultRead(**step.__dict__)


@router.post("/queue/drain")
async def drain_queue(
    request: Optional[DrainRequest] = None,
    session_factory=Depends(get_session_factory),
    registry: MarketplaceRegistry = Depends(get_registry),
    settings: Settings = Depends(get_settings),
):
    """Run one drain session. Returns stop_reason "locked" when another session is already draining."""
    request = request or DrainRequest()
    config = DrainConfig.from_settings(
        settings,
        marketplace=request.marketplace.value if request.marketplace else None,
        concurrency=request.concurrency,
        batch_size=request.batch_size,
        item_delay=request.item_delay_ms / 1000.0 if request.item_delay_ms is not None else None,
        max_iterations=request.max_iterations,
        max_consecutive_errors=request.max_consecutive_errors,
    )
    if request.turbo:
        config = config.turbo(settings.DRAIN_TURBO_MULTIPLIER)

    result = await DrainController(session_factory, registry, settings=settings).drain(config)
    return result.to_dict()


# ---------------------------------------------------------------------------
# Auto-drain
# ---------------------------------------------------------------------------

@router.get("/auto-drain")
async def auto_drain_status(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    supervisor=Depends(get_supervisor),
):
    lease = await ProcessorLease(db, ttl_seconds=settings.SYNC_LOCK_TTL_SECONDS).status()
    return {
        "lease": lease,
        "supervisor": supervisor.status() if supervisor else {"running": False},
    }


@router.post("/auto-drain")
async def toggle_auto_drain(
    request: AutoDrainToggle,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    lease = ProcessorLease(db, ttl_seconds=settings.SYNC_LOCK_TTL_SECONDS)
    await lease.set_auto_drain(request.enabled)
    return await lease.status()


# ---------------------------------------------------------------------------
# Dead letters
# ---------------------------------------------------------------------------

@router.get("/dead-letters", response_model=List[DeadLetterRead])
async def list_dead_letters(
    unresolved_only: bool = True,
    marketplace: Optional[Marketplace] = None,
    error_type: Optional[SyncErrorType] = None,
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    return await SyncQueueService(db, settings=settings).list_dead_letters(
        unresolved_only, marketplace, error_type, limit
    )


@router.get("/dead-letters/analysis")
async def failure_analysis(
    marketplace: Optional[Marketplace] = None,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    return await SyncQueueService(db, settings=settings).failure_analysis(marketplace)


@router.post("/dead-letters/{entry_id}/retry", response_model=SyncJobRead)
async def retry_dead_letter(
    entry_id: int,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    try:
        return await SyncQueueService(db, settings=settings).retry_dead_letter(entry_id)
    except BaseServiceError as e:
        raise http_error(e)


@router.post("/dead-letters/{entry_id}/dismiss", response_model=DeadLetterRead)
async def dismiss_dead_letter(
    entry_id: int,
    request: Optional[DismissRequest] = None,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    try:
        return await SyncQueueService(db, settings=settings).dismiss_dead_letter(
            entry_id, request.notes if request else None
        )
    except BaseServiceError as e:
        raise http_error(e)
