"""
Durable sync queue.

Jobs move ``queued -> processing -> done``, or ``processing -> error`` from
where they either return to ``queued`` once their backoff elapses or stay in
``error`` with a dead letter archived. Every transition out of ``queued`` or
``processing`` is a compare-and-set UPDATE, so two workers can never both own a
job and a late result for a cancelled or reclaimed job is discarded.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

import httpx
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, get_settings
from app.core.enums import ListingSyncStatus, Marketplace, SyncAction, SyncErrorType, SyncJobStatus
from app.core.exceptions import (
    InvalidJobStateError,
    InventoryItemNotFoundError,
    JobNotFoundError,
    MarketplaceNotConfiguredError,
    PlatformServiceError,
    QueueConflictError,
    RateLimitError,
    ValidationError,
)
from app.core.utils import as_utc, utcnow
from app.models.dead_letter import DeadLetterEntry
from app.models.inventory_item import InventoryItem, MarketplaceListing
from app.models.sync_queue import SyncQueueJob
from app.services.sync_queue.backoff import BackoffPolicy

logger = logging.getLogger(__name__)

# Claim looks at a handful of candidates in case another worker wins the first
CLAIM_CANDIDATES = 5


def classify_error(exc: BaseException) -> Tuple[SyncErrorType, str, Optional[float]]:
    """Map an exception raised while executing a job onto the sync error taxonomy."""
    message = str(exc) or exc.__class__.__name__
    if isinstance(exc, PlatformServiceError):
        retry_after = exc.retry_after if isinstance(exc, RateLimitError) else None
        return exc.error_type, message, retry_after
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return SyncErrorType.TIMEOUT, message, None
    if isinstance(exc, httpx.RequestError):
        return SyncErrorType.NETWORK, message, None
    if isinstance(exc, (MarketplaceNotConfiguredError, ValidationError)):
        return SyncErrorType.CLIENT_ERROR, message, None
    return SyncErrorType.UNKNOWN, message, None


class SyncQueueService:
    def __init__(
        self,
        db: AsyncSession,
        settings: Optional[Settings] = None,
        backoff: Optional[BackoffPolicy] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.backoff = backoff or BackoffPolicy.from_settings(self.settings)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_job(self, job_id: int) -> SyncQueueJob:
        job = await self.db.get(SyncQueueJob, job_id, populate_existing=True)
        if job is None:
            raise JobNotFoundError(f"Sync job {job_id} not found")
        return job

    async def get_active_job(self, inventory_item_id: int, marketplace: str) -> Optional[SyncQueueJob]:
        stmt = select(SyncQueueJob).where(
            SyncQueueJob.inventory_item_id == inventory_item_id,
            SyncQueueJob.marketplace == marketplace,
            SyncQueueJob.status.in_(SyncJobStatus.active()),
        )
        result = await self.db.execute(stmt.execution_options(populate_existing=True))
        return result.scalars().first()

    async def _get_listing(
        self, inventory_item_id: int, marketplace: str, create: bool = False
    ) -> Optional[MarketplaceListing]:
        stmt = select(MarketplaceListing).where(
            MarketplaceListing.inventory_item_id == inventory_item_id,
            MarketplaceListing.marketplace == marketplace,
        )
        listing = (await self.db.execute(stmt)).scalars().first()
        if listing is None and create:
            listing = MarketplaceListing(
                inventory_item_id=inventory_item_id,
                marketplace=marketplace,
                sync_status=ListingSyncStatus.PENDING.value,
            )
            self.db.add(listing)
            await self.db.flush()
        return listing

    async def list_jobs(
        self,
        status: Optional[str] = None,
        marketplace: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[SyncQueueJob]:
        stmt = select(SyncQueueJob)
        if status:
            stmt = stmt.where(SyncQueueJob.status == SyncJobStatus(status).value)
        if marketplace:
            stmt = stmt.where(SyncQueueJob.marketplace == Marketplace(marketplace).value)
        stmt = stmt.order_by(
            SyncQueueJob.queue_position.asc(), SyncQueueJob.created_at.asc(), SyncQueueJob.id.asc()
        ).limit(limit).offset(offset)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        inventory_item_id: int,
        marketplace,
        action=SyncAction.PUSH,
        payload: Optional[Dict[str, Any]] = None,
        max_retries: Optional[int] = None,
        commit: bool = True,
    ) -> SyncQueueJob:
        """
        Queue a marketplace mutation for an item.

        A request for an item that already has a queued job for the marketplace
        is folded into that job (latest action and payload win). A request
        while a job is processing raises QueueConflictError.
        """
        marketplace = Marketplace(marketplace).value
        action = SyncAction(action).value

        item = await self.db.get(InventoryItem, inventory_item_id)
        if item is None:
            raise InventoryItemNotFoundError(f"Inventory item {inventory_item_id} not found")
        if item.is_deleted and action == SyncAction.PUSH.value:
            raise ValidationError(f"Inventory item {inventory_item_id} is deleted and cannot be pushed")

        existing = await self.get_active_job(inventory_item_id, marketplace)
        if existing is not None:
            if existing.status == SyncJobStatus.PROCESSING.value:
                raise QueueConflictError(
                    f"Item {inventory_item_id} already has job {existing.id} processing on {marketplace}"
                )
            existing.action = action
            if payload:
                existing.payload = {**(existing.payload or {}), **payload}
            if max_retries is not None:
                existing.max_retries = max_retries
            await self.db.flush()
            if commit:
                await self.db.commit()
            logger.info(f"Coalesced {action} for item {inventory_item_id} into queued job {existing.id}")
            return existing

        position = (await self.db.execute(select(func.max(SyncQueueJob.queue_position)))).scalar() or 0
        job = SyncQueueJob(
            inventory_item_id=inventory_item_id,
            marketplace=marketplace,
            action=action,
            payload=payload or {},
            status=SyncJobStatus.QUEUED.value,
            queue_position=position + 1,
            max_retries=self.settings.SYNC_MAX_RETRIES if max_retries is None else max_retries,
        )
        self.db.add(job)

        listing = await self._get_listing(inventory_item_id, marketplace, create=True)
        listing.sync_status = ListingSyncStatus.QUEUED.value

        try:
            await self.db.flush()
            if commit:
                await self.db.commit()
        except IntegrityError:
            # Another caller queued the same item between our check and insert
            await self.db.rollback()
            raise QueueConflictError(f"Item {inventory_item_id} already has an active job on {marketplace}")

        logger.info(f"Queued {action} job {job.id} for item {inventory_item_id} on {marketplace}")
        return job

    # ------------------------------------------------------------------
    # Claim
    # ------------------------------------------------------------------

    async def reclaim_stale(self) -> int:
        """
        Return processing jobs whose worker stopped heartbeating to the queue.

        Each reclaim counts as a failed attempt with error_type ``timeout``, so
        a job that keeps killing its worker eventually dead-letters.
        """
        stmt = select(SyncQueueJob).where(self._stale_clause(self._heartbeat_cutoff()))
        stale = list((await self.db.execute(stmt.execution_options(populate_existing=True))).scalars().all())

        reclaimed = 0
        for job in stale:
            outcome = await self._record_failure(
                job.id,
                processor_id=job.processor_id,
                error_type=SyncErrorType.TIMEOUT,
                message=f"Heartbeat from {job.processor_id} lost; reclaimed",
                context={"reclaimed": True, "last_heartbeat": str(job.processor_heartbeat)},
            )
            if outcome != "discarded":
                reclaimed += 1
                logger.warning(f"Reclaimed stale job {job.id} from {job.processor_id} ({outcome})")
        return reclaimed

    def _heartbeat_cutoff(self):
        return utcnow() - timedelta(seconds=self.settings.SYNC_HEARTBEAT_TIMEOUT_SECONDS)

    def _stale_clause(self, cutoff):
        """Processing jobs whose worker has not heartbeated since ``cutoff``."""
        return and_(
            SyncQueueJob.status == SyncJobStatus.PROCESSING.value,
            or_(
                SyncQueueJob.processor_heartbeat < cutoff,
                and_(SyncQueueJob.processor_heartbeat.is_(None), SyncQueueJob.started_at < cutoff),
            ),
        )

    def _eligible_clause(self, now):
        return and_(
            SyncQueueJob.status == SyncJobStatus.QUEUED.value,
            or_(SyncQueueJob.retry_after.is_(None), SyncQueueJob.retry_after <= now),
        )

    async def claim_next(self, processor_id: str, marketplace: Optional[str] = None) -> Optional[SyncQueueJob]:
        """Reclaim stale work, then atomically take the oldest eligible job."""
        await self.reclaim_stale()

        now = utcnow()
        stmt = select(SyncQueueJob.id).where(self._eligible_clause(now))
        if marketplace:
            stmt = stmt.where(SyncQueueJob.marketplace == Marketplace(marketplace).value)
        stmt = (
            stmt.order_by(SyncQueueJob.queue_position.asc(), SyncQueueJob.created_at.asc(), SyncQueueJob.id.asc())
            .limit(CLAIM_CANDIDATES)
            .with_for_update(skip_locked=True)
        )
        candidates = list((await self.db.execute(stmt)).scalars().all())

        for job_id in candidates:
            result = await self.db.execute(
                update(SyncQueueJob)
                .where(SyncQueueJob.id == job_id, SyncQueueJob.status == SyncJobStatus.QUEUED.value)
                .values(
                    status=SyncJobStatus.PROCESSING.value,
                    processor_id=processor_id,
                    processor_heartbeat=now,
                    started_at=now,
                    completed_at=None,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                await self.db.commit()
                job = await self.get_job(job_id)
                logger.info(f"{processor_id} claimed job {job.id} ({job.action} item {job.inventory_item_id} "
                            f"on {job.marketplace}, attempt {job.retry_count + 1}/{job.max_retries})")
                return job

        await self.db.commit()
        return None

    async def heartbeat(self, job_id: int, processor_id: str) -> bool:
        result = await self.db.execute(
            update(SyncQueueJob)
            .where(
                SyncQueueJob.id == job_id,
                SyncQueueJob.status == SyncJobStatus.PROCESSING.value,
                SyncQueueJob.processor_id == processor_id,
            )
            .values(processor_heartbeat=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    async def complete(self, job_id: int, processor_id: str, commit: bool = True) -> bool:
        """
        Mark a job done if this processor still owns it.

        Returns False when the job was cancelled or reclaimed meanwhile; the
        caller must then discard the result.
        """
        result = await self.db.execute(
            update(SyncQueueJob)
            .where(
                SyncQueueJob.id == job_id,
                SyncQueueJob.status == SyncJobStatus.PROCESSING.value,
                SyncQueueJob.processor_id == processor_id,
            )
            .values(
                status=SyncJobStatus.DONE.value,
                completed_at=utcnow(),
                processor_heartbeat=None,
                error_type=None,
                error_message=None,
                retry_after=None,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(f"Job {job_id} no longer owned by {processor_id}; discarding result")
            await self.db.rollback()
            return False
        if commit:
            await self.db.commit()
        return True

    async def fail(self, job_id: int, processor_id: str, exc: BaseException) -> str:
        """
        Record a failed attempt.

        Returns ``retry`` (re-queued with backoff), ``dead_lettered`` or
        ``discarded`` (the job was no longer ours).
        """
        error_type, message, retry_after = classify_error(exc)
        return await self._record_failure(
            job_id,
            processor_id=processor_id,
            error_type=error_type,
            message=message,
            retry_after=retry_after,
            context={"exception": exc.__class__.__name__,
                     "status_code": getattr(exc, "status_code", None)},
        )

    async def _record_failure(
        self,
        job_id: int,
        *,
        processor_id: Optional[str],
        error_type: SyncErrorType,
        message: str,
        retry_after: Optional[float] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> str:
        now = utcnow()
        owner_clause = (
            SyncQueueJob.processor_id == processor_id if processor_id is not None
            else SyncQueueJob.processor_id.is_(None)
        )
        result = await self.db.execute(
            update(SyncQueueJob)
            .where(
                SyncQueueJob.id == job_id,
                SyncQueueJob.status == SyncJobStatus.PROCESSING.value,
                owner_clause,
            )
            .values(
                status=SyncJobStatus.ERROR.value,
                retry_count=SyncQueueJob.retry_count + 1,
                error_type=error_type.value,
                error_message=message[:2000],
                processor_heartbeat=None,
                completed_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            logger.warning(f"Job {job_id} no longer owned by {processor_id}; discarding failure")
            return "discarded"

        job = await self.get_job(job_id)
        listing = await self._get_listing(job.inventory_item_id, job.marketplace)
        if listing is not None:
            listing.last_sync_error = message[:2000]

        if error_type.is_transient and not job.retries_exhausted:
            job.status = SyncJobStatus.QUEUED.value
            job.processor_id = None
            job.retry_after = self.backoff.next_retry_at(job.retry_count, error_type, retry_after, now=now)
            await self.db.commit()
            logger.warning(f"Job {job.id} failed ({error_type.value}), retry {job.retry_count}/{job.max_retries} "
                           f"after {job.retry_after.isoformat()}: {message}")
            return "retry"

        await self._dead_letter(job, context or {}, now)
        if listing is not None:
            listing.sync_status = ListingSyncStatus.ERROR.value
        await self.db.commit()
        logger.error(f"Job {job.id} dead-lettered after {job.retry_count} attempt(s) ({error_type.value}): {message}")
        return "dead_lettered"

    async def _dead_letter(self, job: SyncQueueJob, context: Dict[str, Any], now) -> DeadLetterEntry:
        item = await self.db.get(InventoryItem, job.inventory_item_id)
        entry = DeadLetterEntry(
            original_job_id=job.id,
            inventory_item_id=job.inventory_item_id,
            marketplace=job.marketplace,
            action=job.action,
            error_type=job.error_type,
            error_message=job.error_message,
            retry_count=job.retry_count,
            failure_context={
                **context,
                "payload": job.payload,
                "processor_id": job.processor_id,
                "started_at": job.started_at.isoformat() if job.started_at else None,
            },
            item_snapshot=item.snapshot() if item is not None else None,
            archived_at=now,
        )
        self.db.add(entry)
        job.dead_lettered_at = now
        await self.db.flush()
        return entry

    async def cancel(self, job_id: int) -> SyncQueueJob:
        """
        Cancel a queued or processing job.

        Cancelling a processing job does not stop the remote call already in
        flight; its result is discarded when it reports back.
        """
        job = await self.get_job(job_id)
        if not job.is_active:
            raise InvalidJobStateError(f"Job {job_id} is {job.status} and cannot be cancelled")

        result = await self.db.execute(
            update(SyncQueueJob)
            .where(SyncQueueJob.id == job_id, SyncQueueJob.status.in_(SyncJobStatus.active()))
            .values(status=SyncJobStatus.CANCELLED.value, completed_at=utcnow(), processor_heartbeat=None)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            raise InvalidJobStateError(f"Job {job_id} finished before it could be cancelled")

        listing = await self._get_listing(job.inventory_item_id, job.marketplace)
        if listing is not None and listing.sync_status == ListingSyncStatus.QUEUED.value:
            listing.sync_status = ListingSyncStatus.PENDING.value
        await self.db.commit()
        logger.info(f"Cancelled job {job_id}")
        return await self.get_job(job_id)

    # ------------------------------------------------------------------
    # Dead letters
    # ------------------------------------------------------------------

    async def get_dead_letter(self, entry_id: int) -> DeadLetterEntry:
        entry = await self.db.get(DeadLetterEntry, entry_id)
        if entry is None:
            raise JobNotFoundError(f"Dead letter entry {entry_id} not found")
        return entry

    async def list_dead_letters(
        self,
        unresolved_only: bool = True,
        marketplace: Optional[str] = None,
        error_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[DeadLetterEntry]:
        stmt = select(DeadLetterEntry)
        if unresolved_only:
            stmt = stmt.where(DeadLetterEntry.resolved_at.is_(None))
        if marketplace:
            stmt = stmt.where(DeadLetterEntry.marketplace == Marketplace(marketplace).value)
        if error_type:
            stmt = stmt.where(DeadLetterEntry.error_type == SyncErrorType(error_type).value)
        stmt = stmt.order_by(DeadLetterEntry.archived_at.desc(), DeadLetterEntry.id.desc()).limit(limit)
        return list((await self.db.execute(stmt)).scalars().all())

    async def retry_dead_letter(self, entry_id: int) -> SyncQueueJob:
        """Re-queue the archived job with its retry count reset and resolve the entry."""
        entry = await self.get_dead_letter(entry_id)
        if entry.is_resolved:
            raise InvalidJobStateError(f"Dead letter entry {entry_id} is already resolved")

        payload = (entry.failure_context or {}).get("payload") or {}
        job = await self.enqueue(
            entry.inventory_item_id, entry.marketplace, entry.action, payload=payload, commit=False
        )
        entry.resolved_at = utcnow()
        entry.resolution_notes = f"Retried as job {job.id}"
        await self.db.commit()
        logger.info(f"Dead letter {entry_id} retried as job {job.id}")
        return job

    async def dismiss_dead_letter(self, entry_id: int, notes: Optional[str] = None) -> DeadLetterEntry:
        entry = await self.get_dead_letter(entry_id)
        if entry.is_resolved:
            raise InvalidJobStateError(f"Dead letter entry {entry_id} is already resolved")
        entry.resolved_at = utcnow()
        entry.resolution_notes = notes or "Dismissed"
        await self.db.commit()
        return entry

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def has_eligible_work(self, marketplace: Optional[str] = None) -> bool:
        now = utcnow()
        clause = or_(self._eligible_clause(now), self._stale_clause(self._heartbeat_cutoff()))
        stmt = select(SyncQueueJob.id).where(clause)
        if marketplace:
            stmt = stmt.where(SyncQueueJob.marketplace == Marketplace(marketplace).value)
        return (await self.db.execute(stmt.limit(1))).first() is not None

    async def has_active_processing(self) -> bool:
        """True while some worker still heartbeats a processing job."""
        cutoff = self._heartbeat_cutoff()
        stmt = select(SyncQueueJob.id).where(
            SyncQueueJob.status == SyncJobStatus.PROCESSING.value,
            or_(
                SyncQueueJob.processor_heartbeat >= cutoff,
                and_(SyncQueueJob.processor_heartbeat.is_(None), SyncQueueJob.started_at >= cutoff),
            ),
        )
        return (await self.db.execute(stmt.limit(1))).first() is not None

    async def queue_stats(self, marketplace: Optional[str] = None) -> Dict[str, Any]:
        now = utcnow()
        counts_stmt = select(SyncQueueJob.status, func.count(SyncQueueJob.id)).group_by(SyncQueueJob.status)
        if marketplace:
            counts_stmt = counts_stmt.where(SyncQueueJob.marketplace == Marketplace(marketplace).value)
        counts = {status.value: 0 for status in SyncJobStatus}
        for status, count in (await self.db.execute(counts_stmt)).all():
            counts[status] = count

        def scoped(stmt):
            if marketplace:
                return stmt.where(SyncQueueJob.marketplace == Marketplace(marketplace).value)
            return stmt

        eligible = (await self.db.execute(
            scoped(select(func.count(SyncQueueJob.id)).where(self._eligible_clause(now)))
        )).scalar() or 0
        waiting = (await self.db.execute(
            scoped(select(func.count(SyncQueueJob.id)).where(
                SyncQueueJob.status == SyncJobStatus.QUEUED.value, SyncQueueJob.retry_after > now
            ))
        )).scalar() or 0
        oldest = (await self.db.execute(
            scoped(select(func.min(SyncQueueJob.created_at)).where(
                SyncQueueJob.status == SyncJobStatus.QUEUED.value
            ))
        )).scalar()

        dl_stmt = select(func.count(DeadLetterEntry.id)).where(DeadLetterEntry.resolved_at.is_(None))
        if marketplace:
            dl_stmt = dl_stmt.where(DeadLetterEntry.marketplace == Marketplace(marketplace).value)
        dead_letters = (await self.db.execute(dl_stmt)).scalar() or 0

        return {
            "counts": counts,
            "eligible": eligible,
            "waiting_for_retry": waiting,
            "dead_letters_unresolved": dead_letters,
            "oldest_queued_age_seconds": (now - as_utc(oldest)).total_seconds() if oldest else None,
        }

    async def failure_analysis(self, marketplace: Optional[str] = None) -> Dict[str, Any]:
        """Unresolved dead letters grouped by error type and marketplace."""
        stmt = (
            select(DeadLetterEntry.error_type, DeadLetterEntry.marketplace, func.count(DeadLetterEntry.id))
            .where(DeadLetterEntry.resolved_at.is_(None))
            .group_by(DeadLetterEntry.error_type, DeadLetterEntry.marketplace)
        )
        if marketplace:
            stmt = stmt.where(DeadLetterEntry.marketplace == Marketplace(marketplace).value)

        by_error_type: Dict[str, int] = {}
        by_marketplace: Dict[str, int] = {}
        total = 0
        for error_type, mp, count in (await self.db.execute(stmt)).all():
            key = error_type or SyncErrorType.UNKNOWN.value
            by_error_type[key] = by_error_type.get(key, 0) + count
            by_marketplace[mp] = by_marketplace.get(mp, 0) + count
            total += count

        transient = sum(c for t, c in by_error_type.items() if SyncErrorType(t).is_transient)
        return {
            "total_unresolved": total,
            "by_error_type": by_error_type,
            "by_marketplace": by_marketplace,
            "transient": transient,
            "permanent": total - transient,
        }

    async def recent_errors(self, limit: int = 20) -> List[SyncQueueJob]:
        stmt = (
            select(SyncQueueJob)
            .where(SyncQueueJob.error_message.isnot(None))
            .order_by(SyncQueueJob.completed_at.desc(), SyncQueueJob.id.desc())
            .limit(limit)
        )
        return list((await self.db.execute(stmt)).scalars().all())
