"""
Executes claimed sync jobs against the marketplace clients.

Each job touches the database in three short transactions (prepare, then
complete or fail) with the remote call in between, so no row lock is held
while we wait on the marketplace. A heartbeat task keeps the claim alive
during the remote call.
"""

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy import select

from app.core.config import Settings, get_settings
from app.core.enums import ListingSyncStatus, SyncAction
from app.core.exceptions import InventoryItemNotFoundError
from app.core.utils import utcnow
from app.integrations.base import ListingRef, PushResult
from app.integrations.setup import MarketplaceRegistry
from app.models.inventory_item import InventoryItem, MarketplaceListing
from app.services.aggregation_service import AggregationService
from app.services.sync_logger import SyncLogger
from app.services.sync_queue.queue import SyncQueueService, classify_error

logger = logging.getLogger(__name__)


@dataclass
class JobOutcome:
    job_id: int
    outcome: str                     # done / retry / dead_lettered / discarded / error
    error_type: Optional[str] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == "done"

    @property
    def failed(self) -> bool:
        return self.outcome in ("retry", "dead_lettered", "error")


@dataclass
class _PreparedJob:
    job_id: int
    action: str
    marketplace: str
    store_key: str
    sku: Optional[str]
    inventory_item_id: int
    ref: ListingRef
    quantity: Optional[int]
    item: Dict[str, Any]


class SyncQueueProcessor:
    def __init__(self, session_factory, registry: MarketplaceRegistry, settings: Optional[Settings] = None):
        self.session_factory = session_factory
        self.registry = registry
        self.settings = settings or get_settings()

    async def process_job(self, job_id: int, processor_id: str) -> JobOutcome:
        """Run one claimed job to a terminal outcome. Never raises for job-level failures."""
        try:
            prepared = await self._prepare(job_id)
        except Exception as e:
            logger.error(f"Failed to prepare job {job_id}: {str(e)}")
            return await self._fail(job_id, processor_id, e)

        heartbeat = asyncio.create_task(self.heartbeat_loop(job_id, processor_id))
        try:
            result = await self._execute_remote(prepared)
        except Exception as e:
            logger.warning(f"Job {job_id} {prepared.action} on {prepared.marketplace} failed: {str(e)}")
            return await self._fail(job_id, processor_id, e)
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat

        try:
            return await self._complete(prepared, processor_id, result)
        except Exception as e:
            logger.error(f"Failed to record result of job {job_id}: {str(e)}")
            return await self._fail(job_id, processor_id, e)

    async def _prepare(self, job_id: int) -> _PreparedJob:
        async with self.session_factory() as session:
            queue = SyncQueueService(session, settings=self.settings)
            job = await queue.get_job(job_id)
            item = await session.get(InventoryItem, job.inventory_item_id)
            if item is None:
                raise InventoryItemNotFoundError(f"Inventory item {job.inventory_item_id} not found")
            listing = item.listing_for(job.marketplace)

            quantity = None
            if job.action == SyncAction.PUSH.value:
                if item.sku:
                    aggregate = await AggregationService(session, settings=self.settings).recalculate_sku(
                        item.store_key, job.marketplace, item.sku
                    )
                    quantity = aggregate.total_quantity
                else:
                    quantity = 0 if item.is_sold else item.quantity
                await session.commit()
            elif job.action == SyncAction.ZERO.value:
                quantity = 0

            if listing is not None:
                ref = ListingRef.from_listing(listing, sku=item.sku)
            else:
                ref = ListingRef(sku=item.sku)

            return _PreparedJob(
                job_id=job.id,
                action=job.action,
                marketplace=job.marketplace,
                store_key=item.store_key,
                sku=item.sku,
                inventory_item_id=item.id,
                ref=ref,
                quantity=quantity,
                item=item.snapshot(),
            )

    async def _execute_remote(self, prepared: _PreparedJob) -> Optional[PushResult]:
        client = self.registry.get(prepared.marketplace)
        if prepared.action == SyncAction.PUSH.value:
            return await client.push_inventory_update(prepared.ref, prepared.quantity, item=prepared.item)
        if prepared.action == SyncAction.ZERO.value:
            await client.zero_inventory(prepared.ref)
            return None
        await client.remove_listing(prepared.ref)
        return None

    async def heartbeat_loop(self, job_id: int, processor_id: str) -> None:
        interval = self.settings.SYNC_HEARTBEAT_INTERVAL_SECONDS
        while True:
            await asyncio.sleep(interval)
            try:
                async with self.session_factory() as session:
                    alive = await SyncQueueService(session, settings=self.settings).heartbeat(job_id, processor_id)
            except Exception as e:
                logger.error(f"Heartbeat for job {job_id} failed: {str(e)}")
                continue
            if not alive:
                logger.warning(f"Job {job_id} is no longer owned by {processor_id}; stopping heartbeat")
                return

    async def _complete(self, prepared: _PreparedJob, processor_id: str, result: Optional[PushResult]) -> JobOutcome:
        async with self.session_factory() as session:
            queue = SyncQueueService(session, settings=self.settings)
            if not await queue.complete(prepared.job_id, processor_id, commit=False):
                return JobOutcome(job_id=prepared.job_id, outcome="discarded")

            listing = (await session.execute(
                select(MarketplaceListing).where(
                    MarketplaceListing.inventory_item_id == prepared.inventory_item_id,
                    MarketplaceListing.marketplace == prepared.marketplace,
                )
            )).scalars().first()
            if listing is None:
                listing = MarketplaceListing(
                    inventory_item_id=prepared.inventory_item_id, marketplace=prepared.marketplace
                )
                session.add(listing)

            now = utcnow()
            listing.last_sync_error = None
            if prepared.action == SyncAction.REMOVE.value:
                listing.clear_refs()
                listing.sync_status = ListingSyncStatus.REMOVED.value
                listing.removed_at = now
            else:
                if result is not None:
                    listing.listing_ref = result.remote_id or listing.listing_ref
                    listing.product_ref = result.product_id or listing.product_ref
                    listing.variant_ref = result.variant_id or listing.variant_ref
                    listing.inventory_item_ref = result.inventory_item_id or listing.inventory_item_ref
                listing.sync_status = ListingSyncStatus.SYNCED.value
                listing.last_synced_at = now

            if prepared.sku and prepared.quantity is not None:
                await AggregationService(session, settings=self.settings).record_pushed(
                    prepared.store_key, prepared.marketplace, prepared.sku, prepared.quantity
                )

            await SyncLogger(session).log_push(
                store_key=prepared.store_key,
                marketplace=prepared.marketplace,
                sku=prepared.sku,
                inventory_item_id=prepared.inventory_item_id,
                action=prepared.action,
                quantity=prepared.quantity,
                remote_id=result.remote_id if result is not None else None,
            )
            await session.commit()

        logger.info(f"Job {prepared.job_id} done: {prepared.action} item {prepared.inventory_item_id} "
                    f"on {prepared.marketplace} (qty={prepared.quantity})")
        return JobOutcome(job_id=prepared.job_id, outcome="done")

    async def _fail(self, job_id: int, processor_id: str, exc: BaseException) -> JobOutcome:
        """
        Record a failed attempt. If even that cannot be written the job stays
        processing without a heartbeat, and reclaim picks it up later.
        """
        error_type, message, _ = classify_error(exc)
        try:
            async with self.session_factory() as session:
                outcome = await SyncQueueService(session, settings=self.settings).fail(job_id, processor_id, exc)
        except Exception as e:
            logger.error(f"Failed to record failure of job {job_id}: {str(e)}")
            outcome = "error"
        return JobOutcome(job_id=job_id, outcome=outcome, error_type=error_type.value, error=message)
