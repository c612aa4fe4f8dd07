# app/services/aggregation_service.py
"""
Aggregation of per-location inventory into the single quantity a marketplace sees.

- recalculate_sku: sum non-deleted items sharing a SKU in a store, upsert the aggregate
- recalculate_all: every SKU of a store in batches, one commit per SKU
- record_pushed: stamp the quantity the queue just pushed
- queue_out_of_sync: enqueue a push for every aggregate flagged needs_sync
- decrement_waterfall: take sold quantity out of locations in priority order

None of these talk to a marketplace.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, get_settings
from app.core.enums import Marketplace, SyncAction
from app.core.exceptions import QueueConflictError, ValidationError
from app.core.utils import chunked, utcnow
from app.models.inventory_aggregate import InventoryAggregate, LocationPriority
from app.models.inventory_item import InventoryItem, MarketplaceListing
from app.services.sync_logger import SyncLogger
from app.services.sync_queue.queue import SyncQueueService

logger = logging.getLogger(__name__)

MAX_ERROR_DETAILS = 20


class AggregationService:
    def __init__(self, db: AsyncSession, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()
        self.sync_logger = SyncLogger(db)

    async def _get_aggregate(self, store_key: str, marketplace: str, sku: str) -> Optional[InventoryAggregate]:
        stmt = select(InventoryAggregate).where(
            InventoryAggregate.store_key == store_key,
            InventoryAggregate.marketplace == marketplace,
            InventoryAggregate.sku == sku,
        )
        return (await self.db.execute(stmt)).scalars().first()

    async def recalculate_sku(self, store_key: str, marketplace, sku: str) -> InventoryAggregate:
        """
        Recompute one aggregate from the item rows. Flushes but does not commit.

        needs_sync is set whenever the total differs from the last quantity
        known to be on the marketplace, including when nothing has been pushed yet.
        """
        if not store_key or not sku:
            raise ValidationError("store_key and sku are required")
        marketplace = Marketplace(marketplace).value

        stmt = select(InventoryItem.location_key, func.sum(InventoryItem.quantity)).where(
            InventoryItem.store_key == store_key,
            InventoryItem.sku == sku,
            InventoryItem.deleted_at.is_(None),
        ).group_by(InventoryItem.location_key)
        rows = (await self.db.execute(stmt)).all()

        total = 0
        location_quantities: Dict[str, int] = {}
        for location_key, quantity in rows:
            quantity = int(quantity or 0)
            total += quantity
            if quantity > 0:
                location_quantities[location_key or "unassigned"] = quantity

        aggregate = await self._get_aggregate(store_key, marketplace, sku)
        if aggregate is None:
            aggregate = InventoryAggregate(store_key=store_key, marketplace=marketplace, sku=sku)
            self.db.add(aggregate)

        aggregate.total_quantity = total
        aggregate.location_quantities = location_quantities
        aggregate.needs_sync = aggregate.marketplace_quantity is None or aggregate.marketplace_quantity != total
        aggregate.updated_at = utcnow()
        await self.db.flush()

        logger.debug(f"Aggregate {store_key}/{marketplace}/{sku}: total={total} "
                     f"remote={aggregate.marketplace_quantity} needs_sync={aggregate.needs_sync}")
        return aggregate

    async def recalculate_all(
        self, store_key: str, marketplace, batch_size: Optional[int] = None
    ) -> Dict[str, Any]:
        """Recalculate every SKU of a store. A failing SKU is rolled back and reported, never raised."""
        if not store_key:
            raise ValidationError("store_key is required")
        marketplace = Marketplace(marketplace).value
        batch_size = batch_size or self.settings.AGGREGATE_BATCH_SIZE

        sku_stmt = (
            select(distinct(InventoryItem.sku))
            .where(InventoryItem.store_key == store_key, InventoryItem.sku.isnot(None))
            .order_by(InventoryItem.sku)
        )
        skus = [sku for sku in (await self.db.execute(sku_stmt)).scalars().all() if sku]

        results = {"processed": 0, "failed": 0, "needs_sync": 0, "errors": []}
        for batch in chunked(skus, batch_size):
            for sku in batch:
                try:
                    aggregate = await self.recalculate_sku(store_key, marketplace, sku)
                    needs_sync = aggregate.needs_sync
                    await self.db.commit()
                    results["processed"] += 1
                    if needs_sync:
                        results["needs_sync"] += 1
                except Exception as e:
                    await self.db.rollback()
                    results["failed"] += 1
                    logger.error(f"Failed to recalculate aggregate for {sku}: {str(e)}")
                    if len(results["errors"]) < MAX_ERROR_DETAILS:
                        results["errors"].append({"sku": sku, "error": str(e)})

        logger.info(f"Recalculated aggregates for {store_key}/{marketplace}: "
                    f"{results['processed']} ok, {results['failed']} failed, {results['needs_sync']} need sync")
        return results

    async def record_pushed(self, store_key: str, marketplace, sku: str, quantity: int) -> Optional[InventoryAggregate]:
        """Remember what was just pushed. Flushes; the caller commits."""
        marketplace = Marketplace(marketplace).value
        aggregate = await self._get_aggregate(store_key, marketplace, sku)
        if aggregate is None:
            aggregate = await self.recalculate_sku(store_key, marketplace, sku)
        aggregate.marketplace_quantity = quantity
        aggregate.needs_sync = aggregate.total_quantity != quantity
        aggregate.last_synced_at = utcnow()
        await self.db.flush()
        return aggregate

    async def queue_out_of_sync(self, store_key: str, marketplace) -> Dict[str, Any]:
        """
        Enqueue a push for every aggregate flagged needs_sync.

        One job per SKU is enough since push sends the aggregate total; the
        oldest linked non-deleted item of the SKU carries it.
        """
        marketplace = Marketplace(marketplace).value
        queue = SyncQueueService(self.db, settings=self.settings)

        stmt = select(InventoryAggregate).where(
            InventoryAggregate.store_key == store_key,
            InventoryAggregate.marketplace == marketplace,
            InventoryAggregate.needs_sync.is_(True),
        ).order_by(InventoryAggregate.sku)
        aggregates = list((await self.db.execute(stmt)).scalars().all())

        results = {"flagged": len(aggregates), "queued": 0, "skipped": 0, "errors": []}
        for aggregate in aggregates:
            sku = aggregate.sku
            item_stmt = (
                select(InventoryItem.id)
                .join(MarketplaceListing, MarketplaceListing.inventory_item_id == InventoryItem.id)
                .where(
                    InventoryItem.store_key == store_key,
                    InventoryItem.sku == sku,
                    InventoryItem.deleted_at.is_(None),
                    MarketplaceListing.marketplace == marketplace,
                    MarketplaceListing.listing_ref.isnot(None),
                )
                .order_by(InventoryItem.created_at.asc(), InventoryItem.id.asc())
                .limit(1)
            )
            item_id = (await self.db.execute(item_stmt)).scalar()
            if item_id is None:
                results["skipped"] += 1
                continue
            try:
                await queue.enqueue(item_id, marketplace, SyncAction.PUSH, payload={"sku": sku})
                results["queued"] += 1
            except QueueConflictError as e:
                results["skipped"] += 1
                logger.info(f"Skipping {sku}: {str(e)}")
            except Exception as e:
                await self.db.rollback()
                logger.error(f"Failed to queue {sku}: {str(e)}")
                if len(results["errors"]) < MAX_ERROR_DETAILS:
                    results["errors"].append({"sku": sku, "error": str(e)})

        return results

    async def decrement_waterfall(
        self,
        store_key: str,
        sku: str,
        quantity: int,
        marketplace=None,
        dry_run: bool = True,
    ) -> Dict[str, Any]:
        """
        Remove ``quantity`` units of ``sku`` from the store, walking active
        locations in priority order (lowest first) and the oldest items first
        within a location. Dry run computes the same decrements without writing.
        """
        if quantity <= 0:
            raise ValidationError("quantity must be positive")

        priorities = (await self.db.execute(
            select(LocationPriority)
            .where(LocationPriority.store_key == store_key, LocationPriority.is_active.is_(True))
            .order_by(LocationPriority.priority.asc(), LocationPriority.id.asc())
        )).scalars().all()

        items = list((await self.db.execute(
            select(InventoryItem)
            .where(
                InventoryItem.store_key == store_key,
                InventoryItem.sku == sku,
                InventoryItem.deleted_at.is_(None),
                InventoryItem.quantity > 0,
            )
            .order_by(InventoryItem.created_at.asc(), InventoryItem.id.asc())
        )).scalars().all())

        before = [{"item_id": i.id, "location_key": i.location_key, "quantity": i.quantity} for i in items]
        remaining = quantity
        decrements: List[Dict[str, Any]] = []

        for location in priorities:
            if remaining <= 0:
                break
            for item in items:
                if remaining <= 0:
                    break
                if item.location_key != location.location_key or item.quantity <= 0:
                    continue
                take = min(item.quantity, remaining)
                decrements.append({
                    "item_id": item.id,
                    "location_key": location.location_key,
                    "location_name": location.location_name,
                    "before": item.quantity,
                    "decremented": take,
                    "after": item.quantity - take,
                })
                remaining -= take
                if not dry_run:
                    item.quantity -= take
                    if item.quantity == 0:
                        item.sold_at = utcnow()

        result = {
            "success": remaining == 0,
            "requested": quantity,
            "fulfilled": quantity - remaining,
            "unfulfilled": remaining,
            "decrements": decrements,
            "dry_run": dry_run,
        }

        if not dry_run:
            await self.sync_logger.log_operation(
                "waterfall_decrement",
                store_key=store_key,
                marketplace=Marketplace(marketplace).value if marketplace else None,
                sku=sku,
                before={"items": before},
                after={"decrements": decrements, "unfulfilled": remaining},
                success=remaining == 0,
            )
            await self.db.flush()
            marketplaces = set((await self.db.execute(
                select(InventoryAggregate.marketplace).where(
                    InventoryAggregate.store_key == store_key, InventoryAggregate.sku == sku
                )
            )).scalars().all())
            if marketplace:
                marketplaces.add(Marketplace(marketplace).value)
            for mp in sorted(marketplaces):
                await self.recalculate_sku(store_key, mp, sku)
            await self.db.commit()

        logger.info(f"Waterfall decrement {sku}@{store_key}: {result['fulfilled']}/{quantity} "
                    f"from {len(decrements)} item(s){' (dry run)' if dry_run else ''}")
        return result

    async def list_aggregates(
        self,
        store_key: Optional[str] = None,
        marketplace=None,
        needs_sync: Optional[bool] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[InventoryAggregate]:
        stmt = select(InventoryAggregate)
        if store_key:
            stmt = stmt.where(InventoryAggregate.store_key == store_key)
        if marketplace:
            stmt = stmt.where(InventoryAggregate.marketplace == Marketplace(marketplace).value)
        if needs_sync is not None:
            stmt = stmt.where(InventoryAggregate.needs_sync.is_(needs_sync))
        stmt = stmt.order_by(InventoryAggregate.store_key, InventoryAggregate.sku).limit(limit).offset(offset)
        return list((await self.db.execute(stmt)).scalars().all())
