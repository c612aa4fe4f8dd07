import pytest
from sqlalchemy import select

from app.core.enums import Marketplace
from app.core.exceptions import ValidationError
from app.models.inventory_aggregate import InventoryAggregate
from app.models.inventory_item import InventoryItem
from app.models.sync_log import SyncLog
from app.models.sync_queue import SyncQueueJob
from app.services.aggregation_service import AggregationService

"""
1. Recalculation
"""

@pytest.mark.asyncio
async def test_recalculate_sums_locations(make_item, db_session, settings):
    """Quantities 2 at A and 3 at B aggregate to 5; nothing pushed yet means needs_sync."""
    await make_item(sku="ABC-1", quantity=2, location_key="A")
    await make_item(sku="ABC-1", quantity=3, location_key="B")

    service = AggregationService(db_session, settings=settings)
    aggregate = await service.recalculate_sku("store-1", Marketplace.SHOPIFY, "ABC-1")
    await db_session.commit()

    assert aggregate.total_quantity == 5
    assert aggregate.location_quantities == {"A": 2, "B": 3}
    assert aggregate.needs_sync is True


@pytest.mark.asyncio
async def test_recalculate_flags_drift_from_known_marketplace_quantity(make_item, db_session, settings):
    await make_item(sku="ABC-1", quantity=2, location_key="A")
    await make_item(sku="ABC-1", quantity=3, location_key="B")
    service = AggregationService(db_session, settings=settings)

    aggregate = await service.recalculate_sku("store-1", "shopify", "ABC-1")
    aggregate.marketplace_quantity = 4
    await db_session.commit()

    aggregate = await service.recalculate_sku("store-1", "shopify", "ABC-1")
    assert aggregate.total_quantity == 5
    assert aggregate.needs_sync is True

    await service.record_pushed("store-1", "shopify", "ABC-1", 5)
    await db_session.commit()
    assert aggregate.marketplace_quantity == 5
    assert aggregate.needs_sync is False
    assert aggregate.last_synced_at is not None


@pytest.mark.asyncio
async def test_recalculate_ignores_deleted_and_other_stores(make_item, db_session, settings):
    from app.core.utils import utcnow

    await make_item(sku="ABC-1", quantity=2)
    await make_item(sku="ABC-1", quantity=7, store_key="store-2")
    await make_item(sku="ABC-1", quantity=4, deleted_at=utcnow(), deleted_reason="test")

    aggregate = await AggregationService(db_session, settings=settings).recalculate_sku("store-1", "ebay", "ABC-1")
    assert aggregate.total_quantity == 2


@pytest.mark.asyncio
async def test_recalculate_requires_store_and_sku(db_session, settings):
    service = AggregationService(db_session, settings=settings)
    with pytest.raises(ValidationError):
        await service.recalculate_sku("", "shopify", "ABC-1")
    with pytest.raises(ValidationError):
        await service.recalculate_sku("store-1", "shopify", "")


@pytest.mark.asyncio
async def test_recalculate_all_counts_per_sku(make_item, db_session, settings):
    await make_item(sku="ABC-1", quantity=1)
    await make_item(sku="ABC-2", quantity=2)
    await make_item(sku="ABC-3", quantity=3)
    await make_item(sku=None, quantity=1)

    results = await AggregationService(db_session, settings=settings).recalculate_all("store-1", "shopify", batch_size=2)

    assert results["processed"] == 3
    assert results["failed"] == 0
    assert results["needs_sync"] == 3
    rows = (await db_session.execute(select(InventoryAggregate))).scalars().all()
    assert sorted(r.sku for r in rows) == ["ABC-1", "ABC-2", "ABC-3"]


"""
2. Queueing out-of-sync aggregates
"""

@pytest.mark.asyncio
async def test_queue_out_of_sync_uses_oldest_linked_item(make_item, db_session, settings):
    older = await make_item(sku="ABC-1", quantity=1, listing_ref="L1", age_minutes=10)
    await make_item(sku="ABC-1", quantity=1, listing_ref="L2", age_minutes=1)
    await make_item(sku="UNLINKED", quantity=1)

    service = AggregationService(db_session, settings=settings)
    await service.recalculate_all("store-1", "shopify")
    results = await service.queue_out_of_sync("store-1", "shopify")

    assert results["flagged"] == 2
    assert results["queued"] == 1
    assert results["skipped"] == 1
    jobs = (await db_session.execute(select(SyncQueueJob))).scalars().all()
    assert len(jobs) == 1
    assert jobs[0].inventory_item_id == older.id
    assert jobs[0].payload == {"sku": "ABC-1"}


"""
3. Waterfall decrement
"""

@pytest.mark.asyncio
async def test_waterfall_takes_from_highest_priority_location_first(
    make_item, make_location_priority, db_session, settings
):
    await make_location_priority("A", 1)
    await make_location_priority("B", 2)
    a_item = await make_item(sku="ABC-1", quantity=2, location_key="A")
    b_item = await make_item(sku="ABC-1", quantity=3, location_key="B")

    result = await AggregationService(db_session, settings=settings).decrement_waterfall(
        "store-1", "ABC-1", 3, marketplace="shopify", dry_run=False
    )

    assert result["success"] is True
    assert result["fulfilled"] == 3
    assert [(d["item_id"], d["decremented"]) for d in result["decrements"]] == [(a_item.id, 2), (b_item.id, 1)]

    a_row = await db_session.get(InventoryItem, a_item.id, populate_existing=True)
    b_row = await db_session.get(InventoryItem, b_item.id, populate_existing=True)
    assert a_row.quantity == 0
    assert a_row.sold_at is not None
    assert b_row.quantity == 2
    assert b_row.sold_at is None

    aggregate = (await db_session.execute(
        select(InventoryAggregate).where(InventoryAggregate.sku == "ABC-1")
    )).scalars().one()
    assert aggregate.total_quantity == 2


@pytest.mark.asyncio
async def test_waterfall_dry_run_writes_nothing(make_item, make_location_priority, db_session, settings):
    await make_location_priority("A", 1)
    item = await make_item(sku="ABC-1", quantity=2, location_key="A")

    result = await AggregationService(db_session, settings=settings).decrement_waterfall(
        "store-1", "ABC-1", 5, dry_run=True
    )

    assert result["success"] is False
    assert result["fulfilled"] == 2
    assert result["unfulfilled"] == 3
    row = await db_session.get(InventoryItem, item.id, populate_existing=True)
    assert row.quantity == 2
    assert row.sold_at is None
    assert (await db_session.execute(select(SyncLog))).scalars().all() == []


@pytest.mark.asyncio
async def test_waterfall_skips_inactive_locations(make_item, make_location_priority, db_session, settings):
    await make_location_priority("A", 1, is_active=False)
    await make_location_priority("B", 2)
    await make_item(sku="ABC-1", quantity=2, location_key="A")
    b_item = await make_item(sku="ABC-1", quantity=2, location_key="B")

    result = await AggregationService(db_session, settings=settings).decrement_waterfall(
        "store-1", "ABC-1", 1, dry_run=True
    )

    assert [d["item_id"] for d in result["decrements"]] == [b_item.id]


@pytest.mark.asyncio
async def test_waterfall_rejects_non_positive_quantity(db_session, settings):
    with pytest.raises(ValidationError):
        await AggregationService(db_session, settings=settings).decrement_waterfall("store-1", "ABC-1", 0)
