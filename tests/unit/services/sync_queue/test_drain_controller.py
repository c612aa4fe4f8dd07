import asyncio

import pytest
from sqlalchemy import select, update

from app.core.enums import DrainStopReason, ListingSyncStatus, SyncJobStatus
from app.core.exceptions import MarketplaceValidationError
from app.core.utils import utcnow
from app.models.inventory_aggregate import InventoryAggregate
from app.models.inventory_item import MarketplaceListing
from app.models.processor_lock import ProcessorLock
from app.models.sync_log import SyncLog
from app.models.sync_queue import SyncQueueJob
from app.services.aggregation_service import AggregationService
from app.services.sync_queue.drain_controller import DrainConfig, DrainController
from app.services.sync_queue.lease import SYNC_PROCESSOR_LOCK, ProcessorLease
from app.services.sync_queue.queue import SyncQueueService


@pytest.fixture
def controller(session_factory, registry, settings):
    return DrainController(session_factory, registry, settings=settings, processor_id="drain-test")


async def enqueue_items(session_factory, settings, make_item, count, marketplace="shopify", **item_fields):
    job_ids = []
    for i in range(count):
        item = await make_item(sku=f"SKU-{i}", **item_fields)
        async with session_factory() as session:
            job = await SyncQueueService(session, settings=settings).enqueue(item.id, marketplace)
            job_ids.append(job.id)
    return job_ids


"""
1. Configuration
"""

def test_config_from_settings_with_overrides(settings):
    config = DrainConfig.from_settings(settings, concurrency=4, batch_size=None)
    assert config.concurrency == 4
    assert config.batch_size == settings.DRAIN_BATCH_SIZE
    assert config.item_delay == 0


def test_turbo_multiplies_parallelism_and_shortens_delay():
    config = DrainConfig(concurrency=1, batch_size=2, item_delay=3.0, max_iterations=10).turbo(3)
    assert config.concurrency == 3
    assert config.batch_size == 6
    assert config.item_delay == 1.0
    assert config.max_iterations == 10


"""
2. Stop reasons
"""

@pytest.mark.asyncio
async def test_empty_queue_stops_idle(controller, session_factory):
    result = await controller.drain()

    assert result.stop_reason == DrainStopReason.IDLE
    assert result.iterations == 0
    async with session_factory() as session:
        assert (await ProcessorLease(session).status())["held"] is False


@pytest.mark.asyncio
async def test_drain_pushes_every_job(controller, session_factory, settings, make_item, shopify):
    job_ids = await enqueue_items(session_factory, settings, make_item, 3, quantity=2)

    result = await controller.drain()

    assert result.stop_reason == DrainStopReason.IDLE
    assert result.succeeded == 3
    assert len(shopify.calls_for("push")) == 3
    assert all(call[2] == 2 for call in shopify.calls_for("push"))

    async with session_factory() as session:
        jobs = (await session.execute(select(SyncQueueJob).where(SyncQueueJob.id.in_(job_ids)))).scalars().all()
        assert {j.status for j in jobs} == {SyncJobStatus.DONE.value}

        listings = (await session.execute(select(MarketplaceListing))).scalars().all()
        assert all(l.sync_status == ListingSyncStatus.SYNCED.value for l in listings)
        assert all(l.listing_ref and l.listing_ref.startswith("mock-") for l in listings)

        aggregates = (await session.execute(select(InventoryAggregate))).scalars().all()
        assert all(a.marketplace_quantity == 2 and a.needs_sync is False for a in aggregates)

        logs = (await session.execute(select(SyncLog).where(SyncLog.operation == "queue:push"))).scalars().all()
        assert len(logs) == 3


@pytest.mark.asyncio
async def test_iteration_cap(controller, session_factory, settings, make_item):
    await enqueue_items(session_factory, settings, make_item, 3)

    result = await controller.drain(DrainConfig(max_iterations=2, item_delay=0))

    assert result.stop_reason == DrainStopReason.CAP_REACHED
    assert result.iterations == 2
    assert result.processed == 2
    async with session_factory() as session:
        assert (await SyncQueueService(session, settings=settings).queue_stats())["counts"]["queued"] == 1


@pytest.mark.asyncio
async def test_consecutive_failures_open_the_circuit(controller, session_factory, settings, make_item, shopify):
    await enqueue_items(session_factory, settings, make_item, 4)
    shopify.errors = [MarketplaceValidationError("rejected") for _ in range(4)]

    result = await controller.drain(DrainConfig(max_consecutive_errors=3, item_delay=0))

    assert result.stop_reason == DrainStopReason.CIRCUIT_OPEN
    assert result.failed == 3
    assert result.dead_lettered == 3
    assert len(result.failures) == 3


@pytest.mark.asyncio
async def test_success_resets_the_error_streak(controller, session_factory, settings, make_item, shopify):
    await enqueue_items(session_factory, settings, make_item, 4)
    shopify.errors = [MarketplaceValidationError("rejected"), MarketplaceValidationError("rejected")]

    result = await controller.drain(DrainConfig(max_consecutive_errors=3, item_delay=0))

    assert result.stop_reason == DrainStopReason.IDLE
    assert result.failed == 2
    assert result.succeeded == 2


@pytest.mark.asyncio
async def test_held_lease_returns_locked(controller, session_factory, settings, make_item, shopify):
    await enqueue_items(session_factory, settings, make_item, 1)
    async with session_factory() as session:
        await ProcessorLease(session).acquire("someone-else")

    result = await controller.drain()

    assert result.stop_reason == DrainStopReason.LOCKED
    assert shopify.calls == []


@pytest.mark.asyncio
async def test_lease_taken_over_mid_drain(controller, session_factory, settings, make_item, shopify):
    await enqueue_items(session_factory, settings, make_item, 3)

    async def steal_lease(ref, quantity):
        async with session_factory() as session:
            await session.execute(
                update(ProcessorLock)
                .where(ProcessorLock.name == SYNC_PROCESSOR_LOCK)
                .values(holder_id="intruder")
            )
            await session.commit()

    shopify.on_push = steal_lease

    result = await controller.drain(DrainConfig(item_delay=0))

    assert result.stop_reason == DrainStopReason.LOCK_LOST
    assert result.iterations == 1
    assert result.succeeded == 1
    async with session_factory() as session:
        assert (await ProcessorLease(session).status())["holder_id"] == "intruder"


@pytest.mark.asyncio
async def test_batches_run_concurrently(session_factory, registry, settings, make_item, ebay):
    await enqueue_items(session_factory, settings, make_item, 4, marketplace="ebay")
    controller = DrainController(session_factory, registry, settings=settings)

    result = await controller.drain(DrainConfig(concurrency=1, batch_size=2, item_delay=0))

    assert result.iterations == 2
    assert result.succeeded == 4
    assert len(ebay.calls_for("push")) == 4


"""
3. Single step
"""

@pytest.mark.asyncio
async def test_process_next(controller, session_factory, settings, make_item):
    assert (await controller.process_next()).claimed is False

    job_ids = await enqueue_items(session_factory, settings, make_item, 1)
    step = await controller.process_next()

    assert step.claimed is True
    assert step.job_id == job_ids[0]
    assert step.outcome == "done"


"""
4. Crashes and slow batches
"""

@pytest.mark.asyncio
async def test_bookkeeping_crash_is_recorded_not_raised(mocker, controller, session_factory, settings, make_item):
    job_ids = await enqueue_items(session_factory, settings, make_item, 1)
    mocker.patch.object(AggregationService, "record_pushed", side_effect=RuntimeError("db blip"))

    result = await controller.drain(DrainConfig(max_consecutive_errors=1, item_delay=0))

    assert result.stop_reason == DrainStopReason.CIRCUIT_OPEN
    assert result.failed == 1
    assert result.failures[0]["error"] == "db blip"
    async with session_factory() as session:
        job = await session.get(SyncQueueJob, job_ids[0])
        assert job.status == SyncJobStatus.QUEUED.value
        assert job.retry_count == 1
        assert (await ProcessorLease(session).status())["held"] is False


@pytest.mark.asyncio
async def test_crashing_job_does_not_abort_the_batch(mocker, controller, session_factory, settings, make_item):
    job_ids = await enqueue_items(session_factory, settings, make_item, 2)
    real_process_job = controller.processor.process_job

    async def crash_first(job_id, processor_id):
        if job_id == job_ids[0]:
            raise RuntimeError("boom")
        return await real_process_job(job_id, processor_id)

    mocker.patch.object(controller.processor, "process_job", side_effect=crash_first)

    result = await controller.drain(DrainConfig(concurrency=2, batch_size=2, max_iterations=1, item_delay=0))

    assert result.stop_reason == DrainStopReason.CAP_REACHED
    assert result.processed == 2
    assert result.succeeded == 1
    assert result.failures == [
        {"job_id": job_ids[0], "outcome": "error", "error_type": "unknown", "error": "boom"}
    ]


@pytest.mark.asyncio
async def test_claimed_jobs_waiting_for_a_slot_are_not_reclaimed(session_factory, registry, settings, make_item,
                                                                  shopify):
    settings.SYNC_HEARTBEAT_INTERVAL_SECONDS = 0.05
    settings.SYNC_HEARTBEAT_TIMEOUT_SECONDS = 0.3
    job_ids = await enqueue_items(session_factory, settings, make_item, 3)
    reclaimed = []

    async def slow_push(ref, quantity):
        # Outlast the heartbeat timeout, then look for stale work as another worker would
        await asyncio.sleep(0.4)
        async with session_factory() as session:
            reclaimed.append(await SyncQueueService(session, settings=settings).reclaim_stale())

    shopify.on_push = slow_push
    controller = DrainController(session_factory, registry, settings=settings)

    result = await controller.drain(DrainConfig(concurrency=1, batch_size=3, item_delay=0))

    assert reclaimed == [0, 0, 0]
    assert result.iterations == 1
    assert result.succeeded == 3
    async with session_factory() as session:
        jobs = (await session.execute(select(SyncQueueJob).where(SyncQueueJob.id.in_(job_ids)))).scalars().all()
        assert {j.status for j in jobs} == {SyncJobStatus.DONE.value}
        assert {j.retry_count for j in jobs} == {0}
