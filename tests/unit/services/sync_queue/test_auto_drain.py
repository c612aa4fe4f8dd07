from datetime import timedelta

import pytest
from sqlalchemy import update

from app.core.enums import DrainStopReason, SyncJobStatus
from app.core.utils import utcnow
from app.models.sync_queue import SyncQueueJob
from app.services.sync_queue.auto_drain import AUTO_DRAIN_JOB_ID, AutoDrainSupervisor
from app.services.sync_queue.drain_controller import DrainConfig
from app.services.sync_queue.lease import ProcessorLease
from app.services.sync_queue.queue import SyncQueueService


@pytest.fixture
def supervisor(session_factory, registry, settings):
    return AutoDrainSupervisor(session_factory, registry, settings=settings, drain_config=DrainConfig(item_delay=0))


async def queue_one(session_factory, settings, make_item):
    item = await make_item()
    async with session_factory() as session:
        return await SyncQueueService(session, settings=settings).enqueue(item.id, "shopify")


async def set_auto_drain(session_factory, enabled):
    async with session_factory() as session:
        await ProcessorLease(session).set_auto_drain(enabled)


@pytest.mark.asyncio
async def test_tick_does_nothing_while_disabled(supervisor, session_factory, settings, make_item, shopify):
    await queue_one(session_factory, settings, make_item)

    assert await supervisor.tick() is None
    assert shopify.calls == []
    assert supervisor.last_tick_at is not None


@pytest.mark.asyncio
async def test_tick_drains_when_enabled_and_work_exists(supervisor, session_factory, settings, make_item, shopify):
    await queue_one(session_factory, settings, make_item)
    await set_auto_drain(session_factory, True)

    result = await supervisor.tick()

    assert result.stop_reason == DrainStopReason.IDLE
    assert result.succeeded == 1
    assert result.processor_id.startswith("auto-drain-")
    assert supervisor.sessions_run == 1
    assert len(shopify.calls_for("push")) == 1


@pytest.mark.asyncio
async def test_tick_skips_empty_queue(supervisor, session_factory):
    await set_auto_drain(session_factory, True)
    assert await supervisor.tick() is None
    assert supervisor.sessions_run == 0


@pytest.mark.asyncio
async def test_tick_skips_while_lease_is_held(supervisor, session_factory, settings, make_item, shopify):
    await queue_one(session_factory, settings, make_item)
    await set_auto_drain(session_factory, True)
    async with session_factory() as session:
        await ProcessorLease(session).acquire("manual-drain")

    assert await supervisor.tick() is None
    assert shopify.calls == []


@pytest.mark.asyncio
async def test_start_and_stop_schedule_one_job(supervisor):
    supervisor.start()
    try:
        assert supervisor.running is True
        assert supervisor.scheduler.get_job(AUTO_DRAIN_JOB_ID) is not None
        status = supervisor.status()
        assert status["running"] is True
        assert status["interval_seconds"] == supervisor.settings.AUTO_DRAIN_INTERVAL_SECONDS
    finally:
        supervisor.stop()
    assert supervisor.running is False
    assert supervisor.status()["next_run_time"] is None


@pytest.mark.asyncio
async def test_tick_skips_while_a_single_step_is_processing(supervisor, session_factory, settings, make_item, shopify):
    await queue_one(session_factory, settings, make_item)
    await queue_one(session_factory, settings, make_item)
    await set_auto_drain(session_factory, True)
    async with session_factory() as session:
        await SyncQueueService(session, settings=settings).claim_next("manual-step")

    assert await supervisor.tick() is None
    assert supervisor.sessions_run == 0
    assert shopify.calls == []


@pytest.mark.asyncio
async def test_tick_reclaims_job_left_without_heartbeat(supervisor, session_factory, settings, make_item, shopify):
    """A worker that died mid-job does not block auto-drain forever."""
    job = await queue_one(session_factory, settings, make_item)
    await set_auto_drain(session_factory, True)
    async with session_factory() as session:
        await SyncQueueService(session, settings=settings).claim_next("dead-worker")
        await session.execute(
            update(SyncQueueJob).where(SyncQueueJob.id == job.id)
            .values(processor_heartbeat=None, started_at=utcnow() - timedelta(hours=1))
        )
        await session.commit()

    result = await supervisor.tick()

    assert result is not None
    assert result.succeeded == 1
    async with session_factory() as session:
        reclaimed = await session.get(SyncQueueJob, job.id)
        assert reclaimed.status == SyncJobStatus.DONE.value
        assert reclaimed.retry_count == 1
