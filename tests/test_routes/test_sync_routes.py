import httpx
import pytest
from sqlalchemy import select

from app.core.config import get_settings
from app.core.enums import DrainStopReason, SyncJobStatus
from app.core.exceptions import MarketplaceValidationError
from app.dependencies import get_db, get_registry, get_session_factory
from app.main import app
from app.models.sync_queue import SyncQueueJob
from app.services.sync_queue.drain_controller import DrainController, DrainResult


@pytest.fixture
async def client(session_factory, registry, settings):
    """ASGI client wired to the test database, mock marketplaces and test settings"""
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_registry] = lambda: registry
    app.dependency_overrides[get_settings] = lambda: settings

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


"""
1. Health
"""

@pytest.mark.asyncio
async def test_health_lists_marketplaces(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["marketplaces"] == ["ebay", "shopify"]


"""
2. Queue
"""

@pytest.mark.asyncio
async def test_enqueue_and_drain(client, make_item, shopify, session_factory):
    item = await make_item(quantity=2, listing_ref="L1")

    response = await client.post("/api/sync/queue/enqueue", json={
        "inventory_item_id": item.id, "marketplace": "shopify",
    })
    assert response.status_code == 200
    job = response.json()
    assert job["status"] == SyncJobStatus.QUEUED.value

    stats = (await client.get("/api/sync/queue/stats")).json()
    assert stats["counts"]["queued"] == 1

    response = await client.post("/api/sync/queue/drain", json={"concurrency": 1})
    assert response.status_code == 200
    result = response.json()
    assert result["processed"] == 1
    assert result["succeeded"] == 1
    assert shopify.calls_for("push")[0][2] == 2

    async with session_factory() as session:
        row = await session.get(SyncQueueJob, job["id"])
        assert row.status == SyncJobStatus.DONE.value


@pytest.mark.asyncio
async def test_drain_turbo_multiplies_parallelism(client, mocker, settings):
    """Test the turbo flag scales concurrency and batch size by the configured multiplier"""
    drain = mocker.patch.object(
        DrainController, "drain",
        new_callable=mocker.AsyncMock,
        return_value=DrainResult(stop_reason=DrainStopReason.IDLE),
    )

    response = await client.post("/api/sync/queue/drain", json={"concurrency": 2, "batch_size": 1, "turbo": True})

    assert response.status_code == 200
    assert response.json()["stop_reason"] == "idle"
    config = drain.await_args.args[0]
    assert config.concurrency == 2 * settings.DRAIN_TURBO_MULTIPLIER
    assert config.batch_size == settings.DRAIN_TURBO_MULTIPLIER


@pytest.mark.asyncio
async def test_enqueue_unknown_item_is_404(client):
    response = await client.post("/api/sync/queue/enqueue", json={"inventory_item_id": 999, "marketplace": "ebay"})
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_enqueue_invalid_marketplace_is_422(client, make_item):
    item = await make_item()
    response = await client.post("/api/sync/queue/enqueue", json={"inventory_item_id": item.id, "marketplace": "etsy"})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_cancel_job(client, make_item):
    item = await make_item(listing_ref="L1")
    job = (await client.post("/api/sync/queue/enqueue", json={
        "inventory_item_id": item.id, "marketplace": "shopify",
    })).json()

    response = await client.post(f"/api/sync/queue/jobs/{job['id']}/cancel")
    assert response.status_code == 200
    assert response.json()["status"] == SyncJobStatus.CANCELLED.value

    response = await client.post("/api/sync/queue/jobs/12345/cancel")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_process_next_on_empty_queue(client):
    response = await client.post("/api/sync/queue/process-next")
    assert response.status_code == 200
    assert response.json()["claimed"] is False


@pytest.mark.asyncio
async def test_toggle_auto_drain(client):
    response = await client.post("/api/sync/auto-drain", json={"enabled": True})
    assert response.status_code == 200
    assert response.json()["auto_drain_enabled"] is True

    status = (await client.get("/api/sync/auto-drain")).json()
    assert status["lease"]["auto_drain_enabled"] is True
    assert status["supervisor"] == {"running": False}


"""
3. Dead letters
"""

@pytest.mark.asyncio
async def test_dead_letter_retry_round_trip(client, make_item, shopify):
    item = await make_item(listing_ref="L1")
    shopify.errors.append(MarketplaceValidationError("bad sku"))
    await client.post("/api/sync/queue/enqueue", json={"inventory_item_id": item.id, "marketplace": "shopify"})
    await client.post("/api/sync/queue/process-next")

    letters = (await client.get("/api/sync/dead-letters")).json()
    assert len(letters) == 1
    assert letters[0]["error_type"] == "client_error"

    analysis = (await client.get("/api/sync/dead-letters/analysis")).json()
    assert analysis["total_unresolved"] == 1

    response = await client.post(f"/api/sync/dead-letters/{letters[0]['id']}/retry")
    assert response.status_code == 200
    assert response.json()["status"] == SyncJobStatus.QUEUED.value
    assert (await client.get("/api/sync/dead-letters")).json() == []


"""
4. Aggregates, reconciliation, duplicates and rules
"""

@pytest.mark.asyncio
async def test_recalculate_single_sku(client, make_item):
    await make_item(sku="ABC-1", quantity=2, location_key="A", listing_ref="L1")
    await make_item(sku="ABC-1", quantity=3, location_key="B")

    response = await client.post("/api/sync/aggregates/recalculate", json={
        "store_key": "store-1", "marketplace": "shopify", "sku": "ABC-1",
    })

    assert response.status_code == 200
    body = response.json()
    assert body["total_quantity"] == 5
    assert body["location_quantities"] == {"A": 2, "B": 3}

    listed = (await client.get("/api/sync/aggregates", params={"store_key": "store-1"})).json()
    assert [a["sku"] for a in listed] == ["ABC-1"]


@pytest.mark.asyncio
async def test_blank_store_key_is_rejected(client):
    response = await client.post("/api/sync/aggregates/recalculate", json={"store_key": " ", "marketplace": "shopify"})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_reconcile_dry_run(client, make_item, shopify):
    item = await make_item(quantity=0, listing_ref="L1")
    shopify.set_listing("L1", 1)

    response = await client.post("/api/sync/reconcile", json={
        "store_key": "store-1", "marketplace": "shopify", "dry_run": True,
    })

    assert response.status_code == 200
    report = response.json()
    assert report["dry_run"] is True
    assert report["outcomes"][0]["inventory_item_id"] == item.id
    assert report["outcomes"][0]["action"] == "quantity_corrected"


@pytest.mark.asyncio
async def test_reconcile_with_database_truth_reports_drift(client, make_item, shopify):
    await make_item(quantity=3, listing_ref="L1")
    shopify.set_listing("L1", 1)

    response = await client.post("/api/sync/reconcile", json={
        "store_key": "store-1", "marketplace": "shopify", "dry_run": True, "truth_mode": "database",
    })

    assert response.status_code == 200
    report = response.json()
    assert report["truth_mode"] == "database"
    assert report["outcomes"][0]["action"] == "drift_detected"
    assert report["outcomes"][0]["proposed"]["quantity"] == 1

    response = await client.post("/api/sync/reconcile", json={
        "store_key": "store-1", "marketplace": "shopify", "truth_mode": "sometimes",
    })
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_duplicates_scan_and_resolve(client, make_item, shopify):
    keep = await make_item(natural_key="CERT-1", listing_ref="L1", age_minutes=10)
    dupe = await make_item(natural_key="CERT-1", listing_ref="L2")

    scan = (await client.get("/api/sync/duplicates", params={"store_key": "store-1", "marketplace": "shopify"})).json()
    assert scan["count"] == 1
    assert scan["groups"][0]["keep_id"] == keep.id

    response = await client.post("/api/sync/duplicates/resolve", json={
        "store_key": "store-1", "marketplace": "shopify", "natural_key": "CERT-1",
    })
    assert response.status_code == 200
    assert response.json()["removed"] == [dupe.id]


@pytest.mark.asyncio
async def test_rule_endpoints(client, make_item, session_factory):
    await make_item(sku="K-1", main_category="Trading Cards")

    response = await client.post("/api/sync/rules", json={
        "store_key": "store-1", "marketplace": "shopify", "name": "All cards",
        "category_match": ["cards"], "priority": 5, "auto_queue": True,
    })
    assert response.status_code == 201
    rule = response.json()

    bad = await client.post("/api/sync/rules", json={
        "store_key": "store-1", "marketplace": "shopify", "name": "Bad", "min_price": 10, "max_price": 5,
    })
    assert bad.status_code == 422

    preview = (await client.post("/api/sync/rules/preview", json={"store_key": "store-1", "marketplace": "shopify"})).json()
    assert preview["included"] == 1

    applied = (await client.post("/api/sync/rules/apply", json={"store_key": "store-1", "marketplace": "shopify"})).json()
    assert applied["queued"] == 1

    response = await client.patch(f"/api/sync/rules/{rule['id']}", json={"is_active": False})
    assert response.json()["is_active"] is False

    assert (await client.delete(f"/api/sync/rules/{rule['id']}")).status_code == 204
    assert (await client.get(f"/api/sync/rules/{rule['id']}")).status_code == 404

    async with session_factory() as session:
        jobs = (await session.execute(select(SyncQueueJob))).scalars().all()
        assert len(jobs) == 1
