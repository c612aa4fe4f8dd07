import pytest
from sqlalchemy import select

from app.models.sync_log import SyncLog
from app.services.sync_logger import SyncLogger


@pytest.mark.asyncio
async def test_log_operation_flushes_into_callers_transaction(db_session):
    """Test entries are flushed but left for the caller to commit"""
    entry = await SyncLogger(db_session).log_operation(
        "reconcile:in_sync",
        store_key="store-1",
        marketplace="shopify",
        sku="ABC-1",
        inventory_item_id=1,
        before={"quantity": 1},
        after={"quantity": 1},
        error_message="x" * 5000,
    )

    assert entry.id is not None
    assert len(entry.error_message) == 2000

    await db_session.rollback()
    assert (await db_session.execute(select(SyncLog))).scalars().all() == []


@pytest.mark.asyncio
async def test_log_push(db_session):
    entry = await SyncLogger(db_session).log_push(
        store_key="store-1", marketplace="ebay", sku="ABC-1",
        inventory_item_id=7, action="push", quantity=3, remote_id="555",
    )

    assert entry.operation == "queue:push"
    assert entry.after_state == {"quantity": 3, "remote_id": "555"}
    assert entry.success is True
