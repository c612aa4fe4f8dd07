# tests/conftest.py
from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app import models  # noqa: F401
from app.core.config import Settings, clear_settings_cache
from app.core.enums import ListingSyncStatus, Marketplace
from app.core.utils import utcnow
from app.database import Base
from app.integrations.setup import MarketplaceRegistry
from app.models.inventory_aggregate import LocationPriority
from app.models.inventory_item import InventoryItem, MarketplaceListing
from tests.mocks.mock_marketplace import MockMarketplace


@pytest.fixture
def settings(tmp_path):
    """Provide test settings: no backoff delays, no pause between drain iterations"""
    clear_settings_cache()
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path}/sync_test.db",
        SYNC_MAX_RETRIES=3,
        SYNC_BACKOFF_BASE_SECONDS=0,
        SYNC_BACKOFF_MAX_SECONDS=0,
        SYNC_RATE_LIMIT_BACKOFF_BASE_SECONDS=0,
        SYNC_BACKOFF_JITTER_SECONDS=0,
        SYNC_HEARTBEAT_INTERVAL_SECONDS=60,
        SYNC_HEARTBEAT_TIMEOUT_SECONDS=300,
        DRAIN_ITEM_DELAY_MS=0,
        DRAIN_MAX_ITERATIONS=100,
        DRAIN_MAX_CONSECUTIVE_ERRORS=3,
        AUTO_DRAIN_SCHEDULER_ENABLED=False,
        SHOPIFY_SHOP_URL=None,
        SHOPIFY_ADMIN_API_ACCESS_TOKEN=None,
        EBAY_ACCESS_TOKEN="",
    )


@pytest.fixture
async def test_engine(settings):
    """File-backed SQLite so separate sessions see each other's commits"""
    engine = create_async_engine(settings.DATABASE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    """Provide a database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def shopify():
    return MockMarketplace("shopify")


@pytest.fixture
def ebay():
    return MockMarketplace("ebay")


@pytest.fixture
def registry(shopify, ebay):
    registry = MarketplaceRegistry()
    registry.register(Marketplace.SHOPIFY, shopify)
    registry.register(Marketplace.EBAY, ebay)
    return registry


@pytest.fixture
def make_item(session_factory):
    """
    Insert an InventoryItem (and optionally its listing row) and commit it.

    ``listing_ref`` links the item on ``marketplace``; ``age_minutes`` backdates
    created_at so ordering by age is deterministic.
    """
    async def _make_item(
        sku="ABC-1",
        quantity=1,
        store_key="store-1",
        location_key="A",
        marketplace=Marketplace.SHOPIFY,
        listing_ref=None,
        sync_status=ListingSyncStatus.SYNCED,
        age_minutes=0,
        **fields,
    ) -> InventoryItem:
        async with session_factory() as session:
            item = InventoryItem(
                sku=sku,
                quantity=quantity,
                store_key=store_key,
                location_key=location_key,
                created_at=utcnow() - timedelta(minutes=age_minutes),
                **fields,
            )
            session.add(item)
            await session.flush()
            if listing_ref is not None:
                session.add(MarketplaceListing(
                    inventory_item_id=item.id,
                    marketplace=Marketplace(marketplace).value,
                    listing_ref=listing_ref,
                    product_ref=listing_ref,
                    sync_status=ListingSyncStatus(sync_status).value,
                ))
            await session.commit()
            return item

    return _make_item


@pytest.fixture
def make_location_priority(session_factory):
    async def _make(location_key, priority, store_key="store-1", is_active=True, location_name=None):
        async with session_factory() as session:
            row = LocationPriority(
                store_key=store_key,
                location_key=location_key,
                location_name=location_name or location_key,
                priority=priority,
                is_active=is_active,
            )
            session.add(row)
            await session.commit()
            return row

    return _make
