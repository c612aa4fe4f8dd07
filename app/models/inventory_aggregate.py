from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, String, UniqueConstraint

from app.core.utils import utcnow
from app.database import Base


class InventoryAggregate(Base):
    """
    Per-SKU quantity summed over every location of a store, as one marketplace sees it.
    """

    __tablename__ = "inventory_aggregates"
    __table_args__ = (
        UniqueConstraint("store_key", "marketplace", "sku", name="uq_inventory_aggregate_scope"),
    )

    id = Column(Integer, primary_key=True)
    store_key = Column(String(64), nullable=False, index=True)
    marketplace = Column(String(32), nullable=False, index=True)
    sku = Column(String(128), nullable=False, index=True)

    total_quantity = Column(Integer, nullable=False, default=0)
    location_quantities = Column(JSON, nullable=False, default=dict)
    marketplace_quantity = Column(Integer, nullable=True)  # last quantity known to be on the marketplace
    needs_sync = Column(Boolean, nullable=False, default=False, index=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return (f"<InventoryAggregate(sku={self.sku}, store={self.store_key}, marketplace={self.marketplace}, "
                f"total={self.total_quantity}, remote={self.marketplace_quantity}, needs_sync={self.needs_sync})>")


class LocationPriority(Base):
    """Order in which locations give up stock when a marketplace sale comes in."""

    __tablename__ = "location_priorities"
    __table_args__ = (
        UniqueConstraint("store_key", "location_key", name="uq_location_priority"),
    )

    id = Column(Integer, primary_key=True)
    store_key = Column(String(64), nullable=False, index=True)
    location_key = Column(String(255), nullable=False)
    location_name = Column(String(255), nullable=True)
    priority = Column(Integer, nullable=False, default=0)  # lower drains first
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
