"""
Models for the physical inventory and its marketplace linkage.

One ``InventoryItem`` row exists per intake unit or lot. Its per-marketplace
linkage identifiers and sync status live on ``MarketplaceListing`` (one row per
item and marketplace), the same split the product / platform listing tables use.
"""

from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON, Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint,
)
from sqlalchemy.orm import relationship

from app.core.enums import ItemType, ListingSyncStatus, Marketplace
from app.core.utils import utcnow
from app.database import Base


class InventoryItem(Base):
    __tablename__ = "inventory_items"

    id = Column(Integer, primary_key=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    # Where the unit physically is
    store_key = Column(String(64), nullable=False, index=True)
    location_key = Column(String(255), nullable=True, index=True)

    # Identity
    sku = Column(String(128), nullable=True, index=True)
    natural_key = Column(String(128), nullable=True, index=True)  # grading cert number or equivalent
    quantity = Column(Integer, nullable=False, default=1)

    # Descriptive fields used by sync rules
    item_type = Column(String(32), nullable=True, default=ItemType.RAW.value)
    grade = Column(String(32), nullable=True)
    brand_title = Column(String(255), nullable=True)
    main_category = Column(String(128), nullable=True)
    sub_category = Column(String(128), nullable=True)
    subject = Column(String(255), nullable=True)
    price = Column(Float, nullable=True)

    sold_at = Column(DateTime(timezone=True), nullable=True)

    # Soft delete only
    deleted_at = Column(DateTime(timezone=True), nullable=True, index=True)
    deleted_reason = Column(Text, nullable=True)

    listings = relationship(
        "MarketplaceListing",
        back_populates="item",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def is_sold(self) -> bool:
        return self.sold_at is not None

    @property
    def is_graded(self) -> bool:
        if (self.item_type or "").lower() == ItemType.GRADED.value:
            return True
        return bool(self.grade and self.grade.strip())

    def listing_for(self, marketplace) -> Optional["MarketplaceListing"]:
        marketplace = Marketplace(marketplace).value
        for listing in self.listings:
            if listing.marketplace == marketplace:
                return listing
        return None

    def snapshot(self) -> Dict[str, Any]:
        """Plain-dict copy of the row, used for dead letters and audit logs."""
        return {
            "id": self.id,
            "store_key": self.store_key,
            "location_key": self.location_key,
            "sku": self.sku,
            "natural_key": self.natural_key,
            "quantity": self.quantity,
            "item_type": self.item_type,
            "grade": self.grade,
            "brand_title": self.brand_title,
            "main_category": self.main_category,
            "sub_category": self.sub_category,
            "subject": self.subject,
            "price": self.price,
            "sold_at": self.sold_at.isoformat() if self.sold_at else None,
            "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
            "listings": [listing.snapshot() for listing in self.listings],
        }

    def __repr__(self) -> str:
        return f"<InventoryItem(id={self.id}, sku={self.sku}, store={self.store_key}, qty={self.quantity})>"


class MarketplaceListing(Base):
    __tablename__ = "marketplace_listings"
    __table_args__ = (
        UniqueConstraint("inventory_item_id", "marketplace", name="uq_marketplace_listing_item"),
    )

    id = Column(Integer, primary_key=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    inventory_item_id = Column(
        Integer, ForeignKey("inventory_items.id", ondelete="CASCADE"), nullable=False, index=True
    )
    marketplace = Column(String(32), nullable=False, index=True)

    # Remote identifiers
    listing_ref = Column(String(255), nullable=True, index=True)
    product_ref = Column(String(255), nullable=True)
    variant_ref = Column(String(255), nullable=True)
    inventory_item_ref = Column(String(255), nullable=True)
    location_ref = Column(String(255), nullable=True)

    # Written by sync rules; None means no rule has decided yet
    sync_enabled = Column(Boolean, nullable=True)

    sync_status = Column(String(32), nullable=False, default=ListingSyncStatus.PENDING.value, index=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    last_sync_error = Column(Text, nullable=True)
    removed_at = Column(DateTime(timezone=True), nullable=True)

    # Reconciliation bookkeeping; drift is only flagged when the store trusts its own records
    last_reconciled_at = Column(DateTime(timezone=True), nullable=True)
    drift_detected = Column(Boolean, nullable=False, default=False, index=True)
    drift_detected_at = Column(DateTime(timezone=True), nullable=True)
    drift_details = Column(JSON, nullable=True)

    item = relationship("InventoryItem", back_populates="listings")

    @property
    def is_linked(self) -> bool:
        return bool(self.listing_ref)

    def clear_refs(self) -> None:
        self.listing_ref = None
        self.product_ref = None
        self.variant_ref = None
        self.inventory_item_ref = None

    def snapshot(self) -> Dict[str, Any]:
        return {
            "marketplace": self.marketplace,
            "listing_ref": self.listing_ref,
            "product_ref": self.product_ref,
            "variant_ref": self.variant_ref,
            "inventory_item_ref": self.inventory_item_ref,
            "location_ref": self.location_ref,
            "sync_status": self.sync_status,
            "sync_enabled": self.sync_enabled,
            "last_synced_at": self.last_synced_at.isoformat() if self.last_synced_at else None,
            "drift_detected": self.drift_detected,
        }

    def __repr__(self) -> str:
        return (f"<MarketplaceListing(item={self.inventory_item_id}, marketplace={self.marketplace}, "
                f"ref={self.listing_ref}, status={self.sync_status})>")
