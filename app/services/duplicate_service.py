# app/services/duplicate_service.py
"""
Collapses inventory records that share a natural key (grading certificate).

Within a group the earliest created record is kept; the others are soft
deleted and their marketplace listings removed. A duplicate whose listing is
the kept record's own listing is only deleted locally. When a remote removal
fails the listing is zeroed instead so it cannot sell. If that fails too the
local soft delete still stands and the next reconciliation run picks the
orphan up.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, get_settings
from app.core.enums import ListingSyncStatus, Marketplace
from app.core.exceptions import MarketplaceNotConfiguredError, ValidationError
from app.core.utils import utcnow
from app.integrations.base import ListingRef
from app.integrations.setup import MarketplaceRegistry
from app.models.inventory_item import InventoryItem, MarketplaceListing
from app.services.aggregation_service import AggregationService
from app.services.sync_logger import SyncLogger

logger = logging.getLogger(__name__)

MAX_ERROR_DETAILS = 20


@dataclass
class DuplicateGroup:
    natural_key: str
    keep_id: int
    remove_ids: List[int]
    skus: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "natural_key": self.natural_key,
            "keep_id": self.keep_id,
            "remove_ids": self.remove_ids,
            "skus": self.skus,
        }


class DuplicateService:
    def __init__(self, db: AsyncSession, registry: MarketplaceRegistry, settings: Optional[Settings] = None):
        self.db = db
        self.registry = registry
        self.settings = settings or get_settings()
        self.sync_logger = SyncLogger(db)

    def _group_scope(self, store_key: str, marketplace: str, *columns):
        """Non-deleted items of the store that are linked on the marketplace."""
        return (
            select(*(columns or (InventoryItem,)))
            .join(MarketplaceListing, MarketplaceListing.inventory_item_id == InventoryItem.id)
            .where(
                InventoryItem.store_key == store_key,
                InventoryItem.deleted_at.is_(None),
                InventoryItem.natural_key.isnot(None),
                InventoryItem.natural_key != "",
                MarketplaceListing.marketplace == marketplace,
                MarketplaceListing.listing_ref.isnot(None),
            )
        )

    async def _members(self, store_key: str, marketplace: str, natural_key: str) -> List[InventoryItem]:
        stmt = (
            self._group_scope(store_key, marketplace)
            .where(InventoryItem.natural_key == natural_key)
            .order_by(InventoryItem.created_at.asc(), InventoryItem.id.asc())
        )
        return list((await self.db.execute(stmt)).scalars().all())

    async def find_duplicate_groups(self, store_key: str, marketplace) -> List[DuplicateGroup]:
        if not store_key:
            raise ValidationError("store_key is required")
        marketplace = Marketplace(marketplace).value

        keys_stmt = (
            self._group_scope(store_key, marketplace, InventoryItem.natural_key)
            .group_by(InventoryItem.natural_key)
            .having(func.count(InventoryItem.id) > 1)
            .order_by(InventoryItem.natural_key)
        )
        natural_keys = list((await self.db.execute(keys_stmt)).scalars().all())

        groups = []
        for natural_key in natural_keys:
            members = await self._members(store_key, marketplace, natural_key)
            if len(members) < 2:
                continue
            groups.append(DuplicateGroup(
                natural_key=natural_key,
                keep_id=members[0].id,
                remove_ids=[m.id for m in members[1:]],
                skus=sorted({m.sku for m in members if m.sku}),
            ))
        logger.info(f"Found {len(groups)} duplicate group(s) for {store_key} on {marketplace}")
        return groups

    async def resolve_group(
        self, store_key: str, marketplace, natural_key: str, dry_run: bool = False
    ) -> Dict[str, Any]:
        """
        Keep the earliest member of one group and soft delete the rest.

        The local changes are committed before any remote call is made.
        """
        marketplace = Marketplace(marketplace).value
        members = await self._members(store_key, marketplace, natural_key)
        result: Dict[str, Any] = {
            "natural_key": natural_key,
            "keep_id": members[0].id if members else None,
            "removed": [],
            "remote_removed": 0,
            "remote_shared": 0,
            "remote_zeroed": 0,
            "remote_failures": 0,
            "errors": [],
            "dry_run": dry_run,
        }
        if len(members) < 2:
            return result

        keep, duplicates = members[0], members[1:]
        if dry_run:
            result["removed"] = [m.id for m in duplicates]
            return result

        now = utcnow()
        kept_listing = keep.listing_for(marketplace)
        kept_ref = ListingRef.from_listing(kept_listing, sku=keep.sku) if kept_listing else None
        match_sku = marketplace == Marketplace.EBAY.value

        refs = []
        for member in duplicates:
            listing = member.listing_for(marketplace)
            before = member.snapshot()
            ref = ListingRef.from_listing(listing, sku=member.sku) if listing else None
            if ref is not None and kept_ref is not None and ref.shares_remote_with(kept_ref, match_sku=match_sku):
                logger.info(f"Duplicate item {member.id} shares its {marketplace} listing with kept item {keep.id}; "
                            f"leaving the listing in place")
                result["remote_shared"] += 1
                ref = None
            refs.append((member.id, ref))
            member.deleted_at = now
            member.deleted_reason = f"Duplicate of {keep.id}"
            if listing is not None:
                listing.sync_status = ListingSyncStatus.REMOVED.value
                listing.removed_at = now
            await self.sync_logger.log_operation(
                "duplicate_removed",
                store_key=store_key,
                marketplace=marketplace,
                sku=member.sku,
                inventory_item_id=member.id,
                before=before,
                after={"deleted_reason": member.deleted_reason, "kept_id": keep.id},
            )
            result["removed"].append(member.id)

        aggregation = AggregationService(self.db, settings=self.settings)
        for sku in sorted({m.sku for m in members if m.sku}):
            await aggregation.recalculate_sku(store_key, marketplace, sku)
        await self.db.commit()
        logger.info(f"Duplicate group {natural_key}: kept {keep.id}, soft deleted {result['removed']}")

        try:
            client = self.registry.get(marketplace)
        except MarketplaceNotConfiguredError as e:
            result["remote_failures"] = sum(1 for _, ref in refs if ref is not None)
            result["errors"].append({"natural_key": natural_key, "error": str(e)})
            return result

        for item_id, ref in refs:
            if ref is None:
                continue
            try:
                await client.remove_listing(ref)
                result["remote_removed"] += 1
                continue
            except Exception as e:
                logger.warning(f"Failed to remove {marketplace} listing for duplicate item {item_id}, "
                               f"zeroing it instead: {str(e)}")
            try:
                await client.zero_inventory(ref)
                result["remote_zeroed"] += 1
            except Exception as e:
                result["remote_failures"] += 1
                logger.error(f"Failed to remove or zero {marketplace} listing for duplicate item {item_id}: {str(e)}")
                if len(result["errors"]) < MAX_ERROR_DETAILS:
                    result["errors"].append({"inventory_item_id": item_id, "error": str(e)})
        return result

    async def resolve_all(self, store_key: str, marketplace, dry_run: bool = False) -> Dict[str, Any]:
        """Resolve every group. Each group commits on its own; one failing group does not stop the rest."""
        groups = await self.find_duplicate_groups(store_key, marketplace)
        summary: Dict[str, Any] = {
            "groups": len(groups),
            "resolved": 0,
            "removed": 0,
            "remote_removed": 0,
            "remote_shared": 0,
            "remote_zeroed": 0,
            "remote_failures": 0,
            "failed": 0,
            "errors": [],
            "dry_run": dry_run,
        }

        for group in groups:
            try:
                result = await self.resolve_group(store_key, marketplace, group.natural_key, dry_run=dry_run)
            except Exception as e:
                await self.db.rollback()
                summary["failed"] += 1
                logger.error(f"Failed to resolve duplicate group {group.natural_key}: {str(e)}")
                if len(summary["errors"]) < MAX_ERROR_DETAILS:
                    summary["errors"].append({"natural_key": group.natural_key, "error": str(e)})
                continue

            summary["resolved"] += 1
            summary["removed"] += len(result["removed"])
            summary["remote_removed"] += result["remote_removed"]
            summary["remote_shared"] += result["remote_shared"]
            summary["remote_zeroed"] += result["remote_zeroed"]
            summary["remote_failures"] += result["remote_failures"]
            for error in result["errors"]:
                if len(summary["errors"]) < MAX_ERROR_DETAILS:
                    summary["errors"].append(error)

        logger.info(f"Duplicate resolution for {store_key}/{marketplace}: {summary['removed']} removed "
                    f"from {summary['resolved']} group(s), {summary['remote_failures']} remote failure(s)")
        return summary
