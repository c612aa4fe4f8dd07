# app/services/reconciliation_service.py
"""
Reconciliation of local inventory records against the marketplace.

Used by both the CLI and the API. Each candidate item gets exactly one outcome:

- confirmed_sold: marketplace and local agree the item is gone
- quantity_corrected: local quantity / sold state rewritten to match the marketplace
- cleared_refs: the remote listing no longer exists, linkage cleared for a clean re-sync
- in_sync: nothing to do
- drift_detected: local and marketplace disagree but the store trusts its own
  records, so the listing is only flagged
- error: the marketplace lookup failed; the item is left untouched

In ``marketplace`` truth mode the marketplace wins every disagreement. In
``database`` truth mode a disagreement becomes drift_detected instead of
quantity_corrected or cleared_refs. ``classify_outcome`` and
``apply_truth_mode`` are shared by dry run and apply so both report the same
actions.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, get_settings
from app.core.enums import ListingSyncStatus, Marketplace, ReconcileAction, TruthMode
from app.core.exceptions import ListingNotFoundError, ValidationError
from app.core.utils import chunked, utcnow
from app.integrations.base import ListingRef, ListingState, MarketplaceInterface
from app.integrations.setup import MarketplaceRegistry
from app.models.inventory_item import InventoryItem, MarketplaceListing
from app.services.aggregation_service import AggregationService
from app.services.sync_logger import SyncLogger

logger = logging.getLogger(__name__)

MAX_ERROR_DETAILS = 20

# Actions that overwrite local records; in database truth mode they only flag drift
OVERWRITING_ACTIONS = (ReconcileAction.QUANTITY_CORRECTED, ReconcileAction.CLEARED_REFS)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class ReconciliationOutcome:
    inventory_item_id: int
    sku: Optional[str]
    action: ReconcileAction
    before: Dict[str, Any]
    after: Dict[str, Any]
    detail: str = ""
    remote: Optional[Dict[str, Any]] = None
    proposed: Optional[Dict[str, Any]] = None      # what marketplace truth would have written

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["action"] = self.action.value
        return data


@dataclass
class ReconciliationReport:
    """Result of one reconciliation run."""
    store_key: str
    marketplace: str
    dry_run: bool
    truth_mode: TruthMode = TruthMode.MARKETPLACE
    drift_only: bool = False
    processed: int = 0
    counts: Dict[str, int] = field(default_factory=lambda: {a.value: 0 for a in ReconcileAction})
    outcomes: List[ReconciliationOutcome] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def add(self, outcome: ReconciliationOutcome) -> None:
        self.processed += 1
        self.counts[outcome.action.value] += 1
        self.outcomes.append(outcome)
        if outcome.action == ReconcileAction.ERROR and len(self.errors) < MAX_ERROR_DETAILS:
            self.errors.append({"inventory_item_id": outcome.inventory_item_id, "error": outcome.detail})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "store_key": self.store_key,
            "marketplace": self.marketplace,
            "dry_run": self.dry_run,
            "truth_mode": self.truth_mode.value,
            "drift_only": self.drift_only,
            "processed": self.processed,
            "counts": self.counts,
            "outcomes": [o.to_dict() for o in self.outcomes],
            "errors": self.errors,
        }

    def print_summary(self):
        """Prints a formatted report to the console."""
        print("\n" + "=" * 50)
        print("RECONCILIATION REPORT")
        print("=" * 50)
        print(f"Store        : {self.store_key}")
        print(f"Marketplace  : {self.marketplace}")
        print(f"Mode         : {'Dry Run' if self.dry_run else 'Live Run'}")
        print(f"Truth        : {self.truth_mode.value}{' (drift only)' if self.drift_only else ''}")
        print("\n## Summary ##")
        print(f"- Items Processed    : {self.processed}")
        for action, count in self.counts.items():
            print(f"- {action:<19}: {count}")
        if self.errors:
            print("\n## Errors ##")
            for error in self.errors:
                print(f"- item {error['inventory_item_id']}: {error['error']}")
        print("\n--- End of Report ---")


def local_state(item: InventoryItem, listing: Optional[MarketplaceListing]) -> Dict[str, Any]:
    return {
        "quantity": item.quantity,
        "sold_at": _iso(item.sold_at),
        "sync_status": listing.sync_status if listing else None,
        "listing_ref": listing.listing_ref if listing else None,
    }


def classify_outcome(
    before: Dict[str, Any],
    remote: Optional[ListingState],
    now: datetime,
) -> Tuple[ReconcileAction, Dict[str, Any], str]:
    """
    Decide what reconciliation does for one item.

    ``remote`` is None when the item has no listing reference or the
    marketplace says the listing no longer exists. Pure: no I/O, no mutation.
    """
    quantity = before["quantity"] or 0
    is_sold = before["sold_at"] is not None
    after = dict(before)

    if not before["listing_ref"] or remote is None:
        if is_sold:
            after.update(quantity=0, sync_status=ListingSyncStatus.SYNCED.value)
            return ReconcileAction.CONFIRMED_SOLD, after, "Listing gone and item already sold"
        after.update(listing_ref=None, sync_status=ListingSyncStatus.PENDING.value)
        return ReconcileAction.CLEARED_REFS, after, "Listing not found on marketplace; linkage cleared"

    if remote.quantity == 0 or not remote.active:
        if is_sold or quantity == 0:
            after.update(
                quantity=0,
                sold_at=before["sold_at"] or _iso(remote.sold_at or now),
                sync_status=ListingSyncStatus.SYNCED.value,
            )
            return ReconcileAction.CONFIRMED_SOLD, after, "Marketplace shows no stock; local agrees"
        after.update(quantity=0, sold_at=_iso(remote.sold_at or now), sync_status=ListingSyncStatus.SYNCED.value)
        return ReconcileAction.QUANTITY_CORRECTED, after, f"Marketplace shows no stock; local had {quantity}"

    if is_sold or quantity != remote.quantity:
        after.update(quantity=remote.quantity, sold_at=None, sync_status=ListingSyncStatus.SYNCED.value)
        detail = (f"Marketplace still lists {remote.quantity}; local was sold" if is_sold
                  else f"Quantity {quantity} -> {remote.quantity}")
        return ReconcileAction.QUANTITY_CORRECTED, after, detail

    after.update(sync_status=ListingSyncStatus.SYNCED.value)
    return ReconcileAction.IN_SYNC, after, "Quantities match"


def apply_truth_mode(
    action: ReconcileAction,
    before: Dict[str, Any],
    after: Dict[str, Any],
    detail: str,
    truth_mode: TruthMode,
) -> Tuple[ReconcileAction, Dict[str, Any], str, Optional[Dict[str, Any]]]:
    """Turn an overwriting action into drift_detected when local records are the truth."""
    if truth_mode == TruthMode.MARKETPLACE or action not in OVERWRITING_ACTIONS:
        return action, after, detail, None
    return ReconcileAction.DRIFT_DETECTED, dict(before), f"{detail} (kept local, {action.value} skipped)", after


class ReconciliationService:
    def __init__(self, db: AsyncSession, registry: MarketplaceRegistry, settings: Optional[Settings] = None):
        self.db = db
        self.registry = registry
        self.settings = settings or get_settings()
        self.sync_logger = SyncLogger(db)

    async def _candidates(
        self, store_key: str, marketplace: str, item_ids: Optional[Sequence[int]], drift_only: bool = False
    ) -> List[int]:
        stmt = select(InventoryItem.id).where(
            InventoryItem.store_key == store_key,
            InventoryItem.deleted_at.is_(None),
        )
        if item_ids is not None:
            stmt = stmt.where(InventoryItem.id.in_(list(item_ids)))
        else:
            stmt = stmt.join(
                MarketplaceListing, MarketplaceListing.inventory_item_id == InventoryItem.id
            ).where(MarketplaceListing.marketplace == marketplace)
            if drift_only:
                # Flagged listings plus listings no run has looked at yet
                stmt = stmt.where(or_(
                    MarketplaceListing.drift_detected.is_(True),
                    MarketplaceListing.last_reconciled_at.is_(None),
                ))
        stmt = stmt.order_by(InventoryItem.id)
        return list((await self.db.execute(stmt)).scalars().all())

    @staticmethod
    async def _fetch_remote(
        client: Optional[MarketplaceInterface], item: InventoryItem, listing: Optional[MarketplaceListing]
    ) -> Optional[ListingState]:
        if listing is None or not listing.listing_ref:
            return None
        try:
            return await client.fetch_listing_state(ListingRef.from_listing(listing, sku=item.sku))
        except ListingNotFoundError:
            return None

    async def reconcile(
        self,
        store_key: str,
        marketplace,
        item_ids: Optional[Sequence[int]] = None,
        dry_run: bool = False,
        batch_size: Optional[int] = None,
        truth_mode=None,
        drift_only: bool = False,
    ) -> ReconciliationReport:
        if not store_key:
            raise ValidationError("store_key is required for reconciliation")
        if drift_only and item_ids is not None:
            raise ValidationError("item_ids and drift_only cannot be combined")
        marketplace = Marketplace(marketplace).value
        try:
            truth_mode = TruthMode(truth_mode or self.settings.RECONCILE_TRUTH_MODE)
        except ValueError:
            raise ValidationError(f"Unknown truth mode: {truth_mode}")
        batch_size = batch_size or self.settings.RECONCILE_BATCH_SIZE
        client = self.registry.get(marketplace)

        report = ReconciliationReport(
            store_key=store_key, marketplace=marketplace, dry_run=dry_run,
            truth_mode=truth_mode, drift_only=drift_only,
        )
        candidate_ids = await self._candidates(store_key, marketplace, item_ids, drift_only=drift_only)
        logger.info(f"Reconciling {len(candidate_ids)} item(s) for {store_key} on {marketplace} "
                    f"({truth_mode.value} truth{', drift only' if drift_only else ''})"
                    f"{' (dry run)' if dry_run else ''}")

        touched_skus: Set[str] = set()
        for batch_ids in chunked(candidate_ids, batch_size):
            items = list((await self.db.execute(
                select(InventoryItem).where(InventoryItem.id.in_(list(batch_ids))).order_by(InventoryItem.id)
            )).scalars().all())
            listings = {item.id: item.listing_for(marketplace) for item in items}

            remotes = await asyncio.gather(
                *(self._fetch_remote(client, item, listings[item.id]) for item in items),
                return_exceptions=True,
            )

            now = utcnow()
            for item, remote in zip(items, remotes):
                listing = listings[item.id]
                before = local_state(item, listing)

                if isinstance(remote, Exception):
                    logger.error(f"Marketplace lookup failed for item {item.id}: {str(remote)}")
                    outcome = ReconciliationOutcome(
                        inventory_item_id=item.id, sku=item.sku, action=ReconcileAction.ERROR,
                        before=before, after=before, detail=str(remote) or remote.__class__.__name__,
                    )
                else:
                    action, after, detail = classify_outcome(before, remote, now)
                    action, after, detail, proposed = apply_truth_mode(action, before, after, detail, truth_mode)
                    outcome = ReconciliationOutcome(
                        inventory_item_id=item.id, sku=item.sku, action=action,
                        before=before, after=after, detail=detail,
                        remote=remote.model_dump(mode="json") if remote is not None else None,
                        proposed=proposed,
                    )
                    if not dry_run:
                        self._apply(item, listing, outcome, now)
                        if action not in (ReconcileAction.IN_SYNC, ReconcileAction.DRIFT_DETECTED) and item.sku:
                            touched_skus.add(item.sku)

                report.add(outcome)
                if not dry_run:
                    await self.sync_logger.log_operation(
                        f"reconcile:{outcome.action.value}",
                        store_key=store_key,
                        marketplace=marketplace,
                        sku=item.sku,
                        inventory_item_id=item.id,
                        before=outcome.before,
                        after=outcome.after,
                        success=outcome.action != ReconcileAction.ERROR,
                        error_message=outcome.detail if outcome.action == ReconcileAction.ERROR else None,
                    )

            if not dry_run:
                await self.db.commit()

        if not dry_run and touched_skus:
            aggregation = AggregationService(self.db, settings=self.settings)
            for sku in sorted(touched_skus):
                await aggregation.recalculate_sku(store_key, marketplace, sku)
            await self.db.commit()

        logger.info(f"Reconciliation {store_key}/{marketplace} done: {report.counts}")
        return report

    @staticmethod
    def _apply(
        item: InventoryItem,
        listing: Optional[MarketplaceListing],
        outcome: ReconciliationOutcome,
        now: datetime,
    ) -> None:
        if outcome.action == ReconcileAction.DRIFT_DETECTED:
            if listing is not None:
                listing.drift_detected = True
                listing.drift_detected_at = listing.drift_detected_at or now
                listing.drift_details = {
                    "detail": outcome.detail,
                    "local": outcome.before,
                    "marketplace": outcome.remote,
                    "proposed": outcome.proposed,
                }
                listing.last_reconciled_at = now
            return

        after = outcome.after
        item.quantity = after["quantity"]
        if after["sold_at"] is None:
            item.sold_at = None
        elif item.sold_at is None:
            item.sold_at = datetime.fromisoformat(after["sold_at"])

        if listing is None:
            return
        listing.sync_status = after["sync_status"]
        listing.last_sync_error = None
        if outcome.action == ReconcileAction.CLEARED_REFS:
            listing.clear_refs()
        elif outcome.action == ReconcileAction.CONFIRMED_SOLD and outcome.remote is None:
            listing.removed_at = listing.removed_at or now
        listing.last_synced_at = now
        listing.last_reconciled_at = now
        listing.drift_detected = False
        listing.drift_detected_at = None
        listing.drift_details = None
