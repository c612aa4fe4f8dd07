# app/services/sync_rules.py
"""
Rule engine deciding which unlisted items belong on a marketplace.

Rules are evaluated highest priority first (ties by id); the first rule whose
predicates all hold decides. An include rule marks the item's listing row
``sync_enabled=True`` and, with ``auto_queue``, enqueues a push. An exclude
rule marks it ``sync_enabled=False``. Items no rule matches are left alone.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, get_settings
from app.core.enums import ListingSyncStatus, Marketplace, RuleType, SyncAction
from app.core.exceptions import QueueConflictError, SyncRuleNotFoundError, ValidationError
from app.models.inventory_item import InventoryItem, MarketplaceListing
from app.models.sync_rule import SyncRule
from app.services.sync_logger import SyncLogger
from app.services.sync_queue.queue import SyncQueueService

logger = logging.getLogger(__name__)

MAX_ERROR_DETAILS = 20
PREVIEW_SAMPLE_SIZE = 20

RULE_FIELDS = (
    "name", "rule_type", "category_match", "brand_match", "min_price", "max_price",
    "graded_only", "priority", "is_active", "auto_queue",
)


def _norm(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def matches_category(rule_categories: Sequence[str], item) -> bool:
    """Any rule category is a substring of the item's category, sub category or brand, or the reverse."""
    if not rule_categories:
        return True
    fields = [f for f in (_norm(item.main_category), _norm(item.sub_category), _norm(item.brand_title)) if f]
    for category in rule_categories:
        wanted = _norm(category)
        if not wanted:
            continue
        for field_value in fields:
            if wanted in field_value or field_value in wanted:
                return True
    return False


def matches_brand(keywords: Sequence[str], item) -> bool:
    if not keywords:
        return True
    brand = _norm(item.brand_title)
    if not brand:
        return False
    return any(_norm(k) and _norm(k) in brand for k in keywords)


def matches_price(min_price: Optional[float], max_price: Optional[float], price: Optional[float]) -> bool:
    if min_price is None and max_price is None:
        return True
    if price is None:
        return False
    if min_price is not None and price < min_price:
        return False
    if max_price is not None and price > max_price:
        return False
    return True


def rule_matches(rule: SyncRule, item) -> bool:
    """All of a rule's predicates must hold; an empty predicate matches everything."""
    if not matches_category(rule.category_match or [], item):
        return False
    if not matches_brand(rule.brand_match or [], item):
        return False
    if not matches_price(rule.min_price, rule.max_price, item.price):
        return False
    if rule.graded_only and not item.is_graded:
        return False
    return True


def evaluate_rules(rules: Sequence[SyncRule], item) -> Optional[SyncRule]:
    """First matching active rule by descending priority, ties broken by id."""
    ordered = sorted((r for r in rules if r.is_active), key=lambda r: (-(r.priority or 0), r.id or 0))
    for rule in ordered:
        if rule_matches(rule, item):
            return rule
    return None


class SyncRuleService:
    def __init__(self, db: AsyncSession, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()

    # CRUD

    async def list_rules(
        self, store_key: Optional[str] = None, marketplace=None, active_only: bool = False
    ) -> List[SyncRule]:
        stmt = select(SyncRule)
        if store_key:
            stmt = stmt.where(SyncRule.store_key == store_key)
        if marketplace:
            stmt = stmt.where(SyncRule.marketplace == Marketplace(marketplace).value)
        if active_only:
            stmt = stmt.where(SyncRule.is_active.is_(True))
        stmt = stmt.order_by(SyncRule.priority.desc(), SyncRule.id.asc())
        return list((await self.db.execute(stmt)).scalars().all())

    async def get_rule(self, rule_id: int) -> SyncRule:
        rule = await self.db.get(SyncRule, rule_id)
        if rule is None:
            raise SyncRuleNotFoundError(f"Sync rule {rule_id} not found")
        return rule

    @staticmethod
    def _validate(data: Dict[str, Any]) -> None:
        if "rule_type" in data and data["rule_type"] is not None:
            try:
                data["rule_type"] = RuleType(data["rule_type"]).value
            except ValueError:
                raise ValidationError(f"Unknown rule type: {data['rule_type']}")
        min_price, max_price = data.get("min_price"), data.get("max_price")
        if min_price is not None and max_price is not None and min_price > max_price:
            raise ValidationError("min_price cannot be greater than max_price")

    async def create_rule(self, store_key: str, marketplace, data: Dict[str, Any]) -> SyncRule:
        if not store_key:
            raise ValidationError("store_key is required")
        if not data.get("name"):
            raise ValidationError("Rule name is required")
        data = {k: v for k, v in data.items() if k in RULE_FIELDS}
        self._validate(data)
        rule = SyncRule(store_key=store_key, marketplace=Marketplace(marketplace).value, **data)
        self.db.add(rule)
        await self.db.commit()
        await self.db.refresh(rule)
        logger.info(f"Created sync rule {rule.id} '{rule.name}' for {store_key}/{rule.marketplace}")
        return rule

    async def update_rule(self, rule_id: int, data: Dict[str, Any]) -> SyncRule:
        rule = await self.get_rule(rule_id)
        data = {k: v for k, v in data.items() if k in RULE_FIELDS}
        merged = {"min_price": rule.min_price, "max_price": rule.max_price, **data}
        self._validate(merged)
        for key, value in data.items():
            setattr(rule, key, merged.get(key, value))
        await self.db.commit()
        await self.db.refresh(rule)
        return rule

    async def delete_rule(self, rule_id: int) -> None:
        rule = await self.get_rule(rule_id)
        await self.db.delete(rule)
        await self.db.commit()

    # Evaluation

    async def _candidates(self, store_key: str, marketplace: str) -> List[InventoryItem]:
        """Non-deleted items of the store with no listing reference on the marketplace."""
        stmt = (
            select(InventoryItem)
            .outerjoin(
                MarketplaceListing,
                and_(
                    MarketplaceListing.inventory_item_id == InventoryItem.id,
                    MarketplaceListing.marketplace == marketplace,
                ),
            )
            .where(
                InventoryItem.store_key == store_key,
                InventoryItem.deleted_at.is_(None),
                MarketplaceListing.listing_ref.is_(None),
            )
            .order_by(InventoryItem.id)
        )
        return list((await self.db.execute(stmt)).scalars().all())

    async def preview(self, store_key: str, marketplace) -> Dict[str, Any]:
        """Dry run of apply: what each rule would match, nothing written."""
        marketplace = Marketplace(marketplace).value
        rules = await self.list_rules(store_key, marketplace, active_only=True)
        items = await self._candidates(store_key, marketplace)

        per_rule: Dict[int, Dict[str, Any]] = {
            r.id: {"rule_id": r.id, "name": r.name, "rule_type": r.rule_type, "matched": 0, "sample_ids": []}
            for r in rules
        }
        included = excluded = unmatched = 0
        for item in items:
            rule = evaluate_rules(rules, item)
            if rule is None:
                unmatched += 1
                continue
            entry = per_rule[rule.id]
            entry["matched"] += 1
            if len(entry["sample_ids"]) < PREVIEW_SAMPLE_SIZE:
                entry["sample_ids"].append(item.id)
            if rule.rule_type == RuleType.INCLUDE.value:
                included += 1
            else:
                excluded += 1

        return {
            "store_key": store_key,
            "marketplace": marketplace,
            "candidates": len(items),
            "included": included,
            "excluded": excluded,
            "unmatched": unmatched,
            "rules": list(per_rule.values()),
        }

    async def apply(self, store_key: str, marketplace) -> Dict[str, Any]:
        marketplace = Marketplace(marketplace).value
        rules = await self.list_rules(store_key, marketplace, active_only=True)
        items = await self._candidates(store_key, marketplace)
        queue = SyncQueueService(self.db, settings=self.settings)
        sync_logger = SyncLogger(self.db)

        results: Dict[str, Any] = {
            "candidates": len(items), "included": 0, "excluded": 0, "unmatched": 0,
            "queued": 0, "errors": [],
        }
        for item in items:
            rule = evaluate_rules(rules, item)
            if rule is None:
                results["unmatched"] += 1
                continue

            include = rule.rule_type == RuleType.INCLUDE.value
            listing = item.listing_for(marketplace)
            if listing is None:
                listing = MarketplaceListing(marketplace=marketplace, sync_status=ListingSyncStatus.PENDING.value)
                item.listings.append(listing)
            listing.sync_enabled = include
            results["included" if include else "excluded"] += 1
            await sync_logger.log_operation(
                "rule_applied",
                store_key=store_key,
                marketplace=marketplace,
                sku=item.sku,
                inventory_item_id=item.id,
                after={"rule_id": rule.id, "rule": rule.name, "sync_enabled": include},
            )
            await self.db.commit()

            if include and rule.auto_queue:
                try:
                    await queue.enqueue(item.id, marketplace, SyncAction.PUSH, payload={"rule_id": rule.id})
                    results["queued"] += 1
                except QueueConflictError as e:
                    logger.info(f"Not queueing item {item.id}: {str(e)}")
                except Exception as e:
                    await self.db.rollback()
                    logger.error(f"Failed to queue item {item.id} from rule {rule.id}: {str(e)}")
                    if len(results["errors"]) < MAX_ERROR_DETAILS:
                        results["errors"].append({"inventory_item_id": item.id, "error": str(e)})

        logger.info(f"Applied sync rules for {store_key}/{marketplace}: {results['included']} included, "
                    f"{results['excluded']} excluded, {results['queued']} queued")
        return results
