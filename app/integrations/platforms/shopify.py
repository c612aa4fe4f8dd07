"""
Shopify implementation of the marketplace boundary, on the Admin GraphQL API.

Quantities are always *set* (``inventorySetOnHandQuantities``), never adjusted,
so a job that runs twice leaves the same state behind.
"""

import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from app.core.exceptions import (
    ListingNotFoundError,
    MarketplaceUnavailableError,
    MarketplaceValidationError,
    RateLimitError,
)
from app.integrations.base import (
    ListingRef,
    ListingState,
    MarketplaceInterface,
    PushResult,
    raise_for_marketplace_status,
)

logger = logging.getLogger(__name__)


PRODUCT_CREATE = """
mutation productCreate($input: ProductInput!) {
  productCreate(input: $input) {
    product {
      id
      variants(first: 1) { edges { node { id inventoryItem { id } } } }
    }
    userErrors { field message }
  }
}
"""

VARIANTS_BULK_UPDATE = """
mutation productVariantsBulkUpdate($productId: ID!, $variants: [ProductVariantsBulkInput!]!) {
  productVariantsBulkUpdate(productId: $productId, variants: $variants) {
    productVariants { id inventoryItem { id } }
    userErrors { field message }
  }
}
"""

INVENTORY_ACTIVATE = """
mutation inventoryActivate($inventoryItemId: ID!, $locationId: ID!) {
  inventoryActivate(inventoryItemId: $inventoryItemId, locationId: $locationId) {
    inventoryLevel { id }
    userErrors { field message }
  }
}
"""

SET_ON_HAND = """
mutation inventorySetOnHandQuantities($input: InventorySetOnHandQuantitiesInput!) {
  inventorySetOnHandQuantities(input: $input) {
    inventoryAdjustmentGroup { id }
    userErrors { field message }
  }
}
"""

PRODUCT_DELETE = """
mutation productDelete($input: ProductDeleteInput!) {
  productDelete(input: $input) {
    deletedProductId
    userErrors { field message }
  }
}
"""

INVENTORY_LEVEL = """
query inventoryLevel($inventoryItemId: ID!, $locationId: ID!) {
  inventoryItem(id: $inventoryItemId) {
    id
    variant { product { id status } }
    inventoryLevel(locationId: $locationId) {
      quantities(names: ["available"]) { name quantity }
    }
  }
}
"""


class ShopifyMarketplace(MarketplaceInterface):
    name = "shopify"

    def __init__(
        self,
        shop_url: str,
        access_token: str,
        location_gid: Optional[str] = None,
        api_version: str = "2024-07",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        shop_url = shop_url.rstrip("/")
        if not shop_url.startswith("http"):
            shop_url = f"https://{shop_url}"
        self.endpoint = f"{shop_url}/admin/api/{api_version}/graphql.json"
        self.access_token = access_token
        self.location_gid = location_gid
        self.timeout = timeout
        self._transport = transport

    def _get_headers(self) -> Dict[str, str]:
        return {
            "X-Shopify-Access-Token": self.access_token,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _execute(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """POST a GraphQL document and return its ``data``, raising sync errors on failure."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.endpoint,
                    headers=self._get_headers(),
                    content=json.dumps({"query": query, "variables": variables or {}}),
                )
        except httpx.RequestError as e:
            logger.error(f"Shopify network error: {str(e)}")
            raise MarketplaceUnavailableError(f"Shopify network error: {str(e)}")

        raise_for_marketplace_status(response, self.name)
        body = response.json()

        errors = body.get("errors")
        if errors:
            codes = {(err.get("extensions") or {}).get("code") for err in errors if isinstance(err, dict)}
            if "THROTTLED" in codes:
                raise RateLimitError(f"Shopify throttled the request: {errors}")
            raise MarketplaceValidationError(f"Shopify GraphQL errors: {errors}")
        return body.get("data") or {}

    @staticmethod
    def _check_user_errors(payload: Dict[str, Any], operation: str) -> None:
        user_errors: List[Dict[str, Any]] = (payload or {}).get("userErrors") or []
        if user_errors:
            raise MarketplaceValidationError(f"Shopify {operation} failed: {user_errors}")

    @staticmethod
    def _is_missing(payload: Dict[str, Any]) -> bool:
        messages = [(err.get("message") or "").lower() for err in payload.get("userErrors") or []]
        return bool(messages) and all("does not exist" in m or "not found" in m for m in messages)

    def _location(self, ref: ListingRef) -> str:
        location = ref.location_id or self.location_gid
        if not location:
            raise MarketplaceValidationError("Shopify location is not configured for this listing")
        return location

    async def _set_quantity(self, inventory_item_id: str, location_id: str, quantity: int) -> None:
        data = await self._execute(SET_ON_HAND, {
            "input": {
                "reason": "correction",
                "setQuantities": [{
                    "inventoryItemId": inventory_item_id,
                    "locationId": location_id,
                    "quantity": quantity,
                }],
            }
        })
        self._check_user_errors(data.get("inventorySetOnHandQuantities"), "inventory update")

    async def _create_product(self, ref: ListingRef, item: Dict[str, Any], location: str) -> PushResult:
        """
        Create the product, then configure the default variant Shopify gave it.

        Variant fields are no longer accepted by ``productCreate``, so SKU,
        price and tracking go through ``productVariantsBulkUpdate``.
        """
        title = item.get("title") or " ".join(
            str(part) for part in (item.get("brand_title"), item.get("subject"), item.get("grade")) if part
        ) or ref.sku or f"Item {item.get('id')}"
        tags = [t for t in (item.get("item_type"), item.get("main_category"), item.get("brand_title")) if t]

        data = await self._execute(PRODUCT_CREATE, {
            "input": {
                "title": title,
                "vendor": item.get("brand_title") or "Collectibles",
                "productType": item.get("main_category") or "Trading Card",
                "tags": tags,
                "status": "ACTIVE",
            }
        })
        payload = data.get("productCreate") or {}
        self._check_user_errors(payload, "product create")

        product = payload.get("product") or {}
        product_id = product.get("id")
        edges = ((product.get("variants") or {}).get("edges")) or []
        node = edges[0]["node"] if edges else {}
        variant_id = node.get("id")
        inventory_item_id = (node.get("inventoryItem") or {}).get("id")
        logger.info(f"Created Shopify product {product_id} for SKU {ref.sku}")

        if variant_id:
            data = await self._execute(VARIANTS_BULK_UPDATE, {
                "productId": product_id,
                "variants": [{
                    "id": variant_id,
                    "price": str(item.get("price") or "0.00"),
                    "inventoryPolicy": "DENY",
                    "inventoryItem": {"sku": ref.sku, "tracked": True},
                }],
            })
            self._check_user_errors(data.get("productVariantsBulkUpdate"), "variant update")

        if inventory_item_id:
            data = await self._execute(INVENTORY_ACTIVATE, {
                "inventoryItemId": inventory_item_id,
                "locationId": location,
            })
            self._check_user_errors(data.get("inventoryActivate"), "inventory activate")

        return PushResult(
            ok=True,
            remote_id=product_id,
            product_id=product_id,
            variant_id=variant_id,
            inventory_item_id=inventory_item_id,
        )

    async def push_inventory_update(
        self, ref: ListingRef, quantity: int, item: Optional[Dict[str, Any]] = None
    ) -> PushResult:
        location = self._location(ref)
        if ref.inventory_item_id:
            await self._set_quantity(ref.inventory_item_id, location, quantity)
            return PushResult(
                ok=True,
                remote_id=ref.listing_id or ref.product_id,
                product_id=ref.product_id,
                variant_id=ref.variant_id,
                inventory_item_id=ref.inventory_item_id,
            )

        result = await self._create_product(ref, item or {}, location)
        if result.inventory_item_id:
            await self._set_quantity(result.inventory_item_id, location, quantity)
        return result

    async def zero_inventory(self, ref: ListingRef) -> bool:
        if not ref.inventory_item_id:
            raise ListingNotFoundError("Shopify listing has no inventory item id")
        await self._set_quantity(ref.inventory_item_id, self._location(ref), 0)
        return True

    async def remove_listing(self, ref: ListingRef) -> bool:
        product_id = ref.product_id or ref.listing_id
        if not product_id:
            return True
        data = await self._execute(PRODUCT_DELETE, {"input": {"id": product_id}})
        payload = data.get("productDelete") or {}
        # Shopify reports a missing product as a user error, not a 404
        if not payload.get("deletedProductId") and self._is_missing(payload):
            logger.info(f"Shopify product {product_id} already gone")
            return True
        self._check_user_errors(payload, "product delete")
        return True

    async def fetch_listing_state(self, ref: ListingRef) -> ListingState:
        if not ref.inventory_item_id:
            raise ListingNotFoundError("Shopify listing has no inventory item id")
        data = await self._execute(INVENTORY_LEVEL, {
            "inventoryItemId": ref.inventory_item_id,
            "locationId": self._location(ref),
        })
        inventory_item = data.get("inventoryItem")
        if not inventory_item:
            raise ListingNotFoundError(f"Shopify inventory item {ref.inventory_item_id} not found")

        product = ((inventory_item.get("variant") or {}).get("product")) or {}
        if not product:
            raise ListingNotFoundError(f"Shopify product for {ref.inventory_item_id} not found")

        level = inventory_item.get("inventoryLevel") or {}
        quantity = 0
        for entry in level.get("quantities") or []:
            if entry.get("name") == "available":
                quantity = int(entry.get("quantity") or 0)

        return ListingState(
            quantity=max(quantity, 0),
            active=(product.get("status") or "").upper() == "ACTIVE",
        )
