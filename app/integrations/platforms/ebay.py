import logging
from typing import Any, Dict, Optional

import httpx

from app.core.exceptions import (
    ListingNotFoundError,
    MarketplaceUnavailableError,
    MarketplaceValidationError,
)
from app.integrations.base import (
    ListingRef,
    ListingState,
    MarketplaceInterface,
    PushResult,
    raise_for_marketplace_status,
)

logger = logging.getLogger(__name__)


class EbayMarketplace(MarketplaceInterface):
    """
    eBay implementation of the marketplace boundary, on the Sell Inventory API.

    The eBay inventory item is keyed by our SKU, so ``ListingRef.sku`` (or the
    stored ``inventory_item_id``) is what every call addresses. Quantity is set
    through ``availability.shipToLocationAvailability`` which replaces, not adds.
    """

    name = "ebay"

    INVENTORY_API = "https://api.ebay.com/sell/inventory/v1"

    def __init__(
        self,
        access_token: str,
        sandbox: bool = False,
        marketplace_id: str = "EBAY_US",
        timeout: float = 30.0,
        listing_defaults: Optional[Dict[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token = access_token
        self.sandbox = sandbox
        self.marketplace_id = marketplace_id
        self.timeout = timeout
        self.listing_defaults = listing_defaults or {}
        self._transport = transport

        if sandbox:
            self.INVENTORY_API = "https://api.sandbox.ebay.com/sell/inventory/v1"

    def _get_headers(self) -> Dict[str, str]:
        """Get headers with auth token for API requests"""
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Content-Language": "en-US",
        }

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> httpx.Response:
        url = f"{self.INVENTORY_API}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.request(method, url, headers=self._get_headers(), json=json)
        except httpx.RequestError as e:
            logger.error(f"Network error calling eBay {method} {path}: {str(e)}")
            raise MarketplaceUnavailableError(f"Network error calling eBay: {str(e)}")

        raise_for_marketplace_status(response, self.name)
        return response

    @staticmethod
    def _sku(ref: ListingRef) -> str:
        sku = ref.inventory_item_id or ref.sku
        if not sku:
            raise MarketplaceValidationError("eBay listings are addressed by SKU and none was given")
        return sku

    async def _get_inventory_item(self, sku: str) -> Dict[str, Any]:
        response = await self._request("GET", f"/inventory_item/{sku}")
        return response.json()

    async def _put_inventory_item(self, sku: str, quantity: int, item: Optional[Dict[str, Any]] = None) -> None:
        """
        Create or replace the inventory item for ``sku``.

        PUT is a full replacement on eBay, so the existing product block is
        carried over when we only mean to change availability.
        """
        body: Dict[str, Any] = {}
        if item is None:
            existing = await self._get_inventory_item(sku)
            body = {k: v for k, v in existing.items() if k in ("product", "condition", "packageWeightAndSize")}
        else:
            title = " ".join(
                str(part) for part in (item.get("brand_title"), item.get("subject"), item.get("grade")) if part
            ) or sku
            body = {
                "condition": "USED_EXCELLENT" if item.get("item_type") != "graded" else "LIKE_NEW",
                "product": {
                    "title": title[:80],
                    "aspects": {
                        key: [str(item[field])]
                        for key, field in (("Brand", "brand_title"), ("Grade", "grade"), ("Category", "main_category"))
                        if item.get(field)
                    },
                },
            }

        body["availability"] = {"shipToLocationAvailability": {"quantity": quantity}}
        await self._request("PUT", f"/inventory_item/{sku}", json=body)

    async def _create_offer(self, sku: str, item: Dict[str, Any]) -> Optional[str]:
        """Create and publish an offer for ``sku``; returns the eBay listing id."""
        offer: Dict[str, Any] = {
            "sku": sku,
            "marketplaceId": self.marketplace_id,
            "format": "FIXED_PRICE",
            "pricingSummary": {
                "price": {"value": str(item.get("price") or "0.00"), "currency": "USD"}
            },
        }
        if self.listing_defaults.get("category_id"):
            offer["categoryId"] = self.listing_defaults["category_id"]
        if self.listing_defaults.get("merchant_location_key"):
            offer["merchantLocationKey"] = self.listing_defaults["merchant_location_key"]
        policies = {
            "fulfillmentPolicyId": self.listing_defaults.get("fulfillment_policy_id"),
            "paymentPolicyId": self.listing_defaults.get("payment_policy_id"),
            "returnPolicyId": self.listing_defaults.get("return_policy_id"),
        }
        policies = {k: v for k, v in policies.items() if v}
        if policies:
            offer["listingPolicies"] = policies

        response = await self._request("POST", "/offer", json=offer)
        offer_id = response.json().get("offerId")
        if not offer_id:
            raise MarketplaceValidationError(f"eBay did not return an offer id for SKU {sku}")

        response = await self._request("POST", f"/offer/{offer_id}/publish")
        listing_id = response.json().get("listingId")
        logger.info(f"Published eBay offer {offer_id} for SKU {sku} as listing {listing_id}")
        return listing_id

    async def push_inventory_update(
        self, ref: ListingRef, quantity: int, item: Optional[Dict[str, Any]] = None
    ) -> PushResult:
        sku = self._sku(ref)
        if ref.listing_id:
            await self._put_inventory_item(sku, quantity)
            return PushResult(ok=True, remote_id=ref.listing_id, inventory_item_id=sku)

        await self._put_inventory_item(sku, quantity, item=item or {})
        listing_id = await self._create_offer(sku, item or {})
        return PushResult(ok=True, remote_id=listing_id, inventory_item_id=sku)

    async def zero_inventory(self, ref: ListingRef) -> bool:
        await self._put_inventory_item(self._sku(ref), 0)
        return True

    async def remove_listing(self, ref: ListingRef) -> bool:
        """
        Delete the inventory item; eBay withdraws and deletes its offers with it.

        Returns:
            bool: True, also when the item was already gone
        """
        sku = ref.inventory_item_id or ref.sku
        if not sku:
            return True
        try:
            await self._request("DELETE", f"/inventory_item/{sku}")
        except ListingNotFoundError:
            logger.info(f"eBay inventory item {sku} already gone")
        return True

    async def fetch_listing_state(self, ref: ListingRef) -> ListingState:
        data = await self._get_inventory_item(self._sku(ref))
        availability = (data.get("availability") or {}).get("shipToLocationAvailability") or {}
        quantity = int(availability.get("quantity") or 0)
        return ListingState(quantity=max(quantity, 0), active=quantity > 0)
