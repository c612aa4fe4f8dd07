"""
The marketplace boundary.

Every marketplace the sync engine talks to implements ``MarketplaceInterface``.
All four operations are idempotent "set state" calls so the queue can repeat
them safely, and all of them may raise one of the ``PlatformServiceError``
subclasses from ``app.core.exceptions``.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel

from app.core.exceptions import (
    ListingNotFoundError,
    MarketplaceUnavailableError,
    MarketplaceValidationError,
    RateLimitError,
)


class ListingRef(BaseModel):
    """Remote identifiers of one listing, copied off a MarketplaceListing row."""
    listing_id: Optional[str] = None
    product_id: Optional[str] = None
    variant_id: Optional[str] = None
    inventory_item_id: Optional[str] = None
    location_id: Optional[str] = None
    sku: Optional[str] = None

    @classmethod
    def from_listing(cls, listing, sku: Optional[str] = None) -> "ListingRef":
        return cls(
            listing_id=listing.listing_ref,
            product_id=listing.product_ref,
            variant_id=listing.variant_ref,
            inventory_item_id=listing.inventory_item_ref,
            location_id=listing.location_ref,
            sku=sku,
        )

    def shares_remote_with(self, other: "ListingRef", match_sku: bool = False) -> bool:
        """True when both refs point at the same remote object.

        ``match_sku`` is for marketplaces that address listings by SKU.
        """
        pairs = [
            (self.listing_id, other.listing_id),
            (self.product_id, other.product_id),
            (self.inventory_item_id, other.inventory_item_id),
        ]
        if match_sku:
            pairs.append((self.sku, other.sku))
        return any(mine and mine == theirs for mine, theirs in pairs)


class PushResult(BaseModel):
    ok: bool
    remote_id: Optional[str] = None
    product_id: Optional[str] = None
    variant_id: Optional[str] = None
    inventory_item_id: Optional[str] = None


class ListingState(BaseModel):
    quantity: int
    active: bool
    sold_at: Optional[datetime] = None


class MarketplaceInterface(ABC):
    name: str = "marketplace"

    @abstractmethod
    async def push_inventory_update(
        self, ref: ListingRef, quantity: int, item: Optional[Dict[str, Any]] = None
    ) -> PushResult:
        """Set the listing's available quantity, creating the listing when ``ref`` has no id."""
        pass

    @abstractmethod
    async def zero_inventory(self, ref: ListingRef) -> bool:
        """Set available quantity to 0 without removing the listing"""
        pass

    @abstractmethod
    async def remove_listing(self, ref: ListingRef) -> bool:
        """Remove the listing. Removing an already-missing listing succeeds."""
        pass

    @abstractmethod
    async def fetch_listing_state(self, ref: ListingRef) -> ListingState:
        """Authoritative state of the listing; raises ListingNotFoundError when it no longer exists"""
        pass


def raise_for_marketplace_status(response: httpx.Response, marketplace: str) -> None:
    """Translate an HTTP error response into the sync error taxonomy."""
    status = response.status_code
    if status < 400:
        return

    detail = response.text[:500]
    if status == 429:
        retry_after = response.headers.get("Retry-After")
        try:
            retry_seconds = float(retry_after) if retry_after else None
        except ValueError:
            retry_seconds = None
        raise RateLimitError(f"{marketplace} rate limit exceeded: {detail}", retry_after=retry_seconds)
    if status == 404:
        raise ListingNotFoundError(f"{marketplace} resource not found: {detail}", status_code=status)
    if status >= 500:
        raise MarketplaceUnavailableError(f"{marketplace} server error {status}: {detail}", status_code=status)
    raise MarketplaceValidationError(f"{marketplace} rejected request ({status}): {detail}", status_code=status)
