from typing import Awaitable, Callable, Dict, List, Optional, Set

from app.core.exceptions import ListingNotFoundError, MarketplaceUnavailableError
from app.integrations.base import ListingRef, ListingState, MarketplaceInterface, PushResult


class MockMarketplace(MarketplaceInterface):
    """
    In-memory marketplace. Listings are keyed by listing id.

    ``errors`` is a list of exceptions raised, in order, by the next calls to
    push/zero/remove. ``lookup_errors`` maps listing ids to the exception
    fetch_listing_state raises for them.
    """

    def __init__(self, name: str = "shopify"):
        self.name = name
        self.states: Dict[str, ListingState] = {}
        self.calls: List[tuple] = []
        self.errors: List[Exception] = []
        self.lookup_errors: Dict[str, Exception] = {}
        self.remove_fail_ids: Set[str] = set()
        self.on_push: Optional[Callable[[ListingRef, int], Awaitable[None]]] = None
        self._next_id = 1000

    def set_listing(self, listing_id: str, quantity: int, active: bool = True):
        self.states[listing_id] = ListingState(quantity=quantity, active=active)

    def _raise_queued_error(self):
        if self.errors:
            raise self.errors.pop(0)

    async def push_inventory_update(self, ref: ListingRef, quantity: int, item=None) -> PushResult:
        self.calls.append(("push", ref, quantity))
        if self.on_push is not None:
            await self.on_push(ref, quantity)
        self._raise_queued_error()

        listing_id = ref.listing_id
        if not listing_id:
            self._next_id += 1
            listing_id = f"mock-{self._next_id}"
        self.set_listing(listing_id, quantity, active=True)
        return PushResult(ok=True, remote_id=listing_id, inventory_item_id=ref.inventory_item_id or f"inv-{listing_id}")

    async def zero_inventory(self, ref: ListingRef) -> bool:
        self.calls.append(("zero", ref, 0))
        self._raise_queued_error()
        if ref.listing_id:
            self.set_listing(ref.listing_id, 0, active=True)
        return True

    async def remove_listing(self, ref: ListingRef) -> bool:
        self.calls.append(("remove", ref, None))
        self._raise_queued_error()
        if ref.listing_id in self.remove_fail_ids:
            raise MarketplaceUnavailableError(f"mock failure removing {ref.listing_id}", status_code=503)
        self.states.pop(ref.listing_id, None)
        return True

    async def fetch_listing_state(self, ref: ListingRef) -> ListingState:
        self.calls.append(("fetch", ref, None))
        if ref.listing_id in self.lookup_errors:
            raise self.lookup_errors[ref.listing_id]
        state = self.states.get(ref.listing_id)
        if state is None:
            raise ListingNotFoundError(f"mock listing {ref.listing_id} not found")
        return state

    def calls_for(self, operation: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == operation]

    def clear_history(self):
        """Clear test history"""
        self.calls = []
