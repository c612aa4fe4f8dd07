# tests/unit/integrations/platforms/test_shopify_marketplace.py
import json

import httpx
import pytest

from app.core.exceptions import (
    ListingNotFoundError,
    MarketplaceUnavailableError,
    MarketplaceValidationError,
    RateLimitError,
)
from app.integrations.base import ListingRef
from app.integrations.platforms.shopify import ShopifyMarketplace

LOCATION = "gid://shopify/Location/1"


class Recorder:
    """Collects GraphQL requests and answers them from a list of canned responses"""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    @property
    def operations(self):
        return [r["query"].split("(")[0].split()[-1] for r in self.requests]


def client_for(recorder):
    return ShopifyMarketplace(
        shop_url="test-shop.myshopify.com",
        access_token="shpat_test",
        location_gid=LOCATION,
        transport=httpx.MockTransport(recorder),
    )


def ok(data):
    return httpx.Response(200, json={"data": data})


def set_ok():
    return ok({"inventorySetOnHandQuantities": {"inventoryAdjustmentGroup": {"id": "g1"}, "userErrors": []}})

"""
1. Quantity updates
"""

@pytest.mark.asyncio
async def test_push_sets_quantity_on_existing_listing():
    """Test an existing listing only gets its on-hand quantity set"""
    recorder = Recorder(set_ok())
    client = client_for(recorder)
    ref = ListingRef(listing_id="gid://shopify/Product/9", product_id="gid://shopify/Product/9",
                     inventory_item_id="gid://shopify/InventoryItem/5", sku="ABC-1")

    result = await client.push_inventory_update(ref, 4)

    assert result.ok is True
    assert result.remote_id == "gid://shopify/Product/9"
    assert recorder.operations == ["inventorySetOnHandQuantities"]
    quantities = recorder.requests[0]["variables"]["input"]["setQuantities"][0]
    assert quantities == {"inventoryItemId": "gid://shopify/InventoryItem/5", "locationId": LOCATION, "quantity": 4}
    assert client.endpoint == "https://test-shop.myshopify.com/admin/api/2024-07/graphql.json"


@pytest.mark.asyncio
async def test_push_creates_product_then_sets_quantity():
    """Test a listing without remote ids is created first"""
    created = ok({"productCreate": {
        "product": {
            "id": "gid://shopify/Product/77",
            "variants": {"edges": [{"node": {
                "id": "gid://shopify/ProductVariant/88",
                "inventoryItem": {"id": "gid://shopify/InventoryItem/99"},
            }}]},
        },
        "userErrors": [],
    }})
    variant_updated = ok({"productVariantsBulkUpdate": {
        "productVariants": [{"id": "gid://shopify/ProductVariant/88"}], "userErrors": [],
    }})
    activated = ok({"inventoryActivate": {"inventoryLevel": {"id": "lvl-1"}, "userErrors": []}})
    recorder = Recorder(created, variant_updated, activated, set_ok())

    result = await client_for(recorder).push_inventory_update(
        ListingRef(sku="ABC-1"), 2, item={"brand_title": "Marvel", "subject": "Hulk #181", "price": 100.0}
    )

    assert recorder.operations == [
        "productCreate", "productVariantsBulkUpdate", "inventoryActivate", "inventorySetOnHandQuantities",
    ]
    product_input = recorder.requests[0]["variables"]["input"]
    assert product_input["title"] == "Marvel Hulk #181"
    assert "variants" not in product_input
    variables = recorder.requests[1]["variables"]
    assert variables["productId"] == "gid://shopify/Product/77"
    assert variables["variants"] == [{
        "id": "gid://shopify/ProductVariant/88",
        "price": "100.0",
        "inventoryPolicy": "DENY",
        "inventoryItem": {"sku": "ABC-1", "tracked": True},
    }]
    assert recorder.requests[2]["variables"] == {
        "inventoryItemId": "gid://shopify/InventoryItem/99", "locationId": LOCATION,
    }
    assert result.product_id == "gid://shopify/Product/77"
    assert result.variant_id == "gid://shopify/ProductVariant/88"
    assert result.inventory_item_id == "gid://shopify/InventoryItem/99"


@pytest.mark.asyncio
async def test_zero_inventory_requires_inventory_item():
    client = client_for(Recorder())
    with pytest.raises(ListingNotFoundError):
        await client.zero_inventory(ListingRef(listing_id="gid://shopify/Product/9"))


"""
2. Error mapping
"""

@pytest.mark.asyncio
async def test_http_429_is_rate_limit_with_retry_after():
    recorder = Recorder(httpx.Response(429, headers={"Retry-After": "2.0"}, text="slow down"))
    with pytest.raises(RateLimitError) as exc_info:
        await client_for(recorder).push_inventory_update(ListingRef(inventory_item_id="i1"), 1)
    assert exc_info.value.retry_after == 2.0


@pytest.mark.asyncio
async def test_throttled_graphql_error_is_rate_limit():
    recorder = Recorder(httpx.Response(200, json={"errors": [{"message": "Throttled", "extensions": {"code": "THROTTLED"}}]}))
    with pytest.raises(RateLimitError):
        await client_for(recorder).push_inventory_update(ListingRef(inventory_item_id="i1"), 1)


@pytest.mark.asyncio
async def test_user_errors_are_validation_errors():
    recorder = Recorder(ok({"inventorySetOnHandQuantities": {
        "inventoryAdjustmentGroup": None, "userErrors": [{"field": ["quantity"], "message": "bad"}],
    }}))
    with pytest.raises(MarketplaceValidationError):
        await client_for(recorder).push_inventory_update(ListingRef(inventory_item_id="i1"), 1)


@pytest.mark.asyncio
async def test_server_and_network_errors_are_unavailable():
    with pytest.raises(MarketplaceUnavailableError):
        await client_for(Recorder(httpx.Response(503, text="down"))).push_inventory_update(
            ListingRef(inventory_item_id="i1"), 1
        )
    with pytest.raises(MarketplaceUnavailableError):
        await client_for(Recorder(httpx.ConnectError("refused"))).push_inventory_update(
            ListingRef(inventory_item_id="i1"), 1
        )


"""
3. Removal and lookup
"""

@pytest.mark.asyncio
async def test_remove_deletes_product():
    recorder = Recorder(ok({"productDelete": {"deletedProductId": "gid://shopify/Product/9", "userErrors": []}}))

    assert await client_for(recorder).remove_listing(ListingRef(product_id="gid://shopify/Product/9")) is True
    assert recorder.operations == ["productDelete"]
    assert recorder.requests[0]["variables"] == {"input": {"id": "gid://shopify/Product/9"}}


@pytest.mark.asyncio
async def test_remove_already_deleted_product_succeeds():
    """Test a repeated removal is a no-op: Shopify answers 200 with a user error"""
    recorder = Recorder(ok({"productDelete": {
        "deletedProductId": None, "userErrors": [{"field": ["id"], "message": "Product does not exist"}],
    }}))

    assert await client_for(recorder).remove_listing(ListingRef(product_id="gid://shopify/Product/9")) is True


@pytest.mark.asyncio
async def test_remove_other_user_errors_still_fail():
    recorder = Recorder(ok({"productDelete": {
        "deletedProductId": None, "userErrors": [{"field": ["id"], "message": "Product is locked"}],
    }}))

    with pytest.raises(MarketplaceValidationError):
        await client_for(recorder).remove_listing(ListingRef(product_id="gid://shopify/Product/9"))


@pytest.mark.asyncio
async def test_remove_without_ids_is_a_no_op():
    recorder = Recorder()
    assert await client_for(recorder).remove_listing(ListingRef()) is True
    assert recorder.requests == []


@pytest.mark.asyncio
async def test_fetch_listing_state():
    recorder = Recorder(ok({"inventoryItem": {
        "id": "i1",
        "variant": {"product": {"id": "p1", "status": "ACTIVE"}},
        "inventoryLevel": {"quantities": [{"name": "available", "quantity": 3}]},
    }}))

    state = await client_for(recorder).fetch_listing_state(ListingRef(inventory_item_id="i1"))

    assert state.quantity == 3
    assert state.active is True


@pytest.mark.asyncio
async def test_fetch_missing_item_raises_not_found():
    recorder = Recorder(ok({"inventoryItem": None}))
    with pytest.raises(ListingNotFoundError):
        await client_for(recorder).fetch_listing_state(ListingRef(inventory_item_id="i1"))
