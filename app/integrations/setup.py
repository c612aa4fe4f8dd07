"""
Wiring of the marketplace clients.

build_registry: reads credentials from settings, instantiates the concrete
marketplace implementations that have credentials and registers them on a
MarketplaceRegistry. The registry is what the queue processor, reconciliation
and duplicate resolver resolve a marketplace name against.
"""

import logging
from typing import Dict, Iterator, Optional

from app.core.config import Settings, get_settings
from app.core.enums import Marketplace
from app.core.exceptions import MarketplaceNotConfiguredError
from app.integrations.base import MarketplaceInterface
from app.integrations.platforms.ebay import EbayMarketplace
from app.integrations.platforms.shopify import ShopifyMarketplace

logger = logging.getLogger(__name__)


class MarketplaceRegistry:
    def __init__(self):
        self._clients: Dict[str, MarketplaceInterface] = {}

    def register(self, marketplace, client: MarketplaceInterface) -> None:
        self._clients[Marketplace(marketplace).value] = client

    def get(self, marketplace) -> MarketplaceInterface:
        key = Marketplace(marketplace).value
        client = self._clients.get(key)
        if client is None:
            raise MarketplaceNotConfiguredError(f"No client configured for marketplace '{key}'")
        return client

    def is_configured(self, marketplace) -> bool:
        return Marketplace(marketplace).value in self._clients

    def __iter__(self) -> Iterator[str]:
        return iter(self._clients)


def get_platform_credentials(settings: Settings) -> Dict[str, Dict[str, Optional[str]]]:
    """Credentials per marketplace, only for marketplaces whose essentials are present."""
    creds = {
        "shopify": {
            "shop_url": settings.SHOPIFY_SHOP_URL,
            "access_token": settings.SHOPIFY_ADMIN_API_ACCESS_TOKEN,
            "location_gid": settings.SHOPIFY_LOCATION_GID,
        },
        "ebay": {
            "access_token": settings.EBAY_ACCESS_TOKEN,
        },
    }
    return {
        p: c for p, c in creds.items()
        if p == "shopify" and c.get("shop_url") and c.get("access_token")
        or p == "ebay" and c.get("access_token")
    }


def build_registry(settings: Optional[Settings] = None) -> MarketplaceRegistry:
    settings = settings or get_settings()
    registry = MarketplaceRegistry()
    credentials = get_platform_credentials(settings)

    if "shopify" in credentials:
        registry.register(Marketplace.SHOPIFY, ShopifyMarketplace(
            shop_url=credentials["shopify"]["shop_url"],
            access_token=credentials["shopify"]["access_token"],
            location_gid=credentials["shopify"]["location_gid"],
            api_version=settings.SHOPIFY_API_VERSION,
            timeout=settings.MARKETPLACE_TIMEOUT_SECONDS,
        ))
        logger.info("Registered Shopify marketplace client")
    else:
        logger.info("Shopify credentials not found or incomplete in config, skipping registration.")

    if "ebay" in credentials:
        registry.register(Marketplace.EBAY, EbayMarketplace(
            access_token=credentials["ebay"]["access_token"],
            sandbox=settings.EBAY_SANDBOX_MODE,
            marketplace_id=settings.EBAY_MARKETPLACE_ID,
            timeout=settings.MARKETPLACE_TIMEOUT_SECONDS,
            listing_defaults={
                "category_id": settings.EBAY_CATEGORY_ID,
                "merchant_location_key": settings.EBAY_MERCHANT_LOCATION_KEY,
                "fulfillment_policy_id": settings.EBAY_FULFILLMENT_POLICY_ID,
                "payment_policy_id": settings.EBAY_PAYMENT_POLICY_ID,
                "return_policy_id": settings.EBAY_RETURN_POLICY_ID,
            },
        ))
        logger.info("Registered eBay marketplace client")
    else:
        logger.info("eBay credentials not found in config, skipping registration.")

    return registry
