"""AdPulse — Shopify Admin API Client.

Header-token authentication and ``Link``-header cursor pagination.
"""

import re
from typing import Any, Dict, List, Optional

import httpx

from app.config import settings
from app.connectors.client import ProviderClient
from app.core.errors import MalformedResponse
from app.core.logging import get_logger
from app.models.integration_models import Provider

logger = get_logger("shopify.client")

SHOP_DOMAIN_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9\-]*\.myshopify\.com$")

ORDER_FIELDS = "id,created_at,total_price,landing_site,cancelled_at,financial_status"


def is_valid_shop_domain(shop: str) -> bool:
    return bool(shop and SHOP_DOMAIN_RE.match(shop))


class ShopifyClient(ProviderClient):
    """Async HTTP client for one shop's Admin REST API."""

    provider = Provider.SHOPIFY.value

    def __init__(
        self,
        shop: str,
        access_token: str | None = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"X-Shopify-Access-Token": access_token} if access_token else {}
        super().__init__(headers=headers, transport=transport)
        self.shop = shop
        self.base_url = f"https://{shop}/admin/api/{settings.shopify_api_version}"

    async def get_shop(self) -> Dict[str, Any]:
        body = await self.request_json("GET", f"{self.base_url}/shop.json")
        shop = body.get("shop") if isinstance(body, dict) else None
        if not isinstance(shop, dict):
            raise MalformedResponse("shop.json has no 'shop' object", provider=self.provider)
        return shop

    async def fetch_orders(
        self, date_start: str, date_stop: str, max_pages: int = 100
    ) -> List[Dict[str, Any]]:
        """All orders created in [date_start, date_stop], any status."""
        url = f"{self.base_url}/orders.json"
        params: Dict[str, Any] | None = {
            "status": "any",
            "limit": 250,
            "fields": ORDER_FIELDS,
            "created_at_min": f"{date_start}T00:00:00Z",
            "created_at_max": f"{date_stop}T23:59:59Z",
        }
        orders: List[Dict[str, Any]] = []

        for _ in range(max_pages):
            resp = await self.send("GET", url, params=params)
            body = self.parse_json(resp)
            page = body.get("orders") if isinstance(body, dict) else None
            if not isinstance(page, list):
                raise MalformedResponse(
                    "orders.json has no 'orders' list", provider=self.provider
                )
            orders.extend(page)

            next_link = resp.links.get("next", {}).get("url")
            if not next_link:
                logger.info(f"Fetched {len(orders)} orders from {self.shop}")
                return orders
            # page_info cursors carry the original filters
            url, params = next_link, None

        # A partial order set would zero out revenue for the dates it misses
        raise MalformedResponse(
            f"orders.json still paginating after {max_pages} pages; refusing a partial window",
            provider=self.provider,
        )
