"""AdPulse — Google Ads API Client.

REST transport for GAQL ``searchStream`` plus account discovery.
"""

from typing import Any, Dict, List, Optional

import httpx

from app.config import settings
from app.connectors.client import ProviderClient
from app.core.errors import MalformedResponse, RateLimited, SyncError
from app.core.logging import get_logger
from app.models.integration_models import Provider

logger = get_logger("google_ads.client")

GOOGLE_ADS_BASE = f"{settings.google_ads_base_url}/{settings.google_ads_api_version}"


def normalize_customer_id(customer_id: str) -> str:
    """Google customer ids are displayed as 123-456-7890 but sent as digits."""
    return "".join(ch for ch in str(customer_id) if ch.isdigit())


class GoogleAdsClient(ProviderClient):
    """Async HTTP client for the Google Ads REST API."""

    provider = Provider.GOOGLE_ADS.value

    def __init__(
        self,
        access_token: str,
        developer_token: str | None = None,
        login_customer_id: str | None = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {
            "Authorization": f"Bearer {access_token}",
            "developer-token": developer_token or settings.google_ads_developer_token,
        }
        login_id = login_customer_id or settings.google_ads_login_customer_id
        if login_id:
            headers["login-customer-id"] = normalize_customer_id(login_id)
        super().__init__(headers=headers, transport=transport)

    def classify_error(self, resp: httpx.Response) -> SyncError:
        body = self._body(resp)
        error = body.get("error", {}) if isinstance(body, dict) else {}
        if isinstance(error, dict) and error.get("status") == "RESOURCE_EXHAUSTED":
            return RateLimited(
                error.get("message", "Quota exhausted"),
                provider=self.provider,
                status_code=resp.status_code,
            )
        return super().classify_error(resp)

    async def search_stream(self, customer_id: str, query: str) -> List[Dict[str, Any]]:
        """Run a GAQL query and flatten the streamed batches into result rows."""
        cid = normalize_customer_id(customer_id)
        url = f"{GOOGLE_ADS_BASE}/customers/{cid}/googleAds:searchStream"
        batches = await self.request_json("POST", url, json={"query": query})
        if not isinstance(batches, list):
            raise MalformedResponse(
                "searchStream did not return a list of batches", provider=self.provider
            )

        rows: List[Dict[str, Any]] = []
        for batch in batches:
            if not isinstance(batch, dict):
                raise MalformedResponse(
                    "searchStream batch is not an object", provider=self.provider
                )
            results = batch.get("results", [])
            if not isinstance(results, list):
                raise MalformedResponse(
                    "searchStream batch 'results' is not a list", provider=self.provider
                )
            rows.extend(results)

        logger.info(f"GAQL returned {len(rows)} rows for customer {cid}")
        return rows

    async def list_accessible_customers(self) -> List[str]:
        """Customer ids the credential can access, as digit strings."""
        url = f"{GOOGLE_ADS_BASE}/customers:listAccessibleCustomers"
        body = await self.request_json("GET", url)
        names = body.get("resourceNames") if isinstance(body, dict) else None
        if not isinstance(names, list):
            raise MalformedResponse(
                "listAccessibleCustomers has no 'resourceNames'", provider=self.provider
            )
        return [name.split("/", 1)[-1] for name in names]
