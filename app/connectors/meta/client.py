"""AdPulse — Meta Graph API Client.

Handles token-in-query authentication, Graph error codes, and cursor pagination.
"""

from typing import Any, Dict, List, Optional

import httpx

from app.config import settings
from app.connectors.client import ProviderClient
from app.core.errors import (
    AuthExpired,
    MalformedResponse,
    RateLimited,
    SyncError,
)
from app.core.logging import get_logger
from app.models.integration_models import Provider

logger = get_logger("meta.client")

META_BASE = f"{settings.meta_base_url}/{settings.meta_api_version}"

# Graph API error codes
TOKEN_ERROR_CODES = {190, 102, 463, 467}
THROTTLE_ERROR_CODES = {4, 17, 32, 613, 80000, 80004}


class MetaClient(ProviderClient):
    """Async HTTP client for the Meta Marketing API."""

    provider = Provider.META.value

    def __init__(
        self,
        access_token: str | None = None,
        ad_account_id: str | None = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(transport=transport)
        self.access_token = access_token
        self.ad_account_id = ad_account_id

    async def _request(
        self,
        method: str,
        url: str,
        params: Dict[str, Any] | None = None,
    ) -> Dict[str, Any]:
        """Make an authenticated Graph request and return the JSON object."""
        params = dict(params or {})
        if self.access_token and "access_token=" not in url:
            params.setdefault("access_token", self.access_token)
        # An explicit params mapping replaces the query already on the URL
        result = await self.request_json(method, url, params=params or None)
        if not isinstance(result, dict):
            raise MalformedResponse(
                "Graph API returned a non-object body", provider=self.provider
            )
        return result

    async def get(self, url: str, params: Dict[str, Any] | None = None) -> Dict[str, Any]:
        return await self._request("GET", url, params)

    def classify_error(self, resp: httpx.Response) -> SyncError:
        body = self._body(resp)
        error = body.get("error", {}) if isinstance(body, dict) else {}
        code = error.get("code", 0) if isinstance(error, dict) else 0
        message = error.get("message", f"HTTP {resp.status_code}") if isinstance(error, dict) else str(error)

        if code in TOKEN_ERROR_CODES:
            logger.warning(f"Meta token rejected: {message}")
            return AuthExpired(message, provider=self.provider, status_code=resp.status_code)
        if code in THROTTLE_ERROR_CODES:
            logger.warning(f"Meta rate limited (code {code}): {message}")
            return RateLimited(message, provider=self.provider, status_code=resp.status_code)
        return super().classify_error(resp)

    # ── Pagination ──

    async def paginate(
        self, url: str, params: Dict[str, Any] | None = None, max_pages: int = 50
    ) -> List[Dict[str, Any]]:
        """Every ``data`` row of a cursor-paginated edge."""
        rows: List[Dict[str, Any]] = []
        edge, page_params = url, params

        for _ in range(max_pages):
            result = await self._request("GET", url, page_params)
            data = result.get("data")
            if not isinstance(data, list):
                raise MalformedResponse(
                    f"Graph response from {edge} has no 'data' list",
                    provider=self.provider,
                )
            rows.extend(data)

            paging = result.get("paging")
            next_url = paging.get("next") if isinstance(paging, dict) else None
            if not next_url:
                return rows
            # paging.next already carries every query parameter
            url, page_params = next_url, None

        raise MalformedResponse(
            f"Graph edge {edge} still paginating after {max_pages} pages; refusing partial data",
            provider=self.provider,
        )

    # ── Account Discovery ──

    async def get_ad_accounts(self) -> List[Dict[str, Any]]:
        """List ad accounts the token can read."""
        url = f"{META_BASE}/me/adaccounts"
        return await self.paginate(url, {"fields": "id,name,account_status"})
