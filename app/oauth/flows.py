"""AdPulse — Provider OAuth Token Flows.

One strategy per provider behind a common surface. Each declares whether a
refresh grant exists:

- Google Ads: code → access + refresh token; refresh via ``refresh_token`` grant.
- Meta: code → short-lived token → long-lived (~60 day) token; no refresh,
  expiry means the user has to re-authorize.
- Shopify: code → one non-expiring offline token.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx

from app.config import settings
from app.connectors.client import ProviderClient
from app.connectors.google_ads.client import GoogleAdsClient, normalize_customer_id
from app.connectors.meta.client import META_BASE, MetaClient
from app.connectors.shopify.client import ShopifyClient, is_valid_shop_domain
from app.core.errors import (
    MalformedResponse,
    ReauthRequired,
    SyncError,
    Unsupported,
)
from app.core.logging import get_logger
from app.core.timeutil import utcnow
from app.models.integration_models import Provider

logger = get_logger("oauth.flows")

GOOGLE_ADS_SCOPES = "https://www.googleapis.com/auth/adwords"
META_SCOPES = "ads_read,ads_management"
SHOPIFY_SCOPES = "read_orders,read_products,read_analytics"


@dataclass
class TokenSet:
    """Result of a code exchange or refresh."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass
class AccountInfo:
    """The provider account a fresh credential belongs to."""

    external_id: str
    name: str


def _expires_at(body: Dict[str, Any]) -> Optional[datetime]:
    expires_in = body.get("expires_in")
    if expires_in in (None, 0, "0", ""):
        return None
    try:
        return utcnow() + timedelta(seconds=int(expires_in))
    except (TypeError, ValueError):
        return None


def _require_access_token(body: Any, provider: str) -> str:
    token = body.get("access_token") if isinstance(body, dict) else None
    if not token:
        raise MalformedResponse(
            f"{provider} token response has no access_token", provider=provider
        )
    return token


class TokenFlow(ABC):
    """A provider's OAuth flow."""

    provider: str = ""
    supports_refresh: bool = False

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.transport = transport

    @abstractmethod
    def authorization_url(self, state: str, extra: Optional[Dict[str, str]] = None) -> str:
        """Consent URL; ``state`` comes back untouched on the callback."""
        ...

    @abstractmethod
    async def exchange_code(
        self, code: str, extra: Optional[Dict[str, str]] = None
    ) -> TokenSet:
        ...

    async def refresh(self, refresh_token: str) -> TokenSet:
        raise Unsupported(
            f"{self.provider} has no token refresh flow", provider=self.provider
        )

    @abstractmethod
    async def discover_account(
        self, tokens: TokenSet, extra: Optional[Dict[str, str]] = None
    ) -> AccountInfo:
        ...


# ─────────────────────────────────────────────
# GOOGLE ADS
# ─────────────────────────────────────────────


class GoogleOAuthClient(ProviderClient):
    """Google's token endpoint reports revoked grants as 400 invalid_grant."""

    provider = Provider.GOOGLE_ADS.value

    def classify_error(self, resp: httpx.Response) -> SyncError:
        body = self._body(resp)
        if isinstance(body, dict) and body.get("error") == "invalid_grant":
            return ReauthRequired(
                body.get("error_description", "Refresh token revoked or expired"),
                provider=self.provider,
                status_code=resp.status_code,
            )
        return super().classify_error(resp)


class GoogleAdsTokenFlow(TokenFlow):
    provider = Provider.GOOGLE_ADS.value
    supports_refresh = True

    def authorization_url(self, state: str, extra: Optional[Dict[str, str]] = None) -> str:
        params = {
            "client_id": settings.google_ads_client_id,
            "redirect_uri": settings.google_ads_redirect_uri,
            "response_type": "code",
            "scope": GOOGLE_ADS_SCOPES,
            "access_type": "offline",
            # Without a forced consent screen Google only issues a refresh token once
            "prompt": "consent",
            "state": state,
        }
        return f"{settings.google_oauth_authorize_url}?{urlencode(params)}"

    async def exchange_code(
        self, code: str, extra: Optional[Dict[str, str]] = None
    ) -> TokenSet:
        async with GoogleOAuthClient(transport=self.transport) as client:
            body = await client.request_json(
                "POST",
                settings.google_oauth_token_url,
                data={
                    "code": code,
                    "client_id": settings.google_ads_client_id,
                    "client_secret": settings.google_ads_client_secret,
                    "redirect_uri": settings.google_ads_redirect_uri,
                    "grant_type": "authorization_code",
                },
            )
        access_token = _require_access_token(body, self.provider)
        if not body.get("refresh_token"):
            raise MalformedResponse(
                "Google did not issue a refresh token; consent must be re-prompted",
                provider=self.provider,
            )
        return TokenSet(
            access_token=access_token,
            refresh_token=body["refresh_token"],
            expires_at=_expires_at(body),
        )

    async def refresh(self, refresh_token: str) -> TokenSet:
        async with GoogleOAuthClient(transport=self.transport) as client:
            body = await client.request_json(
                "POST",
                settings.google_oauth_token_url,
                data={
                    "refresh_token": refresh_token,
                    "client_id": settings.google_ads_client_id,
                    "client_secret": settings.google_ads_client_secret,
                    "grant_type": "refresh_token",
                },
            )
        return TokenSet(
            access_token=_require_access_token(body, self.provider),
            # Google may rotate the refresh token; keep the old one otherwise
            refresh_token=body.get("refresh_token"),
            expires_at=_expires_at(body),
        )

    async def discover_account(
        self, tokens: TokenSet, extra: Optional[Dict[str, str]] = None
    ) -> AccountInfo:
        async with GoogleAdsClient(tokens.access_token, transport=self.transport) as client:
            requested = (extra or {}).get("customer_id")
            if requested:
                customer_id = normalize_customer_id(requested)
            else:
                customers = await client.list_accessible_customers()
                if not customers:
                    raise SyncError(
                        "No accessible Google Ads customers for this login",
                        provider=self.provider,
                    )
                customer_id = customers[0]
            rows = await client.search_stream(
                customer_id, "SELECT customer.id, customer.descriptive_name FROM customer"
            )
        name = ""
        if rows:
            name = rows[0].get("customer", {}).get("descriptiveName", "")
        return AccountInfo(external_id=customer_id, name=name or customer_id)


# ─────────────────────────────────────────────
# META
# ─────────────────────────────────────────────


class MetaTokenFlow(TokenFlow):
    provider = Provider.META.value
    supports_refresh = False

    def authorization_url(self, state: str, extra: Optional[Dict[str, str]] = None) -> str:
        params = {
            "client_id": settings.meta_app_id,
            "redirect_uri": settings.meta_redirect_uri,
            "scope": META_SCOPES,
            "state": state,
            "response_type": "code",
        }
        return (
            f"{settings.meta_dialog_url}/{settings.meta_api_version}/dialog/oauth?"
            f"{urlencode(params)}"
        )

    async def exchange_code(
        self, code: str, extra: Optional[Dict[str, str]] = None
    ) -> TokenSet:
        url = f"{META_BASE}/oauth/access_token"
        async with MetaClient(transport=self.transport) as client:
            short_lived = await client.get(
                url,
                {
                    "client_id": settings.meta_app_id,
                    "client_secret": settings.meta_app_secret,
                    "redirect_uri": settings.meta_redirect_uri,
                    "code": code,
                },
            )
            short_token = _require_access_token(short_lived, self.provider)

            long_lived = await client.get(
                url,
                {
                    "grant_type": "fb_exchange_token",
                    "client_id": settings.meta_app_id,
                    "client_secret": settings.meta_app_secret,
                    "fb_exchange_token": short_token,
                },
            )
        return TokenSet(
            access_token=_require_access_token(long_lived, self.provider),
            expires_at=_expires_at(long_lived),
        )

    async def discover_account(
        self, tokens: TokenSet, extra: Optional[Dict[str, str]] = None
    ) -> AccountInfo:
        async with MetaClient(tokens.access_token, transport=self.transport) as client:
            accounts = await client.get_ad_accounts()
        requested = (extra or {}).get("ad_account_id")
        if requested:
            accounts = [a for a in accounts if a.get("id") == requested]
        if not accounts or not accounts[0].get("id"):
            raise SyncError("No ad accounts found for this Meta login", provider=self.provider)
        primary = accounts[0]
        return AccountInfo(external_id=primary["id"], name=primary.get("name", ""))


# ─────────────────────────────────────────────
# SHOPIFY
# ─────────────────────────────────────────────


def _require_shop(extra: Optional[Dict[str, str]]) -> str:
    shop = (extra or {}).get("shop", "")
    if not is_valid_shop_domain(shop):
        raise ValueError(f"Invalid Shopify shop domain '{shop}'")
    return shop


class ShopifyTokenFlow(TokenFlow):
    provider = Provider.SHOPIFY.value
    supports_refresh = False

    def authorization_url(self, state: str, extra: Optional[Dict[str, str]] = None) -> str:
        shop = _require_shop(extra)
        params = {
            "client_id": settings.shopify_api_key,
            "scope": SHOPIFY_SCOPES,
            "redirect_uri": settings.shopify_redirect_uri,
            "state": state,
        }
        return f"https://{shop}/admin/oauth/authorize?{urlencode(params)}"

    async def exchange_code(
        self, code: str, extra: Optional[Dict[str, str]] = None
    ) -> TokenSet:
        shop = _require_shop(extra)
        async with ShopifyClient(shop, transport=self.transport) as client:
            body = await client.request_json(
                "POST",
                f"https://{shop}/admin/oauth/access_token",
                json={
                    "client_id": settings.shopify_api_key,
                    "client_secret": settings.shopify_api_secret,
                    "code": code,
                },
            )
        # Offline tokens never expire
        return TokenSet(access_token=_require_access_token(body, self.provider))

    async def discover_account(
        self, tokens: TokenSet, extra: Optional[Dict[str, str]] = None
    ) -> AccountInfo:
        shop = _require_shop(extra)
        async with ShopifyClient(shop, tokens.access_token, transport=self.transport) as client:
            info = await client.get_shop()
        return AccountInfo(external_id=shop, name=info.get("name", shop))


def build_flows(
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, TokenFlow]:
    """Provider tag → flow strategy."""
    return {
        Provider.GOOGLE_ADS.value: GoogleAdsTokenFlow(transport),
        Provider.META.value: MetaTokenFlow(transport),
        Provider.SHOPIFY.value: ShopifyTokenFlow(transport),
    }
