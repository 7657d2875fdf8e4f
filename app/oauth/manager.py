"""AdPulse — OAuth Token Lifecycle Manager.

Normalizes the three provider flows into one surface: code exchange, refresh,
and ``resolve_valid_token`` which hands adapters a usable access token,
refreshing and persisting it first when it is about to expire.
"""

from datetime import timedelta
from typing import Dict, Optional

import httpx

from app.config import settings
from app.core.errors import ReauthRequired, Unsupported
from app.core.logging import get_logger
from app.core.timeutil import utcnow
from app.models.integration_models import Integration, Provider
from app.oauth.flows import TokenFlow, TokenSet, build_flows
from app.stores.integration_store import IntegrationStore

logger = get_logger("oauth.manager")


class TokenManager:
    """Per-provider token exchange/refresh, persisted through the integration store."""

    def __init__(
        self,
        store: IntegrationStore,
        flows: Optional[Dict[str, TokenFlow]] = None,
        refresh_margin_seconds: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.store = store
        self.flows = flows or build_flows(transport)
        margin = (
            refresh_margin_seconds
            if refresh_margin_seconds is not None
            else settings.token_refresh_margin_seconds
        )
        self.refresh_margin = timedelta(seconds=margin)

    def flow_for(self, provider: str) -> TokenFlow:
        flow = self.flows.get(provider)
        if flow is None:
            raise Unsupported(f"No OAuth flow for provider '{provider}'", provider=provider)
        return flow

    # ── Authorization ──

    def authorization_url(
        self, provider: str, tenant_id: str, extra: Optional[Dict[str, str]] = None
    ) -> str:
        """Consent URL with the tenant id as opaque state."""
        return self.flow_for(provider).authorization_url(state=tenant_id, extra=extra)

    async def exchange_code(
        self, provider: str, code: str, extra: Optional[Dict[str, str]] = None
    ) -> TokenSet:
        tokens = await self.flow_for(provider).exchange_code(code, extra)
        logger.info(f"Exchanged authorization code for {provider}", extra={"provider": provider})
        return tokens

    async def refresh(self, provider: str, refresh_token: str) -> TokenSet:
        """Refresh grant; raises Unsupported where the provider has none."""
        flow = self.flow_for(provider)
        if not flow.supports_refresh:
            raise Unsupported(f"{provider} has no token refresh flow", provider=provider)
        return await flow.refresh(refresh_token)

    async def connect(
        self,
        provider: str,
        tenant_id: str,
        code: str,
        extra: Optional[Dict[str, str]] = None,
    ) -> Integration:
        """OAuth callback: exchange, discover the account, create or re-authorize.

        Nothing is written unless the exchange and account discovery both succeed,
        so a failed callback leaves any previous credential untouched.
        """
        provider = Provider.parse(provider).value
        flow = self.flow_for(provider)
        tokens = await self.exchange_code(provider, code, extra)
        account = await flow.discover_account(tokens, extra)
        return self.store.upsert_connection(
            tenant_id=tenant_id,
            provider=provider,
            external_account_id=account.external_id,
            external_account_name=account.name,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_expires_at=tokens.expires_at,
        )

    # ── Token resolution ──

    def _needs_refresh(self, integration: Integration) -> bool:
        if integration.token_expires_at is None:
            return False
        return integration.token_expires_at - self.refresh_margin <= utcnow()

    async def resolve_valid_token(self, integration: Integration) -> str:
        """Return a usable access token for the integration.

        Tokens without an expiry pass straight through. Tokens inside the
        refresh margin are refreshed and persisted before returning. Providers
        without a refresh flow keep using the token until it actually expires,
        then raise ReauthRequired.
        """
        if not self._needs_refresh(integration):
            return integration.access_token

        provider = integration.provider
        flow = self.flow_for(provider)
        log_extra = {"integration_id": integration.id, "provider": provider}

        if not flow.supports_refresh or not integration.refresh_token:
            if integration.token_expires_at > utcnow():
                logger.warning(
                    f"{provider} token expires at {integration.token_expires_at.isoformat()} "
                    "and cannot be refreshed; re-authorization will be required",
                    extra=log_extra,
                )
                return integration.access_token
            raise ReauthRequired(
                f"{provider} token expired; user must re-authorize", provider=provider
            )

        tokens = await flow.refresh(integration.refresh_token)
        saved = self.store.save_tokens(
            integration.id,
            expected_version=integration.version,
            access_token=tokens.access_token,
            token_expires_at=tokens.expires_at,
            refresh_token=tokens.refresh_token,
        )
        if not saved:
            # Someone else wrote the row since we read it; prefer their credential
            current = self.store.get(integration.id)
            if current is not None and not self._needs_refresh(current):
                logger.info("Using concurrently refreshed token", extra=log_extra)
                self._adopt(integration, current.access_token, current.token_expires_at, current.version)
                return current.access_token
            if current is None:
                raise ReauthRequired("Integration vanished during refresh", provider=provider)
            saved = self.store.save_tokens(
                integration.id,
                expected_version=current.version,
                access_token=tokens.access_token,
                token_expires_at=tokens.expires_at,
                refresh_token=tokens.refresh_token,
            )
            integration.version = current.version
            if not saved:
                # Still racing; the fresh token is valid either way
                logger.warning("Refreshed token could not be persisted", extra=log_extra)
                return tokens.access_token

        logger.info("Access token refreshed", extra=log_extra)
        self._adopt(integration, tokens.access_token, tokens.expires_at, integration.version + 1)
        if tokens.refresh_token:
            integration.refresh_token = tokens.refresh_token
        return tokens.access_token

    @staticmethod
    def _adopt(integration: Integration, access_token, expires_at, version: int) -> None:
        integration.access_token = access_token
        integration.token_expires_at = expires_at
        integration.version = version
