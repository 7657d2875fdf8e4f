"""AdPulse — Provider → Adapter Registry."""

from typing import Dict, Optional

import httpx
from sqlalchemy.engine import Engine

from app.connectors.base import SyncAdapter
from app.connectors.google_ads.adapter import GoogleAdsAdapter
from app.connectors.meta.adapter import MetaAdapter
from app.connectors.shopify.adapter import ShopifyAdapter
from app.oauth.manager import TokenManager
from app.stores.integration_store import IntegrationStore

ADAPTER_CLASSES = {
    adapter.provider: adapter
    for adapter in (GoogleAdsAdapter, MetaAdapter, ShopifyAdapter)
}


def build_adapters(
    engine: Engine,
    store: IntegrationStore,
    tokens: TokenManager,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    lookback_days: Optional[int] = None,
) -> Dict[str, SyncAdapter]:
    """One adapter instance per provider, sharing the store and token manager."""
    return {
        provider: adapter_cls(
            engine,
            store,
            tokens,
            transport=transport,
            lookback_days=lookback_days,
        )
        for provider, adapter_cls in ADAPTER_CLASSES.items()
    }
