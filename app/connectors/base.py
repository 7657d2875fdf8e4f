"""AdPulse — Abstract Sync Adapter.

Each provider implements ``fetch`` (network, parse) and ``store_records`` (upserts).
``sync`` is the single capability the worker pool calls; it resolves the
credential, fetches the window, and writes only once the whole provider
response has parsed cleanly.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict, field
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy.engine import Engine
from sqlmodel import Session

from app.config import settings
from app.core.errors import IntegrationNotFound
from app.core.logging import get_logger
from app.connectors.upsert import (
    CampaignRecord,
    MetricRecord,
    upsert_ad_metric,
    upsert_campaign,
)
from app.core.timeutil import sync_window
from app.models.integration_models import Integration
from app.oauth.manager import TokenManager
from app.stores.integration_store import IntegrationStore

logger = get_logger("connectors.base")


@dataclass
class SyncResult:
    campaigns_upserted: int = 0
    metrics_upserted: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class SyncAdapter(ABC):
    """One provider's sync capability: ``sync(integration_id) -> SyncResult``."""

    provider: str = ""

    def __init__(
        self,
        engine: Engine,
        store: IntegrationStore,
        tokens: TokenManager,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        lookback_days: Optional[int] = None,
    ):
        self.engine = engine
        self.store = store
        self.tokens = tokens
        self.transport = transport
        self.lookback_days = lookback_days or settings.sync_lookback_days

    async def sync(self, integration_id: int) -> SyncResult:
        integration = self.store.get(integration_id)
        if integration is None:
            raise IntegrationNotFound(
                f"Integration {integration_id} not found", provider=self.provider
            )

        started = time.monotonic()
        access_token = await self.tokens.resolve_valid_token(integration)
        date_start, date_stop = sync_window(self.lookback_days)

        fetched = await self.fetch(integration, access_token, date_start, date_stop)

        with Session(self.engine) as session:
            result = self.store_records(session, integration, fetched)
            session.commit()

        logger.info(
            f"{self.provider} sync {date_start}→{date_stop}: "
            f"{result.campaigns_upserted} campaigns, {result.metrics_upserted} metric rows",
            extra={
                "integration_id": integration_id,
                "provider": self.provider,
                "duration_ms": int((time.monotonic() - started) * 1000),
            },
        )
        return result

    @abstractmethod
    async def fetch(
        self,
        integration: Integration,
        access_token: str,
        date_start: str,
        date_stop: str,
    ) -> Any:
        """Call the provider and return fully parsed records.

        Must raise MalformedResponse before returning if any part of the
        response violates the provider contract.
        """
        ...

    @abstractmethod
    def store_records(
        self, session: Session, integration: Integration, fetched: Any
    ) -> SyncResult:
        """Upsert parsed records inside the caller's transaction."""
        ...


@dataclass
class AdFetch:
    """Parsed output of an ad platform fetch."""

    campaigns: List[CampaignRecord] = field(default_factory=list)
    metrics: List[MetricRecord] = field(default_factory=list)
    campaign_names: Dict[str, str] = field(default_factory=dict)


class AdPlatformAdapter(SyncAdapter):
    """Shared write path for ad networks: campaigns, then daily delivery rows."""

    def store_records(
        self, session: Session, integration: Integration, fetched: AdFetch
    ) -> SyncResult:
        result = SyncResult()
        campaign_ids: Dict[str, int] = {}

        for record in fetched.campaigns:
            campaign = upsert_campaign(session, integration.id, record)
            campaign_ids[record.external_id] = campaign.id
            result.campaigns_upserted += 1

        for record in fetched.metrics:
            campaign_id = campaign_ids.get(record.campaign_external_id)
            if campaign_id is None:
                # Metrics for a campaign the structure listing no longer returns
                campaign = upsert_campaign(
                    session,
                    integration.id,
                    CampaignRecord(
                        external_id=record.campaign_external_id,
                        name=fetched.campaign_names.get(record.campaign_external_id, ""),
                    ),
                )
                campaign_id = campaign_ids[record.campaign_external_id] = campaign.id
                result.campaigns_upserted += 1
            upsert_ad_metric(session, campaign_id, record)
            result.metrics_upserted += 1

        return result
