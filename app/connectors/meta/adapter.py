"""AdPulse — Meta Sync Adapter."""

from app.connectors.base import AdFetch, AdPlatformAdapter
from app.connectors.meta.client import MetaClient
from app.connectors.meta.endpoints import MetaEndpoints
from app.connectors.meta.transformer import (
    campaign_names_from_insights,
    transform_campaigns,
    transform_insights,
)
from app.models.integration_models import Integration, Provider


class MetaAdapter(AdPlatformAdapter):
    provider = Provider.META.value

    async def fetch(
        self,
        integration: Integration,
        access_token: str,
        date_start: str,
        date_stop: str,
    ) -> AdFetch:
        async with MetaClient(
            access_token, integration.external_account_id, transport=self.transport
        ) as client:
            endpoints = MetaEndpoints(client)
            raw_campaigns = await endpoints.fetch_campaigns()
            raw_insights = await endpoints.fetch_campaign_insights(date_start, date_stop)

        return AdFetch(
            campaigns=transform_campaigns(raw_campaigns),
            metrics=transform_insights(raw_insights),
            campaign_names=campaign_names_from_insights(raw_insights),
        )
