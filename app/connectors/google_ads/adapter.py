"""AdPulse — Google Ads Sync Adapter."""

from app.connectors.base import AdFetch, AdPlatformAdapter
from app.connectors.google_ads.client import GoogleAdsClient
from app.connectors.google_ads.transformer import (
    CAMPAIGN_QUERY,
    campaign_names,
    metrics_query,
    transform_campaigns,
    transform_metrics,
)
from app.models.integration_models import Integration, Provider


class GoogleAdsAdapter(AdPlatformAdapter):
    provider = Provider.GOOGLE_ADS.value

    async def fetch(
        self,
        integration: Integration,
        access_token: str,
        date_start: str,
        date_stop: str,
    ) -> AdFetch:
        customer_id = integration.external_account_id
        async with GoogleAdsClient(access_token, transport=self.transport) as client:
            campaign_rows = await client.search_stream(customer_id, CAMPAIGN_QUERY)
            metric_rows = await client.search_stream(
                customer_id, metrics_query(date_start, date_stop)
            )

        return AdFetch(
            campaigns=transform_campaigns(campaign_rows),
            metrics=transform_metrics(metric_rows),
            campaign_names=campaign_names(metric_rows),
        )
