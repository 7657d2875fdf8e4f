"""AdPulse — Shopify (Commerce) Sync Adapter.

Writes daily store revenue to a store-level campaign and attributes order
revenue onto the same tenant's ad campaigns. Both passes recompute the whole
window, so a re-run overwrites (cancelled orders drop out) instead of adding.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from sqlmodel import Session, select

from app.connectors.base import SyncAdapter, SyncResult
from app.connectors.shopify.client import ShopifyClient
from app.connectors.shopify.transformer import (
    OrderRecord,
    daily_totals,
    match_campaign,
    normalize_name,
    transform_orders,
)
from app.connectors.upsert import CampaignRecord, upsert_campaign, upsert_revenue
from app.core.logging import get_logger
from app.models.integration_models import AD_PROVIDERS, Integration, Provider
from app.models.normalized_models import Campaign, Metric

logger = get_logger("shopify.adapter")


@dataclass
class ShopifyFetch:
    shop_name: str
    date_start: str
    date_stop: str
    orders: List[OrderRecord] = field(default_factory=list)


class ShopifyAdapter(SyncAdapter):
    provider = Provider.SHOPIFY.value

    async def fetch(
        self,
        integration: Integration,
        access_token: str,
        date_start: str,
        date_stop: str,
    ) -> ShopifyFetch:
        shop = integration.external_account_id
        async with ShopifyClient(shop, access_token, transport=self.transport) as client:
            raw_orders = await client.fetch_orders(date_start, date_stop)

        return ShopifyFetch(
            shop_name=integration.external_account_name or shop,
            date_start=date_start,
            date_stop=date_stop,
            orders=transform_orders(raw_orders),
        )

    def store_records(
        self, session: Session, integration: Integration, fetched: ShopifyFetch
    ) -> SyncResult:
        result = SyncResult()

        store_campaign = upsert_campaign(
            session,
            integration.id,
            CampaignRecord(
                external_id=integration.external_account_id,
                name=f"{fetched.shop_name} (Online Store)",
                status="active",
                objective="commerce",
            ),
        )
        result.campaigns_upserted += 1

        # ── Store-level daily revenue ──
        totals = daily_totals(fetched.orders)
        for date in self._existing_dates(session, store_campaign.id, fetched):
            totals.setdefault(date, {"revenue": 0.0, "orders": 0.0})
        for date, day in sorted(totals.items()):
            upsert_revenue(
                session,
                store_campaign.id,
                date,
                round(day["revenue"], 2),
                conversions=day["orders"],
            )
            result.metrics_upserted += 1

        # ── Attribution onto ad campaigns ──
        result.metrics_upserted += self._attribute(session, integration, fetched)
        return result

    def _existing_dates(
        self, session: Session, campaign_id: int, fetched: ShopifyFetch
    ) -> List[str]:
        return list(
            session.exec(
                select(Metric.date).where(
                    Metric.campaign_id == campaign_id,
                    Metric.date >= fetched.date_start,
                    Metric.date <= fetched.date_stop,
                )
            ).all()
        )

    def _attribute(
        self, session: Session, integration: Integration, fetched: ShopifyFetch
    ) -> int:
        ad_campaigns = session.exec(
            select(Campaign)
            .join(Integration, Campaign.integration_id == Integration.id)
            .where(
                Integration.tenant_id == integration.tenant_id,
                Integration.provider.in_(AD_PROVIDERS),  # type: ignore
                Integration.active == True,  # noqa: E712
            )
        ).all()
        if not ad_campaigns:
            return 0

        by_external_id = {c.external_id: c.id for c in ad_campaigns}
        by_name = {normalize_name(c.name): c.id for c in ad_campaigns if c.name}

        attributed: Dict[Tuple[int, str], float] = {}
        matched = 0
        for order in fetched.orders:
            campaign_id = match_campaign(order, by_external_id, by_name)
            if campaign_id is None:
                continue
            key = (campaign_id, order.date)
            attributed[key] = attributed.get(key, 0.0) + order.revenue
            matched += 1

        # Rows in the window that lost their attribution go back to zero
        existing = session.exec(
            select(Metric).where(
                Metric.campaign_id.in_(list(by_external_id.values())),  # type: ignore
                Metric.date >= fetched.date_start,
                Metric.date <= fetched.date_stop,
            )
        ).all()
        for metric in existing:
            attributed.setdefault((metric.campaign_id, metric.date), 0.0)

        for (campaign_id, date), revenue in attributed.items():
            upsert_revenue(session, campaign_id, date, round(revenue, 2))

        logger.info(
            f"Attributed {matched}/{len(fetched.orders)} orders to ad campaigns",
            extra={"integration_id": integration.id, "tenant_id": integration.tenant_id},
        )
        return len(attributed)
