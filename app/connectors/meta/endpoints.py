"""AdPulse — Meta Marketing API Edges.

The two ad-account edges a sync reads: campaign structure and daily
campaign-level insights.
"""

import json
from typing import Any, Dict, List

from app.connectors.meta.client import META_BASE, MetaClient
from app.core.logging import get_logger

logger = get_logger("meta.endpoints")

CAMPAIGN_FIELDS = "id,name,status,objective"
INSIGHT_FIELDS = (
    "campaign_id,campaign_name,impressions,clicks,spend,actions,date_start,date_stop"
)
PAGE_SIZE = 500


def ad_account_path(account_id: str) -> str:
    """Graph ad account ids are addressed as act_<id>."""
    return account_id if account_id.startswith("act_") else f"act_{account_id}"


class MetaEndpoints:
    """Raw reads for one ad account."""

    def __init__(self, client: MetaClient):
        self.client = client
        self.account_url = f"{META_BASE}/{ad_account_path(client.ad_account_id or '')}"

    async def fetch_campaigns(self) -> List[Dict[str, Any]]:
        return await self.client.paginate(
            f"{self.account_url}/campaigns",
            {"fields": CAMPAIGN_FIELDS, "limit": PAGE_SIZE},
        )

    async def fetch_campaign_insights(
        self, date_start: str, date_stop: str
    ) -> List[Dict[str, Any]]:
        """One row per campaign per day in [date_start, date_stop]."""
        rows = await self.client.paginate(
            f"{self.account_url}/insights",
            {
                "level": "campaign",
                "time_increment": "1",
                "time_range": json.dumps({"since": date_start, "until": date_stop}),
                "fields": INSIGHT_FIELDS,
                "limit": PAGE_SIZE,
            },
        )
        logger.info(f"Meta returned {len(rows)} daily insight rows for {self.account_url}")
        return rows
