"""AdPulse — Google Ads GAQL → Canonical Transformer."""

from typing import Any, Dict, List

from app.connectors.upsert import CampaignRecord, MetricRecord
from app.core.errors import MalformedResponse
from app.models.integration_models import Provider

CAMPAIGN_QUERY = (
    "SELECT campaign.id, campaign.name, campaign.status, "
    "campaign.advertising_channel_type "
    "FROM campaign WHERE campaign.status != 'REMOVED'"
)

METRICS_QUERY = (
    "SELECT campaign.id, campaign.name, segments.date, "
    "metrics.impressions, metrics.clicks, metrics.cost_micros, metrics.conversions "
    "FROM campaign WHERE segments.date BETWEEN '{start}' AND '{stop}'"
)

MICROS = 1_000_000


def metrics_query(date_start: str, date_stop: str) -> str:
    return METRICS_QUERY.format(start=date_start, stop=date_stop)


def _malformed(message: str) -> MalformedResponse:
    return MalformedResponse(message, provider=Provider.GOOGLE_ADS.value)


def _number(value: Any) -> float:
    # int64 fields arrive as JSON strings in the REST API
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _campaign(row: Dict[str, Any]) -> Dict[str, Any]:
    campaign = row.get("campaign") if isinstance(row, dict) else None
    if not isinstance(campaign, dict) or not campaign.get("id"):
        raise _malformed("GAQL row without campaign.id")
    return campaign


def transform_campaigns(rows: List[Dict[str, Any]]) -> List[CampaignRecord]:
    records: List[CampaignRecord] = []
    for row in rows:
        campaign = _campaign(row)
        records.append(
            CampaignRecord(
                external_id=str(campaign["id"]),
                name=campaign.get("name", ""),
                status=str(campaign.get("status", "")).lower(),
                objective=campaign.get("advertisingChannelType"),
            )
        )
    return records


def transform_metrics(rows: List[Dict[str, Any]]) -> List[MetricRecord]:
    records: List[MetricRecord] = []
    for row in rows:
        campaign = _campaign(row)
        date = (row.get("segments") or {}).get("date")
        if not date:
            raise _malformed("GAQL metrics row without segments.date")
        metrics = row.get("metrics") or {}
        if not isinstance(metrics, dict):
            raise _malformed("GAQL 'metrics' is not an object")

        records.append(
            MetricRecord(
                campaign_external_id=str(campaign["id"]),
                date=date,
                spend=round(_number(metrics.get("costMicros")) / MICROS, 6),
                impressions=int(_number(metrics.get("impressions"))),
                clicks=int(_number(metrics.get("clicks"))),
                conversions=_number(metrics.get("conversions")),
            )
        )
    return records


def campaign_names(rows: List[Dict[str, Any]]) -> Dict[str, str]:
    return {
        str(row["campaign"]["id"]): row["campaign"].get("name", "")
        for row in rows
        if isinstance(row, dict) and isinstance(row.get("campaign"), dict) and row["campaign"].get("id")
    }
