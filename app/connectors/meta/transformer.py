"""AdPulse — Meta Raw → Canonical Transformer.

Converts raw Graph API campaign and insight rows into CampaignRecord /
MetricRecord values. Parsing is all-or-nothing: a row that breaks the
contract raises MalformedResponse before anything is written.
"""

from typing import Any, Dict, List

from app.connectors.upsert import CampaignRecord, MetricRecord
from app.core.errors import MalformedResponse
from app.models.integration_models import Provider

PURCHASE_ACTIONS = ("purchase", "offsite_conversion.fb_pixel_purchase", "omni_purchase")


def _safe_float(value: Any) -> float:
    """Safely convert a value to float."""
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _malformed(message: str) -> MalformedResponse:
    return MalformedResponse(message, provider=Provider.META.value)


def _extract_conversions(row: Dict[str, Any]) -> float:
    """Purchase conversions from the ``actions`` list.

    Meta reports the same purchase under several action types; the largest
    one is the de-duplicated total.
    """
    actions = row.get("actions") or []
    if not isinstance(actions, list):
        raise _malformed("insight 'actions' is not a list")
    purchases = [
        _safe_float(action.get("value", 0))
        for action in actions
        if isinstance(action, dict) and action.get("action_type") in PURCHASE_ACTIONS
    ]
    return max(purchases) if purchases else 0.0


def transform_campaigns(raw: List[Dict[str, Any]]) -> List[CampaignRecord]:
    records: List[CampaignRecord] = []
    for row in raw:
        if not isinstance(row, dict) or not row.get("id"):
            raise _malformed("campaign row without an id")
        records.append(
            CampaignRecord(
                external_id=str(row["id"]),
                name=row.get("name", ""),
                status=str(row.get("status", "")).lower(),
                objective=row.get("objective"),
            )
        )
    return records


def transform_insights(raw: List[Dict[str, Any]]) -> List[MetricRecord]:
    """Map daily campaign insight rows to metric records."""
    records: List[MetricRecord] = []
    for row in raw:
        if not isinstance(row, dict):
            raise _malformed("insight row is not an object")
        campaign_id = row.get("campaign_id")
        date = row.get("date_start")
        if not campaign_id or not date:
            raise _malformed("insight row missing campaign_id or date_start")

        records.append(
            MetricRecord(
                campaign_external_id=str(campaign_id),
                date=date,
                spend=_safe_float(row.get("spend")),
                impressions=int(_safe_float(row.get("impressions"))),
                clicks=int(_safe_float(row.get("clicks"))),
                conversions=_extract_conversions(row),
            )
        )
    return records


def campaign_names_from_insights(raw: List[Dict[str, Any]]) -> Dict[str, str]:
    """Campaigns that appear only in insights (e.g. deleted) still need a row."""
    return {
        str(row["campaign_id"]): row.get("campaign_name", "")
        for row in raw
        if isinstance(row, dict) and row.get("campaign_id")
    }
