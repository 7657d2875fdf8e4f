"""AdPulse — Shopify Orders → Daily Revenue Transformer.

Attribution hierarchy for an order's landing URL:
1. gad_campaign_id — exact Google Ads campaign id
2. utm_campaign — campaign external id, or normalized campaign name
3. No match — revenue only counts toward the store-level campaign
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, unquote, urlparse

from app.core.errors import MalformedResponse
from app.models.integration_models import Provider

DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}")


@dataclass
class OrderRecord:
    date: str
    revenue: float
    gad_campaign_id: Optional[str] = None
    utm_campaign: Optional[str] = None


def _malformed(message: str) -> MalformedResponse:
    return MalformedResponse(message, provider=Provider.SHOPIFY.value)


def _first(params: Dict[str, List[str]], key: str) -> Optional[str]:
    values = params.get(key)
    return unquote(values[0]).strip() if values and values[0].strip() else None


def parse_landing_site(url: Optional[str]) -> Dict[str, Optional[str]]:
    """Attribution parameters from a Shopify ``landing_site`` path/URL."""
    if not url:
        return {"gad_campaign_id": None, "utm_campaign": None}
    params = parse_qs(urlparse(url).query)
    return {
        "gad_campaign_id": _first(params, "gad_campaignid") or _first(params, "gad_campaign_id"),
        "utm_campaign": _first(params, "utm_campaign"),
    }


def normalize_name(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", " ", name.lower()).strip()


def transform_orders(raw: List[Dict[str, Any]]) -> List[OrderRecord]:
    """Parse non-cancelled orders into dated revenue records."""
    records: List[OrderRecord] = []
    for order in raw:
        if not isinstance(order, dict):
            raise _malformed("order is not an object")
        if order.get("cancelled_at"):
            continue
        created_at = order.get("created_at") or ""
        if not DATE_RE.match(created_at):
            raise _malformed(f"order {order.get('id')} has no valid created_at")
        try:
            revenue = float(order.get("total_price", 0) or 0)
        except (TypeError, ValueError):
            raise _malformed(f"order {order.get('id')} has a non-numeric total_price") from None

        attribution = parse_landing_site(order.get("landing_site"))
        records.append(
            OrderRecord(
                # Shop-local calendar date, as Shopify reports it
                date=created_at[:10],
                revenue=revenue,
                gad_campaign_id=attribution["gad_campaign_id"],
                utm_campaign=attribution["utm_campaign"],
            )
        )
    return records


def daily_totals(orders: List[OrderRecord]) -> Dict[str, Dict[str, float]]:
    """date → {revenue, orders} across every order."""
    totals: Dict[str, Dict[str, float]] = {}
    for order in orders:
        day = totals.setdefault(order.date, {"revenue": 0.0, "orders": 0.0})
        day["revenue"] += order.revenue
        day["orders"] += 1
    return totals


def match_campaign(
    order: OrderRecord,
    by_external_id: Dict[str, int],
    by_name: Dict[str, int],
) -> Optional[int]:
    """Local campaign id an order is attributed to, if any."""
    if order.gad_campaign_id and order.gad_campaign_id in by_external_id:
        return by_external_id[order.gad_campaign_id]
    if order.utm_campaign:
        if order.utm_campaign in by_external_id:
            return by_external_id[order.utm_campaign]
        return by_name.get(normalize_name(order.utm_campaign))
    return None
