"""AdPulse — Idempotent Upserts into the Canonical Schema.

Campaigns are keyed by (integration_id, external_id), metrics by
(campaign_id, date). An existing row is overwritten in place, so re-running a
sync over an overlapping window never accumulates.
"""

from dataclasses import dataclass
from typing import Optional

from sqlmodel import Session, select

from app.core.metric_registry import derive_rates
from app.core.timeutil import utcnow
from app.models.normalized_models import Campaign, Metric


@dataclass
class CampaignRecord:
    """A parsed provider campaign, ready to upsert."""

    external_id: str
    name: str
    status: str = ""
    objective: Optional[str] = None


@dataclass
class MetricRecord:
    """A parsed daily metric row for one campaign."""

    campaign_external_id: str
    date: str
    spend: float = 0.0
    impressions: int = 0
    clicks: int = 0
    conversions: float = 0.0


def upsert_campaign(
    session: Session, integration_id: int, record: CampaignRecord
) -> Campaign:
    existing = session.exec(
        select(Campaign).where(
            Campaign.integration_id == integration_id,
            Campaign.external_id == record.external_id,
        )
    ).first()

    if existing:
        existing.name = record.name or existing.name
        existing.status = record.status
        existing.objective = record.objective
        existing.updated_at = utcnow()
        session.add(existing)
        session.flush()
        return existing

    campaign = Campaign(
        integration_id=integration_id,
        external_id=record.external_id,
        name=record.name,
        status=record.status,
        objective=record.objective,
    )
    session.add(campaign)
    session.flush()
    return campaign


def _get_metric(session: Session, campaign_id: int, date: str) -> Optional[Metric]:
    return session.exec(
        select(Metric).where(Metric.campaign_id == campaign_id, Metric.date == date)
    ).first()


def _apply_derived(metric: Metric) -> None:
    for name, value in derive_rates(
        metric.spend,
        metric.impressions,
        metric.clicks,
        metric.conversions,
        metric.revenue,
    ).items():
        setattr(metric, name, value)
    metric.updated_at = utcnow()


def upsert_ad_metric(session: Session, campaign_id: int, record: MetricRecord) -> Metric:
    """Write ad-platform delivery numbers.

    Revenue is owned by the commerce attribution pass, so an existing value is
    kept and only roas is recomputed against the new spend.
    """
    metric = _get_metric(session, campaign_id, record.date)
    if metric is None:
        metric = Metric(campaign_id=campaign_id, date=record.date)

    metric.spend = record.spend
    metric.impressions = record.impressions
    metric.clicks = record.clicks
    metric.conversions = record.conversions
    _apply_derived(metric)
    session.add(metric)
    return metric


def upsert_revenue(
    session: Session,
    campaign_id: int,
    date: str,
    revenue: float,
    conversions: Optional[float] = None,
) -> Metric:
    """Set attributed revenue (and optionally order count) for a campaign/date."""
    metric = _get_metric(session, campaign_id, date)
    if metric is None:
        metric = Metric(campaign_id=campaign_id, date=date)

    metric.revenue = revenue
    if conversions is not None:
        metric.conversions = conversions
    _apply_derived(metric)
    session.add(metric)
    return metric
