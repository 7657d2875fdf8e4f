"""AdPulse — Canonical Campaign / Metric Models.

Every connector normalizes into this schema. Natural keys are enforced with
unique constraints so that re-running a sync over an overlapping window
overwrites rows instead of duplicating them.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field, UniqueConstraint

from app.core.timeutil import utcnow


class Campaign(SQLModel, table=True):
    """A provider campaign, scoped to one integration."""

    __tablename__ = "campaigns"
    __table_args__ = (
        UniqueConstraint("integration_id", "external_id", name="uq_campaign_external"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    integration_id: int = Field(foreign_key="integrations.id", index=True)
    external_id: str = Field(index=True, description="Provider campaign id")
    name: str = Field(default="")
    status: str = Field(default="", description="Provider-native status, lowercased")
    objective: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class Metric(SQLModel, table=True):
    """Daily performance for one campaign.

    Unique constraint on (campaign_id, date) makes the row the upsert target
    for every adapter run covering that date.
    """

    __tablename__ = "metrics"
    __table_args__ = (
        UniqueConstraint("campaign_id", "date", name="uq_metric_campaign_date"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    campaign_id: int = Field(foreign_key="campaigns.id", index=True)
    date: str = Field(index=True, description="YYYY-MM-DD")
    spend: float = Field(default=0.0)
    revenue: Optional[float] = Field(
        default=None, description="Only set by commerce attribution"
    )
    impressions: int = Field(default=0)
    clicks: int = Field(default=0)
    conversions: float = Field(default=0.0)
    ctr: Optional[float] = Field(default=None, description="%")
    cpc: Optional[float] = Field(default=None)
    cpa: Optional[float] = Field(default=None)
    roas: Optional[float] = Field(default=None)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
