"""AdPulse — Integration Models.

One row per connected provider account. The row carries both the credential
and the sync-status state machine so that token and status writes can be
compare-and-set against the same ``version`` counter.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field, UniqueConstraint

from app.core.timeutil import utcnow


class Provider(str, Enum):
    """Supported external providers."""

    GOOGLE_ADS = "google-ads"
    META = "meta"
    SHOPIFY = "shopify"

    @classmethod
    def parse(cls, value: str) -> "Provider":
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"Unknown provider '{value}'") from None


AD_PROVIDERS = (Provider.GOOGLE_ADS.value, Provider.META.value)


class SyncStatus(str, Enum):
    """Integration sync state: idle → syncing → {idle | error}."""

    IDLE = "idle"  # settled: never synced, or last run succeeded
    SYNCING = "syncing"  # advisory lock held by exactly one worker
    ERROR = "error"  # last run failed; last_sync_at frozen at last success


class Integration(SQLModel, table=True):
    """A tenant's authorized connection to one provider account."""

    __tablename__ = "integrations"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "provider",
            "external_account_id",
            name="uq_integration_account",
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True)
    provider: str = Field(index=True, description="google-ads | meta | shopify")
    external_account_id: str = Field(description="Customer id, act_ id or shop domain")
    external_account_name: str = Field(default="")

    # ── Credential ──
    access_token: str = Field(default="")
    refresh_token: Optional[str] = Field(default=None)
    token_expires_at: Optional[datetime] = Field(default=None, sa_type=DateTime)

    # ── Status ──
    active: bool = Field(default=True, index=True)
    sync_status: str = Field(default=SyncStatus.IDLE.value, index=True)
    sync_started_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    last_sync_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    last_error: Optional[str] = Field(default=None)

    version: int = Field(default=0, description="Bumped on every write (CAS)")
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
