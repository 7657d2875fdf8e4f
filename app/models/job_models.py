"""AdPulse — Job Queue Models (Durable)."""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import DateTime, Index, text
from sqlmodel import SQLModel, Field

from app.core.timeutil import utcnow


class JobKind(str, Enum):
    SYNC_PROVIDER = "sync-provider"
    SYNC_ALL = "sync-all"


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


IN_FLIGHT_STATES = (JobState.WAITING.value, JobState.ACTIVE.value)
TERMINAL_STATES = (JobState.COMPLETED.value, JobState.FAILED.value)

ALL_TENANTS = "all"

_IN_FLIGHT_PREDICATE = "state IN ('waiting', 'active')"


class SyncJob(SQLModel, table=True):
    """A queued unit of work.

    The partial unique index allows only one in-flight job per dedupe key;
    terminal rows keep their key for audit without blocking new instances.
    """

    __tablename__ = "sync_jobs"
    __table_args__ = (
        Index(
            "uq_sync_jobs_inflight_dedupe",
            "dedupe_key",
            unique=True,
            sqlite_where=text(_IN_FLIGHT_PREDICATE),
            postgresql_where=text(_IN_FLIGHT_PREDICATE),
        ),
        Index("ix_sync_jobs_state_available", "state", "available_at"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    kind: str = Field(index=True, description="sync-provider | sync-all")
    payload_json: str = Field(default="{}")
    dedupe_key: Optional[str] = Field(default=None)
    state: str = Field(default=JobState.WAITING.value)
    attempt_count: int = Field(default=0, description="Failed attempts so far")
    max_attempts: int = Field(default=3)
    backoff_base: float = Field(default=2.0, description="Seconds; doubles per attempt")
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    available_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    started_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    heartbeat_at: Optional[datetime] = Field(
        default=None, sa_type=DateTime, description="Refreshed by the owning worker"
    )
    finished_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    last_error: Optional[str] = Field(default=None)
    result_json: Optional[str] = Field(default=None)

    @property
    def payload(self) -> Dict[str, Any]:
        return json.loads(self.payload_json or "{}")

    @property
    def result(self) -> Optional[Dict[str, Any]]:
        return json.loads(self.result_json) if self.result_json else None

    def to_record(self) -> Dict[str, Any]:
        """Logical job record as exposed to the API layer."""
        return {
            "id": self.id,
            "kind": self.kind,
            "payload": self.payload,
            "attempt_count": self.attempt_count,
            "max_attempts": self.max_attempts,
            "state": self.state,
            "created_at": self.created_at.isoformat(),
            "dedupe_key": self.dedupe_key,
            "last_error": self.last_error,
            "result": self.result,
        }


class RecurringSchedule(SQLModel, table=True):
    """Standing schedule. One row per dedupe key, however often it is registered."""

    __tablename__ = "recurring_schedules"

    dedupe_key: str = Field(primary_key=True)
    kind: str
    payload_json: str = Field(default="{}")
    cron_spec: str
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)

    @property
    def payload(self) -> Dict[str, Any]:
        return json.loads(self.payload_json or "{}")
