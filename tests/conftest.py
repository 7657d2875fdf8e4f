"""Shared fixtures: a private SQLite database per test."""

from datetime import datetime
from typing import Optional

import pytest

from app.database import build_engine, init_db
from app.queue.job_queue import JobQueue
from app.stores.integration_store import IntegrationStore


@pytest.fixture
def engine(tmp_path):
    eng = build_engine(f"sqlite:///{tmp_path / 'adpulse-test.db'}")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def store(engine):
    return IntegrationStore(engine)


@pytest.fixture
def queue(engine):
    return JobQueue(
        engine,
        max_attempts=3,
        backoff_base=2.0,
        completed_retention_seconds=3600,
        failed_retention_seconds=86400,
    )


@pytest.fixture
def make_integration(store):
    """Create a connected integration row."""
    counter = {"n": 0}

    def _make(
        provider: str = "meta",
        tenant_id: str = "tenant-a",
        external_account_id: Optional[str] = None,
        access_token: str = "token-1",
        refresh_token: Optional[str] = None,
        token_expires_at: Optional[datetime] = None,
    ):
        counter["n"] += 1
        return store.upsert_connection(
            tenant_id=tenant_id,
            provider=provider,
            external_account_id=external_account_id or f"acct-{counter['n']}",
            external_account_name=f"Account {counter['n']}",
            access_token=access_token,
            refresh_token=refresh_token,
            token_expires_at=token_expires_at,
        )

    return _make
