"""AdPulse — Sync Service.

Built once per process at startup and handed to the API through
``app.state``. Owns the integration store, job queue, token manager, adapters,
worker pool and scheduler, and exposes the operations the routes need.
"""

from datetime import timedelta
from typing import Any, Dict, Optional

import httpx
from sqlalchemy.engine import Engine

from app.config import settings
from app.connectors.base import SyncAdapter
from app.connectors.registry import build_adapters
from app.core.errors import IntegrationNotFound
from app.core.logging import get_logger
from app.core.timeutil import utcnow
from app.models.integration_models import Integration
from app.models.job_models import JobKind, SyncJob
from app.oauth.manager import TokenManager
from app.queue.job_queue import JobQueue
from app.scheduler.jobs import SyncScheduler
from app.stores.integration_store import IntegrationStore
from app.workers.pool import WorkerPool

logger = get_logger("services.sync")


def tenant_sync_key(tenant_id: str) -> str:
    return f"tenant-sync:{tenant_id}"


class SyncService:
    """Process-wide wiring of the background sync core."""

    def __init__(
        self,
        engine: Engine,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        adapters: Optional[Dict[str, SyncAdapter]] = None,
        concurrency: Optional[int] = None,
    ):
        self.engine = engine
        self.store = IntegrationStore(engine)
        self.queue = JobQueue(engine)
        self.tokens = TokenManager(self.store, transport=transport)
        self.adapters = adapters or build_adapters(
            engine, self.store, self.tokens, transport=transport
        )
        self.pool = WorkerPool(
            self.queue, self.store, self.adapters, concurrency=concurrency
        )
        self.scheduler = SyncScheduler(self.queue, self.store, pool=self.pool)

    # ── Lifecycle ──

    async def start(self) -> None:
        self.recover()
        if settings.worker_enabled:
            self.pool.start()
        else:
            logger.info("Workers disabled via config")
        self.scheduler.start()

    async def stop(self) -> None:
        self.scheduler.stop()
        await self.pool.stop()

    def recover(self) -> Dict[str, int]:
        """Undo work left half-done by a crashed process."""
        stall_cutoff = utcnow() - timedelta(seconds=settings.stalled_job_timeout_seconds)
        recovered = {
            "jobs_requeued": self.queue.requeue_stalled(exclude=self.pool.held_job_ids),
            "claims_released": self.store.release_stale_claims(stall_cutoff),
        }
        logger.info(f"Startup recovery: {recovered}")
        return recovered

    # ── Triggers ──

    def request_sync(self, integration_id: int) -> int:
        """On-demand sync of one integration; enqueued immediately."""
        integration = self._require(integration_id)
        return self.queue.enqueue(
            JobKind.SYNC_PROVIDER.value,
            {
                "integration_id": integration.id,
                "tenant_id": integration.tenant_id,
                "provider": integration.provider,
            },
        )

    def request_tenant_sync(self, tenant_id: str) -> int:
        """Sync every active integration of one tenant."""
        return self.queue.enqueue(
            JobKind.SYNC_ALL.value,
            {"tenant_id": tenant_id},
            dedupe_key=tenant_sync_key(tenant_id),
        )

    # ── Status ──

    def integration_status(self, integration_id: int) -> Dict[str, Any]:
        integration = self._require(integration_id)
        return {
            "integration_id": integration.id,
            "tenant_id": integration.tenant_id,
            "provider": integration.provider,
            "active": integration.active,
            "sync_status": integration.sync_status,
            "last_sync_at": integration.last_sync_at.isoformat()
            if integration.last_sync_at
            else None,
            "last_error": integration.last_error,
        }

    def queue_status(self) -> Dict[str, int]:
        return self.queue.status()

    def get_job(self, job_id: int) -> Optional[SyncJob]:
        return self.queue.get(job_id)

    def purge_queue(self) -> int:
        return self.queue.purge()

    # ── Connections ──

    def authorization_url(
        self, provider: str, tenant_id: str, extra: Optional[Dict[str, str]] = None
    ) -> str:
        return self.tokens.authorization_url(provider, tenant_id, extra)

    async def complete_oauth(
        self,
        provider: str,
        tenant_id: str,
        code: str,
        extra: Optional[Dict[str, str]] = None,
    ) -> Integration:
        return await self.tokens.connect(provider, tenant_id, code, extra)

    def disconnect(self, integration_id: int) -> Integration:
        self._require(integration_id)
        self.store.deactivate(integration_id)
        logger.info("Integration disconnected", extra={"integration_id": integration_id})
        return self.store.get(integration_id)

    def _require(self, integration_id: int) -> Integration:
        integration = self.store.get(integration_id)
        if integration is None:
            raise IntegrationNotFound(f"Integration {integration_id} not found")
        return integration
