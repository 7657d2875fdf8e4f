"""AdPulse — Bounded Worker Pool.

A fixed number of asyncio worker loops drain the job queue. Every adapter run
(an on-demand ``sync-provider`` job or one unit of a ``sync-all`` expansion)
acquires a slot of the same shared semaphore, so fan-out never exceeds the
pool size. A ``sync-all`` job only waits on its units and holds no slot.

Per unit: claim ``syncing`` → run the adapter under a deadline → ``idle`` on
success, ``error`` on failure. Errors become job outcomes and never escape a
worker loop.

While a job runs its ``heartbeat_at`` is refreshed on a timer and after every
finished unit, so queue maintenance never mistakes a long fan-out for a dead
worker.
"""

import asyncio
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Set

from app.config import settings
from app.connectors.base import SyncAdapter, SyncResult
from app.core.errors import (
    AuthExpired,
    MalformedResponse,
    ProviderUnavailable,
    SyncError,
    Unsupported,
)
from app.core.logging import get_logger
from app.models.integration_models import Integration
from app.models.job_models import ALL_TENANTS, JobKind, SyncJob
from app.queue.job_queue import JobQueue
from app.stores.integration_store import IntegrationStore

logger = get_logger("workers")


class UnitStatus(str, Enum):
    SYNCED = "synced"
    ERROR = "error"
    DEFERRED = "deferred"  # integration already syncing elsewhere
    SKIPPED = "skipped"  # integration disconnected
    MISSING = "missing"


@dataclass
class UnitOutcome:
    """What happened to one integration inside a job."""

    integration_id: int
    status: str
    result: Optional[Dict[str, int]] = None
    error: Optional[str] = None
    retryable: bool = False
    retry_after: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("retry_after")
        return data


class WorkerPool:
    """Fixed-size executor draining the queue."""

    def __init__(
        self,
        queue: JobQueue,
        store: IntegrationStore,
        adapters: Dict[str, SyncAdapter],
        concurrency: Optional[int] = None,
        adapter_timeout: Optional[float] = None,
        defer_seconds: Optional[float] = None,
        poll_interval: Optional[float] = None,
        heartbeat_interval: Optional[float] = None,
    ):
        self.queue = queue
        self.store = store
        self.adapters = adapters
        self.concurrency = concurrency or settings.worker_concurrency
        self.adapter_timeout = adapter_timeout or settings.adapter_timeout_seconds
        self.defer_seconds = (
            defer_seconds if defer_seconds is not None else settings.job_defer_seconds
        )
        self.poll_interval = poll_interval or settings.worker_poll_interval_seconds
        self.heartbeat_interval = heartbeat_interval or settings.job_heartbeat_seconds

        self._slots = asyncio.Semaphore(self.concurrency)
        self._stopping = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self._held: Set[int] = set()

        # Observed adapter concurrency
        self.running_units = 0
        self.peak_units = 0

    # ── Lifecycle ──

    def start(self) -> None:
        if self._tasks:
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._worker_loop(index), name=f"adpulse-worker-{index}")
            for index in range(self.concurrency)
        ]
        logger.info(f"Worker pool started with {self.concurrency} workers")

    async def stop(self, grace_seconds: float = 10.0) -> None:
        """Let in-flight jobs finish for ``grace_seconds``, then cancel."""
        self._stopping.set()
        if not self._tasks:
            return
        _, pending = await asyncio.wait(self._tasks, timeout=grace_seconds)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []
        logger.info("Worker pool stopped")

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not self._stopping.is_set()

    @property
    def held_job_ids(self) -> FrozenSet[int]:
        """Jobs a worker of this pool is executing right now."""
        return frozenset(self._held)

    async def _worker_loop(self, index: int) -> None:
        while not self._stopping.is_set():
            try:
                processed = await self.run_once()
            except Exception:
                # Queue/database trouble; back off and keep the loop alive
                logger.exception(f"Worker {index} iteration failed")
                processed = False
            if not processed:
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass

    async def run_once(self) -> bool:
        """Claim and process one job. False when the queue had nothing ready."""
        job = self.queue.dequeue()
        if job is None:
            return False
        await self.process(job)
        return True

    # ── Job execution ──

    async def process(self, job: SyncJob) -> None:
        """Run one claimed job to an outcome recorded on the queue."""
        started = time.monotonic()
        logger.info(
            f"Processing {job.kind} job",
            extra={"job_id": job.id, "attempt": job.attempt_count + 1},
        )
        self._held.add(job.id)
        beat = asyncio.create_task(self._heartbeat_loop(job.id))
        try:
            if job.kind == JobKind.SYNC_PROVIDER.value:
                await self._process_provider(job)
            elif job.kind == JobKind.SYNC_ALL.value:
                await self._process_all(job)
            else:
                self.queue.fail(job.id, f"Unknown job kind '{job.kind}'", retryable=False)
        except Exception as exc:
            logger.exception("Unexpected error while processing job", extra={"job_id": job.id})
            self.queue.fail(job.id, f"Unexpected error: {exc}", retryable=False)
        finally:
            beat.cancel()
            await asyncio.gather(beat, return_exceptions=True)
            self._held.discard(job.id)
            logger.info(
                f"Finished {job.kind} job",
                extra={
                    "job_id": job.id,
                    "duration_ms": int((time.monotonic() - started) * 1000),
                },
            )

    async def _heartbeat_loop(self, job_id: int) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            self._touch(job_id)

    def _touch(self, job_id: int) -> None:
        try:
            self.queue.heartbeat([job_id])
        except Exception as e:
            logger.warning(f"Heartbeat failed: {e}", extra={"job_id": job_id})

    async def _process_provider(self, job: SyncJob) -> None:
        integration_id = job.payload.get("integration_id")
        if integration_id is None:
            self.queue.fail(job.id, "Payload has no integration_id", retryable=False)
            return

        outcome = await self.sync_integration(int(integration_id), job_id=job.id)

        if outcome.status in (UnitStatus.SYNCED.value, UnitStatus.SKIPPED.value):
            self.queue.complete(job.id, outcome.to_dict())
        elif outcome.status == UnitStatus.DEFERRED.value:
            self.queue.defer(job.id, self.defer_seconds)
            logger.info(
                f"Integration busy; job deferred {self.defer_seconds:.0f}s",
                extra={"job_id": job.id, "integration_id": integration_id},
            )
        else:
            self.queue.fail(
                job.id,
                outcome.error or "Sync failed",
                retryable=outcome.retryable,
                retry_after=outcome.retry_after,
            )

    async def _process_all(self, job: SyncJob) -> None:
        tenant_id = job.payload.get("tenant_id", ALL_TENANTS)
        integrations = self.store.list_active(
            None if tenant_id == ALL_TENANTS else tenant_id
        )
        logger.info(
            f"Expanding sync-all into {len(integrations)} integrations",
            extra={"job_id": job.id, "tenant_id": tenant_id},
        )

        async def unit(integration_id: int) -> UnitOutcome:
            outcome = await self.sync_integration(integration_id, job_id=job.id)
            self._touch(job.id)
            return outcome

        results = await asyncio.gather(
            *(unit(i.id) for i in integrations),
            return_exceptions=True,
        )

        outcomes: List[UnitOutcome] = []
        for integration, result in zip(integrations, results):
            if isinstance(result, BaseException):
                logger.error(
                    f"Sync unit crashed: {result!r}",
                    extra={"job_id": job.id, "integration_id": integration.id},
                )
                result = UnitOutcome(
                    integration.id, UnitStatus.ERROR.value, error=f"Unexpected error: {result}"
                )
            outcomes.append(result)

        counts: Dict[str, int] = {}
        for outcome in outcomes:
            counts[outcome.status] = counts.get(outcome.status, 0) + 1

        self.queue.complete(
            job.id,
            {
                "tenant_id": tenant_id,
                "counts": counts,
                "integrations": {str(o.integration_id): o.to_dict() for o in outcomes},
            },
        )

    # ── One integration ──

    async def sync_integration(
        self, integration_id: int, job_id: Optional[int] = None
    ) -> UnitOutcome:
        """Claim, sync and settle one integration. Never raises a SyncError."""
        integration = self.store.get(integration_id)
        if integration is None:
            return UnitOutcome(
                integration_id,
                UnitStatus.MISSING.value,
                error=f"Integration {integration_id} not found",
            )
        if not integration.active:
            return UnitOutcome(integration_id, UnitStatus.SKIPPED.value)

        log_extra = {
            "job_id": job_id,
            "integration_id": integration_id,
            "provider": integration.provider,
            "tenant_id": integration.tenant_id,
        }

        async with self._slots:
            if not self.store.try_claim(integration_id):
                return UnitOutcome(integration_id, UnitStatus.DEFERRED.value)

            self.running_units += 1
            self.peak_units = max(self.peak_units, self.running_units)
            try:
                result = await self._run_adapter(integration)
            except SyncError as exc:
                return self._settle_failure(integration_id, exc, log_extra)
            except asyncio.CancelledError:
                self.store.mark_error(integration_id, "Sync cancelled during shutdown")
                raise
            except Exception as exc:
                logger.exception("Adapter raised an unexpected error", extra=log_extra)
                self.store.mark_error(integration_id, f"Unexpected error: {exc}")
                return UnitOutcome(
                    integration_id, UnitStatus.ERROR.value, error=f"Unexpected error: {exc}"
                )
            finally:
                self.running_units -= 1

        self.store.mark_idle(integration_id)
        logger.info("Integration synced", extra=log_extra)
        return UnitOutcome(integration_id, UnitStatus.SYNCED.value, result=result.to_dict())

    async def _run_adapter(self, integration: Integration) -> SyncResult:
        adapter = self.adapters.get(integration.provider)
        if adapter is None:
            raise Unsupported(
                f"No adapter registered for provider '{integration.provider}'",
                provider=integration.provider,
            )
        try:
            return await asyncio.wait_for(
                adapter.sync(integration.id), timeout=self.adapter_timeout
            )
        except asyncio.TimeoutError:
            raise ProviderUnavailable(
                f"Adapter exceeded {self.adapter_timeout:.0f}s deadline",
                provider=integration.provider,
            ) from None

    def _settle_failure(
        self, integration_id: int, exc: SyncError, log_extra: Dict[str, Any]
    ) -> UnitOutcome:
        message = f"{type(exc).__name__}: {exc}"
        self.store.mark_error(integration_id, message)

        if isinstance(exc, AuthExpired):
            logger.warning(f"Re-authorization required: {exc}", extra=log_extra)
        elif isinstance(exc, MalformedResponse):
            logger.error(f"Provider response rejected: {exc}", extra=log_extra)
        else:
            logger.warning(f"Sync failed: {message}", extra=log_extra)

        return UnitOutcome(
            integration_id,
            UnitStatus.ERROR.value,
            error=message,
            retryable=exc.retryable,
            retry_after=getattr(exc, "retry_after", None),
        )
