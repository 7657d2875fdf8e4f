"""Worker pool: per-unit state machine, retry routing, advisory lock, bounds."""

import asyncio
from typing import Dict, Optional

import pytest

from app.connectors.base import SyncResult
from app.core.errors import AuthExpired, MalformedResponse, RateLimited
from app.models.integration_models import SyncStatus
from app.models.job_models import JobKind, JobState
from app.queue.job_queue import JobQueue
from app.workers.pool import WorkerPool


class StubAdapter:
    """Records calls; raises per integration id when told to."""

    provider = "meta"

    def __init__(self, failures: Optional[Dict[int, Exception]] = None, delay: float = 0.0):
        self.failures = failures or {}
        self.delay = delay
        self.calls = []
        self.running = 0
        self.peak = 0
        self.entered = asyncio.Event()
        self.gate: Optional[asyncio.Event] = None

    async def sync(self, integration_id: int) -> SyncResult:
        self.calls.append(integration_id)
        self.running += 1
        self.peak = max(self.peak, self.running)
        self.entered.set()
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            failure = self.failures.get(integration_id)
            if failure is not None:
                raise failure
            return SyncResult(campaigns_upserted=1, metrics_upserted=2)
        finally:
            self.running -= 1


def _pool(queue, store, adapter, **kwargs):
    kwargs.setdefault("concurrency", 5)
    kwargs.setdefault("adapter_timeout", 5)
    kwargs.setdefault("defer_seconds", 15)
    kwargs.setdefault("poll_interval", 0.01)
    return WorkerPool(queue, store, {"meta": adapter}, **kwargs)


def _sync_provider(queue, integration_id):
    return queue.enqueue(JobKind.SYNC_PROVIDER.value, {"integration_id": integration_id})


# ── sync-provider ──


@pytest.mark.asyncio
async def test_successful_sync_settles_idle_and_completes_job(queue, store, make_integration):
    integration = make_integration()
    job_id = _sync_provider(queue, integration.id)
    pool = _pool(queue, store, StubAdapter())

    assert await pool.run_once() is True

    job = queue.get(job_id)
    assert job.state == JobState.COMPLETED.value
    assert job.result["status"] == "synced"
    assert job.result["result"] == {"campaigns_upserted": 1, "metrics_upserted": 2}
    current = store.get(integration.id)
    assert current.sync_status == SyncStatus.IDLE.value
    assert current.last_sync_at is not None


@pytest.mark.asyncio
async def test_empty_queue_reports_nothing_processed(queue, store):
    assert await _pool(queue, store, StubAdapter()).run_once() is False


@pytest.mark.asyncio
async def test_auth_expired_is_never_retried(queue, store, make_integration):
    integration = make_integration()
    job_id = _sync_provider(queue, integration.id)
    adapter = StubAdapter({integration.id: AuthExpired("token revoked", provider="meta")})
    pool = _pool(queue, store, adapter)

    await pool.run_once()

    job = queue.get(job_id)
    assert job.state == JobState.FAILED.value
    assert job.attempt_count == 1
    assert "AuthExpired" in job.last_error
    assert store.get(integration.id).sync_status == SyncStatus.ERROR.value
    assert await pool.run_once() is False
    assert adapter.calls == [integration.id]


@pytest.mark.asyncio
async def test_rate_limited_is_retried_up_to_max_attempts(engine, store, make_integration):
    # Zero backoff so every retry is immediately available
    queue = JobQueue(engine, max_attempts=3, backoff_base=0.0)
    integration = make_integration()
    job_id = _sync_provider(queue, integration.id)
    adapter = StubAdapter({integration.id: RateLimited("slow down", provider="meta")})
    pool = _pool(queue, store, adapter)

    states = []
    for _ in range(3):
        assert await pool.run_once() is True
        states.append(queue.get(job_id).state)

    assert states == [JobState.WAITING.value, JobState.WAITING.value, JobState.FAILED.value]
    assert queue.get(job_id).attempt_count == 3
    assert len(adapter.calls) == 3
    assert await pool.run_once() is False


@pytest.mark.asyncio
async def test_adapter_timeout_becomes_retryable_provider_unavailable(queue, store, make_integration):
    integration = make_integration()
    job_id = _sync_provider(queue, integration.id)
    pool = _pool(queue, store, StubAdapter(delay=1.0), adapter_timeout=0.05)

    await pool.run_once()

    job = queue.get(job_id)
    assert job.state == JobState.WAITING.value
    assert job.attempt_count == 1
    assert "ProviderUnavailable" in job.last_error
    assert store.get(integration.id).sync_status == SyncStatus.ERROR.value


@pytest.mark.asyncio
async def test_unexpected_exception_is_terminal(queue, store, make_integration):
    integration = make_integration()
    job_id = _sync_provider(queue, integration.id)
    pool = _pool(queue, store, StubAdapter({integration.id: KeyError("campaign")}))

    await pool.run_once()

    assert queue.get(job_id).state == JobState.FAILED.value
    current = store.get(integration.id)
    assert current.sync_status == SyncStatus.ERROR.value
    assert current.last_error.startswith("Unexpected error")


@pytest.mark.asyncio
async def test_back_to_back_jobs_defer_the_second(queue, store, make_integration):
    integration = make_integration()
    first_id = _sync_provider(queue, integration.id)
    second_id = _sync_provider(queue, integration.id)
    adapter = StubAdapter()
    adapter.gate = asyncio.Event()
    pool = _pool(queue, store, adapter)

    first = queue.dequeue()
    running = asyncio.create_task(pool.process(first))
    await asyncio.wait_for(adapter.entered.wait(), timeout=2)

    assert await pool.run_once() is True
    second = queue.get(second_id)
    assert second.state == JobState.WAITING.value
    assert second.attempt_count == 0
    assert second.available_at > second.created_at

    adapter.gate.set()
    await running
    assert queue.get(first_id).state == JobState.COMPLETED.value
    assert adapter.calls == [integration.id]


@pytest.mark.asyncio
async def test_inactive_integration_completes_as_skipped(queue, store, make_integration):
    integration = make_integration()
    store.deactivate(integration.id)
    job_id = _sync_provider(queue, integration.id)
    adapter = StubAdapter()

    await _pool(queue, store, adapter).run_once()

    job = queue.get(job_id)
    assert job.state == JobState.COMPLETED.value
    assert job.result["status"] == "skipped"
    assert adapter.calls == []


@pytest.mark.asyncio
async def test_missing_integration_fails_terminally(queue, store):
    job_id = _sync_provider(queue, 999)

    await _pool(queue, store, StubAdapter()).run_once()

    job = queue.get(job_id)
    assert job.state == JobState.FAILED.value
    assert "not found" in job.last_error


# ── sync-all ──


@pytest.mark.asyncio
async def test_sync_all_isolates_a_failing_integration(queue, store, make_integration):
    first, second, third = (make_integration() for _ in range(3))
    job_id = queue.enqueue(JobKind.SYNC_ALL.value, {"tenant_id": "all"})
    adapter = StubAdapter({second.id: MalformedResponse("bad row", provider="meta")})

    await _pool(queue, store, adapter).run_once()

    for ok in (first, third):
        current = store.get(ok.id)
        assert current.sync_status == SyncStatus.IDLE.value
        assert current.last_sync_at is not None
    failed = store.get(second.id)
    assert failed.sync_status == SyncStatus.ERROR.value
    assert failed.last_sync_at is None

    job = queue.get(job_id)
    assert job.state == JobState.COMPLETED.value
    assert job.result["counts"] == {"synced": 2, "error": 1}
    assert job.result["integrations"][str(second.id)]["status"] == "error"


@pytest.mark.asyncio
async def test_sync_all_reports_busy_integration_as_deferred(queue, store, make_integration):
    busy = make_integration()
    free = make_integration()
    store.try_claim(busy.id)
    job_id = queue.enqueue(JobKind.SYNC_ALL.value, {"tenant_id": "all"})
    adapter = StubAdapter()

    await _pool(queue, store, adapter).run_once()

    result = queue.get(job_id).result
    assert result["integrations"][str(busy.id)]["status"] == "deferred"
    assert result["integrations"][str(free.id)]["status"] == "synced"
    assert adapter.calls == [free.id]
    assert store.get(busy.id).sync_status == SyncStatus.SYNCING.value


@pytest.mark.asyncio
async def test_tenant_sync_all_only_touches_that_tenant(queue, store, make_integration):
    mine = make_integration(tenant_id="tenant-a")
    make_integration(tenant_id="tenant-b")
    queue.enqueue(JobKind.SYNC_ALL.value, {"tenant_id": "tenant-a"})
    adapter = StubAdapter()

    await _pool(queue, store, adapter).run_once()

    assert adapter.calls == [mine.id]


@pytest.mark.asyncio
async def test_sync_all_expansion_respects_pool_bound(queue, store, make_integration):
    for _ in range(8):
        make_integration()
    queue.enqueue(JobKind.SYNC_ALL.value, {"tenant_id": "all"})
    adapter = StubAdapter(delay=0.05)
    pool = _pool(queue, store, adapter, concurrency=3)

    await pool.run_once()

    assert len(adapter.calls) == 8
    assert adapter.peak == 3
    assert pool.peak_units == 3


@pytest.mark.asyncio
async def test_running_sync_all_is_never_handed_to_a_second_worker(queue, store, make_integration):
    ids = [make_integration().id for _ in range(3)]
    job_id = queue.enqueue(JobKind.SYNC_ALL.value, {"tenant_id": "all"})
    adapter = StubAdapter()
    adapter.gate = asyncio.Event()
    pool = _pool(queue, store, adapter)

    running = asyncio.create_task(pool.run_once())
    for _ in range(200):
        if adapter.running == 3:
            break
        await asyncio.sleep(0.01)
    assert pool.held_job_ids == {job_id}

    # Maintenance with an aggressive timeout still leaves the live job alone
    assert queue.requeue_stalled(timeout_seconds=0, exclude=pool.held_job_ids) == 0
    assert await pool.run_once() is False

    adapter.gate.set()
    assert await running is True

    assert sorted(adapter.calls) == sorted(ids)
    job = queue.get(job_id)
    assert job.state == JobState.COMPLETED.value
    assert job.result["counts"] == {"synced": 3}
    assert pool.held_job_ids == frozenset()


@pytest.mark.asyncio
async def test_long_running_job_refreshes_its_heartbeat(queue, store, make_integration):
    integration = make_integration()
    job_id = _sync_provider(queue, integration.id)
    adapter = StubAdapter()
    adapter.gate = asyncio.Event()
    pool = _pool(queue, store, adapter, heartbeat_interval=0.02)

    job = queue.dequeue()
    first_beat = job.heartbeat_at
    running = asyncio.create_task(pool.process(job))
    await asyncio.wait_for(adapter.entered.wait(), timeout=2)

    refreshed = False
    for _ in range(100):
        await asyncio.sleep(0.02)
        if queue.get(job_id).heartbeat_at > first_beat:
            refreshed = True
            break

    adapter.gate.set()
    await running
    assert refreshed
    assert queue.get(job_id).state == JobState.COMPLETED.value


@pytest.mark.asyncio
async def test_running_pool_drains_queue_within_bound(queue, store, make_integration):
    ids = [make_integration().id for _ in range(6)]
    job_ids = [_sync_provider(queue, integration_id) for integration_id in ids]
    adapter = StubAdapter(delay=0.05)
    pool = _pool(queue, store, adapter, concurrency=2)

    pool.start()
    try:
        for _ in range(200):
            if queue.status()["completed"] == len(job_ids):
                break
            await asyncio.sleep(0.02)
    finally:
        await pool.stop()

    assert queue.status()["completed"] == len(job_ids)
    assert adapter.peak <= 2
    assert sorted(adapter.calls) == sorted(ids)
