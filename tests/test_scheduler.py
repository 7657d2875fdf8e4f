"""Recurring schedule registration and startup recovery."""

from datetime import timedelta

import pytest
from sqlalchemy import update
from sqlmodel import Session

from app.core.timeutil import utcnow
from app.models.integration_models import Integration, SyncStatus
from app.models.job_models import JobKind, JobState, SyncJob
from app.scheduler.jobs import FLEET_SYNC_KEY, MAINTENANCE_JOB_ID, SyncScheduler
from app.services.sync_service import SyncService


def _age_active_jobs(engine, hours=1):
    with Session(engine) as session:
        session.execute(
            update(SyncJob)
            .where(SyncJob.state == JobState.ACTIVE.value)
            .values(
                started_at=utcnow() - timedelta(hours=hours),
                heartbeat_at=utcnow() - timedelta(hours=hours),
            )
        )
        session.commit()


def test_fleet_schedule_registered_twice_is_one_schedule(queue, store):
    first = SyncScheduler(queue, store, cron_spec="0 */6 * * *")
    second = SyncScheduler(queue, store, cron_spec="0 */6 * * *")

    first.register_fleet_sync()
    second.register_fleet_sync()

    schedules = queue.recurring_schedules()
    assert [s.dedupe_key for s in schedules] == [FLEET_SYNC_KEY]
    assert schedules[0].payload == {"tenant_id": "all"}
    assert schedules[0].kind == JobKind.SYNC_ALL.value


@pytest.mark.asyncio
async def test_overlapping_firings_keep_one_job_in_flight(queue, store):
    scheduler = SyncScheduler(queue, store)
    scheduler.register_fleet_sync()

    first = await scheduler.fire(FLEET_SYNC_KEY)
    second = await scheduler.fire(FLEET_SYNC_KEY)

    assert first == second
    assert queue.status()["waiting"] == 1


@pytest.mark.asyncio
async def test_start_registers_timers_by_dedupe_key(queue, store):
    scheduler = SyncScheduler(queue, store, maintenance_minutes=5)
    scheduler.start()
    try:
        job_ids = sorted(job.id for job in scheduler.scheduler.get_jobs())
        assert job_ids == sorted([FLEET_SYNC_KEY, MAINTENANCE_JOB_ID])
    finally:
        scheduler.stop()


@pytest.mark.asyncio
async def test_maintenance_requeues_stalled_jobs(queue, store):
    stalled_id = queue.enqueue(JobKind.SYNC_PROVIDER.value, {"integration_id": 1})
    queue.dequeue()
    _age_active_jobs(queue.engine)

    await SyncScheduler(queue, store).maintenance()

    assert queue.get(stalled_id).state == JobState.WAITING.value


class _LivePool:
    def __init__(self, *job_ids):
        self.held_job_ids = frozenset(job_ids)


@pytest.mark.asyncio
async def test_maintenance_leaves_jobs_held_by_this_process(queue, store):
    held_id = queue.enqueue(JobKind.SYNC_ALL.value, {"tenant_id": "all"})
    queue.dequeue()
    _age_active_jobs(queue.engine)

    await SyncScheduler(queue, store, pool=_LivePool(held_id)).maintenance()

    assert queue.get(held_id).state == JobState.ACTIVE.value


def test_service_recovery_releases_stale_claims(engine, make_integration):
    service = SyncService(engine)
    stuck = make_integration()
    fresh = make_integration()
    service.store.try_claim(stuck.id)
    service.store.try_claim(fresh.id)
    with Session(engine) as session:
        session.execute(
            update(Integration)
            .where(Integration.id == stuck.id)
            .values(sync_started_at=utcnow() - timedelta(hours=1))
        )
        session.commit()
    job_id = service.queue.enqueue(JobKind.SYNC_PROVIDER.value, {"integration_id": fresh.id})
    service.queue.dequeue()
    _age_active_jobs(engine)

    recovered = service.recover()

    assert recovered == {"jobs_requeued": 1, "claims_released": 1}
    assert service.store.get(stuck.id).sync_status == SyncStatus.ERROR.value
    assert service.store.get(fresh.id).sync_status == SyncStatus.SYNCING.value
    assert service.queue.get(job_id).state == JobState.WAITING.value


def test_service_scheduler_sees_the_worker_pool(engine):
    service = SyncService(engine)
    assert service.scheduler.pool is service.pool
