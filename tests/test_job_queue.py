"""Durable job queue: dedupe, claiming, retry policy, retention."""

from datetime import timedelta

import pytest
from sqlalchemy import DateTime, update
from sqlmodel import Session

from app.core.timeutil import utcnow
from app.models.job_models import JobKind, JobState, SyncJob


def _provider_job(queue, integration_id=1, **kwargs):
    return queue.enqueue(
        JobKind.SYNC_PROVIDER.value,
        {"integration_id": integration_id, "tenant_id": "tenant-a", "provider": "meta"},
        **kwargs,
    )


class TestEnqueue:
    def test_enqueue_creates_waiting_job(self, queue):
        job_id = _provider_job(queue)

        job = queue.get(job_id)
        assert job.state == JobState.WAITING.value
        assert job.attempt_count == 0
        assert job.max_attempts == 3
        assert job.payload["integration_id"] == 1
        assert queue.status() == {"waiting": 1, "active": 0, "completed": 0, "failed": 0, "total": 1}

    def test_jobs_without_dedupe_key_are_never_coalesced(self, queue):
        assert _provider_job(queue) != _provider_job(queue)
        assert queue.status()["waiting"] == 2

    def test_dedupe_key_returns_in_flight_job(self, queue):
        first = queue.enqueue(JobKind.SYNC_ALL.value, {"tenant_id": "all"}, dedupe_key="k")
        second = queue.enqueue(JobKind.SYNC_ALL.value, {"tenant_id": "all"}, dedupe_key="k")

        assert first == second
        assert queue.status()["waiting"] == 1

    def test_dedupe_key_also_blocks_while_active(self, queue):
        first = queue.enqueue(JobKind.SYNC_ALL.value, {"tenant_id": "all"}, dedupe_key="k")
        queue.dequeue()

        assert queue.enqueue(JobKind.SYNC_ALL.value, {"tenant_id": "all"}, dedupe_key="k") == first

    def test_dedupe_key_is_free_once_terminal(self, queue):
        first = queue.enqueue(JobKind.SYNC_ALL.value, {"tenant_id": "all"}, dedupe_key="k")
        queue.dequeue()
        queue.complete(first, {"ok": True})

        second = queue.enqueue(JobKind.SYNC_ALL.value, {"tenant_id": "all"}, dedupe_key="k")
        assert second != first
        assert queue.get(first).state == JobState.COMPLETED.value

    def test_dedupe_key_freed_mid_race_still_enqueues(self, queue, monkeypatch):
        holder = queue.enqueue(JobKind.SYNC_ALL.value, {"tenant_id": "t"}, dedupe_key="tenant-sync:t")
        real_lookup = queue._in_flight
        lookups = {"n": 0}

        def racing_lookup(key):
            # Two lookups miss the holder; it finishes just before the third
            lookups["n"] += 1
            if lookups["n"] < 3:
                return None
            if lookups["n"] == 3:
                queue.complete(queue.dequeue().id)
            return real_lookup(key)

        monkeypatch.setattr(queue, "_in_flight", racing_lookup)
        job_id = queue.enqueue(JobKind.SYNC_ALL.value, {"tenant_id": "t"}, dedupe_key="tenant-sync:t")

        assert isinstance(job_id, int)
        assert job_id != holder
        assert queue.get(job_id).state == JobState.WAITING.value


class TestRecurring:
    def test_registering_twice_yields_one_schedule(self, queue):
        queue.enqueue_recurring(JobKind.SYNC_ALL.value, {"tenant_id": "all"}, "0 */6 * * *", "recurring-sync-all")
        queue.enqueue_recurring(JobKind.SYNC_ALL.value, {"tenant_id": "all"}, "0 */3 * * *", "recurring-sync-all")

        schedules = queue.recurring_schedules()
        assert len(schedules) == 1
        assert schedules[0].cron_spec == "0 */3 * * *"

    def test_firing_twice_keeps_one_job_in_flight(self, queue):
        queue.enqueue_recurring(JobKind.SYNC_ALL.value, {"tenant_id": "all"}, "0 */6 * * *", "recurring-sync-all")

        first = queue.fire_recurring("recurring-sync-all")
        second = queue.fire_recurring("recurring-sync-all")

        assert first == second
        assert queue.status()["waiting"] == 1
        assert queue.get(first).payload == {"tenant_id": "all"}

    def test_invalid_crontab_is_rejected(self, queue):
        with pytest.raises(ValueError):
            queue.enqueue_recurring(JobKind.SYNC_ALL.value, {}, "every six hours", "bad")
        assert queue.recurring_schedules() == []

    def test_firing_unknown_schedule_enqueues_nothing(self, queue):
        assert queue.fire_recurring("nope") is None
        assert queue.status()["waiting"] == 0


class TestDequeue:
    def test_claims_oldest_first_and_only_once(self, queue):
        first = _provider_job(queue, 1)
        second = _provider_job(queue, 2)

        claimed = queue.dequeue()
        assert claimed.id == first
        assert claimed.state == JobState.ACTIVE.value
        assert claimed.started_at is not None
        assert queue.dequeue().id == second
        assert queue.dequeue() is None

    def test_delayed_job_is_not_available_early(self, queue):
        _provider_job(queue, delay_seconds=60)

        assert queue.dequeue() is None
        assert queue.dequeue(now=utcnow() + timedelta(seconds=61)) is not None


class TestRetryPolicy:
    def test_retryable_failures_back_off_exponentially_then_fail(self, queue):
        job_id = _provider_job(queue)
        now = utcnow()
        delays = []

        for attempt in (1, 2):
            job = queue.dequeue(now=now)
            assert job.id == job_id
            state = queue.fail(job_id, "RateLimited: slow down", retryable=True, now=now)
            assert state == JobState.WAITING.value
            job = queue.get(job_id)
            assert job.attempt_count == attempt
            delays.append((job.available_at - now).total_seconds())
            assert queue.dequeue(now=now) is None
            now = job.available_at

        assert delays == [2.0, 4.0]

        queue.dequeue(now=now)
        state = queue.fail(job_id, "RateLimited: slow down", retryable=True, now=now)
        job = queue.get(job_id)
        assert state == JobState.FAILED.value
        assert job.attempt_count == 3
        assert job.finished_at == now
        assert job.last_error == "RateLimited: slow down"

    def test_non_retryable_failure_is_terminal_immediately(self, queue):
        job_id = _provider_job(queue)
        queue.dequeue()

        assert queue.fail(job_id, "AuthExpired: token revoked", retryable=False) == JobState.FAILED.value
        assert queue.get(job_id).attempt_count == 1

    def test_retry_after_extends_backoff(self, queue):
        job_id = _provider_job(queue)
        now = utcnow()
        queue.dequeue(now=now)

        queue.fail(job_id, "RateLimited", retryable=True, retry_after=30, now=now)

        assert queue.get(job_id).available_at == now + timedelta(seconds=30)

    def test_defer_does_not_consume_an_attempt(self, queue):
        job_id = _provider_job(queue)
        now = utcnow()
        queue.dequeue(now=now)

        assert queue.defer(job_id, 15, now=now)

        job = queue.get(job_id)
        assert job.state == JobState.WAITING.value
        assert job.attempt_count == 0
        assert job.available_at == now + timedelta(seconds=15)

    def test_backoff_delay(self, queue):
        assert [queue.backoff_delay(n, 2.0) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]

    def test_fail_on_job_that_is_not_active_is_ignored(self, queue):
        job_id = _provider_job(queue)
        assert queue.fail(job_id, "boom", retryable=True) is None
        assert queue.get(job_id).attempt_count == 0


class TestMaintenance:
    def test_purge_keeps_active_jobs(self, queue):
        active = _provider_job(queue, 1)
        queue.dequeue()
        _provider_job(queue, 2)
        _provider_job(queue, 3)
        queue.complete(queue.dequeue().id)

        assert queue.purge() == 2
        assert queue.status() == {"waiting": 0, "active": 1, "completed": 0, "failed": 0, "total": 1}
        assert queue.get(active).state == JobState.ACTIVE.value

    def test_prune_expired_respects_retention_windows(self, queue, engine):
        now = utcnow()
        ages = {"old-completed": 2, "recent-failed": 2, "old-failed": 25}
        ids = {}
        for name, hours in ages.items():
            ids[name] = _provider_job(queue)
            queue.dequeue()
            if name.endswith("completed"):
                queue.complete(ids[name])
            else:
                queue.fail(ids[name], "boom", retryable=False)
            with Session(engine) as session:
                session.execute(
                    update(SyncJob)
                    .where(SyncJob.id == ids[name])
                    .values(finished_at=now - timedelta(hours=hours))
                )
                session.commit()

        assert queue.prune_expired(now=now) == 2
        assert queue.get(ids["old-completed"]) is None
        assert queue.get(ids["old-failed"]) is None
        assert queue.get(ids["recent-failed"]).state == JobState.FAILED.value

    def test_requeue_stalled_returns_abandoned_jobs(self, queue):
        job_id = _provider_job(queue)
        started = utcnow()
        queue.dequeue(now=started)

        assert queue.requeue_stalled(timeout_seconds=600, now=started + timedelta(seconds=60)) == 0
        assert queue.requeue_stalled(timeout_seconds=600, now=started + timedelta(seconds=601)) == 1
        job = queue.get(job_id)
        assert job.state == JobState.WAITING.value
        assert job.attempt_count == 0

    def test_heartbeat_keeps_long_running_job_active(self, queue):
        job_id = _provider_job(queue)
        started = utcnow()
        queue.dequeue(now=started)

        assert queue.heartbeat([job_id], now=started + timedelta(seconds=500)) == 1
        assert queue.requeue_stalled(timeout_seconds=600, now=started + timedelta(seconds=700)) == 0
        assert queue.requeue_stalled(timeout_seconds=600, now=started + timedelta(seconds=1101)) == 1
        assert queue.get(job_id).heartbeat_at is None

    def test_requeue_stalled_skips_jobs_held_by_live_workers(self, queue):
        held = _provider_job(queue, 1)
        abandoned = _provider_job(queue, 2)
        started = utcnow()
        queue.dequeue(now=started)
        queue.dequeue(now=started)

        later = started + timedelta(seconds=601)
        assert queue.requeue_stalled(timeout_seconds=600, now=later, exclude=[held]) == 1
        assert queue.get(held).state == JobState.ACTIVE.value
        assert queue.get(abandoned).state == JobState.WAITING.value


def test_timestamps_use_naive_datetime_columns():
    for column in ("created_at", "available_at", "started_at", "heartbeat_at", "finished_at"):
        column_type = SyncJob.__table__.c[column].type
        assert isinstance(column_type, DateTime)
        assert column_type.timezone is False
