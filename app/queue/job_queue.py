"""AdPulse — Durable Job Queue.

SQL-backed queue of sync jobs. Jobs survive restarts; a claim is a conditional
UPDATE from ``waiting`` to ``active`` so two workers can never own the same
job. Dedupe keys are enforced by a partial unique index over in-flight rows.

Retry policy: a retryable failure bumps ``attempt_count`` and parks the job
for ``backoff_base * 2^(attempt_count-1)`` seconds. The job fails terminally
once ``attempt_count`` reaches ``max_attempts``.
"""

import json
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import delete, func, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from app.config import settings
from app.core.errors import DuplicateJob
from app.core.logging import get_logger
from app.core.timeutil import utcnow
from app.models.job_models import (
    IN_FLIGHT_STATES,
    JobState,
    RecurringSchedule,
    SyncJob,
)

logger = get_logger("queue")


class JobQueue:
    """Durable store of waiting / active / completed / failed jobs."""

    def __init__(
        self,
        engine: Engine,
        max_attempts: Optional[int] = None,
        backoff_base: Optional[float] = None,
        completed_retention_seconds: Optional[int] = None,
        failed_retention_seconds: Optional[int] = None,
    ):
        self.engine = engine
        self.max_attempts = max_attempts or settings.job_max_attempts
        self.backoff_base = (
            backoff_base if backoff_base is not None else settings.job_backoff_base_seconds
        )
        self.completed_retention = timedelta(
            seconds=completed_retention_seconds
            if completed_retention_seconds is not None
            else settings.completed_job_retention_seconds
        )
        self.failed_retention = timedelta(
            seconds=failed_retention_seconds
            if failed_retention_seconds is not None
            else settings.failed_job_retention_seconds
        )

    # ── Producers ──

    def enqueue(
        self,
        kind: str,
        payload: Dict[str, Any],
        dedupe_key: Optional[str] = None,
        delay_seconds: float = 0.0,
    ) -> int:
        """Add a job. With an in-flight dedupe key, return the existing job id."""
        try:
            return self._insert(kind, payload, dedupe_key, delay_seconds)
        except DuplicateJob as dup:
            logger.info(
                f"Enqueue of {kind} coalesced into job {dup.existing_job_id}",
                extra={"job_id": dup.existing_job_id},
            )
            return dup.existing_job_id

    def _insert(
        self,
        kind: str,
        payload: Dict[str, Any],
        dedupe_key: Optional[str],
        delay_seconds: float,
    ) -> int:
        # The holder of the key may finish between the failed insert and the
        # lookup, in which case the key is free again and the insert retries.
        for _ in range(5):
            if dedupe_key:
                existing = self._in_flight(dedupe_key)
                if existing is not None:
                    raise DuplicateJob(dedupe_key, existing.id)

            now = utcnow()
            job = SyncJob(
                kind=kind,
                payload_json=json.dumps(payload),
                dedupe_key=dedupe_key,
                max_attempts=self.max_attempts,
                backoff_base=self.backoff_base,
                created_at=now,
                available_at=now + timedelta(seconds=delay_seconds),
            )
            with Session(self.engine) as session:
                session.add(job)
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    continue
                session.refresh(job)
                logger.info(
                    f"Enqueued {kind} job",
                    extra={"job_id": job.id, "tenant_id": payload.get("tenant_id")},
                )
                return job.id

        raise RuntimeError(f"Could not enqueue {kind} job for dedupe key '{dedupe_key}'")

    def _in_flight(self, dedupe_key: str) -> Optional[SyncJob]:
        with Session(self.engine) as session:
            return session.exec(
                select(SyncJob).where(
                    SyncJob.dedupe_key == dedupe_key,
                    SyncJob.state.in_(IN_FLIGHT_STATES),  # type: ignore
                )
            ).first()

    # ── Recurring schedules ──

    def enqueue_recurring(
        self,
        kind: str,
        payload: Dict[str, Any],
        cron_spec: str,
        dedupe_key: str,
    ) -> RecurringSchedule:
        """Register (or update) the standing schedule for ``dedupe_key``."""
        # Raises ValueError on a bad crontab before anything is stored
        CronTrigger.from_crontab(cron_spec)

        for _ in range(2):
            with Session(self.engine) as session:
                schedule = session.get(RecurringSchedule, dedupe_key)
                if schedule is None:
                    schedule = RecurringSchedule(dedupe_key=dedupe_key, kind=kind, cron_spec=cron_spec)
                schedule.kind = kind
                schedule.payload_json = json.dumps(payload)
                schedule.cron_spec = cron_spec
                schedule.updated_at = utcnow()
                session.add(schedule)
                try:
                    session.commit()
                except IntegrityError:
                    # Registered concurrently; the second pass updates that row
                    session.rollback()
                    continue
                session.refresh(schedule)
                logger.info(f"Recurring schedule '{dedupe_key}' registered ({cron_spec})")
                return schedule
        raise RuntimeError(f"Could not register recurring schedule '{dedupe_key}'")

    def recurring_schedules(self) -> List[RecurringSchedule]:
        with Session(self.engine) as session:
            return list(session.exec(select(RecurringSchedule)).all())

    def fire_recurring(self, dedupe_key: str) -> Optional[int]:
        """Enqueue one instance of a standing schedule, deduplicated by its key."""
        with Session(self.engine) as session:
            schedule = session.get(RecurringSchedule, dedupe_key)
        if schedule is None:
            logger.warning(f"Recurring schedule '{dedupe_key}' is not registered")
            return None
        return self.enqueue(schedule.kind, schedule.payload, dedupe_key=dedupe_key)

    # ── Consumers ──

    def dequeue(self, now: Optional[datetime] = None) -> Optional[SyncJob]:
        """Claim the oldest available waiting job, or None when there is none."""
        now = now or utcnow()
        with Session(self.engine) as session:
            while True:
                candidate_id = session.exec(
                    select(SyncJob.id)
                    .where(
                        SyncJob.state == JobState.WAITING.value,
                        SyncJob.available_at <= now,
                    )
                    .order_by(SyncJob.available_at, SyncJob.id)
                    .limit(1)
                ).first()
                if candidate_id is None:
                    return None

                claimed = session.execute(
                    update(SyncJob)
                    .where(
                        SyncJob.id == candidate_id,
                        SyncJob.state == JobState.WAITING.value,
                    )
                    .values(state=JobState.ACTIVE.value, started_at=now, heartbeat_at=now)
                )
                session.commit()
                if claimed.rowcount == 1:
                    return session.get(SyncJob, candidate_id)
                # Another worker took it; look again

    def complete(self, job_id: int, result: Optional[Dict[str, Any]] = None) -> bool:
        with Session(self.engine) as session:
            done = session.execute(
                update(SyncJob)
                .where(SyncJob.id == job_id, SyncJob.state == JobState.ACTIVE.value)
                .values(
                    state=JobState.COMPLETED.value,
                    finished_at=utcnow(),
                    result_json=json.dumps(result) if result is not None else None,
                )
            )
            session.commit()
        if done.rowcount != 1:
            logger.warning("Complete ignored: job is not active", extra={"job_id": job_id})
            return False
        return True

    def fail(
        self,
        job_id: int,
        error: str,
        retryable: bool,
        retry_after: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> Optional[str]:
        """Record a failed attempt. Returns the job's resulting state."""
        now = now or utcnow()
        with Session(self.engine) as session:
            job = session.get(SyncJob, job_id)
            if job is None or job.state != JobState.ACTIVE.value:
                logger.warning("Fail ignored: job is not active", extra={"job_id": job_id})
                return None

            job.attempt_count += 1
            job.last_error = error[:1000]
            if retryable and job.attempt_count < job.max_attempts:
                delay = max(
                    self.backoff_delay(job.attempt_count, job.backoff_base),
                    retry_after or 0.0,
                )
                job.state = JobState.WAITING.value
                job.started_at = None
                job.heartbeat_at = None
                job.available_at = now + timedelta(seconds=delay)
                logger.warning(
                    f"Job failed, retrying in {delay:.1f}s: {error}",
                    extra={"job_id": job_id, "attempt": job.attempt_count},
                )
            else:
                job.state = JobState.FAILED.value
                job.finished_at = now
                logger.error(
                    f"Job failed terminally: {error}",
                    extra={"job_id": job_id, "attempt": job.attempt_count},
                )
            session.add(job)
            session.commit()
            return job.state

    def defer(self, job_id: int, delay_seconds: float, now: Optional[datetime] = None) -> bool:
        """Put an active job back to waiting without consuming an attempt."""
        now = now or utcnow()
        with Session(self.engine) as session:
            deferred = session.execute(
                update(SyncJob)
                .where(SyncJob.id == job_id, SyncJob.state == JobState.ACTIVE.value)
                .values(
                    state=JobState.WAITING.value,
                    started_at=None,
                    heartbeat_at=None,
                    available_at=now + timedelta(seconds=delay_seconds),
                )
            )
            session.commit()
        return deferred.rowcount == 1

    def heartbeat(self, job_ids: Iterable[int], now: Optional[datetime] = None) -> int:
        """Mark active jobs as still owned by a live worker."""
        ids = list(job_ids)
        if not ids:
            return 0
        with Session(self.engine) as session:
            touched = session.execute(
                update(SyncJob)
                .where(
                    SyncJob.id.in_(ids),  # type: ignore
                    SyncJob.state == JobState.ACTIVE.value,
                )
                .values(heartbeat_at=now or utcnow())
            )
            session.commit()
        return touched.rowcount or 0

    @staticmethod
    def backoff_delay(attempt_count: int, backoff_base: float) -> float:
        return backoff_base * (2 ** max(attempt_count - 1, 0))

    # ── Inspection & maintenance ──

    def get(self, job_id: int) -> Optional[SyncJob]:
        with Session(self.engine) as session:
            return session.get(SyncJob, job_id)

    def status(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in JobState}
        with Session(self.engine) as session:
            rows = session.exec(
                select(SyncJob.state, func.count(SyncJob.id)).group_by(SyncJob.state)
            ).all()
        for state, count in rows:
            counts[state] = count
        counts["total"] = sum(counts.values())
        return counts

    def purge(self) -> int:
        """Drop waiting and terminal jobs. Active jobs finish normally."""
        with Session(self.engine) as session:
            result = session.execute(
                delete(SyncJob).where(SyncJob.state != JobState.ACTIVE.value)
            )
            session.commit()
        removed = result.rowcount or 0
        logger.warning(f"Queue purged: {removed} jobs removed")
        return removed

    def prune_expired(self, now: Optional[datetime] = None) -> int:
        """Retention purge of terminal jobs past their audit window."""
        now = now or utcnow()
        with Session(self.engine) as session:
            completed = session.execute(
                delete(SyncJob).where(
                    SyncJob.state == JobState.COMPLETED.value,
                    SyncJob.finished_at < now - self.completed_retention,
                )
            )
            failed = session.execute(
                delete(SyncJob).where(
                    SyncJob.state == JobState.FAILED.value,
                    SyncJob.finished_at < now - self.failed_retention,
                )
            )
            session.commit()
        removed = (completed.rowcount or 0) + (failed.rowcount or 0)
        if removed:
            logger.info(f"Pruned {removed} expired jobs")
        return removed

    def requeue_stalled(
        self,
        timeout_seconds: Optional[float] = None,
        now: Optional[datetime] = None,
        exclude: Iterable[int] = (),
    ) -> int:
        """Return active jobs whose worker vanished to the waiting state.

        A job is stalled when its last heartbeat is older than the timeout.
        ``exclude`` lists jobs a live worker in this process is running.
        """
        now = now or utcnow()
        timeout = (
            timeout_seconds
            if timeout_seconds is not None
            else settings.stalled_job_timeout_seconds
        )
        last_seen = func.coalesce(SyncJob.heartbeat_at, SyncJob.started_at)
        conditions = [
            SyncJob.state == JobState.ACTIVE.value,
            last_seen < now - timedelta(seconds=timeout),
        ]
        held = list(exclude)
        if held:
            conditions.append(SyncJob.id.notin_(held))  # type: ignore
        with Session(self.engine) as session:
            result = session.execute(
                update(SyncJob)
                .where(*conditions)
                .values(
                    state=JobState.WAITING.value,
                    started_at=None,
                    heartbeat_at=None,
                    available_at=now,
                )
            )
            session.commit()
        requeued = result.rowcount or 0
        if requeued:
            logger.warning(f"Requeued {requeued} stalled jobs")
        return requeued
