"""AdPulse — Scheduler Jobs.

APScheduler timers for the standing recurring schedules and queue
maintenance. Each recurring schedule becomes one cron job whose id is its
dedupe key, registered with ``replace_existing`` so restarts never stack up
duplicate timers. A firing only enqueues; dedupe in the queue keeps at most
one instance in flight.
"""

from datetime import timedelta
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from app.config import settings
from app.core.logging import get_logger
from app.core.timeutil import utcnow
from app.models.job_models import ALL_TENANTS, JobKind, RecurringSchedule
from app.queue.job_queue import JobQueue
from app.stores.integration_store import IntegrationStore
from app.workers.pool import WorkerPool

logger = get_logger("scheduler")

FLEET_SYNC_KEY = "recurring-sync-all"
MAINTENANCE_JOB_ID = "queue-maintenance"


class SyncScheduler:
    """Owns the AsyncIOScheduler for one service instance."""

    def __init__(
        self,
        queue: JobQueue,
        store: IntegrationStore,
        cron_spec: Optional[str] = None,
        maintenance_minutes: Optional[int] = None,
        pool: Optional[WorkerPool] = None,
    ):
        self.queue = queue
        self.store = store
        self.pool = pool
        self.cron_spec = cron_spec or settings.sync_all_cron
        self.maintenance_minutes = maintenance_minutes or settings.maintenance_interval_minutes
        self.scheduler = AsyncIOScheduler(timezone="UTC")

    def register_fleet_sync(self) -> RecurringSchedule:
        """The one standing sync-all schedule over every tenant."""
        return self.queue.enqueue_recurring(
            JobKind.SYNC_ALL.value,
            {"tenant_id": ALL_TENANTS},
            self.cron_spec,
            dedupe_key=FLEET_SYNC_KEY,
        )

    def start(self) -> None:
        """Register schedules and start the timer."""
        if not settings.scheduler_enabled:
            logger.info("Scheduler disabled via config")
            return

        self.register_fleet_sync()
        for schedule in self.queue.recurring_schedules():
            self.scheduler.add_job(
                self.fire,
                CronTrigger.from_crontab(schedule.cron_spec, timezone="UTC"),
                args=[schedule.dedupe_key],
                id=schedule.dedupe_key,
                replace_existing=True,
                coalesce=True,
                max_instances=1,
                misfire_grace_time=3600,
            )
            logger.info(f"Scheduled '{schedule.dedupe_key}' ({schedule.cron_spec} UTC)")

        self.scheduler.add_job(
            self.maintenance,
            "interval",
            minutes=self.maintenance_minutes,
            id=MAINTENANCE_JOB_ID,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        self.scheduler.start()
        logger.info(
            f"Scheduler started. Queue maintenance every {self.maintenance_minutes} min"
        )

    def stop(self) -> None:
        """Shutdown the scheduler gracefully."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

    async def fire(self, dedupe_key: str) -> Optional[int]:
        """Timer callback: enqueue one instance of a standing schedule."""
        try:
            job_id = self.queue.fire_recurring(dedupe_key)
        except Exception as e:
            logger.error(f"Recurring enqueue '{dedupe_key}' failed: {e}")
            return None
        logger.info(f"Recurring schedule '{dedupe_key}' fired", extra={"job_id": job_id})
        return job_id

    async def maintenance(self) -> None:
        """Retention purge plus recovery of work whose worker vanished."""
        try:
            self.queue.prune_expired()
            self.queue.requeue_stalled(
                exclude=self.pool.held_job_ids if self.pool is not None else ()
            )
            self.store.release_stale_claims(
                utcnow() - timedelta(seconds=settings.stalled_job_timeout_seconds)
            )
        except Exception as e:
            logger.error(f"Queue maintenance failed: {e}")
