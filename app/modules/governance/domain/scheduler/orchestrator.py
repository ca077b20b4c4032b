from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from datetime import datetime, timedelta, timezone
import time
import structlog
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

from app.models.background_job import BackgroundJob, JobStatus, JobType
from app.modules.governance.domain.jobs.processor import JobProcessor, enqueue_job
from app.modules.governance.domain.scheduler.metrics import (
    BACKGROUND_JOBS_ENQUEUED_SCHEDULER,
    SCHEDULER_JOB_DURATION,
    SCHEDULER_JOB_RUNS,
)
from app.shared.core.config import get_settings

logger = structlog.get_logger()

# Running longer than this means the worker died mid-job
STUCK_JOB_AFTER = timedelta(hours=1)


class SchedulerOrchestrator:
    """Manages APScheduler: queue polling, the daily refresh sweep and stuck-job cleanup."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.scheduler = AsyncIOScheduler()
        self.session_maker = session_maker
        self._last_run_success: bool | None = None
        self._last_run_time: str | None = None

    async def process_queue_job(self):
        """Drains one batch of due background jobs."""
        job_name = "background_job_poll"
        start_time = time.time()
        try:
            async with self.session_maker() as db:
                results = await JobProcessor(db).process_pending_jobs()
            SCHEDULER_JOB_RUNS.labels(job_name=job_name, status="success").inc()
            self._last_run_success = True
            if results["processed"]:
                logger.info("scheduler_queue_batch_processed", **{k: v for k, v in results.items() if k != "errors"})
        except Exception as e:
            SCHEDULER_JOB_RUNS.labels(job_name=job_name, status="failure").inc()
            self._last_run_success = False
            logger.error("scheduler_queue_poll_failed", error=str(e))
        finally:
            SCHEDULER_JOB_DURATION.labels(job_name=job_name).observe(time.time() - start_time)
            self._last_run_time = datetime.now(timezone.utc).isoformat()

    async def reservation_sweep_job(self):
        """Enqueues the daily sweep; the worker fans it out per customer."""
        async with self.session_maker() as db:
            job = await enqueue_job(db, JobType.RESERVATION_REFRESH_SWEEP, max_attempts=1)
        BACKGROUND_JOBS_ENQUEUED_SCHEDULER.labels(job_type=JobType.RESERVATION_REFRESH_SWEEP.value).inc()
        logger.info("scheduler_dispatching_reservation_sweep", job_id=str(job.id))

    async def detect_stuck_jobs(self):
        """
        Jobs left RUNNING by a crashed worker are never picked up again.
        Move them to the dead-letter state so they stop looking active.
        """
        async with self.session_maker() as db:
            cutoff = datetime.now(timezone.utc) - STUCK_JOB_AFTER
            result = await db.execute(
                sa.select(BackgroundJob).where(
                    BackgroundJob.status == JobStatus.RUNNING.value,
                    BackgroundJob.started_at < cutoff
                )
            )
            stuck_jobs = result.scalars().all()

            if stuck_jobs:
                logger.critical(
                    "stuck_jobs_detected",
                    count=len(stuck_jobs),
                    job_ids=[str(j.id) for j in stuck_jobs[:10]]
                )
                for job in stuck_jobs:
                    job.status = JobStatus.DEAD_LETTER.value
                    job.completed_at = datetime.now(timezone.utc)
                    job.error_message = "Stuck in RUNNING for > 1 hour. Terminated by stuck job detector."
                await db.commit()

    def start(self):
        """Defines schedules and starts APScheduler."""
        settings = get_settings()
        self.scheduler.add_job(
            self.process_queue_job,
            trigger=IntervalTrigger(seconds=settings.JOB_POLL_INTERVAL_SECONDS),
            id="background_job_poll",
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        self.scheduler.add_job(
            self.reservation_sweep_job,
            trigger=CronTrigger(hour=settings.RESERVATION_REFRESH_CRON_HOUR, minute=0, timezone="UTC"),
            id="daily_reservation_refresh_sweep",
            replace_existing=True
        )
        self.scheduler.add_job(
            self.detect_stuck_jobs,
            trigger=CronTrigger(minute=0, timezone="UTC"),
            id="stuck_job_detector",
            replace_existing=True
        )
        self.scheduler.start()

    def stop(self):
        self.scheduler.shutdown(wait=False)

    def get_status(self) -> dict:
        return {
            "running": self.scheduler.running,
            "last_run_success": self._last_run_success,
            "last_run_time": self._last_run_time,
            "jobs": [job.id for job in self.scheduler.get_jobs()]
        }
