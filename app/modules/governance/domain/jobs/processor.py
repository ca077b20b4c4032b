"""
Job Processor

Processes background jobs from the database queue.

- Survives app restarts (jobs in database)
- Automatic retries with exponential backoff
- Per-customer job isolation

Usage:
    processor = JobProcessor(db)
    await processor.process_pending_jobs()
"""

import asyncio
from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, Any
from uuid import UUID

import sqlalchemy as sa
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.background_job import BackgroundJob, JobStatus, JobType
from app.modules.governance.domain.jobs.handlers import get_handler_factory

logger = structlog.get_logger()

MAX_JOBS_PER_BATCH = 10
BACKOFF_BASE_SECONDS = 60


class JobProcessor:
    """
    Processes background jobs from the database queue.

    Called by:
    1. the scheduler (every JOB_POLL_INTERVAL_SECONDS)
    2. the API endpoint for on-demand processing
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def process_pending_jobs(self, limit: Optional[int] = None) -> Dict[str, Any]:
        limit = limit or MAX_JOBS_PER_BATCH
        logger.info("processing_pending_jobs", limit=limit)
        results = {
            "processed": 0,
            "succeeded": 0,
            "failed": 0,
            "errors": []
        }

        try:
            pending_jobs = await self._fetch_pending_jobs(limit)
            logger.info("job_processor_batch_start", pending_count=len(pending_jobs))

            # a failed job rolls the session back and expires every loaded row
            for job_id in [job.id for job in pending_jobs]:
                job = await self.db.get(BackgroundJob, job_id)
                error = await self._process_single_job(job)
                results["processed"] += 1
                if error is None:
                    results["succeeded"] += 1
                else:
                    results["failed"] += 1
                    results["errors"].append({"job_id": str(job_id), "error": error})

            logger.info("job_processor_batch_complete", **results)

        except sa.exc.SQLAlchemyError as e:
            logger.error("job_processor_batch_db_error", error=str(e))
            results["errors"].append({"job_id": "batch", "error": str(e)})

        return results

    async def _fetch_pending_jobs(self, limit: int) -> list[BackgroundJob]:
        """
        Fetch pending jobs that are ready to run.
        SELECT FOR UPDATE SKIP LOCKED lets several workers share the queue.
        """
        now = datetime.now(timezone.utc)
        result = await self.db.execute(
            select(BackgroundJob)
            .where(
                BackgroundJob.status == JobStatus.PENDING.value,
                BackgroundJob.scheduled_for <= now,
                BackgroundJob.attempts < BackgroundJob.max_attempts,
            )
            .order_by(BackgroundJob.scheduled_for)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())

    async def _process_single_job(self, job: BackgroundJob) -> Optional[str]:
        """Run one job; returns the error message, or None when it completed."""
        log = logger.bind(job_id=str(job.id), job_type=job.job_type)
        log.info("job_processing_start", attempt=job.attempts + 1)

        job.status = JobStatus.RUNNING.value
        job.started_at = datetime.now(timezone.utc)
        job.attempts += 1
        attempts, max_attempts = job.attempts, job.max_attempts
        await self.db.commit()
        error: Optional[str] = None

        try:
            handler = get_handler_factory(job.job_type)()
            result = await handler.run(job, self.db)

            job.status = JobStatus.COMPLETED.value
            job.completed_at = datetime.now(timezone.utc)
            job.result = result
            job.error_message = None
            log.info("job_processing_success")

        except asyncio.CancelledError:
            log.warning("job_processing_cancelled")
            job.error_message = "Job was cancelled"
            job.status = JobStatus.PENDING.value
            job.scheduled_for = datetime.now(timezone.utc) + timedelta(seconds=BACKOFF_BASE_SECONDS)
            await self.db.commit()
            raise

        except Exception as e:  # noqa: BLE001 - one failing job must not stop the batch
            log.error("job_processing_failed", error=str(e), error_type=type(e).__name__)
            # handler may have left the session mid-transaction
            await self.db.rollback()
            error = str(e)[:2000]
            job.error_message = error

            if attempts >= max_attempts:
                job.status = JobStatus.DEAD_LETTER.value
                job.completed_at = datetime.now(timezone.utc)
            else:
                backoff_seconds = BACKOFF_BASE_SECONDS * (2 ** (attempts - 1))
                job.status = JobStatus.PENDING.value
                job.scheduled_for = datetime.now(timezone.utc) + timedelta(seconds=backoff_seconds)

        await self.db.commit()
        return error


# ==================== Job Creation Helpers ====================


async def enqueue_job(
    db: AsyncSession,
    job_type: JobType | str,
    customer_id: Optional[UUID] = None,
    payload: Optional[Dict[str, Any]] = None,
    scheduled_for: Optional[datetime] = None,
    max_attempts: int = 3
) -> BackgroundJob:
    """
    Enqueue a new background job. The returned row is the job handle.

    Usage:
        job = await enqueue_job(
            db,
            job_type=JobType.RESERVATION_REFRESH,
            customer_id=customer.id,
            payload={"customer_id": str(customer.id)}
        )
    """
    job = BackgroundJob(
        job_type=job_type.value if hasattr(job_type, "value") else job_type,
        customer_id=customer_id,
        payload=payload,
        status=JobStatus.PENDING.value,
        scheduled_for=scheduled_for or datetime.now(timezone.utc),
        max_attempts=max_attempts,
        created_at=datetime.now(timezone.utc)
    )

    db.add(job)
    await db.commit()
    await db.refresh(job)

    logger.info(
        "job_enqueued",
        job_id=str(job.id),
        job_type=job.job_type,
        customer_id=str(customer_id) if customer_id else None
    )
    return job
