"""
Background Jobs API - Job Queue Management

Provides endpoints for:
- Processing pending jobs on demand (the scheduler also polls)
- Viewing queue statistics
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel
from app.shared.db.session import get_db
from app.models.background_job import BackgroundJob, JobStatus
from app.modules.governance.domain.jobs.processor import JobProcessor
import structlog

router = APIRouter(prefix="/jobs", tags=["Background Jobs"])
logger = structlog.get_logger()


class JobStatusResponse(BaseModel):
    """Response with job queue statistics."""
    pending: int
    running: int
    completed: int
    failed: int
    dead_letter: int


class JobError(BaseModel):
    job_id: str
    error: str


class ProcessJobsResponse(BaseModel):
    """Response after processing jobs."""
    processed: int
    succeeded: int
    failed: int
    errors: list[JobError] = []


@router.get("/status", response_model=JobStatusResponse)
async def get_job_queue_status(db: AsyncSession = Depends(get_db)):
    """Get current job queue statistics."""
    result = await db.execute(
        select(
            BackgroundJob.status,
            func.count(BackgroundJob.id)
        )
        .group_by(BackgroundJob.status)
    )

    counts = {row[0]: row[1] for row in result.all()}

    return JobStatusResponse(
        pending=counts.get(JobStatus.PENDING.value, 0),
        running=counts.get(JobStatus.RUNNING.value, 0),
        completed=counts.get(JobStatus.COMPLETED.value, 0),
        failed=counts.get(JobStatus.FAILED.value, 0),
        dead_letter=counts.get(JobStatus.DEAD_LETTER.value, 0)
    )


@router.post("/process", response_model=ProcessJobsResponse)
async def process_pending_jobs(
    db: AsyncSession = Depends(get_db),
    limit: int = Query(default=10, ge=1, le=50, description="Max jobs to process")
):
    """
    Process pending jobs manually.

    The scheduler polls every JOB_POLL_INTERVAL_SECONDS; this runs one batch now.
    """
    processor = JobProcessor(db)
    results = await processor.process_pending_jobs(limit=limit)
    logger.info("jobs_processed_on_demand", processed=results["processed"])
    return ProcessJobsResponse(**results)
