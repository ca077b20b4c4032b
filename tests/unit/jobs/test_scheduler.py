from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.models.background_job import BackgroundJob, JobStatus, JobType
from app.modules.governance.domain.jobs.processor import enqueue_job
from app.modules.governance.domain.scheduler import SchedulerOrchestrator


@pytest.fixture
def orchestrator(db):
    return SchedulerOrchestrator(async_sessionmaker(db.bind, expire_on_commit=False))


@pytest.mark.asyncio
async def test_sweep_job_enqueues_single_attempt_sweep(db, orchestrator):
    await orchestrator.reservation_sweep_job()

    jobs = (await db.execute(select(BackgroundJob))).scalars().all()
    assert [(j.job_type, j.max_attempts) for j in jobs] == [(JobType.RESERVATION_REFRESH_SWEEP.value, 1)]


@pytest.mark.asyncio
async def test_queue_poll_records_outcome(orchestrator):
    with patch(
        "app.modules.governance.domain.scheduler.orchestrator.JobProcessor.process_pending_jobs",
        AsyncMock(return_value={"processed": 0, "succeeded": 0, "failed": 0, "errors": []})
    ):
        await orchestrator.process_queue_job()

    status = orchestrator.get_status()
    assert status["last_run_success"] is True
    assert status["last_run_time"] is not None
    assert status["running"] is False


@pytest.mark.asyncio
async def test_queue_poll_failure_is_logged_not_raised(orchestrator):
    with patch(
        "app.modules.governance.domain.scheduler.orchestrator.JobProcessor.process_pending_jobs",
        AsyncMock(side_effect=RuntimeError("db down"))
    ):
        await orchestrator.process_queue_job()

    assert orchestrator.get_status()["last_run_success"] is False


@pytest.mark.asyncio
async def test_stuck_jobs_are_dead_lettered(db, orchestrator):
    stuck = await enqueue_job(db, JobType.RESERVATION_REFRESH)
    fresh = await enqueue_job(db, JobType.RESERVATION_REFRESH)
    stuck.status = JobStatus.RUNNING.value
    stuck.started_at = datetime.now(timezone.utc) - timedelta(hours=2)
    fresh.status = JobStatus.RUNNING.value
    fresh.started_at = datetime.now(timezone.utc)
    await db.commit()

    await orchestrator.detect_stuck_jobs()

    await db.refresh(stuck)
    await db.refresh(fresh)
    assert stuck.status == JobStatus.DEAD_LETTER.value
    assert fresh.status == JobStatus.RUNNING.value


@pytest.mark.asyncio
async def test_start_registers_jobs(orchestrator):
    orchestrator.start()
    try:
        assert set(orchestrator.get_status()["jobs"]) == {
            "background_job_poll", "daily_reservation_refresh_sweep", "stuck_job_detector",
        }
    finally:
        orchestrator.stop()
