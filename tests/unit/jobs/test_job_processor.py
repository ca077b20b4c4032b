import asyncio
from typing import Any, Dict
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from app.models.background_job import BackgroundJob, JobStatus, JobType
from app.models.reservation_cache import RefreshStatus
from app.modules.governance.domain.jobs.handlers import HANDLER_REGISTRY, get_handler_factory
from app.modules.governance.domain.jobs.handlers.base import BaseJobHandler, JobTimeoutError
from app.modules.governance.domain.jobs.handlers.reservations import (
    ReservationRefreshHandler,
    ReservationRefreshSweepHandler,
    _customer_id,
)
from app.modules.governance.domain.jobs.processor import JobProcessor, enqueue_job
from app.modules.reservations.domain.cache_store import ReservationCacheStore


class SucceedingHandler(BaseJobHandler):
    async def execute(self, job, db) -> Dict[str, Any]:
        return {"ok": True}


class FailingHandler(BaseJobHandler):
    async def execute(self, job, db) -> Dict[str, Any]:
        raise RuntimeError("azure unavailable")


class SlowHandler(BaseJobHandler):
    timeout_seconds = 0.05

    def __init__(self):
        self.timed_out = False

    async def execute(self, job, db) -> Dict[str, Any]:
        await asyncio.sleep(5)
        return {}

    async def on_timeout(self, job, db) -> None:
        self.timed_out = True


@pytest.fixture
def use_handler(monkeypatch):
    def install(handler_cls):
        monkeypatch.setitem(HANDLER_REGISTRY, JobType.RESERVATION_REFRESH.value, handler_cls)
    return install


@pytest.mark.asyncio
async def test_successful_job_completes(db, customer, use_handler):
    use_handler(SucceedingHandler)
    job = await enqueue_job(db, JobType.RESERVATION_REFRESH, customer_id=customer.id)

    results = await JobProcessor(db).process_pending_jobs()

    assert results == {"processed": 1, "succeeded": 1, "failed": 0, "errors": []}
    await db.refresh(job)
    assert job.status == JobStatus.COMPLETED.value
    assert job.result == {"ok": True}
    assert job.attempts == 1
    assert job.completed_at is not None


@pytest.mark.asyncio
async def test_failed_job_is_rescheduled(db, customer, use_handler):
    use_handler(FailingHandler)
    job = await enqueue_job(db, JobType.RESERVATION_REFRESH, customer_id=customer.id, max_attempts=3)

    results = await JobProcessor(db).process_pending_jobs()

    assert results["failed"] == 1
    assert results["errors"] == [{"job_id": str(job.id), "error": "azure unavailable"}]
    await db.refresh(job)
    assert job.status == JobStatus.PENDING.value
    assert job.attempts == 1
    assert job.error_message == "azure unavailable"

    # backoff keeps it out of the next batch
    again = await JobProcessor(db).process_pending_jobs()
    assert again["processed"] == 0


@pytest.mark.asyncio
async def test_last_attempt_goes_to_dead_letter(db, customer, use_handler):
    use_handler(FailingHandler)
    job = await enqueue_job(db, JobType.RESERVATION_REFRESH, customer_id=customer.id, max_attempts=1)

    await JobProcessor(db).process_pending_jobs()

    await db.refresh(job)
    assert job.status == JobStatus.DEAD_LETTER.value
    assert job.completed_at is not None


@pytest.mark.asyncio
async def test_unknown_job_type_fails_the_job(db):
    job = await enqueue_job(db, "retired_job_type", max_attempts=1)

    results = await JobProcessor(db).process_pending_jobs()

    assert results["failed"] == 1
    await db.refresh(job)
    assert job.status == JobStatus.DEAD_LETTER.value
    assert "No handler registered" in job.error_message


@pytest.mark.asyncio
async def test_one_failure_does_not_stop_the_batch(db, customer, use_handler):
    use_handler(SucceedingHandler)
    await enqueue_job(db, "retired_job_type", max_attempts=1)
    await enqueue_job(db, JobType.RESERVATION_REFRESH, customer_id=customer.id)

    results = await JobProcessor(db).process_pending_jobs()

    assert results["processed"] == 2
    assert results["succeeded"] == 1
    assert results["failed"] == 1


@pytest.mark.asyncio
async def test_handler_timeout(db):
    job = await enqueue_job(db, JobType.RESERVATION_REFRESH)
    handler = SlowHandler()

    with pytest.raises(JobTimeoutError) as exc:
        await handler.run(job, db)

    assert handler.timed_out
    assert exc.value.details["job_id"] == str(job.id)


def test_registry():
    assert get_handler_factory(JobType.RESERVATION_REFRESH.value) is ReservationRefreshHandler
    assert get_handler_factory(JobType.RESERVATION_REFRESH_SWEEP.value) is ReservationRefreshSweepHandler
    with pytest.raises(ValueError):
        get_handler_factory("nope")


@pytest.mark.asyncio
async def test_customer_id_from_payload(db, customer):
    job = await enqueue_job(db, JobType.RESERVATION_REFRESH, payload={"customer_id": str(customer.id)})

    assert _customer_id(job) == customer.id


@pytest.mark.asyncio
async def test_customer_id_required(db):
    job = await enqueue_job(db, JobType.RESERVATION_REFRESH)

    with pytest.raises(ValueError):
        _customer_id(job)


@pytest.mark.asyncio
async def test_refresh_handler_runs_service(db, customer):
    job = await enqueue_job(db, JobType.RESERVATION_REFRESH, customer_id=customer.id)
    run = AsyncMock(return_value={"status": "Completed"})

    with patch(
        "app.modules.governance.domain.jobs.handlers.reservations.ReservationRefreshService.run_refresh", run
    ):
        result = await ReservationRefreshHandler().execute(job, db)

    assert result == {"status": "Completed"}
    run.assert_awaited_once_with(customer.id)


@pytest.mark.asyncio
async def test_refresh_handler_timeout_marks_cache_failed(db, customer):
    store = ReservationCacheStore(db)
    await store.claim(customer.id)
    job = await enqueue_job(db, JobType.RESERVATION_REFRESH, customer_id=customer.id)

    await ReservationRefreshHandler().on_timeout(job, db)

    row = await store.get(customer.id)
    assert row.status == RefreshStatus.FAILED.value
    assert "cancelled" in row.error_message


@pytest.mark.asyncio
async def test_sweep_starts_refresh_per_customer(db, customer):
    job = await enqueue_job(db, JobType.RESERVATION_REFRESH_SWEEP, max_attempts=1)

    first = await ReservationRefreshSweepHandler().execute(job, db)
    second = await ReservationRefreshSweepHandler().execute(job, db)

    assert first == {"started": 1, "skipped": 0, "failed": 0}
    assert second == {"started": 0, "skipped": 1, "failed": 0}
    queued = (await db.execute(
        select(BackgroundJob).where(BackgroundJob.job_type == JobType.RESERVATION_REFRESH.value)
    )).scalars().all()
    assert [j.customer_id for j in queued] == [customer.id]
