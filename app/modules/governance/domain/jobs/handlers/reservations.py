"""
Reservation refresh job handlers.
"""
from typing import Any, Dict
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.background_job import BackgroundJob
from app.modules.governance.domain.jobs.handlers.base import BaseJobHandler
from app.modules.reservations.domain.cache_store import ReservationCacheStore
from app.modules.reservations.domain.service import (
    ReservationRefreshService,
    customers_with_active_connections,
)
from app.shared.core.config import get_settings
from app.shared.core.exceptions import CostLensException

logger = structlog.get_logger()

# Headroom over the fetch budget for analysis and persistence
PERSIST_GRACE_SECONDS = 120


def _customer_id(job: BackgroundJob) -> UUID:
    raw = job.customer_id or (job.payload or {}).get("customer_id")
    if not raw:
        raise ValueError("reservation_refresh job has no customer_id")
    return raw if isinstance(raw, UUID) else UUID(str(raw))


class ReservationRefreshHandler(BaseJobHandler):
    """Runs one customer's reservation refresh."""

    @property
    def timeout_seconds(self) -> float:
        return get_settings().RESERVATION_REFRESH_BUDGET_SECONDS + PERSIST_GRACE_SECONDS

    async def execute(self, job: BackgroundJob, db: AsyncSession) -> Dict[str, Any]:
        structlog.contextvars.bind_contextvars(job_id=str(job.id))
        try:
            service = ReservationRefreshService(db)
            return await service.run_refresh(_customer_id(job))
        finally:
            structlog.contextvars.unbind_contextvars("job_id", "customer_id")

    async def on_timeout(self, job: BackgroundJob, db: AsyncSession) -> None:
        # The hard timeout can interrupt persistence; never leave the row Running
        await db.rollback()
        await ReservationCacheStore(db).mark_failed(
            _customer_id(job),
            f"Refresh exceeded {self.timeout_seconds:g}s and was cancelled"
        )


class ReservationRefreshSweepHandler(BaseJobHandler):
    """Requests a refresh for every customer with an active connection."""
    timeout_seconds = 120

    async def execute(self, job: BackgroundJob, db: AsyncSession) -> Dict[str, Any]:
        service = ReservationRefreshService(db)
        started, skipped, failed = 0, 0, 0
        for customer_id in await customers_with_active_connections(db):
            try:
                ticket = await service.start_refresh(customer_id)
            except CostLensException as e:
                failed += 1
                logger.warning("reservation_sweep_customer_failed", customer_id=str(customer_id), error=e.message)
                continue
            if ticket.accepted:
                started += 1
            else:
                skipped += 1

        logger.info("reservation_sweep_complete", started=started, skipped=skipped, failed=failed)
        return {"started": started, "skipped": skipped, "failed": failed}
