"""
Job Handlers Registry
"""
from typing import Dict, Type
from app.models.background_job import JobType
from app.modules.governance.domain.jobs.handlers.base import BaseJobHandler
from app.modules.governance.domain.jobs.handlers.reservations import (
    ReservationRefreshHandler,
    ReservationRefreshSweepHandler,
)


# Maps JobType value to Handler Class
HANDLER_REGISTRY: Dict[str, Type[BaseJobHandler]] = {
    JobType.RESERVATION_REFRESH.value: ReservationRefreshHandler,
    JobType.RESERVATION_REFRESH_SWEEP.value: ReservationRefreshSweepHandler,
}


def get_handler_factory(job_type: str) -> Type[BaseJobHandler]:
    """
    Get the handler class for a given job type.
    """
    handler_cls = HANDLER_REGISTRY.get(job_type)
    if not handler_cls:
        raise ValueError(f"No handler registered for job type: {job_type}")
    return handler_cls
