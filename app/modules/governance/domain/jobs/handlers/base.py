"""
Base Job Handler with Timeout Enforcement

Handlers only run the job's work. Status transitions, retries and the
dead-letter decision belong to JobProcessor.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.background_job import BackgroundJob
from app.shared.core.exceptions import CostLensException

logger = structlog.get_logger()


class JobTimeoutError(CostLensException):
    """Raised when a job exceeds its timeout."""
    def __init__(self, job_id: str, timeout_seconds: float):
        super().__init__(
            message=f"Job {job_id} exceeded timeout of {timeout_seconds:g} seconds",
            code="job_timeout",
            status_code=504,
            details={
                "job_id": job_id,
                "timeout_seconds": timeout_seconds
            }
        )


class BaseJobHandler(ABC):
    """
    Abstract base class for all background job handlers.

    Subclasses must:
    1. Define timeout_seconds (class attribute or property)
    2. Implement execute()
    3. Override on_timeout() when a timeout leaves state to clean up
    """

    timeout_seconds: float = 300

    @abstractmethod
    async def execute(self, job: BackgroundJob, db: AsyncSession) -> Dict[str, Any]:
        """
        Execute the job logic.

        Returns:
            Result dictionary stored on the job row
        """

    async def on_timeout(self, job: BackgroundJob, db: AsyncSession) -> None:
        """Hook run after the hard timeout fires, before JobTimeoutError is raised."""

    async def run(self, job: BackgroundJob, db: AsyncSession) -> Dict[str, Any]:
        job_id = str(job.id)
        try:
            async with asyncio.timeout(self.timeout_seconds):
                return await self.execute(job, db)
        except TimeoutError:
            logger.error(
                "job_timeout_exceeded",
                job_id=job_id,
                job_type=job.job_type,
                timeout_seconds=self.timeout_seconds
            )
            await self.on_timeout(job, db)
            raise JobTimeoutError(job_id, self.timeout_seconds)
