from app.models.customer import Customer
from app.models.azure_connection import AzureConnection, AzureSubscription
from app.models.reservation_cache import CustomerReservationCache, RefreshStatus
from app.models.background_job import BackgroundJob, JobStatus, JobType

__all__ = [
    "Customer",
    "AzureConnection",
    "AzureSubscription",
    "CustomerReservationCache",
    "RefreshStatus",
    "BackgroundJob",
    "JobStatus",
    "JobType",
]
