from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import model_validator
from typing import Optional


class Settings(BaseSettings):
    """
    Main configuration for CostLens.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """
    APP_NAME: str = "CostLens"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # local, development, staging, production
    TESTING: bool = False

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./costlens.db"
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20

    # Secret store (Azure Key Vault)
    KEY_VAULT_URL: Optional[str] = None

    # Blob store holding FOCUS exports
    BLOB_ENDPOINT_TEMPLATE: str = "https://{account}.blob.core.windows.net"
    DEFAULT_FINOPS_CONTAINER: str = "ingestion"
    EXPORT_DOWNLOAD_CONCURRENCY: int = 8

    # Azure Resource Manager
    AZURE_MANAGEMENT_URL: str = "https://management.azure.com"
    AZURE_MANAGEMENT_SCOPE: str = "https://management.azure.com/.default"
    RESERVATIONS_API_VERSION: str = "2022-11-01"
    CONSUMPTION_API_VERSION: str = "2023-05-01"
    COST_MANAGEMENT_API_VERSION: str = "2025-03-01"
    AZURE_HTTP_TIMEOUT_SECONDS: float = 60.0
    AZURE_RATE_LIMIT_PER_SECOND: float = 10.0

    # Reservation refresh pipeline
    RESERVATION_FETCH_CONCURRENCY: int = 5
    RESERVATION_REFRESH_BUDGET_SECONDS: int = 600
    RESERVATION_UTILIZATION_DAYS: int = 30
    RESERVATION_USAGE_DAYS: int = 7
    # A Running claim older than this is treated as abandoned
    RESERVATION_REFRESH_STALE_SECONDS: int = 1800

    # Cost analysis result cache
    COST_ANALYSIS_CACHE_TTL_SECONDS: int = 900
    REDIS_URL: Optional[str] = None

    # Scheduler
    JOB_POLL_INTERVAL_SECONDS: int = 30
    RESERVATION_REFRESH_CRON_HOUR: int = 4
    SCHEDULER_ENABLED: bool = True

    CURRENCY_SYMBOL: str = "£"

    @model_validator(mode='after')
    def validate_runtime_config(self) -> 'Settings':
        """Ensure production deployments point at real collaborators."""
        if self.TESTING:
            return self

        if self.is_production:
            if not self.KEY_VAULT_URL:
                raise ValueError("KEY_VAULT_URL is required in production.")
            if "sqlite" in self.DATABASE_URL:
                raise ValueError("SQLite is not supported in production. Set DATABASE_URL to PostgreSQL.")

        if self.RESERVATION_FETCH_CONCURRENCY < 1:
            raise ValueError("RESERVATION_FETCH_CONCURRENCY must be at least 1")
        return self

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True, extra="ignore")


@lru_cache
def get_settings() -> Settings:
    """Returns a cached instance of the settings."""
    return Settings()
