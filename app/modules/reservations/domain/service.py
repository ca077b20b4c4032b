"""
Reservation Refresh Service

Three entry points:
- start_refresh: claim the customer's cache row and enqueue a worker job
- run_refresh: the worker body (fetch, analyze, persist)
- get_reservation_data: the read model over the cached snapshot
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from uuid import UUID

import structlog
from azure.identity.aio import ClientSecretCredential
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.azure_connection import AzureConnection
from app.models.background_job import JobType
from app.models.customer import Customer
from app.models.reservation_cache import RefreshStatus
from app.modules.reservations.domain.analyzer import CostBenefitAnalyzer
from app.modules.reservations.domain.cache_store import ReservationCacheStore, decode_snapshot
from app.modules.reservations.domain.fetcher import (
    ReservationFetcher,
    ReservationFetchResult,
    SubscriptionScope,
)
from app.modules.reservations.domain.insights import HEALTHY_UTILIZATION, RENEW_UTILIZATION, InsightGenerator
from app.schemas.reservations import (
    PurchaseRecommendation,
    RefreshTicket,
    Reservation,
    ReservationDataResponse,
    ReservationSnapshot,
    ReservationSummary,
)
from app.shared.adapters.azure_management import AzureManagementClient
from app.shared.adapters.secret_store import SecretStore, get_secret_store
from app.shared.core.config import get_settings
from app.shared.core.exceptions import ConfigurationError, RefreshTimeoutError, ResourceNotFoundError

logger = structlog.get_logger()

RUNNING_MESSAGE = "Refresh in progress. Check back shortly."
NO_DATA_MESSAGE = "No reservation data yet. Trigger a refresh to load reservations."


def summarize(
    reservations: Sequence[Reservation], recommendations: Sequence[PurchaseRecommendation]
) -> ReservationSummary:
    active = [r for r in reservations if r.is_active]
    with_util = [r for r in active if r.has_utilization_data]
    return ReservationSummary(
        total_reservations=len(reservations),
        active_reservations=len(active),
        expiring_soon=sum(1 for r in active if r.is_expiring_soon),
        low_utilization=sum(1 for r in with_util if 0 < (r.utilization_30_day or 0) < HEALTHY_UTILIZATION),
        full_utilization=sum(1 for r in with_util if (r.utilization_30_day or 0) >= RENEW_UTILIZATION),
        zero_utilization=sum(1 for r in with_util if (r.utilization_30_day or 0) == 0),
        purchase_recommendations=len(recommendations),
        potential_annual_savings=round(sum(r.annual_savings for r in recommendations), 2),
        estimated_monthly_savings=round(sum(r.estimated_monthly_savings or 0 for r in active), 2),
        monthly_waste=round(sum(r.monthly_waste or 0 for r in active), 2),
    )


def build_snapshot(
    fetched: ReservationFetchResult,
    analyzer: CostBenefitAnalyzer,
    generator: InsightGenerator
) -> ReservationSnapshot:
    """Analyze fetched reservations and assemble everything that gets cached."""
    for reservation in fetched.reservations:
        analyzer.analyze(reservation)

    reservations = sorted(
        fetched.reservations,
        key=lambda r: (r.days_to_expiry is None, r.days_to_expiry or 0)
    )
    recommendations = sorted(
        fetched.purchase_recommendations,
        key=lambda r: (-r.annual_savings, r.subscription_name, r.sku_name)
    )
    return ReservationSnapshot(
        summary=summarize(reservations, recommendations),
        reservations=reservations,
        insights=generator.generate(reservations, recommendations),
        purchase_recommendations=recommendations,
        errors=list(fetched.errors),
    )


class ReservationRefreshService:
    def __init__(
        self,
        db: AsyncSession,
        secret_store: Optional[SecretStore] = None,
        client_factory: Optional[Callable[[Any], AzureManagementClient]] = None,
        analyzer: Optional[CostBenefitAnalyzer] = None,
        generator: Optional[InsightGenerator] = None
    ):
        settings = get_settings()
        self.db = db
        self.settings = settings
        self.secret_store = secret_store or get_secret_store()
        self.client_factory = client_factory or AzureManagementClient
        self.analyzer = analyzer or CostBenefitAnalyzer(currency_symbol=settings.CURRENCY_SYMBOL)
        self.generator = generator or InsightGenerator(currency_symbol=settings.CURRENCY_SYMBOL)
        self.cache = ReservationCacheStore(db, stale_after_seconds=settings.RESERVATION_REFRESH_STALE_SECONDS)

    async def _get_customer(self, customer_id: UUID) -> Customer:
        customer = await self.db.get(Customer, customer_id)
        if customer is None:
            raise ResourceNotFoundError(f"Customer {customer_id} not found")
        return customer

    async def start_refresh(self, customer_id: UUID) -> RefreshTicket:
        # local import: the job package imports this module through its handlers
        from app.modules.governance.domain.jobs.processor import enqueue_job

        customer = await self._get_customer(customer_id)
        if customer.active_connection is None:
            raise ConfigurationError("No active Azure connection configured for this customer")

        if not await self.cache.claim(customer_id):
            logger.info("reservation_refresh_already_running", customer_id=str(customer_id))
            return RefreshTicket(
                accepted=False,
                status=RefreshStatus.RUNNING.value,
                message="Refresh already in progress"
            )

        try:
            job = await enqueue_job(
                self.db,
                JobType.RESERVATION_REFRESH,
                customer_id=customer_id,
                payload={"customer_id": str(customer_id)},
                max_attempts=1
            )
        except Exception as e:
            # Release the claim, otherwise the customer stays Running until it goes stale
            await self.db.rollback()
            await self.cache.mark_failed(customer_id, "Failed to queue refresh")
            logger.error("reservation_refresh_enqueue_failed", customer_id=str(customer_id), error=str(e))
            raise

        logger.info("reservation_refresh_started", customer_id=str(customer_id), job_id=str(job.id))
        return RefreshTicket(
            accepted=True,
            status=RefreshStatus.RUNNING.value,
            message="Refresh started",
            job_id=job.id
        )

    async def run_refresh(self, customer_id: UUID) -> Dict[str, Any]:
        """
        Worker entry point.

        Foundational failures (unknown customer, no connection, bad
        credentials, an unexpected error while fetching or analyzing) mark
        the row Failed and leave the cached blobs alone. A fetch that runs
        past the budget still persists what it gathered.
        """
        structlog.contextvars.bind_contextvars(customer_id=str(customer_id))
        budget = self.settings.RESERVATION_REFRESH_BUDGET_SECONDS

        try:
            customer = await self._get_customer(customer_id)
            connection = customer.active_connection
            if connection is None:
                raise ConfigurationError("No active Azure connection configured for this customer")
            subscriptions = [
                SubscriptionScope(s.subscription_id, s.display_name)
                for s in connection.in_scope_subscriptions
            ]
            secret = await self.secret_store.get_secret(connection.secret_ref)
            snapshot, timed_out = await self._collect(connection, secret, subscriptions, budget)
        except Exception as e:
            await self._fail(customer_id, e)
            raise

        if timed_out:
            error = RefreshTimeoutError(budget)
            snapshot.errors.append(error.message)
            await self.cache.save_snapshot(customer_id, snapshot, RefreshStatus.FAILED, error.message)
            raise error

        await self.cache.save_snapshot(customer_id, snapshot, RefreshStatus.COMPLETED)
        logger.info(
            "reservation_refresh_completed",
            reservations=snapshot.summary.total_reservations,
            insights=len(snapshot.insights),
            errors=len(snapshot.errors)
        )
        return {
            "status": RefreshStatus.COMPLETED.value,
            "reservations": snapshot.summary.total_reservations,
            "recommendations": snapshot.summary.purchase_recommendations,
            "errors": len(snapshot.errors),
        }

    async def _collect(
        self,
        connection: AzureConnection,
        secret: str,
        subscriptions: Sequence[SubscriptionScope],
        budget: float
    ) -> Tuple[ReservationSnapshot, bool]:
        """Fetch within the budget and build the snapshot. Returns (snapshot, timed_out)."""
        fetched = ReservationFetchResult()
        timed_out = False
        credential = ClientSecretCredential(connection.azure_tenant_id, connection.client_id, secret)
        try:
            async with self.client_factory(credential) as client:
                await client.authenticate()
                fetcher = ReservationFetcher(
                    client,
                    concurrency=self.settings.RESERVATION_FETCH_CONCURRENCY,
                    utilization_days=self.settings.RESERVATION_UTILIZATION_DAYS,
                    usage_days=self.settings.RESERVATION_USAGE_DAYS,
                )
                try:
                    async with asyncio.timeout(budget):
                        await fetcher.fetch(subscriptions, fetched)
                except TimeoutError:
                    timed_out = True
                    logger.warning(
                        "reservation_refresh_budget_exceeded",
                        budget_seconds=budget,
                        reservations=len(fetched.reservations)
                    )
        finally:
            await credential.close()

        return build_snapshot(fetched, self.analyzer, self.generator), timed_out

    async def _fail(self, customer_id: UUID, error: Exception) -> None:
        message = getattr(error, "message", None) or str(error) or type(error).__name__
        logger.error("reservation_refresh_failed", error=message, error_type=type(error).__name__)
        await self.cache.mark_failed(customer_id, message)

    async def get_reservation_data(self, customer_id: UUID) -> ReservationDataResponse:
        await self._get_customer(customer_id)
        row = await self.cache.get(customer_id)
        if row is None:
            return ReservationDataResponse(status=RefreshStatus.NO_DATA.value, message=NO_DATA_MESSAGE)

        if row.status == RefreshStatus.RUNNING.value:
            return ReservationDataResponse(
                status=row.status,
                last_refreshed=row.last_refreshed,
                message=RUNNING_MESSAGE
            )

        snapshot = decode_snapshot(row)
        return ReservationDataResponse(
            status=row.status,
            has_data=row.summary_json is not None,
            last_refreshed=row.last_refreshed,
            error_message=row.error_message if row.status == RefreshStatus.FAILED.value else None,
            summary=snapshot.summary if row.summary_json is not None else None,
            reservations=snapshot.reservations,
            insights=snapshot.insights,
            purchase_recommendations=snapshot.purchase_recommendations,
            errors=snapshot.errors,
        )


async def customers_with_active_connections(db: AsyncSession) -> List[UUID]:
    """Customers the daily sweep should refresh."""
    result = await db.execute(
        select(AzureConnection.customer_id).where(AzureConnection.is_active.is_(True)).distinct()
    )
    return list(result.scalars().all())
