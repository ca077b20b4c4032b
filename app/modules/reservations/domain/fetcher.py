"""
Reservation Fetcher

Pulls reservations, their utilization and usage, and purchase
recommendations from the management API. Every call is isolated: a failure
becomes a readable entry in `errors` and the refresh carries on with
whatever else it can get.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Callable, List, NamedTuple, Optional, Sequence

import structlog

from app.modules.reservations.domain.parsers import (
    apply_utilization,
    parse_covered_resources,
    parse_purchase_recommendation,
    parse_reservation,
    parse_utilization,
)
from app.schemas.reservations import PurchaseRecommendation, Reservation
from app.shared.adapters.azure_management import AzureManagementClient
from app.shared.core.exceptions import AdapterError

logger = structlog.get_logger()


class SubscriptionScope(NamedTuple):
    subscription_id: str
    name: str


@dataclass
class ReservationFetchResult:
    """Filled in place so a caller that times out still holds what arrived."""
    reservations: List[Reservation] = field(default_factory=list)
    purchase_recommendations: List[PurchaseRecommendation] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


def _describe(e: Exception) -> str:
    if isinstance(e, AdapterError) and e.status is not None:
        return str(e.status)
    return getattr(e, "message", None) or str(e) or type(e).__name__


class ReservationFetcher:
    def __init__(
        self,
        client: AzureManagementClient,
        concurrency: int = 5,
        utilization_days: int = 30,
        usage_days: int = 7,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)
    ):
        self.client = client
        self.utilization_days = utilization_days
        self.usage_days = usage_days
        self.clock = clock
        self._semaphore = asyncio.Semaphore(concurrency)

    async def fetch(
        self,
        subscriptions: Sequence[SubscriptionScope],
        result: Optional[ReservationFetchResult] = None
    ) -> ReservationFetchResult:
        result = result if result is not None else ReservationFetchResult()
        now = self.clock()

        await self.collect_reservations(result, now)
        await asyncio.gather(
            self.enrich_reservations(result, now.date()),
            self.collect_recommendations(subscriptions, result),
        )

        logger.info(
            "reservation_fetch_complete",
            reservations=len(result.reservations),
            recommendations=len(result.purchase_recommendations),
            errors=len(result.errors)
        )
        return result

    async def collect_reservations(self, result: ReservationFetchResult, now: datetime) -> None:
        try:
            orders = await self.client.list_reservation_orders()
        except AdapterError as e:
            if e.status is not None:
                result.errors.append(
                    f"Reservations API: {e.status} - Service Principal may need Reservations Reader at tenant/billing level"
                )
            else:
                result.errors.append(f"Reservations error: {e.message}")
            logger.warning("reservation_orders_fetch_failed", status=e.status, error=e.message)
            return
        except Exception as e:
            result.errors.append(f"Reservations error: {_describe(e)}")
            logger.warning("reservation_orders_fetch_failed", error=str(e))
            return

        async def list_for(order):
            async with self._semaphore:
                try:
                    return await self.client.list_reservations(order.get("name", ""))
                except Exception as e:
                    result.errors.append(f"Reservations for order {order.get('name', '')}: {_describe(e)}")
                    logger.warning("reservation_list_failed", order_id=order.get("name"), error=str(e))
                    return []

        per_order = await asyncio.gather(*(list_for(order) for order in orders))
        for order, raws in zip(orders, per_order):
            for raw in raws:
                try:
                    result.reservations.append(parse_reservation(raw, order, now))
                except Exception as e:
                    order_id = order.get("name", "")
                    result.errors.append(f"Reservation in order {order_id}: {_describe(e)}")
                    logger.warning("reservation_decode_failed", order_id=order_id, error=str(e))

    async def enrich_reservations(self, result: ReservationFetchResult, today: date) -> None:
        await asyncio.gather(*(self._enrich(res, today, result.errors) for res in result.reservations))

    async def _enrich(self, reservation: Reservation, today: date, errors: List[str]) -> None:
        """Utilization and usage are fetched independently; either may fail alone."""
        label = reservation.display_name or reservation.reservation_id
        async with self._semaphore:
            try:
                summaries = await self.client.get_reservation_summaries(
                    reservation.order_id,
                    reservation.reservation_id,
                    today - timedelta(days=self.utilization_days),
                    today
                )
                apply_utilization(reservation, parse_utilization(summaries))
            except Exception as e:
                reservation.utilization_error = _describe(e)
                errors.append(f"Utilization for {label}: {_describe(e)}")
                logger.warning("reservation_utilization_failed", reservation_id=reservation.reservation_id, error=str(e))

            try:
                details = await self.client.get_reservation_details(
                    reservation.order_id,
                    reservation.reservation_id,
                    today - timedelta(days=self.usage_days),
                    today
                )
                reservation.covered_resources = parse_covered_resources(details)
            except Exception as e:
                errors.append(f"Usage details for {label}: {_describe(e)}")
                logger.warning("reservation_usage_failed", reservation_id=reservation.reservation_id, error=str(e))

    async def collect_recommendations(
        self, subscriptions: Sequence[SubscriptionScope], result: ReservationFetchResult
    ) -> None:
        async def for_subscription(sub: SubscriptionScope) -> None:
            async with self._semaphore:
                try:
                    raws = await self.client.list_reservation_recommendations(sub.subscription_id)
                except Exception as e:
                    result.errors.append(f"Recommendations for {sub.name}: {_describe(e)}")
                    logger.warning("reservation_recommendations_failed", subscription_id=sub.subscription_id, error=str(e))
                    return
            result.purchase_recommendations.extend(
                parse_purchase_recommendation(raw, sub.name, sub.subscription_id) for raw in raws
            )

        await asyncio.gather(*(for_subscription(sub) for sub in subscriptions))
