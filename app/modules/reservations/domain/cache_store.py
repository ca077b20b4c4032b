"""
Reservation Cache Store

Reads and writes the per-customer refresh row. The row doubles as the
refresh lock: `claim` flips it to Running with a single conditional
UPDATE (or a unique INSERT), so two concurrent triggers cannot both win.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional
from uuid import UUID

import structlog
from pydantic import TypeAdapter, ValidationError
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.reservation_cache import CustomerReservationCache, RefreshStatus
from app.schemas.reservations import (
    PurchaseRecommendation,
    Reservation,
    ReservationInsight,
    ReservationSnapshot,
    ReservationSummary,
)
from app.shared.core.exceptions import CacheStoreError

logger = structlog.get_logger()

_reservations = TypeAdapter(List[Reservation])
_insights = TypeAdapter(List[ReservationInsight])
_recommendations = TypeAdapter(List[PurchaseRecommendation])
_errors = TypeAdapter(List[str])
_summary = TypeAdapter(ReservationSummary)


def _encode(adapter: TypeAdapter, value: Any) -> str:
    return adapter.dump_json(value, by_alias=True).decode()


def _decode(adapter: TypeAdapter, raw: Optional[str], default: Any, field: str) -> Any:
    """A corrupt blob degrades to its default instead of failing the whole read."""
    if not raw:
        return default
    try:
        return adapter.validate_json(raw)
    except ValidationError as e:
        logger.warning("reservation_cache_decode_failed", field=field, errors=e.error_count())
        return default


def decode_snapshot(row: CustomerReservationCache) -> ReservationSnapshot:
    return ReservationSnapshot(
        summary=_decode(_summary, row.summary_json, ReservationSummary(), "summary"),
        reservations=_decode(_reservations, row.reservations_json, [], "reservations"),
        insights=_decode(_insights, row.insights_json, [], "insights"),
        purchase_recommendations=_decode(
            _recommendations, row.purchase_recommendations_json, [], "purchase_recommendations"
        ),
        errors=_decode(_errors, row.errors_json, [], "errors"),
    )


class ReservationCacheStore:
    def __init__(self, db: AsyncSession, stale_after_seconds: Optional[int] = None):
        self.db = db
        self.stale_after_seconds = stale_after_seconds

    async def get(self, customer_id: UUID) -> Optional[CustomerReservationCache]:
        try:
            result = await self.db.execute(
                select(CustomerReservationCache)
                .where(CustomerReservationCache.customer_id == customer_id)
                .execution_options(populate_existing=True)
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("reservation_cache_read_failed", customer_id=str(customer_id), error=str(e))
            raise CacheStoreError("Failed to read reservation cache") from e

    async def claim(self, customer_id: UUID) -> bool:
        """
        Mark the customer's refresh as Running.

        Returns False when another refresh already holds the claim. A Running
        row older than `stale_after_seconds` is considered abandoned and can
        be reclaimed.
        """
        now = datetime.now(timezone.utc)
        try:
            existing = await self.get(customer_id)
            if existing is None:
                self.db.add(CustomerReservationCache(
                    customer_id=customer_id,
                    status=RefreshStatus.RUNNING.value,
                    created_at=now,
                    updated_at=now,
                ))
                try:
                    await self.db.commit()
                except IntegrityError:
                    # Lost the insert race to a concurrent trigger
                    await self.db.rollback()
                    return False
                return True

            claimable = CustomerReservationCache.status != RefreshStatus.RUNNING.value
            if self.stale_after_seconds:
                cutoff = now - timedelta(seconds=self.stale_after_seconds)
                claimable = or_(claimable, CustomerReservationCache.updated_at < cutoff)

            result = await self.db.execute(
                update(CustomerReservationCache)
                .where(CustomerReservationCache.customer_id == customer_id, claimable)
                .values(status=RefreshStatus.RUNNING.value, error_message=None, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
            return result.rowcount == 1
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error("reservation_cache_claim_failed", customer_id=str(customer_id), error=str(e))
            raise CacheStoreError("Failed to claim reservation refresh") from e

    async def save_snapshot(
        self,
        customer_id: UUID,
        snapshot: ReservationSnapshot,
        status: RefreshStatus = RefreshStatus.COMPLETED,
        error_message: Optional[str] = None
    ) -> None:
        """Replace every blob and the status in one commit."""
        now = datetime.now(timezone.utc)
        await self._write(customer_id, {
            "status": status.value,
            "last_refreshed": now,
            "summary_json": _encode(_summary, snapshot.summary),
            "reservations_json": _encode(_reservations, snapshot.reservations),
            "insights_json": _encode(_insights, snapshot.insights),
            "purchase_recommendations_json": _encode(_recommendations, snapshot.purchase_recommendations),
            "errors_json": _encode(_errors, snapshot.errors),
            "error_message": error_message,
            "updated_at": now,
        })

    async def mark_failed(self, customer_id: UUID, error_message: str) -> None:
        """Record a failure without touching the previously cached blobs."""
        await self._write(customer_id, {
            "status": RefreshStatus.FAILED.value,
            "error_message": error_message,
            "updated_at": datetime.now(timezone.utc),
        })

    async def _write(self, customer_id: UUID, values: dict) -> None:
        try:
            result = await self.db.execute(
                update(CustomerReservationCache)
                .where(CustomerReservationCache.customer_id == customer_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                self.db.add(CustomerReservationCache(customer_id=customer_id, created_at=values["updated_at"], **values))
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error("reservation_cache_write_failed", customer_id=str(customer_id), error=str(e))
            raise CacheStoreError("Failed to write reservation cache") from e

