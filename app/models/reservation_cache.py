"""
Reservation Refresh Cache Model

One row per customer holding the last reservation refresh outcome.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4
from sqlalchemy import String, Text, DateTime, ForeignKey, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.shared.db.base import Base
from app.models.customer import _utcnow


class RefreshStatus(str, Enum):
    """Refresh lifecycle states. NO_DATA is never stored; it means 'no row'."""
    NO_DATA = "NoData"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"


class CustomerReservationCache(Base):
    __tablename__ = "customer_reservation_cache"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    # Unique: the row is the per-customer refresh lock
    customer_id: Mapped[UUID] = mapped_column(
        ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, unique=True, index=True
    )
    status: Mapped[str] = mapped_column(String(20), default=RefreshStatus.RUNNING.value)
    last_refreshed: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    summary_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    reservations_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    insights_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    purchase_recommendations_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    errors_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def __repr__(self) -> str:
        return f"<CustomerReservationCache customer={self.customer_id} status={self.status}>"
