from __future__ import annotations

from datetime import datetime, timezone
from uuid import UUID, uuid4
from sqlalchemy import String, DateTime, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.shared.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Customer(Base):
    """
    A customer whose Azure estate is analysed.

    Only the FinOps storage settings are read by the analytics engine; the
    rest of the customer record is owned by the surrounding CRUD service.
    """
    __tablename__ = "customers"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Storage account and container receiving FOCUS cost exports
    finops_storage_account: Mapped[str | None] = mapped_column(String(255), nullable=True)
    finops_container: Mapped[str] = mapped_column(String(255), default="ingestion")
    # Secret store reference for the container SAS token
    finops_sas_secret_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    connections: Mapped[list["AzureConnection"]] = relationship(
        "AzureConnection", back_populates="customer", lazy="selectin"
    )

    @property
    def active_connection(self) -> "AzureConnection | None":
        return next((c for c in self.connections if c.is_active), None)

    def __repr__(self) -> str:
        return f"<Customer {self.id} name={self.name}>"
