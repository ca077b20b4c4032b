from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4
from sqlalchemy import String, Boolean, ForeignKey, DateTime, Uuid, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.shared.db.base import Base
from app.models.customer import _utcnow


class AzureConnection(Base):
    """
    A customer's Service Principal connection to Azure.

    Security:
    - client_id/azure_tenant_id are public
    - the client secret lives in Key Vault, referenced by secret_ref
    """
    __tablename__ = "azure_connections"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    customer_id: Mapped[UUID] = mapped_column(
        ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True
    )

    azure_tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    client_id: Mapped[str] = mapped_column(String(64), nullable=False)
    secret_ref: Mapped[str] = mapped_column(String(255), nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    customer: Mapped["Customer"] = relationship("Customer", back_populates="connections")
    subscriptions: Mapped[list["AzureSubscription"]] = relationship(
        "AzureSubscription", back_populates="connection", lazy="selectin"
    )

    @property
    def in_scope_subscriptions(self) -> list["AzureSubscription"]:
        return [s for s in self.subscriptions if s.is_in_scope]


class AzureSubscription(Base):
    """A subscription visible through a connection."""
    __tablename__ = "azure_subscriptions"
    __table_args__ = (
        UniqueConstraint("connection_id", "subscription_id", name="uq_connection_subscription"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    connection_id: Mapped[UUID] = mapped_column(
        ForeignKey("azure_connections.id", ondelete="CASCADE"), nullable=False, index=True
    )
    subscription_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subscription_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_in_scope: Mapped[bool] = mapped_column(Boolean, default=True)

    connection: Mapped["AzureConnection"] = relationship("AzureConnection", back_populates="subscriptions")

    @property
    def display_name(self) -> str:
        return self.subscription_name or self.subscription_id
