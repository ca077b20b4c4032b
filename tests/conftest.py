import os
# Configure the app for tests BEFORE any app imports
os.environ["ENVIRONMENT"] = "development"
os.environ["TESTING"] = "True"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SCHEDULER_ENABLED"] = "False"
os.environ.pop("REDIS_URL", None)

import asyncio
import io
import pytest
from datetime import date, datetime, timezone
from typing import AsyncGenerator, Dict, List, Optional
from uuid import uuid4

import pandas as pd
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

# Ensure all models are registered in the metadata
import app.models  # noqa: F401
from app.models.customer import Customer
from app.models.azure_connection import AzureConnection, AzureSubscription
from app.shared.adapters.secret_store import SecretStore
from app.shared.core.exceptions import SecretStoreError
from app.shared.db.base import Base


class FakeSecretStore(SecretStore):
    """In-memory secret store keyed by reference name."""

    def __init__(self, secrets: Optional[Dict[str, str]] = None):
        self.secrets = dict(secrets or {})
        self.requested: List[str] = []

    async def get_secret(self, name: str) -> str:
        self.requested.append(name)
        if name not in self.secrets:
            raise SecretStoreError(f"Secret '{name}' not found")
        return self.secrets[name]


class FakeBlobStore:
    """Stands in for ExportBlobStore: blobs maps name -> parquet bytes."""

    def __init__(self, blobs: Dict[str, bytes], list_error: Optional[Exception] = None):
        self.blobs = blobs
        self.list_error = list_error
        self.download_errors: Dict[str, Exception] = {}
        self.downloaded: List[str] = []
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.closed = True

    async def list_exports(self, prefix=None):
        if self.list_error is not None:
            raise self.list_error
        return [(name, datetime(2026, 1, 1, tzinfo=timezone.utc)) for name in self.blobs]

    async def download(self, name: str) -> bytes:
        self.downloaded.append(name)
        if name in self.download_errors:
            raise self.download_errors[name]
        return self.blobs[name]


def make_parquet(rows: List[dict]) -> bytes:
    """Serialize FOCUS-style rows to parquet bytes."""
    buf = io.BytesIO()
    pd.DataFrame(rows).to_parquet(buf, index=False)
    return buf.getvalue()


def focus_row(
    cost: float,
    day: date,
    resource: str = "vm-web-01",
    service: str = "Virtual Machines",
    category: str = "Compute",
    subscription_id: str = "sub-1",
    subscription_name: str = "Production",
    resource_group: str = "rg-app",
    region: str = "uksouth",
) -> dict:
    return {
        "BilledCost": cost,
        "ServiceName": service,
        "ServiceCategory": category,
        "ResourceName": resource,
        "ResourceType": "Microsoft.Compute/virtualMachines",
        "ResourceId": f"/subscriptions/{subscription_id}/resourceGroups/{resource_group}/providers/x/{resource}",
        "RegionName": region,
        "SubAccountName": subscription_name,
        "SubAccountId": subscription_id,
        "ChargePeriodStart": pd.Timestamp(day),
    }


@pytest.fixture
def secret_store() -> FakeSecretStore:
    return FakeSecretStore({
        "sas-ref": "sv=2022-11-02&sp=rl&se=2099-01-01T00:00:00Z&sig=abc123",
        "sp-secret": "client-secret-value",
    })


@pytest.fixture
async def db() -> AsyncGenerator[AsyncSession, None]:
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False}
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session = AsyncSession(engine, expire_on_commit=False)
    try:
        yield session
    finally:
        await session.close()
        await engine.dispose()


@pytest.fixture
async def customer(db: AsyncSession) -> Customer:
    """A fully configured customer with one active connection and two subscriptions."""
    customer = Customer(
        id=uuid4(),
        name="Contoso",
        finops_storage_account="contosofinops",
        finops_container="ingestion",
        finops_sas_secret_ref="sas-ref",
    )
    connection = AzureConnection(
        id=uuid4(),
        customer_id=customer.id,
        azure_tenant_id="tenant-id",
        client_id="client-id",
        secret_ref="sp-secret",
        is_active=True,
    )
    db.add_all([
        customer,
        connection,
        AzureSubscription(connection_id=connection.id, subscription_id="sub-1", subscription_name="Production"),
        AzureSubscription(connection_id=connection.id, subscription_id="sub-2", subscription_name=None),
        AzureSubscription(
            connection_id=connection.id, subscription_id="sub-3", subscription_name="Sandbox", is_in_scope=False
        ),
    ])
    await db.commit()
    db.expunge_all()
    return await db.get(Customer, customer.id)


@pytest.fixture
async def ac(db: AsyncSession, secret_store: FakeSecretStore) -> AsyncGenerator[AsyncClient, None]:
    """Async client with the database, secret store and cost cache overridden."""
    from app.main import app
    from app.shared.adapters.cost_cache import CostCache, InMemoryCache, get_cost_cache
    from app.shared.adapters.secret_store import get_secret_store
    from app.shared.db.session import get_db

    async def override_db():
        yield db

    cache = CostCache(InMemoryCache(), ttl_seconds=60)

    async def override_cache():
        return cache

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_secret_store] = lambda: secret_store
    app.dependency_overrides[get_cost_cache] = override_cache

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


class FakeReservationsClient:
    """
    Stands in for AzureManagementClient on the reservation endpoints.

    `failures` maps (method, key) to the exception that call raises; key is
    the order id, reservation id or subscription id the call is made for.
    """

    def __init__(
        self,
        orders: Optional[List[dict]] = None,
        reservations: Optional[Dict[str, List[dict]]] = None,
        summaries: Optional[Dict[str, List[dict]]] = None,
        details: Optional[Dict[str, List[dict]]] = None,
        recommendations: Optional[Dict[str, List[dict]]] = None,
        failures: Optional[Dict[tuple, Exception]] = None,
        auth_error: Optional[Exception] = None,
        summary_delay: float = 0,
    ):
        self.orders = orders or []
        self.reservations = reservations or {}
        self.summaries = summaries or {}
        self.details = details or {}
        self.recommendations = recommendations or {}
        self.failures = failures or {}
        self.auth_error = auth_error
        self.summary_delay = summary_delay
        self.calls: List[tuple] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        pass

    def _check(self, method: str, key: str) -> None:
        self.calls.append((method, key))
        if (method, key) in self.failures:
            raise self.failures[(method, key)]

    async def authenticate(self):
        if self.auth_error is not None:
            raise self.auth_error

    async def list_reservation_orders(self):
        self._check("orders", "")
        return self.orders

    async def list_reservations(self, order_id):
        self._check("reservations", order_id)
        return self.reservations.get(order_id, [])

    async def get_reservation_summaries(self, order_id, reservation_id, start, end):
        if self.summary_delay:
            await asyncio.sleep(self.summary_delay)
        self._check("summaries", reservation_id)
        return self.summaries.get(reservation_id, [])

    async def get_reservation_details(self, order_id, reservation_id, start, end):
        self._check("details", reservation_id)
        return self.details.get(reservation_id, [])

    async def list_reservation_recommendations(self, subscription_id):
        self._check("recommendations", subscription_id)
        return self.recommendations.get(subscription_id, [])


def reservation_payload(
    name: str,
    display_name: str,
    expiry: str = "2027-06-01T00:00:00Z",
    term: str = "P1Y",
    state: str = "Succeeded",
    renew: bool = False,
) -> dict:
    return {
        "name": name,
        "sku": {"name": "Standard_D2s_v3"},
        "location": "uksouth",
        "properties": {
            "displayName": display_name,
            "provisioningState": state,
            "reservedResourceType": "VirtualMachines",
            "term": term,
            "quantity": 1,
            "renew": renew,
            "purchaseDate": "2025-06-01T00:00:00Z",
            "expiryDateTime": expiry,
        },
    }


def summary_rows(percent: float, days: int = 3) -> List[dict]:
    return [
        {"properties": {"usageDate": f"2026-01-{d:02d}T00:00:00Z", "avgUtilizationPercentage": percent}}
        for d in range(1, days + 1)
    ]
