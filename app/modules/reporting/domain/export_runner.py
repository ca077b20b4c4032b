"""
Triggers the customer's Cost Management exports on demand.

Only exports delivering into the customer's FinOps storage account are run;
each subscription is handled independently so one failure never blocks the rest.
"""
import asyncio
from typing import Any, Callable, Dict, Optional

import structlog
from azure.identity.aio import ClientSecretCredential

from app.models.customer import Customer
from app.models.azure_connection import AzureSubscription
from app.schemas.costs import ExportRunResult
from app.shared.adapters.azure_management import AzureManagementClient
from app.shared.adapters.secret_store import SecretStore, get_secret_store
from app.shared.core.exceptions import ConfigurationError

logger = structlog.get_logger()


def _destination_account(export: Dict[str, Any]) -> str:
    props = export.get("properties") or {}
    destination = ((props.get("deliveryInfo") or {}).get("destination") or {})
    resource_id = destination.get("resourceId") or ""
    marker = "/storageaccounts/"
    idx = resource_id.lower().find(marker)
    if idx < 0:
        return ""
    return resource_id[idx + len(marker):].split("/")[0]


class ExportRunner:
    def __init__(
        self,
        secret_store: Optional[SecretStore] = None,
        client_factory: Callable[[Any], AzureManagementClient] = AzureManagementClient
    ):
        self.secret_store = secret_store or get_secret_store()
        self.client_factory = client_factory

    async def run_exports(self, customer: Customer) -> ExportRunResult:
        connection = customer.active_connection
        if connection is None:
            raise ConfigurationError("No active Azure connection configured for this customer")
        if not customer.finops_storage_account:
            raise ConfigurationError("FinOps storage account is not configured for this customer")

        secret = await self.secret_store.get_secret(connection.secret_ref)
        subscriptions = connection.in_scope_subscriptions
        result = ExportRunResult(subscriptions_checked=len(subscriptions))
        account = customer.finops_storage_account.lower()

        credential = ClientSecretCredential(connection.azure_tenant_id, connection.client_id, secret)
        try:
            async with self.client_factory(credential) as client:
                await asyncio.gather(*(
                    self._run_for_subscription(client, sub, account, result) for sub in subscriptions
                ))
        finally:
            await credential.close()

        logger.info(
            "cost_exports_triggered",
            customer_id=str(customer.id),
            triggered=len(result.triggered),
            errors=len(result.errors)
        )
        return result

    async def _run_for_subscription(
        self,
        client: AzureManagementClient,
        subscription: AzureSubscription,
        account: str,
        result: ExportRunResult
    ) -> None:
        try:
            exports = await client.list_exports(subscription.subscription_id)
        except Exception as e:
            result.errors.append(f"Exports for {subscription.display_name}: {getattr(e, 'message', str(e))}")
            logger.warning("cost_export_list_failed", subscription_id=subscription.subscription_id, error=str(e))
            return

        for export in exports:
            name = export.get("name") or ""
            if _destination_account(export).lower() != account:
                result.skipped.append(name)
                continue
            try:
                await client.run_export(subscription.subscription_id, name)
                result.triggered.append(name)
            except Exception as e:
                result.errors.append(f"Run {name} in {subscription.display_name}: {getattr(e, 'message', str(e))}")
                logger.warning("cost_export_run_failed", export=name, error=str(e))
