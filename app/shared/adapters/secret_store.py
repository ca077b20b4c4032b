from abc import ABC, abstractmethod
from typing import Optional

import structlog
from azure.core.exceptions import HttpResponseError, ResourceNotFoundError as AzureNotFound
from azure.identity.aio import DefaultAzureCredential
from azure.keyvault.secrets.aio import SecretClient

from app.shared.core.config import get_settings
from app.shared.core.exceptions import ConfigurationError, SecretStoreError

logger = structlog.get_logger()


class SecretStore(ABC):
    """Resolves named secret references (SAS tokens, client secrets)."""

    @abstractmethod
    async def get_secret(self, name: str) -> str:
        pass

    async def close(self) -> None:
        pass


class KeyVaultSecretStore(SecretStore):
    """Azure Key Vault backed secret store using the app's managed identity."""

    def __init__(self, vault_url: Optional[str] = None):
        self.vault_url = vault_url or get_settings().KEY_VAULT_URL
        self._credential = None
        self._client = None

    def _get_client(self) -> SecretClient:
        if not self.vault_url:
            raise ConfigurationError("KEY_VAULT_URL is not configured")
        if self._client is None:
            self._credential = DefaultAzureCredential()
            self._client = SecretClient(vault_url=self.vault_url, credential=self._credential)
        return self._client

    async def get_secret(self, name: str) -> str:
        client = self._get_client()
        try:
            secret = await client.get_secret(name)
        except AzureNotFound as e:
            logger.warning("secret_not_found", secret_name=name)
            raise SecretStoreError(f"Secret '{name}' not found") from e
        except HttpResponseError as e:
            logger.error("secret_fetch_failed", secret_name=name, status=e.status_code)
            raise SecretStoreError(f"Failed to retrieve secret '{name}'") from e

        if not secret.value:
            raise SecretStoreError(f"Secret '{name}' is empty")
        return secret.value

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
        if self._credential is not None:
            await self._credential.close()


_secret_store: SecretStore | None = None


def get_secret_store() -> SecretStore:
    """FastAPI dependency / worker accessor for the process-wide secret store."""
    global _secret_store
    if _secret_store is None:
        _secret_store = KeyVaultSecretStore()
    return _secret_store
