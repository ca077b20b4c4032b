"""
FOCUS export blob store.

Read-only access to the customer's export container through a SAS token.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple
from urllib.parse import parse_qs, urlparse

import structlog
import tenacity
from azure.core.exceptions import HttpResponseError, ServiceRequestError, ServiceResponseError
from azure.storage.blob.aio import ContainerClient

from app.schemas.costs import SasTokenInfo
from app.shared.core.exceptions import AdapterError, StorageAccessError

logger = structlog.get_logger()

# Retry decorator for Azure transient failures
azure_retry = tenacity.retry(
    retry=tenacity.retry_if_exception_type((ServiceRequestError, ServiceResponseError)),
    wait=tenacity.wait_exponential(multiplier=1, min=2, max=10),
    stop=tenacity.stop_after_attempt(3),
    before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
    reraise=True
)

DENIED_STATUSES = {401, 403}


def build_container_url(account: str, container: str, sas_token: str, endpoint_template: str) -> str:
    """A stored secret starting with http is already a full container SAS URL."""
    sas_token = sas_token.strip()
    if sas_token.lower().startswith("http"):
        return sas_token
    endpoint = endpoint_template.format(account=account).rstrip("/")
    return f"{endpoint}/{container}?{sas_token.lstrip('?')}"


def parse_sas_token(sas: str, now: Optional[datetime] = None) -> SasTokenInfo:
    """Describe what a SAS grants (permissions, expiry) without the signature."""
    query = urlparse(sas).query if sas.lower().startswith("http") else sas.lstrip("?")
    params = parse_qs(query)
    permissions = params.get("sp", [None])[0]
    expires = params.get("se", [None])[0]

    is_expired = None
    if expires:
        try:
            expiry = datetime.fromisoformat(expires.replace("Z", "+00:00"))
            if expiry.tzinfo is None:
                expiry = expiry.replace(tzinfo=timezone.utc)
            is_expired = expiry < (now or datetime.now(timezone.utc))
        except ValueError:
            is_expired = None

    return SasTokenInfo(permissions=permissions, expires=expires, is_expired=is_expired)


def _translate(e: HttpResponseError, action: str) -> Exception:
    if e.status_code in DENIED_STATUSES:
        return StorageAccessError(details={"action": action, "status": e.status_code})
    return AdapterError(f"Blob {action} failed: {e.reason or e.message}", status=e.status_code)


class ExportBlobStore:
    """Lists and downloads export objects from one container."""

    def __init__(self, container_url: str, client: Optional[ContainerClient] = None):
        self.container_url = container_url
        self._client = client

    def _get_client(self) -> ContainerClient:
        if self._client is None:
            self._client = ContainerClient.from_container_url(self.container_url)
        return self._client

    async def __aenter__(self) -> "ExportBlobStore":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()

    @azure_retry
    async def list_exports(self, prefix: Optional[str] = None) -> List[Tuple[str, Optional[datetime]]]:
        """All .parquet objects as (name, last_modified)."""
        client = self._get_client()
        blobs = []
        try:
            async for blob in client.list_blobs(name_starts_with=prefix):
                if blob.name.lower().endswith(".parquet"):
                    blobs.append((blob.name, blob.last_modified))
        except HttpResponseError as e:
            logger.error("export_blob_list_failed", status=e.status_code, error=str(e.reason))
            raise _translate(e, "list") from e
        logger.info("export_blobs_listed", count=len(blobs))
        return blobs

    @azure_retry
    async def download(self, name: str) -> bytes:
        client = self._get_client()
        try:
            stream = await client.download_blob(name)
            return await stream.readall()
        except HttpResponseError as e:
            logger.warning("export_blob_download_failed", blob=name, status=e.status_code)
            raise _translate(e, "download") from e
