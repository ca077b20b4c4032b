"""
Azure Resource Manager REST client.

Covers the Capacity (reservations), Consumption (utilization, usage details,
purchase recommendations) and Cost Management (exports) endpoints. Responses
are returned as raw dicts; decoding into typed records happens in the
reservation parsers so field-name drift between API versions stays in one place.
"""

import logging
import time
from datetime import date
from typing import Any, Dict, List, Optional

import httpx
import structlog
import tenacity
from azure.core.credentials import AccessToken

from app.shared.adapters.rate_limiter import RateLimiter, get_azure_rate_limiter
from app.shared.core.config import get_settings
from app.shared.core.exceptions import AdapterError

logger = structlog.get_logger()

MAX_PAGES = 50
TOKEN_REFRESH_MARGIN_SECONDS = 120


class TransientAzureError(AdapterError):
    """Throttling (429) or server-side (5xx) response; safe to retry."""


# Retry throttling, server errors and connection failures
azure_http_retry = tenacity.retry(
    retry=tenacity.retry_if_exception_type((TransientAzureError, httpx.TransportError)),
    wait=tenacity.wait_exponential(multiplier=1, min=2, max=10),
    stop=tenacity.stop_after_attempt(3),
    before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
    reraise=True
)


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
        error = body.get("error", {}) if isinstance(body, dict) else {}
        return error.get("message") or error.get("code") or response.reason_phrase
    except ValueError:
        return response.reason_phrase


class AzureManagementClient:
    """
    Bearer-token client for management.azure.com.

    `credential` is any azure-identity async credential (normally a
    ClientSecretCredential built from the customer's service principal).
    """

    def __init__(
        self,
        credential: Any,
        base_url: Optional[str] = None,
        rate_limiter: Optional[RateLimiter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None
    ):
        settings = get_settings()
        self.credential = credential
        self.base_url = (base_url or settings.AZURE_MANAGEMENT_URL).rstrip("/")
        self.scope = settings.AZURE_MANAGEMENT_SCOPE
        self.reservations_api_version = settings.RESERVATIONS_API_VERSION
        self.consumption_api_version = settings.CONSUMPTION_API_VERSION
        self.cost_management_api_version = settings.COST_MANAGEMENT_API_VERSION
        self.rate_limiter = rate_limiter or get_azure_rate_limiter()
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or settings.AZURE_HTTP_TIMEOUT_SECONDS,
            transport=transport
        )
        self._token: Optional[AccessToken] = None

    async def __aenter__(self) -> "AzureManagementClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def _bearer(self) -> str:
        if self._token is None or self._token.expires_on - TOKEN_REFRESH_MARGIN_SECONDS < time.time():
            self._token = await self.credential.get_token(self.scope)
        return self._token.token

    async def authenticate(self) -> None:
        """Acquire a token up front so bad credentials fail before any data call."""
        await self._bearer()

    @azure_http_retry
    async def _send(self, method: str, url: str, params: Optional[Dict[str, str]] = None) -> httpx.Response:
        await self.rate_limiter.acquire()
        headers = {"Authorization": f"Bearer {await self._bearer()}"}
        response = await self._client.request(method, url, params=params, headers=headers)
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientAzureError(
                f"{response.status_code} - {_error_detail(response)}",
                status=response.status_code
            )
        return response

    async def request(self, method: str, url: str, params: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        try:
            response = await self._send(method, url, params)
        except httpx.TransportError as e:
            raise AdapterError(f"Azure request failed: {type(e).__name__}") from e

        if response.status_code >= 400:
            logger.warning(
                "azure_management_request_failed",
                method=method,
                path=httpx.URL(url).path,
                status=response.status_code
            )
            raise AdapterError(
                f"{response.status_code} - {_error_detail(response)}",
                status=response.status_code
            )
        if not response.content:
            return {}
        return response.json()

    async def get_paged(self, path: str, params: Optional[Dict[str, str]] = None) -> List[Dict[str, Any]]:
        """GET a list endpoint and follow nextLink until exhausted."""
        items: List[Dict[str, Any]] = []
        url, page_params = path, params
        for _ in range(MAX_PAGES):
            body = await self.request("GET", url, page_params)
            items.extend(body.get("value", []))
            next_link = body.get("nextLink")
            if not next_link:
                return items
            # nextLink already carries api-version and skip tokens
            url, page_params = next_link, None
        logger.warning("azure_pagination_truncated", path=path, pages=MAX_PAGES)
        return items

    # --- Capacity ---

    async def list_reservation_orders(self) -> List[Dict[str, Any]]:
        return await self.get_paged(
            "/providers/Microsoft.Capacity/reservationOrders",
            {"api-version": self.reservations_api_version}
        )

    async def list_reservations(self, order_id: str) -> List[Dict[str, Any]]:
        return await self.get_paged(
            f"/providers/Microsoft.Capacity/reservationOrders/{order_id}/reservations",
            {"api-version": self.reservations_api_version}
        )

    # --- Consumption ---

    def _reservation_path(self, order_id: str, reservation_id: str) -> str:
        return (
            f"/providers/Microsoft.Capacity/reservationOrders/{order_id}"
            f"/reservations/{reservation_id}/providers/Microsoft.Consumption"
        )

    async def get_reservation_summaries(
        self, order_id: str, reservation_id: str, start: date, end: date
    ) -> List[Dict[str, Any]]:
        """Daily utilization summaries for one reservation."""
        return await self.get_paged(
            f"{self._reservation_path(order_id, reservation_id)}/reservationSummaries",
            {
                "api-version": self.consumption_api_version,
                "grain": "daily",
                "$filter": f"properties/usageDate ge {start.isoformat()} and properties/usageDate le {end.isoformat()}",
            }
        )

    async def get_reservation_details(
        self, order_id: str, reservation_id: str, start: date, end: date
    ) -> List[Dict[str, Any]]:
        """Per-instance usage of one reservation."""
        return await self.get_paged(
            f"{self._reservation_path(order_id, reservation_id)}/reservationDetails",
            {
                "api-version": self.consumption_api_version,
                "$filter": f"properties/usageDate ge {start.isoformat()} and properties/usageDate le {end.isoformat()}",
            }
        )

    async def list_reservation_recommendations(self, subscription_id: str) -> List[Dict[str, Any]]:
        return await self.get_paged(
            f"/subscriptions/{subscription_id}/providers/Microsoft.Consumption/reservationRecommendations",
            {"api-version": self.consumption_api_version}
        )

    # --- Cost Management exports ---

    async def list_exports(self, subscription_id: str) -> List[Dict[str, Any]]:
        return await self.get_paged(
            f"/subscriptions/{subscription_id}/providers/Microsoft.CostManagement/exports",
            {"api-version": self.cost_management_api_version}
        )

    async def run_export(self, subscription_id: str, export_name: str) -> None:
        await self.request(
            "POST",
            f"/subscriptions/{subscription_id}/providers/Microsoft.CostManagement/exports/{export_name}/run",
            {"api-version": self.cost_management_api_version}
        )
