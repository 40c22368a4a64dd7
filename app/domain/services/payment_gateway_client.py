"""
Asaas Client - קריאות יוצאות לשער התשלומים.

משמש את ה-reconciler לשתי פעולות: שליפת אובייקט מנוי (cycle / endDate /
customer) ועדכון מחיר מנוי אחרי קופון לחודש הראשון.
retry עם exponential backoff על שגיאות זמניות ו-timeout.
"""
from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import Any

import httpx

from app.core.config import settings
from app.core.exceptions import PaymentGatewayError, ServiceTimeoutError
from app.core.logging import get_logger

logger = get_logger(__name__)

_TRANSIENT_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class AsaasClient:
    """Thin async client over the Asaas REST API"""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout_seconds: float | None = None,
        max_retries: int = 3,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url or settings.ASAAS_API_URL
        self._api_key = api_key if api_key is not None else settings.ASAAS_API_KEY
        self._timeout = timeout_seconds or settings.ASAAS_TIMEOUT_SECONDS
        self._max_retries = max(1, max_retries)
        self._transport = transport

    @property
    def provider_name(self) -> str:
        return "asaas"

    async def _request(
        self,
        method: str,
        path: str,
        operation_name: str,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """בקשה ל-Asaas עם retry. זורק PaymentGatewayError / ServiceTimeoutError."""
        headers = {
            "access_token": self._api_key,
            "Content-Type": "application/json",
        }
        async with httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
        ) as client:
            for attempt in range(self._max_retries):
                is_last = attempt == self._max_retries - 1
                try:
                    response = await client.request(method, path, json=json, headers=headers)
                except httpx.TimeoutException:
                    if not is_last:
                        await self._backoff(operation_name, attempt, reason="timeout")
                        continue
                    raise ServiceTimeoutError("asaas", self._timeout)
                except httpx.RequestError as exc:
                    if not is_last:
                        await self._backoff(operation_name, attempt, reason=str(exc))
                        continue
                    raise PaymentGatewayError(
                        message=f"{operation_name} network error: {exc}",
                        details={"network_error": True, "attempts": self._max_retries},
                    )

                if response.is_success:
                    return response.json() if response.content else {}

                if response.status_code in _TRANSIENT_STATUS_CODES and not is_last:
                    await self._backoff(
                        operation_name, attempt, reason=f"status {response.status_code}"
                    )
                    continue

                raise PaymentGatewayError.from_response(operation_name, response)

        raise PaymentGatewayError(message=f"{operation_name} failed")  # pragma: no cover

    async def _backoff(self, operation_name: str, attempt: int, reason: str) -> None:
        delay = 2 ** attempt
        logger.warning(
            f"Transient Asaas failure in {operation_name}, retrying",
            extra_data={
                "operation": operation_name,
                "attempt": attempt + 1,
                "max_retries": self._max_retries,
                "backoff_seconds": delay,
                "reason": reason,
            },
        )
        await asyncio.sleep(delay)

    async def get_subscription(self, subscription_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/subscriptions/{subscription_id}", "get_subscription")

    async def update_subscription_value(
        self,
        subscription_id: str,
        value: Decimal | float,
    ) -> dict[str, Any]:
        """עדכון מחיר מנוי (לחיובים הבאים בלבד)"""
        return await self._request(
            "POST",
            f"/subscriptions/{subscription_id}",
            "update_subscription_value",
            json={"value": float(value), "updatePendingPayments": True},
        )


_client: AsaasClient | None = None


def get_payment_gateway() -> AsaasClient:
    """Dependency: Asaas client singleton"""
    global _client
    if _client is None:
        _client = AsaasClient()
    return _client
