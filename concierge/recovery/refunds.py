from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import aiohttp

from concierge.common import log_event


class RefundProviderError(RuntimeError):
    def __init__(self, message: str, *, status: int = 0) -> None:
        super().__init__(message)
        self.status = status


@dataclass(slots=True, frozen=True)
class ProviderRefund:
    refund_id: str
    status: str

    @property
    def is_completed(self) -> bool:
        return self.status == "COMPLETED"

    @property
    def is_rejected(self) -> bool:
        return self.status in {"REJECTED", "FAILED"}


def _refund_from_body(body: dict[str, Any]) -> ProviderRefund:
    refund = body.get("refund")
    if not isinstance(refund, dict) or not refund.get("id"):
        raise RefundProviderError("Refund response did not include a refund object.")
    return ProviderRefund(refund_id=str(refund["id"]), status=str(refund.get("status") or "PENDING").upper())


class ProviderRefundClient:
    """Square refunds API, used when refunds go back to the original payment method."""

    def __init__(
        self,
        *,
        base_url: str,
        access_token: str,
        logger: logging.Logger,
        timeout_seconds: float = 15.0,
        currency: str = "USD",
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._access_token = access_token
        self._logger = logger
        self._timeout_seconds = timeout_seconds
        self._currency = currency
        self._session: aiohttp.ClientSession | None = None

    async def connect(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    def _headers(self) -> dict[str, str]:
        return {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._access_token}",
        }

    async def _request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        if not self._access_token:
            raise RefundProviderError("Refund provider access token is not configured.")
        await self.connect()
        if self._session is None:
            raise RuntimeError("Refund HTTP session is not initialized.")

        try:
            async with self._session.request(
                method,
                f"{self._base_url}{path}",
                json=payload,
                headers=self._headers(),
            ) as response:
                status = response.status
                body = await response.json(content_type=None)
        except aiohttp.ClientError as error:
            raise RefundProviderError(f"network error: {error}") from error

        if status >= 400:
            errors = body.get("errors") if isinstance(body, dict) else None
            detail = errors[0].get("detail") if isinstance(errors, list) and errors else body
            log_event(
                self._logger,
                level="warning",
                event="refund_provider_error",
                message="Refund provider rejected request",
                status=status,
                path=path,
                error=str(detail),
            )
            raise RefundProviderError(f"refund provider returned {status}: {detail}", status=status)
        if not isinstance(body, dict):
            raise RefundProviderError("Refund provider returned a non-object body.", status=status)
        return body

    async def refund_payment(self, *, payment_id: str, amount_cents: int, idempotency_key: str, reason: str) -> ProviderRefund:
        body = await self._request(
            "POST",
            "/v2/refunds",
            {
                "idempotency_key": idempotency_key,
                "payment_id": payment_id,
                "amount_money": {"amount": amount_cents, "currency": self._currency},
                "reason": reason[:192],
            },
        )
        return _refund_from_body(body)

    async def get_refund(self, refund_id: str) -> ProviderRefund:
        body = await self._request("GET", f"/v2/refunds/{refund_id}")
        return _refund_from_body(body)
