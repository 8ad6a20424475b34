"""Paystack HTTP client.

Two calls are used by the ledger:
    - GET  /transaction/verify/{reference}  (operator-triggered re-verification)
    - POST /transfer                        (payout of a released escrow)

Every call is bounded by PAYSTACK_TIMEOUT_SECONDS. A timeout, a connection
dropped after the request was written, or a 5xx answer raises
GatewayOutcomeUnknownError (GatewayTimeoutError for timeouts): Paystack may
have acted on the call, so callers must neither assume success nor treat it
as a rejection. Plain PaymentGatewayError is reserved for calls Paystack
never received or explicitly refused (4xx or "status": false).

In simulate mode transfers are answered locally with a fake transfer code,
so the payout flow can run end to end without gateway credentials.
Verification always goes to the gateway.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any

import httpx

from escrow_ledger.domain.exceptions import (
    GatewayOutcomeUnknownError,
    GatewayTimeoutError,
    PaymentGatewayError,
)
from escrow_ledger.domain.money import to_minor_units
from escrow_ledger.logging_config import get_logger

if TYPE_CHECKING:
    from decimal import Decimal

    from escrow_ledger.config import Settings

logger = get_logger(__name__)


class PaystackClient:
    """Thin async wrapper over the Paystack REST API."""

    def __init__(
        self,
        secret_key: str,
        base_url: str = "https://api.paystack.co",
        timeout: float = 10.0,
        simulate: bool = False,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            secret_key: Paystack secret key, sent as a Bearer token.
            base_url: API root.
            timeout: Per-request timeout in seconds.
            simulate: If True, transfers are answered locally.
            transport: Optional httpx transport (tests pass httpx.MockTransport).
        """
        self._secret_key = secret_key
        self._timeout = timeout
        self._simulate = simulate
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> PaystackClient:
        return cls(
            secret_key=settings.paystack_secret_key,
            base_url=settings.paystack_base_url,
            timeout=settings.paystack_timeout_seconds,
            simulate=settings.paystack_simulate,
        )

    @property
    def simulate(self) -> bool:
        return self._simulate

    async def aclose(self) -> None:
        await self._client.aclose()

    async def verify_transaction(self, reference: str) -> dict[str, Any]:
        """Fetch the gateway's view of a charge.

        Returns the `data` object of the response (reference, amount in minor
        units, currency, status, id, ...).
        """
        body = await self._request("GET", f"/transaction/verify/{reference}", operation="verify")
        data = body.get("data")
        if not isinstance(data, dict):
            raise PaymentGatewayError(f"Malformed verification response for {reference}")
        logger.info(
            "paystack.transaction_verified",
            reference=reference,
            gateway_status=data.get("status"),
        )
        return data

    async def initiate_transfer(
        self,
        amount: Decimal,
        recipient_code: str,
        reference: str,
        reason: str | None = None,
    ) -> dict[str, Any]:
        """Start a balance transfer to a recipient.

        `reference` is the ledger's TRANSFER_OUT reference; Paystack echoes
        it back in transfer.* webhooks, which is how the transfer is later
        reconciled. Reusing a reference on retry is safe: Paystack rejects a
        second transfer with the same reference.
        """
        if self._simulate:
            data = {
                "reference": reference,
                "transfer_code": f"TRF_sim_{uuid.uuid4().hex[:12]}",
                "status": "pending",
                "amount": to_minor_units(amount),
                "recipient": recipient_code,
            }
            logger.info(
                "paystack.transfer_simulated",
                reference=reference,
                amount=str(amount),
                recipient=recipient_code,
            )
            return data

        payload = {
            "source": "balance",
            "amount": to_minor_units(amount),
            "recipient": recipient_code,
            "reference": reference,
            "reason": reason or "Escrow payout",
        }
        body = await self._request("POST", "/transfer", json=payload, operation="transfer")
        data = body.get("data") or {}
        logger.info(
            "paystack.transfer_initiated",
            reference=reference,
            transfer_code=data.get("transfer_code"),
            gateway_status=data.get("status"),
        )
        return data

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        if not self._secret_key:
            raise PaymentGatewayError("Paystack secret key not configured")

        try:
            response = await self._client.request(
                method,
                path,
                json=json,
                headers={"Authorization": f"Bearer {self._secret_key}"},
            )
        except httpx.TimeoutException as exc:
            logger.warning("paystack.timeout", operation=operation, timeout=self._timeout)
            raise GatewayTimeoutError(operation, self._timeout) from exc
        except httpx.ConnectError as exc:
            # Nothing reached Paystack.
            logger.error("paystack.connect_error", operation=operation, error=str(exc))
            raise PaymentGatewayError(f"Paystack request failed: {exc}") from exc
        except httpx.HTTPError as exc:
            logger.warning("paystack.outcome_unknown", operation=operation, error=str(exc))
            raise GatewayOutcomeUnknownError(
                operation, f"Paystack connection lost during {operation}: {exc}"
            ) from exc

        if response.is_server_error:
            logger.warning(
                "paystack.server_error", operation=operation, status_code=response.status_code
            )
            raise GatewayOutcomeUnknownError(
                operation,
                f"Paystack {operation} answered HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise GatewayOutcomeUnknownError(
                operation,
                "Paystack returned a non-JSON response",
                status_code=response.status_code,
            ) from exc

        if response.is_error or not body.get("status"):
            message = body.get("message") or f"HTTP {response.status_code}"
            logger.error(
                "paystack.request_rejected",
                operation=operation,
                status_code=response.status_code,
                message=message,
            )
            raise PaymentGatewayError(
                f"Paystack {operation} failed: {message}", status_code=response.status_code
            )
        return body
