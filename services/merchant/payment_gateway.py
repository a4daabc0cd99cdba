"""
Payment gateway client: the merchant's only call into the PSP.

The vault token is treated as an opaque capability; the PSP alone decides
whether it can fund the amount. The call is made once, with a timeout,
and never retried.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from acp_protocol.models import ACPError, PaymentIntent

logger = logging.getLogger(__name__)

PSP_URL = os.getenv("PSP_URL", "http://localhost:4000")
PSP_MERCHANT_SECRET_KEY = os.getenv("PSP_MERCHANT_SECRET_KEY", "merchant_secret_key_123")
PSP_TIMEOUT_SECONDS = float(os.getenv("PSP_TIMEOUT_SECONDS", "30"))


class PaymentGatewayError(Exception):
    """The PSP rejected the payment or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None, error: Optional[ACPError] = None):
        self.status_code = status_code
        self.error = error
        super().__init__(message)

    @property
    def declined(self) -> bool:
        return self.status_code is not None and 400 <= self.status_code < 500


class PaymentGatewayClient:
    def __init__(
        self,
        base_url: str = PSP_URL,
        secret_key: str = PSP_MERCHANT_SECRET_KEY,
        timeout: float = PSP_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.secret_key = secret_key
        self.timeout = timeout
        self.transport = transport

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    async def create_and_process_payment_intent(
        self,
        shared_payment_token: str,
        amount: int,
        currency: str,
        merchant_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> PaymentIntent:
        payload: dict[str, Any] = {
            "shared_payment_token": shared_payment_token,
            "amount": amount,
            "currency": currency,
        }
        if merchant_id:
            payload["merchant_id"] = merchant_id
        if metadata:
            payload["metadata"] = metadata

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self.transport
            ) as client:
                resp = await client.post(
                    "/agentic_commerce/create_and_process_payment_intent",
                    json=payload,
                    headers=self._headers(),
                )
        except httpx.HTTPError as exc:
            logger.warning("PSP request failed: %s", exc)
            raise PaymentGatewayError(f"Payment service unavailable: {exc}") from exc

        if resp.is_error:
            error = _error_from_response(resp)
            message = error.message if error else f"PSP returned status {resp.status_code}"
            logger.warning("PSP rejected payment (%s): %s", resp.status_code, message)
            raise PaymentGatewayError(message, status_code=resp.status_code, error=error)

        try:
            return PaymentIntent.model_validate(resp.json())
        except (ValueError, ValidationError) as exc:
            raise PaymentGatewayError(f"Invalid response from payment service: {exc}") from exc


def _error_from_response(resp: httpx.Response) -> Optional[ACPError]:
    try:
        data = resp.json()
    except ValueError:
        return None
    if isinstance(data, dict) and isinstance(data.get("error"), dict):
        data = data["error"]
    try:
        return ACPError.model_validate(data)
    except ValidationError:
        return None
