"""
ACP Checkout Client — drives a purchase across a merchant and a PSP.

`ACPCheckoutClient` keeps a local mirror of the buyer's checkout session
(the cart), talks to the merchant's checkout API to change it, and runs
the payment flow: delegate the card to the PSP for a single-use vault
token, then complete the session with that token.

Usage:
    client = ACPCheckoutClient(merchant_url="http://localhost:3000",
                               psp_url="http://localhost:4000")
    await client.add_items([Item(id="item_123", quantity=1)])
    await client.set_buyer(Buyer(...))
    await client.set_fulfillment_address(Address(...))
    completed = await client.checkout(card)
"""

from __future__ import annotations

import logging
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from acp_protocol.models import (
    ACPError,
    Address,
    Allowance,
    Buyer,
    CheckoutSession,
    CheckoutSessionCreateRequest,
    CheckoutSessionUpdateRequest,
    CheckoutSessionWithOrder,
    CheckoutStatus,
    DelegatePaymentRequest,
    DelegatePaymentResponse,
    Item,
    PaymentMethodCard,
    Product,
    ProductList,
    RiskSignal,
    TotalType,
)

logger = logging.getLogger(__name__)

MERCHANT_URL = os.getenv("ACP_MERCHANT_URL", "http://localhost:3000")
PSP_URL = os.getenv("ACP_PSP_URL", "http://localhost:4000")
MERCHANT_API_KEY = os.getenv("MERCHANT_API_KEY", "test_api_key_123")
PSP_CLIENT_API_KEY = os.getenv("PSP_CLIENT_API_KEY", "client_token_123")
API_VERSION = os.getenv("ACP_API_VERSION", "2025-09-29")
MERCHANT_ID = os.getenv("MERCHANT_ID", "merchant_123")
REQUEST_TIMEOUT_SECONDS = float(os.getenv("ACP_CLIENT_TIMEOUT_SECONDS", "30"))

USER_AGENT = "ACP-Checkout-Client/1.0"
# Base64 of "test_signature_123456"; signatures are format-checked only.
DEMO_SIGNATURE = "dGVzdF9zaWduYXR1cmVfMTIzNDU2"
ALLOWANCE_TTL = timedelta(hours=1)


class ACPClientError(Exception):
    """A merchant or PSP call failed; `error` holds the structured ACP error if any."""

    def __init__(self, message: str, status_code: Optional[int] = None, error: Optional[ACPError] = None):
        self.status_code = status_code
        self.error = error
        super().__init__(message)

    @property
    def code(self) -> Optional[str]:
        return self.error.code if self.error else None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_error(resp: httpx.Response) -> Optional[ACPError]:
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


class ACPCheckoutClient:
    def __init__(
        self,
        merchant_url: str = MERCHANT_URL,
        psp_url: str = PSP_URL,
        merchant_api_key: str = MERCHANT_API_KEY,
        psp_api_key: str = PSP_CLIENT_API_KEY,
        api_version: str = API_VERSION,
        merchant_id: str = MERCHANT_ID,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.merchant_url = merchant_url.rstrip("/")
        self.psp_url = psp_url.rstrip("/")
        self.merchant_api_key = merchant_api_key
        self.psp_api_key = psp_api_key
        self.api_version = api_version
        self.merchant_id = merchant_id
        self.timeout = timeout
        self.transport = transport
        self.session: Optional[CheckoutSession] = None

    # ── HTTP ─────────────────────────────────────────────────────────

    def _headers(self, api_key: str, with_body: bool) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {api_key}",
            "API-Version": self.api_version,
            "Accept-Language": "en-US",
            "User-Agent": USER_AGENT,
            "Request-Id": f"req_{uuid.uuid4().hex}",
            "Timestamp": _now(),
            "Signature": DEMO_SIGNATURE,
        }
        if with_body:
            headers["Content-Type"] = "application/json"
            headers["Idempotency-Key"] = f"idem_{uuid.uuid4().hex}"
        return headers

    async def _request(
        self,
        method: str,
        base_url: str,
        path: str,
        api_key: str,
        json: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
    ) -> Any:
        with_body = method in ("POST", "PUT")
        try:
            async with httpx.AsyncClient(
                base_url=base_url, timeout=self.timeout, transport=self.transport
            ) as client:
                resp = await client.request(
                    method,
                    path,
                    json=json if with_body else None,
                    params=params,
                    headers=self._headers(api_key, with_body),
                )
        except httpx.HTTPError as exc:
            raise ACPClientError(f"{method} {path} failed: {exc}") from exc

        if resp.is_error:
            error = _parse_error(resp)
            message = error.message if error else f"{method} {path} returned {resp.status_code}"
            logger.warning("%s %s -> %s %s", method, path, resp.status_code, error.code if error else "")
            raise ACPClientError(message, status_code=resp.status_code, error=error)
        return resp.json()

    async def _merchant(self, method: str, path: str, json: Optional[dict[str, Any]] = None, **params) -> Any:
        return await self._request(
            method, self.merchant_url, path, self.merchant_api_key, json=json, params=params or None
        )

    def _require_session(self) -> CheckoutSession:
        if self.session is None:
            raise ACPClientError("No active checkout session")
        return self.session

    # ── Catalog ──────────────────────────────────────────────────────

    async def search_products(self, query: Optional[str] = None, limit: Optional[int] = None) -> ProductList:
        params = {}
        if query:
            params["q"] = query
        if limit:
            params["limit"] = limit
        return ProductList.model_validate(await self._merchant("GET", "/products", **params))

    async def get_product(self, product_id: str) -> Product:
        return Product.model_validate(await self._merchant("GET", f"/products/{product_id}"))

    # ── Checkout session ─────────────────────────────────────────────

    async def create_session(
        self,
        items: list[Item],
        buyer: Optional[Buyer] = None,
        fulfillment_address: Optional[Address] = None,
    ) -> CheckoutSession:
        request = CheckoutSessionCreateRequest(
            items=items, buyer=buyer, fulfillment_address=fulfillment_address
        )
        data = await self._merchant(
            "POST", "/checkout_sessions", json=request.model_dump(mode="json", exclude_none=True)
        )
        self.session = CheckoutSession.model_validate(data)
        logger.info("Created checkout session %s", self.session.id)
        return self.session

    async def refresh_session(self) -> CheckoutSession:
        current = self._require_session()
        data = await self._merchant("GET", f"/checkout_sessions/{current.id}")
        self.session = CheckoutSession.model_validate(data)
        return self.session

    async def update_session(self, **changes: Any) -> CheckoutSession:
        """Send only the given fields (buyer, items, fulfillment_address, fulfillment_option_id)."""
        current = self._require_session()
        request = CheckoutSessionUpdateRequest(**changes)
        data = await self._merchant(
            "POST",
            f"/checkout_sessions/{current.id}",
            json=request.model_dump(mode="json", exclude_unset=True),
        )
        self.session = CheckoutSession.model_validate(data)
        return self.session

    async def add_items(self, items: list[Item]) -> CheckoutSession:
        """Add items to the cart, summing quantities of items already in it."""
        if self.session is None:
            return await self.create_session(items)

        quantities: dict[str, int] = {}
        for line_item in self.session.line_items:
            quantities[line_item.item.id] = line_item.item.quantity
        for item in items:
            quantities[item.id] = quantities.get(item.id, 0) + item.quantity

        merged = [Item(id=item_id, quantity=quantity) for item_id, quantity in quantities.items()]
        return await self.update_session(items=merged)

    async def remove_item(self, product_id: str) -> Optional[CheckoutSession]:
        """Remove a product from the cart; an emptied cart cancels the session."""
        if self.session is None:
            return None
        remaining = [
            line_item.item for line_item in self.session.line_items if line_item.item.id != product_id
        ]
        if remaining:
            return await self.update_session(items=remaining)
        logger.info("Cart emptied, canceling checkout session %s", self.session.id)
        return await self.cancel_session()

    async def set_buyer(self, buyer: Buyer) -> CheckoutSession:
        return await self.update_session(buyer=buyer)

    async def set_fulfillment_address(self, address: Address) -> CheckoutSession:
        return await self.update_session(fulfillment_address=address)

    async def select_fulfillment_option(self, option_id: str) -> CheckoutSession:
        return await self.update_session(fulfillment_option_id=option_id)

    async def cancel_session(self) -> CheckoutSession:
        current = self._require_session()
        data = await self._merchant("POST", f"/checkout_sessions/{current.id}/cancel", json={})
        self.clear_session()
        return CheckoutSession.model_validate(data)

    def clear_session(self) -> None:
        """Forget the local session without calling the merchant."""
        self.session = None

    def has_complete_contact_info(self) -> bool:
        buyer = self.session.buyer if self.session else None
        return bool(buyer and buyer.first_name and buyer.last_name and buyer.email)

    def has_shipping_address(self) -> bool:
        address = self.session.fulfillment_address if self.session else None
        if address is None:
            return False
        return all(
            [address.name, address.line_one, address.city, address.state, address.country, address.postal_code]
        )

    def is_ready_for_payment(self) -> bool:
        return self.session is not None and self.session.status == CheckoutStatus.READY_FOR_PAYMENT

    # ── Payment ──────────────────────────────────────────────────────

    async def delegate_payment(
        self,
        card: PaymentMethodCard,
        billing_address: Optional[Address] = None,
    ) -> DelegatePaymentResponse:
        """Exchange card credentials for a vault token capped at the session total."""
        current = self._require_session()
        total = next((t.amount for t in current.totals if t.type == TotalType.TOTAL), 0)
        request = DelegatePaymentRequest(
            payment_method=card,
            allowance=Allowance(
                reason="one_time",
                max_amount=total,
                currency=current.currency,
                checkout_session_id=current.id,
                merchant_id=self.merchant_id,
                expires_at=(datetime.now(timezone.utc) + ALLOWANCE_TTL).isoformat().replace("+00:00", "Z"),
            ),
            billing_address=billing_address or current.fulfillment_address,
            risk_signals=[RiskSignal(type="card_testing", score=5, action="authorized")],
            metadata={"source": "mcp_checkout"},
        )
        data = await self._request(
            "POST",
            self.psp_url,
            "/agentic_commerce/delegate_payment",
            self.psp_api_key,
            json=request.model_dump(mode="json", exclude_none=True),
        )
        token = DelegatePaymentResponse.model_validate(data)
        logger.info("Delegated payment for session %s: vault token %s", current.id, token.id)
        return token

    async def complete(
        self,
        token: str,
        buyer: Optional[Buyer] = None,
        billing_address: Optional[Address] = None,
    ) -> CheckoutSessionWithOrder:
        current = self._require_session()
        payload: dict[str, Any] = {"payment_data": {"token": token, "provider": "stripe"}}
        if billing_address:
            payload["payment_data"]["billing_address"] = billing_address.model_dump(mode="json", exclude_none=True)
        if buyer:
            payload["buyer"] = buyer.model_dump(mode="json", exclude_none=True)

        data = await self._merchant("POST", f"/checkout_sessions/{current.id}/complete", json=payload)
        completed = CheckoutSessionWithOrder.model_validate(data)
        self.session = completed
        logger.info("Checkout session %s completed with order %s", completed.id, completed.order.id)
        return completed

    async def checkout(
        self,
        card: PaymentMethodCard,
        billing_address: Optional[Address] = None,
    ) -> CheckoutSessionWithOrder:
        """Delegate payment, complete the session, then clear the local cart."""
        token = await self.delegate_payment(card, billing_address)
        completed = await self.complete(token.id, billing_address=billing_address)
        self.clear_session()
        return completed
