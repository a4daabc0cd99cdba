"""
Checkout session state machine for the Merchant Service.

`SessionManager` is the merchant's `ACPSellerAdapter`. Line items are
rebuilt wholesale from the catalog whenever items change; fulfillment
options, totals and pre-payment status are recomputed on every read and
write, so they cannot drift from the cart.
"""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
import weakref
from dataclasses import dataclass, field
from typing import Any, Optional

from pydantic import BaseModel
from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from acp_protocol.errors import ACPServiceError
from acp_protocol.models import (
    Address,
    Buyer,
    CheckoutSession,
    CheckoutSessionCompleteRequest,
    CheckoutSessionCreateRequest,
    CheckoutSessionUpdateRequest,
    CheckoutSessionWithOrder,
    CheckoutStatus,
    Item,
    LineItem,
    Link,
    LinkType,
    Message,
    MessageLevel,
    Order,
    PaymentIntentStatus,
    PaymentProvider,
    TotalType,
)
from acp_protocol.seller import ACPSellerAdapter
from services.merchant import catalog
from services.merchant.database import (
    CheckoutSessionRow,
    LineItemRow,
    OrderRow,
    async_session,
)
from services.merchant.fulfillment import generate_options, option_cost, resolve_option
from services.merchant.payment_gateway import PaymentGatewayClient, PaymentGatewayError
from services.merchant.pricing import build_line_item, calculate_totals, find_total
from services.merchant.state import current_status, is_terminal
from services.merchant.validation import validate_address, validate_buyer


MERCHANT_BASE_URL = os.getenv("MERCHANT_BASE_URL", "https://merchant.example.com").rstrip("/")
MERCHANT_ID = os.getenv("MERCHANT_ID", "merchant_123")
CURRENCY = "usd"

logger = logging.getLogger(__name__)


@dataclass
class Cart:
    line_items: list[LineItem] = field(default_factory=list)
    requires_shipping: bool = False
    errors: list[Message] = field(default_factory=list)


class SessionLocks:
    """One asyncio.Lock per session id, released once nobody holds it."""

    def __init__(self):
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def get(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock


def _dump(model: Optional[BaseModel]) -> Optional[dict]:
    return model.model_dump(mode="json", exclude_none=True) if model is not None else None


def _merge(request: BaseModel, name: str, current: Any) -> Any:
    """Fields sent by the caller win (an explicit null clears); absent fields keep `current`."""
    if name in request.model_fields_set:
        return getattr(request, name)
    return current


def _session_not_found(session_id: str) -> ACPServiceError:
    return ACPServiceError(
        404, "invalid_request", "session_not_found", f"Checkout session {session_id} not found"
    )


def _not_completable(message: str) -> ACPServiceError:
    return ACPServiceError(405, "invalid_request", "session_not_completable", message)


class SessionManager(ACPSellerAdapter):
    """ACP seller adapter backed by the merchant database."""

    def __init__(self, payment_gateway: Optional[PaymentGatewayClient] = None):
        self.payment_gateway = payment_gateway or PaymentGatewayClient()
        self._locks = SessionLocks()

    # ── Building blocks ──────────────────────────────────────────────

    def _links(self) -> list[Link]:
        return [
            Link(type=LinkType.TERMS_OF_USE, url=f"{MERCHANT_BASE_URL}/terms"),
            Link(type=LinkType.PRIVACY_POLICY, url=f"{MERCHANT_BASE_URL}/privacy"),
        ]

    async def _build_cart(self, db: AsyncSession, items: list[Item]) -> Cart:
        cart = Cart()
        products = await catalog.get_products(db, [item.id for item in items])
        for item in items:
            product = products.get(item.id)
            if product is None:
                cart.errors.append(
                    Message(
                        type=MessageLevel.ERROR,
                        code="invalid",
                        param=f"$.items[?(@.id=='{item.id}')]",
                        content=f"Product {item.id} not found",
                    )
                )
            elif not catalog.check_availability(product, item.quantity):
                cart.errors.append(
                    Message(
                        type=MessageLevel.ERROR,
                        code="out_of_stock",
                        param=f"$.items[?(@.id=='{item.id}')]",
                        content=(
                            f"Product {item.id} is out of stock or insufficient quantity available"
                        ),
                    )
                )
            else:
                cart.line_items.append(build_line_item(product, item))
                cart.requires_shipping = cart.requires_shipping or product.requires_shipping
        return cart

    async def _requires_shipping(self, db: AsyncSession, line_items: list[LineItem]) -> bool:
        products = await catalog.get_products(db, [li.item.id for li in line_items])
        # Items that left the catalog are treated as physical.
        return any(
            products[li.item.id].requires_shipping if li.item.id in products else True
            for li in line_items
        )

    def _compose(
        self,
        *,
        session_id: str,
        stored_status: CheckoutStatus,
        buyer: Optional[Buyer],
        address: Optional[Address],
        line_items: list[LineItem],
        requires_shipping: bool,
        fulfillment_option_id: Optional[str],
        order: Optional[Order] = None,
    ) -> CheckoutSession:
        options = generate_options(requires_shipping, address)
        option_id = resolve_option(fulfillment_option_id, None, options)
        totals = calculate_totals(line_items, option_cost(option_id, options), address)
        status = current_status(stored_status, line_items, requires_shipping, address, option_id)

        messages = []
        if status == CheckoutStatus.NOT_READY_FOR_PAYMENT and requires_shipping and address is None:
            messages.append(
                Message(
                    type=MessageLevel.INFO,
                    param="$.fulfillment_address",
                    content="Please provide a shipping address to continue",
                )
            )

        return CheckoutSession(
            id=session_id,
            buyer=buyer,
            payment_provider=PaymentProvider(provider="stripe", supported_payment_methods=["card"]),
            status=status,
            currency=CURRENCY,
            line_items=line_items,
            fulfillment_address=address,
            fulfillment_options=options,
            fulfillment_option_id=option_id,
            totals=totals,
            messages=messages,
            links=self._links(),
            order=order,
        )

    def _error_session(
        self,
        session_id: str,
        buyer: Optional[Buyer],
        address: Optional[Address],
        errors: list[Message],
    ) -> CheckoutSession:
        """A session carrying only item errors; it is returned but never stored."""
        return CheckoutSession(
            id=session_id,
            buyer=buyer,
            payment_provider=PaymentProvider(provider="stripe", supported_payment_methods=["card"]),
            status=CheckoutStatus.NOT_READY_FOR_PAYMENT,
            currency=CURRENCY,
            line_items=[],
            fulfillment_address=address,
            fulfillment_options=[],
            totals=[],
            messages=errors,
            links=self._links(),
        )

    # ── Persistence ──────────────────────────────────────────────────

    async def _load(
        self, db: AsyncSession, session_id: str, for_update: bool = False
    ) -> CheckoutSessionRow:
        stmt = select(CheckoutSessionRow).where(CheckoutSessionRow.id == session_id)
        if for_update:
            stmt = stmt.with_for_update()
        row = (await db.execute(stmt)).scalar_one_or_none()
        if row is None:
            raise _session_not_found(session_id)
        return row

    async def _load_line_items(self, db: AsyncSession, session_id: str) -> list[LineItem]:
        result = await db.execute(
            select(LineItemRow)
            .where(LineItemRow.session_id == session_id)
            .order_by(LineItemRow.position)
        )
        return [
            LineItem(
                id=row.id,
                item=Item(id=row.item_id, quantity=row.quantity),
                base_amount=row.base_amount,
                discount=row.discount,
                subtotal=row.subtotal,
                tax=row.tax,
                total=row.total,
            )
            for row in result.scalars()
        ]

    async def _replace_line_items(
        self, db: AsyncSession, session_id: str, line_items: list[LineItem]
    ) -> None:
        await db.execute(delete(LineItemRow).where(LineItemRow.session_id == session_id))
        db.add_all(
            LineItemRow(
                id=li.id,
                session_id=session_id,
                position=position,
                item_id=li.item.id,
                quantity=li.item.quantity,
                base_amount=li.base_amount,
                discount=li.discount,
                subtotal=li.subtotal,
                tax=li.tax,
                total=li.total,
            )
            for position, li in enumerate(line_items)
        )

    @staticmethod
    def _buyer(row: CheckoutSessionRow) -> Optional[Buyer]:
        return Buyer.model_validate(row.buyer) if row.buyer else None

    @staticmethod
    def _address(row: CheckoutSessionRow) -> Optional[Address]:
        return Address.model_validate(row.fulfillment_address) if row.fulfillment_address else None

    async def _set_status(
        self, session_id: str, expected: CheckoutStatus, new: CheckoutStatus
    ) -> bool:
        """Single conditional update; False when the session was not in `expected`."""
        async with async_session() as db:
            result = await db.execute(
                update(CheckoutSessionRow)
                .where(
                    CheckoutSessionRow.id == session_id,
                    CheckoutSessionRow.status == expected.value,
                )
                .values(status=new.value)
            )
            await db.commit()
        return result.rowcount == 1

    async def _record_order(
        self,
        session_id: str,
        order_id: str,
        payment_intent_id: str,
        amount: int,
        currency: str,
        buyer: Optional[Buyer],
        request: CheckoutSessionCompleteRequest,
    ) -> bool:
        """Insert the order and move the session in_progress -> completed in one
        transaction. False (nothing written) when the session left in_progress."""
        async with async_session() as db:
            db.add(
                OrderRow(
                    id=order_id,
                    checkout_session_id=session_id,
                    permalink_url=f"{MERCHANT_BASE_URL}/orders/{order_id}",
                    payment_token=request.payment_data.token,
                    payment_provider=request.payment_data.provider,
                    payment_intent_id=payment_intent_id,
                    billing_address=_dump(request.payment_data.billing_address),
                    total=amount,
                    currency=currency,
                )
            )
            result = await db.execute(
                update(CheckoutSessionRow)
                .where(
                    CheckoutSessionRow.id == session_id,
                    CheckoutSessionRow.status == CheckoutStatus.IN_PROGRESS.value,
                )
                .values(
                    status=CheckoutStatus.COMPLETED.value,
                    order_id=order_id,
                    buyer=_dump(buyer),
                )
            )
            if result.rowcount != 1:
                await db.rollback()
                return False
            await db.commit()
        return True

    # ── Adapter hooks ────────────────────────────────────────────────

    async def on_create_session(self, request: CheckoutSessionCreateRequest) -> CheckoutSession:
        validate_buyer(request.buyer)
        validate_address(request.fulfillment_address, "$.fulfillment_address")
        session_id = f"cs_{uuid.uuid4().hex}"

        async with async_session() as db:
            cart = await self._build_cart(db, request.items)
            if cart.errors:
                logger.warning(
                    "Checkout session %s rejected with %d item error(s)", session_id, len(cart.errors)
                )
                return self._error_session(
                    session_id, request.buyer, request.fulfillment_address, cart.errors
                )

            session = self._compose(
                session_id=session_id,
                stored_status=CheckoutStatus.NOT_READY_FOR_PAYMENT,
                buyer=request.buyer,
                address=request.fulfillment_address,
                line_items=cart.line_items,
                requires_shipping=cart.requires_shipping,
                fulfillment_option_id=None,
            )
            db.add(
                CheckoutSessionRow(
                    id=session_id,
                    status=session.status.value,
                    currency=CURRENCY,
                    buyer=_dump(session.buyer),
                    fulfillment_address=_dump(session.fulfillment_address),
                    fulfillment_option_id=session.fulfillment_option_id,
                )
            )
            await db.flush()
            await self._replace_line_items(db, session_id, cart.line_items)
            await db.commit()

        logger.info("Checkout session %s created with status %s", session_id, session.status.value)
        return session

    async def on_get_session(self, session_id: str) -> CheckoutSession:
        async with async_session() as db:
            row = await self._load(db, session_id)
            line_items = await self._load_line_items(db, session_id)
            requires_shipping = await self._requires_shipping(db, line_items)
            order_row = await db.get(OrderRow, row.order_id) if row.order_id else None

        order = None
        if order_row is not None:
            order = Order(
                id=order_row.id,
                checkout_session_id=order_row.checkout_session_id,
                permalink_url=order_row.permalink_url,
            )
        return self._compose(
            session_id=session_id,
            stored_status=CheckoutStatus(row.status),
            buyer=self._buyer(row),
            address=self._address(row),
            line_items=line_items,
            requires_shipping=requires_shipping,
            fulfillment_option_id=row.fulfillment_option_id,
            order=order,
        )

    async def on_update_session(
        self, session_id: str, request: CheckoutSessionUpdateRequest
    ) -> CheckoutSession:
        validate_buyer(request.buyer)
        validate_address(request.fulfillment_address, "$.fulfillment_address")

        async with self._locks.get(session_id):
            async with async_session() as db:
                row = await self._load(db, session_id, for_update=True)
                stored_status = CheckoutStatus(row.status)
                if is_terminal(stored_status):
                    raise ACPServiceError(
                        405, "invalid_request", "session_not_modifiable",
                        f"Checkout session is {stored_status.value} and cannot be modified",
                    )
                if stored_status == CheckoutStatus.IN_PROGRESS:
                    raise ACPServiceError(
                        405, "invalid_request", "session_not_modifiable",
                        "Checkout session payment is in progress",
                    )

                buyer = _merge(request, "buyer", self._buyer(row))
                address = _merge(request, "fulfillment_address", self._address(row))

                if request.items is not None:
                    cart = await self._build_cart(db, request.items)
                    if cart.errors:
                        logger.warning(
                            "Update of checkout session %s rejected with %d item error(s)",
                            session_id, len(cart.errors),
                        )
                        return self._error_session(session_id, buyer, address, cart.errors)
                    line_items, requires_shipping = cart.line_items, cart.requires_shipping
                else:
                    line_items = await self._load_line_items(db, session_id)
                    requires_shipping = await self._requires_shipping(db, line_items)

                session = self._compose(
                    session_id=session_id,
                    stored_status=stored_status,
                    buyer=buyer,
                    address=address,
                    line_items=line_items,
                    requires_shipping=requires_shipping,
                    fulfillment_option_id=_merge(
                        request, "fulfillment_option_id", row.fulfillment_option_id
                    ),
                )

                row.status = session.status.value
                row.buyer = _dump(session.buyer)
                row.fulfillment_address = _dump(session.fulfillment_address)
                row.fulfillment_option_id = session.fulfillment_option_id
                if request.items is not None:
                    await self._replace_line_items(db, session_id, line_items)
                await db.commit()

        logger.info("Checkout session %s updated, status %s", session_id, session.status.value)
        return session

    async def on_complete_session(
        self, session_id: str, request: CheckoutSessionCompleteRequest
    ) -> CheckoutSessionWithOrder:
        validate_buyer(request.buyer)
        validate_address(request.payment_data.billing_address, "$.payment_data.billing_address")

        async with self._locks.get(session_id):
            session = await self.on_get_session(session_id)
            if session.status == CheckoutStatus.COMPLETED:
                raise _not_completable("Checkout session is already completed")
            if session.status == CheckoutStatus.CANCELED:
                raise _not_completable("Cannot complete a canceled checkout session")
            if session.status != CheckoutStatus.READY_FOR_PAYMENT:
                raise _not_completable("Checkout session is not ready for payment")

            if not await self._set_status(
                session_id, CheckoutStatus.READY_FOR_PAYMENT, CheckoutStatus.IN_PROGRESS
            ):
                raise _not_completable("Checkout session is not ready for payment")

            amount = find_total(session.totals, TotalType.TOTAL)
            try:
                intent = await self.payment_gateway.create_and_process_payment_intent(
                    shared_payment_token=request.payment_data.token,
                    amount=amount,
                    currency=session.currency,
                    merchant_id=MERCHANT_ID,
                    metadata={"checkout_session_id": session_id},
                )
            except PaymentGatewayError as exc:
                await self._set_status(
                    session_id, CheckoutStatus.IN_PROGRESS, CheckoutStatus.READY_FOR_PAYMENT
                )
                if exc.declined:
                    raise ACPServiceError(
                        400, "invalid_request", "payment_declined",
                        str(exc), "$.payment_data.token",
                    ) from exc
                raise ACPServiceError(
                    500, "processing_error", "payment_processing_failed", str(exc)
                ) from exc
            except Exception:
                await self._set_status(
                    session_id, CheckoutStatus.IN_PROGRESS, CheckoutStatus.READY_FOR_PAYMENT
                )
                raise

            if intent.status != PaymentIntentStatus.COMPLETED:
                await self._set_status(
                    session_id, CheckoutStatus.IN_PROGRESS, CheckoutStatus.READY_FOR_PAYMENT
                )
                raise ACPServiceError(
                    400, "invalid_request", "payment_declined",
                    f"Payment intent {intent.id} is {intent.status.value}", "$.payment_data.token",
                )

            order_id = f"order_{uuid.uuid4().hex}"
            buyer = request.buyer or session.buyer
            try:
                recorded = await self._record_order(
                    session_id, order_id, intent.id, amount, session.currency, buyer, request
                )
            except SQLAlchemyError as exc:
                logger.exception(
                    "Order for checkout session %s not recorded; payment intent %s was charged",
                    session_id, intent.id,
                )
                await self._set_status(
                    session_id, CheckoutStatus.IN_PROGRESS, CheckoutStatus.READY_FOR_PAYMENT
                )
                raise ACPServiceError(
                    500, "processing_error", "order_creation_failed",
                    f"Payment {intent.id} succeeded but the order could not be recorded",
                ) from exc
            if not recorded:
                logger.error(
                    "Checkout session %s left in_progress while payment intent %s was charged; "
                    "no order recorded", session_id, intent.id,
                )
                raise _not_completable("Checkout session changed while payment was processing")

        logger.info(
            "Checkout session %s completed: order %s, payment intent %s, amount %d",
            session_id, order_id, intent.id, amount,
        )
        completed = await self.on_get_session(session_id)
        return CheckoutSessionWithOrder.model_validate(completed.model_dump())

    async def on_cancel_session(self, session_id: str) -> CheckoutSession:
        async with self._locks.get(session_id):
            async with async_session() as db:
                row = await self._load(db, session_id, for_update=True)
                status = CheckoutStatus(row.status)
                if status == CheckoutStatus.COMPLETED:
                    raise ACPServiceError(
                        405, "invalid_request", "session_not_cancelable",
                        "Cannot cancel a completed checkout session",
                    )
                if status != CheckoutStatus.CANCELED:
                    row.status = CheckoutStatus.CANCELED.value
                    await db.commit()
                    logger.info("Checkout session %s canceled from %s", session_id, status.value)

        return await self.on_get_session(session_id)
