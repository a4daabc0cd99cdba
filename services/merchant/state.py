"""
Checkout session status rules.

Pre-payment status is derived from the cart, never asserted by callers:
a session is ready for payment iff it has at least one line item and,
when any item ships, both an address and a selected fulfillment option.
"""

from __future__ import annotations

from typing import Optional

from acp_protocol.models import Address, CheckoutStatus, LineItem


VALID_TRANSITIONS: dict[CheckoutStatus, frozenset[CheckoutStatus]] = {
    CheckoutStatus.NOT_READY_FOR_PAYMENT: frozenset(
        {CheckoutStatus.READY_FOR_PAYMENT, CheckoutStatus.CANCELED}
    ),
    CheckoutStatus.READY_FOR_PAYMENT: frozenset(
        {CheckoutStatus.IN_PROGRESS, CheckoutStatus.CANCELED}
    ),
    CheckoutStatus.IN_PROGRESS: frozenset(
        {CheckoutStatus.COMPLETED, CheckoutStatus.CANCELED}
    ),
    CheckoutStatus.COMPLETED: frozenset(),
    CheckoutStatus.CANCELED: frozenset(),
}

DERIVED_STATUSES = frozenset(
    {CheckoutStatus.NOT_READY_FOR_PAYMENT, CheckoutStatus.READY_FOR_PAYMENT}
)


def is_terminal(status: CheckoutStatus) -> bool:
    return not VALID_TRANSITIONS[status]


def can_transition(from_status: CheckoutStatus, to_status: CheckoutStatus) -> bool:
    return to_status in VALID_TRANSITIONS[from_status]


def can_complete(status: CheckoutStatus) -> bool:
    return status == CheckoutStatus.READY_FOR_PAYMENT


def can_cancel(status: CheckoutStatus) -> bool:
    return can_transition(status, CheckoutStatus.CANCELED)


def derive_status(
    line_items: list[LineItem],
    requires_shipping: bool,
    address: Optional[Address],
    fulfillment_option_id: Optional[str],
) -> CheckoutStatus:
    if not line_items:
        return CheckoutStatus.NOT_READY_FOR_PAYMENT
    if requires_shipping and (address is None or fulfillment_option_id is None):
        return CheckoutStatus.NOT_READY_FOR_PAYMENT
    return CheckoutStatus.READY_FOR_PAYMENT


def current_status(
    stored: CheckoutStatus,
    line_items: list[LineItem],
    requires_shipping: bool,
    address: Optional[Address],
    fulfillment_option_id: Optional[str],
) -> CheckoutStatus:
    """Stored status for in-flight and terminal sessions, derived otherwise."""
    if stored not in DERIVED_STATUSES:
        return stored
    return derive_status(line_items, requires_shipping, address, fulfillment_option_id)
