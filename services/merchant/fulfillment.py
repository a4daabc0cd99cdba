"""
Fulfillment options for checkout sessions.

Options are regenerated from the cart's shipping requirement and the
fulfillment address on every read and write; they are never persisted.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from acp_protocol.models import (
    Address,
    FulfillmentOption,
    FulfillmentOptionDigital,
    FulfillmentOptionShipping,
)
from services.merchant.pricing import calculate_tax


STANDARD_SHIPPING_COST = 500
EXPRESS_SHIPPING_COST = 1500


def _iso(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")


def _shipping_option(
    option_id: str,
    title: str,
    subtitle: str,
    carrier: str,
    cost: int,
    earliest_days: int,
    latest_days: int,
    address: Address,
    now: datetime,
) -> FulfillmentOptionShipping:
    tax = calculate_tax(cost, address)
    return FulfillmentOptionShipping(
        id=option_id,
        title=title,
        subtitle=subtitle,
        carrier=carrier,
        earliest_delivery_time=_iso(now + timedelta(days=earliest_days)),
        latest_delivery_time=_iso(now + timedelta(days=latest_days)),
        subtotal=cost,
        tax=tax,
        total=cost + tax,
    )


def generate_options(
    requires_shipping: bool,
    address: Optional[Address],
    now: Optional[datetime] = None,
) -> list[FulfillmentOption]:
    """
    Shipping carts get standard and express options once an address is
    known (none before). Digital-only carts get a single free option.
    """
    if not requires_shipping:
        return [
            FulfillmentOptionDigital(
                id="digital_delivery",
                title="Digital Delivery",
                subtitle="Instant access",
                subtotal=0,
                tax=0,
                total=0,
            )
        ]
    if address is None:
        return []

    now = now or datetime.now(timezone.utc)
    return [
        _shipping_option(
            "standard_shipping", "Standard Shipping", "4-5 business days", "USPS",
            STANDARD_SHIPPING_COST, 4, 5, address, now,
        ),
        _shipping_option(
            "express_shipping", "Express Shipping", "1-2 business days", "FedEx",
            EXPRESS_SHIPPING_COST, 1, 2, address, now,
        ),
    ]


def default_option(options: list[FulfillmentOption]) -> Optional[str]:
    """The first (cheapest) option."""
    return options[0].id if options else None


def is_valid_option(option_id: Optional[str], options: list[FulfillmentOption]) -> bool:
    return option_id is not None and any(opt.id == option_id for opt in options)


def option_cost(option_id: Optional[str], options: list[FulfillmentOption]) -> int:
    """Fulfillment cost charged at order level: the option's pre-tax subtotal."""
    for opt in options:
        if opt.id == option_id:
            return opt.subtotal
    return 0


def resolve_option(
    requested_id: Optional[str],
    current_id: Optional[str],
    options: list[FulfillmentOption],
) -> Optional[str]:
    """Pick the requested option, else keep the current one, else the default."""
    candidate = requested_id or current_id
    if is_valid_option(candidate, options):
        return candidate
    return default_option(options)
