"""
Pricing for checkout sessions.

Pure functions: line item amounts, the demo tax rule and the sparse
order-level totals list. All amounts are integer cents.
"""

from __future__ import annotations

import uuid
from typing import Optional

from acp_protocol.models import Address, Item, LineItem, Product, Total, TotalType


# ── Tax rule (flat 10% in California only) ──────────────────────────────
TAX_RATE_PERCENT = 10
TAXABLE_STATE = "CA"


def calculate_tax(amount: int, address: Optional[Address]) -> int:
    """10% of `amount` rounded half up when shipping to CA, otherwise 0."""
    if address is None or address.state != TAXABLE_STATE:
        return 0
    return (amount * TAX_RATE_PERCENT + 50) // 100


def build_line_item(product: Product, item: Item, line_id: Optional[str] = None) -> LineItem:
    base_amount = product.base_price * item.quantity
    discount = 0
    subtotal = base_amount - discount
    # Tax is only charged at the order level.
    tax = 0
    return LineItem(
        id=line_id or f"li_{uuid.uuid4().hex}",
        item=Item(id=item.id, quantity=item.quantity),
        base_amount=base_amount,
        discount=discount,
        subtotal=subtotal,
        tax=tax,
        total=subtotal + tax,
    )


def calculate_totals(
    line_items: list[LineItem],
    fulfillment_cost: int,
    address: Optional[Address],
) -> list[Total]:
    """
    Build the ordered totals list. Discount, fulfillment and tax entries are
    omitted when zero; tax applies to subtotal plus fulfillment.
    """
    items_base_amount = sum(li.base_amount for li in line_items)
    items_discount = sum(li.discount for li in line_items)
    subtotal = items_base_amount - items_discount
    tax = calculate_tax(subtotal + fulfillment_cost, address)
    total = subtotal + fulfillment_cost + tax

    totals = [
        Total(type=TotalType.ITEMS_BASE_AMOUNT, display_text="Items Subtotal", amount=items_base_amount)
    ]
    if items_discount > 0:
        totals.append(
            Total(type=TotalType.ITEMS_DISCOUNT, display_text="Discount", amount=-items_discount)
        )
    totals.append(Total(type=TotalType.SUBTOTAL, display_text="Subtotal", amount=subtotal))
    if fulfillment_cost > 0:
        totals.append(
            Total(type=TotalType.FULFILLMENT, display_text="Shipping", amount=fulfillment_cost)
        )
    if tax > 0:
        totals.append(Total(type=TotalType.TAX, display_text="Tax", amount=tax))
    totals.append(Total(type=TotalType.TOTAL, display_text="Total", amount=total))
    return totals


def find_total(totals: list[Total], total_type: TotalType) -> int:
    for entry in totals:
        if entry.type == total_type:
            return entry.amount
    return 0


def totals_consistent(totals: list[Total]) -> bool:
    """Check total == subtotal - discount + fulfillment + tax + fee."""
    expected = (
        find_total(totals, TotalType.SUBTOTAL)
        - find_total(totals, TotalType.DISCOUNT)
        + find_total(totals, TotalType.FULFILLMENT)
        + find_total(totals, TotalType.TAX)
        + find_total(totals, TotalType.FEE)
    )
    return find_total(totals, TotalType.TOTAL) == expected


def line_item_consistent(line_item: LineItem) -> bool:
    return (
        line_item.subtotal == line_item.base_amount - line_item.discount
        and line_item.total == line_item.subtotal + line_item.tax
    )
