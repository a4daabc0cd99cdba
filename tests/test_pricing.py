from datetime import datetime, timezone

from acp_protocol.models import Address, Item, Product, TotalType
from services.merchant.fulfillment import (
    default_option,
    generate_options,
    is_valid_option,
    option_cost,
    resolve_option,
)
from services.merchant.pricing import (
    build_line_item,
    calculate_tax,
    calculate_totals,
    find_total,
    line_item_consistent,
    totals_consistent,
)


CHAIR = Product(id="item_123", name="Simple wooden chair", base_price=2999, available_quantity=100)


def _address(state: str = "CA") -> Address:
    return Address(
        name="Jane Doe",
        line_one="1 Market St",
        city="San Francisco",
        state=state,
        country="US",
        postal_code="94105",
    )


def test_tax_is_ten_percent_half_up_only_in_california():
    assert calculate_tax(6498, _address("CA")) == 650
    assert calculate_tax(5, _address("CA")) == 1  # 0.5 rounds up
    assert calculate_tax(4, _address("CA")) == 0
    assert calculate_tax(6498, _address("NY")) == 0
    assert calculate_tax(6498, None) == 0


def test_line_item_amounts():
    line_item = build_line_item(CHAIR, Item(id="item_123", quantity=2))

    assert line_item.id.startswith("li_")
    assert line_item.base_amount == 5998
    assert line_item.subtotal == 5998
    assert line_item.total == 5998
    assert line_item_consistent(line_item)


def test_totals_include_shipping_and_california_tax():
    line_items = [build_line_item(CHAIR, Item(id="item_123", quantity=2))]
    totals = calculate_totals(line_items, 500, _address("CA"))

    assert [t.type for t in totals] == [
        TotalType.ITEMS_BASE_AMOUNT,
        TotalType.SUBTOTAL,
        TotalType.FULFILLMENT,
        TotalType.TAX,
        TotalType.TOTAL,
    ]
    assert [t.display_text for t in totals] == ["Items Subtotal", "Subtotal", "Shipping", "Tax", "Total"]
    assert find_total(totals, TotalType.TAX) == 650
    assert find_total(totals, TotalType.TOTAL) == 7148
    assert totals_consistent(totals)


def test_zero_entries_are_omitted():
    line_items = [build_line_item(CHAIR, Item(id="item_123", quantity=1))]
    totals = calculate_totals(line_items, 0, _address("NY"))

    assert [t.type for t in totals] == [TotalType.ITEMS_BASE_AMOUNT, TotalType.SUBTOTAL, TotalType.TOTAL]
    assert find_total(totals, TotalType.TOTAL) == 2999
    assert find_total(totals, TotalType.DISCOUNT) == 0


def test_shipping_options_need_an_address():
    assert generate_options(True, None) == []


def test_shipping_options_with_address():
    now = datetime(2025, 9, 29, 12, 0, tzinfo=timezone.utc)
    options = generate_options(True, _address("CA"), now=now)

    assert [o.id for o in options] == ["standard_shipping", "express_shipping"]
    standard, express = options
    assert standard.carrier == "USPS"
    assert standard.subtotal == 500
    assert standard.tax == 50
    assert standard.total == 550
    assert standard.earliest_delivery_time == "2025-10-03T12:00:00Z"
    assert standard.latest_delivery_time == "2025-10-04T12:00:00Z"
    assert express.carrier == "FedEx"
    assert express.subtotal == 1500
    assert express.earliest_delivery_time == "2025-09-30T12:00:00Z"


def test_digital_cart_gets_free_delivery():
    options = generate_options(False, None)

    assert len(options) == 1
    assert options[0].type == "digital"
    assert options[0].id == "digital_delivery"
    assert options[0].total == 0


def test_option_selection_helpers():
    options = generate_options(True, _address("NY"))

    assert default_option(options) == "standard_shipping"
    assert default_option([]) is None
    assert is_valid_option("express_shipping", options)
    assert not is_valid_option("teleport", options)
    assert not is_valid_option(None, options)
    assert option_cost("express_shipping", options) == 1500
    assert option_cost("teleport", options) == 0


def test_resolve_option_falls_back_to_current_then_default():
    options = generate_options(True, _address("NY"))

    assert resolve_option("express_shipping", "standard_shipping", options) == "express_shipping"
    assert resolve_option(None, "express_shipping", options) == "express_shipping"
    assert resolve_option("teleport", None, options) == "standard_shipping"
    assert resolve_option(None, None, []) is None
