import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from acp_protocol.agent import create_commerce_tools
from acp_protocol.client import ACPCheckoutClient, ACPClientError
from acp_protocol.models import Address, Buyer, Item, PaymentMethodCard

ADDRESS = Address(
    name="Jane Doe",
    line_one="1 Market St",
    city="San Francisco",
    state="CA",
    country="US",
    postal_code="94105",
)
BUYER = Buyer(first_name="Jane", last_name="Doe", email="jane@example.com")
CARD = PaymentMethodCard(
    card_number_type="fpan",
    number="4242424242424242",
    exp_month="12",
    exp_year="2030",
    cvc="123",
    name="Jane Doe",
    display_card_funding_type="credit",
    display_last4="4242",
    metadata={},
)


async def fill_cart(client: ACPCheckoutClient):
    await client.add_items([Item(id="item_123", quantity=1)])
    await client.add_items([Item(id="item_123", quantity=1)])
    await client.set_buyer(BUYER)
    return await client.set_fulfillment_address(ADDRESS)


def test_agent_checkout_flow(acp_client):
    async def scenario():
        ready = await fill_cart(acp_client)
        completed = await acp_client.checkout(CARD)
        return ready, completed

    ready, completed = asyncio.run(scenario())

    assert ready.status == "ready_for_payment"
    assert [t.amount for t in ready.totals if t.type == "total"] == [7148]
    assert completed.status == "completed"
    assert completed.order.checkout_session_id == completed.id
    assert completed.order.permalink_url.endswith(completed.order.id)
    assert acp_client.session is None


def test_vault_token_cannot_pay_twice(acp_client):
    async def scenario():
        await fill_cart(acp_client)
        token = await acp_client.delegate_payment(CARD)
        await acp_client.complete(token.id)

        acp_client.clear_session()
        await fill_cart(acp_client)
        with pytest.raises(ACPClientError) as excinfo:
            await acp_client.complete(token.id)
        session = await acp_client.refresh_session()
        return excinfo.value, session

    error, session = asyncio.run(scenario())

    assert error.status_code == 400
    assert error.code == "payment_declined"
    assert session.status == "ready_for_payment"


def test_allowance_caps_the_charge(acp_client):
    async def scenario():
        await acp_client.add_items([Item(id="item_123", quantity=1)])
        await acp_client.set_fulfillment_address(ADDRESS)
        token = await acp_client.delegate_payment(CARD)
        # The cart grows after the token was issued for the smaller total.
        await acp_client.add_items([Item(id="item_456", quantity=1)])
        with pytest.raises(ACPClientError) as excinfo:
            await acp_client.complete(token.id)
        return excinfo.value

    error = asyncio.run(scenario())

    assert error.code == "payment_declined"
    assert "exceeds maximum allowance" in str(error)


def test_merchant_completes_with_psp_token(merchant_with_psp, psp_client, signed_headers, psp_headers):
    created = merchant_with_psp.post(
        "/checkout_sessions",
        json={
            "items": [{"id": "item_789", "quantity": 1}],
            "buyer": BUYER.model_dump(exclude_none=True),
        },
        headers=signed_headers(),
    ).json()
    total = next(t["amount"] for t in created["totals"] if t["type"] == "total")
    assert created["status"] == "ready_for_payment"

    expires_at = (datetime.now(timezone.utc) + timedelta(minutes=5)).isoformat()
    token = psp_client.post(
        "/agentic_commerce/delegate_payment",
        json={
            "payment_method": CARD.model_dump(exclude_none=True),
            "allowance": {
                "reason": "one_time",
                "max_amount": total,
                "currency": "usd",
                "checkout_session_id": created["id"],
                "merchant_id": "merchant_123",
                "expires_at": expires_at,
            },
            "risk_signals": [{"type": "card_testing", "score": 5, "action": "authorized"}],
            "metadata": {},
        },
        headers=psp_headers(),
    ).json()["id"]

    resp = merchant_with_psp.post(
        f"/checkout_sessions/{created['id']}/complete",
        json={"payment_data": {"token": token, "provider": "stripe"}},
        headers=signed_headers(),
    )

    assert resp.status_code == 200
    assert resp.json()["status"] == "completed"
    assert resp.json()["order"]["id"].startswith("order_")


def test_agent_tool_names():
    tools = create_commerce_tools(ACPCheckoutClient())

    assert [tool.name for tool in tools] == [
        "search_products",
        "get_product_details",
        "add_to_cart",
        "remove_from_cart",
        "view_cart",
        "set_buyer_info",
        "set_shipping_address",
        "select_shipping_option",
        "checkout",
        "cancel_checkout",
    ]
