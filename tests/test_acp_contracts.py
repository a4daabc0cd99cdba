import pytest
from pydantic import TypeAdapter, ValidationError

from acp_protocol.models import (
    CheckoutSession,
    CheckoutSessionCompleteRequest,
    CheckoutSessionCreateRequest,
    CheckoutSessionUpdateRequest,
    DelegatePaymentRequest,
    FulfillmentOption,
    FulfillmentOptionDigital,
    FulfillmentOptionShipping,
    Item,
    PaymentIntent,
)


def _delegate_payload() -> dict:
    return {
        "payment_method": {
            "type": "card",
            "card_number_type": "fpan",
            "number": "4242424242424242",
            "display_card_funding_type": "credit",
            "metadata": {},
        },
        "allowance": {
            "reason": "one_time",
            "max_amount": 7148,
            "currency": "usd",
            "checkout_session_id": "cs_123",
            "merchant_id": "merchant_123",
            "expires_at": "2030-01-01T00:00:00Z",
        },
        "risk_signals": [{"type": "card_testing", "score": 5, "action": "authorized"}],
        "metadata": {"source": "mcp_checkout"},
    }


def test_create_request_requires_at_least_one_item():
    with pytest.raises(ValidationError):
        CheckoutSessionCreateRequest(items=[])


def test_item_quantity_must_be_positive():
    with pytest.raises(ValidationError):
        Item(id="item_123", quantity=0)


def test_fulfillment_option_union_dispatches_on_type():
    adapter = TypeAdapter(FulfillmentOption)

    shipping = adapter.validate_python(
        {
            "type": "shipping",
            "id": "standard_shipping",
            "title": "Standard Shipping",
            "carrier": "USPS",
            "earliest_delivery_time": "2025-10-03T12:00:00Z",
            "latest_delivery_time": "2025-10-04T12:00:00Z",
            "subtotal": 500,
            "tax": 0,
            "total": 500,
        }
    )
    digital = adapter.validate_python({"type": "digital", "id": "digital_delivery", "title": "Digital"})

    assert isinstance(shipping, FulfillmentOptionShipping)
    assert isinstance(digital, FulfillmentOptionDigital)
    with pytest.raises(ValidationError):
        adapter.validate_python({"type": "pickup", "id": "x", "title": "Pickup"})


def test_checkout_session_omits_absent_optionals_on_the_wire():
    session = CheckoutSession(id="cs_123")
    dumped = session.model_dump(mode="json", exclude_none=True)

    assert dumped["status"] == "not_ready_for_payment"
    assert dumped["currency"] == "usd"
    assert "buyer" not in dumped
    assert "order" not in dumped


def test_update_request_tracks_explicit_nulls():
    request = CheckoutSessionUpdateRequest.model_validate({"fulfillment_address": None})

    assert "fulfillment_address" in request.model_fields_set
    assert "buyer" not in request.model_fields_set


def test_complete_request_only_accepts_stripe_provider():
    CheckoutSessionCompleteRequest.model_validate({"payment_data": {"token": "vt_1", "provider": "stripe"}})
    with pytest.raises(ValidationError):
        CheckoutSessionCompleteRequest.model_validate({"payment_data": {"token": "vt_1", "provider": "paypal"}})


def test_delegate_payment_contract():
    request = DelegatePaymentRequest.model_validate(_delegate_payload())

    assert request.allowance.reason == "one_time"
    assert request.payment_method.card_number_type == "fpan"

    payload = _delegate_payload()
    payload["risk_signals"] = []
    with pytest.raises(ValidationError):
        DelegatePaymentRequest.model_validate(payload)


def test_payment_intent_status_is_an_enum():
    intent = PaymentIntent.model_validate(
        {
            "id": "pi_1",
            "status": "completed",
            "amount": 100,
            "currency": "usd",
            "vault_token_id": "vt_1",
            "created": "2025-09-29T12:00:00Z",
        }
    )
    assert intent.model_dump(mode="json", exclude_none=True)["status"] == "completed"
    with pytest.raises(ValidationError):
        PaymentIntent.model_validate({**intent.model_dump(), "status": "refunded"})
