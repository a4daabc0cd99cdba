"""
Field-level validation of PSP request bodies.

Runs on the raw JSON payload before it is parsed into the pydantic models,
so callers get the specific ACP error codes (`invalid_card`,
`field_too_long`, ...) instead of a generic validation failure. Each
validator returns the first problem found, or None.
"""

from __future__ import annotations

import re
from typing import Any, Optional

from acp_protocol.headers import parse_timestamp
from acp_protocol.models import ACPError


CARD_NUMBER_TYPES = ("fpan", "network_token")
FUNDING_TYPES = ("credit", "debit", "prepaid")
RISK_ACTIONS = ("blocked", "manual_review", "authorized")

CARD_FIELD_LIMITS = {
    "exp_month": 2,
    "exp_year": 4,
    "cvc": 4,
    "iin": 6,
    "display_last4": 4,
}
BILLING_REQUIRED_FIELDS = ("name", "line_one", "city", "country", "postal_code")
BILLING_FIELD_LIMITS = {
    "name": 256,
    "line_one": 60,
    "line_two": 60,
    "city": 60,
    "postal_code": 20,
}
MERCHANT_ID_MAX_LENGTH = 256

_CARD_NUMBER = re.compile(r"^\d{13,19}$")


def _error(code: str, message: str, param: Optional[str] = None, type: str = "invalid_request") -> ACPError:
    return ACPError(type=type, code=code, message=message, param=param)


def _missing(value: Any) -> bool:
    return value is None or value == ""


def luhn_check(number: str) -> bool:
    """Return True if `number` passes the Luhn checksum."""
    total = 0
    for index, char in enumerate(reversed(number)):
        digit = int(char)
        if index % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


def _is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def validate_payment_method(payment_method: Any) -> Optional[ACPError]:
    if not payment_method:
        return _error("missing_field", "payment_method is required", "$.payment_method")
    if not isinstance(payment_method, dict):
        return _error("invalid_type", "payment_method must be an object", "$.payment_method")

    if payment_method.get("type") != "card":
        return _error(
            "invalid_payment_method_type",
            "Payment method type must be 'card'",
            "$.payment_method.type",
        )
    if payment_method.get("card_number_type") not in CARD_NUMBER_TYPES:
        return _error(
            "invalid_card_number_type",
            "Card number type must be 'fpan' or 'network_token'",
            "$.payment_method.card_number_type",
        )

    number = payment_method.get("number")
    if _missing(number):
        return _error("missing_field", "Card number is required", "$.payment_method.number")
    if payment_method["card_number_type"] == "fpan":
        digits = re.sub(r"\s", "", str(number))
        if not _CARD_NUMBER.match(digits) or not luhn_check(digits):
            return _error(
                "invalid_card", "Card number is invalid", "$.payment_method.number", type="invalid_card"
            )

    funding_type = payment_method.get("display_card_funding_type")
    if _missing(funding_type):
        return _error(
            "missing_field",
            "display_card_funding_type is required",
            "$.payment_method.display_card_funding_type",
        )
    if funding_type not in FUNDING_TYPES:
        return _error(
            "invalid_enum_value",
            "Display card funding type must be 'credit', 'debit', or 'prepaid'",
            "$.payment_method.display_card_funding_type",
        )

    for field, limit in CARD_FIELD_LIMITS.items():
        value = payment_method.get(field)
        if isinstance(value, str) and len(value) > limit:
            return _error(
                "field_too_long",
                f"{field} exceeds maximum length of {limit} characters",
                f"$.payment_method.{field}",
            )

    if "metadata" not in payment_method:
        return _error("missing_field", "metadata is required", "$.payment_method.metadata")
    return None


def validate_allowance(allowance: Any) -> Optional[ACPError]:
    if not allowance:
        return _error("missing_field", "allowance is required", "$.allowance")
    if not isinstance(allowance, dict):
        return _error("invalid_type", "allowance must be an object", "$.allowance")

    if allowance.get("reason") != "one_time":
        return _error(
            "invalid_allowance_reason", "Allowance reason must be 'one_time'", "$.allowance.reason"
        )

    max_amount = allowance.get("max_amount")
    if max_amount is None:
        return _error("missing_field", "max_amount is required", "$.allowance.max_amount")
    if not _is_positive_int(max_amount):
        return _error(
            "invalid_amount", "max_amount must be a positive integer", "$.allowance.max_amount"
        )

    currency = allowance.get("currency")
    if _missing(currency):
        return _error("missing_field", "currency is required", "$.allowance.currency")
    if not isinstance(currency, str) or currency != currency.lower():
        return _error(
            "invalid_currency", "Currency must be lowercase ISO-4217 format", "$.allowance.currency"
        )

    if _missing(allowance.get("checkout_session_id")):
        return _error(
            "missing_field", "checkout_session_id is required", "$.allowance.checkout_session_id"
        )

    merchant_id = allowance.get("merchant_id")
    if _missing(merchant_id):
        return _error("missing_field", "merchant_id is required", "$.allowance.merchant_id")
    if len(str(merchant_id)) > MERCHANT_ID_MAX_LENGTH:
        return _error(
            "field_too_long",
            f"Merchant ID exceeds maximum length of {MERCHANT_ID_MAX_LENGTH} characters",
            "$.allowance.merchant_id",
        )

    expires_at = allowance.get("expires_at")
    if _missing(expires_at):
        return _error("missing_field", "expires_at is required", "$.allowance.expires_at")
    if not isinstance(expires_at, str) or parse_timestamp(expires_at) is None:
        return _error(
            "invalid_format", "expires_at must be in RFC 3339 format", "$.allowance.expires_at"
        )
    return None


def validate_billing_address(billing_address: Any) -> Optional[ACPError]:
    if billing_address is None:
        return None
    if not isinstance(billing_address, dict):
        return _error("invalid_type", "billing_address must be an object", "$.billing_address")

    for field in BILLING_REQUIRED_FIELDS:
        if _missing(billing_address.get(field)):
            return _error(
                "missing_field",
                f"{field} is required when billing_address is provided",
                f"$.billing_address.{field}",
            )
    for field, limit in BILLING_FIELD_LIMITS.items():
        value = billing_address.get(field)
        if isinstance(value, str) and len(value) > limit:
            return _error(
                "field_too_long",
                f"{field} exceeds maximum length of {limit} characters",
                f"$.billing_address.{field}",
            )
    return None


def validate_risk_signals(risk_signals: Any) -> Optional[ACPError]:
    if risk_signals is None:
        return _error("missing_field", "risk_signals is required", "$.risk_signals")
    if not isinstance(risk_signals, list):
        return _error("invalid_type", "risk_signals must be an array", "$.risk_signals")
    if not risk_signals:
        return _error("missing_field", "At least one risk signal is required", "$.risk_signals")

    for i, signal in enumerate(risk_signals):
        param = f"$.risk_signals[{i}]"
        if not isinstance(signal, dict):
            return _error("invalid_type", "risk signal must be an object", param)
        if _missing(signal.get("type")):
            return _error("missing_field", "type is required in risk signal", f"{param}.type")
        if signal.get("score") is None:
            return _error("missing_field", "score is required in risk signal", f"{param}.score")
        if _missing(signal.get("action")):
            return _error("missing_field", "action is required in risk signal", f"{param}.action")
        if signal["action"] not in RISK_ACTIONS:
            return _error(
                "invalid_enum_value",
                "Risk signal action must be 'blocked', 'manual_review', or 'authorized'",
                f"{param}.action",
            )
    return None


def validate_delegate_payment(payload: Any) -> Optional[ACPError]:
    """Validate a delegate payment body; the first error found is returned."""
    if not isinstance(payload, dict) or not payload:
        return _error("invalid_body", "Request body is required")

    error = (
        validate_payment_method(payload.get("payment_method"))
        or validate_allowance(payload.get("allowance"))
        or validate_billing_address(payload.get("billing_address"))
        or validate_risk_signals(payload.get("risk_signals"))
    )
    if error:
        return error

    if "metadata" not in payload:
        return _error("missing_field", "metadata is required", "$.metadata")
    return None


def validate_payment_intent_request(payload: Any) -> Optional[ACPError]:
    """Validate a create_and_process_payment_intent body."""
    if not isinstance(payload, dict) or not payload:
        return _error("invalid_body", "Request body is required")

    token = payload.get("shared_payment_token")
    if _missing(token):
        return _error("missing_field", "shared_payment_token is required", "$.shared_payment_token")

    amount = payload.get("amount")
    if amount is None:
        return _error("missing_field", "amount is required", "$.amount")

    currency = payload.get("currency")
    if _missing(currency):
        return _error("missing_field", "currency is required", "$.currency")

    if not _is_positive_int(amount):
        return _error("invalid_amount", "amount must be a positive integer", "$.amount")
    if not isinstance(currency, str) or currency != currency.lower():
        return _error("invalid_currency", "currency must be lowercase ISO-4217 format", "$.currency")
    if not isinstance(token, str) or not token.startswith("vt_"):
        return _error(
            "invalid_vault_token_format",
            "shared_payment_token must start with vt_",
            "$.shared_payment_token",
        )
    return None
