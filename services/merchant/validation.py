"""
Field-level validation for checkout requests that pydantic types alone
don't cover: country/state/postal formats and E.164 phone numbers.
"""

from __future__ import annotations

import re
from typing import Optional

from acp_protocol.errors import ACPServiceError
from acp_protocol.models import Address, Buyer


VALID_COUNTRY_CODES = {
    "US", "CA", "MX", "GB", "DE", "FR", "IT", "ES", "AU", "NZ", "JP", "CN", "IN", "BR",
}

VALID_US_STATE_CODES = {
    "AL", "AK", "AZ", "AR", "CA", "CO", "CT", "DE", "FL", "GA",
    "HI", "ID", "IL", "IN", "IA", "KS", "KY", "LA", "ME", "MD",
    "MA", "MI", "MN", "MS", "MO", "MT", "NE", "NV", "NH", "NJ",
    "NM", "NY", "NC", "ND", "OH", "OK", "OR", "PA", "RI", "SC",
    "SD", "TN", "TX", "UT", "VT", "VA", "WA", "WV", "WI", "WY",
    "DC",
}

VALID_CA_PROVINCE_CODES = {
    "AB", "BC", "MB", "NB", "NL", "NS", "NT", "NU", "ON", "PE", "QC", "SK", "YT",
}

E164_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")
US_POSTAL_PATTERN = re.compile(r"^\d{5}(-\d{4})?$")
CA_POSTAL_PATTERN = re.compile(r"^[A-Z]\d[A-Z]\s?\d[A-Z]\d$", re.IGNORECASE)


def is_valid_country_code(code: str) -> bool:
    return code.upper() in VALID_COUNTRY_CODES


def is_valid_state_code(state: str, country: str) -> bool:
    state, country = state.upper(), country.upper()
    if country == "US":
        return state in VALID_US_STATE_CODES
    if country == "CA":
        return state in VALID_CA_PROVINCE_CODES
    return bool(re.fullmatch(r"[A-Z]{2}", state))


def is_valid_postal_code(postal_code: str, country: str) -> bool:
    country = country.upper()
    if country == "US":
        return bool(US_POSTAL_PATTERN.match(postal_code))
    if country == "CA":
        return bool(CA_POSTAL_PATTERN.match(postal_code))
    return 3 <= len(postal_code) <= 10


def is_valid_e164_phone_number(phone: str) -> bool:
    return bool(E164_PATTERN.match(phone))


def validate_address(address: Optional[Address], param: str) -> None:
    if address is None:
        return
    if not is_valid_country_code(address.country):
        raise ACPServiceError(
            400, "invalid_request", "invalid_country_code",
            "Country code must be valid ISO 3166-1 alpha-2 format", f"{param}.country",
        )
    if not is_valid_state_code(address.state, address.country):
        raise ACPServiceError(
            400, "invalid_request", "invalid_state_code",
            "State/province code must be valid ISO 3166-2 format for the given country",
            f"{param}.state",
        )
    if not is_valid_postal_code(address.postal_code, address.country):
        raise ACPServiceError(
            400, "invalid_request", "invalid_postal_code",
            "Postal code format is invalid for the given country", f"{param}.postal_code",
        )


def validate_buyer(buyer: Optional[Buyer], param: str = "$.buyer") -> None:
    if buyer is not None and buyer.phone_number and not is_valid_e164_phone_number(buyer.phone_number):
        raise ACPServiceError(
            400, "invalid_request", "invalid_phone_number",
            "Phone number must be in E.164 format (e.g., +15552003434)", f"{param}.phone_number",
        )
