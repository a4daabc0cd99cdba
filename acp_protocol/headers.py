"""
Header validation for protected ACP endpoints.

`acp_headers()` builds a FastAPI dependency that authenticates the caller
and checks the protocol headers every ACP request carries. Failures are
raised as `ACPServiceError` so they render as structured ACP errors.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from fastapi import Header, Request

from acp_protocol.errors import ACPServiceError


SUPPORTED_API_VERSIONS = {
    v.strip() for v in os.getenv("ACP_SUPPORTED_API_VERSIONS", "2025-09-29").split(",") if v.strip()
}
TIMESTAMP_MAX_AGE_SECONDS = int(os.getenv("ACP_TIMESTAMP_MAX_AGE_SECONDS", "300"))
SIGNATURE_PATTERN = re.compile(r"^[A-Za-z0-9+/]+=*$")

_BODY_METHODS = ("POST", "PUT")


@dataclass
class ACPRequestContext:
    """Validated protocol headers of one request."""

    api_key: str
    api_version: str
    idempotency_key: Optional[str] = None
    request_id: Optional[str] = None
    accept_language: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: Optional[datetime] = None
    signature: Optional[str] = None


def validate_bearer_token(
    authorization: Optional[str],
    api_keys: Iterable[str],
    error_type: str = "authentication_error",
    invalid_code: str = "invalid_authorization",
) -> str:
    """Extract the bearer token and check it against the accepted keys."""
    if not authorization:
        raise ACPServiceError(
            401, error_type, "missing_authorization",
            "Authorization header is required", "$.headers.Authorization",
        )
    if not authorization.startswith("Bearer "):
        raise ACPServiceError(
            401, error_type, "invalid_authorization_scheme",
            "Authorization header must use Bearer scheme", "$.headers.Authorization",
        )
    token = authorization[7:].strip()
    if not token:
        raise ACPServiceError(
            401, error_type, "missing_token",
            "Bearer token is required", "$.headers.Authorization",
        )
    if token not in set(api_keys):
        raise ACPServiceError(
            401, error_type, invalid_code,
            "Invalid API key", "$.headers.Authorization",
        )
    return token


def validate_api_version(api_version: Optional[str]) -> str:
    if not api_version:
        raise ACPServiceError(
            400, "invalid_request", "missing_api_version",
            "Missing API-Version header", "$.headers.API-Version",
        )
    if api_version not in SUPPORTED_API_VERSIONS:
        raise ACPServiceError(
            400, "invalid_request", "unsupported_api_version",
            f"Unsupported API-Version '{api_version}'", "$.headers.API-Version",
        )
    return api_version


def parse_timestamp(value: str) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp; naive values are taken as UTC."""
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def validate_timestamp(value: str, now: Optional[datetime] = None) -> datetime:
    requested_at = parse_timestamp(value)
    if requested_at is None:
        raise ACPServiceError(
            400, "invalid_request", "invalid_timestamp",
            "Timestamp must be in RFC 3339 format", "$.headers.Timestamp",
        )
    now = now or datetime.now(timezone.utc)
    if requested_at > now:
        raise ACPServiceError(
            400, "invalid_request", "timestamp_in_future",
            "Request timestamp cannot be in the future", "$.headers.Timestamp",
        )
    if (now - requested_at).total_seconds() > TIMESTAMP_MAX_AGE_SECONDS:
        raise ACPServiceError(
            400, "invalid_request", "timestamp_too_old",
            f"Request timestamp is too old (must be within {TIMESTAMP_MAX_AGE_SECONDS} seconds)",
            "$.headers.Timestamp",
        )
    return requested_at


def validate_signature(signature: str) -> str:
    # Format check only; signatures are not verified cryptographically.
    if not SIGNATURE_PATTERN.match(signature):
        raise ACPServiceError(
            403, "invalid_request", "invalid_signature",
            "Invalid signature format", "$.headers.Signature",
        )
    return signature


def acp_headers(
    api_keys: Iterable[str],
    require_signature: bool = True,
) -> Callable:
    """
    Create a dependency validating ACP request headers.

    With `require_signature=False` only Authorization and API-Version are
    checked (used for read-only catalog endpoints).
    """
    accepted_keys = frozenset(api_keys)

    async def dependency(
        request: Request,
        authorization: Optional[str] = Header(None),
        api_version: Optional[str] = Header(None, alias="API-Version"),
        idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
        request_id: Optional[str] = Header(None, alias="Request-Id"),
        accept_language: Optional[str] = Header(None, alias="Accept-Language"),
        user_agent: Optional[str] = Header(None, alias="User-Agent"),
        timestamp: Optional[str] = Header(None, alias="Timestamp"),
        signature: Optional[str] = Header(None, alias="Signature"),
        content_type: Optional[str] = Header(None, alias="Content-Type"),
    ) -> ACPRequestContext:
        api_key = validate_bearer_token(authorization, accepted_keys)
        context = ACPRequestContext(
            api_key=api_key,
            api_version=validate_api_version(api_version),
            idempotency_key=idempotency_key,
            request_id=request_id,
            accept_language=accept_language,
            user_agent=user_agent,
        )
        if not require_signature:
            return context

        has_body = request.method in _BODY_METHODS
        required = {
            "Accept-Language": accept_language,
            "User-Agent": user_agent,
            "Request-Id": request_id,
            "Timestamp": timestamp,
            "Signature": signature,
        }
        if has_body:
            required["Idempotency-Key"] = idempotency_key
            required["Content-Type"] = content_type
        missing = [name for name, value in required.items() if not value]
        if missing:
            raise ACPServiceError(
                400, "invalid_request", "missing_headers",
                f"Missing required headers: {', '.join(missing)}",
            )

        if has_body and "application/json" not in content_type.lower():
            raise ACPServiceError(
                400, "invalid_request", "invalid_content_type",
                "Content-Type must be application/json", "$.headers.Content-Type",
            )

        context.timestamp = validate_timestamp(timestamp)
        context.signature = validate_signature(signature)
        return context

    return dependency
