from datetime import datetime, timedelta, timezone

import pytest

from acp_protocol.errors import ACPServiceError
from acp_protocol.headers import (
    parse_timestamp,
    validate_api_version,
    validate_bearer_token,
    validate_signature,
    validate_timestamp,
)


def _code(excinfo) -> str:
    return excinfo.value.error.code


def test_bearer_token_codes():
    assert validate_bearer_token("Bearer key_1", {"key_1"}) == "key_1"

    with pytest.raises(ACPServiceError) as excinfo:
        validate_bearer_token(None, {"key_1"})
    assert excinfo.value.status_code == 401
    assert _code(excinfo) == "missing_authorization"

    with pytest.raises(ACPServiceError) as excinfo:
        validate_bearer_token("Basic abc", {"key_1"})
    assert _code(excinfo) == "invalid_authorization_scheme"

    with pytest.raises(ACPServiceError) as excinfo:
        validate_bearer_token("Bearer other", {"key_1"}, invalid_code="invalid_token")
    assert excinfo.value.error.type == "authentication_error"
    assert _code(excinfo) == "invalid_token"


def test_api_version():
    assert validate_api_version("2025-09-29") == "2025-09-29"
    with pytest.raises(ACPServiceError) as excinfo:
        validate_api_version(None)
    assert _code(excinfo) == "missing_api_version"
    with pytest.raises(ACPServiceError) as excinfo:
        validate_api_version("1999-01-01")
    assert _code(excinfo) == "unsupported_api_version"


def test_parse_timestamp_accepts_rfc3339():
    parsed = parse_timestamp("2025-09-29T12:00:00Z")
    assert parsed == datetime(2025, 9, 29, 12, 0, tzinfo=timezone.utc)
    assert parse_timestamp("2025-09-29T14:00:00+02:00") == parsed
    assert parse_timestamp("yesterday") is None


def test_timestamp_window():
    now = datetime(2025, 9, 29, 12, 0, tzinfo=timezone.utc)
    assert validate_timestamp("2025-09-29T11:59:00Z", now=now)

    with pytest.raises(ACPServiceError) as excinfo:
        validate_timestamp("not-a-date", now=now)
    assert _code(excinfo) == "invalid_timestamp"

    with pytest.raises(ACPServiceError) as excinfo:
        validate_timestamp((now + timedelta(minutes=1)).isoformat(), now=now)
    assert _code(excinfo) == "timestamp_in_future"

    with pytest.raises(ACPServiceError) as excinfo:
        validate_timestamp((now - timedelta(minutes=10)).isoformat(), now=now)
    assert _code(excinfo) == "timestamp_too_old"


def test_signature_format():
    assert validate_signature("dGVzdF9zaWduYXR1cmVfMTIzNDU2")
    with pytest.raises(ACPServiceError) as excinfo:
        validate_signature("not base64!")
    assert excinfo.value.status_code == 403
    assert _code(excinfo) == "invalid_signature"


def test_missing_authorization_is_rejected_first(merchant_client, signed_headers):
    resp = merchant_client.post(
        "/checkout_sessions",
        json={"items": [{"id": "item_123", "quantity": 1}]},
        headers=signed_headers(drop=("Authorization", "API-Version")),
    )
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "missing_authorization"


def test_wrong_api_key(merchant_client, signed_headers):
    resp = merchant_client.get("/checkout_sessions/cs_missing", headers=signed_headers(api_key="nope"))
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "invalid_authorization"


def test_missing_protocol_headers_are_listed(merchant_client, signed_headers):
    resp = merchant_client.post(
        "/checkout_sessions",
        json={"items": [{"id": "item_123", "quantity": 1}]},
        headers=signed_headers(drop=("Idempotency-Key", "Signature")),
    )
    body = resp.json()
    assert resp.status_code == 400
    assert body["error"]["code"] == "missing_headers"
    assert "Idempotency-Key" in body["error"]["message"]
    assert "Signature" in body["error"]["message"]


def test_get_does_not_need_idempotency_key(merchant_client, signed_headers):
    resp = merchant_client.get(
        "/checkout_sessions/cs_missing",
        headers=signed_headers(drop=("Idempotency-Key", "Content-Type")),
    )
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "session_not_found"


def test_stale_timestamp_rejected(merchant_client, signed_headers):
    stale = (datetime.now(timezone.utc) - timedelta(hours=1)).isoformat()
    resp = merchant_client.get("/checkout_sessions/cs_missing", headers=signed_headers(Timestamp=stale))
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "timestamp_too_old"


def test_bad_signature_rejected(merchant_client, signed_headers):
    resp = merchant_client.get("/checkout_sessions/cs_missing", headers=signed_headers(Signature="%%%"))
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "invalid_signature"


def test_request_id_is_echoed(merchant_client, signed_headers):
    headers = signed_headers(Request_Id="req_echo")
    resp = merchant_client.get("/checkout_sessions/cs_missing", headers=headers)
    assert resp.headers["Request-Id"] == "req_echo"
