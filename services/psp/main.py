"""
PSP Service — Delegate Payment and Payment Intent APIs.

Clients delegate card credentials and receive a single-use vault token
bounded by an allowance; merchants charge that token once through
create_and_process_payment_intent. No real card network is involved.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from acp_protocol.errors import ACPServiceError, register_error_handlers, validation_error
from acp_protocol.headers import ACPRequestContext, acp_headers, validate_bearer_token
from acp_protocol.idempotency import IdempotencyStore
from acp_protocol.models import (
    CreatePaymentIntentRequest,
    DelegatePaymentRequest,
    DelegatePaymentResponse,
    PaymentIntent,
)
from acp_protocol.seller import acp_json_response, request_payload
from services.psp.database import IdempotencyRecordRow, async_session, engine, init_db
from services.psp.payment_intents import PaymentIntentService
from services.psp.validation import validate_delegate_payment, validate_payment_intent_request
from services.psp.vault import VaultTokenService


PSP_CLIENT_API_KEY = os.getenv("PSP_CLIENT_API_KEY", "client_token_123")
PSP_MERCHANT_SECRET_KEY = os.getenv("PSP_MERCHANT_SECRET_KEY", "merchant_secret_key_123")

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    yield
    await engine.dispose()


app = FastAPI(
    title="ACP PSP Service — Delegate Payment",
    description="Vault tokens and payment intents for delegated ACP payments",
    version="0.1.0",
    lifespan=lifespan,
)
register_error_handlers(app)

vault_tokens = VaultTokenService(async_session)
payment_intents = PaymentIntentService(async_session)
delegate_headers = acp_headers({PSP_CLIENT_API_KEY})
idempotency = IdempotencyStore(
    async_session,
    IdempotencyRecordRow,
    conflict_type="idempotency_conflict",
    conflict_code="idempotency_conflict",
)


async def merchant_auth(authorization: Optional[str] = Header(None)) -> str:
    """Authenticate merchant server calls with the PSP merchant secret key."""
    return validate_bearer_token(
        authorization, {PSP_MERCHANT_SECRET_KEY}, invalid_code="invalid_token"
    )


@app.post(
    "/agentic_commerce/delegate_payment",
    status_code=201,
    response_model=DelegatePaymentResponse,
)
async def delegate_payment(
    request: Request,
    context: ACPRequestContext = Depends(delegate_headers),
):
    """
    Tokenize payment credentials and return a vault token with
    allowance constraints.
    """
    payload = await request_payload(request)
    error = validate_delegate_payment(payload)
    if error:
        logger.warning("Rejected delegate_payment request %s: %s", context.request_id, error.code)
        raise ACPServiceError.from_error(422 if error.type == "invalid_card" else 400, error)
    try:
        body = DelegatePaymentRequest.model_validate(payload)
    except ValidationError as exc:
        raise validation_error(exc.errors()) from exc

    async def handler():
        token = await vault_tokens.create_token(body, context.idempotency_key, context.request_id)
        return acp_json_response(token, 201, context)

    return await idempotency.run(
        f"{request.method}:{request.url.path}",
        context.idempotency_key,
        payload,
        context.request_id,
        handler,
    )


@app.post(
    "/agentic_commerce/create_and_process_payment_intent",
    status_code=201,
    response_model=PaymentIntent,
)
async def create_and_process_payment_intent(
    request: Request,
    merchant_key: str = Depends(merchant_auth),
):
    """
    Charge a vault token on behalf of a merchant. Not wrapped in the
    idempotency layer; a replayed call hits the single-use check on the token.
    """
    payload = await request_payload(request)
    error = validate_payment_intent_request(payload)
    if error:
        raise ACPServiceError.from_error(400, error)
    try:
        body = CreatePaymentIntentRequest.model_validate(payload)
    except ValidationError as exc:
        raise validation_error(exc.errors()) from exc

    intent = await payment_intents.create_and_process(body)
    return JSONResponse(status_code=201, content=intent.model_dump(mode="json", exclude_none=True))


@app.get(
    "/agentic_commerce/payment_intents/{intent_id}",
    response_model=PaymentIntent,
    response_model_exclude_none=True,
)
async def get_payment_intent(
    intent_id: str,
    merchant_key: str = Depends(merchant_auth),
):
    return await payment_intents.get_intent(intent_id)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "psp"}


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PSP_PORT", "4000")))
