"""
ACP Seller Router Factory.

Provides `ACPSellerAdapter` (abstract base) and `create_seller_router()` to
generate the 5 ACP checkout endpoints as a FastAPI APIRouter.

Usage:
    class MySellerAdapter(ACPSellerAdapter):
        async def on_create_session(self, request) -> CheckoutSession: ...
        ...

    router = create_seller_router(
        MySellerAdapter(),
        headers=acp_headers({"api_key"}),
        idempotency=IdempotencyStore(async_session, IdempotencyRecordRow),
    )
    app.include_router(router)
"""

from __future__ import annotations

import abc
import json
from typing import Any, Awaitable, Callable, Optional

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from acp_protocol.errors import ACPServiceError, apply_common_response_headers
from acp_protocol.headers import ACPRequestContext
from acp_protocol.idempotency import IdempotencyStore
from acp_protocol.models import (
    CheckoutSession,
    CheckoutSessionCompleteRequest,
    CheckoutSessionCreateRequest,
    CheckoutSessionUpdateRequest,
    CheckoutSessionWithOrder,
)


class ACPSellerAdapter(abc.ABC):
    """
    Abstract base class that merchants implement to become ACP-compliant.

    Each hook receives the validated ACP request and should return the
    appropriate response object.  Raise `ACPServiceError` to return a
    structured ACP error to the agent.
    """

    @abc.abstractmethod
    async def on_create_session(
        self,
        request: CheckoutSessionCreateRequest,
    ) -> CheckoutSession:
        """Handle POST /checkout_sessions."""
        ...

    @abc.abstractmethod
    async def on_get_session(
        self,
        session_id: str,
    ) -> CheckoutSession:
        """Handle GET /checkout_sessions/{id}."""
        ...

    @abc.abstractmethod
    async def on_update_session(
        self,
        session_id: str,
        request: CheckoutSessionUpdateRequest,
    ) -> CheckoutSession:
        """Handle POST /checkout_sessions/{id}."""
        ...

    @abc.abstractmethod
    async def on_complete_session(
        self,
        session_id: str,
        request: CheckoutSessionCompleteRequest,
    ) -> CheckoutSessionWithOrder:
        """Handle POST /checkout_sessions/{id}/complete."""
        ...

    @abc.abstractmethod
    async def on_cancel_session(
        self,
        session_id: str,
    ) -> CheckoutSession:
        """Handle POST /checkout_sessions/{id}/cancel."""
        ...


async def request_payload(request: Request) -> Any:
    """Return the parsed JSON body, or an empty object for an empty body."""
    raw_body = await request.body()
    if not raw_body.strip():
        return {}
    try:
        return json.loads(raw_body)
    except ValueError:
        raise ACPServiceError(
            400, "invalid_request", "invalid_json", "Request body must be valid JSON"
        )


def acp_json_response(
    model: BaseModel,
    status_code: int,
    context: ACPRequestContext,
) -> JSONResponse:
    response = JSONResponse(
        status_code=status_code,
        content=model.model_dump(mode="json", exclude_none=True),
    )
    apply_common_response_headers(response, context.idempotency_key, context.request_id)
    return response


def create_seller_router(
    adapter: ACPSellerAdapter,
    headers: Callable,
    idempotency: Optional[IdempotencyStore] = None,
    prefix: str = "",
) -> APIRouter:
    """
    Create a FastAPI APIRouter with all 5 ACP checkout endpoints wired
    to the given adapter. `headers` is a dependency from `acp_headers()`.
    """
    router = APIRouter(prefix=prefix, tags=["ACP Checkout"])

    async def _idempotent(
        request: Request,
        context: ACPRequestContext,
        handler: Callable[[], Awaitable[Response]],
    ) -> Response:
        if idempotency is None:
            return await handler()
        return await idempotency.run(
            f"{request.method}:{request.url.path}",
            context.idempotency_key,
            await request_payload(request),
            context.request_id,
            handler,
        )

    @router.post("/checkout_sessions", status_code=201, response_model=CheckoutSession)
    async def create_checkout_session(
        request: Request,
        body: CheckoutSessionCreateRequest,
        context: ACPRequestContext = Depends(headers),
    ):
        async def handler() -> Response:
            session = await adapter.on_create_session(body)
            return acp_json_response(session, 201, context)

        return await _idempotent(request, context, handler)

    @router.get("/checkout_sessions/{session_id}", response_model=CheckoutSession)
    async def get_checkout_session(
        session_id: str,
        context: ACPRequestContext = Depends(headers),
    ):
        session = await adapter.on_get_session(session_id)
        return acp_json_response(session, 200, context)

    @router.post("/checkout_sessions/{session_id}", response_model=CheckoutSession)
    async def update_checkout_session(
        request: Request,
        session_id: str,
        body: CheckoutSessionUpdateRequest,
        context: ACPRequestContext = Depends(headers),
    ):
        async def handler() -> Response:
            session = await adapter.on_update_session(session_id, body)
            return acp_json_response(session, 200, context)

        return await _idempotent(request, context, handler)

    @router.post(
        "/checkout_sessions/{session_id}/complete",
        response_model=CheckoutSessionWithOrder,
    )
    async def complete_checkout_session(
        request: Request,
        session_id: str,
        body: CheckoutSessionCompleteRequest,
        context: ACPRequestContext = Depends(headers),
    ):
        async def handler() -> Response:
            result = await adapter.on_complete_session(session_id, body)
            return acp_json_response(result, 200, context)

        return await _idempotent(request, context, handler)

    @router.post("/checkout_sessions/{session_id}/cancel", response_model=CheckoutSession)
    async def cancel_checkout_session(
        request: Request,
        session_id: str,
        context: ACPRequestContext = Depends(headers),
    ):
        async def handler() -> Response:
            session = await adapter.on_cancel_session(session_id)
            return acp_json_response(session, 200, context)

        return await _idempotent(request, context, handler)

    return router
