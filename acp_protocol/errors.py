"""
Structured ACP errors and the FastAPI handlers that render them.

Services raise `ACPServiceError` from anywhere in request handling; the
handlers installed by `register_error_handlers()` turn it (and request
validation failures) into an `ACPErrorResponse` body.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence, Union

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from acp_protocol.models import ACPError, ACPErrorResponse

logger = logging.getLogger(__name__)


class ACPServiceError(Exception):
    """Raise inside a service to return a structured ACP error."""

    def __init__(
        self,
        status_code: int,
        error_type: str,
        code: str,
        message: str,
        param: Optional[str] = None,
    ):
        self.status_code = status_code
        self.error = ACPError(type=error_type, code=code, message=message, param=param)
        super().__init__(message)

    @classmethod
    def from_error(cls, status_code: int, error: ACPError) -> "ACPServiceError":
        return cls(status_code, error.type, error.code, error.message, error.param)

    @property
    def body(self) -> ACPErrorResponse:
        return ACPErrorResponse(error=self.error)


def apply_common_response_headers(
    response: Response,
    idempotency_key: Optional[str],
    request_id: Optional[str],
) -> None:
    if idempotency_key:
        response.headers["Idempotency-Key"] = idempotency_key
    if request_id:
        response.headers["Request-Id"] = request_id


def error_response(
    error: ACPServiceError,
    idempotency_key: Optional[str] = None,
    request_id: Optional[str] = None,
) -> JSONResponse:
    response = JSONResponse(
        status_code=error.status_code,
        content=error.body.model_dump(mode="json", exclude_none=True),
    )
    apply_common_response_headers(response, idempotency_key, request_id)
    return response


def json_path(loc: Sequence[Union[str, int]]) -> str:
    """Render a pydantic error location as a JSONPath, e.g. `$.items[0].quantity`."""
    path = "$"
    for part in loc:
        if isinstance(part, int):
            path += f"[{part}]"
        else:
            path += f".{part}"
    return path


def validation_error(errors: Sequence[dict]) -> ACPServiceError:
    """Convert the first pydantic validation error into an `invalid_request` error."""
    first = errors[0] if errors else {"type": "value_error", "loc": (), "msg": "Invalid request"}
    loc = list(first.get("loc", ()))
    if loc and loc[0] in ("body", "query", "path", "header"):
        loc = loc[1:]
    param = json_path(loc)
    if first.get("type") == "missing":
        return ACPServiceError(
            400, "invalid_request", "missing_field", f"Missing required field: {param}", param
        )
    return ACPServiceError(
        400, "invalid_request", "invalid_field", f"Invalid value for {param}: {first.get('msg')}", param
    )


def register_error_handlers(app: FastAPI) -> None:
    """Install handlers mapping ACP, validation and unexpected errors to ACP bodies."""

    @app.exception_handler(ACPServiceError)
    async def acp_error_handler(request: Request, exc: ACPServiceError):
        return error_response(
            exc,
            request.headers.get("Idempotency-Key"),
            request.headers.get("Request-Id"),
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return error_response(
            validation_error(exc.errors()),
            request.headers.get("Idempotency-Key"),
            request.headers.get("Request-Id"),
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return error_response(
            ACPServiceError(
                500,
                "service_unavailable",
                "internal_error",
                "An unexpected error occurred",
            ),
            request.headers.get("Idempotency-Key"),
            request.headers.get("Request-Id"),
        )
