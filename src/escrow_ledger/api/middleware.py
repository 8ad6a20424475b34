"""FastAPI middleware for request tracing, error handling, and CORS.

Middleware stack (applied bottom-up):
    1. RequestIDMiddleware — injects X-Request-ID into every request/response
    2. ErrorHandlerMiddleware — catches domain exceptions -> structured JSON errors
    3. CORSMiddleware — for browser-based back-office clients
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any

import structlog
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from escrow_ledger.domain.exceptions import (
    ConflictError,
    EscrowLedgerError,
    ForbiddenError,
    GatewayOutcomeUnknownError,
    GatewayTimeoutError,
    InputValidationError,
    InvalidStateTransitionError,
    NotFoundError,
    PaymentGatewayError,
    PreconditionFailedError,
    UnauthorizedError,
    WebhookNotConfiguredError,
    WebhookSignatureError,
)

if TYPE_CHECKING:
    from fastapi import FastAPI, Request, Response

logger = structlog.get_logger(__name__)

# Most specific first: WebhookSignatureError is an UnauthorizedError and
# the gateway errors narrow from timeout to unknown outcome to rejection.
_STATUS_CODES: list[tuple[type[EscrowLedgerError], int]] = [
    (InputValidationError, 400),
    (WebhookSignatureError, 400),
    (UnauthorizedError, 401),
    (ForbiddenError, 403),
    (NotFoundError, 404),
    (ConflictError, 409),
    (InvalidStateTransitionError, 409),
    (PreconditionFailedError, 412),
    (WebhookNotConfiguredError, 500),
    (GatewayTimeoutError, 504),
    (GatewayOutcomeUnknownError, 502),
    (PaymentGatewayError, 502),
]


def status_code_for(exc: EscrowLedgerError) -> int:
    for exc_type, status_code in _STATUS_CODES:
        if isinstance(exc, exc_type):
            return status_code
    return 400


def error_response(
    status_code: int, code: str, message: str, details: list[Any] | None = None
) -> JSONResponse:
    content: dict[str, Any] = {"error": code, "message": message}
    request_id = structlog.contextvars.get_contextvars().get("request_id")
    if request_id:
        content["request_id"] = request_id
    if details:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content)


# ---------------------------------------------------------------------------
# 1. Request ID Middleware
# ---------------------------------------------------------------------------
class RequestIDMiddleware(BaseHTTPMiddleware):
    """Inject a unique X-Request-ID into every request for log correlation."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


# ---------------------------------------------------------------------------
# 2. Error Handler Middleware
# ---------------------------------------------------------------------------
class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Catch domain exceptions and return structured JSON error responses."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        try:
            return await call_next(request)
        except EscrowLedgerError as exc:
            status_code = status_code_for(exc)
            log = logger.error if status_code >= 500 else logger.warning
            log("request.failed", code=exc.code, error=exc.message, status_code=status_code)
            details = exc.errors if isinstance(exc, InputValidationError) else None
            return error_response(status_code, exc.code, exc.message, details)
        except Exception as exc:
            logger.exception("unhandled.error", error=str(exc))
            return error_response(500, "INTERNAL_ERROR", "An unexpected error occurred")


async def _request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    logger.warning("request.invalid", errors=len(exc.errors()))
    details = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    return error_response(400, "VALIDATION_ERROR", "Request validation failed", details)


# ---------------------------------------------------------------------------
# Setup function
# ---------------------------------------------------------------------------
def setup_middleware(app: FastAPI) -> None:
    """Register all middleware on the FastAPI application.

    Order matters — middleware is applied bottom-up, so the last added
    middleware runs first.
    """
    # FastAPI handles body/query validation before our middleware sees it.
    app.add_exception_handler(RequestValidationError, _request_validation_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(ErrorHandlerMiddleware)

    # Outermost, so error responses carry the request id too.
    app.add_middleware(RequestIDMiddleware)
