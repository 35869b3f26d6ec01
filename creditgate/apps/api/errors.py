from __future__ import annotations

import logging

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from creditgate.apps.api.response import error_body, get_request_id
from creditgate.core.errors import (
    AuthenticationError,
    CredentialStateError,
    GatewayError,
    MalformedRequestError,
    ModelNotAllowedError,
    QuotaExceededError,
    RateLimitUnavailableError,
    RequestRateExceededError,
    UpstreamCallError,
    UpstreamCredentialError,
    UpstreamTimeoutError,
)


logger = logging.getLogger(__name__)

# Most specific classes first; the first isinstance match wins.
_GATEWAY_ERROR_MAP: tuple[tuple[type[GatewayError], int, str], ...] = (
    (AuthenticationError, 401, "authentication_error"),
    (UpstreamCredentialError, 401, "authentication_error"),
    (MalformedRequestError, 400, "invalid_request_error"),
    (CredentialStateError, 400, "invalid_request_error"),
    (ModelNotAllowedError, 403, "permission_error"),
    (QuotaExceededError, 429, "rate_limit_error"),
    (RequestRateExceededError, 429, "rate_limit_error"),
    (RateLimitUnavailableError, 503, "api_error"),
    (UpstreamTimeoutError, 504, "timeout_error"),
    (UpstreamCallError, 502, "api_error"),
)

_HTTP_ERROR_TYPES: dict[int, str] = {
    400: "invalid_request_error",
    401: "authentication_error",
    403: "permission_error",
    404: "not_found_error",
    405: "invalid_request_error",
    413: "request_too_large",
    422: "invalid_request_error",
    429: "rate_limit_error",
}


def _classify(exc: GatewayError) -> tuple[int, str]:
    for error_cls, status_code, error_type in _GATEWAY_ERROR_MAP:
        if isinstance(exc, error_cls):
            return status_code, error_type
    return 500, "api_error"


def _public_message(exc: GatewayError, status_code: int) -> str:
    if status_code == 401 and isinstance(exc, UpstreamCredentialError):
        # Refresh failures surface as a reconnect prompt, never as raw upstream detail.
        return "Upstream token not found or expired. Please reconnect the upstream account."
    return str(exc) or "Request failed"


async def gateway_exception_handler(request: Request, exc: GatewayError) -> JSONResponse:
    status_code, error_type = _classify(exc)
    headers = dict(exc.headers)
    extra: dict[str, object] = {}
    if isinstance(exc, QuotaExceededError):
        extra["quota_exceeded"] = exc.detail
    if status_code == 401:
        headers.setdefault("WWW-Authenticate", "Bearer")
    if status_code >= 500:
        logger.warning(
            "gateway_error status=%s type=%s request_id=%s",
            status_code,
            type(exc).__name__,
            get_request_id(request),
        )
    payload = error_body(error_type, _public_message(exc, status_code), **extra)
    return JSONResponse(content=payload, status_code=status_code, headers=headers or None)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    error_type = _HTTP_ERROR_TYPES.get(exc.status_code, "api_error")
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return JSONResponse(
        content=error_body(error_type, message),
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        content=error_body("invalid_request_error", "Validation error", details=exc.errors()),
        status_code=400,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error body.
    logger.exception("unhandled_error request_id=%s", get_request_id(request), exc_info=exc)
    return JSONResponse(content=error_body("api_error", "Internal server error"), status_code=500)
