from __future__ import annotations

from typing import Any
from uuid import uuid4

from fastapi import Request


API_VERSION = "v1"


def get_request_id(request: Request) -> str:
    # Use existing request IDs when provided to preserve traceability.
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    header_request_id = request.headers.get("X-Request-Id")
    if header_request_id:
        request.state.request_id = header_request_id
        return header_request_id
    generated = str(uuid4())
    request.state.request_id = generated
    return generated


def error_body(error_type: str, message: str, **extra: Any) -> dict[str, Any]:
    # Upstream-compatible error shape so existing clients parse gateway errors unchanged.
    error: dict[str, Any] = {"type": error_type, "message": message}
    error.update({key: value for key, value in extra.items() if value is not None})
    return {"type": "error", "error": error}
