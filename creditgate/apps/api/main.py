from __future__ import annotations

from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from creditgate.apps.api.errors import (
    gateway_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from creditgate.apps.api.response import API_VERSION
from creditgate.apps.api.routes.health import router as health_router
from creditgate.apps.api.routes.messages import router as messages_router
from creditgate.apps.api.routes.quota import router as quota_router
from creditgate.core.config import get_settings
from creditgate.core.errors import GatewayError
from creditgate.core.logging import configure_logging
from creditgate.services.credits import GatewayConfig


def create_app(gateway_config: GatewayConfig | None = None) -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title=settings.app_name)
    # Plan and weight tables are built once and never mutated at runtime.
    app.state.gateway_config = gateway_config or GatewayConfig()

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(GatewayError)
    async def _gateway_exception_handler(request: Request, exc: GatewayError):
        return await gateway_exception_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(messages_router, prefix=f"/{API_VERSION}")
    app.include_router(quota_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
