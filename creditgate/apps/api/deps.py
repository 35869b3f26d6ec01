from __future__ import annotations

import json
import logging
from typing import Any, AsyncGenerator

from fastapi import Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from creditgate.core.config import get_settings
from creditgate.core.errors import AuthenticationError, MalformedRequestError
from creditgate.domain.models import Tenant
from creditgate.persistence.db import get_session
from creditgate.services.audit import get_request_context, record_event
from creditgate.services.auth.credentials import resolve_credential
from creditgate.services.credits import GatewayConfig


logger = logging.getLogger(__name__)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def get_gateway_config(request: Request) -> GatewayConfig:
    return request.app.state.gateway_config


class CredentialPrincipal(BaseModel):
    # Authenticated caller; tenant_id is the owner whose plan and upstream account are used.
    credential_id: str
    tenant_id: str
    plan: str


def extract_secret(request: Request) -> str | None:
    # Accept `Authorization: Bearer <secret>` or the upstream-style `x-api-key` header.
    settings = get_settings()
    header_value = request.headers.get(settings.auth_api_key_header)
    if header_value:
        parts = header_value.split()
        if len(parts) == 2 and parts[0].lower() == "bearer":
            return parts[1]
        return None
    alt_value = request.headers.get(settings.auth_alt_key_header)
    return alt_value.strip() if alt_value else None


async def _audit_auth_failure(request: Request, reason: str) -> None:
    request_ctx = get_request_context(request)
    await record_event(
        tenant_id=None,
        actor_type="anonymous",
        actor_id=None,
        event_type="auth.access.failure",
        outcome="failure",
        resource_type="credential",
        request_id=request_ctx["request_id"],
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
        metadata={"path": request.url.path, "reason": reason},
        error_code="AUTH_UNAUTHORIZED",
    )


async def get_credential_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> CredentialPrincipal:
    secret = extract_secret(request)
    if not secret:
        await _audit_auth_failure(request, "missing")
        raise AuthenticationError("Missing or invalid authorization header")

    credential = await resolve_credential(db, secret)
    if credential is None or not credential.is_active:
        await _audit_auth_failure(request, "invalid")
        raise AuthenticationError("Invalid API key")

    tenant = await db.get(Tenant, credential.tenant_id)
    if tenant is None:
        await _audit_auth_failure(request, "tenant_missing")
        raise AuthenticationError("Invalid API key")

    request.state.credential_id = credential.id
    return CredentialPrincipal(
        credential_id=credential.id,
        tenant_id=tenant.id,
        plan=tenant.plan,
    )


async def parse_message_body(request: Request) -> dict[str, Any]:
    # Reject malformed bodies before any quota read or upstream call.
    raw = await request.body()
    if not raw:
        raise MalformedRequestError("Request body is required")
    try:
        payload = json.loads(raw)
    except ValueError as exc:
        raise MalformedRequestError("Request body must be valid JSON") from exc
    if not isinstance(payload, dict):
        raise MalformedRequestError("Request body must be a JSON object")
    model = payload.get("model")
    if not isinstance(model, str) or not model.strip():
        raise MalformedRequestError("model: field required")
    if payload.get("stream"):
        raise MalformedRequestError("stream: streaming responses are not supported by this gateway")
    return payload
