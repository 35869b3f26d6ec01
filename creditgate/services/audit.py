from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from creditgate.domain.models import AuditEvent
from creditgate.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

# Secrets, upstream tokens, PKCE material and prompt bodies never reach audit rows.
_REDACTED_KEYS = (
    "api_key",
    "authorization",
    "secret",
    "access_token",
    "refresh_token",
    "invitation_token",
    "verifier",
    "messages",
)


def _is_redacted(key: str) -> bool:
    lowered = key.lower()
    return any(part in lowered for part in _REDACTED_KEYS)


def sanitize_metadata(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            str(key): "[REDACTED]" if _is_redacted(str(key)) else sanitize_metadata(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    return value


def get_request_context(request: Request) -> dict[str, str | None]:
    return {
        "request_id": getattr(request.state, "request_id", None),
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


async def record_event(
    *,
    session: AsyncSession | None = None,
    tenant_id: str | None,
    actor_type: str,
    actor_id: str | None,
    event_type: str,
    outcome: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request_id: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    commit: bool = False,
) -> None:
    """Persist an audit row; failures are logged and never propagate.

    Without a session the event commits on its own connection, which is how
    events emitted after the request session has closed are written.
    """
    event = AuditEvent(
        occurred_at=datetime.now(timezone.utc),
        tenant_id=tenant_id,
        actor_type=actor_type,
        actor_id=actor_id,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_id,
        ip_address=ip_address,
        user_agent=user_agent,
        metadata_json=sanitize_metadata(metadata or {}),
        error_code=error_code,
    )
    if session is None:
        async with SessionLocal() as own_session:
            await _write(own_session, event, commit=True)
        return
    await _write(session, event, commit=commit)


async def _write(session: AsyncSession, event: AuditEvent, *, commit: bool) -> None:
    try:
        session.add(event)
        if commit:
            await session.commit()
    except SQLAlchemyError as exc:
        if commit:
            await session.rollback()
        logger.warning(
            "audit_event_write_failed event_type=%s request_id=%s",
            event.event_type,
            event.request_id,
            exc_info=exc,
        )
