from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.ext.asyncio import AsyncSession

from creditgate.apps.api.deps import (
    CredentialPrincipal,
    get_credential_principal,
    get_db,
    get_gateway_config,
    parse_message_body,
)
from creditgate.apps.api.rate_limit import enforce_request_rate
from creditgate.core.errors import (
    AuthenticationError,
    GatewayError,
    ModelNotAllowedError,
    RequestRateExceededError,
    UsageRecordingError,
)
from creditgate.persistence.db import SessionLocal
from creditgate.services.audit import get_request_context, record_event
from creditgate.services.credits import GatewayConfig, ModelClass, TokenUsage, classify_model
from creditgate.services.quota import build_quota_error, get_quota_service, quota_headers
from creditgate.services.upstream.client import UpstreamResponse, forward_messages
from creditgate.services.upstream.tokens import get_token_manager, has_connection
from creditgate.services.usage.ledger import UsageLedger


logger = logging.getLogger(__name__)

router = APIRouter(tags=["messages"])

# Strong references to forward tasks that may outlive their request.
_inflight: set[asyncio.Task] = set()


async def _record_usage(
    *,
    ledger: UsageLedger,
    credential_id: str,
    tenant_id: str,
    model: str,
    model_class: ModelClass,
    usage: TokenUsage,
    request_id: str | None,
) -> None:
    # Recording uses its own session so it survives the request scope closing.
    async with SessionLocal() as session:
        try:
            await ledger.record(
                session,
                credential_id=credential_id,
                model=model,
                usage=usage,
                model_class=model_class,
            )
        except UsageRecordingError as exc:
            # The upstream already served the request; under-bill rather than fail it.
            logger.error(
                "usage_record_failed credential_id=%s request_id=%s",
                credential_id,
                request_id,
                exc_info=exc,
            )
            await record_event(
                tenant_id=tenant_id,
                actor_type="system",
                actor_id=None,
                event_type="usage.record.failed",
                outcome="failure",
                resource_type="credential",
                resource_id=credential_id,
                request_id=request_id,
                metadata={"model": model, "total_tokens": usage.total_tokens},
                error_code="USAGE_RECORD_FAILED",
            )


async def _forward_and_record(
    *,
    payload: dict,
    access_token: str,
    ledger: UsageLedger,
    principal: CredentialPrincipal,
    model_class: ModelClass,
    request_id: str | None,
) -> UpstreamResponse:
    upstream = await forward_messages(payload, access_token)
    usage = upstream.usage
    if upstream.ok and usage is not None:
        await _record_usage(
            ledger=ledger,
            credential_id=principal.credential_id,
            tenant_id=principal.tenant_id,
            model=str(upstream.body.get("model") or payload["model"]),
            model_class=model_class,
            usage=TokenUsage.from_upstream(usage),
            request_id=request_id,
        )
    elif upstream.ok:
        logger.warning("upstream_usage_missing credential_id=%s", principal.credential_id)
    return upstream


def _attach_headers(exc: GatewayError, headers: dict[str, str]) -> None:
    # Error-specific headers such as Retry-After win over the quota snapshot.
    for name, value in headers.items():
        exc.headers.setdefault(name, value)


def _forward_done(task: asyncio.Task) -> None:
    _inflight.discard(task)
    if task.cancelled():
        return
    # Retrieve the outcome so a detached task never reports an unobserved error.
    exc = task.exception()
    if exc is not None:
        logger.info("upstream_forward_failed error=%s", type(exc).__name__)


@router.post("/messages")
async def create_message(
    request: Request,
    principal: CredentialPrincipal = Depends(get_credential_principal),
    db: AsyncSession = Depends(get_db),
    config: GatewayConfig = Depends(get_gateway_config),
) -> Response:
    payload = await parse_message_body(request)
    request_ctx = get_request_context(request)

    if not await has_connection(db, principal.tenant_id):
        raise AuthenticationError(
            f"Tenant {principal.tenant_id} has no upstream account connected. "
            "Please reconnect the upstream account."
        )

    plan = config.plan_for(principal.plan)
    model_class = classify_model(payload["model"])
    if not plan.allows(model_class):
        raise ModelNotAllowedError(
            f"Model {payload['model']} is not available on the {plan.name.value} plan"
        )

    quota_service = get_quota_service()
    try:
        extra_headers = await enforce_request_rate(
            request=request,
            credential_id=principal.credential_id,
            tenant_id=principal.tenant_id,
            plan=plan,
        )
    except RequestRateExceededError as exc:
        decision = await quota_service.decide(db, credential_id=principal.credential_id, plan=plan)
        _attach_headers(exc, quota_headers(decision))
        raise

    decision = await quota_service.decide(db, credential_id=principal.credential_id, plan=plan)
    if not decision.allowed:
        await record_event(
            session=db,
            tenant_id=principal.tenant_id,
            actor_type="credential",
            actor_id=principal.credential_id,
            event_type="quota.blocked",
            outcome="failure",
            resource_type="quota",
            resource_id=principal.credential_id,
            request_id=request_ctx["request_id"],
            ip_address=request_ctx["ip_address"],
            user_agent=request_ctx["user_agent"],
            metadata={
                "plan": plan.name.value,
                "credits_used": decision.credits_used,
                "limit": decision.effective_limit,
            },
            error_code="QUOTA_EXCEEDED",
            commit=True,
        )
        error = build_quota_error(decision)
        _attach_headers(error, extra_headers)
        raise error

    headers = quota_headers(decision)
    headers.update(extra_headers)
    try:
        access_token = await get_token_manager().ensure_valid(db, principal.tenant_id)
        # Release the pooled connection before the long upstream wait.
        await db.close()

        ledger = UsageLedger(credit_model=config.credit_model)
        task = asyncio.ensure_future(
            _forward_and_record(
                payload=payload,
                access_token=access_token,
                ledger=ledger,
                principal=principal,
                model_class=model_class,
                request_id=request_ctx["request_id"],
            )
        )
        _inflight.add(task)
        task.add_done_callback(_forward_done)
        # A caller disconnect cancels the handler but not the upstream call or its billing.
        upstream = await asyncio.shield(task)
    except GatewayError as exc:
        _attach_headers(exc, headers)
        raise

    if isinstance(upstream.body, (dict, list)):
        return JSONResponse(content=upstream.body, status_code=upstream.status_code, headers=headers)
    return Response(
        content=str(upstream.body),
        status_code=upstream.status_code,
        media_type=upstream.content_type,
        headers=headers,
    )
