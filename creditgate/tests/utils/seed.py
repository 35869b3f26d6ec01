from __future__ import annotations

import time
from uuid import uuid4

from creditgate.core.config import get_settings
from creditgate.domain.models import UpstreamCredential, UsageRecord
from creditgate.persistence.db import SessionLocal
from creditgate.services.auth.credentials import IssuedCredential, ensure_tenant, issue_credential


HOUR_MS = 60 * 60 * 1000


def now_ms() -> int:
    return int(time.time() * 1000)


async def create_tenant(*, plan: str = "free", email: str | None = None) -> str:
    tenant_id = f"t-{uuid4().hex[:12]}"
    async with SessionLocal() as session:
        await ensure_tenant(session, tenant_id, email=email, plan=plan)
        await session.commit()
    return tenant_id


async def create_test_credential(
    tenant_id: str,
    *,
    quota_percentage: int = 100,
    name: str = "test-credential",
) -> IssuedCredential:
    async with SessionLocal() as session:
        return await issue_credential(
            session,
            tenant_id=tenant_id,
            name=name,
            quota_percentage=quota_percentage,
            iterations=get_settings().credential_hash_iterations,
        )


async def connect_upstream(
    tenant_id: str,
    *,
    access_token: str = "upstream-access",
    refresh_token: str = "upstream-refresh",
    expires_at_ms: int | None = None,
) -> None:
    async with SessionLocal() as session:
        session.add(
            UpstreamCredential(
                tenant_id=tenant_id,
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at_ms=expires_at_ms if expires_at_ms is not None else now_ms() + HOUR_MS,
                updated_at_ms=now_ms(),
            )
        )
        await session.commit()


async def insert_usage(
    credential_id: str,
    *,
    credits: int,
    timestamp_ms: int,
    model: str = "claude-sonnet-4-20250514",
    model_class: str = "sonnet",
    tokens: int | None = None,
) -> None:
    # Direct history insert for window/decision fixtures; bypasses the aggregate.
    async with SessionLocal() as session:
        session.add(
            UsageRecord(
                credential_id=credential_id,
                timestamp_ms=timestamp_ms,
                model=model,
                model_class=model_class,
                input_tokens=tokens if tokens is not None else credits,
                output_tokens=0,
                cache_write_tokens=0,
                cache_read_tokens=0,
                total_tokens=tokens if tokens is not None else credits,
                cost=0.0,
                credits_used=credits,
            )
        )
        await session.commit()
