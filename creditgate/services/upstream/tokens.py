from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from creditgate.core.errors import AuthenticationError, CredentialStateError, UpstreamCredentialError
from creditgate.domain.models import Tenant, UpstreamCredential
from creditgate.services.audit import record_event
from creditgate.services.upstream.oauth import UpstreamTokens, exchange_code, refresh_tokens


logger = logging.getLogger(__name__)

Refresher = Callable[[str], Awaitable[UpstreamTokens]]
Exchanger = Callable[[str, str], Awaitable[UpstreamTokens]]


def _now_ms() -> int:
    return int(time.time() * 1000)


async def save_tokens(
    session: AsyncSession,
    tenant_id: str,
    tokens: UpstreamTokens,
    *,
    now_ms: int | None = None,
    commit: bool = True,
) -> UpstreamCredential:
    # Upsert keyed by tenant; a new exchange replaces any prior pair.
    stamp = now_ms if now_ms is not None else _now_ms()
    row = await session.get(UpstreamCredential, tenant_id)
    if row is None:
        row = UpstreamCredential(tenant_id=tenant_id)
        session.add(row)
    row.access_token = tokens.access_token
    row.refresh_token = tokens.refresh_token
    row.expires_at_ms = tokens.expires_at_ms
    row.updated_at_ms = stamp
    if commit:
        await session.commit()
    return row


async def get_tokens(session: AsyncSession, tenant_id: str) -> UpstreamCredential | None:
    # Always read the stored row, never a cached identity-map copy.
    result = await session.execute(
        select(UpstreamCredential)
        .where(UpstreamCredential.tenant_id == tenant_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def has_connection(session: AsyncSession, tenant_id: str) -> bool:
    result = await session.execute(
        select(UpstreamCredential.tenant_id).where(UpstreamCredential.tenant_id == tenant_id)
    )
    return result.scalar_one_or_none() is not None


async def connect_tenant(
    session: AsyncSession,
    tenant_id: str,
    code: str,
    verifier: str,
    *,
    exchanger: Exchanger | None = None,
) -> UpstreamCredential:
    # absent -> valid; reconnecting an existing tenant replaces its pair.
    if await session.get(Tenant, tenant_id) is None:
        raise CredentialStateError(f"Unknown tenant {tenant_id}")
    tokens = await (exchanger or exchange_code)(code, verifier)
    row = await save_tokens(session, tenant_id, tokens)
    logger.info("upstream_connected tenant_id=%s expires_at_ms=%s", tenant_id, tokens.expires_at_ms)
    await record_event(
        tenant_id=tenant_id,
        actor_type="operator",
        actor_id=None,
        event_type="upstream.connected",
        outcome="success",
        resource_type="upstream_credential",
        resource_id=tenant_id,
    )
    return row


async def disconnect(session: AsyncSession, tenant_id: str) -> bool:
    result = await session.execute(delete(UpstreamCredential).where(UpstreamCredential.tenant_id == tenant_id))
    await session.commit()
    removed = bool(result.rowcount)
    if removed:
        logger.info("upstream_disconnected tenant_id=%s", tenant_id)
        await record_event(
            tenant_id=tenant_id,
            actor_type="operator",
            actor_id=None,
            event_type="upstream.disconnected",
            outcome="success",
            resource_type="upstream_credential",
            resource_id=tenant_id,
        )
    return removed


def is_expired(row: UpstreamCredential, now_ms: int) -> bool:
    return row.expires_at_ms < now_ms


class TokenManager:
    # Check-then-refresh for tenant upstream tokens, one refresh in flight per tenant.

    def __init__(
        self,
        *,
        refresher: Refresher | None = None,
        time_provider: Callable[[], int] | None = None,
    ) -> None:
        self._refresher = refresher or refresh_tokens
        self._time_provider = time_provider or _now_ms
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, tenant_id: str) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[tenant_id] = lock
        return lock

    async def ensure_valid(self, session: AsyncSession, tenant_id: str) -> str:
        row = await get_tokens(session, tenant_id)
        if row is None:
            raise AuthenticationError(f"No upstream account connected for tenant {tenant_id}")
        if not is_expired(row, self._time_provider()):
            return row.access_token

        async with self._lock_for(tenant_id):
            # Another waiter may already have refreshed while this one queued.
            row = await get_tokens(session, tenant_id)
            if row is None:
                raise AuthenticationError(f"No upstream account connected for tenant {tenant_id}")
            if not is_expired(row, self._time_provider()):
                return row.access_token
            return await self._refresh(session, tenant_id, row.refresh_token)

    async def _refresh(self, session: AsyncSession, tenant_id: str, used_refresh_token: str) -> str:
        try:
            tokens = await self._refresher(used_refresh_token)
        except UpstreamCredentialError as exc:
            # Stored pair stays untouched so a later attempt can retry.
            logger.warning("upstream_token_refresh_failed tenant_id=%s", tenant_id)
            await record_event(
                tenant_id=tenant_id,
                actor_type="system",
                actor_id=None,
                event_type="upstream.token.refresh_failed",
                outcome="failure",
                resource_type="upstream_credential",
                resource_id=tenant_id,
                error_code="UPSTREAM_REFRESH_FAILED",
                metadata={"reason": str(exc)},
            )
            raise

        result = await session.execute(
            update(UpstreamCredential)
            .where(
                UpstreamCredential.tenant_id == tenant_id,
                UpstreamCredential.refresh_token == used_refresh_token,
            )
            .values(
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token,
                expires_at_ms=tokens.expires_at_ms,
                updated_at_ms=self._time_provider(),
            )
            .execution_options(synchronize_session=False)
        )
        updated = bool(result.rowcount)
        await session.commit()
        if not updated:
            # Lost the race to another process; trust whatever it stored.
            logger.info("upstream_token_refresh_superseded tenant_id=%s", tenant_id)
            current = await get_tokens(session, tenant_id)
            if current is None:
                raise AuthenticationError(f"No upstream account connected for tenant {tenant_id}")
            return current.access_token

        logger.info("upstream_token_refreshed tenant_id=%s", tenant_id)
        await record_event(
            tenant_id=tenant_id,
            actor_type="system",
            actor_id=None,
            event_type="upstream.token.refreshed",
            outcome="success",
            resource_type="upstream_credential",
            resource_id=tenant_id,
        )
        return tokens.access_token


_token_manager: TokenManager | None = None


def get_token_manager() -> TokenManager:
    global _token_manager
    if _token_manager is None:
        _token_manager = TokenManager()
    return _token_manager


def reset_token_manager() -> None:
    global _token_manager
    _token_manager = None
