from __future__ import annotations

import logging
import time
from typing import Callable

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from creditgate.core.errors import UsageAlreadyInitializedError, UsageRecordingError
from creditgate.domain.models import UsageAggregate, UsageRecord
from creditgate.services.credits.pricing import DEFAULT_CREDIT_MODEL, CreditModel, ModelClass, TokenUsage


logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class UsageLedger:
    # Append-only usage history plus a lifetime aggregate kept in the same transaction.

    def __init__(
        self,
        *,
        credit_model: CreditModel = DEFAULT_CREDIT_MODEL,
        time_provider: Callable[[], int] | None = None,
    ) -> None:
        self._credit_model = credit_model
        self._time_provider = time_provider or _now_ms

    async def initialize(
        self,
        session: AsyncSession,
        credential_id: str,
        *,
        commit: bool = True,
    ) -> UsageAggregate:
        # Zeroed aggregate row created alongside credential issuance.
        existing = await session.get(UsageAggregate, credential_id)
        if existing is not None:
            raise UsageAlreadyInitializedError(f"Usage already initialized for credential {credential_id}")
        aggregate = _zero_aggregate(credential_id)
        session.add(aggregate)
        try:
            if commit:
                await session.commit()
            else:
                await session.flush()
        except IntegrityError as exc:
            await session.rollback()
            raise UsageAlreadyInitializedError(
                f"Usage already initialized for credential {credential_id}"
            ) from exc
        return aggregate

    async def record(
        self,
        session: AsyncSession,
        *,
        credential_id: str,
        model: str,
        usage: TokenUsage,
        model_class: ModelClass | None = None,
    ) -> UsageRecord:
        # Price the usage, append the immutable record, and bump the aggregate atomically.
        priced = self._credit_model.price(model_class or model, usage)
        timestamp_ms = self._time_provider()
        row = UsageRecord(
            credential_id=credential_id,
            timestamp_ms=timestamp_ms,
            model=model,
            model_class=priced.model_class.value,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cache_write_tokens=usage.cache_write_tokens,
            cache_read_tokens=usage.cache_read_tokens,
            total_tokens=priced.total_tokens,
            cost=float(priced.cost_usd),
            credits_used=priced.credits,
        )
        try:
            session.add(row)
            # Increment in SQL so concurrent recorders never lose an update.
            result = await session.execute(
                update(UsageAggregate)
                .where(UsageAggregate.credential_id == credential_id)
                .values(
                    input_tokens=UsageAggregate.input_tokens + usage.input_tokens,
                    output_tokens=UsageAggregate.output_tokens + usage.output_tokens,
                    cache_write_tokens=UsageAggregate.cache_write_tokens + usage.cache_write_tokens,
                    cache_read_tokens=UsageAggregate.cache_read_tokens + usage.cache_read_tokens,
                    total_tokens=UsageAggregate.total_tokens + priced.total_tokens,
                    total_cost=UsageAggregate.total_cost + float(priced.cost_usd),
                    credits_used=UsageAggregate.credits_used + priced.credits,
                    request_count=UsageAggregate.request_count + 1,
                    last_request_at_ms=timestamp_ms,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                # Credentials issued before aggregates existed get one lazily.
                logger.warning("usage_aggregate_missing credential_id=%s", credential_id)
                aggregate = _zero_aggregate(credential_id)
                aggregate.input_tokens = usage.input_tokens
                aggregate.output_tokens = usage.output_tokens
                aggregate.cache_write_tokens = usage.cache_write_tokens
                aggregate.cache_read_tokens = usage.cache_read_tokens
                aggregate.total_tokens = priced.total_tokens
                aggregate.total_cost = float(priced.cost_usd)
                aggregate.credits_used = priced.credits
                aggregate.request_count = 1
                aggregate.last_request_at_ms = timestamp_ms
                session.add(aggregate)
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            raise UsageRecordingError(f"Failed to record usage for credential {credential_id}") from exc
        logger.info(
            "usage_recorded credential_id=%s model_class=%s credits=%s tokens=%s",
            credential_id,
            priced.model_class.value,
            priced.credits,
            priced.total_tokens,
        )
        return row

    async def lifetime(self, session: AsyncSession, credential_id: str) -> UsageAggregate | None:
        # Reporting only; admission reads the rolling window instead.
        return await session.get(UsageAggregate, credential_id)

    async def purge(self, session: AsyncSession, credential_id: str, *, commit: bool = True) -> int:
        # Hard delete of every ledger row for a credential.
        result = await session.execute(delete(UsageRecord).where(UsageRecord.credential_id == credential_id))
        await session.execute(delete(UsageAggregate).where(UsageAggregate.credential_id == credential_id))
        if commit:
            await session.commit()
        deleted = int(result.rowcount or 0)
        logger.info("usage_purged credential_id=%s rows=%s", credential_id, deleted)
        return deleted

    async def history(
        self,
        session: AsyncSession,
        credential_id: str,
        *,
        limit: int = 100,
    ) -> list[UsageRecord]:
        # Newest-first slice of raw history for operator inspection.
        rows = await session.execute(
            select(UsageRecord)
            .where(UsageRecord.credential_id == credential_id)
            .order_by(UsageRecord.timestamp_ms.desc(), UsageRecord.id.desc())
            .limit(max(1, limit))
        )
        return list(rows.scalars().all())


def _zero_aggregate(credential_id: str) -> UsageAggregate:
    return UsageAggregate(
        credential_id=credential_id,
        input_tokens=0,
        output_tokens=0,
        cache_write_tokens=0,
        cache_read_tokens=0,
        total_tokens=0,
        total_cost=0.0,
        credits_used=0,
        request_count=0,
        last_request_at_ms=None,
    )
