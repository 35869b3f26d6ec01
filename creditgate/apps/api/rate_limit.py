from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import math
import time
from typing import Callable

from fastapi import Request
from redis.asyncio import Redis

from creditgate.core.config import get_settings
from creditgate.core.errors import RateLimitUnavailableError, RequestRateExceededError
from creditgate.services.credits.plans import PlanLimits


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BucketConfig:
    # Sustained refill rate with a burst capacity.
    rps: float
    burst: int


@dataclass(frozen=True)
class PlanRateConfig:
    # Credential and tenant buckets are enforced together.
    credential: BucketConfig
    tenant: BucketConfig


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    scope: str | None
    retry_after_ms: int
    credential_remaining: float | None = None
    tenant_remaining: float | None = None


_TOKEN_BUCKET_LUA = r"""
local now_ms = tonumber(ARGV[1])
local key_rate = tonumber(ARGV[2])
local key_burst = tonumber(ARGV[3])
local key_cost = tonumber(ARGV[4])
local key_ttl = tonumber(ARGV[5])
local tenant_rate = tonumber(ARGV[6])
local tenant_burst = tonumber(ARGV[7])
local tenant_cost = tonumber(ARGV[8])
local tenant_ttl = tonumber(ARGV[9])

local function get_tokens(key, rate, burst)
  local data = redis.call("HMGET", key, "tokens", "ts")
  local tokens = tonumber(data[1])
  local ts = tonumber(data[2])
  if tokens == nil then
    tokens = burst
    ts = now_ms
  end
  if now_ms < ts then
    ts = now_ms
  end
  local delta = (now_ms - ts) / 1000.0
  return math.min(burst, tokens + delta * rate)
end

local function retry_after_ms(tokens, rate, cost)
  if tokens >= cost then
    return 0
  end
  if rate <= 0 then
    return 1000
  end
  return math.ceil(((cost - tokens) / rate) * 1000)
end

local key_tokens = get_tokens(KEYS[1], key_rate, key_burst)
local tenant_tokens = get_tokens(KEYS[2], tenant_rate, tenant_burst)

local key_allowed = key_tokens >= key_cost
local tenant_allowed = tenant_tokens >= tenant_cost
local allowed = key_allowed and tenant_allowed

local key_retry = retry_after_ms(key_tokens, key_rate, key_cost)
local tenant_retry = retry_after_ms(tenant_tokens, tenant_rate, tenant_cost)

if allowed then
  key_tokens = key_tokens - key_cost
  tenant_tokens = tenant_tokens - tenant_cost
end

redis.call("HSET", KEYS[1], "tokens", key_tokens, "ts", now_ms)
redis.call("HSET", KEYS[2], "tokens", tenant_tokens, "ts", now_ms)
redis.call("EXPIRE", KEYS[1], key_ttl)
redis.call("EXPIRE", KEYS[2], tenant_ttl)

return {allowed and 1 or 0, key_allowed and 1 or 0, tostring(key_tokens), key_retry, tenant_allowed and 1 or 0, tostring(tenant_tokens), tenant_retry}
"""


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


def _retry_after_ms(tokens: float, *, rate: float, cost: int) -> int:
    # Token deficit divided by the sustained rate.
    if tokens >= cost:
        return 0
    if rate <= 0:
        return 1000
    return int(math.ceil(((cost - tokens) / rate) * 1000))


def _ttl_seconds(rate: float, burst: int) -> int:
    # Expire idle buckets after a conservative refill window.
    if rate <= 0:
        return max(1, burst)
    return max(1, int(math.ceil((burst / rate) * 2)))


def limits_for_plan(plan: PlanLimits) -> PlanRateConfig:
    settings = get_settings()
    rpm = max(1, plan.requests_per_minute)
    tenant_rpm = max(rpm, int(math.ceil(rpm * settings.rl_tenant_multiplier)))
    return PlanRateConfig(
        credential=BucketConfig(rps=rpm / 60.0, burst=rpm),
        tenant=BucketConfig(rps=tenant_rpm / 60.0, burst=tenant_rpm),
    )


async def _get_redis() -> Redis:
    # Cache Redis connections per event loop.
    global _redis_pool, _redis_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = Redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            _redis_loop = current_loop
    return _redis_pool


class RateLimiter:
    def __init__(self, *, time_provider: Callable[[], float] | None = None) -> None:
        self._time_provider = time_provider or time.time

    async def check(
        self,
        *,
        credential_id: str,
        tenant_id: str,
        limits: PlanRateConfig,
        cost: int = 1,
    ) -> RateLimitDecision:
        # Evaluate the credential and tenant buckets atomically in Redis.
        settings = get_settings()
        prefix = settings.rl_redis_prefix
        credential_bucket = f"{prefix}:credential:{credential_id}"
        tenant_bucket = f"{prefix}:tenant:{tenant_id}"
        now_ms = int(self._time_provider() * 1000)

        redis = await _get_redis()
        result = await redis.eval(
            _TOKEN_BUCKET_LUA,
            2,
            credential_bucket,
            tenant_bucket,
            now_ms,
            limits.credential.rps,
            limits.credential.burst,
            cost,
            _ttl_seconds(limits.credential.rps, limits.credential.burst),
            limits.tenant.rps,
            limits.tenant.burst,
            cost,
            _ttl_seconds(limits.tenant.rps, limits.tenant.burst),
        )

        allowed = int(result[0]) == 1
        credential_allowed = int(result[1]) == 1
        credential_tokens = float(result[2])
        credential_retry = int(float(result[3]))
        tenant_allowed = int(result[4]) == 1
        tenant_tokens = float(result[5])
        tenant_retry = int(float(result[6]))

        if allowed:
            return RateLimitDecision(
                allowed=True,
                scope=None,
                retry_after_ms=0,
                credential_remaining=credential_tokens,
                tenant_remaining=tenant_tokens,
            )

        scope = "credential"
        retry_after_ms = credential_retry
        if credential_allowed and not tenant_allowed:
            scope = "tenant"
            retry_after_ms = tenant_retry
        elif not credential_allowed and not tenant_allowed and tenant_retry > credential_retry:
            scope = "tenant"
            retry_after_ms = tenant_retry
        return RateLimitDecision(
            allowed=False,
            scope=scope,
            retry_after_ms=retry_after_ms,
            credential_remaining=credential_tokens,
            tenant_remaining=tenant_tokens,
        )


_rate_limiter: RateLimiter | None = None


def _get_rate_limiter() -> RateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter


def reset_rate_limiter_state() -> None:
    # Reset cached Redis connections for deterministic test setup.
    global _rate_limiter, _redis_pool, _redis_loop
    _rate_limiter = None
    _redis_pool = None
    _redis_loop = None


def _throttle_error(decision: RateLimitDecision, plan: PlanLimits) -> RequestRateExceededError:
    retry_after_s = max(1, int(math.ceil(decision.retry_after_ms / 1000.0)))
    return RequestRateExceededError(
        f"Request rate exceeded: {plan.requests_per_minute} requests per minute allowed on the "
        f"{plan.name.value} plan. Retry in {retry_after_s}s.",
        retry_after_s=retry_after_s,
        headers={
            "Retry-After": str(retry_after_s),
            "X-RateLimit-Scope": decision.scope or "unknown",
        },
    )


async def enforce_request_rate(
    *,
    request: Request,
    credential_id: str,
    tenant_id: str,
    plan: PlanLimits,
) -> dict[str, str]:
    # Returns headers to attach; raises when the caller must back off.
    settings = get_settings()
    if not settings.rate_limit_enabled:
        return {}
    limiter = _get_rate_limiter()
    try:
        decision = await limiter.check(
            credential_id=credential_id,
            tenant_id=tenant_id,
            limits=limits_for_plan(plan),
        )
    except Exception as exc:  # noqa: BLE001 - guard against Redis connectivity failures
        if settings.rl_fail_mode.lower() == "closed":
            raise RateLimitUnavailableError("Rate limiting unavailable") from exc
        logger.warning("rate_limit_degraded path=%s", request.url.path)
        return {"X-RateLimit-Status": "degraded"}

    if decision.allowed:
        return {}
    logger.info(
        "request_rate_limited credential_id=%s scope=%s retry_after_ms=%s",
        credential_id,
        decision.scope,
        decision.retry_after_ms,
    )
    raise _throttle_error(decision, plan)
