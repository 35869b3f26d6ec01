from __future__ import annotations

import pytest
from starlette.requests import Request

from creditgate.apps.api import rate_limit
from creditgate.core.config import get_settings
from creditgate.core.errors import RateLimitUnavailableError, RequestRateExceededError
from creditgate.services.credits import DEFAULT_PLANS, PlanName


PRO = DEFAULT_PLANS[PlanName.PRO]


def _make_request(path: str = "/v1/messages") -> Request:
    scope = {
        "type": "http",
        "method": "POST",
        "path": path,
        "scheme": "http",
        "server": ("test", 80),
        "client": ("test", 1234),
        "headers": [],
        "query_string": b"",
    }
    return Request(scope)


class _FakeRedis:
    def __init__(self, result: list | None = None, error: Exception | None = None) -> None:
        self.result = result
        self.error = error
        self.calls: list[tuple] = []

    async def eval(self, *args):  # type: ignore[no-untyped-def]
        self.calls.append(args)
        if self.error is not None:
            raise self.error
        return self.result


def _enable(monkeypatch, **overrides: str) -> None:  # type: ignore[no-untyped-def]
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "true")
    for key, value in overrides.items():
        monkeypatch.setenv(key, value)
    get_settings.cache_clear()
    rate_limit.reset_rate_limiter_state()


def _use_redis(monkeypatch, fake: _FakeRedis) -> None:  # type: ignore[no-untyped-def]
    async def _get_fake_redis() -> _FakeRedis:
        return fake

    monkeypatch.setattr(rate_limit, "_get_redis", _get_fake_redis)


def test_retry_after_computation() -> None:
    assert rate_limit._retry_after_ms(0.0, rate=2.0, cost=1) == 500
    assert rate_limit._retry_after_ms(2.0, rate=2.0, cost=1) == 0
    assert rate_limit._retry_after_ms(0.0, rate=0.0, cost=1) == 1000


def test_ttl_covers_two_refill_windows() -> None:
    assert rate_limit._ttl_seconds(1.0, 60) == 120
    assert rate_limit._ttl_seconds(0.0, 5) == 5


def test_plan_limits_scale_per_minute_rate() -> None:
    limits = rate_limit.limits_for_plan(PRO)
    assert limits.credential.burst == 50
    assert limits.credential.rps == pytest.approx(50 / 60)
    assert limits.tenant.burst == 200
    assert limits.tenant.rps == pytest.approx(200 / 60)


async def test_disabled_limiter_is_a_no_op(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    fake = _FakeRedis(error=AssertionError("redis must not be touched"))
    _use_redis(monkeypatch, fake)
    headers = await rate_limit.enforce_request_rate(
        request=_make_request(), credential_id="c1", tenant_id="t1", plan=PRO
    )
    assert headers == {}
    assert fake.calls == []


async def test_allowed_request_passes_bucket_keys(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    _enable(monkeypatch)
    fake = _FakeRedis(result=[1, 1, "49", 0, 1, "199", 0])
    _use_redis(monkeypatch, fake)

    headers = await rate_limit.enforce_request_rate(
        request=_make_request(), credential_id="c1", tenant_id="t1", plan=PRO
    )

    assert headers == {}
    args = fake.calls[0]
    assert args[1] == 2
    assert args[2] == "creditgate:rl:credential:c1"
    assert args[3] == "creditgate:rl:tenant:t1"


async def test_credential_bucket_exhaustion_raises(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    _enable(monkeypatch)
    _use_redis(monkeypatch, _FakeRedis(result=[0, 0, "0.2", 960, 1, "100", 0]))

    with pytest.raises(RequestRateExceededError) as excinfo:
        await rate_limit.enforce_request_rate(
            request=_make_request(), credential_id="c1", tenant_id="t1", plan=PRO
        )
    assert excinfo.value.headers["Retry-After"] == "1"
    assert excinfo.value.headers["X-RateLimit-Scope"] == "credential"


async def test_tenant_bucket_exhaustion_reports_tenant_scope(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    _enable(monkeypatch)
    _use_redis(monkeypatch, _FakeRedis(result=[0, 1, "10", 0, 0, "0", 2500]))

    with pytest.raises(RequestRateExceededError) as excinfo:
        await rate_limit.enforce_request_rate(
            request=_make_request(), credential_id="c1", tenant_id="t1", plan=PRO
        )
    assert excinfo.value.headers["X-RateLimit-Scope"] == "tenant"
    assert excinfo.value.retry_after_s == 3


async def test_redis_failure_fails_open_by_default(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    _enable(monkeypatch)
    _use_redis(monkeypatch, _FakeRedis(error=ConnectionError("down")))

    headers = await rate_limit.enforce_request_rate(
        request=_make_request(), credential_id="c1", tenant_id="t1", plan=PRO
    )
    assert headers == {"X-RateLimit-Status": "degraded"}


async def test_redis_failure_fails_closed_when_configured(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    _enable(monkeypatch, RL_FAIL_MODE="closed")
    _use_redis(monkeypatch, _FakeRedis(error=ConnectionError("down")))

    with pytest.raises(RateLimitUnavailableError):
        await rate_limit.enforce_request_rate(
            request=_make_request(), credential_id="c1", tenant_id="t1", plan=PRO
        )
