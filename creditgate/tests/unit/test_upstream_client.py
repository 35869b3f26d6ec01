from __future__ import annotations

import httpx
import pytest

from creditgate.core.errors import UpstreamCallError, UpstreamTimeoutError
from creditgate.services.upstream import client as upstream_client


class _StubResponse:
    def __init__(self, status_code: int, payload: object, content_type: str = "application/json") -> None:
        self.status_code = status_code
        self._payload = payload
        self.headers = {"content-type": content_type}
        self.text = str(payload)

    def json(self) -> object:
        if isinstance(self._payload, str):
            raise ValueError("not json")
        return self._payload


def _stub_client(monkeypatch, *, response=None, error=None, seen=None):  # type: ignore[no-untyped-def]
    class _StubClient:
        def __init__(self, *args, **kwargs) -> None:
            if seen is not None:
                seen["timeout"] = kwargs.get("timeout")

        async def __aenter__(self):  # type: ignore[no-untyped-def]
            return self

        async def __aexit__(self, *exc_info) -> None:
            return None

        async def post(self, url, json=None, headers=None):  # type: ignore[no-untyped-def]
            if seen is not None:
                seen.update({"url": url, "json": json, "headers": headers})
            if error is not None:
                raise error
            return response

    monkeypatch.setattr(upstream_client.httpx, "AsyncClient", _StubClient)


async def test_forward_substitutes_upstream_token(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    seen: dict = {}
    body = {"id": "msg_1", "usage": {"input_tokens": 3, "output_tokens": 4}}
    _stub_client(monkeypatch, response=_StubResponse(200, body), seen=seen)

    result = await upstream_client.forward_messages({"model": "claude-haiku-4"}, "upstream-access")

    assert result.ok
    assert result.usage == {"input_tokens": 3, "output_tokens": 4}
    assert seen["url"] == "https://upstream.test/v1/messages"
    assert seen["headers"]["authorization"] == "Bearer upstream-access"
    assert seen["headers"]["anthropic-version"] == "2023-06-01"
    assert "oauth-2025-04-20" in seen["headers"]["anthropic-beta"]
    assert seen["timeout"] == 600.0


async def test_forward_passes_through_error_status(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    _stub_client(monkeypatch, response=_StubResponse(529, {"type": "error"}))
    result = await upstream_client.forward_messages({"model": "x"}, "tok")
    assert not result.ok
    assert result.usage is None
    assert result.status_code == 529


async def test_forward_timeout_maps_to_timeout_error(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    _stub_client(monkeypatch, error=httpx.ReadTimeout("slow"))
    with pytest.raises(UpstreamTimeoutError):
        await upstream_client.forward_messages({"model": "x"}, "tok")


async def test_forward_transport_error_maps_to_call_error(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    _stub_client(monkeypatch, error=httpx.ConnectError("refused"))
    with pytest.raises(UpstreamCallError) as excinfo:
        await upstream_client.forward_messages({"model": "x"}, "tok")
    assert not isinstance(excinfo.value, UpstreamTimeoutError)
