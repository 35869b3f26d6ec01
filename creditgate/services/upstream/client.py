from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

import httpx

from creditgate.core.config import get_settings
from creditgate.core.errors import UpstreamCallError, UpstreamTimeoutError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UpstreamResponse:
    status_code: int
    body: Any
    content_type: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def usage(self) -> dict[str, Any] | None:
        if isinstance(self.body, dict) and isinstance(self.body.get("usage"), dict):
            return self.body["usage"]
        return None


def build_upstream_headers(access_token: str) -> dict[str, str]:
    # The caller's own credential never reaches the upstream.
    settings = get_settings()
    return {
        "authorization": f"Bearer {access_token}",
        "anthropic-version": settings.upstream_api_version,
        "anthropic-beta": settings.upstream_beta_flags,
        "content-type": "application/json",
    }


async def forward_messages(payload: dict[str, Any], access_token: str) -> UpstreamResponse:
    settings = get_settings()
    url = f"{settings.upstream_base_url.rstrip('/')}{settings.upstream_messages_path}"
    timeout = settings.upstream_timeout_ms / 1000
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.post(url, json=payload, headers=build_upstream_headers(access_token))
    except httpx.TimeoutException as exc:
        logger.warning("upstream_call_timeout timeout_ms=%s", settings.upstream_timeout_ms)
        raise UpstreamTimeoutError("Upstream request timed out") from exc
    except httpx.HTTPError as exc:
        logger.warning("upstream_call_failed error=%s", type(exc).__name__)
        raise UpstreamCallError("Upstream request failed") from exc

    content_type = response.headers.get("content-type", "application/json")
    try:
        body: Any = response.json()
    except ValueError:
        body = response.text
    if response.status_code >= 400:
        logger.info("upstream_call_error_status status=%s", response.status_code)
    return UpstreamResponse(status_code=response.status_code, body=body, content_type=content_type)
