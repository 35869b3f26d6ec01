from __future__ import annotations

from dataclasses import dataclass
import base64
import hashlib
import logging
import secrets
import time
from typing import Any
from urllib.parse import urlencode

import httpx

from creditgate.core.config import get_settings
from creditgate.core.errors import UpstreamCredentialError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PkcePair:
    verifier: str
    challenge: str


@dataclass(frozen=True)
class UpstreamTokens:
    access_token: str
    refresh_token: str
    # Absolute expiry in epoch milliseconds.
    expires_at_ms: int


def _base64url_encode(raw: bytes) -> str:
    # Produce base64url strings without padding for PKCE.
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("utf-8")


def generate_pkce_verifier() -> str:
    return _base64url_encode(secrets.token_bytes(32))


def build_code_challenge(verifier: str) -> str:
    # S256 challenge derived from the verifier.
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return _base64url_encode(digest)


def generate_pkce() -> PkcePair:
    verifier = generate_pkce_verifier()
    return PkcePair(verifier=verifier, challenge=build_code_challenge(verifier))


def build_authorize_url(pkce: PkcePair) -> str:
    # The verifier doubles as the state value echoed back with the code.
    settings = get_settings()
    params = {
        "code": "true",
        "client_id": settings.oauth_client_id,
        "response_type": "code",
        "redirect_uri": settings.oauth_redirect_uri,
        "scope": settings.oauth_scopes,
        "code_challenge": pkce.challenge,
        "code_challenge_method": "S256",
        "state": pkce.verifier,
    }
    return f"{settings.oauth_authorize_url}?{urlencode(params)}"


async def exchange_code(code: str, verifier: str) -> UpstreamTokens:
    # Codes pasted from the callback page arrive as `<code>#<state>`.
    code_value, _, state = code.partition("#")
    settings = get_settings()
    payload: dict[str, Any] = {
        "code": code_value,
        "state": state or None,
        "grant_type": "authorization_code",
        "client_id": settings.oauth_client_id,
        "redirect_uri": settings.oauth_redirect_uri,
        "code_verifier": verifier,
    }
    body = await _post_token_endpoint(payload, operation="exchange")
    return _parse_tokens(body, fallback_refresh_token=None, operation="exchange")


async def refresh_tokens(refresh_token: str) -> UpstreamTokens:
    settings = get_settings()
    payload = {
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
        "client_id": settings.oauth_client_id,
    }
    body = await _post_token_endpoint(payload, operation="refresh")
    return _parse_tokens(body, fallback_refresh_token=refresh_token, operation="refresh")


async def _post_token_endpoint(payload: dict[str, Any], *, operation: str) -> dict[str, Any]:
    settings = get_settings()
    timeout = settings.oauth_refresh_timeout_ms / 1000
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.post(settings.oauth_token_url, json=payload)
    except httpx.HTTPError as exc:
        logger.warning("oauth_token_request_failed operation=%s error=%s", operation, type(exc).__name__)
        raise UpstreamCredentialError(f"Token {operation} failed") from exc
    if response.status_code >= 400:
        logger.warning("oauth_token_rejected operation=%s status=%s", operation, response.status_code)
        raise UpstreamCredentialError(f"Token {operation} was rejected")
    try:
        body = response.json()
    except ValueError as exc:
        raise UpstreamCredentialError(f"Token {operation} returned invalid JSON") from exc
    if not isinstance(body, dict):
        raise UpstreamCredentialError(f"Token {operation} returned an unexpected payload")
    return body


def _parse_tokens(
    body: dict[str, Any],
    *,
    fallback_refresh_token: str | None,
    operation: str,
) -> UpstreamTokens:
    access_token = body.get("access_token")
    refresh_token = body.get("refresh_token") or fallback_refresh_token
    if not access_token or not refresh_token:
        raise UpstreamCredentialError(f"Token {operation} response missing tokens")
    try:
        expires_in = int(body.get("expires_in") or 0)
    except (TypeError, ValueError) as exc:
        raise UpstreamCredentialError(f"Token {operation} response has invalid expiry") from exc
    return UpstreamTokens(
        access_token=str(access_token),
        refresh_token=str(refresh_token),
        expires_at_ms=int(time.time() * 1000) + expires_in * 1000,
    )
