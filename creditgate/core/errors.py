from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    """Base error for creditgate."""

    def __init__(self, message: str = "", *, headers: dict[str, str] | None = None) -> None:
        super().__init__(message)
        # Response headers the API layer attaches to the error body.
        self.headers: dict[str, str] = dict(headers or {})


class AuthenticationError(GatewayError):
    """Missing/invalid credential, or the owning tenant has no upstream connection."""


class MalformedRequestError(GatewayError):
    """Request body rejected before any quota read or upstream call."""


class QuotaExceededError(GatewayError):
    """Credit quota exhausted for the rolling window."""

    def __init__(
        self,
        message: str,
        *,
        retry_after_s: int,
        headers: dict[str, str],
        detail: dict[str, Any],
    ) -> None:
        super().__init__(message, headers=headers)
        self.message = message
        self.retry_after_s = retry_after_s
        self.detail = detail


class RequestRateExceededError(GatewayError):
    """Per-minute request limiter rejected the call."""

    def __init__(self, message: str, *, retry_after_s: int, headers: dict[str, str]) -> None:
        super().__init__(message, headers=headers)
        self.message = message
        self.retry_after_s = retry_after_s


class RateLimitUnavailableError(GatewayError):
    """Rate limit storage unavailable while configured to fail closed."""


class UpstreamCredentialError(GatewayError):
    """Upstream token refresh or exchange failed; stored tokens are left as-is."""


class UpstreamCallError(GatewayError):
    """Upstream request failed at the transport level."""


class UpstreamTimeoutError(UpstreamCallError):
    """Upstream request exceeded its configured timeout."""


class LedgerError(GatewayError):
    """Usage ledger failure."""


class UsageAlreadyInitializedError(LedgerError):
    """Usage aggregate already exists for the credential."""


class UsageRecordingError(LedgerError):
    """Usage write failed after a successful upstream call."""


class CredentialStateError(GatewayError):
    """Invalid credential mutation (bad percentage, assignment transition, etc.)."""


class ModelNotAllowedError(GatewayError):
    """Requested model class is not included in the tenant's plan."""
