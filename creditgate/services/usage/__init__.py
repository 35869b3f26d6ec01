from __future__ import annotations

# Re-export ledger and window helpers for centralized imports.

from creditgate.services.usage.ledger import UsageLedger
from creditgate.services.usage.window import (
    ModelBreakdown,
    WindowUsage,
    format_duration,
    next_reset_ms,
    round_half_up,
    window_usage,
)

__all__ = [
    "UsageLedger",
    "ModelBreakdown",
    "WindowUsage",
    "format_duration",
    "next_reset_ms",
    "round_half_up",
    "window_usage",
]
