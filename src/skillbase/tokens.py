"""Rough token accounting used to size prompts and context windows."""

from __future__ import annotations

from dataclasses import dataclass
import math
from typing import Final

# Roughly four characters per token for English prose.
_CHARS_PER_TOKEN: Final[int] = 4

TOKEN_LIMITS: Final[dict[str, int]] = {
    "CHAT_MAX": 100_000,
    "COMPACT_THRESHOLD": 5_000,
    "DOC_ESTIMATE": 2_000,
    "CUSTOMER_ESTIMATE": 500,
    "SYSTEM_PROMPT_BASE": 500,
}


@dataclass(slots=True)
class TokenUsageStatus:
    usage_percent: int
    is_high: bool
    is_critical: bool


def estimate_tokens(text: str | None) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / _CHARS_PER_TOKEN)


def format_token_count(tokens: int) -> str:
    """Render a token count for display, e.g. ``12.5k``."""

    if tokens >= 1000:
        return f"{tokens / 1000:.1f}k"
    return str(tokens)


def token_usage_status(used: int, maximum: int) -> TokenUsageStatus:
    """Return the percentage of ``maximum`` consumed plus warning flags."""

    if maximum <= 0:
        raise ValueError("maximum must be a positive token count")
    percent = min(100, round(used / maximum * 100))
    return TokenUsageStatus(usage_percent=percent, is_high=percent > 70, is_critical=percent > 90)


__all__ = [
    "TOKEN_LIMITS",
    "TokenUsageStatus",
    "estimate_tokens",
    "format_token_count",
    "token_usage_status",
]
