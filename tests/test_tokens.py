from __future__ import annotations

import pytest

from skillbase.tokens import TOKEN_LIMITS, estimate_tokens, format_token_count, token_usage_status


def test_estimate_tokens_rounds_up() -> None:
    assert estimate_tokens("") == 0
    assert estimate_tokens(None) == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2


def test_format_token_count() -> None:
    assert format_token_count(999) == "999"
    assert format_token_count(1000) == "1.0k"
    assert format_token_count(12_500) == "12.5k"
    assert format_token_count(TOKEN_LIMITS["CHAT_MAX"]) == "100.0k"


def test_token_usage_status_flags() -> None:
    low = token_usage_status(10_000, 100_000)
    assert (low.usage_percent, low.is_high, low.is_critical) == (10, False, False)

    high = token_usage_status(75_000, 100_000)
    assert high.is_high and not high.is_critical

    critical = token_usage_status(95_000, 100_000)
    assert critical.is_high and critical.is_critical

    capped = token_usage_status(250_000, 100_000)
    assert capped.usage_percent == 100


def test_token_usage_status_rejects_zero_maximum() -> None:
    with pytest.raises(ValueError):
        token_usage_status(10, 0)
