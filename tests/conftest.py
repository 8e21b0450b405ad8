from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace
from typing import Any, Iterable

import pytest

from skillbase.config import Settings


class FakeMessages:
    def __init__(self, owner: "FakeAnthropicClient") -> None:
        self._owner = owner

    def create(self, **kwargs: Any) -> SimpleNamespace:
        self._owner.calls.append(kwargs)
        if self._owner.errors:
            raise self._owner.errors.pop(0)
        if self._owner.error is not None:
            raise self._owner.error
        text = self._owner.replies.pop(0) if self._owner.replies else self._owner.default_reply
        return SimpleNamespace(
            content=[SimpleNamespace(type="text", text=text)],
            usage=SimpleNamespace(input_tokens=120, output_tokens=40),
        )


class FakeAnthropicClient:
    """Stand-in for ``anthropic.Anthropic`` that replays queued replies."""

    def __init__(self, replies: Iterable[str] = (), *, default_reply: str = "Fake reply.") -> None:
        self.replies = list(replies)
        self.default_reply = default_reply
        self.calls: list[dict[str, Any]] = []
        self.error: Exception | None = None
        self.errors: list[Exception] = []
        self.messages = FakeMessages(self)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        anthropic_api_key="test-key",
        data_dir=str(tmp_path / "data"),
        sqlite_path=str(tmp_path / "data" / "skillbase.sqlite"),
        observability_metrics_enabled=False,
        bulk_request_delay_seconds=0.0,
    )


@pytest.fixture()
def fake_client() -> FakeAnthropicClient:
    return FakeAnthropicClient()
