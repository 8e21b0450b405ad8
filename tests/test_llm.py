from __future__ import annotations

import json
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict

import pytest

from conftest import FakeAnthropicClient
from skillbase.config import Settings
from skillbase.documents import FallbackContent
from skillbase.llm import (
    DEFAULT_SKILL_PROMPT,
    DRAFT_UPDATE_MAX_TOKENS,
    KnowledgeAssistant,
    LLMError,
    ReferenceSkill,
    parse_json_content,
    sanitize_messages,
)
from skillbase.skills import SkillStore
from skillbase.tracing import TraceStore

_CONFIDENT = "Customer data is encrypted at rest with AES-256 and in transit using TLS 1.2 or later."
_UNSURE = "I don't have enough information to answer that."


class _StubResponse:
    def __init__(self, payload: Dict[str, Any]) -> None:
        self._payload = payload

    def raise_for_status(self) -> None:
        return None

    def json(self) -> Dict[str, Any]:
        return self._payload


def test_parse_json_content_tolerates_fences_and_chatter() -> None:
    assert parse_json_content('```json\n{"a": 1}\n```') == {"a": 1}
    assert parse_json_content('Sure! Here it is: {"a": [1, 2]} Thanks.') == {"a": [1, 2]}
    assert parse_json_content("[1, 2]") == [1, 2]
    with pytest.raises(ValueError):
        parse_json_content("no json here")


def test_sanitize_messages_drops_empty_and_normalizes_roles() -> None:
    messages = [
        {"role": "system", "content": " Hello "},
        {"role": "assistant", "content": "Hi"},
        {"role": "user", "content": "   "},
        "not a mapping",
    ]

    assert sanitize_messages(messages) == [
        {"role": "user", "content": "Hello"},
        {"role": "assistant", "content": "Hi"},
    ]


def test_generate_skill_draft_parses_reply_and_traces(settings: Settings, tmp_path: Path) -> None:
    client = FakeAnthropicClient(
        ['```json\n{"title": " Encryption ", "content": "AES-256 at rest.", "sourceMapping": ["https://a.test"]}\n```']
    )
    tracer = TraceStore(tmp_path / "traces.sqlite")
    assistant = KnowledgeAssistant(settings, anthropic_client=client, tracer=tracer)

    draft = assistant.generate_skill_draft([{"role": "user", "content": "Source material: ..."}], user_id="u-1")

    assert draft.title == "Encryption"
    assert draft.content == "AES-256 at rest."
    assert draft.source_mapping == ["https://a.test"]
    assert draft.usage.input_tokens == 120
    call = client.calls[0]
    assert call["model"] == settings.anthropic_model
    assert call["system"] == DEFAULT_SKILL_PROMPT
    assert call["temperature"] == pytest.approx(settings.llm_temperature_precise)
    trace = tracer.get_trace(draft.trace_id)
    assert trace["feature"] == "skills"
    assert trace["user_id"] == "u-1"
    assert trace["input_tokens"] == 120


def test_generate_skill_draft_wraps_bad_replies(settings: Settings) -> None:
    assistant = KnowledgeAssistant(settings, anthropic_client=FakeAnthropicClient(['{"title": "Only title"}']))

    with pytest.raises(LLMError, match="missing required fields: content"):
        assistant.generate_skill_draft([{"role": "user", "content": "text"}])

    with pytest.raises(ValueError, match="At least one conversation message"):
        assistant.generate_skill_draft([{"role": "user", "content": "  "}])


def test_answer_question_uses_skills_or_fallback(settings: Settings) -> None:
    client = FakeAnthropicClient([_CONFIDENT, _CONFIDENT])
    assistant = KnowledgeAssistant(settings, anthropic_client=client)

    result = assistant.answer_question(
        "Is data encrypted?",
        "Answer briefly.",
        [ReferenceSkill(id="s-1", title="Encryption", content="AES-256 everywhere.")],
        [FallbackContent(title="docs", url="https://docs.test", content="Ignored")],
        "fast",
    )

    assert result.answer == _CONFIDENT
    assert result.used_fallback is False
    assert [message["role"] for message in result.conversation_history] == ["system", "user", "assistant"]
    first = client.calls[0]
    assert first["model"] == settings.anthropic_fast_model
    assert first["system"] == "Answer briefly."
    assert "### Skill 1: Encryption" in first["messages"][0]["content"]
    assert first["messages"][0]["content"].endswith("Is data encrypted?")

    fallback = assistant.answer_question(
        "Is data encrypted?",
        fallback_content=[FallbackContent(title="docs", url="https://docs.test", content="TLS docs")],
    )
    assert fallback.used_fallback is True
    assert "Source: https://docs.test" in client.calls[1]["messages"][0]["content"]

    with pytest.raises(ValueError):
        assistant.answer_question("   ")


def test_answer_question_wraps_backend_errors(settings: Settings) -> None:
    client = FakeAnthropicClient()
    client.error = RuntimeError("rate limited")
    assistant = KnowledgeAssistant(settings, anthropic_client=client)

    with pytest.raises(LLMError, match="rate limited"):
        assistant.answer_question("Is data encrypted?")


def test_answer_questions_batch_parses_items(settings: Settings) -> None:
    reply = json.dumps(
        [
            {"questionIndex": "2", "response": "Yes", "confidence": "High", "sources": "Encryption"},
            {"questionIndex": 5, "response": "No"},
        ]
    )
    client = FakeAnthropicClient([reply])
    assistant = KnowledgeAssistant(settings, anthropic_client=client)

    result = assistant.answer_questions_batch(
        [{"index": 2, "question": "Do you encrypt data?"}, {"index": 5, "question": "Do you sell data?"}],
        skills=[{"id": "s-1", "title": "Encryption", "content": "AES-256"}],
    )

    assert [item.question_index for item in result.answers] == [2, 5]
    assert result.answers[0].confidence == "High"
    assert result.answers[1].confidence == "Medium"
    assert result.answers[1].sources == "None"
    message = client.calls[0]["messages"][0]["content"]
    assert "2. Do you encrypt data?" in message
    assert "5. Do you sell data?" in message
    assert "Return ONLY a valid JSON array" in message


def test_answer_questions_batch_rejects_non_array(settings: Settings) -> None:
    assistant = KnowledgeAssistant(settings, anthropic_client=FakeAnthropicClient(['{"response": "x"}']))

    with pytest.raises(LLMError, match="JSON array"):
        assistant.answer_questions_batch([{"index": 1, "question": "Q?"}])
    with pytest.raises(ValueError):
        assistant.answer_questions_batch([])


def _progressive_store(tmp_path: Path) -> SkillStore:
    store = SkillStore(tmp_path / "data")
    store.create_skill(
        title="Encryption Key Management",
        content="Encryption keys are rotated yearly in a managed KMS.",
        categories=["Security & Compliance"],
        tier="extended",
    )
    store.create_skill(
        title="Encryption Whitepaper",
        content="Long-form encryption architecture notes.",
        tier="library",
    )
    return store


def test_progressive_answer_escalates_to_extended_tier(settings: Settings, tmp_path: Path) -> None:
    client = FakeAnthropicClient([_UNSURE, _CONFIDENT])
    assistant = KnowledgeAssistant(settings, anthropic_client=client, skill_store=_progressive_store(tmp_path))
    core = ReferenceSkill(id="core-1", title="Security Overview", content="We take security seriously.")

    result = assistant.answer_question_progressive(
        "Which encryption standards protect customer data?",
        tier1_skills=[core],
        selected_categories=["Security & Compliance"],
    )

    assert result.tier == 2
    assert result.tier2_skills_found == 1
    assert result.tier3_skills_found is None
    assert result.answer == _CONFIDENT
    second_message = client.calls[1]["messages"][0]["content"]
    assert "### Skill 1: Security Overview" in second_message
    assert "### Skill 2: Encryption Key Management" in second_message


def test_progressive_answer_reaches_library_tier(settings: Settings, tmp_path: Path) -> None:
    client = FakeAnthropicClient([_UNSURE, _UNSURE, _CONFIDENT])
    assistant = KnowledgeAssistant(settings, anthropic_client=client, skill_store=_progressive_store(tmp_path))

    result = assistant.answer_question_progressive(
        "Which encryption standards protect customer data?",
        tier1_skills=[],
        selected_categories=["Security & Compliance"],
    )

    assert result.tier == 3
    assert result.tier2_skills_found == 1
    assert result.tier3_skills_found == 1
    assert "Encryption Whitepaper" in client.calls[2]["messages"][0]["content"]


def test_progressive_answer_stops_when_tier2_disabled(settings: Settings, tmp_path: Path) -> None:
    client = FakeAnthropicClient([_UNSURE])
    assistant = KnowledgeAssistant(settings, anthropic_client=client, skill_store=_progressive_store(tmp_path))

    result = assistant.answer_question_progressive("Which encryption standards?", enable_tier2=False)

    assert result.tier == 1
    assert result.answer == _UNSURE
    assert len(client.calls) == 1


def test_analyze_sources_reads_split_suggestions(settings: Settings) -> None:
    reply = json.dumps(
        {
            "suggestion": {
                "action": "split_topics",
                "reason": "Two unrelated topics",
                "splitSuggestions": [
                    {"title": "SSO", "description": "Single sign-on", "relevantUrls": ["https://a.test/sso"]},
                    {"title": "  "},
                ],
            },
            "sourcePreview": "preview",
        }
    )
    assistant = KnowledgeAssistant(settings, anthropic_client=FakeAnthropicClient([reply, '{"action": "merge"}']))

    analysis = assistant.analyze_sources("content", ["https://a.test/sso"], [])

    assert analysis.action == "split_topics"
    assert analysis.source_preview == "preview"
    assert [item.title for item in analysis.split_suggestions] == ["SSO"]
    assert analysis.split_suggestions[0].relevant_urls == ["https://a.test/sso"]

    fallback = assistant.analyze_sources("content", [], [])
    assert fallback.action == "create_new"


def test_generate_draft_update_uses_large_token_budget(settings: Settings) -> None:
    reply = json.dumps(
        {"hasChanges": True, "summary": "Added TLS", "content": "New content", "changeHighlights": ["TLS 1.3"]}
    )
    client = FakeAnthropicClient([reply])
    assistant = KnowledgeAssistant(settings, anthropic_client=client)

    update = assistant.generate_draft_update("Encryption", "Old content", "New source", ["https://a.test"])

    assert update.has_changes is True
    assert update.title == "Encryption"
    assert update.content == "New content"
    assert update.change_highlights == ["TLS 1.3"]
    assert client.calls[0]["max_tokens"] == DRAFT_UPDATE_MAX_TOKENS
    assert "Source URLs: https://a.test" in client.calls[0]["messages"][0]["content"]


def test_complete_with_ollama_backend(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: Dict[str, Any] = {}

    def fake_post(url: str, *, json: Dict[str, Any], timeout: float) -> _StubResponse:
        captured["url"] = url
        captured["json"] = json
        captured["timeout"] = timeout
        return _StubResponse({"message": {"content": " Hello "}, "prompt_eval_count": 7, "eval_count": 3})

    monkeypatch.setattr("skillbase.llm.httpx.post", fake_post)
    settings = Settings(
        chat_backend="ollama",
        ollama_base_url="http://ollama:11434/",
        ollama_model="llama-test",
        ollama_request_timeout=9.0,
    )

    reply = KnowledgeAssistant(settings).complete("Hi?", system="Sys", temperature=0.0)

    assert reply.text == "Hello"
    assert reply.usage.total_tokens == 10
    assert captured["url"] == "http://ollama:11434/api/chat"
    assert captured["json"]["messages"][0] == {"role": "system", "content": "Sys"}
    assert captured["json"]["options"] == {"num_predict": settings.llm_max_tokens}
    assert captured["timeout"] == pytest.approx(9.0)


def test_complete_with_openai_backend() -> None:
    captured: Dict[str, Any] = {}

    def create(**kwargs: Any) -> SimpleNamespace:
        captured.update(kwargs)
        return SimpleNamespace(
            output=[SimpleNamespace(type="message")],
            output_text="Hi there",
            usage=SimpleNamespace(input_tokens=3, output_tokens=4),
        )

    client = SimpleNamespace(responses=SimpleNamespace(create=create))
    settings = Settings(chat_backend="openai", openai_chat_model="gpt-test")

    reply = KnowledgeAssistant(settings, openai_client=client).complete("Hi?", max_tokens=50)

    assert reply.text == "Hi there"
    assert reply.usage.model == "gpt-test"
    assert captured["max_output_tokens"] == 50
    assert captured["input"][0]["role"] == "system"


def test_complete_reads_openai_message_content_parts() -> None:
    response = SimpleNamespace(
        output=[
            SimpleNamespace(type="reasoning", content=None),
            SimpleNamespace(
                type="message",
                content=[
                    SimpleNamespace(type="output_text", text="First part."),
                    SimpleNamespace(type="refusal", refusal="n/a"),
                    SimpleNamespace(type="output_text", text="Second part."),
                ],
            ),
        ],
        output_text=None,
        usage=SimpleNamespace(input_tokens=5, output_tokens=6),
    )
    client = SimpleNamespace(responses=SimpleNamespace(create=lambda **kwargs: response))
    settings = Settings(chat_backend="openai", openai_chat_model="gpt-test")

    reply = KnowledgeAssistant(settings, openai_client=client).complete("Hi?")

    assert reply.text == "First part.\nSecond part."
    assert reply.usage.output_tokens == 6


def test_complete_without_api_key_raises() -> None:
    assistant = KnowledgeAssistant(Settings(anthropic_api_key=None))

    with pytest.raises(LLMError, match="ANTHROPIC_API_KEY"):
        assistant.complete("Hi?")
