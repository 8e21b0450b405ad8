from __future__ import annotations

from pathlib import Path

import pytest

from skillbase.tracing import TraceInput, TraceOutput, TraceSkill, TraceStore, hash_prompt


def _make_store(tmp_path: Path) -> TraceStore:
    return TraceStore(tmp_path / "traces.sqlite")


def test_with_tracing_records_call(tmp_path: Path) -> None:
    store = _make_store(tmp_path)
    context = store.start_trace("answer_question", "questions", user_id="u-1", user_email="u@example.com")
    trace_input = TraceInput(
        model="claude-test",
        system_prompt="You are helpful.",
        user_message="Is data encrypted?",
        skills=[TraceSkill(id="s-1", title="Encryption")],
    )

    result, trace_id = store.with_tracing(
        context,
        trace_input,
        lambda: "Yes, with AES-256.",
        lambda text: TraceOutput(response=text, input_tokens=10, output_tokens=5, cache_read_tokens=3),
        entity_link={"bulk_row_id": "row-7", "ignored": "x"},
    )

    assert result == "Yes, with AES-256."
    assert trace_id == context.trace_id
    trace = store.get_trace(trace_id)
    assert trace is not None
    assert trace["span_name"] == "answer_question"
    assert trace["prompt_hash"] == hash_prompt("You are helpful.")
    assert trace["prompt_snapshot"] is None
    assert trace["skills_provided"] == [{"id": "s-1", "title": "Encryption"}]
    assert trace["cache_hit"] is True
    assert trace["bulk_row_id"] == "row-7"
    assert trace["user_email"] == "u@example.com"
    assert store.find_trace_by_entity("bulk_row_id", "row-7") == trace_id
    assert store.find_trace_by_entity("skill_id", "row-7") is None


def test_with_tracing_saves_prompt_snapshot_on_request(tmp_path: Path) -> None:
    store = _make_store(tmp_path)
    context = store.start_trace("generate_skill_draft", "skills")

    _, trace_id = store.with_tracing(
        context,
        TraceInput(model="m", system_prompt="Prompt text", user_message="msg"),
        lambda: "{}",
        lambda text: TraceOutput(response=text, input_tokens=1, output_tokens=1),
        save_prompt_snapshot=True,
    )

    trace = store.get_trace(trace_id)
    assert trace["prompt_snapshot"] == "Prompt text"
    assert trace["cache_hit"] is False


def test_with_tracing_propagates_call_errors(tmp_path: Path) -> None:
    store = _make_store(tmp_path)
    context = store.start_trace("complete", "questions")

    def failing() -> str:
        raise RuntimeError("backend down")

    with pytest.raises(RuntimeError, match="backend down"):
        store.with_tracing(
            context,
            TraceInput(model="m", system_prompt="p", user_message="u"),
            failing,
            lambda text: TraceOutput(response=text, input_tokens=0, output_tokens=0),
        )
    assert store.get_trace(context.trace_id) is None


def test_attach_feedback_and_listing(tmp_path: Path) -> None:
    store = _make_store(tmp_path)
    question = store.start_trace("answer_question", "questions")
    skill = store.start_trace("generate_skill_draft", "skills")
    for context in (question, skill):
        store.record_trace(
            context,
            TraceInput(model="m", system_prompt="p", user_message="u"),
            TraceOutput(response="r", input_tokens=1, output_tokens=2),
            12,
        )

    assert store.attach_feedback(
        question.trace_id,
        categories=["incomplete"],
        note="Missing SOC 2 detail",
        was_edited=True,
        edit_delta={"added": 40},
    )
    assert store.attach_feedback("missing-trace", note="x") is False

    trace = store.get_trace(question.trace_id)
    assert trace["feedback_categories"] == ["incomplete"]
    assert trace["was_edited"] is True
    assert trace["edit_delta"] == {"added": 40}
    assert trace["latency_ms"] == 12

    assert [item["trace_id"] for item in store.list_traces(feature="skills")] == [skill.trace_id]
    assert len(store.list_traces()) == 2

    with pytest.raises(ValueError, match="Unknown trace entity type"):
        store.find_trace_by_entity("customer_id", "c-1")
