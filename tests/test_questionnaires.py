from __future__ import annotations

import io
import json
from pathlib import Path

import anthropic
import httpx
from openpyxl import Workbook, load_workbook
import pytest

from conftest import FakeAnthropicClient
from skillbase.config import Settings
from skillbase.jobs import JobManager
from skillbase.llm import KnowledgeAssistant
from skillbase.questionnaires import (
    EXPORT_COLUMNS,
    MISSING_ANSWER_ERROR,
    BulkProjectStore,
    QuestionnaireRunner,
    export_project_xlsx,
    normalize_project_status,
    parse_question_sheet,
)
from skillbase.skills import SkillStore
from skillbase.usage import UsageStore


def _batch_reply(*indexes: int) -> str:
    return json.dumps(
        [
            {
                "questionIndex": index,
                "response": f"Answer {index}",
                "confidence": "High",
                "sources": "Encryption Standards",
                "reasoning": "Found in skill",
            }
            for index in indexes
        ]
    )


def _rate_limit_error() -> anthropic.RateLimitError:
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    return anthropic.RateLimitError(
        "rate_limit_error", response=httpx.Response(429, request=request), body=None
    )


def _xlsx(rows: list[list[object]], title: str = "Vendor Questions") -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = title
    for row in rows:
        sheet.append(row)
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def test_parse_csv_detects_question_column() -> None:
    data = "ID,Question Text,Notes\n1,Do you encrypt data?,x\n2,,y\n3,Do you have SOC 2?,\n".encode("utf-8")

    parsed = parse_question_sheet("vendor.csv", data)

    assert parsed.sheet_name == "vendor"
    assert parsed.columns == ["ID", "Question Text", "Notes"]
    assert parsed.question_column == "Question Text"
    assert parsed.rows == [
        {"row_number": 2, "question": "Do you encrypt data?"},
        {"row_number": 4, "question": "Do you have SOC 2?"},
    ]


def test_parse_csv_falls_back_to_windows_encoding() -> None:
    data = "Question\nDo you store données in the EU?\nWhat’s your RPO?\n".encode("cp1252")

    parsed = parse_question_sheet("legacy.csv", data)

    assert [row["question"] for row in parsed.rows] == [
        "Do you store données in the EU?",
        "What’s your RPO?",
    ]

    with pytest.raises(ValueError, match="UTF-8 or Windows-1252"):
        parse_question_sheet("broken.csv", b"Question\n\x81\x8d\n")


def test_parse_xlsx_with_explicit_column() -> None:
    data = _xlsx([["Area", "Ask"], ["Security", "Is MFA enforced?"], ["Privacy", "Where is data stored?"]])

    parsed = parse_question_sheet("vendor.xlsx", data, question_column="Ask")

    assert parsed.sheet_name == "Vendor Questions"
    assert [row["question"] for row in parsed.rows] == ["Is MFA enforced?", "Where is data stored?"]
    assert [row["row_number"] for row in parsed.rows] == [2, 3]

    with pytest.raises(ValueError, match="not found"):
        parse_question_sheet("vendor.xlsx", data, sheet_name="Other")
    with pytest.raises(ValueError, match="Column 'Missing' not found"):
        parse_question_sheet("vendor.xlsx", data, question_column="Missing")
    with pytest.raises(ValueError, match="Only .xlsx and .csv"):
        parse_question_sheet("vendor.pdf", b"%PDF")
    with pytest.raises(ValueError, match="header row"):
        parse_question_sheet("empty.csv", b"")


def test_project_store_updates_rows(tmp_path: Path) -> None:
    store = BulkProjectStore(tmp_path)
    project = store.create_project(
        name="Acme security review",
        sheet_name="Questions",
        columns=["Question"],
        rows=[{"row_number": 3, "question": "Q3?"}, {"row_number": 2, "question": "Q2?"}],
        customer_name="  Acme ",
    )
    assert [row.row_number for row in project.rows] == [2, 3]
    assert project.customer_name == "Acme"
    assert project.status == "DRAFT"

    row = project.rows[0]
    answered = store.record_row_answer(project.id, row.id, response="Yes", confidence="High")
    assert answered.status == "COMPLETED"

    flagged = store.update_row(project.id, row.id, flagged_for_review=True, flag_note="check", review_status="requested")
    assert flagged.flagged_at is not None
    assert flagged.review_status == "REQUESTED"
    assert flagged.response == "Yes"

    changed = store.update_row(project.id, row.id, question="Q2 reworded?")
    assert changed.status == "PENDING"
    assert changed.response == ""
    assert changed.confidence is None

    with pytest.raises(ValueError, match="review status"):
        store.update_row(project.id, row.id, review_status="maybe")
    with pytest.raises(ValueError, match="Row missing not found"):
        store.update_row(project.id, "missing", response="x")

    updated = store.update_project(project.id, status="needs-review", review_requested_by="bob@example.com")
    assert updated.status == "NEEDS_REVIEW"
    assert updated.review_requested_at is not None

    assert store.delete_project(project.id) is True
    assert store.get_project(project.id) is None
    with pytest.raises(ValueError, match="not found"):
        store.update_project(project.id, name="Gone")


def test_project_row_validation(tmp_path: Path) -> None:
    store = BulkProjectStore(tmp_path)

    with pytest.raises(ValueError, match="numeric row_number"):
        store.create_project(name="P", sheet_name="S", columns=["Q"], rows=[{"question": "Q?"}])
    with pytest.raises(ValueError, match="missing a question"):
        store.create_project(name="P", sheet_name="S", columns=["Q"], rows=[{"row_number": 2}])
    with pytest.raises(ValueError, match="Unknown project status"):
        normalize_project_status("archived")


def test_project_fields_must_be_text(tmp_path: Path) -> None:
    store = BulkProjectStore(tmp_path)
    rows = [{"row_number": 2, "question": "Q2?"}]

    with pytest.raises(ValueError, match="Project name is required"):
        store.create_project(name=12, sheet_name="S", columns=["Q"], rows=rows)
    with pytest.raises(ValueError, match="Each row must be an object"):
        store.create_project(name="P", sheet_name="S", columns=["Q"], rows=["Q2?"])
    with pytest.raises(ValueError, match="Expected text"):
        store.create_project(name="P", sheet_name="S", columns=["Q"], rows=rows, notes={"text": "x"})

    project = store.create_project(name="P", sheet_name="S", columns=["Q"], rows=rows)
    row_id = project.rows[0].id
    with pytest.raises(ValueError, match="Question is required"):
        store.update_row(project.id, row_id, question=["Q2?"])
    with pytest.raises(ValueError, match="Expected text"):
        store.update_row(project.id, row_id, response=3)
    with pytest.raises(ValueError, match="Expected text"):
        store.update_project(project.id, owner_name=7)
    assert store.get_project(project.id).rows[0].question == "Q2?"


def test_export_project_xlsx_prefers_edited_answers(tmp_path: Path) -> None:
    store = BulkProjectStore(tmp_path)
    project = store.create_project(
        name="Export",
        sheet_name="Responses",
        columns=["Question"],
        rows=[{"row_number": 2, "question": "Q2?"}, {"row_number": 3, "question": "Q3?"}],
    )
    store.record_row_answer(project.id, project.rows[0].id, response="Original", confidence="Low")
    store.update_row(project.id, project.rows[0].id, user_edited_answer="Edited")

    data = export_project_xlsx(store.get_project(project.id))

    sheet = load_workbook(io.BytesIO(data)).active
    values = [list(row) for row in sheet.iter_rows(values_only=True)]
    assert sheet.title == "Responses"
    assert values[0] == list(EXPORT_COLUMNS)
    assert values[1][:4] == [2, "Q2?", "Edited", "Low"]
    assert values[1][-1] == "COMPLETED"
    assert values[2][-1] == "PENDING"


def _runner(
    tmp_path: Path,
    settings: Settings,
    client: FakeAnthropicClient,
    **kwargs,
) -> tuple[QuestionnaireRunner, BulkProjectStore, UsageStore]:
    skills = SkillStore(tmp_path / "skills")
    skills.create_skill(title="Encryption Standards", content="AES-256 at rest, TLS 1.2 in transit.")
    store = BulkProjectStore(tmp_path / "projects")
    usage = UsageStore(tmp_path / "usage.sqlite")
    runner = QuestionnaireRunner(
        store,
        KnowledgeAssistant(settings, anthropic_client=client),
        skills,
        usage_store=usage,
        settings=settings,
        **kwargs,
    )
    return runner, store, usage


def test_answer_project_batches_rows_and_tracks_job(tmp_path: Path, settings: Settings) -> None:
    settings.bulk_answer_batch_size = 2
    settings.bulk_request_delay_seconds = 1.5
    client = FakeAnthropicClient([_batch_reply(2, 3), _batch_reply(99)])
    jobs = JobManager()
    pauses: list[float] = []
    runner, store, usage = _runner(tmp_path, settings, client, jobs=jobs, sleep=pauses.append)
    project = store.create_project(
        name="Acme",
        sheet_name="Questions",
        columns=["Question"],
        rows=[
            {"row_number": 2, "question": "Is encryption used at rest?"},
            {"row_number": 3, "question": "Which TLS version?"},
            {"row_number": 4, "question": "Do you have SOC 2?"},
        ],
    )
    job = jobs.create_job("answer", project.id)

    summary = runner.answer_project(project.id, job_id=job.id)

    assert summary == {"answered": 2, "failed": 1, "total": 3}
    assert pauses == [1.5]
    assert len(client.calls) == 2
    assert "### Skill 1: Encryption Standards" in client.calls[0]["messages"][0]["content"]
    refreshed = store.get_project(project.id)
    assert refreshed.status == "IN_PROGRESS"
    by_number = {row.row_number: row for row in refreshed.rows}
    assert by_number[2].response == "Answer 2"
    assert by_number[2].used_skills[0]["title"] == "Encryption Standards"
    assert by_number[4].status == "ERROR"
    assert by_number[4].error == MISSING_ANSWER_ERROR
    assert jobs.get(job.id).processed == 3
    assert usage.summary(feature="questions-batch")["call_count"] == 2

    client.replies.append(_batch_reply(4))
    retry = runner.answer_project(project.id)

    assert retry == {"answered": 1, "failed": 0, "total": 1}
    assert store.get_project(project.id).status == "NEEDS_REVIEW"


def test_answer_project_marks_rows_failed_on_backend_error(tmp_path: Path, settings: Settings) -> None:
    client = FakeAnthropicClient()
    client.error = RuntimeError("overloaded")
    runner, store, _ = _runner(tmp_path, settings, client)
    project = store.create_project(
        name="Acme",
        sheet_name="Questions",
        columns=["Question"],
        rows=[{"row_number": 2, "question": "Q2?"}],
    )

    summary = runner.answer_project(project.id)

    assert summary == {"answered": 0, "failed": 1, "total": 1}
    row = store.get_project(project.id).rows[0]
    assert row.status == "ERROR"
    assert "overloaded" in row.error


def test_answer_row_parses_sections(tmp_path: Path, settings: Settings) -> None:
    client = FakeAnthropicClient(["Yes, AES-256.\n\nConfidence: High\nSources: Encryption Standards"])
    runner, store, usage = _runner(tmp_path, settings, client)
    project = store.create_project(
        name="Acme",
        sheet_name="Questions",
        columns=["Question"],
        rows=[{"row_number": 2, "question": "Is encryption used at rest?"}],
    )

    row = runner.answer_row(project.id, project.rows[0].id, prompt_text="Be brief.")

    assert row.response == "Yes, AES-256."
    assert row.confidence == "High"
    assert row.sources == "Encryption Standards"
    assert row.used_skills[0]["title"] == "Encryption Standards"
    assert client.calls[0]["system"] == "Be brief."
    assert usage.summary(feature="questions")["call_count"] == 1

    with pytest.raises(ValueError, match="Row missing not found"):
        runner.answer_row(project.id, "missing")
    with pytest.raises(ValueError, match="Project nope not found"):
        runner.answer_row("nope", "missing")


def test_answer_project_waits_and_retries_when_rate_limited(tmp_path: Path, settings: Settings) -> None:
    settings.rate_limit_retry_wait_seconds = 30.0
    client = FakeAnthropicClient([_batch_reply(2)])
    client.errors.append(_rate_limit_error())
    pauses: list[float] = []
    runner, store, _ = _runner(tmp_path, settings, client, sleep=pauses.append)
    project = store.create_project(
        name="Acme",
        sheet_name="Questions",
        columns=["Question"],
        rows=[{"row_number": 2, "question": "Is encryption used at rest?"}],
    )

    summary = runner.answer_project(project.id)

    assert summary == {"answered": 1, "failed": 0, "total": 1}
    assert pauses == [30.0]
    assert len(client.calls) == 2
    assert store.get_project(project.id).rows[0].response == "Answer 2"


def test_answer_project_gives_up_after_rate_limit_retries(tmp_path: Path, settings: Settings) -> None:
    settings.rate_limit_max_retries = 2
    settings.rate_limit_retry_wait_seconds = 5.0
    client = FakeAnthropicClient()
    client.error = _rate_limit_error()
    pauses: list[float] = []
    runner, store, _ = _runner(tmp_path, settings, client, sleep=pauses.append)
    project = store.create_project(
        name="Acme",
        sheet_name="Questions",
        columns=["Question"],
        rows=[{"row_number": 2, "question": "Q2?"}],
    )

    summary = runner.answer_project(project.id)

    assert summary == {"answered": 0, "failed": 1, "total": 1}
    assert pauses == [5.0, 5.0]
    assert len(client.calls) == 3
    assert store.get_project(project.id).rows[0].status == "ERROR"


def test_answer_row_retries_rate_limited_request(tmp_path: Path, settings: Settings) -> None:
    settings.rate_limit_retry_wait_seconds = 2.0
    client = FakeAnthropicClient(["Yes.\n\nConfidence: High"])
    client.errors.append(_rate_limit_error())
    pauses: list[float] = []
    runner, store, _ = _runner(tmp_path, settings, client, sleep=pauses.append)
    project = store.create_project(
        name="Acme",
        sheet_name="Questions",
        columns=["Question"],
        rows=[{"row_number": 2, "question": "Is encryption used at rest?"}],
    )

    row = runner.answer_row(project.id, project.rows[0].id)

    assert row.response == "Yes."
    assert pauses == [2.0]
