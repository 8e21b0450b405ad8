"""Bulk questionnaire projects: storage, spreadsheet import/export and answering."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
import csv
import io
import json
import logging
from pathlib import Path
import threading
import time
from typing import Any, Callable, Iterable, List, Sequence, TypeVar
from uuid import uuid4

import anthropic
import httpx
import openai
from openpyxl import Workbook, load_workbook
from openpyxl.styles import Font

from .answers import parse_answer_sections
from .config import ModelSpeed, Settings
from .jobs import JobManager
from .llm import KnowledgeAssistant
from .observability import MetricsRecorder
from .skills import Skill, SkillStore, select_relevant_skills
from .usage import UsageStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

PROJECT_STATUSES: tuple[str, ...] = ("DRAFT", "IN_PROGRESS", "NEEDS_REVIEW", "FINALIZED")
ROW_STATUSES: tuple[str, ...] = ("PENDING", "COMPLETED", "ERROR")
REVIEW_STATUSES: tuple[str, ...] = ("NONE", "REQUESTED", "APPROVED", "CORRECTED")
EXPORT_COLUMNS: tuple[str, ...] = (
    "Row",
    "Question",
    "Response",
    "Confidence",
    "Sources",
    "Reasoning",
    "Inference",
    "Remarks",
    "Status",
)
MISSING_ANSWER_ERROR = "No answer returned for this question."
_SKILL_CANDIDATE_LIMIT = 500

_UNSET: Any = object()


@dataclass(slots=True)
class BulkRow:
    id: str
    row_number: int
    question: str
    response: str = ""
    status: str = "PENDING"
    error: str | None = None
    conversation_history: list[dict[str, str]] | None = None
    confidence: str | None = None
    sources: str | None = None
    reasoning: str | None = None
    inference: str | None = None
    remarks: str | None = None
    used_skills: list[dict[str, str]] | None = None
    trace_id: str | None = None
    flagged_for_review: bool = False
    flag_note: str | None = None
    flagged_at: str | None = None
    review_status: str = "NONE"
    review_note: str | None = None
    user_edited_answer: str | None = None
    reviewed_by: str | None = None
    reviewed_at: str | None = None


@dataclass(slots=True)
class BulkProject:
    id: str
    name: str
    sheet_name: str
    columns: list[str]
    created_at: str
    last_modified_at: str
    status: str = "DRAFT"
    owner_name: str | None = None
    customer_name: str | None = None
    notes: str | None = None
    review_requested_at: str | None = None
    review_requested_by: str | None = None
    reviewed_at: str | None = None
    reviewed_by: str | None = None
    rows: list[BulkRow] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def row(self, row_id: str) -> BulkRow | None:
        for row in self.rows:
            if row.id == row_id:
                return row
        return None


@dataclass(slots=True)
class ParsedSheet:
    sheet_name: str
    columns: list[str]
    question_column: str
    rows: list[dict[str, Any]]


def normalize_project_status(value: Any) -> str:
    status = str(value or "").strip().upper().replace("-", "_")
    if status not in PROJECT_STATUSES:
        raise ValueError(f"Unknown project status '{value}'")
    return status


class BulkProjectStore:
    """File-backed storage for questionnaire projects and their rows."""

    def __init__(self, root: Path) -> None:
        self._root = root
        self._file = root / "bulk_projects.json"
        self._root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def list_projects(self) -> List[BulkProject]:
        with self._lock:
            items = self._read().get("projects", [])
        projects = [self._deserialize(item) for item in items]
        return sorted(projects, key=lambda project: project.last_modified_at, reverse=True)

    def get_project(self, project_id: str) -> BulkProject | None:
        with self._lock:
            for item in self._read().get("projects", []):
                if item.get("id") == project_id:
                    return self._deserialize(item)
        return None

    def create_project(
        self,
        *,
        name: str,
        sheet_name: str,
        columns: Sequence[str],
        rows: Iterable[dict[str, Any]],
        owner_name: str | None = None,
        customer_name: str | None = None,
        notes: str | None = None,
        status: str | None = None,
    ) -> BulkProject:
        name = _required_text(name, "Project name is required")
        sheet_name = _required_text(sheet_name, "Sheet name is required")
        if not columns:
            raise ValueError("At least one column is required")
        project_rows = [self._build_row(item) for item in rows]
        now = self._now()
        project = BulkProject(
            id=uuid4().hex,
            name=name,
            sheet_name=sheet_name,
            columns=[str(column) for column in columns],
            created_at=now,
            last_modified_at=now,
            status=normalize_project_status(status) if status else "DRAFT",
            owner_name=_normalize(owner_name),
            customer_name=_normalize(customer_name),
            notes=_normalize(notes),
            rows=sorted(project_rows, key=lambda row: row.row_number),
        )
        with self._lock:
            payload = self._read()
            payload.setdefault("projects", []).append(project.to_dict())
            self._write(payload)
        logger.info("project.created id=%s name=%s rows=%s", project.id, project.name, len(project.rows))
        return project

    def update_project(
        self,
        project_id: str,
        *,
        name: str | Any = _UNSET,
        status: str | Any = _UNSET,
        owner_name: str | None | Any = _UNSET,
        customer_name: str | None | Any = _UNSET,
        notes: str | None | Any = _UNSET,
        review_requested_by: str | None | Any = _UNSET,
        reviewed_by: str | None | Any = _UNSET,
    ) -> BulkProject:
        with self._lock:
            payload = self._read()
            item = self._find(payload, project_id)
            now = self._now()
            if name is not _UNSET:
                item["name"] = _required_text(name, "Project name is required")
            if status is not _UNSET:
                item["status"] = normalize_project_status(status)
            if owner_name is not _UNSET:
                item["owner_name"] = _normalize(owner_name)
            if customer_name is not _UNSET:
                item["customer_name"] = _normalize(customer_name)
            if notes is not _UNSET:
                item["notes"] = _normalize(notes)
            if review_requested_by is not _UNSET:
                item["review_requested_by"] = _normalize(review_requested_by)
                item["review_requested_at"] = now if item["review_requested_by"] else None
            if reviewed_by is not _UNSET:
                item["reviewed_by"] = _normalize(reviewed_by)
                item["reviewed_at"] = now if item["reviewed_by"] else None
            item["last_modified_at"] = now
            self._write(payload)
            project = self._deserialize(item)
        logger.info("project.updated id=%s status=%s", project_id, project.status)
        return project

    def delete_project(self, project_id: str) -> bool:
        with self._lock:
            payload = self._read()
            projects = payload.get("projects", [])
            remaining = [item for item in projects if item.get("id") != project_id]
            if len(remaining) == len(projects):
                return False
            payload["projects"] = remaining
            self._write(payload)
        logger.info("project.deleted id=%s", project_id)
        return True

    def update_row(
        self,
        project_id: str,
        row_id: str,
        *,
        question: str | Any = _UNSET,
        response: str | Any = _UNSET,
        flagged_for_review: bool | Any = _UNSET,
        flag_note: str | None | Any = _UNSET,
        review_status: str | Any = _UNSET,
        review_note: str | None | Any = _UNSET,
        user_edited_answer: str | None | Any = _UNSET,
        reviewed_by: str | None | Any = _UNSET,
    ) -> BulkRow:
        with self._lock:
            payload = self._read()
            project = self._find(payload, project_id)
            row = self._find_row(project, row_id)
            now = self._now()
            if question is not _UNSET:
                text = _required_text(question, "Question is required")
                if text != row["question"]:
                    row["question"] = text
                    row.update(_cleared_answer())
            if response is not _UNSET:
                row["response"] = _normalize(response) or ""
            if flagged_for_review is not _UNSET:
                row["flagged_for_review"] = bool(flagged_for_review)
                row["flagged_at"] = now if flagged_for_review else None
            if flag_note is not _UNSET:
                row["flag_note"] = _normalize(flag_note)
            if review_status is not _UNSET:
                value = str(review_status or "").strip().upper()
                if value not in REVIEW_STATUSES:
                    raise ValueError(f"Unknown review status '{review_status}'")
                row["review_status"] = value
                if value in {"APPROVED", "CORRECTED"}:
                    row["reviewed_at"] = now
            if review_note is not _UNSET:
                row["review_note"] = _normalize(review_note)
            if user_edited_answer is not _UNSET:
                row["user_edited_answer"] = _normalize(user_edited_answer)
            if reviewed_by is not _UNSET:
                row["reviewed_by"] = _normalize(reviewed_by)
            project["last_modified_at"] = now
            self._write(payload)
            updated = BulkRow(**row)
        logger.info("project.row.updated project=%s row=%s", project_id, row_id)
        return updated

    def record_row_answer(
        self,
        project_id: str,
        row_id: str,
        *,
        response: str,
        confidence: str | None = None,
        sources: str | None = None,
        reasoning: str | None = None,
        inference: str | None = None,
        remarks: str | None = None,
        conversation_history: list[dict[str, str]] | None = None,
        used_skills: list[dict[str, str]] | None = None,
        trace_id: str | None = None,
    ) -> BulkRow:
        with self._lock:
            payload = self._read()
            project = self._find(payload, project_id)
            row = self._find_row(project, row_id)
            row.update(
                {
                    "response": response,
                    "status": "COMPLETED",
                    "error": None,
                    "confidence": confidence,
                    "sources": sources,
                    "reasoning": reasoning,
                    "inference": inference,
                    "remarks": remarks,
                    "conversation_history": conversation_history,
                    "used_skills": used_skills,
                    "trace_id": trace_id,
                }
            )
            project["last_modified_at"] = self._now()
            self._write(payload)
            return BulkRow(**row)

    def record_row_error(self, project_id: str, row_id: str, error: str) -> BulkRow:
        with self._lock:
            payload = self._read()
            project = self._find(payload, project_id)
            row = self._find_row(project, row_id)
            row["status"] = "ERROR"
            row["error"] = error
            project["last_modified_at"] = self._now()
            self._write(payload)
            return BulkRow(**row)

    @staticmethod
    def _build_row(item: dict[str, Any]) -> BulkRow:
        if not isinstance(item, dict):
            raise ValueError("Each row must be an object")
        try:
            row_number = int(item.get("row_number"))
        except (TypeError, ValueError) as exc:
            raise ValueError("Each row needs a numeric row_number") from exc
        if row_number <= 0:
            raise ValueError("Row numbers must be positive")
        question = str(item.get("question") or "").strip()
        if not question:
            raise ValueError(f"Row {row_number} is missing a question")
        status = str(item.get("status") or "PENDING").upper()
        if status not in ROW_STATUSES:
            raise ValueError(f"Unknown row status '{item.get('status')}'")
        return BulkRow(
            id=uuid4().hex,
            row_number=row_number,
            question=question,
            response=str(item.get("response") or ""),
            status=status,
            confidence=item.get("confidence"),
            sources=item.get("sources"),
            remarks=item.get("remarks"),
        )

    @staticmethod
    def _find(payload: dict, project_id: str) -> dict:
        for item in payload.get("projects", []):
            if item.get("id") == project_id:
                return item
        raise ValueError(f"Project {project_id} not found")

    @staticmethod
    def _find_row(project: dict, row_id: str) -> dict:
        for row in project.get("rows", []):
            if row.get("id") == row_id:
                return row
        raise ValueError(f"Row {row_id} not found")

    @staticmethod
    def _deserialize(item: dict) -> BulkProject:
        data = dict(item)
        rows = [BulkRow(**row) for row in data.pop("rows", [])]
        return BulkProject(**data, rows=rows)

    def _read(self) -> dict:
        if not self._file.exists():
            return {"projects": []}
        with self._file.open("r", encoding="utf-8") as handle:
            return json.load(handle)

    def _write(self, data: dict) -> None:
        with self._file.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2)

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()


def parse_question_sheet(
    filename: str,
    data: bytes,
    *,
    question_column: str | None = None,
    sheet_name: str | None = None,
) -> ParsedSheet:
    """Read questions from an uploaded ``.xlsx`` or ``.csv`` sheet."""

    suffix = Path(filename).suffix.lower()
    if suffix == ".csv":
        reader = csv.reader(io.StringIO(_decode_csv(data)))
        table = [list(row) for row in reader]
        name = sheet_name or Path(filename).stem or "Sheet1"
    elif suffix == ".xlsx":
        try:
            workbook = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
        except Exception as exc:
            raise ValueError(f"Failed to read spreadsheet: {exc}") from exc
        try:
            if sheet_name:
                if sheet_name not in workbook.sheetnames:
                    raise ValueError(f"Sheet '{sheet_name}' not found")
                worksheet = workbook[sheet_name]
            else:
                worksheet = workbook.worksheets[0]
            name = worksheet.title
            table = [
                ["" if value is None else str(value) for value in row]
                for row in worksheet.iter_rows(values_only=True)
            ]
        finally:
            workbook.close()
    else:
        raise ValueError("Only .xlsx and .csv files are supported")

    if not table or not any(cell.strip() for cell in table[0]):
        raise ValueError("The sheet has no header row")
    columns = [cell.strip() or f"Column {index + 1}" for index, cell in enumerate(table[0])]

    if question_column:
        if question_column not in columns:
            raise ValueError(f"Column '{question_column}' not found")
        column_index = columns.index(question_column)
    else:
        column_index = next(
            (index for index, column in enumerate(columns) if "question" in column.lower()),
            0,
        )

    rows: list[dict[str, Any]] = []
    for offset, cells in enumerate(table[1:], start=2):
        question = cells[column_index].strip() if column_index < len(cells) else ""
        if question:
            rows.append({"row_number": offset, "question": question})
    logger.info("sheet.parsed filename=%s sheet=%s questions=%s", filename, name, len(rows))
    return ParsedSheet(sheet_name=name, columns=columns, question_column=columns[column_index], rows=rows)


def _decode_csv(data: bytes) -> str:
    """Decode CSV bytes as UTF-8, falling back to Windows-1252 for spreadsheet exports."""

    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        pass
    try:
        text = data.decode("cp1252")
    except UnicodeDecodeError as exc:
        raise ValueError("CSV files must be UTF-8 or Windows-1252 encoded") from exc
    logger.info("project.sheet.decoded encoding=cp1252 bytes=%s", len(data))
    return text


def export_project_xlsx(project: BulkProject) -> bytes:
    workbook = Workbook()
    worksheet = workbook.active
    worksheet.title = (project.sheet_name or "Responses")[:31]
    worksheet.append(list(EXPORT_COLUMNS))
    for cell in worksheet[1]:
        cell.font = Font(bold=True)
    for row in sorted(project.rows, key=lambda item: item.row_number):
        worksheet.append(
            [
                row.row_number,
                row.question,
                row.user_edited_answer or row.response,
                row.confidence or "",
                row.sources or "",
                row.reasoning or "",
                row.inference or "",
                row.remarks or "",
                row.status,
            ]
        )
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


class QuestionnaireRunner:
    """Answers questionnaire rows with the knowledge assistant."""

    def __init__(
        self,
        store: BulkProjectStore,
        assistant: KnowledgeAssistant,
        skill_store: SkillStore,
        *,
        usage_store: UsageStore | None = None,
        jobs: JobManager | None = None,
        settings: Settings | None = None,
        metrics: MetricsRecorder | None = None,
        sleep=time.sleep,
    ) -> None:
        self._store = store
        self._assistant = assistant
        self._skills = skill_store
        self._usage = usage_store
        self._jobs = jobs
        self._settings = settings or Settings()
        self._metrics = metrics
        self._sleep = sleep

    def answer_row(
        self,
        project_id: str,
        row_id: str,
        *,
        prompt_text: str | None = None,
        model_speed: ModelSpeed = "quality",
        user_id: str | None = None,
        user_email: str | None = None,
    ) -> BulkRow:
        project = self._require_project(project_id)
        row = project.row(row_id)
        if row is None:
            raise ValueError(f"Row {row_id} not found")
        skills = select_relevant_skills(row.question, self._candidate_skills())
        result = self._request_with_retry(
            project_id,
            lambda: self._assistant.answer_question(
                row.question,
                prompt_text,
                skills,
                None,
                model_speed,
                user_id=user_id,
                user_email=user_email,
                entity_link={"bulk_row_id": row.id},
            ),
        )
        sections = parse_answer_sections(result.answer)
        if self._usage is not None and result.usage is not None:
            self._usage.log_info(
                "questions",
                result.usage,
                user_id=user_id,
                user_email=user_email,
                metadata={"project_id": project_id, "skill_count": len(skills)},
            )
        return self._store.record_row_answer(
            project_id,
            row.id,
            response=sections.response,
            confidence=sections.confidence or None,
            sources=sections.sources or None,
            remarks=sections.remarks or None,
            conversation_history=result.conversation_history,
            used_skills=[{"id": skill.id, "title": skill.title} for skill in skills],
            trace_id=result.trace_id,
        )

    def answer_project(
        self,
        project_id: str,
        *,
        job_id: str | None = None,
        prompt_text: str | None = None,
        model_speed: ModelSpeed = "quality",
        row_ids: Sequence[str] | None = None,
        user_id: str | None = None,
        user_email: str | None = None,
    ) -> dict[str, int]:
        """Answer pending rows in batches and move the project along its review lifecycle."""

        project = self._require_project(project_id)
        if row_ids:
            wanted = set(row_ids)
            rows = [row for row in project.rows if row.id in wanted]
        else:
            rows = [row for row in project.rows if row.status in {"PENDING", "ERROR"}]
        if project.status == "DRAFT":
            self._store.update_project(project_id, status="IN_PROGRESS")
        if self._jobs is not None and job_id:
            self._jobs.mark_running(job_id, total=len(rows))

        batch_size = max(1, self._settings.bulk_answer_batch_size)
        candidates = self._candidate_skills()
        answered = failed = processed = 0
        for start in range(0, len(rows), batch_size):
            if start:
                self._sleep(self._settings.bulk_request_delay_seconds)
            batch = rows[start : start + batch_size]
            ok, errors = self._answer_batch(
                project_id,
                batch,
                candidates,
                prompt_text=prompt_text,
                model_speed=model_speed,
                user_id=user_id,
                user_email=user_email,
            )
            answered += ok
            failed += errors
            processed += len(batch)
            if self._jobs is not None and job_id:
                self._jobs.update_progress(job_id, processed=processed)

        refreshed = self._require_project(project_id)
        if refreshed.rows and all(row.status == "COMPLETED" for row in refreshed.rows):
            if refreshed.status in {"DRAFT", "IN_PROGRESS"}:
                self._store.update_project(project_id, status="NEEDS_REVIEW")
        summary = {"answered": answered, "failed": failed, "total": len(rows)}
        logger.info("project.answer.completed id=%s answered=%s failed=%s", project_id, answered, failed)
        return summary

    def _answer_batch(
        self,
        project_id: str,
        batch: Sequence[BulkRow],
        candidates: Sequence[Skill],
        *,
        prompt_text: str | None,
        model_speed: ModelSpeed,
        user_id: str | None,
        user_email: str | None,
    ) -> tuple[int, int]:
        skills: list[Skill] = []
        seen: set[str] = set()
        for row in batch:
            for skill in select_relevant_skills(row.question, candidates):
                if skill.id not in seen:
                    seen.add(skill.id)
                    skills.append(skill)
        questions = [{"index": row.row_number, "question": row.question} for row in batch]
        try:
            result = self._request_with_retry(
                project_id,
                lambda: self._assistant.answer_questions_batch(
                    questions,
                    prompt_text,
                    skills,
                    None,
                    model_speed,
                    user_id=user_id,
                    user_email=user_email,
                ),
            )
        except (RuntimeError, ValueError) as exc:
            logger.warning("project.batch.failed id=%s rows=%s error=%s", project_id, len(batch), exc)
            for row in batch:
                self._store.record_row_error(project_id, row.id, str(exc))
            if self._metrics:
                self._metrics.increment("questionnaire.batches", outcome="failed")
            return 0, len(batch)

        if self._usage is not None and result.usage is not None:
            self._usage.log_info(
                "questions-batch",
                result.usage,
                user_id=user_id,
                user_email=user_email,
                metadata={"project_id": project_id, "question_count": len(batch), "skill_count": len(skills)},
            )
        by_index = {item.question_index: item for item in result.answers}
        used = [{"id": skill.id, "title": skill.title} for skill in skills]
        answered = failed = 0
        for row in batch:
            item = by_index.get(row.row_number)
            if item is None:
                self._store.record_row_error(project_id, row.id, MISSING_ANSWER_ERROR)
                failed += 1
                continue
            self._store.record_row_answer(
                project_id,
                row.id,
                response=item.response,
                confidence=item.confidence,
                sources=item.sources,
                reasoning=item.reasoning,
                inference=item.inference,
                remarks=item.remarks,
                used_skills=used,
                trace_id=result.trace_id,
            )
            answered += 1
        if self._metrics:
            self._metrics.increment("questionnaire.batches", outcome="completed")
        return answered, failed

    def _request_with_retry(self, project_id: str, call: Callable[[], T]) -> T:
        """Run ``call``, waiting and retrying while the provider reports a rate limit."""

        retries = 0
        while True:
            try:
                return call()
            except (RuntimeError, ValueError) as exc:
                if not _is_rate_limited(exc) or retries >= self._settings.rate_limit_max_retries:
                    raise
                retries += 1
                logger.warning(
                    "project.answer.rate_limited id=%s attempt=%s wait=%s",
                    project_id,
                    retries,
                    self._settings.rate_limit_retry_wait_seconds,
                )
                if self._metrics:
                    self._metrics.increment("questionnaire.rate_limits")
                self._sleep(self._settings.rate_limit_retry_wait_seconds)

    def _candidate_skills(self) -> list[Skill]:
        return self._skills.list_skills(active_only=True, limit=_SKILL_CANDIDATE_LIMIT)

    def _require_project(self, project_id: str) -> BulkProject:
        project = self._store.get_project(project_id)
        if project is None:
            raise ValueError(f"Project {project_id} not found")
        return project


def _is_rate_limited(exc: BaseException) -> bool:
    current: BaseException | None = exc
    while current is not None:
        if isinstance(current, (anthropic.RateLimitError, openai.RateLimitError)):
            return True
        if getattr(current, "status_code", None) == 429:
            return True
        response = getattr(current, "response", None)
        if isinstance(response, httpx.Response) and response.status_code == 429:
            return True
        current = current.__cause__
    return False


def _cleared_answer() -> dict[str, Any]:
    return {
        "response": "",
        "status": "PENDING",
        "error": None,
        "conversation_history": None,
        "confidence": None,
        "sources": None,
        "reasoning": None,
        "inference": None,
        "remarks": None,
        "used_skills": None,
        "trace_id": None,
        "user_edited_answer": None,
    }


def _normalize(value: str | None) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"Expected text, got {type(value).__name__}")
    cleaned = value.strip()
    return cleaned or None


def _required_text(value: Any, message: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(message)
    return value.strip()


__all__ = [
    "BulkProject",
    "BulkProjectStore",
    "BulkRow",
    "EXPORT_COLUMNS",
    "MISSING_ANSWER_ERROR",
    "PROJECT_STATUSES",
    "ParsedSheet",
    "QuestionnaireRunner",
    "normalize_project_status",
    "export_project_xlsx",
    "parse_question_sheet",
]
