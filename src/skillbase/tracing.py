"""LLM call tracing backed by SQLite.

Every generation can be recorded as a trace row that links the prompt, the
skills provided, the response and token usage to the entity that triggered it
(a questionnaire row, a skill, ...). Feedback from reviewers is attached to the
trace later so answer quality can be analysed per prompt version.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import hashlib
import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Any, Callable, Iterable, Sequence, TypeVar
from uuid import uuid4

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRACE_FEATURES: tuple[str, ...] = ("questions", "chat", "contracts", "skills", "projects", "templates")
ENTITY_COLUMNS: dict[str, str] = {
    "question_history_id": "question_history_id",
    "bulk_row_id": "bulk_row_id",
    "chat_session_id": "chat_session_id",
    "contract_finding_id": "contract_finding_id",
    "skill_id": "skill_id",
}


@dataclass(slots=True)
class TraceContext:
    trace_id: str
    span_name: str
    feature: str
    parent_trace_id: str | None = None
    user_id: str | None = None
    user_email: str | None = None


@dataclass(slots=True)
class TraceSkill:
    id: str
    title: str


@dataclass(slots=True)
class TraceInput:
    model: str
    system_prompt: str
    user_message: str
    skills: Sequence[TraceSkill] = field(default_factory=list)


@dataclass(slots=True)
class TraceOutput:
    response: str
    input_tokens: int
    output_tokens: int
    confidence: str | None = None
    cache_creation_tokens: int | None = None
    cache_read_tokens: int | None = None


def hash_prompt(prompt: str) -> str:
    return hashlib.sha256(prompt.encode("utf-8")).hexdigest()[:16]


class TraceStore:
    """Records LLM traces and reviewer feedback."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS llm_traces (
                    trace_id TEXT PRIMARY KEY,
                    parent_trace_id TEXT,
                    span_name TEXT NOT NULL,
                    feature TEXT NOT NULL,
                    model TEXT NOT NULL,
                    prompt_hash TEXT NOT NULL,
                    prompt_snapshot TEXT,
                    user_message TEXT,
                    skills_provided TEXT,
                    response TEXT,
                    confidence TEXT,
                    input_tokens INTEGER NOT NULL DEFAULT 0,
                    output_tokens INTEGER NOT NULL DEFAULT 0,
                    latency_ms INTEGER NOT NULL DEFAULT 0,
                    cache_hit INTEGER NOT NULL DEFAULT 0,
                    cache_creation_tokens INTEGER,
                    cache_read_tokens INTEGER,
                    user_id TEXT,
                    user_email TEXT,
                    question_history_id TEXT,
                    bulk_row_id TEXT,
                    chat_session_id TEXT,
                    contract_finding_id TEXT,
                    skill_id TEXT,
                    feedback_categories TEXT,
                    feedback_note TEXT,
                    was_edited INTEGER,
                    edit_delta TEXT,
                    feedback_at REAL,
                    created_at REAL NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS llm_traces_feature_idx ON llm_traces (feature, created_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS llm_traces_bulk_row_idx ON llm_traces (bulk_row_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS llm_traces_skill_idx ON llm_traces (skill_id)")

    @staticmethod
    def start_trace(
        span_name: str,
        feature: str,
        *,
        parent_trace_id: str | None = None,
        user_id: str | None = None,
        user_email: str | None = None,
    ) -> TraceContext:
        return TraceContext(
            trace_id=str(uuid4()),
            span_name=span_name,
            feature=feature,
            parent_trace_id=parent_trace_id,
            user_id=user_id,
            user_email=user_email,
        )

    def record_trace(
        self,
        context: TraceContext,
        trace_input: TraceInput,
        trace_output: TraceOutput,
        latency_ms: int,
        *,
        entity_link: dict[str, str] | None = None,
        save_prompt_snapshot: bool = False,
    ) -> str:
        """Persist a trace row; failures are logged and never raised."""

        links = {column: None for column in ENTITY_COLUMNS.values()}
        for key, value in (entity_link or {}).items():
            column = ENTITY_COLUMNS.get(key)
            if column is not None:
                links[column] = value
        skills = [{"id": skill.id, "title": skill.title} for skill in trace_input.skills]
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO llm_traces (
                        trace_id, parent_trace_id, span_name, feature, model, prompt_hash,
                        prompt_snapshot, user_message, skills_provided, response, confidence,
                        input_tokens, output_tokens, latency_ms, cache_hit,
                        cache_creation_tokens, cache_read_tokens, user_id, user_email,
                        question_history_id, bulk_row_id, chat_session_id, contract_finding_id,
                        skill_id, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        context.trace_id,
                        context.parent_trace_id,
                        context.span_name,
                        context.feature,
                        trace_input.model,
                        hash_prompt(trace_input.system_prompt),
                        trace_input.system_prompt if save_prompt_snapshot else None,
                        trace_input.user_message,
                        json.dumps(skills),
                        trace_output.response,
                        trace_output.confidence,
                        trace_output.input_tokens,
                        trace_output.output_tokens,
                        int(latency_ms),
                        1 if (trace_output.cache_read_tokens or 0) > 0 else 0,
                        trace_output.cache_creation_tokens,
                        trace_output.cache_read_tokens,
                        context.user_id,
                        context.user_email,
                        links["question_history_id"],
                        links["bulk_row_id"],
                        links["chat_session_id"],
                        links["contract_finding_id"],
                        links["skill_id"],
                        time.time(),
                    ),
                )
        except sqlite3.Error:
            logger.exception("trace.record.failed trace_id=%s span=%s", context.trace_id, context.span_name)
        return context.trace_id

    def attach_feedback(
        self,
        trace_id: str,
        *,
        categories: Iterable[str] = (),
        note: str | None = None,
        was_edited: bool | None = None,
        edit_delta: dict[str, Any] | None = None,
    ) -> bool:
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    UPDATE llm_traces
                    SET feedback_categories = ?, feedback_note = ?, was_edited = ?,
                        edit_delta = ?, feedback_at = ?
                    WHERE trace_id = ?
                    """,
                    (
                        json.dumps(list(categories)),
                        note,
                        None if was_edited is None else int(was_edited),
                        json.dumps(edit_delta) if edit_delta is not None else None,
                        time.time(),
                        trace_id,
                    ),
                )
                updated = cursor.rowcount > 0
        except sqlite3.Error:
            logger.exception("trace.feedback.failed trace_id=%s", trace_id)
            return False
        if updated:
            logger.info("trace.feedback.attached trace_id=%s", trace_id)
        return updated

    def find_trace_by_entity(self, entity_type: str, entity_id: str) -> str | None:
        column = ENTITY_COLUMNS.get(entity_type)
        if column is None:
            raise ValueError(f"Unknown trace entity type '{entity_type}'")
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT trace_id FROM llm_traces WHERE {column} = ? ORDER BY created_at DESC LIMIT 1",
                (entity_id,),
            ).fetchone()
        return row["trace_id"] if row else None

    def get_trace(self, trace_id: str) -> dict[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM llm_traces WHERE trace_id = ?", (trace_id,)).fetchone()
        return self._row_to_dict(row) if row else None

    def list_traces(self, *, feature: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
        limit = max(1, min(limit, 500))
        query = "SELECT * FROM llm_traces"
        params: list[Any] = []
        if feature:
            query += " WHERE feature = ?"
            params.append(feature)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_dict(row) for row in rows]

    def with_tracing(
        self,
        context: TraceContext,
        trace_input: TraceInput,
        call: Callable[[], T],
        extract_output: Callable[[T], TraceOutput],
        *,
        entity_link: dict[str, str] | None = None,
        save_prompt_snapshot: bool = False,
    ) -> tuple[T, str]:
        """Run ``call`` and record a trace describing its result."""

        start = time.perf_counter()
        result = call()
        latency_ms = int((time.perf_counter() - start) * 1000)
        trace_id = self.record_trace(
            context,
            trace_input,
            extract_output(result),
            latency_ms,
            entity_link=entity_link,
            save_prompt_snapshot=save_prompt_snapshot,
        )
        return result, trace_id

    @staticmethod
    def _row_to_dict(row: sqlite3.Row) -> dict[str, Any]:
        data = dict(row)
        for key in ("skills_provided", "feedback_categories", "edit_delta"):
            if data.get(key):
                data[key] = json.loads(data[key])
        data["cache_hit"] = bool(data.get("cache_hit"))
        if data.get("was_edited") is not None:
            data["was_edited"] = bool(data["was_edited"])
        return data


__all__ = [
    "ENTITY_COLUMNS",
    "TRACE_FEATURES",
    "TraceContext",
    "TraceInput",
    "TraceOutput",
    "TraceSkill",
    "TraceStore",
    "hash_prompt",
]
