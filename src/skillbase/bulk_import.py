"""Bulk skill import workflow.

A session walks source URLs and documents through a fixed sequence of steps::

    input -> analyzing -> review_groups -> generating -> review_drafts -> saving -> done

Analysis groups the sources into planned skills (new or updates of existing
ones). Reviewers approve groups, drafts are generated one group at a time and,
once reviewed, saved into the skill library.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
import logging
import threading
import time
from typing import Any, Callable, Iterable, List, Sequence
from uuid import uuid4

from .config import Settings
from .documents import SourceDocument, SourceFetcher, format_initial_message
from .llm import KnowledgeAssistant, SourceAnalysis
from .observability import MetricsRecorder
from .skills import SkillStore
from .usage import UsageInfo, UsageStore

logger = logging.getLogger(__name__)

WORKFLOW_STEPS: tuple[str, ...] = (
    "input",
    "planning",
    "analyzing",
    "review_groups",
    "generating",
    "review_drafts",
    "saving",
    "done",
)
GROUP_STATUSES: tuple[str, ...] = (
    "pending",
    "approved",
    "generating",
    "ready_for_review",
    "reviewed",
    "saving",
    "done",
    "error",
    "rejected",
)
DRAFT_FIELDS: tuple[str, ...] = ("title", "content")
_ANALYSIS_SKILL_LIMIT = 50
_DOCUMENT_PREVIEW_CHARS = 5_000


class WorkflowError(ValueError):
    """Raised when an action is not allowed in the session's current step."""


@dataclass(slots=True)
class DraftContent:
    title: str
    content: str
    has_changes: bool = True
    change_highlights: list[str] = field(default_factory=list)
    summary: str | None = None
    reasoning: str | None = None
    inference: str | None = None
    sources: str | None = None


@dataclass(slots=True)
class SkillGroup:
    id: str
    type: str
    skill_title: str
    urls: list[str] = field(default_factory=list)
    document_ids: list[str] = field(default_factory=list)
    existing_skill_id: str | None = None
    category: str | None = None
    status: str = "pending"
    error: str | None = None
    reason: str | None = None
    draft: DraftContent | None = None
    original_title: str | None = None
    original_content: str | None = None
    original_tags: list[str] | None = None


@dataclass(slots=True)
class ProcessedResult:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0


@dataclass(slots=True)
class ImportSession:
    id: str
    created_at: str
    updated_at: str
    step: str = "input"
    urls: list[str] = field(default_factory=list)
    documents: list[SourceDocument] = field(default_factory=list)
    groups: list[SkillGroup] = field(default_factory=list)
    error_message: str | None = None
    processed_result: ProcessedResult | None = None

    def group(self, group_id: str) -> SkillGroup:
        for group in self.groups:
            if group.id == group_id:
                return group
        raise ValueError(f"Group {group_id} not found")

    def counts(self) -> dict[str, int]:
        return {
            "pending": sum(1 for group in self.groups if group.status == "pending"),
            "approved": sum(1 for group in self.groups if group.status == "approved"),
            "ready_for_review": sum(1 for group in self.groups if group.status == "ready_for_review"),
            "reviewed": sum(1 for group in self.groups if group.status == "reviewed"),
            "total": len(self.groups),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "step": self.step,
            "urls": list(self.urls),
            "documents": [
                {
                    "id": document.id,
                    "filename": document.filename,
                    "title": document.title,
                    "content_type": document.content_type,
                    "chars": len(document.text),
                }
                for document in self.documents
            ],
            "groups": [asdict(group) for group in self.groups],
            "counts": self.counts(),
            "error_message": self.error_message,
            "processed_result": asdict(self.processed_result) if self.processed_result else None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class BulkImportManager:
    """Keeps bulk-import sessions in memory and drives their workflow."""

    def __init__(
        self,
        skill_store: SkillStore,
        assistant: KnowledgeAssistant,
        fetcher: SourceFetcher,
        *,
        usage_store: UsageStore | None = None,
        settings: Settings | None = None,
        metrics: MetricsRecorder | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._skills = skill_store
        self._assistant = assistant
        self._fetcher = fetcher
        self._usage = usage_store
        self._settings = settings or Settings()
        self._metrics = metrics
        self._sleep = sleep
        self._sessions: dict[str, ImportSession] = {}
        self._lock = threading.RLock()

    def create_session(self, urls: Iterable[str] = ()) -> ImportSession:
        now = self._now()
        session = ImportSession(id=uuid4().hex, created_at=now, updated_at=now, urls=_clean_urls(urls))
        with self._lock:
            self._sessions[session.id] = session
        logger.info("bulk_import.session.created id=%s urls=%s", session.id, len(session.urls))
        return session

    def get_session(self, session_id: str) -> ImportSession | None:
        with self._lock:
            return self._sessions.get(session_id)

    def list_sessions(self) -> List[ImportSession]:
        with self._lock:
            sessions = list(self._sessions.values())
        return sorted(sessions, key=lambda session: session.created_at, reverse=True)

    def delete_session(self, session_id: str) -> bool:
        with self._lock:
            removed = self._sessions.pop(session_id, None)
        if removed is not None:
            logger.info("bulk_import.session.deleted id=%s", session_id)
        return removed is not None

    def reset(self, session_id: str) -> ImportSession:
        with self._lock:
            session = self._require(session_id)
            now = self._now()
            fresh = ImportSession(id=session.id, created_at=session.created_at, updated_at=now)
            self._sessions[session_id] = fresh
        logger.info("bulk_import.session.reset id=%s", session_id)
        return fresh

    def set_urls(self, session_id: str, urls: Iterable[str]) -> ImportSession:
        with self._lock:
            session = self._require_step(session_id, "input")
            session.urls = _clean_urls(urls)
            return self._touch(session)

    def set_step(self, session_id: str, step: str) -> ImportSession:
        if step not in WORKFLOW_STEPS:
            raise WorkflowError(f"Unknown workflow step '{step}'")
        with self._lock:
            session = self._require(session_id)
            session.step = step
            return self._touch(session)

    def add_document(self, session_id: str, document: SourceDocument) -> ImportSession:
        with self._lock:
            session = self._require_step(session_id, "input")
            session.documents.append(document)
            return self._touch(session)

    def remove_document(self, session_id: str, document_id: str) -> ImportSession:
        with self._lock:
            session = self._require_step(session_id, "input")
            remaining = [document for document in session.documents if document.id != document_id]
            if len(remaining) == len(session.documents):
                raise ValueError(f"Document {document_id} not found")
            session.documents = remaining
            return self._touch(session)

    def analyze(self, session_id: str, *, user_id: str | None = None, user_email: str | None = None) -> ImportSession:
        """Group the session's sources into planned skill creates and updates."""

        with self._lock:
            session = self._require_step(session_id, "input")
            if not session.urls and not session.documents:
                raise ValueError("Please enter at least one valid URL or upload a document")
            session.step = "analyzing"
            session.error_message = None
            session.processed_result = None
            self._touch(session)
            urls = list(session.urls)
            documents = list(session.documents)

        try:
            groups = self._plan_groups(urls, documents, user_id=user_id, user_email=user_email)
        except Exception as exc:
            with self._lock:
                session.step = "input"
                session.error_message = str(exc)
                self._touch(session)
            logger.warning("bulk_import.analyze.failed id=%s error=%s", session_id, exc)
            raise

        with self._lock:
            session.groups = groups
            session.step = "review_groups"
            self._touch(session)
        logger.info("bulk_import.analyze.completed id=%s groups=%s", session_id, len(groups))
        return session

    def _plan_groups(
        self,
        urls: Sequence[str],
        documents: Sequence[SourceDocument],
        *,
        user_id: str | None,
        user_email: str | None,
    ) -> list[SkillGroup]:
        match = self._skills.find_url_matches(urls) if urls else None
        if match is not None and len(match[1]) == len(urls):
            skill, _ = match
            group = self._update_group(skill.id, urls=list(urls), reason=f"All URLs already belong to '{skill.title}'")
            groups = [group]
        else:
            analysis = self._analyze(urls, documents, user_id=user_id, user_email=user_email)
            groups = self._groups_from_analysis(analysis, urls)
        if documents:
            groups[0].document_ids.extend(document.id for document in documents)
        return groups

    def _analyze(
        self,
        urls: Sequence[str],
        documents: Sequence[SourceDocument],
        *,
        user_id: str | None,
        user_email: str | None,
    ) -> SourceAnalysis:
        sections: list[str] = []
        if urls:
            content, _ = self._fetcher.fetch_for_analysis(urls)
            if content:
                sections.append(content)
        for document in documents:
            sections.append(f"Document: {document.title}\n{document.text[:_DOCUMENT_PREVIEW_CHARS]}")
        if not sections:
            raise ValueError("Unable to load any content from the provided sources.")
        existing = self._skills.list_skills(active_only=True, limit=_ANALYSIS_SKILL_LIMIT)
        analysis = self._assistant.analyze_sources("\n\n---\n\n".join(sections), list(urls), existing)
        self._log_usage("skills-analyze", analysis.usage, user_id=user_id, user_email=user_email)
        return analysis

    def _groups_from_analysis(self, analysis: SourceAnalysis, urls: Sequence[str]) -> list[SkillGroup]:
        if analysis.action == "update_existing" and analysis.existing_skill_id:
            if self._skills.get_skill(analysis.existing_skill_id) is not None:
                return [self._update_group(analysis.existing_skill_id, urls=list(urls), reason=analysis.reason)]
            logger.warning("bulk_import.analyze.unknown_skill id=%s", analysis.existing_skill_id)

        if analysis.action == "split_topics" and analysis.split_suggestions:
            groups = [
                SkillGroup(
                    id=_group_id(),
                    type="create",
                    skill_title=suggestion.title,
                    urls=[url for url in suggestion.relevant_urls if url in urls],
                    reason=suggestion.description or analysis.reason,
                )
                for suggestion in analysis.split_suggestions
            ]
            assigned = {url for group in groups for url in group.urls}
            groups[0].urls.extend(url for url in urls if url not in assigned)
            return groups

        title = analysis.suggested_title or analysis.existing_skill_title or "New Skill"
        return [
            SkillGroup(
                id=_group_id(),
                type="create",
                skill_title=title,
                urls=list(urls),
                reason=analysis.reason,
            )
        ]

    def _update_group(self, skill_id: str, *, urls: list[str], reason: str | None) -> SkillGroup:
        skill = self._skills.get_skill(skill_id)
        if skill is None:
            raise ValueError(f"Skill {skill_id} not found")
        return SkillGroup(
            id=_group_id(),
            type="update",
            skill_title=skill.title,
            existing_skill_id=skill.id,
            urls=urls,
            reason=reason,
            original_title=skill.title,
            original_content=skill.content,
            original_tags=list(skill.tags),
        )

    def toggle_group_approval(self, session_id: str, group_id: str) -> SkillGroup:
        with self._lock:
            session = self._require_step(session_id, "review_groups")
            group = session.group(group_id)
            group.status = "pending" if group.status == "approved" else "approved"
            self._touch(session)
            return group

    def reject_group(self, session_id: str, group_id: str) -> SkillGroup:
        with self._lock:
            session = self._require_step(session_id, "review_groups")
            group = session.group(group_id)
            group.status = "rejected"
            self._touch(session)
            return group

    def approve_all(self, session_id: str) -> ImportSession:
        with self._lock:
            session = self._require_step(session_id, "review_groups")
            for group in session.groups:
                if group.status == "pending":
                    group.status = "approved"
            return self._touch(session)

    def move_url(self, session_id: str, from_group_id: str, url: str, to_group_id: str) -> ImportSession:
        with self._lock:
            session = self._require_step(session_id, "review_groups")
            source = session.group(from_group_id)
            target = session.group(to_group_id)
            if url not in source.urls:
                raise ValueError(f"URL {url} is not part of group {from_group_id}")
            if source is not target:
                source.urls.remove(url)
                target.urls.append(url)
            session.groups = [group for group in session.groups if group.urls or group.document_ids]
            return self._touch(session)

    def create_group_from_url(self, session_id: str, from_group_id: str, url: str, title: str) -> SkillGroup:
        if not (title or "").strip():
            raise ValueError("A title is required for the new group")
        with self._lock:
            session = self._require_step(session_id, "review_groups")
            source = session.group(from_group_id)
            if url not in source.urls:
                raise ValueError(f"URL {url} is not part of group {from_group_id}")
            source.urls.remove(url)
            session.groups = [group for group in session.groups if group.urls or group.document_ids]
            group = SkillGroup(id=_group_id(), type="create", skill_title=title.strip(), urls=[url])
            session.groups.append(group)
            self._touch(session)
            return group

    def set_group_category(self, session_id: str, group_id: str, category: str | None) -> SkillGroup:
        with self._lock:
            session = self._require_step(session_id, "review_groups", "review_drafts")
            group = session.group(group_id)
            group.category = (category or "").strip() or None
            self._touch(session)
            return group

    def approve_draft(self, session_id: str, group_id: str) -> SkillGroup:
        with self._lock:
            session = self._require_step(session_id, "review_drafts")
            group = session.group(group_id)
            if group.draft is None:
                raise WorkflowError("This group has no draft to approve")
            group.status = "reviewed"
            self._touch(session)
            return group

    def approve_all_drafts(self, session_id: str) -> ImportSession:
        with self._lock:
            session = self._require_step(session_id, "review_drafts")
            for group in session.groups:
                if group.status == "ready_for_review":
                    group.status = "reviewed"
            return self._touch(session)

    def reject_draft(self, session_id: str, group_id: str) -> SkillGroup:
        with self._lock:
            session = self._require_step(session_id, "review_drafts")
            group = session.group(group_id)
            group.status = "rejected"
            self._touch(session)
            return group

    def update_draft_field(self, session_id: str, group_id: str, field_name: str, value: str) -> SkillGroup:
        if field_name not in DRAFT_FIELDS:
            raise ValueError(f"Draft field must be one of {', '.join(DRAFT_FIELDS)}")
        with self._lock:
            session = self._require_step(session_id, "review_drafts")
            group = session.group(group_id)
            if group.draft is None:
                raise WorkflowError("This group has no draft to edit")
            setattr(group.draft, field_name, value)
            self._touch(session)
            return group

    def start_generation(self, session_id: str) -> ImportSession:
        with self._lock:
            session = self._require_step(session_id, "review_groups")
            if not any(group.status == "approved" for group in session.groups):
                raise WorkflowError("Approve at least one group before generating drafts")
            session.step = "generating"
            session.error_message = None
            return self._touch(session)

    def run_generation(
        self,
        session_id: str,
        *,
        prompt_text: str | None = None,
        user_id: str | None = None,
        user_email: str | None = None,
    ) -> ImportSession:
        """Generate drafts for approved groups one at a time, then open draft review."""

        with self._lock:
            session = self._require_step(session_id, "generating")
            approved = [group for group in session.groups if group.status == "approved"]
            documents = {document.id: document for document in session.documents}

        try:
            self._generate_approved(
                session,
                approved,
                documents,
                prompt_text=prompt_text,
                user_id=user_id,
                user_email=user_email,
            )
        except Exception as exc:
            with self._lock:
                for group in approved:
                    if group.status == "generating":
                        group.status = "approved"
                session.step = "review_groups"
                session.error_message = f"Draft generation failed: {exc}"
                self._touch(session)
            logger.warning("bulk_import.generate.failed id=%s error=%s", session_id, exc)
            raise

        with self._lock:
            session.step = "review_drafts"
            self._touch(session)
        logger.info("bulk_import.generate.completed id=%s groups=%s", session_id, len(approved))
        return session

    def _generate_approved(
        self,
        session: ImportSession,
        approved: Sequence[SkillGroup],
        documents: dict[str, SourceDocument],
        *,
        prompt_text: str | None,
        user_id: str | None,
        user_email: str | None,
    ) -> None:
        for index, group in enumerate(approved):
            if index:
                self._sleep(self._settings.bulk_request_delay_seconds)
            with self._lock:
                group.status = "generating"
                self._touch(session)
            group_documents = [documents[doc_id] for doc_id in group.document_ids if doc_id in documents]
            try:
                draft = self._generate_group_draft(
                    group,
                    group_documents,
                    prompt_text=prompt_text,
                    user_id=user_id,
                    user_email=user_email,
                )
            except Exception as exc:
                logger.warning("bulk_import.draft.failed group=%s title=%s error=%s", group.id, group.skill_title, exc)
                with self._lock:
                    group.status = "error"
                    group.error = str(exc)
                    self._touch(session)
                if self._metrics:
                    self._metrics.increment("bulk_import.drafts", outcome="error", type=group.type)
                continue
            with self._lock:
                group.draft = draft
                group.status = "ready_for_review"
                group.error = None
                self._touch(session)
            if self._metrics:
                self._metrics.increment("bulk_import.drafts", outcome="ready", type=group.type)

    def generate_drafts(self, session_id: str, **kwargs: Any) -> ImportSession:
        self.start_generation(session_id)
        return self.run_generation(session_id, **kwargs)

    def _generate_group_draft(
        self,
        group: SkillGroup,
        documents: Sequence[SourceDocument],
        *,
        prompt_text: str | None,
        user_id: str | None,
        user_email: str | None,
    ) -> DraftContent:
        if group.type == "update" and group.existing_skill_id:
            skill = self._skills.get_skill(group.existing_skill_id)
            if skill is None:
                raise ValueError("Existing skill not found")
            source = self._fetcher.build_source_material(urls=group.urls, documents=documents)
            update = self._assistant.generate_draft_update(skill.title, skill.content, source, group.urls)
            self._log_usage("skills-suggest", update.usage, user_id=user_id, user_email=user_email)
            group.original_title = skill.title
            group.original_content = skill.content
            return DraftContent(
                title=update.title or skill.title,
                content=update.content,
                has_changes=update.has_changes,
                change_highlights=update.change_highlights,
                summary=update.summary,
            )

        source = self._fetcher.build_source_material(urls=group.urls, documents=documents)
        draft = self._assistant.generate_skill_draft(
            [{"role": "user", "content": format_initial_message(source)}],
            prompt_text,
            user_id=user_id,
            user_email=user_email,
        )
        self._log_usage("skills-suggest", draft.usage, user_id=user_id, user_email=user_email)
        return DraftContent(title=draft.title or group.skill_title, content=draft.content, has_changes=True)

    def save(self, session_id: str, *, user: str | None = None) -> ProcessedResult:
        """Write reviewed drafts into the skill library."""

        with self._lock:
            session = self._require_step(session_id, "review_drafts")
            session.step = "saving"
            session.error_message = None
            self._touch(session)
            reviewed = [group for group in session.groups if group.status == "reviewed" and group.draft]

        result = ProcessedResult()
        result.skipped = len(session.groups) - len(reviewed)
        try:
            self._save_reviewed(reviewed, result, user=user)
        except Exception as exc:
            with self._lock:
                for group in reviewed:
                    if group.status == "saving":
                        group.status = "reviewed"
                session.step = "review_drafts"
                session.error_message = f"Saving skills failed: {exc}"
                self._touch(session)
            logger.warning("bulk_import.save.aborted id=%s error=%s", session_id, exc)
            raise

        with self._lock:
            session.processed_result = result
            session.step = "done"
            self._touch(session)
        logger.info(
            "bulk_import.save.completed id=%s created=%s updated=%s skipped=%s errors=%s",
            session_id,
            result.created,
            result.updated,
            result.skipped,
            result.errors,
        )
        return result

    def _save_reviewed(self, reviewed: Sequence[SkillGroup], result: ProcessedResult, *, user: str | None) -> None:
        for index, group in enumerate(reviewed):
            if index:
                self._sleep(self._settings.bulk_request_delay_seconds)
            draft = group.draft
            if group.type == "update" and not draft.has_changes:
                with self._lock:
                    group.status = "done"
                result.skipped += 1
                continue
            with self._lock:
                group.status = "saving"
            try:
                if group.type == "update" and group.existing_skill_id:
                    self._save_update(group, draft, user=user)
                    result.updated += 1
                else:
                    self._skills.create_skill(
                        title=draft.title,
                        content=draft.content,
                        categories=[group.category] if group.category else None,
                        source_urls=group.urls,
                        created_by=user,
                    )
                    result.created += 1
            except (OSError, ValueError, KeyError, TypeError) as exc:
                logger.warning("bulk_import.save.failed group=%s title=%s error=%s", group.id, draft.title, exc)
                with self._lock:
                    group.status = "error"
                    group.error = str(exc)
                result.errors += 1
                continue
            with self._lock:
                group.status = "done"

    def _save_update(self, group: SkillGroup, draft: DraftContent, *, user: str | None) -> None:
        skill = self._skills.get_skill(group.existing_skill_id)
        if skill is None:
            raise ValueError("Existing skill not found")
        changes: dict[str, Any] = {"title": draft.title, "content": draft.content}
        if group.category and group.category not in skill.categories:
            changes["categories"] = [*skill.categories, group.category]
        self._skills.update_skill(
            skill.id,
            history_summary=f"Updated from bulk import with {len(group.urls)} URL(s)",
            user=user,
            **changes,
        )
        if group.urls:
            self._skills.add_source_urls(skill.id, group.urls)

    def _log_usage(
        self,
        feature: str,
        usage: UsageInfo | None,
        *,
        user_id: str | None,
        user_email: str | None,
    ) -> None:
        if self._usage is not None and usage is not None:
            self._usage.log_info(feature, usage, user_id=user_id, user_email=user_email)

    def _require(self, session_id: str) -> ImportSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise ValueError(f"Import session {session_id} not found")
        return session

    def _require_step(self, session_id: str, *steps: str) -> ImportSession:
        session = self._require(session_id)
        if session.step not in steps:
            raise WorkflowError(
                f"Import session is in step '{session.step}', expected {' or '.join(steps)}"
            )
        return session

    def _touch(self, session: ImportSession) -> ImportSession:
        session.updated_at = self._now()
        return session

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()


def _group_id() -> str:
    return f"group-{uuid4().hex[:12]}"


def _clean_urls(urls: Iterable[str]) -> list[str]:
    cleaned: list[str] = []
    for url in urls:
        value = (url or "").strip()
        if value and value.startswith(("http://", "https://")) and value not in cleaned:
            cleaned.append(value)
    return cleaned


__all__ = [
    "BulkImportManager",
    "DRAFT_FIELDS",
    "DraftContent",
    "GROUP_STATUSES",
    "ImportSession",
    "ProcessedResult",
    "SkillGroup",
    "WORKFLOW_STEPS",
    "WorkflowError",
]
