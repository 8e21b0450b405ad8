"""FastAPI application setup for the Skillbase knowledge assistant."""

from __future__ import annotations

import asyncio
import base64
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Iterable, Sequence

from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse, Response

from .bulk_import import BulkImportManager, ImportSession, WorkflowError
from .categories import CategoryStore
from .config import Settings
from .documents import FallbackContent, SourceFetcher, format_initial_message, make_source_document
from .jobs import JobManager
from .llm import DEFAULT_QUESTION_PROMPT, DEFAULT_SKILL_PROMPT, KnowledgeAssistant, LLMError
from .observability import MetricsRecorder
from .prompts import PromptLibrary
from .questionnaires import (
    BulkProjectStore,
    QuestionnaireRunner,
    export_project_xlsx,
    normalize_project_status,
    parse_question_sheet,
)
from .skills import SKILL_TIERS, Skill, SkillStore, effective_tier, select_relevant_skills
from .snippets import SnippetKeyConflictError, SnippetStore, snippet_keys
from .templates import (
    TemplateFillContext,
    TemplateStore,
    build_llm_fill_prompt,
    fill_template,
    markdown_to_docx,
    parse_placeholders,
)
from .tokens import estimate_tokens, format_token_count
from .tracing import TraceStore
from .usage import UsageInfo, UsageStore

logger = logging.getLogger(__name__)

MAX_BATCH_QUESTIONS = 15
_XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
_TEMPLATE_FILL_SYSTEM = (
    "You fill document templates for sales teams. Replace each LLM placeholder with accurate, "
    "concise content drawn from the context. Return only the completed document."
)

_LOGGING_CONFIGURED = False


def _ensure_logging() -> None:
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return

    skillbase_logger = logging.getLogger("skillbase")
    uvicorn_logger = logging.getLogger("uvicorn.error")

    handlers = list(uvicorn_logger.handlers)
    if handlers:
        skillbase_logger.handlers = []
        for handler in handlers:
            skillbase_logger.addHandler(handler)
    else:
        handler = logging.StreamHandler()
        handler.setLevel(logging.INFO)
        handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s"))
        skillbase_logger.addHandler(handler)

    if skillbase_logger.level == logging.NOTSET or skillbase_logger.level > logging.INFO:
        skillbase_logger.setLevel(logging.INFO)
    skillbase_logger.propagate = False
    _LOGGING_CONFIGURED = True


class ApplicationState:
    """Container for runtime dependencies used by the FastAPI app."""

    def __init__(
        self,
        *,
        settings: Settings,
        skill_store: SkillStore,
        category_store: CategoryStore,
        prompt_library: PromptLibrary,
        snippet_store: SnippetStore,
        template_store: TemplateStore,
        trace_store: TraceStore,
        usage_store: UsageStore,
        assistant: KnowledgeAssistant,
        fetcher: SourceFetcher,
        project_store: BulkProjectStore,
        jobs: JobManager,
        questionnaire_runner: QuestionnaireRunner,
        bulk_import: BulkImportManager,
        metrics: MetricsRecorder | None,
    ) -> None:
        self.settings = settings
        self.skill_store = skill_store
        self.category_store = category_store
        self.prompt_library = prompt_library
        self.snippet_store = snippet_store
        self.template_store = template_store
        self.trace_store = trace_store
        self.usage_store = usage_store
        self.assistant = assistant
        self.fetcher = fetcher
        self.project_store = project_store
        self.jobs = jobs
        self.questionnaire_runner = questionnaire_runner
        self.bulk_import = bulk_import
        self.metrics = metrics


def create_app(
    *,
    settings: Settings | None = None,
    skill_store: SkillStore | None = None,
    category_store: CategoryStore | None = None,
    prompt_library: PromptLibrary | None = None,
    snippet_store: SnippetStore | None = None,
    template_store: TemplateStore | None = None,
    trace_store: TraceStore | None = None,
    usage_store: UsageStore | None = None,
    assistant: KnowledgeAssistant | None = None,
    fetcher: SourceFetcher | None = None,
    project_store: BulkProjectStore | None = None,
    jobs: JobManager | None = None,
    bulk_import: BulkImportManager | None = None,
    metrics: MetricsRecorder | None = None,
) -> FastAPI:
    """Create the FastAPI application with its stores and services."""

    _ensure_logging()
    settings = settings or Settings.from_env()
    metrics = metrics or settings.build_metrics_recorder()
    data_root = settings.data_path()
    sqlite_file = settings.sqlite_file()

    skill_store = skill_store or SkillStore(data_root)
    category_store = category_store or CategoryStore(data_root)
    prompt_library = prompt_library or PromptLibrary(data_root)
    snippet_store = snippet_store or SnippetStore(data_root)
    template_store = template_store or TemplateStore(data_root)
    trace_store = trace_store or TraceStore(sqlite_file)
    usage_store = usage_store or UsageStore(sqlite_file, metrics=metrics)
    fetcher = fetcher or SourceFetcher(settings, metrics=metrics)
    assistant = assistant or KnowledgeAssistant(
        settings,
        tracer=trace_store,
        metrics=metrics,
        skill_store=skill_store,
    )
    project_store = project_store or BulkProjectStore(data_root)
    jobs = jobs or JobManager()
    questionnaire_runner = QuestionnaireRunner(
        project_store,
        assistant,
        skill_store,
        usage_store=usage_store,
        jobs=jobs,
        settings=settings,
        metrics=metrics,
    )
    bulk_import = bulk_import or BulkImportManager(
        skill_store,
        assistant,
        fetcher,
        usage_store=usage_store,
        settings=settings,
        metrics=metrics,
    )

    app = FastAPI(title="Skillbase")
    app.state.services = ApplicationState(
        settings=settings,
        skill_store=skill_store,
        category_store=category_store,
        prompt_library=prompt_library,
        snippet_store=snippet_store,
        template_store=template_store,
        trace_store=trace_store,
        usage_store=usage_store,
        assistant=assistant,
        fetcher=fetcher,
        project_store=project_store,
        jobs=jobs,
        questionnaire_runner=questionnaire_runner,
        bulk_import=bulk_import,
        metrics=metrics,
    )
    logger.info(
        "app.created backend=%s data_dir=%s sqlite=%s",
        settings.chat_backend,
        data_root,
        sqlite_file,
    )

    def get_state(request: Request) -> ApplicationState:
        return request.app.state.services

    def get_settings_dependency(request: Request) -> Settings:
        return get_state(request).settings

    def get_skill_store(request: Request) -> SkillStore:
        return get_state(request).skill_store

    def get_category_store(request: Request) -> CategoryStore:
        return get_state(request).category_store

    def get_prompt_library(request: Request) -> PromptLibrary:
        return get_state(request).prompt_library

    def get_snippet_store(request: Request) -> SnippetStore:
        return get_state(request).snippet_store

    def get_template_store(request: Request) -> TemplateStore:
        return get_state(request).template_store

    def get_trace_store(request: Request) -> TraceStore:
        return get_state(request).trace_store

    def get_usage_store(request: Request) -> UsageStore:
        return get_state(request).usage_store

    def get_assistant(request: Request) -> KnowledgeAssistant:
        return get_state(request).assistant

    def get_fetcher(request: Request) -> SourceFetcher:
        return get_state(request).fetcher

    def get_project_store(request: Request) -> BulkProjectStore:
        return get_state(request).project_store

    def get_jobs(request: Request) -> JobManager:
        return get_state(request).jobs

    def get_runner(request: Request) -> QuestionnaireRunner:
        return get_state(request).questionnaire_runner

    def get_bulk_import(request: Request) -> BulkImportManager:
        return get_state(request).bulk_import

    def get_metrics(request: Request) -> MetricsRecorder | None:
        return get_state(request).metrics

    def question_prompt(
        payload: dict[str, Any],
        prompts: PromptLibrary,
        snippets: SnippetStore,
        *,
        mode: str,
    ) -> str:
        custom = payload.get("prompt")
        if isinstance(custom, str) and custom.strip():
            text = custom.strip()
        else:
            text = prompts.load_system_prompt(
                "questions",
                DEFAULT_QUESTION_PROMPT,
                mode=mode,
                domains=_string_list(payload.get("domains")),
            )
        return snippets.interpolate(text)

    @app.get("/metrics")
    async def metrics_endpoint(metrics: MetricsRecorder | None = Depends(get_metrics)) -> Response:
        if metrics is None or not metrics.prometheus_enabled:
            raise HTTPException(status_code=404, detail="Metrics export disabled")
        try:
            payload = metrics.render_prometheus()
        except RuntimeError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        return Response(content=payload, media_type=metrics.prometheus_content_type)

    @app.get("/api/skills", response_class=JSONResponse)
    async def list_skills(
        active_only: bool = Query(True),
        category: str | None = Query(None),
        limit: int = Query(100, ge=1),
        offset: int = Query(0, ge=0),
        store: SkillStore = Depends(get_skill_store),
    ) -> JSONResponse:
        skills = store.list_skills(active_only=active_only, category=category, limit=limit, offset=offset)
        return JSONResponse({"skills": [skill.to_dict() for skill in skills]})

    @app.post("/api/skills", response_class=JSONResponse)
    async def create_skill(request: Request, store: SkillStore = Depends(get_skill_store)) -> JSONResponse:
        payload = await _json_object(request)
        user_id, user_email = _current_user(request)
        try:
            skill = store.create_skill(
                title=payload.get("title"),
                content=payload.get("content"),
                categories=_string_list(payload.get("categories")),
                tags=_string_list(payload.get("tags")),
                quick_facts=payload.get("quick_facts") or [],
                edge_cases=_string_list(payload.get("edge_cases")),
                source_urls=_string_list(payload.get("source_urls")),
                is_active=bool(payload.get("is_active", True)),
                tier=payload.get("tier") or "library",
                tier_overrides=payload.get("tier_overrides") or None,
                owners=_string_list(payload.get("owners")),
                created_by=user_email or user_id,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse(skill.to_dict(), status_code=201)

    @app.get("/api/skills/search", response_class=JSONResponse)
    async def search_skills(
        q: str = Query(..., min_length=1),
        categories: str | None = Query(None),
        tiers: str | None = Query(None),
        limit: int = Query(5, ge=1, le=50),
        store: SkillStore = Depends(get_skill_store),
    ) -> JSONResponse:
        wanted_tiers = _split_csv(tiers) or list(SKILL_TIERS)
        unknown = [tier for tier in wanted_tiers if tier not in SKILL_TIERS]
        if unknown:
            raise HTTPException(status_code=400, detail=f"Unknown tiers: {', '.join(unknown)}")
        skills = store.search_skills(q, categories=_split_csv(categories), tiers=wanted_tiers, limit=limit)
        return JSONResponse({"skills": [skill.to_dict() for skill in skills]})

    @app.post("/api/skills/suggest", response_class=JSONResponse)
    async def suggest_skill(
        request: Request,
        store: SkillStore = Depends(get_skill_store),
        assistant: KnowledgeAssistant = Depends(get_assistant),
        fetcher: SourceFetcher = Depends(get_fetcher),
        prompts: PromptLibrary = Depends(get_prompt_library),
        snippets: SnippetStore = Depends(get_snippet_store),
        usage: UsageStore = Depends(get_usage_store),
    ) -> JSONResponse:
        payload = await _json_object(request)
        user_id, user_email = _current_user(request)
        source_text = str(payload.get("source_text") or "").strip()
        source_urls = _string_list(payload.get("source_urls"))
        messages = payload.get("conversation_messages") or []
        if not isinstance(messages, list):
            raise HTTPException(status_code=400, detail="conversation_messages must be a list")
        if not source_text and not source_urls and not messages:
            raise HTTPException(
                status_code=400,
                detail="Provide conversation_messages or at least one valid source entry.",
            )

        existing_id = payload.get("existing_skill_id")
        if existing_id and (source_text or source_urls):
            skill = store.get_skill(existing_id)
            if skill is None:
                raise HTTPException(status_code=404, detail="Skill not found")
            source = await asyncio.to_thread(_build_source, fetcher, source_text, source_urls)
            try:
                update = await asyncio.to_thread(
                    assistant.generate_draft_update, skill.title, skill.content, source, source_urls
                )
            except LLMError as exc:
                raise HTTPException(status_code=500, detail=str(exc)) from exc
            _log_usage(usage, "skills-suggest", update.usage, user_id, user_email, {"mode": "update"})
            draft = asdict(update)
            draft.pop("usage", None)
            return JSONResponse(
                {
                    "update_mode": True,
                    "existing_skill": {"id": skill.id, "title": skill.title, "content": skill.content},
                    "draft": draft,
                    "source_urls": source_urls,
                }
            )

        custom_prompt = payload.get("prompt")
        prompt_text = (
            custom_prompt.strip()
            if isinstance(custom_prompt, str) and custom_prompt.strip()
            else snippets.interpolate(prompts.load_system_prompt("skills", DEFAULT_SKILL_PROMPT))
        )
        initial_message = None
        if messages:
            conversation = messages
            metadata: dict[str, Any] = {"mode": "create-conversation"}
        else:
            source = await asyncio.to_thread(_build_source, fetcher, source_text, source_urls)
            initial_message = format_initial_message(source)
            conversation = [{"role": "user", "content": initial_message}]
            metadata = {"mode": "create-source", "url_count": len(source_urls)}
        try:
            skill_draft = await asyncio.to_thread(
                assistant.generate_skill_draft,
                conversation,
                prompt_text,
                user_id=user_id,
                user_email=user_email,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except LLMError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        _log_usage(usage, "skills-suggest", skill_draft.usage, user_id, user_email, metadata)
        body: dict[str, Any] = {
            "draft": {
                "title": skill_draft.title,
                "content": skill_draft.content,
                "source_mapping": skill_draft.source_mapping,
            },
            "trace_id": skill_draft.trace_id,
        }
        if initial_message is not None:
            body["initial_message"] = initial_message
        return JSONResponse(body)

    @app.get("/api/skills/{skill_id}", response_class=JSONResponse)
    async def get_skill(skill_id: str, store: SkillStore = Depends(get_skill_store)) -> JSONResponse:
        skill = store.get_skill(skill_id)
        if skill is None:
            raise HTTPException(status_code=404, detail="Skill not found")
        return JSONResponse(skill.to_dict())

    @app.patch("/api/skills/{skill_id}", response_class=JSONResponse)
    async def update_skill(
        skill_id: str,
        request: Request,
        store: SkillStore = Depends(get_skill_store),
    ) -> JSONResponse:
        payload = await _json_object(request)
        if store.get_skill(skill_id) is None:
            raise HTTPException(status_code=404, detail="Skill not found")
        user_id, user_email = _current_user(request)
        changes: dict[str, Any] = {}
        for key in ("title", "content", "is_active", "tier", "tier_overrides", "quick_facts"):
            if key in payload:
                changes[key] = payload[key]
        for key in ("categories", "tags", "edge_cases", "owners"):
            if key in payload:
                changes[key] = _string_list(payload[key])
        try:
            skill = store.update_skill(
                skill_id,
                history_summary=payload.get("history_summary"),
                user=user_email or user_id,
                **changes,
            )
            if "source_urls" in payload:
                skill = store.add_source_urls(skill_id, _string_list(payload["source_urls"]))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse(skill.to_dict())

    @app.delete("/api/skills/{skill_id}", response_class=Response)
    async def delete_skill(skill_id: str, store: SkillStore = Depends(get_skill_store)) -> Response:
        if not store.delete_skill(skill_id):
            raise HTTPException(status_code=404, detail="Skill not found")
        return Response(status_code=204)

    @app.get("/api/skill-categories", response_class=JSONResponse)
    async def list_categories(store: CategoryStore = Depends(get_category_store)) -> JSONResponse:
        return JSONResponse({"categories": [asdict(category) for category in store.list_categories()]})

    @app.post("/api/skill-categories", response_class=JSONResponse)
    async def create_category(request: Request, store: CategoryStore = Depends(get_category_store)) -> JSONResponse:
        payload = await _json_object(request)
        try:
            category = store.create_category(
                name=payload.get("name") or "",
                description=payload.get("description"),
                color=payload.get("color"),
            )
        except ValueError as exc:
            status = 409 if "already exists" in str(exc) else 400
            raise HTTPException(status_code=status, detail=str(exc)) from exc
        return JSONResponse(asdict(category), status_code=201)

    @app.put("/api/skill-categories", response_class=JSONResponse)
    async def reorder_categories(request: Request, store: CategoryStore = Depends(get_category_store)) -> JSONResponse:
        payload = await _json_object(request)
        items = payload.get("categories")
        if not isinstance(items, list):
            raise HTTPException(status_code=400, detail="categories must be a list")
        try:
            categories = store.reorder(items)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse({"categories": [asdict(category) for category in categories]})

    @app.patch("/api/skill-categories/{category_id}", response_class=JSONResponse)
    async def update_category(
        category_id: str,
        request: Request,
        store: CategoryStore = Depends(get_category_store),
    ) -> JSONResponse:
        payload = await _json_object(request)
        if store.get_category(category_id) is None:
            raise HTTPException(status_code=404, detail="Category not found")
        changes = {key: payload[key] for key in ("name", "description", "color") if key in payload}
        try:
            category = store.update_category(category_id, **changes)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse(asdict(category))

    @app.delete("/api/skill-categories/{category_id}", response_class=Response)
    async def delete_category(category_id: str, store: CategoryStore = Depends(get_category_store)) -> Response:
        if not store.delete_category(category_id):
            raise HTTPException(status_code=404, detail="Category not found")
        return Response(status_code=204)

    @app.post("/api/questions/answer", response_class=JSONResponse)
    async def answer_question(
        request: Request,
        store: SkillStore = Depends(get_skill_store),
        assistant: KnowledgeAssistant = Depends(get_assistant),
        fetcher: SourceFetcher = Depends(get_fetcher),
        prompts: PromptLibrary = Depends(get_prompt_library),
        snippets: SnippetStore = Depends(get_snippet_store),
        usage: UsageStore = Depends(get_usage_store),
    ) -> JSONResponse:
        payload = await _json_object(request)
        question = str(payload.get("question") or "").strip()
        if not question:
            raise HTTPException(status_code=400, detail="Question is required")
        user_id, user_email = _current_user(request)
        skills = _request_skills(payload, store, question)
        fallback = [] if skills else await asyncio.to_thread(_fallback_content, payload, fetcher)
        prompt_text = question_prompt(payload, prompts, snippets, mode="single")
        try:
            result = await asyncio.to_thread(
                assistant.answer_question,
                question,
                prompt_text,
                skills,
                fallback,
                _model_speed(payload),
                user_id=user_id,
                user_email=user_email,
            )
        except LLMError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        _log_usage(
            usage,
            "questions",
            result.usage,
            user_id,
            user_email,
            {"skill_count": len(skills), "has_fallback": result.used_fallback},
        )
        return JSONResponse(
            {
                "answer": result.answer,
                "conversation_history": result.conversation_history,
                "used_fallback": result.used_fallback,
                "used_skills": [{"id": skill.id, "title": skill.title} for skill in skills],
                "trace_id": result.trace_id,
                "usage": _usage_dict(result.usage),
            }
        )

    @app.post("/api/questions/answer-batch", response_class=JSONResponse)
    async def answer_batch(
        request: Request,
        store: SkillStore = Depends(get_skill_store),
        assistant: KnowledgeAssistant = Depends(get_assistant),
        fetcher: SourceFetcher = Depends(get_fetcher),
        prompts: PromptLibrary = Depends(get_prompt_library),
        snippets: SnippetStore = Depends(get_snippet_store),
        usage: UsageStore = Depends(get_usage_store),
    ) -> JSONResponse:
        payload = await _json_object(request)
        questions = _batch_questions(payload.get("questions"))
        user_id, user_email = _current_user(request)
        joined = " ".join(item["question"] for item in questions)
        skills = _request_skills(payload, store, joined)
        fallback = [] if skills else await asyncio.to_thread(_fallback_content, payload, fetcher)
        prompt_text = question_prompt(payload, prompts, snippets, mode="bulk")
        try:
            result = await asyncio.to_thread(
                assistant.answer_questions_batch,
                questions,
                prompt_text,
                skills,
                fallback,
                _model_speed(payload),
                user_id=user_id,
                user_email=user_email,
            )
        except LLMError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        _log_usage(
            usage,
            "questions-batch",
            result.usage,
            user_id,
            user_email,
            {"question_count": len(questions), "skill_count": len(skills), "has_fallback": result.used_fallback},
        )
        return JSONResponse(
            {
                "answers": [asdict(item) for item in result.answers],
                "used_fallback": result.used_fallback,
                "trace_id": result.trace_id,
                "usage": _usage_dict(result.usage),
            }
        )

    @app.post("/api/questions/answer-progressive", response_class=JSONResponse)
    async def answer_progressive(
        request: Request,
        store: SkillStore = Depends(get_skill_store),
        assistant: KnowledgeAssistant = Depends(get_assistant),
        prompts: PromptLibrary = Depends(get_prompt_library),
        snippets: SnippetStore = Depends(get_snippet_store),
        usage: UsageStore = Depends(get_usage_store),
        settings: Settings = Depends(get_settings_dependency),
    ) -> JSONResponse:
        payload = await _json_object(request)
        question = str(payload.get("question") or "").strip()
        if not question:
            raise HTTPException(status_code=400, detail="Question is required")
        user_id, user_email = _current_user(request)
        categories = _string_list(payload.get("categories"))
        if payload.get("skill_ids"):
            tier1 = _skills_by_id(store, payload.get("skill_ids"))
        else:
            context = categories[0] if categories else None
            core = [
                skill
                for skill in store.list_skills(active_only=True, limit=500)
                if effective_tier(skill, context) == "core"
                and (not categories or set(categories).intersection(skill.categories))
            ]
            tier1 = select_relevant_skills(question, core) or core[:5]
        enable_tier2 = payload.get("enable_tier2")
        enable_tier3 = payload.get("enable_tier3")
        try:
            result = await asyncio.to_thread(
                assistant.answer_question_progressive,
                question,
                question_prompt(payload, prompts, snippets, mode="single"),
                tier1,
                selected_categories=categories,
                enable_tier2=settings.progressive_tier2_enabled if enable_tier2 is None else bool(enable_tier2),
                enable_tier3=settings.progressive_tier3_enabled if enable_tier3 is None else bool(enable_tier3),
                model_speed=_model_speed(payload),
                user_id=user_id,
                user_email=user_email,
            )
        except LLMError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        _log_usage(usage, "questions", result.usage, user_id, user_email, {"tier": result.tier})
        return JSONResponse(
            {
                "answer": result.answer,
                "tier": result.tier,
                "tier2_skills_found": result.tier2_skills_found,
                "tier3_skills_found": result.tier3_skills_found,
                "conversation_history": result.conversation_history,
                "trace_id": result.trace_id,
                "usage": _usage_dict(result.usage),
            }
        )

    @app.get("/api/prompt-blocks", response_class=JSONResponse)
    async def list_prompt_blocks(prompts: PromptLibrary = Depends(get_prompt_library)) -> JSONResponse:
        return JSONResponse(prompts.describe())

    @app.get("/api/prompt-blocks/export")
    async def export_prompt_blocks(prompts: PromptLibrary = Depends(get_prompt_library)) -> Response:
        return Response(
            content=prompts.export_yaml(),
            media_type="application/x-yaml",
            headers={"Content-Disposition": 'attachment; filename="prompt-blocks.yaml"'},
        )

    @app.post("/api/prompt-blocks/import", response_class=JSONResponse)
    async def import_prompt_blocks(request: Request, prompts: PromptLibrary = Depends(get_prompt_library)) -> JSONResponse:
        text = (await request.body()).decode("utf-8", errors="replace")
        if not text.strip():
            raise HTTPException(status_code=400, detail="YAML body is required")
        try:
            counts = prompts.import_yaml(text)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse({"imported": counts})

    @app.patch("/api/prompt-blocks/{block_id}", response_class=JSONResponse)
    async def update_prompt_block(
        block_id: str,
        request: Request,
        prompts: PromptLibrary = Depends(get_prompt_library),
    ) -> JSONResponse:
        payload = await _json_object(request)
        variants = payload.get("variants")
        if variants is not None and not isinstance(variants, dict):
            raise HTTPException(status_code=400, detail="variants must be an object")
        try:
            block = prompts.update_block(
                block_id,
                name=payload.get("name"),
                description=payload.get("description"),
                variants=variants,
            )
        except ValueError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return JSONResponse(asdict(block))

    @app.delete("/api/prompt-blocks/{block_id}", response_class=JSONResponse)
    async def reset_prompt_block(block_id: str, prompts: PromptLibrary = Depends(get_prompt_library)) -> JSONResponse:
        try:
            block = prompts.reset_block(block_id)
        except ValueError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return JSONResponse(asdict(block))

    @app.patch("/api/prompt-modifiers/{modifier_id}", response_class=JSONResponse)
    async def update_prompt_modifier(
        modifier_id: str,
        request: Request,
        prompts: PromptLibrary = Depends(get_prompt_library),
    ) -> JSONResponse:
        payload = await _json_object(request)
        try:
            modifier = prompts.update_modifier(
                modifier_id,
                name=payload.get("name"),
                content=payload.get("content"),
            )
        except ValueError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return JSONResponse(asdict(modifier))

    @app.delete("/api/prompt-modifiers/{modifier_id}", response_class=JSONResponse)
    async def reset_prompt_modifier(
        modifier_id: str,
        prompts: PromptLibrary = Depends(get_prompt_library),
    ) -> JSONResponse:
        try:
            modifier = prompts.reset_modifier(modifier_id)
        except ValueError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return JSONResponse(asdict(modifier))

    @app.get("/api/prompts/{key}", response_class=JSONResponse)
    async def get_prompt(
        key: str,
        mode: str | None = Query(None),
        domains: str | None = Query(None),
        prompts: PromptLibrary = Depends(get_prompt_library),
        snippets: SnippetStore = Depends(get_snippet_store),
    ) -> JSONResponse:
        default = DEFAULT_SKILL_PROMPT if key in {"skills", "skill_builder"} else DEFAULT_QUESTION_PROMPT
        text = snippets.interpolate(
            prompts.load_system_prompt(key, default, mode=mode, domains=_split_csv(domains))
        )
        tokens = estimate_tokens(text)
        return JSONResponse(
            {"key": key, "prompt": text, "tokens": tokens, "tokens_display": format_token_count(tokens)}
        )

    @app.get("/api/context-snippets", response_class=JSONResponse)
    async def list_snippets(
        category: str | None = Query(None),
        active_only: bool = Query(False),
        store: SnippetStore = Depends(get_snippet_store),
    ) -> JSONResponse:
        snippets = store.list_snippets(category=category, active_only=active_only)
        return JSONResponse({"snippets": [asdict(snippet) for snippet in snippets]})

    @app.post("/api/context-snippets", response_class=JSONResponse)
    async def create_snippet(request: Request, store: SnippetStore = Depends(get_snippet_store)) -> JSONResponse:
        payload = await _json_object(request)
        user_id, user_email = _current_user(request)
        try:
            snippet = store.create_snippet(
                name=payload.get("name") or "",
                key=payload.get("key") or "",
                content=payload.get("content") or "",
                category=payload.get("category"),
                description=payload.get("description"),
                is_active=bool(payload.get("is_active", True)),
                created_by=user_email or user_id,
            )
        except SnippetKeyConflictError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse(asdict(snippet), status_code=201)

    @app.post("/api/context-snippets/preview", response_class=JSONResponse)
    async def preview_snippets(request: Request, store: SnippetStore = Depends(get_snippet_store)) -> JSONResponse:
        payload = await _json_object(request)
        text = payload.get("text")
        if not isinstance(text, str):
            raise HTTPException(status_code=400, detail="text is required")
        return JSONResponse({"text": store.interpolate(text), "keys": snippet_keys(text)})

    @app.get("/api/context-snippets/{snippet_id}", response_class=JSONResponse)
    async def get_snippet(snippet_id: str, store: SnippetStore = Depends(get_snippet_store)) -> JSONResponse:
        snippet = store.get_snippet(snippet_id)
        if snippet is None:
            raise HTTPException(status_code=404, detail="Snippet not found")
        return JSONResponse(asdict(snippet))

    @app.patch("/api/context-snippets/{snippet_id}", response_class=JSONResponse)
    async def update_snippet(
        snippet_id: str,
        request: Request,
        store: SnippetStore = Depends(get_snippet_store),
    ) -> JSONResponse:
        payload = await _json_object(request)
        if store.get_snippet(snippet_id) is None:
            raise HTTPException(status_code=404, detail="Snippet not found")
        changes = {
            key: payload[key]
            for key in ("name", "key", "content", "category", "description", "is_active")
            if key in payload
        }
        try:
            snippet = store.update_snippet(snippet_id, **changes)
        except SnippetKeyConflictError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse(asdict(snippet))

    @app.delete("/api/context-snippets/{snippet_id}", response_class=Response)
    async def delete_snippet(snippet_id: str, store: SnippetStore = Depends(get_snippet_store)) -> Response:
        if not store.delete_snippet(snippet_id):
            raise HTTPException(status_code=404, detail="Snippet not found")
        return Response(status_code=204)

    @app.get("/api/templates", response_class=JSONResponse)
    async def list_templates(
        category: str | None = Query(None),
        active_only: bool = Query(False),
        store: TemplateStore = Depends(get_template_store),
    ) -> JSONResponse:
        templates = store.list_templates(category=category, active_only=active_only)
        return JSONResponse({"templates": [asdict(template) for template in templates]})

    @app.post("/api/templates", response_class=JSONResponse)
    async def create_template(request: Request, store: TemplateStore = Depends(get_template_store)) -> JSONResponse:
        payload = await _json_object(request)
        user_id, user_email = _current_user(request)
        try:
            template = store.create_template(
                name=payload.get("name") or "",
                content=payload.get("content") or "",
                description=payload.get("description"),
                category=payload.get("category") or "other",
                output_format=payload.get("output_format") or "markdown",
                is_active=bool(payload.get("is_active", True)),
                sort_order=payload.get("sort_order") or 0,
                created_by=user_email or user_id,
            )
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse(asdict(template), status_code=201)

    @app.post("/api/templates/fill", response_class=JSONResponse)
    async def fill_template_endpoint(
        request: Request,
        store: TemplateStore = Depends(get_template_store),
        skills: SkillStore = Depends(get_skill_store),
        assistant: KnowledgeAssistant = Depends(get_assistant),
        usage: UsageStore = Depends(get_usage_store),
        settings: Settings = Depends(get_settings_dependency),
    ) -> JSONResponse:
        payload = await _json_object(request)
        user_id, user_email = _current_user(request)
        template = None
        if payload.get("template_id"):
            template = store.get_template(payload["template_id"])
            if template is None:
                raise HTTPException(status_code=404, detail="Template not found")
        content = template.content if template else payload.get("content")
        if not isinstance(content, str) or not content.strip():
            raise HTTPException(status_code=400, detail="template_id or content is required")
        output_format = payload.get("output_format")
        if output_format is None:
            output_format = template.output_format if template else "markdown"
            # pdf templates render as markdown
            if output_format not in {"markdown", "docx"}:
                output_format = "markdown"
        elif output_format not in {"markdown", "docx"}:
            raise HTTPException(status_code=400, detail="output_format must be markdown or docx")

        raw_context = payload.get("context") or {}
        if not isinstance(raw_context, dict):
            raise HTTPException(status_code=400, detail="context must be an object")
        for key in ("customer", "gtm", "custom"):
            if raw_context.get(key) is not None and not isinstance(raw_context[key], dict):
                raise HTTPException(status_code=400, detail=f"context.{key} must be an object")
        context = TemplateFillContext(
            customer=raw_context.get("customer"),
            gtm=raw_context.get("gtm"),
            skills=[skill.to_dict() for skill in _skills_by_id(skills, raw_context.get("skill_ids"))],
            custom={str(key): str(value) for key, value in (raw_context.get("custom") or {}).items()},
        )
        result = fill_template(content, context)
        filled = result.content
        llm_filled = False
        if result.llm_placeholders and payload.get("use_llm", True):
            prompt = build_llm_fill_prompt(filled, result.llm_placeholders, context)
            try:
                reply = await asyncio.to_thread(
                    assistant.complete,
                    prompt,
                    system=_TEMPLATE_FILL_SYSTEM,
                    temperature=settings.llm_temperature_balanced,
                )
            except LLMError as exc:
                raise HTTPException(status_code=500, detail=str(exc)) from exc
            filled = reply.text
            llm_filled = True
            _log_usage(
                usage,
                "template_fill",
                reply.usage,
                user_id,
                user_email,
                {"template_id": template.id if template else None, "placeholders": len(result.llm_placeholders)},
            )

        body: dict[str, Any] = {
            "content": filled,
            "output_format": output_format,
            "placeholders_resolved": result.placeholders_resolved,
            "placeholders_missing": result.placeholders_missing,
            "llm_placeholders": [placeholder.full_match for placeholder in result.llm_placeholders],
            "llm_filled": llm_filled,
        }
        if output_format == "docx":
            document = markdown_to_docx(
                filled,
                title=payload.get("title") or (template.name if template else None),
                author=user_email,
            )
            body["docx_base64"] = base64.b64encode(document).decode("ascii")
        return JSONResponse(body)

    @app.get("/api/templates/{template_id}", response_class=JSONResponse)
    async def get_template(template_id: str, store: TemplateStore = Depends(get_template_store)) -> JSONResponse:
        template = store.get_template(template_id)
        if template is None:
            raise HTTPException(status_code=404, detail="Template not found")
        return JSONResponse(asdict(template))

    @app.get("/api/templates/{template_id}/placeholders", response_class=JSONResponse)
    async def template_placeholders(
        template_id: str,
        store: TemplateStore = Depends(get_template_store),
    ) -> JSONResponse:
        template = store.get_template(template_id)
        if template is None:
            raise HTTPException(status_code=404, detail="Template not found")
        placeholders = [asdict(placeholder) for placeholder in parse_placeholders(template.content)]
        return JSONResponse({"placeholders": placeholders, "hints": template.placeholder_hints})

    @app.patch("/api/templates/{template_id}", response_class=JSONResponse)
    async def update_template(
        template_id: str,
        request: Request,
        store: TemplateStore = Depends(get_template_store),
    ) -> JSONResponse:
        payload = await _json_object(request)
        if store.get_template(template_id) is None:
            raise HTTPException(status_code=404, detail="Template not found")
        changes = {
            key: payload[key]
            for key in ("name", "content", "description", "category", "output_format", "is_active", "sort_order")
            if key in payload
        }
        try:
            template = store.update_template(template_id, **changes)
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse(asdict(template))

    @app.delete("/api/templates/{template_id}", response_class=Response)
    async def delete_template(template_id: str, store: TemplateStore = Depends(get_template_store)) -> Response:
        if not store.delete_template(template_id):
            raise HTTPException(status_code=404, detail="Template not found")
        return Response(status_code=204)

    @app.get("/api/projects", response_class=JSONResponse)
    async def list_projects(store: BulkProjectStore = Depends(get_project_store)) -> JSONResponse:
        return JSONResponse({"projects": [project.to_dict() for project in store.list_projects()]})

    @app.post("/api/projects", response_class=JSONResponse)
    async def create_project(request: Request, store: BulkProjectStore = Depends(get_project_store)) -> JSONResponse:
        payload = await _json_object(request)
        rows = payload.get("rows")
        if not payload.get("name") or not payload.get("sheet_name") or not payload.get("columns") or rows is None:
            raise HTTPException(status_code=400, detail="Missing required fields: name, sheet_name, columns, rows")
        if not isinstance(rows, list):
            raise HTTPException(status_code=400, detail="rows must be a list")
        try:
            project = store.create_project(
                name=payload["name"],
                sheet_name=payload["sheet_name"],
                columns=_string_list(payload["columns"]),
                rows=rows,
                owner_name=payload.get("owner_name"),
                customer_name=payload.get("customer_name"),
                notes=payload.get("notes"),
                status=payload.get("status"),
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse(project.to_dict(), status_code=201)

    @app.post("/api/projects/import", response_class=JSONResponse)
    async def import_project(
        file: UploadFile = File(...),
        name: str | None = Form(None),
        question_column: str | None = Form(None),
        sheet_name: str | None = Form(None),
        customer_name: str | None = Form(None),
        owner_name: str | None = Form(None),
        store: BulkProjectStore = Depends(get_project_store),
    ) -> JSONResponse:
        filename = file.filename or ""
        data = await file.read()
        if not data:
            raise HTTPException(status_code=400, detail="File is empty")
        try:
            sheet = parse_question_sheet(filename, data, question_column=question_column, sheet_name=sheet_name)
            if not sheet.rows:
                raise ValueError("No questions found in the sheet")
            project = store.create_project(
                name=(name or "").strip() or sheet.sheet_name,
                sheet_name=sheet.sheet_name,
                columns=sheet.columns,
                rows=sheet.rows,
                customer_name=customer_name,
                owner_name=owner_name,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        logger.info("project.import.completed id=%s file=%s rows=%s", project.id, filename, len(project.rows))
        return JSONResponse(
            {**project.to_dict(), "question_column": sheet.question_column},
            status_code=201,
        )

    @app.get("/api/projects/{project_id}", response_class=JSONResponse)
    async def get_project(project_id: str, store: BulkProjectStore = Depends(get_project_store)) -> JSONResponse:
        project = store.get_project(project_id)
        if project is None:
            raise HTTPException(status_code=404, detail="Project not found")
        return JSONResponse(project.to_dict())

    @app.patch("/api/projects/{project_id}", response_class=JSONResponse)
    async def update_project(
        project_id: str,
        request: Request,
        store: BulkProjectStore = Depends(get_project_store),
    ) -> JSONResponse:
        payload = await _json_object(request)
        if store.get_project(project_id) is None:
            raise HTTPException(status_code=404, detail="Project not found")
        changes = {
            key: payload[key]
            for key in ("name", "status", "owner_name", "customer_name", "notes", "review_requested_by", "reviewed_by")
            if key in payload
        }
        try:
            project = store.update_project(project_id, **changes)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse(project.to_dict())

    @app.delete("/api/projects/{project_id}", response_class=Response)
    async def delete_project(project_id: str, store: BulkProjectStore = Depends(get_project_store)) -> Response:
        if not store.delete_project(project_id):
            raise HTTPException(status_code=404, detail="Project not found")
        return Response(status_code=204)

    @app.post("/api/projects/{project_id}/answer", response_class=JSONResponse)
    async def answer_project(
        project_id: str,
        request: Request,
        background_tasks: BackgroundTasks,
        store: BulkProjectStore = Depends(get_project_store),
        runner: QuestionnaireRunner = Depends(get_runner),
        job_manager: JobManager = Depends(get_jobs),
        prompts: PromptLibrary = Depends(get_prompt_library),
        snippets: SnippetStore = Depends(get_snippet_store),
    ) -> JSONResponse:
        payload = await _json_object(request, allow_empty=True)
        if store.get_project(project_id) is None:
            raise HTTPException(status_code=404, detail="Project not found")
        user_id, user_email = _current_user(request)
        job = job_manager.create_job("project-answer", project_id)
        background_tasks.add_task(
            _process_answer_job,
            runner,
            job_manager,
            job.id,
            project_id,
            question_prompt(payload, prompts, snippets, mode="bulk"),
            _model_speed(payload),
            _string_list(payload.get("row_ids")),
            user_id,
            user_email,
        )
        return JSONResponse({"job": job.to_dict()}, status_code=202)

    @app.get("/api/projects/{project_id}/export")
    async def export_project(project_id: str, store: BulkProjectStore = Depends(get_project_store)) -> Response:
        project = store.get_project(project_id)
        if project is None:
            raise HTTPException(status_code=404, detail="Project not found")
        filename = f"{project.name or 'questionnaire'}.xlsx".replace('"', "")
        return Response(
            content=export_project_xlsx(project),
            media_type=_XLSX_MEDIA_TYPE,
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @app.post("/api/projects/{project_id}/rows/{row_id}/answer", response_class=JSONResponse)
    async def answer_project_row(
        project_id: str,
        row_id: str,
        request: Request,
        store: BulkProjectStore = Depends(get_project_store),
        runner: QuestionnaireRunner = Depends(get_runner),
        prompts: PromptLibrary = Depends(get_prompt_library),
        snippets: SnippetStore = Depends(get_snippet_store),
    ) -> JSONResponse:
        payload = await _json_object(request, allow_empty=True)
        project = store.get_project(project_id)
        if project is None or project.row(row_id) is None:
            raise HTTPException(status_code=404, detail="Row not found")
        user_id, user_email = _current_user(request)
        try:
            row = await asyncio.to_thread(
                runner.answer_row,
                project_id,
                row_id,
                prompt_text=question_prompt(payload, prompts, snippets, mode="single"),
                model_speed=_model_speed(payload),
                user_id=user_id,
                user_email=user_email,
            )
        except LLMError as exc:
            store.record_row_error(project_id, row_id, str(exc))
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        return JSONResponse(asdict(row))

    @app.patch("/api/projects/{project_id}/rows/{row_id}", response_class=JSONResponse)
    async def update_project_row(
        project_id: str,
        row_id: str,
        request: Request,
        store: BulkProjectStore = Depends(get_project_store),
    ) -> JSONResponse:
        payload = await _json_object(request)
        project = store.get_project(project_id)
        if project is None or project.row(row_id) is None:
            raise HTTPException(status_code=404, detail="Row not found")
        changes = {
            key: payload[key]
            for key in (
                "question",
                "response",
                "flagged_for_review",
                "flag_note",
                "review_status",
                "review_note",
                "user_edited_answer",
                "reviewed_by",
            )
            if key in payload
        }
        try:
            row = store.update_row(project_id, row_id, **changes)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse(asdict(row))

    @app.get("/api/jobs/{job_id}", response_class=JSONResponse)
    async def get_job(job_id: str, job_manager: JobManager = Depends(get_jobs)) -> JSONResponse:
        job = job_manager.get(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return JSONResponse(job.to_dict())

    def require_session(manager: BulkImportManager, session_id: str) -> ImportSession:
        session = manager.get_session(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Import session not found")
        return session

    @app.post("/api/bulk-import", response_class=JSONResponse)
    async def create_import(request: Request, manager: BulkImportManager = Depends(get_bulk_import)) -> JSONResponse:
        payload = await _json_object(request, allow_empty=True)
        session = manager.create_session(_string_list(payload.get("urls")))
        return JSONResponse(session.to_dict(), status_code=201)

    @app.get("/api/bulk-import/{session_id}", response_class=JSONResponse)
    async def get_import(session_id: str, manager: BulkImportManager = Depends(get_bulk_import)) -> JSONResponse:
        return JSONResponse(require_session(manager, session_id).to_dict())

    @app.delete("/api/bulk-import/{session_id}", response_class=Response)
    async def delete_import(session_id: str, manager: BulkImportManager = Depends(get_bulk_import)) -> Response:
        if not manager.delete_session(session_id):
            raise HTTPException(status_code=404, detail="Import session not found")
        return Response(status_code=204)

    @app.put("/api/bulk-import/{session_id}/urls", response_class=JSONResponse)
    async def set_import_urls(
        session_id: str,
        request: Request,
        manager: BulkImportManager = Depends(get_bulk_import),
    ) -> JSONResponse:
        payload = await _json_object(request)
        require_session(manager, session_id)
        session = _workflow(manager.set_urls, session_id, _string_list(payload.get("urls")))
        return JSONResponse(session.to_dict())

    @app.post("/api/bulk-import/{session_id}/step", response_class=JSONResponse)
    async def set_import_step(
        session_id: str,
        request: Request,
        manager: BulkImportManager = Depends(get_bulk_import),
    ) -> JSONResponse:
        payload = await _json_object(request)
        require_session(manager, session_id)
        session = _workflow(manager.set_step, session_id, str(payload.get("step") or ""))
        return JSONResponse(session.to_dict())

    @app.post("/api/bulk-import/{session_id}/documents", response_class=JSONResponse)
    async def upload_import_documents(
        session_id: str,
        files: list[UploadFile] = File(...),
        manager: BulkImportManager = Depends(get_bulk_import),
    ) -> JSONResponse:
        require_session(manager, session_id)
        if not files:
            raise HTTPException(status_code=400, detail="At least one file is required")
        added: list[dict[str, Any]] = []
        errors: list[dict[str, str]] = []
        for upload in files:
            filename = upload.filename or "document"
            data = await upload.read()
            try:
                document = await asyncio.to_thread(make_source_document, filename, data, upload.content_type)
            except ValueError as exc:
                errors.append({"filename": filename, "error": str(exc)})
                continue
            _workflow(manager.add_document, session_id, document)
            added.append({"id": document.id, "filename": document.filename, "title": document.title})
        if not added:
            raise HTTPException(status_code=400, detail={"message": "No documents could be read", "errors": errors})
        session = require_session(manager, session_id)
        return JSONResponse({"session": session.to_dict(), "added": added, "errors": errors}, status_code=201)

    @app.delete("/api/bulk-import/{session_id}/documents/{document_id}", response_class=JSONResponse)
    async def remove_import_document(
        session_id: str,
        document_id: str,
        manager: BulkImportManager = Depends(get_bulk_import),
    ) -> JSONResponse:
        require_session(manager, session_id)
        session = _workflow(manager.remove_document, session_id, document_id)
        return JSONResponse(session.to_dict())

    @app.post("/api/bulk-import/{session_id}/analyze", response_class=JSONResponse)
    async def analyze_import(
        session_id: str,
        request: Request,
        manager: BulkImportManager = Depends(get_bulk_import),
    ) -> JSONResponse:
        require_session(manager, session_id)
        user_id, user_email = _current_user(request)
        session = await asyncio.to_thread(
            _workflow, manager.analyze, session_id, user_id=user_id, user_email=user_email
        )
        return JSONResponse(session.to_dict())

    @app.post("/api/bulk-import/{session_id}/groups/approve-all", response_class=JSONResponse)
    async def approve_all_groups(session_id: str, manager: BulkImportManager = Depends(get_bulk_import)) -> JSONResponse:
        require_session(manager, session_id)
        return JSONResponse(_workflow(manager.approve_all, session_id).to_dict())

    @app.post("/api/bulk-import/{session_id}/groups/{group_id}/toggle", response_class=JSONResponse)
    async def toggle_group(
        session_id: str,
        group_id: str,
        manager: BulkImportManager = Depends(get_bulk_import),
    ) -> JSONResponse:
        require_session(manager, session_id)
        return JSONResponse(asdict(_workflow(manager.toggle_group_approval, session_id, group_id)))

    @app.post("/api/bulk-import/{session_id}/groups/{group_id}/reject", response_class=JSONResponse)
    async def reject_group(
        session_id: str,
        group_id: str,
        manager: BulkImportManager = Depends(get_bulk_import),
    ) -> JSONResponse:
        require_session(manager, session_id)
        return JSONResponse(asdict(_workflow(manager.reject_group, session_id, group_id)))

    @app.post("/api/bulk-import/{session_id}/groups/{group_id}/category", response_class=JSONResponse)
    async def set_group_category(
        session_id: str,
        group_id: str,
        request: Request,
        manager: BulkImportManager = Depends(get_bulk_import),
    ) -> JSONResponse:
        payload = await _json_object(request)
        require_session(manager, session_id)
        group = _workflow(manager.set_group_category, session_id, group_id, payload.get("category"))
        return JSONResponse(asdict(group))

    @app.post("/api/bulk-import/{session_id}/groups/{group_id}/move-url", response_class=JSONResponse)
    async def move_group_url(
        session_id: str,
        group_id: str,
        request: Request,
        manager: BulkImportManager = Depends(get_bulk_import),
    ) -> JSONResponse:
        payload = await _json_object(request)
        require_session(manager, session_id)
        session = _workflow(
            manager.move_url,
            session_id,
            group_id,
            str(payload.get("url") or ""),
            str(payload.get("to_group_id") or ""),
        )
        return JSONResponse(session.to_dict())

    @app.post("/api/bulk-import/{session_id}/groups/{group_id}/split", response_class=JSONResponse)
    async def split_group_url(
        session_id: str,
        group_id: str,
        request: Request,
        manager: BulkImportManager = Depends(get_bulk_import),
    ) -> JSONResponse:
        payload = await _json_object(request)
        require_session(manager, session_id)
        group = _workflow(
            manager.create_group_from_url,
            session_id,
            group_id,
            str(payload.get("url") or ""),
            str(payload.get("title") or ""),
        )
        return JSONResponse(asdict(group), status_code=201)

    @app.post("/api/bulk-import/{session_id}/generate", response_class=JSONResponse)
    async def generate_import_drafts(
        session_id: str,
        request: Request,
        background_tasks: BackgroundTasks,
        manager: BulkImportManager = Depends(get_bulk_import),
        prompts: PromptLibrary = Depends(get_prompt_library),
        snippets: SnippetStore = Depends(get_snippet_store),
    ) -> JSONResponse:
        require_session(manager, session_id)
        user_id, user_email = _current_user(request)
        session = _workflow(manager.start_generation, session_id)
        prompt_text = snippets.interpolate(prompts.load_system_prompt("skills", DEFAULT_SKILL_PROMPT))
        background_tasks.add_task(
            _process_generation_job,
            manager,
            session_id,
            prompt_text,
            user_id,
            user_email,
        )
        return JSONResponse(session.to_dict(), status_code=202)

    @app.post("/api/bulk-import/{session_id}/drafts/approve-all", response_class=JSONResponse)
    async def approve_all_drafts(session_id: str, manager: BulkImportManager = Depends(get_bulk_import)) -> JSONResponse:
        require_session(manager, session_id)
        return JSONResponse(_workflow(manager.approve_all_drafts, session_id).to_dict())

    @app.post("/api/bulk-import/{session_id}/drafts/{group_id}/approve", response_class=JSONResponse)
    async def approve_draft(
        session_id: str,
        group_id: str,
        manager: BulkImportManager = Depends(get_bulk_import),
    ) -> JSONResponse:
        require_session(manager, session_id)
        return JSONResponse(asdict(_workflow(manager.approve_draft, session_id, group_id)))

    @app.post("/api/bulk-import/{session_id}/drafts/{group_id}/reject", response_class=JSONResponse)
    async def reject_draft(
        session_id: str,
        group_id: str,
        manager: BulkImportManager = Depends(get_bulk_import),
    ) -> JSONResponse:
        require_session(manager, session_id)
        return JSONResponse(asdict(_workflow(manager.reject_draft, session_id, group_id)))

    @app.patch("/api/bulk-import/{session_id}/drafts/{group_id}", response_class=JSONResponse)
    async def edit_draft(
        session_id: str,
        group_id: str,
        request: Request,
        manager: BulkImportManager = Depends(get_bulk_import),
    ) -> JSONResponse:
        payload = await _json_object(request)
        require_session(manager, session_id)
        value = payload.get("value")
        if not isinstance(value, str):
            raise HTTPException(status_code=400, detail="value must be a string")
        group = _workflow(
            manager.update_draft_field,
            session_id,
            group_id,
            str(payload.get("field") or ""),
            value,
        )
        return JSONResponse(asdict(group))

    @app.post("/api/bulk-import/{session_id}/save", response_class=JSONResponse)
    async def save_import(
        session_id: str,
        request: Request,
        manager: BulkImportManager = Depends(get_bulk_import),
    ) -> JSONResponse:
        require_session(manager, session_id)
        user_id, user_email = _current_user(request)
        result = await asyncio.to_thread(_workflow, manager.save, session_id, user=user_email or user_id)
        session = require_session(manager, session_id)
        return JSONResponse({"result": asdict(result), "session": session.to_dict()})

    @app.post("/api/bulk-import/{session_id}/reset", response_class=JSONResponse)
    async def reset_import(session_id: str, manager: BulkImportManager = Depends(get_bulk_import)) -> JSONResponse:
        require_session(manager, session_id)
        return JSONResponse(manager.reset(session_id).to_dict())

    @app.get("/api/usage", response_class=JSONResponse)
    async def usage_summary(
        days: int = Query(30, ge=1, le=365),
        user_id: str | None = Query(None),
        feature: str | None = Query(None),
        limit: int = Query(20, ge=1, le=200),
        usage: UsageStore = Depends(get_usage_store),
    ) -> JSONResponse:
        start = (datetime.now(timezone.utc) - timedelta(days=days)).timestamp()
        return JSONResponse(
            {
                "summary": usage.summary(user_id=user_id, feature=feature, start=start),
                "by_feature": usage.by_feature(user_id=user_id, start=start),
                "daily": usage.daily(user_id=user_id, days=days),
                "recent": usage.recent(limit=limit, user_id=user_id),
            }
        )

    @app.get("/api/traces", response_class=JSONResponse)
    async def list_traces(
        feature: str | None = Query(None),
        limit: int = Query(50, ge=1, le=500),
        traces: TraceStore = Depends(get_trace_store),
    ) -> JSONResponse:
        return JSONResponse({"traces": traces.list_traces(feature=feature, limit=limit)})

    @app.get("/api/traces/lookup", response_class=JSONResponse)
    async def lookup_trace(
        entity_type: str = Query(...),
        entity_id: str = Query(...),
        traces: TraceStore = Depends(get_trace_store),
    ) -> JSONResponse:
        try:
            trace_id = traces.find_trace_by_entity(entity_type, entity_id)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if trace_id is None:
            raise HTTPException(status_code=404, detail="Trace not found")
        return JSONResponse({"trace_id": trace_id})

    @app.get("/api/traces/{trace_id}", response_class=JSONResponse)
    async def get_trace(trace_id: str, traces: TraceStore = Depends(get_trace_store)) -> JSONResponse:
        trace = traces.get_trace(trace_id)
        if trace is None:
            raise HTTPException(status_code=404, detail="Trace not found")
        return JSONResponse(trace)

    @app.post("/api/traces/{trace_id}/feedback", response_class=JSONResponse)
    async def trace_feedback(
        trace_id: str,
        request: Request,
        traces: TraceStore = Depends(get_trace_store),
    ) -> JSONResponse:
        payload = await _json_object(request)
        edit_delta = payload.get("edit_delta")
        if edit_delta is not None and not isinstance(edit_delta, dict):
            raise HTTPException(status_code=400, detail="edit_delta must be an object")
        was_edited = payload.get("was_edited")
        updated = traces.attach_feedback(
            trace_id,
            categories=_string_list(payload.get("categories")),
            note=payload.get("note"),
            was_edited=None if was_edited is None else bool(was_edited),
            edit_delta=edit_delta,
        )
        if not updated:
            raise HTTPException(status_code=404, detail="Trace not found")
        return JSONResponse({"status": "recorded", "trace_id": trace_id})

    return app


async def _json_object(request: Request, *, allow_empty: bool = False) -> dict[str, Any]:
    body = await request.body()
    if not body.strip():
        if allow_empty:
            return {}
        raise HTTPException(status_code=400, detail="A JSON body is required")
    try:
        payload = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON body.") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="JSON body must be an object")
    return payload


def _current_user(request: Request) -> tuple[str | None, str | None]:
    user_id = (request.headers.get("x-user-id") or "").strip() or None
    user_email = (request.headers.get("x-user-email") or "").strip() or None
    return user_id, user_email


def _string_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise HTTPException(status_code=400, detail="Expected a list of strings")
    return [str(item).strip() for item in value if item is not None and str(item).strip()]


def _split_csv(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [part.strip() for part in raw.split(",") if part.strip()]


def _model_speed(payload: dict[str, Any]) -> str:
    speed = str(payload.get("model_speed") or "quality").lower()
    if speed not in {"fast", "quality"}:
        raise HTTPException(status_code=400, detail="model_speed must be fast or quality")
    return speed


def _skills_by_id(store: SkillStore, ids: Any) -> list[Skill]:
    skills: list[Skill] = []
    for skill_id in _string_list(ids):
        skill = store.get_skill(skill_id)
        if skill is None:
            raise HTTPException(status_code=404, detail=f"Skill {skill_id} not found")
        skills.append(skill)
    return skills


def _request_skills(payload: dict[str, Any], store: SkillStore, question: str) -> list[Skill]:
    if "skill_ids" in payload:
        return _skills_by_id(store, payload.get("skill_ids"))
    return select_relevant_skills(question, store.list_skills(active_only=True, limit=500))


def _fallback_content(payload: dict[str, Any], fetcher: SourceFetcher) -> list[FallbackContent]:
    provided = payload.get("fallback_content")
    if isinstance(provided, list):
        return [
            FallbackContent(
                title=str(item.get("title") or item.get("url") or "Reference"),
                url=str(item.get("url") or ""),
                content=str(item.get("content") or ""),
            )
            for item in provided
            if isinstance(item, dict)
        ]
    urls = _string_list(payload.get("fallback_urls"))
    return fetcher.fetch_fallback_content(urls) if urls else []


def _batch_questions(raw: Any) -> list[dict[str, Any]]:
    if not isinstance(raw, list) or not raw:
        raise HTTPException(status_code=400, detail="At least one question is required")
    if len(raw) > MAX_BATCH_QUESTIONS:
        raise HTTPException(status_code=400, detail=f"At most {MAX_BATCH_QUESTIONS} questions per batch")
    questions: list[dict[str, Any]] = []
    for position, item in enumerate(raw, start=1):
        if isinstance(item, str):
            index, text = position, item
        elif isinstance(item, dict):
            index, text = item.get("index", position), item.get("question")
        else:
            raise HTTPException(status_code=400, detail="Questions must be strings or objects")
        text = str(text or "").strip()
        if not text:
            raise HTTPException(status_code=400, detail=f"Question {position} is empty")
        questions.append({"index": index, "question": text})
    return questions


def _build_source(fetcher: SourceFetcher, source_text: str, urls: Sequence[str]) -> str:
    try:
        return fetcher.build_source_material(source_text=source_text, urls=urls)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _usage_dict(usage: UsageInfo | None) -> dict[str, Any] | None:
    if usage is None:
        return None
    return {**asdict(usage), "total_tokens": usage.total_tokens}


def _log_usage(
    store: UsageStore,
    feature: str,
    usage: UsageInfo | None,
    user_id: str | None,
    user_email: str | None,
    metadata: dict[str, Any] | None = None,
) -> None:
    if usage is not None:
        store.log_info(feature, usage, user_id=user_id, user_email=user_email, metadata=metadata)


def _workflow(func, *args, **kwargs):
    try:
        return func(*args, **kwargs)
    except WorkflowError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except LLMError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _process_answer_job(
    runner: QuestionnaireRunner,
    job_manager: JobManager,
    job_id: str,
    project_id: str,
    prompt_text: str,
    model_speed: str,
    row_ids: Iterable[str],
    user_id: str | None,
    user_email: str | None,
) -> None:
    logger.info("project.answer.job.start job_id=%s project=%s", job_id, project_id)
    try:
        summary = runner.answer_project(
            project_id,
            job_id=job_id,
            prompt_text=prompt_text,
            model_speed=model_speed,
            row_ids=list(row_ids) or None,
            user_id=user_id,
            user_email=user_email,
        )
        job_manager.mark_completed(job_id, summary)
    except Exception as exc:
        logger.exception("project.answer.job.failed job_id=%s project=%s error=%s", job_id, project_id, exc)
        job_manager.mark_failed(job_id, str(exc))


def _process_generation_job(
    manager: BulkImportManager,
    session_id: str,
    prompt_text: str,
    user_id: str | None,
    user_email: str | None,
) -> None:
    logger.info("bulk_import.generate.job.start session=%s", session_id)
    try:
        manager.run_generation(session_id, prompt_text=prompt_text, user_id=user_id, user_email=user_email)
    except Exception as exc:
        logger.exception("bulk_import.generate.job.failed session=%s error=%s", session_id, exc)


__all__ = ["create_app", "ApplicationState"]
