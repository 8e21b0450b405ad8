"""LLM-backed knowledge operations: skill drafts, answers and source analysis."""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
import time
from typing import Any, Callable, Iterable, Mapping, Sequence

import anthropic
import httpx
from openai import OpenAI

from .answers import is_confident_answer
from .config import ModelSpeed, Settings
from .documents import FallbackContent
from .observability import MetricsRecorder
from .skills import Skill, SkillStore
from .tracing import TraceInput, TraceOutput, TraceSkill, TraceStore
from .usage import UsageInfo, usage_from_response

logger = logging.getLogger(__name__)

DEFAULT_SKILL_PROMPT = """You are a knowledge extraction specialist. Turn the provided source material into a single, focused skill.

A skill is a fact-dense reference article used to answer customer and RFP questions.
- Dense with facts, not prose
- Bullet points over paragraphs
- Keep complete lists (integrations, certifications, limits)
- Remove marketing language

Return ONLY a JSON object:
{
  "title": "Concise, specific title",
  "content": "Complete skill content in markdown",
  "sourceMapping": ["which source each section came from"]
}"""

DEFAULT_QUESTION_PROMPT = """You are a knowledgeable assistant answering customer questionnaires using the reference material provided.

Answer accurately and concisely. Prefer the provided skills over general knowledge.

Format your answer as:
<the answer>

Confidence: High | Medium | Low
Sources: which skills or documents were used
Remarks: caveats or limitations, or "None\""""

DRAFT_UPDATE_SYSTEM_PROMPT = """You are a knowledge extraction specialist reviewing an existing skill against new source material.

IMPORTANT: BE CONSERVATIVE ABOUT CHANGES. Only suggest updates if the new source contains genuinely valuable new information.

RETURN hasChanges: false IF:
- The source material is marketing fluff without concrete facts
- The information is already captured in the existing skill (even if worded differently)
- The "new" information is just rephrasing what's already there
- The source doesn't add facts that would help answer RFP questions
- Changes would only be cosmetic (reformatting, rewording)

RETURN hasChanges: true ONLY IF:
- NEW concrete facts: specific numbers, dates, versions, limits, certifications
- NEW capabilities not mentioned in existing skill
- CORRECTIONS to outdated information (version numbers, deprecated features)
- MISSING integrations, platforms, or compliance standards
- Significant new details that would help answer customer questions

WHAT MAKES CHANGES "MEANINGFUL":
Think: "Would this help answer an RFP question that the existing skill cannot?"
- YES: Add the new fact
- NO: Keep the original, return hasChanges: false

CONTENT PRINCIPLES (when hasChanges: true):
- Dense with facts, not prose
- Bullet points over paragraphs
- Keep complete lists (integrations, certifications)
- Remove marketing language
- Preserve existing structure unless new info requires reorganization

OUTPUT (JSON only):
{
  "hasChanges": true/false,
  "summary": "What new facts were added" OR "No meaningful updates - source material doesn't add new information",
  "title": "Keep same unless topic scope genuinely changed",
  "content": "COMPLETE updated skill if hasChanges=true, OR copy of original if hasChanges=false",
  "changeHighlights": ["Specific new fact added", ...]
}"""

ANALYSIS_SYSTEM_PROMPT = """You are a knowledge management expert helping organize security documentation into focused, topic-specific skills.

Your task is to analyze new source material and decide how it should be organized:

PRINCIPLES:
1. Skills should be FOCUSED on a single topic area (like "Data Encryption", "Access Control", "Incident Response")
2. Avoid creating overly broad skills that cover multiple unrelated topics
3. If content matches an existing skill's topic, UPDATE that skill rather than creating duplicates
4. If content covers multiple distinct topics, suggest SPLITTING into separate skills

DECISION TREE:
1. First, check if the content is clearly about ONE topic that matches an existing skill -> UPDATE_EXISTING
2. If it's ONE topic but no existing skill matches -> CREATE_NEW
3. If the content covers MULTIPLE distinct topics -> SPLIT_TOPICS (suggest 2-4 focused skills)

OUTPUT FORMAT:
Return a JSON object:
{
  "suggestion": {
    "action": "create_new" | "update_existing" | "split_topics",
    "existingSkillId": "id of the skill to update (update_existing)",
    "existingSkillTitle": "title of the skill (update_existing)",
    "suggestedTitle": "Concise, specific title (create_new)",
    "suggestedTags": ["relevant", "tags"],
    "splitSuggestions": [
      {
        "title": "First Topic Skill",
        "description": "What this skill would cover",
        "relevantUrls": ["urls that relate to this topic"]
      }
    ],
    "reason": "Brief explanation of why this action was chosen"
  },
  "sourcePreview": "2-3 sentence summary of what the source material contains"
}

GUIDELINES:
- Be specific with titles (not "Security Policy" but "Data Classification Policy" or "Network Security Controls")
- Consider semantic overlap, not just keyword matching
- If updating existing, the content should genuinely expand/update that skill's topic
- For splits, each resulting skill should be independently useful"""

ANALYSIS_ACTIONS: tuple[str, ...] = ("create_new", "update_existing", "split_topics")
ANALYSIS_MAX_TOKENS = 2_000
# Non-streaming Messages API calls above roughly 21k tokens are rejected by the SDK.
DRAFT_UPDATE_MAX_TOKENS = 16_000
_PROGRESSIVE_SEARCH_LIMIT = 5
_EMPTY_RESPONSE = "The assistant returned an empty response."

_BATCH_INSTRUCTION = [
    "Answer each of the following questions. Return a JSON array where each element has these fields:",
    "- questionIndex: the question number (integer)",
    "- response: the complete answer",
    '- confidence: "High", "Medium", or "Low"',
    '- sources: which skills/documents were used (or "None" if answering from general knowledge)',
    "- reasoning: what information was found directly in the sources",
    '- inference: what was logically deduced or inferred (or "None" if everything was found directly)',
    '- remarks: any important caveats, limitations, or notes (or "None" if none)',
    "",
    "IMPORTANT: Return ONLY a valid JSON array. No markdown code fences, no explanations outside the JSON.",
    "",
    "Questions:",
]


class LLMError(RuntimeError):
    """Raised when a language model operation fails."""


@dataclass(slots=True)
class ReferenceSkill:
    title: str
    content: str
    id: str | None = None


@dataclass(slots=True)
class LLMReply:
    text: str
    usage: UsageInfo


@dataclass(slots=True)
class SkillDraft:
    title: str
    content: str
    source_mapping: list[str] | None = None
    usage: UsageInfo | None = None
    trace_id: str | None = None


@dataclass(slots=True)
class AnswerResult:
    answer: str
    conversation_history: list[dict[str, str]]
    used_fallback: bool
    usage: UsageInfo | None = None
    trace_id: str | None = None


@dataclass(slots=True)
class ProgressiveAnswerResult(AnswerResult):
    tier: int = 1
    tier2_skills_found: int | None = None
    tier3_skills_found: int | None = None


@dataclass(slots=True)
class BatchAnswerItem:
    question_index: int
    response: str
    confidence: str = "Medium"
    sources: str = "None"
    reasoning: str = ""
    inference: str = "None"
    remarks: str = "None"


@dataclass(slots=True)
class BatchAnswerResult:
    answers: list[BatchAnswerItem]
    used_fallback: bool
    usage: UsageInfo | None = None
    trace_id: str | None = None


@dataclass(slots=True)
class DraftUpdate:
    has_changes: bool
    summary: str
    title: str
    content: str
    change_highlights: list[str] = field(default_factory=list)
    usage: UsageInfo | None = None


@dataclass(slots=True)
class SplitSuggestion:
    title: str
    description: str
    relevant_urls: list[str] = field(default_factory=list)


@dataclass(slots=True)
class SourceAnalysis:
    action: str
    reason: str
    source_preview: str
    existing_skill_id: str | None = None
    existing_skill_title: str | None = None
    suggested_title: str | None = None
    suggested_tags: list[str] = field(default_factory=list)
    split_suggestions: list[SplitSuggestion] = field(default_factory=list)
    usage: UsageInfo | None = None


def reference_skills(skills: Iterable[Skill | ReferenceSkill | Mapping[str, Any]] | None) -> list[ReferenceSkill]:
    """Coerce stored skills or plain mappings into prompt references."""

    references: list[ReferenceSkill] = []
    for skill in skills or ():
        if isinstance(skill, ReferenceSkill):
            references.append(skill)
        elif isinstance(skill, Mapping):
            references.append(
                ReferenceSkill(
                    title=str(skill.get("title") or ""),
                    content=str(skill.get("content") or ""),
                    id=skill.get("id"),
                )
            )
        else:
            references.append(ReferenceSkill(title=skill.title, content=skill.content, id=skill.id))
    return references


def parse_json_content(text: str) -> Any:
    """Parse a JSON reply, tolerating code fences and chatter around an object."""

    stripped = _strip_code_fence(text.strip())
    try:
        return json.loads(stripped)
    except json.JSONDecodeError:
        start = stripped.find("{")
        end = stripped.rfind("}")
        if start != -1 and end > start:
            try:
                return json.loads(stripped[start : end + 1])
            except json.JSONDecodeError:
                pass
    raise ValueError("Failed to parse LLM response as JSON.")


def _strip_code_fence(value: str) -> str:
    if not value.startswith("```"):
        return value
    lines = value.split("\n")
    if len(lines) <= 2:
        return value
    if lines[-1].strip() == "```":
        lines.pop()
    lines.pop(0)
    if lines and not lines[0].strip():
        lines.pop(0)
    return "\n".join(lines).strip()


def sanitize_messages(messages: Iterable[Mapping[str, Any]] | None) -> list[dict[str, str]]:
    sanitized: list[dict[str, str]] = []
    for message in messages or ():
        if not isinstance(message, Mapping):
            continue
        role = "assistant" if message.get("role") == "assistant" else "user"
        content = message.get("content")
        text = content.strip() if isinstance(content, str) else ""
        if text:
            sanitized.append({"role": role, "content": text})
    return sanitized


def normalize_skill_draft(data: Any) -> SkillDraft:
    if not isinstance(data, dict):
        raise ValueError("LLM response is not a valid object.")
    missing = [name for name in ("title", "content") if name not in data]
    if missing:
        received = ", ".join(list(data.keys())[:10]) or "(none)"
        raise ValueError(
            f"LLM response missing required fields: {', '.join(missing)}. Received keys: {received}"
        )
    if data["title"] is None or data["content"] is None:
        raise ValueError("Skill title and content must be strings.")
    mapping = _string_list(data.get("sourceMapping"))
    return SkillDraft(
        title=str(data["title"]).strip(),
        content=str(data["content"]).strip(),
        source_mapping=mapping or None,
    )


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(entry).strip() for entry in value if entry is not None and str(entry).strip()]


def _skills_context(skills: Sequence[ReferenceSkill], *, plural: bool) -> str:
    if not skills:
        return ""
    subject = "these questions" if plural else "this question"
    lines = [
        "# AVAILABLE SKILLS (Reference Material)",
        "",
        f"The following pre-verified skills are available for reference when answering {subject}. "
        "Use these as your primary source of truth:",
        "",
    ]
    for index, skill in enumerate(skills, start=1):
        lines.extend([f"### Skill {index}: {skill.title}", "", skill.content])
    lines.extend(["", "---", ""])
    return "\n".join(lines)


def _fallback_context(fallback: Sequence[FallbackContent], *, plural: bool) -> str:
    usable = [item for item in fallback if item.content.strip()]
    if not usable:
        return ""
    subject = "these questions" if plural else "this question"
    lines = [
        "# REFERENCE DOCUMENTS (Fallback Context)",
        "",
        f"No pre-verified skills matched {subject}. "
        "The following reference documents were fetched as fallback context:",
        "",
    ]
    for index, item in enumerate(usable, start=1):
        lines.extend([f"### Reference {index}: {item.title}", f"Source: {item.url}", "", item.content])
    lines.extend(["", "---", ""])
    return "\n".join(lines)


def _coerce_index(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("Invalid questionIndex in batch response.")
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except ValueError as exc:
        raise ValueError(f"Invalid questionIndex in batch response: {value!r}") from exc


class KnowledgeAssistant:
    """Runs prompt-driven operations against the configured chat backend."""

    def __init__(
        self,
        settings: Settings,
        *,
        anthropic_client: Any | None = None,
        openai_client: Any | None = None,
        tracer: TraceStore | None = None,
        metrics: MetricsRecorder | None = None,
        skill_store: SkillStore | None = None,
    ) -> None:
        self._settings = settings
        self._anthropic_client = anthropic_client
        self._openai_client = openai_client
        self._tracer = tracer
        self._metrics = metrics
        self._skills = skill_store

    def generate_skill_draft(
        self,
        messages: Iterable[Mapping[str, Any]],
        prompt_text: str | None = None,
        *,
        user_id: str | None = None,
        user_email: str | None = None,
    ) -> SkillDraft:
        sanitized = sanitize_messages(messages)
        if not sanitized:
            raise ValueError("At least one conversation message is required to generate a skill draft.")
        system = prompt_text or DEFAULT_SKILL_PROMPT
        model = self._settings.model_for_speed("quality")
        user_message = "\n".join(f"{message['role']}: {message['content']}" for message in sanitized)
        try:
            reply, trace_id = self._traced(
                "generate_skill_draft",
                "skills",
                TraceInput(model=model, system_prompt=system, user_message=user_message),
                lambda: self._invoke(
                    "generate_skill_draft",
                    system=system,
                    messages=sanitized,
                    temperature=self._settings.llm_temperature_precise,
                    max_tokens=self._settings.llm_max_tokens,
                    model=model,
                ),
                user_id=user_id,
                user_email=user_email,
            )
            if not reply.text:
                raise ValueError(_EMPTY_RESPONSE)
            parsed = parse_json_content(reply.text)
            if isinstance(parsed, list):
                parsed = parsed[0] if parsed else None
            draft = normalize_skill_draft(parsed)
        except Exception as exc:
            raise LLMError(f"Failed to generate skill draft: {exc}") from exc
        draft.usage = reply.usage
        draft.trace_id = trace_id
        logger.info("llm.skill_draft.completed title=%s chars=%s", draft.title[:80], len(draft.content))
        return draft

    def generate_draft_update(
        self,
        existing_title: str,
        existing_content: str,
        source: str,
        urls: Sequence[str] = (),
    ) -> DraftUpdate:
        """Ask for a conservative update of an existing skill from new material."""

        url_line = f"\nSource URLs: {', '.join(urls)}" if urls else ""
        user_message = (
            f"EXISTING SKILL:\nTitle: {existing_title}\n\nCurrent Content:\n{existing_content}\n\n---\n\n"
            f"NEW SOURCE MATERIAL:\n{source}\n\n{url_line}\n\n---\n\n"
            "Review the new source material against the existing skill.\n"
            "- If there's significant new/changed information, return an updated draft with hasChanges=true\n"
            "- If the source is redundant or doesn't add value, return hasChanges=false\n\n"
            "Return ONLY the JSON object."
        )
        try:
            reply = self._invoke(
                "generate_draft_update",
                system=DRAFT_UPDATE_SYSTEM_PROMPT,
                messages=[{"role": "user", "content": user_message}],
                temperature=self._settings.llm_temperature_precise,
                max_tokens=max(self._settings.llm_max_tokens, DRAFT_UPDATE_MAX_TOKENS),
                model=self._settings.model_for_speed("quality"),
            )
            if not reply.text:
                raise ValueError(_EMPTY_RESPONSE)
            data = parse_json_content(reply.text)
            if not isinstance(data, dict):
                raise ValueError("LLM response is not a valid object.")
        except Exception as exc:
            raise LLMError(f"Failed to generate draft update: {exc}") from exc
        update = DraftUpdate(
            has_changes=bool(data.get("hasChanges")),
            summary=str(data.get("summary") or ""),
            title=str(data.get("title") or existing_title),
            content=str(data.get("content") or existing_content),
            change_highlights=_string_list(data.get("changeHighlights")),
            usage=reply.usage,
        )
        logger.info(
            "llm.draft_update.completed title=%s has_changes=%s highlights=%s",
            existing_title[:80],
            update.has_changes,
            len(update.change_highlights),
        )
        return update

    def analyze_sources(
        self,
        source_content: str,
        urls: Sequence[str],
        existing_skills: Sequence[Skill],
    ) -> SourceAnalysis:
        """Decide whether new material updates a skill, creates one or splits into several."""

        if existing_skills:
            summary = "\n\n".join(
                f'- "{skill.title}" (ID: {skill.id})\n'
                f"  Tags: {', '.join(skill.tags) or 'none'}\n"
                f"  Preview: {skill.content[:200]}..."
                for skill in existing_skills
            )
        else:
            summary = "No existing skills in the knowledge base."
        url_list = "\n".join(urls)
        user_message = (
            f"EXISTING SKILLS IN KNOWLEDGE BASE:\n{summary}\n\n---\n\n"
            f"NEW SOURCE MATERIAL FROM {len(urls)} URL(s):\n{url_list}\n\n"
            f"Content preview:\n{source_content}\n\n---\n\n"
            "Analyze this content and decide: Should it update an existing skill, create a new focused "
            "skill, or be split into multiple topic-specific skills?\n\n"
            "Return ONLY the JSON object."
        )
        try:
            reply = self._invoke(
                "analyze_sources",
                system=ANALYSIS_SYSTEM_PROMPT,
                messages=[{"role": "user", "content": user_message}],
                temperature=self._settings.llm_temperature_precise,
                max_tokens=ANALYSIS_MAX_TOKENS,
                model=self._settings.model_for_speed("quality"),
            )
            if not reply.text:
                raise ValueError(_EMPTY_RESPONSE)
            data = parse_json_content(reply.text)
            if not isinstance(data, dict):
                raise ValueError("LLM response is not a valid object.")
        except Exception as exc:
            raise LLMError(f"Failed to analyze sources: {exc}") from exc

        suggestion = data.get("suggestion") if isinstance(data.get("suggestion"), dict) else data
        action = str(suggestion.get("action") or "").strip().lower()
        if action not in ANALYSIS_ACTIONS:
            logger.warning("llm.analysis.unknown_action action=%s", action)
            action = "create_new"
        splits = [
            SplitSuggestion(
                title=str(item.get("title") or "").strip(),
                description=str(item.get("description") or "").strip(),
                relevant_urls=_string_list(item.get("relevantUrls")),
            )
            for item in suggestion.get("splitSuggestions") or []
            if isinstance(item, dict) and str(item.get("title") or "").strip()
        ]
        analysis = SourceAnalysis(
            action=action,
            reason=str(suggestion.get("reason") or ""),
            source_preview=str(data.get("sourcePreview") or ""),
            existing_skill_id=suggestion.get("existingSkillId") or None,
            existing_skill_title=suggestion.get("existingSkillTitle") or None,
            suggested_title=suggestion.get("suggestedTitle") or None,
            suggested_tags=_string_list(suggestion.get("suggestedTags")),
            split_suggestions=splits,
            usage=reply.usage,
        )
        logger.info("llm.analysis.completed action=%s urls=%s splits=%s", action, len(urls), len(splits))
        return analysis

    def answer_question(
        self,
        question: str,
        prompt_text: str | None = None,
        skills: Iterable[Skill | ReferenceSkill | Mapping[str, Any]] | None = None,
        fallback_content: Sequence[FallbackContent] | None = None,
        model_speed: ModelSpeed = "quality",
        *,
        user_id: str | None = None,
        user_email: str | None = None,
        entity_link: dict[str, str] | None = None,
        parent_trace_id: str | None = None,
    ) -> AnswerResult:
        trimmed = (question or "").strip()
        if not trimmed:
            raise ValueError("A question is required to generate a response.")
        references = reference_skills(skills)
        system = prompt_text or DEFAULT_QUESTION_PROMPT
        used_fallback = not references and bool(fallback_content)
        context = _skills_context(references, plural=False) or (
            _fallback_context(fallback_content or [], plural=False) if used_fallback else ""
        )
        user_message = f"{context}{trimmed}" if context else trimmed
        model = self._settings.model_for_speed(model_speed)
        try:
            reply, trace_id = self._traced(
                "answer_question",
                "questions",
                TraceInput(
                    model=model,
                    system_prompt=system,
                    user_message=user_message,
                    skills=[TraceSkill(id=skill.id or "", title=skill.title) for skill in references],
                ),
                lambda: self._invoke(
                    "answer_question",
                    system=system,
                    messages=[{"role": "user", "content": user_message}],
                    temperature=self._settings.llm_temperature_balanced,
                    max_tokens=self._settings.llm_max_tokens,
                    model=model,
                ),
                user_id=user_id,
                user_email=user_email,
                entity_link=entity_link,
                parent_trace_id=parent_trace_id,
            )
            if not reply.text:
                raise ValueError(_EMPTY_RESPONSE)
        except Exception as exc:
            raise LLMError(f"Failed to generate response: {exc}") from exc
        logger.info(
            "llm.answer.completed model=%s skills=%s fallback=%s chars=%s",
            model,
            len(references),
            used_fallback,
            len(reply.text),
        )
        return AnswerResult(
            answer=reply.text,
            conversation_history=[
                {"role": "system", "content": system},
                {"role": "user", "content": user_message},
                {"role": "assistant", "content": reply.text},
            ],
            used_fallback=used_fallback,
            usage=reply.usage,
            trace_id=trace_id,
        )

    def answer_questions_batch(
        self,
        questions: Sequence[Mapping[str, Any]],
        prompt_text: str | None = None,
        skills: Iterable[Skill | ReferenceSkill | Mapping[str, Any]] | None = None,
        fallback_content: Sequence[FallbackContent] | None = None,
        model_speed: ModelSpeed = "quality",
        *,
        user_id: str | None = None,
        user_email: str | None = None,
    ) -> BatchAnswerResult:
        """Answer several questions in one call; the prompt and context are sent once."""

        if not questions:
            raise ValueError("At least one question is required.")
        references = reference_skills(skills)
        system = prompt_text or DEFAULT_QUESTION_PROMPT
        used_fallback = not references and bool(fallback_content)
        context = _skills_context(references, plural=True) or (
            _fallback_context(fallback_content or [], plural=True) if used_fallback else ""
        )
        question_lines = [f"{item['index']}. {str(item['question']).strip()}" for item in questions]
        instruction = "\n".join([*_BATCH_INSTRUCTION, *question_lines])
        user_message = f"{context}{instruction}" if context else instruction
        model = self._settings.model_for_speed(model_speed)
        try:
            reply, trace_id = self._traced(
                "answer_questions_batch",
                "questions",
                TraceInput(
                    model=model,
                    system_prompt=system,
                    user_message=user_message,
                    skills=[TraceSkill(id=skill.id or "", title=skill.title) for skill in references],
                ),
                lambda: self._invoke(
                    "answer_questions_batch",
                    system=system,
                    messages=[{"role": "user", "content": user_message}],
                    temperature=self._settings.llm_temperature_balanced,
                    max_tokens=self._settings.llm_max_tokens,
                    model=model,
                ),
                user_id=user_id,
                user_email=user_email,
            )
            if not reply.text:
                raise ValueError(_EMPTY_RESPONSE)
            parsed = parse_json_content(reply.text)
            if not isinstance(parsed, list):
                raise ValueError("Expected JSON array response from batch answer.")
            answers = []
            for item in parsed:
                if not isinstance(item, dict):
                    raise ValueError("Invalid answer item in batch response.")
                answers.append(
                    BatchAnswerItem(
                        question_index=_coerce_index(item.get("questionIndex")),
                        response=str(item.get("response") or ""),
                        confidence=str(item.get("confidence") or "Medium"),
                        sources=str(item.get("sources") or "None"),
                        reasoning=str(item.get("reasoning") or ""),
                        inference=str(item.get("inference") or "None"),
                        remarks=str(item.get("remarks") or "None"),
                    )
                )
        except Exception as exc:
            raise LLMError(f"Failed to generate batch response: {exc}") from exc
        if self._metrics:
            self._metrics.increment("llm.batch_answers", value=len(answers), backend=self._settings.chat_backend)
        logger.info(
            "llm.batch.completed model=%s questions=%s answers=%s skills=%s",
            model,
            len(questions),
            len(answers),
            len(references),
        )
        return BatchAnswerResult(answers=answers, used_fallback=used_fallback, usage=reply.usage, trace_id=trace_id)

    def answer_question_progressive(
        self,
        question: str,
        prompt_text: str | None = None,
        tier1_skills: Iterable[Skill | ReferenceSkill | Mapping[str, Any]] | None = None,
        *,
        selected_categories: Sequence[str] = (),
        enable_tier2: bool = True,
        enable_tier3: bool = True,
        model_speed: ModelSpeed = "quality",
        user_id: str | None = None,
        user_email: str | None = None,
        entity_link: dict[str, str] | None = None,
        parent_trace_id: str | None = None,
    ) -> ProgressiveAnswerResult:
        """Answer with core skills first, widening to extended and library skills when unsure."""

        tier1 = reference_skills(tier1_skills)

        def answer(references: list[ReferenceSkill]) -> AnswerResult:
            return self.answer_question(
                question,
                prompt_text,
                references,
                None,
                model_speed,
                user_id=user_id,
                user_email=user_email,
                entity_link=entity_link,
                parent_trace_id=parent_trace_id,
            )

        tier1_result = answer(tier1)
        if is_confident_answer(tier1_result.answer) or not enable_tier2:
            return _progressive(tier1_result, tier=1)

        tier1_ids = [skill.id for skill in tier1 if skill.id]
        tier2 = self._search(question, selected_categories, "extended", tier1_ids)
        if not tier2:
            return _progressive(tier1_result, tier=1)

        tier2_result = answer([*tier1, *tier2])
        if is_confident_answer(tier2_result.answer):
            return _progressive(tier2_result, tier=2, tier2_found=len(tier2))

        if enable_tier3:
            excluded = [*tier1_ids, *(skill.id for skill in tier2 if skill.id)]
            tier3 = self._search(question, (), "library", excluded)
            if tier3:
                tier3_result = answer([*tier1, *tier2, *tier3])
                return _progressive(tier3_result, tier=3, tier2_found=len(tier2), tier3_found=len(tier3))

        return _progressive(tier2_result, tier=2, tier2_found=len(tier2))

    def complete(
        self,
        prompt: str,
        *,
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        model_speed: ModelSpeed = "quality",
    ) -> LLMReply:
        if not (prompt or "").strip():
            raise ValueError("A prompt is required.")
        try:
            reply = self._invoke(
                "complete",
                system=system or "You are a helpful assistant.",
                messages=[{"role": "user", "content": prompt}],
                temperature=self._settings.llm_temperature_balanced if temperature is None else temperature,
                max_tokens=max_tokens or self._settings.llm_max_tokens,
                model=self._settings.model_for_speed(model_speed),
            )
        except Exception as exc:
            raise LLMError(f"Failed to generate completion: {exc}") from exc
        if not reply.text:
            raise LLMError(f"Failed to generate completion: {_EMPTY_RESPONSE}")
        return reply

    def _search(
        self,
        question: str,
        categories: Sequence[str],
        tier: str,
        exclude_ids: Sequence[str],
    ) -> list[ReferenceSkill]:
        if self._skills is None:
            return []
        found = self._skills.search_skills(
            question,
            categories=list(categories),
            tiers=(tier,),
            limit=_PROGRESSIVE_SEARCH_LIMIT,
            exclude_ids=exclude_ids,
        )
        logger.info("llm.progressive.search tier=%s found=%s", tier, len(found))
        return reference_skills(found)

    def _traced(
        self,
        span_name: str,
        feature: str,
        trace_input: TraceInput,
        call: Callable[[], LLMReply],
        *,
        user_id: str | None = None,
        user_email: str | None = None,
        entity_link: dict[str, str] | None = None,
        parent_trace_id: str | None = None,
    ) -> tuple[LLMReply, str | None]:
        if self._tracer is None:
            return call(), None
        context = self._tracer.start_trace(
            span_name,
            feature,
            parent_trace_id=parent_trace_id,
            user_id=user_id,
            user_email=user_email,
        )
        return self._tracer.with_tracing(
            context,
            trace_input,
            call,
            lambda reply: TraceOutput(
                response=reply.text,
                input_tokens=reply.usage.input_tokens,
                output_tokens=reply.usage.output_tokens,
                cache_creation_tokens=reply.usage.cache_creation_tokens,
                cache_read_tokens=reply.usage.cache_read_tokens,
            ),
            entity_link=entity_link,
            save_prompt_snapshot=self._settings.trace_prompt_snapshots,
        )

    def _invoke(
        self,
        operation: str,
        *,
        system: str,
        messages: Sequence[dict[str, str]],
        temperature: float,
        max_tokens: int,
        model: str,
    ) -> LLMReply:
        start = time.perf_counter()
        if self._settings.is_anthropic_chat_backend:
            reply = self._invoke_anthropic(system, messages, temperature=temperature, max_tokens=max_tokens, model=model)
        elif self._settings.is_openai_chat_backend:
            reply = self._invoke_openai(system, messages, temperature=temperature, max_tokens=max_tokens)
        elif self._settings.is_ollama_chat_backend:
            reply = self._invoke_ollama(system, messages, temperature=temperature, max_tokens=max_tokens)
        else:
            raise RuntimeError(f"Unsupported chat backend: {self._settings.chat_backend}")
        if self._metrics:
            self._metrics.record_timing(
                "llm.call_duration",
                time.perf_counter() - start,
                operation=operation,
                backend=self._settings.chat_backend,
            )
        return reply

    def _invoke_anthropic(
        self,
        system: str,
        messages: Sequence[dict[str, str]],
        *,
        temperature: float,
        max_tokens: int,
        model: str,
    ) -> LLMReply:
        client = self._get_anthropic_client()
        response = client.messages.create(
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system,
            messages=list(messages),
        )
        texts = [
            getattr(block, "text", "")
            for block in getattr(response, "content", None) or []
            if getattr(block, "type", "text") == "text"
        ]
        text = "".join(texts).strip()
        logger.debug("llm.backend.anthropic.success model=%s chars=%s", model, len(text))
        return LLMReply(text=text, usage=usage_from_response(response, model))

    def _invoke_openai(
        self,
        system: str,
        messages: Sequence[dict[str, str]],
        *,
        temperature: float,
        max_tokens: int,
    ) -> LLMReply:
        client = self._get_openai_client()
        model = self._settings.openai_chat_model
        response = client.responses.create(
            model=model,
            input=[{"role": "system", "content": system}, *messages],
            temperature=temperature,
            max_output_tokens=max_tokens,
        )
        texts: list[str] = []
        for item in getattr(response, "output", None) or []:
            if getattr(item, "type", "") != "message":
                continue
            for part in getattr(item, "content", None) or []:
                if getattr(part, "type", "") == "output_text":
                    texts.append(getattr(part, "text", ""))
        text = "\n".join(texts).strip()

        if not text and getattr(response, "output_text", None):
            text = str(response.output_text).strip()
        usage = getattr(response, "usage", None)
        logger.debug("llm.backend.openai.success model=%s chars=%s", model, len(text))
        return LLMReply(
            text=text,
            usage=UsageInfo(
                input_tokens=int(getattr(usage, "input_tokens", 0) or 0),
                output_tokens=int(getattr(usage, "output_tokens", 0) or 0),
                model=model,
            ),
        )

    def _invoke_ollama(
        self,
        system: str,
        messages: Sequence[dict[str, str]],
        *,
        temperature: float,
        max_tokens: int,
    ) -> LLMReply:
        model = (self._settings.ollama_model or "").strip()
        if not model:
            raise RuntimeError("OLLAMA_MODEL must be set when using the Ollama chat backend")

        url = f"{self._settings.ollama_base_url.rstrip('/')}/api/chat"
        payload: dict[str, Any] = {
            "model": model,
            "messages": [{"role": "system", "content": system}, *messages],
            "stream": False,
        }
        options: dict[str, float | int] = {"num_predict": max_tokens}
        if temperature > 0.0:
            options["temperature"] = temperature
        payload["options"] = options

        try:
            response = httpx.post(url, json=payload, timeout=self._settings.ollama_request_timeout)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("llm.backend.ollama.error model=%s error=%s", model, exc)
            raise RuntimeError(f"Ollama request failed: {exc}") from exc

        data = response.json()
        message = data.get("message") or {}
        text = str(message.get("content") or data.get("response") or "").strip()
        logger.debug("llm.backend.ollama.success model=%s chars=%s", model, len(text))
        return LLMReply(
            text=text,
            usage=UsageInfo(
                input_tokens=int(data.get("prompt_eval_count") or 0),
                output_tokens=int(data.get("eval_count") or 0),
                model=model,
            ),
        )

    def _get_anthropic_client(self) -> Any:
        if self._anthropic_client is None:
            if not self._settings.anthropic_api_key:
                raise RuntimeError("ANTHROPIC_API_KEY must be set for the Anthropic chat backend")
            self._anthropic_client = anthropic.Anthropic(api_key=self._settings.anthropic_api_key)
        return self._anthropic_client

    def _get_openai_client(self) -> Any:
        if self._openai_client is None:
            if not self._settings.openai_api_key:
                raise RuntimeError("OPENAI_API_KEY must be set for the OpenAI chat backend")
            self._openai_client = OpenAI(api_key=self._settings.openai_api_key)
        return self._openai_client


def _progressive(
    result: AnswerResult,
    *,
    tier: int,
    tier2_found: int | None = None,
    tier3_found: int | None = None,
) -> ProgressiveAnswerResult:
    return ProgressiveAnswerResult(
        answer=result.answer,
        conversation_history=result.conversation_history,
        used_fallback=result.used_fallback,
        usage=result.usage,
        trace_id=result.trace_id,
        tier=tier,
        tier2_skills_found=tier2_found,
        tier3_skills_found=tier3_found,
    )


__all__ = [
    "AnswerResult",
    "BatchAnswerItem",
    "BatchAnswerResult",
    "DEFAULT_QUESTION_PROMPT",
    "DEFAULT_SKILL_PROMPT",
    "DraftUpdate",
    "KnowledgeAssistant",
    "LLMError",
    "LLMReply",
    "ProgressiveAnswerResult",
    "ReferenceSkill",
    "SkillDraft",
    "SourceAnalysis",
    "SplitSuggestion",
    "normalize_skill_draft",
    "parse_json_content",
    "sanitize_messages",
]
