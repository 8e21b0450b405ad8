"""Document templates with ``{{type.field}}`` placeholders and DOCX rendering."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
import io
import json
import logging
from pathlib import Path
import re
import threading
from typing import Any, Iterable, List, Mapping, Sequence
from uuid import uuid4

from docx import Document

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"\{\{([a-zA-Z_]+)[.:]([^}]+)\}\}")
_SKILL_INDEX_RE = re.compile(r"^(\d+)\.(.+)$")
_HEADING_RE = re.compile(r"^(#{1,6})\s+(.*)$")
_BULLET_RE = re.compile(r"^\s*[-*]\s+(.*)$")
_NUMBERED_RE = re.compile(r"^\s*\d+[.)]\s+(.*)$")
_BOLD_RE = re.compile(r"(\*\*[^*]+\*\*)")

TEMPLATE_CATEGORIES: tuple[str, ...] = (
    "sales",
    "proposals",
    "battlecards",
    "presentations",
    "reports",
    "other",
)
OUTPUT_FORMATS: tuple[str, ...] = ("markdown", "docx", "pdf")

_UNSET: Any = object()


@dataclass(slots=True)
class Placeholder:
    full_match: str
    type: str
    field: str


@dataclass(slots=True)
class TemplateFillContext:
    """Data available to placeholders while filling a template."""

    customer: dict[str, Any] | None = None
    gtm: dict[str, Any] | None = None
    skills: list[dict[str, Any]] = field(default_factory=list)
    custom: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class FillResult:
    content: str
    placeholders_resolved: list[str]
    placeholders_missing: list[str]
    llm_placeholders: list[Placeholder]


def parse_placeholders(content: str) -> list[Placeholder]:
    return [
        Placeholder(full_match=match.group(0), type=match.group(1).lower(), field=match.group(2).strip())
        for match in PLACEHOLDER_RE.finditer(content)
    ]


def _nested_value(data: Mapping[str, Any] | None, path: str) -> Any:
    current: Any = data
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return None
    return current


def format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (list, tuple)):
        return ", ".join(format_value(item) for item in value)
    if isinstance(value, dict):
        return json.dumps(value, indent=2)
    return str(value)


def _format_date(field_name: str, now: datetime) -> str:
    today = f"{now.month}/{now.day}/{now.year}"
    if field_name == "now":
        hour = now.hour % 12 or 12
        suffix = "AM" if now.hour < 12 else "PM"
        return f"{today}, {hour}:{now.minute:02d}:{now.second:02d} {suffix}"
    if field_name == "iso":
        return now.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    if field_name == "year":
        return str(now.year)
    if field_name == "month":
        return now.strftime("%B")
    if field_name == "quarter":
        return f"Q{(now.month - 1) // 3 + 1}"
    return today


def resolve_placeholder(
    placeholder: Placeholder,
    context: TemplateFillContext,
    now: datetime | None = None,
) -> str | None:
    """Resolve a placeholder from ``context``; ``None`` means the LLM must write it."""

    kind, name = placeholder.type, placeholder.field

    if kind == "customer":
        if not context.customer:
            return ""
        return format_value(_nested_value(context.customer, name))

    if kind == "gtm":
        gtm = context.gtm
        if not gtm:
            return ""
        if name == "recent_calls_summary" and gtm.get("gong_calls"):
            return "\n".join(
                f"- {call.get('title')} ({call.get('date')}): {call.get('summary') or 'No summary'}"
                for call in gtm["gong_calls"][:3]
            )
        if name == "recent_activities" and gtm.get("hubspot_activities"):
            return "\n".join(
                f"- {activity.get('type')}: {activity.get('subject')} ({activity.get('date')})"
                for activity in gtm["hubspot_activities"][:5]
            )
        if name == "metrics_summary" and gtm.get("looker_metrics"):
            lines = []
            for entry in gtm["looker_metrics"]:
                metrics = ", ".join(f"{key}: {value}" for key, value in (entry.get("metrics") or {}).items())
                lines.append(f"{entry.get('period')}: {metrics}")
            return "\n".join(lines)
        return format_value(_nested_value(gtm, name))

    if kind == "skill":
        skills = context.skills
        if not skills:
            return ""
        if name == "all":
            return "\n\n---\n\n".join(str(skill.get("content", "")) for skill in skills)
        if name == "titles":
            return ", ".join(str(skill.get("title", "")) for skill in skills)
        match = _SKILL_INDEX_RE.match(name)
        if match:
            index = int(match.group(1))
            if index < len(skills):
                return format_value(skills[index].get(match.group(2)))
        return ""

    if kind == "date":
        return _format_date(name, now or datetime.now())

    if kind == "custom":
        return context.custom.get(name) or ""

    if kind == "llm":
        return None

    return ""


def fill_template(
    content: str,
    context: TemplateFillContext,
    *,
    now: datetime | None = None,
) -> FillResult:
    """Substitute every resolvable placeholder; ``llm`` placeholders are left in place."""

    resolved: list[str] = []
    missing: list[str] = []
    llm_placeholders: list[Placeholder] = []
    filled = content

    for placeholder in parse_placeholders(content):
        if placeholder.type == "llm":
            llm_placeholders.append(placeholder)
            continue
        value = resolve_placeholder(placeholder, context, now)
        if value:
            filled = filled.replace(placeholder.full_match, value, 1)
            resolved.append(placeholder.full_match)
        elif value == "":
            filled = filled.replace(placeholder.full_match, "", 1)
            missing.append(placeholder.full_match)

    return FillResult(
        content=filled,
        placeholders_resolved=resolved,
        placeholders_missing=missing,
        llm_placeholders=llm_placeholders,
    )


def build_llm_fill_prompt(
    partial_content: str,
    llm_placeholders: Sequence[Placeholder],
    context: TemplateFillContext,
) -> str:
    instructions = "\n".join(
        f"{index}. {placeholder.full_match} - {placeholder.field}"
        for index, placeholder in enumerate(llm_placeholders, start=1)
    )

    summary: list[str] = []
    if context.customer:
        industry = context.customer.get("industry") or "Industry not specified"
        summary.append(f"Customer: {context.customer.get('name')} ({industry})")
        if context.customer.get("content"):
            summary.append(f"Customer Overview:\n{context.customer['content']}")
    calls = (context.gtm or {}).get("gong_calls") or []
    if calls:
        summary.append(f"Recent Gong Calls: {len(calls)} calls available")
    if context.skills:
        titles = ", ".join(str(skill.get("title", "")) for skill in context.skills)
        summary.append(f"Skills Available: {titles}")

    context_block = "\n\n".join(summary)
    return (
        "You are filling out a document template. Please generate content for the following "
        "placeholders based on the context provided.\n\n"
        f"## Placeholders to Fill\n{instructions}\n\n"
        f"## Context\n{context_block}\n\n"
        f"## Partially Filled Template\n{partial_content}\n\n"
        "## Instructions\n"
        "For each {{llm:instruction}} placeholder, generate appropriate content based on the "
        "instruction and context.\n"
        "Return ONLY the filled template with all placeholders replaced. Do not include any "
        "explanation or commentary."
    )


def extract_placeholder_hints(content: str) -> dict[str, str]:
    labels = {
        "customer": "Customer field: {field}",
        "gtm": "GTM data: {field}",
        "skill": "Skill content: {field}",
        "llm": "LLM will generate: {field}",
        "date": "Date format: {field}",
        "custom": "Custom value: {field} (user-provided)",
    }
    hints: dict[str, str] = {}
    for placeholder in parse_placeholders(content):
        label = labels.get(placeholder.type)
        if label:
            hints[placeholder.full_match] = label.format(field=placeholder.field)
    return hints


def _add_inline_runs(paragraph: Any, text: str) -> None:
    for segment in _BOLD_RE.split(text):
        if not segment:
            continue
        if segment.startswith("**") and segment.endswith("**") and len(segment) > 4:
            paragraph.add_run(segment[2:-2]).bold = True
        else:
            paragraph.add_run(segment)


def markdown_to_docx(markdown: str, *, title: str | None = None, author: str | None = None) -> bytes:
    """Render simple markdown (headings, lists, bold, paragraphs) into a DOCX document."""

    document = Document()
    if title:
        document.core_properties.title = title
    if author:
        document.core_properties.author = author

    buffer: list[str] = []

    def flush() -> None:
        if buffer:
            _add_inline_runs(document.add_paragraph(), " ".join(buffer))
            buffer.clear()

    for raw_line in markdown.splitlines():
        line = raw_line.rstrip()
        if not line.strip():
            flush()
            continue
        heading = _HEADING_RE.match(line)
        if heading:
            flush()
            document.add_heading(heading.group(2).strip(), level=len(heading.group(1)))
            continue
        bullet = _BULLET_RE.match(line)
        if bullet:
            flush()
            _add_inline_runs(document.add_paragraph(style="List Bullet"), bullet.group(1).strip())
            continue
        numbered = _NUMBERED_RE.match(line)
        if numbered:
            flush()
            _add_inline_runs(document.add_paragraph(style="List Number"), numbered.group(1).strip())
            continue
        buffer.append(line.strip())
    flush()

    output = io.BytesIO()
    document.save(output)
    return output.getvalue()


@dataclass(slots=True)
class Template:
    id: str
    name: str
    content: str
    category: str
    output_format: str
    created_at: str
    updated_at: str
    description: str | None = None
    placeholder_hints: dict[str, str] = field(default_factory=dict)
    is_active: bool = True
    sort_order: int = 0
    created_by: str | None = None


class TemplateStore:
    """File-backed catalog of document templates."""

    def __init__(self, root: Path) -> None:
        self._root = root
        self._file = root / "templates.json"
        self._root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def list_templates(
        self,
        *,
        category: str | None = None,
        active_only: bool = False,
    ) -> List[Template]:
        with self._lock:
            items = self._read().get("templates", [])
        templates = [Template(**item) for item in items]
        if category:
            templates = [template for template in templates if template.category == category]
        if active_only:
            templates = [template for template in templates if template.is_active]
        return sorted(templates, key=lambda template: (template.sort_order, template.name.lower()))

    def get_template(self, template_id: str) -> Template | None:
        for template in self.list_templates():
            if template.id == template_id:
                return template
        return None

    def create_template(
        self,
        *,
        name: str,
        content: str,
        description: str | None = None,
        category: str = "other",
        output_format: str = "markdown",
        is_active: bool = True,
        sort_order: int = 0,
        created_by: str | None = None,
    ) -> Template:
        if not (name or "").strip():
            raise ValueError("Template name is required")
        if not (content or "").strip():
            raise ValueError("Template content is required")
        now = self._now()
        template = Template(
            id=uuid4().hex,
            name=name.strip(),
            content=content,
            category=_validate_choice(category, TEMPLATE_CATEGORIES, "category"),
            output_format=_validate_choice(output_format, OUTPUT_FORMATS, "output format"),
            created_at=now,
            updated_at=now,
            description=(description or "").strip() or None,
            placeholder_hints=extract_placeholder_hints(content),
            is_active=is_active,
            sort_order=int(sort_order),
            created_by=created_by,
        )
        with self._lock:
            payload = self._read()
            payload.setdefault("templates", []).append(asdict(template))
            self._write(payload)
        logger.info("template.created id=%s name=%s", template.id, template.name)
        return template

    def update_template(
        self,
        template_id: str,
        *,
        name: str | Any = _UNSET,
        content: str | Any = _UNSET,
        description: str | None | Any = _UNSET,
        category: str | Any = _UNSET,
        output_format: str | Any = _UNSET,
        is_active: bool | Any = _UNSET,
        sort_order: int | Any = _UNSET,
    ) -> Template:
        with self._lock:
            payload = self._read()
            for item in payload.get("templates", []):
                if item.get("id") != template_id:
                    continue
                if name is not _UNSET:
                    if not (name or "").strip():
                        raise ValueError("Template name is required")
                    item["name"] = name.strip()
                if content is not _UNSET:
                    if not (content or "").strip():
                        raise ValueError("Template content is required")
                    item["content"] = content
                    item["placeholder_hints"] = extract_placeholder_hints(content)
                if description is not _UNSET:
                    item["description"] = (description or "").strip() or None
                if category is not _UNSET:
                    item["category"] = _validate_choice(category, TEMPLATE_CATEGORIES, "category")
                if output_format is not _UNSET:
                    item["output_format"] = _validate_choice(output_format, OUTPUT_FORMATS, "output format")
                if is_active is not _UNSET:
                    item["is_active"] = bool(is_active)
                if sort_order is not _UNSET:
                    item["sort_order"] = int(sort_order)
                item["updated_at"] = self._now()
                self._write(payload)
                logger.info("template.updated id=%s", template_id)
                return Template(**item)
        raise ValueError(f"Template {template_id} not found")

    def delete_template(self, template_id: str) -> bool:
        with self._lock:
            payload = self._read()
            templates = payload.get("templates", [])
            remaining = [item for item in templates if item.get("id") != template_id]
            if len(remaining) == len(templates):
                return False
            payload["templates"] = remaining
            self._write(payload)
        logger.info("template.deleted id=%s", template_id)
        return True

    def _read(self) -> dict:
        if not self._file.exists():
            return {"templates": []}
        with self._file.open("r", encoding="utf-8") as handle:
            return json.load(handle)

    def _write(self, data: dict) -> None:
        with self._file.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2)

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()


def _validate_choice(value: Any, allowed: Iterable[str], label: str) -> str:
    cleaned = str(value or "").strip().lower()
    allowed = tuple(allowed)
    if cleaned not in allowed:
        raise ValueError(f"Unknown template {label} '{value}'. Expected one of: {', '.join(allowed)}")
    return cleaned


__all__ = [
    "FillResult",
    "OUTPUT_FORMATS",
    "PLACEHOLDER_RE",
    "Placeholder",
    "TEMPLATE_CATEGORIES",
    "Template",
    "TemplateFillContext",
    "TemplateStore",
    "build_llm_fill_prompt",
    "extract_placeholder_hints",
    "fill_template",
    "format_value",
    "markdown_to_docx",
    "parse_placeholders",
    "resolve_placeholder",
]
