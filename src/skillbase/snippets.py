"""Reusable context snippets referenced from prompts as ``{{key}}``."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import re
import threading
from typing import Any, Iterable, List
from uuid import uuid4

logger = logging.getLogger(__name__)

SNIPPET_KEY_RE = re.compile(r"^[a-z][a-z0-9_]*$")
_PLACEHOLDER_RE = re.compile(r"\{\{([a-z][a-z0-9_]*)\}\}")

_UNSET: Any = object()


class SnippetKeyConflictError(ValueError):
    """Raised when a snippet key is already taken."""


@dataclass(slots=True)
class ContextSnippet:
    id: str
    name: str
    key: str
    content: str
    created_at: str
    updated_at: str
    category: str | None = None
    description: str | None = None
    is_active: bool = True
    created_by: str | None = None


def interpolate_snippets(text: str, snippets: Iterable[ContextSnippet]) -> str:
    """Replace ``{{key}}`` references; unknown keys and empty snippets are left intact."""

    by_key = {snippet.key: snippet.content for snippet in snippets}

    def _replace(match: re.Match[str]) -> str:
        content = by_key.get(match.group(1))
        return content if content else match.group(0)

    return _PLACEHOLDER_RE.sub(_replace, text)


def snippet_keys(text: str) -> list[str]:
    keys: list[str] = []
    for match in _PLACEHOLDER_RE.finditer(text):
        if match.group(1) not in keys:
            keys.append(match.group(1))
    return keys


class SnippetStore:
    """File-backed collection of context snippets."""

    def __init__(self, root: Path) -> None:
        self._root = root
        self._file = root / "context_snippets.json"
        self._root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def list_snippets(
        self,
        *,
        category: str | None = None,
        active_only: bool = False,
    ) -> List[ContextSnippet]:
        with self._lock:
            items = self._read().get("snippets", [])
        snippets = [ContextSnippet(**item) for item in items]
        if category:
            snippets = [snippet for snippet in snippets if snippet.category == category]
        if active_only:
            snippets = [snippet for snippet in snippets if snippet.is_active]
        return sorted(snippets, key=lambda snippet: ((snippet.category or ""), snippet.name.lower()))

    def get_snippet(self, snippet_id: str) -> ContextSnippet | None:
        for snippet in self.list_snippets():
            if snippet.id == snippet_id:
                return snippet
        return None

    def create_snippet(
        self,
        *,
        name: str,
        key: str,
        content: str,
        category: str | None = None,
        description: str | None = None,
        is_active: bool = True,
        created_by: str | None = None,
    ) -> ContextSnippet:
        if not (name or "").strip():
            raise ValueError("Snippet name is required")
        if not (content or "").strip():
            raise ValueError("Snippet content is required")
        key = _validate_key(key)
        now = self._now()
        snippet = ContextSnippet(
            id=uuid4().hex,
            name=name.strip(),
            key=key,
            content=content,
            created_at=now,
            updated_at=now,
            category=_normalize(category),
            description=_normalize(description),
            is_active=is_active,
            created_by=created_by,
        )
        with self._lock:
            payload = self._read()
            if any(item.get("key") == key for item in payload.get("snippets", [])):
                raise SnippetKeyConflictError(f'A snippet with key "{key}" already exists')
            payload.setdefault("snippets", []).append(asdict(snippet))
            self._write(payload)
        logger.info("snippet.created id=%s key=%s", snippet.id, snippet.key)
        return snippet

    def update_snippet(
        self,
        snippet_id: str,
        *,
        name: str | Any = _UNSET,
        key: str | Any = _UNSET,
        content: str | Any = _UNSET,
        category: str | None | Any = _UNSET,
        description: str | None | Any = _UNSET,
        is_active: bool | Any = _UNSET,
    ) -> ContextSnippet:
        with self._lock:
            payload = self._read()
            snippets = payload.get("snippets", [])
            for item in snippets:
                if item.get("id") != snippet_id:
                    continue
                if name is not _UNSET:
                    if not (name or "").strip():
                        raise ValueError("Snippet name is required")
                    item["name"] = name.strip()
                if key is not _UNSET:
                    new_key = _validate_key(key)
                    if any(other.get("key") == new_key and other is not item for other in snippets):
                        raise SnippetKeyConflictError(f'A snippet with key "{new_key}" already exists')
                    item["key"] = new_key
                if content is not _UNSET:
                    item["content"] = content or ""
                if category is not _UNSET:
                    item["category"] = _normalize(category)
                if description is not _UNSET:
                    item["description"] = _normalize(description)
                if is_active is not _UNSET:
                    item["is_active"] = bool(is_active)
                item["updated_at"] = self._now()
                self._write(payload)
                logger.info("snippet.updated id=%s key=%s", snippet_id, item["key"])
                return ContextSnippet(**item)
        raise ValueError(f"Snippet {snippet_id} not found")

    def delete_snippet(self, snippet_id: str) -> bool:
        with self._lock:
            payload = self._read()
            snippets = payload.get("snippets", [])
            remaining = [item for item in snippets if item.get("id") != snippet_id]
            if len(remaining) == len(snippets):
                return False
            payload["snippets"] = remaining
            self._write(payload)
        logger.info("snippet.deleted id=%s", snippet_id)
        return True

    def interpolate(self, text: str) -> str:
        if "{{" not in text:
            return text
        return interpolate_snippets(text, self.list_snippets(active_only=True))

    def _read(self) -> dict:
        if not self._file.exists():
            return {"snippets": []}
        with self._file.open("r", encoding="utf-8") as handle:
            return json.load(handle)

    def _write(self, data: dict) -> None:
        with self._file.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2)

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()


def _validate_key(key: Any) -> str:
    value = key.strip() if isinstance(key, str) else ""
    if not SNIPPET_KEY_RE.match(value):
        raise ValueError(
            "Snippet key must start with a lowercase letter and contain only lowercase letters, "
            "digits and underscores"
        )
    return value


def _normalize(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = value.strip()
    return cleaned or None


__all__ = [
    "ContextSnippet",
    "SNIPPET_KEY_RE",
    "SnippetKeyConflictError",
    "SnippetStore",
    "interpolate_snippets",
    "snippet_keys",
]
