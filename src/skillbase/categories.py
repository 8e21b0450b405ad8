"""Skill category catalog with default seeding and manual ordering."""

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

DEFAULT_SKILL_CATEGORIES: tuple[str, ...] = (
    "Security & Compliance",
    "Infrastructure",
    "Product",
    "Integrations",
    "Legal & Privacy",
    "Company",
)

_COLOR_RE = re.compile(r"^#[0-9A-Fa-f]{6}$")

_UNSET: Any = object()


@dataclass(slots=True)
class SkillCategory:
    id: str
    name: str
    sort_order: int
    created_at: str
    updated_at: str
    description: str | None = None
    color: str | None = None


class CategoryStore:
    """File-backed list of skill categories."""

    def __init__(self, root: Path) -> None:
        self._root = root
        self._file = root / "skill_categories.json"
        self._root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def list_categories(self) -> List[SkillCategory]:
        with self._lock:
            payload = self._read()
            if not payload.get("categories"):
                payload = self._seed_defaults()
        categories = [SkillCategory(**item) for item in payload["categories"]]
        return sorted(categories, key=lambda category: (category.sort_order, category.name.lower()))

    def get_category(self, category_id: str) -> SkillCategory | None:
        for category in self.list_categories():
            if category.id == category_id:
                return category
        return None

    def create_category(
        self,
        *,
        name: str,
        description: str | None = None,
        color: str | None = None,
    ) -> SkillCategory:
        cleaned = _category_name(name)
        existing = self.list_categories()
        if any(category.name.lower() == cleaned.lower() for category in existing):
            raise ValueError(f"Category '{cleaned}' already exists")
        now = self._now()
        category = SkillCategory(
            id=uuid4().hex,
            name=cleaned,
            sort_order=max((item.sort_order for item in existing), default=-1) + 1,
            created_at=now,
            updated_at=now,
            description=_normalize(description),
            color=_validate_color(color),
        )
        with self._lock:
            payload = self._read()
            payload.setdefault("categories", []).append(asdict(category))
            self._write(payload)
        logger.info("category.created id=%s name=%s", category.id, category.name)
        return category

    def update_category(
        self,
        category_id: str,
        *,
        name: str | Any = _UNSET,
        description: str | None | Any = _UNSET,
        color: str | None | Any = _UNSET,
    ) -> SkillCategory:
        self.list_categories()
        with self._lock:
            payload = self._read()
            for item in payload.get("categories", []):
                if item.get("id") != category_id:
                    continue
                if name is not _UNSET:
                    item["name"] = _category_name(name)
                if description is not _UNSET:
                    item["description"] = _normalize(description)
                if color is not _UNSET:
                    item["color"] = _validate_color(color)
                item["updated_at"] = self._now()
                self._write(payload)
                logger.info("category.updated id=%s", category_id)
                return SkillCategory(**item)
        raise ValueError(f"Category {category_id} not found")

    def delete_category(self, category_id: str) -> bool:
        with self._lock:
            payload = self._read()
            categories = payload.get("categories", [])
            remaining = [item for item in categories if item.get("id") != category_id]
            if len(remaining) == len(categories):
                return False
            payload["categories"] = remaining
            self._write(payload)
        logger.info("category.deleted id=%s", category_id)
        return True

    def reorder(self, items: Iterable[dict[str, Any]]) -> List[SkillCategory]:
        """Apply a new ordering; each item carries ``id`` and optionally ``sort_order``."""

        ordering: dict[str, int] = {}
        for position, entry in enumerate(items):
            if not isinstance(entry, dict):
                raise ValueError("Each category entry must be an object")
            category_id = entry.get("id")
            if not category_id or not isinstance(category_id, str):
                raise ValueError("Each category entry requires an id")
            sort_order = entry.get("sort_order", position)
            if not isinstance(sort_order, int):
                raise ValueError("sort_order must be an integer")
            ordering[category_id] = sort_order
        self.list_categories()
        with self._lock:
            payload = self._read()
            known = {item["id"] for item in payload.get("categories", [])}
            missing = sorted(set(ordering) - known)
            if missing:
                raise ValueError(f"Unknown categories: {', '.join(missing)}")
            now = self._now()
            for item in payload.get("categories", []):
                if item["id"] in ordering:
                    item["sort_order"] = ordering[item["id"]]
                    item["updated_at"] = now
            self._write(payload)
        logger.info("category.reordered count=%s", len(ordering))
        return self.list_categories()

    def _seed_defaults(self) -> dict:
        now = self._now()
        payload = {
            "categories": [
                asdict(
                    SkillCategory(
                        id=f"default-{index}",
                        name=name,
                        sort_order=index,
                        created_at=now,
                        updated_at=now,
                    )
                )
                for index, name in enumerate(DEFAULT_SKILL_CATEGORIES)
            ]
        }
        self._write(payload)
        logger.info("category.seed.completed count=%s", len(DEFAULT_SKILL_CATEGORIES))
        return payload

    def _read(self) -> dict:
        if not self._file.exists():
            return {"categories": []}
        with self._file.open("r", encoding="utf-8") as handle:
            return json.load(handle)

    def _write(self, data: dict) -> None:
        with self._file.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2)

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()


def _validate_color(color: str | None) -> str | None:
    value = _normalize(color)
    if value is None:
        return None
    if not _COLOR_RE.match(value):
        raise ValueError("Color must be a hex value like #1A2B3C")
    return value


def _category_name(name: Any) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValueError("Category name is required")
    return name.strip()


def _normalize(value: str | None) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"Expected text, got {type(value).__name__}")
    cleaned = value.strip()
    return cleaned or None


__all__ = ["CategoryStore", "DEFAULT_SKILL_CATEGORIES", "SkillCategory"]
