"""Skill library models, persistence and relevance helpers."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import threading
from typing import Any, Iterable, List, Sequence
from uuid import uuid4

logger = logging.getLogger(__name__)

SKILL_TIERS: tuple[str, ...] = ("core", "extended", "library")
DEFAULT_TIER = "library"
MAX_TITLE_LENGTH = 500
MAX_CONTENT_LENGTH = 100_000
DEFAULT_LIST_LIMIT = 100
MAX_LIST_LIMIT = 500
MAX_RELEVANT_SKILLS = 5

_UNSET: Any = object()


@dataclass(slots=True)
class QuickFact:
    question: str
    answer: str


@dataclass(slots=True)
class SourceUrl:
    url: str
    added_at: str
    last_fetched_at: str | None = None


@dataclass(slots=True)
class HistoryEntry:
    date: str
    action: str
    summary: str
    user: str | None = None


@dataclass(slots=True)
class Skill:
    """A curated knowledge article used as reference context for the LLM."""

    id: str
    title: str
    content: str
    created_at: str
    updated_at: str
    categories: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    quick_facts: list[QuickFact] = field(default_factory=list)
    edge_cases: list[str] = field(default_factory=list)
    source_urls: list[SourceUrl] = field(default_factory=list)
    is_active: bool = True
    tier: str = DEFAULT_TIER
    tier_overrides: dict[str, str] = field(default_factory=dict)
    owners: list[str] = field(default_factory=list)
    history: list[HistoryEntry] = field(default_factory=list)
    created_by: str | None = None
    last_refreshed_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def effective_tier(skill: Skill, category: str | None = None) -> str:
    """Return the tier of ``skill`` when viewed from ``category``."""

    if category and category in skill.tier_overrides:
        return skill.tier_overrides[category]
    return skill.tier


def normalize_url(url: str) -> str:
    return url.strip().lower().rstrip("/")


def select_relevant_skills(question: str, skills: Sequence[Skill]) -> list[Skill]:
    """Score active skills against ``question`` by keyword overlap and return the best five."""

    lowered = question.lower()
    question_words = [word for word in lowered.split() if len(word) > 3]
    word_set = set(question_words)

    scored: list[tuple[int, Skill]] = []
    for skill in skills:
        if not skill.is_active:
            continue
        score = 0
        title_words = skill.title.lower().split()
        if any(word in word_set for word in title_words):
            score += 10
        for tag in skill.tags:
            if tag and tag.lower() in lowered:
                score += 5
        haystack = f"{skill.title} {' '.join(skill.tags)} {skill.content}".lower()
        score += sum(1 for word in question_words if word in haystack)
        if score > 0:
            scored.append((score, skill))

    scored.sort(key=lambda item: item[0], reverse=True)
    return [skill for _, skill in scored[:MAX_RELEVANT_SKILLS]]


class SkillStore:
    """File-backed library of skills."""

    def __init__(self, root: Path) -> None:
        self._root = root
        self._skills_file = root / "skills.json"
        self._root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def list_skills(
        self,
        *,
        active_only: bool = True,
        category: str | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
        offset: int = 0,
    ) -> List[Skill]:
        limit = max(1, min(limit, MAX_LIST_LIMIT))
        offset = max(0, offset)
        skills = self._all_skills()
        if active_only:
            skills = [skill for skill in skills if skill.is_active]
        if category and category != "all":
            skills = [skill for skill in skills if category in skill.categories]
        skills.sort(key=lambda skill: skill.updated_at, reverse=True)
        return skills[offset : offset + limit]

    def get_skill(self, skill_id: str | None) -> Skill | None:
        if not skill_id:
            return None
        for skill in self._all_skills():
            if skill.id == skill_id:
                return skill
        return None

    def create_skill(
        self,
        *,
        title: str,
        content: str,
        categories: Iterable[str] | None = None,
        tags: Iterable[str] | None = None,
        quick_facts: Iterable[dict[str, str]] | None = None,
        edge_cases: Iterable[str] | None = None,
        source_urls: Iterable[str] | None = None,
        is_active: bool = True,
        tier: str = DEFAULT_TIER,
        tier_overrides: dict[str, str] | None = None,
        owners: Iterable[str] | None = None,
        created_by: str | None = None,
    ) -> Skill:
        title = _validate_title(title)
        content = _validate_content(content)
        now = self._now()
        skill = Skill(
            id=uuid4().hex,
            title=title,
            content=content,
            created_at=now,
            updated_at=now,
            categories=_clean_list(categories),
            tags=_clean_list(tags, lower=True),
            quick_facts=_quick_facts(quick_facts),
            edge_cases=_clean_list(edge_cases),
            source_urls=[SourceUrl(url=url, added_at=now) for url in _dedupe_urls(source_urls or [])],
            is_active=is_active,
            tier=_validate_tier(tier),
            tier_overrides=_validate_overrides(tier_overrides),
            owners=_clean_list(owners),
            history=[HistoryEntry(date=now, action="created", summary="Skill created", user=created_by)],
            created_by=created_by,
        )
        with self._lock:
            payload = self._read_skills()
            payload.setdefault("skills", []).append(skill.to_dict())
            self._write_skills(payload)
        logger.info("skill.created id=%s title=%s", skill.id, skill.title)
        return skill

    def update_skill(
        self,
        skill_id: str,
        *,
        title: str | Any = _UNSET,
        content: str | Any = _UNSET,
        categories: Iterable[str] | None | Any = _UNSET,
        tags: Iterable[str] | None | Any = _UNSET,
        quick_facts: Iterable[dict[str, str]] | None | Any = _UNSET,
        edge_cases: Iterable[str] | None | Any = _UNSET,
        is_active: bool | Any = _UNSET,
        tier: str | Any = _UNSET,
        tier_overrides: dict[str, str] | None | Any = _UNSET,
        owners: Iterable[str] | None | Any = _UNSET,
        history_summary: str | None = None,
        user: str | None = None,
    ) -> Skill:
        now = self._now()
        with self._lock:
            payload = self._read_skills()
            item = self._find(payload, skill_id)
            changed: list[str] = []
            if title is not _UNSET:
                item["title"] = _validate_title(title)
                changed.append("title")
            if content is not _UNSET:
                item["content"] = _validate_content(content)
                changed.append("content")
            if categories is not _UNSET:
                item["categories"] = _clean_list(categories)
                changed.append("categories")
            if tags is not _UNSET:
                item["tags"] = _clean_list(tags, lower=True)
                changed.append("tags")
            if quick_facts is not _UNSET:
                item["quick_facts"] = [asdict(fact) for fact in _quick_facts(quick_facts)]
                changed.append("quick_facts")
            if edge_cases is not _UNSET:
                item["edge_cases"] = _clean_list(edge_cases)
                changed.append("edge_cases")
            if is_active is not _UNSET:
                item["is_active"] = bool(is_active)
                changed.append("is_active")
            if tier is not _UNSET:
                item["tier"] = _validate_tier(tier)
                changed.append("tier")
            if tier_overrides is not _UNSET:
                item["tier_overrides"] = _validate_overrides(tier_overrides)
                changed.append("tier_overrides")
            if owners is not _UNSET:
                item["owners"] = _clean_list(owners)
                changed.append("owners")
            item["updated_at"] = now
            summary = history_summary or (
                f"Updated {', '.join(changed)}" if changed else "Skill updated"
            )
            item.setdefault("history", []).append(
                asdict(HistoryEntry(date=now, action="updated", summary=summary, user=user))
            )
            self._write_skills(payload)
            updated = self._deserialize_skill(item)
        logger.info("skill.updated id=%s fields=%s", updated.id, ",".join(changed) or "-")
        return updated

    def delete_skill(self, skill_id: str) -> bool:
        with self._lock:
            payload = self._read_skills()
            skills = payload.get("skills", [])
            remaining = [item for item in skills if item.get("id") != skill_id]
            if len(remaining) == len(skills):
                return False
            payload["skills"] = remaining
            self._write_skills(payload)
        logger.info("skill.deleted id=%s", skill_id)
        return True

    def add_source_urls(self, skill_id: str, urls: Iterable[str]) -> Skill:
        """Attach source URLs to a skill, refreshing fetch timestamps on known ones."""

        now = self._now()
        with self._lock:
            payload = self._read_skills()
            item = self._find(payload, skill_id)
            existing = {normalize_url(entry["url"]): entry for entry in item.get("source_urls", [])}
            for url in _dedupe_urls(urls):
                known = existing.get(normalize_url(url))
                if known is not None:
                    known["last_fetched_at"] = now
                    continue
                entry = asdict(SourceUrl(url=url, added_at=now, last_fetched_at=now))
                item.setdefault("source_urls", []).append(entry)
                existing[normalize_url(url)] = entry
            item["last_refreshed_at"] = now
            self._write_skills(payload)
            return self._deserialize_skill(item)

    def find_url_matches(self, urls: Iterable[str]) -> tuple[Skill, list[str]] | None:
        """Return the first skill built from any of ``urls`` together with the matched URLs."""

        wanted = {normalize_url(url): url for url in urls if url and url.strip()}
        if not wanted:
            return None
        for skill in self._all_skills():
            known = {normalize_url(source.url) for source in skill.source_urls}
            matched = [original for key, original in wanted.items() if key in known]
            if matched:
                return skill, matched
        return None

    def search_skills(
        self,
        query: str,
        *,
        categories: Sequence[str] = (),
        tiers: Sequence[str] = SKILL_TIERS,
        limit: int = 5,
        exclude_ids: Iterable[str] = (),
    ) -> list[Skill]:
        """Find active skills in ``tiers`` relevant to ``query``.

        The tier of each skill is resolved against the first requested category so
        per-category overrides promote or demote skills for that context.
        """

        excluded = set(exclude_ids)
        wanted_categories = set(categories)
        category_context = categories[0] if categories else None
        try:
            candidates = [
                skill
                for skill in self._all_skills()
                if skill.is_active
                and skill.id not in excluded
                and (not wanted_categories or wanted_categories.intersection(skill.categories))
            ]
        except (OSError, ValueError):
            logger.exception("skill.search.failed query=%s", query[:80])
            return []
        candidates.sort(key=lambda skill: skill.updated_at, reverse=True)
        candidates = candidates[: min(limit * 10, 200)]
        in_tier = [skill for skill in candidates if effective_tier(skill, category_context) in tiers]
        return select_relevant_skills(query, in_tier)[:limit]

    def _all_skills(self) -> list[Skill]:
        with self._lock:
            payload = self._read_skills()
        return [self._deserialize_skill(item) for item in payload.get("skills", [])]

    def _find(self, payload: dict, skill_id: str) -> dict:
        for item in payload.get("skills", []):
            if item.get("id") == skill_id:
                return item
        raise ValueError(f"Skill {skill_id} not found")

    def _read_skills(self) -> dict:
        if not self._skills_file.exists():
            return {"skills": []}
        with self._skills_file.open("r", encoding="utf-8") as handle:
            return json.load(handle)

    def _write_skills(self, data: dict) -> None:
        with self._skills_file.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2)

    @staticmethod
    def _deserialize_skill(payload: dict) -> Skill:
        return Skill(
            id=payload["id"],
            title=payload.get("title", ""),
            content=payload.get("content", ""),
            created_at=payload.get("created_at", ""),
            updated_at=payload.get("updated_at") or payload.get("created_at", ""),
            categories=list(payload.get("categories", [])),
            tags=list(payload.get("tags", [])),
            quick_facts=[QuickFact(**fact) for fact in payload.get("quick_facts", [])],
            edge_cases=list(payload.get("edge_cases", [])),
            source_urls=[SourceUrl(**entry) for entry in payload.get("source_urls", [])],
            is_active=bool(payload.get("is_active", True)),
            tier=payload.get("tier") or DEFAULT_TIER,
            tier_overrides=dict(payload.get("tier_overrides") or {}),
            owners=list(payload.get("owners", [])),
            history=[HistoryEntry(**entry) for entry in payload.get("history", [])],
            created_by=payload.get("created_by"),
            last_refreshed_at=payload.get("last_refreshed_at"),
        )

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()


def _validate_title(title: Any) -> str:
    if not isinstance(title, str) or not title.strip():
        raise ValueError("Skill title is required")
    cleaned = title.strip()
    if len(cleaned) > MAX_TITLE_LENGTH:
        raise ValueError(f"Skill title must be at most {MAX_TITLE_LENGTH} characters")
    return cleaned


def _validate_content(content: Any) -> str:
    if not isinstance(content, str) or not content.strip():
        raise ValueError("Skill content is required")
    cleaned = content.strip()
    if len(cleaned) > MAX_CONTENT_LENGTH:
        raise ValueError(f"Skill content must be at most {MAX_CONTENT_LENGTH} characters")
    return cleaned


def _validate_tier(tier: Any) -> str:
    if tier and not isinstance(tier, str):
        raise ValueError(f"Skill tier must be a string, got {type(tier).__name__}")
    value = (tier or DEFAULT_TIER).strip().lower()
    if value not in SKILL_TIERS:
        raise ValueError(f"Unknown skill tier '{tier}'. Expected one of: {', '.join(SKILL_TIERS)}")
    return value


def _validate_overrides(overrides: dict[str, str] | None) -> dict[str, str]:
    if not overrides:
        return {}
    if not isinstance(overrides, dict):
        raise ValueError("tier_overrides must be an object mapping categories to tiers")
    return {str(category): _validate_tier(tier) for category, tier in overrides.items()}


def _clean_list(values: Iterable[str] | None, *, lower: bool = False) -> list[str]:
    cleaned: list[str] = []
    for value in values or []:
        if not isinstance(value, str):
            continue
        text = value.strip().lower() if lower else value.strip()
        if text and text not in cleaned:
            cleaned.append(text)
    return cleaned


def _quick_facts(values: Iterable[dict[str, str]] | None) -> list[QuickFact]:
    if values and not isinstance(values, (list, tuple)):
        raise ValueError("quick_facts must be a list")
    facts: list[QuickFact] = []
    for value in values or []:
        if not isinstance(value, dict):
            raise ValueError("Each quick fact must be an object with question and answer")
        question = str(value.get("question") or "").strip()
        answer = str(value.get("answer") or "").strip()
        if question and answer:
            facts.append(QuickFact(question=question, answer=answer))
    return facts


def _dedupe_urls(urls: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for url in urls:
        if not isinstance(url, str) or not url.strip():
            continue
        key = normalize_url(url)
        if key in seen:
            continue
        seen.add(key)
        result.append(url.strip())
    return result


__all__ = [
    "DEFAULT_TIER",
    "HistoryEntry",
    "QuickFact",
    "SKILL_TIERS",
    "Skill",
    "SkillStore",
    "SourceUrl",
    "effective_tier",
    "normalize_url",
    "select_relevant_skills",
]
