"""Composable system prompts built from editable blocks and runtime modifiers."""

from __future__ import annotations

import copy
from dataclasses import asdict, dataclass, field
from functools import lru_cache
from importlib import resources
import json
import logging
from pathlib import Path
import threading
from typing import Any, Iterable, Sequence

import yaml

logger = logging.getLogger(__name__)

DEFAULT_PROMPT = "You are a helpful assistant."

TIER_LABELS: dict[int, str] = {1: "Locked", 2: "Caution", 3: "Open"}

PROMPT_CONTEXTS: tuple[str, ...] = (
    "questions",
    "skills",
    "analysis",
    "chat",
    "contracts",
    "skill_organize",
    "customer_profile",
    "prompt_optimize",
)

_KEY_TO_CONTEXT: dict[str, str] = {
    "questions": "questions",
    "skill_builder": "skills",
    "skills": "skills",
    "chat": "chat",
    "knowledge_chat": "chat",
    "analysis": "analysis",
    "library_analysis": "analysis",
    "contract_analysis": "contracts",
    "contracts": "contracts",
    "skill_organize": "skill_organize",
    "customer_profile": "customer_profile",
    "prompt_optimize": "prompt_optimize",
}


@dataclass(slots=True)
class PromptBlock:
    id: str
    name: str
    description: str
    tier: int
    variants: dict[str, str]

    def content_for(self, context: str) -> str:
        return self.variants.get(context, self.variants.get("default", ""))


@dataclass(slots=True)
class PromptModifier:
    id: str
    name: str
    type: str
    tier: int
    content: str


@dataclass(slots=True)
class PromptComposition:
    context: str
    block_ids: list[str]
    supports_modes: bool = False
    supports_domains: bool = False


@dataclass(slots=True)
class PromptDefaults:
    blocks: list[PromptBlock] = field(default_factory=list)
    modifiers: list[PromptModifier] = field(default_factory=list)
    compositions: list[PromptComposition] = field(default_factory=list)

    def composition(self, context: str) -> PromptComposition | None:
        for composition in self.compositions:
            if composition.context == context:
                return composition
        return None


class PromptLoadError(RuntimeError):
    """Raised when prompt definitions cannot be loaded."""


def parse_prompt_definitions(text: str) -> PromptDefaults:
    """Parse YAML prompt definitions into blocks, modifiers and compositions."""

    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise PromptLoadError(f"Invalid prompt definitions: {exc}") from exc
    if not isinstance(data, dict):
        raise PromptLoadError("Prompt definitions must be a mapping")

    blocks: list[PromptBlock] = []
    for item in data.get("blocks") or []:
        variants = {str(key): str(value) for key, value in (item.get("variants") or {}).items()}
        if "default" not in variants:
            raise PromptLoadError(f"Prompt block {item.get('id')} is missing a default variant")
        blocks.append(
            PromptBlock(
                id=str(item["id"]),
                name=str(item.get("name") or item["id"]),
                description=str(item.get("description") or ""),
                tier=int(item.get("tier", 3)),
                variants=variants,
            )
        )
    modifiers = [
        PromptModifier(
            id=str(item["id"]),
            name=str(item.get("name") or item["id"]),
            type=str(item.get("type") or "mode"),
            tier=int(item.get("tier", 3)),
            content=str(item.get("content") or ""),
        )
        for item in data.get("modifiers") or []
    ]
    compositions = [
        PromptComposition(
            context=str(item["context"]),
            block_ids=[str(block_id) for block_id in item.get("block_ids") or []],
            supports_modes=bool(item.get("supports_modes", False)),
            supports_domains=bool(item.get("supports_domains", False)),
        )
        for item in data.get("compositions") or []
    ]
    return PromptDefaults(blocks=blocks, modifiers=modifiers, compositions=compositions)


@lru_cache(maxsize=1)
def _packaged_defaults() -> PromptDefaults:
    text = resources.files("skillbase").joinpath("prompt_library.yaml").read_text(encoding="utf-8")
    return parse_prompt_definitions(text)


def load_prompt_defaults() -> PromptDefaults:
    """Return a private copy of the packaged prompt definitions."""

    return copy.deepcopy(_packaged_defaults())


def build_prompt_from_blocks(
    blocks: Sequence[PromptBlock],
    composition: PromptComposition,
    *,
    mode: str | None = None,
    domains: Iterable[str] = (),
    modifiers: Sequence[PromptModifier] = (),
) -> str:
    """Assemble the system prompt for ``composition`` from blocks and modifiers."""

    by_id = {block.id: block for block in blocks}
    modifiers_by_id = {modifier.id: modifier for modifier in modifiers}
    parts: list[str] = []

    for block_id in composition.block_ids:
        block = by_id.get(block_id)
        if block is None:
            continue
        content = block.content_for(composition.context)
        if content.strip():
            parts.append(f"## {block.name}\n{content}")

    if composition.supports_modes and mode:
        modifier = modifiers_by_id.get(f"mode_{mode}")
        if modifier is not None:
            parts.append(f"## {modifier.name}\n{modifier.content}")

    if composition.supports_domains:
        for domain in domains:
            modifier = modifiers_by_id.get(f"domain_{domain}")
            if modifier is not None:
                parts.append(f"## {modifier.name}\n{modifier.content}")

    return "\n\n".join(parts)


def default_prompt(context: str, *, mode: str | None = None, domains: Iterable[str] = ()) -> str:
    defaults = _packaged_defaults()
    composition = defaults.composition(context)
    if composition is None:
        return DEFAULT_PROMPT
    return build_prompt_from_blocks(
        defaults.blocks, composition, mode=mode, domains=domains, modifiers=defaults.modifiers
    )


class PromptLibrary:
    """Stores admin overrides on top of the packaged prompt blocks."""

    def __init__(self, root: Path, defaults: PromptDefaults | None = None) -> None:
        self._root = root
        self._file = root / "prompt_blocks.json"
        self._root.mkdir(parents=True, exist_ok=True)
        self._defaults = defaults or load_prompt_defaults()
        self._lock = threading.Lock()

    @property
    def compositions(self) -> list[PromptComposition]:
        return list(self._defaults.compositions)

    def list_blocks(self) -> list[PromptBlock]:
        overrides = self._read_overrides().get("blocks", {})
        blocks: list[PromptBlock] = []
        for block in self._defaults.blocks:
            merged = copy.deepcopy(block)
            override = overrides.get(block.id) or {}
            if override.get("name"):
                merged.name = override["name"]
            if override.get("description"):
                merged.description = override["description"]
            merged.variants.update(override.get("variants") or {})
            blocks.append(merged)
        return blocks

    def list_modifiers(self) -> list[PromptModifier]:
        overrides = self._read_overrides().get("modifiers", {})
        modifiers: list[PromptModifier] = []
        for modifier in self._defaults.modifiers:
            merged = copy.deepcopy(modifier)
            override = overrides.get(modifier.id) or {}
            if override.get("name"):
                merged.name = override["name"]
            if isinstance(override.get("content"), str):
                merged.content = override["content"]
            modifiers.append(merged)
        return modifiers

    def update_block(
        self,
        block_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
        variants: dict[str, str] | None = None,
    ) -> PromptBlock:
        self._require_block(block_id)
        with self._lock:
            payload = self._read_overrides()
            entry = payload.setdefault("blocks", {}).setdefault(block_id, {})
            if name is not None:
                entry["name"] = name.strip()
            if description is not None:
                entry["description"] = description.strip()
            if variants:
                entry.setdefault("variants", {}).update(
                    {str(key): str(value) for key, value in variants.items()}
                )
            self._write_overrides(payload)
        logger.info("prompt.block.updated id=%s", block_id)
        return next(block for block in self.list_blocks() if block.id == block_id)

    def reset_block(self, block_id: str) -> PromptBlock:
        self._require_block(block_id)
        with self._lock:
            payload = self._read_overrides()
            payload.get("blocks", {}).pop(block_id, None)
            self._write_overrides(payload)
        logger.info("prompt.block.reset id=%s", block_id)
        return next(block for block in self.list_blocks() if block.id == block_id)

    def update_modifier(
        self,
        modifier_id: str,
        *,
        name: str | None = None,
        content: str | None = None,
    ) -> PromptModifier:
        self._require_modifier(modifier_id)
        with self._lock:
            payload = self._read_overrides()
            entry = payload.setdefault("modifiers", {}).setdefault(modifier_id, {})
            if name is not None:
                entry["name"] = name.strip()
            if content is not None:
                entry["content"] = content
            self._write_overrides(payload)
        logger.info("prompt.modifier.updated id=%s", modifier_id)
        return next(item for item in self.list_modifiers() if item.id == modifier_id)

    def reset_modifier(self, modifier_id: str) -> PromptModifier:
        self._require_modifier(modifier_id)
        with self._lock:
            payload = self._read_overrides()
            payload.get("modifiers", {}).pop(modifier_id, None)
            self._write_overrides(payload)
        logger.info("prompt.modifier.reset id=%s", modifier_id)
        return next(item for item in self.list_modifiers() if item.id == modifier_id)

    def build_prompt(
        self,
        context: str,
        *,
        mode: str | None = None,
        domains: Iterable[str] = (),
    ) -> str | None:
        composition = self._defaults.composition(context)
        if composition is None:
            return None
        return build_prompt_from_blocks(
            self.list_blocks(),
            composition,
            mode=mode,
            domains=domains,
            modifiers=self.list_modifiers(),
        )

    def load_system_prompt(
        self,
        key: str,
        default: str,
        *,
        mode: str | None = None,
        domains: Iterable[str] = (),
    ) -> str:
        """Return the configured prompt for ``key`` or ``default`` when none can be built."""

        context = _KEY_TO_CONTEXT.get(key)
        if context is None:
            return default
        try:
            prompt = self.build_prompt(context, mode=mode, domains=domains)
        except (OSError, ValueError) as exc:
            logger.warning("prompt.load.failed key=%s error=%s", key, exc)
            return default
        if not prompt or not prompt.strip():
            return default
        return prompt

    def export_yaml(self) -> str:
        """Serialize the effective blocks and modifiers as YAML overrides."""

        document = {
            "blocks": {
                block.id: {
                    "name": block.name,
                    "description": block.description,
                    "variants": dict(block.variants),
                }
                for block in self.list_blocks()
            },
            "modifiers": {
                modifier.id: {"name": modifier.name, "content": modifier.content}
                for modifier in self.list_modifiers()
            },
        }
        return yaml.safe_dump(document, sort_keys=False, allow_unicode=True)

    def import_yaml(self, text: str) -> dict[str, int]:
        """Replace stored overrides with those in ``text``."""

        try:
            data = yaml.safe_load(text) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError("Prompt overrides must be a mapping with 'blocks' and 'modifiers'")
        blocks = data.get("blocks") or {}
        modifiers = data.get("modifiers") or {}
        if not isinstance(blocks, dict) or not isinstance(modifiers, dict):
            raise ValueError("'blocks' and 'modifiers' must be mappings keyed by id")
        for block_id in blocks:
            self._require_block(block_id)
        for modifier_id in modifiers:
            self._require_modifier(modifier_id)

        payload: dict[str, Any] = {"blocks": {}, "modifiers": {}}
        for block_id, entry in blocks.items():
            entry = entry or {}
            payload["blocks"][block_id] = {
                "name": str(entry.get("name") or ""),
                "description": str(entry.get("description") or ""),
                "variants": {str(k): str(v) for k, v in (entry.get("variants") or {}).items()},
            }
        for modifier_id, entry in modifiers.items():
            entry = entry or {}
            stored: dict[str, str] = {"name": str(entry.get("name") or "")}
            if entry.get("content") is not None:
                stored["content"] = str(entry["content"])
            payload["modifiers"][modifier_id] = stored
        with self._lock:
            self._write_overrides(payload)
        logger.info(
            "prompt.import.completed blocks=%s modifiers=%s", len(blocks), len(modifiers)
        )
        return {"blocks": len(blocks), "modifiers": len(modifiers)}

    def describe(self) -> dict[str, Any]:
        return {
            "blocks": [
                {**asdict(block), "tier_label": TIER_LABELS.get(block.tier, "Open")}
                for block in self.list_blocks()
            ],
            "modifiers": [
                {**asdict(modifier), "tier_label": TIER_LABELS.get(modifier.tier, "Open")}
                for modifier in self.list_modifiers()
            ],
            "compositions": [asdict(composition) for composition in self.compositions],
        }

    def _require_block(self, block_id: str) -> None:
        if not any(block.id == block_id for block in self._defaults.blocks):
            raise ValueError(f"Prompt block {block_id} not found")

    def _require_modifier(self, modifier_id: str) -> None:
        if not any(modifier.id == modifier_id for modifier in self._defaults.modifiers):
            raise ValueError(f"Prompt modifier {modifier_id} not found")

    def _read_overrides(self) -> dict:
        if not self._file.exists():
            return {"blocks": {}, "modifiers": {}}
        with self._file.open("r", encoding="utf-8") as handle:
            return json.load(handle)

    def _write_overrides(self, data: dict) -> None:
        with self._file.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2)


__all__ = [
    "DEFAULT_PROMPT",
    "PROMPT_CONTEXTS",
    "PromptBlock",
    "PromptComposition",
    "PromptDefaults",
    "PromptLibrary",
    "PromptLoadError",
    "PromptModifier",
    "TIER_LABELS",
    "build_prompt_from_blocks",
    "default_prompt",
    "load_prompt_defaults",
    "parse_prompt_definitions",
]
