"""Skillbase application package."""

from __future__ import annotations

from .config import Settings
from .skills import Skill, SkillStore

__all__ = [
    "Settings",
    "Skill",
    "SkillStore",
    "KnowledgeAssistant",
    "create_app",
]


def __getattr__(name: str):  # pragma: no cover - small helper
    if name == "KnowledgeAssistant":
        from .llm import KnowledgeAssistant

        return KnowledgeAssistant
    if name == "create_app":
        from .app import create_app

        return create_app
    raise AttributeError(f"module 'skillbase' has no attribute {name}")
