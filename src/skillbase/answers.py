"""Helpers for interpreting free-form answers returned by the LLM."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Final

_SECTION_NAMES: Final[tuple[str, ...]] = ("confidence", "sources", "remarks")

LOW_CONFIDENCE_PHRASES: Final[tuple[str, ...]] = (
    "i don't know",
    "i'm not sure",
    "i don't have enough information",
    "i don't have information",
    "i cannot answer",
    "unable to determine",
    "insufficient information",
    "no information available",
    "not enough context",
    "cannot find",
)

_MIN_CONFIDENT_LENGTH: Final[int] = 50


@dataclass(slots=True)
class AnswerSections:
    response: str
    confidence: str = ""
    sources: str = ""
    remarks: str = ""


def _match_header(line: str) -> tuple[str, str] | None:
    """Return ``(section, trailing_text)`` when ``line`` opens a section."""

    stripped = line.strip()
    lowered = stripped.lower()
    for name in _SECTION_NAMES:
        for marker in (f"**{name}:**", f"{name}:"):
            if lowered.startswith(marker):
                return name, stripped[len(marker):].strip()
        if lowered in (name, f"**{name}**"):
            return name, ""
    return None


def parse_answer_sections(answer: str) -> AnswerSections:
    """Split an answer into response, confidence, sources and remarks sections."""

    buckets: dict[str, list[str]] = {name: [] for name in _SECTION_NAMES}
    response_lines: list[str] = []
    current: str | None = None

    for line in answer.splitlines():
        header = _match_header(line)
        if header is not None:
            current, trailing = header
            if trailing:
                buckets[current].append(trailing)
            continue
        if current is None:
            response_lines.append(line)
        else:
            buckets[current].append(line)

    response = "\n".join(response_lines).strip() or answer.strip()
    return AnswerSections(
        response=response,
        confidence="\n".join(buckets["confidence"]).strip(),
        sources="\n".join(buckets["sources"]).strip(),
        remarks="\n".join(buckets["remarks"]).strip(),
    )


def is_confident_answer(answer: str) -> bool:
    lowered = answer.lower()
    if any(phrase in lowered for phrase in LOW_CONFIDENCE_PHRASES):
        return False
    return len(answer) > _MIN_CONFIDENT_LENGTH


__all__ = [
    "AnswerSections",
    "LOW_CONFIDENCE_PHRASES",
    "is_confident_answer",
    "parse_answer_sections",
]
