from __future__ import annotations

from skillbase.answers import is_confident_answer, parse_answer_sections


def test_parse_answer_sections_splits_markdown_headers() -> None:
    answer = "\n".join(
        [
            "Yes, all data is encrypted at rest using AES-256.",
            "",
            "**Confidence:** High",
            "**Sources:**",
            "- Encryption Standards",
            "Remarks: None",
        ]
    )

    sections = parse_answer_sections(answer)

    assert sections.response == "Yes, all data is encrypted at rest using AES-256."
    assert sections.confidence == "High"
    assert sections.sources == "- Encryption Standards"
    assert sections.remarks == "None"


def test_parse_answer_sections_without_headers_keeps_response() -> None:
    sections = parse_answer_sections("  Plain answer only.  ")

    assert sections.response == "Plain answer only."
    assert sections.confidence == ""
    assert sections.sources == ""


def test_is_confident_answer() -> None:
    assert not is_confident_answer("Short reply.")
    assert not is_confident_answer(
        "I don't have enough information in the provided skills to answer this question fully."
    )
    assert is_confident_answer(
        "Customer data is encrypted at rest with AES-256 and in transit with TLS 1.2 or higher."
    )
