from __future__ import annotations

from pathlib import Path

import pytest

from skillbase.snippets import SnippetKeyConflictError, SnippetStore, snippet_keys


def test_snippet_crud_and_key_conflicts(tmp_path: Path) -> None:
    store = SnippetStore(tmp_path)

    snippet = store.create_snippet(
        name="Company name",
        key="company_name",
        content="Acme Corp",
        category="company",
        created_by="alice@example.com",
    )
    assert snippet.is_active

    with pytest.raises(SnippetKeyConflictError):
        store.create_snippet(name="Dup", key="company_name", content="Other")
    with pytest.raises(ValueError, match="lowercase"):
        store.create_snippet(name="Bad", key="Company-Name", content="x")
    with pytest.raises(ValueError, match="content"):
        store.create_snippet(name="Empty", key="empty", content="  ")

    other = store.create_snippet(name="Product", key="product", content="Widget")
    with pytest.raises(SnippetKeyConflictError):
        store.update_snippet(other.id, key="company_name")

    updated = store.update_snippet(snippet.id, content="Acme Inc.", description="  ")
    assert updated.content == "Acme Inc."
    assert updated.description is None

    assert [item.key for item in store.list_snippets(category="company")] == ["company_name"]
    assert store.delete_snippet(other.id) is True
    assert store.get_snippet(other.id) is None
    with pytest.raises(ValueError, match="not found"):
        store.update_snippet("missing", name="x")


def test_interpolate_uses_active_snippets_only(tmp_path: Path) -> None:
    store = SnippetStore(tmp_path)
    store.create_snippet(name="Company", key="company_name", content="Acme Corp")
    store.create_snippet(name="Retired", key="retired", content="Old text", is_active=False)

    text = "{{company_name}} answers. {{retired}} {{unknown}}"

    assert store.interpolate(text) == "Acme Corp answers. {{retired}} {{unknown}}"
    assert store.interpolate("No placeholders here") == "No placeholders here"
    assert snippet_keys(text) == ["company_name", "retired", "unknown"]
