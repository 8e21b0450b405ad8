from __future__ import annotations

from pathlib import Path

import pytest

from skillbase.categories import DEFAULT_SKILL_CATEGORIES, CategoryStore


def test_categories_seeded_on_first_read(tmp_path: Path) -> None:
    store = CategoryStore(tmp_path)

    categories = store.list_categories()

    assert [category.name for category in categories] == list(DEFAULT_SKILL_CATEGORIES)
    assert categories[0].id == "default-0"
    assert (tmp_path / "skill_categories.json").exists()


def test_create_update_and_delete_category(tmp_path: Path) -> None:
    store = CategoryStore(tmp_path)

    created = store.create_category(name=" Finance ", description="  ", color="#00AA11")
    assert created.name == "Finance"
    assert created.description is None
    assert created.sort_order == len(DEFAULT_SKILL_CATEGORIES)

    with pytest.raises(ValueError, match="already exists"):
        store.create_category(name="finance")
    with pytest.raises(ValueError, match="hex"):
        store.create_category(name="Other", color="blue")

    updated = store.update_category(created.id, description="Billing and invoices", color=None)
    assert updated.description == "Billing and invoices"
    assert updated.color is None

    with pytest.raises(ValueError, match="not found"):
        store.update_category("missing", name="Nope")

    assert store.delete_category(created.id) is True
    assert store.delete_category(created.id) is False
    assert store.get_category(created.id) is None


def test_reorder_categories(tmp_path: Path) -> None:
    store = CategoryStore(tmp_path)
    first, second = store.list_categories()[:2]

    ordered = store.reorder([{"id": second.id, "sort_order": 0}, {"id": first.id, "sort_order": 1}])

    assert [category.id for category in ordered[:2]] == [second.id, first.id]

    with pytest.raises(ValueError, match="Unknown categories"):
        store.reorder([{"id": "missing"}])
    with pytest.raises(ValueError, match="integer"):
        store.reorder([{"id": first.id, "sort_order": "1"}])


def test_category_fields_must_be_text(tmp_path: Path) -> None:
    store = CategoryStore(tmp_path)
    first = store.list_categories()[0]

    with pytest.raises(ValueError, match="name is required"):
        store.create_category(name=42)
    with pytest.raises(ValueError, match="Expected text"):
        store.create_category(name="Legal", description=["contracts"])
    with pytest.raises(ValueError, match="name is required"):
        store.update_category(first.id, name={"value": "Renamed"})
    with pytest.raises(ValueError, match="must be an object"):
        store.reorder(["default-0"])
    with pytest.raises(ValueError, match="requires an id"):
        store.reorder([{"id": ["default-0"]}])
    assert store.get_category(first.id).name == first.name
