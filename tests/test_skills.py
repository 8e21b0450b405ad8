from __future__ import annotations

from pathlib import Path

import pytest

from skillbase.skills import Skill, SkillStore, effective_tier, select_relevant_skills


def _make_store(tmp_path: Path) -> SkillStore:
    return SkillStore(tmp_path / "data")


def test_create_and_update_skill_records_history(tmp_path: Path) -> None:
    store = _make_store(tmp_path)

    skill = store.create_skill(
        title="  Encryption Standards ",
        content="All data is encrypted at rest with AES-256.",
        categories=["Security & Compliance", "Security & Compliance"],
        tags=["Encryption", "AES"],
        quick_facts=[{"question": "Cipher?", "answer": "AES-256"}, {"question": "", "answer": "skip"}],
        source_urls=["https://example.com/security", "https://EXAMPLE.com/security/"],
        created_by="alice@example.com",
    )

    assert skill.title == "Encryption Standards"
    assert skill.categories == ["Security & Compliance"]
    assert skill.tags == ["encryption", "aes"]
    assert len(skill.quick_facts) == 1
    assert [source.url for source in skill.source_urls] == ["https://example.com/security"]
    assert skill.tier == "library"
    assert skill.history[0].action == "created"

    updated = store.update_skill(skill.id, content="TLS 1.2+ in transit, AES-256 at rest.", user="bob")

    assert updated.content.startswith("TLS 1.2+")
    assert updated.title == "Encryption Standards"
    assert [entry.action for entry in updated.history] == ["created", "updated"]
    assert updated.history[-1].summary == "Updated content"
    assert updated.history[-1].user == "bob"
    assert store.get_skill(skill.id).content == updated.content


def test_skill_validation_errors(tmp_path: Path) -> None:
    store = _make_store(tmp_path)

    with pytest.raises(ValueError, match="title"):
        store.create_skill(title="  ", content="Body")
    with pytest.raises(ValueError, match="content"):
        store.create_skill(title="Title", content="")
    with pytest.raises(ValueError, match="tier"):
        store.create_skill(title="Title", content="Body", tier="premium")
    with pytest.raises(ValueError, match="not found"):
        store.update_skill("missing", title="Other")


def test_skill_rejects_wrongly_typed_fields(tmp_path: Path) -> None:
    store = _make_store(tmp_path)

    with pytest.raises(ValueError, match="tier must be a string"):
        store.create_skill(title="Title", content="Body", tier=5)
    with pytest.raises(ValueError, match="tier_overrides"):
        store.create_skill(title="Title", content="Body", tier_overrides=["core"])
    with pytest.raises(ValueError, match="quick_facts must be a list"):
        store.create_skill(title="Title", content="Body", quick_facts={"question": "Q", "answer": "A"})
    with pytest.raises(ValueError, match="quick fact must be an object"):
        store.create_skill(title="Title", content="Body", quick_facts=["Q: A"])
    assert store.list_skills() == []


def test_list_skills_filters_and_paginates(tmp_path: Path) -> None:
    store = _make_store(tmp_path)
    active = store.create_skill(title="Backups", content="Nightly backups.", categories=["Infrastructure"])
    store.create_skill(title="SSO", content="SAML and OIDC.", categories=["Integrations"])
    inactive = store.create_skill(title="Legacy", content="Old content.", is_active=False)

    assert {skill.id for skill in store.list_skills()} == {skill.id for skill in store.list_skills(limit=10)}
    assert inactive.id not in {skill.id for skill in store.list_skills()}
    assert inactive.id in {skill.id for skill in store.list_skills(active_only=False)}
    assert [skill.id for skill in store.list_skills(category="Infrastructure")] == [active.id]
    assert len(store.list_skills(limit=1)) == 1
    assert len(store.list_skills(limit=1, offset=1)) == 1
    assert store.list_skills(offset=5) == []

    assert store.delete_skill(active.id) is True
    assert store.delete_skill(active.id) is False
    assert store.get_skill(active.id) is None


def test_add_source_urls_refreshes_known_entries(tmp_path: Path) -> None:
    store = _make_store(tmp_path)
    skill = store.create_skill(title="Backups", content="Nightly backups.", source_urls=["https://a.test/one"])

    updated = store.add_source_urls(skill.id, ["https://a.test/one/", "https://a.test/two"])

    urls = [source.url for source in updated.source_urls]
    assert urls == ["https://a.test/one", "https://a.test/two"]
    assert updated.source_urls[0].last_fetched_at is not None
    assert updated.last_refreshed_at is not None

    match = store.find_url_matches(["https://A.test/two", "https://other.test"])
    assert match is not None
    found, matched = match
    assert found.id == skill.id
    assert matched == ["https://A.test/two"]
    assert store.find_url_matches(["https://nothing.test"]) is None


def test_select_relevant_skills_scores_titles_tags_and_content() -> None:
    def skill(skill_id: str, title: str, content: str, tags: list[str] | None = None, active: bool = True) -> Skill:
        return Skill(
            id=skill_id,
            title=title,
            content=content,
            created_at="2025-01-01T00:00:00+00:00",
            updated_at="2025-01-01T00:00:00+00:00",
            tags=tags or [],
            is_active=active,
        )

    skills = [
        skill("s1", "Office Locations", "We have offices in Berlin."),
        skill("s2", "Encryption Standards", "Data is encrypted using AES-256.", tags=["aes"]),
        skill("s3", "Password Policy", "Passwords rotate every 90 days and data stays encrypted."),
        skill("s4", "Encryption Archive", "Encryption notes.", active=False),
    ]

    ranked = select_relevant_skills("How is customer data encrypted? Do you use AES?", skills)

    assert [item.id for item in ranked] == ["s2", "s3"]


def test_search_skills_respects_tier_overrides(tmp_path: Path) -> None:
    store = _make_store(tmp_path)
    core = store.create_skill(
        title="Encryption Standards",
        content="Encryption with AES-256.",
        categories=["Security & Compliance"],
        tier="core",
    )
    promoted = store.create_skill(
        title="Encryption Key Rotation",
        content="Encryption keys rotate yearly.",
        categories=["Security & Compliance"],
        tier="library",
        tier_overrides={"Security & Compliance": "extended"},
    )
    store.create_skill(title="Encryption Marketing", content="Encryption blog post.", tier="library")

    assert effective_tier(promoted, "Security & Compliance") == "extended"
    assert effective_tier(promoted) == "library"

    extended = store.search_skills(
        "encryption keys",
        categories=["Security & Compliance"],
        tiers=("extended",),
    )
    assert [skill.id for skill in extended] == [promoted.id]

    library = store.search_skills("encryption", tiers=("library",), exclude_ids=[core.id, promoted.id])
    assert [skill.title for skill in library] == ["Encryption Marketing"]
