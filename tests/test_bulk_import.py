from __future__ import annotations

import json
from pathlib import Path
from typing import Sequence

import pytest

from conftest import FakeAnthropicClient
from skillbase.bulk_import import BulkImportManager, WorkflowError
from skillbase.config import Settings
from skillbase.documents import SourceDocument
from skillbase.llm import KnowledgeAssistant
from skillbase.skills import SkillStore
from skillbase.usage import UsageStore

SSO_URL = "https://docs.test/sso"
SCIM_URL = "https://docs.test/scim"


class _FakeFetcher:
    def __init__(self, pages: dict[str, str]) -> None:
        self.pages = pages

    def fetch_for_analysis(self, urls: Sequence[str]) -> tuple[str, list[str]]:
        fetched = [url for url in urls if url in self.pages]
        return "\n\n---\n\n".join(f"Source: {url}\n{self.pages[url]}" for url in fetched), fetched

    def build_source_material(self, *, source_text=None, urls=(), documents=()) -> str:
        sections = [f"Source: {url}\n{self.pages[url]}" for url in urls if url in self.pages]
        sections.extend(f"Document: {document.title}\n{document.text}" for document in documents)
        if not sections:
            raise ValueError("Unable to load any content from the provided sources.")
        return "\n\n---\n\n".join(sections)


def _manager(
    tmp_path: Path,
    settings: Settings,
    client: FakeAnthropicClient,
    sleep=lambda seconds: None,
) -> tuple[BulkImportManager, SkillStore, UsageStore]:
    skills = SkillStore(tmp_path / "skills")
    usage = UsageStore(tmp_path / "usage.sqlite")
    manager = BulkImportManager(
        skills,
        KnowledgeAssistant(settings, anthropic_client=client),
        _FakeFetcher({SSO_URL: "SAML 2.0 and OIDC login.", SCIM_URL: "SCIM 2.0 provisioning."}),
        usage_store=usage,
        settings=settings,
        sleep=sleep,
    )
    return manager, skills, usage


def _split_reply() -> str:
    return json.dumps(
        {
            "suggestion": {
                "action": "split_topics",
                "reason": "Login and provisioning are separate topics",
                "splitSuggestions": [
                    {"title": "Single Sign-On", "description": "SSO setup", "relevantUrls": [SSO_URL]},
                    {"title": "User Provisioning", "description": "SCIM", "relevantUrls": [SCIM_URL]},
                ],
            }
        }
    )


def test_create_workflow_from_split_analysis(tmp_path: Path, settings: Settings) -> None:
    draft_reply = json.dumps({"title": "Single Sign-On", "content": "Supports SAML 2.0 and OIDC."})
    client = FakeAnthropicClient([_split_reply(), draft_reply])
    manager, skills, usage = _manager(tmp_path, settings, client)

    session = manager.create_session([SSO_URL, SSO_URL, "ftp://docs.test/file", f" {SCIM_URL} "])
    assert session.urls == [SSO_URL, SCIM_URL]

    analyzed = manager.analyze(session.id, user_id="u-1")
    assert analyzed.step == "review_groups"
    assert [group.skill_title for group in analyzed.groups] == ["Single Sign-On", "User Provisioning"]
    assert analyzed.groups[0].urls == [SSO_URL]
    assert usage.summary(feature="skills-analyze")["call_count"] == 1

    sso, scim = analyzed.groups
    manager.toggle_group_approval(session.id, sso.id)
    manager.reject_group(session.id, scim.id)
    manager.set_group_category(session.id, sso.id, " Integrations ")

    generated = manager.generate_drafts(session.id, user_id="u-1")
    assert generated.step == "review_drafts"
    assert sso.status == "ready_for_review"
    assert sso.draft.content == "Supports SAML 2.0 and OIDC."
    assert "Source: https://docs.test/sso" in client.calls[1]["messages"][0]["content"]

    manager.update_draft_field(session.id, sso.id, "title", "SSO")
    manager.approve_draft(session.id, sso.id)
    result = manager.save(session.id, user="alice@example.com")

    assert (result.created, result.updated, result.skipped, result.errors) == (1, 0, 1, 0)
    assert manager.get_session(session.id).step == "done"
    created = skills.list_skills()[0]
    assert created.title == "SSO"
    assert created.categories == ["Integrations"]
    assert [source.url for source in created.source_urls] == [SSO_URL]
    assert created.created_by == "alice@example.com"
    assert manager.get_session(session.id).to_dict()["processed_result"]["created"] == 1


def test_update_workflow_for_known_urls(tmp_path: Path, settings: Settings) -> None:
    update_reply = json.dumps(
        {
            "hasChanges": True,
            "summary": "Adds OIDC",
            "title": "SSO",
            "content": "SAML 2.0 and OIDC login.",
            "changeHighlights": ["OIDC"],
        }
    )
    client = FakeAnthropicClient([update_reply])
    manager, skills, _ = _manager(tmp_path, settings, client)
    existing = skills.create_skill(title="SSO", content="SAML 2.0 login.", source_urls=[SSO_URL])
    document = SourceDocument(id="doc-1", filename="sso.md", title="SSO guide", text="Okta walkthrough")

    session = manager.create_session([SSO_URL])
    manager.add_document(session.id, document)
    analyzed = manager.analyze(session.id)

    assert len(client.calls) == 0
    group = analyzed.groups[0]
    assert group.type == "update"
    assert group.existing_skill_id == existing.id
    assert group.document_ids == ["doc-1"]
    assert group.original_content == "SAML 2.0 login."

    manager.approve_all(session.id)
    manager.generate_drafts(session.id)
    assert group.draft.has_changes is True
    assert group.draft.change_highlights == ["OIDC"]
    assert "Document: SSO guide" in client.calls[0]["messages"][0]["content"]

    manager.approve_all_drafts(session.id)
    result = manager.save(session.id)

    assert (result.created, result.updated, result.skipped) == (0, 1, 0)
    updated = skills.get_skill(existing.id)
    assert updated.content == "SAML 2.0 and OIDC login."
    assert updated.history[-1].summary == "Updated from bulk import with 1 URL(s)"
    assert updated.last_refreshed_at is not None


def test_unchanged_update_is_skipped(tmp_path: Path, settings: Settings) -> None:
    client = FakeAnthropicClient([json.dumps({"hasChanges": False, "summary": "Nothing new"})])
    manager, skills, _ = _manager(tmp_path, settings, client)
    existing = skills.create_skill(title="SSO", content="SAML 2.0 login.", source_urls=[SSO_URL])

    session = manager.create_session([SSO_URL])
    manager.analyze(session.id)
    manager.approve_all(session.id)
    manager.generate_drafts(session.id)
    manager.approve_all_drafts(session.id)
    result = manager.save(session.id)

    assert (result.updated, result.skipped) == (0, 1)
    assert skills.get_skill(existing.id).content == "SAML 2.0 login."


def test_group_editing_actions(tmp_path: Path, settings: Settings) -> None:
    single = json.dumps({"action": "create_new", "reason": "One topic", "suggestedTitle": "Identity"})
    manager, _, _ = _manager(tmp_path, settings, FakeAnthropicClient([single]))
    session = manager.create_session([SSO_URL, SCIM_URL])
    analyzed = manager.analyze(session.id)
    identity = analyzed.groups[0]
    assert identity.skill_title == "Identity"

    split = manager.create_group_from_url(session.id, identity.id, SCIM_URL, "Provisioning")
    assert identity.urls == [SSO_URL]
    assert split.urls == [SCIM_URL]

    manager.move_url(session.id, split.id, SCIM_URL, identity.id)
    session_groups = manager.get_session(session.id).groups
    assert [group.id for group in session_groups] == [identity.id]
    assert identity.urls == [SSO_URL, SCIM_URL]

    with pytest.raises(ValueError, match="title is required"):
        manager.create_group_from_url(session.id, identity.id, SSO_URL, "  ")
    with pytest.raises(ValueError, match="not part of group"):
        manager.move_url(session.id, identity.id, "https://other.test", identity.id)
    with pytest.raises(WorkflowError, match="Approve at least one group"):
        manager.start_generation(session.id)
    with pytest.raises(WorkflowError, match="expected review_drafts"):
        manager.approve_draft(session.id, identity.id)


def test_analyze_failure_returns_to_input(tmp_path: Path, settings: Settings) -> None:
    manager, _, _ = _manager(tmp_path, settings, FakeAnthropicClient())
    empty = manager.create_session()

    with pytest.raises(ValueError, match="at least one valid URL"):
        manager.analyze(empty.id)

    unreachable = manager.create_session(["https://unreachable.test/page"])
    with pytest.raises(ValueError, match="Unable to load"):
        manager.analyze(unreachable.id)
    session = manager.get_session(unreachable.id)
    assert session.step == "input"
    assert session.error_message.startswith("Unable to load")

    manager.set_urls(unreachable.id, [SSO_URL])
    assert manager.get_session(unreachable.id).urls == [SSO_URL]


def test_generation_errors_mark_group(tmp_path: Path, settings: Settings) -> None:
    client = FakeAnthropicClient([json.dumps({"action": "create_new", "suggestedTitle": "SSO"})])
    manager, _, _ = _manager(tmp_path, settings, client)
    session = manager.create_session([SSO_URL])
    group = manager.analyze(session.id).groups[0]
    manager.approve_all(session.id)
    client.error = RuntimeError("overloaded")

    manager.generate_drafts(session.id)

    assert group.status == "error"
    assert "overloaded" in group.error
    assert manager.get_session(session.id).step == "review_drafts"
    with pytest.raises(WorkflowError, match="no draft"):
        manager.approve_draft(session.id, group.id)


def _draft_reply(title: str) -> str:
    return json.dumps({"title": title, "content": f"{title} details."})


def test_interrupted_generation_returns_to_group_review(tmp_path: Path, settings: Settings) -> None:
    client = FakeAnthropicClient([_split_reply(), _draft_reply("Single Sign-On")])
    interruptions: list[Exception] = []

    def sleep(seconds: float) -> None:
        if interruptions:
            raise interruptions.pop(0)

    manager, _, _ = _manager(tmp_path, settings, client, sleep=sleep)
    session = manager.create_session([SSO_URL, SCIM_URL])
    sso, scim = manager.analyze(session.id).groups
    manager.approve_all(session.id)
    interruptions.append(RuntimeError("worker stopped"))

    with pytest.raises(RuntimeError, match="worker stopped"):
        manager.generate_drafts(session.id)

    stalled = manager.get_session(session.id)
    assert stalled.step == "review_groups"
    assert stalled.error_message == "Draft generation failed: worker stopped"
    assert sso.status == "ready_for_review"
    assert scim.status == "approved"

    client.replies.append(_draft_reply("User Provisioning"))
    resumed = manager.generate_drafts(session.id)

    assert resumed.step == "review_drafts"
    assert resumed.error_message is None
    assert scim.draft.title == "User Provisioning"


def test_save_records_store_errors_per_group(
    tmp_path: Path, settings: Settings, monkeypatch: pytest.MonkeyPatch
) -> None:
    client = FakeAnthropicClient([_split_reply(), _draft_reply("Single Sign-On"), _draft_reply("User Provisioning")])
    manager, skills, _ = _manager(tmp_path, settings, client)
    session = manager.create_session([SSO_URL, SCIM_URL])
    sso, scim = manager.analyze(session.id).groups
    manager.approve_all(session.id)
    manager.generate_drafts(session.id)
    manager.approve_all_drafts(session.id)
    create_skill = skills.create_skill

    def flaky_create(**kwargs):
        if kwargs["title"] == "Single Sign-On":
            raise KeyError("id")
        return create_skill(**kwargs)

    monkeypatch.setattr(skills, "create_skill", flaky_create)

    result = manager.save(session.id)

    assert (result.created, result.errors) == (1, 1)
    assert sso.status == "error"
    assert scim.status == "done"
    assert manager.get_session(session.id).step == "done"


def test_interrupted_save_returns_to_draft_review(tmp_path: Path, settings: Settings) -> None:
    client = FakeAnthropicClient([_split_reply(), _draft_reply("Single Sign-On"), _draft_reply("User Provisioning")])
    interruptions: list[Exception] = []

    def sleep(seconds: float) -> None:
        if interruptions:
            raise interruptions.pop(0)

    manager, skills, _ = _manager(tmp_path, settings, client, sleep=sleep)
    session = manager.create_session([SSO_URL, SCIM_URL])
    sso, scim = manager.analyze(session.id).groups
    manager.approve_all(session.id)
    manager.generate_drafts(session.id)
    manager.approve_all_drafts(session.id)
    interruptions.append(RuntimeError("disk detached"))

    with pytest.raises(RuntimeError, match="disk detached"):
        manager.save(session.id)

    stalled = manager.get_session(session.id)
    assert stalled.step == "review_drafts"
    assert stalled.error_message == "Saving skills failed: disk detached"
    assert sso.status == "done"
    assert scim.status == "reviewed"

    result = manager.save(session.id)

    assert result.created == 1
    assert sorted(skill.title for skill in skills.list_skills()) == ["Single Sign-On", "User Provisioning"]
    assert manager.get_session(session.id).step == "done"


def test_session_housekeeping(tmp_path: Path, settings: Settings) -> None:
    manager, _, _ = _manager(tmp_path, settings, FakeAnthropicClient())
    session = manager.create_session([SSO_URL])
    document = SourceDocument(id="doc-1", filename="a.txt", title="A", text="text")
    manager.add_document(session.id, document)

    assert manager.remove_document(session.id, "doc-1").documents == []
    with pytest.raises(ValueError, match="Document doc-1 not found"):
        manager.remove_document(session.id, "doc-1")

    manager.set_step(session.id, "review_groups")
    with pytest.raises(WorkflowError, match="Unknown workflow step"):
        manager.set_step(session.id, "publishing")

    fresh = manager.reset(session.id)
    assert fresh.step == "input"
    assert fresh.urls == []
    assert [item.id for item in manager.list_sessions()] == [session.id]
    assert manager.delete_session(session.id) is True
    assert manager.get_session(session.id) is None
    with pytest.raises(ValueError, match="not found"):
        manager.reset(session.id)
