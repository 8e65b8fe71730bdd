from __future__ import annotations

import pytest

from pke.core.errors import NotFoundError
from pke.engine.retriever import AnchorRepository, InMemoryAnchorRepository, RetrievedAnchors
from tests.mocks.engine import make_retriever


@pytest.fixture()
def retriever():
    return make_retriever(
        policies=[
            {"id": "pol-ds", "name": "DS policy", "domain": "Data Science"},
            {"id": "pol-tag", "name": "Privacy", "domain": "compliance", "tags": ["data science ethics"]},
            {"id": "pol-fin", "name": "Finance policy", "domain": "finance"},
        ],
        knowledge_packs=[
            {"id": "kp-ds", "name": "Pandas primer", "domain": "data science", "description": "DataFrames"},
            {"id": "kp-tag", "name": "SQL essentials", "domain": "databases", "tags": ["sql"]},
            {"id": "kp-other", "name": "Accounting 101", "domain": "finance", "content": "ledgers and sql"},
        ],
        templates=[
            {"id": "tpl-course", "name": "Standard course", "type": "course"},
            {"id": "tpl-ds", "name": "Lab sheet", "type": "worksheet", "tags": ["data"]},
            {"id": "tpl-misc", "name": "Letter", "type": "letter", "tags": ["hr"]},
        ],
    )


def test_domain_matches_policies_packs_and_templates(retriever) -> None:
    anchors = retriever.retrieve_anchors(course_title="Applied Data Science", domain="data science")
    assert sorted(item["id"] for item in anchors.policies) == ["pol-ds", "pol-tag"]
    assert [item["id"] for item in anchors.knowledge_packs] == ["kp-ds"]
    assert sorted(item["id"] for item in anchors.templates) == ["tpl-course", "tpl-ds"]
    assert anchors.has_policy_reference and anchors.has_knowledge_pack and anchors.has_template_structure


def test_pack_tags_match_the_title(retriever) -> None:
    anchors = retriever.retrieve_anchors(course_title="Intro to SQL", domain="analytics")
    assert [item["id"] for item in anchors.knowledge_packs] == ["kp-tag"]
    assert anchors.policies == []


def test_no_domain_means_no_policies(retriever) -> None:
    anchors = retriever.retrieve_anchors(course_title="Something else")
    assert anchors.policies == []
    assert anchors.knowledge_packs == []
    assert [item["id"] for item in anchors.templates] == ["tpl-course"]


def test_empty_anchors() -> None:
    assert RetrievedAnchors().empty
    assert not RetrievedAnchors(prior_decisions=[{"decision": "x"}]).empty


def test_search_knowledge_packs(retriever) -> None:
    assert [item["id"] for item in retriever.search_knowledge_packs("sql")] == ["kp-tag", "kp-other"]
    assert [item["id"] for item in retriever.search_knowledge_packs("sql", domain="finance")] == ["kp-other"]
    assert len(retriever.search_knowledge_packs(limit=2)) == 2


def test_lookup_by_id(retriever) -> None:
    assert retriever.get_template("tpl-course")["name"] == "Standard course"
    assert retriever.get_template("missing") is None


def test_repository_crud_returns_copies() -> None:
    repo = InMemoryAnchorRepository("knowledge_pack")
    assert isinstance(repo, AnchorRepository)

    created = repo.create({"name": "Stats", "tags": ["stats"]})
    assert created["id"]
    assert "created_at" in created
    created["tags"].append("leak")
    assert repo.get(created["id"])["tags"] == ["stats"]

    updated = repo.update(created["id"], {"name": "Statistics", "id": "ignored"})
    assert updated["name"] == "Statistics"
    assert updated["id"] == created["id"]
    assert "updated_at" in updated

    with pytest.raises(NotFoundError):
        repo.update("missing", {"name": "x"})
    assert repo.delete(created["id"]) is True
    assert repo.delete(created["id"]) is False
    assert repo.list() == []
