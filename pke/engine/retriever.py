"""Anchor retrieval: policies, curated knowledge packs, and organizational templates.

Repositories are injected; the engine never owns module-level collections.
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Protocol, runtime_checkable

from pke.core.errors import NotFoundError

LOGGER = logging.getLogger(__name__)


@runtime_checkable
class AnchorRepository(Protocol):
    def list(self) -> List[Dict[str, Any]]:
        ...

    def get(self, anchor_id: str) -> Optional[Dict[str, Any]]:
        ...

    def create(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        ...

    def update(self, anchor_id: str, payload: Mapping[str, Any]) -> Dict[str, Any]:
        ...

    def delete(self, anchor_id: str) -> bool:
        ...


class InMemoryAnchorRepository:
    """Thread-safe dict store for one anchor kind (``policy``, ``knowledge_pack``, ``template``)."""

    def __init__(self, kind: str, items: List[Mapping[str, Any]] | None = None) -> None:
        self.kind = kind
        self._items: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()
        for item in items or []:
            self.create(item)

    def list(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(item) for item in self._items.values()]

    def get(self, anchor_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            item = self._items.get(anchor_id)
            return copy.deepcopy(item) if item is not None else None

    def create(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        record = copy.deepcopy(dict(payload))
        record["id"] = str(record.get("id") or uuid.uuid4().hex[:12])
        record.setdefault("created_at", datetime.now(timezone.utc).isoformat())
        with self._lock:
            self._items[record["id"]] = record
        LOGGER.debug("Created %s %s", self.kind, record["id"])
        return copy.deepcopy(record)

    def update(self, anchor_id: str, payload: Mapping[str, Any]) -> Dict[str, Any]:
        with self._lock:
            current = self._items.get(anchor_id)
            if current is None:
                raise NotFoundError(f"{self.kind.replace('_', ' ').title()} not found", details={"id": anchor_id})
            current.update({key: copy.deepcopy(value) for key, value in payload.items() if key != "id"})
            current["updated_at"] = datetime.now(timezone.utc).isoformat()
            return copy.deepcopy(current)

    def delete(self, anchor_id: str) -> bool:
        with self._lock:
            return self._items.pop(anchor_id, None) is not None


@dataclass(frozen=True)
class RetrievedAnchors:
    """Anchors matched for one course; drives the context flags and grading."""

    policies: List[Dict[str, Any]] = field(default_factory=list)
    knowledge_packs: List[Dict[str, Any]] = field(default_factory=list)
    templates: List[Dict[str, Any]] = field(default_factory=list)
    prior_decisions: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def has_policy_reference(self) -> bool:
        return bool(self.policies)

    @property
    def has_knowledge_pack(self) -> bool:
        return bool(self.knowledge_packs)

    @property
    def has_template_structure(self) -> bool:
        return bool(self.templates)

    @property
    def empty(self) -> bool:
        return not (self.policies or self.knowledge_packs or self.templates or self.prior_decisions)


def _lower(value: Any) -> str:
    return str(value).lower() if value else ""


def _tags(item: Mapping[str, Any]) -> List[str]:
    return [_lower(tag) for tag in item.get("tags") or [] if tag]


class AnchorRetriever:
    """Matches anchors to a course by domain, tags, and title keywords."""

    def __init__(
        self,
        *,
        policies: AnchorRepository | None = None,
        knowledge_packs: AnchorRepository | None = None,
        templates: AnchorRepository | None = None,
    ) -> None:
        self.policies = policies or InMemoryAnchorRepository("policy")
        self.knowledge_packs = knowledge_packs or InMemoryAnchorRepository("knowledge_pack")
        self.templates = templates or InMemoryAnchorRepository("template")

    def retrieve_anchors(
        self,
        *,
        course_title: str | None = None,
        domain: str | None = None,
        level: str | None = None,
        target_audience: str | None = None,
    ) -> RetrievedAnchors:
        domain_l = _lower(domain)
        title_l = _lower(course_title)

        policies: List[Dict[str, Any]] = []
        if domain_l:
            policies = [
                policy
                for policy in self.policies.list()
                if domain_l in _lower(policy.get("domain")) or any(domain_l in tag for tag in _tags(policy))
            ]

        # a pack matches on its own domain, or when one of its tags appears in the course title
        packs = [
            pack
            for pack in self.knowledge_packs.list()
            if (domain_l and domain_l in _lower(pack.get("domain")))
            or (title_l and any(tag in title_l for tag in _tags(pack)))
        ]

        templates = [
            template
            for template in self.templates.list()
            if template.get("type") == "course" or (domain_l and any(tag in domain_l for tag in _tags(template)))
        ]

        LOGGER.debug(
            "Retrieved %s policies, %s packs, %s templates for domain=%r level=%r audience=%r",
            len(policies),
            len(packs),
            len(templates),
            domain,
            level,
            target_audience,
        )
        return RetrievedAnchors(policies=policies, knowledge_packs=packs, templates=templates)

    def search_knowledge_packs(self, query: str | None = None, *, limit: int = 10, domain: str | None = None) -> List[Dict[str, Any]]:
        results = self.knowledge_packs.list()
        if query:
            query_l = query.lower()
            results = [
                pack
                for pack in results
                if query_l in _lower(pack.get("name"))
                or query_l in _lower(pack.get("description"))
                or query_l in _lower(pack.get("content"))
            ]
        if domain:
            results = [pack for pack in results if pack.get("domain") == domain]
        return results[:limit]

    def get_template(self, template_id: str) -> Optional[Dict[str, Any]]:
        return self.templates.get(template_id)


__all__ = [
    "AnchorRepository",
    "AnchorRetriever",
    "InMemoryAnchorRepository",
    "RetrievedAnchors",
]
