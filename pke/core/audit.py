"""Append-only JSONL audit log for invocation attempts and course transitions."""

from __future__ import annotations

import logging
import threading
import uuid
from collections import Counter, defaultdict
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

LOGGER = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 90


class AuditAction(str, Enum):
    COURSE_CREATED = "COURSE_CREATED"
    COURSE_UPDATED = "COURSE_UPDATED"
    COURSE_DELETED = "COURSE_DELETED"
    INVOCATION_STARTED = "INVOCATION_STARTED"
    INVOCATION_COMPLETED = "INVOCATION_COMPLETED"
    INVOCATION_FAILED = "INVOCATION_FAILED"
    CONTENT_ACCEPTED = "CONTENT_ACCEPTED"
    CONTENT_REVISED = "CONTENT_REVISED"
    GATE_PASSED = "GATE_PASSED"
    EXPORT_GENERATED = "EXPORT_GENERATED"
    USER_LOGIN = "USER_LOGIN"
    USER_LOGOUT = "USER_LOGOUT"
    ADMIN_ACTION = "ADMIN_ACTION"


class InvocationDetails(BaseModel):
    model_config = ConfigDict(frozen=True)

    number: Optional[int] = None
    input: Any = None
    output: Any = None
    evidence_grade: Optional[str] = None
    duration_ms: Optional[int] = None


class LLMDetails(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: Optional[str] = None
    model: Optional[str] = None
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None


class AuditRecord(BaseModel):
    """Immutable audit entry; written once, never updated."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"audit_{uuid.uuid4().hex[:16]}")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    action: AuditAction
    user_id: Optional[str] = None
    course_id: Optional[str] = None
    course_title: Optional[str] = None
    invocation: Optional[InvocationDetails] = None
    llm_details: Optional[LLMDetails] = None
    success: bool = True
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AuditLogger:
    """Append-only JSONL sink with read-side retention filtering."""

    def __init__(self, output_path: Path, *, retention_days: int = DEFAULT_RETENTION_DAYS):
        self.output_path = output_path
        self.retention_days = retention_days
        self.output_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def log(self, record: AuditRecord | Dict[str, Any]) -> AuditRecord:
        """Write a single record to disk and return the normalized object."""
        if not isinstance(record, AuditRecord):
            record = AuditRecord(**record)
        line = record.model_dump_json()
        with self._lock, self.output_path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")
        return record

    def extend(self, records: Iterable[AuditRecord | Dict[str, Any]]) -> None:
        """Batch-write multiple records."""
        for record in records:
            self.log(record)

    # ------------------------------------------------------------------

    def iter_records(self, *, include_expired: bool = False) -> Iterator[AuditRecord]:
        if not self.output_path.exists():
            return
        cutoff = self._cutoff()
        with self.output_path.open("r", encoding="utf-8") as handle:
            for lineno, line in enumerate(handle, start=1):
                if not line.strip():
                    continue
                try:
                    record = AuditRecord.model_validate_json(line)
                except ValidationError as exc:
                    LOGGER.warning("Skipping malformed audit line %s in %s: %s", lineno, self.output_path, exc)
                    continue
                if not include_expired and record.timestamp < cutoff:
                    continue
                yield record

    def query(
        self,
        *,
        action: AuditAction | str | None = None,
        user_id: str | None = None,
        course_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Dict[str, Any]:
        """Return newest-first records matching the filters plus pagination info."""
        wanted = AuditAction(action) if action else None
        matches: List[AuditRecord] = []
        for record in self.iter_records():
            if wanted and record.action is not wanted:
                continue
            if user_id and record.user_id != user_id:
                continue
            if course_id and record.course_id != course_id:
                continue
            if start and record.timestamp < start:
                continue
            if end and record.timestamp > end:
                continue
            matches.append(record)
        matches.reverse()
        total = len(matches)
        page = matches[offset : offset + limit] if limit else matches[offset:]
        return {"records": page, "total": total, "limit": limit, "offset": offset}

    def summarize(self, *, since: datetime | None = None) -> Dict[str, Any]:
        """Invocation counts, mean durations, and grade distribution for completed runs."""
        counts: Counter[int] = Counter()
        durations: Dict[int, List[int]] = defaultdict(list)
        grades: Counter[str] = Counter()
        failures = 0
        for record in self.iter_records():
            if since and record.timestamp < since:
                continue
            if record.action is AuditAction.INVOCATION_FAILED:
                failures += 1
                continue
            if record.action is not AuditAction.INVOCATION_COMPLETED or record.invocation is None:
                continue
            number = record.invocation.number or 0
            counts[number] += 1
            if record.invocation.duration_ms is not None:
                durations[number].append(record.invocation.duration_ms)
            if record.invocation.evidence_grade:
                grades[record.invocation.evidence_grade] += 1
        by_type = [
            {
                "invocation": number,
                "count": counts[number],
                "avg_duration_ms": round(sum(durations[number]) / len(durations[number]), 1) if durations[number] else None,
            }
            for number in sorted(counts)
        ]
        return {"by_type": by_type, "evidence_distribution": dict(grades), "failures": failures}

    def prune_expired(self, *, now: datetime | None = None) -> int:
        """Drop records older than the retention window; returns how many were removed."""
        if not self.output_path.exists():
            return 0
        cutoff = self._cutoff(now)
        with self._lock:
            lines = self.output_path.read_text(encoding="utf-8").splitlines()
            kept: List[str] = []
            removed = 0
            for line in lines:
                if not line.strip():
                    continue
                try:
                    record = AuditRecord.model_validate_json(line)
                except ValidationError:
                    kept.append(line)
                    continue
                if record.timestamp < cutoff:
                    removed += 1
                else:
                    kept.append(line)
            tmp_path = self.output_path.with_suffix(self.output_path.suffix + ".tmp")
            tmp_path.write_text("".join(line + "\n" for line in kept), encoding="utf-8")
            tmp_path.replace(self.output_path)
        if removed:
            LOGGER.info("Pruned %s audit records older than %s days", removed, self.retention_days)
        return removed

    def _cutoff(self, now: datetime | None = None) -> datetime:
        return (now or datetime.now(timezone.utc)) - timedelta(days=self.retention_days)


__all__ = [
    "AuditAction",
    "AuditLogger",
    "AuditRecord",
    "DEFAULT_RETENTION_DAYS",
    "InvocationDetails",
    "LLMDetails",
]
