import json
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from pke.core.audit import AuditAction, AuditLogger, AuditRecord, InvocationDetails


class AuditLoggerTests(unittest.TestCase):
    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.path = Path(tmp.name) / "logs" / "audit.jsonl"
        self.logger = AuditLogger(self.path, retention_days=30)

    def _completed(self, number: int, grade: str, duration: int, **kwargs) -> AuditRecord:
        return AuditRecord(
            action=AuditAction.INVOCATION_COMPLETED,
            invocation=InvocationDetails(number=number, evidence_grade=grade, duration_ms=duration),
            **kwargs,
        )

    def test_log_appends_json_lines(self) -> None:
        record = self.logger.log({"action": "GATE_PASSED", "user_id": "u1", "course_id": "c1"})
        self.assertIsInstance(record, AuditRecord)
        self.assertTrue(record.id.startswith("audit_"))

        lines = self.path.read_text(encoding="utf-8").splitlines()
        self.assertEqual(len(lines), 1)
        payload = json.loads(lines[0])
        self.assertEqual(payload["action"], "GATE_PASSED")
        self.assertTrue(payload["success"])

    def test_records_are_immutable(self) -> None:
        record = self.logger.log(AuditRecord(action=AuditAction.CONTENT_ACCEPTED))
        with self.assertRaises(Exception):
            record.user_id = "someone-else"  # type: ignore[misc]

    def test_query_filters_and_paginates_newest_first(self) -> None:
        self.logger.extend(
            [
                AuditRecord(action=AuditAction.INVOCATION_COMPLETED, user_id="u1", course_id="c1"),
                AuditRecord(action=AuditAction.CONTENT_ACCEPTED, user_id="u1", course_id="c1"),
                AuditRecord(action=AuditAction.CONTENT_ACCEPTED, user_id="u2", course_id="c2"),
            ]
        )
        accepted = self.logger.query(action="CONTENT_ACCEPTED")
        self.assertEqual(accepted["total"], 2)
        self.assertEqual([record.user_id for record in accepted["records"]], ["u2", "u1"])

        self.assertEqual(self.logger.query(user_id="u1")["total"], 2)
        self.assertEqual(self.logger.query(course_id="c2")["total"], 1)

        page = self.logger.query(limit=1, offset=1)
        self.assertEqual(page["total"], 3)
        self.assertEqual(len(page["records"]), 1)
        self.assertEqual(page["records"][0].action, AuditAction.CONTENT_ACCEPTED)
        self.assertEqual(page["records"][0].user_id, "u1")

    def test_query_date_window(self) -> None:
        now = datetime.now(timezone.utc)
        self.logger.log(AuditRecord(action=AuditAction.GATE_PASSED, timestamp=now - timedelta(days=2)))
        self.logger.log(AuditRecord(action=AuditAction.GATE_PASSED, timestamp=now))
        self.assertEqual(self.logger.query(start=now - timedelta(days=1))["total"], 1)
        self.assertEqual(self.logger.query(end=now - timedelta(days=1))["total"], 1)

    def test_expired_records_are_hidden_then_pruned(self) -> None:
        now = datetime.now(timezone.utc)
        self.logger.log(AuditRecord(action=AuditAction.GATE_PASSED, timestamp=now - timedelta(days=45)))
        self.logger.log(AuditRecord(action=AuditAction.GATE_PASSED, timestamp=now))

        self.assertEqual(self.logger.query()["total"], 1)
        self.assertEqual(len(list(self.logger.iter_records(include_expired=True))), 2)

        self.assertEqual(self.logger.prune_expired(), 1)
        self.assertEqual(len(self.path.read_text(encoding="utf-8").splitlines()), 1)
        self.assertEqual(self.logger.prune_expired(), 0)

    def test_malformed_lines_are_skipped(self) -> None:
        self.logger.log(AuditRecord(action=AuditAction.GATE_PASSED))
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write("{not json}\n\n")
        self.logger.log(AuditRecord(action=AuditAction.ADMIN_ACTION))
        with self.assertLogs("pke.core.audit", level="WARNING"):
            records = list(self.logger.iter_records())
        self.assertEqual([record.action for record in records], [AuditAction.GATE_PASSED, AuditAction.ADMIN_ACTION])

    def test_summarize_counts_completed_invocations(self) -> None:
        self.logger.extend(
            [
                self._completed(1, "D", 100),
                self._completed(1, "B", 300),
                self._completed(3, "A", 50),
                AuditRecord(action=AuditAction.INVOCATION_FAILED, success=False),
            ]
        )
        summary = self.logger.summarize()
        self.assertEqual(
            summary["by_type"],
            [
                {"invocation": 1, "count": 2, "avg_duration_ms": 200.0},
                {"invocation": 3, "count": 1, "avg_duration_ms": 50.0},
            ],
        )
        self.assertEqual(summary["evidence_distribution"], {"D": 1, "B": 1, "A": 1})
        self.assertEqual(summary["failures"], 1)

    def test_missing_file_reads_as_empty(self) -> None:
        logger = AuditLogger(self.path.parent / "other.jsonl")
        self.assertEqual(logger.query()["total"], 0)
        self.assertEqual(logger.prune_expired(), 0)


if __name__ == "__main__":
    unittest.main()
