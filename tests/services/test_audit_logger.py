"""Tests for the audit logger."""

from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta

import pytest

from toolexec.models.audit import AuditKind, AuditSeverity
from toolexec.services.audit_logger import AuditLogger


@pytest.fixture
def audit(tmp_path) -> AuditLogger:
    return AuditLogger(log_path=tmp_path / "audit" / "audit.jsonl")


class TestAuditLogger:
    """Test ordering, persistence and queries."""

    def test_sequence_is_monotone(self, audit) -> None:
        first = audit.log_execution("exec-1", success=True)
        second = audit.log_security("exec-1", stage="validation", outcome="passed")
        third = audit.log_error("exec-2", "boom")

        assert [e.sequence for e in (first, second, third)] == [1, 2, 3]
        assert audit.last_sequence == 3
        assert len(audit) == 3
        assert third.payload == {"execution_id": "exec-2", "error": "boom"}
        assert third.severity is AuditSeverity.ERROR

    def test_file_matches_buffer(self, audit) -> None:
        audit.log_execution("exec-1", success=True, tools=["echo"])
        audit.log_anomaly("exec-1", severity=AuditSeverity.CRITICAL, type="suspicious_pattern")

        assert audit.log_path.exists()
        assert audit.read_log_file() == audit.recent()

    def test_concurrent_appends_are_totally_ordered(self, audit) -> None:
        def worker(n: int) -> None:
            for i in range(25):
                audit.log_execution(f"exec-{n}-{i}")

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        from_file = [e.sequence for e in audit.read_log_file()]
        assert from_file == list(range(1, 101))
        assert [e.sequence for e in audit.recent(200)] == from_file

    def test_buffer_is_bounded(self) -> None:
        audit = AuditLogger(max_events_in_memory=3)
        for i in range(5):
            audit.log_execution(f"exec-{i}")

        assert len(audit) == 3
        assert [e.sequence for e in audit.recent()] == [3, 4, 5]
        assert audit.last_sequence == 5

    def test_recent_by_kind(self, audit) -> None:
        audit.log_execution("a")
        audit.log_error("a", "x")
        audit.log_execution("b")

        assert [e.execution_id for e in audit.recent(kind=AuditKind.EXECUTION)] == ["a", "b"]
        assert [e.execution_id for e in audit.recent(1)] == ["b"]
        assert audit.recent(0) == []

    def test_query_logs(self, audit) -> None:
        audit.log_execution("a")
        audit.log_security("a", severity=AuditSeverity.CRITICAL, outcome="refused")
        audit.log_execution("b")
        audit.log_security("b", severity=AuditSeverity.INFO, outcome="passed")

        newest_first = audit.query_logs()
        assert [e.sequence for e in newest_first] == [4, 3, 2, 1]
        assert [e.sequence for e in audit.query_logs(kind=AuditKind.SECURITY)] == [4, 2]
        assert [e.sequence for e in audit.query_logs(severity=AuditSeverity.CRITICAL)] == [2]
        assert [e.sequence for e in audit.query_logs(execution_id="b")] == [4, 3]
        assert len(audit.query_logs(limit=1)) == 1

        future = datetime.now(UTC) + timedelta(hours=1)
        assert audit.query_logs(start_time=future) == []
        assert audit.query_logs(end_time=datetime(2000, 1, 1, tzinfo=UTC)) == []

    async def test_log_event(self, audit) -> None:
        event = await audit.log_event(AuditKind.ANOMALY, AuditSeverity.WARNING, {"execution_id": "z"})
        assert event.execution_id == "z"
        assert event.kind is AuditKind.ANOMALY

    def test_stats(self, audit) -> None:
        audit.log_execution("a")
        audit.log_error("a", "x")

        stats = audit.get_stats()

        assert stats["total_events"] == 2
        assert stats["by_kind"]["execution"] == 1
        assert stats["by_kind"]["error"] == 1
        assert stats["by_severity"]["error"] == 1
        assert stats["last_sequence"] == 2
        assert stats["write_failures"] == 0

    def test_unparsable_lines_skipped(self, audit) -> None:
        audit.log_execution("a")
        with open(audit.log_path, "a", encoding="utf-8") as f:
            f.write("{not json\n\n")
        audit.log_execution("b")

        assert [e.execution_id for e in audit.read_log_file()] == ["a", "b"]

    def test_write_failure_is_counted(self, tmp_path) -> None:
        target = tmp_path / "directory"
        target.mkdir()
        audit = AuditLogger(log_path=target)

        event = audit.log_execution("a")

        assert event.sequence == 1
        assert audit.get_stats()["write_failures"] == 1

    def test_memory_only(self) -> None:
        audit = AuditLogger()
        audit.log_execution("a")
        assert audit.log_path is None
        assert audit.read_log_file() == []
