"""Append-only audit log for executions, security decisions and anomalies."""

import json
import threading
from collections import deque
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import structlog

from ..models.audit import AuditEvent, AuditKind, AuditSeverity

logger = structlog.get_logger()


class AuditLogger:
    """
    Totally ordered audit trail.

    Every event gets the next sequence number under a single writer lock, is
    kept in a bounded in-memory buffer and, when a log path is configured,
    appended to a JSONL file in the same critical section so file order
    matches sequence order.
    """

    def __init__(self, log_path: Path | None = None, max_events_in_memory: int = 10000) -> None:
        """
        Initialize audit logger.

        Args:
            log_path: Optional JSONL file events are appended to
            max_events_in_memory: Maximum events kept in memory
        """
        self._log_path = Path(log_path) if log_path else None
        self._buffer: deque[AuditEvent] = deque(maxlen=max_events_in_memory)
        self._lock = threading.Lock()
        self._sequence = 0
        self._write_failures = 0

        if self._log_path is not None:
            self._log_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def log_path(self) -> Path | None:
        return self._log_path

    @property
    def last_sequence(self) -> int:
        return self._sequence

    def append(
        self,
        kind: AuditKind,
        severity: AuditSeverity = AuditSeverity.INFO,
        payload: dict[str, Any] | None = None,
    ) -> AuditEvent:
        """
        Record an event.

        Args:
            kind: Event kind
            severity: Event severity
            payload: Free-form context, typically including `execution_id`

        Returns:
            Stored event with its sequence number
        """
        with self._lock:
            self._sequence += 1
            event = AuditEvent(
                sequence=self._sequence,
                kind=kind,
                severity=severity,
                payload=dict(payload or {}),
            )
            self._buffer.append(event)
            if self._log_path is not None:
                self._write(event)

        if severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
            logger.warning(
                "audit_event",
                kind=kind.value,
                severity=severity.value,
                sequence=event.sequence,
                execution_id=event.execution_id,
            )
        return event

    async def log_event(
        self,
        kind: AuditKind,
        severity: AuditSeverity = AuditSeverity.INFO,
        payload: dict[str, Any] | None = None,
    ) -> AuditEvent:
        return self.append(kind, severity, payload)

    def _write(self, event: AuditEvent) -> None:
        try:
            with open(self._log_path, "a", encoding="utf-8") as f:
                f.write(event.model_dump_json() + "\n")
        except OSError as e:
            self._write_failures += 1
            logger.error("audit_log_file_write_failed", log_file=str(self._log_path), error=str(e))

    def log_execution(self, execution_id: str, **payload: Any) -> AuditEvent:
        return self.append(AuditKind.EXECUTION, AuditSeverity.INFO, {"execution_id": execution_id, **payload})

    def log_security(
        self,
        execution_id: str,
        severity: AuditSeverity = AuditSeverity.WARNING,
        **payload: Any,
    ) -> AuditEvent:
        return self.append(AuditKind.SECURITY, severity, {"execution_id": execution_id, **payload})

    def log_error(self, execution_id: str, error: str, **payload: Any) -> AuditEvent:
        return self.append(
            AuditKind.ERROR,
            AuditSeverity.ERROR,
            {"execution_id": execution_id, "error": error, **payload},
        )

    def log_anomaly(
        self,
        execution_id: str,
        severity: AuditSeverity = AuditSeverity.WARNING,
        **payload: Any,
    ) -> AuditEvent:
        return self.append(AuditKind.ANOMALY, severity, {"execution_id": execution_id, **payload})

    def recent(self, n: int = 100, kind: AuditKind | None = None) -> list[AuditEvent]:
        """Most recent events, oldest first."""
        with self._lock:
            events = list(self._buffer)
        if kind is not None:
            events = [e for e in events if e.kind is kind]
        return events[-n:] if n > 0 else []

    def query_logs(
        self,
        kind: AuditKind | None = None,
        severity: AuditSeverity | None = None,
        execution_id: str | None = None,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Query buffered events with filters.

        Args:
            kind: Filter by event kind
            severity: Filter by severity
            execution_id: Filter by execution
            start_time: Filter events at or after this time
            end_time: Filter events at or before this time
            limit: Maximum number of events to return

        Returns:
            Matching events, newest first
        """
        with self._lock:
            events = list(self._buffer)

        results: list[AuditEvent] = []
        for event in reversed(events):
            if len(results) >= limit:
                break
            if kind and event.kind is not kind:
                continue
            if severity and event.severity is not severity:
                continue
            if execution_id and event.execution_id != execution_id:
                continue
            if start_time and event.timestamp < start_time:
                continue
            if end_time and event.timestamp > end_time:
                continue
            results.append(event)
        return results

    def get_stats(self, hours: int = 24) -> dict[str, Any]:
        cutoff = datetime.now(UTC) - timedelta(hours=hours)
        events = self.query_logs(start_time=cutoff, limit=len(self._buffer) or 1)

        stats: dict[str, Any] = {
            "total_events": len(events),
            "by_kind": {kind.value: 0 for kind in AuditKind},
            "by_severity": {severity.value: 0 for severity in AuditSeverity},
            "last_sequence": self._sequence,
            "write_failures": self._write_failures,
            "period_hours": hours,
        }
        for event in events:
            stats["by_kind"][event.kind.value] += 1
            stats["by_severity"][event.severity.value] += 1
        return stats

    def read_log_file(self) -> list[AuditEvent]:
        """Read every event back from the JSONL file; unparsable lines are skipped."""
        if self._log_path is None or not self._log_path.exists():
            return []

        events: list[AuditEvent] = []
        with open(self._log_path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    events.append(AuditEvent(**json.loads(line)))
                except (ValueError, TypeError) as e:
                    logger.error("audit_log_parse_failed", line=line[:100], error=str(e))
        return events

    def __len__(self) -> int:
        return len(self._buffer)
