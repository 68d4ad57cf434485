"""
Compliance reporting

Builds GDPR, SOC 2 and HIPAA summaries from the audit trail.
"""

from datetime import UTC, datetime
from typing import Any

import structlog

from ..models.audit import AuditEvent, AuditKind, AuditSeverity, ComplianceCheck, ComplianceReport
from .audit_logger import AuditLogger

logger = structlog.get_logger()


class ComplianceReporter:
    """Derives compliance metrics and checks from audit events."""

    def __init__(self, audit_logger: AuditLogger) -> None:
        self._audit = audit_logger

    def generate(self, start: datetime, end: datetime | None = None) -> ComplianceReport:
        """
        Generate a report for a period.

        Args:
            start: Period start (inclusive)
            end: Period end (inclusive), defaults to now

        Returns:
            Compliance report
        """
        end = end or datetime.now(UTC)
        events = self._audit.query_logs(start_time=start, end_time=end, limit=len(self._audit) or 1)
        events.reverse()

        metrics = self.calculate_metrics(events)
        report = ComplianceReport(
            period_start=start,
            period_end=end,
            metrics=metrics,
            standards={
                "gdpr": self._gdpr(events, metrics),
                "soc2": self._soc2(events, metrics),
                "hipaa": self._hipaa(events, metrics),
            },
        )
        logger.info(
            "compliance_report_generated",
            events=len(events),
            compliant=report.compliant,
        )
        return report

    @staticmethod
    def calculate_metrics(events: list[AuditEvent]) -> dict[str, int]:
        executions = [e for e in events if e.kind is AuditKind.EXECUTION]
        security = [e for e in events if e.kind is AuditKind.SECURITY]
        return {
            "executions": len(executions),
            "security_incidents": sum(
                1
                for e in security
                if e.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL)
            ),
            "pii_executions": sum(1 for e in executions if e.payload.get("pii_redacted")),
            "refusals": sum(1 for e in security if e.payload.get("outcome") == "refused"),
            "anomalies": sum(1 for e in events if e.kind is AuditKind.ANOMALY),
            "critical_anomalies": sum(
                1 for e in events if e.kind is AuditKind.ANOMALY and e.severity is AuditSeverity.CRITICAL
            ),
            "errors": sum(1 for e in events if e.kind is AuditKind.ERROR),
        }

    @staticmethod
    def _redaction_check(events: list[AuditEvent]) -> ComplianceCheck:
        finished = [
            e for e in events if e.kind is AuditKind.EXECUTION and e.payload.get("executed") is True
        ]
        unredacted = [e for e in finished if e.payload.get("redacted") is not True]
        return ComplianceCheck(
            name="pii_tokenized",
            passed=not unredacted,
            detail=f"{len(finished) - len(unredacted)}/{len(finished)} executed results passed redaction",
        )

    @staticmethod
    def _audit_trail_check(events: list[AuditEvent]) -> ComplianceCheck:
        return ComplianceCheck(
            name="audit_trail",
            passed=bool(events),
            detail=f"{len(events)} audit events in period",
        )

    def _gdpr(self, events: list[AuditEvent], metrics: dict[str, Any]) -> list[ComplianceCheck]:
        # Refused artifacts never ran, so they are not counted as incidents
        incidents = metrics["security_incidents"] - metrics["refusals"]
        return [
            self._redaction_check(events),
            self._audit_trail_check(events),
            ComplianceCheck(
                name="no_unauthorized_access",
                passed=incidents <= 0,
                detail=f"{max(incidents, 0)} security incidents besides refusals",
            ),
        ]

    def _soc2(self, events: list[AuditEvent], metrics: dict[str, Any]) -> list[ComplianceCheck]:
        validations = sum(
            1 for e in events if e.kind is AuditKind.SECURITY and e.payload.get("stage") == "validation"
        )
        escapes = sum(
            1
            for e in events
            if e.kind is AuditKind.ANOMALY
            and e.severity is AuditSeverity.CRITICAL
            and e.payload.get("executed") is True
        )
        return [
            ComplianceCheck(
                name="security_controls",
                passed=validations > 0,
                detail=f"{validations} artifacts statically validated",
            ),
            self._audit_trail_check(events),
            ComplianceCheck(
                name="no_sandbox_escapes",
                passed=escapes == 0,
                detail=f"{escapes} critical anomalies during sandboxed runs",
            ),
        ]

    def _hipaa(self, events: list[AuditEvent], metrics: dict[str, Any]) -> list[ComplianceCheck]:
        return self._gdpr(events, metrics)
