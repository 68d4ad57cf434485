"""Audit, anomaly and compliance models."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_serializer


class AuditKind(str, Enum):
    """Kinds of audit events."""

    EXECUTION = "execution"
    SECURITY = "security"
    ERROR = "error"
    ANOMALY = "anomaly"


class AuditSeverity(str, Enum):
    """Severity of audit events."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """Append-only audit record."""

    model_config = ConfigDict(frozen=True)

    sequence: int = Field(ge=1, description="Monotone position in the log")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    kind: AuditKind
    severity: AuditSeverity = AuditSeverity.INFO
    payload: dict[str, Any] = Field(default_factory=dict)

    @field_serializer("timestamp")
    def serialize_timestamp(self, value: datetime) -> str:
        return value.isoformat()

    @property
    def execution_id(self) -> str | None:
        return self.payload.get("execution_id")


class AnomalyType(str, Enum):
    """Kinds of anomaly the detector reports."""

    RESOURCE_SPIKE = "resource_spike"
    UNUSUAL_TIMING = "unusual_timing"
    REPEATED_FAILURE = "repeated_failure"
    SUSPICIOUS_PATTERN = "suspicious_pattern"


class Anomaly(BaseModel):
    """Single detected anomaly."""

    type: AnomalyType
    severity: AuditSeverity
    description: str
    evidence: dict[str, Any] = Field(default_factory=dict)


class AnomalyReport(BaseModel):
    """Anomalies found for one execution."""

    detected: bool = False
    anomalies: list[Anomaly] = Field(default_factory=list)
    level: AuditSeverity = AuditSeverity.INFO


class ComplianceCheck(BaseModel):
    """Result of one compliance control."""

    name: str
    passed: bool
    detail: str = ""


class ComplianceReport(BaseModel):
    """Compliance summary built from the audit log."""

    period_start: datetime
    period_end: datetime
    generated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    metrics: dict[str, int] = Field(default_factory=dict)
    standards: dict[str, list[ComplianceCheck]] = Field(default_factory=dict)

    @field_serializer("period_start", "period_end", "generated_at")
    def serialize_timestamps(self, value: datetime) -> str:
        return value.isoformat()

    @property
    def compliant(self) -> bool:
        return all(check.passed for checks in self.standards.values() for check in checks)
