"""Static validation, risk assessment and approval models."""

from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field, field_serializer


class Severity(str, Enum):
    """Severity of a static-validation finding."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def weight(self) -> int:
        return SEVERITY_WEIGHTS[self]


SEVERITY_WEIGHTS: dict[Severity, int] = {
    Severity.LOW: 10,
    Severity.MEDIUM: 25,
    Severity.HIGH: 50,
    Severity.CRITICAL: 100,
}


class IssueKind(str, Enum):
    """Class of forbidden construct."""

    DYNAMIC_EVALUATION = "dynamic_evaluation"
    DYNAMIC_IMPORT = "dynamic_import"
    PROCESS_SPAWN = "process_spawn"
    FILESYSTEM_MUTATION = "filesystem_mutation"
    NETWORK_EGRESS = "network_egress"
    OBJECT_GRAPH_MUTATION = "object_graph_mutation"
    ENVIRONMENT_ACCESS = "environment_access"
    UNBOUNDED_LOOP = "unbounded_loop"
    UNSAFE_DESERIALIZATION = "unsafe_deserialization"


class SecurityIssue(BaseModel):
    """Single forbidden construct found in an artifact."""

    kind: IssueKind
    severity: Severity
    description: str
    line: int | None = Field(default=None, ge=1, description="1-based source line")
    suggestion: str = ""


class ValidationReport(BaseModel):
    """Outcome of static validation."""

    secure: bool = Field(description="No approval needed and not refused")
    risk_score: int = Field(ge=0, le=100, description="Capped sum of severity weights")
    issues: list[SecurityIssue] = Field(default_factory=list)
    requires_approval: bool = False
    refused: bool = False

    @property
    def max_severity(self) -> Severity | None:
        if not self.issues:
            return None
        return max((i.severity for i in self.issues), key=lambda s: s.weight)


class RiskLevel(str, Enum):
    """Overall risk level used to pick a sandbox tier."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RiskFactor(BaseModel):
    """Weighted contribution to an overall risk score."""

    name: str
    score: float = Field(ge=0.0, le=100.0)
    weight: float = Field(ge=0.0, le=1.0)
    description: str = ""


class RiskAssessment(BaseModel):
    """Risk assessment of an artifact."""

    level: RiskLevel
    score: float = Field(ge=0.0, le=100.0)
    factors: list[RiskFactor] = Field(default_factory=list)
    requires_approval: bool = False
    recommendation: str = ""


class ApprovalStatus(str, Enum):
    """Lifecycle of an approval request."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ApprovalRequest(BaseModel):
    """Request for a human or policy decision on a risky artifact."""

    id: str = Field(default_factory=lambda: f"approval-{uuid4().hex[:12]}")
    digest: str = Field(description="Digest of the artifact under review")
    execution_id: str | None = None
    assessment: RiskAssessment
    report: ValidationReport
    status: ApprovalStatus = ApprovalStatus.PENDING
    requested_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    decided_at: datetime | None = None
    decided_by: str | None = None
    reason: str | None = None

    @field_serializer("requested_at", "decided_at")
    def serialize_timestamps(self, value: datetime | None) -> str | None:
        return value.isoformat() if value else None
