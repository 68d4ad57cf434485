"""Data models for the tool execution engine."""

from .artifact import CodeArtifact, Dialect, source_digest
from .audit import (
    Anomaly,
    AnomalyReport,
    AnomalyType,
    AuditEvent,
    AuditKind,
    AuditSeverity,
    ComplianceCheck,
    ComplianceReport,
)
from .execution import (
    ExecutionMetrics,
    ExecutionResult,
    NetworkMode,
    NetworkPolicy,
    SandboxLimits,
    SandboxTier,
)
from .security import (
    SEVERITY_WEIGHTS,
    ApprovalRequest,
    ApprovalStatus,
    IssueKind,
    RiskAssessment,
    RiskFactor,
    RiskLevel,
    SecurityIssue,
    Severity,
    ValidationReport,
)
from .tool import (
    DescriptorIssue,
    DiscoveryResult,
    ParameterSpec,
    ParameterType,
    ReturnSpec,
    ToolDescriptor,
    ToolExample,
)
from .workspace import CacheEntry, Workspace, WorkspaceStatus

__all__ = [
    "Anomaly",
    "AnomalyReport",
    "AnomalyType",
    "ApprovalRequest",
    "ApprovalStatus",
    "AuditEvent",
    "AuditKind",
    "AuditSeverity",
    "CacheEntry",
    "CodeArtifact",
    "ComplianceCheck",
    "ComplianceReport",
    "DescriptorIssue",
    "Dialect",
    "DiscoveryResult",
    "ExecutionMetrics",
    "ExecutionResult",
    "IssueKind",
    "NetworkMode",
    "NetworkPolicy",
    "ParameterSpec",
    "ParameterType",
    "ReturnSpec",
    "RiskAssessment",
    "RiskFactor",
    "RiskLevel",
    "SEVERITY_WEIGHTS",
    "SandboxLimits",
    "SandboxTier",
    "SecurityIssue",
    "Severity",
    "ToolDescriptor",
    "ToolExample",
    "ValidationReport",
    "Workspace",
    "WorkspaceStatus",
    "source_digest",
]
