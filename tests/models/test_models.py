"""Tests for the data models and error taxonomy."""

from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from toolexec.errors import (
    ErrorKind,
    InvalidWorkspaceTransition,
    SecurityRefused,
    ToolExecError,
)
from toolexec.models import (
    AuditEvent,
    AuditKind,
    CodeArtifact,
    Dialect,
    ExecutionResult,
    ParameterSpec,
    SandboxLimits,
    SandboxTier,
    ToolDescriptor,
    WorkspaceStatus,
    source_digest,
)


class TestArtifact:
    def test_digest_and_filename(self) -> None:
        artifact = CodeArtifact(dialect=Dialect.TYPESCRIPT, source="console.log(1);\n")
        assert artifact.digest == source_digest("console.log(1);\n")
        assert len(artifact.digest) == 64
        assert artifact.filename == "artifact.ts"

    def test_artifact_is_frozen(self) -> None:
        artifact = CodeArtifact(dialect=Dialect.PYTHON, source="x = 1\n")
        with pytest.raises(ValidationError):
            artifact.source = "x = 2\n"


class TestExecutionModels:
    def test_tier_strength_order(self) -> None:
        strengths = [tier.strength for tier in SandboxTier]
        assert strengths == sorted(strengths)
        assert SandboxTier.CONTAINER.strength > SandboxTier.VM.strength > SandboxTier.PROCESS.strength

    def test_limits(self) -> None:
        limits = SandboxLimits(wall_ms=1500)
        assert limits.timeout_seconds == 1.5
        with pytest.raises(ValidationError):
            SandboxLimits(wall_ms=0)
        with pytest.raises(ValidationError):
            SandboxLimits(memory_bytes=1024)

    def test_result_defaults(self) -> None:
        result = ExecutionResult(success=False, error="timeout")
        assert result.cached is False
        assert result.pii_redacted is False
        assert result.metrics.wall_ms == 0.0
        assert result.metadata == {}


class TestToolDescriptor:
    def test_required_parameters(self) -> None:
        descriptor = ToolDescriptor(
            name="t",
            parameters=(
                ParameterSpec(name="a"),
                ParameterSpec(name="b", required=False),
            ),
        )
        assert [p.name for p in descriptor.required_parameters] == ["a"]

    def test_descriptor_is_frozen(self) -> None:
        descriptor = ToolDescriptor(name="t")
        with pytest.raises(ValidationError):
            descriptor.name = "u"


class TestWorkspaceAndAudit:
    def test_terminal_statuses(self) -> None:
        assert [s for s in WorkspaceStatus if s.is_terminal] == [
            WorkspaceStatus.COMPLETED,
            WorkspaceStatus.FAILED,
        ]

    def test_audit_event_serializes(self) -> None:
        event = AuditEvent(sequence=1, kind=AuditKind.EXECUTION, payload={"execution_id": "exec-1"})
        data = json.loads(event.model_dump_json())
        assert data["kind"] == "execution"
        assert data["timestamp"] == event.timestamp.isoformat()
        assert event.execution_id == "exec-1"

    def test_audit_sequence_starts_at_one(self) -> None:
        with pytest.raises(ValidationError):
            AuditEvent(sequence=0, kind=AuditKind.ERROR)


class TestErrors:
    def test_to_dict(self) -> None:
        error = SecurityRefused("refused", {"risk_score": 100})
        assert isinstance(error, ToolExecError)
        assert error.to_dict() == {"kind": "security_refused", "message": "refused", "risk_score": 100}

    def test_specialized_details(self) -> None:
        transition = InvalidWorkspaceTransition("ws-1", "completed", "running")

        assert transition.kind is ErrorKind.WORKSPACE
        assert "completed -> running" in str(transition)
