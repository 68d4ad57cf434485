"""
Execution orchestrator

Runs one invocation through discovery, synthesis, validation, cache lookup,
sandboxed execution, redaction and summarization, and records the outcome
in the audit trail. Every failure is converted into a failed
`ExecutionResult`; only asyncio task cancellation propagates.
"""

import asyncio
import threading
import time
import uuid
from collections.abc import Mapping
from enum import Enum
from typing import Any

import structlog

from ..config.logging_config import configure_logging
from ..config.settings import EngineSettings
from ..errors import (
    NoRelevantTools,
    SandboxUnavailable,
    SecurityRefused,
    TemplatesUnavailable,
    ToolExecError,
    WorkspaceNotFound,
)
from ..models.artifact import CodeArtifact, Dialect
from ..models.audit import AuditSeverity
from ..models.execution import ExecutionMetrics, ExecutionResult, SandboxLimits, SandboxTier
from ..models.security import ApprovalStatus, RiskAssessment, ValidationReport
from ..models.tool import ToolDescriptor
from ..models.workspace import WorkspaceStatus
from ..sandbox.container_reaper import ContainerReaper
from ..sandbox.sandbox_manager import SandboxManager
from .anomaly_detector import AnomalyDetector, ExecutionSample
from .approval_gate import ApprovalGate, Approver
from .audit_logger import AuditLogger
from .cache_manager import CacheManager
from .cleanup_manager import CleanupManager
from .code_synthesizer import CodeSynthesizer, estimate_tokens
from .code_validator import CodeValidator
from .compliance import ComplianceReporter
from .discovery import DiscoveryIndex
from .embedding_service import Embedder, create_embedder
from .pii_tokenizer import PIITokenizer
from .risk_assessor import RiskAssessor
from .summarizer import summarize_failure, summarize_output, truncate
from .tool_registry import IndexReport, ToolRegistry
from .workspace_manager import WorkspaceManager

logger = structlog.get_logger()

RECENT_EVENTS_WINDOW = 50

FAILURE_MESSAGES: dict[type[ToolExecError], tuple[str, str]] = {
    NoRelevantTools: ("no relevant tools", "No relevant tools found"),
    TemplatesUnavailable: ("templates unavailable", "Templates unavailable"),
    SecurityRefused: ("security: refused", "Security: execution refused"),
    SandboxUnavailable: ("sandbox unavailable", "Sandbox unavailable"),
}


class ExecutionState(str, Enum):
    """Stages of one invocation."""

    DISCOVERING = "discovering"
    SYNTHESIZING = "synthesizing"
    VALIDATING = "validating"
    CACHE_LOOKUP = "cache_lookup"
    EXECUTING = "executing"
    REDACTING = "redacting"
    SUMMARIZING = "summarizing"
    DONE = "done"


def new_execution_id() -> str:
    return f"exec-{uuid.uuid4().hex[:12]}"


class _Invocation:
    """Mutable per-call state threaded through the stages."""

    def __init__(self, execution_id: str, intent: str, dialect: Dialect) -> None:
        self.execution_id = execution_id
        self.intent = intent
        self.dialect = dialect
        self.state = ExecutionState.DISCOVERING
        self.started = time.perf_counter()
        self.tools: list[str] = []
        self.artifact: CodeArtifact | None = None
        self.report: ValidationReport | None = None
        self.assessment: RiskAssessment | None = None
        self.workspace_id: str | None = None
        self.cache_hit = False
        self.executed = False
        self.cancelled = False

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started) * 1000


class Orchestrator:
    """
    Owns every engine component and runs invocations end to end.

    Shared components are guarded by thread locks, so one orchestrator can
    serve concurrent invocations from tasks on one loop or from several
    threads each using `execute_sync`.
    """

    def __init__(
        self,
        settings: EngineSettings | None = None,
        *,
        registry: ToolRegistry | None = None,
        sandbox_manager: SandboxManager | None = None,
        approver: Approver | None = None,
        embedder: Embedder | None = None,
    ) -> None:
        """
        Initialize orchestrator.

        Args:
            settings: Engine settings; defaults are used when omitted
            registry: Pre-populated registry; indexed from the tool
                directory on `initialize` when omitted
            sandbox_manager: Sandbox tiers; built from settings when omitted
            approver: Async callback deciding approval requests
            embedder: Semantic backend for discovery
        """
        self.settings = settings or EngineSettings()
        self._logger = logger.bind(component="orchestrator")
        self._owns_registry = registry is None

        self.registry = registry or ToolRegistry()
        self.discovery = DiscoveryIndex(
            embedder=embedder
            or create_embedder(
                self.settings.embedder,
                self.settings.embedding_model,
                self.settings.embedding_dimensions,
            ),
            threshold=self.settings.discovery_threshold,
        )
        self.synthesizer = CodeSynthesizer(self.settings.template_dirs)
        self.validator = CodeValidator(
            network_allowlist=self.settings.network_allowlist,
            approval_threshold=self.settings.approval_threshold,
            refusal_threshold=self.settings.refusal_threshold,
            patterns_file=self.settings.validator_patterns_file,
        )
        self.risk_assessor = RiskAssessor()
        self.approval_gate = ApprovalGate(approver, default_policy=self.settings.approval_policy)
        self.cache = CacheManager(ttl_seconds=self.settings.cache_ttl_seconds)
        self.workspaces = WorkspaceManager(
            self.settings.workspace_base_dir,
            retain_files=self.settings.workspace_retain_files,
        )
        self.audit = AuditLogger(
            log_path=self.settings.audit_log_path,
            max_events_in_memory=self.settings.audit_max_events_in_memory,
        )
        self.anomaly_detector = AnomalyDetector(baseline_size=self.settings.anomaly_baseline_size)
        self.compliance = ComplianceReporter(self.audit)
        self.cleanup = CleanupManager(
            workspaces=self.workspaces,
            cache=self.cache,
            reaper=ContainerReaper(max_age_hours=self.settings.container_max_age_hours)
            if self.settings.container_enabled
            else None,
            retention_hours=self.settings.workspace_retention_hours,
        )
        self.sandbox_manager = sandbox_manager or SandboxManager.from_settings(
            self.settings, cleanup_manager=self.cleanup
        )
        self._initialized = False
        self._executions = 0
        self._counter_lock = threading.Lock()

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> IndexReport | None:
        """
        Index tools, build discovery and register process-wide cleanup.

        Returns:
            Indexing report, or None when an external registry was supplied
        """
        configure_logging(self.settings)
        report = None
        if self._owns_registry:
            report = self.registry.index_from(self.settings.tools_directory)
        self.discovery.build(self.registry)

        self.cleanup.register("workspaces", self.workspaces.force_cleanup)
        for tier in SandboxTier:
            adapter = self.sandbox_manager.adapter(tier)
            emergency = getattr(adapter, "emergency_cleanup", None)
            if callable(emergency):
                self.cleanup.register(f"sandbox:{tier.value}", emergency)

        if self.settings.install_signal_handlers:
            self.cleanup.install_signal_handlers()

        self._initialized = True
        self._logger.info(
            "orchestrator_initialized",
            tools=len(self.registry),
            tools_directory=str(self.settings.tools_directory),
        )
        return report

    def refresh_tools(self) -> IndexReport:
        """Re-index the tool directory and rebuild discovery."""
        report = self.registry.index_from(self.settings.tools_directory)
        self.discovery.rebuild(self.registry)
        return report

    def register_tool(self, descriptor: ToolDescriptor) -> None:
        self.registry.register(descriptor)
        self.discovery.rebuild(self.registry)

    async def start(self) -> None:
        """Start periodic maintenance on the running loop."""
        if not self._initialized:
            self.initialize()
        self.cleanup.start_auto_cleanup(self.settings.cleanup_interval_seconds)

    async def stop(self) -> None:
        await self.cleanup.stop_auto_cleanup()

    async def shutdown(self) -> None:
        """Stop maintenance, sweep resources and run every cleanup handler."""
        await self.stop()
        await self.cleanup.perform_cleanup()
        self.cleanup.run_handlers()
        self.cleanup.uninstall_signal_handlers()
        self._logger.info("orchestrator_shutdown", executions=self._executions)

    async def execute(
        self,
        intent: str,
        dialect: Dialect = Dialect.TYPESCRIPT,
        *,
        max_tools: int | None = None,
        limits: SandboxLimits | None = None,
        arguments: Mapping[str, Mapping[str, Any]] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ExecutionResult:
        """
        Run one invocation end to end.

        Args:
            intent: Natural-language request
            dialect: Language of the synthesized program
            max_tools: Cap on discovered tools, defaults to settings
            limits: Overrides the selected tier's default limits
            arguments: Explicit arguments per tool name
            cancel_event: Set to abort the sandboxed run

        Returns:
            Execution result; failures are reported, never raised

        Raises:
            asyncio.CancelledError: If the calling task is cancelled
        """
        with self._counter_lock:
            self._executions += 1
        call = _Invocation(new_execution_id(), intent, dialect)
        log = self._logger.bind(execution_id=call.execution_id)
        log.info("execution_started", dialect=dialect.value)

        try:
            result = await self._run(call, max_tools, limits, arguments, cancel_event)
        except asyncio.CancelledError:
            self._abandon(call)
            self.audit.log_error(call.execution_id, "cancelled", state=call.state.value)
            self.audit.log_execution(
                call.execution_id,
                outcome="cancelled",
                success=False,
                executed=call.executed,
            )
            log.warning("execution_cancelled", state=call.state.value)
            raise
        except ToolExecError as e:
            result = self._failure(call, e)
        except Exception as e:
            log.exception("execution_internal_error", state=call.state.value)
            result = self._failure(call, ToolExecError(f"internal error: {e}"))

        result = self._finish(call, result)
        log.info(
            "execution_finished",
            success=result.success,
            cached=result.cached,
            wall_ms=round(result.metrics.wall_ms, 2),
        )
        return result

    def execute_sync(self, intent: str, dialect: Dialect = Dialect.TYPESCRIPT, **kwargs: Any) -> ExecutionResult:
        """Run `execute` on a private event loop, for thread-based hosts."""
        return asyncio.run(self.execute(intent, dialect, **kwargs))

    async def _run(
        self,
        call: _Invocation,
        max_tools: int | None,
        limits: SandboxLimits | None,
        arguments: Mapping[str, Mapping[str, Any]] | None,
        cancel_event: asyncio.Event | None,
    ) -> ExecutionResult:
        if not self._initialized:
            self.initialize()

        call.state = ExecutionState.DISCOVERING
        matches = self.discovery.search(call.intent, limit=max_tools or self.settings.max_tools)
        if not matches:
            raise NoRelevantTools(
                "No tool scored above the relevance threshold",
                {"threshold": self.settings.discovery_threshold},
            )
        call.tools = [m.descriptor.name for m in matches]

        call.state = ExecutionState.SYNTHESIZING
        artifact = self.synthesizer.synthesize(
            [m.descriptor for m in matches],
            call.dialect,
            intent=call.intent,
            arguments=arguments,
        )
        call.artifact = artifact

        call.state = ExecutionState.VALIDATING
        await self._validate(call, artifact)

        call.state = ExecutionState.CACHE_LOOKUP
        cached = self.cache.get(artifact.digest)
        if cached is not None:
            call.cache_hit = True
            return cached.model_copy(
                update={
                    "cached": True,
                    "metadata": {**cached.metadata, "cache_hit": True, "source_execution_id": cached.execution_id},
                }
            )

        call.state = ExecutionState.EXECUTING
        return await self._execute_in_workspace(call, artifact, limits, cancel_event)

    async def _validate(self, call: _Invocation, artifact: CodeArtifact) -> None:
        report = self.validator.validate(artifact)
        assessment = self.risk_assessor.assess(artifact, report)
        call.report = report
        call.assessment = assessment

        if report.refused:
            severity = AuditSeverity.CRITICAL
            outcome = "refused"
        elif report.requires_approval:
            severity = AuditSeverity.WARNING
            outcome = "approval_required"
        else:
            severity = AuditSeverity.INFO
            outcome = "passed"
        self.audit.log_security(
            call.execution_id,
            severity,
            stage="validation",
            outcome=outcome,
            digest=artifact.digest,
            risk_score=report.risk_score,
            risk_level=assessment.level.value,
            issues=[issue.kind.value for issue in report.issues],
        )

        if report.refused:
            raise SecurityRefused(
                f"risk score {report.risk_score} with {len(report.issues)} issue(s)",
                {"issues": [issue.description for issue in report.issues]},
            )

        if report.requires_approval:
            request = self.approval_gate.request(artifact.digest, assessment, report, call.execution_id)
            decided = await self.approval_gate.resolve(request)
            self.audit.log_security(
                call.execution_id,
                AuditSeverity.INFO if decided.status is ApprovalStatus.APPROVED else AuditSeverity.ERROR,
                stage="approval",
                outcome=decided.status.value,
                request_id=decided.id,
                decided_by=decided.decided_by,
            )
            if decided.status is not ApprovalStatus.APPROVED:
                raise SecurityRefused(
                    f"approval {decided.status.value}: {decided.reason or 'no reason given'}",
                    {"request_id": decided.id},
                )

    async def _execute_in_workspace(
        self,
        call: _Invocation,
        artifact: CodeArtifact,
        limits: SandboxLimits | None,
        cancel_event: asyncio.Event | None,
    ) -> ExecutionResult:
        workspace = self.workspaces.create(artifact)
        call.workspace_id = workspace.id
        resource_id = f"workspace:{workspace.id}"
        self.cleanup.register(resource_id, lambda: self.workspaces.release_directory(workspace.id))
        self.workspaces.update_status(workspace.id, WorkspaceStatus.RUNNING)

        try:
            call.executed = True
            result = await self.sandbox_manager.execute(
                artifact,
                call.assessment.level,
                limits=limits,
                workspace_dir=workspace.directory,
                cancel_event=cancel_event,
            )
        except Exception:
            self.workspaces.update_status(workspace.id, WorkspaceStatus.FAILED)
            raise
        finally:
            self.cleanup.unregister(resource_id)

        call.cancelled = cancel_event is not None and cancel_event.is_set()
        status = WorkspaceStatus.COMPLETED if result.success else WorkspaceStatus.FAILED
        self.workspaces.update_status(workspace.id, status, result)
        return result

    def _abandon(self, call: _Invocation) -> None:
        if call.workspace_id is None:
            return
        try:
            workspace = self.workspaces.get(call.workspace_id)
        except WorkspaceNotFound:
            return
        if workspace.status is WorkspaceStatus.RUNNING:
            self.workspaces.update_status(call.workspace_id, WorkspaceStatus.FAILED)

    def _failure(self, call: _Invocation, error: ToolExecError) -> ExecutionResult:
        error_text, prefix = FAILURE_MESSAGES.get(type(error), (error.message, "Execution failed"))
        if not isinstance(error, (NoRelevantTools, SecurityRefused)):
            self.audit.log_error(
                call.execution_id,
                error.message,
                kind=error.kind.value,
                state=call.state.value,
            )
        return ExecutionResult(
            success=False,
            error=error_text,
            summary=summarize_failure(prefix, error.message, self.settings.summary_max_chars),
            metadata={"error_kind": error.kind.value, "state": call.state.value, **error.details},
        )

    def _redact(self, result: ExecutionResult) -> ExecutionResult:
        tokenizer = PIITokenizer()
        output, output_changed = tokenizer.tokenize_value(result.output)
        error, error_changed = tokenizer.tokenize(result.error) if result.error else (result.error, False)
        summary, summary_changed = tokenizer.tokenize(result.summary)
        metadata, metadata_changed = tokenizer.tokenize_value(result.metadata)
        redacted = output_changed or error_changed or summary_changed or metadata_changed
        return result.model_copy(
            update={
                "output": output,
                "error": error,
                "summary": summary,
                "metadata": metadata,
                "pii_redacted": result.pii_redacted or redacted,
            }
        )

    def _summarize(self, result: ExecutionResult) -> str:
        if result.success:
            return summarize_output(result.output, self.settings.summary_max_chars)
        return truncate(result.summary or result.error or "Execution failed", self.settings.summary_max_chars)

    def _finish(self, call: _Invocation, result: ExecutionResult) -> ExecutionResult:
        call.state = ExecutionState.REDACTING
        result = self._redact(result)

        call.state = ExecutionState.SUMMARIZING
        summary = self._summarize(result)
        # Sandbox time for real runs; end-to-end time for cache hits and early failures
        wall_ms = result.metrics.wall_ms if call.executed else call.elapsed_ms
        result = result.model_copy(
            update={
                "summary": summary,
                "execution_id": call.execution_id,
                "risk_level": call.assessment.level if call.assessment else None,
                "metrics": ExecutionMetrics(
                    wall_ms=wall_ms,
                    memory_bytes=result.metrics.memory_bytes,
                    tokens_in_summary=estimate_tokens(summary),
                ),
            }
        )

        if result.success and call.executed and not call.cancelled:
            self.cache.set(call.artifact.digest, result)

        call.state = ExecutionState.DONE
        self._record(call, result)
        return result

    def _record(self, call: _Invocation, result: ExecutionResult) -> None:
        if call.cache_hit:
            outcome = "cache_hit"
        elif result.success:
            outcome = "completed"
        elif call.cancelled:
            outcome = "cancelled"
        else:
            outcome = result.error or "failed"

        payload: dict[str, Any] = {
            "outcome": outcome,
            "success": result.success,
            "executed": call.executed,
            "redacted": True,
            "pii_redacted": result.pii_redacted,
            "tools": call.tools,
            "dialect": call.dialect.value,
            "wall_ms": round(result.metrics.wall_ms, 3),
            "tier": result.tier.value if result.tier else None,
        }
        if call.cache_hit:
            payload["cache_hit"] = True
            payload["message"] = "cache hit"
        if call.artifact is not None:
            payload["digest"] = call.artifact.digest
        if call.workspace_id is not None:
            payload["workspace_id"] = call.workspace_id
        self.audit.log_execution(call.execution_id, **payload)

        sample = ExecutionSample(
            wall_ms=result.metrics.wall_ms,
            memory_bytes=result.metrics.memory_bytes,
            success=result.success,
            executed=call.executed,
            static_severity=call.report.max_severity if call.report else None,
        )
        report = self.anomaly_detector.analyze(sample, self.audit.recent(RECENT_EVENTS_WINDOW))
        for anomaly in report.anomalies:
            self.audit.log_anomaly(
                call.execution_id,
                anomaly.severity,
                type=anomaly.type.value,
                description=anomaly.description,
                executed=call.executed,
                evidence=anomaly.evidence,
            )

    def get_stats(self) -> dict[str, Any]:
        return {
            "executions": self._executions,
            "registry": self.registry.get_stats(),
            "discovery": {"tools": len(self.discovery)},
            "cache": self.cache.get_stats(),
            "workspaces": self.workspaces.get_stats(),
            "audit": self.audit.get_stats(),
            "anomalies": self.anomaly_detector.get_stats(),
            "approvals": self.approval_gate.get_stats(),
            "sandbox": self.sandbox_manager.get_stats(),
            "cleanup": {"registered": len(self.cleanup.registered), "failures": len(self.cleanup.failures)},
        }
