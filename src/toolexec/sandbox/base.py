"""Shared sandbox adapter contract and output handling."""

import json
import shutil
import tempfile
from abc import ABC, abstractmethod
from asyncio import Event
from pathlib import Path
from typing import Any

import structlog

from ..errors import ErrorKind
from ..models.artifact import CodeArtifact, Dialect
from ..models.execution import ExecutionMetrics, ExecutionResult, SandboxLimits, SandboxTier
from ..services.summarizer import summarize_failure, summarize_output

logger = structlog.get_logger()

DEFAULT_OUTPUT_MAX_BYTES = 64 * 1024
STDERR_TAIL_CHARS = 2000


def truncate_bytes(text: str, max_bytes: int) -> str:
    """Cap text at max_bytes of UTF-8."""
    data = text.encode("utf-8")
    if len(data) <= max_bytes:
        return text
    return data[:max_bytes].decode("utf-8", errors="ignore") + "\n[output truncated]"


def parse_output(stdout: str, max_bytes: int = DEFAULT_OUTPUT_MAX_BYTES) -> Any:
    """
    Interpret artifact stdout.

    The final non-empty line is parsed as JSON when possible; otherwise the
    raw output, capped at max_bytes, is returned.
    """
    lines = [line for line in stdout.splitlines() if line.strip()]
    if lines:
        try:
            return json.loads(lines[-1])
        except json.JSONDecodeError:
            pass
    return truncate_bytes(stdout, max_bytes)


def write_artifact(workspace_dir: Path, artifact: CodeArtifact) -> Path:
    """Write artifact source as artifact.<ext> inside the workspace."""
    workspace_dir.mkdir(parents=True, exist_ok=True)
    path = workspace_dir / artifact.filename
    path.write_text(artifact.source, encoding="utf-8")
    return path


class SandboxAdapter(ABC):
    """
    Base class for isolation tiers.

    Every adapter writes the artifact into a workspace directory, enforces
    the wall-clock limit from outside the child, and releases all child
    handles on every exit path.
    """

    tier: SandboxTier

    def __init__(self, output_max_bytes: int = DEFAULT_OUTPUT_MAX_BYTES) -> None:
        self._output_max_bytes = output_max_bytes
        self.enabled = True

    @abstractmethod
    def supports(self, dialect: Dialect) -> bool:
        """Whether this tier can run artifacts of the dialect."""

    async def execute(
        self,
        artifact: CodeArtifact,
        limits: SandboxLimits,
        *,
        workspace_dir: Path | None = None,
        cancel_event: Event | None = None,
    ) -> ExecutionResult:
        """
        Run an artifact under limits.

        Args:
            artifact: Program to run
            limits: Resource limits for this run
            workspace_dir: Directory to run in; a temporary one is used and
                removed afterwards when omitted
            cancel_event: Set to abort the run

        Returns:
            Execution result; timeouts and cancellation report error "timeout"
        """
        owns_dir = workspace_dir is None
        directory = workspace_dir or Path(tempfile.mkdtemp(prefix="toolexec-sandbox-"))
        try:
            script = write_artifact(directory, artifact)
            return await self._run(artifact, script, limits, cancel_event)
        finally:
            if owns_dir:
                shutil.rmtree(directory, ignore_errors=True)

    @abstractmethod
    async def _run(
        self,
        artifact: CodeArtifact,
        script: Path,
        limits: SandboxLimits,
        cancel_event: Event | None,
    ) -> ExecutionResult:
        """Tier-specific execution of an already written script."""

    def _build_result(
        self,
        *,
        exit_code: int | None,
        stdout: str,
        stderr: str,
        wall_ms: float,
        memory_bytes: int,
        timed_out: bool = False,
        error: str | None = None,
    ) -> ExecutionResult:
        metrics = ExecutionMetrics(wall_ms=wall_ms, memory_bytes=max(0, memory_bytes))
        stderr_tail = stderr[-STDERR_TAIL_CHARS:].strip()

        if timed_out:
            return ExecutionResult(
                success=False,
                error="timeout",
                summary=summarize_failure("Execution timed out", f"{wall_ms:.0f} ms"),
                metrics=metrics,
                tier=self.tier,
                metadata={
                    "error_kind": ErrorKind.SANDBOX_TIMEOUT.value,
                    "exit_code": exit_code,
                    "stderr": stderr_tail,
                },
            )

        if error is not None or exit_code != 0:
            message = error or stderr_tail or f"exit code {exit_code}"
            return ExecutionResult(
                success=False,
                output=truncate_bytes(stdout, self._output_max_bytes) if stdout else None,
                error=message,
                summary=summarize_failure("Execution failed", message),
                metrics=metrics,
                tier=self.tier,
                metadata={
                    "error_kind": ErrorKind.SANDBOX_RUNTIME.value,
                    "exit_code": exit_code,
                    "stderr": stderr_tail,
                },
            )

        output = parse_output(stdout, self._output_max_bytes)
        return ExecutionResult(
            success=True,
            output=output,
            summary=summarize_output(output),
            metrics=metrics,
            tier=self.tier,
            metadata={"exit_code": exit_code, "stderr": stderr_tail} if stderr_tail else {"exit_code": exit_code},
        )
