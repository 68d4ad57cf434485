"""Error taxonomy for the tool execution engine.

Internal components raise the exceptions below. The orchestrator catches them
at its boundary and turns them into failed execution results, so hosts only
ever see `ExecutionResult` objects.
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Error categories and how each one surfaces."""

    MALFORMED_DESCRIPTOR = "malformed_descriptor"  # logged, descriptor skipped
    TEMPLATES_UNAVAILABLE = "templates_unavailable"  # invocation fails
    NO_RELEVANT_TOOLS = "no_relevant_tools"  # invocation fails
    SECURITY_REFUSED = "security_refused"  # invocation fails, critical audit
    SANDBOX_TIMEOUT = "timeout"  # child killed, invocation fails
    SANDBOX_RUNTIME = "sandbox_runtime"  # non-zero exit or bad output
    SANDBOX_UNAVAILABLE = "sandbox_unavailable"  # no tier can run the dialect
    WORKSPACE = "workspace"  # unknown id or illegal transition
    CLEANUP_FAILURE = "cleanup_failure"  # logged, other handlers continue
    INTERNAL = "internal"  # unexpected failure inside the engine


class ToolExecError(Exception):
    """Base class for engine errors."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message, **self.details}


class MalformedDescriptor(ToolExecError):
    """Descriptor is missing a name or has duplicate parameter names."""

    kind = ErrorKind.MALFORMED_DESCRIPTOR

    def __init__(self, message: str, source: str | None = None) -> None:
        super().__init__(message, {"source": source} if source else None)
        self.source = source


class TemplatesUnavailable(ToolExecError):
    """No candidate directory holds the template for a dialect."""

    kind = ErrorKind.TEMPLATES_UNAVAILABLE


class NoRelevantTools(ToolExecError):
    """Discovery returned nothing above the relevance threshold."""

    kind = ErrorKind.NO_RELEVANT_TOOLS


class SecurityRefused(ToolExecError):
    """Static validation or the approval gate refused the artifact."""

    kind = ErrorKind.SECURITY_REFUSED


class SandboxUnavailable(ToolExecError):
    """No enabled tier at or above the selected one accepts the dialect."""

    kind = ErrorKind.SANDBOX_UNAVAILABLE


class WorkspaceNotFound(ToolExecError):
    """Workspace id is unknown to the manager."""

    kind = ErrorKind.WORKSPACE

    def __init__(self, workspace_id: str) -> None:
        super().__init__(f"Workspace not found: {workspace_id}", {"workspace_id": workspace_id})
        self.workspace_id = workspace_id


class InvalidWorkspaceTransition(ToolExecError):
    """Status change that is not pending -> running -> completed|failed."""

    kind = ErrorKind.WORKSPACE

    def __init__(self, workspace_id: str, current: str, requested: str) -> None:
        super().__init__(
            f"Invalid workspace transition {current} -> {requested} for {workspace_id}",
            {"workspace_id": workspace_id, "current": current, "requested": requested},
        )
        self.workspace_id = workspace_id
        self.current = current
        self.requested = requested


class CleanupFailure(ToolExecError):
    """A cleanup handler raised."""

    kind = ErrorKind.CLEANUP_FAILURE

    def __init__(self, resource_id: str, cause: BaseException) -> None:
        super().__init__(
            f"Cleanup failed for {resource_id}: {cause}",
            {"resource_id": resource_id},
        )
        self.resource_id = resource_id
        self.cause = cause
