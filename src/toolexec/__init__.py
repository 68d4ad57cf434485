"""
Tool execution engine.

Discovers tools relevant to a natural-language intent, synthesizes a program
that calls them, validates and sandboxes it, and returns a redacted, bounded
summary of the result.

Key Components:
- Orchestrator: runs invocations end to end
- Services: registry, discovery, synthesis, safety, workspace, cache, audit
- Sandbox: process, restricted (vm) and container tiers
"""

from .config import EngineSettings, get_settings
from .errors import ErrorKind, ToolExecError
from .models import CodeArtifact, Dialect, ExecutionResult, SandboxLimits, SandboxTier, ToolDescriptor
from .services.orchestrator import ExecutionState, Orchestrator

__version__ = "0.1.0"

__all__ = [
    "Orchestrator",
    "ExecutionState",
    "EngineSettings",
    "get_settings",
    "Dialect",
    "CodeArtifact",
    "ExecutionResult",
    "SandboxLimits",
    "SandboxTier",
    "ToolDescriptor",
    "ErrorKind",
    "ToolExecError",
]
