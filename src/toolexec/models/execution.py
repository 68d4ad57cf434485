"""Sandbox limit and execution result models."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from .security import RiskLevel


class SandboxTier(str, Enum):
    """Isolation tiers, weakest first."""

    PROCESS = "process"
    VM = "vm"
    CONTAINER = "container"

    @property
    def strength(self) -> int:
        return _TIER_STRENGTH[self]


_TIER_STRENGTH = {SandboxTier.PROCESS: 0, SandboxTier.VM: 1, SandboxTier.CONTAINER: 2}


class NetworkMode(str, Enum):
    """Network access policy modes."""

    NONE = "none"
    ALLOWLIST = "allowlist"


class NetworkPolicy(BaseModel):
    """Network egress policy for a sandbox."""

    mode: NetworkMode = NetworkMode.NONE
    allowed_hosts: list[str] = Field(
        default_factory=list,
        description="Host patterns (fnmatch style) reachable in allowlist mode",
    )


class SandboxLimits(BaseModel):
    """Resource limits enforced on a single execution."""

    wall_ms: int = Field(default=30_000, ge=1, le=3_600_000, description="Wall-clock limit in ms")
    memory_bytes: int = Field(
        default=512 * 1024 * 1024,
        ge=16 * 1024 * 1024,
        description="Memory ceiling in bytes",
    )
    cpu_share: float = Field(
        default=1.0,
        gt=0.0,
        le=64.0,
        description="CPU allowance in cores",
    )
    network_policy: NetworkPolicy = Field(default_factory=NetworkPolicy)

    @property
    def timeout_seconds(self) -> float:
        return self.wall_ms / 1000.0


class ExecutionMetrics(BaseModel):
    """Measurements of one execution."""

    wall_ms: float = Field(default=0.0, ge=0.0)
    memory_bytes: int = Field(default=0, ge=0)
    tokens_in_summary: int = Field(default=0, ge=0)


class ExecutionResult(BaseModel):
    """Outcome returned to the host for every invocation."""

    success: bool
    output: Any = None
    error: str | None = None
    summary: str = ""
    metrics: ExecutionMetrics = Field(default_factory=ExecutionMetrics)
    pii_redacted: bool = False
    execution_id: str | None = None
    cached: bool = False
    tier: SandboxTier | None = None
    risk_level: RiskLevel | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
