"""Tier selection and dispatch across sandbox adapters."""

from asyncio import Event
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import structlog

from ..config.settings import EngineSettings
from ..errors import SandboxUnavailable
from ..models.artifact import CodeArtifact, Dialect
from ..models.execution import ExecutionResult, NetworkMode, SandboxLimits, SandboxTier
from ..models.security import RiskLevel
from .base import SandboxAdapter
from .container_sandbox import ContainerSandbox
from .process_sandbox import ProcessSandbox
from .restricted_sandbox import RestrictedSandbox

logger = structlog.get_logger()

MIN_CPU_SHARE = 0.1
MAX_CPU_SHARE = 8.0
MAX_WALL_MS = 300_000

TIER_FOR_LEVEL: dict[RiskLevel, SandboxTier] = {
    RiskLevel.LOW: SandboxTier.PROCESS,
    RiskLevel.MEDIUM: SandboxTier.VM,
    RiskLevel.HIGH: SandboxTier.CONTAINER,
    RiskLevel.CRITICAL: SandboxTier.CONTAINER,
}


class SandboxManager:
    """Maps risk levels to tiers and runs artifacts on the chosen adapter."""

    def __init__(
        self,
        adapters: Iterable[SandboxAdapter],
        default_limits: dict[SandboxTier, SandboxLimits] | None = None,
    ) -> None:
        """
        Initialize sandbox manager.

        Args:
            adapters: One adapter per tier
            default_limits: Limits used per tier when the caller gives none
        """
        self._adapters: dict[SandboxTier, SandboxAdapter] = {a.tier: a for a in adapters}
        self._default_limits = default_limits or {}
        self._runs: dict[SandboxTier, int] = {tier: 0 for tier in SandboxTier}
        self._escalations = 0

    @classmethod
    def from_settings(cls, settings: EngineSettings, cleanup_manager=None) -> "SandboxManager":
        process_options: dict[str, Any] = {
            "python_command": settings.python_command,
            "typescript_command": settings.typescript_command,
            "env_passthrough": settings.sandbox_env_passthrough,
            "output_max_bytes": settings.output_max_bytes,
            "cleanup_manager": cleanup_manager,
        }
        container = ContainerSandbox(
            python_image=settings.container_python_image,
            typescript_image=settings.container_typescript_image,
            pids_limit=settings.container_pids_limit,
            output_max_bytes=settings.output_max_bytes,
            cleanup_manager=cleanup_manager,
        )
        container.enabled = settings.container_enabled
        return cls(
            [ProcessSandbox(**process_options), RestrictedSandbox(**process_options), container],
            default_limits={
                SandboxTier.PROCESS: settings.process_limits,
                SandboxTier.VM: settings.vm_limits,
                SandboxTier.CONTAINER: settings.container_limits,
            },
        )

    @staticmethod
    def select_tier(level: RiskLevel) -> SandboxTier:
        return TIER_FOR_LEVEL[level]

    def adapter(self, tier: SandboxTier) -> SandboxAdapter | None:
        return self._adapters.get(tier)

    def resolve(self, tier: SandboxTier, dialect: Dialect) -> SandboxAdapter:
        """
        Find the adapter for a tier, escalating to stronger tiers when needed.

        Raises:
            SandboxUnavailable: If no enabled adapter at or above the tier
                supports the dialect
        """
        for candidate in sorted(SandboxTier, key=lambda t: t.strength):
            if candidate.strength < tier.strength:
                continue
            adapter = self._adapters.get(candidate)
            if adapter is not None and adapter.enabled and adapter.supports(dialect):
                if candidate is not tier:
                    self._escalations += 1
                    logger.info(
                        "sandbox_tier_escalated",
                        requested=tier.value,
                        selected=candidate.value,
                        dialect=dialect.value,
                    )
                return adapter
        raise SandboxUnavailable(
            f"No sandbox at or above tier {tier.value} can run {dialect.value}",
            {"tier": tier.value, "dialect": dialect.value},
        )

    def limits_for(self, tier: SandboxTier, override: SandboxLimits | None = None) -> SandboxLimits:
        if override is not None:
            return override
        return self._default_limits.get(tier, SandboxLimits())

    @staticmethod
    def validate_limits(tier: SandboxTier, limits: SandboxLimits) -> list[str]:
        """
        Check limits against what a tier can enforce.

        Returns:
            Problems found; empty when the limits are usable as given
        """
        errors: list[str] = []
        if not MIN_CPU_SHARE <= limits.cpu_share <= MAX_CPU_SHARE:
            errors.append(f"CPU share must be between {MIN_CPU_SHARE} and {MAX_CPU_SHARE} cores")
        if limits.wall_ms > MAX_WALL_MS:
            errors.append("Wall-clock limit must not exceed 5 minutes")
        policy = limits.network_policy
        if policy.mode is NetworkMode.ALLOWLIST:
            if not policy.allowed_hosts:
                errors.append("Network allowlist has no hosts")
            if tier is not SandboxTier.CONTAINER:
                errors.append(f"Tier {tier.value} cannot enforce a network allowlist")
        return errors

    async def execute(
        self,
        artifact: CodeArtifact,
        level: RiskLevel,
        *,
        limits: SandboxLimits | None = None,
        workspace_dir: Path | None = None,
        cancel_event: Event | None = None,
    ) -> ExecutionResult:
        """
        Run an artifact in the tier its risk level calls for.

        Args:
            artifact: Program to run
            level: Assessed risk level
            limits: Overrides the tier's default limits
            workspace_dir: Directory the adapter runs in
            cancel_event: Set to abort the run

        Returns:
            Adapter result with the tier that actually ran it

        Raises:
            SandboxUnavailable: If no suitable tier exists
        """
        requested = self.select_tier(level)
        adapter = self.resolve(requested, artifact.dialect)
        effective = self.limits_for(adapter.tier, limits)
        problems = self.validate_limits(adapter.tier, effective)
        if problems:
            logger.warning("sandbox_limits_not_enforceable", tier=adapter.tier.value, problems=problems)
        result = await adapter.execute(
            artifact,
            effective,
            workspace_dir=workspace_dir,
            cancel_event=cancel_event,
        )
        self._runs[adapter.tier] += 1
        metadata = dict(result.metadata)
        metadata["requested_tier"] = requested.value
        return result.model_copy(update={"tier": adapter.tier, "metadata": metadata})

    def get_stats(self) -> dict[str, Any]:
        return {
            "runs": {tier.value: count for tier, count in self._runs.items()},
            "escalations": self._escalations,
            "enabled": {tier.value: a.enabled for tier, a in self._adapters.items()},
        }
