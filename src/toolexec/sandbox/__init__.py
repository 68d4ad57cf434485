"""Sandbox tiers for running synthesized artifacts."""

from .base import SandboxAdapter, parse_output, write_artifact
from .container_reaper import ContainerReaper
from .container_sandbox import ContainerSandbox, remove_container_sync
from .process_sandbox import ProcessSandbox, kill_process_group
from .restricted_sandbox import RestrictedSandbox
from .sandbox_manager import TIER_FOR_LEVEL, SandboxManager

__all__ = [
    "ContainerReaper",
    "ContainerSandbox",
    "ProcessSandbox",
    "RestrictedSandbox",
    "SandboxAdapter",
    "SandboxManager",
    "TIER_FOR_LEVEL",
    "kill_process_group",
    "parse_output",
    "remove_container_sync",
    "write_artifact",
]
