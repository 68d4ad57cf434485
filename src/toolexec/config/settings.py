"""Tool execution engine configuration settings."""

import sys
import tempfile
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..models.execution import SandboxLimits


def _default_workspace_dir() -> Path:
    return Path(tempfile.gettempdir()) / "mcp-workspaces"


class EngineSettings(BaseSettings):
    """Tool execution engine configuration settings."""

    model_config = SettingsConfigDict(
        env_prefix="TOOLEXEC_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # Application Settings
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Tool Registry & Discovery
    tools_directory: Path = Path("tools")
    max_tools: int = Field(default=5, ge=1)
    discovery_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    embedder: Literal["hashing", "sentence-transformers"] = "hashing"
    embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    embedding_dimensions: int = Field(default=1024, ge=16)

    # Code Synthesis
    template_dirs: list[Path] = Field(default_factory=list)

    # Safety
    approval_threshold: int = Field(default=50, ge=0)
    refusal_threshold: int = Field(default=100, ge=0)
    approval_policy: Literal["allow", "deny"] = "allow"
    network_allowlist: list[str] = Field(default_factory=list)
    validator_patterns_file: Path | None = None

    # Cache & Workspaces
    cache_ttl_seconds: int = Field(default=3600, ge=1)
    workspace_base_dir: Path = Field(default_factory=_default_workspace_dir)
    workspace_retention_hours: float = Field(default=24.0, ge=0.0)
    workspace_retain_files: bool = False
    cleanup_interval_seconds: int = Field(default=3600, ge=1)
    install_signal_handlers: bool = True

    # Audit & Anomaly Detection
    audit_log_path: Path | None = None
    audit_max_events_in_memory: int = Field(default=10000, ge=1)
    anomaly_baseline_size: int = Field(default=1000, ge=1)

    # Output
    summary_max_chars: int = Field(default=500, ge=40)
    output_max_bytes: int = Field(default=64 * 1024, ge=1024)

    # Interpreters
    python_command: list[str] = Field(default_factory=lambda: [sys.executable, "-I", "-B"])
    typescript_command: list[str] = Field(
        default_factory=lambda: [
            "node",
            "--experimental-strip-types",
            "--disable-warning=ExperimentalWarning",
        ]
    )
    sandbox_env_passthrough: list[str] = Field(default_factory=list)

    # Container Tier
    container_enabled: bool = True
    container_python_image: str = "python:3.12-alpine"
    container_typescript_image: str = "node:22-alpine"
    container_pids_limit: int = Field(default=64, ge=1)
    container_max_age_hours: float = Field(default=1.0, gt=0.0)

    # Per-tier Default Limits
    process_limits: SandboxLimits = Field(default_factory=SandboxLimits)
    vm_limits: SandboxLimits = Field(default_factory=SandboxLimits)
    container_limits: SandboxLimits = Field(
        default_factory=lambda: SandboxLimits(wall_ms=60_000)
    )


@lru_cache
def get_settings() -> EngineSettings:
    """Get cached settings instance."""
    return EngineSettings()
