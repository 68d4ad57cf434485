"""Workspace and cache entry models."""

from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, field_serializer

from .artifact import Dialect
from .execution import ExecutionResult


class WorkspaceStatus(str, Enum):
    """Workspace lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkspaceStatus.COMPLETED, WorkspaceStatus.FAILED)


class Workspace(BaseModel):
    """Per-execution scratch directory record."""

    id: str
    dialect: Dialect
    source: str
    directory: Path
    status: WorkspaceStatus = WorkspaceStatus.PENDING
    result: ExecutionResult | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    last_accessed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_serializer("created_at", "last_accessed_at")
    def serialize_timestamps(self, value: datetime) -> str:
        return value.isoformat()


class CacheEntry(BaseModel):
    """Cached execution result keyed by artifact digest."""

    digest: str
    value: ExecutionResult
    created_at: datetime
    expires_at: datetime
    last_accessed_at: datetime
    hit_count: int = Field(default=0, ge=0)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at
