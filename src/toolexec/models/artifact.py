"""Synthesized code artifact models."""

import hashlib
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class Dialect(str, Enum):
    """Target language of a synthesized artifact."""

    TYPESCRIPT = "typescript"
    PYTHON = "python"

    @property
    def extension(self) -> str:
        return "ts" if self is Dialect.TYPESCRIPT else "py"


def source_digest(source: str) -> str:
    """Return the SHA-256 hex digest of artifact source."""
    return hashlib.sha256(source.encode("utf-8")).hexdigest()


class CodeArtifact(BaseModel):
    """Program produced by the synthesizer."""

    model_config = ConfigDict(frozen=True)

    dialect: Dialect = Field(description="Artifact language")
    source: str = Field(description="Full program text")
    dependencies: frozenset[str] = Field(
        default_factory=frozenset,
        description="External modules the source imports",
    )
    estimated_cost: int = Field(default=0, ge=0, description="Approximate token count")
    tools: tuple[str, ...] = Field(default=(), description="Tools the artifact invokes")
    side_effects: frozenset[str] = Field(
        default_factory=frozenset,
        description="Side effects declared by the invoked tools",
    )

    @property
    def digest(self) -> str:
        return source_digest(self.source)

    @property
    def filename(self) -> str:
        return f"artifact.{self.dialect.extension}"
