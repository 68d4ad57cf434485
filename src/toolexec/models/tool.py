"""Tool descriptor models."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .artifact import Dialect


class ParameterType(str, Enum):
    """Value types a tool parameter or return value may declare."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"
    NULL = "null"
    ANY = "any"


class ParameterSpec(BaseModel):
    """Single named parameter of a tool."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(description="Parameter name")
    type: ParameterType = Field(default=ParameterType.ANY, description="Declared value type")
    required: bool = Field(default=True, description="Whether the parameter must be supplied")
    default: Any = Field(default=None, description="Default value used when not supplied")
    description: str = Field(default="", description="Parameter description")


class ReturnSpec(BaseModel):
    """Declared return value of a tool."""

    model_config = ConfigDict(frozen=True)

    type: ParameterType = Field(default=ParameterType.ANY, description="Declared return type")
    description: str = Field(default="", description="Return value description")


class ToolExample(BaseModel):
    """Worked example of a tool invocation."""

    model_config = ConfigDict(frozen=True)

    input: dict[str, Any] = Field(default_factory=dict, description="Example arguments")
    output: Any = Field(default=None, description="Expected output for the arguments")
    description: str = Field(default="", description="What the example shows")


class ToolDescriptor(BaseModel):
    """Externally described tool, immutable once indexed."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(description="Unique tool name")
    description: str = Field(default="", description="What the tool does")
    category: str | None = Field(default=None, description="Optional grouping category")
    parameters: tuple[ParameterSpec, ...] = Field(
        default=(),
        description="Ordered parameter list",
    )
    returns: ReturnSpec | None = Field(default=None, description="Declared return value")
    examples: tuple[ToolExample, ...] = Field(default=(), description="Worked examples")
    side_effects: tuple[str, ...] = Field(
        default=(),
        description="Declared effects such as network, filesystem or process",
    )
    implementation: dict[Dialect, str] = Field(
        default_factory=dict,
        description="Inline wrapper body per dialect",
    )
    source_path: str | None = Field(
        default=None,
        description="Descriptor file the tool was loaded from",
    )

    @property
    def required_parameters(self) -> list[ParameterSpec]:
        return [p for p in self.parameters if p.required]


class DescriptorIssue(BaseModel):
    """Problem found while validating a descriptor."""

    severity: str = Field(description="error or warning")
    message: str = Field(description="Human-readable problem description")


class DiscoveryResult(BaseModel):
    """Descriptor ranked against a query."""

    descriptor: ToolDescriptor
    relevance: float = Field(ge=0.0, le=1.0, description="Combined relevance score")
    lexical_score: float = Field(default=0.0, ge=0.0, le=1.0)
    semantic_score: float = Field(default=0.0, ge=0.0, le=1.0)
