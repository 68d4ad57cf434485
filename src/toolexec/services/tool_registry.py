"""Tool registry loaded from JSON descriptor files."""

import json
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError

from ..errors import MalformedDescriptor
from ..models.artifact import Dialect
from ..models.tool import (
    DescriptorIssue,
    ParameterSpec,
    ParameterType,
    ReturnSpec,
    ToolDescriptor,
    ToolExample,
)

logger = structlog.get_logger()

TYPE_ALIASES: dict[str, ParameterType] = {
    "string": ParameterType.STRING,
    "str": ParameterType.STRING,
    "text": ParameterType.STRING,
    "number": ParameterType.NUMBER,
    "integer": ParameterType.NUMBER,
    "int": ParameterType.NUMBER,
    "float": ParameterType.NUMBER,
    "boolean": ParameterType.BOOLEAN,
    "bool": ParameterType.BOOLEAN,
    "array": ParameterType.ARRAY,
    "list": ParameterType.ARRAY,
    "object": ParameterType.OBJECT,
    "dict": ParameterType.OBJECT,
    "null": ParameterType.NULL,
    "none": ParameterType.NULL,
    "any": ParameterType.ANY,
}


def validate(descriptor: ToolDescriptor | Mapping[str, Any]) -> list[DescriptorIssue]:
    """
    Check a descriptor without modifying anything.

    Args:
        descriptor: Normalized descriptor or raw descriptor mapping

    Returns:
        Issues found; errors make the descriptor unusable, warnings do not
    """
    if isinstance(descriptor, ToolDescriptor):
        name: Any = descriptor.name
        description: Any = descriptor.description
        param_names = [p.name for p in descriptor.parameters]
    else:
        name = descriptor.get("name")
        description = descriptor.get("description")
        param_names = [param for param, _ in _iter_raw_parameters(descriptor)]

    issues: list[DescriptorIssue] = []
    if not isinstance(name, str) or not name.strip():
        issues.append(DescriptorIssue(severity="error", message="Descriptor has no name"))
    elif any(ch.isspace() for ch in name):
        issues.append(
            DescriptorIssue(severity="error", message=f"Tool name contains whitespace: {name!r}")
        )

    if not description:
        issues.append(DescriptorIssue(severity="warning", message="Descriptor has no description"))

    seen: set[str] = set()
    for param_name in param_names:
        if not isinstance(param_name, str) or not param_name:
            issues.append(DescriptorIssue(severity="error", message="Parameter has no name"))
            continue
        if param_name in seen:
            issues.append(
                DescriptorIssue(
                    severity="error",
                    message=f"Duplicate parameter name: {param_name}",
                )
            )
        seen.add(param_name)

    return issues


def _iter_raw_parameters(raw: Mapping[str, Any]) -> Iterable[tuple[str, Mapping[str, Any]]]:
    """Yield (name, spec) pairs from any accepted parameter layout."""
    params = raw.get("parameters", raw.get("params"))

    if params is None and isinstance(raw.get("inputSchema"), Mapping):
        schema = raw["inputSchema"]
        required = set(schema.get("required", []))
        for name, spec in (schema.get("properties") or {}).items():
            spec = dict(spec) if isinstance(spec, Mapping) else {}
            spec.setdefault("required", name in required)
            yield name, spec
        return

    if isinstance(params, Mapping):
        for name, spec in params.items():
            if isinstance(spec, str):
                spec = {"type": spec}
            yield name, spec if isinstance(spec, Mapping) else {}
    elif isinstance(params, list):
        for spec in params:
            if isinstance(spec, Mapping):
                yield spec.get("name", ""), spec


def _coerce_type(value: Any, context: str) -> ParameterType:
    if value is None:
        return ParameterType.ANY
    if isinstance(value, list):
        # JSON Schema union such as ["string", "null"]
        non_null = [v for v in value if v != "null"]
        value = non_null[0] if len(non_null) == 1 else "any"
    resolved = TYPE_ALIASES.get(str(value).strip().lower())
    if resolved is None:
        logger.warning("unknown_parameter_type", type=value, context=context)
        return ParameterType.ANY
    return resolved


def normalize_descriptor(raw: Mapping[str, Any], source: str | None = None) -> ToolDescriptor:
    """
    Build a descriptor from a raw JSON mapping, applying defaults.

    Args:
        raw: Parsed JSON object
        source: File the object came from, for diagnostics

    Returns:
        Normalized descriptor

    Raises:
        MalformedDescriptor: If the name is missing or parameter names repeat,
            or a field has the wrong shape
    """
    if not isinstance(raw, Mapping):
        raise MalformedDescriptor("Descriptor is not a JSON object", source=source)

    try:
        errors = [issue.message for issue in validate(raw) if issue.severity == "error"]
        if errors:
            raise MalformedDescriptor("; ".join(errors), source=source)
        return _build_descriptor(raw, raw["name"].strip(), source)
    except (ValidationError, TypeError, ValueError, AttributeError) as e:
        raise MalformedDescriptor(f"Invalid descriptor field: {e}", source=source) from e


def _build_descriptor(raw: Mapping[str, Any], name: str, source: str | None) -> ToolDescriptor:
    for example in raw.get("examples") or []:
        if isinstance(example, Mapping) and not isinstance(example.get("input") or {}, Mapping):
            raise MalformedDescriptor(f"Example input for {name} is not an object", source=source)
    implementation_raw = raw.get("implementation") or {}
    if not isinstance(implementation_raw, Mapping):
        raise MalformedDescriptor(f"Implementation for {name} is not an object keyed by dialect", source=source)
    side_effects = raw.get("side_effects") or raw.get("sideEffects") or []
    if isinstance(side_effects, str):
        side_effects = [side_effects]
    if not isinstance(side_effects, list):
        raise MalformedDescriptor(f"Side effects for {name} must be a string or a list", source=source)

    parameters = tuple(
        ParameterSpec(
            name=param_name,
            type=_coerce_type(spec.get("type"), f"{name}.{param_name}"),
            required=bool(spec.get("required", True)),
            default=spec.get("default"),
            description=spec.get("description", "") or "",
        )
        for param_name, spec in _iter_raw_parameters(raw)
    )

    returns_raw = raw.get("returns", raw.get("return"))
    returns: ReturnSpec | None = None
    if isinstance(returns_raw, str):
        returns = ReturnSpec(type=_coerce_type(returns_raw, f"{name}.returns"))
    elif isinstance(returns_raw, Mapping):
        returns = ReturnSpec(
            type=_coerce_type(returns_raw.get("type"), f"{name}.returns"),
            description=returns_raw.get("description", "") or "",
        )

    examples = tuple(
        ToolExample(
            input=dict(example.get("input") or {}),
            output=example.get("output"),
            description=example.get("description", "") or "",
        )
        for example in raw.get("examples") or []
        if isinstance(example, Mapping)
    )

    implementation: dict[Dialect, str] = {}
    for dialect_name, body in implementation_raw.items():
        try:
            implementation[Dialect(dialect_name)] = str(body)
        except ValueError:
            logger.warning("unknown_implementation_dialect", tool=name, dialect=dialect_name)

    return ToolDescriptor(
        name=name,
        description=raw.get("description", "") or "",
        category=raw.get("category"),
        parameters=parameters,
        returns=returns,
        examples=examples,
        side_effects=tuple(str(effect).lower() for effect in side_effects),
        implementation=implementation,
        source_path=source,
    )


@dataclass
class IndexReport:
    """Outcome of indexing a descriptor directory."""

    root: Path
    files_scanned: int = 0
    descriptors_loaded: int = 0
    failures: list[tuple[str, str]] = field(default_factory=list)

    @property
    def total_failure(self) -> bool:
        return self.files_scanned > 0 and self.descriptors_loaded == 0


class ToolRegistry:
    """Read-mostly registry of tool descriptors keyed by name."""

    def __init__(self) -> None:
        """Initialize empty tool registry."""
        self._tools: dict[str, ToolDescriptor] = {}
        self._category_index: dict[str, set[str]] = {}
        self._lock = threading.RLock()

    def index_from(self, root: Path | str) -> IndexReport:
        """
        Replace registry contents with every descriptor found under root.

        Files are read in sorted path order so duplicates resolve the same
        way on every run: the last file wins.

        Args:
            root: Directory searched recursively for *.json descriptor files

        Returns:
            Report of scanned files, loaded descriptors and failures
        """
        root = Path(root)
        report = IndexReport(root=root)
        tools: dict[str, ToolDescriptor] = {}

        if not root.is_dir():
            logger.warning("tool_directory_missing", root=str(root))
            self._swap(tools)
            return report

        for path in sorted(root.rglob("*.json")):
            report.files_scanned += 1
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
                logger.warning("descriptor_file_unreadable", path=str(path), error=str(e))
                report.failures.append((str(path), str(e)))
                continue

            entries = data if isinstance(data, list) else [data]
            for entry in entries:
                try:
                    descriptor = normalize_descriptor(entry, source=str(path))
                except MalformedDescriptor as e:
                    logger.warning("descriptor_malformed", path=str(path), error=e.message)
                    report.failures.append((str(path), e.message))
                    continue

                if descriptor.name in tools:
                    logger.warning(
                        "tool_overridden",
                        tool=descriptor.name,
                        previous=tools[descriptor.name].source_path,
                        replacement=str(path),
                    )
                tools[descriptor.name] = descriptor

        report.descriptors_loaded = len(tools)
        self._swap(tools)

        if report.total_failure:
            logger.error(
                "tool_indexing_failed",
                root=str(root),
                files_scanned=report.files_scanned,
                failures=len(report.failures),
            )
        else:
            logger.info(
                "tools_indexed",
                root=str(root),
                files_scanned=report.files_scanned,
                tools=report.descriptors_loaded,
                failures=len(report.failures),
            )
        return report

    def register(self, descriptor: ToolDescriptor) -> None:
        """
        Register a single descriptor programmatically.

        Args:
            descriptor: Normalized descriptor; replaces any tool with the same name
        """
        errors = [i.message for i in validate(descriptor) if i.severity == "error"]
        if errors:
            raise MalformedDescriptor("; ".join(errors), source=descriptor.source_path)

        with self._lock:
            tools = dict(self._tools)
            if descriptor.name in tools:
                logger.warning("tool_overridden", tool=descriptor.name)
            tools[descriptor.name] = descriptor
            self._swap(tools)
        logger.info("tool_registered", tool=descriptor.name, category=descriptor.category)

    def _swap(self, tools: dict[str, ToolDescriptor]) -> None:
        category_index: dict[str, set[str]] = {}
        for descriptor in tools.values():
            if descriptor.category:
                category_index.setdefault(descriptor.category, set()).add(descriptor.name)
        with self._lock:
            self._tools = tools
            self._category_index = category_index

    def get(self, name: str) -> ToolDescriptor | None:
        """Get descriptor by name."""
        return self._tools.get(name)

    def all(self) -> list[ToolDescriptor]:
        """List all descriptors sorted by name."""
        tools = self._tools
        return [tools[name] for name in sorted(tools)]

    def by_category(self, category: str) -> list[ToolDescriptor]:
        """List descriptors in a category sorted by name."""
        tools = self._tools
        names = self._category_index.get(category, set())
        return [tools[name] for name in sorted(names) if name in tools]

    def get_stats(self) -> dict[str, Any]:
        tools = self._tools
        return {
            "total_tools": len(tools),
            "categories": {
                category: len(names) for category, names in sorted(self._category_index.items())
            },
            "with_examples": sum(1 for t in tools.values() if t.examples),
            "with_implementation": sum(1 for t in tools.values() if t.implementation),
        }

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __repr__(self) -> str:
        return f"ToolRegistry(tools={len(self._tools)}, categories={len(self._category_index)})"
