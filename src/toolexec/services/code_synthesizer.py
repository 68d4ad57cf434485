"""Synthesizes runnable tool-calling programs from descriptors."""

import json
import keyword
import math
import re
import sys
import textwrap
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

import structlog
from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateNotFound

from ..errors import TemplatesUnavailable
from ..models.artifact import CodeArtifact, Dialect
from ..models.tool import ParameterSpec, ParameterType, ToolDescriptor

logger = structlog.get_logger()

PACKAGE_TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates"

TEMPLATE_NAMES: dict[Dialect, str] = {
    Dialect.PYTHON: "python_wrapper.py.j2",
    Dialect.TYPESCRIPT: "typescript_wrapper.ts.j2",
}

PYTHON_TYPES: dict[ParameterType, str] = {
    ParameterType.STRING: "str",
    ParameterType.NUMBER: "float",
    ParameterType.BOOLEAN: "bool",
    ParameterType.ARRAY: "List[Any]",
    ParameterType.OBJECT: "Dict[str, Any]",
    ParameterType.NULL: "None",
    ParameterType.ANY: "Any",
}

TYPESCRIPT_TYPES: dict[ParameterType, str] = {
    ParameterType.STRING: "string",
    ParameterType.NUMBER: "number",
    ParameterType.BOOLEAN: "boolean",
    ParameterType.ARRAY: "unknown[]",
    ParameterType.OBJECT: "Record<string, unknown>",
    ParameterType.NULL: "null",
    ParameterType.ANY: "unknown",
}

ZERO_VALUES: dict[ParameterType, Any] = {
    ParameterType.STRING: "",
    ParameterType.NUMBER: 0,
    ParameterType.BOOLEAN: False,
    ParameterType.ARRAY: [],
    ParameterType.OBJECT: {},
    ParameterType.NULL: None,
    ParameterType.ANY: None,
}

TYPESCRIPT_RESERVED = frozenset(
    {
        "break", "case", "catch", "class", "const", "continue", "debugger", "default",
        "delete", "do", "else", "enum", "export", "extends", "false", "finally", "for",
        "function", "if", "import", "in", "instanceof", "new", "null", "return", "super",
        "switch", "this", "throw", "true", "try", "typeof", "var", "void", "while", "with",
        "yield", "let", "static", "implements", "interface", "package", "private",
        "protected", "public", "await", "async", "arguments", "eval",
    }
)

# Names the generated module defines itself
PYTHON_RESERVED_NAMES = frozenset(
    {"json", "invoke_tool", "main", "TOOLS", "TOOL_CALLS", "TOOL_EXAMPLES",
     "Any", "Dict", "List", "Optional"}
)
TYPESCRIPT_RESERVED_NAMES = frozenset(
    {"delay", "invokeTool", "main", "canonical", "TOOLS", "TOOL_CALLS", "TOOL_EXAMPLES",
     "args", "Json", "Call", "Example"}
)

NODE_BUILTINS = frozenset(
    {
        "assert", "buffer", "child_process", "crypto", "dgram", "dns", "events", "fs",
        "fs/promises", "http", "https", "net", "os", "path", "process", "querystring",
        "readline", "stream", "string_decoder", "timers", "timers/promises", "tls", "url",
        "util", "vm", "worker_threads", "zlib",
    }
)

_PY_IMPORT = re.compile(
    r"^\s*(?:from\s+([A-Za-z_][\w.]*)\s+import\b|import\s+([A-Za-z_][\w., \t]*))",
    re.MULTILINE,
)
_TS_IMPORT = re.compile(
    r"""(?:\bfrom\s*|\bimport\s*\(?\s*|\brequire\s*\(\s*)["']([^"']+)["']""",
)


def estimate_tokens(text: str) -> int:
    """Approximate token count: one token per four characters."""
    return math.ceil(len(text) / 4)


def _words(name: str) -> list[str]:
    spaced = re.sub(r"([a-z0-9])([A-Z])", r"\1 \2", name)
    return [w for w in re.split(r"[^A-Za-z0-9]+", spaced) if w]


def to_python_identifier(name: str) -> str:
    """Underscore-lower identifier that never starts with an underscore."""
    words = [w.lower() for w in _words(name)]
    identifier = "_".join(words) or "tool"
    if identifier[0].isdigit():
        identifier = f"t{identifier}"
    if keyword.iskeyword(identifier) or keyword.issoftkeyword(identifier):
        identifier = f"{identifier}_"
    return identifier


def to_typescript_identifier(name: str) -> str:
    """Lower-camel identifier."""
    words = [w.lower() for w in _words(name)]
    if not words:
        return "tool"
    identifier = words[0] + "".join(w.capitalize() for w in words[1:])
    if identifier[0].isdigit():
        identifier = f"t{identifier}"
    if identifier in TYPESCRIPT_RESERVED:
        identifier = f"{identifier}_"
    return identifier


class _NameAllocator:
    """Hands out unique identifiers, suffixing collisions with a number."""

    def __init__(self, reserved: frozenset[str]) -> None:
        self._used: set[str] = set(reserved)

    def allocate(self, identifier: str) -> str:
        candidate = identifier
        counter = 2
        while candidate in self._used:
            candidate = f"{identifier}_{counter}"
            counter += 1
        self._used.add(candidate)
        return candidate


def _python_doc(text: str) -> str:
    cleaned = " ".join(text.replace("\\", "/").replace('"""', "'''").split())
    cleaned = cleaned.rstrip('"')
    return cleaned or "No description provided."


def _typescript_doc(text: str) -> str:
    cleaned = " ".join(text.replace("*/", "* /").split())
    return cleaned or "No description provided."


def _one_line(text: str) -> str:
    cleaned = text.replace("\\", "/").replace("*/", "* /").replace('"', "'")
    return " ".join(cleaned.split())[:200]


def _literal(value: Any) -> str:
    """JSON text as a string literal valid in both dialects."""
    return json.dumps(json.dumps(value, sort_keys=True, separators=(",", ":")))


def _python_value(value: Any) -> str:
    return repr(json.loads(json.dumps(value, sort_keys=True)))


def extract_dependencies(source: str, dialect: Dialect) -> frozenset[str]:
    """
    Collect external modules imported by a program.

    Args:
        source: Program text
        dialect: Language of the program

    Returns:
        Top-level module (Python) or package (TypeScript) names outside the
        standard library
    """
    found: set[str] = set()
    if dialect is Dialect.PYTHON:
        for match in _PY_IMPORT.finditer(source):
            if match.group(1):
                modules = [match.group(1)]
            else:
                modules = [m.strip().split(" ")[0] for m in match.group(2).split(",")]
            for module in modules:
                top = module.split(".")[0]
                if top and top not in sys.stdlib_module_names:
                    found.add(top)
    else:
        for match in _TS_IMPORT.finditer(source):
            specifier = match.group(1)
            if specifier.startswith(("node:", ".", "/")) or specifier in NODE_BUILTINS:
                continue
            parts = specifier.split("/")
            found.add("/".join(parts[:2]) if specifier.startswith("@") else parts[0])
    return frozenset(found)


class CodeSynthesizer:
    """Renders wrapper programs for a set of tools."""

    def __init__(self, template_dirs: Sequence[Path | str] | None = None) -> None:
        """
        Initialize synthesizer.

        Args:
            template_dirs: Extra directories searched before the packaged templates
        """
        candidates = [Path(d) for d in template_dirs or []]
        candidates += [PACKAGE_TEMPLATE_DIR, Path.cwd() / "templates"]
        self._candidates = candidates
        self._environments: dict[Path, Environment] = {}

    @property
    def candidate_dirs(self) -> list[Path]:
        return list(self._candidates)

    def _environment(self, directory: Path) -> Environment:
        env = self._environments.get(directory)
        if env is None:
            env = Environment(
                loader=FileSystemLoader(str(directory)),
                autoescape=False,
                trim_blocks=True,
                lstrip_blocks=True,
                keep_trailing_newline=True,
                undefined=StrictUndefined,
            )
            self._environments[directory] = env
        return env

    def _load_template(self, dialect: Dialect):
        name = TEMPLATE_NAMES[dialect]
        for directory in self._candidates:
            if not (directory / name).is_file():
                continue
            try:
                return self._environment(directory).get_template(name)
            except TemplateNotFound:
                continue
        logger.error(
            "templates_unavailable",
            dialect=dialect.value,
            searched=[str(d) for d in self._candidates],
        )
        raise TemplatesUnavailable(
            f"No {dialect.value} template found",
            {"searched": [str(d) for d in self._candidates]},
        )

    def synthesize(
        self,
        descriptors: Sequence[ToolDescriptor],
        dialect: Dialect,
        *,
        intent: str | None = None,
        arguments: Mapping[str, Mapping[str, Any]] | None = None,
    ) -> CodeArtifact:
        """
        Produce a program that invokes every given tool once.

        Args:
            descriptors: Tools to wrap, in call order
            dialect: Target language
            intent: Natural-language request used for argument binding
            arguments: Explicit arguments per tool name

        Returns:
            Deterministic code artifact

        Raises:
            TemplatesUnavailable: If no template for the dialect can be found
        """
        template = self._load_template(dialect)
        arguments = arguments or {}
        intent = intent or ""

        reserved = PYTHON_RESERVED_NAMES if dialect is Dialect.PYTHON else TYPESCRIPT_RESERVED_NAMES
        allocator = _NameAllocator(reserved)
        tools = []
        calls = []
        examples: dict[str, list[dict[str, Any]]] = {}

        for descriptor in descriptors:
            identifier = allocator.allocate(self._identifier(descriptor.name, dialect))
            params = self._parameter_identifiers(descriptor, dialect, reserved | {identifier})
            bound = self._bind_arguments(descriptor, intent, arguments.get(descriptor.name, {}))

            if dialect is Dialect.PYTHON:
                tools.append(self._python_context(descriptor, identifier, params))
                call_args = {params[name]: value for name, value in bound.items()}
            else:
                tools.append(self._typescript_context(descriptor, identifier, params))
                call_args = bound

            calls.append({"tool": descriptor.name, "arguments": call_args})
            if descriptor.examples:
                examples[descriptor.name] = [
                    {"input": example.input, "output": example.output}
                    for example in descriptor.examples
                ]

        source = template.render(
            intent=_one_line(intent) or "ad-hoc request",
            calls_literal=_literal(calls),
            examples_literal=_literal(examples),
            tools=tools,
        )

        artifact = CodeArtifact(
            dialect=dialect,
            source=source,
            dependencies=extract_dependencies(source, dialect),
            estimated_cost=estimate_tokens(source),
            tools=tuple(d.name for d in descriptors),
            side_effects=frozenset(effect for d in descriptors for effect in d.side_effects),
        )
        logger.info(
            "artifact_synthesized",
            dialect=dialect.value,
            tools=list(artifact.tools),
            estimated_cost=artifact.estimated_cost,
            digest=artifact.digest[:12],
        )
        return artifact

    @staticmethod
    def _identifier(name: str, dialect: Dialect) -> str:
        if dialect is Dialect.PYTHON:
            return to_python_identifier(name)
        return to_typescript_identifier(name)

    def _parameter_identifiers(
        self,
        descriptor: ToolDescriptor,
        dialect: Dialect,
        reserved: frozenset[str],
    ) -> dict[str, str]:
        allocator = _NameAllocator(reserved)
        return {
            param.name: allocator.allocate(self._identifier(param.name, dialect))
            for param in descriptor.parameters
        }

    @staticmethod
    def _bind_arguments(
        descriptor: ToolDescriptor,
        intent: str,
        explicit: Mapping[str, Any],
    ) -> dict[str, Any]:
        """Resolve call arguments: explicit, default, example, intent, zero value."""
        example_input = descriptor.examples[0].input if descriptor.examples else {}
        intent_used = False
        bound: dict[str, Any] = {}

        for param in descriptor.parameters:
            if param.name in explicit:
                bound[param.name] = explicit[param.name]
            elif param.default is not None:
                bound[param.name] = param.default
            elif param.name in example_input:
                bound[param.name] = example_input[param.name]
            elif not param.required:
                continue
            elif param.type is ParameterType.STRING and intent and not intent_used:
                bound[param.name] = intent
                intent_used = True
            else:
                bound[param.name] = ZERO_VALUES[param.type]
        return bound

    @staticmethod
    def _ordered(descriptor: ToolDescriptor) -> list[ParameterSpec]:
        required = [p for p in descriptor.parameters if p.required and p.default is None]
        optional = [p for p in descriptor.parameters if not (p.required and p.default is None)]
        return required + optional

    def _python_context(
        self,
        descriptor: ToolDescriptor,
        identifier: str,
        params: dict[str, str],
    ) -> dict[str, Any]:
        signature = []
        for param in self._ordered(descriptor):
            annotation = PYTHON_TYPES[param.type]
            name = params[param.name]
            if param.required and param.default is None:
                signature.append(f"{name}: {annotation}")
            elif param.default is not None:
                signature.append(f"{name}: {annotation} = {_python_value(param.default)}")
            else:
                signature.append(f"{name}: Optional[{annotation}] = None")

        arguments = ", ".join(
            f"{json.dumps(p.name)}: {params[p.name]}" for p in descriptor.parameters
        )
        body = descriptor.implementation.get(Dialect.PYTHON)
        return {
            "identifier": identifier,
            "name_literal": json.dumps(descriptor.name),
            "signature": ", ".join(signature),
            "return_type": PYTHON_TYPES[descriptor.returns.type] if descriptor.returns else "Any",
            "doc": _python_doc(descriptor.description),
            "arguments_literal": "{" + arguments + "}",
            "body": textwrap.indent(textwrap.dedent(body).strip("\n"), "    ") if body else None,
        }

    def _typescript_context(
        self,
        descriptor: ToolDescriptor,
        identifier: str,
        params: dict[str, str],
    ) -> dict[str, Any]:
        ordered = self._ordered(descriptor)
        signature = []
        for param in ordered:
            annotation = TYPESCRIPT_TYPES[param.type]
            name = params[param.name]
            if param.required and param.default is None:
                signature.append(f"{name}: {annotation}")
            elif param.default is not None:
                signature.append(f"{name}: {annotation} = {json.dumps(param.default, sort_keys=True)}")
            else:
                signature.append(f"{name}?: {annotation}")

        arguments = ", ".join(
            f"{json.dumps(p.name)}: {params[p.name]}" for p in descriptor.parameters
        )
        dispatch = ", ".join(
            f"args[{json.dumps(p.name)}] as {TYPESCRIPT_TYPES[p.type]}" for p in ordered
        )
        body = descriptor.implementation.get(Dialect.TYPESCRIPT)
        return {
            "identifier": identifier,
            "name_literal": json.dumps(descriptor.name),
            "signature": ", ".join(signature),
            "return_type": TYPESCRIPT_TYPES[descriptor.returns.type] if descriptor.returns else "unknown",
            "doc": _typescript_doc(descriptor.description),
            "arguments_literal": "{ " + arguments + " }" if arguments else "{}",
            "dispatch_arguments": dispatch,
            "body": textwrap.indent(textwrap.dedent(body).strip("\n"), "  ") if body else None,
        }
