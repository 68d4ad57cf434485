"""Shared fixtures for the tool execution engine tests."""

from __future__ import annotations

import asyncio
import json
from asyncio import Event
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from toolexec.config.settings import EngineSettings
from toolexec.models.artifact import CodeArtifact, Dialect
from toolexec.models.execution import ExecutionResult, SandboxLimits, SandboxTier
from toolexec.models.tool import ToolDescriptor
from toolexec.sandbox.base import SandboxAdapter
from toolexec.sandbox.sandbox_manager import SandboxManager
from toolexec.services.tool_registry import normalize_descriptor

ECHO_TOOL: dict[str, Any] = {
    "name": "echo",
    "description": "Echo the input text back. Handy to say hello or repeat a message.",
    "category": "utility",
    "parameters": [{"name": "text", "type": "string", "description": "Text to repeat"}],
    "returns": "string",
    "implementation": {"python": "return text", "typescript": "return text;"},
}

HTTP_GET_TOOL: dict[str, Any] = {
    "name": "http_get",
    "description": "Fetch a web page or other resource over HTTP using GET",
    "category": "network",
    "parameters": {
        "url": {"type": "string", "description": "Address to fetch"},
        "headers": {"type": "object", "required": False},
    },
    "returns": {"type": "string", "description": "Response body"},
}

HTTP_POST_TOOL: dict[str, Any] = {
    "name": "http_post",
    "description": "Submit a form to a web page over HTTP using POST",
    "category": "network",
    "parameters": {
        "url": {"type": "string"},
        "body": {"type": "object"},
    },
}

FILE_READ_TOOL: dict[str, Any] = {
    "name": "file_read",
    "description": "Read the contents of a file from local disk",
    "category": "filesystem",
    "parameters": [{"name": "path", "type": "string"}],
    "returns": "string",
}


class StubAdapter(SandboxAdapter):
    """In-process adapter returning a fixed payload after an optional delay."""

    tier = SandboxTier.PROCESS

    def __init__(
        self,
        output: Any = None,
        delay: float = 0.0,
        exit_code: int = 0,
        tier: SandboxTier = SandboxTier.PROCESS,
        dialects: tuple[Dialect, ...] = tuple(Dialect),
    ) -> None:
        super().__init__()
        self.tier = tier
        self.dialects = dialects
        self.output = output
        self.delay = delay
        self.exit_code = exit_code
        self.calls: list[CodeArtifact] = []
        self.limits: list[SandboxLimits] = []

    def supports(self, dialect: Dialect) -> bool:
        return dialect in self.dialects

    async def _run(
        self,
        artifact: CodeArtifact,
        script: Path,
        limits: SandboxLimits,
        cancel_event: Event | None,
    ) -> ExecutionResult:
        self.calls.append(artifact)
        self.limits.append(limits)
        if self.delay:
            await asyncio.sleep(self.delay)
        stdout = json.dumps(self.output if self.output is not None else {"results": {}})
        return self._build_result(
            exit_code=self.exit_code,
            stdout=stdout,
            stderr="" if self.exit_code == 0 else "boom",
            wall_ms=self.delay * 1000,
            memory_bytes=1024,
        )


@pytest.fixture
def tools_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "tools"
    directory.mkdir()
    return directory


@pytest.fixture
def write_tool(tools_dir: Path) -> Callable[..., Path]:
    """Write one descriptor (or a list of them) as a JSON file."""

    def _write(data: dict[str, Any] | list[dict[str, Any]], filename: str | None = None) -> Path:
        if filename is None:
            first = data[0] if isinstance(data, list) else data
            filename = f"{first.get('name', 'tool')}.json"
        path = tools_dir / filename
        path.write_text(json.dumps(data), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def settings(tmp_path: Path, tools_dir: Path) -> EngineSettings:
    """Settings isolated under tmp_path with signal handlers and containers off."""
    return EngineSettings(
        _env_file=None,
        tools_directory=tools_dir,
        workspace_base_dir=tmp_path / "workspaces",
        audit_log_path=tmp_path / "audit" / "audit.jsonl",
        install_signal_handlers=False,
        container_enabled=False,
    )


@pytest.fixture
def stub_adapter() -> StubAdapter:
    return StubAdapter(output={"results": {"echo": "hello"}}, delay=0.2)


@pytest.fixture
def adapter_factory() -> type[StubAdapter]:
    return StubAdapter


@pytest.fixture
def stub_manager(stub_adapter: StubAdapter) -> SandboxManager:
    return SandboxManager([stub_adapter])


@pytest.fixture
def echo_descriptor() -> ToolDescriptor:
    return normalize_descriptor(ECHO_TOOL)


@pytest.fixture
def web_descriptors() -> list[ToolDescriptor]:
    return [normalize_descriptor(raw) for raw in (HTTP_GET_TOOL, HTTP_POST_TOOL, FILE_READ_TOOL)]


@pytest.fixture
def raw_tools() -> dict[str, dict[str, Any]]:
    """Raw descriptor mappings keyed by tool name; fresh copies per test."""
    return {
        raw["name"]: json.loads(json.dumps(raw))
        for raw in (ECHO_TOOL, HTTP_GET_TOOL, HTTP_POST_TOOL, FILE_READ_TOOL)
    }
