"""End-to-end tests for the execution orchestrator."""

from __future__ import annotations

import asyncio
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, Mock

import pytest

from toolexec.models.artifact import Dialect
from toolexec.models.audit import AuditKind, AuditSeverity
from toolexec.models.execution import SandboxLimits, SandboxTier
from toolexec.models.workspace import WorkspaceStatus
from toolexec.sandbox.sandbox_manager import SandboxManager
from toolexec.services.orchestrator import Orchestrator

CALCULATOR_TOOL = {
    "name": "calculator",
    "description": "Evaluate an arithmetic expression",
    "parameters": [{"name": "expression", "type": "string"}],
    "implementation": {"python": "return eval(expression)"},
}

SNAPSHOT_TOOL = {
    "name": "load_snapshot",
    "description": "Load a saved snapshot blob",
    "parameters": [{"name": "data", "type": "string"}],
    "implementation": {"python": "import pickle\nreturn pickle.loads(data)"},
}

SPIN_TOOL = {
    "name": "spin",
    "description": "Spin the processor in a busy loop",
    "parameters": [],
    "implementation": {"python": "while True:\n    pass"},
}

NAP_TOOL = {
    "name": "nap",
    "description": "Take a short nap by sleeping",
    "parameters": [],
    "implementation": {"python": "import time\ntime.sleep(30)\nreturn 'done'"},
}


@pytest.fixture
def stub_orchestrator(settings, stub_manager):
    return Orchestrator(settings, sandbox_manager=stub_manager)


@pytest.fixture
def real_orchestrator(settings):
    """Orchestrator with the real process and vm tiers."""
    return Orchestrator(settings)


def _execution_event(orchestrator: Orchestrator, execution_id: str):
    events = orchestrator.audit.query_logs(kind=AuditKind.EXECUTION, execution_id=execution_id)
    assert len(events) == 1
    return events[0]


class TestCachedExecution:
    """Repeated invocations reuse the cached result."""

    async def test_second_call_is_cached(self, stub_orchestrator, stub_adapter, write_tool, raw_tools) -> None:
        write_tool(raw_tools["echo"])

        first = await stub_orchestrator.execute("say hello", Dialect.TYPESCRIPT)
        second = await stub_orchestrator.execute("say hello", Dialect.TYPESCRIPT)

        assert first.success is True
        assert first.cached is False
        assert first.output == {"results": {"echo": "hello"}}
        assert first.tier is SandboxTier.PROCESS
        assert first.summary.startswith("Executed 1 tool(s).")

        assert second.success is True
        assert second.cached is True
        assert second.output == first.output
        assert second.metadata["cache_hit"] is True
        assert second.metadata["source_execution_id"] == first.execution_id
        assert second.execution_id != first.execution_id
        assert second.metrics.wall_ms < first.metrics.wall_ms
        assert len(stub_adapter.calls) == 1

        event = _execution_event(stub_orchestrator, second.execution_id)
        assert event.payload["cache_hit"] is True
        assert event.payload["executed"] is False
        assert _execution_event(stub_orchestrator, first.execution_id).payload["outcome"] == "completed"

    async def test_workspace_completed_and_released(self, stub_orchestrator, settings, write_tool, raw_tools) -> None:
        write_tool(raw_tools["echo"])

        await stub_orchestrator.execute("say hello")

        [workspace] = stub_orchestrator.workspaces.list_workspaces()
        assert workspace.status is WorkspaceStatus.COMPLETED
        assert not workspace.directory.exists()
        assert stub_orchestrator.cleanup.registered == ["workspaces"]


class TestFailures:
    """Every failure becomes a failed result."""

    async def test_no_relevant_tools(self, stub_orchestrator, stub_adapter, write_tool, raw_tools) -> None:
        write_tool(raw_tools["echo"])

        result = await stub_orchestrator.execute("xylophone quartz")

        assert result.success is False
        assert result.error == "no relevant tools"
        assert result.summary.startswith("No relevant tools found")
        assert stub_adapter.calls == []
        event = _execution_event(stub_orchestrator, result.execution_id)
        assert event.payload["executed"] is False

    async def test_security_refusal(self, stub_orchestrator, stub_adapter, write_tool) -> None:
        write_tool(CALCULATOR_TOOL)

        result = await stub_orchestrator.execute("evaluate an arithmetic expression", Dialect.PYTHON)

        assert result.success is False
        assert result.error == "security: refused"
        assert result.summary.startswith("Security: execution refused")
        assert stub_adapter.calls == []
        assert stub_orchestrator.workspaces.list_workspaces() == []

        [security] = stub_orchestrator.audit.query_logs(kind=AuditKind.SECURITY, execution_id=result.execution_id)
        assert security.severity is AuditSeverity.CRITICAL
        assert security.payload["outcome"] == "refused"
        assert "dynamic_evaluation" in security.payload["issues"]

    async def test_approval_denied(self, settings, stub_manager, stub_adapter, write_tool) -> None:
        write_tool(SNAPSHOT_TOOL)
        approver = AsyncMock(return_value=False)
        orchestrator = Orchestrator(settings, sandbox_manager=stub_manager, approver=approver)

        result = await orchestrator.execute("load the saved snapshot", Dialect.PYTHON)

        assert result.error == "security: refused"
        approver.assert_awaited_once()
        assert stub_adapter.calls == []
        stages = [
            e.payload["stage"]
            for e in orchestrator.audit.query_logs(kind=AuditKind.SECURITY, execution_id=result.execution_id)
        ]
        assert sorted(stages) == ["approval", "validation"]

    async def test_approved_artifact_needs_container(self, settings, stub_manager, stub_adapter, write_tool) -> None:
        write_tool(SNAPSHOT_TOOL)
        orchestrator = Orchestrator(settings, sandbox_manager=stub_manager, approver=AsyncMock(return_value=True))

        result = await orchestrator.execute("load the saved snapshot", Dialect.PYTHON)

        assert result.success is False
        assert result.error == "sandbox unavailable"
        assert result.risk_level is not None and result.risk_level.value == "high"
        assert stub_adapter.calls == []
        [workspace] = orchestrator.workspaces.list_workspaces()
        assert workspace.status is WorkspaceStatus.FAILED

    async def test_templates_unavailable(self, settings, stub_manager, write_tool, raw_tools, tmp_path, monkeypatch) -> None:
        monkeypatch.setattr("toolexec.services.code_synthesizer.PACKAGE_TEMPLATE_DIR", tmp_path / "none")
        monkeypatch.chdir(tmp_path)
        write_tool(raw_tools["echo"])
        orchestrator = Orchestrator(settings, sandbox_manager=stub_manager)

        result = await orchestrator.execute("say hello")

        assert result.success is False
        assert result.error == "templates unavailable"
        [error] = orchestrator.audit.query_logs(kind=AuditKind.ERROR, execution_id=result.execution_id)
        assert error.payload["kind"] == "templates_unavailable"

    async def test_sandbox_failure_is_not_cached(self, settings, adapter_factory, write_tool, raw_tools) -> None:
        failing = adapter_factory(exit_code=1)
        orchestrator = Orchestrator(settings, sandbox_manager=SandboxManager([failing]))
        write_tool(raw_tools["echo"])

        first = await orchestrator.execute("say hello")
        second = await orchestrator.execute("say hello")

        assert first.success is False
        assert first.error == "boom"
        assert second.cached is False
        assert len(failing.calls) == 2

    async def test_bad_descriptor_file_does_not_break_execute(self, stub_orchestrator, write_tool, raw_tools) -> None:
        write_tool(raw_tools["echo"])
        write_tool({**raw_tools["echo"], "name": "loud_echo", "examples": [{"input": "hello"}]}, filename="loud.json")

        result = await stub_orchestrator.execute("say hello")

        assert result.success is True, result.error
        assert stub_orchestrator.initialized is True
        assert "loud_echo" not in stub_orchestrator.registry

    async def test_initialization_error_becomes_failed_result(self, stub_orchestrator, stub_adapter) -> None:
        stub_orchestrator.registry.index_from = Mock(side_effect=OSError("tools directory unreadable"))

        result = await stub_orchestrator.execute("say hello")

        assert result.success is False
        assert "tools directory unreadable" in result.error
        assert stub_adapter.calls == []
        event = _execution_event(stub_orchestrator, result.execution_id)
        assert event.payload["executed"] is False


class TestRealSandboxes:
    """Runs against real child interpreters."""

    async def test_timeout(self, real_orchestrator, write_tool) -> None:
        write_tool(SPIN_TOOL)
        limits = SandboxLimits(wall_ms=100)
        # first run pays for indexing and template loading
        await real_orchestrator.execute("spin the processor", Dialect.PYTHON, limits=limits)

        started = time.perf_counter()
        result = await real_orchestrator.execute("spin the processor", Dialect.PYTHON, limits=limits)
        elapsed = time.perf_counter() - started

        assert result.success is False
        assert result.error == "timeout"
        assert result.tier is SandboxTier.PROCESS
        assert elapsed < 0.15
        assert len(real_orchestrator.cache) == 0
        workspaces = real_orchestrator.workspaces.list_workspaces()
        assert len(workspaces) == 2
        assert all(w.status is WorkspaceStatus.FAILED for w in workspaces)

    async def test_pii_is_tokenized(self, real_orchestrator, write_tool, raw_tools) -> None:
        write_tool(raw_tools["echo"])

        result = await real_orchestrator.execute(
            "repeat a message",
            Dialect.PYTHON,
            arguments={"echo": {"text": "Contact alice@example.com, 555-123-4567"}},
        )

        assert result.success is True, result.error
        assert result.output == {"results": {"echo": "Contact [EMAIL_1], [PHONE_1]"}}
        assert result.pii_redacted is True
        assert "alice@example.com" not in result.summary
        assert "[EMAIL_1]" in result.summary
        assert _execution_event(real_orchestrator, result.execution_id).payload["pii_redacted"] is True

    async def test_cancel_event_aborts_run(self, real_orchestrator, write_tool) -> None:
        write_tool(NAP_TOOL)
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.5, cancel.set)

        result = await real_orchestrator.execute("take a nap", Dialect.PYTHON, cancel_event=cancel)

        assert result.success is False
        assert len(real_orchestrator.cache) == 0
        assert _execution_event(real_orchestrator, result.execution_id).payload["outcome"] == "cancelled"


class TestConcurrency:
    """Shared state under concurrent invocations."""

    async def test_task_cancellation_propagates(self, settings, adapter_factory, write_tool, raw_tools) -> None:
        slow = adapter_factory(delay=5.0)
        orchestrator = Orchestrator(settings, sandbox_manager=SandboxManager([slow]))
        write_tool(raw_tools["echo"])

        task = asyncio.create_task(orchestrator.execute("say hello"))
        for _ in range(200):
            if slow.calls:
                break
            await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        [workspace] = orchestrator.workspaces.list_workspaces()
        assert workspace.status is WorkspaceStatus.FAILED
        errors = orchestrator.audit.query_logs(kind=AuditKind.ERROR)
        assert [e.payload["error"] for e in errors] == ["cancelled"]
        assert orchestrator.cleanup.registered == ["workspaces"]

    async def test_concurrent_tasks(self, stub_orchestrator, write_tool, raw_tools) -> None:
        write_tool(raw_tools["echo"])

        results = await asyncio.gather(*(stub_orchestrator.execute("say hello") for _ in range(5)))

        assert all(r.success for r in results)
        assert len({r.execution_id for r in results}) == 5

    def test_threads_share_one_orchestrator(self, stub_orchestrator, write_tool, raw_tools) -> None:
        write_tool(raw_tools["echo"])
        stub_orchestrator.initialize()

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(lambda _: stub_orchestrator.execute_sync("say hello"), range(8)))

        assert all(r.success for r in results)
        assert stub_orchestrator.get_stats()["executions"] == 8
        sequences = [e.sequence for e in stub_orchestrator.audit.recent(1000)]
        assert sequences == sorted(set(sequences))
        assert len(stub_orchestrator.audit.query_logs(kind=AuditKind.EXECUTION, limit=100)) == 8


class TestLifecycle:
    async def test_compliance_after_mixed_runs(self, stub_orchestrator, write_tool, raw_tools) -> None:
        write_tool(raw_tools["echo"])
        write_tool(CALCULATOR_TOOL)
        start = datetime.now(UTC) - timedelta(minutes=1)

        assert (await stub_orchestrator.execute("say hello")).success is True
        refused = await stub_orchestrator.execute("evaluate an arithmetic expression", Dialect.PYTHON)
        assert refused.error == "security: refused"

        report = stub_orchestrator.compliance.generate(start)

        assert report.metrics["executions"] == 2
        assert report.metrics["refusals"] == 1
        assert report.compliant is True

    async def test_start_and_shutdown(self, stub_orchestrator, write_tool, raw_tools) -> None:
        write_tool(raw_tools["echo"])

        await stub_orchestrator.start()
        assert stub_orchestrator.initialized is True
        await stub_orchestrator.execute("say hello")
        await stub_orchestrator.shutdown()

        assert stub_orchestrator.cleanup.registered == []
        assert stub_orchestrator.workspaces.list_workspaces() == []

    def test_register_tool_rebuilds_discovery(self, stub_orchestrator, echo_descriptor) -> None:
        stub_orchestrator.initialize()
        assert len(stub_orchestrator.discovery) == 0

        stub_orchestrator.register_tool(echo_descriptor)

        assert len(stub_orchestrator.discovery) == 1
        assert stub_orchestrator.execute_sync("say hello").success is True

    def test_stats(self, stub_orchestrator, write_tool, raw_tools) -> None:
        write_tool(raw_tools["echo"])
        report = stub_orchestrator.initialize()

        stats = stub_orchestrator.get_stats()

        assert report is not None
        assert stats["executions"] == 0
        assert stats["discovery"] == {"tools": 1}
        assert {"cache", "workspaces", "audit", "anomalies", "approvals", "sandbox", "cleanup"} <= set(stats)

    def test_refresh_tools_picks_up_new_files(self, stub_orchestrator, write_tool, raw_tools) -> None:
        write_tool(raw_tools["echo"])
        stub_orchestrator.initialize()
        write_tool(CALCULATOR_TOOL)

        report = stub_orchestrator.refresh_tools()

        assert report.descriptors_loaded == 2
        assert len(stub_orchestrator.discovery) == 2
        assert "calculator" in stub_orchestrator.registry
