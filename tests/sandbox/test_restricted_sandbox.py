"""Tests for the vm-tier RestrictedPython sandbox."""

from __future__ import annotations

import sys

import pytest

from toolexec.models.artifact import CodeArtifact, Dialect
from toolexec.models.execution import SandboxLimits, SandboxTier
from toolexec.sandbox import restricted_runner
from toolexec.sandbox.restricted_sandbox import RestrictedSandbox
from toolexec.services.code_synthesizer import CodeSynthesizer


@pytest.fixture
def sandbox() -> RestrictedSandbox:
    return RestrictedSandbox(python_command=[sys.executable, "-I", "-B"])


def _python(source: str) -> CodeArtifact:
    return CodeArtifact(dialect=Dialect.PYTHON, source=source)


class TestRestrictedRunner:
    """Run the guarded interpreter in-process."""

    def test_runs_plain_code(self, tmp_path, capsys) -> None:
        script = tmp_path / "artifact.py"
        script.write_text("import json\ntotal = 0\nfor n in [1, 2, 3]:\n    total += n\nprint(json.dumps({'total': total}))\n")

        assert restricted_runner.main(["runner", str(script)]) == 0
        assert capsys.readouterr().out.strip() == '{"total": 6}'

    def test_disallowed_import(self, tmp_path, capsys) -> None:
        script = tmp_path / "artifact.py"
        script.write_text("import os\nprint(os.getcwd())\n")

        assert restricted_runner.main(["runner", str(script)]) == 1
        assert "not allowed" in capsys.readouterr().err

    def test_dunder_access_rejected_at_compile_time(self, tmp_path, capsys) -> None:
        script = tmp_path / "artifact.py"
        script.write_text("print(().__class__.__bases__)\n")

        assert restricted_runner.main(["runner", str(script)]) == 2
        assert "restricted compile rejected" in capsys.readouterr().err

    def test_usage(self, capsys) -> None:
        assert restricted_runner.main(["runner"]) == 2


class TestRestrictedSandbox:
    """Test the vm tier end to end."""

    def test_supports_python_only(self, sandbox) -> None:
        assert sandbox.tier is SandboxTier.VM
        assert sandbox.supports(Dialect.PYTHON) is True
        assert sandbox.supports(Dialect.TYPESCRIPT) is False

    async def test_runs_synthesized_wrapper(self, sandbox, echo_descriptor, web_descriptors) -> None:
        artifact = CodeSynthesizer().synthesize(
            [echo_descriptor, *web_descriptors],
            Dialect.PYTHON,
            intent="say hello",
            arguments={"http_get": {"url": "https://example.com"}},
        )

        result = await sandbox.execute(artifact, SandboxLimits())

        assert result.success is True, result.error
        results = result.output["results"]
        assert results["echo"] == "say hello"
        assert results["http_get"] == {"tool": "http_get", "arguments": {"url": "https://example.com"}}
        assert result.tier is SandboxTier.VM

    async def test_guarded_import_fails_run(self, sandbox) -> None:
        result = await sandbox.execute(_python("import socket\n"), SandboxLimits())

        assert result.success is False
        assert result.metadata["exit_code"] == 1
        assert "not allowed" in result.error

    async def test_timeout(self, sandbox) -> None:
        result = await sandbox.execute(_python("while True:\n    pass\n"), SandboxLimits(wall_ms=300))
        assert result.error == "timeout"
