"""VM-tier sandbox: RestrictedPython namespace inside a limited child process."""

from pathlib import Path

from ..models.artifact import CodeArtifact, Dialect
from ..models.execution import SandboxLimits, SandboxTier
from .process_sandbox import ProcessSandbox

RUNNER_PATH = Path(__file__).resolve().with_name("restricted_runner.py")


class RestrictedSandbox(ProcessSandbox):
    """
    Interprets Python artifacts in a guarded namespace.

    The artifact is compiled with RestrictedPython and run with guarded
    imports, attribute and item access, so it cannot reach interpreter
    internals even before OS limits apply. Only Python is supported; the
    sandbox manager escalates other dialects to a stronger tier.
    """

    tier = SandboxTier.VM

    def supports(self, dialect: Dialect) -> bool:
        return dialect is Dialect.PYTHON

    def _command(self, artifact: CodeArtifact, script: Path, limits: SandboxLimits) -> list[str]:
        if artifact.dialect is not Dialect.PYTHON:
            raise ValueError(f"{self.tier.value} tier cannot run {artifact.dialect.value}")
        return [*self._python_command, str(RUNNER_PATH), str(script)]
