"""Process-tier sandbox: a separate interpreter under OS resource limits."""

import asyncio
import math
import os
import resource
import signal
import time
from asyncio import Event
from collections.abc import Iterable
from pathlib import Path

import psutil
import structlog

from ..models.artifact import CodeArtifact, Dialect
from ..models.execution import ExecutionResult, SandboxLimits, SandboxTier
from .base import DEFAULT_OUTPUT_MAX_BYTES, SandboxAdapter

logger = structlog.get_logger()

DEFAULT_PYTHON_COMMAND = ["python3", "-I", "-B"]
DEFAULT_TYPESCRIPT_COMMAND = [
    "node",
    "--experimental-strip-types",
    "--disable-warning=ExperimentalWarning",
]
REAP_TIMEOUT_SECONDS = 5.0


def kill_process_group(pid: int) -> None:
    """SIGKILL a child's whole process group; missing groups are ignored."""
    try:
        os.killpg(pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        logger.debug("process_group_already_gone", pid=pid)


class MemoryMonitor:
    """Samples a process tree's RSS and kills it when over the limit."""

    def __init__(self, pid: int, limit_bytes: int, interval: float = 0.02) -> None:
        self.pid = pid
        self.limit_bytes = limit_bytes
        self.interval = interval
        self.peak_bytes = 0
        self.exceeded = False

    def sample(self) -> int:
        try:
            root = psutil.Process(self.pid)
            processes = [root, *root.children(recursive=True)]
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            return 0
        total = 0
        for process in processes:
            try:
                total += process.memory_info().rss
            except (psutil.NoSuchProcess, psutil.ZombieProcess, psutil.AccessDenied):
                continue
        return total

    async def run(self) -> None:
        while True:
            rss = self.sample()
            self.peak_bytes = max(self.peak_bytes, rss)
            if rss > self.limit_bytes:
                self.exceeded = True
                logger.warning(
                    "sandbox_memory_exceeded",
                    pid=self.pid,
                    rss=rss,
                    limit=self.limit_bytes,
                )
                kill_process_group(self.pid)
                return
            await asyncio.sleep(self.interval)


class ProcessSandbox(SandboxAdapter):
    """Runs artifacts as child interpreters in their own session."""

    tier = SandboxTier.PROCESS

    def __init__(
        self,
        python_command: list[str] | None = None,
        typescript_command: list[str] | None = None,
        env_passthrough: Iterable[str] = (),
        output_max_bytes: int = DEFAULT_OUTPUT_MAX_BYTES,
        cleanup_manager=None,
        monitor_interval: float = 0.02,
    ) -> None:
        """
        Initialize process sandbox.

        Args:
            python_command: Interpreter command for Python artifacts
            typescript_command: Interpreter command for TypeScript artifacts
            env_passthrough: Host environment variables copied into the child
            output_max_bytes: Cap on raw (non-JSON) output
            cleanup_manager: Optional CleanupManager for interrupt-time teardown
            monitor_interval: Seconds between memory samples
        """
        super().__init__(output_max_bytes)
        self._python_command = list(python_command or DEFAULT_PYTHON_COMMAND)
        self._typescript_command = list(typescript_command or DEFAULT_TYPESCRIPT_COMMAND)
        self._env_passthrough = list(env_passthrough)
        self._cleanup_manager = cleanup_manager
        self._monitor_interval = monitor_interval

    def supports(self, dialect: Dialect) -> bool:
        return True

    def _command(self, artifact: CodeArtifact, script: Path, limits: SandboxLimits) -> list[str]:
        if artifact.dialect is Dialect.PYTHON:
            return [*self._python_command, str(script)]
        heap_mb = max(16, limits.memory_bytes // (1024 * 1024))
        node, *flags = self._typescript_command
        return [node, f"--max-old-space-size={heap_mb}", *flags, str(script)]

    def _environment(self, workspace_dir: Path) -> dict[str, str]:
        env = {
            "PATH": os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin"),
            "HOME": str(workspace_dir),
            "TMPDIR": str(workspace_dir),
            "LANG": "C.UTF-8",
            "PYTHONIOENCODING": "utf-8",
            "PYTHONDONTWRITEBYTECODE": "1",
            "NODE_NO_WARNINGS": "1",
        }
        for name in self._env_passthrough:
            if name in os.environ:
                env[name] = os.environ[name]
        return env

    @staticmethod
    def _apply_rlimits(pid: int, dialect: Dialect, limits: SandboxLimits) -> None:
        if not hasattr(resource, "prlimit"):
            logger.debug("rlimits_unavailable", pid=pid)
            return
        cpu_seconds = max(1, math.ceil(limits.timeout_seconds * limits.cpu_share))
        try:
            resource.prlimit(pid, resource.RLIMIT_CPU, (cpu_seconds, cpu_seconds + 1))
            if dialect is Dialect.PYTHON:
                # V8 reserves large virtual ranges, so Node gets a heap flag instead
                resource.prlimit(
                    pid, resource.RLIMIT_AS, (limits.memory_bytes, limits.memory_bytes)
                )
        except (OSError, ValueError) as e:
            logger.debug("rlimits_not_applied", pid=pid, error=str(e))

    async def _run(
        self,
        artifact: CodeArtifact,
        script: Path,
        limits: SandboxLimits,
        cancel_event: Event | None,
    ) -> ExecutionResult:
        command = self._command(artifact, script, limits)
        start = time.perf_counter()

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(script.parent),
                env=self._environment(script.parent),
                start_new_session=True,
            )
        except OSError as e:
            logger.error("sandbox_spawn_failed", tier=self.tier.value, command=command[0], error=str(e))
            return self._build_result(
                exit_code=None,
                stdout="",
                stderr="",
                wall_ms=(time.perf_counter() - start) * 1000,
                memory_bytes=0,
                error=f"interpreter unavailable: {command[0]}",
            )

        pid = process.pid
        self._apply_rlimits(pid, artifact.dialect, limits)
        resource_id = f"{self.tier.value}-process:{pid}"
        if self._cleanup_manager is not None:
            self._cleanup_manager.register(resource_id, lambda: kill_process_group(pid))

        logger.debug("sandbox_started", tier=self.tier.value, pid=pid, wall_ms=limits.wall_ms)

        monitor = MemoryMonitor(pid, limits.memory_bytes, self._monitor_interval)
        monitor_task = asyncio.create_task(monitor.run())
        communicate = asyncio.ensure_future(process.communicate())
        cancel_wait = asyncio.ensure_future(cancel_event.wait()) if cancel_event else None
        timed_out = False

        try:
            waiters = {communicate, cancel_wait} if cancel_wait else {communicate}
            done, _ = await asyncio.wait(
                waiters,
                timeout=max(0.0, limits.timeout_seconds - (time.perf_counter() - start)),
                return_when=asyncio.FIRST_COMPLETED,
            )
            if communicate not in done:
                timed_out = True
                reason = "cancelled" if cancel_wait in done else "wall_clock"
                logger.warning("sandbox_timeout", tier=self.tier.value, pid=pid, reason=reason)
                kill_process_group(pid)

            stdout_bytes, stderr_bytes = await communicate
            wall_ms = (time.perf_counter() - start) * 1000
        finally:
            monitor_task.cancel()
            await asyncio.gather(monitor_task, return_exceptions=True)
            if cancel_wait is not None:
                cancel_wait.cancel()
            if process.returncode is None:
                kill_process_group(pid)
                try:
                    await asyncio.wait_for(process.wait(), timeout=REAP_TIMEOUT_SECONDS)
                except TimeoutError:
                    logger.error("sandbox_reap_timeout", pid=pid)
            if not communicate.done():
                communicate.cancel()
            if self._cleanup_manager is not None:
                self._cleanup_manager.unregister(resource_id)

        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        error = None
        if monitor.exceeded and not timed_out:
            error = "memory limit exceeded"

        logger.debug(
            "sandbox_finished",
            tier=self.tier.value,
            pid=pid,
            exit_code=process.returncode,
            wall_ms=round(wall_ms, 2),
            timed_out=timed_out,
        )
        return self._build_result(
            exit_code=process.returncode,
            stdout=stdout,
            stderr=stderr,
            wall_ms=wall_ms,
            memory_bytes=monitor.peak_bytes,
            timed_out=timed_out,
            error=error,
        )
