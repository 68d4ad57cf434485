"""
Container-tier sandbox.

Runs artifacts in throwaway Docker containers through aiodocker: no network
unless hosts are allowlisted, read-only root filesystem, dropped
capabilities, memory, CPU and pids limits. Containers are always
force-removed, and carry labels so orphans can be reaped later.
"""

import asyncio
import time
from asyncio import Event
from collections.abc import Callable
from pathlib import Path
from typing import Any
from uuid import uuid4

import aiodocker
import docker
import structlog
from aiodocker.exceptions import DockerError

from ..models.artifact import CodeArtifact, Dialect
from ..models.execution import ExecutionResult, NetworkMode, SandboxLimits, SandboxTier
from .base import DEFAULT_OUTPUT_MAX_BYTES, SandboxAdapter

logger = structlog.get_logger()

SANDBOX_LABEL = "toolexec.sandbox"
CREATED_LABEL = "toolexec.created"
WORKSPACE_MOUNT = "/workspace"
REMOVE_TIMEOUT_SECONDS = 10.0


def remove_container_sync(name: str) -> None:
    """
    Force-remove a container using the synchronous docker SDK.

    Used from signal handlers, where no event loop can be relied on.
    """
    try:
        client = docker.from_env()
    except docker.errors.DockerException as e:
        logger.warning("docker_unavailable_for_cleanup", container=name, error=str(e))
        return
    try:
        client.containers.get(name).remove(force=True)
        logger.info("container_removed_emergency", container=name)
    except docker.errors.NotFound:
        logger.debug("container_already_removed", container=name)
    except docker.errors.APIError as e:
        logger.error("container_emergency_remove_failed", container=name, error=str(e))
    finally:
        client.close()


class ContainerMemoryMonitor:
    """Tracks a container's peak memory from the Docker stats endpoint."""

    def __init__(self, container: Any, interval: float = 0.25) -> None:
        self.container = container
        self.interval = interval
        self.peak_bytes = 0

    async def sample(self) -> int:
        try:
            stats = await self.container.stats(stream=False)
        except DockerError as e:
            logger.debug("container_stats_failed", error=str(e))
            return 0
        usage = 0
        for entry in stats if isinstance(stats, list) else [stats]:
            # exited containers report an empty memory_stats; cgroup v2 has no max_usage
            memory = entry.get("memory_stats") or {}
            usage = max(usage, int(memory.get("max_usage") or memory.get("usage") or 0))
        self.peak_bytes = max(self.peak_bytes, usage)
        return usage

    async def run(self) -> None:
        while True:
            await self.sample()
            await asyncio.sleep(self.interval)


class ContainerSandbox(SandboxAdapter):
    """Runs artifacts inside short-lived Docker containers."""

    tier = SandboxTier.CONTAINER

    def __init__(
        self,
        python_image: str = "python:3.12-alpine",
        typescript_image: str = "node:22-alpine",
        pids_limit: int = 64,
        output_max_bytes: int = DEFAULT_OUTPUT_MAX_BYTES,
        cleanup_manager=None,
        docker_factory: Callable[[], aiodocker.Docker] = aiodocker.Docker,
        stats_interval: float = 0.25,
    ) -> None:
        """
        Initialize container sandbox.

        Args:
            python_image: Image for Python artifacts
            typescript_image: Image for TypeScript artifacts
            pids_limit: Maximum processes inside the container
            output_max_bytes: Cap on raw (non-JSON) output
            cleanup_manager: Optional CleanupManager for interrupt-time teardown
            docker_factory: Builds the aiodocker client
            stats_interval: Seconds between memory samples while running
        """
        super().__init__(output_max_bytes)
        self._images = {Dialect.PYTHON: python_image, Dialect.TYPESCRIPT: typescript_image}
        self._pids_limit = pids_limit
        self._cleanup_manager = cleanup_manager
        self._docker_factory = docker_factory
        self._stats_interval = stats_interval
        self._active: set[str] = set()

    def supports(self, dialect: Dialect) -> bool:
        return dialect in self._images

    @property
    def active_containers(self) -> set[str]:
        return set(self._active)

    def _command(self, artifact: CodeArtifact, limits: SandboxLimits) -> list[str]:
        script = f"{WORKSPACE_MOUNT}/{artifact.filename}"
        if artifact.dialect is Dialect.PYTHON:
            return ["python", "-I", "-B", script]
        heap_mb = max(16, limits.memory_bytes // (1024 * 1024))
        return [
            "node",
            f"--max-old-space-size={heap_mb}",
            "--experimental-strip-types",
            "--disable-warning=ExperimentalWarning",
            script,
        ]

    def container_config(
        self,
        artifact: CodeArtifact,
        workspace_dir: Path,
        limits: SandboxLimits,
    ) -> dict[str, Any]:
        """Docker create payload for one run."""
        isolated = (
            limits.network_policy.mode is NetworkMode.NONE
            or not limits.network_policy.allowed_hosts
        )
        return {
            "Image": self._images[artifact.dialect],
            "Cmd": self._command(artifact, limits),
            "WorkingDir": WORKSPACE_MOUNT,
            "User": "65534:65534",
            "Env": ["HOME=/tmp", "PYTHONDONTWRITEBYTECODE=1", "NODE_NO_WARNINGS=1"],
            "NetworkDisabled": isolated,
            "Labels": {SANDBOX_LABEL: "true", CREATED_LABEL: str(int(time.time()))},
            "HostConfig": {
                "Binds": [f"{workspace_dir.resolve()}:{WORKSPACE_MOUNT}:ro"],
                "Memory": limits.memory_bytes,
                "MemorySwap": limits.memory_bytes,
                "NanoCpus": int(limits.cpu_share * 1_000_000_000),
                "PidsLimit": self._pids_limit,
                "NetworkMode": "none" if isolated else "bridge",
                "ReadonlyRootfs": True,
                "Tmpfs": {"/tmp": "rw,noexec,nosuid,size=64m"},
                "CapDrop": ["ALL"],
                "SecurityOpt": ["no-new-privileges"],
                "AutoRemove": False,
            },
        }

    async def _run(
        self,
        artifact: CodeArtifact,
        script: Path,
        limits: SandboxLimits,
        cancel_event: Event | None,
    ) -> ExecutionResult:
        name = f"toolexec-{uuid4().hex[:12]}"
        start = time.perf_counter()
        client = self._docker_factory()
        container = None
        monitor: ContainerMemoryMonitor | None = None
        timed_out = False
        exit_code: int | None = None
        stdout = stderr = ""

        try:
            try:
                container = await client.containers.create(
                    config=self.container_config(artifact, script.parent, limits),
                    name=name,
                )
            except DockerError as e:
                logger.error("container_create_failed", container=name, error=str(e))
                return self._build_result(
                    exit_code=None,
                    stdout="",
                    stderr="",
                    wall_ms=(time.perf_counter() - start) * 1000,
                    memory_bytes=0,
                    error=f"container unavailable: {e}",
                )

            self._active.add(name)
            if self._cleanup_manager is not None:
                self._cleanup_manager.register(f"container:{name}", lambda: remove_container_sync(name))

            await container.start()
            logger.debug("container_started", container=name, image=self._images[artifact.dialect])

            monitor = ContainerMemoryMonitor(container, self._stats_interval)
            monitor_task = asyncio.create_task(monitor.run())
            wait_task = asyncio.ensure_future(container.wait())
            cancel_wait = asyncio.ensure_future(cancel_event.wait()) if cancel_event else None
            try:
                waiters = {wait_task, cancel_wait} if cancel_wait else {wait_task}
                done, _ = await asyncio.wait(
                    waiters,
                    timeout=limits.timeout_seconds,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if wait_task in done:
                    exit_code = wait_task.result().get("StatusCode")
                else:
                    timed_out = True
                    logger.warning("sandbox_timeout", tier=self.tier.value, container=name)
                    try:
                        await container.kill()
                    except DockerError as e:
                        logger.debug("container_kill_failed", container=name, error=str(e))
            finally:
                monitor_task.cancel()
                await asyncio.gather(monitor_task, return_exceptions=True)
                for task in (wait_task, cancel_wait):
                    if task is not None and not task.done():
                        task.cancel()

            wall_ms = (time.perf_counter() - start) * 1000
            await monitor.sample()
            stdout = "".join(await container.log(stdout=True, stderr=False))
            stderr = "".join(await container.log(stdout=False, stderr=True))
        except DockerError as e:
            logger.error("container_run_failed", container=name, error=str(e))
            return self._build_result(
                exit_code=exit_code,
                stdout=stdout,
                stderr=stderr,
                wall_ms=(time.perf_counter() - start) * 1000,
                memory_bytes=monitor.peak_bytes if monitor else 0,
                error=f"container error: {e}",
            )
        finally:
            if container is not None:
                try:
                    await asyncio.wait_for(container.delete(force=True), REMOVE_TIMEOUT_SECONDS)
                except (DockerError, TimeoutError) as e:
                    logger.error("container_remove_failed", container=name, error=str(e))
                self._active.discard(name)
                if self._cleanup_manager is not None:
                    self._cleanup_manager.unregister(f"container:{name}")
            await client.close()

        return self._build_result(
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            wall_ms=wall_ms,
            memory_bytes=monitor.peak_bytes,
            timed_out=timed_out,
        )

    def emergency_cleanup(self) -> None:
        """Synchronously remove every container this sandbox still tracks."""
        for name in list(self._active):
            remove_container_sync(name)
            self._active.discard(name)
