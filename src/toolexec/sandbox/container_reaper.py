"""Removes orphaned sandbox containers left behind by crashed hosts."""

import asyncio
import time

import docker
import structlog

from .container_sandbox import CREATED_LABEL, SANDBOX_LABEL

logger = structlog.get_logger()


class ContainerReaper:
    """Finds labelled sandbox containers older than a max age and removes them."""

    def __init__(self, max_age_hours: float = 1.0, client_factory=docker.from_env) -> None:
        self._max_age_seconds = max_age_hours * 3600
        self._client_factory = client_factory

    def reap_sync(self) -> int:
        """
        Remove stale sandbox containers.

        Returns:
            Number of containers removed; 0 when Docker is unreachable
        """
        try:
            client = self._client_factory()
        except docker.errors.DockerException as e:
            logger.debug("container_reaper_docker_unavailable", error=str(e))
            return 0

        removed = 0
        cutoff = time.time() - self._max_age_seconds
        try:
            containers = client.containers.list(all=True, filters={"label": f"{SANDBOX_LABEL}=true"})
            for container in containers:
                try:
                    created = float(container.labels.get(CREATED_LABEL, "0"))
                except ValueError:
                    created = 0.0
                if created > cutoff:
                    continue
                try:
                    container.remove(force=True)
                    removed += 1
                except docker.errors.APIError as e:
                    logger.warning("container_reap_failed", container=container.name, error=str(e))
        except docker.errors.DockerException as e:
            logger.warning("container_reaper_failed", error=str(e))
        finally:
            client.close()

        if removed:
            logger.info("containers_reaped", removed=removed)
        return removed

    async def reap(self) -> int:
        return await asyncio.to_thread(self.reap_sync)
