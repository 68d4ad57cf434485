"""Per-execution workspace directories and their lifecycle."""

import secrets
import shutil
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import structlog

from ..errors import InvalidWorkspaceTransition, WorkspaceNotFound
from ..models.artifact import CodeArtifact
from ..models.execution import ExecutionResult
from ..models.workspace import Workspace, WorkspaceStatus

logger = structlog.get_logger()

ALLOWED_TRANSITIONS: dict[WorkspaceStatus, set[WorkspaceStatus]] = {
    WorkspaceStatus.PENDING: {WorkspaceStatus.RUNNING},
    WorkspaceStatus.RUNNING: {WorkspaceStatus.COMPLETED, WorkspaceStatus.FAILED},
    WorkspaceStatus.COMPLETED: set(),
    WorkspaceStatus.FAILED: set(),
}


def new_workspace_id() -> str:
    """Workspace id from the creation time in ms and a random suffix."""
    return f"ws-{int(time.time() * 1000)}-{secrets.token_hex(6)}"


class WorkspaceManager:
    """Creates, tracks and removes workspaces under a base directory."""

    def __init__(
        self,
        base_dir: Path,
        retain_files: bool = False,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        """
        Initialize workspace manager.

        Args:
            base_dir: Directory holding one subdirectory per workspace
            retain_files: Keep directories after a terminal status
            clock: Source of the current time
        """
        self._base_dir = Path(base_dir)
        self._retain_files = retain_files
        self._clock = clock
        self._workspaces: dict[str, Workspace] = {}
        self._lock = threading.RLock()
        self._base_dir.mkdir(parents=True, exist_ok=True)

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def create(self, artifact: CodeArtifact) -> Workspace:
        """
        Create a pending workspace and its directory.

        Args:
            artifact: Program the workspace is for

        Returns:
            New workspace record
        """
        now = self._clock()
        with self._lock:
            workspace_id = new_workspace_id()
            while workspace_id in self._workspaces:
                workspace_id = new_workspace_id()
            directory = self._base_dir / workspace_id
            directory.mkdir(parents=True, exist_ok=False)
            workspace = Workspace(
                id=workspace_id,
                dialect=artifact.dialect,
                source=artifact.source,
                directory=directory,
                created_at=now,
                last_accessed_at=now,
            )
            self._workspaces[workspace_id] = workspace

        logger.debug("workspace_created", workspace_id=workspace_id, dialect=artifact.dialect.value)
        return workspace

    def get(self, workspace_id: str) -> Workspace:
        """
        Get a workspace and refresh its last access time.

        Raises:
            WorkspaceNotFound: If the id is unknown
        """
        with self._lock:
            workspace = self._workspaces.get(workspace_id)
            if workspace is None:
                raise WorkspaceNotFound(workspace_id)
            workspace = workspace.model_copy(update={"last_accessed_at": self._clock()})
            self._workspaces[workspace_id] = workspace
            return workspace

    def update_status(
        self,
        workspace_id: str,
        status: WorkspaceStatus,
        result: ExecutionResult | None = None,
    ) -> Workspace:
        """
        Move a workspace along pending -> running -> completed|failed.

        Directories are removed on reaching a terminal status unless files
        are retained; the record itself stays until cleanup.

        Raises:
            WorkspaceNotFound: If the id is unknown
            InvalidWorkspaceTransition: If the move is not allowed
        """
        with self._lock:
            workspace = self._workspaces.get(workspace_id)
            if workspace is None:
                raise WorkspaceNotFound(workspace_id)
            if status not in ALLOWED_TRANSITIONS[workspace.status]:
                raise InvalidWorkspaceTransition(workspace_id, workspace.status.value, status.value)
            update: dict[str, Any] = {"status": status, "last_accessed_at": self._clock()}
            if result is not None:
                update["result"] = result
            workspace = workspace.model_copy(update=update)
            self._workspaces[workspace_id] = workspace

        logger.debug("workspace_status_changed", workspace_id=workspace_id, status=status.value)
        if status.is_terminal and not self._retain_files:
            self.release_directory(workspace_id)
        return workspace

    def release_directory(self, workspace_id: str) -> None:
        """Remove a workspace's directory but keep its record."""
        workspace = self._workspaces.get(workspace_id)
        directory = workspace.directory if workspace else self._base_dir / workspace_id
        shutil.rmtree(directory, ignore_errors=True)

    def delete(self, workspace_id: str) -> bool:
        """Remove a workspace record and its directory."""
        with self._lock:
            workspace = self._workspaces.pop(workspace_id, None)
        if workspace is None:
            return False
        shutil.rmtree(workspace.directory, ignore_errors=True)
        logger.debug("workspace_deleted", workspace_id=workspace_id)
        return True

    def list_workspaces(self) -> list[Workspace]:
        with self._lock:
            return sorted(self._workspaces.values(), key=lambda w: w.created_at)

    def by_status(self, status: WorkspaceStatus) -> list[Workspace]:
        return [w for w in self.list_workspaces() if w.status is status]

    def cleanup(self, older_than_hours: float = 24.0) -> int:
        """
        Delete workspaces idle for longer than the given age.

        Running workspaces are never touched.

        Args:
            older_than_hours: Idle age threshold

        Returns:
            Number of workspaces deleted
        """
        cutoff = self._clock() - timedelta(hours=older_than_hours)
        with self._lock:
            stale = [
                w.id
                for w in self._workspaces.values()
                if w.last_accessed_at < cutoff and w.status is not WorkspaceStatus.RUNNING
            ]
        removed = sum(1 for workspace_id in stale if self.delete(workspace_id))
        if removed:
            logger.info("workspaces_cleaned", removed=removed, older_than_hours=older_than_hours)
        return removed

    def force_cleanup(self) -> int:
        """Delete every workspace regardless of status."""
        with self._lock:
            ids = list(self._workspaces)
        removed = sum(1 for workspace_id in ids if self.delete(workspace_id))
        logger.info("workspaces_force_cleaned", removed=removed)
        return removed

    def get_stats(self) -> dict[str, Any]:
        workspaces = self.list_workspaces()
        by_status = {status.value: 0 for status in WorkspaceStatus}
        for workspace in workspaces:
            by_status[workspace.status.value] += 1
        return {
            "total": len(workspaces),
            "by_status": by_status,
            "oldest": workspaces[0].created_at.isoformat() if workspaces else None,
            "base_dir": str(self._base_dir),
        }

    def __len__(self) -> int:
        return len(self._workspaces)
