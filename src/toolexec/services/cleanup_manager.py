"""Resource cleanup on completion, on schedule and on interrupt signals."""

import asyncio
import signal
import threading
from collections.abc import Callable
from types import FrameType
from typing import Any

import structlog

from ..errors import CleanupFailure

logger = structlog.get_logger()

CleanupHandler = Callable[[], Any]

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class CleanupManager:
    """
    Registry of teardown handlers plus periodic maintenance.

    Handlers are keyed by resource id and run in reverse registration order,
    each one isolated so a failing handler does not stop the rest. On SIGINT
    or SIGTERM all handlers run before the signal's normal outcome
    (KeyboardInterrupt or SystemExit) proceeds.
    """

    def __init__(self, workspaces=None, cache=None, reaper=None, retention_hours: float = 24.0) -> None:
        """
        Initialize cleanup manager.

        Args:
            workspaces: WorkspaceManager swept by `perform_cleanup`
            cache: CacheManager swept by `perform_cleanup`
            reaper: ContainerReaper run by `perform_cleanup`
            retention_hours: Idle age after which workspaces are removed
        """
        self._handlers: dict[str, CleanupHandler] = {}
        self._lock = threading.RLock()
        self._workspaces = workspaces
        self._cache = cache
        self._reaper = reaper
        self._retention_hours = retention_hours
        self._previous_handlers: dict[int, Any] = {}
        self._auto_task: asyncio.Task[None] | None = None
        self._failures: list[CleanupFailure] = []

    def register(self, resource_id: str, handler: CleanupHandler) -> None:
        """Register a handler; re-registering an id moves it to the end."""
        with self._lock:
            self._handlers.pop(resource_id, None)
            self._handlers[resource_id] = handler
        logger.debug("cleanup_registered", resource_id=resource_id)

    def unregister(self, resource_id: str) -> bool:
        with self._lock:
            return self._handlers.pop(resource_id, None) is not None

    @property
    def registered(self) -> list[str]:
        with self._lock:
            return list(self._handlers)

    @property
    def failures(self) -> list[CleanupFailure]:
        return list(self._failures)

    def run_handlers(self) -> list[CleanupFailure]:
        """
        Run and remove every registered handler, newest first.

        Returns:
            Failures raised by individual handlers
        """
        with self._lock:
            handlers = list(self._handlers.items())
            self._handlers.clear()

        failures: list[CleanupFailure] = []
        for resource_id, handler in reversed(handlers):
            try:
                handler()
            except Exception as e:
                failure = CleanupFailure(resource_id, e)
                failures.append(failure)
                logger.error("cleanup_handler_failed", resource_id=resource_id, error=str(e))

        self._failures.extend(failures)
        logger.info("cleanup_handlers_run", handlers=len(handlers), failures=len(failures))
        return failures

    def install_signal_handlers(self) -> bool:
        """
        Run all handlers on SIGINT and SIGTERM.

        Only possible from the main thread; returns False elsewhere.
        """
        if threading.current_thread() is not threading.main_thread():
            logger.warning("cleanup_signal_handlers_skipped", reason="not main thread")
            return False
        if self._previous_handlers:
            return True
        for signum in HANDLED_SIGNALS:
            self._previous_handlers[signum] = signal.signal(signum, self._on_signal)
        logger.debug("cleanup_signal_handlers_installed")
        return True

    def uninstall_signal_handlers(self) -> None:
        for signum, previous in self._previous_handlers.items():
            signal.signal(signum, previous)
        self._previous_handlers.clear()

    def _on_signal(self, signum: int, frame: FrameType | None) -> None:
        logger.warning("cleanup_signal_received", signal=signal.Signals(signum).name)
        self.run_handlers()
        previous = self._previous_handlers.get(signum)
        if callable(previous):
            previous(signum, frame)
            return
        if signum == signal.SIGINT:
            raise KeyboardInterrupt
        raise SystemExit(128 + signum)

    async def perform_cleanup(self) -> dict[str, int]:
        """Sweep idle workspaces, expired cache entries and stale containers."""
        summary = {"workspaces": 0, "cache_entries": 0, "containers": 0}
        if self._workspaces is not None:
            summary["workspaces"] = self._workspaces.cleanup(self._retention_hours)
        if self._cache is not None:
            summary["cache_entries"] = self._cache.cleanup()
        if self._reaper is not None:
            summary["containers"] = await self._reaper.reap()
        logger.info("maintenance_cleanup_done", **summary)
        return summary

    async def _auto_cleanup_loop(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.perform_cleanup()
            except Exception as e:
                logger.error("maintenance_cleanup_failed", error=str(e))

    def start_auto_cleanup(self, interval_seconds: float = 3600) -> None:
        """Start periodic maintenance on the running event loop."""
        if self._auto_task is not None and not self._auto_task.done():
            return
        self._auto_task = asyncio.create_task(self._auto_cleanup_loop(interval_seconds))
        logger.info("maintenance_cleanup_started", interval_seconds=interval_seconds)

    async def stop_auto_cleanup(self) -> None:
        if self._auto_task is None:
            return
        self._auto_task.cancel()
        try:
            await self._auto_task
        except asyncio.CancelledError:
            pass
        self._auto_task = None
        logger.info("maintenance_cleanup_stopped")
