"""Interrupting a host process tears down children and workspaces."""

from __future__ import annotations

import json
import os
import signal
import subprocess
import sys
import textwrap
import time
from pathlib import Path

import psutil
import pytest

import toolexec

HARNESS = textwrap.dedent(
    """
    import sys
    from pathlib import Path

    from toolexec.config.settings import EngineSettings
    from toolexec.models.artifact import Dialect
    from toolexec.services.orchestrator import Orchestrator

    root = Path(sys.argv[1])
    settings = EngineSettings(
        _env_file=None,
        tools_directory=root / "tools",
        workspace_base_dir=root / "workspaces",
        audit_log_path=root / "audit.jsonl",
        container_enabled=False,
        install_signal_handlers=True,
    )
    orchestrator = Orchestrator(settings)
    orchestrator.initialize()
    orchestrator.execute_sync("take a nap", Dialect.PYTHON)
    """
)

NAP_TOOL = {
    "name": "nap",
    "description": "Take a short nap by sleeping",
    "parameters": [],
    "implementation": {"python": "import time\ntime.sleep(30)\nreturn 'done'"},
}


def _gone(pid: int) -> bool:
    try:
        return psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True


@pytest.mark.slow
@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals required")
class TestSignalCleanup:
    def test_sigint_kills_child_and_removes_workspace(self, tmp_path: Path) -> None:
        (tmp_path / "tools").mkdir()
        (tmp_path / "tools" / "nap.json").write_text(json.dumps(NAP_TOOL), encoding="utf-8")
        script = tmp_path / "harness.py"
        script.write_text(HARNESS, encoding="utf-8")

        env = dict(os.environ)
        src_dir = str(Path(toolexec.__file__).resolve().parents[1])
        env["PYTHONPATH"] = os.pathsep.join(filter(None, [src_dir, env.get("PYTHONPATH")]))
        host = subprocess.Popen([sys.executable, str(script), str(tmp_path)], env=env)

        try:
            children: list[psutil.Process] = []
            deadline = time.monotonic() + 30
            while not children and time.monotonic() < deadline:
                if host.poll() is not None:
                    pytest.fail(f"harness exited early with {host.returncode}")
                children = psutil.Process(host.pid).children(recursive=True)
                time.sleep(0.05)
            assert children, "sandbox child never started"
            # let the sandbox register its kill handler
            time.sleep(0.3)

            host.send_signal(signal.SIGINT)
            host.wait(timeout=15)
        finally:
            if host.poll() is None:
                host.kill()
                host.wait()

        assert host.returncode != 0
        for child in children:
            deadline = time.monotonic() + 5
            while not _gone(child.pid) and time.monotonic() < deadline:
                time.sleep(0.05)
            assert _gone(child.pid)

        workspaces = tmp_path / "workspaces"
        assert not workspaces.exists() or list(workspaces.iterdir()) == []
