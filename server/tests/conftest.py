"""Shared fixtures: throwaway projects, real live/dead pids and a fake tmux/ttyd layer."""

from __future__ import annotations

import subprocess
import sys

import pytest

from agent_farm.config import FarmConfig
from agent_farm.models.registry import ProjectPorts
from agent_farm.services.state_store import StateStore


class FakeSessions:
    """Stands in for SessionManager so no test ever touches tmux or ttyd."""

    def __init__(self) -> None:
        self.attach_pid: int | None = None
        self.created: list[tuple[str, list[str], str]] = []
        self.attached: list[tuple[str, int, dict]] = []
        self.killed_sessions: list[str] = []
        self.killed: list[tuple[int, str | None]] = []

    def check_dependencies(self) -> None:
        pass

    def ensure_session(self, name, command, cwd) -> bool:
        self.created.append((name, list(command), str(cwd)))
        return True

    def attach_terminal_server(self, session_name, port, cwd, theme=None):
        self.attached.append((session_name, port, dict(theme or {})))
        return self.attach_pid

    def kill_session(self, name) -> None:
        self.killed_sessions.append(name)

    def kill_process_gracefully(self, pid, session_name=None) -> None:
        self.killed.append((pid, session_name))


@pytest.fixture
def project(tmp_path):
    root = tmp_path / "proj"
    (root / "codev" / "specs").mkdir(parents=True)
    (root / "src").mkdir()
    (root / "src" / "app.py").write_text("print('hello')\nprint('world')\n")
    return root


@pytest.fixture
def config(project, tmp_path):
    cfg = FarmConfig(project_root=project, farm_home=tmp_path / "home")
    cfg.max_tabs = 20
    cfg.shell = "/bin/sh"
    cfg.state_lock = False
    return cfg


@pytest.fixture
def store(config):
    return StateStore(config.state_path)


@pytest.fixture
def ports():
    return ProjectPorts.from_base(4200)


@pytest.fixture
def sessions():
    return FakeSessions()


@pytest.fixture
def live_pid():
    """Pid of a sleeping child that stays alive for the whole test."""
    proc = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
    yield proc.pid
    proc.kill()
    proc.wait()


@pytest.fixture
def dead_pid():
    """Pid of a child that has exited and been reaped."""
    proc = subprocess.Popen(["true"])
    proc.wait()
    return proc.pid
