"""Terminal session lifecycle: tmux sessions fronted by a ttyd terminal server.

The tmux session keeps the agent alive across viewer reconnects; ttyd exposes
it on a local port. Teardown is two-phase: SIGTERM, a short liveness-poll
budget, then SIGKILL.
"""

from __future__ import annotations

import logging
import subprocess
import time
from pathlib import Path
from typing import Sequence

from ..errors import ConfigurationError
from .process import command_exists, force_kill, is_process_alive, spawn_detached, terminate

logger = logging.getLogger(__name__)

SESSION_WIDTH = 200
SESSION_HEIGHT = 50

KILL_POLL_INTERVAL = 0.1
KILL_POLL_ATTEMPTS = 5

DEFAULT_THEME = {"fontSize": "14"}


def architect_session(port: int) -> str:
    return f"af-architect-{port}"


def builder_session(builder_id: str) -> str:
    return f"builder-{builder_id}"


def shell_session(util_id: str) -> str:
    return f"af-shell-{util_id}"


class SessionManager:
    """Creates, attaches and tears down tmux/ttyd terminal sessions."""

    def __init__(self, tmux: str = "tmux", ttyd: str = "ttyd") -> None:
        self.tmux = tmux
        self.ttyd = ttyd

    def check_dependencies(self) -> None:
        """Raise ConfigurationError if tmux or ttyd is not installed."""
        for binary, hint in ((self.tmux, "brew install tmux"), (self.ttyd, "brew install ttyd")):
            if not command_exists(binary):
                raise ConfigurationError(f"{binary} not found. Install with: {hint}")

    def _tmux(self, *args: str) -> subprocess.CompletedProcess:
        return subprocess.run([self.tmux, *args], capture_output=True, text=True)

    def session_exists(self, name: str) -> bool:
        # "=" forces an exact match instead of tmux's prefix matching
        return self._tmux("has-session", "-t", f"={name}").returncode == 0

    def ensure_session(self, name: str, command: Sequence[str], cwd: Path | str) -> bool:
        """Create a detached session running ``command`` unless one already exists.

        Returns True if a session was created, False if it already existed.
        """
        if self.session_exists(name):
            logger.debug("tmux session %s already exists", name)
            return False

        result = self._tmux(
            "new-session",
            "-d",
            "-s",
            name,
            "-x",
            str(SESSION_WIDTH),
            "-y",
            str(SESSION_HEIGHT),
            "-c",
            str(cwd),
            *command,
        )
        if result.returncode != 0:
            raise RuntimeError(f"Failed to create tmux session {name}: {result.stderr.strip()}")

        self._tmux("set-option", "-t", name, "mouse", "on")
        logger.info("Created tmux session %s", name)
        return True

    def attach_terminal_server(
        self,
        session_name: str,
        port: int,
        cwd: Path | str,
        theme: dict[str, str] | None = None,
    ) -> int | None:
        """Start a writable ttyd on ``port`` attached to ``session_name``.

        Returns the ttyd pid, or None if it could not be spawned.
        """
        args = [self.ttyd, "-W", "-p", str(port)]
        for key, value in {**DEFAULT_THEME, **(theme or {})}.items():
            args += ["-t", f"{key}={value}"]
        args += [self.tmux, "attach-session", "-t", session_name]

        try:
            handle = spawn_detached(args, cwd=cwd)
        except OSError as exc:
            logger.error("Failed to start ttyd for %s: %s", session_name, exc)
            return None
        logger.info("ttyd for %s on port %d (pid %d)", session_name, port, handle.pid)
        return handle.pid

    def kill_session(self, name: str) -> None:
        """Kill a tmux session; a missing session is not an error."""
        try:
            result = self._tmux("kill-session", "-t", f"={name}")
        except OSError as exc:
            logger.debug("tmux unavailable while killing %s: %s", name, exc)
            return
        if result.returncode == 0:
            logger.info("Killed tmux session %s", name)

    def kill_process_gracefully(self, pid: int, session_name: str | None = None) -> None:
        """SIGTERM ``pid``, wait up to 500ms for it to exit, then SIGKILL."""
        if session_name:
            self.kill_session(session_name)

        if not terminate(pid):
            return
        for _ in range(KILL_POLL_ATTEMPTS):
            time.sleep(KILL_POLL_INTERVAL)
            if not is_process_alive(pid):
                return

        logger.info("pid %d ignored SIGTERM, sending SIGKILL", pid)
        force_kill(pid)
