"""OS process and TCP port utilities.

Children are launched fire-and-forget: the launching process never waits on
them, and liveness is re-derived later from the pid (signal 0) or the port
(TCP connect). Nothing here keeps an in-memory process object alive.
"""

from __future__ import annotations

import asyncio
import errno
import logging
import os
import shutil
import signal
import socket
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, Sequence

logger = logging.getLogger(__name__)

LOCALHOST = "127.0.0.1"
MAX_PORT = 65535


@dataclass(frozen=True)
class ProcessHandle:
    """Opaque handle for a detached child; only the pid survives."""

    pid: int


def command_exists(name: str) -> bool:
    return shutil.which(name) is not None


def spawn_detached(
    args: Sequence[str],
    cwd: Path | str | None = None,
    env: dict[str, str] | None = None,
) -> ProcessHandle:
    """Start ``args`` in its own session with stdio detached.

    Raises ``OSError`` if the executable cannot be started.
    """
    proc = subprocess.Popen(
        list(args),
        cwd=str(cwd) if cwd else None,
        env={**os.environ, **env} if env else None,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )
    logger.debug("Spawned %s (pid %d)", args[0], proc.pid)
    return ProcessHandle(pid=proc.pid)


def is_process_alive(pid: int | None) -> bool:
    """Check whether ``pid`` still responds to signal 0.

    A child of this process that has already exited is reaped here and
    reported dead; otherwise its zombie would answer signal 0 forever.
    """
    if not pid or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else
        return True
    try:
        reaped, _ = os.waitpid(pid, os.WNOHANG)
    except ChildProcessError:
        return True
    return reaped == 0


def send_signal(pid: int, sig: int) -> bool:
    """Send ``sig`` to ``pid``. Returns False if there is no such process."""
    try:
        os.kill(pid, sig)
        return True
    except ProcessLookupError:
        return False


def terminate(pid: int) -> bool:
    return send_signal(pid, signal.SIGTERM)


def force_kill(pid: int) -> bool:
    return send_signal(pid, signal.SIGKILL)


def is_port_free(port: int, host: str = LOCALHOST) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError as exc:
            if exc.errno in (errno.EADDRINUSE, errno.EACCES):
                return False
            raise
    return True


def find_available_port(start: int, exclude: set[int] | frozenset[int] = frozenset(), end: int = MAX_PORT) -> int:
    """Find the first port >= ``start`` that is not excluded and can be bound.

    ``exclude`` holds ports already recorded in state whose servers may not be
    listening yet; they are skipped before the OS is asked.
    """
    for port in range(start, end + 1):
        if port in exclude:
            continue
        if is_port_free(port):
            return port
    raise OSError(f"No free port in range {start}-{end}")


def is_port_listening(port: int, timeout: float = 1.0, host: str = LOCALHOST) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


async def probe_port(port: int, timeout: float = 1.0, host: str = LOCALHOST) -> bool:
    """Async TCP connect probe with a bounded timeout."""
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


async def wait_for_port(port: int, timeout: float = 5.0, interval: float = 0.1) -> bool:
    """Poll ``port`` until it accepts connections or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if await probe_port(port, timeout=interval):
            return True
        await asyncio.sleep(interval)
    return False


class ProcessHealth(Protocol):
    def is_alive(self, record) -> bool: ...


class PidHealth:
    """Liveness by signal-0 probe of the record's pid."""

    def is_alive(self, record) -> bool:
        return is_process_alive(record.pid)


class TcpHealth:
    """Liveness by TCP connect to the record's port."""

    def __init__(self, timeout: float = 0.5) -> None:
        self.timeout = timeout

    def is_alive(self, record) -> bool:
        return is_port_listening(record.port, timeout=self.timeout)
