"""Global port registry: 100-port blocks per project, shared by every project on the machine.

Registry location: ``~/.agent-farm/ports.json`` (mode 0600, directory 0700).
Every mutation runs under an exclusive lock-file (``ports.lock``) so that
concurrent CLI invocations from different projects never hand out the same
block.
"""

from __future__ import annotations

import json
import logging
import os
import time
from datetime import datetime, timezone
from pathlib import Path

from ..errors import LockTimeout, RegistryExhausted
from ..models.registry import (
    AllocationInfo,
    CleanupResult,
    PortEntry,
    PortRegistryDocument,
    ProjectPorts,
)
from .process import is_process_alive

logger = logging.getLogger(__name__)

# First block starts here; blocks step by PORT_BLOCK_SIZE
BASE_PORT = 4200
PORT_BLOCK_SIZE = 100
# 4200-9999
MAX_ALLOCATIONS = 58

REGISTRY_VERSION = 1

LOCK_TIMEOUT = 5.0
LOCK_POLL_INTERVAL = 0.1
# A marker older than this belongs to a crashed holder
LOCK_STALE_AFTER = 30.0


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class LockHandle:
    """Release handle for a held lock; usable as a context manager."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._released = False

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            self._path.unlink()
        except FileNotFoundError:
            pass

    def __enter__(self) -> LockHandle:
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()


class FileLock:
    """Advisory lock implemented as an exclusively created marker file.

    Presence of the marker means the lock is held. A marker whose mtime is
    older than ``stale_after`` seconds is treated as abandoned and removed.
    """

    def __init__(
        self,
        path: Path,
        stale_after: float = LOCK_STALE_AFTER,
        poll_interval: float = LOCK_POLL_INTERVAL,
    ) -> None:
        self.path = Path(path)
        self.stale_after = stale_after
        self.poll_interval = poll_interval

    def acquire(self, timeout: float = LOCK_TIMEOUT) -> LockHandle:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + timeout

        while time.monotonic() < deadline:
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
            except FileExistsError:
                if self._reclaim_if_stale():
                    continue
                time.sleep(self.poll_interval)
                continue
            os.close(fd)
            return LockHandle(self.path)

        raise LockTimeout(f"Failed to acquire lock {self.path} within {timeout:.1f}s")

    def _reclaim_if_stale(self) -> bool:
        try:
            age = time.time() - self.path.stat().st_mtime
        except FileNotFoundError:
            # Released between our create attempt and the stat; retry now
            return True
        if age <= self.stale_after:
            return False
        logger.warning("Removing abandoned lock %s (%.0fs old)", self.path, age)
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        return True

    def __call__(self) -> LockHandle:
        return self.acquire()


class PortRegistry:
    """Allocates and tracks per-project port blocks."""

    def __init__(self, home: Path | None = None, lock_timeout: float = LOCK_TIMEOUT) -> None:
        self.home = Path(home) if home else Path.home() / ".agent-farm"
        self.path = self.home / "ports.json"
        self.lock_timeout = lock_timeout
        self._lock = FileLock(self.home / "ports.lock")

    # ── Persistence ──────────────────────────────────────────────────────

    def _ensure_home(self) -> None:
        if not self.home.exists():
            self.home.mkdir(parents=True, mode=0o700, exist_ok=True)

    def lock(self) -> LockHandle:
        self._ensure_home()
        return self._lock.acquire(self.lock_timeout)

    def load(self) -> PortRegistryDocument:
        """Load the registry, migrating legacy documents; corruption reads as empty."""
        if not self.path.exists():
            return PortRegistryDocument(version=REGISTRY_VERSION)
        try:
            data = json.loads(self.path.read_text())
            if not isinstance(data, dict):
                raise ValueError("registry root is not an object")
            if not data.get("version"):
                # Legacy format: the whole document is the entries map
                data = {"version": REGISTRY_VERSION, "entries": data}
            return PortRegistryDocument.model_validate(data)
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable port registry %s: %s", self.path, exc)
            return PortRegistryDocument(version=REGISTRY_VERSION)

    def save(self, doc: PortRegistryDocument) -> None:
        self._ensure_home()
        tmp_path = self.path.with_name(f"{self.path.name}.{os.getpid()}.tmp")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            f.write(json.dumps(doc.to_json_dict(), indent=2))
        os.chmod(tmp_path, 0o600)
        tmp_path.replace(self.path)

    # ── Allocation ───────────────────────────────────────────────────────

    @staticmethod
    def _next_block(doc: PortRegistryDocument) -> int:
        used = {entry.base_port for entry in doc.entries.values()}
        for i in range(MAX_ALLOCATIONS):
            port = BASE_PORT + i * PORT_BLOCK_SIZE
            if port not in used:
                return port
        raise RegistryExhausted(
            f"No available port blocks ({MAX_ALLOCATIONS} allocated). "
            "Run `af ports cleanup` or remove unused projects."
        )

    def get_port_block(self, project_root: Path | str) -> int:
        """Return the project's base port, allocating a new block on first use."""
        key = str(Path(project_root).resolve())

        with self.lock():
            doc = self.load()
            entry = doc.entries.get(key)
            if entry is not None:
                entry.last_used = _now()
                entry.pid = os.getpid()
                self.save(doc)
                return entry.base_port

            base_port = self._next_block(doc)
            now = _now()
            doc.entries[key] = PortEntry(base_port=base_port, registered=now, last_used=now, pid=os.getpid())
            self.save(doc)
            logger.info("Allocated port block %d-%d for %s", base_port, base_port + PORT_BLOCK_SIZE - 1, key)
            return base_port

    def get_project_ports(self, project_root: Path | str) -> ProjectPorts:
        return ProjectPorts.from_base(self.get_port_block(project_root))

    def remove_allocation(self, project_root: Path | str) -> bool:
        key = str(Path(project_root).resolve())
        with self.lock():
            doc = self.load()
            if doc.entries.pop(key, None) is None:
                return False
            self.save(doc)
            logger.info("Released port block for %s", key)
            return True

    # ── Maintenance ──────────────────────────────────────────────────────

    def cleanup_stale_entries(self) -> CleanupResult:
        """Drop entries whose project directory is gone; clear dead pids on the rest."""
        with self.lock():
            doc = self.load()
            removed: list[str] = []
            changed = False

            for project_path in list(doc.entries):
                entry = doc.entries[project_path]
                if not Path(project_path).exists():
                    removed.append(project_path)
                    del doc.entries[project_path]
                    changed = True
                    continue
                # The project may restart later, so only forget the pid
                if entry.pid and not is_process_alive(entry.pid):
                    entry.pid = None
                    changed = True

            if changed:
                self.save(doc)
            if removed:
                logger.info("Removed %d stale port allocation(s)", len(removed))
            return CleanupResult(removed=removed, remaining=len(doc.entries))

    def list_allocations(self) -> list[AllocationInfo]:
        """Snapshot of every allocation; read-only, so no lock is taken."""
        doc = self.load()
        return [
            AllocationInfo(
                path=path,
                base_port=entry.base_port,
                registered=entry.registered,
                last_used=entry.last_used,
                exists=Path(path).exists(),
                pid=entry.pid,
                pid_alive=is_process_alive(entry.pid) if entry.pid else None,
            )
            for path, entry in doc.entries.items()
        ]


_registry: PortRegistry | None = None


def get_port_registry() -> PortRegistry:
    """Get (or create) the singleton PortRegistry rooted at the configured home."""
    global _registry
    if _registry is None:
        from ..config import get_config

        _registry = PortRegistry(get_config().farm_home)
    return _registry
