"""Dashboard tab lifecycle and state reconciliation.

The dashboard server is the coordinator for one project's live tabs. Every
read reconciles the persisted state against reality: util and annotation
records whose process has exited are dropped and the filtered document is
written back.

Tab creation is serialized per service: a new record is only persisted once
its server is up, so two overlapping requests would otherwise see the same
state and pick the same port.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import sys
import uuid
from typing import Callable, TypeVar

from ..config import FarmConfig
from ..errors import (
    NotFoundError,
    ProcessSpawnFailure,
    ResourceExhausted,
    TabLimitReached,
    UnsupportedOperation,
)
from ..models.registry import ProjectPorts
from ..models.state import AnnotationParent, AnnotationRecord, BuilderRecord, FarmState, UtilTerminalRecord
from ..models.tabs import TabKind, TabParent, TabRef, TabResult
from .paths import resolve_project_file, validate_id, validate_name
from .process import PidHealth, ProcessHealth, find_available_port, spawn_detached, wait_for_port
from .sessions import SessionManager, builder_session, shell_session
from .state_store import StateStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

ANNOTATION_READY_TIMEOUT = 5.0
ANNOTATION_READY_INTERVAL = 0.1


def new_record_id(prefix: str, taken: set[str]) -> str:
    while True:
        record_id = f"{prefix}{uuid.uuid4().hex[:6].upper()}"
        if record_id not in taken:
            return record_id


def matches_builder(builder: BuilderRecord, project_id: str) -> bool:
    """True if ``project_id`` names this builder by id or by spec-name prefix."""
    return (
        builder.id == project_id
        or builder.name == project_id
        or builder.name.startswith(f"{project_id}-")
    )


class TabService:
    """Creates, closes and reconciles the tabs of one project's dashboard."""

    def __init__(
        self,
        config: FarmConfig,
        store: StateStore,
        sessions: SessionManager,
        ports: ProjectPorts,
        health: ProcessHealth | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.sessions = sessions
        self.ports = ports
        self.health = health or PidHealth()
        # Held from dedupe/limit check until the new record is committed
        self._create_lock = asyncio.Lock()

    async def _run(self, fn: Callable[..., T], *args) -> T:
        """Run a blocking call (subprocess, sleep-poll, locked file IO) off the event loop."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args))

    # ── Reconciliation ───────────────────────────────────────────────────

    async def reconcile(self) -> FarmState:
        """Drop util and annotation records whose process is gone; return live state."""
        state = await self._run(self.store.load)
        dead_utils = [u for u in state.utils if not self.health.is_alive(u)]
        dead_annotations = [a for a in state.annotations if not self.health.is_alive(a)]
        if not dead_utils and not dead_annotations:
            return state

        dead_util_ids = {u.id for u in dead_utils}
        dead_annotation_ids = {a.id for a in dead_annotations}

        def apply(current: FarmState) -> FarmState:
            current.utils = [u for u in current.utils if u.id not in dead_util_ids]
            current.annotations = [a for a in current.annotations if a.id not in dead_annotation_ids]
            return current

        state = await self._run(self.store.transact, apply)
        for util in dead_utils:
            if util.tmux_session:
                await self._run(self.sessions.kill_session, util.tmux_session)
        logger.info(
            "Reconciled state: dropped %d util(s) and %d annotation(s) with dead processes",
            len(dead_utils),
            len(dead_annotations),
        )
        return state

    def _allocate_port(self, start: int, state: FarmState) -> int:
        try:
            return find_available_port(start, exclude=state.used_ports())
        except OSError as exc:
            raise ResourceExhausted(str(exc)) from exc

    def _check_tab_limit(self, state: FarmState) -> None:
        if state.tab_count() >= self.config.max_tabs:
            raise TabLimitReached(f"Tab limit reached ({self.config.max_tabs}). Close some tabs first.")

    # ── File tabs ────────────────────────────────────────────────────────

    async def create_file_tab(self, raw_path: str, parent: TabParent | None = None) -> TabResult:
        path = resolve_project_file(self.config.project_root, raw_path)
        async with self._create_lock:
            return await self._create_file_tab(path, parent)

    async def _create_file_tab(self, path, parent: TabParent | None) -> TabResult:
        state = await self.reconcile()

        existing = next((a for a in state.annotations if a.file == str(path)), None)
        if existing is not None:
            # reconcile() already dropped dead records, but the process may
            # have exited since
            if self.health.is_alive(existing):
                return TabResult(id=existing.id, port=existing.port, existing=True)
            await self._run(self.store.remove_annotation, existing.id)
            state = await self._run(self.store.load)

        self._check_tab_limit(state)

        port = self._allocate_port(self.ports.annotate_port_range[0], state)
        args = [sys.executable, "-m", "agent_farm.annotate", "--port", str(port), "--file", str(path)]
        try:
            handle = spawn_detached(args, cwd=self.config.project_root)
        except OSError as exc:
            raise ProcessSpawnFailure(f"Failed to start annotation viewer: {exc}") from exc

        if not await wait_for_port(port, ANNOTATION_READY_TIMEOUT, ANNOTATION_READY_INTERVAL):
            await self._run(self.sessions.kill_process_gracefully, handle.pid)
            raise ProcessSpawnFailure(f"Annotation viewer did not start on port {port}")

        parent_ref = parent or TabParent()
        record = AnnotationRecord(
            id=new_record_id("A", {a.id for a in state.annotations}),
            file=str(path),
            port=port,
            pid=handle.pid,
            parent=AnnotationParent(type=parent_ref.type, id=parent_ref.id),
        )
        await self._run(self.store.add_annotation, record)
        logger.info("Opened file tab %s for %s on port %d", record.id, path, port)
        return TabResult(id=record.id, port=port)

    # ── Shell tabs ───────────────────────────────────────────────────────

    async def create_shell_tab(self, name: str | None = None) -> TabResult:
        if name is not None:
            validate_name(name)
        async with self._create_lock:
            return await self._create_shell_tab(name)

    async def _create_shell_tab(self, name: str | None) -> TabResult:
        state = await self.reconcile()
        self._check_tab_limit(state)

        util_id = new_record_id("U", {u.id for u in state.utils})
        name = name or f"util-{util_id}"
        port = self._allocate_port(self.ports.util_port_range[0], state)
        session = shell_session(util_id)
        root = self.config.project_root

        try:
            await self._run(self.sessions.ensure_session, session, [self.config.shell], root)
        except (OSError, RuntimeError) as exc:
            raise ProcessSpawnFailure(str(exc)) from exc

        pid = await self._run(self.sessions.attach_terminal_server, session, port, root, {"titleFixed": name})
        if pid is None:
            await self._run(self.sessions.kill_session, session)
            raise ProcessSpawnFailure("Failed to start terminal server for shell")

        record = UtilTerminalRecord(id=util_id, name=name, port=port, pid=pid, tmux_session=session)
        await self._run(self.store.add_util, record)
        logger.info("Opened shell tab %s (%s) on port %d", util_id, name, port)
        return TabResult(id=util_id, port=port, name=name)

    # ── Builder tabs ─────────────────────────────────────────────────────

    async def open_builder_tab(self, project_id: str) -> TabResult:
        validate_id(project_id, "project id")
        state = await self.reconcile()

        builder = next((b for b in state.builders if b.id == project_id), None)
        if builder is None:
            builder = next((b for b in state.builders if matches_builder(b, project_id)), None)
        if builder is not None:
            return TabResult(id=builder.id, port=builder.port, name=builder.name, existing=True)

        self._check_tab_limit(state)
        raise UnsupportedOperation(
            f"Spawning builders from the dashboard is not supported yet. Run: af spawn --project {project_id}"
        )

    # ── Closing ──────────────────────────────────────────────────────────

    async def delete_tab(self, ref: TabRef) -> None:
        state = await self._run(self.store.load)

        if ref.kind is TabKind.FILE:
            annotation = next((a for a in state.annotations if a.id == ref.id), None)
            if annotation is None:
                raise NotFoundError(f"Tab not found: {ref}")
            await self._run(self.sessions.kill_process_gracefully, annotation.pid)
            await self._run(self.store.remove_annotation, annotation.id)

        elif ref.kind is TabKind.BUILDER:
            builder = next((b for b in state.builders if b.id == ref.id), None)
            if builder is None:
                raise NotFoundError(f"Tab not found: {ref}")
            session = builder.tmux_session or builder_session(builder.id)
            await self._run(self.sessions.kill_process_gracefully, builder.pid, session)
            await self._run(self.store.remove_builder, builder.id)

        else:
            util = next((u for u in state.utils if u.id == ref.id), None)
            if util is None:
                raise NotFoundError(f"Tab not found: {ref}")
            session = util.tmux_session or shell_session(util.id)
            await self._run(self.sessions.kill_process_gracefully, util.pid, session)
            await self._run(self.store.remove_util, util.id)

        logger.info("Closed tab %s", ref)

    async def stop_all(self) -> int:
        """Kill every tracked process and session in parallel, then clear state."""
        state = await self._run(self.store.load)
        targets: list[tuple[int, str | None]] = []
        if state.architect is not None:
            targets.append((state.architect.pid, state.architect.tmux_session))
        targets += [(b.pid, b.tmux_session or builder_session(b.id)) for b in state.builders]
        targets += [(u.pid, u.tmux_session or shell_session(u.id)) for u in state.utils]
        targets += [(a.pid, None) for a in state.annotations]

        await asyncio.gather(
            *(self._run(self.sessions.kill_process_gracefully, pid, session) for pid, session in targets)
        )
        await self._run(self.store.clear)
        logger.info("Stopped %d process(es) and cleared state", len(targets))
        return len(targets)
