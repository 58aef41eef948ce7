"""Project state store: ``<project>/.agent-farm/state.json``.

The file is the only channel between the CLI, the dashboard server and any
other process touching one project. Every operation re-reads it; nothing is
cached across calls. Mutations go through :meth:`StateStore.transact`, which
performs load -> mutate -> save. Without a ``lock_factory`` that sequence is
not atomic across processes and the last writer wins.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
from pathlib import Path
from typing import Callable, ContextManager, TypeVar

from ..models.state import (
    AnnotationRecord,
    ArchitectRecord,
    BuilderRecord,
    FarmState,
    UtilTerminalRecord,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StateStore:
    """Read-modify-write access to one project's state document."""

    def __init__(
        self,
        state_path: Path,
        lock_factory: Callable[[], ContextManager] | None = None,
    ) -> None:
        self.path = Path(state_path)
        self._lock_factory = lock_factory or contextlib.nullcontext

    def load(self) -> FarmState:
        """Load state; a missing or unparsable file yields the empty default."""
        if not self.path.exists():
            return FarmState()
        try:
            return FarmState.model_validate(json.loads(self.path.read_text()))
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable state file %s: %s", self.path, exc)
            return FarmState()

    def save(self, state: FarmState) -> None:
        """Write the full document, replacing the previous file in one step."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f"{self.path.name}.{os.getpid()}.tmp")
        tmp_path.write_text(json.dumps(state.to_json_dict(), indent=2))
        tmp_path.replace(self.path)

    def transact(self, fn: Callable[[FarmState], T]) -> T:
        """Load, apply ``fn`` to the state in place, save, and return fn's result."""
        with self._lock_factory():
            state = self.load()
            result = fn(state)
            self.save(state)
            return result

    # ── Per-kind helpers ─────────────────────────────────────────────────

    def set_architect(self, architect: ArchitectRecord | None) -> None:
        def apply(state: FarmState) -> None:
            state.architect = architect

        self.transact(apply)

    def upsert_builder(self, builder: BuilderRecord) -> None:
        """Replace the builder with the same id in place, or append it."""

        def apply(state: FarmState) -> None:
            for index, existing in enumerate(state.builders):
                if existing.id == builder.id:
                    state.builders[index] = builder
                    return
            state.builders.append(builder)

        self.transact(apply)

    def remove_builder(self, builder_id: str) -> None:
        def apply(state: FarmState) -> None:
            state.builders = [b for b in state.builders if b.id != builder_id]

        self.transact(apply)

    def add_util(self, util: UtilTerminalRecord) -> None:
        self.transact(lambda state: state.utils.append(util))

    def remove_util(self, util_id: str) -> None:
        def apply(state: FarmState) -> None:
            state.utils = [u for u in state.utils if u.id != util_id]

        self.transact(apply)

    def add_annotation(self, annotation: AnnotationRecord) -> None:
        self.transact(lambda state: state.annotations.append(annotation))

    def remove_annotation(self, annotation_id: str) -> None:
        def apply(state: FarmState) -> None:
            state.annotations = [a for a in state.annotations if a.id != annotation_id]

        self.transact(apply)

    def clear(self) -> None:
        """Reset to the empty default document."""
        with self._lock_factory():
            self.save(FarmState())


def open_store(config) -> StateStore:
    """Build the store for a project, wiring the optional state lock."""
    lock_factory = None
    if config.state_lock:
        from .port_registry import FileLock

        lock_factory = FileLock(config.state_dir / "state.lock")
    return StateStore(config.state_path, lock_factory=lock_factory)
