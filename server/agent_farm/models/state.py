"""Persisted project state: architect, builders, utility shells and annotations."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class BuilderStatus(str, Enum):
    SPAWNING = "spawning"
    IMPLEMENTING = "implementing"
    BLOCKED = "blocked"
    PR_READY = "pr-ready"
    COMPLETE = "complete"


class ParentType(str, Enum):
    ARCHITECT = "architect"
    BUILDER = "builder"
    UTIL = "util"


class _Record(BaseModel):
    # Field names on disk are camelCase; Python attributes are snake_case.
    model_config = ConfigDict(populate_by_name=True, use_enum_values=True, validate_default=True)


class ArchitectRecord(_Record):
    port: int
    pid: int
    cmd: str
    started_at: str = Field(alias="startedAt")
    tmux_session: str | None = Field(default=None, alias="tmuxSession")


class BuilderRecord(_Record):
    id: str
    name: str
    port: int
    pid: int
    status: BuilderStatus = BuilderStatus.SPAWNING
    phase: str = ""
    worktree: str
    branch: str
    tmux_session: str | None = Field(default=None, alias="tmuxSession")


class UtilTerminalRecord(_Record):
    id: str
    name: str
    port: int
    pid: int
    tmux_session: str | None = Field(default=None, alias="tmuxSession")


class AnnotationParent(_Record):
    type: ParentType = ParentType.ARCHITECT
    id: str | None = None


class AnnotationRecord(_Record):
    id: str
    file: str  # absolute path
    port: int
    pid: int
    parent: AnnotationParent = Field(default_factory=AnnotationParent)


class FarmState(_Record):
    architect: ArchitectRecord | None = None
    builders: list[BuilderRecord] = Field(default_factory=list)
    utils: list[UtilTerminalRecord] = Field(default_factory=list)
    annotations: list[AnnotationRecord] = Field(default_factory=list)

    def to_json_dict(self) -> dict:
        """Serialize with on-disk field names, omitting unset optional fields."""
        data = self.model_dump(by_alias=True, exclude_none=True)
        # architect is always present, null when unset
        data.setdefault("architect", None)
        return data

    def tab_count(self) -> int:
        return len(self.builders) + len(self.utils) + len(self.annotations)

    def used_ports(self) -> set[int]:
        """Every port referenced by a record in this document."""
        ports = {r.port for r in (*self.builders, *self.utils, *self.annotations)}
        if self.architect is not None:
            ports.add(self.architect.port)
        return ports
