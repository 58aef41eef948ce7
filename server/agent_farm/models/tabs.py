"""Dashboard tab references and request bodies."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from .state import ParentType


class TabKind(str, Enum):
    FILE = "file"
    BUILDER = "builder"
    SHELL = "shell"


class TabRef(BaseModel):
    """A dashboard tab, identified by record kind and record id."""

    kind: TabKind
    id: str

    @classmethod
    def parse(cls, tab_id: str) -> TabRef | None:
        """Parse a ``<kind>-<id>`` tab id; returns None for unknown prefixes."""
        prefix, sep, record_id = tab_id.partition("-")
        if not sep or not record_id:
            return None
        try:
            kind = TabKind(prefix)
        except ValueError:
            return None
        return cls(kind=kind, id=record_id)

    def __str__(self) -> str:
        return f"{self.kind.value}-{self.id}"


class TabParent(BaseModel):
    type: ParentType = ParentType.ARCHITECT
    id: str | None = None


class FileTabRequest(BaseModel):
    path: str
    parent: TabParent | None = None


class BuilderTabRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    project_id: str = Field(alias="projectId")


class ShellTabRequest(BaseModel):
    name: str | None = None


class TabResult(BaseModel):
    """Outcome of a tab-creation request."""

    id: str
    port: int
    name: str | None = None
    existing: bool = False

    def to_json_dict(self) -> dict:
        data = self.model_dump(exclude_none=True)
        if not self.existing:
            data.pop("existing")
        return data
