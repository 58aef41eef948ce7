"""Global port registry models."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class PortEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    base_port: int = Field(alias="basePort")
    registered: str
    last_used: str | None = Field(default=None, alias="lastUsed")
    pid: int | None = None


class PortRegistryDocument(BaseModel):
    version: int
    entries: dict[str, PortEntry] = Field(default_factory=dict)

    def to_json_dict(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class ProjectPorts(BaseModel):
    """Fixed sub-ranges carved out of a project's 100-port block."""

    base_port: int
    dashboard_port: int
    architect_port: int
    builder_port_range: tuple[int, int]
    util_port_range: tuple[int, int]
    annotate_port_range: tuple[int, int]

    @classmethod
    def from_base(cls, base_port: int) -> ProjectPorts:
        return cls(
            base_port=base_port,
            dashboard_port=base_port,
            architect_port=base_port + 1,
            builder_port_range=(base_port + 10, base_port + 29),
            util_port_range=(base_port + 30, base_port + 49),
            annotate_port_range=(base_port + 50, base_port + 69),
        )


class AllocationInfo(BaseModel):
    path: str
    base_port: int
    registered: str
    last_used: str | None = None
    exists: bool
    pid: int | None = None
    pid_alive: bool | None = None


class CleanupResult(BaseModel):
    removed: list[str] = Field(default_factory=list)
    remaining: int = 0
