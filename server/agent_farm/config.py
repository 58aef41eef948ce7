"""Environment-based configuration for Agent Farm."""

from __future__ import annotations

import os
from pathlib import Path

_PACKAGE_DIR = Path(__file__).parent

# Markers that identify a project root, checked in order at every level
_ROOT_MARKERS = ("codev", ".agent-farm", ".git")


def find_project_root(start: Path | None = None) -> Path:
    """Walk up from ``start`` until a directory carrying a project marker is found."""
    start_dir = (start or Path.cwd()).resolve()
    for directory in (start_dir, *start_dir.parents):
        if any((directory / marker).exists() for marker in _ROOT_MARKERS):
            return directory
    return start_dir


class FarmConfig:
    """Agent Farm configuration loaded from environment variables."""

    def __init__(self, project_root: Path | None = None, farm_home: Path | None = None) -> None:
        env_root = os.environ.get("AF_PROJECT_DIR")
        if project_root is None:
            project_root = Path(env_root) if env_root else find_project_root()
        self.project_root = Path(project_root).resolve()

        # Per-project paths
        self.state_dir = self.project_root / ".agent-farm"
        self.state_path = self.state_dir / "state.json"
        self.builders_dir = self.project_root / ".builders"
        self.codev_dir = self.project_root / "codev"

        # Machine-wide home for the port registry
        env_home = os.environ.get("AF_HOME")
        self.farm_home = Path(farm_home or env_home or Path.home() / ".agent-farm")

        self.templates_dir = Path(os.environ.get("AF_TEMPLATES_DIR", _PACKAGE_DIR / "templates"))

        self.host = "127.0.0.1"
        self.max_tabs = int(os.environ.get("AF_MAX_TABS", "20"))
        self.shell = os.environ.get("AF_SHELL") or os.environ.get("SHELL") or "/bin/bash"
        self.architect_cmd = os.environ.get("AF_ARCHITECT_CMD", "claude")
        self.state_lock = os.environ.get("AF_STATE_LOCK", "") == "1"

    @property
    def project_name(self) -> str:
        return self.project_root.name

    @property
    def dashboard_template(self) -> Path:
        return self.templates_dir / "dashboard.html"

    @property
    def overview_template(self) -> Path:
        return self.templates_dir / "overview.html"

    def ensure_directories(self) -> None:
        """Create the state and builders directories if missing."""
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.builders_dir.mkdir(parents=True, exist_ok=True)


_config: FarmConfig | None = None


def get_config() -> FarmConfig:
    """Get (or create) the singleton FarmConfig."""
    global _config
    if _config is None:
        _config = FarmConfig()
    return _config
