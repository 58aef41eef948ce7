"""Overview server: status of every registered project on this machine.

Usage: python -m agent_farm.overview [--port 4100]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path

import uvicorn
from fastapi import FastAPI
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .auth import install_guards
from .config import get_config
from .dashboard import install_error_handlers
from .models.registry import PortEntry
from .services.port_registry import PortRegistry, get_port_registry
from .services.process import probe_port, spawn_detached

logger = logging.getLogger(__name__)

DEFAULT_PORT = 4100
PROBE_TIMEOUT = 1.0


class PortStatus(BaseModel):
    type: str
    port: int
    url: str
    active: bool


class InstanceStatus(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    project_path: str = Field(alias="projectPath")
    project_name: str = Field(alias="projectName")
    base_port: int = Field(alias="basePort")
    dashboard_port: int = Field(alias="dashboardPort")
    architect_port: int = Field(alias="architectPort")
    registered: str
    last_used: str | None = Field(default=None, alias="lastUsed")
    running: bool
    ports: list[PortStatus]


class LaunchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    project_path: str = Field(default="", alias="projectPath")


def _last_used_ts(instance: InstanceStatus) -> float:
    if not instance.last_used:
        return 0.0
    try:
        return datetime.fromisoformat(instance.last_used.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return 0.0


async def _instance_status(project_path: str, entry: PortEntry) -> InstanceStatus:
    dashboard_port = entry.base_port
    architect_port = entry.base_port + 1

    dashboard_active = await probe_port(dashboard_port, PROBE_TIMEOUT)
    # The architect is only probed when the dashboard is up
    architect_active = dashboard_active and await probe_port(architect_port, PROBE_TIMEOUT)

    return InstanceStatus(
        project_path=project_path,
        project_name=Path(project_path).name,
        base_port=entry.base_port,
        dashboard_port=dashboard_port,
        architect_port=architect_port,
        registered=entry.registered,
        last_used=entry.last_used,
        running=dashboard_active,
        ports=[
            PortStatus(type="Dashboard", port=dashboard_port, url=f"http://localhost:{dashboard_port}", active=dashboard_active),
            PortStatus(type="Architect", port=architect_port, url=f"http://localhost:{architect_port}", active=architect_active),
        ],
    )


async def get_instances(registry: PortRegistry) -> list[InstanceStatus]:
    """Probe every registered project; running first, then most recently used."""
    doc = registry.load()
    instances = await asyncio.gather(*(_instance_status(path, entry) for path, entry in doc.entries.items()))
    return sorted(instances, key=lambda i: (not i.running, -_last_used_ts(i)))


def launch_instance(project_path: str) -> dict:
    """Start ``agent-farm start`` for a project in a detached process."""
    path = Path(project_path)
    if not path.is_dir():
        return {"success": False, "error": f"Path does not exist: {project_path}"}
    if not (path / "codev").is_dir():
        return {"success": False, "error": "Not a codev project (missing codev/ directory)"}

    entrypoint = path / "codev" / "bin" / "agent-farm"
    if not entrypoint.is_file():
        return {"success": False, "error": "agent-farm CLI not found in project"}

    try:
        handle = spawn_detached([str(entrypoint), "start"], cwd=path)
    except OSError as exc:
        return {"success": False, "error": f"Failed to launch: {exc}"}
    logger.info("Launched agent farm for %s (pid %d)", path, handle.pid)
    return {"success": True}


def create_overview_app(registry: PortRegistry, template_path: Path) -> FastAPI:
    app = FastAPI(title="Agent Farm Overview", version="0.1.0")
    install_guards(app)
    install_error_handlers(app)

    @app.get("/api/status")
    async def status() -> dict:
        instances = await get_instances(registry)
        return {"instances": [i.model_dump(by_alias=True) for i in instances]}

    @app.post("/api/launch")
    async def launch(body: LaunchRequest) -> JSONResponse:
        if not body.project_path:
            return JSONResponse({"success": False, "error": "Missing projectPath"}, status_code=400)
        result = launch_instance(body.project_path)
        return JSONResponse(result, status_code=200 if result["success"] else 400)

    @app.get("/", response_class=HTMLResponse, include_in_schema=False)
    async def index() -> HTMLResponse:
        return HTMLResponse(template_path.read_text())

    return app


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Agent Farm overview server")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(name)s] %(levelname)s: %(message)s")
    args = _parse_args(argv)
    config = get_config()

    if not config.overview_template.is_file():
        logger.error("Template not found: %s", config.overview_template)
        return 1

    app = create_overview_app(get_port_registry(), config.overview_template)
    logger.info("Overview dashboard: http://localhost:%d", args.port)
    uvicorn.run(app, host=config.host, port=args.port, log_level="warning")
    return 0


if __name__ == "__main__":
    sys.exit(main())
