"""Dashboard control server: the single coordinator for one project's live state.

Usage: python -m agent_farm.dashboard --port 4200 [--project-root PATH]
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Callable

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .auth import install_guards
from .config import FarmConfig
from .errors import FarmError
from .models.registry import ProjectPorts
from .services.sessions import SessionManager
from .services.state_store import open_store
from .services.tabs import TabService

logger = logging.getLogger(__name__)


def _terminate_self() -> None:
    # uvicorn turns SIGTERM into a graceful shutdown
    os.kill(os.getpid(), signal.SIGTERM)


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(FarmError)
    async def farm_error_handler(request: Request, exc: FarmError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse({"detail": str(exc)}, status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def invalid_request_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        message = errors[0].get("msg", "") if errors else ""
        return JSONResponse({"detail": f"Invalid request: {message}"}, status_code=400)


def create_dashboard_app(
    config: FarmConfig,
    ports: ProjectPorts,
    sessions: SessionManager | None = None,
    exit_hook: Callable[[], None] | None = None,
) -> FastAPI:
    """Build the dashboard app for ``config.project_root``."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Dashboard for %s on port %d", config.project_root, ports.dashboard_port)
        yield
        logger.info("Dashboard stopped")

    app = FastAPI(
        title="Agent Farm Dashboard",
        description="Control API for one project's architect, builder and shell sessions",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.tabs = TabService(config, open_store(config), sessions or SessionManager(), ports)
    app.state.exit_hook = exit_hook or _terminate_self

    install_guards(app)
    install_error_handlers(app)

    from .routers.state import router as state_router
    from .routers.tabs import router as tabs_router
    from .routers.ui import router as ui_router

    app.include_router(state_router)
    app.include_router(tabs_router)
    app.include_router(ui_router)
    return app


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Agent Farm dashboard server")
    parser.add_argument("--port", type=int, default=None, help="Port to listen on (default: project block)")
    parser.add_argument("--project-root", type=Path, default=None, help="Project root (default: discovered)")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(name)s] %(levelname)s: %(message)s")
    args = _parse_args(argv)
    config = FarmConfig(project_root=args.project_root)

    if not config.dashboard_template.is_file():
        logger.error("Template not found: %s", config.dashboard_template)
        return 1

    from .services.port_registry import PortRegistry

    ports = PortRegistry(config.farm_home).get_project_ports(config.project_root)
    port = args.port or ports.dashboard_port

    app = create_dashboard_app(config, ports)
    uvicorn.run(app, host=config.host, port=port, log_level="warning")
    return 0


if __name__ == "__main__":
    sys.exit(main())
