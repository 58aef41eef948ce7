"""HTML pages: the dashboard itself and the open-file bridge."""

from __future__ import annotations

import html
import json

from fastapi import APIRouter, Depends, Query
from fastapi.responses import HTMLResponse

from ..config import FarmConfig
from ..deps import get_farm_config, get_tab_service
from ..errors import ValidationError
from ..services.paths import resolve_project_file
from ..services.tabs import TabService

router = APIRouter(tags=["ui"])

STATE_INJECTION_POINT = "// STATE_INJECTION_POINT"
PROJECT_NAME_PLACEHOLDER = "{{PROJECT_NAME}}"
OPEN_FILE_PLACEHOLDER = "__OPEN_FILE_PAYLOAD__"


def script_json(data: object) -> str:
    """JSON that is safe to embed inside a <script> element."""
    return json.dumps(data).replace("<", "\\u003c").replace(">", "\\u003e").replace("&", "\\u0026")


@router.get("/", response_class=HTMLResponse, include_in_schema=False)
async def serve_dashboard(
    tabs: TabService = Depends(get_tab_service),
    config: FarmConfig = Depends(get_farm_config),
) -> HTMLResponse:
    """Serve the dashboard with the reconciled state injected."""
    state = await tabs.reconcile()
    template = config.dashboard_template.read_text()
    page = template.replace(STATE_INJECTION_POINT, f"window.INITIAL_STATE = {script_json(state.to_json_dict())};")
    page = page.replace(PROJECT_NAME_PLACEHOLDER, html.escape(config.project_name))
    return HTMLResponse(page)


@router.get("/open-file", response_class=HTMLResponse, include_in_schema=False)
async def open_file_bridge(
    path: str = Query(""),
    line: int | None = Query(None),
    source_port: int | None = Query(None, alias="sourcePort"),
    config: FarmConfig = Depends(get_farm_config),
) -> HTMLResponse:
    """Bridge page that asks the dashboard to open ``path`` as a file tab."""
    resolved = resolve_project_file(config.project_root, path)
    if line is not None and line < 1:
        raise ValidationError(f"Invalid line number: {line}")
    if source_port is not None and not 1024 <= source_port <= 65535:
        raise ValidationError(f"Invalid port: {source_port}")

    payload = {"path": str(resolved), "line": line, "sourcePort": source_port}
    template = (config.templates_dir / "open-file.html").read_text()
    return HTMLResponse(template.replace(OPEN_FILE_PLACEHOLDER, script_json(payload)))
