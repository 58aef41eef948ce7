"""Tab creation and removal endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from ..deps import get_tab_service
from ..models.tabs import BuilderTabRequest, FileTabRequest, ShellTabRequest, TabRef
from ..services.tabs import TabService

router = APIRouter(prefix="/api/tabs", tags=["tabs"])


@router.post("/file")
async def create_file_tab(body: FileTabRequest, tabs: TabService = Depends(get_tab_service)) -> JSONResponse:
    """Open an annotation viewer for a project file, reusing a live one."""
    result = await tabs.create_file_tab(body.path, body.parent)
    return JSONResponse(result.to_json_dict(), status_code=200 if result.existing else 201)


@router.post("/builder")
async def open_builder_tab(body: BuilderTabRequest, tabs: TabService = Depends(get_tab_service)) -> JSONResponse:
    result = await tabs.open_builder_tab(body.project_id)
    return JSONResponse(result.to_json_dict(), status_code=200)


@router.post("/shell")
async def create_shell_tab(
    body: ShellTabRequest | None = None,
    tabs: TabService = Depends(get_tab_service),
) -> JSONResponse:
    result = await tabs.create_shell_tab(body.name if body else None)
    return JSONResponse(result.to_json_dict(), status_code=201)


@router.delete("/{tab_id}")
async def delete_tab(tab_id: str, tabs: TabService = Depends(get_tab_service)) -> dict:
    """Close a tab by its ``file-``, ``builder-`` or ``shell-`` prefixed id."""
    ref = TabRef.parse(tab_id)
    if ref is None:
        raise HTTPException(status_code=404, detail=f"Tab not found: {tab_id}")
    await tabs.delete_tab(ref)
    return {"success": True}
