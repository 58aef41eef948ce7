"""State and stop-all endpoints."""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Depends, Request

from ..deps import get_tab_service
from ..services.tabs import TabService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["state"])

# Lets the stop response flush before the server goes away
EXIT_DELAY = 0.5


@router.get("/state")
async def get_state(tabs: TabService = Depends(get_tab_service)) -> dict:
    """Return the project state after dropping records of exited processes."""
    state = await tabs.reconcile()
    return state.to_json_dict()


@router.post("/stop")
async def stop_all(request: Request, tabs: TabService = Depends(get_tab_service)) -> dict:
    """Kill every tracked process, clear state and shut the dashboard down."""
    killed = await tabs.stop_all()
    logger.info("Stop requested; exiting in %.1fs", EXIT_DELAY)
    asyncio.get_running_loop().call_later(EXIT_DELAY, request.app.state.exit_hook)
    return {"success": True, "killed": killed}
