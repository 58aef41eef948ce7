"""FastAPI dependencies resolving per-app services."""

from __future__ import annotations

from fastapi import Request

from .config import FarmConfig
from .services.tabs import TabService


async def get_tab_service(request: Request) -> TabService:
    return request.app.state.tabs


async def get_farm_config(request: Request) -> FarmConfig:
    return request.app.state.config
