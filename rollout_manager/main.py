"""FastAPI application entry point."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from rollout_manager.config import Settings, get_settings
from rollout_manager.routers import api
from rollout_manager.wiring import build_components

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings: Settings = get_settings()
    components = build_components(settings)

    app.state.settings = settings
    app.state.database = components.database
    app.state.history_repository = components.history
    app.state.rollout_service = components.service
    app.state.control_plane = components.cluster

    logger.info(
        "Rollout Manager started for %s (stub mode: %s)",
        settings.environment_name,
        settings.stub_mode,
    )
    try:
        yield
    finally:
        await components.aclose()


app = FastAPI(title="Rollout Manager", lifespan=lifespan)

app.include_router(api.router)
