from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from meditation.api.health import router as health_router
from meditation.api.routes.meditations import router as meditations_router
from meditation.api.routes.suno_webhook import router as suno_webhook_router
from meditation.db import close_pool, ensure_schema, get_pool
from meditation.logging import configure_logging
from meditation.services.pipeline import PipelineContainer, build_container

API_PREFIX = "/api"


def create_app(container: Optional[PipelineContainer] = None) -> FastAPI:
    """Pass a container to skip DB/provider wiring (tests)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        if container is not None:
            app.state.container = container
            yield
            return

        pool = await get_pool()
        await ensure_schema(pool)
        app.state.container = build_container(pool)
        try:
            yield
        finally:
            await app.state.container.aclose()
            await close_pool()

    app = FastAPI(title="svc-meditation", version="dev", lifespan=lifespan)
    app.include_router(health_router, prefix=API_PREFIX)
    app.include_router(meditations_router, prefix=API_PREFIX)
    app.include_router(suno_webhook_router, prefix=API_PREFIX)
    return app


app = create_app()
