from __future__ import annotations

from fastapi import HTTPException, Request

from meditation.services.pipeline import PipelineContainer


def get_container(request: Request) -> PipelineContainer:
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(status_code=503, detail="pipeline_not_ready")
    return container
