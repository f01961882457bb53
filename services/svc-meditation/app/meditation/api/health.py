from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
async def health():
    return {"ok": True}


@router.get("/ready")
async def ready(request: Request):
    if getattr(request.app.state, "container", None) is None:
        return JSONResponse(status_code=503, content={"ok": False})
    return {"ok": True}
