from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from meditation.api.deps import get_container
from meditation.domain.models import CreateMeditationIn, CreateMeditationOut, MeditationStatusOut
from meditation.services.pipeline import PipelineContainer, describe_status, start_meditation

router = APIRouter(prefix="/meditations", tags=["meditations"])


@router.post("", response_model=CreateMeditationOut, status_code=status.HTTP_202_ACCEPTED)
async def create(payload: CreateMeditationIn, container: PipelineContainer = Depends(get_container)):
    med = await start_meditation(container, payload)
    return CreateMeditationOut(meditation_id=med.id, status=med.status)


@router.get("/{meditation_id}/status", response_model=MeditationStatusOut)
async def get_status(meditation_id: int, container: PipelineContainer = Depends(get_container)):
    out = await describe_status(container, meditation_id)
    if out is None:
        raise HTTPException(status_code=404, detail="meditation_not_found")
    return out
