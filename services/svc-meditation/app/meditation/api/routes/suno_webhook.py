from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from meditation.api.deps import get_container
from meditation.domain.errors import LockNotAcquiredError
from meditation.domain.models import SunoCallbackIn
from meditation.security import require_suno_webhook_token
from meditation.services.pipeline import PipelineContainer

logger = logging.getLogger("suno_webhook")

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/suno", dependencies=[Depends(require_suno_webhook_token)])
async def suno_callback(payload: SunoCallbackIn, container: PipelineContainer = Depends(get_container)):
    try:
        outcome = await container.callbacks.handle(payload)
    except LockNotAcquiredError as e:
        # poller holds the lock; Suno redelivers on non-2xx
        logger.warning("suno_callback_lock_busy", extra={"key": e.key})
        raise HTTPException(status_code=503, detail="busy_retry_later") from e

    logger.info("suno_callback_handled", extra={"task_id": payload.external_task_id, "outcome": outcome})
    return {"ok": True, "outcome": outcome}
