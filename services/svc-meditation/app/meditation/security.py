from __future__ import annotations

import hmac
from typing import Optional

from fastapi import HTTPException, Query, status

from meditation.config import settings


class WebhookAuthError(Exception):
    pass


def check_webhook_token(token: Optional[str], expected: Optional[str] = None) -> None:
    secret = (expected if expected is not None else settings.SUNO_WEBHOOK_TOKEN) or ""
    if not secret:
        raise WebhookAuthError("webhook_token_not_configured")
    if not token or not hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8")):
        raise WebhookAuthError("invalid_webhook_token")


async def require_suno_webhook_token(token: Optional[str] = Query(default=None)) -> None:
    try:
        check_webhook_token(token)
    except WebhookAuthError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e)) from e
