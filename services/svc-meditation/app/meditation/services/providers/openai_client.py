from __future__ import annotations

import logging
from typing import List, Optional

import httpx
from pydantic import BaseModel, Field
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from meditation.config import settings
from meditation.domain.errors import ProviderResponseError, ScriptTruncatedError, TransientProviderError
from meditation.services.providers.base import RETRYABLE_TRANSPORT, raise_for_provider_status, safe_json

logger = logging.getLogger("openai_client")


class _OutputContent(BaseModel):
    type: str = ""
    text: Optional[str] = None


class _OutputItem(BaseModel):
    type: str = ""
    content: List[_OutputContent] = Field(default_factory=list)


class _IncompleteDetails(BaseModel):
    reason: Optional[str] = None


class ResponsesResult(BaseModel):
    id: Optional[str] = None
    status: Optional[str] = None
    incomplete_details: Optional[_IncompleteDetails] = None
    output: List[_OutputItem] = Field(default_factory=list)

    @property
    def text(self) -> str:
        parts = [
            c.text
            for item in self.output
            if item.type == "message"
            for c in item.content
            if c.type == "output_text" and c.text
        ]
        return "".join(parts).strip()

    @property
    def truncated(self) -> bool:
        reason = self.incomplete_details.reason if self.incomplete_details else None
        return self.status == "incomplete" and reason == "max_output_tokens"


class OpenAIScriptClient:
    """Script text via the Responses API."""

    def __init__(self) -> None:
        if not settings.OPENAI_API_KEY:
            raise RuntimeError("OPENAI_API_KEY is not set")
        self.base = settings.OPENAI_BASE_URL.rstrip("/")
        self.model = settings.OPENAI_MODEL
        self.max_output_tokens = settings.OPENAI_MAX_OUTPUT_TOKENS
        self.timeout = settings.OPENAI_TIMEOUT_SECONDS

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {settings.OPENAI_API_KEY}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    @retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.6, min=0.6, max=6.0),
        retry=retry_if_exception_type(TransientProviderError),
    )
    async def _create_response(self, prompt: str) -> ResponsesResult:
        body = {
            "model": self.model,
            "input": prompt,
            "max_output_tokens": self.max_output_tokens,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                r = await client.post(f"{self.base}/responses", headers=self._headers(), json=body)
        except RETRYABLE_TRANSPORT as e:
            raise TransientProviderError(f"openai_transport_error:{type(e).__name__}") from e

        raise_for_provider_status(r, "openai")
        return ResponsesResult.model_validate(safe_json(r, "openai"))

    async def generate(self, prompt: str) -> str:
        res = await self._create_response(prompt)

        if res.truncated:
            logger.warning("openai_output_truncated", extra={"response_id": res.id})
            raise ScriptTruncatedError("script_truncated_at_token_limit", partial_text=res.text)

        text = res.text
        if not text:
            raise ProviderResponseError(f"openai_empty_output:status={res.status}")
        return text
