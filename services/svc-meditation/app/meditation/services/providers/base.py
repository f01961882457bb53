from __future__ import annotations

import json
from typing import Any, Dict, Optional, Protocol

import httpx

from meditation.domain.errors import ProviderResponseError, TransientProviderError
from meditation.domain.models import MusicTaskDetails, VoiceAudio, WavTaskDetails

RETRYABLE_TRANSPORT = (httpx.TimeoutException, httpx.TransportError)


def raise_for_provider_status(resp: httpx.Response, provider: str) -> None:
    """5xx and 429 are transient; any other 4xx is the caller's fault and won't improve on retry."""
    code = resp.status_code
    if code < 400:
        return
    body = (resp.text or "")[:500]
    if code >= 500 or code == 429:
        raise TransientProviderError(f"{provider}_http_{code}: {body}", status_code=code)
    raise ProviderResponseError(f"{provider}_http_{code}: {body}", status_code=code)


def safe_json(resp: httpx.Response, provider: str) -> Dict[str, Any]:
    text = (resp.text or "").strip()
    if not text:
        raise TransientProviderError(f"{provider}_empty_body", status_code=resp.status_code)
    try:
        obj = resp.json()
    except json.JSONDecodeError as e:
        raise ProviderResponseError(f"{provider}_invalid_json: {text[:200]}") from e
    if not isinstance(obj, dict):
        raise ProviderResponseError(f"{provider}_unexpected_json_type: {type(obj).__name__}")
    return obj


class TextGenerator(Protocol):
    async def generate(self, prompt: str) -> str:
        """Raises ScriptTruncatedError when the output hit the token limit."""
        ...


class VoiceSynthesizer(Protocol):
    async def synthesize(self, text: str) -> VoiceAudio: ...


class MusicGenerator(Protocol):
    async def start_job(self, *, meditation_id: int, style: str) -> str: ...

    async def poll_status(self, task_id: str) -> MusicTaskDetails: ...

    async def request_lossless_conversion(self, task_id: str, track_id: Optional[str]) -> str: ...

    async def poll_conversion_status(self, conversion_task_id: str) -> WavTaskDetails: ...


class ObjectStorage(Protocol):
    async def upload(self, local_path: str, name: str, mime_type: str) -> str:
        """Returns a readable URL for the stored object."""
        ...
