from __future__ import annotations

import asyncio
import os

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from meditation.config import settings
from meditation.domain.errors import EmptyAudioError, ProviderResponseError, TransientProviderError


def is_remote(location: str) -> bool:
    return (location or "").lower().startswith(("http://", "https://"))


@retry(
    reraise=True,
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1.0, min=1.0, max=8.0),
    retry=retry_if_exception_type(TransientProviderError),
)
async def fetch_bytes(url: str, *, timeout_s: float | None = None) -> bytes:
    timeout = timeout_s or settings.DOWNLOAD_TIMEOUT_SECS
    try:
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
            r = await client.get(url)
    except (httpx.TimeoutException, httpx.TransportError) as e:
        raise TransientProviderError(f"download_transport_error:{type(e).__name__}") from e

    if r.status_code >= 500 or r.status_code == 429:
        raise TransientProviderError(f"download_failed:{r.status_code}", status_code=r.status_code)
    if r.status_code >= 400:
        raise ProviderResponseError(f"download_failed:{r.status_code}", status_code=r.status_code)
    if not r.content:
        raise EmptyAudioError(f"download_empty:{url[:200]}")
    return r.content


def _read_file(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


async def read_location(location: str) -> bytes:
    """Bytes for an artifact handed forward either as a local temp path or a URL."""
    if is_remote(location):
        return await fetch_bytes(location)
    if not os.path.isfile(location):
        raise FileNotFoundError(location)
    return await asyncio.to_thread(_read_file, location)
