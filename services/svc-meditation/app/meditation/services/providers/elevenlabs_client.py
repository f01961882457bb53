from __future__ import annotations

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from meditation.config import settings
from meditation.domain.errors import TransientProviderError
from meditation.domain.models import VoiceAudio
from meditation.services.providers.base import RETRYABLE_TRANSPORT, raise_for_provider_status


class ElevenLabsVoiceClient:
    def __init__(self) -> None:
        if not settings.ELEVENLABS_API_KEY:
            raise RuntimeError("ELEVENLABS_API_KEY is not set")
        self.base = settings.ELEVENLABS_BASE_URL.rstrip("/")
        self.voice_id = settings.ELEVENLABS_VOICE_ID
        self.model_id = settings.ELEVENLABS_MODEL_ID
        self.output_format = settings.ELEVENLABS_OUTPUT_FORMAT
        self.timeout = settings.ELEVENLABS_TIMEOUT_SECONDS

    @retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1.0, min=1.0, max=8.0),
        retry=retry_if_exception_type(TransientProviderError),
    )
    async def synthesize(self, text: str) -> VoiceAudio:
        url = f"{self.base}/text-to-speech/{self.voice_id}"
        headers = {
            "xi-api-key": settings.ELEVENLABS_API_KEY,
            "Content-Type": "application/json",
            "Accept": "audio/*",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                r = await client.post(
                    url,
                    params={"output_format": self.output_format},
                    headers=headers,
                    json={"text": text, "model_id": self.model_id},
                )
        except RETRYABLE_TRANSPORT as e:
            raise TransientProviderError(f"elevenlabs_transport_error:{type(e).__name__}") from e

        raise_for_provider_status(r, "elevenlabs")

        # pcm_<rate> output is headerless; the rate/width come from config
        return VoiceAudio(
            data=r.content or b"",
            sample_rate=settings.VOICE_SAMPLE_RATE,
            channels=settings.VOICE_CHANNELS,
            sample_width=settings.VOICE_SAMPLE_WIDTH,
        )
