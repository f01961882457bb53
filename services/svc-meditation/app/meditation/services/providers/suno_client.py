from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import AliasChoices, BaseModel, Field, field_validator
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from meditation.config import settings
from meditation.domain.enums import ExternalTaskState
from meditation.domain.errors import ProviderResponseError, TransientProviderError
from meditation.domain.models import MusicTaskDetails, SunoTrack, WavTaskDetails
from meditation.services.providers.base import RETRYABLE_TRANSPORT, raise_for_provider_status, safe_json

logger = logging.getLogger("suno_client")

# body-level codes that mean "try again later" (rate limited / maintenance / internal)
_TRANSIENT_BODY_CODES = {429, 455, 500, 503}


def map_music_status(raw_status: Optional[str]) -> ExternalTaskState:
    s = (raw_status or "").strip().upper()
    if s == "PENDING":
        return ExternalTaskState.pending
    if s in ("TEXT_SUCCESS", "FIRST_SUCCESS"):
        return ExternalTaskState.in_progress
    if s == "SUCCESS":
        return ExternalTaskState.succeeded
    if s.endswith("_FAILED") or s == "FAILED" or "ERROR" in s or s == "CALLBACK_EXCEPTION":
        return ExternalTaskState.failed
    return ExternalTaskState.in_progress


# -----------------------------
# Wire shapes
# -----------------------------


class _Envelope(BaseModel):
    code: int = 200
    msg: Optional[str] = None
    data: Optional[Dict[str, Any]] = None


class _TaskRef(BaseModel):
    task_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("taskId", "task_id"))


class _RecordResponse(BaseModel):
    suno_data: List[SunoTrack] = Field(default_factory=list, validation_alias=AliasChoices("sunoData", "suno_data"))

    @field_validator("suno_data", mode="before")
    @classmethod
    def _none_is_empty(cls, v: Any) -> Any:
        return v or []


class _RecordInfo(BaseModel):
    task_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("taskId", "task_id"))
    status: Optional[str] = None
    response: Optional[_RecordResponse] = None
    error_message: Optional[str] = Field(default=None, validation_alias=AliasChoices("errorMessage", "error_message"))


class _WavResponse(BaseModel):
    audio_wav_url: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("audio_wav_url", "audioWavUrl")
    )


class _WavRecordInfo(BaseModel):
    task_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("taskId", "task_id"))
    status: Optional[str] = None
    response: Optional[_WavResponse] = None


class SunoMusicClient:
    """
    Suno generation + WAV conversion.

    Both jobs are async upstream: we get a task id back and poll record-info.
    """

    def __init__(self) -> None:
        if not settings.SUNO_API_KEY:
            raise RuntimeError("SUNO_API_KEY is not set")
        self.base = settings.SUNO_BASE_URL.rstrip("/")
        self.callback_url = settings.SUNO_CALLBACK_URL
        self.model = settings.SUNO_MODEL
        self.timeout = settings.SUNO_TIMEOUT_SECONDS

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {settings.SUNO_API_KEY}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    @retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.6, min=0.6, max=6.0),
        retry=retry_if_exception_type(TransientProviderError),
    )
    async def _call(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                r = await client.request(method, f"{self.base}{path}", headers=self._headers(), params=params, json=json_body)
        except RETRYABLE_TRANSPORT as e:
            raise TransientProviderError(f"suno_transport_error:{type(e).__name__}") from e

        raise_for_provider_status(r, "suno")
        env = _Envelope.model_validate(safe_json(r, "suno"))

        if env.code != 200:
            msg = f"suno_error_{env.code}: {env.msg or ''}".strip()
            if env.code in _TRANSIENT_BODY_CODES:
                raise TransientProviderError(msg, status_code=env.code)
            raise ProviderResponseError(msg, status_code=env.code)
        return env.data or {}

    def build_generate_body(self, *, meditation_id: int, style: str) -> Dict[str, Any]:
        return {
            "style": f"Meditation, Ambient, {style}",
            "title": f"Meditation Music for {meditation_id}",
            "customMode": True,
            "instrumental": True,
            "model": self.model,
            "negativeTags": "Heavy Metal, Upbeat Drums",
            "styleWeight": 0.65,
            "weirdnessConstraint": 0.65,
            "audioWeight": 0.65,
            "callBackUrl": self.callback_url,
        }

    async def start_job(self, *, meditation_id: int, style: str) -> str:
        data = await self._call("POST", "/generate", json_body=self.build_generate_body(meditation_id=meditation_id, style=style))
        ref = _TaskRef.model_validate(data)
        if not ref.task_id:
            raise ProviderResponseError(f"suno_generate_missing_task_id: {data}")
        logger.info("suno_job_started", extra={"meditation_id": meditation_id, "task_id": ref.task_id})
        return ref.task_id

    async def poll_status(self, task_id: str) -> MusicTaskDetails:
        data = await self._call("GET", "/generate/record-info", params={"taskId": task_id})
        info = _RecordInfo.model_validate(data)
        raw = (info.status or "").strip()
        return MusicTaskDetails(
            task_id=info.task_id or task_id,
            raw_status=raw,
            state=map_music_status(raw),
            tracks=info.response.suno_data if info.response else [],
            error_message=info.error_message,
        )

    async def request_lossless_conversion(self, task_id: str, track_id: Optional[str]) -> str:
        # no callBackUrl: we poll conversion status ourselves
        body: Dict[str, Any] = {"taskId": task_id}
        if track_id:
            body["audioId"] = track_id
        data = await self._call("POST", "/wav/generate", json_body=body)
        ref = _TaskRef.model_validate(data)
        if not ref.task_id:
            raise ProviderResponseError("WAV conversion taskId not returned.")
        return ref.task_id

    async def poll_conversion_status(self, conversion_task_id: str) -> WavTaskDetails:
        data = await self._call("GET", "/wav/record-info", params={"taskId": conversion_task_id})
        info = _WavRecordInfo.model_validate(data)
        return WavTaskDetails(
            task_id=info.task_id or conversion_task_id,
            raw_status=(info.status or "").strip(),
            wav_url=info.response.audio_wav_url if info.response else None,
        )
