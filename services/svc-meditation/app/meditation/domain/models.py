from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .enums import (
    ExternalTaskState,
    MeditationStatus,
    MusicStatus,
    PipelineStage,
    StatusSummary,
)

# -----------------------------
# Meditation record
# -----------------------------


class CreateMeditationIn(BaseModel):
    first_name: str = Field(min_length=1, max_length=255)
    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    birth_date: date
    style: str = Field(min_length=1, max_length=255)
    goals: str = Field(min_length=1, max_length=1000)
    challenges: str = Field(min_length=1, max_length=1000)
    consent: bool

    @field_validator("consent")
    @classmethod
    def _consent_accepted(cls, v: bool) -> bool:
        if not v:
            raise ValueError("consent_required")
        return v


class CreateMeditationOut(BaseModel):
    meditation_id: int
    status: MeditationStatus


class Meditation(BaseModel):
    id: int
    first_name: str
    email: str
    birth_date: Optional[date] = None
    style: Optional[str] = None
    goals: Optional[str] = None
    challenges: Optional[str] = None

    script_text: Optional[str] = None
    voice_url: Optional[str] = None
    music_url: Optional[str] = None
    music_task_id: Optional[str] = None
    music_status: Optional[MusicStatus] = None
    meditation_url: Optional[str] = None

    status: MeditationStatus = MeditationStatus.created
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @property
    def date_tag(self) -> str:
        return self.created_at.strftime("%d%m%Y")


class MeditationStatusOut(BaseModel):
    ready: bool
    meditation_url: Optional[str] = None
    status: StatusSummary
    error: Optional[str] = None


# -----------------------------
# Queue messages
# -----------------------------


class StageTask(BaseModel):
    """One delivery of a stage message. Retries and reschedules are new messages."""

    model_config = ConfigDict(frozen=True)

    id: UUID
    stage: PipelineStage
    meditation_id: int
    attempt: int = 1
    deliveries: int = 1
    payload: Dict[str, Any] = Field(default_factory=dict)


class VoicePayload(BaseModel):
    script: str


class MusicPayload(BaseModel):
    voice_path: Optional[str] = None


class MusicPollPayload(BaseModel):
    suno_task_id: str
    voice_path: Optional[str] = None


class MusicResponsePayload(BaseModel):
    suno_task_id: str
    voice_path: Optional[str] = None
    # poll path: lossless file already downloaded
    music_path: Optional[str] = None
    # webhook path: candidate tracks as delivered
    tracks: List["SunoTrack"] = Field(default_factory=list)


class MixPayload(BaseModel):
    voice_location: str
    music_location: str


# -----------------------------
# Suno (music generation) responses
# -----------------------------


class SunoTrack(BaseModel):
    id: Optional[str] = None
    audio_url: Optional[str] = Field(default=None, validation_alias=AliasChoices("audio_url", "audioUrl"))
    duration: Optional[float] = None
    title: Optional[str] = None

    @property
    def playable(self) -> bool:
        return bool((self.audio_url or "").strip())


class MusicTaskDetails(BaseModel):
    task_id: str
    raw_status: str
    state: ExternalTaskState
    tracks: List[SunoTrack] = Field(default_factory=list)
    error_message: Optional[str] = None


class WavTaskDetails(BaseModel):
    task_id: str
    raw_status: str
    wav_url: Optional[str] = None


class SunoCallbackData(BaseModel):
    callback_type: Optional[str] = Field(default=None, validation_alias=AliasChoices("callback_type", "callbackType"))
    task_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("task_id", "taskId"))
    data: List[SunoTrack] = Field(default_factory=list)

    @field_validator("data", mode="before")
    @classmethod
    def _none_is_empty(cls, v: Any) -> Any:
        return v or []


class SunoCallbackIn(BaseModel):
    code: int = 0
    msg: Optional[str] = None
    data: SunoCallbackData = Field(default_factory=SunoCallbackData)

    @property
    def external_task_id(self) -> Optional[str]:
        return (self.data.task_id or "").strip() or None

    @property
    def phase(self) -> Optional[str]:
        return self.data.callback_type

    @property
    def tracks(self) -> List[SunoTrack]:
        return self.data.data


MusicResponsePayload.model_rebuild()


# -----------------------------
# Audio
# -----------------------------


@dataclass(frozen=True)
class VoiceAudio:
    data: bytes
    sample_rate: int
    channels: int
    sample_width: int


@dataclass(frozen=True)
class EncodedAudio:
    data: bytes
    ext: str
    mime: str


@dataclass(frozen=True)
class MixParams:
    offset_ms: int = 5000
    tail_ms: int = 5000
    voice_volume: float = 0.85
    music_volume: float = 0.15
    fade_out: bool = True
    fade_ms: int = 5000
    out_format: str = "mp3"


@dataclass(frozen=True)
class MixResult:
    data: bytes
    mime: str
    seconds: float
