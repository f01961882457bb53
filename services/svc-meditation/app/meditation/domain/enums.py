from __future__ import annotations
from enum import Enum


class PipelineStage(str, Enum):
    script = "script"
    voice = "voice"
    music = "music"
    music_poll = "music_poll"
    music_response = "music_response"
    mix = "mix"


class MeditationStatus(str, Enum):
    created = "created"
    script_pending = "script_pending"
    script_done = "script_done"
    voice_pending = "voice_pending"
    voice_done = "voice_done"
    music_pending = "music_pending"
    music_done = "music_done"
    mix_pending = "mix_pending"
    complete = "complete"
    failed = "failed"


class MusicStatus(str, Enum):
    pending = "pending"
    in_progress = "in_progress"
    complete = "complete"
    failed = "failed"


class ExternalTaskState(str, Enum):
    pending = "pending"
    in_progress = "in_progress"
    succeeded = "succeeded"
    failed = "failed"


class TaskStatus(str, Enum):
    queued = "queued"
    running = "running"
    succeeded = "succeeded"
    retried = "retried"
    failed = "failed"


class StatusSummary(str, Enum):
    pending = "pending"
    complete = "complete"
    failed = "failed"


class LogLevel(str, Enum):
    info = "info"
    warning = "warning"
    error = "error"


# Which state a request enters when a stage task is enqueued for it.
PENDING_STATE_FOR_STAGE = {
    PipelineStage.script: MeditationStatus.script_pending,
    PipelineStage.voice: MeditationStatus.voice_pending,
    PipelineStage.music: MeditationStatus.music_pending,
    PipelineStage.music_poll: MeditationStatus.music_pending,
    PipelineStage.music_response: MeditationStatus.music_done,
    PipelineStage.mix: MeditationStatus.mix_pending,
}
