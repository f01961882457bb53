from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import asyncpg

from meditation.config import Settings, settings as default_settings
from meditation.domain.enums import MeditationStatus, PipelineStage, StatusSummary
from meditation.domain.models import CreateMeditationIn, Meditation, MeditationStatusOut, MixParams
from meditation.repos.base import JobLogStore, MeditationStore, TaskStore
from meditation.repos.job_logs_repo import JobLogsRepo
from meditation.repos.meditations_repo import MeditationsRepo
from meditation.repos.pipeline_tasks_repo import PipelineTasksRepo
from meditation.services.audio_mix_service import AudioMixService
from meditation.services.audio_probe_service import AudioProbeService
from meditation.services.azure_storage_service import AzureStorageService
from meditation.services.downloads import fetch_bytes
from meditation.services.locks import build_lock_provider
from meditation.services.music_reconciler import MusicCompletion, SunoCallbackHandler, SunoStatusPoller
from meditation.services.providers.base import MusicGenerator, ObjectStorage, TextGenerator, VoiceSynthesizer
from meditation.services.providers.elevenlabs_client import ElevenLabsVoiceClient
from meditation.services.providers.openai_client import OpenAIScriptClient
from meditation.services.providers.suno_client import SunoMusicClient
from meditation.services.stages.base import StageDeps, StageHandler
from meditation.services.stages.mix_stage import MixStage
from meditation.services.stages.music_stage import MusicKickoffStage, MusicResponseStage
from meditation.services.stages.script_stage import ScriptStage
from meditation.services.stages.voice_stage import VoiceStage
from meditation.services.task_queue import StageJournal, StagePolicy, TaskQueue, default_policies

logger = logging.getLogger("pipeline")


@dataclass
class PipelineContainer:
    meditations: MeditationStore
    tasks: TaskStore
    logs: JobLogStore
    queue: TaskQueue
    journal: StageJournal
    handlers: Dict[PipelineStage, StageHandler]
    callbacks: SunoCallbackHandler
    locks: Any = None

    async def aclose(self) -> None:
        close = getattr(self.locks, "close", None)
        if close is not None:
            await close()


def assemble_pipeline(
    *,
    meditations: MeditationStore,
    tasks: TaskStore,
    logs: JobLogStore,
    text: TextGenerator,
    voice: VoiceSynthesizer,
    music: MusicGenerator,
    storage: ObjectStorage,
    mixer: AudioMixService,
    locks: Any,
    mix_params: Optional[MixParams] = None,
    policies: Optional[Mapping[PipelineStage, StagePolicy]] = None,
    tmp_dir: Optional[str] = None,
    lock_timeout: float = 10,
    lock_wait: float = 5,
    wav_max_tries: int = 10,
    sleep=asyncio.sleep,
    fetch=fetch_bytes,
) -> PipelineContainer:
    """Explicit wiring: every collaborator comes in as an argument so tests can swap any of them."""
    queue = TaskQueue(tasks, meditations, policies)
    journal = StageJournal(logs, meditations, tmp_dir=tmp_dir)
    deps = StageDeps(meditations=meditations, queue=queue, journal=journal, storage=storage, tmp_dir=tmp_dir)

    completion = MusicCompletion(meditations, queue, locks, lock_timeout=lock_timeout, lock_wait=lock_wait)
    poller = SunoStatusPoller(
        meditations,
        queue,
        journal,
        music,
        completion,
        fetch,
        wav_max_tries=wav_max_tries,
        sleep=sleep,
        tmp_dir=tmp_dir,
    )

    handlers: Dict[PipelineStage, StageHandler] = {
        PipelineStage.script: ScriptStage(deps, text),
        PipelineStage.voice: VoiceStage(deps, voice),
        PipelineStage.music: MusicKickoffStage(deps, music),
        PipelineStage.music_poll: poller,
        PipelineStage.music_response: MusicResponseStage(deps, fetch=fetch),
        PipelineStage.mix: MixStage(deps, mixer, mix_params or MixParams()),
    }

    return PipelineContainer(
        meditations=meditations,
        tasks=tasks,
        logs=logs,
        queue=queue,
        journal=journal,
        handlers=handlers,
        callbacks=SunoCallbackHandler(meditations, journal, completion),
        locks=locks,
    )


def build_container(pool: asyncpg.Pool, cfg: Settings = default_settings) -> PipelineContainer:
    mixer = AudioMixService(
        ffmpeg_bin=cfg.FFMPEG_BIN,
        probe=AudioProbeService(cfg.FFPROBE_BIN),
        tmp_dir=cfg.PIPELINE_TMP_DIR,
        timeout_s=cfg.MIX_TIMEOUT_SECONDS,
        duration_fallback=cfg.duration_fallback_seconds(),
    )
    return assemble_pipeline(
        meditations=MeditationsRepo(pool),
        tasks=PipelineTasksRepo(pool),
        logs=JobLogsRepo(pool),
        text=OpenAIScriptClient(),
        voice=ElevenLabsVoiceClient(),
        music=SunoMusicClient(),
        storage=AzureStorageService(),
        mixer=mixer,
        locks=build_lock_provider(cfg.REDIS_URL),
        mix_params=cfg.mix_params(),
        policies=default_policies(music_poll_max_attempts=cfg.MUSIC_POLL_MAX_ATTEMPTS),
        tmp_dir=cfg.PIPELINE_TMP_DIR,
        lock_timeout=cfg.MUSIC_LOCK_TIMEOUT_SECS,
        lock_wait=cfg.MUSIC_LOCK_WAIT_SECS,
        wav_max_tries=cfg.WAV_POLL_MAX_TRIES,
    )


async def start_meditation(container: PipelineContainer, data: CreateMeditationIn) -> Meditation:
    med = await container.meditations.create(data)
    await container.queue.enqueue(PipelineStage.script, med.id)
    await container.journal.record(PipelineStage.script, med.id, "pipeline_started")
    logger.info("meditation_created", extra={"meditation_id": med.id})
    return await container.meditations.get(med.id) or med


async def describe_status(container: PipelineContainer, meditation_id: int) -> Optional[MeditationStatusOut]:
    med = await container.meditations.get(meditation_id)
    if med is None:
        return None

    if med.status == MeditationStatus.complete and med.meditation_url:
        return MeditationStatusOut(ready=True, meditation_url=med.meditation_url, status=StatusSummary.complete)

    if med.status == MeditationStatus.failed:
        error = await container.logs.latest_error(meditation_id) or med.error_message or "pipeline_failed"
        return MeditationStatusOut(ready=False, status=StatusSummary.failed, error=error)

    return MeditationStatusOut(ready=False, status=StatusSummary.pending)
