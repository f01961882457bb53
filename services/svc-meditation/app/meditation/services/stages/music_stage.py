from __future__ import annotations

import asyncio
import logging
import os
from typing import Callable, Awaitable, Optional

from meditation.domain.enums import MeditationStatus, MusicStatus, PipelineStage
from meditation.domain.errors import InvalidTaskPayloadError, UpstreamJobFailedError
from meditation.domain.models import (
    Meditation,
    MixPayload,
    MusicPayload,
    MusicPollPayload,
    MusicResponsePayload,
    StageTask,
)
from meditation.services import temp_files
from meditation.services.downloads import fetch_bytes
from meditation.services.music_reconciler import select_best_track
from meditation.services.providers.base import MusicGenerator
from meditation.services.stages.base import StageDeps, load_meditation, parse_payload
from meditation.services.wav_container import sniff_container

logger = logging.getLogger("music_stage")

Fetch = Callable[[str], Awaitable[bytes]]


def _reusable_task_id(med: Meditation) -> Optional[str]:
    """A retried kickoff must not start a second upstream job for the same run."""
    if not med.music_task_id:
        return None
    if med.status != MeditationStatus.music_pending:
        return None
    if med.music_status in (MusicStatus.failed, MusicStatus.complete):
        return None
    return med.music_task_id


class MusicKickoffStage:
    stage = PipelineStage.music

    def __init__(self, deps: StageDeps, music: MusicGenerator):
        self.deps = deps
        self.music = music

    async def handle(self, task: StageTask) -> None:
        payload = parse_payload(MusicPayload, task)
        med = await load_meditation(self.deps.meditations, task.meditation_id)

        suno_task_id = _reusable_task_id(med)
        if suno_task_id:
            logger.info("music_task_reused", extra={"meditation_id": med.id, "task_id": suno_task_id})
        else:
            suno_task_id = await self.music.start_job(meditation_id=med.id, style=med.style or "")
            await self.deps.meditations.set_music_task_id(med.id, suno_task_id)

        await self.deps.journal.record(self.stage, med.id, "music_generation_started", suno_task_id=suno_task_id)

        await self.deps.queue.enqueue(
            PipelineStage.music_poll,
            med.id,
            MusicPollPayload(suno_task_id=suno_task_id, voice_path=payload.voice_path),
        )


class MusicResponseStage:
    """
    The one consumer of "music is ready", whichever path detected it.

    Poll path hands over a downloaded WAV; webhook path hands over the
    candidate tracks and we download the best one here.
    """

    stage = PipelineStage.music_response

    def __init__(self, deps: StageDeps, *, fetch: Fetch = fetch_bytes):
        self.deps = deps
        self.fetch = fetch

    async def _materialize(self, med: Meditation, payload: MusicResponsePayload) -> tuple[str, str, str]:
        if payload.music_path and os.path.isfile(payload.music_path):
            return payload.music_path, "wav", "audio/wav"

        best = select_best_track(payload.tracks)
        if best is None:
            if payload.music_path:
                raise InvalidTaskPayloadError(f"music_file_missing:{payload.music_path}")
            raise UpstreamJobFailedError("music_generation_returned_no_playable_track")

        data = await self.fetch(best.audio_url or "")
        kind = sniff_container(data)
        ext = kind.ext if kind else "mp3"
        mime = kind.mime if kind else "audio/mpeg"
        path = await asyncio.to_thread(
            temp_files.write_request_file, "music", med.id, data, ext, base=self.deps.tmp_dir
        )
        return path, ext, mime

    async def handle(self, task: StageTask) -> None:
        payload = parse_payload(MusicResponsePayload, task)
        med = await load_meditation(self.deps.meditations, task.meditation_id)

        music_path, ext, mime = await self._materialize(med, payload)
        url = await self.deps.storage.upload(music_path, f"meditation_music_{med.id}_{med.date_tag}.{ext}", mime)
        await self.deps.meditations.set_music_url(med.id, url)

        voice_path = payload.voice_path
        if not voice_path or not os.path.isfile(voice_path):
            voice_path = temp_files.find_request_file("voice", med.id, base=self.deps.tmp_dir)

        await self.deps.queue.enqueue(
            PipelineStage.mix,
            med.id,
            MixPayload(voice_location=voice_path or med.voice_url or "", music_location=music_path),
        )
