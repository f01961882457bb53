from __future__ import annotations

import asyncio
import logging

from meditation.domain.enums import MeditationStatus, PipelineStage
from meditation.domain.models import MusicPayload, StageTask, VoicePayload
from meditation.services import temp_files
from meditation.services.providers.base import VoiceSynthesizer
from meditation.services.stages.base import StageDeps, load_meditation, parse_payload
from meditation.services.wav_container import ensure_container

logger = logging.getLogger("voice_stage")


class VoiceStage:
    stage = PipelineStage.voice

    def __init__(self, deps: StageDeps, voice: VoiceSynthesizer):
        self.deps = deps
        self.voice = voice

    async def handle(self, task: StageTask) -> None:
        payload = parse_payload(VoicePayload, task)
        med = await load_meditation(self.deps.meditations, task.meditation_id)

        audio = await self.voice.synthesize(payload.script)
        encoded = ensure_container(audio)

        path = await asyncio.to_thread(
            temp_files.write_request_file, "voice", med.id, encoded.data, encoded.ext, base=self.deps.tmp_dir
        )
        url = await self.deps.storage.upload(
            path, f"meditation_voice_{med.id}_{med.date_tag}.{encoded.ext}", encoded.mime
        )

        await self.deps.meditations.set_voice_url(med.id, url)
        await self.deps.meditations.set_status(med.id, MeditationStatus.voice_done)
        logger.info("voice_generated", extra={"meditation_id": med.id, "bytes": len(encoded.data), "ext": encoded.ext})

        await self.deps.queue.enqueue(PipelineStage.music, med.id, MusicPayload(voice_path=path))
