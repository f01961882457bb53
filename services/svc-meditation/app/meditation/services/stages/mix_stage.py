from __future__ import annotations

import asyncio
import logging

from meditation.domain.enums import PipelineStage
from meditation.domain.models import MixParams, MixPayload, StageTask
from meditation.services import temp_files
from meditation.services.audio_mix_service import AudioMixService, ext_for_format
from meditation.services.downloads import read_location
from meditation.services.stages.base import StageDeps, load_meditation, parse_payload, pick_location

logger = logging.getLogger("mix_stage")


class MixStage:
    stage = PipelineStage.mix

    def __init__(self, deps: StageDeps, mixer: AudioMixService, params: MixParams):
        self.deps = deps
        self.mixer = mixer
        self.params = params

    async def handle(self, task: StageTask) -> None:
        payload = parse_payload(MixPayload, task)
        med = await load_meditation(self.deps.meditations, task.meditation_id)

        voice = await read_location(pick_location(payload.voice_location, med.voice_url))
        music = await read_location(pick_location(payload.music_location, med.music_url))

        # ffmpeg blocks; keep it off the event loop
        result = await asyncio.to_thread(self.mixer.mix, voice, music, self.params)

        ext = ext_for_format(self.params.out_format)
        out_path = await asyncio.to_thread(
            temp_files.write_request_file, "mix", med.id, result.data, ext, base=self.deps.tmp_dir
        )
        url = await self.deps.storage.upload(out_path, f"meditation_{med.id}_{med.date_tag}.{ext}", result.mime)

        await self.deps.meditations.set_meditation_url(med.id, url)
        await self.deps.journal.record(self.stage, med.id, "meditation_complete", seconds=round(result.seconds, 3))
        logger.info("meditation_complete", extra={"meditation_id": med.id, "seconds": result.seconds})

        # last consumer of the request's temp artifacts
        temp_files.cleanup_request_files(med.id, base=self.deps.tmp_dir)
