from __future__ import annotations

import logging

from meditation.domain.enums import LogLevel, MeditationStatus, PipelineStage
from meditation.domain.errors import ScriptTruncatedError
from meditation.domain.models import Meditation, StageTask, VoicePayload
from meditation.services.providers.base import TextGenerator
from meditation.services.stages.base import StageDeps, load_meditation

logger = logging.getLogger("script_stage")

LENGTH_CONSTRAINT = " Keep the script to no more than 160 words."


def build_script_prompt(med: Meditation) -> str:
    birth_date = med.birth_date.isoformat() if med.birth_date else "unknown"
    return (
        f"You are a meditation expert. Create a personalized meditation script for {med.first_name}. "
        f"Their goals are: {med.goals}. Their challenges are: {med.challenges}. "
        f"Use any influences from their star sign using their date of birth: {birth_date}. "
        "The script should be calming, supportive, and tailored to their needs. "
        "Make the meditation one minute long when spoken."
    )


class ScriptStage:
    stage = PipelineStage.script

    def __init__(self, deps: StageDeps, text: TextGenerator):
        self.deps = deps
        self.text = text

    async def handle(self, task: StageTask) -> None:
        med = await load_meditation(self.deps.meditations, task.meditation_id)
        prompt = build_script_prompt(med)

        try:
            script = await self.text.generate(prompt)
        except ScriptTruncatedError:
            # one length-constrained retry, never more
            await self.deps.journal.record(
                self.stage, med.id, "script_truncated_retrying_with_length_limit", level=LogLevel.warning
            )
            try:
                script = await self.text.generate(prompt + LENGTH_CONSTRAINT)
            except ScriptTruncatedError as e:
                raise ScriptTruncatedError(
                    "script_truncated_after_length_constrained_retry", partial_text=e.partial_text
                ) from e

        await self.deps.meditations.set_script(med.id, script)
        await self.deps.meditations.set_status(med.id, MeditationStatus.script_done)
        logger.info("script_generated", extra={"meditation_id": med.id, "chars": len(script)})

        await self.deps.queue.enqueue(PipelineStage.voice, med.id, VoicePayload(script=script))
