"""
Music completion reconciler.

Two triggers watch the same upstream Suno task:
  - SunoStatusPoller: a self-rescheduling music_poll stage
  - SunoCallbackHandler: the webhook

Both funnel into MusicCompletion.complete_locked(), which runs under the
per-task lock "suno:cb:<task id>" and only advances a request that is still
music_pending. The loser of a race finds it already advanced and no-ops, so
exactly one music_response task is enqueued per generation.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, List, Optional

from meditation.domain.enums import ExternalTaskState, MeditationStatus, MusicStatus, PipelineStage
from meditation.domain.models import (
    Meditation,
    MusicPollPayload,
    MusicResponsePayload,
    StageTask,
    SunoCallbackIn,
    SunoTrack,
)
from meditation.repos.base import MeditationStore
from meditation.services import temp_files
from meditation.services.locks import LockProvider, music_lock_key
from meditation.services.providers.base import MusicGenerator
from meditation.services.stages.base import parse_payload
from meditation.services.task_queue import StageJournal, TaskQueue

logger = logging.getLogger("music_reconciler")

Sleep = Callable[[float], Awaitable[None]]
Fetch = Callable[[str], Awaitable[bytes]]

WAV_STOP_STATUSES = frozenset({"FAILED", "ERROR", "CALLBACK_EXCEPTION"})
FINAL_CALLBACK_PHASE = "complete"


def select_best_track(tracks: Iterable[SunoTrack]) -> Optional[SunoTrack]:
    """Longest playable track; the first one wins a tie."""
    best: Optional[SunoTrack] = None
    for t in tracks:
        if not t.playable:
            continue
        if best is None or (t.duration or 0.0) > (best.duration or 0.0):
            best = t
    return best


def _awaiting_music(med: Optional[Meditation]) -> bool:
    return (
        med is not None
        and med.status == MeditationStatus.music_pending
        and med.music_status not in (MusicStatus.complete, MusicStatus.failed)
    )


def wav_wait_seconds(tries: int) -> float:
    return float(min(10 + tries * 5, 30))


class MusicCompletion:
    def __init__(
        self,
        meditations: MeditationStore,
        queue: TaskQueue,
        locks: LockProvider,
        *,
        lock_timeout: float = 10,
        lock_wait: float = 5,
    ):
        self.meditations = meditations
        self.queue = queue
        self.locks = locks
        self.lock_timeout = lock_timeout
        self.lock_wait = lock_wait

    def lock(self, external_task_id: str):
        return self.locks.hold(
            music_lock_key(external_task_id), timeout=self.lock_timeout, blocking_timeout=self.lock_wait
        )

    async def claim_locked(self, meditation_id: int, external_task_id: str) -> bool:
        """Caller holds lock(external_task_id). False when another path already advanced the request."""
        advanced = await self.meditations.mark_music_complete(meditation_id)
        if not advanced:
            logger.info(
                "music_completion_duplicate",
                extra={"meditation_id": meditation_id, "task_id": external_task_id},
            )
        return advanced

    async def dispatch(self, meditation_id: int, payload: MusicResponsePayload) -> None:
        await self.queue.enqueue(PipelineStage.music_response, meditation_id, payload)

    async def complete_locked(self, meditation_id: int, payload: MusicResponsePayload) -> bool:
        if not await self.claim_locked(meditation_id, payload.suno_task_id):
            return False
        await self.dispatch(meditation_id, payload)
        return True


class SunoStatusPoller:
    stage = PipelineStage.music_poll

    def __init__(
        self,
        meditations: MeditationStore,
        queue: TaskQueue,
        journal: StageJournal,
        music: MusicGenerator,
        completion: MusicCompletion,
        fetch: Fetch,
        *,
        wav_max_tries: int = 10,
        sleep: Sleep = asyncio.sleep,
        tmp_dir: Optional[str] = None,
    ):
        self.meditations = meditations
        self.queue = queue
        self.journal = journal
        self.music = music
        self.completion = completion
        self.fetch = fetch
        self.wav_max_tries = wav_max_tries
        self.sleep = sleep
        self.tmp_dir = tmp_dir

    async def _await_wav_url(self, suno_task_id: str, track: SunoTrack) -> Optional[str]:
        conversion_id = await self.music.request_lossless_conversion(suno_task_id, track.id)

        for tries in range(self.wav_max_tries):
            await self.sleep(wav_wait_seconds(tries))
            wav = await self.music.poll_conversion_status(conversion_id)
            status = wav.raw_status.upper()
            if status == "SUCCESS":
                return wav.wav_url
            if status in WAV_STOP_STATUSES:
                logger.warning("wav_conversion_failed", extra={"task_id": suno_task_id, "status": status})
                return None
        return None

    async def _fail_locked(
        self, meditation_id: int, suno_task_id: str, message: str, *, music_failed: bool = False, **context
    ) -> bool:
        """Fail the request under the per-task lock, unless the webhook already moved it on."""
        async with self.completion.lock(suno_task_id):
            med = await self.meditations.get(meditation_id)
            if not _awaiting_music(med):
                logger.info(
                    "music_poll_failure_superseded",
                    extra={"meditation_id": meditation_id, "task_id": suno_task_id, "error": message},
                )
                return False
            if music_failed:
                await self.meditations.set_music_status(meditation_id, MusicStatus.failed)
            await self.journal.fail_request(
                self.stage, meditation_id, message, suno_task_id=suno_task_id, **context
            )
            return True

    async def handle(self, task: StageTask) -> None:
        payload = parse_payload(MusicPollPayload, task)
        med = await self.meditations.get(task.meditation_id)
        if not _awaiting_music(med):
            # webhook got there first, or the request is gone
            logger.info("music_poll_stale", extra={"meditation_id": task.meditation_id})
            return

        details = await self.music.poll_status(payload.suno_task_id)

        if details.state == ExternalTaskState.failed:
            await self._fail_locked(
                med.id,
                payload.suno_task_id,
                f"music_generation_failed:{details.raw_status}: {details.error_message or ''}".strip(),
                music_failed=True,
            )
            return

        if details.state != ExternalTaskState.succeeded:
            if details.state == ExternalTaskState.in_progress:
                await self.meditations.mark_music_in_progress(med.id)

            policy = self.queue.policy(self.stage)
            if task.attempt >= policy.max_attempts:
                await self._fail_locked(
                    med.id, payload.suno_task_id, f"music_poll_attempts_exhausted:{details.raw_status}"
                )
                return
            await self.queue.reschedule(task, delay_seconds=policy.backoff(task.attempt))
            return

        best = select_best_track(details.tracks)
        if best is None:
            await self._fail_locked(med.id, payload.suno_task_id, "music_generation_returned_no_playable_track")
            return

        wav_url = await self._await_wav_url(payload.suno_task_id, best)
        if not wav_url:
            # soft failure: recorded, nothing enqueued, not retried
            await self._fail_locked(med.id, payload.suno_task_id, "wav_conversion_unavailable", track_id=best.id)
            return

        data = await self.fetch(wav_url)
        # the request's music slot is only written by whoever wins the transition
        scratch = await asyncio.to_thread(
            temp_files.scratch_file, f"suno_wav_{med.id}_", ".wav", data, base=self.tmp_dir
        )
        try:
            async with self.completion.lock(payload.suno_task_id):
                if not await self.completion.claim_locked(med.id, payload.suno_task_id):
                    return
                try:
                    music_path = temp_files.promote_to_request_file(
                        scratch, "music", med.id, "wav", base=self.tmp_dir
                    )
                except OSError as e:
                    # already claimed, so a retry would see a stale request
                    await self.journal.fail_request(self.stage, med.id, f"music_temp_file_failed: {e}")
                    return
                await self.completion.dispatch(
                    med.id,
                    MusicResponsePayload(
                        suno_task_id=payload.suno_task_id,
                        voice_path=payload.voice_path,
                        music_path=music_path,
                    ),
                )
        finally:
            temp_files.remove_quietly([scratch])

        await self.journal.record(self.stage, med.id, "music_ready_via_poll", suno_task_id=payload.suno_task_id)


class SunoCallbackHandler:
    def __init__(self, meditations: MeditationStore, journal: StageJournal, completion: MusicCompletion):
        self.meditations = meditations
        self.journal = journal
        self.completion = completion

    async def handle(self, callback: SunoCallbackIn) -> str:
        ext_id = callback.external_task_id
        if not ext_id:
            logger.warning("suno_callback_without_task_id", extra={"code": callback.code})
            return "ignored"

        async with self.completion.lock(ext_id):
            return await self._handle_locked(ext_id, callback)

    async def _handle_locked(self, ext_id: str, callback: SunoCallbackIn) -> str:
        med = await self.meditations.get_by_music_task_id(ext_id)
        if med is None:
            logger.warning("suno_callback_unknown_task", extra={"task_id": ext_id})
            return "unknown_task"

        if not _awaiting_music(med):
            return "stale"

        if callback.code != 200:
            await self.meditations.set_music_status(med.id, MusicStatus.failed)
            await self.journal.fail_request(
                PipelineStage.music,
                med.id,
                f"music_generation_failed:{callback.code}: {callback.msg or ''}".strip(),
                suno_task_id=ext_id,
            )
            return "failed"

        playable: List[SunoTrack] = [t for t in callback.tracks if t.playable]
        if (callback.phase or "").lower() != FINAL_CALLBACK_PHASE or not playable:
            await self.meditations.mark_music_in_progress(med.id)
            return "in_progress"

        won = await self.completion.complete_locked(
            med.id, MusicResponsePayload(suno_task_id=ext_id, tracks=playable)
        )
        if not won:
            return "duplicate"

        await self.journal.record(PipelineStage.music, med.id, "music_ready_via_callback", suno_task_id=ext_id)
        return "accepted"
