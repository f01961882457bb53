from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Union

from pydantic import BaseModel

from meditation.domain.enums import PENDING_STATE_FOR_STAGE, LogLevel, MeditationStatus, PipelineStage
from meditation.domain.models import StageTask
from meditation.repos.base import JobLogStore, MeditationStore, TaskStore
from meditation.services import temp_files

logger = logging.getLogger("task_queue")

Backoff = Callable[[int], float]
Payload = Union[BaseModel, Dict[str, Any], None]


def fixed_schedule(*delays: float) -> Backoff:
    """attempt 1 -> delays[0], attempt 2 -> delays[1], ...; the last value repeats."""
    if not delays:
        raise ValueError("fixed_schedule needs at least one delay")

    def _delay(attempt: int) -> float:
        idx = min(max(attempt, 1), len(delays)) - 1
        return float(delays[idx])

    return _delay


def capped_linear(base: float = 10, step: float = 10, cap: float = 30) -> Backoff:
    def _delay(attempt: int) -> float:
        return float(min(base + step * (max(attempt, 1) - 1), cap))

    return _delay


@dataclass(frozen=True)
class StagePolicy:
    max_attempts: int
    timeout_seconds: float
    backoff: Backoff


def default_policies(*, music_poll_max_attempts: int = 50) -> Dict[PipelineStage, StagePolicy]:
    job = StagePolicy(max_attempts=3, timeout_seconds=900, backoff=fixed_schedule(10, 30, 60))
    return {
        PipelineStage.script: job,
        PipelineStage.voice: job,
        PipelineStage.music: job,
        PipelineStage.music_response: job,
        PipelineStage.mix: job,
        PipelineStage.music_poll: StagePolicy(
            max_attempts=music_poll_max_attempts,
            timeout_seconds=900,
            backoff=capped_linear(10, 10, 30),
        ),
    }


def _payload_dict(payload: Payload) -> Dict[str, Any]:
    if payload is None:
        return {}
    if isinstance(payload, BaseModel):
        return payload.model_dump(mode="json")
    return dict(payload)


class TaskQueue:
    """
    Stage messages on top of a TaskStore.

    enqueue() is a forward transition: it moves the request into the stage's
    pending state. reschedule() re-submits the same stage (retry or poll
    continuation) as a new message with attempt+1 and leaves the state alone.
    """

    def __init__(
        self,
        tasks: TaskStore,
        meditations: MeditationStore,
        policies: Optional[Mapping[PipelineStage, StagePolicy]] = None,
    ):
        self.tasks = tasks
        self.meditations = meditations
        self.policies = dict(policies or default_policies())

    def policy(self, stage: PipelineStage) -> StagePolicy:
        return self.policies[stage]

    async def enqueue(
        self,
        stage: PipelineStage,
        meditation_id: int,
        payload: Payload = None,
        *,
        attempt: int = 1,
        delay_seconds: float = 0,
    ) -> StageTask:
        pending = PENDING_STATE_FOR_STAGE.get(stage)
        if pending is not None:
            await self.meditations.set_status(meditation_id, pending)

        task = await self.tasks.insert(
            stage=stage,
            meditation_id=meditation_id,
            payload=_payload_dict(payload),
            attempt=attempt,
            delay_seconds=delay_seconds,
        )
        logger.info(
            "task_enqueued",
            extra={"stage": stage.value, "meditation_id": meditation_id, "attempt": attempt, "delay": delay_seconds},
        )
        return task

    async def reschedule(
        self,
        task: StageTask,
        *,
        delay_seconds: float,
        payload: Payload = None,
    ) -> StageTask:
        nxt = await self.tasks.insert(
            stage=task.stage,
            meditation_id=task.meditation_id,
            payload=_payload_dict(payload) if payload is not None else dict(task.payload),
            attempt=task.attempt + 1,
            delay_seconds=delay_seconds,
        )
        logger.info(
            "task_rescheduled",
            extra={
                "stage": task.stage.value,
                "meditation_id": task.meditation_id,
                "attempt": nxt.attempt,
                "delay": delay_seconds,
            },
        )
        return nxt


class StageJournal:
    """
    Audit trail writer. fail_request() is the single terminal path: job log
    row, request state failed with the message, scoped temp files removed.
    """

    def __init__(self, logs: JobLogStore, meditations: MeditationStore, *, tmp_dir: Optional[str] = None):
        self.logs = logs
        self.meditations = meditations
        self.tmp_dir = tmp_dir

    async def record(
        self,
        stage: PipelineStage,
        meditation_id: int,
        message: str,
        *,
        level: LogLevel = LogLevel.info,
        **context: Any,
    ) -> None:
        await self.logs.record(
            stage=stage.value,
            level=level,
            message=message,
            meditation_id=meditation_id,
            context=context or None,
        )

    async def fail_request(self, stage: PipelineStage, meditation_id: int, message: str, **context: Any) -> None:
        message = (message or "").strip() or f"{stage.value}_failed"
        logger.error("request_failed", extra={"stage": stage.value, "meditation_id": meditation_id, "error": message})
        await self.record(stage, meditation_id, message, level=LogLevel.error, **context)
        await self.meditations.set_status(meditation_id, MeditationStatus.failed, error_message=message)
        temp_files.cleanup_request_files(meditation_id, base=self.tmp_dir)
