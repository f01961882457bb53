from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional, Protocol, Type, TypeVar

from pydantic import BaseModel, ValidationError

from meditation.domain.enums import PipelineStage
from meditation.domain.errors import InvalidTaskPayloadError
from meditation.domain.models import Meditation, StageTask
from meditation.repos.base import MeditationStore
from meditation.services.downloads import is_remote
from meditation.services.providers.base import ObjectStorage
from meditation.services.task_queue import StageJournal, TaskQueue

P = TypeVar("P", bound=BaseModel)


@dataclass
class StageDeps:
    meditations: MeditationStore
    queue: TaskQueue
    journal: StageJournal
    storage: ObjectStorage
    tmp_dir: Optional[str] = None


class StageHandler(Protocol):
    stage: PipelineStage

    async def handle(self, task: StageTask) -> None: ...


def parse_payload(model: Type[P], task: StageTask) -> P:
    try:
        return model.model_validate(task.payload)
    except ValidationError as e:
        raise InvalidTaskPayloadError(f"{task.stage.value}_payload_invalid: {e.errors()[:3]}") from e


async def load_meditation(meditations: MeditationStore, meditation_id: int) -> Meditation:
    med = await meditations.get(meditation_id)
    if not med:
        raise InvalidTaskPayloadError(f"meditation_not_found:{meditation_id}")
    return med


def pick_location(handed_off: Optional[str], persisted_url: Optional[str]) -> str:
    """
    Prefer the artifact handed forward in the payload. A local path only
    counts if it is present on this worker; otherwise use the stored copy.
    """
    if handed_off and (is_remote(handed_off) or os.path.isfile(handed_off)):
        return handed_off
    if persisted_url:
        return persisted_url
    raise InvalidTaskPayloadError(f"artifact_unavailable:{handed_off}")
