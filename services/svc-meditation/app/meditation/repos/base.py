"""Persistence interfaces the pipeline depends on.

Postgres implementations live next to this module; tests pass in-memory doubles.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol
from uuid import UUID

from meditation.domain.enums import LogLevel, MeditationStatus, MusicStatus, PipelineStage
from meditation.domain.models import CreateMeditationIn, Meditation, StageTask


class MeditationStore(Protocol):
    async def create(self, data: CreateMeditationIn) -> Meditation: ...

    async def get(self, meditation_id: int) -> Optional[Meditation]: ...

    async def get_by_music_task_id(self, music_task_id: str) -> Optional[Meditation]: ...

    async def set_status(
        self, meditation_id: int, status: MeditationStatus, *, error_message: Optional[str] = None
    ) -> None: ...

    async def set_script(self, meditation_id: int, script_text: str) -> None: ...

    async def set_voice_url(self, meditation_id: int, voice_url: str) -> None: ...

    async def set_music_task_id(self, meditation_id: int, music_task_id: str) -> None: ...

    async def set_music_status(self, meditation_id: int, music_status: MusicStatus) -> None: ...

    async def mark_music_complete(self, meditation_id: int) -> bool:
        """music_pending -> music_done. False when the request already moved on."""
        ...

    async def mark_music_in_progress(self, meditation_id: int) -> bool:
        """Only while music_pending and the music slot is not yet terminal."""
        ...

    async def set_music_url(self, meditation_id: int, music_url: str) -> None: ...

    async def set_meditation_url(self, meditation_id: int, meditation_url: str) -> None: ...


class TaskStore(Protocol):
    async def insert(
        self,
        *,
        stage: PipelineStage,
        meditation_id: int,
        payload: Dict[str, Any],
        attempt: int = 1,
        delay_seconds: float = 0,
    ) -> StageTask: ...

    async def claim_due(self, *, limit: int, lease_seconds: int) -> List[StageTask]: ...

    async def mark_succeeded(self, task_id: UUID) -> None: ...

    async def mark_retried(self, task_id: UUID, *, error: str) -> None: ...

    async def mark_failed(self, task_id: UUID, *, error: str) -> None: ...


class JobLogStore(Protocol):
    async def record(
        self,
        *,
        stage: str,
        level: LogLevel,
        message: str,
        meditation_id: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None: ...

    async def latest_error(self, meditation_id: int) -> Optional[str]: ...
