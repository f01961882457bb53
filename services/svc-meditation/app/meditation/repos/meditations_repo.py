from __future__ import annotations

from typing import Optional

import asyncpg

from meditation.domain.enums import MeditationStatus, MusicStatus
from meditation.domain.models import CreateMeditationIn, Meditation


def _row_to_meditation(row: asyncpg.Record | None) -> Optional[Meditation]:
    if not row:
        return None
    return Meditation.model_validate(dict(row))


class MeditationsRepo:
    """
    meditations table access.

    Artifact columns are written by their own stage only; a retried stage
    overwrites its own column and nothing else.
    """

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def create(self, data: CreateMeditationIn) -> Meditation:
        row = await self.pool.fetchrow(
            """
            insert into meditations(first_name, email, birth_date, style, goals, challenges, status)
            values($1, $2, $3, $4, $5, $6, 'created')
            returning *
            """,
            data.first_name,
            data.email,
            data.birth_date,
            data.style,
            data.goals,
            data.challenges,
        )
        return _row_to_meditation(row)  # type: ignore[return-value]

    async def get(self, meditation_id: int) -> Optional[Meditation]:
        row = await self.pool.fetchrow("select * from meditations where id=$1", meditation_id)
        return _row_to_meditation(row)

    async def get_by_music_task_id(self, music_task_id: str) -> Optional[Meditation]:
        row = await self.pool.fetchrow(
            "select * from meditations where music_task_id=$1 limit 1",
            music_task_id,
        )
        return _row_to_meditation(row)

    async def set_status(
        self, meditation_id: int, status: MeditationStatus, *, error_message: Optional[str] = None
    ) -> None:
        # failed is absorbing: nothing moves a request out of it
        await self.pool.execute(
            """
            update meditations
               set status=$2,
                   error_message=coalesce($3, error_message),
                   updated_at=now()
             where id=$1
               and status <> 'failed'
            """,
            meditation_id,
            status.value,
            error_message,
        )

    async def set_script(self, meditation_id: int, script_text: str) -> None:
        await self.pool.execute(
            "update meditations set script_text=$2, updated_at=now() where id=$1",
            meditation_id,
            script_text,
        )

    async def set_voice_url(self, meditation_id: int, voice_url: str) -> None:
        await self.pool.execute(
            "update meditations set voice_url=$2, updated_at=now() where id=$1",
            meditation_id,
            voice_url,
        )

    async def set_music_task_id(self, meditation_id: int, music_task_id: str) -> None:
        await self.pool.execute(
            """
            update meditations
               set music_task_id=$2,
                   music_status='pending',
                   updated_at=now()
             where id=$1
            """,
            meditation_id,
            music_task_id,
        )

    async def set_music_status(self, meditation_id: int, music_status: MusicStatus) -> None:
        await self.pool.execute(
            "update meditations set music_status=$2, updated_at=now() where id=$1",
            meditation_id,
            music_status.value,
        )

    async def mark_music_complete(self, meditation_id: int) -> bool:
        row = await self.pool.fetchrow(
            """
            update meditations
               set music_status='complete',
                   status='music_done',
                   updated_at=now()
             where id=$1
               and status='music_pending'
               and coalesce(music_status, '') <> 'complete'
            returning id
            """,
            meditation_id,
        )
        return row is not None

    async def mark_music_in_progress(self, meditation_id: int) -> bool:
        row = await self.pool.fetchrow(
            """
            update meditations
               set music_status='in_progress',
                   updated_at=now()
             where id=$1
               and status='music_pending'
               and coalesce(music_status, '') not in ('in_progress', 'complete', 'failed')
            returning id
            """,
            meditation_id,
        )
        return row is not None

    async def set_music_url(self, meditation_id: int, music_url: str) -> None:
        await self.pool.execute(
            "update meditations set music_url=$2, updated_at=now() where id=$1",
            meditation_id,
            music_url,
        )

    async def set_meditation_url(self, meditation_id: int, meditation_url: str) -> None:
        await self.pool.execute(
            """
            update meditations
               set meditation_url=$2,
                   status='complete',
                   error_message=null,
                   updated_at=now()
             where id=$1
            """,
            meditation_id,
            meditation_url,
        )
