from __future__ import annotations

from typing import Any, Dict, List
from uuid import UUID, uuid4

import asyncpg

from meditation.domain.enums import PipelineStage
from meditation.domain.models import StageTask


def _row_to_task(row: asyncpg.Record) -> StageTask:
    return StageTask(
        id=row["id"],
        stage=PipelineStage(row["stage"]),
        meditation_id=int(row["meditation_id"]),
        attempt=int(row["attempt"]),
        deliveries=int(row["deliveries"]),
        payload=dict(row["payload_json"] or {}),
    )


class PipelineTasksRepo:
    """
    Durable stage queue in pipeline_tasks.

    We claim tasks by:
      - selecting queued tasks that are due, plus running tasks whose lease expired
        (the worker that held them died or hung)
      - locking rows with FOR UPDATE SKIP LOCKED
      - immediately flipping them to 'running' with a fresh lease

    Rows are never re-queued in place: a retry is a new row with attempt+1.
    """

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def insert(
        self,
        *,
        stage: PipelineStage,
        meditation_id: int,
        payload: Dict[str, Any],
        attempt: int = 1,
        delay_seconds: float = 0,
    ) -> StageTask:
        task_id = uuid4()
        row = await self.pool.fetchrow(
            """
            insert into pipeline_tasks(id, stage, meditation_id, attempt, payload_json, status, run_at)
            values($1, $2, $3, $4, $5::jsonb, 'queued', now() + ($6::float8 * interval '1 second'))
            returning *
            """,
            task_id,
            stage.value,
            meditation_id,
            int(attempt),
            payload or {},
            float(max(0.0, delay_seconds)),
        )
        return _row_to_task(row)

    async def claim_due(self, *, limit: int, lease_seconds: int) -> List[StageTask]:
        limit = max(1, int(limit))

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    SELECT id
                    FROM pipeline_tasks
                    WHERE (status = 'queued' AND run_at <= now())
                       OR (status = 'running' AND lease_expires_at < now())
                    ORDER BY run_at ASC, created_at ASC
                    FOR UPDATE SKIP LOCKED
                    LIMIT $1
                    """,
                    limit,
                )
                if not rows:
                    return []

                task_ids = [r["id"] for r in rows]

                claimed = await conn.fetch(
                    """
                    UPDATE pipeline_tasks
                       SET status='running',
                           deliveries=deliveries+1,
                           lease_expires_at=now() + ($2::int * interval '1 second'),
                           updated_at=now()
                     WHERE id = ANY($1::uuid[])
                    RETURNING *
                    """,
                    task_ids,
                    int(lease_seconds),
                )
                return [_row_to_task(r) for r in claimed]

    async def _close(self, task_id: UUID, status: str, error: str | None) -> None:
        await self.pool.execute(
            """
            UPDATE pipeline_tasks
               SET status=$2,
                   last_error=COALESCE($3, last_error),
                   lease_expires_at=NULL,
                   updated_at=now()
             WHERE id=$1
            """,
            task_id,
            status,
            error,
        )

    async def mark_succeeded(self, task_id: UUID) -> None:
        await self._close(task_id, "succeeded", None)

    async def mark_retried(self, task_id: UUID, *, error: str) -> None:
        await self._close(task_id, "retried", error)

    async def mark_failed(self, task_id: UUID, *, error: str) -> None:
        await self._close(task_id, "failed", error)
