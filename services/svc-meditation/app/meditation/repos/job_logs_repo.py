from __future__ import annotations

from typing import Any, Dict, Optional

import asyncpg

from meditation.domain.enums import LogLevel


class JobLogsRepo:
    """
    Append-only pipeline audit trail.

    Terminal failures land here with stage + meditation id so the status
    endpoint can report them.
    """

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def record(
        self,
        *,
        stage: str,
        level: LogLevel,
        message: str,
        meditation_id: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.pool.execute(
            """
            insert into job_logs(meditation_id, stage, level, message, context_json)
            values($1, $2, $3, $4, $5::jsonb)
            """,
            meditation_id,
            stage,
            level.value,
            message,
            context or {},
        )

    async def latest_error(self, meditation_id: int) -> Optional[str]:
        row = await self.pool.fetchrow(
            """
            select message
              from job_logs
             where meditation_id=$1
               and level='error'
             order by created_at desc, id desc
             limit 1
            """,
            meditation_id,
        )
        return str(row["message"]) if row else None
