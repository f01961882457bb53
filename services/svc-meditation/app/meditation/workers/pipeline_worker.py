from __future__ import annotations

import asyncio
import logging

from meditation.config import settings
from meditation.db import close_pool, ensure_schema, get_pool
from meditation.domain.enums import LogLevel, MeditationStatus
from meditation.domain.errors import NonRetriableError
from meditation.domain.models import StageTask
from meditation.logging import configure_logging
from meditation.services.pipeline import PipelineContainer, build_container

logger = logging.getLogger("pipeline_worker")

# a row redelivered this many times (worker crashed mid-task each time) is given up on
MAX_DELIVERIES = 3


def _error_text(exc: BaseException, timeout_s: float) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return f"stage_timeout_after_{int(timeout_s)}s"
    return str(exc) or type(exc).__name__


class PipelineWorker:
    def __init__(
        self,
        container: PipelineContainer,
        *,
        batch_size: int = 1,
        poll_secs: float = 1.5,
        stale_grace_secs: int = 60,
    ):
        self.c = container
        self.batch_size = batch_size
        self.poll_secs = poll_secs
        self.stale_grace_secs = stale_grace_secs

    def _lease_seconds(self) -> int:
        longest = max(p.timeout_seconds for p in self.c.queue.policies.values())
        return int(longest + self.stale_grace_secs)

    async def tick_once(self) -> int:
        claimed = await self.c.tasks.claim_due(limit=self.batch_size, lease_seconds=self._lease_seconds())
        for task in claimed:
            await self.process(task)
        return len(claimed)

    async def _terminal(self, task: StageTask, message: str) -> None:
        await self.c.tasks.mark_failed(task.id, error=message)
        await self.c.journal.fail_request(task.stage, task.meditation_id, message, attempt=task.attempt)

    async def process(self, task: StageTask) -> None:
        stage = task.stage
        handler = self.c.handlers.get(stage)
        if handler is None:
            await self._terminal(task, f"no_handler_for_stage:{stage.value}")
            return

        med = await self.c.meditations.get(task.meditation_id)
        if med is None or med.status == MeditationStatus.failed:
            # failed is absorbing; drop leftovers without touching the request
            await self.c.tasks.mark_failed(task.id, error="request_not_active")
            return

        policy = self.c.queue.policy(stage)
        if task.deliveries > MAX_DELIVERIES:
            await self._terminal(task, f"{stage.value}_redelivered_{task.deliveries}_times")
            return

        await self.c.journal.record(stage, task.meditation_id, "stage_started", attempt=task.attempt)

        try:
            await asyncio.wait_for(handler.handle(task), timeout=policy.timeout_seconds)
        except NonRetriableError as e:
            logger.warning(
                "stage_failed_terminal",
                extra={"stage": stage.value, "meditation_id": task.meditation_id, "error": str(e)},
            )
            await self._terminal(task, _error_text(e, policy.timeout_seconds))
            return
        except Exception as e:
            msg = _error_text(e, policy.timeout_seconds)
            logger.exception(
                "stage_failed",
                extra={"stage": stage.value, "meditation_id": task.meditation_id, "attempt": task.attempt},
            )
            if task.attempt >= policy.max_attempts:
                await self._terminal(task, f"{stage.value}_attempts_exhausted: {msg}")
                return

            delay = policy.backoff(task.attempt)
            await self.c.queue.reschedule(task, delay_seconds=delay)
            await self.c.tasks.mark_retried(task.id, error=msg)
            await self.c.journal.record(
                stage,
                task.meditation_id,
                f"stage_retry_scheduled: {msg}",
                level=LogLevel.warning,
                attempt=task.attempt,
                delay=delay,
            )
            return

        await self.c.tasks.mark_succeeded(task.id)
        await self.c.journal.record(stage, task.meditation_id, "stage_succeeded", attempt=task.attempt)

    async def run_forever(self) -> None:
        while True:
            try:
                n = await self.tick_once()
            except Exception:
                # keep the loop alive; claim errors are usually DB blips
                logger.exception("worker_tick_exception")
                await asyncio.sleep(1.0)
                continue
            if n == 0:
                await asyncio.sleep(self.poll_secs)


async def main() -> None:
    configure_logging("worker")
    pool = await get_pool()
    await ensure_schema(pool)
    container = build_container(pool)
    worker = PipelineWorker(
        container,
        batch_size=settings.WORKER_BATCH_SIZE,
        poll_secs=settings.WORKER_POLL_SECS,
        stale_grace_secs=settings.WORKER_STALE_GRACE_SECS,
    )
    logger.info("pipeline_worker_started")
    try:
        await worker.run_forever()
    finally:
        await container.aclose()
        await close_pool()


def cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    cli()
