from __future__ import annotations

import json
import logging

import asyncpg

from meditation.config import settings

logger = logging.getLogger("db")

_pool: asyncpg.Pool | None = None

# Stable key for pg_advisory_lock around schema creation (several workers may boot at once).
_SCHEMA_LOCK_ID = 7_340_221

SCHEMA_SQL = """
create table if not exists meditations (
    id              bigserial primary key,
    first_name      text not null,
    email           text not null,
    birth_date      date,
    style           text,
    goals           text,
    challenges      text,
    script_text     text,
    voice_url       text,
    music_url       text,
    music_task_id   text unique,
    music_status    text,
    meditation_url  text,
    status          text not null default 'created',
    error_message   text,
    created_at      timestamptz not null default now(),
    updated_at      timestamptz not null default now()
);

create table if not exists pipeline_tasks (
    id                uuid primary key,
    stage             text not null,
    meditation_id     bigint not null references meditations(id) on delete cascade,
    attempt           int not null default 1,
    deliveries        int not null default 0,
    payload_json      jsonb not null default '{}'::jsonb,
    status            text not null default 'queued',
    run_at            timestamptz not null default now(),
    lease_expires_at  timestamptz,
    last_error        text,
    created_at        timestamptz not null default now(),
    updated_at        timestamptz not null default now()
);

create index if not exists pipeline_tasks_due_idx on pipeline_tasks(status, run_at);

create table if not exists job_logs (
    id             bigserial primary key,
    meditation_id  bigint,
    stage          text not null,
    level          text not null,
    message        text not null,
    context_json   jsonb not null default '{}'::jsonb,
    created_at     timestamptz not null default now()
);

create index if not exists job_logs_meditation_idx on job_logs(meditation_id, created_at desc);
"""


async def _init_conn(conn: asyncpg.Connection):
    await conn.set_type_codec("json", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")
    await conn.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")


async def get_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(dsn=settings.DATABASE_URL, min_size=1, max_size=10, init=_init_conn)
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


async def ensure_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute("select pg_advisory_lock($1)", _SCHEMA_LOCK_ID)
        try:
            await conn.execute(SCHEMA_SQL)
        finally:
            await conn.execute("select pg_advisory_unlock($1)", _SCHEMA_LOCK_ID)
    logger.info("schema_ready")
