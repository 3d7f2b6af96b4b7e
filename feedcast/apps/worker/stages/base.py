"""Shared stage contract: lock, re-check, call, persist, chain, release."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, ClassVar, Dict, Mapping, TypeVar

import redis
from openai import AsyncOpenAI
from redis import Redis
from redis import asyncio as aioredis

from feedcast.apps.worker.queues import StageName, StageQueues
from feedcast.libs.capabilities import (
    EmbeddingCapability,
    NarrateCapability,
    ObjectStore,
    Repository,
    SummarizeCapability,
    SynthesizeCapability,
)
from feedcast.libs.clock import TimeZoneClock
from feedcast.libs.embeddings import OpenAIEmbeddings
from feedcast.libs.llm import OpenAINarrator, OpenAISummarizer
from feedcast.libs.lock import DistributedLock
from feedcast.libs.repository import PostgresRepository
from feedcast.libs.schemas import create_pool
from feedcast.libs.schemas.settings import AppSettings, get_settings
from feedcast.libs.storage import GCSObjectStore
from feedcast.libs.tts import OpenAISpeechSynthesizer

LOGGER = logging.getLogger(__name__)
T = TypeVar("T")

COMPLETED = "completed"
SKIPPED = "skipped"
LOCKED = "locked"
EXISTS = "exists"


@dataclass
class StageResult:
    stage: str
    status: str
    user_id: str
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"stage": self.stage, "status": self.status, "user_id": self.user_id, **self.detail}


@dataclass
class StageContext:
    """Dependencies a stage needs for one job execution."""

    settings: AppSettings
    repository: Repository
    lock: DistributedLock
    queues: StageQueues
    clock: TimeZoneClock
    summarizer: SummarizeCapability
    narrator: NarrateCapability
    synthesizer: SynthesizeCapability
    store: ObjectStore
    embeddings: EmbeddingCapability
    logger: logging.Logger = LOGGER


@contextlib.asynccontextmanager
async def worker_context(settings: AppSettings | None = None) -> AsyncIterator[StageContext]:
    """Build a :class:`StageContext` bound to the running event loop."""

    settings = settings or get_settings()
    pool = await create_pool(settings.database_url)
    async_redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    sync_redis = Redis.from_url(settings.redis_url)
    timeout = settings.capability_timeout_seconds
    # One provider client per job; its connection pool belongs to this loop.
    openai_client = AsyncOpenAI(api_key=settings.openai_api_key, timeout=timeout) if settings.openai_api_key else None
    try:
        yield StageContext(
            settings=settings,
            repository=PostgresRepository(pool),
            lock=DistributedLock(async_redis),
            queues=StageQueues.from_connection(sync_redis, job_timeout=settings.stage_job_timeout_seconds),
            clock=TimeZoneClock(settings.schedule_timezone),
            summarizer=OpenAISummarizer(
                api_key=settings.openai_api_key,
                model=settings.model_summary,
                timeout=timeout,
                client=openai_client,
            ),
            narrator=OpenAINarrator(
                api_key=settings.openai_api_key,
                model=settings.model_script,
                timeout=timeout,
                client=openai_client,
            ),
            synthesizer=OpenAISpeechSynthesizer(
                api_key=settings.openai_api_key,
                model=settings.model_tts,
                voice=settings.tts_voice,
                timeout=timeout,
                client=openai_client,
            ),
            store=GCSObjectStore(
                bucket_name=settings.gcs_bucket_name,
                credentials_json=settings.gcs_credentials_json,
            ),
            embeddings=OpenAIEmbeddings(
                api_key=settings.openai_api_key,
                model=settings.model_embed,
                client=openai_client,
            ),
        )
    finally:
        if openai_client is not None:
            await openai_client.close()
        await pool.close()
        await async_redis.aclose()
        sync_redis.close()


class Stage:
    """One step of the content chain.

    Subclasses implement :meth:`run`; :meth:`execute` wraps it with the per-user
    lock, a TTL heartbeat and guaranteed release.
    """

    name: ClassVar[StageName]

    def lock_key(self, user_id: str) -> str:
        return f"{self.name.value}:{user_id}"

    def result(self, status: str, user_id: str, **detail: Any) -> StageResult:
        return StageResult(stage=self.name.value, status=status, user_id=user_id, detail=detail)

    async def execute(self, ctx: StageContext, payload: Mapping[str, Any]) -> StageResult:
        user_id = str(payload["user_id"])
        key = self.lock_key(user_id)
        ttl = ctx.settings.lock_ttl_seconds
        try:
            token = await ctx.lock.acquire(key, ttl)
        except redis.RedisError as exc:
            ctx.logger.warning(
                "Lock store unavailable; skipping %s for %s: %s",
                self.name.value,
                user_id,
                exc,
                extra={"event": "stage.lock_error", "stage": self.name.value},
            )
            return self.result(LOCKED, user_id, reason="lock_store_unavailable")
        if token is None:
            ctx.logger.warning(
                "Another %s job is running for user %s, skipping",
                self.name.value,
                user_id,
                extra={"event": "stage.locked", "stage": self.name.value},
            )
            return self.result(LOCKED, user_id, reason="lock_held")

        started = asyncio.get_running_loop().time()
        try:
            async with ctx.lock.heartbeat(key, token, ttl):
                result = await self.run(ctx, payload)
        finally:
            try:
                await ctx.lock.release(key, token)
            except redis.RedisError as exc:
                ctx.logger.warning(
                    "Lock release failed for %s: %s",
                    key,
                    exc,
                    extra={"event": "stage.release_error", "stage": self.name.value},
                )
        ctx.logger.info(
            "%s stage finished for user %s: %s",
            self.name.value,
            user_id,
            result.status,
            extra={
                "event": "stage.finished",
                "stage": self.name.value,
                "status": result.status,
                "duration_ms": int((asyncio.get_running_loop().time() - started) * 1000),
            },
        )
        return result

    async def run(self, ctx: StageContext, payload: Mapping[str, Any]) -> StageResult:
        raise NotImplementedError

    async def call_capability(self, ctx: StageContext, awaitable: Awaitable[T]) -> T:
        return await asyncio.wait_for(awaitable, timeout=ctx.settings.capability_timeout_seconds)


__all__ = [
    "COMPLETED",
    "EXISTS",
    "LOCKED",
    "SKIPPED",
    "Stage",
    "StageContext",
    "StageResult",
    "worker_context",
]
