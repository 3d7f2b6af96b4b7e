"""FastAPI application entrypoint for feedcast."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from redis import Redis
from redis import asyncio as aioredis

from feedcast.apps.api.deps import ApiServices
from feedcast.apps.api.routes.embeddings import router as embeddings_router
from feedcast.apps.api.routes.settings import router as settings_router
from feedcast.apps.worker.flow import FlowOrchestrator
from feedcast.apps.worker.queues import StageQueues
from feedcast.apps.worker.scheduler import ScheduleRegistry
from feedcast.libs.clock import TimeZoneClock
from feedcast.libs.logging_utils import colorize, configure_logging
from feedcast.libs.repository import PostgresRepository
from feedcast.libs.schemas import create_pool, get_settings

configure_logging()

LOGGER = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    clock = TimeZoneClock(settings.schedule_timezone)
    clock.check_host_offset()

    pool = await create_pool(settings.database_url)
    async_redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    sync_redis = Redis.from_url(settings.redis_url)
    repository = PostgresRepository(pool)
    queues = StageQueues.from_connection(sync_redis, job_timeout=settings.stage_job_timeout_seconds)
    app.state.services = ApiServices(
        settings=settings,
        repository=repository,
        queues=queues,
        clock=clock,
        registry=ScheduleRegistry(
            async_redis,
            max_jitter=settings.jitter_max_minutes,
            podcast_offset=settings.podcast_offset_minutes,
        ),
        flow=FlowOrchestrator(repository, queues, clock),
    )
    LOGGER.info(colorize("API services ready", "cyan"), extra={"event": "api.ready", "timezone": clock.tz_name})
    try:
        yield
    finally:
        await pool.close()
        await async_redis.aclose()
        sync_redis.close()


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=f"{settings.app_name} API", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health():
        return {"status": "ok"}

    app.include_router(settings_router)
    app.include_router(embeddings_router)
    return app


app = create_app()
