from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
import time

from redis import Redis
from redis import asyncio as aioredis

from feedcast.apps.worker.flow import FlowOrchestrator
from feedcast.apps.worker.queues import StageQueues
from feedcast.apps.worker.scheduler import ScheduleRegistry, ScheduleTick
from feedcast.libs.clock import TimeZoneClock
from feedcast.libs.logging_utils import configure_logging
from feedcast.libs.repository import PostgresRepository
from feedcast.libs.schemas import create_pool, get_settings

LOGGER = logging.getLogger("feedcast.scheduler")


def _parse_interval(name: str, default_seconds: int) -> int:
    value = os.getenv(name)
    if not value:
        return default_seconds
    try:
        parsed = int(value)
        if parsed > 0:
            return parsed
    except ValueError:
        LOGGER.warning("Invalid interval %s=%s, using default %s", name, value, default_seconds)
    return default_seconds


async def _run(once: bool, rebuild_only: bool) -> None:
    settings = get_settings()
    clock = TimeZoneClock(settings.schedule_timezone)
    clock.check_host_offset()

    pool = await create_pool(settings.database_url)
    async_redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    sync_redis = Redis.from_url(settings.redis_url)
    try:
        repository = PostgresRepository(pool)
        queues = StageQueues.from_connection(sync_redis, job_timeout=settings.stage_job_timeout_seconds)
        registry = ScheduleRegistry(
            async_redis,
            max_jitter=settings.jitter_max_minutes,
            podcast_offset=settings.podcast_offset_minutes,
        )
        flow = FlowOrchestrator(repository, queues, clock)
        tick = ScheduleTick(
            async_redis,
            registry,
            flow,
            queues,
            clock,
            podcast_offset=settings.podcast_offset_minutes,
        )

        registered = await registry.rebuild(repository)
        LOGGER.info("Schedule registry loaded with %s users", registered)
        if rebuild_only:
            return

        tick_interval = _parse_interval("SCHED_TICK_INTERVAL_SEC", 60)
        rebuild_interval = _parse_interval("SCHED_REBUILD_INTERVAL_SEC", 60 * 60)
        next_rebuild = time.time() + rebuild_interval
        LOGGER.info(
            "Scheduler loop started tick_interval=%ss rebuild_interval=%ss timezone=%s",
            tick_interval,
            rebuild_interval,
            clock.tz_name,
        )

        while True:
            started = time.time()
            try:
                counts = await tick.run()
            except Exception:
                LOGGER.exception("Scheduler tick failed")
                raise
            LOGGER.info("Tick finished", extra={"event": "schedule.tick", **counts})
            if once:
                return

            if started >= next_rebuild:
                await registry.rebuild(repository)
                next_rebuild = started + rebuild_interval

            # Align to the start of the next wall-clock minute.
            sleep_for = tick_interval - (time.time() % tick_interval)
            await asyncio.sleep(max(sleep_for, 1.0))
    finally:
        await pool.close()
        await async_redis.aclose()
        sync_redis.close()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Minutely scheduler loop for feedcast jobs.")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single tick and exit.",
    )
    parser.add_argument(
        "--rebuild-only",
        action="store_true",
        help="Rebuild the schedule registry from user settings and exit.",
    )
    args = parser.parse_args(argv)
    configure_logging()
    asyncio.run(_run(args.once, args.rebuild_only))


if __name__ == "__main__":  # pragma: no cover
    try:
        main()
    except KeyboardInterrupt:
        LOGGER.info("Scheduler loop interrupted; shutting down.")
        sys.exit(0)
