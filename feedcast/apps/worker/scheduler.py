"""Per-user schedule slots in Redis and the minutely tick that fires them."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Set

from redis import asyncio as aioredis

from feedcast.apps.worker.flow import FlowOrchestrator
from feedcast.apps.worker.queues import StageQueues
from feedcast.libs.capabilities import Repository
from feedcast.libs.clock import TimeZoneClock
from feedcast.libs.schedule import (
    JITTER_MAX_MINUTES,
    PODCAST_OFFSET_MINUTES,
    add_offset,
    jittered_slot,
)
from feedcast.libs.schemas.models import UserScheduleConfig

LOGGER = logging.getLogger(__name__)

SUMMARY_SLOT_KEY = "schedule:summary:{slot}"
PODCAST_SLOT_KEY = "schedule:podcast:{slot}"
USER_KEY = "schedule:user:{user_id}"
REGISTERED_USERS_KEY = "schedule:users"
LAST_TICK_KEY = "schedule:last_tick"
LAST_PRUNE_KEY = "schedule:last_prune"
PAGE_SIZE = 500
MAX_CATCHUP_MINUTES = 60
PRUNE_INTERVAL = timedelta(hours=1)


class ScheduleRegistry:
    """Index enabled users by the local minute their stages fire."""

    def __init__(
        self,
        redis: aioredis.Redis,
        *,
        max_jitter: int = JITTER_MAX_MINUTES,
        podcast_offset: int = PODCAST_OFFSET_MINUTES,
        logger: logging.Logger | None = None,
    ) -> None:
        self._redis = redis
        self._max_jitter = max_jitter
        self._podcast_offset = podcast_offset
        self._logger = logger or LOGGER

    async def register(self, config: UserScheduleConfig) -> Dict[str, str | None]:
        """Move ``config.user_id`` onto the slots its current settings derive."""

        await self.unregister(config.user_id)
        slots: Dict[str, str | None] = {"summary_slot": None, "podcast_slot": None}
        if not config.summary_enabled or not config.summary_time:
            return slots

        summary = jittered_slot(config.user_id, config.summary_time, max_jitter=self._max_jitter)
        await self._redis.sadd(SUMMARY_SLOT_KEY.format(slot=summary.label), config.user_id)
        slots["summary_slot"] = summary.label
        if config.podcast_enabled:
            podcast = add_offset(summary, self._podcast_offset)
            await self._redis.sadd(PODCAST_SLOT_KEY.format(slot=podcast.label), config.user_id)
            slots["podcast_slot"] = podcast.label

        await self._redis.hset(
            USER_KEY.format(user_id=config.user_id),
            mapping={key: value for key, value in slots.items() if value},
        )
        await self._redis.sadd(REGISTERED_USERS_KEY, config.user_id)
        self._logger.info(
            "Registered schedule for %s",
            config.user_id,
            extra={"event": "schedule.registered", **slots},
        )
        return slots

    async def unregister(self, user_id: str) -> None:
        record = await self._redis.hgetall(USER_KEY.format(user_id=user_id))
        if record.get("summary_slot"):
            await self._redis.srem(SUMMARY_SLOT_KEY.format(slot=record["summary_slot"]), user_id)
        if record.get("podcast_slot"):
            await self._redis.srem(PODCAST_SLOT_KEY.format(slot=record["podcast_slot"]), user_id)
        await self._redis.delete(USER_KEY.format(user_id=user_id))
        await self._redis.srem(REGISTERED_USERS_KEY, user_id)

    async def summary_users(self, slot_label: str) -> Set[str]:
        return set(await self._redis.smembers(SUMMARY_SLOT_KEY.format(slot=slot_label)))

    async def podcast_users(self, slot_label: str) -> Set[str]:
        return set(await self._redis.smembers(PODCAST_SLOT_KEY.format(slot=slot_label)))

    async def rebuild(self, repository: Repository, *, page_size: int = PAGE_SIZE) -> int:
        """Re-register every enabled user and drop registrations no longer enabled."""

        previously = set(await self._redis.smembers(REGISTERED_USERS_KEY))
        seen: Set[str] = set()
        offset = 0
        while True:
            page = await repository.list_enabled_schedules(limit=page_size, offset=offset)
            for config in page:
                await self.register(config)
                seen.add(config.user_id)
            if len(page) < page_size:
                break
            offset += page_size
        for user_id in previously - seen:
            await self.unregister(user_id)
        self._logger.info(
            "Schedule registry rebuilt",
            extra={"event": "schedule.rebuilt", "users": len(seen), "dropped": len(previously - seen)},
        )
        return len(seen)


class ScheduleTick:
    """Fire every slot minute in ``(last_tick, now]``."""

    def __init__(
        self,
        redis: aioredis.Redis,
        registry: ScheduleRegistry,
        flow: FlowOrchestrator,
        queues: StageQueues,
        clock: TimeZoneClock,
        *,
        podcast_offset: int = PODCAST_OFFSET_MINUTES,
        max_catchup_minutes: int = MAX_CATCHUP_MINUTES,
        logger: logging.Logger | None = None,
    ) -> None:
        self._redis = redis
        self.registry = registry
        self.flow = flow
        self.queues = queues
        self.clock = clock
        self._podcast_offset = podcast_offset
        self._max_catchup = max(1, max_catchup_minutes)
        self._logger = logger or LOGGER

    async def run(self, now: datetime | None = None) -> Dict[str, Any]:
        current = (self.clock.local(now) if now is not None else self.clock.now()).replace(second=0, microsecond=0)
        last_raw = await self._redis.get(LAST_TICK_KEY)
        if last_raw:
            start = self.clock.local(datetime.fromisoformat(last_raw)) + timedelta(minutes=1)
        else:
            start = current
        earliest = current - timedelta(minutes=self._max_catchup - 1)
        if start < earliest:
            self._logger.warning(
                "Scheduler fell behind; skipping %s minutes",
                int((earliest - start).total_seconds() // 60),
                extra={"event": "schedule.catchup_capped"},
            )
            start = earliest

        counts = {"minutes": 0, "summary": 0, "podcast": 0, "errors": 0}
        minute = start
        while minute <= current:
            await self._fire_minute(minute, counts)
            counts["minutes"] += 1
            minute += timedelta(minutes=1)

        if counts["minutes"]:
            await self._redis.set(LAST_TICK_KEY, current.isoformat())
        await self._maybe_prune(current)
        return counts

    async def _fire_minute(self, minute: datetime, counts: Dict[str, int]) -> None:
        label = f"{minute.hour:02d}:{minute.minute:02d}"
        day = minute.date()
        for user_id in sorted(await self.registry.summary_users(label)):
            try:
                submit = await self.flow.start_daily(user_id, day)
                if submit is not None and submit.enqueued:
                    counts["summary"] += 1
            except Exception:
                counts["errors"] += 1
                self._logger.exception(
                    "Failed to start daily flow for %s",
                    user_id,
                    extra={"event": "schedule.summary_error", "slot": label},
                )

        # A podcast slot after midnight belongs to the previous day's summary.
        podcast_day = (minute - timedelta(minutes=self._podcast_offset)).date()
        for user_id in sorted(await self.registry.podcast_users(label)):
            try:
                submit = await self.flow.enqueue_podcast_for_date(user_id, podcast_day)
                if submit is not None and submit.enqueued:
                    counts["podcast"] += 1
            except Exception:
                counts["errors"] += 1
                self._logger.exception(
                    "Failed to enqueue podcast for %s",
                    user_id,
                    extra={"event": "schedule.podcast_error", "slot": label},
                )

    async def _maybe_prune(self, current: datetime) -> None:
        last_raw = await self._redis.get(LAST_PRUNE_KEY)
        if last_raw and current - self.clock.local(datetime.fromisoformat(last_raw)) < PRUNE_INTERVAL:
            return
        removed = self.queues.prune_history()
        await self._redis.set(LAST_PRUNE_KEY, current.isoformat())
        self._logger.info("Queue history pruned", extra={"event": "schedule.pruned", "removed": removed})


__all__ = [
    "LAST_TICK_KEY",
    "PAGE_SIZE",
    "ScheduleRegistry",
    "ScheduleTick",
]
