"""Redis-backed TTL lock with token-checked release and explicit renewal."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import secrets
from typing import AsyncIterator

from redis import asyncio as aioredis
from redis.exceptions import RedisError

LOGGER = logging.getLogger(__name__)

KEY_PREFIX = "lock:"
DEFAULT_TTL_SECONDS = 300

RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

EXTEND_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("pexpire", KEYS[1], ARGV[2])
else
    return 0
end
"""


def _as_text(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


class DistributedLock:
    """At most one live holder per key; never blocks.

    Backing-store errors (``redis.RedisError``) propagate; callers decide how
    to treat them.
    """

    def __init__(self, redis: aioredis.Redis, *, logger: logging.Logger | None = None) -> None:
        self._redis = redis
        self._logger = logger or LOGGER

    @staticmethod
    def key_for(key: str) -> str:
        return f"{KEY_PREFIX}{key}"

    async def acquire(self, key: str, ttl_seconds: float = DEFAULT_TTL_SECONDS) -> str | None:
        token = secrets.token_hex(16)
        ok = await self._redis.set(self.key_for(key), token, nx=True, px=int(ttl_seconds * 1000))
        if not ok:
            self._logger.debug("Lock busy", extra={"event": "lock.busy", "lock_key": key})
            return None
        self._logger.debug("Lock acquired", extra={"event": "lock.acquired", "lock_key": key})
        return token

    async def release(self, key: str, token: str) -> bool:
        result = await self._redis.eval(RELEASE_SCRIPT, 1, self.key_for(key), token)
        released = int(result or 0) == 1
        if not released:
            self._logger.warning(
                "Lock release refused; token no longer holds the key",
                extra={"event": "lock.release_refused", "lock_key": key},
            )
        return released

    async def extend(self, key: str, token: str, ttl_seconds: float = DEFAULT_TTL_SECONDS) -> bool:
        result = await self._redis.eval(
            EXTEND_SCRIPT, 1, self.key_for(key), token, str(int(ttl_seconds * 1000))
        )
        return int(result or 0) == 1

    async def holder(self, key: str) -> str | None:
        return _as_text(await self._redis.get(self.key_for(key)))

    @contextlib.asynccontextmanager
    async def heartbeat(
        self,
        key: str,
        token: str,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
    ) -> AsyncIterator[None]:
        """Renew the lock every ``ttl/3`` while the body runs."""

        interval = max(ttl_seconds / 3.0, 0.01)

        async def _renew() -> None:
            while True:
                await asyncio.sleep(interval)
                try:
                    still_held = await self.extend(key, token, ttl_seconds)
                except RedisError as exc:
                    self._logger.warning(
                        "Lock renewal failed: %s",
                        exc,
                        extra={"event": "lock.renew_error", "lock_key": key},
                    )
                    continue
                if not still_held:
                    self._logger.warning(
                        "Lock ownership lost during critical section",
                        extra={"event": "lock.lost", "lock_key": key},
                    )
                    return

        task = asyncio.create_task(_renew())
        try:
            yield
        finally:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task


__all__ = [
    "DEFAULT_TTL_SECONDS",
    "DistributedLock",
    "EXTEND_SCRIPT",
    "KEY_PREFIX",
    "RELEASE_SCRIPT",
]
