import asyncio

import pytest

from feedcast.libs.lock import DistributedLock

from tests.fakes import FakeAsyncRedis


@pytest.mark.asyncio
async def test_concurrent_acquire_yields_one_token():
    lock = DistributedLock(FakeAsyncRedis())
    tokens = await asyncio.gather(*(lock.acquire("summary:user-1", 30) for _ in range(5)))
    assert len([token for token in tokens if token]) == 1


@pytest.mark.asyncio
async def test_release_frees_key_for_next_holder():
    lock = DistributedLock(FakeAsyncRedis())
    token = await lock.acquire("script:user-1", 30)
    assert await lock.acquire("script:user-1", 30) is None
    assert await lock.release("script:user-1", token) is True
    assert await lock.holder("script:user-1") is None
    assert await lock.acquire("script:user-1", 30) is not None


@pytest.mark.asyncio
async def test_release_with_stale_token_is_refused():
    redis = FakeAsyncRedis()
    lock = DistributedLock(redis)
    first = await lock.acquire("podcast:user-1", 10)
    redis.advance(11)
    second = await lock.acquire("podcast:user-1", 10)
    assert second is not None and second != first

    assert await lock.release("podcast:user-1", first) is False
    assert await lock.holder("podcast:user-1") == second


@pytest.mark.asyncio
async def test_different_keys_do_not_contend():
    lock = DistributedLock(FakeAsyncRedis())
    assert await lock.acquire("summary:user-1", 30)
    assert await lock.acquire("summary:user-2", 30)
    assert await lock.acquire("script:user-1", 30)


@pytest.mark.asyncio
async def test_extend_only_for_current_holder():
    redis = FakeAsyncRedis()
    lock = DistributedLock(redis)
    token = await lock.acquire("summary:user-1", 10)
    redis.advance(8)
    assert await lock.extend("summary:user-1", token, 10) is True
    redis.advance(8)
    assert await lock.holder("summary:user-1") == token
    assert await lock.extend("summary:user-1", "not-the-token", 10) is False


@pytest.mark.asyncio
async def test_heartbeat_renews_while_body_runs():
    redis = FakeAsyncRedis()
    lock = DistributedLock(redis)
    token = await lock.acquire("summary:user-1", 0.06)

    async with lock.heartbeat("summary:user-1", token, 0.06):
        await asyncio.sleep(0.1)

    assert redis.eval_calls >= 1
    assert await lock.holder("summary:user-1") == token
