"""Async database helpers backed by asyncpg connection pooling."""

from __future__ import annotations

import asyncpg

from .settings import get_settings


async def create_pool(dsn: str | None = None) -> asyncpg.Pool:
    """Create an asyncpg pool bound to the running event loop.

    Worker jobs run under their own ``asyncio.run`` loop, so pools are created
    per job rather than cached at module level.
    """

    settings = get_settings()
    return await asyncpg.create_pool(
        dsn=dsn or settings.database_url,
        min_size=1,
        max_size=10,
        command_timeout=60,
        statement_cache_size=0,
        max_inactive_connection_lifetime=300,
    )


__all__ = ["create_pool"]
