"""asyncpg-backed data access for schedules, summaries, episodes and embeddings."""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Sequence

import asyncpg

from feedcast.libs.embeddings import to_pgvector
from feedcast.libs.schemas.models import (
    DailySummary,
    EmbeddingCandidate,
    FeedItem,
    PodcastEpisode,
    RecordType,
    UserScheduleConfig,
)

LOGGER = logging.getLogger(__name__)

EMBEDDING_DIM = 1536

# Per record type: embedding column and the SQL expression producing the text to embed.
_EMBEDDING_SOURCES: Dict[RecordType, tuple[str, str]] = {
    RecordType.FEED_ITEMS: ("title_emb", "trim(coalesce(title, '') || ' ' || coalesce(description, ''))"),
    RecordType.DAILY_SUMMARIES: ("summary_emb", "coalesce(markdown, '')"),
    RecordType.PODCAST_EPISODES: ("title_emb", "coalesce(title, '')"),
    RecordType.TAGS: ("tag_emb", "trim(coalesce(tag_name, '') || ' ' || coalesce(description, ''))"),
}

_SUMMARY_UPDATABLE = {"markdown", "summary_title", "script_text", "script_tts_duration_sec"}

_SUMMARY_COLUMNS = """
    id, user_id, summary_date, markdown, summary_title, script_text,
    script_tts_duration_sec, created_at, updated_at
"""
_EPISODE_COLUMNS = "id, user_id, summary_id, title, audio_url, duration_sec, updated_at"


class RepositoryError(RuntimeError):
    """Raised when a write does not return the affected row."""


class PostgresRepository:
    def __init__(self, pool: asyncpg.Pool, *, logger: logging.Logger | None = None) -> None:
        self._pool = pool
        self._logger = logger or LOGGER

    # settings ---------------------------------------------------------------

    async def get_settings(self, user_id: str) -> UserScheduleConfig:
        row = await self._pool.fetchrow(
            """
            SELECT user_id, summary_enabled, summary_schedule_time, podcast_enabled,
                   podcast_schedule_time, podcast_language
            FROM user_settings
            WHERE user_id = $1
            """,
            user_id,
        )
        if not row:
            return UserScheduleConfig(user_id=user_id)
        return UserScheduleConfig.from_row(dict(row))

    async def save_settings(self, config: UserScheduleConfig) -> UserScheduleConfig:
        config.validate()
        row = await self._pool.fetchrow(
            """
            INSERT INTO user_settings (
                user_id, summary_enabled, summary_schedule_time, podcast_enabled,
                podcast_schedule_time, podcast_language, updated_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, now())
            ON CONFLICT (user_id) DO UPDATE SET
                summary_enabled = EXCLUDED.summary_enabled,
                summary_schedule_time = EXCLUDED.summary_schedule_time,
                podcast_enabled = EXCLUDED.podcast_enabled,
                podcast_schedule_time = EXCLUDED.podcast_schedule_time,
                podcast_language = EXCLUDED.podcast_language,
                updated_at = now()
            RETURNING user_id, summary_enabled, summary_schedule_time, podcast_enabled,
                      podcast_schedule_time, podcast_language
            """,
            config.user_id,
            config.summary_enabled,
            config.summary_time,
            config.podcast_enabled,
            config.podcast_time,
            config.podcast_language.value,
        )
        return UserScheduleConfig.from_row(dict(row))

    async def list_enabled_schedules(self, *, limit: int, offset: int) -> List[UserScheduleConfig]:
        rows = await self._pool.fetch(
            """
            SELECT user_id, summary_enabled, summary_schedule_time, podcast_enabled,
                   podcast_schedule_time, podcast_language
            FROM user_settings
            WHERE summary_enabled = true
            ORDER BY user_id
            LIMIT $1 OFFSET $2
            """,
            limit,
            offset,
        )
        return [UserScheduleConfig.from_row(dict(row)) for row in rows]

    # feed items -------------------------------------------------------------

    async def get_recent_records(
        self, user_id: str, since: datetime, until: datetime | None = None
    ) -> List[FeedItem]:
        rows = await self._pool.fetch(
            """
            SELECT id, user_id, title, description, link, published_at
            FROM feed_items
            WHERE user_id = $1
              AND soft_deleted = false
              AND published_at >= $2
              AND ($3::timestamptz IS NULL OR published_at < $3)
            ORDER BY published_at DESC, id DESC
            """,
            user_id,
            since,
            until,
        )
        return [FeedItem.from_row(dict(row)) for row in rows]

    # summaries --------------------------------------------------------------

    async def find_summary(self, user_id: str, summary_date: date) -> DailySummary | None:
        row = await self._pool.fetchrow(
            f"""
            SELECT {_SUMMARY_COLUMNS}
            FROM daily_summaries
            WHERE user_id = $1 AND summary_date = $2 AND soft_deleted = false
            """,
            user_id,
            summary_date,
        )
        return DailySummary.from_row(dict(row)) if row else None

    async def get_summary(self, user_id: str, summary_id: int) -> DailySummary | None:
        row = await self._pool.fetchrow(
            f"""
            SELECT {_SUMMARY_COLUMNS}
            FROM daily_summaries
            WHERE id = $1 AND user_id = $2 AND soft_deleted = false
            """,
            summary_id,
            user_id,
        )
        return DailySummary.from_row(dict(row)) if row else None

    async def create_summary(
        self, user_id: str, summary_date: date, markdown: str, summary_title: str
    ) -> DailySummary:
        row = await self._pool.fetchrow(
            f"""
            INSERT INTO daily_summaries (user_id, summary_date, markdown, summary_title)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (user_id, summary_date) DO UPDATE SET
                markdown = EXCLUDED.markdown,
                summary_title = EXCLUDED.summary_title,
                soft_deleted = false,
                updated_at = now()
            RETURNING {_SUMMARY_COLUMNS}
            """,
            user_id,
            summary_date,
            markdown,
            summary_title,
        )
        if not row:
            raise RepositoryError("daily_summaries upsert returned no row")
        return DailySummary.from_row(dict(row))

    async def update_summary(self, summary_id: int, **fields: Any) -> DailySummary:
        unknown = set(fields) - _SUMMARY_UPDATABLE
        if unknown:
            raise ValueError(f"Unsupported summary fields: {sorted(unknown)}")
        if not fields:
            raise ValueError("update_summary requires at least one field")
        names = sorted(fields)
        assignments = ", ".join(f"{name} = ${idx + 2}" for idx, name in enumerate(names))
        row = await self._pool.fetchrow(
            f"""
            UPDATE daily_summaries
            SET {assignments}, updated_at = now()
            WHERE id = $1
            RETURNING {_SUMMARY_COLUMNS}
            """,
            summary_id,
            *[fields[name] for name in names],
        )
        if not row:
            raise RepositoryError(f"daily_summaries id={summary_id} not found")
        return DailySummary.from_row(dict(row))

    async def add_summary_items(self, summary_id: int, feed_item_ids: Sequence[int]) -> None:
        if not feed_item_ids:
            return
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.executemany(
                    """
                    INSERT INTO daily_summary_items (summary_id, feed_item_id)
                    VALUES ($1, $2)
                    ON CONFLICT DO NOTHING
                    """,
                    [(summary_id, item_id) for item_id in feed_item_ids],
                )

    async def get_summary_items(self, summary_id: int) -> List[FeedItem]:
        rows = await self._pool.fetch(
            """
            SELECT fi.id, fi.user_id, fi.title, fi.description, fi.link, fi.published_at
            FROM daily_summary_items dsi
            JOIN feed_items fi ON fi.id = dsi.feed_item_id
            WHERE dsi.summary_id = $1
            ORDER BY fi.published_at DESC, fi.id DESC
            """,
            summary_id,
        )
        return [FeedItem.from_row(dict(row)) for row in rows]

    # podcast episodes -------------------------------------------------------

    async def find_episode_by_summary(self, user_id: str, summary_id: int) -> PodcastEpisode | None:
        row = await self._pool.fetchrow(
            f"""
            SELECT {_EPISODE_COLUMNS}
            FROM podcast_episodes
            WHERE user_id = $1 AND summary_id = $2 AND soft_deleted = false
            """,
            user_id,
            summary_id,
        )
        return PodcastEpisode.from_row(dict(row)) if row else None

    async def create_episode(
        self,
        user_id: str,
        summary_id: int,
        title: str,
        title_embedding: Sequence[float] | None = None,
    ) -> PodcastEpisode:
        vector_literal = to_pgvector(title_embedding, length=EMBEDDING_DIM) if title_embedding else None
        row = await self._pool.fetchrow(
            f"""
            INSERT INTO podcast_episodes (user_id, summary_id, title, title_emb)
            VALUES ($1, $2, $3, $4::vector)
            ON CONFLICT (summary_id) DO UPDATE SET
                title = EXCLUDED.title,
                title_emb = COALESCE(EXCLUDED.title_emb, podcast_episodes.title_emb),
                soft_deleted = false,
                updated_at = now()
            RETURNING {_EPISODE_COLUMNS}
            """,
            user_id,
            summary_id,
            title,
            vector_literal,
        )
        if not row:
            raise RepositoryError("podcast_episodes upsert returned no row")
        return PodcastEpisode.from_row(dict(row))

    async def update_episode_audio(self, episode_id: int, audio_url: str, duration_sec: int) -> PodcastEpisode:
        row = await self._pool.fetchrow(
            f"""
            UPDATE podcast_episodes
            SET audio_url = $2, duration_sec = $3, updated_at = now()
            WHERE id = $1
            RETURNING {_EPISODE_COLUMNS}
            """,
            episode_id,
            audio_url,
            duration_sec,
        )
        if not row:
            raise RepositoryError(f"podcast_episodes id={episode_id} not found")
        return PodcastEpisode.from_row(dict(row))

    # embeddings -------------------------------------------------------------

    async def find_missing_embeddings(
        self,
        user_id: str,
        record_type: RecordType,
        limit: int,
        last_id: int | None = None,
    ) -> List[EmbeddingCandidate]:
        column, text_expr = _EMBEDDING_SOURCES[record_type]
        rows = await self._pool.fetch(
            f"""
            SELECT id, {text_expr} AS content_text
            FROM {record_type.value}
            WHERE user_id = $1
              AND {column} IS NULL
              AND soft_deleted = false
              AND ($2::bigint IS NULL OR id > $2)
            ORDER BY id ASC
            LIMIT $3
            """,
            user_id,
            last_id,
            limit,
        )
        return [EmbeddingCandidate(id=int(row["id"]), content_text=row["content_text"] or "") for row in rows]

    async def count_missing_embeddings(self, user_id: str, record_type: RecordType) -> int:
        column, _ = _EMBEDDING_SOURCES[record_type]
        value = await self._pool.fetchval(
            f"""
            SELECT count(*)
            FROM {record_type.value}
            WHERE user_id = $1 AND {column} IS NULL AND soft_deleted = false
            """,
            user_id,
        )
        return int(value or 0)

    async def update_embedding(self, record_type: RecordType, record_id: int, vector: Sequence[float]) -> None:
        column, _ = _EMBEDDING_SOURCES[record_type]
        await self._pool.execute(
            f"UPDATE {record_type.value} SET {column} = $2::vector WHERE id = $1",
            record_id,
            to_pgvector(vector, length=EMBEDDING_DIM),
        )


__all__ = ["EMBEDDING_DIM", "PostgresRepository", "RepositoryError"]
