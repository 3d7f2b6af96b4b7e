"""Interfaces for the external services the pipeline depends on."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Mapping, Protocol, Sequence

from feedcast.libs.schemas.models import (
    ArticleInput,
    DailySummary,
    EmbeddingCandidate,
    FeedItem,
    PodcastEpisode,
    RecordType,
    UserScheduleConfig,
)


class SummarizeCapability(Protocol):
    async def generate(self, articles: Sequence[ArticleInput], language: str) -> str: ...


class NarrateCapability(Protocol):
    async def generate(self, summary_text: str, context_articles: Sequence[ArticleInput]) -> str: ...


class SynthesizeCapability(Protocol):
    async def speak(self, text: str, language: str) -> bytes: ...


class ObjectStore(Protocol):
    async def put(self, data: bytes, metadata: Mapping[str, Any]) -> str: ...


class EmbeddingCapability(Protocol):
    async def embed(self, texts: Sequence[str]) -> list[list[float]]: ...


class Repository(Protocol):
    async def get_settings(self, user_id: str) -> UserScheduleConfig: ...

    async def save_settings(self, config: UserScheduleConfig) -> UserScheduleConfig: ...

    async def list_enabled_schedules(
        self, *, limit: int, offset: int
    ) -> list[UserScheduleConfig]: ...

    async def get_recent_records(
        self, user_id: str, since: datetime, until: datetime | None = None
    ) -> list[FeedItem]: ...

    async def find_summary(self, user_id: str, summary_date: date) -> DailySummary | None: ...

    async def get_summary(self, user_id: str, summary_id: int) -> DailySummary | None: ...

    async def create_summary(
        self, user_id: str, summary_date: date, markdown: str, summary_title: str
    ) -> DailySummary: ...

    async def update_summary(self, summary_id: int, **fields: Any) -> DailySummary: ...

    async def add_summary_items(self, summary_id: int, feed_item_ids: Sequence[int]) -> None: ...

    async def get_summary_items(self, summary_id: int) -> list[FeedItem]: ...

    async def find_episode_by_summary(
        self, user_id: str, summary_id: int
    ) -> PodcastEpisode | None: ...

    async def create_episode(
        self,
        user_id: str,
        summary_id: int,
        title: str,
        title_embedding: Sequence[float] | None = None,
    ) -> PodcastEpisode: ...

    async def update_episode_audio(
        self, episode_id: int, audio_url: str, duration_sec: int
    ) -> PodcastEpisode: ...

    async def find_missing_embeddings(
        self,
        user_id: str,
        record_type: RecordType,
        limit: int,
        last_id: int | None = None,
    ) -> list[EmbeddingCandidate]: ...

    async def count_missing_embeddings(self, user_id: str, record_type: RecordType) -> int: ...

    async def update_embedding(
        self, record_type: RecordType, record_id: int, vector: Sequence[float]
    ) -> None: ...


__all__ = [
    "EmbeddingCapability",
    "NarrateCapability",
    "ObjectStore",
    "Repository",
    "SummarizeCapability",
    "SynthesizeCapability",
]
