"""Typed settings, domain records and database helpers."""

from .db import create_pool
from .models import (
    ArticleInput,
    BatchCursor,
    DailySummary,
    EmbeddingCandidate,
    FeedItem,
    PodcastEpisode,
    PodcastLanguage,
    RecordType,
    UserScheduleConfig,
)
from .settings import AppSettings, get_settings

__all__ = [
    "AppSettings",
    "ArticleInput",
    "BatchCursor",
    "DailySummary",
    "EmbeddingCandidate",
    "FeedItem",
    "PodcastEpisode",
    "PodcastLanguage",
    "RecordType",
    "UserScheduleConfig",
    "create_pool",
    "get_settings",
]
