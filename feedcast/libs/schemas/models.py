"""Domain records shared by the pipeline, repository and API."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Mapping

_HHMM_RE = re.compile(r"^([0-1]?\d|2[0-3]):[0-5]\d$")

SUMMARY_TIME_DEFAULT = "06:30"
PODCAST_TIME_DEFAULT = "07:00"


class PodcastLanguage(str, Enum):
    JA = "ja"
    EN = "en"

    @classmethod
    def coerce(cls, value: Any) -> "PodcastLanguage":
        # Older rows stored BCP-47 tags ("ja-JP", "en-US").
        raw = str(value or "").strip().lower()
        if raw.startswith("en"):
            return cls.EN
        return cls.JA


class RecordType(str, Enum):
    """Tables whose rows carry a vector embedding."""

    FEED_ITEMS = "feed_items"
    DAILY_SUMMARIES = "daily_summaries"
    PODCAST_EPISODES = "podcast_episodes"
    TAGS = "tags"


def is_valid_hhmm(value: Any) -> bool:
    return isinstance(value, str) and bool(_HHMM_RE.match(value))


@dataclass(slots=True)
class UserScheduleConfig:
    user_id: str
    summary_enabled: bool = False
    summary_time: str | None = SUMMARY_TIME_DEFAULT
    podcast_enabled: bool = False
    podcast_time: str | None = PODCAST_TIME_DEFAULT
    podcast_language: PodcastLanguage = PodcastLanguage.JA

    def validate(self) -> None:
        """Raise ``ValueError`` when the configuration breaks an invariant."""

        if self.podcast_enabled and not self.summary_enabled:
            raise ValueError("Podcast cannot be enabled when summary is disabled")
        for label, value in (("summary_time", self.summary_time), ("podcast_time", self.podcast_time)):
            if value is not None and not is_valid_hhmm(value):
                raise ValueError(f"{label} must be HH:MM")

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "UserScheduleConfig":
        return cls(
            user_id=str(row["user_id"]),
            summary_enabled=bool(row.get("summary_enabled")),
            summary_time=row.get("summary_schedule_time") or SUMMARY_TIME_DEFAULT,
            podcast_enabled=bool(row.get("podcast_enabled")),
            podcast_time=row.get("podcast_schedule_time") or PODCAST_TIME_DEFAULT,
            podcast_language=PodcastLanguage.coerce(row.get("podcast_language")),
        )


@dataclass(slots=True)
class FeedItem:
    id: int
    user_id: str
    title: str
    description: str | None = None
    link: str | None = None
    published_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "FeedItem":
        return cls(
            id=int(row["id"]),
            user_id=str(row["user_id"]),
            title=row.get("title") or "",
            description=row.get("description"),
            link=row.get("link"),
            published_at=row.get("published_at"),
        )


@dataclass(slots=True)
class DailySummary:
    id: int
    user_id: str
    summary_date: date
    markdown: str | None = None
    summary_title: str | None = None
    script_text: str | None = None
    script_tts_duration_sec: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def is_complete_summary(self) -> bool:
        return bool(self.markdown and self.summary_title)

    def has_script(self) -> bool:
        return bool(self.script_text)

    def has_audio(self) -> bool:
        return bool(self.script_text and self.script_tts_duration_sec)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "DailySummary":
        return cls(
            id=int(row["id"]),
            user_id=str(row["user_id"]),
            summary_date=row["summary_date"],
            markdown=row.get("markdown"),
            summary_title=row.get("summary_title"),
            script_text=row.get("script_text"),
            script_tts_duration_sec=row.get("script_tts_duration_sec"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )


@dataclass(slots=True)
class PodcastEpisode:
    id: int
    user_id: str
    summary_id: int
    title: str = ""
    audio_url: str | None = None
    duration_sec: int | None = None
    updated_at: datetime | None = None

    def is_complete(self) -> bool:
        return bool(self.title and self.audio_url)

    def has_audio(self) -> bool:
        return bool(self.audio_url)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "PodcastEpisode":
        return cls(
            id=int(row["id"]),
            user_id=str(row["user_id"]),
            summary_id=int(row["summary_id"]),
            title=row.get("title") or "",
            audio_url=row.get("audio_url") or None,
            duration_sec=row.get("duration_sec"),
            updated_at=row.get("updated_at"),
        )


@dataclass(slots=True)
class EmbeddingCandidate:
    """A row lacking an embedding, with the text that should be embedded."""

    id: int
    content_text: str


@dataclass(slots=True)
class BatchCursor:
    user_id: str
    record_type: RecordType
    batch_size: int = 50
    last_processed_id: int | None = None
    total_estimate: int | None = None

    def advance(self, last_id: int) -> "BatchCursor":
        if self.last_processed_id is not None and last_id <= self.last_processed_id:
            raise ValueError("cursor must advance monotonically")
        return BatchCursor(
            user_id=self.user_id,
            record_type=self.record_type,
            batch_size=self.batch_size,
            last_processed_id=last_id,
            total_estimate=self.total_estimate,
        )

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "user_id": self.user_id,
            "record_type": self.record_type.value,
            "batch_size": self.batch_size,
        }
        if self.last_processed_id is not None:
            payload["last_processed_id"] = self.last_processed_id
        if self.total_estimate is not None:
            payload["total_estimate"] = self.total_estimate
        return payload

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "BatchCursor":
        last_id = payload.get("last_processed_id")
        total = payload.get("total_estimate")
        return cls(
            user_id=str(payload["user_id"]),
            record_type=RecordType(payload["record_type"]),
            batch_size=int(payload.get("batch_size") or 50),
            last_processed_id=int(last_id) if last_id is not None else None,
            total_estimate=int(total) if total is not None else None,
        )


@dataclass(slots=True)
class ArticleInput:
    """Article shape handed to the summarize capability."""

    title: str
    content: str
    url: str | None = None
    published_at: str | None = None
    language: str = "en"
    extra: dict[str, Any] = field(default_factory=dict)


__all__ = [
    "ArticleInput",
    "BatchCursor",
    "DailySummary",
    "EmbeddingCandidate",
    "FeedItem",
    "PODCAST_TIME_DEFAULT",
    "PodcastEpisode",
    "PodcastLanguage",
    "RecordType",
    "SUMMARY_TIME_DEFAULT",
    "UserScheduleConfig",
    "is_valid_hhmm",
]
