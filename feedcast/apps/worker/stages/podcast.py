"""Podcast stage: synthesize the narration and publish the audio."""

from __future__ import annotations

import math
from datetime import date
from typing import Any, Mapping

from feedcast.apps.worker.queues import StageName
from feedcast.apps.worker.stages.base import COMPLETED, EXISTS, SKIPPED, Stage, StageContext, StageResult
from feedcast.libs.schemas.models import PodcastEpisode

CHARS_PER_SECOND = 10


def episode_title(summary_title: str | None, summary_date: date) -> str:
    if summary_title:
        return f"{summary_date.isoformat()} - {summary_title}"
    return f"{summary_date.isoformat()} - Daily Digest"


def estimate_duration(script_text: str) -> int:
    return math.ceil(len(script_text) / CHARS_PER_SECOND)


class PodcastStage(Stage):
    name = StageName.PODCAST

    async def run(self, ctx: StageContext, payload: Mapping[str, Any]) -> StageResult:
        user_id = str(payload["user_id"])
        summary_id = int(payload["summary_id"])

        episode = await ctx.repository.find_episode_by_summary(user_id, summary_id)
        if episode is not None and episode.is_complete():
            return self.result(EXISTS, user_id, episode_id=episode.id, audio_url=episode.audio_url)

        summary = await ctx.repository.get_summary(user_id, summary_id)
        if summary is None or not summary.has_script():
            ctx.logger.info(
                "Summary %s has no script; podcast skipped",
                summary_id,
                extra={"event": "podcast.no_script", "user_id": user_id},
            )
            return self.result(SKIPPED, user_id, reason="no_script", summary_id=summary_id)

        if episode is None:
            episode = await self._create_episode(ctx, user_id, summary_id, summary.summary_title, summary.summary_date)
        if episode.has_audio():
            return self.result(EXISTS, user_id, episode_id=episode.id, audio_url=episode.audio_url)

        config = await ctx.repository.get_settings(user_id)
        language = config.podcast_language.value
        script_text = summary.script_text or ""
        audio = await self.call_capability(ctx, ctx.synthesizer.speak(script_text, language))
        duration = estimate_duration(script_text)

        metadata = {
            "user_id": user_id,
            "summary_id": summary_id,
            "episode_id": episode.id,
            "title": episode.title,
            "duration": duration,
            "language": language,
            "generated_at": ctx.clock.now().isoformat(),
        }
        audio_url = await self.call_capability(ctx, ctx.store.put(audio, metadata))

        episode = await ctx.repository.update_episode_audio(episode.id, audio_url, duration)
        await ctx.repository.update_summary(summary_id, script_tts_duration_sec=duration)
        return self.result(
            COMPLETED,
            user_id,
            episode_id=episode.id,
            audio_url=audio_url,
            duration_sec=duration,
        )

    async def _create_episode(
        self,
        ctx: StageContext,
        user_id: str,
        summary_id: int,
        summary_title: str | None,
        summary_date: date,
    ) -> PodcastEpisode:
        title = episode_title(summary_title, summary_date)
        title_embedding = None
        try:
            vectors = await self.call_capability(ctx, ctx.embeddings.embed([title]))
            title_embedding = vectors[0] if vectors else None
        except Exception as exc:
            ctx.logger.warning(
                "Failed to generate title embedding: %s",
                exc,
                extra={"event": "podcast.title_embedding_failed"},
            )
        return await ctx.repository.create_episode(user_id, summary_id, title, title_embedding)


__all__ = ["PodcastStage", "episode_title", "estimate_duration"]
