"""Summary stage: digest the last day of feed items for one user."""

from __future__ import annotations

import re
from datetime import date, datetime, timedelta
from typing import Any, Mapping, Sequence, Tuple

from feedcast.apps.worker.embedding_batch import QueueBusyError, request_backfill
from feedcast.apps.worker.flow import FlowOrchestrator
from feedcast.apps.worker.queues import StageName
from feedcast.apps.worker.stages.base import COMPLETED, EXISTS, SKIPPED, Stage, StageContext, StageResult
from feedcast.libs.clock import parse_calendar_date
from feedcast.libs.schemas.models import ArticleInput, DailySummary, FeedItem, RecordType

_JAPANESE_RE = re.compile(r"[぀-ゟ゠-ヿ一-龯]")
_HEADING_RE = re.compile(r"^#{1,2}\s+(.+)$", re.MULTILINE)
_MARKDOWN_MARKS_RE = re.compile(r"[#*_`]")
TITLE_FALLBACK_CHARS = 50


def detect_language(title: str, description: str | None = "") -> str:
    return "ja" if _JAPANESE_RE.search(f"{title} {description or ''}") else "en"


def target_language(items: Sequence[FeedItem]) -> str:
    """Japanese when at least half the items contain Japanese script."""

    if not items:
        return "ja"
    japanese = sum(1 for item in items if detect_language(item.title, item.description) == "ja")
    return "ja" if japanese >= len(items) / 2 else "en"


def extract_title(markdown: str) -> str:
    match = _HEADING_RE.search(markdown or "")
    if match:
        return match.group(1).strip()
    plain = _MARKDOWN_MARKS_RE.sub("", markdown or "").strip()
    suffix = "..." if len(plain) > TITLE_FALLBACK_CHARS else ""
    return plain[:TITLE_FALLBACK_CHARS] + suffix


def to_article(item: FeedItem, fallback_published: str) -> ArticleInput:
    return ArticleInput(
        title=item.title,
        content=item.description or "",
        url=item.link,
        published_at=item.published_at.isoformat() if item.published_at else fallback_published,
        language=detect_language(item.title, item.description),
    )


def item_window(ctx: StageContext, day: date) -> Tuple[datetime, datetime | None]:
    """Feed items considered for ``day``.

    Today (or a future date) looks back from now. A past date looks back from
    the following local midnight, so a backfill sees that day's items.
    """

    window = timedelta(hours=ctx.settings.summary_window_hours)
    if day >= ctx.clock.today():
        return ctx.clock.now() - window, None
    until = ctx.clock.at(day + timedelta(days=1), 0, 0)
    return until - window, until


class SummaryStage(Stage):
    name = StageName.SUMMARY

    async def run(self, ctx: StageContext, payload: Mapping[str, Any]) -> StageResult:
        user_id = str(payload["user_id"])
        raw_date = payload.get("calendar_date")
        day = parse_calendar_date(raw_date) if raw_date else ctx.clock.today()
        since, until = item_window(ctx, day)

        existing = await ctx.repository.find_summary(user_id, day)
        if existing and existing.is_complete_summary():
            ctx.logger.info(
                "Summary already exists for user %s, date %s",
                user_id,
                day,
                extra={"event": "summary.exists", "summary_id": existing.id},
            )
            if not existing.has_script():
                await self._resume(ctx, user_id, existing, since, until)
            return self.result(EXISTS, user_id, summary_id=existing.id)

        items = await ctx.repository.get_recent_records(user_id, since, until)
        if not items:
            ctx.logger.info(
                "No feed items found for user %s",
                user_id,
                extra={"event": "summary.no_items", "calendar_date": day.isoformat()},
            )
            return self.result(SKIPPED, user_id, reason="no_feed_items", calendar_date=day.isoformat())

        now_iso = ctx.clock.now().isoformat()
        articles = [to_article(item, now_iso) for item in items]
        markdown = await self.call_capability(ctx, ctx.summarizer.generate(articles, target_language(items)))
        title = extract_title(markdown)

        if existing is not None:
            summary = await ctx.repository.update_summary(existing.id, markdown=markdown, summary_title=title)
        else:
            summary = await ctx.repository.create_summary(user_id, day, markdown, title)
        await ctx.repository.add_summary_items(summary.id, [item.id for item in items])

        await self._request_embedding(ctx, user_id)
        flow = FlowOrchestrator(ctx.repository, ctx.queues, ctx.clock, logger=ctx.logger)
        flow.advance_after_summary(user_id, summary)
        return self.result(COMPLETED, user_id, summary_id=summary.id, items=len(items))

    async def _resume(
        self, ctx: StageContext, user_id: str, summary: DailySummary, since: datetime, until: datetime | None
    ) -> None:
        """Finish the hand-off a previous attempt stopped short of."""

        linked = await ctx.repository.get_summary_items(summary.id)
        if not linked:
            items = await ctx.repository.get_recent_records(user_id, since, until)
            await ctx.repository.add_summary_items(summary.id, [item.id for item in items])
        await self._request_embedding(ctx, user_id)
        flow = FlowOrchestrator(ctx.repository, ctx.queues, ctx.clock, logger=ctx.logger)
        flow.advance_after_summary(user_id, summary)

    async def _request_embedding(self, ctx: StageContext, user_id: str) -> None:
        try:
            await request_backfill(
                ctx.repository,
                ctx.queues[StageName.EMBEDDING],
                user_id,
                [RecordType.DAILY_SUMMARIES],
                enforce_capacity=False,
                logger=ctx.logger,
            )
        except QueueBusyError:
            ctx.logger.warning("Embedding queue busy; summary embedding deferred", extra={"event": "summary.embedding_busy"})


__all__ = ["SummaryStage", "detect_language", "extract_title", "item_window", "target_language"]
