"""Script stage: narrate a completed summary."""

from __future__ import annotations

from typing import Any, Mapping

from feedcast.apps.worker.errors import DataIntegrityError
from feedcast.apps.worker.flow import FlowOrchestrator
from feedcast.apps.worker.queues import StageName
from feedcast.apps.worker.stages.base import COMPLETED, EXISTS, SKIPPED, Stage, StageContext, StageResult
from feedcast.apps.worker.stages.summary import detect_language
from feedcast.libs.schemas.models import ArticleInput


class ScriptStage(Stage):
    name = StageName.SCRIPT

    async def run(self, ctx: StageContext, payload: Mapping[str, Any]) -> StageResult:
        user_id = str(payload["user_id"])
        summary_id = int(payload["summary_id"])

        summary = await ctx.repository.get_summary(user_id, summary_id)
        if summary is None or not summary.is_complete_summary():
            ctx.logger.info(
                "Summary %s missing or incomplete; script skipped",
                summary_id,
                extra={"event": "script.no_summary", "user_id": user_id},
            )
            return self.result(SKIPPED, user_id, reason="summary_incomplete", summary_id=summary_id)
        flow = FlowOrchestrator(ctx.repository, ctx.queues, ctx.clock, logger=ctx.logger)
        if summary.has_script():
            episode = await ctx.repository.find_episode_by_summary(user_id, summary_id)
            if episode is None or not episode.is_complete():
                await flow.advance_after_script(user_id, summary)
            return self.result(EXISTS, user_id, summary_id=summary_id)

        items = await ctx.repository.get_summary_items(summary_id)
        language = detect_language(summary.summary_title or "", summary.markdown)
        context = [
            ArticleInput(title=item.title, content=item.description or "", url=item.link, language=language)
            for item in items
        ]
        script_text = await self.call_capability(ctx, ctx.narrator.generate(summary.markdown or "", context))
        if not script_text.strip():
            raise DataIntegrityError(f"narration for summary {summary_id} came back empty")

        updated = await ctx.repository.update_summary(summary_id, script_text=script_text)
        if updated.script_text != script_text:
            raise DataIntegrityError(f"script_text for summary {summary_id} did not persist")

        await flow.advance_after_script(user_id, updated)
        return self.result(COMPLETED, user_id, summary_id=summary_id, script_length=len(script_text))


__all__ = ["ScriptStage"]
