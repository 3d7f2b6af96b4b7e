"""Drive the summary → script → podcast chain for one user and calendar date."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Dict

from feedcast.apps.worker.queues import (
    JobState,
    StageName,
    StageQueues,
    SubmitResult,
    job_identity,
)
from feedcast.libs.capabilities import Repository
from feedcast.libs.clock import TimeZoneClock, parse_calendar_date
from feedcast.libs.schemas.models import DailySummary

LOGGER = logging.getLogger(__name__)

_PENDING = {JobState.WAITING, JobState.ACTIVE}


class FlowPhase(str, Enum):
    IDLE = "idle"
    SUMMARY_PENDING = "summary_pending"
    SUMMARY_DONE = "summary_done"
    SCRIPT_PENDING = "script_pending"
    SCRIPT_DONE = "script_done"
    PODCAST_PENDING = "podcast_pending"
    PODCAST_DONE = "podcast_done"
    SKIPPED = "skipped"
    FAILED = "failed"


def derive_phase(summary: JobState, script: JobState, podcast: JobState) -> FlowPhase:
    if JobState.FAILED in (summary, script, podcast):
        return FlowPhase.FAILED
    if summary == JobState.SKIPPED:
        return FlowPhase.SKIPPED
    if podcast == JobState.COMPLETED:
        return FlowPhase.PODCAST_DONE
    if podcast in _PENDING:
        return FlowPhase.PODCAST_PENDING
    if script == JobState.COMPLETED:
        return FlowPhase.SCRIPT_DONE
    if script in _PENDING:
        return FlowPhase.SCRIPT_PENDING
    if summary == JobState.COMPLETED:
        return FlowPhase.SUMMARY_DONE
    if summary in _PENDING:
        return FlowPhase.SUMMARY_PENDING
    return FlowPhase.IDLE


@dataclass
class FlowStatus:
    user_id: str
    calendar_date: date
    summary: JobState
    script: JobState
    podcast: JobState
    summary_id: int | None = None
    audio_url: str | None = None

    @property
    def phase(self) -> FlowPhase:
        return derive_phase(self.summary, self.script, self.podcast)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "date": self.calendar_date.isoformat(),
            "summary": self.summary.value,
            "script": self.script.value,
            "podcast": self.podcast.value,
            "phase": self.phase.value,
            "summary_id": self.summary_id,
            "audio_url": self.audio_url,
        }


def _submit_view(stage: StageName | None, submit: SubmitResult | None, **extra: Any) -> Dict[str, Any]:
    view: Dict[str, Any] = {
        "stage": stage.value if stage else None,
        "enqueued": bool(submit and submit.enqueued),
        "job_id": submit.identity if submit else None,
        "state": submit.state.value if submit else None,
    }
    view.update(extra)
    return view


class FlowOrchestrator:
    def __init__(
        self,
        repository: Repository,
        queues: StageQueues,
        clock: TimeZoneClock,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self.repository = repository
        self.queues = queues
        self.clock = clock
        self._logger = logger or LOGGER

    # identities -------------------------------------------------------------

    @staticmethod
    def summary_identity(user_id: str, calendar_date: date) -> str:
        return job_identity(StageName.SUMMARY, user_id, calendar_date.isoformat())

    @staticmethod
    def script_identity(user_id: str, summary_id: int) -> str:
        return job_identity(StageName.SCRIPT, user_id, summary_id)

    @staticmethod
    def podcast_identity(user_id: str, summary_id: int) -> str:
        return job_identity(StageName.PODCAST, user_id, summary_id)

    def _resolve_date(self, calendar_date: date | str | None) -> date:
        return parse_calendar_date(calendar_date) if calendar_date else self.clock.today()

    # submits ----------------------------------------------------------------

    def _submit_summary(self, user_id: str, calendar_date: date) -> SubmitResult:
        return self.queues[StageName.SUMMARY].submit(
            self.summary_identity(user_id, calendar_date),
            {"user_id": user_id, "calendar_date": calendar_date.isoformat()},
        )

    def _submit_script(self, user_id: str, summary_id: int) -> SubmitResult:
        return self.queues[StageName.SCRIPT].submit(
            self.script_identity(user_id, summary_id),
            {"user_id": user_id, "summary_id": summary_id},
        )

    def _submit_podcast(self, user_id: str, summary_id: int) -> SubmitResult:
        return self.queues[StageName.PODCAST].submit(
            self.podcast_identity(user_id, summary_id),
            {"user_id": user_id, "summary_id": summary_id},
        )

    # transitions ------------------------------------------------------------

    async def start_daily(self, user_id: str, calendar_date: date | str | None = None) -> SubmitResult | None:
        """Scheduler entry: enqueue the summary unless it is already complete."""

        day = self._resolve_date(calendar_date)
        summary = await self.repository.find_summary(user_id, day)
        if summary and summary.is_complete_summary():
            self._logger.info(
                "Summary already complete for %s on %s",
                user_id,
                day,
                extra={"event": "flow.summary_exists", "summary_id": summary.id},
            )
            return None
        return self._submit_summary(user_id, day)

    async def run_now(self, user_id: str, calendar_date: date | str | None = None) -> Dict[str, Any]:
        """Re-enter the chain at its first incomplete stage."""

        day = self._resolve_date(calendar_date)
        summary = await self.repository.find_summary(user_id, day)
        if summary is None or not summary.is_complete_summary():
            return _submit_view(StageName.SUMMARY, self._submit_summary(user_id, day))
        if not summary.has_script():
            return _submit_view(StageName.SCRIPT, self._submit_script(user_id, summary.id), summary_id=summary.id)

        config = await self.repository.get_settings(user_id)
        if config.podcast_enabled:
            episode = await self.repository.find_episode_by_summary(user_id, summary.id)
            if episode is None or not episode.is_complete():
                return _submit_view(
                    StageName.PODCAST,
                    self._submit_podcast(user_id, summary.id),
                    summary_id=summary.id,
                )
        return _submit_view(None, None, summary_id=summary.id, reason="already_complete")

    def advance_after_summary(self, user_id: str, summary: DailySummary) -> SubmitResult:
        return self._submit_script(user_id, summary.id)

    async def advance_after_script(self, user_id: str, summary: DailySummary) -> SubmitResult | None:
        config = await self.repository.get_settings(user_id)
        if not (config.podcast_enabled and config.summary_enabled):
            self._logger.info(
                "Podcast disabled for %s; chain ends at script",
                user_id,
                extra={"event": "flow.podcast_disabled", "summary_id": summary.id},
            )
            return None
        return self._submit_podcast(user_id, summary.id)

    async def enqueue_podcast_for_date(
        self, user_id: str, calendar_date: date | str | None = None
    ) -> SubmitResult | None:
        day = self._resolve_date(calendar_date)
        summary = await self.repository.find_summary(user_id, day)
        if summary is None:
            self._logger.info(
                "No summary for %s on %s; podcast not enqueued",
                user_id,
                day,
                extra={"event": "flow.podcast_no_summary"},
            )
            return None
        return self._submit_podcast(user_id, summary.id)

    # status -----------------------------------------------------------------

    async def status(self, user_id: str, calendar_date: date | str | None = None) -> FlowStatus:
        day = self._resolve_date(calendar_date)
        summary = await self.repository.find_summary(user_id, day)

        if summary and summary.is_complete_summary():
            summary_state = JobState.COMPLETED
        else:
            summary_state = self.queues[StageName.SUMMARY].state_of(self.summary_identity(user_id, day))

        if summary is None:
            downstream = JobState.SKIPPED if summary_state == JobState.SKIPPED else JobState.IDLE
            return FlowStatus(user_id, day, summary_state, downstream, downstream)

        if summary.has_script():
            script_state = JobState.COMPLETED
        else:
            script_state = self.queues[StageName.SCRIPT].state_of(self.script_identity(user_id, summary.id))

        episode = await self.repository.find_episode_by_summary(user_id, summary.id)
        if episode is not None and episode.has_audio():
            podcast_state = JobState.COMPLETED
        else:
            config = await self.repository.get_settings(user_id)
            if not config.podcast_enabled:
                podcast_state = JobState.SKIPPED
            else:
                podcast_state = self.queues[StageName.PODCAST].state_of(
                    self.podcast_identity(user_id, summary.id)
                )

        return FlowStatus(
            user_id,
            day,
            summary_state,
            script_state,
            podcast_state,
            summary_id=summary.id,
            audio_url=episode.audio_url if episode else None,
        )


__all__ = ["FlowOrchestrator", "FlowPhase", "FlowStatus", "derive_phase"]
