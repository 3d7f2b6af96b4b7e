from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from feedcast.apps.api.deps import ApiServices, get_current_user_id, get_services
from feedcast.libs.schedule import preview, schedule_info
from feedcast.libs.schemas.models import PodcastLanguage, UserScheduleConfig

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["Schedule"])


class SummarySettingsIn(BaseModel):
    enabled: bool
    time: str | None = None


class PodcastSettingsIn(BaseModel):
    enabled: bool
    time: str | None = None
    language: str | None = None


class PreviewIn(BaseModel):
    time: str


class RunNowIn(BaseModel):
    date: dt.date | None = None


def _settings_view(config: UserScheduleConfig, services: ApiServices) -> Dict[str, Any]:
    next_runs = schedule_info(
        config,
        services.clock,
        offset_minutes=services.settings.podcast_offset_minutes,
        max_jitter=services.settings.jitter_max_minutes,
    )
    return {
        "summary_enabled": config.summary_enabled,
        "summary_schedule_time": config.summary_time,
        "podcast_enabled": config.podcast_enabled,
        "podcast_schedule_time": config.podcast_time,
        "podcast_language": config.podcast_language.value,
        "timezone": next_runs["timezone"],
        "next_run_at_summary": next_runs["summary_next_run"],
        "next_run_at_podcast": next_runs["podcast_next_run"],
    }


async def _save_and_reschedule(config: UserScheduleConfig, services: ApiServices) -> UserScheduleConfig:
    try:
        config.validate()
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    saved = await services.repository.save_settings(config)
    await services.registry.register(saved)
    return saved


@router.get("/settings")
async def get_user_settings(
    user_id: str = Depends(get_current_user_id),
    services: ApiServices = Depends(get_services),
):
    config = await services.repository.get_settings(user_id)
    return _settings_view(config, services)


@router.put("/settings/summary")
async def update_summary_settings(
    body: SummarySettingsIn,
    user_id: str = Depends(get_current_user_id),
    services: ApiServices = Depends(get_services),
):
    config = await services.repository.get_settings(user_id)
    config.summary_enabled = body.enabled
    if body.time is not None:
        config.summary_time = body.time
    if not body.enabled:
        # The podcast is derived from the summary; it cannot outlive it.
        config.podcast_enabled = False
    saved = await _save_and_reschedule(config, services)
    LOGGER.info(
        "Summary settings updated for %s",
        user_id,
        extra={"event": "settings.summary_updated", "enabled": saved.summary_enabled},
    )
    return _settings_view(saved, services)


@router.put("/settings/podcast")
async def update_podcast_settings(
    body: PodcastSettingsIn,
    user_id: str = Depends(get_current_user_id),
    services: ApiServices = Depends(get_services),
):
    config = await services.repository.get_settings(user_id)
    if body.enabled and not config.summary_enabled:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Podcast cannot be enabled when summary is disabled",
        )
    config.podcast_enabled = body.enabled
    if body.time is not None:
        config.podcast_time = body.time
    if body.language is not None:
        config.podcast_language = PodcastLanguage.coerce(body.language)
    saved = await _save_and_reschedule(config, services)
    LOGGER.info(
        "Podcast settings updated for %s",
        user_id,
        extra={"event": "settings.podcast_updated", "enabled": saved.podcast_enabled},
    )
    return _settings_view(saved, services)


@router.post("/schedule/preview")
async def preview_schedule(
    body: PreviewIn,
    user_id: str = Depends(get_current_user_id),
    services: ApiServices = Depends(get_services),
):
    try:
        return preview(
            user_id,
            body.time,
            services.clock,
            offset_minutes=services.settings.podcast_offset_minutes,
            max_jitter=services.settings.jitter_max_minutes,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@router.post("/schedule/reload")
async def reload_schedule(
    user_id: str = Depends(get_current_user_id),
    services: ApiServices = Depends(get_services),
):
    config = await services.repository.get_settings(user_id)
    slots = await services.registry.register(config)
    return {"reloaded": True, **slots, **_settings_view(config, services)}


@router.post("/summaries/run-now", status_code=status.HTTP_202_ACCEPTED)
async def run_summary_now(
    body: RunNowIn | None = None,
    user_id: str = Depends(get_current_user_id),
    services: ApiServices = Depends(get_services),
):
    day = body.date if body and body.date else services.clock.today()
    result = await services.flow.run_now(user_id, day)
    return {"date": day.isoformat(), **result}


@router.post("/podcasts/run-now", status_code=status.HTTP_202_ACCEPTED)
async def run_podcast_now(
    body: RunNowIn | None = None,
    user_id: str = Depends(get_current_user_id),
    services: ApiServices = Depends(get_services),
):
    day = body.date if body and body.date else services.clock.today()
    submit = await services.flow.enqueue_podcast_for_date(user_id, day)
    if submit is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No summary for date")
    return {
        "date": day.isoformat(),
        "enqueued": submit.enqueued,
        "job_id": submit.identity,
        "state": submit.state.value,
    }


@router.get("/jobs/status")
async def jobs_status(
    date_param: dt.date | None = Query(default=None, alias="date"),
    user_id: str = Depends(get_current_user_id),
    services: ApiServices = Depends(get_services),
):
    flow_status = await services.flow.status(user_id, date_param or services.clock.today())
    return flow_status.to_dict()


__all__ = ["router"]
