"""Request dependencies: caller identity and the services built at startup."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx
from fastapi import Header, HTTPException, Request

from feedcast.apps.worker.flow import FlowOrchestrator
from feedcast.apps.worker.queues import StageQueues
from feedcast.apps.worker.scheduler import ScheduleRegistry
from feedcast.libs.capabilities import Repository
from feedcast.libs.clock import TimeZoneClock
from feedcast.libs.schemas.settings import AppSettings, get_settings

LOGGER = logging.getLogger(__name__)


@dataclass
class ApiServices:
    settings: AppSettings
    repository: Repository
    queues: StageQueues
    clock: TimeZoneClock
    registry: ScheduleRegistry
    flow: FlowOrchestrator


async def get_current_user_id(authorization: str | None = Header(default=None)) -> str:
    settings = get_settings()
    if authorization and authorization.startswith("Bearer "):
        token = authorization.split(" ", 1)[1]
        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(
                    f"{settings.supabase_url}/auth/v1/user",
                    headers={"Authorization": f"Bearer {token}", "apikey": settings.supabase_anon_key},
                    timeout=10,
                )
        except httpx.HTTPError as exc:
            LOGGER.warning("Auth provider unreachable: %s", exc, extra={"event": "auth.unreachable"})
            raise HTTPException(status_code=503, detail="Auth provider unavailable") from exc
        if response.status_code == 200:
            payload = response.json()
            if isinstance(payload, dict) and "id" in payload:
                return str(payload["id"])

    if settings.demo_mode and settings.demo_user_id:
        return settings.demo_user_id

    raise HTTPException(status_code=401, detail="Unauthenticated")


def get_services(request: Request) -> ApiServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return services


__all__ = ["ApiServices", "get_current_user_id", "get_services"]
