from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from feedcast.apps.api.deps import ApiServices, get_current_user_id, get_services
from feedcast.apps.worker.embedding_batch import QueueBusyError, clamp_batch_size, progress, request_backfill
from feedcast.apps.worker.queues import StageName
from feedcast.libs.schemas.models import RecordType

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/embeddings", tags=["Embeddings"])


class BatchRequest(BaseModel):
    record_types: List[RecordType] | None = None
    batch_size: int | None = None


@router.post("/batch", status_code=status.HTTP_202_ACCEPTED)
async def start_embedding_batch(
    body: BatchRequest | None = None,
    user_id: str = Depends(get_current_user_id),
    services: ApiServices = Depends(get_services),
):
    body = body or BatchRequest()
    batch_size = clamp_batch_size(
        body.batch_size or services.settings.embedding_batch_size,
        maximum=services.settings.embedding_max_batch_size,
    )
    try:
        jobs = await request_backfill(
            services.repository,
            services.queues[StageName.EMBEDDING],
            user_id,
            body.record_types,
            batch_size=batch_size,
        )
    except QueueBusyError as exc:
        LOGGER.warning(
            "Embedding batch rejected for %s",
            user_id,
            extra={"event": "embedding.busy", "waiting": exc.waiting, "active": exc.active},
        )
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=str(exc)) from exc
    return {"status": "accepted", "jobs": jobs}


@router.get("/batch/progress")
async def embedding_batch_progress(
    user_id: str = Depends(get_current_user_id),
    services: ApiServices = Depends(get_services),
):
    return {"items": progress(services.queues[StageName.EMBEDDING], user_id)}


__all__ = ["router"]
