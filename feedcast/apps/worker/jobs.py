"""RQ job implementations for the content chain and embedding backfills."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Mapping

from rq import get_current_job

from feedcast.apps.worker.embedding_batch import EmbeddingBatchProcessor
from feedcast.apps.worker.errors import classify_error
from feedcast.apps.worker.queues import StageName
from feedcast.apps.worker.stages import STAGES, StageContext, worker_context
from feedcast.libs.logging_utils import colorize

LOGGER = logging.getLogger(__name__)


def _disable_retries() -> None:
    job = get_current_job()
    if job is not None:
        job.retries_left = 0


def _handle_failure(label: str, payload: Mapping[str, Any], exc: Exception) -> Exception:
    error = classify_error(exc)
    if not error.retryable:
        _disable_retries()
    LOGGER.error(
        colorize("%s job failed for user %s: %s"),
        label,
        payload.get("user_id"),
        exc,
        extra={
            "event": "job.failed",
            "stage": label,
            "error_class": type(error).__name__,
            "retryable": error.retryable,
        },
    )
    return error


async def run_stage(ctx: StageContext, stage: StageName | str, payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Execute one stage and classify any failure for the queue's retry policy."""

    name = StageName(stage)
    try:
        result = await STAGES[name].execute(ctx, payload)
    except Exception as exc:
        error = _handle_failure(name.value, payload, exc)
        if error is exc:
            raise
        raise error from exc
    return result.to_dict()


async def run_embedding_batch(ctx: StageContext, payload: Mapping[str, Any]) -> Dict[str, Any]:
    processor = EmbeddingBatchProcessor(
        ctx.repository,
        ctx.embeddings,
        ctx.queues[StageName.EMBEDDING],
        chunk_size=ctx.settings.embedding_provider_chunk_size,
        chunk_delay=ctx.settings.embedding_chunk_delay_seconds,
        continuation_delay=ctx.settings.embedding_continuation_delay_seconds,
        max_batch_size=ctx.settings.embedding_max_batch_size,
        logger=ctx.logger,
    )
    try:
        return await processor.process(payload)
    except Exception as exc:
        error = _handle_failure(StageName.EMBEDDING.value, payload, exc)
        if error is exc:
            raise
        raise error from exc


def _run_in_context(stage: StageName, payload: Mapping[str, Any]) -> Dict[str, Any]:
    async def _run() -> Dict[str, Any]:
        async with worker_context() as ctx:
            if stage == StageName.EMBEDDING:
                return await run_embedding_batch(ctx, payload)
            return await run_stage(ctx, stage, payload)

    return asyncio.run(_run())


def generate_summary(payload: Dict[str, Any]) -> Dict[str, Any]:
    """RQ job: build the daily digest for ``payload['user_id']``."""

    return _run_in_context(StageName.SUMMARY, payload)


def generate_script(payload: Dict[str, Any]) -> Dict[str, Any]:
    """RQ job: narrate a completed summary."""

    return _run_in_context(StageName.SCRIPT, payload)


def generate_podcast(payload: Dict[str, Any]) -> Dict[str, Any]:
    """RQ job: synthesize and publish podcast audio."""

    return _run_in_context(StageName.PODCAST, payload)


def process_embedding_batch(payload: Dict[str, Any]) -> Dict[str, Any]:
    """RQ job: embed one page of rows missing vectors."""

    return _run_in_context(StageName.EMBEDDING, payload)


__all__ = [
    "generate_podcast",
    "generate_script",
    "generate_summary",
    "process_embedding_batch",
    "run_embedding_batch",
    "run_stage",
]
