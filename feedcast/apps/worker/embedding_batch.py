"""Cursor-paginated, rate-limited embedding backfill.

Each job embeds one page of rows lacking a vector. A full page schedules a
continuation job carrying the advanced cursor; a short or empty page ends the
run, so every execution has a bounded duration.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Sequence

from feedcast.apps.worker.queues import JobState, StageName, StageQueue, job_identity
from feedcast.libs.capabilities import EmbeddingCapability, Repository
from feedcast.libs.schemas.models import BatchCursor, RecordType

LOGGER = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50
MAX_BATCH_SIZE = 100
PROVIDER_CHUNK_SIZE = 20
CHUNK_DELAY_SECONDS = 1.0
CONTINUATION_DELAY_SECONDS = 2.0
BUSY_THRESHOLD = 3
PROGRESS_TTL_SECONDS = 24 * 60 * 60


class QueueBusyError(RuntimeError):
    """Raised when too many embedding jobs are already waiting or running."""

    def __init__(self, waiting: int, active: int) -> None:
        super().__init__("Embedding queue is currently busy. Please retry later.")
        self.waiting = waiting
        self.active = active


def initial_identity(user_id: str, record_type: RecordType) -> str:
    return job_identity(StageName.EMBEDDING, user_id, record_type.value)


def continuation_identity(user_id: str, record_type: RecordType, last_id: int) -> str:
    return job_identity(StageName.EMBEDDING, user_id, record_type.value, last_id)


def _progress_key(user_id: str, record_type: RecordType) -> str:
    return f"embedding:progress:{user_id}:{record_type.value}"


def _decode(mapping: Mapping[Any, Any]) -> Dict[str, str]:
    decoded: Dict[str, str] = {}
    for key, value in mapping.items():
        k = key.decode() if isinstance(key, bytes) else str(key)
        v = value.decode() if isinstance(value, bytes) else str(value)
        decoded[k] = v
    return decoded


def clamp_batch_size(value: int | None, *, maximum: int = MAX_BATCH_SIZE) -> int:
    if not value or value <= 0:
        return DEFAULT_BATCH_SIZE
    return min(int(value), maximum)


class EmbeddingBatchProcessor:
    def __init__(
        self,
        repository: Repository,
        embeddings: EmbeddingCapability,
        queue: StageQueue,
        *,
        chunk_size: int = PROVIDER_CHUNK_SIZE,
        chunk_delay: float = CHUNK_DELAY_SECONDS,
        continuation_delay: float = CONTINUATION_DELAY_SECONDS,
        max_batch_size: int = MAX_BATCH_SIZE,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self.repository = repository
        self.embeddings = embeddings
        self.queue = queue
        self.chunk_size = max(1, chunk_size)
        self.chunk_delay = chunk_delay
        self.continuation_delay = continuation_delay
        self.max_batch_size = max_batch_size
        self._sleep = sleep
        self._logger = logger or LOGGER

    async def process(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        cursor = BatchCursor.from_payload(payload)
        batch_size = clamp_batch_size(cursor.batch_size, maximum=self.max_batch_size)
        page = await self.repository.find_missing_embeddings(
            cursor.user_id, cursor.record_type, batch_size, cursor.last_processed_id
        )
        if not page:
            self._logger.info(
                "No more rows to embed for %s/%s",
                cursor.user_id,
                cursor.record_type.value,
                extra={"event": "embedding.exhausted"},
            )
            self._record_progress(cursor, processed=0, done=True)
            return {"status": "completed", "processed": 0, "has_more": False}

        vectors = await self._embed_with_rate_limit([item.content_text for item in page])
        for item, vector in zip(page, vectors):
            await self.repository.update_embedding(cursor.record_type, item.id, vector)

        last_id = page[-1].id
        has_more = len(page) == batch_size
        if has_more:
            next_cursor = cursor.advance(last_id)
            next_cursor.batch_size = batch_size
            self.queue.submit(
                continuation_identity(cursor.user_id, cursor.record_type, last_id),
                next_cursor.to_payload(),
                delay=timedelta(seconds=self.continuation_delay),
                high_priority=True,
            )

        self._record_progress(cursor, processed=len(page), done=not has_more, last_id=last_id)
        self._logger.info(
            "Embedded %s rows for %s/%s",
            len(page),
            cursor.user_id,
            cursor.record_type.value,
            extra={"event": "embedding.page", "has_more": has_more, "last_processed_id": last_id},
        )
        return {
            "status": "completed",
            "processed": len(page),
            "has_more": has_more,
            "last_processed_id": last_id,
        }

    async def _embed_with_rate_limit(self, texts: Sequence[str]) -> List[List[float]]:
        results: List[List[float]] = []
        for start in range(0, len(texts), self.chunk_size):
            chunk = list(texts[start : start + self.chunk_size])
            vectors = await self.embeddings.embed(chunk)
            if len(vectors) != len(chunk):
                raise ValueError(f"expected {len(chunk)} vectors, got {len(vectors)}")
            results.extend(vectors)
            if start + self.chunk_size < len(texts):
                await self._sleep(self.chunk_delay)
        return results

    def _record_progress(
        self,
        cursor: BatchCursor,
        *,
        processed: int,
        done: bool,
        last_id: int | None = None,
    ) -> None:
        connection = self.queue.queue.connection
        key = _progress_key(cursor.user_id, cursor.record_type)
        mapping: Dict[str, Any] = {
            "status": "completed" if done else "running",
            "updated_at": int(time.time()),
        }
        if cursor.total_estimate is not None:
            mapping["total_estimate"] = cursor.total_estimate
        if last_id is not None:
            mapping["last_processed_id"] = last_id
        connection.hset(key, mapping=mapping)
        if processed:
            connection.hincrby(key, "processed", processed)
        connection.expire(key, PROGRESS_TTL_SECONDS)


async def request_backfill(
    repository: Repository,
    queue: StageQueue,
    user_id: str,
    record_types: Iterable[RecordType | str] | None = None,
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
    enforce_capacity: bool = True,
    logger: logging.Logger | None = None,
) -> List[Dict[str, Any]]:
    """Enqueue one initial batch job per record type that has rows missing vectors."""

    log = logger or LOGGER
    if enforce_capacity:
        counts = queue.counts()
        if counts["waiting"] + counts["active"] > BUSY_THRESHOLD:
            raise QueueBusyError(counts["waiting"], counts["active"])

    types = [RecordType(t) for t in (record_types or list(RecordType))]
    unique_types = list(dict.fromkeys(types))
    results: List[Dict[str, Any]] = []
    for record_type in unique_types:
        missing = await repository.count_missing_embeddings(user_id, record_type)
        if missing <= 0:
            log.info(
                "No missing embeddings for %s",
                record_type.value,
                extra={"event": "embedding.none_missing", "user_id": user_id},
            )
            results.append({"record_type": record_type.value, "enqueued": False, "total_estimate": 0})
            continue
        cursor = BatchCursor(
            user_id=user_id,
            record_type=record_type,
            batch_size=batch_size,
            total_estimate=missing,
        )
        identity = initial_identity(user_id, record_type)
        submit = queue.submit(identity, cursor.to_payload())
        if submit.enqueued:
            queue.queue.connection.delete(_progress_key(user_id, record_type))
        results.append(
            {
                "record_type": record_type.value,
                "enqueued": submit.enqueued,
                "job_id": identity,
                "total_estimate": missing,
            }
        )
    return results


def progress(
    queue: StageQueue,
    user_id: str,
    record_types: Iterable[RecordType] | None = None,
) -> List[Dict[str, Any]]:
    """Report per-record-type backfill status for ``user_id``."""

    report: List[Dict[str, Any]] = []
    for record_type in record_types or list(RecordType):
        raw = _decode(queue.queue.connection.hgetall(_progress_key(user_id, record_type)) or {})
        initial_state = queue.state_of(initial_identity(user_id, record_type))
        if raw.get("status") == "running":
            status = "running"
        elif raw.get("status") == "completed":
            status = "completed"
        elif initial_state in (JobState.WAITING, JobState.ACTIVE):
            status = "waiting" if initial_state == JobState.WAITING else "running"
        elif initial_state == JobState.FAILED:
            status = "failed"
        else:
            status = "idle"
        total = int(raw.get("total_estimate", 0) or 0)
        processed = int(raw.get("processed", 0) or 0)
        report.append(
            {
                "record_type": record_type.value,
                "status": status,
                "total_records": total,
                "processed_records": processed,
                "progress": min(100, int(processed * 100 / total)) if total else (100 if status == "completed" else 0),
            }
        )
    return report


__all__ = [
    "BUSY_THRESHOLD",
    "DEFAULT_BATCH_SIZE",
    "EmbeddingBatchProcessor",
    "MAX_BATCH_SIZE",
    "QueueBusyError",
    "clamp_batch_size",
    "continuation_identity",
    "initial_identity",
    "progress",
    "request_backfill",
]
