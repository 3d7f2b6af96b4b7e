"""RQ-backed stage queues with deterministic job identities.

Every stage submits through :class:`StageQueue`, which suppresses duplicates by
identity: a job that is still waiting or running is left alone, while a
finished or failed one is replaced by a fresh attempt.
"""

from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, Mapping, Tuple

from redis import Redis
from rq import Queue, Retry
from rq.job import Job, JobStatus

from feedcast.libs.lock import RELEASE_SCRIPT

LOGGER = logging.getLogger(__name__)

RESULT_TTL_SECONDS = 24 * 60 * 60
KEEP_COMPLETED = 5
KEEP_FAILED = 10
_JOB_ID_UNSAFE_RE = re.compile(r"[^A-Za-z0-9_-]")
SUBMIT_GUARD_PREFIX = "feedcast:submit:"
SUBMIT_GUARD_MS = 5000


class StageName(str, Enum):
    SUMMARY = "summary"
    SCRIPT = "script"
    PODCAST = "podcast"
    EMBEDDING = "embedding"


class JobState(str, Enum):
    IDLE = "idle"
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


_WAITING_STATUSES = {JobStatus.QUEUED, JobStatus.SCHEDULED, JobStatus.DEFERRED}
_ACTIVE_STATUSES = {JobStatus.STARTED}
_FAILED_STATUSES = {JobStatus.FAILED, JobStatus.STOPPED, JobStatus.CANCELED}


@dataclass(frozen=True)
class QueueSpec:
    name: str
    func: str
    attempts: int = 3
    backoff: Tuple[int, ...] = (30, 30)
    job_timeout: int = 600

    def retry(self) -> Retry | None:
        retries = self.attempts - 1
        if retries <= 0:
            return None
        intervals = list(self.backoff[:retries]) or [30]
        return Retry(max=retries, interval=intervals)


QUEUE_SPECS: Dict[StageName, QueueSpec] = {
    StageName.SUMMARY: QueueSpec("summary-generate", "feedcast.apps.worker.jobs.generate_summary"),
    StageName.SCRIPT: QueueSpec("script-generate", "feedcast.apps.worker.jobs.generate_script"),
    StageName.PODCAST: QueueSpec("podcast-generate", "feedcast.apps.worker.jobs.generate_podcast"),
    StageName.EMBEDDING: QueueSpec(
        "embedding-batch",
        "feedcast.apps.worker.jobs.process_embedding_batch",
        backoff=(30, 60, 120),
    ),
}


def job_identity(stage: StageName | str, user_id: str, key: Any, *extra: Any) -> str:
    """``<stage>:<userId>:<date|summaryId>[:...]``"""

    stage_value = stage.value if isinstance(stage, StageName) else str(stage)
    parts = [stage_value, str(user_id), str(key), *(str(item) for item in extra)]
    return ":".join(parts)


def rq_job_id(identity: str) -> str:
    """RQ job ids may not contain ``:``; map the identity onto a safe id."""

    return _JOB_ID_UNSAFE_RE.sub("-", identity.replace(":", "__"))


@dataclass
class SubmitResult:
    identity: str
    job_id: str
    enqueued: bool
    state: JobState
    replaced: bool = False


def _status_of(job: Job) -> JobStatus | None:
    status = job.get_status(refresh=True)
    if status is None:
        return None
    return JobStatus(status)


def _outcome_of(job: Job) -> str | None:
    value = job.return_value()
    if isinstance(value, Mapping):
        outcome = value.get("status")
        return str(outcome) if outcome is not None else None
    return None


class StageQueue:
    def __init__(self, queue: Queue, spec: QueueSpec, *, logger: logging.Logger | None = None) -> None:
        self.queue = queue
        self.spec = spec
        self._logger = logger or LOGGER

    @classmethod
    def for_stage(
        cls,
        stage: StageName,
        connection: Redis,
        *,
        job_timeout: int | None = None,
        logger: logging.Logger | None = None,
    ) -> "StageQueue":
        spec = QUEUE_SPECS[stage]
        if job_timeout is not None:
            spec = QueueSpec(spec.name, spec.func, spec.attempts, spec.backoff, job_timeout)
        return cls(Queue(spec.name, connection=connection), spec, logger=logger)

    @property
    def name(self) -> str:
        return self.spec.name

    def fetch(self, identity: str) -> Job | None:
        return self.queue.fetch_job(rq_job_id(identity))

    def state_of(self, identity: str) -> JobState:
        job = self.fetch(identity)
        if job is None:
            return JobState.IDLE
        status = _status_of(job)
        if status in _WAITING_STATUSES:
            return JobState.WAITING
        if status in _ACTIVE_STATUSES:
            return JobState.ACTIVE
        if status in _FAILED_STATUSES:
            return JobState.FAILED
        if status == JobStatus.FINISHED:
            outcome = _outcome_of(job)
            if outcome == "skipped":
                return JobState.SKIPPED
            if outcome == "locked":
                return JobState.IDLE
            return JobState.COMPLETED
        return JobState.IDLE

    def submit(
        self,
        identity: str,
        payload: Mapping[str, Any],
        *,
        delay: timedelta | None = None,
        high_priority: bool = False,
    ) -> SubmitResult:
        """Enqueue ``payload`` unless a job with ``identity`` is waiting or active.

        The existence check and the enqueue run under a short ``SET NX PX`` guard
        keyed on the job id. A caller that loses the guard reports the in-flight
        submit as waiting.
        """

        job_id = rq_job_id(identity)
        connection = self.queue.connection
        guard_key = f"{SUBMIT_GUARD_PREFIX}{job_id}"
        token = secrets.token_hex(8)
        if not connection.set(guard_key, token, nx=True, px=SUBMIT_GUARD_MS):
            self._logger.info(
                "Concurrent submit suppressed for %s",
                identity,
                extra={"event": "queue.submit_in_flight", "queue": self.name},
            )
            return SubmitResult(identity, job_id, enqueued=False, state=JobState.WAITING)
        try:
            return self._submit_unguarded(identity, job_id, payload, delay=delay, high_priority=high_priority)
        finally:
            connection.eval(RELEASE_SCRIPT, 1, guard_key, token)

    def _submit_unguarded(
        self,
        identity: str,
        job_id: str,
        payload: Mapping[str, Any],
        *,
        delay: timedelta | None,
        high_priority: bool,
    ) -> SubmitResult:
        replaced = False
        existing = self.queue.fetch_job(job_id)
        if existing is not None:
            status = _status_of(existing)
            if status in _WAITING_STATUSES or status in _ACTIVE_STATUSES:
                state = JobState.WAITING if status in _WAITING_STATUSES else JobState.ACTIVE
                self._logger.info(
                    "Duplicate submit suppressed for %s",
                    identity,
                    extra={"event": "queue.duplicate", "queue": self.name, "state": state.value},
                )
                return SubmitResult(identity, job_id, enqueued=False, state=state)
            existing.delete()
            replaced = True

        options: Dict[str, Any] = {
            "kwargs": {"payload": dict(payload)},
            "job_id": job_id,
            "job_timeout": self.spec.job_timeout,
            "result_ttl": RESULT_TTL_SECONDS,
            "failure_ttl": RESULT_TTL_SECONDS,
            "retry": self.spec.retry(),
            "at_front": high_priority,
            "meta": {"identity": identity},
        }
        if delay is not None and delay.total_seconds() > 0:
            self.queue.enqueue_in(delay, self.spec.func, **options)
        else:
            self.queue.enqueue(self.spec.func, **options)

        self._logger.info(
            "Enqueued %s",
            identity,
            extra={
                "event": "queue.enqueued",
                "queue": self.name,
                "replaced": replaced,
                "delay_seconds": delay.total_seconds() if delay else 0,
                "high_priority": high_priority,
            },
        )
        return SubmitResult(identity, job_id, enqueued=True, state=JobState.WAITING, replaced=replaced)

    def counts(self) -> Dict[str, int]:
        waiting = (
            self.queue.count
            + self.queue.scheduled_job_registry.count
            + self.queue.deferred_job_registry.count
        )
        return {"waiting": waiting, "active": self.queue.started_job_registry.count}

    def prune_history(self, *, keep_completed: int = KEEP_COMPLETED, keep_failed: int = KEEP_FAILED) -> int:
        removed = self._prune(self.queue.finished_job_registry, keep_completed)
        removed += self._prune(self.queue.failed_job_registry, keep_failed)
        if removed:
            self._logger.info(
                "Pruned %s historical jobs",
                removed,
                extra={"event": "queue.pruned", "queue": self.name},
            )
        return removed

    def _prune(self, registry: Any, keep: int) -> int:
        # Registry ids are ordered oldest first.
        job_ids = list(registry.get_job_ids())
        stale = job_ids[:-keep] if keep > 0 else job_ids
        for job_id in stale:
            job = self.queue.fetch_job(job_id)
            if job is not None:
                job.delete()
            else:
                registry.remove(job_id)
        return len(stale)


class StageQueues:
    """The set of stage queues sharing one Redis connection."""

    def __init__(self, queues: Mapping[StageName, StageQueue]) -> None:
        self._queues = dict(queues)

    @classmethod
    def from_connection(
        cls,
        connection: Redis,
        *,
        job_timeout: int | None = None,
        logger: logging.Logger | None = None,
    ) -> "StageQueues":
        return cls(
            {
                stage: StageQueue.for_stage(stage, connection, job_timeout=job_timeout, logger=logger)
                for stage in StageName
            }
        )

    def __getitem__(self, stage: StageName) -> StageQueue:
        return self._queues[stage]

    def prune_history(self) -> int:
        return sum(queue.prune_history() for queue in self._queues.values())


__all__ = [
    "JobState",
    "KEEP_COMPLETED",
    "KEEP_FAILED",
    "QUEUE_SPECS",
    "QueueSpec",
    "RESULT_TTL_SECONDS",
    "StageName",
    "StageQueue",
    "StageQueues",
    "SUBMIT_GUARD_MS",
    "SUBMIT_GUARD_PREFIX",
    "SubmitResult",
    "job_identity",
    "rq_job_id",
]
