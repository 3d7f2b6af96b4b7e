import logging
import os
from typing import List

from redis import Redis
from rq import Queue, Worker

from feedcast.apps.worker.queues import QUEUE_SPECS
from feedcast.libs.clock import TimeZoneClock
from feedcast.libs.logging_utils import configure_logging
from feedcast.libs.schemas import get_settings

LOGGER = logging.getLogger("feedcast.worker")


def get_redis() -> Redis:
    url = get_settings().redis_url
    LOGGER.info("Connecting to Redis at %s", url)
    return Redis.from_url(url)


def _build_queues(connection: Redis) -> List[Queue]:
    selected = {name.strip() for name in os.getenv("WORKER_QUEUES", "").split(",") if name.strip()}
    queues = []
    for stage, spec in QUEUE_SPECS.items():
        if selected and spec.name not in selected and stage.value not in selected:
            continue
        queue = Queue(spec.name, connection=connection)
        LOGGER.info("Registered queue: %s", queue.name)
        queues.append(queue)
    return queues


def run() -> None:
    configure_logging()
    settings = get_settings()
    TimeZoneClock(settings.schedule_timezone).check_host_offset()

    conn = get_redis()
    queues = _build_queues(conn)
    if not queues:
        raise RuntimeError("No queues registered; check WORKER_QUEUES.")

    worker = Worker(queues, connection=conn)
    LOGGER.info("Worker started; listening on %s queues.", len(queues))
    # The scheduler promotes delayed continuations and retry backoffs.
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    run()
