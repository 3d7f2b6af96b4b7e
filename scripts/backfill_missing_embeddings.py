from __future__ import annotations

import argparse
import asyncio

from redis import Redis

from feedcast.apps.worker.embedding_batch import QueueBusyError, request_backfill
from feedcast.apps.worker.queues import StageName, StageQueues
from feedcast.libs.logging_utils import configure_logging
from feedcast.libs.repository import PostgresRepository
from feedcast.libs.schemas import RecordType, create_pool, get_settings


async def amain() -> int:
    parser = argparse.ArgumentParser(description="Queue embedding backfills for rows missing vectors.")
    parser.add_argument("--user-id", required=True, help="User whose rows should be backfilled.")
    parser.add_argument(
        "--record-type",
        action="append",
        choices=[record_type.value for record_type in RecordType],
        help="Limit to one or more record types (repeatable).",
    )
    parser.add_argument("--batch-size", type=int, default=None, help="Rows per batch job.")
    parser.add_argument("--dry-run", action="store_true", help="Print counts without enqueuing.")
    args = parser.parse_args()

    configure_logging()
    settings = get_settings()
    record_types = [RecordType(value) for value in args.record_type] if args.record_type else list(RecordType)
    batch_size = min(args.batch_size or settings.embedding_batch_size, settings.embedding_max_batch_size)

    pool = await create_pool(settings.database_url)
    try:
        repository = PostgresRepository(pool)
        if args.dry_run:
            for record_type in record_types:
                missing = await repository.count_missing_embeddings(args.user_id, record_type)
                print(f"[dry-run] {record_type.value} missing embeddings: {missing}")
            return 0

        queue = StageQueues.from_connection(Redis.from_url(settings.redis_url))[StageName.EMBEDDING]
        try:
            results = await request_backfill(
                repository,
                queue,
                args.user_id,
                record_types,
                batch_size=batch_size,
            )
        except QueueBusyError as exc:
            print(f"Embedding queue busy (waiting={exc.waiting} active={exc.active}); retry later.")
            return 1
        for entry in results:
            state = "enqueued" if entry["enqueued"] else "skipped"
            print(f"{entry['record_type']}: {state} total_estimate={entry['total_estimate']}")
        return 0
    finally:
        await pool.close()


if __name__ == "__main__":
    raise SystemExit(asyncio.run(amain()))
