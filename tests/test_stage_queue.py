from datetime import timedelta

from rq.job import JobStatus

from feedcast.apps.worker.queues import (
    QUEUE_SPECS,
    RESULT_TTL_SECONDS,
    SUBMIT_GUARD_MS,
    SUBMIT_GUARD_PREFIX,
    JobState,
    StageName,
    job_identity,
    rq_job_id,
)

from tests.fakes import fake_queue, make_queues


def test_identity_shapes():
    assert job_identity(StageName.SUMMARY, "user-1", "2026-10-19") == "summary:user-1:2026-10-19"
    assert job_identity(StageName.EMBEDDING, "user-1", "feed_items", 50) == "embedding:user-1:feed_items:50"


def test_rq_job_id_is_colon_free_and_injective_for_identities():
    assert rq_job_id("summary:user-1:2026-10-19") == "summary__user-1__2026-10-19"
    assert rq_job_id("script:user-1:12") != rq_job_id("podcast:user-1:12")
    assert ":" not in rq_job_id("embedding:a b:feed_items")


def test_retry_policies_per_stage():
    assert QUEUE_SPECS[StageName.SUMMARY].retry().max == 2
    assert QUEUE_SPECS[StageName.EMBEDDING].retry().intervals == [30, 60]


def test_submit_enqueues_with_identity_and_policies():
    queues = make_queues()
    stage_queue = queues[StageName.SUMMARY]
    result = stage_queue.submit("summary:user-1:2026-10-19", {"user_id": "user-1", "calendar_date": "2026-10-19"})

    assert result.enqueued is True
    assert result.state == JobState.WAITING
    entry = fake_queue(queues, StageName.SUMMARY).enqueue_log[0]
    assert entry["job_id"] == "summary__user-1__2026-10-19"
    assert entry["result_ttl"] == RESULT_TTL_SECONDS
    assert entry["failure_ttl"] == RESULT_TTL_SECONDS
    assert entry["meta"] == {"identity": "summary:user-1:2026-10-19"}
    assert entry["kwargs"] == {"payload": {"user_id": "user-1", "calendar_date": "2026-10-19"}}


def test_duplicate_submit_while_waiting_or_active_is_noop():
    queues = make_queues()
    stage_queue = queues[StageName.SCRIPT]
    identity = "script:user-1:7"
    assert stage_queue.submit(identity, {"user_id": "user-1", "summary_id": 7}).enqueued

    second = stage_queue.submit(identity, {"user_id": "user-1", "summary_id": 7})
    assert second.enqueued is False
    assert second.state == JobState.WAITING

    fake_queue(queues, StageName.SCRIPT).jobs[rq_job_id(identity)].status = JobStatus.STARTED
    third = stage_queue.submit(identity, {"user_id": "user-1", "summary_id": 7})
    assert third.enqueued is False
    assert third.state == JobState.ACTIVE
    assert len(fake_queue(queues, StageName.SCRIPT).enqueue_log) == 1


def test_submit_defers_to_concurrent_submitter():
    queues = make_queues()
    stage_queue = queues[StageName.SUMMARY]
    identity = "summary:user-1:2026-10-19"
    connection = fake_queue(queues, StageName.SUMMARY).connection
    guard_key = f"{SUBMIT_GUARD_PREFIX}{rq_job_id(identity)}"
    connection.set(guard_key, "other-process", nx=True, px=SUBMIT_GUARD_MS)

    result = stage_queue.submit(identity, {"user_id": "user-1", "calendar_date": "2026-10-19"})

    assert result.enqueued is False
    assert result.state == JobState.WAITING
    assert fake_queue(queues, StageName.SUMMARY).enqueue_log == []
    assert connection.get(guard_key) == b"other-process"


def test_submit_releases_its_guard():
    queues = make_queues()
    stage_queue = queues[StageName.SUMMARY]
    identity = "summary:user-1:2026-10-19"
    connection = fake_queue(queues, StageName.SUMMARY).connection

    assert stage_queue.submit(identity, {"user_id": "user-1"}).enqueued
    guard_key = f"{SUBMIT_GUARD_PREFIX}{rq_job_id(identity)}"
    assert connection.guard_sets == [guard_key]
    assert connection.get(guard_key) is None

    assert stage_queue.submit(identity, {"user_id": "user-1"}).state == JobState.WAITING
    assert len(fake_queue(queues, StageName.SUMMARY).enqueue_log) == 1


def test_finished_or_failed_job_is_replaced():
    queues = make_queues()
    stage_queue = queues[StageName.PODCAST]
    identity = "podcast:user-1:7"
    stage_queue.submit(identity, {"user_id": "user-1", "summary_id": 7})
    raw = fake_queue(queues, StageName.PODCAST)

    raw.jobs[rq_job_id(identity)].status = JobStatus.FAILED
    again = stage_queue.submit(identity, {"user_id": "user-1", "summary_id": 7})
    assert again.enqueued and again.replaced

    raw.jobs[rq_job_id(identity)].status = JobStatus.FINISHED
    assert stage_queue.submit(identity, {"user_id": "user-1", "summary_id": 7}).replaced
    assert len(raw.enqueue_log) == 3


def test_delay_and_priority_options():
    queues = make_queues()
    stage_queue = queues[StageName.EMBEDDING]
    stage_queue.submit("embedding:user-1:feed_items:50", {"user_id": "user-1"}, delay=timedelta(seconds=2), high_priority=True)
    raw = fake_queue(queues, StageName.EMBEDDING)
    job = raw.jobs["embedding__user-1__feed_items__50"]
    assert job.status == JobStatus.SCHEDULED
    assert job.delay == timedelta(seconds=2)
    assert raw.enqueue_log[0]["at_front"] is True


def test_state_of_maps_statuses_and_outcomes():
    queues = make_queues()
    stage_queue = queues[StageName.SUMMARY]
    identity = "summary:user-1:2026-10-19"
    assert stage_queue.state_of(identity) == JobState.IDLE

    stage_queue.submit(identity, {"user_id": "user-1"})
    job = fake_queue(queues, StageName.SUMMARY).jobs[rq_job_id(identity)]
    assert stage_queue.state_of(identity) == JobState.WAITING

    job.status = JobStatus.FINISHED
    job.result = {"status": "completed"}
    assert stage_queue.state_of(identity) == JobState.COMPLETED
    job.result = {"status": "skipped"}
    assert stage_queue.state_of(identity) == JobState.SKIPPED
    job.result = {"status": "locked"}
    assert stage_queue.state_of(identity) == JobState.IDLE

    job.status = JobStatus.FAILED
    assert stage_queue.state_of(identity) == JobState.FAILED


def test_counts_include_scheduled_jobs():
    queues = make_queues()
    stage_queue = queues[StageName.EMBEDDING]
    stage_queue.submit("embedding:user-1:tags", {"user_id": "user-1"})
    stage_queue.submit("embedding:user-1:tags:10", {"user_id": "user-1"}, delay=timedelta(seconds=2))
    stage_queue.submit("embedding:user-1:feed_items", {"user_id": "user-1"})
    fake_queue(queues, StageName.EMBEDDING).jobs["embedding__user-1__feed_items"].status = JobStatus.STARTED
    assert stage_queue.counts() == {"waiting": 2, "active": 1}


def test_prune_history_keeps_recent_entries():
    queues = make_queues()
    stage_queue = queues[StageName.SUMMARY]
    raw = fake_queue(queues, StageName.SUMMARY)
    for day in range(1, 9):
        identity = f"summary:user-1:2026-10-{day:02d}"
        stage_queue.submit(identity, {"user_id": "user-1"})
        raw.jobs[rq_job_id(identity)].status = JobStatus.FINISHED
    for day in range(10, 22):
        identity = f"summary:user-1:2026-10-{day:02d}"
        stage_queue.submit(identity, {"user_id": "user-1"})
        raw.jobs[rq_job_id(identity)].status = JobStatus.FAILED

    removed = stage_queue.prune_history()
    assert removed == 3 + 2
    assert raw.finished_job_registry.count == 5
    assert raw.failed_job_registry.count == 10
    assert "summary__user-1__2026-10-08" in raw.jobs
    assert "summary__user-1__2026-10-01" not in raw.jobs
