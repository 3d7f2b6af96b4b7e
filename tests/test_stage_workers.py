import asyncio
from datetime import date, datetime, timedelta

import pytest
import redis as redis_lib

from feedcast.apps.worker.errors import DataIntegrityError
from feedcast.apps.worker.queues import StageName, rq_job_id
from feedcast.apps.worker.stages import STAGES
from feedcast.apps.worker.stages.podcast import episode_title, estimate_duration
from feedcast.apps.worker.stages.summary import extract_title, target_language
from feedcast.libs.schemas.models import FeedItem, PodcastLanguage, UserScheduleConfig

from tests.fakes import (
    JST,
    FakeAsyncRedis,
    FakeNarrator,
    FakeRepository,
    FakeSummarizer,
    build_settings,
    fake_queue,
    make_context,
)

DAY = date(2026, 10, 19)
NOW = datetime(2026, 10, 19, 7, 31, tzinfo=JST)


def _seed_user(repository: FakeRepository, *, podcast: bool = True, items: int = 2) -> None:
    repository.settings["user-1"] = UserScheduleConfig(
        "user-1",
        summary_enabled=True,
        summary_time="07:30",
        podcast_enabled=podcast,
        podcast_language=PodcastLanguage.EN,
    )
    for idx in range(items):
        repository.add_feed_item("user-1", f"Headline {idx}", NOW - timedelta(hours=2 + idx), "Body text")


@pytest.mark.asyncio
async def test_summary_stage_persists_and_chains_script():
    repository = FakeRepository()
    _seed_user(repository)
    summarizer = FakeSummarizer()
    ctx = make_context(repository=repository, summarizer=summarizer)

    result = await STAGES[StageName.SUMMARY].execute(ctx, {"user_id": "user-1", "calendar_date": "2026-10-19"})

    assert result.status == "completed"
    summary = await repository.find_summary("user-1", DAY)
    assert summary.summary_title == "Morning Brief"
    assert sorted(repository.summary_items[summary.id]) == sorted(item.id for item in repository.feed_items)
    assert summarizer.calls[0][1] == "en"
    script_jobs = fake_queue(ctx.queues, StageName.SCRIPT).jobs
    assert rq_job_id(f"script:user-1:{summary.id}") in script_jobs
    assert rq_job_id("embedding:user-1:daily_summaries") in fake_queue(ctx.queues, StageName.EMBEDDING).jobs


@pytest.mark.asyncio
async def test_summary_stage_without_items_skips_and_chains_nothing():
    repository = FakeRepository()
    _seed_user(repository, items=0)
    ctx = make_context(repository=repository)

    result = await STAGES[StageName.SUMMARY].execute(ctx, {"user_id": "user-1", "calendar_date": "2026-10-19"})

    assert result.status == "skipped"
    assert await repository.find_summary("user-1", DAY) is None
    assert fake_queue(ctx.queues, StageName.SCRIPT).enqueue_log == []


@pytest.mark.asyncio
async def test_summary_stage_ignores_items_outside_window():
    repository = FakeRepository()
    _seed_user(repository, items=0)
    repository.add_feed_item("user-1", "Old news", NOW - timedelta(hours=30))
    ctx = make_context(repository=repository)
    result = await STAGES[StageName.SUMMARY].execute(ctx, {"user_id": "user-1", "calendar_date": "2026-10-19"})
    assert result.status == "skipped"


@pytest.mark.asyncio
async def test_summary_stage_exits_when_summary_exists():
    repository = FakeRepository()
    _seed_user(repository)
    await repository.create_summary("user-1", DAY, "# Done", "Done")
    summarizer = FakeSummarizer()
    ctx = make_context(repository=repository, summarizer=summarizer)

    result = await STAGES[StageName.SUMMARY].execute(ctx, {"user_id": "user-1", "calendar_date": "2026-10-19"})
    assert result.status == "exists"
    assert summarizer.calls == []


@pytest.mark.asyncio
async def test_summary_retry_after_partial_write_links_items_and_chains_script():
    class FlakyLinkRepository(FakeRepository):
        failures = 1

        async def add_summary_items(self, summary_id, feed_item_ids):
            if self.failures:
                self.failures -= 1
                raise ConnectionError("connection reset during insert")
            await super().add_summary_items(summary_id, feed_item_ids)

    repository = FlakyLinkRepository()
    _seed_user(repository)
    summarizer = FakeSummarizer()
    ctx = make_context(repository=repository, summarizer=summarizer)
    payload = {"user_id": "user-1", "calendar_date": "2026-10-19"}

    with pytest.raises(ConnectionError):
        await STAGES[StageName.SUMMARY].execute(ctx, payload)
    summary = await repository.find_summary("user-1", DAY)
    assert summary.is_complete_summary()
    assert fake_queue(ctx.queues, StageName.SCRIPT).enqueue_log == []

    result = await STAGES[StageName.SUMMARY].execute(ctx, payload)

    assert result.status == "exists"
    assert len(summarizer.calls) == 1
    assert sorted(repository.summary_items[summary.id]) == sorted(item.id for item in repository.feed_items)
    assert rq_job_id(f"script:user-1:{summary.id}") in fake_queue(ctx.queues, StageName.SCRIPT).jobs
    assert rq_job_id("embedding:user-1:daily_summaries") in fake_queue(ctx.queues, StageName.EMBEDDING).jobs


@pytest.mark.asyncio
async def test_existing_summary_with_script_does_not_rechain():
    repository = FakeRepository()
    _seed_user(repository)
    summary = await repository.create_summary("user-1", DAY, "# Done", "Done")
    await repository.update_summary(summary.id, script_text="narration")
    ctx = make_context(repository=repository)

    result = await STAGES[StageName.SUMMARY].execute(ctx, {"user_id": "user-1", "calendar_date": "2026-10-19"})

    assert result.status == "exists"
    assert fake_queue(ctx.queues, StageName.SCRIPT).enqueue_log == []


@pytest.mark.asyncio
async def test_past_calendar_date_uses_that_days_items():
    repository = FakeRepository()
    _seed_user(repository, items=0)
    backfill_day = date(2026, 10, 17)
    old = repository.add_feed_item("user-1", "Friday story", datetime(2026, 10, 17, 12, 0, tzinfo=JST))
    repository.add_feed_item("user-1", "Sunday story", datetime(2026, 10, 19, 6, 0, tzinfo=JST))
    repository.add_feed_item("user-1", "Thursday story", datetime(2026, 10, 16, 23, 0, tzinfo=JST))
    ctx = make_context(repository=repository)

    result = await STAGES[StageName.SUMMARY].execute(ctx, {"user_id": "user-1", "calendar_date": "2026-10-17"})

    assert result.status == "completed"
    summary = await repository.find_summary("user-1", backfill_day)
    assert repository.summary_items[summary.id] == [old.id]
    assert await repository.find_summary("user-1", DAY) is None


@pytest.mark.asyncio
async def test_past_calendar_date_without_items_skips():
    repository = FakeRepository()
    _seed_user(repository)
    ctx = make_context(repository=repository)
    result = await STAGES[StageName.SUMMARY].execute(ctx, {"user_id": "user-1", "calendar_date": "2026-10-10"})
    assert result.status == "skipped"


@pytest.mark.asyncio
async def test_stage_returns_locked_when_lock_is_held():
    redis = FakeAsyncRedis()
    repository = FakeRepository()
    _seed_user(repository)
    summarizer = FakeSummarizer()
    ctx = make_context(repository=repository, redis=redis, summarizer=summarizer)
    await ctx.lock.acquire("summary:user-1", 30)

    result = await STAGES[StageName.SUMMARY].execute(ctx, {"user_id": "user-1", "calendar_date": "2026-10-19"})
    assert result.status == "locked"
    assert summarizer.calls == []


@pytest.mark.asyncio
async def test_stage_returns_locked_when_lock_store_is_down():
    class UnreachableRedis(FakeAsyncRedis):
        async def set(self, key, value, nx=False, px=None):
            raise redis_lib.ConnectionError("redis unreachable")

    repository = FakeRepository()
    _seed_user(repository)
    summarizer = FakeSummarizer()
    ctx = make_context(repository=repository, redis=UnreachableRedis(), summarizer=summarizer)

    result = await STAGES[StageName.SUMMARY].execute(ctx, {"user_id": "user-1", "calendar_date": "2026-10-19"})

    assert result.status == "locked"
    assert result.detail["reason"] == "lock_store_unavailable"
    assert summarizer.calls == []
    assert await repository.find_summary("user-1", DAY) is None


@pytest.mark.asyncio
async def test_concurrent_stage_runs_produce_one_summary():
    redis = FakeAsyncRedis()
    repository = FakeRepository()
    _seed_user(repository)

    class SlowSummarizer(FakeSummarizer):
        async def generate(self, articles, language):
            await asyncio.sleep(0.01)
            return await super().generate(articles, language)

    summarizer = SlowSummarizer()
    ctx = make_context(repository=repository, redis=redis, summarizer=summarizer)
    payload = {"user_id": "user-1", "calendar_date": "2026-10-19"}
    results = await asyncio.gather(*(STAGES[StageName.SUMMARY].execute(ctx, payload) for _ in range(3)))

    assert sorted(result.status for result in results) == ["completed", "locked", "locked"]
    assert len(summarizer.calls) == 1


@pytest.mark.asyncio
async def test_lock_released_when_stage_raises():
    redis = FakeAsyncRedis()
    repository = FakeRepository()
    _seed_user(repository)

    class BrokenSummarizer(FakeSummarizer):
        async def generate(self, articles, language):
            raise RuntimeError("provider exploded")

    ctx = make_context(repository=repository, redis=redis, summarizer=BrokenSummarizer())
    with pytest.raises(RuntimeError):
        await STAGES[StageName.SUMMARY].execute(ctx, {"user_id": "user-1", "calendar_date": "2026-10-19"})
    assert await ctx.lock.holder("summary:user-1") is None


@pytest.mark.asyncio
async def test_capability_timeout_raises():
    repository = FakeRepository()
    _seed_user(repository)

    class HangingSummarizer(FakeSummarizer):
        async def generate(self, articles, language):
            await asyncio.sleep(10)

    ctx = make_context(
        repository=repository,
        summarizer=HangingSummarizer(),
        settings=build_settings(capability_timeout_seconds=0.01),
    )
    with pytest.raises(asyncio.TimeoutError):
        await STAGES[StageName.SUMMARY].execute(ctx, {"user_id": "user-1", "calendar_date": "2026-10-19"})


@pytest.mark.asyncio
async def test_script_stage_narrates_and_chains_podcast():
    repository = FakeRepository()
    _seed_user(repository)
    summary = await repository.create_summary("user-1", DAY, "# Brief\n\nBody", "Brief")
    narrator = FakeNarrator("Script body")
    ctx = make_context(repository=repository, narrator=narrator)

    result = await STAGES[StageName.SCRIPT].execute(ctx, {"user_id": "user-1", "summary_id": summary.id})

    assert result.status == "completed"
    assert repository.summaries[summary.id].script_text == "Script body"
    assert narrator.calls[0][0] == "# Brief\n\nBody"
    assert fake_queue(ctx.queues, StageName.PODCAST).enqueue_log[0]["job_id"] == rq_job_id(
        f"podcast:user-1:{summary.id}"
    )


@pytest.mark.asyncio
async def test_script_stage_does_not_chain_when_podcast_disabled():
    repository = FakeRepository()
    _seed_user(repository, podcast=False)
    summary = await repository.create_summary("user-1", DAY, "# Brief", "Brief")
    ctx = make_context(repository=repository)
    result = await STAGES[StageName.SCRIPT].execute(ctx, {"user_id": "user-1", "summary_id": summary.id})
    assert result.status == "completed"
    assert fake_queue(ctx.queues, StageName.PODCAST).enqueue_log == []


@pytest.mark.asyncio
async def test_script_stage_skips_missing_summary():
    ctx = make_context()
    result = await STAGES[StageName.SCRIPT].execute(ctx, {"user_id": "user-1", "summary_id": 999})
    assert result.status == "skipped"


@pytest.mark.asyncio
async def test_script_stage_rejects_empty_narration():
    repository = FakeRepository()
    _seed_user(repository)
    summary = await repository.create_summary("user-1", DAY, "# Brief", "Brief")
    ctx = make_context(repository=repository, narrator=FakeNarrator("   "))
    with pytest.raises(DataIntegrityError):
        await STAGES[StageName.SCRIPT].execute(ctx, {"user_id": "user-1", "summary_id": summary.id})


@pytest.mark.asyncio
async def test_script_retry_after_failed_handoff_chains_podcast(monkeypatch):
    repository = FakeRepository()
    _seed_user(repository)
    summary = await repository.create_summary("user-1", DAY, "# Brief", "Brief")
    narrator = FakeNarrator("Script body")
    ctx = make_context(repository=repository, narrator=narrator)
    podcast_queue = ctx.queues[StageName.PODCAST]
    submit = podcast_queue.submit
    attempts = []

    def flaky_submit(identity, payload, **kwargs):
        attempts.append(identity)
        if len(attempts) == 1:
            raise ConnectionError("redis reset during enqueue")
        return submit(identity, payload, **kwargs)

    monkeypatch.setattr(podcast_queue, "submit", flaky_submit)
    payload = {"user_id": "user-1", "summary_id": summary.id}

    with pytest.raises(ConnectionError):
        await STAGES[StageName.SCRIPT].execute(ctx, payload)
    assert repository.summaries[summary.id].script_text == "Script body"

    result = await STAGES[StageName.SCRIPT].execute(ctx, payload)

    assert result.status == "exists"
    assert len(narrator.calls) == 1
    assert rq_job_id(f"podcast:user-1:{summary.id}") in fake_queue(ctx.queues, StageName.PODCAST).jobs


@pytest.mark.asyncio
async def test_script_exists_with_published_episode_does_not_rechain():
    repository = FakeRepository()
    _seed_user(repository)
    summary = await repository.create_summary("user-1", DAY, "# Brief", "Brief")
    await repository.update_summary(summary.id, script_text="narration")
    episode = await repository.create_episode("user-1", summary.id, "Brief")
    await repository.update_episode_audio(episode.id, "https://storage.googleapis.com/b/a.mp3", 30)
    ctx = make_context(repository=repository)

    result = await STAGES[StageName.SCRIPT].execute(ctx, {"user_id": "user-1", "summary_id": summary.id})

    assert result.status == "exists"
    assert fake_queue(ctx.queues, StageName.PODCAST).enqueue_log == []


@pytest.mark.asyncio
async def test_podcast_stage_publishes_audio():
    repository = FakeRepository()
    _seed_user(repository)
    summary = await repository.create_summary("user-1", DAY, "# Brief", "Brief")
    await repository.update_summary(summary.id, script_text="x" * 95)
    ctx = make_context(repository=repository)

    result = await STAGES[StageName.PODCAST].execute(ctx, {"user_id": "user-1", "summary_id": summary.id})

    assert result.status == "completed"
    episode = await repository.find_episode_by_summary("user-1", summary.id)
    assert episode.title == "2026-10-19 - Brief"
    assert episode.audio_url.startswith("https://storage.googleapis.com/")
    assert episode.duration_sec == 10
    assert repository.summaries[summary.id].script_tts_duration_sec == 10
    assert ctx.synthesizer.calls == [("x" * 95, "en")]
    data, metadata = ctx.store.objects[0]
    assert metadata["episode_id"] == episode.id
    assert metadata["duration"] == 10


@pytest.mark.asyncio
async def test_podcast_stage_skips_without_script_and_exits_when_done():
    repository = FakeRepository()
    _seed_user(repository)
    summary = await repository.create_summary("user-1", DAY, "# Brief", "Brief")
    ctx = make_context(repository=repository)

    skipped = await STAGES[StageName.PODCAST].execute(ctx, {"user_id": "user-1", "summary_id": summary.id})
    assert skipped.status == "skipped"

    await repository.update_summary(summary.id, script_text="narration")
    await STAGES[StageName.PODCAST].execute(ctx, {"user_id": "user-1", "summary_id": summary.id})
    again = await STAGES[StageName.PODCAST].execute(ctx, {"user_id": "user-1", "summary_id": summary.id})
    assert again.status == "exists"
    assert len(ctx.store.objects) == 1


def test_extract_title_prefers_headings():
    assert extract_title("intro\n## Today in tech\nbody") == "Today in tech"
    assert extract_title("**No heading** here") == "No heading here"
    long_text = "a" * 60
    assert extract_title(long_text) == "a" * 50 + "..."


def test_target_language_majority():
    items = [
        FeedItem(1, "u", "今日のニュース"),
        FeedItem(2, "u", "Daily news"),
    ]
    assert target_language(items) == "ja"
    assert target_language(items[1:]) == "en"


def test_episode_title_and_duration():
    assert episode_title("Brief", DAY) == "2026-10-19 - Brief"
    assert episode_title(None, DAY) == "2026-10-19 - Daily Digest"
    assert estimate_duration("abcdefghijk") == 2
