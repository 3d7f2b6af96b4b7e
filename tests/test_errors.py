import types
from datetime import date

import httpx
import openai
import pytest
import redis
from google.api_core import exceptions as google_exceptions

from feedcast.apps.worker import jobs
from feedcast.apps.worker.errors import (
    DataIntegrityError,
    PermanentStageError,
    TransientStageError,
    classify_error,
)
from feedcast.apps.worker.queues import StageName
from feedcast.libs.repository import RepositoryError

from tests.fakes import FakeNarrator, FakeRepository, FakeSummarizer, make_context

_REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def _api_status(code: int) -> openai.APIStatusError:
    return openai.APIStatusError("boom", response=httpx.Response(code, request=_REQUEST), body=None)


@pytest.mark.parametrize("code, expected", [(429, TransientStageError), (500, TransientStageError), (503, TransientStageError), (400, PermanentStageError), (401, PermanentStageError)])
def test_provider_status_codes(code, expected):
    assert type(classify_error(_api_status(code))) is expected


def test_httpx_status_errors():
    response = httpx.Response(502, request=_REQUEST)
    error = classify_error(httpx.HTTPStatusError("bad gateway", request=_REQUEST, response=response))
    assert isinstance(error, TransientStageError)
    response = httpx.Response(404, request=_REQUEST)
    assert not classify_error(httpx.HTTPStatusError("nope", request=_REQUEST, response=response)).retryable


@pytest.mark.parametrize(
    "exc",
    [
        openai.APIConnectionError(request=_REQUEST),
        httpx.ConnectTimeout("slow"),
        TimeoutError(),
        ConnectionResetError(),
        redis.ConnectionError("redis gone"),
        KeyError("surprise"),
    ],
)
def test_transient_failures(exc):
    assert classify_error(exc).retryable is True


def test_stage_errors_pass_through():
    error = DataIntegrityError("mismatch")
    assert classify_error(error) is error
    assert error.retryable is False


@pytest.mark.parametrize(
    "exc, expected",
    [
        (google_exceptions.Forbidden("bucket denied"), PermanentStageError),
        (google_exceptions.NotFound("no bucket"), PermanentStageError),
        (google_exceptions.TooManyRequests("slow down"), TransientStageError),
        (google_exceptions.ServiceUnavailable("gcs down"), TransientStageError),
    ],
)
def test_storage_api_errors(exc, expected):
    assert type(classify_error(exc)) is expected


def test_repository_write_failure_is_data_integrity():
    error = classify_error(RepositoryError("update_summary 7 returned no row"))
    assert isinstance(error, DataIntegrityError)
    assert error.retryable is False
    assert "update_summary 7" in str(error)


@pytest.mark.asyncio
async def test_permanent_failure_clears_retry_budget(monkeypatch):
    current = types.SimpleNamespace(retries_left=2)
    monkeypatch.setattr(jobs, "get_current_job", lambda: current)
    repository = FakeRepository()
    summary = await repository.create_summary("user-1", date(2026, 10, 19), "# Brief", "Brief")
    ctx = make_context(repository=repository, narrator=FakeNarrator(""))

    with pytest.raises(DataIntegrityError):
        await jobs.run_stage(ctx, StageName.SCRIPT, {"user_id": "user-1", "summary_id": summary.id})
    assert current.retries_left == 0


@pytest.mark.asyncio
async def test_transient_failure_keeps_retry_budget(monkeypatch):
    current = types.SimpleNamespace(retries_left=2)
    monkeypatch.setattr(jobs, "get_current_job", lambda: current)
    repository = FakeRepository()

    class FlakySummarizer(FakeSummarizer):
        async def generate(self, articles, language):
            raise ConnectionError("provider reset")

    ctx = make_context(repository=repository, summarizer=FlakySummarizer())
    repository.add_feed_item("user-1", "Story", ctx.clock.now())
    with pytest.raises(TransientStageError) as excinfo:
        await jobs.run_stage(ctx, StageName.SUMMARY, {"user_id": "user-1", "calendar_date": "2026-10-19"})
    assert isinstance(excinfo.value.__cause__, ConnectionError)
    assert current.retries_left == 2


@pytest.mark.asyncio
async def test_run_stage_returns_serialisable_result():
    ctx = make_context()
    result = await jobs.run_stage(ctx, "script", {"user_id": "user-1", "summary_id": 1})
    assert result == {
        "stage": "script",
        "status": "skipped",
        "user_id": "user-1",
        "reason": "summary_incomplete",
        "summary_id": 1,
    }
