"""Failure taxonomy for stage jobs and the retry decision that goes with it."""

from __future__ import annotations

import asyncio
import logging

import httpx
import openai
import redis
from google.api_core import exceptions as google_exceptions

from feedcast.libs.repository import RepositoryError

LOGGER = logging.getLogger(__name__)


class StageError(Exception):
    """Base class for stage failures."""

    retryable = True


class TransientStageError(StageError):
    """Network error, 5xx or rate limit; retried with backoff."""


class PermanentStageError(StageError):
    """Malformed request or auth failure; surfaced as failed without retry."""

    retryable = False


class DataIntegrityError(PermanentStageError):
    """Persisted state does not match what was just written."""


def _status_is_transient(status: int) -> bool:
    return status == 429 or status >= 500


def classify_error(exc: BaseException) -> StageError:
    """Wrap ``exc`` in the matching ``StageError`` subclass."""

    if isinstance(exc, StageError):
        return exc
    if isinstance(exc, openai.APIStatusError):
        status = exc.status_code
        cls = TransientStageError if _status_is_transient(status) else PermanentStageError
        return cls(f"provider returned {status}: {exc}")
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        cls = TransientStageError if _status_is_transient(status) else PermanentStageError
        return cls(f"upstream returned {status}: {exc}")
    if isinstance(exc, google_exceptions.GoogleAPICallError):
        code = exc.code
        if code is None or _status_is_transient(int(code)):
            return TransientStageError(f"storage call failed ({code}): {exc}")
        return PermanentStageError(f"storage returned {code}: {exc}")
    if isinstance(exc, RepositoryError):
        return DataIntegrityError(str(exc))
    if isinstance(
        exc,
        (
            openai.APIConnectionError,
            httpx.TransportError,
            asyncio.TimeoutError,
            TimeoutError,
            ConnectionError,
            redis.RedisError,
        ),
    ):
        return TransientStageError(f"{type(exc).__name__}: {exc}")
    # Unknown failures keep the queue's retry budget.
    LOGGER.debug("Unclassified stage failure %s treated as transient", type(exc).__name__)
    return TransientStageError(f"{type(exc).__name__}: {exc}")


__all__ = [
    "DataIntegrityError",
    "PermanentStageError",
    "StageError",
    "TransientStageError",
    "classify_error",
]
