from __future__ import annotations

import logging
from typing import Any, Iterable, List, Sequence

from openai import AsyncOpenAI

LOGGER = logging.getLogger(__name__)
# text-embedding-3-small returns 1536 dims
_EXPECTED_DIM = 1536


def _zero_vector(length: int = _EXPECTED_DIM) -> List[float]:
    return [0.0] * length


def _coerce_float_list(values: Iterable[Any]) -> List[float]:
    try:
        return [float(x) for x in values]
    except (TypeError, ValueError):
        return []


def _coerce_vector(vec: Any, length: int = _EXPECTED_DIM) -> List[float]:
    floats = _coerce_float_list(vec) if isinstance(vec, (list, tuple)) else []
    if not floats:
        return _zero_vector(length)
    if len(floats) >= length:
        return floats[:length]
    return floats + [0.0] * (length - len(floats))


class OpenAIEmbeddings:
    """Embedding capability backed by ``AsyncOpenAI.embeddings``.

    Provider errors propagate so the caller can classify them as transient or
    permanent. Blank inputs are not sent and map to zero vectors.
    """

    def __init__(
        self,
        *,
        api_key: str | None,
        model: str = "text-embedding-3-small",
        dimensions: int = _EXPECTED_DIM,
        timeout: float = 60.0,
        client: AsyncOpenAI | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._dimensions = dimensions
        self._timeout = timeout
        self._client = client
        self._logger = logger or LOGGER

    def _get_client(self) -> AsyncOpenAI:
        if self._client is not None:
            return self._client
        if not self._api_key:
            raise RuntimeError("OPENAI_API_KEY is required for embeddings.")
        self._client = AsyncOpenAI(api_key=self._api_key, timeout=self._timeout)
        return self._client

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        inputs = [(t or "").strip() for t in texts]
        non_empty = [(idx, value) for idx, value in enumerate(inputs) if value]
        if not non_empty:
            return [_zero_vector(self._dimensions) for _ in inputs]

        response = await self._get_client().embeddings.create(
            model=self._model,
            input=[value for _, value in non_empty],
        )
        vectors = [item.embedding for item in response.data]
        if len(vectors) != len(non_empty):
            raise ValueError(
                f"embedding provider returned {len(vectors)} vectors for {len(non_empty)} inputs"
            )

        mapped = [_zero_vector(self._dimensions) for _ in inputs]
        for (idx, _), vec in zip(non_empty, vectors):
            mapped[idx] = _coerce_vector(vec, self._dimensions)
        return mapped


def to_pgvector(vec: Sequence[Any] | None, *, length: int | None = None) -> str:
    """
    Render a Python sequence as a pgvector literal.
    """
    floats = _coerce_float_list(vec or [])
    if length is not None:
        if not floats:
            floats = [0.0] * length
        elif len(floats) < length:
            floats = floats + [0.0] * (length - len(floats))
        else:
            floats = floats[:length]
    if not floats:
        return "[]"
    return "[" + ",".join(f"{value:.6f}" for value in floats) + "]"


__all__ = ["OpenAIEmbeddings", "to_pgvector"]
