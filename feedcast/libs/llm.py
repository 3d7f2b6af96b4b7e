"""OpenAI chat adapters for digest and narration generation."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional, Sequence

from openai import AsyncOpenAI

from feedcast.libs.schemas.models import ArticleInput

LOGGER = logging.getLogger(__name__)

SUMMARY_MAX_CHARS = 7000
SCRIPT_MAX_CHARS = 12000
ARTICLE_CONTENT_CHARS = 1000

_MARKDOWN_SPECIALS_RE = re.compile(r"([\\`*_{}\[\]<>#|])")

_OPENAI_CLIENT: Optional[AsyncOpenAI] = None
_OPENAI_CLIENT_KEY: Optional[str] = None


def get_openai_client(api_key: str | None, *, timeout: float = 120.0) -> AsyncOpenAI:
    global _OPENAI_CLIENT, _OPENAI_CLIENT_KEY

    if not api_key:
        raise RuntimeError("OpenAI connection error: Missing OPENAI_API_KEY")

    if _OPENAI_CLIENT is None or _OPENAI_CLIENT_KEY != api_key:
        _OPENAI_CLIENT = AsyncOpenAI(api_key=api_key, timeout=timeout)
        _OPENAI_CLIENT_KEY = api_key

    return _OPENAI_CLIENT


def sanitize_markdown(text: str | None) -> str:
    return _MARKDOWN_SPECIALS_RE.sub(r"\\\1", text or "")


def _truncate(text: str, limit: int, *, label: str, logger: logging.Logger) -> str:
    if len(text) <= limit:
        return text
    logger.warning(
        "%s length %s exceeds %s chars, truncating.",
        label,
        len(text),
        limit,
        extra={"event": f"llm.{label}_truncated"},
    )
    return f"{text[:limit]}... [truncated]"


class _ChatAdapter:
    def __init__(
        self,
        *,
        api_key: str | None,
        model: str,
        timeout: float = 120.0,
        client: AsyncOpenAI | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._timeout = timeout
        self._client = client
        self._logger = logger or LOGGER

    async def _complete(
        self,
        messages: list[dict[str, Any]],
        *,
        temperature: float,
        max_tokens: int,
    ) -> str:
        client = self._client or get_openai_client(self._api_key, timeout=self._timeout)
        response = await client.chat.completions.create(
            model=self._model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        choice = response.choices[0] if response.choices else None
        content = (choice.message.content if choice and choice.message else None) or ""
        return content.strip()


class OpenAISummarizer(_ChatAdapter):
    """Turn a batch of feed articles into a markdown digest."""

    async def generate(self, articles: Sequence[ArticleInput], language: str) -> str:
        articles_block = "\n\n".join(
            "Title: {title}\nContent: {content}...\nURL: {url}\nPublished: {published}\n---".format(
                title=sanitize_markdown(article.title),
                content=sanitize_markdown(article.content[:ARTICLE_CONTENT_CHARS]),
                url=article.url or "",
                published=article.published_at or "",
            )
            for article in articles
        )
        lang_instruction = "Write in Japanese." if language == "ja" else "Write in English."
        messages = [
            {
                "role": "system",
                "content": "You write concise daily news digests in Markdown. "
                "Start with a single level-one heading that works as the digest title.",
            },
            {
                "role": "user",
                "content": f"Create a concise Markdown digest from the following RSS articles. "
                f"{lang_instruction}\n\n{articles_block}",
            },
        ]
        text = await self._complete(messages, temperature=0.3, max_tokens=4096)
        return _truncate(text, SUMMARY_MAX_CHARS, label="summary", logger=self._logger)


class OpenAINarrator(_ChatAdapter):
    """Turn a digest into a spoken news-style narration script."""

    async def generate(self, summary_text: str, context_articles: Sequence[ArticleInput]) -> str:
        context = ""
        if context_articles:
            context = "Related articles: " + json.dumps(
                [{"title": sanitize_markdown(a.title), "url": a.url} for a in context_articles],
                ensure_ascii=False,
            )
        language = context_articles[0].language if context_articles else "ja"
        spoken = "Japanese" if language == "ja" else "English"
        messages = [
            {
                "role": "system",
                "content": f"You are a professional news presenter. Write natural, easy to follow "
                f"{spoken} narration meant to be read aloud.",
            },
            {
                "role": "user",
                "content": "Using the digest below and the related articles, write a news-programme "
                "style narration script. Introduce each topic briefly and connect them naturally.\n\n"
                f"Digest:\n{sanitize_markdown(summary_text)}\n\n{context}",
            },
        ]
        text = await self._complete(messages, temperature=0.28, max_tokens=6000)
        return _truncate(text, SCRIPT_MAX_CHARS, label="script", logger=self._logger)


__all__ = [
    "OpenAINarrator",
    "OpenAISummarizer",
    "SCRIPT_MAX_CHARS",
    "SUMMARY_MAX_CHARS",
    "get_openai_client",
    "sanitize_markdown",
]
