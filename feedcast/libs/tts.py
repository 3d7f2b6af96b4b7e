"""OpenAI speech synthesis for narration scripts."""

from __future__ import annotations

import logging
import re
from typing import List

from openai import AsyncOpenAI

from feedcast.libs.llm import get_openai_client

LOGGER = logging.getLogger(__name__)

# The speech endpoint accepts at most 4096 characters per request.
MAX_TTS_CHARS = 4000
_SENTENCE_END_RE = re.compile(r"(?<=[.!?。！？])\s*")

_VOICE_INSTRUCTIONS = {
    "ja": "Speak in natural Japanese at a calm news-reading pace.",
    "en": "Speak in natural English at a calm news-reading pace.",
}


def _hard_split(sentence: str, max_chars: int) -> List[str]:
    out: List[str] = []
    remaining = sentence.strip()
    while len(remaining) > max_chars:
        window = remaining[:max_chars]
        cut_idx = max(window.rfind("、"), window.rfind(","), window.rfind(" "))
        if cut_idx < int(max_chars * 0.5):
            cut_idx = max_chars
        out.append(remaining[:cut_idx].strip())
        remaining = remaining[cut_idx:].strip()
    if remaining:
        out.append(remaining)
    return out


def split_text_for_tts(text: str, max_chars: int = MAX_TTS_CHARS) -> List[str]:
    """Split text into sentence-aware chunks bounded by character budget."""
    compact = re.sub(r"[ \t]+", " ", text or "").strip()
    if not compact:
        return []
    if len(compact) <= max_chars:
        return [compact]

    out: List[str] = []
    current = ""
    for sentence in _SENTENCE_END_RE.split(compact):
        sentence = sentence.strip()
        if not sentence:
            continue
        if len(sentence) > max_chars:
            if current:
                out.append(current)
                current = ""
            out.extend(_hard_split(sentence, max_chars))
            continue
        candidate = sentence if not current else f"{current} {sentence}"
        if len(candidate) > max_chars:
            out.append(current)
            current = sentence
        else:
            current = candidate
    if current:
        out.append(current)
    return out


class OpenAISpeechSynthesizer:
    """Synthesize MP3 audio, chunking long scripts and concatenating frames."""

    def __init__(
        self,
        *,
        api_key: str | None,
        model: str = "gpt-4o-mini-tts",
        voice: str = "alloy",
        timeout: float = 120.0,
        client: AsyncOpenAI | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._voice = voice
        self._timeout = timeout
        self._client = client
        self._logger = logger or LOGGER

    async def speak(self, text: str, language: str) -> bytes:
        chunks = split_text_for_tts(text, MAX_TTS_CHARS)
        if not chunks:
            raise ValueError("Cannot synthesize empty text")
        client = self._client or get_openai_client(self._api_key, timeout=self._timeout)
        audio = bytearray()
        for index, chunk in enumerate(chunks):
            response = await client.audio.speech.create(
                model=self._model,
                voice=self._voice,
                input=chunk,
                instructions=_VOICE_INSTRUCTIONS.get(language, _VOICE_INSTRUCTIONS["en"]),
                response_format="mp3",
            )
            audio.extend(response.content)
            self._logger.debug(
                "Synthesized chunk %s/%s",
                index + 1,
                len(chunks),
                extra={"event": "tts.chunk", "chars": len(chunk)},
            )
        return bytes(audio)


__all__ = ["MAX_TTS_CHARS", "OpenAISpeechSynthesizer", "split_text_for_tts"]
