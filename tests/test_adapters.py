import re
import types

import pytest

from feedcast.infra.scripts.migrate import sorted_migration_paths, split_sql
from feedcast.libs.embeddings import OpenAIEmbeddings, to_pgvector
from feedcast.libs.llm import OpenAINarrator, OpenAISummarizer, sanitize_markdown
from feedcast.libs.schemas.models import ArticleInput
from feedcast.libs.storage import GCSObjectStore, podcast_blob_name
from feedcast.libs.tts import OpenAISpeechSynthesizer, split_text_for_tts


class RecordingCompletions:
    def __init__(self, content: str) -> None:
        self.content = content
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        message = types.SimpleNamespace(content=self.content)
        return types.SimpleNamespace(choices=[types.SimpleNamespace(message=message)])


class RecordingSpeech:
    def __init__(self) -> None:
        self.inputs = []

    async def create(self, **kwargs):
        self.inputs.append(kwargs["input"])
        return types.SimpleNamespace(content=f"<{len(self.inputs)}>".encode())


class RecordingEmbeddings:
    def __init__(self) -> None:
        self.inputs = []

    async def create(self, *, model, input):
        self.inputs.append(list(input))
        return types.SimpleNamespace(data=[types.SimpleNamespace(embedding=[1.0, 2.0]) for _ in input])


def test_split_text_respects_limit_and_sentences():
    text = "First sentence. Second one is here! Third? " * 5
    chunks = split_text_for_tts(text, max_chars=60)
    assert all(len(chunk) <= 60 for chunk in chunks)
    assert chunks[0].startswith("First sentence.")
    assert " ".join(chunks).count("Second one is here!") == 5


def test_split_text_hard_splits_long_sentence():
    chunks = split_text_for_tts("a" * 25, max_chars=10)
    assert chunks == ["a" * 10, "a" * 10, "a" * 5]
    assert split_text_for_tts("   ") == []


def test_sanitize_markdown_escapes_specials():
    assert sanitize_markdown("# *bold* [x]") == r"\# \*bold\* \[x\]"
    assert sanitize_markdown(None) == ""


def test_to_pgvector_pads_and_formats():
    assert to_pgvector([1, 2.5]) == "[1.000000,2.500000]"
    assert to_pgvector([1], length=3) == "[1.000000,0.000000,0.000000]"
    assert to_pgvector(None) == "[]"


def test_podcast_blob_name_layout():
    name = podcast_blob_name({"user_id": "user-1", "summary_id": 7, "generated_at": "2026-10-19T07:41:00+09:00"})
    assert re.fullmatch(r"podcasts/user-1/2026-10-19/summary-7-\d+\.mp3", name)


def test_split_sql_drops_comments():
    sql = "-- header\nCREATE TABLE a (id int);\n/* block */\nCREATE INDEX b ON a (id);\n"
    assert split_sql(sql) == ["CREATE TABLE a (id int)", "CREATE INDEX b ON a (id)"]


def test_bundled_migrations_are_ordered():
    paths = sorted_migration_paths()
    assert paths and paths[0].name == "0001_init.sql"
    statements = split_sql(paths[0].read_text())
    assert any("daily_summaries" in statement for statement in statements)


@pytest.mark.asyncio
async def test_summarizer_truncates_and_escapes():
    completions = RecordingCompletions("# Title\n" + "x" * 8000)
    client = types.SimpleNamespace(chat=types.SimpleNamespace(completions=completions))
    summarizer = OpenAISummarizer(api_key=None, model="test-model", client=client)

    markdown = await summarizer.generate([ArticleInput(title="*Rates*", content="up")], "en")

    assert markdown.endswith("... [truncated]")
    prompt = completions.calls[0]["messages"][1]["content"]
    assert r"\*Rates\*" in prompt
    assert "Write in English." in prompt


@pytest.mark.asyncio
async def test_narrator_uses_article_language():
    completions = RecordingCompletions("  こんにちは。  ")
    client = types.SimpleNamespace(chat=types.SimpleNamespace(completions=completions))
    narrator = OpenAINarrator(api_key=None, model="test-model", client=client)

    script = await narrator.generate("# 見出し", [ArticleInput(title="記事", content="", language="ja")])

    assert script == "こんにちは。"
    assert "Japanese" in completions.calls[0]["messages"][0]["content"]


@pytest.mark.asyncio
async def test_synthesizer_concatenates_chunks(monkeypatch):
    monkeypatch.setattr("feedcast.libs.tts.MAX_TTS_CHARS", 25)
    speech = RecordingSpeech()
    client = types.SimpleNamespace(audio=types.SimpleNamespace(speech=speech))
    synthesizer = OpenAISpeechSynthesizer(api_key=None, client=client)

    audio = await synthesizer.speak("One sentence here. Another sentence here.", "en")

    assert speech.inputs == ["One sentence here.", "Another sentence here."]
    assert audio == b"<1><2>"


@pytest.mark.asyncio
async def test_synthesizer_rejects_empty_text():
    synthesizer = OpenAISpeechSynthesizer(api_key=None, client=types.SimpleNamespace())
    with pytest.raises(ValueError):
        await synthesizer.speak("  ", "ja")


@pytest.mark.asyncio
async def test_embeddings_skip_blank_inputs():
    recorder = RecordingEmbeddings()
    client = types.SimpleNamespace(embeddings=recorder)
    embeddings = OpenAIEmbeddings(api_key=None, dimensions=3, client=client)

    vectors = await embeddings.embed(["alpha", "  ", "beta"])

    assert recorder.inputs == [["alpha", "beta"]]
    assert vectors == [[1.0, 2.0, 0.0], [0.0, 0.0, 0.0], [1.0, 2.0, 0.0]]


@pytest.mark.asyncio
async def test_gcs_store_uploads_public_url():
    uploads = []

    class Blob:
        def __init__(self, name):
            self.name = name
            self.metadata = None

        def upload_from_string(self, data, content_type):
            uploads.append((self.name, data, content_type, self.metadata))

    class Bucket:
        def blob(self, name):
            return Blob(name)

    client = types.SimpleNamespace(bucket=lambda name: Bucket())
    store = GCSObjectStore(bucket_name="audio-bucket", client=client)

    url = await store.put(b"mp3", {"user_id": "user-1", "summary_id": 3, "generated_at": "2026-10-19"})

    assert url.startswith("https://storage.googleapis.com/audio-bucket/podcasts/user-1/2026-10-19/summary-3-")
    name, data, content_type, metadata = uploads[0]
    assert data == b"mp3" and content_type == "audio/mpeg"
    assert metadata["summary-id"] == "3"
