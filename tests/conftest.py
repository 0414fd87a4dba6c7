"""Shared pytest fixtures."""

import hashlib
import math
import re
import sqlite3
import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import chromadb
import openai
import pytest
from chromadb.config import Settings as ChromaSettings

from chatgenius_rag.config import ApiToken, Settings
from chatgenius_rag.container import ServiceContainer
from chatgenius_rag.rag.embeddings import EmbeddingGenerator
from chatgenius_rag.rag.generator import AnswerGenerator
from chatgenius_rag.rag.vectorstore import ChromaVectorStore
from chatgenius_rag.storage.database import Database
from chatgenius_rag.storage.message_source import MESSAGE_STORE_SCHEMA, SQLiteMessageSource

DIM = 64
EMBED_MODEL = "fake-embed-v1"
BASE_TIME = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

SERVICE_TOKEN = "svc-token"
USER_TOKEN = "user-token"


# ------------------------------------------------------------------
# Fake OpenAI client
# ------------------------------------------------------------------


def _stem(word: str) -> str:
    for suffix in ("ed", "es", "s"):
        if word.endswith(suffix) and len(word) > len(suffix) + 2:
            return word[: -len(suffix)]
    return word


def bag_of_words_vector(text: str, dim: int = DIM) -> list[float]:
    """Deterministic hashed bag-of-words embedding."""
    vector = [0.0] * dim
    vector[0] = 0.1
    for word in re.findall(r"[a-z0-9]+", text.lower()):
        bucket = int(hashlib.md5(_stem(word).encode()).hexdigest(), 16) % (dim - 1) + 1
        vector[bucket] += 1.0
    norm = math.sqrt(sum(v * v for v in vector))
    return [v / norm for v in vector]


class FakeEmbeddings:
    def __init__(self, dim: int):
        self.dim = dim
        self.calls: list[list[str]] = []
        self.requests: list[dict] = []
        self.fail_on: set[str] = set()
        self.failures_left = 0
        self.gate = None

    async def create(self, model: str, input: list[str], **kwargs):
        self.calls.append(list(input))
        self.requests.append({"model": model, "input": list(input), **kwargs})
        if self.gate is not None:
            await self.gate.wait()
        if self.failures_left > 0:
            self.failures_left -= 1
            raise openai.OpenAIError("upstream unavailable")
        for text in input:
            if any(marker in text for marker in self.fail_on):
                raise openai.OpenAIError("upstream rejected input")
        return SimpleNamespace(
            data=[
                SimpleNamespace(index=i, embedding=bag_of_words_vector(t, self.dim))
                for i, t in enumerate(input)
            ]
        )


class FakeCompletions:
    def __init__(self):
        self.calls: list[dict] = []
        self.reply = "Generated answer."
        self.error = None
        self.gate = None
        self.finished = 0

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.gate is not None:
            await self.gate.wait()
        self.finished += 1
        if self.error is not None:
            raise self.error
        return SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=self.reply))]
        )


class FakeOpenAI:
    """Stands in for AsyncOpenAI: embeddings.create and chat.completions.create."""

    def __init__(self, dim: int = DIM):
        self.embeddings = FakeEmbeddings(dim)
        self.chat = SimpleNamespace(completions=FakeCompletions())


# ------------------------------------------------------------------
# Message store helpers
# ------------------------------------------------------------------


class MessageStore:
    """Writable handle on a test message store."""

    def __init__(self, path: str):
        self.path = path
        with sqlite3.connect(path) as conn:
            conn.executescript(MESSAGE_STORE_SCHEMA)

    def add(
        self,
        id: str,
        content,
        channel_id: str = "C1",
        sender_id: str = "U1",
        minutes: int = 0,
        type: str = "user",
    ) -> None:
        created = (BASE_TIME + timedelta(minutes=minutes)).isoformat()
        with sqlite3.connect(self.path) as conn:
            conn.execute(
                """INSERT INTO messages (id, content, sender_id, channel_id, type, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (id, content, sender_id, channel_id, type, created, created),
            )

    def edit(self, id: str, content: str) -> None:
        with sqlite3.connect(self.path) as conn:
            conn.execute(
                "UPDATE messages SET content = ?, updated_at = ? WHERE id = ?",
                (content, datetime.now(timezone.utc).isoformat(), id),
            )

    def delete(self, id: str) -> None:
        with sqlite3.connect(self.path) as conn:
            conn.execute("DELETE FROM messages WHERE id = ?", (id,))

    def add_member(self, container_id: str, user_id: str) -> None:
        with sqlite3.connect(self.path) as conn:
            conn.execute(
                "INSERT INTO container_members (container_id, user_id) VALUES (?, ?)",
                (container_id, user_id),
            )


# ------------------------------------------------------------------
# Fixtures
# ------------------------------------------------------------------


@pytest.fixture(scope="session")
def chroma_client():
    return chromadb.EphemeralClient(settings=ChromaSettings(anonymized_telemetry=False))


@pytest.fixture
def settings(tmp_path):
    return Settings(
        openai_api_key="test-key",
        embedding_model=EMBED_MODEL,
        embedding_dimensions=DIM,
        chunk_size=100,
        chunk_overlap=10,
        database_path=str(tmp_path / "rag.db"),
        message_store_path=str(tmp_path / "messages.db"),
        top_k=5,
        embed_retries=1,
        api_tokens={
            SERVICE_TOKEN: ApiToken(user_id="svc", role="service"),
            USER_TOKEN: ApiToken(user_id="U1", role="member"),
        },
    )


@pytest.fixture
def message_store(settings):
    return MessageStore(settings.message_store_path)


@pytest.fixture
def db(settings):
    database = Database(settings.database_path)
    database.init()
    return database


@pytest.fixture
def fake_openai():
    return FakeOpenAI()


@pytest.fixture
def store(chroma_client):
    vector_store = ChromaVectorStore(
        chroma_client,
        f"test_{uuid.uuid4().hex}",
        embedding_model=EMBED_MODEL,
        dimension=DIM,
        max_vectors=1000,
    )
    vector_store.open()
    return vector_store


@pytest.fixture
def container(settings, db, message_store, fake_openai, store):
    return ServiceContainer.assemble(
        settings,
        db=db,
        source=SQLiteMessageSource(message_store.path),
        generator=EmbeddingGenerator(fake_openai, model=EMBED_MODEL, dimensions=DIM),
        store=store,
        answerer=AnswerGenerator(fake_openai, model="fake-chat"),
        retry_delay_seconds=0,
    )
