import os

os.environ.setdefault("EMBEDDING_PROVIDER", "local")
os.environ.setdefault("EMBEDDING_RETRY_BACKOFF_SECONDS", "0")
os.environ.setdefault("EMBEDDING_RETRY_JITTER_SECONDS", "0")
os.environ.setdefault("MEMORY_AUTO_LINK", "true")
os.environ.setdefault("DECAY_RUN_ON_START", "false")

import re

import pytest
from sqlalchemy.orm import sessionmaker

from agentmem.config import EmbeddingSettings
from agentmem.db import create_sqlite_engine
from agentmem.errors import EmbeddingProviderError
from agentmem.models import Base
from agentmem.runtime import build_runtime
from agentmem.services.embeddings import HybridEmbeddingService
from agentmem.services.storage import create_storage

TOKEN = re.compile(r"\w+")


class VocabularyBackend:
    """Bag-of-words embedder: every distinct token gets its own axis."""

    provider = "local"
    model = "test-vocabulary"
    supports_batch = True
    dimension = 128

    def __init__(self):
        self.vocabulary: dict[str, int] = {}
        self.fail = False
        self.calls = 0

    def vector(self, text: str) -> list[float]:
        values = [0.0] * self.dimension
        for token in TOKEN.findall(text.lower()):
            index = self.vocabulary.setdefault(token, len(self.vocabulary) % self.dimension)
            values[index] += 1.0
        return values

    async def embed(self, text: str) -> list[float]:
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.calls += 1
        if self.fail:
            raise EmbeddingProviderError("vocabulary backend offline")
        return [self.vector(text) for text in texts]


class ScriptedChat:
    """Chat function returning queued replies; a queued exception is raised."""

    def __init__(self):
        self.replies: list = []
        self.calls: list[dict] = []

    def queue(self, *replies) -> None:
        self.replies.extend(replies)

    async def __call__(self, provider_id, provider_config, messages, temperature, max_tokens):
        self.calls.append(
            {
                "provider_id": provider_id,
                "prompt": messages[-1]["content"],
                "temperature": temperature,
                "max_tokens": max_tokens,
            }
        )
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(messages[-1]["content"])
        return reply


@pytest.fixture
def session_factory(tmp_path):
    engine = create_sqlite_engine(f"sqlite:///{tmp_path / 'memory.sqlite'}")
    Base.metadata.create_all(engine)
    try:
        yield sessionmaker(bind=engine)
    finally:
        engine.dispose()


@pytest.fixture
def backend():
    return VocabularyBackend()


@pytest.fixture
def embedder(backend):
    return HybridEmbeddingService(
        settings=EmbeddingSettings(provider="local"),
        local_backend=backend,
    )


@pytest.fixture
def storage(session_factory, embedder):
    return create_storage(session_factory, embedder)


@pytest.fixture
def chat():
    return ScriptedChat()


@pytest.fixture
def runtime(session_factory, embedder, chat):
    return build_runtime(session_factory, embedder=embedder, chat_fn=chat)
