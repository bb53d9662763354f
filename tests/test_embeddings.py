import json

import httpx
import pytest

from agentmem.config import EmbeddingSettings
from agentmem.errors import EmbeddingProviderError, ValidationIssue
from agentmem.services.embeddings import EmbeddingCircuitBreaker, HybridEmbeddingService


def _openai_settings(**overrides):
    values = {
        "provider": "openai",
        "model": "text-embedding-3-small",
        "dimensions": 3,
        "api_key_override": "sk-test",
        "base_url_override": "https://embeddings.test/v1",
    }
    values.update(overrides)
    return EmbeddingSettings(**values)


async def test_remote_embedding_success(backend):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        body = json.loads(request.content)
        inputs = body["input"] if isinstance(body["input"], list) else [body["input"]]
        data = [{"index": idx, "embedding": [0.1, 0.2, 0.3]} for idx in reversed(range(len(inputs)))]
        return httpx.Response(200, json={"data": data})

    service = HybridEmbeddingService(
        settings=_openai_settings(),
        local_backend=backend,
        transport=httpx.MockTransport(handler),
    )
    result = await service.embed("hello there")
    assert result.source == "api"
    assert result.provider == "openai"
    assert result.dimension == 3
    assert str(seen[0].url) == "https://embeddings.test/v1/embeddings"
    assert seen[0].headers["Authorization"] == "Bearer sk-test"
    assert json.loads(seen[0].content)["dimensions"] == 3

    batch = await service.embed_batch(["one", "two"])
    assert [item.source for item in batch] == ["api", "api"]
    assert backend.calls == 0


async def test_remote_failure_falls_back_to_local(backend):
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        return httpx.Response(503, json={"error": "unavailable"})

    service = HybridEmbeddingService(
        settings=_openai_settings(),
        local_backend=backend,
        transport=httpx.MockTransport(handler),
    )
    result = await service.embed("likes coffee")
    assert result.source == "local"
    assert result.dimension == backend.dimension
    assert len(attempts) >= 1
    assert service.breaker_status()["consecutive_failures"] == 1


async def test_missing_api_key_uses_local(backend):
    service = HybridEmbeddingService(
        settings=_openai_settings(api_key_override=None),
        local_backend=backend,
        transport=httpx.MockTransport(lambda request: httpx.Response(500)),
    )
    result = await service.embed("likes tea")
    assert result.source == "local"


async def test_open_breaker_skips_remote(backend):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"data": [{"index": 0, "embedding": [1.0]}]})

    breaker = EmbeddingCircuitBreaker(failure_threshold=1, cooldown_seconds=60)
    breaker.record_failure("boom")
    service = HybridEmbeddingService(
        settings=_openai_settings(),
        local_backend=backend,
        breaker=breaker,
        transport=httpx.MockTransport(handler),
    )
    result = await service.embed("walks the dog")
    assert result.source == "local"
    assert calls == []


async def test_both_backends_failing_raises(backend):
    backend.fail = True
    service = HybridEmbeddingService(
        settings=_openai_settings(),
        local_backend=backend,
        transport=httpx.MockTransport(lambda request: httpx.Response(401)),
    )
    with pytest.raises(EmbeddingProviderError):
        await service.embed("anything")


async def test_gemini_backend_reads_values(backend):
    def handler(request: httpx.Request) -> httpx.Response:
        assert ":embedContent" in request.url.path
        assert request.url.params["key"] == "g-key"
        return httpx.Response(200, json={"embedding": {"values": [0.5, 0.5]}})

    service = HybridEmbeddingService(
        settings=EmbeddingSettings(provider="gemini", api_key_override="g-key"),
        local_backend=backend,
        transport=httpx.MockTransport(handler),
    )
    result = await service.embed("gardening")
    assert result.source == "api"
    assert result.vector == [0.5, 0.5]


async def test_empty_text_is_rejected(embedder):
    with pytest.raises(ValidationIssue):
        await embedder.embed("   ")


def test_breaker_opens_after_threshold():
    breaker = EmbeddingCircuitBreaker(failure_threshold=2, cooldown_seconds=60)
    breaker.record_failure("first")
    assert not breaker.is_open()
    breaker.record_failure("second")
    assert breaker.is_open()
    breaker.record_success()
    assert not breaker.is_open()
    assert breaker.status()["consecutive_failures"] == 0
