"""
Embedding provider adapter.

Hosted backends (OpenAI-compatible, Zhipu, Gemini) sit behind one protocol
next to a local sentence-transformers model. The hybrid service tries the
configured remote backend first and fails over to the local model on any
request error; only ``EmbeddingResult.source`` tells the caller which one
answered.
"""

from __future__ import annotations

import asyncio
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

import httpx

import agentmem.config as config
from agentmem.config import EmbeddingSettings
from agentmem.errors import EmbeddingProviderError
from agentmem.validators import validate_embedding_text

logger = config.logger

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

DEFAULT_BASE_URLS = {
    "openai": "https://api.openai.com/v1",
    "zhipu": "https://open.bigmodel.cn/api/paas/v4",
    "gemini": "https://generativelanguage.googleapis.com/v1beta",
}

DEFAULT_MODELS = {
    "openai": "text-embedding-3-small",
    "zhipu": "embedding-3",
    "gemini": "text-embedding-004",
}


@dataclass
class EmbeddingResult:
    vector: list[float]
    dimension: int
    source: str  # "api" or "local"
    model: str
    provider: str


class EmbeddingBackend(Protocol):
    provider: str
    model: str
    supports_batch: bool

    async def embed(self, text: str) -> list[float]: ...

    async def embed_batch(self, texts: list[str]) -> list[list[float]]: ...


# =============================================================================
# Circuit breaker and retry helpers
# =============================================================================

class EmbeddingCircuitBreaker:
    def __init__(self, failure_threshold: int, cooldown_seconds: int):
        self._failure_threshold = max(1, failure_threshold)
        self._cooldown_seconds = max(1, cooldown_seconds)
        self._lock = threading.Lock()
        self._consecutive_failures = 0
        self._cooldown_until = 0.0
        self._last_error: Optional[str] = None
        self._last_failure_ts: Optional[float] = None
        self._last_success_ts: Optional[float] = None

    def is_open(self) -> bool:
        with self._lock:
            return time.time() < self._cooldown_until

    def record_success(self) -> None:
        with self._lock:
            self._consecutive_failures = 0
            self._cooldown_until = 0.0
            self._last_success_ts = time.time()

    def record_failure(self, error: str) -> None:
        with self._lock:
            self._consecutive_failures += 1
            self._last_error = error
            self._last_failure_ts = time.time()
            if self._consecutive_failures >= self._failure_threshold:
                self._cooldown_until = time.time() + self._cooldown_seconds

    def status(self) -> dict:
        with self._lock:
            return {
                "open": time.time() < self._cooldown_until,
                "consecutive_failures": self._consecutive_failures,
                "cooldown_until_epoch": int(self._cooldown_until) if self._cooldown_until else None,
                "last_error": self._last_error,
                "last_failure_epoch": int(self._last_failure_ts) if self._last_failure_ts else None,
                "last_success_epoch": int(self._last_success_ts) if self._last_success_ts else None,
            }


async def _async_sleep_backoff(attempt: int) -> None:
    base = config.EMBEDDING_RETRY_BACKOFF_SECONDS * (2 ** attempt)
    jitter = random.uniform(0, config.EMBEDDING_RETRY_JITTER_SECONDS)
    await asyncio.sleep(base + jitter)


def _raise_embedding_unavailable(provider: str, detail: str) -> None:
    logger.warning("embedding_request_failed", extra={"provider": provider, "detail": detail})
    raise EmbeddingProviderError(f"{provider} embedding unavailable: {detail}")


async def _post_json_with_retry(
    provider: str,
    url: str,
    payload: dict,
    headers: dict,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> dict:
    timeout = httpx.Timeout(config.EMBEDDING_TIMEOUT_SECONDS)
    async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
        for attempt in range(config.EMBEDDING_RETRY_MAX + 1):
            try:
                response = await client.post(url, headers=headers, json=payload)
            except httpx.RequestError as exc:
                if attempt >= config.EMBEDDING_RETRY_MAX:
                    _raise_embedding_unavailable(provider, f"request error: {exc}")
                await _async_sleep_backoff(attempt)
                continue

            if response.status_code in RETRYABLE_STATUS_CODES:
                if attempt >= config.EMBEDDING_RETRY_MAX:
                    _raise_embedding_unavailable(provider, f"status {response.status_code}")
                await _async_sleep_backoff(attempt)
                continue
            if response.status_code >= 400:
                _raise_embedding_unavailable(provider, f"status {response.status_code}")

            try:
                return response.json()
            except ValueError:
                _raise_embedding_unavailable(provider, "invalid JSON response")
    _raise_embedding_unavailable(provider, "retries exhausted")


# =============================================================================
# Backends
# =============================================================================

class OpenAICompatibleBackend:
    """``POST {base_url}/embeddings`` in the OpenAI wire shape."""

    def __init__(
        self,
        provider: str,
        api_key: Optional[str],
        base_url: str,
        model: str,
        dimensions: Optional[int] = None,
        supports_batch: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.provider = provider
        self.model = model
        self.supports_batch = supports_batch
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._dimensions = dimensions
        self._transport = transport

    def _payload(self, value) -> dict:
        payload = {"model": self.model, "input": value}
        if self._dimensions:
            payload["dimensions"] = self._dimensions
        return payload

    async def _request(self, value) -> list[list[float]]:
        if not self._api_key:
            _raise_embedding_unavailable(self.provider, "missing API key")
        data = await _post_json_with_retry(
            self.provider,
            f"{self._base_url}/embeddings",
            self._payload(value),
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            transport=self._transport,
        )
        try:
            rows = sorted(data["data"], key=lambda row: row.get("index", 0))
            return [list(row["embedding"]) for row in rows]
        except (KeyError, TypeError) as exc:
            raise EmbeddingProviderError(f"{self.provider} returned an unexpected payload") from exc

    async def embed(self, text: str) -> list[float]:
        vectors = await self._request(text)
        if not vectors:
            raise EmbeddingProviderError(f"{self.provider} returned no embedding")
        return vectors[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not self.supports_batch:
            return [await self.embed(text) for text in texts]
        vectors = await self._request(texts)
        if len(vectors) != len(texts):
            raise EmbeddingProviderError(f"{self.provider} returned {len(vectors)} of {len(texts)} embeddings")
        return vectors


class GeminiBackend:
    """``POST {base_url}/models/{model}:embedContent`` (no batch support)."""

    supports_batch = False

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str,
        model: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.provider = "gemini"
        self.model = model
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._transport = transport

    async def embed(self, text: str) -> list[float]:
        if not self._api_key:
            _raise_embedding_unavailable(self.provider, "missing API key")
        data = await _post_json_with_retry(
            self.provider,
            f"{self._base_url}/models/{self.model}:embedContent?key={self._api_key}",
            {"content": {"parts": [{"text": text}]}},
            headers={"Content-Type": "application/json"},
            transport=self._transport,
        )
        try:
            return list(data["embedding"]["values"])
        except (KeyError, TypeError) as exc:
            raise EmbeddingProviderError("gemini returned an unexpected payload") from exc

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [await self.embed(text) for text in texts]


class LocalSentenceTransformerBackend:
    """CPU sentence-transformers model, loaded lazily on first use."""

    provider = "local"
    supports_batch = True

    def __init__(self, model: str = "all-MiniLM-L6-v2"):
        self.model = model
        self._encoder = None
        self._load_lock = threading.Lock()
        self._load_error: Optional[str] = None

    @property
    def is_loaded(self) -> bool:
        return self._encoder is not None

    def _get_encoder(self):
        with self._load_lock:
            if self._encoder is None:
                try:
                    from sentence_transformers import SentenceTransformer

                    self._encoder = SentenceTransformer(self.model)
                except Exception as exc:
                    self._load_error = str(exc)
                    logger.warning(
                        "local_embedding_model_unavailable",
                        extra={"model": self.model, "detail": str(exc)},
                    )
                    raise EmbeddingProviderError("local embedding model unavailable") from exc
                logger.info("local_embedding_model_loaded", extra={"model": self.model})
            return self._encoder

    def _encode_sync(self, texts: list[str]) -> list[list[float]]:
        encoder = self._get_encoder()
        vectors = encoder.encode(texts, normalize_embeddings=True)
        return [vector.tolist() for vector in vectors]

    async def embed(self, text: str) -> list[float]:
        vectors = await asyncio.to_thread(self._encode_sync, [text])
        return vectors[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return await asyncio.to_thread(self._encode_sync, list(texts))


def _resolve_base_url(settings: EmbeddingSettings) -> str:
    if settings.base_url_override and settings.base_url_override.strip():
        return settings.base_url_override.strip()
    return DEFAULT_BASE_URLS[settings.provider]


def _build_openai(settings: EmbeddingSettings, transport) -> EmbeddingBackend:
    return OpenAICompatibleBackend(
        provider="openai",
        api_key=settings.api_key_override,
        base_url=_resolve_base_url(settings),
        model=settings.model or DEFAULT_MODELS["openai"],
        dimensions=settings.dimensions,
        supports_batch=True,
        transport=transport,
    )


def _build_zhipu(settings: EmbeddingSettings, transport) -> EmbeddingBackend:
    return OpenAICompatibleBackend(
        provider="zhipu",
        api_key=settings.api_key_override,
        base_url=_resolve_base_url(settings),
        model=settings.model or DEFAULT_MODELS["zhipu"],
        supports_batch=False,
        transport=transport,
    )


def _build_gemini(settings: EmbeddingSettings, transport) -> EmbeddingBackend:
    return GeminiBackend(
        api_key=settings.api_key_override,
        base_url=_resolve_base_url(settings),
        model=settings.model or DEFAULT_MODELS["gemini"],
        transport=transport,
    )


REMOTE_BACKENDS: dict[str, Callable[[EmbeddingSettings, Optional[httpx.AsyncBaseTransport]], EmbeddingBackend]] = {
    "openai": _build_openai,
    "zhipu": _build_zhipu,
    "gemini": _build_gemini,
}


# =============================================================================
# Hybrid service
# =============================================================================

class HybridEmbeddingService:
    """Remote-first embedding service with a local fallback model."""

    def __init__(
        self,
        settings: Optional[EmbeddingSettings] = None,
        local_backend: Optional[EmbeddingBackend] = None,
        remote_backend: Optional[EmbeddingBackend] = None,
        breaker: Optional[EmbeddingCircuitBreaker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or EmbeddingSettings.from_env()
        self.local = local_backend or LocalSentenceTransformerBackend(self.settings.local_model)
        if remote_backend is None and self.settings.provider in REMOTE_BACKENDS:
            remote_backend = REMOTE_BACKENDS[self.settings.provider](self.settings, transport)
        self.remote = remote_backend
        self.breaker = breaker or EmbeddingCircuitBreaker(
            failure_threshold=config.EMBEDDING_FAILURE_THRESHOLD,
            cooldown_seconds=config.EMBEDDING_COOLDOWN_SECONDS,
        )

    @property
    def dimension(self) -> int:
        if self.remote is None:
            return getattr(self.local, "dimension", config.LOCAL_EMBEDDING_DIM)
        return self.settings.dimensions or config.LOCAL_EMBEDDING_DIM

    def is_ready(self) -> bool:
        if self.remote is not None and self.settings.api_key_override:
            return True
        return getattr(self.local, "is_loaded", True)

    def breaker_status(self) -> dict:
        return self.breaker.status()

    def _result(self, vector: list[float], backend: EmbeddingBackend, source: str) -> EmbeddingResult:
        return EmbeddingResult(
            vector=vector,
            dimension=len(vector),
            source=source,
            model=backend.model,
            provider=backend.provider,
        )

    def _remote_available(self) -> bool:
        if self.remote is None:
            return False
        if self.breaker.is_open():
            logger.info("embedding_circuit_open", extra={"provider": self.remote.provider})
            return False
        return True

    async def _embed_local(self, texts: list[str]) -> list[list[float]]:
        try:
            return await self.local.embed_batch(texts)
        except EmbeddingProviderError:
            raise
        except Exception as exc:
            logger.warning("local_embedding_failed", extra={"detail": str(exc)})
            raise EmbeddingProviderError("local embedding failed") from exc

    async def embed(self, text: str) -> EmbeddingResult:
        validate_embedding_text(text)
        if self._remote_available():
            try:
                vector = await self.remote.embed(text)
                self.breaker.record_success()
                return self._result(vector, self.remote, "api")
            except (EmbeddingProviderError, httpx.HTTPError) as exc:
                self.breaker.record_failure(str(exc))
                logger.info(
                    "embedding_fallback_local",
                    extra={"provider": self.remote.provider, "detail": str(exc)},
                )
        vectors = await self._embed_local([text])
        return self._result(vectors[0], self.local, "local")

    async def embed_batch(self, texts: list[str]) -> list[EmbeddingResult]:
        """Embed several texts, batching where the backend supports it."""
        if not texts:
            return []
        for text in texts:
            validate_embedding_text(text)
        if self._remote_available():
            try:
                vectors = await self.remote.embed_batch(list(texts))
                self.breaker.record_success()
                return [self._result(vector, self.remote, "api") for vector in vectors]
            except (EmbeddingProviderError, httpx.HTTPError) as exc:
                self.breaker.record_failure(str(exc))
                logger.info(
                    "embedding_batch_fallback_local",
                    extra={"provider": self.remote.provider, "count": len(texts)},
                )
        vectors = await self._embed_local(list(texts))
        return [self._result(vector, self.local, "local") for vector in vectors]
