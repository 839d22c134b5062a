from __future__ import annotations

import asyncio
import hashlib
import math
import time
from typing import Any, Optional

import httpx
import orjson
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from .core.config import Settings
from .core.logging import get_logger
from .core.metrics import PROVIDER_CALLS, PROVIDER_LATENCY
from .core.redis import embedding_cache_key, get_cached, set_cached
from .domain.embeddings import EmbeddingVector, IEmbeddingProvider
from .errors import (
    EmbeddingError,
    ProviderError,
    ProviderNotConfiguredError,
    ProviderTimeoutError,
)
from .security import sanitize_for_logging


logger = get_logger(__name__)


def parse_embedding(data: Any, provider: str | None = None) -> EmbeddingVector:
    """Turn a feature-extraction response body into a vector.

    Sentence-transformers models answer with a flat list of floats; some
    deployments wrap it once ([[...]]).
    """
    if isinstance(data, list) and len(data) == 1 and isinstance(data[0], list):
        data = data[0]
    if not isinstance(data, list) or not data:
        raise ProviderError("Provider response is not an embedding vector", provider=provider)
    vector: list[float] = []
    for x in data:
        if isinstance(x, bool) or not isinstance(x, (int, float)) or not math.isfinite(x):
            raise ProviderError("Provider response contains non-numeric values", provider=provider)
        vector.append(float(x))
    return tuple(vector)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, EmbeddingError) and exc.retryable


def _is_provider_fault(exc: EmbeddingError) -> bool:
    if exc.retryable:
        return True
    status = getattr(exc, "status_code", None)
    return status is None or not 400 <= status < 500


class HuggingFaceEmbeddingClient(IEmbeddingProvider):
    """Hugging Face Inference API, feature-extraction pipeline.

    Each attempt is bounded by ``timeout_seconds``; retryable failures (network
    errors, 429, 5xx, timeouts) are retried up to ``max_retries`` attempts with
    exponential backoff. Consecutive failures open a circuit breaker.
    """

    name = "huggingface"

    def __init__(
        self,
        *,
        base_url: str,
        api_key: Optional[str],
        model: str,
        timeout_seconds: float = 30.0,
        max_retries: int = 3,
        retry_min_wait: float = 0.5,
        retry_max_wait: float = 8.0,
        http_client: httpx.AsyncClient | None = None,
        circuit_breaker: CircuitBreaker | None = None,
    ) -> None:
        self._base_url = str(base_url).rstrip("/")
        self._api_key = api_key
        self._model = model
        self._timeout = timeout_seconds
        self._max_retries = max(1, max_retries)
        self._retry_min_wait = retry_min_wait
        self._retry_max_wait = retry_max_wait
        self._http_client = http_client
        self._circuit_breaker = circuit_breaker or CircuitBreaker(
            "embedding_huggingface",
            CircuitBreakerConfig(failure_threshold=5, recovery_timeout=30.0),
        )

    @classmethod
    def from_settings(
        cls, settings: Settings, http_client: httpx.AsyncClient | None = None
    ) -> "HuggingFaceEmbeddingClient":
        return cls(
            base_url=str(settings.embedding_base_url),
            api_key=settings.embedding_api_key,
            model=settings.embedding_model,
            timeout_seconds=settings.embedding_timeout_seconds,
            max_retries=settings.embedding_max_retries,
            retry_min_wait=settings.embedding_retry_min_wait_seconds,
            retry_max_wait=settings.embedding_retry_max_wait_seconds,
            http_client=http_client,
        )

    @property
    def model(self) -> str:
        return self._model

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._circuit_breaker

    def is_configured(self) -> bool:
        return bool(self._api_key and self._api_key.strip())

    async def embed(self, text: str) -> EmbeddingVector:
        if not self.is_configured():
            raise ProviderNotConfiguredError(
                "Embedding provider not configured. Set EMBEDDING_API_KEY.",
                provider=self.name,
            )
        self._circuit_breaker.check()
        try:
            vector = await self._embed_with_retry(text)
        except EmbeddingError as exc:
            # Non-retryable 4xx responses leave the breaker untouched.
            if _is_provider_fault(exc):
                self._circuit_breaker.record_failure()
            raise
        self._circuit_breaker.record_success()
        return vector

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "embedding.provider_retry",
            provider=self.name,
            attempt=retry_state.attempt_number,
            error=str(exc),
            error_type=type(exc).__name__,
        )

    async def _embed_with_retry(self, text: str) -> EmbeddingVector:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_retries),
            wait=wait_exponential(multiplier=self._retry_min_wait, max=self._retry_max_wait),
            retry=retry_if_exception(_is_retryable),
            before_sleep=self._log_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                vector = await self._embed_once(text)
        return vector

    async def _post(self, url: str, payload: dict[str, Any], headers: dict[str, str]) -> httpx.Response:
        if self._http_client is not None:
            return await self._http_client.post(url, json=payload, headers=headers)
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await client.post(url, json=payload, headers=headers)

    async def _embed_once(self, text: str) -> EmbeddingVector:
        url = f"{self._base_url}/pipeline/feature-extraction/{self._model}"
        payload: dict[str, Any] = {
            "inputs": text,
            "options": {"wait_for_model": True, "use_cache": True},
        }
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
            "x-use-cache": "false",
        }
        started = time.perf_counter()

        try:
            r = await asyncio.wait_for(self._post(url, payload, headers), timeout=self._timeout)
        except (httpx.TimeoutException, asyncio.TimeoutError) as e:
            PROVIDER_CALLS.labels(provider=self.name, outcome="timeout").inc()
            logger.error(
                "embedding.provider_timeout",
                provider=self.name,
                timeout=self._timeout,
                text_preview=sanitize_for_logging(text, 100),
            )
            raise ProviderTimeoutError(
                f"Embedding request timed out after {self._timeout}s",
                timeout=self._timeout,
                provider=self.name,
            ) from e
        except httpx.RequestError as e:
            PROVIDER_CALLS.labels(provider=self.name, outcome="error").inc()
            logger.error(
                "embedding.provider_request_error",
                provider=self.name,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise ProviderError(
                "Embedding provider request failed", provider=self.name, retryable=True
            ) from e

        if r.status_code != 200:
            PROVIDER_CALLS.labels(provider=self.name, outcome="error").inc()
            error_body = sanitize_for_logging(r.text, 500)
            logger.error(
                "embedding.provider_error_response",
                provider=self.name,
                status_code=r.status_code,
                response_preview=error_body,
            )
            raise ProviderError(
                f"Embedding provider returned {r.status_code}: {error_body}",
                status_code=r.status_code,
                provider=self.name,
                retryable=r.status_code == 429 or r.status_code >= 500,
            )

        try:
            data = r.json()
        except ValueError as e:
            PROVIDER_CALLS.labels(provider=self.name, outcome="error").inc()
            logger.error(
                "embedding.provider_invalid_json",
                provider=self.name,
                response_preview=sanitize_for_logging(r.text, 200),
            )
            raise ProviderError("Embedding provider returned invalid JSON", provider=self.name) from e

        try:
            vector = parse_embedding(data, provider=self.name)
        except ProviderError:
            PROVIDER_CALLS.labels(provider=self.name, outcome="error").inc()
            logger.error("embedding.provider_unparseable", provider=self.name, body_type=type(data).__name__)
            raise

        elapsed = time.perf_counter() - started
        PROVIDER_CALLS.labels(provider=self.name, outcome="success").inc()
        PROVIDER_LATENCY.labels(provider=self.name).observe(elapsed)
        logger.debug(
            "embedding.provider_success",
            provider=self.name,
            latency_ms=round(elapsed * 1000, 2),
            dimension=len(vector),
        )
        return vector

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()


class MockEmbeddingClient(IEmbeddingProvider):
    """Deterministic embeddings derived from a SHA-256 of the text. No network."""

    name = "mock"

    def __init__(self, *, model: str = "mock", dimension: int = 384) -> None:
        self._model = model
        self._dimension = dimension

    @property
    def model(self) -> str:
        return self._model

    async def embed(self, text: str) -> EmbeddingVector:
        h = hashlib.sha256(text.encode()).digest()
        PROVIDER_CALLS.labels(provider=self.name, outcome="success").inc()
        return tuple(float((h[i % len(h)] - 128) / 128.0) for i in range(self._dimension))


class CachedEmbeddingProvider(IEmbeddingProvider):
    """Wraps a provider with a Redis read-through cache keyed by model and text hash."""

    def __init__(self, inner: IEmbeddingProvider, *, ttl_seconds: int) -> None:
        self._inner = inner
        self._ttl = ttl_seconds
        self.name = inner.name

    @property
    def model(self) -> str:
        return self._inner.model

    async def embed(self, text: str) -> EmbeddingVector:
        key = embedding_cache_key(self._inner.model, text)
        cached = await get_cached(key)
        if cached:
            try:
                vector = parse_embedding(orjson.loads(cached), provider=self.name)
            except (orjson.JSONDecodeError, ProviderError):
                logger.warning("embedding.cache_entry_invalid", key=key)
            else:
                PROVIDER_CALLS.labels(provider=self.name, outcome="cache_hit").inc()
                return vector
        vector = await self._inner.embed(text)
        await set_cached(key, orjson.dumps(list(vector)).decode(), ttl_seconds=self._ttl)
        return vector

    async def aclose(self) -> None:
        await self._inner.aclose()


def build_embedding_provider(
    settings: Settings, http_client: httpx.AsyncClient | None = None
) -> IEmbeddingProvider:
    """Construct the provider named by EMBEDDING_PROVIDER, with the Redis cache when enabled."""
    provider: IEmbeddingProvider
    if settings.embedding_provider == "mock":
        provider = MockEmbeddingClient(
            model=settings.embedding_model, dimension=settings.embedding_dimension
        )
    else:
        provider = HuggingFaceEmbeddingClient.from_settings(settings, http_client=http_client)
    if settings.redis_url and settings.embedding_cache_ttl_seconds > 0:
        provider = CachedEmbeddingProvider(provider, ttl_seconds=settings.embedding_cache_ttl_seconds)
    return provider
