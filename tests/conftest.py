from __future__ import annotations

import asyncio
import os
from typing import Callable, Optional, Sequence

import pytest
from httpx import ASGITransport, AsyncClient

os.environ["EMBEDDING_PROVIDER"] = "mock"
os.environ["ENVIRONMENT"] = "local"
os.environ.pop("REDIS_URL", None)
os.environ.pop("EMBEDDING_API_KEY", None)

from embedding_gateway.api import create_app
from embedding_gateway.core.config import get_settings
from embedding_gateway.domain.embeddings import EmbeddingVector, IEmbeddingProvider
from embedding_gateway.services_embeddings import EmbeddingGateway


class StubEmbeddingProvider(IEmbeddingProvider):
    """Provider double with fixed vectors, per-text delays and per-text failures."""

    name = "stub"

    def __init__(
        self,
        vectors: Optional[dict[str, Sequence[float]]] = None,
        *,
        delays: Optional[dict[str, float]] = None,
        failures: Optional[dict[str, Exception]] = None,
        model: str = "stub-model",
    ) -> None:
        self.vectors = dict(vectors or {})
        self.delays = dict(delays or {})
        self.failures = dict(failures or {})
        self._model = model
        self.calls: list[str] = []
        self.completed: list[str] = []
        self.cancelled: list[str] = []
        self.active = 0
        self.max_active = 0

    @property
    def model(self) -> str:
        return self._model

    async def embed(self, text: str) -> EmbeddingVector:
        self.calls.append(text)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            delay = self.delays.get(text, 0.0)
            if delay:
                await asyncio.sleep(delay)
            else:
                await asyncio.sleep(0)
            if text in self.failures:
                raise self.failures[text]
            vector = self.vectors.get(text)
            if vector is None:
                vector = (float(len(text)), 1.0, 0.5)
            self.completed.append(text)
            return tuple(float(x) for x in vector)
        except asyncio.CancelledError:
            self.cancelled.append(text)
            raise
        finally:
            self.active -= 1


@pytest.fixture(autouse=True)
def _fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def make_gateway() -> Callable[..., tuple[EmbeddingGateway, StubEmbeddingProvider]]:
    def _make(
        vectors: Optional[dict[str, Sequence[float]]] = None,
        *,
        delays: Optional[dict[str, float]] = None,
        failures: Optional[dict[str, Exception]] = None,
        max_concurrency: int = 10,
        default_threshold: float = 0.7,
    ) -> tuple[EmbeddingGateway, StubEmbeddingProvider]:
        provider = StubEmbeddingProvider(vectors, delays=delays, failures=failures)
        gateway = EmbeddingGateway(
            provider, max_concurrency=max_concurrency, default_threshold=default_threshold
        )
        return gateway, provider

    return _make


# Fixed vectors for "machine learning basics" against three candidates.
# cos(query, deep) = 0.9 / sqrt(0.82) ~= 0.9939, cos(query, neural) = 0.6, cos(query, cooking) = 0.
LEARNING_VECTORS = {
    "machine learning basics": (1.0, 0.0, 0.0),
    "deep learning intro": (0.9, 0.1, 0.0),
    "cooking recipes": (0.0, 1.0, 0.0),
    "neural networks": (0.6, 0.8, 0.0),
}


@pytest.fixture
def learning_vectors() -> dict[str, tuple[float, ...]]:
    return dict(LEARNING_VECTORS)


@pytest.fixture
def gateway_and_provider(make_gateway, learning_vectors):
    return make_gateway(learning_vectors)


@pytest.fixture
def app(gateway_and_provider):
    gateway, _ = gateway_and_provider
    return create_app(gateway=gateway)


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
