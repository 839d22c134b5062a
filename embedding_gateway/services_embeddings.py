"""Transport-agnostic embedding gateway: embed, compare, rank and cluster texts."""

from __future__ import annotations

import asyncio
from typing import Optional, Sequence

from .core.logging import get_logger
from .domain.embeddings import (
    ClusterMember,
    EmbeddingVector,
    IEmbeddingProvider,
    SearchDocument,
    SearchHit,
    SimilarityResult,
)
from .errors import InvalidInputError, ProviderError
from .similarity import cosine_similarity, greedy_clusters, rank_by_similarity, validate_threshold


logger = get_logger(__name__)

DEFAULT_THRESHOLD = 0.7
DEFAULT_SEARCH_THRESHOLD = 0.5
DEFAULT_SEARCH_TOP_K = 5
DEFAULT_CLUSTER_THRESHOLD = 0.8


def require_text(value: object, field: str = "text") -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInputError(f'"{field}" must be a non-empty string')
    return value


def require_texts(values: object, field: str = "texts") -> list[str]:
    if isinstance(values, (str, bytes)) or not isinstance(values, (list, tuple)):
        raise InvalidInputError(f'"{field}" must be an array of strings')
    if not values:
        raise InvalidInputError(f'"{field}" must not be empty')
    return [require_text(v, f"{field}[{i}]") for i, v in enumerate(values)]


class EmbeddingGateway:
    """Obtains embeddings from an injected provider and ranks texts by cosine similarity.

    Outbound provider calls are bounded by ``max_concurrency`` across every
    operation running on this gateway. Batch operations preserve input order
    and fail as a whole: when one call fails the others are cancelled and the
    failure is raised.
    """

    def __init__(
        self,
        provider: IEmbeddingProvider,
        *,
        max_concurrency: int = 10,
        default_threshold: float = DEFAULT_THRESHOLD,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self._provider = provider
        self._max_concurrency = max_concurrency
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._default_threshold = validate_threshold(default_threshold)

    @property
    def model(self) -> str:
        return self._provider.model

    @property
    def provider(self) -> IEmbeddingProvider:
        return self._provider

    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    @property
    def default_threshold(self) -> float:
        return self._default_threshold

    async def _call_provider(self, text: str) -> EmbeddingVector:
        async with self._semaphore:
            return await self._provider.embed(text)

    async def _embed_for_ranking(self, texts: list[str]) -> list[EmbeddingVector]:
        vectors = await self.embed_many(texts)
        dimensions = sorted({len(v) for v in vectors})
        if len(dimensions) > 1:
            raise ProviderError(
                f"Embedding provider returned vectors of different dimensions: {dimensions}",
                provider=self._provider.name,
            )
        return vectors

    async def embed_one(self, text: str) -> EmbeddingVector:
        return await self._call_provider(require_text(text))

    async def embed_many(self, texts: Sequence[str]) -> list[EmbeddingVector]:
        items = require_texts(texts)
        tasks = [asyncio.create_task(self._call_provider(t)) for t in items]
        try:
            _, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        except asyncio.CancelledError:
            for t in tasks:
                t.cancel()
            raise

        if pending:
            for t in pending:
                t.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        # Several calls can fail in the same loop iteration; report the lowest index.
        for index, t in enumerate(tasks):
            if t.cancelled():
                continue
            exc = t.exception()
            if exc is not None:
                logger.warning(
                    "embedding.batch_failed",
                    size=len(items),
                    failed_index=index,
                    cancelled=len(pending),
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                raise exc

        return [t.result() for t in tasks]

    def similarity(self, a: Sequence[float], b: Sequence[float]) -> float:
        return cosine_similarity(a, b)

    async def find_similar(
        self,
        query: str,
        candidates: Sequence[str],
        threshold: Optional[float] = None,
    ) -> list[SimilarityResult]:
        query = require_text(query, "query")
        items = require_texts(candidates, "candidates")
        threshold = validate_threshold(self._default_threshold if threshold is None else threshold)

        vectors = await self._embed_for_ranking([query, *items])
        ranked = rank_by_similarity(vectors[0], items, vectors[1:], threshold)
        logger.info(
            "embedding.find_similar",
            candidates=len(items),
            matches=len(ranked),
            threshold=threshold,
        )
        return [SimilarityResult(text=text, index=i, similarity=score) for i, text, score in ranked]

    async def semantic_search(
        self,
        query: str,
        documents: Sequence[SearchDocument],
        top_k: int = DEFAULT_SEARCH_TOP_K,
        threshold: float = DEFAULT_SEARCH_THRESHOLD,
    ) -> list[SearchHit]:
        query = require_text(query, "query")
        if not documents:
            raise InvalidInputError('"documents" must not be empty')
        if isinstance(top_k, bool) or not isinstance(top_k, int) or top_k < 1:
            raise InvalidInputError('"top_k" must be a positive integer')
        threshold = validate_threshold(threshold)
        contents = [require_text(d.content, f"documents[{i}].content") for i, d in enumerate(documents)]

        vectors = await self._embed_for_ranking([query, *contents])
        ranked = rank_by_similarity(vectors[0], list(documents), vectors[1:], threshold)
        hits = [SearchHit(document=doc, similarity=score) for _, doc, score in ranked[:top_k]]
        logger.info(
            "embedding.semantic_search",
            documents=len(documents),
            hits=len(hits),
            top_k=top_k,
            threshold=threshold,
        )
        return hits

    async def cluster_texts(
        self,
        texts: Sequence[str],
        threshold: float = DEFAULT_CLUSTER_THRESHOLD,
    ) -> list[list[ClusterMember]]:
        items = require_texts(texts)
        threshold = validate_threshold(threshold)

        vectors = await self._embed_for_ranking(items)
        clusters = [
            [ClusterMember(text=items[i], index=i) for i in members]
            for members in greedy_clusters(vectors, threshold)
        ]
        logger.info("embedding.cluster_texts", texts=len(items), clusters=len(clusters))
        return clusters
