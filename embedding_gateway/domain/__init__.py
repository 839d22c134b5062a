"""Domain types for embeddings and similarity ranking."""

from .embeddings import (
    ClusterMember,
    EmbeddingVector,
    IEmbeddingProvider,
    SearchDocument,
    SearchHit,
    SimilarityResult,
)

__all__ = [
    "ClusterMember",
    "EmbeddingVector",
    "IEmbeddingProvider",
    "SearchDocument",
    "SearchHit",
    "SimilarityResult",
]
