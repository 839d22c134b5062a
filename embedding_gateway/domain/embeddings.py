"""Domain types and interfaces for embeddings and similarity ranking."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Tuple

EmbeddingVector = Tuple[float, ...]


@dataclass(frozen=True)
class SimilarityResult:
    """A candidate text scored against a query."""

    text: str
    index: int
    similarity: float


@dataclass(frozen=True)
class SearchDocument:
    id: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SearchHit:
    document: SearchDocument
    similarity: float


@dataclass(frozen=True)
class ClusterMember:
    text: str
    index: int


class IEmbeddingProvider(ABC):
    """Interface for remote (or local) embedding providers.

    Implementations make exactly one embedding per call and do not validate
    the text; the gateway does that before calling.
    """

    name: str = "provider"

    @property
    @abstractmethod
    def model(self) -> str:
        """Model identifier reported to clients."""

    @abstractmethod
    async def embed(self, text: str) -> EmbeddingVector:
        """Generate an embedding for the given text."""

    async def aclose(self) -> None:
        """Release network resources held by the provider."""
        return None
