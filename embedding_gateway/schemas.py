from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictFloat, StrictInt


class GenerateEmbeddingRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    text: Optional[str] = Field(None, max_length=100_000)
    texts: Optional[list[str]] = Field(None, max_length=1_000)


class GenerateEmbeddingResponse(BaseModel):
    embedding: Optional[list[float]] = None
    embeddings: Optional[list[list[float]]] = None
    model: str


class SimilarityRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    query: Optional[str] = Field(None, max_length=100_000)
    candidates: Optional[list[str]] = Field(None, max_length=1_000)
    threshold: Optional[StrictFloat] = None


class SimilarityResultOut(BaseModel):
    text: str
    similarity: float
    index: int


class SimilarityResponse(BaseModel):
    results: list[SimilarityResultOut]
    model: str
    threshold: float


class SearchDocumentIn(BaseModel):
    id: str = Field(..., min_length=1, max_length=255)
    content: str = Field(..., max_length=100_000)
    metadata: dict[str, Any] = Field(default_factory=dict)


class SearchRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    query: Optional[str] = Field(None, max_length=100_000)
    documents: Optional[list[SearchDocumentIn]] = Field(None, max_length=1_000)
    top_k: StrictInt = 5
    threshold: StrictFloat = 0.5


class SearchHitOut(BaseModel):
    document: SearchDocumentIn
    similarity: float


class SearchResponse(BaseModel):
    results: list[SearchHitOut]
    model: str
    top_k: int
    threshold: float


class ClusterRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    texts: Optional[list[str]] = Field(None, max_length=1_000)
    threshold: StrictFloat = 0.8


class ClusterMemberOut(BaseModel):
    text: str
    index: int


class ClusterResponse(BaseModel):
    clusters: list[list[ClusterMemberOut]]
    model: str
    threshold: float


class ErrorResponse(BaseModel):
    error: str


class HealthStatus(BaseModel):
    status: Literal["OK"] = "OK"
    timestamp: datetime
    model: str
