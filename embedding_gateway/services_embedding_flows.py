"""Request-level operations shared by the HTTP routes and the WebSocket channel.

Each flow takes a parsed request model, checks the cross-field rules the
model cannot express, calls the gateway and returns a response model.
Transports only translate their envelope to and from these calls.
"""

from __future__ import annotations

from typing import Any, Mapping, Sequence, Type, TypeVar

from pydantic import BaseModel, ValidationError

from .domain.embeddings import SearchDocument
from .errors import InvalidInputError
from .schemas import (
    ClusterMemberOut,
    ClusterRequest,
    ClusterResponse,
    GenerateEmbeddingRequest,
    GenerateEmbeddingResponse,
    SearchDocumentIn,
    SearchHitOut,
    SearchRequest,
    SearchResponse,
    SimilarityRequest,
    SimilarityResponse,
    SimilarityResultOut,
)
from .services_embeddings import EmbeddingGateway

ModelT = TypeVar("ModelT", bound=BaseModel)

GENERATE_USAGE = 'Please provide either "text" or "texts" parameter'
SIMILARITY_USAGE = 'Please provide "query" and "candidates" array'
SEARCH_USAGE = 'Please provide "query" and "documents" array'
CLUSTER_USAGE = 'Please provide "texts" array'


def describe_validation_errors(errors: Sequence[Mapping[str, Any]]) -> str:
    parts = []
    for err in errors:
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "Invalid request: " + "; ".join(parts)


def parse_request(model: Type[ModelT], data: Mapping[str, Any]) -> ModelT:
    """Validate a raw message body, reporting failures as InvalidInputError."""
    try:
        return model.model_validate(dict(data))
    except ValidationError as exc:
        raise InvalidInputError(describe_validation_errors(exc.errors())) from exc


async def run_generate_flow(
    gateway: EmbeddingGateway, payload: GenerateEmbeddingRequest
) -> GenerateEmbeddingResponse:
    has_text = payload.text is not None
    has_texts = payload.texts is not None
    if has_text == has_texts:
        raise InvalidInputError(GENERATE_USAGE)
    if has_text:
        vector = await gateway.embed_one(payload.text)
        return GenerateEmbeddingResponse(embedding=list(vector), model=gateway.model)
    vectors = await gateway.embed_many(payload.texts)
    return GenerateEmbeddingResponse(embeddings=[list(v) for v in vectors], model=gateway.model)


async def run_similarity_flow(
    gateway: EmbeddingGateway, payload: SimilarityRequest
) -> SimilarityResponse:
    if payload.query is None or payload.candidates is None:
        raise InvalidInputError(SIMILARITY_USAGE)
    threshold = gateway.default_threshold if payload.threshold is None else payload.threshold
    results = await gateway.find_similar(payload.query, payload.candidates, threshold)
    return SimilarityResponse(
        results=[
            SimilarityResultOut(text=r.text, similarity=r.similarity, index=r.index)
            for r in results
        ],
        model=gateway.model,
        threshold=threshold,
    )


async def run_search_flow(gateway: EmbeddingGateway, payload: SearchRequest) -> SearchResponse:
    if payload.query is None or payload.documents is None:
        raise InvalidInputError(SEARCH_USAGE)
    documents = [
        SearchDocument(id=d.id, content=d.content, metadata=d.metadata) for d in payload.documents
    ]
    hits = await gateway.semantic_search(
        payload.query, documents, top_k=payload.top_k, threshold=payload.threshold
    )
    return SearchResponse(
        results=[
            SearchHitOut(
                document=SearchDocumentIn(
                    id=h.document.id, content=h.document.content, metadata=h.document.metadata
                ),
                similarity=h.similarity,
            )
            for h in hits
        ],
        model=gateway.model,
        top_k=payload.top_k,
        threshold=payload.threshold,
    )


async def run_cluster_flow(gateway: EmbeddingGateway, payload: ClusterRequest) -> ClusterResponse:
    if payload.texts is None:
        raise InvalidInputError(CLUSTER_USAGE)
    clusters = await gateway.cluster_texts(payload.texts, threshold=payload.threshold)
    return ClusterResponse(
        clusters=[[ClusterMemberOut(text=m.text, index=m.index) for m in c] for c in clusters],
        model=gateway.model,
        threshold=payload.threshold,
    )
