from __future__ import annotations

import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, TypeVar

from fastapi import APIRouter, Depends, FastAPI, Request, WebSocket, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse, Response
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from .channel import ChannelSession
from .core.config import get_settings
from .core.logging import configure_logging, get_logger
from .core.metrics import (
    GATEWAY_OPERATIONS,
    REQUEST_COUNT,
    REQUEST_LATENCY,
    get_metrics,
    metrics_content_type,
)
from .core.redis import check_rate_limit, close_redis, ping_redis
from .errors import EmbeddingError
from .schemas import (
    ClusterRequest,
    ClusterResponse,
    ErrorResponse,
    GenerateEmbeddingRequest,
    GenerateEmbeddingResponse,
    HealthStatus,
    SearchRequest,
    SearchResponse,
    SimilarityRequest,
    SimilarityResponse,
)
from .services_embedding_flows import (
    describe_validation_errors,
    run_cluster_flow,
    run_generate_flow,
    run_search_flow,
    run_similarity_flow,
)
from .services_embedding_provider import build_embedding_provider
from .services_embeddings import EmbeddingGateway


logger = get_logger(__name__)

PayloadT = TypeVar("PayloadT", bound=BaseModel)
ResponseT = TypeVar("ResponseT", bound=BaseModel)

_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
    504: {"model": ErrorResponse},
}


def build_gateway() -> EmbeddingGateway:
    settings = get_settings()
    return EmbeddingGateway(
        build_embedding_provider(settings),
        max_concurrency=settings.embedding_max_concurrency,
        default_threshold=settings.default_similarity_threshold,
    )


def get_gateway(request: Request) -> EmbeddingGateway:
    return request.app.state.gateway


def create_app(gateway: EmbeddingGateway | None = None) -> FastAPI:
    configure_logging()

    settings = get_settings()
    owns_gateway = gateway is None
    if gateway is None:
        gateway = build_gateway()

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        logger.info(
            "app.startup",
            provider=gateway.provider.name,
            model=gateway.model,
            max_concurrency=gateway.max_concurrency,
            redis=await ping_redis(),
        )
        yield
        if owns_gateway:
            await gateway.provider.aclose()
        await close_redis()
        logger.info("app.shutdown")

    app = FastAPI(
        title=settings.app_name,
        version="0.1.0",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.state.gateway = gateway
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    if settings.enable_prometheus:

        @app.middleware("http")
        async def metrics_middleware(request: Request, call_next):
            start = time.perf_counter()
            response = await call_next(request)
            elapsed = time.perf_counter() - start
            path = request.scope.get("path", "")
            method = request.method
            REQUEST_LATENCY.labels(method=method, path=path).observe(elapsed)
            REQUEST_COUNT.labels(method=method, path=path, status=response.status_code).inc()
            return response

        @app.get("/metrics", include_in_schema=False)
        async def metrics() -> Response:
            return Response(content=get_metrics(), media_type=metrics_content_type())

    if settings.redis_url:

        @app.middleware("http")
        async def rate_limit_middleware(request: Request, call_next):
            if not request.url.path.startswith(f"{settings.api_prefix}/"):
                return await call_next(request)
            client_id = request.client.host if request.client else "unknown"
            if not await check_rate_limit(
                client_id, limit=settings.rate_limit_per_minute, window_seconds=60
            ):
                return ORJSONResponse(
                    status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                    content={"error": "Rate limit exceeded. Try again later."},
                )
            return await call_next(request)

    @app.exception_handler(EmbeddingError)
    async def embedding_error_handler(request: Request, exc: EmbeddingError) -> ORJSONResponse:
        logger.warning(
            "http.embedding_error",
            path=request.url.path,
            status_code=exc.http_status,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        return ORJSONResponse(status_code=exc.http_status, content={"error": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(_: Request, exc: RequestValidationError) -> ORJSONResponse:
        return ORJSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": describe_validation_errors(exc.errors())},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(_: Request, exc: StarletteHTTPException) -> ORJSONResponse:
        return ORJSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(_: Request, exc: Exception) -> ORJSONResponse:
        logger.error("app.unhandled_error", error=str(exc), exc_info=True)
        return ORJSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal server error"},
        )

    api_router = APIRouter(prefix=settings.api_prefix)

    async def _run_flow(
        op: str,
        flow: Callable[[EmbeddingGateway, PayloadT], Awaitable[ResponseT]],
        gw: EmbeddingGateway,
        payload: PayloadT,
    ) -> ResponseT:
        try:
            result = await flow(gw, payload)
        except EmbeddingError:
            GATEWAY_OPERATIONS.labels(op=op, transport="http", outcome="error").inc()
            raise
        GATEWAY_OPERATIONS.labels(op=op, transport="http", outcome="success").inc()
        return result

    @api_router.get("/health", response_model=HealthStatus)
    async def health(gw: EmbeddingGateway = Depends(get_gateway)) -> HealthStatus:
        return HealthStatus(timestamp=datetime.now(timezone.utc), model=gw.model)

    @api_router.post(
        "/embeddings/generate",
        response_model=GenerateEmbeddingResponse,
        response_model_exclude_none=True,
        responses=_ERROR_RESPONSES,
    )
    async def generate_embeddings(
        payload: GenerateEmbeddingRequest,
        gw: EmbeddingGateway = Depends(get_gateway),
    ) -> GenerateEmbeddingResponse:
        return await _run_flow("generate-embedding", run_generate_flow, gw, payload)

    @api_router.post(
        "/embeddings/similarity",
        response_model=SimilarityResponse,
        responses=_ERROR_RESPONSES,
    )
    async def find_similar(
        payload: SimilarityRequest,
        gw: EmbeddingGateway = Depends(get_gateway),
    ) -> SimilarityResponse:
        return await _run_flow("find-similar", run_similarity_flow, gw, payload)

    @api_router.post(
        "/embeddings/search",
        response_model=SearchResponse,
        responses=_ERROR_RESPONSES,
    )
    async def semantic_search(
        payload: SearchRequest,
        gw: EmbeddingGateway = Depends(get_gateway),
    ) -> SearchResponse:
        return await _run_flow("semantic-search", run_search_flow, gw, payload)

    @api_router.post(
        "/embeddings/cluster",
        response_model=ClusterResponse,
        responses=_ERROR_RESPONSES,
    )
    async def cluster_texts(
        payload: ClusterRequest,
        gw: EmbeddingGateway = Depends(get_gateway),
    ) -> ClusterResponse:
        return await _run_flow("cluster-texts", run_cluster_flow, gw, payload)

    @api_router.websocket("/ws")
    async def channel(websocket: WebSocket) -> None:
        await ChannelSession(websocket, websocket.app.state.gateway).run()

    app.include_router(api_router)

    return app
