"""Persistent WebSocket channel for embedding operations.

Clients send JSON frames ``{"op": ..., "requestId": ..., ...fields}``. Every
frame is handled in its own task, so requests on one connection run
concurrently and replies arrive in completion order, each tagged with the
``requestId`` it answers.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Coroutine, Type

import orjson
from pydantic import BaseModel
from starlette.websockets import WebSocket, WebSocketDisconnect

from .core.logging import get_logger
from .core.metrics import CHANNEL_CONNECTIONS, CHANNEL_IN_FLIGHT, GATEWAY_OPERATIONS
from .errors import EmbeddingError
from .schemas import ClusterRequest, GenerateEmbeddingRequest, SearchRequest, SimilarityRequest
from .services_embedding_flows import (
    parse_request,
    run_cluster_flow,
    run_generate_flow,
    run_search_flow,
    run_similarity_flow,
)
from .services_embeddings import EmbeddingGateway


logger = get_logger(__name__)


@dataclass(frozen=True)
class ChannelOperation:
    request_model: Type[BaseModel]
    run: Callable[[EmbeddingGateway, Any], Awaitable[BaseModel]]
    result_op: str
    error_op: str


CHANNEL_OPERATIONS: dict[str, ChannelOperation] = {
    "generate-embedding": ChannelOperation(
        GenerateEmbeddingRequest, run_generate_flow, "embedding-result", "embedding-error"
    ),
    "find-similar": ChannelOperation(
        SimilarityRequest, run_similarity_flow, "similarity-result", "similarity-error"
    ),
    "semantic-search": ChannelOperation(
        SearchRequest, run_search_flow, "search-result", "search-error"
    ),
    "cluster-texts": ChannelOperation(
        ClusterRequest, run_cluster_flow, "cluster-result", "cluster-error"
    ),
}

GENERIC_ERROR_OP = "error"


class ChannelSession:
    """One accepted WebSocket connection and the requests in flight on it."""

    def __init__(self, websocket: WebSocket, gateway: EmbeddingGateway) -> None:
        self._ws = websocket
        self._gateway = gateway
        self._send_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task[None]] = set()
        self.session_id = uuid.uuid4().hex[:12]

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def run(self) -> None:
        await self._ws.accept()
        CHANNEL_CONNECTIONS.inc()
        logger.info("channel.connected", session_id=self.session_id)
        try:
            while True:
                message = await self._ws.receive()
                if message["type"] == "websocket.disconnect":
                    logger.info(
                        "channel.disconnected",
                        session_id=self.session_id,
                        code=message.get("code"),
                        in_flight=self.in_flight,
                    )
                    break
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes") or b""
                self._dispatch(raw)
        except WebSocketDisconnect as exc:
            logger.info(
                "channel.disconnected",
                session_id=self.session_id,
                code=exc.code,
                in_flight=self.in_flight,
            )
        finally:
            await self._cancel_in_flight()
            CHANNEL_CONNECTIONS.dec()

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _dispatch(self, raw: str | bytes) -> None:
        try:
            message = orjson.loads(raw)
        except orjson.JSONDecodeError:
            self._spawn(self._send_error(GENERIC_ERROR_OP, "Message is not valid JSON", None))
            return
        if not isinstance(message, dict):
            self._spawn(self._send_error(GENERIC_ERROR_OP, "Message must be a JSON object", None))
            return

        request_id = message.get("requestId")
        op = message.get("op")
        operation = CHANNEL_OPERATIONS.get(op) if isinstance(op, str) else None
        if operation is None:
            logger.warning("channel.unknown_op", session_id=self.session_id, op=op, request_id=request_id)
            self._spawn(self._send_error(GENERIC_ERROR_OP, f"Unknown op: {op!r}", request_id))
            return
        self._spawn(self._handle(op, operation, message, request_id))

    async def _handle(
        self,
        op: str,
        operation: ChannelOperation,
        message: dict[str, Any],
        request_id: Any,
    ) -> None:
        CHANNEL_IN_FLIGHT.inc()
        try:
            payload = parse_request(operation.request_model, message)
            response = await operation.run(self._gateway, payload)
        except EmbeddingError as exc:
            GATEWAY_OPERATIONS.labels(op=op, transport="channel", outcome="error").inc()
            logger.warning(
                "channel.request_failed",
                session_id=self.session_id,
                op=op,
                request_id=request_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            reply = {"op": operation.error_op, "error": str(exc), "requestId": request_id}
        except Exception as exc:  # noqa: BLE001
            GATEWAY_OPERATIONS.labels(op=op, transport="channel", outcome="error").inc()
            logger.error(
                "channel.unhandled_error",
                session_id=self.session_id,
                op=op,
                request_id=request_id,
                error=str(exc),
                exc_info=True,
            )
            reply = {"op": operation.error_op, "error": "Internal server error", "requestId": request_id}
        else:
            GATEWAY_OPERATIONS.labels(op=op, transport="channel", outcome="success").inc()
            reply = {
                "op": operation.result_op,
                **response.model_dump(mode="json", exclude_none=True),
                "requestId": request_id,
            }
        finally:
            CHANNEL_IN_FLIGHT.dec()
        await self._send(reply)

    async def _send_error(self, op: str, error: str, request_id: Any) -> None:
        await self._send({"op": op, "error": error, "requestId": request_id})

    async def _send(self, message: dict[str, Any]) -> None:
        async with self._send_lock:
            try:
                await self._ws.send_text(orjson.dumps(message).decode())
            except (WebSocketDisconnect, RuntimeError) as exc:
                # Peer went away between completion and reply; nothing to deliver.
                logger.info(
                    "channel.reply_dropped",
                    session_id=self.session_id,
                    request_id=message.get("requestId"),
                    error=str(exc),
                )

    async def _cancel_in_flight(self) -> None:
        if not self._tasks:
            return
        pending = list(self._tasks)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        logger.info("channel.cancelled_in_flight", session_id=self.session_id, cancelled=len(pending))
