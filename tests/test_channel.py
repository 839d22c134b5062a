"""Tests for the WebSocket channel (concurrent requests correlated by requestId)."""

from __future__ import annotations

import pytest
from starlette.testclient import TestClient

from embedding_gateway.api import create_app
from embedding_gateway.errors import ProviderError


WS_PATH = "/api/ws"


@pytest.fixture
def ws_client(app):
    return TestClient(app)


def test_generate_embedding_replies_with_request_id(ws_client):
    with ws_client.websocket_connect(WS_PATH) as ws:
        ws.send_json({"op": "generate-embedding", "text": "neural networks", "requestId": "r1"})
        reply = ws.receive_json()
    assert reply == {
        "op": "embedding-result",
        "embedding": [0.6, 0.8, 0.0],
        "model": "stub-model",
        "requestId": "r1",
    }


def test_generate_embedding_batch(ws_client):
    with ws_client.websocket_connect(WS_PATH) as ws:
        ws.send_json(
            {"op": "generate-embedding", "texts": ["cooking recipes", "neural networks"], "requestId": 7}
        )
        reply = ws.receive_json()
    assert reply["op"] == "embedding-result"
    assert reply["embeddings"] == [[0.0, 1.0, 0.0], [0.6, 0.8, 0.0]]
    assert reply["requestId"] == 7


def test_concurrent_requests_reply_in_completion_order_without_swapping(make_gateway):
    gateway, provider = make_gateway(
        {"alpha text": (1.0, 0.0), "beta text": (0.0, 1.0)},
        delays={"alpha text": 0.3},
    )
    client = TestClient(create_app(gateway=gateway))
    with client.websocket_connect(WS_PATH) as ws:
        ws.send_json({"op": "generate-embedding", "text": "alpha text", "requestId": "A"})
        ws.send_json({"op": "generate-embedding", "text": "beta text", "requestId": "B"})
        first = ws.receive_json()
        second = ws.receive_json()

    assert first["requestId"] == "B"
    assert first["embedding"] == [0.0, 1.0]
    assert second["requestId"] == "A"
    assert second["embedding"] == [1.0, 0.0]
    assert provider.completed == ["beta text", "alpha text"]


def test_requests_on_one_connection_are_not_serialized(make_gateway):
    texts = [f"slow {i}" for i in range(4)]
    gateway, provider = make_gateway(delays={t: 0.2 for t in texts})
    client = TestClient(create_app(gateway=gateway))
    with client.websocket_connect(WS_PATH) as ws:
        for i, t in enumerate(texts):
            ws.send_json({"op": "generate-embedding", "text": t, "requestId": i})
        replies = [ws.receive_json() for _ in texts]

    assert sorted(r["requestId"] for r in replies) == [0, 1, 2, 3]
    assert provider.max_active == 4


def test_find_similar_over_channel(ws_client):
    with ws_client.websocket_connect(WS_PATH) as ws:
        ws.send_json(
            {
                "op": "find-similar",
                "query": "machine learning basics",
                "candidates": ["deep learning intro", "cooking recipes", "neural networks"],
                "threshold": 0.5,
                "requestId": "sim-1",
            }
        )
        reply = ws.receive_json()
    assert reply["op"] == "similarity-result"
    assert reply["requestId"] == "sim-1"
    assert reply["threshold"] == 0.5
    assert [r["text"] for r in reply["results"]] == ["deep learning intro", "neural networks"]


def test_find_similar_missing_fields_is_similarity_error(ws_client):
    with ws_client.websocket_connect(WS_PATH) as ws:
        ws.send_json({"op": "find-similar", "query": "q", "requestId": "bad-1"})
        reply = ws.receive_json()
    assert reply["op"] == "similarity-error"
    assert reply["requestId"] == "bad-1"
    assert "candidates" in reply["error"]


@pytest.mark.parametrize(
    "op,fields,error_op",
    [
        ("find-similar", {"query": "q", "candidates": ["a"], "threshold": True}, "similarity-error"),
        ("find-similar", {"query": "q", "candidates": ["a"], "threshold": "0.5"}, "similarity-error"),
        (
            "semantic-search",
            {"query": "q", "documents": [{"id": "d", "content": "c"}], "top_k": True},
            "search-error",
        ),
        ("cluster-texts", {"texts": ["a", "b"], "threshold": False}, "cluster-error"),
    ],
)
def test_non_numeric_options_are_rejected(ws_client, gateway_and_provider, op, fields, error_op):
    _, provider = gateway_and_provider
    with ws_client.websocket_connect(WS_PATH) as ws:
        ws.send_json({"op": op, "requestId": "strict", **fields})
        reply = ws.receive_json()
    assert reply["op"] == error_op
    assert reply["requestId"] == "strict"
    assert provider.calls == []


def test_generate_without_text_is_embedding_error(ws_client):
    with ws_client.websocket_connect(WS_PATH) as ws:
        ws.send_json({"op": "generate-embedding", "requestId": "empty"})
        reply = ws.receive_json()
    assert reply["op"] == "embedding-error"
    assert reply["requestId"] == "empty"
    assert "error" in reply


def test_wrong_field_type_is_reported_not_fatal(ws_client):
    with ws_client.websocket_connect(WS_PATH) as ws:
        ws.send_json({"op": "generate-embedding", "texts": "nope", "requestId": "t1"})
        reply = ws.receive_json()
        assert reply["op"] == "embedding-error"
        assert reply["requestId"] == "t1"
        ws.send_json({"op": "generate-embedding", "text": "neural networks", "requestId": "t2"})
        assert ws.receive_json()["requestId"] == "t2"


def test_provider_failure_is_tagged_with_request_id(make_gateway):
    gateway, _ = make_gateway(failures={"broken": ProviderError("Embedding provider returned 500")})
    client = TestClient(create_app(gateway=gateway))
    with client.websocket_connect(WS_PATH) as ws:
        ws.send_json({"op": "generate-embedding", "text": "broken", "requestId": "x-1"})
        reply = ws.receive_json()
    assert reply == {
        "op": "embedding-error",
        "error": "Embedding provider returned 500",
        "requestId": "x-1",
    }


def test_semantic_search_and_cluster_ops(ws_client):
    with ws_client.websocket_connect(WS_PATH) as ws:
        ws.send_json(
            {
                "op": "semantic-search",
                "query": "machine learning basics",
                "documents": [
                    {"id": "d1", "content": "neural networks"},
                    {"id": "d2", "content": "cooking recipes"},
                ],
                "top_k": 3,
                "threshold": 0.5,
                "requestId": "s",
            }
        )
        search = ws.receive_json()
        ws.send_json(
            {
                "op": "cluster-texts",
                "texts": ["machine learning basics", "deep learning intro"],
                "threshold": 0.9,
                "requestId": "c",
            }
        )
        cluster = ws.receive_json()

    assert search["op"] == "search-result"
    assert search["requestId"] == "s"
    assert [h["document"]["id"] for h in search["results"]] == ["d1"]
    assert cluster["op"] == "cluster-result"
    assert cluster["requestId"] == "c"
    assert len(cluster["clusters"]) == 1


def test_unknown_op_echoes_request_id(ws_client):
    with ws_client.websocket_connect(WS_PATH) as ws:
        ws.send_json({"op": "translate", "requestId": "u1"})
        reply = ws.receive_json()
    assert reply["op"] == "error"
    assert reply["requestId"] == "u1"
    assert "translate" in reply["error"]


def test_invalid_json_keeps_connection_open(ws_client):
    with ws_client.websocket_connect(WS_PATH) as ws:
        ws.send_text("{not json")
        reply = ws.receive_json()
        assert reply == {"op": "error", "error": "Message is not valid JSON", "requestId": None}
        ws.send_json(["not", "an", "object"])
        assert ws.receive_json()["error"] == "Message must be a JSON object"
        ws.send_json({"op": "generate-embedding", "text": "neural networks", "requestId": "after"})
        assert ws.receive_json()["requestId"] == "after"


def test_missing_request_id_is_echoed_as_null(ws_client):
    with ws_client.websocket_connect(WS_PATH) as ws:
        ws.send_json({"op": "generate-embedding", "text": "neural networks"})
        reply = ws.receive_json()
    assert reply["op"] == "embedding-result"
    assert reply["requestId"] is None


def test_disconnect_cancels_in_flight_requests(make_gateway):
    gateway, provider = make_gateway(delays={"never finishes": 30.0})
    client = TestClient(create_app(gateway=gateway))
    with client.websocket_connect(WS_PATH) as ws:
        ws.send_json({"op": "generate-embedding", "text": "never finishes", "requestId": "slow"})
        # Round-trip a fast request so the slow one is known to be in flight.
        ws.send_json({"op": "generate-embedding", "text": "quick", "requestId": "fast"})
        assert ws.receive_json()["requestId"] == "fast"
    assert provider.cancelled == ["never finishes"]
    assert "never finishes" not in provider.completed
