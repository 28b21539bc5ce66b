"""Tests for the HTTP surface of the retrieval core."""

from __future__ import annotations

import asyncio
from pathlib import Path

import httpx
import pytest

import app.server as server
from course_rag.errors import QueryCancelled, RetrievalError
from course_rag.generation.prompts import RETRIEVAL_FAILURE_RESPONSE
from course_rag.schemas import DocumentStatus
from course_rag.serving.pipeline import RAGPipeline
from course_rag.settings import RAGConfig
from course_rag.storage.chunk_store import STORE_FILE
from tests.factories import PHOTOSYNTHESIS_TEXT, REVOLUTION_TEXT

pytestmark = pytest.mark.anyio


@pytest.fixture
def client(pipeline: RAGPipeline, monkeypatch) -> httpx.AsyncClient:
    """ASGI client bound to an offline pipeline; lifespan is not run."""
    monkeypatch.setattr(server, "_pipeline", pipeline)
    transport = httpx.ASGITransport(app=server.app)
    return httpx.AsyncClient(transport=transport, base_url="http://test")


def _document(document_id: str, text: str, collection_id: str = "bio-101") -> dict:
    return {
        "document_id": document_id,
        "collection_id": collection_id,
        "display_name": f"{document_id}.pdf",
        "raw_text": text,
    }


async def test_health_reports_index_state(client: httpx.AsyncClient) -> None:
    async with client:
        response = await client.get("/api/health")
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert payload["vectors"] == 0
    assert payload["reranker"] == "PassThroughReranker"


async def test_ingest_then_query_returns_context(client: httpx.AsyncClient, pipeline: RAGPipeline) -> None:
    async with client:
        ingest = await client.post("/api/documents", json=_document("bio", PHOTOSYNTHESIS_TEXT))
        assert ingest.status_code == 200
        assert ingest.json()["status"] == "completed"

        response = await client.post(
            "/api/query",
            json={"collection_id": "bio-101", "question": "What is photosynthesis?"},
        )

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert payload["context_blocks"][0]["file_name"] == "bio.pdf"
    assert payload["sources"][0]["document_id"] == "bio"
    assert (Path(pipeline.config.storage.index_dir) / STORE_FILE).exists()


async def test_failed_ingestion_is_reported_not_raised(client: httpx.AsyncClient) -> None:
    async with client:
        response = await client.post("/api/documents", json=_document("scan", "  "))
    assert response.status_code == 200
    assert response.json()["status"] == "failed"
    assert response.json()["error"]


async def test_unmatched_query_is_explicit_empty_result(client: httpx.AsyncClient) -> None:
    async with client:
        await client.post("/api/documents", json=_document("hist", REVOLUTION_TEXT))
        response = await client.post(
            "/api/query",
            json={"collection_id": "bio-101", "question": "What is photosynthesis?"},
        )
    assert response.status_code == 200
    assert response.json()["status"] == "no_relevant_materials"
    assert response.json()["reason"] == "below_relevance_floor"


async def test_empty_question_is_rejected(client: httpx.AsyncClient) -> None:
    async with client:
        response = await client.post("/api/query", json={"collection_id": "bio-101", "question": "   "})
    assert response.status_code == 422


async def test_delete_unknown_document_is_404(client: httpx.AsyncClient) -> None:
    async with client:
        response = await client.delete("/api/documents/missing")
    assert response.status_code == 404


async def test_delete_removes_document(client: httpx.AsyncClient, pipeline: RAGPipeline) -> None:
    async with client:
        await client.post("/api/documents", json=_document("bio", PHOTOSYNTHESIS_TEXT))
        response = await client.delete("/api/documents/bio")
    assert response.status_code == 200
    assert response.json() == {"document_id": "bio", "deleted": True}
    assert pipeline.index.total_vectors == 0


async def test_retrieval_failure_maps_to_503(client: httpx.AsyncClient, pipeline: RAGPipeline, monkeypatch) -> None:
    async def _boom(request, cancel_event=None):
        raise RetrievalError("embedding service down")

    monkeypatch.setattr(pipeline, "retrieve_context", _boom)
    async with client:
        response = await client.post(
            "/api/query",
            json={"collection_id": "bio-101", "question": "What is photosynthesis?"},
        )
    assert response.status_code == 503
    assert response.json()["detail"] == RetrievalError.user_message == RETRIEVAL_FAILURE_RESPONSE


async def test_requests_before_startup_get_503(monkeypatch) -> None:
    monkeypatch.setattr(server, "_pipeline", None)
    transport = httpx.ASGITransport(app=server.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/api/health")
    assert response.status_code == 503


async def test_failed_reingest_is_persisted(client: httpx.AsyncClient, config: RAGConfig) -> None:
    async with client:
        first = await client.post("/api/documents", json=_document("bio", PHOTOSYNTHESIS_TEXT))
        assert first.json()["status"] == "completed"
        again = await client.post("/api/documents", json=_document("bio", "Too short."))
        assert again.json()["status"] == "failed"

    reloaded = RAGPipeline.from_config(config)
    assert reloaded.store.get_document("bio").status == DocumentStatus.FAILED
    assert reloaded.store.get_children("bio") == []
    assert reloaded.index.total_vectors == 0


class _GoneRequest:
    def __init__(self, after: int = 0) -> None:
        self.after = after
        self.calls = 0

    async def is_disconnected(self) -> bool:
        self.calls += 1
        return self.calls > self.after


async def test_disconnect_watcher_sets_cancel_event() -> None:
    cancel_event = asyncio.Event()
    gone = _GoneRequest(after=2)

    await asyncio.wait_for(server.watch_disconnect(gone, cancel_event, interval=0), timeout=1)

    assert cancel_event.is_set()
    assert gone.calls == 3


async def test_disconnected_query_is_cancelled(
    client: httpx.AsyncClient, pipeline: RAGPipeline, monkeypatch
) -> None:
    async def _client_gone(http_request, cancel_event, interval=0.1):
        cancel_event.set()

    async def _wait_for_cancel(request, cancel_event=None):
        await asyncio.wait_for(cancel_event.wait(), timeout=1)
        raise QueryCancelled("Query cancelled before query embedding")

    monkeypatch.setattr(server, "watch_disconnect", _client_gone)
    monkeypatch.setattr(pipeline, "retrieve_context", _wait_for_cancel)
    async with client:
        response = await client.post(
            "/api/query",
            json={"collection_id": "bio-101", "question": "What is photosynthesis?"},
        )
    assert response.status_code == 499
