"""Tests for hybrid retrieval and score fusion."""

from __future__ import annotations

import asyncio

import numpy as np
import pytest

from course_rag.errors import EmbeddingError, QueryCancelled, RetrievalError
from course_rag.retrieval.retriever import HybridRetriever, fuse_rrf, fuse_weighted
from course_rag.schemas import DocumentStatus
from course_rag.serving.pipeline import RAGPipeline
from tests.factories import PHOTOSYNTHESIS_TEXT, REVOLUTION_TEXT, make_chunk, make_request

pytestmark = pytest.mark.anyio


def test_weighted_fusion_matches_worked_example() -> None:
    a = make_chunk("vector only", chunk_index=0)
    b = make_chunk("keyword only", chunk_index=1)
    c = make_chunk("best keyword", chunk_index=2)

    fused = fuse_weighted(dense=[(a, 0.9)], sparse=[(c, 10.0), (b, 3.0)])
    scores = {cand.chunk_id: cand.fused_score for cand in fused}

    assert scores[a.chunk_id] == pytest.approx(0.63)
    assert scores[b.chunk_id] == pytest.approx(0.09)
    assert scores[c.chunk_id] == pytest.approx(0.3)
    assert [cand.chunk_id for cand in fused] == [a.chunk_id, c.chunk_id, b.chunk_id]


def test_weighted_fusion_clamps_cosine_and_combines_lists() -> None:
    a = make_chunk("both lists", chunk_index=0)
    b = make_chunk("negative cosine", chunk_index=1)

    fused = fuse_weighted(dense=[(a, 0.5), (b, -0.4)], sparse=[(a, 2.0)])
    by_id = {cand.chunk_id: cand for cand in fused}

    assert by_id[a.chunk_id].vector_score == pytest.approx(0.5)
    assert by_id[a.chunk_id].keyword_score == pytest.approx(1.0)
    assert by_id[a.chunk_id].fused_score == pytest.approx(0.7 * 0.5 + 0.3)
    assert by_id[b.chunk_id].vector_score == 0.0
    assert by_id[b.chunk_id].fused_score == 0.0


def test_ties_break_in_creation_order() -> None:
    late = make_chunk("same", document_id="doc-b", chunk_index=0, document_sequence=1)
    early_second = make_chunk("same", document_id="doc-a", chunk_index=1, document_sequence=0)
    early_first = make_chunk("same", document_id="doc-a", chunk_index=0, document_sequence=0)

    fused = fuse_weighted(dense=[(late, 0.5), (early_second, 0.5), (early_first, 0.5)], sparse=[])
    assert [c.chunk_id for c in fused] == [early_first.chunk_id, early_second.chunk_id, late.chunk_id]


def test_rrf_fusion_scales_to_unit_ceiling() -> None:
    a = make_chunk("top in both", chunk_index=0)
    b = make_chunk("second dense", chunk_index=1)

    fused = fuse_rrf(dense=[(a, 0.8), (b, 0.6)], sparse=[(a, 4.0)])

    assert fused[0].chunk_id == a.chunk_id
    assert fused[0].fused_score == pytest.approx(1.0)
    assert fused[1].fused_score == pytest.approx((0.7 / 61) / (1.0 / 60))


async def test_retrieve_finds_definition_sentence(pipeline: RAGPipeline) -> None:
    await pipeline.ingestion.ingest(make_request("bio", text=PHOTOSYNTHESIS_TEXT))
    await pipeline.ingestion.ingest(make_request("hist", text=REVOLUTION_TEXT))

    candidates = await pipeline.retriever.retrieve("bio-101", "What is photosynthesis?")

    assert candidates[0].chunk.document_id == "bio"
    assert candidates[0].fused_score > pipeline.config.retrieval.min_relevance
    assert len(candidates) <= pipeline.config.retrieval.initial_k


async def test_retrieve_ignores_documents_not_completed(pipeline: RAGPipeline) -> None:
    await pipeline.ingestion.ingest(make_request("bio"))
    pipeline.store.set_status("bio", DocumentStatus.PROCESSING)

    assert await pipeline.retriever.retrieve("bio-101", "What is photosynthesis?") == []


async def test_retrieve_empty_collection(pipeline: RAGPipeline) -> None:
    assert await pipeline.retriever.retrieve("empty-class", "anything at all?") == []


class _FailingEmbedder:
    dimensions = 512

    async def embed_texts(self, texts: list[str]) -> np.ndarray:
        raise EmbeddingError("embedding service down")

    async def embed_query(self, text: str) -> np.ndarray:
        raise EmbeddingError("embedding service down")


class _SlowEmbedder(_FailingEmbedder):
    async def embed_query(self, text: str) -> np.ndarray:
        await asyncio.sleep(5)
        return np.zeros(self.dimensions, dtype=np.float32)


def _retriever_with(pipeline: RAGPipeline, embedder, **kwargs) -> HybridRetriever:
    return HybridRetriever(pipeline.index, pipeline.store, embedder, **kwargs)


async def test_query_embedding_failure_raises_retrieval_error(pipeline: RAGPipeline) -> None:
    await pipeline.ingestion.ingest(make_request("bio"))
    retriever = _retriever_with(pipeline, _FailingEmbedder())

    with pytest.raises(RetrievalError) as exc_info:
        await retriever.retrieve("bio-101", "What is photosynthesis?")
    assert "try again" in exc_info.value.user_message


async def test_query_embedding_timeout_raises_retrieval_error(pipeline: RAGPipeline) -> None:
    await pipeline.ingestion.ingest(make_request("bio"))
    retriever = _retriever_with(pipeline, _SlowEmbedder(), embedding_timeout_s=0.05)

    with pytest.raises(RetrievalError):
        await retriever.retrieve("bio-101", "What is photosynthesis?")


async def test_cancelled_query_stops_before_embedding(pipeline: RAGPipeline) -> None:
    await pipeline.ingestion.ingest(make_request("bio"))
    cancel = asyncio.Event()
    cancel.set()

    with pytest.raises(QueryCancelled):
        await pipeline.retriever.retrieve("bio-101", "What is photosynthesis?", cancel_event=cancel)


async def test_single_document_class_gets_keyword_score(pipeline: RAGPipeline) -> None:
    await pipeline.ingestion.ingest(make_request("bio", text=PHOTOSYNTHESIS_TEXT))

    candidates = await pipeline.retriever.retrieve("bio-101", "What is photosynthesis?")

    assert len(candidates) == 1
    assert candidates[0].keyword_score == pytest.approx(1.0)
    assert candidates[0].fused_score == pytest.approx(0.7 * candidates[0].vector_score + 0.3)
