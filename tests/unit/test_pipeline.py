"""End-to-end tests for the query pipeline over hash embeddings."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from course_rag.errors import GenerationError, QueryCancelled
from course_rag.generation.generator import GenerationRequest
from course_rag.generation.prompts import NO_CONTEXT_RESPONSE
from course_rag.retrieval.reranker import ModelReranker
from course_rag.schemas import ConversationMessage, NoRelevantMaterials, QueryRequest, RetrievedContext
from course_rag.serving.pipeline import RAGPipeline
from course_rag.settings import RAGConfig
from tests.factories import PHOTOSYNTHESIS_TEXT, REVOLUTION_TEXT, make_request

pytestmark = pytest.mark.anyio


class _RecordingGenerator:
    def __init__(self, answer: str = "Photosynthesis turns light into chemical energy [1].") -> None:
        self.answer = answer
        self.requests: list[GenerationRequest] = []

    async def generate(self, request: GenerationRequest) -> str:
        self.requests.append(request)
        return self.answer


class _FailingGenerator:
    async def generate(self, request: GenerationRequest) -> str:
        raise ConnectionError("upstream closed")


def _question(text: str = "What is photosynthesis?", collection: str = "bio-101", history=None) -> QueryRequest:
    return QueryRequest(collection_id=collection, question=text, conversation_history=history or [])


async def test_definition_question_retrieves_defining_material(pipeline: RAGPipeline) -> None:
    await pipeline.ingestion.ingest(make_request("bio", text=PHOTOSYNTHESIS_TEXT, display_name="plants.pdf"))
    await pipeline.ingestion.ingest(make_request("hist", text=REVOLUTION_TEXT))

    result = await pipeline.retrieve_context(_question())

    assert isinstance(result, RetrievedContext)
    assert result.status == "ok"
    assert [b.document_id for b in result.context_blocks] == ["bio"]
    assert result.context_blocks[0].content == PHOTOSYNTHESIS_TEXT
    assert result.sources[0].file_name == "plants.pdf"
    assert result.sources[0].similarity > pipeline.config.retrieval.min_relevance
    assert not result.rerank_fallback


async def test_empty_collection_signals_no_documents(pipeline: RAGPipeline) -> None:
    result = await pipeline.retrieve_context(_question(collection="empty-class"))

    assert isinstance(result, NoRelevantMaterials)
    assert result.status == "no_relevant_materials"
    assert result.reason == "no_documents"


async def test_unrelated_question_is_below_relevance_floor(pipeline: RAGPipeline) -> None:
    await pipeline.ingestion.ingest(make_request("hist", text=REVOLUTION_TEXT))

    result = await pipeline.retrieve_context(_question())

    assert isinstance(result, NoRelevantMaterials)
    assert result.reason == "below_relevance_floor"


async def test_other_collections_are_never_searched(pipeline: RAGPipeline) -> None:
    await pipeline.ingestion.ingest(make_request("bio", collection_id="bio-101", text=PHOTOSYNTHESIS_TEXT))
    await pipeline.ingestion.ingest(make_request("bio-copy", collection_id="bio-102", text=PHOTOSYNTHESIS_TEXT))

    result = await pipeline.retrieve_context(_question(collection="bio-102"))

    assert isinstance(result, RetrievedContext)
    assert {s.document_id for s in result.sources} == {"bio-copy"}


async def test_reranker_fallback_is_reported(config: RAGConfig) -> None:
    class _Broken:
        async def score(self, query, passages):
            raise RuntimeError("model unavailable")

    pipeline = RAGPipeline.from_config(config, reranker=ModelReranker(_Broken()), load_existing=False)
    await pipeline.ingestion.ingest(make_request("bio"))

    result = await pipeline.retrieve_context(_question())

    assert isinstance(result, RetrievedContext)
    assert result.rerank_fallback
    assert result.context_blocks


async def test_cancelled_query_raises(pipeline: RAGPipeline) -> None:
    await pipeline.ingestion.ingest(make_request("bio"))
    cancel = asyncio.Event()
    cancel.set()
    with pytest.raises(QueryCancelled):
        await pipeline.retrieve_context(_question(), cancel_event=cancel)


async def test_answer_builds_prompt_with_context_and_recent_history(pipeline: RAGPipeline) -> None:
    await pipeline.ingestion.ingest(make_request("bio", display_name="plants.pdf"))
    history = [
        ConversationMessage(role="user" if i % 2 == 0 else "assistant", content=f"turn {i}")
        for i in range(12)
    ]
    generator = _RecordingGenerator()

    result = await pipeline.answer(_question(history=history), generator)

    assert result.outcome == "answered"
    assert result.answer == generator.answer
    assert result.sources and result.sources[0].document_id == "bio"

    request = generator.requests[0]
    assert request.messages[0]["role"] == "system"
    assert "[1] plants.pdf" in request.system_prompt
    assert PHOTOSYNTHESIS_TEXT in request.system_prompt
    assert [m["content"] for m in request.messages[1:-1]] == [f"turn {i}" for i in range(2, 12)]
    assert request.messages[-1] == {"role": "user", "content": "What is photosynthesis?"}
    assert result.to_dict()["latency_ms"]["total"] >= 0


async def test_answer_without_materials_skips_generator(pipeline: RAGPipeline) -> None:
    generator = _RecordingGenerator()
    result = await pipeline.answer(_question(collection="empty-class"), generator)

    assert result.outcome == "no_materials"
    assert result.answer == NO_CONTEXT_RESPONSE
    assert result.no_materials_reason == "no_documents"
    assert result.sources == []
    assert generator.requests == []


async def test_generator_failure_raises_generation_error(pipeline: RAGPipeline) -> None:
    await pipeline.ingestion.ingest(make_request("bio"))
    with pytest.raises(GenerationError):
        await pipeline.answer(_question(), _FailingGenerator())


async def test_pipeline_persists_and_reloads(config: RAGConfig) -> None:
    pipeline = RAGPipeline.from_config(config, load_existing=False)
    await pipeline.ingestion.ingest(make_request("bio"))
    pipeline.save()

    reloaded = RAGPipeline.from_config(config)
    result = await reloaded.retrieve_context(_question())

    assert reloaded.index.total_vectors == 1
    assert isinstance(result, RetrievedContext)
    assert result.context_blocks[0].content == PHOTOSYNTHESIS_TEXT


def test_question_validation() -> None:
    with pytest.raises(ValueError):
        QueryRequest(collection_id="bio-101", question="   ")
    with pytest.raises(ValueError):
        QueryRequest(collection_id="bio-101", question="x" * 2001)
    assert QueryRequest(collection_id="bio-101", question="  Why?  ").question == "Why?"


async def test_saves_racing_ingestion_stay_consistent(config: RAGConfig) -> None:
    pipeline = RAGPipeline.from_config(config, load_existing=False)
    requests = [
        make_request(f"bio-{n}", text=PHOTOSYNTHESIS_TEXT if n % 2 else REVOLUTION_TEXT)
        for n in range(6)
    ]

    await asyncio.gather(
        *(pipeline.ingestion.ingest(r) for r in requests),
        *(asyncio.to_thread(pipeline.save) for _ in range(6)),
    )
    await asyncio.gather(*(asyncio.to_thread(pipeline.save) for _ in range(4)))

    index_dir = Path(config.storage.index_dir)
    assert list(index_dir.glob("*.tmp")) == []
    reloaded = RAGPipeline.from_config(config)
    assert reloaded.store.stats() == pipeline.store.stats()
    assert reloaded.index.total_vectors == pipeline.index.total_vectors == 6
    for document in reloaded.store.list_documents():
        assert reloaded.store.is_completed(document.document_id)
        assert reloaded.index.document_chunk_count(document.document_id) == len(
            reloaded.store.get_children(document.document_id)
        )
