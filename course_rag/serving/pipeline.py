"""
RAG Serving Pipeline
---------------------
Orchestrates the query lifecycle for one student question:

    QueryRequest (validated question, collection, history)
        |
        v
    HybridRetriever (FAISS dense + BM25 sparse -> fusion, initial_k=30)
        |
        v
    RerankStrategy (cross-encoder / LLM scorer or pass-through, final_k=5)
        |
        v
    ContextAssembler (relevance floor, parent resolution, dedup, citations)
        |
        v
    RetrievedContext | NoRelevantMaterials
        |
        v  (answer() only)
    AnswerGenerator (injected) -> QueryResult

Stages run strictly in order; a cancellation event is checked before every
external call.  The same instance also owns ingestion so both paths share
one ChunkStore and one FAISSIndex.
"""
from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, Optional, Union

from dotenv import load_dotenv
from langsmith import traceable
from loguru import logger

from course_rag.embedding.embedder import EmbeddingProvider, build_embedder
from course_rag.embedding.faiss_index import FAISSIndex
from course_rag.errors import GenerationError
from course_rag.generation.generator import AnswerGenerator, build_generation_request
from course_rag.generation.prompts import NO_CONTEXT_RESPONSE
from course_rag.ingestion.pipeline import IngestionPipeline
from course_rag.retrieval.context import ContextAssembler
from course_rag.retrieval.reranker import RerankStrategy, build_reranker
from course_rag.retrieval.retriever import HybridRetriever
from course_rag.schemas import (
    NoRelevantMaterials,
    QueryRequest,
    RetrievedContext,
    SourceCitation,
)
from course_rag.settings import RAGConfig
from course_rag.storage.chunk_store import STORE_FILE, ChunkStore
from course_rag.utils.helpers import raise_if_cancelled

load_dotenv()

RetrievalOutcome = Union[RetrievedContext, NoRelevantMaterials]


# ---------------------------------------------------------------------------
# Result schema
# ---------------------------------------------------------------------------

@dataclass
class QueryResult:
    """
    Full output from a single answered question.

    Timing fields are in milliseconds.  outcome is "no_materials" when no
    class material matched and the fixed response was returned without
    calling the generator.
    """

    question: str
    answer: str
    sources: list[SourceCitation] = field(default_factory=list)
    outcome: Literal["answered", "no_materials"] = "answered"
    no_materials_reason: str = ""
    rerank_fallback: bool = False

    # Latency breakdown
    retrieval_ms: float = 0.0
    rerank_ms: float = 0.0
    generation_ms: float = 0.0

    @property
    def total_ms(self) -> float:
        return self.retrieval_ms + self.rerank_ms + self.generation_ms

    def to_dict(self) -> dict:
        return {
            "question": self.question,
            "answer": self.answer,
            "sources": [s.model_dump(mode="json") for s in self.sources],
            "outcome": self.outcome,
            "no_materials_reason": self.no_materials_reason,
            "rerank_fallback": self.rerank_fallback,
            "latency_ms": {
                "retrieval": round(self.retrieval_ms, 1),
                "rerank": round(self.rerank_ms, 1),
                "generation": round(self.generation_ms, 1),
                "total": round(self.total_ms, 1),
            },
        }


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class RAGPipeline:
    """
    End-to-end retrieval core.

    Usage:
        pipeline = RAGPipeline.from_config(load_config())
        await pipeline.ingestion.ingest(request)
        context = await pipeline.retrieve_context(QueryRequest(...))
        result = await pipeline.answer(QueryRequest(...), generator)
    """

    def __init__(
        self,
        config: RAGConfig,
        store: ChunkStore,
        index: FAISSIndex,
        embedder: EmbeddingProvider,
        reranker: Optional[RerankStrategy] = None,
    ) -> None:
        self.config = config
        self.store = store
        self.index = index
        self.embedder = embedder
        self.reranker = reranker if reranker is not None else build_reranker(config)

        # Store and index change together under state_lock; saves take one
        # snapshot of both and are written one at a time.
        self._state_lock = threading.RLock()
        self._save_lock = threading.Lock()

        self.ingestion = IngestionPipeline(store, index, embedder, config, state_lock=self._state_lock)
        self.retriever = HybridRetriever.from_config(
            index, store, embedder, config.retrieval, config.timeouts
        )
        self.assembler = ContextAssembler(
            store,
            min_relevance=config.retrieval.min_relevance,
            citation_score=config.reranking.citation_score,
        )

        logger.info(
            f"[RAGPipeline] Ready | {index.total_vectors} vectors | "
            f"fusion={config.retrieval.fusion} | reranker={type(self.reranker).__name__}"
        )

    @classmethod
    def from_config(
        cls,
        config: RAGConfig,
        embedder: Optional[EmbeddingProvider] = None,
        reranker: Optional[RerankStrategy] = None,
        load_existing: bool = True,
    ) -> "RAGPipeline":
        """Build a pipeline, restoring the persisted index when one exists."""
        index_dir = Path(config.storage.index_dir)
        if load_existing and (index_dir / STORE_FILE).exists():
            logger.info(f"[RAGPipeline] Loading index from {index_dir}...")
            store = ChunkStore.load(index_dir)
            index = FAISSIndex.load(index_dir)
        else:
            store = ChunkStore()
            index = FAISSIndex(dimensions=config.embedding.dimensions)
        return cls(
            config=config,
            store=store,
            index=index,
            embedder=embedder if embedder is not None else build_embedder(config.embedding),
            reranker=reranker,
        )

    def save(self, index_dir: Optional[Path] = None) -> None:
        """
        Persist the ChunkStore and FAISSIndex side by side.

        Safe to call from several threads: both snapshots are taken under the
        state lock, and writes are serialised so a later save never lands
        under an earlier one.
        """
        index_dir = Path(index_dir or self.config.storage.index_dir)
        with self._save_lock:
            with self._state_lock:
                store_payload = self.store.snapshot()
                index_snapshot = self.index.snapshot()
            self.index.write_snapshot(index_snapshot, index_dir)
            self.store.write_snapshot(store_payload, index_dir)

    # --- Query ----------------------------------------------------------------

    @traceable(name="retrieve_context", run_type="chain")
    async def retrieve_context(
        self,
        request: QueryRequest,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> RetrievalOutcome:
        """
        Retrieve -> rerank -> assemble for one validated question.

        Returns:
            RetrievedContext, or NoRelevantMaterials when the collection has
            no completed documents / nothing matched / nothing cleared the floor.

        Raises:
            RetrievalError: the query could not be embedded or searched.
            QueryCancelled: cancel_event was set between stages.
        """
        logger.info(f"[RAGPipeline] {request.collection_id} | Query: {request.question[:100]!r}")

        if self.store.completed_count(request.collection_id) == 0:
            return self._no_materials("no_documents")

        # -- 1. Retrieve --------------------------------------------------------
        t0 = time.perf_counter()
        candidates = await self.retriever.retrieve(
            request.collection_id, request.question, cancel_event=cancel_event
        )
        retrieval_ms = (time.perf_counter() - t0) * 1000
        if not candidates:
            return self._no_materials("no_candidates", retrieval_ms=retrieval_ms)

        # -- 2. Rerank ----------------------------------------------------------
        raise_if_cancelled(cancel_event, "reranking")
        t1 = time.perf_counter()
        outcome = await self.reranker.rerank(
            request.question, candidates, self.config.retrieval.final_k
        )
        rerank_ms = (time.perf_counter() - t1) * 1000

        # -- 3. Assemble --------------------------------------------------------
        assembled = self.assembler.assemble(outcome.candidates)
        if assembled.is_empty:
            return self._no_materials(
                "below_relevance_floor",
                rerank_fallback=outcome.fallback,
                retrieval_ms=retrieval_ms,
                rerank_ms=rerank_ms,
            )

        logger.info(
            f"[RAGPipeline] Context ready | {len(assembled.blocks)} blocks, "
            f"{len(assembled.sources)} sources | retrieve={retrieval_ms:.0f}ms "
            f"rerank={rerank_ms:.0f}ms | fallback={outcome.fallback}"
        )
        return RetrievedContext(
            context_blocks=assembled.blocks,
            sources=assembled.sources,
            rerank_fallback=outcome.fallback,
            retrieval_ms=retrieval_ms,
            rerank_ms=rerank_ms,
        )

    @traceable(name="rag_answer", run_type="chain")
    async def answer(
        self,
        request: QueryRequest,
        generator: AnswerGenerator,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> QueryResult:
        """
        Retrieve context and hand it to the injected answer generator.

        Raises:
            RetrievalError / QueryCancelled: as retrieve_context.
            GenerationError: the generator failed or timed out.
        """
        context = await self.retrieve_context(request, cancel_event=cancel_event)

        if isinstance(context, NoRelevantMaterials):
            return QueryResult(
                question=request.question,
                answer=NO_CONTEXT_RESPONSE,
                outcome="no_materials",
                no_materials_reason=context.reason,
                rerank_fallback=context.rerank_fallback,
                retrieval_ms=context.retrieval_ms,
                rerank_ms=context.rerank_ms,
            )

        generation_request = build_generation_request(
            question=request.question,
            context_blocks=context.context_blocks,
            sources=context.sources,
            history=request.conversation_history,
            history_limit=self.config.conversation_history_limit,
        )

        raise_if_cancelled(cancel_event, "answer generation")
        t2 = time.perf_counter()
        timeout_s = self.config.timeouts.generation_s
        try:
            answer = await asyncio.wait_for(generator.generate(generation_request), timeout=timeout_s)
        except asyncio.TimeoutError as exc:
            raise GenerationError(f"Answer generation timed out after {timeout_s:.0f}s") from exc
        except GenerationError:
            raise
        except Exception as exc:
            raise GenerationError(f"Answer generation failed: {exc}") from exc
        generation_ms = (time.perf_counter() - t2) * 1000

        logger.info(
            f"[RAGPipeline] Complete | retrieve={context.retrieval_ms:.0f}ms "
            f"rerank={context.rerank_ms:.0f}ms generate={generation_ms:.0f}ms"
        )
        return QueryResult(
            question=request.question,
            answer=answer,
            sources=context.sources,
            rerank_fallback=context.rerank_fallback,
            retrieval_ms=context.retrieval_ms,
            rerank_ms=context.rerank_ms,
            generation_ms=generation_ms,
        )

    @staticmethod
    def _no_materials(reason: str, **fields) -> NoRelevantMaterials:
        logger.info(f"[RAGPipeline] No relevant materials ({reason})")
        return NoRelevantMaterials(reason=reason, **fields)
