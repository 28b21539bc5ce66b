"""
Hybrid Retriever
-----------------
Embeds the student's question and performs hybrid (dense + sparse) search
over one collection's shard of the FAISS + BM25 dual index.

Fusion (default "weighted"):
    vector  = cosine clamped to [0, 1]
    keyword = bm25 / max(bm25 in this result set)
    fused   = vector_weight * vector + bm25_weight * keyword
A chunk missing from one list scores 0 on that side.

Fusion "rrf" keeps Reciprocal Rank Fusion -- sum(weight / (rank + 60)) --
scaled by its maximum so fused scores stay comparable to the relevance floor.

Ties are broken by creation order (document sequence, chunk index) so
results are deterministic.  The retriever is stateless per query.
"""
from __future__ import annotations

import asyncio
from typing import Literal, Optional

import numpy as np
from langsmith import traceable
from loguru import logger

from course_rag.chunking.schemas import ChildChunk
from course_rag.embedding.embedder import EmbeddingProvider
from course_rag.embedding.faiss_index import FAISSIndex
from course_rag.errors import EmbeddingError, RetrievalError
from course_rag.schemas import RetrievalCandidate
from course_rag.settings import RetrievalConfig, TimeoutConfig
from course_rag.storage.chunk_store import ChunkStore
from course_rag.utils.helpers import raise_if_cancelled

RRF_K = 60

ScoredChunks = list[tuple[ChildChunk, float]]


def sort_candidates(candidates: list[RetrievalCandidate]) -> list[RetrievalCandidate]:
    """Fused score descending; ties in creation order."""
    return sorted(candidates, key=lambda c: (-c.fused_score, c.order_key))


def fuse_weighted(
    dense: ScoredChunks,
    sparse: ScoredChunks,
    vector_weight: float = 0.7,
    bm25_weight: float = 0.3,
) -> list[RetrievalCandidate]:
    """Weighted linear fusion of normalised dense and keyword scores."""
    candidates: dict[str, RetrievalCandidate] = {}

    for chunk, score in dense:
        candidates[chunk.chunk_id] = RetrievalCandidate(
            chunk=chunk, vector_score=min(max(score, 0.0), 1.0)
        )

    max_bm25 = max((score for _, score in sparse), default=0.0)
    if max_bm25 > 0:
        for chunk, score in sparse:
            candidate = candidates.setdefault(chunk.chunk_id, RetrievalCandidate(chunk=chunk))
            candidate.keyword_score = score / max_bm25

    for candidate in candidates.values():
        candidate.fused_score = (
            vector_weight * candidate.vector_score + bm25_weight * candidate.keyword_score
        )
    return sort_candidates(list(candidates.values()))


def fuse_rrf(
    dense: ScoredChunks,
    sparse: ScoredChunks,
    vector_weight: float = 0.7,
    bm25_weight: float = 0.3,
) -> list[RetrievalCandidate]:
    """
    Reciprocal Rank Fusion: robust to score scale mismatch.

    Raw RRF tops out at (vector_weight + bm25_weight) / RRF_K for a chunk
    ranked first on both sides; scores are divided by that ceiling.
    """
    candidates: dict[str, RetrievalCandidate] = {}
    rrf_scores: dict[str, float] = {}

    for rank, (chunk, score) in enumerate(dense):
        candidates[chunk.chunk_id] = RetrievalCandidate(
            chunk=chunk, vector_score=min(max(score, 0.0), 1.0)
        )
        rrf_scores[chunk.chunk_id] = rrf_scores.get(chunk.chunk_id, 0.0) + vector_weight / (rank + RRF_K)

    max_bm25 = max((score for _, score in sparse), default=0.0)
    for rank, (chunk, score) in enumerate(sparse):
        candidate = candidates.setdefault(chunk.chunk_id, RetrievalCandidate(chunk=chunk))
        if max_bm25 > 0:
            candidate.keyword_score = score / max_bm25
        rrf_scores[chunk.chunk_id] = rrf_scores.get(chunk.chunk_id, 0.0) + bm25_weight / (rank + RRF_K)

    ceiling = (vector_weight + bm25_weight) / RRF_K
    for chunk_id, candidate in candidates.items():
        candidate.fused_score = rrf_scores[chunk_id] / ceiling
    return sort_candidates(list(candidates.values()))


class HybridRetriever:
    """
    Dense path  : FAISS IndexFlatIP (cosine similarity on L2-normalised vecs)
    Sparse path : BM25Okapi keyword match
    Fusion      : weighted linear (default) or Reciprocal Rank Fusion

    Only chunks of COMPLETED documents in the requested collection are
    returned.
    """

    def __init__(
        self,
        index: FAISSIndex,
        store: ChunkStore,
        embedder: EmbeddingProvider,
        initial_k: int = 30,
        vector_weight: float = 0.7,
        bm25_weight: float = 0.3,
        fusion: Literal["weighted", "rrf"] = "weighted",
        embedding_timeout_s: float = 30.0,
        search_timeout_s: float = 10.0,
    ) -> None:
        self.index = index
        self.store = store
        self.embedder = embedder
        self.initial_k = initial_k
        self.vector_weight = vector_weight
        self.bm25_weight = bm25_weight
        self.fusion = fusion
        self.embedding_timeout_s = embedding_timeout_s
        self.search_timeout_s = search_timeout_s

    @classmethod
    def from_config(
        cls,
        index: FAISSIndex,
        store: ChunkStore,
        embedder: EmbeddingProvider,
        retrieval: RetrievalConfig,
        timeouts: TimeoutConfig,
    ) -> "HybridRetriever":
        return cls(
            index=index,
            store=store,
            embedder=embedder,
            initial_k=retrieval.initial_k,
            vector_weight=retrieval.vector_weight,
            bm25_weight=retrieval.bm25_weight,
            fusion=retrieval.fusion,
            embedding_timeout_s=timeouts.embedding_s,
            search_timeout_s=timeouts.search_s,
        )

    @traceable(name="retrieve", run_type="retriever")
    async def retrieve(
        self,
        collection_id: str,
        query: str,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> list[RetrievalCandidate]:
        """
        Embed the query and return up to initial_k fused candidates.

        Args:
            collection_id: Class whose materials are searched.
            query:         Validated student question.
            cancel_event:  Set by the caller to abandon the query.

        Returns:
            RetrievalCandidates sorted by fused score descending; [] when
            nothing in the collection matches.

        Raises:
            RetrievalError: query embedding or index search failed/timed out.
        """
        logger.debug(f"[Retriever] {collection_id} | Query: {query[:80]!r}")
        if self.index.collection_size(collection_id) == 0:
            logger.info(f"[Retriever] Collection {collection_id} has no indexed chunks")
            return []

        raise_if_cancelled(cancel_event, "query embedding")
        query_vec = await self._embed_query(query)

        raise_if_cancelled(cancel_event, "index search")
        try:
            dense, sparse = await asyncio.wait_for(
                asyncio.gather(
                    asyncio.to_thread(self.index.search_dense, collection_id, query_vec, self.initial_k),
                    asyncio.to_thread(self.index.search_sparse, collection_id, query, self.initial_k),
                ),
                timeout=self.search_timeout_s,
            )
        except asyncio.TimeoutError as exc:
            raise RetrievalError(f"Index search timed out after {self.search_timeout_s:.0f}s") from exc

        dense = [(c, s) for c, s in dense if self.store.is_completed(c.document_id)]
        sparse = [(c, s) for c, s in sparse if self.store.is_completed(c.document_id)]

        fuse = fuse_rrf if self.fusion == "rrf" else fuse_weighted
        results = fuse(dense, sparse, self.vector_weight, self.bm25_weight)[: self.initial_k]

        logger.info(
            f"[Retriever] Retrieved {len(results)} candidates "
            f"(dense={len(dense)} sparse={len(sparse)} top score: {results[0].fused_score:.4f})"
            if results else "[Retriever] No results"
        )
        return results

    async def _embed_query(self, query: str) -> np.ndarray:
        try:
            return await asyncio.wait_for(
                self.embedder.embed_query(query), timeout=self.embedding_timeout_s
            )
        except asyncio.TimeoutError as exc:
            raise RetrievalError(
                f"Query embedding timed out after {self.embedding_timeout_s:.0f}s"
            ) from exc
        except EmbeddingError as exc:
            raise RetrievalError(f"Query embedding failed: {exc}") from exc
