"""
Precision Reranking
--------------------
Reranking is an injected strategy so the query pipeline never branches on
whether it is enabled:

  PassThroughReranker -- keeps fused order, truncates to final_k
  ModelReranker       -- scores every candidate against the question with a
                         RelevanceScorer, reorders, truncates to final_k

Scorers:
  CrossEncoderScorer  -- sentence-transformers CrossEncoder, run in a worker
                         thread (pairs are scored independently)
  LLMRelevanceScorer  -- one OpenAI call scores all candidates at once
                         (listwise), rubric 0-10

Reranking only reorders: it never adds a chunk the retriever did not return.
When the scorer fails, times out or returns the wrong number of scores, the
ModelReranker falls back to fused order and flags the outcome.
"""
from __future__ import annotations

import asyncio
import json
import os
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from langsmith import traceable
from loguru import logger
from openai import AsyncOpenAI

from course_rag.schemas import RetrievalCandidate
from course_rag.settings import RAGConfig

_RERANK_SYSTEM = (
    "You are a relevance scoring engine for a course-materials tutoring system. "
    "Your only job is to output valid JSON -- no prose, no markdown fences."
)

_RERANK_USER = """\
Score each excerpt for its relevance to the student's question on a scale of 0 to 10.

Rubric:
  9-10: Directly answers the question
  6-8 : Relevant, contains useful partial information
  3-5 : Tangentially related
  0-2 : Irrelevant or off-topic

Question: {query}

Excerpts:
{chunks_block}

Return ONLY a JSON object with a "scores" key containing one entry per excerpt, in order:
{{"scores": [{{"index": 1, "score": <0-10>}}, {{"index": 2, "score": <0-10>}}, ...]}}
"""


@dataclass
class RerankOutcome:
    """Reranked candidates plus whether the precision stage actually ran."""

    candidates: list[RetrievalCandidate] = field(default_factory=list)
    reranked: bool = False
    fallback: bool = False
    fallback_reason: str = ""


class RerankStrategy(Protocol):
    async def rerank(
        self, query: str, candidates: list[RetrievalCandidate], final_k: int
    ) -> RerankOutcome:
        ...


class RelevanceScorer(Protocol):
    """Scores (query, passage) pairs; higher is more relevant."""

    async def score(self, query: str, passages: list[str]) -> list[float]:
        ...


# --- Scorers ------------------------------------------------------------------

class CrossEncoderScorer:
    """
    Cross-encoder relevance model (sentence-transformers).

    The model is loaded on first use; inference is CPU/GPU bound so it runs
    in a worker thread to keep the event loop free.
    """

    def __init__(self, model_name: str = "cross-encoder/ms-marco-MiniLM-L-6-v2", model: Any = None) -> None:
        self.model_name = model_name
        self._model = model

    @property
    def model(self) -> Any:
        if self._model is None:
            from sentence_transformers import CrossEncoder

            logger.info(f"[Reranker] Loading cross-encoder {self.model_name}")
            self._model = CrossEncoder(self.model_name)
        return self._model

    async def score(self, query: str, passages: list[str]) -> list[float]:
        pairs = [(query, passage) for passage in passages]
        scores = await asyncio.to_thread(self.model.predict, pairs)
        return [float(s) for s in scores]


class LLMRelevanceScorer:
    """
    Batch LLM scorer: one API call scores all candidates simultaneously.

    Args:
        model:  OpenAI model to use for scoring (default: gpt-4o-mini).
        client: Optional AsyncOpenAI client (created lazily otherwise).
    """

    def __init__(self, model: str = "gpt-4o-mini", client: Optional[AsyncOpenAI] = None) -> None:
        self.model = model
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=os.getenv("OPENAI_API_KEY"))
        return self._client

    async def score(self, query: str, passages: list[str]) -> list[float]:
        chunks_block = "\n\n".join(
            f"[{i}] {passage[:800]}" for i, passage in enumerate(passages, start=1)
        )
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": _RERANK_SYSTEM},
                {"role": "user", "content": _RERANK_USER.format(query=query, chunks_block=chunks_block)},
            ],
            max_tokens=16 * len(passages) + 32,
            temperature=0,
            response_format={"type": "json_object"},
        )
        return parse_llm_scores(response.choices[0].message.content or "{}", len(passages))


def parse_llm_scores(raw: str, expected: int) -> list[float]:
    """
    Extract per-passage scores (1-based "index") from the scorer's JSON reply.

    Raises:
        ValueError: the reply is not the expected shape.
    """
    parsed = json.loads(raw)
    # Unwrap {"scores": [...]} envelope
    if isinstance(parsed, dict):
        for key in ("scores", "results", "chunks"):
            if key in parsed and isinstance(parsed[key], list):
                parsed = parsed[key]
                break
    if not isinstance(parsed, list):
        raise ValueError(f"Unexpected JSON shape: {type(parsed).__name__}")

    index_score_map: dict[int, float] = {
        int(item["index"]): float(item["score"]) for item in parsed
    }
    if len(index_score_map) != expected:
        raise ValueError(f"Expected {expected} scores, got {len(index_score_map)}")
    return [index_score_map.get(i, 0.0) for i in range(1, expected + 1)]


# --- Strategies ---------------------------------------------------------------

class PassThroughReranker:
    """Reranking disabled: fused order, truncated."""

    async def rerank(
        self, query: str, candidates: list[RetrievalCandidate], final_k: int
    ) -> RerankOutcome:
        return RerankOutcome(candidates=list(candidates[:final_k]))


class ModelReranker:
    """Reorders candidates by an independent relevance score."""

    def __init__(self, scorer: RelevanceScorer, timeout_s: float = 20.0) -> None:
        self.scorer = scorer
        self.timeout_s = timeout_s

    @traceable(name="rerank", run_type="chain")
    async def rerank(
        self, query: str, candidates: list[RetrievalCandidate], final_k: int
    ) -> RerankOutcome:
        """
        Score all candidates, keep the top final_k.

        Returns:
            RerankOutcome with reranked=True, or fallback=True (fused order)
            when scoring failed.
        """
        if not candidates:
            return RerankOutcome()

        try:
            scores = await asyncio.wait_for(
                self.scorer.score(query, [c.chunk.content for c in candidates]),
                timeout=self.timeout_s,
            )
        except asyncio.TimeoutError:
            return self._fallback(candidates, final_k, f"scorer timed out after {self.timeout_s:.0f}s")
        except Exception as exc:
            return self._fallback(candidates, final_k, f"scorer failed: {exc}")

        if len(scores) != len(candidates):
            return self._fallback(
                candidates, final_k, f"score mismatch ({len(scores)} for {len(candidates)})"
            )

        scored = [
            c.model_copy(update={"rerank_score": float(s)})
            for c, s in zip(candidates, scores)
        ]
        scored.sort(key=lambda c: (-c.rerank_score, c.order_key))
        top = scored[:final_k]

        logger.info(
            f"[Reranker] {len(candidates)} -> {len(top)} chunks | top score: {top[0].rerank_score:.3f}"
        )
        for rank, candidate in enumerate(top, start=1):
            logger.debug(
                f"  #{rank} rerank={candidate.rerank_score:.3f} fused={candidate.fused_score:.3f} | "
                f"{candidate.chunk_id}"
            )
        return RerankOutcome(candidates=top, reranked=True)

    @staticmethod
    def _fallback(candidates: list[RetrievalCandidate], final_k: int, reason: str) -> RerankOutcome:
        logger.warning(f"[Reranker] Falling back to retrieval order ({reason})")
        return RerankOutcome(
            candidates=list(candidates[:final_k]),
            fallback=True,
            fallback_reason=reason,
        )


def build_reranker(config: RAGConfig) -> RerankStrategy:
    """Pick the reranking strategy named in the config."""
    reranking = config.reranking
    if not reranking.use_reranking:
        return PassThroughReranker()
    if reranking.provider == "llm":
        scorer: RelevanceScorer = LLMRelevanceScorer(model=reranking.llm_model)
    else:
        scorer = CrossEncoderScorer(model_name=reranking.model)
    return ModelReranker(scorer, timeout_s=config.timeouts.rerank_s)
