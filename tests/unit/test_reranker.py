"""Tests for reranking strategies and scorers."""

from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace

import pytest

from course_rag.retrieval.reranker import (
    CrossEncoderScorer,
    LLMRelevanceScorer,
    ModelReranker,
    PassThroughReranker,
    build_reranker,
    parse_llm_scores,
)
from course_rag.settings import RAGConfig, RerankingConfig
from tests.factories import make_candidate

pytestmark = pytest.mark.anyio


class _FixedScorer:
    def __init__(self, scores: list[float]) -> None:
        self.scores = scores
        self.calls: list[tuple[str, list[str]]] = []

    async def score(self, query: str, passages: list[str]) -> list[float]:
        self.calls.append((query, passages))
        return self.scores


class _BrokenScorer:
    async def score(self, query: str, passages: list[str]) -> list[float]:
        raise RuntimeError("model crashed")


class _SlowScorer:
    async def score(self, query: str, passages: list[str]) -> list[float]:
        await asyncio.sleep(5)
        return [1.0] * len(passages)


def _candidates(n: int = 4):
    # Fused order: 0.9, 0.8, 0.7, ...
    return [make_candidate(i, fused=0.9 - i * 0.1) for i in range(n)]


async def test_model_reranker_reorders_and_truncates() -> None:
    candidates = _candidates(4)
    scorer = _FixedScorer([0.1, 0.4, 0.9, 0.2])

    outcome = await ModelReranker(scorer).rerank("What is a cell?", candidates, final_k=2)

    assert outcome.reranked and not outcome.fallback
    assert [c.chunk_id for c in outcome.candidates] == [candidates[2].chunk_id, candidates[1].chunk_id]
    assert [c.rerank_score for c in outcome.candidates] == [0.9, 0.4]
    assert scorer.calls[0][1] == [c.chunk.content for c in candidates]


async def test_model_reranker_never_adds_chunks() -> None:
    candidates = _candidates(3)
    outcome = await ModelReranker(_FixedScorer([3.0, 2.0, 1.0])).rerank("q", candidates, final_k=10)

    assert len(outcome.candidates) == 3
    assert {c.chunk_id for c in outcome.candidates} <= {c.chunk_id for c in candidates}


async def test_rerank_ties_keep_creation_order() -> None:
    candidates = _candidates(3)
    outcome = await ModelReranker(_FixedScorer([0.5, 0.5, 0.5])).rerank("q", list(reversed(candidates)), final_k=3)
    assert [c.chunk_id for c in outcome.candidates] == [c.chunk_id for c in candidates]


@pytest.mark.parametrize(
    ("scorer", "reason"),
    [
        (_BrokenScorer(), "scorer failed"),
        (_FixedScorer([1.0]), "score mismatch"),
    ],
)
async def test_scorer_problems_fall_back_to_fused_order(scorer, reason: str) -> None:
    candidates = _candidates(4)
    outcome = await ModelReranker(scorer).rerank("q", candidates, final_k=2)

    assert outcome.fallback
    assert not outcome.reranked
    assert reason in outcome.fallback_reason
    assert [c.chunk_id for c in outcome.candidates] == [c.chunk_id for c in candidates[:2]]
    assert all(c.rerank_score is None for c in outcome.candidates)


async def test_scorer_timeout_falls_back() -> None:
    outcome = await ModelReranker(_SlowScorer(), timeout_s=0.05).rerank("q", _candidates(3), final_k=2)
    assert outcome.fallback
    assert "timed out" in outcome.fallback_reason
    assert len(outcome.candidates) == 2


async def test_empty_candidates() -> None:
    outcome = await ModelReranker(_BrokenScorer()).rerank("q", [], final_k=5)
    assert outcome.candidates == []
    assert not outcome.fallback


async def test_pass_through_keeps_fused_order() -> None:
    candidates = _candidates(4)
    outcome = await PassThroughReranker().rerank("q", candidates, final_k=3)
    assert [c.chunk_id for c in outcome.candidates] == [c.chunk_id for c in candidates[:3]]
    assert not outcome.reranked and not outcome.fallback


async def test_cross_encoder_scorer_uses_model_predict() -> None:
    class _Model:
        def predict(self, pairs):
            return [len(passage) / 100 for _, passage in pairs]

    scorer = CrossEncoderScorer(model=_Model())
    scores = await scorer.score("q", ["short", "a much longer passage"])
    assert scores == pytest.approx([0.05, 0.21])


async def test_llm_scorer_parses_listwise_reply() -> None:
    reply = json.dumps({"scores": [{"index": 1, "score": 2}, {"index": 2, "score": 9}]})

    class _Completions:
        async def create(self, **kwargs):
            self.kwargs = kwargs
            message = SimpleNamespace(content=reply)
            return SimpleNamespace(choices=[SimpleNamespace(message=message)])

    completions = _Completions()
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    scorer = LLMRelevanceScorer(client=client)

    scores = await scorer.score("What is osmosis?", ["unrelated", "osmosis is diffusion of water"])

    assert scores == [2.0, 9.0]
    assert "What is osmosis?" in completions.kwargs["messages"][1]["content"]


def test_parse_llm_scores_accepts_bare_list() -> None:
    raw = json.dumps([{"index": 2, "score": 7}, {"index": 1, "score": 3}])
    assert parse_llm_scores(raw, 2) == [3.0, 7.0]


def test_parse_llm_scores_rejects_wrong_count() -> None:
    with pytest.raises(ValueError):
        parse_llm_scores(json.dumps({"scores": [{"index": 1, "score": 5}]}), 3)


def test_build_reranker_follows_config() -> None:
    disabled = RAGConfig(reranking=RerankingConfig(use_reranking=False))
    assert isinstance(build_reranker(disabled), PassThroughReranker)

    llm = build_reranker(RAGConfig(reranking=RerankingConfig(provider="llm")))
    assert isinstance(llm, ModelReranker)
    assert isinstance(llm.scorer, LLMRelevanceScorer)

    cross = build_reranker(RAGConfig())
    assert isinstance(cross, ModelReranker)
    assert isinstance(cross.scorer, CrossEncoderScorer)
    assert cross.scorer.model_name == "cross-encoder/ms-marco-MiniLM-L-6-v2"
