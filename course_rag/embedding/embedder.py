"""
Embedding providers
--------------------
Two providers with an identical async interface:

  Embedder      -- OpenAI text-embedding-3-small via AsyncOpenAI
                   * batching by text count AND by tiktoken-measured tokens
                   * retry logic via tenacity
                   * LangSmith run tracing for cost / latency observability
  HashEmbedder  -- deterministic token-hashing vectors for tests and
                   offline runs (no network, no cost)

Both return L2-normalised float32 arrays so cosine similarity == inner
product, which lets the index use FAISS IndexFlatIP.
"""
from __future__ import annotations

import hashlib
import os
import re
import time
from functools import lru_cache
from typing import Optional, Protocol

import numpy as np
import tiktoken
from langsmith import traceable
from loguru import logger
from openai import AsyncOpenAI, OpenAIError
from tenacity import retry, stop_after_attempt, wait_exponential

from course_rag.errors import EmbeddingError
from course_rag.settings import EmbeddingConfig

MODEL = "text-embedding-3-small"
DIMENSIONS = 1536          # text-embedding-3-small native dimensions
BATCH_SIZE = 100
MAX_BATCH_TOKENS = 250_000  # API hard limit is 300k tokens per request

_TOKEN_RE = re.compile(r"[a-z0-9]+")


@lru_cache(maxsize=1)
def _encoding() -> tiktoken.Encoding:
    return tiktoken.get_encoding("cl100k_base")


def l2_normalise(matrix: np.ndarray) -> np.ndarray:
    """Scale every row to unit length; zero rows stay zero."""
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms = np.where(norms == 0, 1, norms)  # avoid div-by-zero
    return (matrix / norms).astype(np.float32)


class EmbeddingProvider(Protocol):
    """Anything that can turn texts into unit vectors of a fixed width."""

    dimensions: int

    async def embed_texts(self, texts: list[str]) -> np.ndarray:
        ...

    async def embed_query(self, text: str) -> np.ndarray:
        ...


class Embedder:
    """
    Generates L2-normalised embeddings using the OpenAI embeddings API.

    The client is created on first use so constructing an Embedder never
    needs network access or credentials.
    """

    def __init__(
        self,
        model: str = MODEL,
        dimensions: int = DIMENSIONS,
        batch_size: int = BATCH_SIZE,
        max_batch_tokens: int = MAX_BATCH_TOKENS,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.model = model
        self.dimensions = dimensions
        self.batch_size = batch_size
        self.max_batch_tokens = max_batch_tokens
        self._client = client
        self.total_tokens_used: int = 0
        self.total_api_calls: int = 0

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=os.getenv("OPENAI_API_KEY"))
        return self._client

    @traceable(name="embed_texts", run_type="embedding")
    async def embed_texts(self, texts: list[str]) -> np.ndarray:
        """
        Embed a list of strings and return an (N, dimensions) float32 array.
        Texts are processed in batches to stay within API limits.
        """
        if not texts:
            return np.empty((0, self.dimensions), dtype=np.float32)

        all_embeddings: list[list[float]] = []
        for batch_no, batch in enumerate(self._batches(texts), start=1):
            try:
                embeddings, tokens = await self._embed_batch(batch)
            except OpenAIError as exc:
                raise EmbeddingError(f"Embedding request failed: {exc}") from exc

            all_embeddings.extend(embeddings)
            self.total_tokens_used += tokens
            self.total_api_calls += 1

            logger.debug(
                f"[Embedder] Batch {batch_no} | {len(batch)} texts | {tokens} tokens | "
                f"Running total: {self.total_tokens_used} tokens"
            )

        matrix = np.array(all_embeddings, dtype=np.float32)
        if matrix.shape != (len(texts), self.dimensions):
            raise EmbeddingError(
                f"Embedding shape mismatch: expected {(len(texts), self.dimensions)}, "
                f"got {matrix.shape}"
            )
        return l2_normalise(matrix)

    async def embed_query(self, text: str) -> np.ndarray:
        """Embed a single query string. Returns shape (dimensions,) float32 array."""
        return (await self.embed_texts([text]))[0]

    def _batches(self, texts: list[str]) -> list[list[str]]:
        """Split texts so no batch exceeds batch_size items or max_batch_tokens tokens."""
        encoding = _encoding()
        batches: list[list[str]] = []
        current: list[str] = []
        current_tokens = 0
        for text in texts:
            tokens = len(encoding.encode(text))
            if current and (
                len(current) >= self.batch_size
                or current_tokens + tokens > self.max_batch_tokens
            ):
                batches.append(current)
                current, current_tokens = [], 0
            current.append(text)
            current_tokens += tokens
        if current:
            batches.append(current)
        return batches

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        reraise=True,
    )
    async def _embed_batch(self, texts: list[str]) -> tuple[list[list[float]], int]:
        """Call the OpenAI Embeddings API for a single batch."""
        # Replace empty strings with a space to avoid API errors
        safe_texts = [t if t.strip() else " " for t in texts]
        start = time.perf_counter()
        response = await self.client.embeddings.create(model=self.model, input=safe_texts)
        elapsed = time.perf_counter() - start

        embeddings = [item.embedding for item in sorted(response.data, key=lambda x: x.index)]
        tokens_used = response.usage.total_tokens
        logger.debug(f"[Embedder] API call: {len(texts)} texts, {tokens_used} tokens, {elapsed:.2f}s")
        return embeddings, tokens_used

    def usage_summary(self) -> dict:
        return {
            "model": self.model,
            "total_api_calls": self.total_api_calls,
            "total_tokens_used": self.total_tokens_used,
            # text-embedding-3-small: $0.020 per million tokens
            "estimated_cost_usd": round(self.total_tokens_used / 1_000_000 * 0.020, 6),
        }


class HashEmbedder:
    """Deterministic hash-based embedder for testing or offline use."""

    def __init__(self, dimensions: int = 256) -> None:
        if dimensions <= 0:
            raise ValueError("dimensions must be positive")
        self.dimensions = dimensions

    def _vector(self, text: str) -> np.ndarray:
        vector = np.zeros(self.dimensions, dtype=np.float32)
        for token in _TOKEN_RE.findall(text.lower()):
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            vector[int.from_bytes(digest[:4], "big") % self.dimensions] += 1.0
        return vector

    async def embed_texts(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.empty((0, self.dimensions), dtype=np.float32)
        return l2_normalise(np.stack([self._vector(t) for t in texts]))

    async def embed_query(self, text: str) -> np.ndarray:
        return (await self.embed_texts([text]))[0]


def build_embedder(config: EmbeddingConfig) -> EmbeddingProvider:
    """Instantiate the embedding provider named in the config."""
    if config.provider == "hash":
        return HashEmbedder(dimensions=config.dimensions)
    return Embedder(
        model=config.model,
        dimensions=config.dimensions,
        batch_size=config.batch_size,
        max_batch_tokens=config.max_batch_tokens,
    )
