"""
Pipeline configuration
-----------------------
Every tunable knob of the retrieval core lives here as a pydantic model with
the production defaults baked in.  A YAML file (config/config.yaml) can
override any subset of them; unknown keys are rejected so typos fail loudly.

Sections:
  chunking    -- parent/child window sizes
  embedding   -- embedding provider and batching
  retrieval   -- hybrid search widths, fusion weights, relevance floor
  reranking   -- precision stage on/off and model choice
  timeouts    -- per external call, in seconds
  ingestion   -- text floor and concurrency
  storage     -- where the index is persisted
  logging     -- loguru sinks
"""
from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from course_rag.errors import ConfigError

DEFAULT_CONFIG_PATH = Path("config/config.yaml")

# Token sizes convert to character windows at this rate.
CHARS_PER_TOKEN = 4


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ChunkingConfig(_Section):
    parent_min_tokens: int = Field(2000, gt=0)
    parent_max_tokens: int = Field(4000, gt=0)
    child_target_tokens: int = Field(400, gt=0)
    child_overlap_tokens: int = Field(50, ge=0)
    min_child_chars: int = Field(100, ge=1)

    @model_validator(mode="after")
    def _check_band(self) -> "ChunkingConfig":
        if self.parent_min_tokens > self.parent_max_tokens:
            raise ValueError(
                f"parent_min_tokens ({self.parent_min_tokens}) must not exceed "
                f"parent_max_tokens ({self.parent_max_tokens})"
            )
        if self.child_target_tokens * CHARS_PER_TOKEN < self.min_child_chars:
            raise ValueError(
                f"child_target_tokens ({self.child_target_tokens}) gives windows of "
                f"{self.child_target_tokens * CHARS_PER_TOKEN} characters, shorter than "
                f"min_child_chars ({self.min_child_chars}); no child would be indexed"
            )
        return self


class EmbeddingConfig(_Section):
    provider: Literal["openai", "hash"] = "openai"
    model: str = "text-embedding-3-small"
    dimensions: int = Field(1536, gt=0)
    batch_size: int = Field(100, gt=0)
    max_batch_tokens: int = Field(250_000, gt=0)


class RetrievalConfig(_Section):
    initial_k: int = Field(30, gt=0)
    final_k: int = Field(5, gt=0)
    vector_weight: float = Field(0.7, ge=0)
    bm25_weight: float = Field(0.3, ge=0)
    fusion: Literal["weighted", "rrf"] = "weighted"
    min_relevance: float = Field(0.05, ge=0)

    @model_validator(mode="after")
    def _check_widths(self) -> "RetrievalConfig":
        if self.final_k > self.initial_k:
            raise ValueError(
                f"final_k ({self.final_k}) must not exceed initial_k ({self.initial_k})"
            )
        if self.vector_weight == 0 and self.bm25_weight == 0:
            raise ValueError("vector_weight and bm25_weight cannot both be zero")
        return self


class RerankingConfig(_Section):
    use_reranking: bool = True
    provider: Literal["cross_encoder", "llm"] = "cross_encoder"
    model: str = "cross-encoder/ms-marco-MiniLM-L-6-v2"
    llm_model: str = "gpt-4o-mini"
    citation_score: Literal["fused", "rerank"] = "fused"


class TimeoutConfig(_Section):
    embedding_s: float = Field(30.0, gt=0)
    search_s: float = Field(10.0, gt=0)
    rerank_s: float = Field(20.0, gt=0)
    generation_s: float = Field(60.0, gt=0)


class IngestionConfig(_Section):
    min_text_chars: int = Field(20, ge=1)
    max_concurrency: int = Field(4, gt=0)


class StorageConfig(_Section):
    index_dir: str = "data/index"


class LoggingConfig(_Section):
    level: str = "INFO"
    file: Optional[str] = "logs/course_rag.log"


class RAGConfig(_Section):
    """Top-level configuration consumed by every component."""

    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    reranking: RerankingConfig = Field(default_factory=RerankingConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    ingestion: IngestionConfig = Field(default_factory=IngestionConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    conversation_history_limit: int = Field(10, ge=0)


def load_config(path: str | Path | None = None) -> RAGConfig:
    """
    Load a RAGConfig from YAML.

    A missing default file yields the built-in defaults; an explicitly
    requested path that does not exist is an error.
    """
    explicit = path is not None
    config_path = Path(path) if explicit else DEFAULT_CONFIG_PATH

    if not config_path.exists():
        if explicit:
            raise ConfigError(f"Config file not found: {config_path}")
        return RAGConfig()

    with open(config_path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise ConfigError(f"Config root must be a mapping, got {type(raw).__name__}")

    try:
        return RAGConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid config {config_path}: {exc}") from exc
