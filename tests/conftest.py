"""Shared pytest fixtures: offline config and pipeline."""

from __future__ import annotations

import os

import pytest

os.environ.pop("OPENAI_API_KEY", None)
os.environ["LANGSMITH_TRACING"] = "false"

from course_rag.serving.pipeline import RAGPipeline
from course_rag.settings import (
    EmbeddingConfig,
    LoggingConfig,
    RAGConfig,
    RerankingConfig,
    StorageConfig,
)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def config(tmp_path) -> RAGConfig:
    """Offline configuration: hash embeddings, no reranking model, no log file."""
    return RAGConfig(
        embedding=EmbeddingConfig(provider="hash", dimensions=512),
        reranking=RerankingConfig(use_reranking=False),
        storage=StorageConfig(index_dir=str(tmp_path / "index")),
        logging=LoggingConfig(file=None),
    )


@pytest.fixture
def pipeline(config: RAGConfig) -> RAGPipeline:
    return RAGPipeline.from_config(config, load_existing=False)
