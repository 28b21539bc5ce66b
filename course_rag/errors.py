"""Exception hierarchy shared by ingestion and query paths."""
from __future__ import annotations

from course_rag.generation.prompts import RETRIEVAL_FAILURE_RESPONSE


class CourseRAGError(RuntimeError):
    """Base class for every error raised by the retrieval core."""

    user_message: str = "Something went wrong. Please try again."


class ConfigError(CourseRAGError):
    """Raised when the pipeline configuration is invalid."""


class EmbeddingError(CourseRAGError):
    """Raised when the embedding service fails or returns invalid vectors."""


class IngestionError(CourseRAGError):
    """Raised inside ingestion when a document cannot be chunked or indexed."""


class RetrievalError(CourseRAGError):
    """Raised when a query cannot be served (e.g. query embedding failed)."""

    user_message = RETRIEVAL_FAILURE_RESPONSE


class GenerationError(CourseRAGError):
    """Raised when the external answer generator fails or times out."""

    user_message = "I couldn't generate an answer right now. Please try again."


class QueryCancelled(CourseRAGError):
    """Raised when the caller abandoned a query before it finished."""
