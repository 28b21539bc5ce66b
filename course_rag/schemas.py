"""
Core Pydantic schemas for the course-materials retrieval core.

Ingestion and query stages share these models so every context block handed
to answer generation can be traced back to its source file, page and chunk.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

from course_rag.chunking.schemas import ChildChunk, PageBoundary, SectionHint

MAX_QUESTION_CHARS = 2000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- Enumerations ------------------------------------------------------------

class DocumentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# --- Documents ---------------------------------------------------------------

class SourceDocument(BaseModel):
    """
    One uploaded file, as text supplied by the extraction service.

    Only documents in COMPLETED status are visible to retrieval.
    """

    document_id: str
    collection_id: str                   # The owning class
    display_name: str                    # File name shown in citations
    raw_text: str
    status: DocumentStatus = DocumentStatus.PENDING
    error_message: Optional[str] = None
    sequence: int = 0                    # Assigned by the ChunkStore on registration
    created_at: datetime = Field(default_factory=_utcnow)


class IngestionRequest(BaseModel):
    document_id: str
    collection_id: str
    display_name: str
    raw_text: str
    page_boundaries: list[PageBoundary] = Field(default_factory=list)
    section_hints: list[SectionHint] = Field(default_factory=list)

    @field_validator("document_id", "collection_id")
    @classmethod
    def _non_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("identifier cannot be blank")
        return v


class IngestionResult(BaseModel):
    document_id: str
    status: DocumentStatus
    parent_count: int = 0
    child_count: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == DocumentStatus.COMPLETED


# --- Query -------------------------------------------------------------------

class ConversationMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class QueryRequest(BaseModel):
    collection_id: str
    question: str
    conversation_history: list[ConversationMessage] = Field(default_factory=list)

    @field_validator("question")
    @classmethod
    def _validate_question(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Question cannot be empty")
        if len(v) > MAX_QUESTION_CHARS:
            raise ValueError(f"Question too long (max {MAX_QUESTION_CHARS} characters)")
        return v


class RetrievalCandidate(BaseModel):
    """Per-query scoring record for one child chunk. Never persisted."""

    chunk: ChildChunk
    vector_score: float = 0.0            # Cosine, clamped to [0, 1]
    keyword_score: float = 0.0           # BM25, normalised by the best hit
    fused_score: float = 0.0
    rerank_score: Optional[float] = None

    @property
    def chunk_id(self) -> str:
        return self.chunk.chunk_id

    @property
    def order_key(self) -> tuple[int, int]:
        return self.chunk.order_key


class ContextBlock(BaseModel):
    """One LLM-ready unit of context, normally a whole parent chunk."""

    content: str
    file_name: str
    document_id: str
    parent_index: Optional[int] = None   # None when the child text is used directly
    similarity: float
    page_number: Optional[int] = None
    section: Optional[str] = None


class SourceCitation(BaseModel):
    """One UI citation per selected child chunk (not deduplicated)."""

    file_name: str
    document_id: str
    chunk_id: str
    similarity: float
    page_number: Optional[int] = None
    section: Optional[str] = None


class RetrievedContext(BaseModel):
    """Successful retrieval: ordered context blocks plus flat citations."""

    status: Literal["ok"] = "ok"
    context_blocks: list[ContextBlock]
    sources: list[SourceCitation]
    rerank_fallback: bool = False
    retrieval_ms: float = 0.0
    rerank_ms: float = 0.0


class NoRelevantMaterials(BaseModel):
    """
    Explicit empty result. Distinct from a failure: the caller should tell
    the student no matching class material was found.
    """

    status: Literal["no_relevant_materials"] = "no_relevant_materials"
    reason: Literal["no_documents", "no_candidates", "below_relevance_floor"]
    rerank_fallback: bool = False
    retrieval_ms: float = 0.0
    rerank_ms: float = 0.0
