"""
Chunk schemas - the two levels of the chunk hierarchy.

A ParentChunk is a large context unit handed to the LLM; a ChildChunk is a
small search unit that is embedded and keyword-indexed.  Every child carries
enough provenance (document, parent, page, section) to be cited without a
join back to the parent.
"""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class PageBoundary(BaseModel):
    """Character range of one page in the extracted document text."""

    page: int = Field(ge=1)
    char_start: int = Field(ge=0)
    char_end: int = Field(ge=0)


class SectionHint(BaseModel):
    """A heading reported by the extractor, effective from char_start onwards."""

    heading: str
    char_start: int = Field(ge=0)


class ParentChunk(BaseModel):
    """
    Large context chunk. Spans are absolute offsets into the raw document
    text; consecutive parents tile the trimmed document without gaps.
    """

    model_config = ConfigDict(frozen=True)

    document_id: str
    parent_index: int                    # Position within the document
    start_char: int                      # Absolute, inclusive
    end_char: int                        # Absolute, exclusive
    content: str                         # Stripped span text
    token_count: int

    page_number: Optional[int] = None
    section: Optional[str] = None


class ChildChunk(BaseModel):
    """
    Small searchable chunk derived from exactly one ParentChunk.

    start_char/end_char are relative to the parent content; the doc_* pair is
    absolute so citations can point into the source file.
    """

    model_config = ConfigDict(frozen=True)

    # Identity
    chunk_id: str                        # "child_<document_id>_<chunk_index>"
    document_id: str
    collection_id: str
    document_sequence: int = 0           # Registration order of the document
    parent_index: int
    child_index: int                     # Position within the parent
    chunk_index: int                     # Position within the document

    # Spans
    start_char: int
    end_char: int
    doc_start_char: int
    doc_end_char: int

    # Content
    content: str
    token_count: int
    overlap_with_next: int = 0           # Characters shared with the next sibling

    # Provenance inherited from extraction
    page_number: Optional[int] = None
    section: Optional[str] = None

    @property
    def order_key(self) -> tuple[int, int]:
        """Creation order: document first, then chunk position."""
        return (self.document_sequence, self.chunk_index)


class ChunkedDocument(BaseModel):
    """Output of the chunker for one document."""

    document_id: str
    parents: list[ParentChunk] = Field(default_factory=list)
    children: list[ChildChunk] = Field(default_factory=list)

    @property
    def parent_count(self) -> int:
        return len(self.parents)

    @property
    def child_count(self) -> int:
        return len(self.children)
