"""
Course RAG - Hierarchical Chunker
----------------------------------
Small chunks search well but lose the surrounding topic; large chunks keep
the topic but dilute the embedding.  The chunker therefore produces two
levels for every document:

  - PARENT chunks (2000-4000 estimated tokens): greedy runs of whole sentences.
      These are what the LLM reads.  Parents tile the trimmed document text
      exactly -- no gaps, no overlaps -- and every span is an absolute offset
      into the raw text so page boundaries from extraction stay valid.

  - CHILD chunks (~400 tokens, 50-token overlap): sliding windows over each
      parent, cut at a sentence end when one sits in the back half of the
      window.  These are what gets embedded and keyword-indexed.

Token counts are estimated as ceil(chars / 4); the chunker never calls a
tokenizer so boundaries are cheap and fully deterministic.
"""
from __future__ import annotations

import re
from typing import Iterable, Optional, Sequence

from loguru import logger

from course_rag.chunking.schemas import (
    ChildChunk,
    ChunkedDocument,
    PageBoundary,
    ParentChunk,
    SectionHint,
)
from course_rag.settings import CHARS_PER_TOKEN, ChunkingConfig
from course_rag.utils.helpers import estimate_tokens

# ── Constants ─────────────────────────────────────────────────────────────────

PARENT_MIN_TOKENS = 2000
PARENT_MAX_TOKENS = 4000
CHILD_TARGET_TOKENS = 400
CHILD_OVERLAP_TOKENS = 50
MIN_CHILD_CHARS = 100

# A sentence ends at . ! or ? followed by whitespace; the whitespace belongs
# to the sentence so consecutive sentences tile the text.
_SENTENCE_END = re.compile(r"[.!?]+\s+")
_CHAPTER_HEADING = re.compile(r"^(chapter|section|part)\s+\d+", re.IGNORECASE)
_NUMBERED_HEADING = re.compile(r"^(\d+\.)+\s+[A-Z]")


def split_sentence_spans(text: str, start: int = 0, end: Optional[int] = None) -> list[tuple[int, int]]:
    """Return (start, end) spans of the sentences in text[start:end], covering it exactly."""
    end = len(text) if end is None else end
    spans: list[tuple[int, int]] = []
    cursor = start
    for match in _SENTENCE_END.finditer(text, start, end):
        spans.append((cursor, match.end()))
        cursor = match.end()
    if cursor < end:
        spans.append((cursor, end))
    return spans


def detect_section_heading(text: str) -> Optional[str]:
    """Guess a section heading from the first three lines of a chunk."""
    for line in (raw.strip() for raw in text.split("\n")[:3]):
        if not line:
            continue
        # All caps line
        if line == line.upper() and any(c.isalpha() for c in line) and 3 < len(line) < 100:
            return line
        if _CHAPTER_HEADING.match(line):
            return line
        if _NUMBERED_HEADING.match(line):
            return line
    return None


def page_for_offset(boundaries: Sequence[PageBoundary], offset: int) -> Optional[int]:
    """Page whose [char_start, char_end) range contains offset, if any."""
    for boundary in boundaries:
        if boundary.char_start <= offset < boundary.char_end:
            return boundary.page
    return None


def section_for_offset(hints: Sequence[SectionHint], offset: int) -> Optional[str]:
    """Heading of the last hint that starts at or before offset."""
    current: Optional[str] = None
    for hint in sorted(hints, key=lambda h: h.char_start):
        if hint.char_start > offset:
            break
        current = hint.heading
    return current


# ── Main Chunker ──────────────────────────────────────────────────────────────

class HierarchicalChunker:
    """
    Splits one document into parent chunks and their overlapping children.

    Usage:
        chunker = HierarchicalChunker()
        chunked = chunker.chunk_document("doc-1", "class-1", text)
    """

    def __init__(
        self,
        parent_min_tokens: int = PARENT_MIN_TOKENS,
        parent_max_tokens: int = PARENT_MAX_TOKENS,
        child_target_tokens: int = CHILD_TARGET_TOKENS,
        child_overlap_tokens: int = CHILD_OVERLAP_TOKENS,
        min_child_chars: int = MIN_CHILD_CHARS,
    ) -> None:
        if parent_min_tokens > parent_max_tokens:
            raise ValueError("parent_min_tokens must not exceed parent_max_tokens")
        if child_target_tokens <= 0:
            raise ValueError("child_target_tokens must be positive")
        if child_target_tokens * CHARS_PER_TOKEN < min_child_chars:
            raise ValueError("child windows must be at least min_child_chars long")
        self.parent_min_tokens = parent_min_tokens
        self.parent_max_tokens = parent_max_tokens
        self.child_target_tokens = child_target_tokens
        self.child_overlap_tokens = max(0, child_overlap_tokens)
        self.min_child_chars = min_child_chars

    @classmethod
    def from_config(cls, config: ChunkingConfig) -> "HierarchicalChunker":
        return cls(
            parent_min_tokens=config.parent_min_tokens,
            parent_max_tokens=config.parent_max_tokens,
            child_target_tokens=config.child_target_tokens,
            child_overlap_tokens=config.child_overlap_tokens,
            min_child_chars=config.min_child_chars,
        )

    def chunk_document(
        self,
        document_id: str,
        collection_id: str,
        text: str,
        page_boundaries: Iterable[PageBoundary] = (),
        section_hints: Iterable[SectionHint] = (),
        document_sequence: int = 0,
    ) -> ChunkedDocument:
        """
        Build the full parent/child hierarchy for one document.

        Args:
            document_id:       Owning SourceDocument id.
            collection_id:     Class the document belongs to.
            text:              Raw extracted text.
            page_boundaries:   Optional page ranges from extraction.
            section_hints:     Optional headings from extraction.
            document_sequence: Registration order, copied onto every child.

        Returns:
            ChunkedDocument with parents in document order and children
            flattened in (parent, child) order.
        """
        pages = list(page_boundaries)
        hints = list(section_hints)

        parents = [
            self._annotate_parent(parent, pages, hints)
            for parent in self.create_parent_chunks(document_id, text)
        ]

        children: list[ChildChunk] = []
        for parent in parents:
            children.extend(
                self.create_child_chunks(
                    parent,
                    collection_id=collection_id,
                    document_sequence=document_sequence,
                    first_chunk_index=len(children),
                    page_boundaries=pages,
                )
            )

        undersized = sum(1 for p in parents[:-1] if p.token_count < self.parent_min_tokens)
        logger.debug(
            f"[Chunker] {document_id} | {len(text)} chars | "
            f"{len(parents)} parent(s) ({undersized} below min band) -> "
            f"{len(children)} child chunk(s)"
        )
        return ChunkedDocument(document_id=document_id, parents=parents, children=children)

    # --- Parents ---------------------------------------------------------------

    def create_parent_chunks(self, document_id: str, text: str) -> list[ParentChunk]:
        """Greedily pack whole sentences into parents of at most parent_max_tokens."""
        start = len(text) - len(text.lstrip())
        end = len(text.rstrip())
        if start >= end:
            return []

        sentences = split_sentence_spans(text, start, end)
        parents: list[ParentChunk] = []
        buf_start = buf_end = start
        i = 0

        while i < len(sentences):
            sent_start, sent_end = sentences[i]
            proposed_tokens = estimate_tokens(text[buf_start:sent_end])

            if proposed_tokens <= self.parent_max_tokens:
                buf_end = sent_end
                i += 1
            elif buf_end > buf_start:
                # Adding this sentence would overflow: close the buffer and
                # retry the sentence against an empty one.
                parents.append(self._make_parent(document_id, text, buf_start, buf_end, len(parents)))
                buf_start = buf_end = sent_start
            else:
                # A single sentence larger than the max becomes its own parent
                parents.append(self._make_parent(document_id, text, sent_start, sent_end, len(parents)))
                logger.debug(
                    f"[Chunker] {document_id} | oversized sentence "
                    f"({estimate_tokens(text[sent_start:sent_end])} tokens) kept as parent {len(parents) - 1}"
                )
                buf_start = buf_end = sent_end
                i += 1

        if buf_end > buf_start:
            parents.append(self._make_parent(document_id, text, buf_start, buf_end, len(parents)))

        return parents

    @staticmethod
    def _make_parent(document_id: str, text: str, start: int, end: int, index: int) -> ParentChunk:
        span = text[start:end]
        return ParentChunk(
            document_id=document_id,
            parent_index=index,
            start_char=start,
            end_char=end,
            content=span.strip(),
            token_count=estimate_tokens(span),
        )

    @staticmethod
    def _annotate_parent(
        parent: ParentChunk,
        pages: Sequence[PageBoundary],
        hints: Sequence[SectionHint],
    ) -> ParentChunk:
        section = section_for_offset(hints, parent.start_char) if hints else None
        if section is None:
            section = detect_section_heading(parent.content)
        return parent.model_copy(
            update={
                "page_number": page_for_offset(pages, parent.start_char),
                "section": section,
            }
        )

    # --- Children --------------------------------------------------------------

    def create_child_chunks(
        self,
        parent: ParentChunk,
        collection_id: str,
        document_sequence: int = 0,
        first_chunk_index: int = 0,
        page_boundaries: Sequence[PageBoundary] = (),
    ) -> list[ChildChunk]:
        """Slide an overlapping window over the parent content."""
        spans = self._child_spans(parent.content)

        children: list[ChildChunk] = []
        for child_index, (start, end) in enumerate(spans):
            next_start = spans[child_index + 1][0] if child_index + 1 < len(spans) else end
            piece = parent.content[start:end]
            # Parent spans start on a non-whitespace character, so content
            # offsets map onto the raw text by a plain shift.
            doc_start = parent.start_char + start
            chunk_index = first_chunk_index + child_index
            children.append(
                ChildChunk(
                    chunk_id=f"child_{parent.document_id}_{chunk_index}",
                    document_id=parent.document_id,
                    collection_id=collection_id,
                    document_sequence=document_sequence,
                    parent_index=parent.parent_index,
                    child_index=child_index,
                    chunk_index=chunk_index,
                    start_char=start,
                    end_char=end,
                    doc_start_char=doc_start,
                    doc_end_char=parent.start_char + end,
                    content=piece.strip(),
                    token_count=estimate_tokens(piece),
                    overlap_with_next=max(0, end - next_start),
                    page_number=page_for_offset(page_boundaries, doc_start) or parent.page_number,
                    section=parent.section,
                )
            )
        return children

    def _child_spans(self, content: str) -> list[tuple[int, int]]:
        """Window spans (relative to content) that become child chunks."""
        length = len(content)
        if not content.strip():
            return []
        if len(content.strip()) < self.min_child_chars:
            # Too short to window: the whole parent is the only search unit
            return [(0, length)]

        chunk_size = self.child_target_tokens * CHARS_PER_TOKEN
        overlap = self.child_overlap_tokens * CHARS_PER_TOKEN

        spans: list[tuple[int, int]] = []
        start = 0
        while start < length:
            end = min(start + chunk_size, length)
            piece = content[start:end]

            # Prefer ending on a sentence when one sits past the window midpoint
            if end < length:
                boundary = max(piece.rfind("."), piece.rfind("?"), piece.rfind("!"))
                if boundary * 2 > chunk_size:
                    piece = piece[: boundary + 1]

            if len(piece.strip()) >= self.min_child_chars:
                spans.append((start, start + len(piece)))

            if start + len(piece) >= length:
                break
            start = self._advance(start, len(piece), chunk_size, overlap)

        return spans

    @staticmethod
    def _advance(start: int, piece_len: int, chunk_size: int, overlap: int) -> int:
        """Next window offset; always strictly greater than start."""
        step = piece_len - overlap
        if step > 0:
            next_start = start + step
        else:
            # Overlap swallows the whole window: move by half of it instead
            next_start = start + max(1, piece_len // 2)

        if next_start <= start:
            logger.warning(
                f"[Chunker] Window offset stalled at {start} "
                f"(piece={piece_len}, overlap={overlap}); forcing progress"
            )
            next_start = start + max(1, chunk_size)
        return next_start
