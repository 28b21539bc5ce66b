"""
Context Assembler
------------------
Turns the final candidate list into LLM-ready context:

  1. Relevance floor: candidates whose fused score is below min_relevance
     are dropped (applied after reranking, so a reranker can never pull a
     near-zero hybrid match back in).
  2. Parent resolution: each surviving child is swapped for its whole
     parent chunk; if the parent is missing the child text is used.
  3. Deduplication by (document_id, parent_index) -- the first (best
     ranked) child wins, so two children of one parent give ONE block.
  4. Citations: one SourceCitation per surviving child, not deduplicated,
     so the UI can show every matching passage.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from loguru import logger

from course_rag.schemas import ContextBlock, RetrievalCandidate, SourceCitation
from course_rag.storage.chunk_store import ChunkStore


@dataclass
class AssembledContext:
    blocks: list[ContextBlock] = field(default_factory=list)
    sources: list[SourceCitation] = field(default_factory=list)
    below_floor: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.blocks


class ContextAssembler:
    def __init__(
        self,
        store: ChunkStore,
        min_relevance: float = 0.05,
        citation_score: Literal["fused", "rerank"] = "fused",
    ) -> None:
        self.store = store
        self.min_relevance = min_relevance
        self.citation_score = citation_score

    def similarity(self, candidate: RetrievalCandidate) -> float:
        """Score shown to the user for a candidate."""
        if self.citation_score == "rerank" and candidate.rerank_score is not None:
            return candidate.rerank_score
        return candidate.fused_score

    def assemble(self, candidates: list[RetrievalCandidate]) -> AssembledContext:
        """Build context blocks and citations, preserving candidate order."""
        kept = [c for c in candidates if c.fused_score >= self.min_relevance]
        result = AssembledContext(below_floor=len(candidates) - len(kept))

        seen: set[tuple[str, int]] = set()
        for candidate in kept:
            chunk = candidate.chunk
            file_name = self._file_name(chunk.document_id)
            similarity = self.similarity(candidate)

            result.sources.append(
                SourceCitation(
                    file_name=file_name,
                    document_id=chunk.document_id,
                    chunk_id=chunk.chunk_id,
                    similarity=similarity,
                    page_number=chunk.page_number,
                    section=chunk.section,
                )
            )

            key = (chunk.document_id, chunk.parent_index)
            if key in seen:
                continue
            seen.add(key)

            parent = self.store.get_parent(chunk.document_id, chunk.parent_index)
            if parent is None:
                logger.warning(
                    f"[Context] Parent {chunk.parent_index} of {chunk.document_id} missing; "
                    f"using child text of {chunk.chunk_id}"
                )
            result.blocks.append(
                ContextBlock(
                    content=parent.content if parent is not None else chunk.content,
                    file_name=file_name,
                    document_id=chunk.document_id,
                    parent_index=parent.parent_index if parent is not None else None,
                    similarity=similarity,
                    page_number=parent.page_number if parent is not None else chunk.page_number,
                    section=parent.section if parent is not None else chunk.section,
                )
            )

        logger.debug(
            f"[Context] {len(candidates)} candidates -> {len(result.blocks)} blocks, "
            f"{len(result.sources)} sources ({result.below_floor} below floor {self.min_relevance})"
        )
        return result

    def _file_name(self, document_id: str) -> str:
        document = self.store.get_document(document_id)
        return document.display_name if document is not None else document_id


def format_context_blocks(blocks: list[ContextBlock], separator: str = "\n\n---\n\n") -> str:
    """Number blocks [1], [2], ... for the system prompt."""
    formatted: list[str] = []
    for i, block in enumerate(blocks, start=1):
        location = f", page {block.page_number}" if block.page_number is not None else ""
        heading = f" | {block.section}" if block.section else ""
        formatted.append(f"[{i}] {block.file_name}{location}{heading}\n{block.content}")
    return separator.join(formatted)
