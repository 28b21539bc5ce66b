"""
Ingestion Pipeline - Chunk, Embed, Index
-----------------------------------------
Turns one uploaded document's extracted text into searchable chunks:

    register -> processing
        |
        v
    clear previous chunks (store + index)     re-ingestion is idempotent
        |
        v
    validate text -> HierarchicalChunker -> embed children (timeout)
        |
        v
    commit ChunkStore + FAISSIndex -> completed

Any failure after registration removes whatever was written, marks the
document FAILED with the reason, and is reported through the returned
IngestionResult rather than raised.  Runs for the same document id are
serialised by a per-document asyncio.Lock; different documents proceed
concurrently.  A lock is dropped only once no run holds or awaits it.
"""
from __future__ import annotations

import asyncio
import threading
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable, Optional

from loguru import logger

from course_rag.chunking.chunker import HierarchicalChunker
from course_rag.embedding.embedder import EmbeddingProvider
from course_rag.embedding.faiss_index import FAISSIndex
from course_rag.errors import EmbeddingError, IngestionError
from course_rag.schemas import DocumentStatus, IngestionRequest, IngestionResult
from course_rag.settings import RAGConfig
from course_rag.storage.chunk_store import ChunkStore


class IngestionPipeline:
    """
    Usage:
        pipeline = IngestionPipeline(store, index, embedder, config)
        result = await pipeline.ingest(request)
        if not result.ok:
            print(result.error)
    """

    def __init__(
        self,
        store: ChunkStore,
        index: FAISSIndex,
        embedder: EmbeddingProvider,
        config: Optional[RAGConfig] = None,
        chunker: Optional[HierarchicalChunker] = None,
        state_lock: Optional[threading.RLock] = None,
    ) -> None:
        self.config = config or RAGConfig()
        self.store = store
        self.index = index
        self.embedder = embedder
        self.chunker = chunker or HierarchicalChunker.from_config(self.config.chunking)
        self.state_lock = state_lock if state_lock is not None else threading.RLock()
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    # --- Public API -----------------------------------------------------------

    async def ingest(self, request: IngestionRequest) -> IngestionResult:
        """Chunk, embed and index one document. Never raises for per-document failures."""
        async with self._document_lock(request.document_id):
            return await self._ingest_locked(request)

    async def ingest_many(self, requests: Iterable[IngestionRequest]) -> list[IngestionResult]:
        """Ingest several documents concurrently, at most ingestion.max_concurrency at a time."""
        semaphore = asyncio.Semaphore(self.config.ingestion.max_concurrency)

        async def _bounded(request: IngestionRequest) -> IngestionResult:
            async with semaphore:
                return await self.ingest(request)

        results = await asyncio.gather(*(_bounded(r) for r in requests))
        failed = sum(1 for r in results if not r.ok)
        logger.info(
            f"[Ingestion] Batch complete | {len(results) - failed} completed, {failed} failed"
        )
        return list(results)

    async def delete_document(self, document_id: str) -> bool:
        """Remove a document with its chunks, vectors and keyword postings."""
        async with self._document_lock(document_id):
            with self.state_lock:
                removed_vectors = self.index.remove_document(document_id)
                existed = self.store.delete_document(document_id)
        logger.info(
            f"[Ingestion] Deleted {document_id} | existed={existed} vectors={removed_vectors}"
        )
        return existed

    # --- Internals ------------------------------------------------------------

    async def _ingest_locked(self, request: IngestionRequest) -> IngestionResult:
        with self.state_lock:
            document = self.store.register(request)
            self.store.set_status(document.document_id, DocumentStatus.PROCESSING)
            # Retry path: whatever a previous run left behind goes first
            self._clear(document.document_id)
        logger.info(
            f"[Ingestion] Processing {document.document_id} ({document.display_name}) "
            f"| collection={document.collection_id} | {len(request.raw_text)} chars"
        )

        try:
            text = request.raw_text
            if len(text.strip()) < self.config.ingestion.min_text_chars:
                raise IngestionError(
                    f"Could not extract enough text from the file "
                    f"(need at least {self.config.ingestion.min_text_chars} characters)"
                )

            chunked = self.chunker.chunk_document(
                document_id=document.document_id,
                collection_id=document.collection_id,
                text=text,
                page_boundaries=request.page_boundaries,
                section_hints=request.section_hints,
                document_sequence=document.sequence,
            )
            if not chunked.children:
                raise IngestionError("Document produced no searchable chunks")

            try:
                embeddings = await asyncio.wait_for(
                    self.embedder.embed_texts([c.content for c in chunked.children]),
                    timeout=self.config.timeouts.embedding_s,
                )
            except asyncio.TimeoutError as exc:
                raise IngestionError(
                    f"Embedding timed out after {self.config.timeouts.embedding_s:.0f}s"
                ) from exc
            except EmbeddingError as exc:
                raise IngestionError(str(exc)) from exc

            with self.state_lock:
                self.store.commit_chunks(chunked)
                self.index.add_document(chunked.children, embeddings)
                self.store.set_status(document.document_id, DocumentStatus.COMPLETED)

        except Exception as exc:
            reason = str(exc) or type(exc).__name__
            with self.state_lock:
                self._clear(document.document_id)
                self.store.set_status(document.document_id, DocumentStatus.FAILED, error_message=reason)
            logger.error(f"[Ingestion] {document.document_id} failed: {reason}")
            return IngestionResult(
                document_id=document.document_id,
                status=DocumentStatus.FAILED,
                error=reason,
            )

        logger.success(
            f"[Ingestion] {document.document_id} completed | "
            f"{chunked.parent_count} parents, {chunked.child_count} children"
        )
        return IngestionResult(
            document_id=document.document_id,
            status=DocumentStatus.COMPLETED,
            parent_count=chunked.parent_count,
            child_count=chunked.child_count,
        )

    def _clear(self, document_id: str) -> None:
        removed = self.index.remove_document(document_id)
        self.store.clear_chunks(document_id)
        if removed:
            logger.debug(f"[Ingestion] Cleared {removed} previous chunks for {document_id}")

    @asynccontextmanager
    async def _document_lock(self, document_id: str) -> AsyncIterator[None]:
        """Serialise runs for one document; the lock is dropped with its last user."""
        lock = self._locks.setdefault(document_id, asyncio.Lock())
        self._lock_users[document_id] = self._lock_users.get(document_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[document_id] -= 1
            if self._lock_users[document_id] == 0:
                del self._lock_users[document_id]
                del self._locks[document_id]
