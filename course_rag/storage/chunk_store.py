"""
Chunk Store
------------
Keyed arena holding every SourceDocument with its parent and child chunks.

Nothing points back to anything: documents, parents and children live in
flat dicts keyed by document_id, and a parent is addressed by
(document_id, parent_index).  Deleting a document drops all three entries
together, so cascade deletion holds by construction.

Persistence (index_dir/chunk_store.json) uses the shared orjson helpers.
"""
from __future__ import annotations

import threading
from pathlib import Path
from typing import Optional

from loguru import logger

from course_rag.chunking.schemas import ChildChunk, ChunkedDocument, ParentChunk
from course_rag.schemas import DocumentStatus, IngestionRequest, SourceDocument
from course_rag.utils.helpers import load_json, save_json

STORE_FILE = "chunk_store.json"


class ChunkStore:
    """In-memory document + chunk arena with JSON persistence."""

    def __init__(self) -> None:
        self._documents: dict[str, SourceDocument] = {}
        self._parents: dict[str, list[ParentChunk]] = {}
        self._children: dict[str, list[ChildChunk]] = {}
        self._next_sequence = 0
        self._lock = threading.RLock()

    # --- Documents ------------------------------------------------------------

    def register(self, request: IngestionRequest) -> SourceDocument:
        """
        Create (or refresh) the document record for an ingestion request.

        A re-registered document keeps its original sequence so tie-breaking
        order is stable across re-ingestion.
        """
        with self._lock:
            existing = self._documents.get(request.document_id)
            if existing is not None:
                sequence = existing.sequence
                created_at = existing.created_at
            else:
                sequence = self._next_sequence
                self._next_sequence += 1
                created_at = None

            fields = dict(
                document_id=request.document_id,
                collection_id=request.collection_id,
                display_name=request.display_name,
                raw_text=request.raw_text,
                status=DocumentStatus.PENDING,
                sequence=sequence,
            )
            if created_at is not None:
                fields["created_at"] = created_at
            document = SourceDocument(**fields)
            self._documents[document.document_id] = document
            return document

    def get_document(self, document_id: str) -> Optional[SourceDocument]:
        with self._lock:
            return self._documents.get(document_id)

    def list_documents(self, collection_id: Optional[str] = None) -> list[SourceDocument]:
        """Documents in registration order, optionally scoped to one collection."""
        with self._lock:
            docs = [
                d for d in self._documents.values()
                if collection_id is None or d.collection_id == collection_id
            ]
        return sorted(docs, key=lambda d: d.sequence)

    def set_status(
        self,
        document_id: str,
        status: DocumentStatus,
        error_message: Optional[str] = None,
    ) -> SourceDocument:
        with self._lock:
            document = self._documents.get(document_id)
            if document is None:
                raise KeyError(f"Unknown document: {document_id}")
            updated = document.model_copy(
                update={"status": status, "error_message": error_message}
            )
            self._documents[document_id] = updated
            return updated

    def is_completed(self, document_id: str) -> bool:
        with self._lock:
            document = self._documents.get(document_id)
            return document is not None and document.status == DocumentStatus.COMPLETED

    def completed_count(self, collection_id: str) -> int:
        with self._lock:
            return sum(
                1 for d in self._documents.values()
                if d.collection_id == collection_id and d.status == DocumentStatus.COMPLETED
            )

    def delete_document(self, document_id: str) -> bool:
        """Remove a document together with all of its parents and children."""
        with self._lock:
            existed = self._documents.pop(document_id, None) is not None
            parents = self._parents.pop(document_id, [])
            children = self._children.pop(document_id, [])
        if existed:
            logger.debug(
                f"[ChunkStore] Deleted {document_id} "
                f"({len(parents)} parents, {len(children)} children)"
            )
        return existed

    # --- Chunks ---------------------------------------------------------------

    def commit_chunks(self, chunked: ChunkedDocument) -> None:
        """Replace the full chunk set of a registered document in one step."""
        with self._lock:
            if chunked.document_id not in self._documents:
                raise KeyError(f"Unknown document: {chunked.document_id}")
            self._parents[chunked.document_id] = list(chunked.parents)
            self._children[chunked.document_id] = list(chunked.children)

    def clear_chunks(self, document_id: str) -> int:
        """Drop a document's chunks but keep its record. Returns children removed."""
        with self._lock:
            self._parents.pop(document_id, None)
            return len(self._children.pop(document_id, []))

    def get_parent(self, document_id: str, parent_index: int) -> Optional[ParentChunk]:
        with self._lock:
            parents = self._parents.get(document_id, [])
        if 0 <= parent_index < len(parents):
            return parents[parent_index]
        return None

    def get_parents(self, document_id: str) -> list[ParentChunk]:
        with self._lock:
            return list(self._parents.get(document_id, []))

    def get_children(self, document_id: str) -> list[ChildChunk]:
        with self._lock:
            return list(self._children.get(document_id, []))

    def stats(self) -> dict:
        with self._lock:
            by_status: dict[str, int] = {}
            for d in self._documents.values():
                by_status[d.status.value] = by_status.get(d.status.value, 0) + 1
            return {
                "documents": len(self._documents),
                "collections": len({d.collection_id for d in self._documents.values()}),
                "parents": sum(len(p) for p in self._parents.values()),
                "children": sum(len(c) for c in self._children.values()),
                "by_status": by_status,
            }

    # --- Persistence ----------------------------------------------------------

    def save(self, index_dir: Path) -> None:
        self.write_snapshot(self.snapshot(), index_dir)

    def snapshot(self) -> dict:
        """Point-in-time copy of the whole store, ready to serialise."""
        with self._lock:
            return {
                "next_sequence": self._next_sequence,
                "documents": [d.model_dump(mode="json") for d in self._documents.values()],
                "parents": {
                    doc_id: [p.model_dump(mode="json") for p in parents]
                    for doc_id, parents in self._parents.items()
                },
                "children": {
                    doc_id: [c.model_dump(mode="json") for c in children]
                    for doc_id, children in self._children.items()
                },
            }

    @staticmethod
    def write_snapshot(payload: dict, index_dir: Path) -> None:
        save_json(payload, Path(index_dir) / STORE_FILE)
        logger.info(f"[ChunkStore] Saved {len(payload['documents'])} documents -> {index_dir}")

    @classmethod
    def load(cls, index_dir: Path) -> "ChunkStore":
        payload = load_json(Path(index_dir) / STORE_FILE)
        store = cls()
        store._next_sequence = int(payload["next_sequence"])
        for record in payload["documents"]:
            document = SourceDocument(**record)
            store._documents[document.document_id] = document
        for doc_id, parents in payload["parents"].items():
            store._parents[doc_id] = [ParentChunk(**p) for p in parents]
        for doc_id, children in payload["children"].items():
            store._children[doc_id] = [ChildChunk(**c) for c in children]
        logger.info(f"[ChunkStore] Loaded {len(store._documents)} documents from {index_dir}")
        return store
