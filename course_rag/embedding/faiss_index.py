"""
FAISS Vector Index
-------------------
Dual index over child chunks, sharded by collection (class):

  - A FAISS IndexIDMap2(IndexFlatIP) per collection -- inner product ==
    cosine similarity after L2 normalisation.  Stable int64 ids let a
    document's vectors be removed when it is re-ingested or deleted.
  - A BM25+ keyword index (rank_bm25) per collection, rebuilt lazily on the
    first keyword search after a write.  BM25+ keeps IDF positive, so a
    class with only one or two chunks still gets keyword scores; a chunk is
    a keyword hit only when it shares a query term.

Sharding makes collection scoping structural: a query can only ever see the
chunks of its own class.

Persistence (index_dir/):
  - faiss_<n>.index   -> one FAISS file per collection shard
  - chunks.json       -> chunk records keyed by FAISS id
  - index_manifest.json
"""
from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import faiss
import numpy as np
from loguru import logger
from rank_bm25 import BM25Plus

from course_rag.chunking.schemas import ChildChunk
from course_rag.utils.helpers import load_json, save_json, write_bytes_atomic


def bm25_tokens(text: str) -> list[str]:
    """Normalise text for BM25: lowercase, strip punctuation, split on whitespace.

    Stripping non-alphanumerics first makes "photosynthesis," and
    "Photosynthesis's" both tokenise to ['photosynthesis', ...].
    """
    normalised = re.sub(r"[^a-z0-9\s]", " ", text.lower())
    return [t for t in normalised.split() if len(t) > 1]


@dataclass
class IndexSnapshot:
    """In-memory copy of an index, taken under its lock."""

    manifest: dict
    chunk_records: list[dict] = field(default_factory=list)
    blobs: dict[str, bytes] = field(default_factory=dict)


class _CollectionShard:
    """Dense + sparse index for the chunks of a single collection."""

    def __init__(self, dimensions: int) -> None:
        self.faiss_index = faiss.IndexIDMap2(faiss.IndexFlatIP(dimensions))
        self.chunks: dict[int, ChildChunk] = {}
        self.tokens: dict[int, list[str]] = {}
        self.document_ids: dict[str, list[int]] = {}
        self.bm25: Optional[BM25Plus] = None
        self.bm25_ids: list[int] = []
        self.bm25_vocab: list[frozenset[str]] = []
        self.bm25_dirty = True

    def rebuild_bm25(self) -> None:
        # Keep BM25 row order aligned with chunk creation order
        self.bm25_ids = sorted(self.chunks, key=lambda i: self.chunks[i].order_key)
        corpus = [self.tokens[i] for i in self.bm25_ids]
        self.bm25_vocab = [frozenset(tokens) for tokens in corpus]
        self.bm25 = BM25Plus(corpus) if any(corpus) else None
        self.bm25_dirty = False


class FAISSIndex:
    """
    Collection-sharded dual index: FAISS (dense) + BM25 (sparse).

    Writes are per document (add_document / remove_document); all access
    goes through one lock so searches running in worker threads never see
    a half-applied write.
    """

    def __init__(self, dimensions: int = 1536) -> None:
        self.dimensions = dimensions
        self._shards: dict[str, _CollectionShard] = {}
        self._document_collection: dict[str, str] = {}
        self._next_id = 0
        self._lock = threading.RLock()

    # --- Write ----------------------------------------------------------------

    def add_document(self, chunks: list[ChildChunk], embeddings: np.ndarray) -> None:
        """
        Index every child chunk of one document, replacing any previous set.

        Args:
            chunks: Child chunks of a single document.
            embeddings: Float32 array of shape (len(chunks), dimensions).
        """
        if len(chunks) != len(embeddings):
            raise ValueError(
                f"Mismatch: {len(chunks)} chunks vs {len(embeddings)} embeddings"
            )
        if not chunks:
            return

        document_ids = {c.document_id for c in chunks}
        collection_ids = {c.collection_id for c in chunks}
        if len(document_ids) != 1 or len(collection_ids) != 1:
            raise ValueError("add_document expects the chunks of exactly one document")
        document_id = document_ids.pop()
        collection_id = collection_ids.pop()

        vectors = np.ascontiguousarray(embeddings, dtype=np.float32)
        if vectors.ndim != 2 or vectors.shape[1] != self.dimensions:
            raise ValueError(
                f"Embedding width {vectors.shape[-1]} does not match index dimensions {self.dimensions}"
            )

        with self._lock:
            self.remove_document(document_id)
            shard = self._shards.setdefault(collection_id, _CollectionShard(self.dimensions))

            ids = np.arange(self._next_id, self._next_id + len(chunks), dtype=np.int64)
            self._next_id += len(chunks)
            shard.faiss_index.add_with_ids(vectors, ids)

            for faiss_id, chunk in zip(ids.tolist(), chunks):
                shard.chunks[faiss_id] = chunk
                shard.tokens[faiss_id] = bm25_tokens(f"{chunk.section or ''} {chunk.content}")
            shard.document_ids[document_id] = ids.tolist()
            shard.bm25_dirty = True
            self._document_collection[document_id] = collection_id

        logger.info(
            f"[FAISSIndex] Indexed {len(chunks)} chunks for {document_id} | "
            f"collection={collection_id} size={shard.faiss_index.ntotal}"
        )

    def remove_document(self, document_id: str) -> int:
        """Drop every vector and posting of a document. Returns rows removed."""
        with self._lock:
            collection_id = self._document_collection.pop(document_id, None)
            if collection_id is None:
                return 0
            shard = self._shards[collection_id]
            ids = shard.document_ids.pop(document_id, [])
            if ids:
                shard.faiss_index.remove_ids(np.array(ids, dtype=np.int64))
                for faiss_id in ids:
                    shard.chunks.pop(faiss_id, None)
                    shard.tokens.pop(faiss_id, None)
                shard.bm25_dirty = True
            if not shard.chunks:
                del self._shards[collection_id]

        logger.debug(f"[FAISSIndex] Removed {len(ids)} chunks for {document_id}")
        return len(ids)

    # --- Search ---------------------------------------------------------------

    def search_dense(
        self, collection_id: str, query_vec: np.ndarray, top_k: int = 30
    ) -> list[tuple[ChildChunk, float]]:
        """
        Dense (semantic) search within one collection.

        Returns: List of (ChildChunk, cosine_score) sorted descending.
        """
        with self._lock:
            shard = self._shards.get(collection_id)
            if shard is None or shard.faiss_index.ntotal == 0:
                return []
            k = min(top_k, shard.faiss_index.ntotal)
            qv = np.ascontiguousarray(query_vec.reshape(1, -1), dtype=np.float32)
            scores, indices = shard.faiss_index.search(qv, k)
            return [
                (shard.chunks[int(idx)], float(score))
                for score, idx in zip(scores[0], indices[0])
                if idx >= 0
            ]

    def search_sparse(
        self, collection_id: str, query_text: str, top_k: int = 30
    ) -> list[tuple[ChildChunk, float]]:
        """
        Sparse (BM25 keyword) search within one collection.

        Returns: List of (ChildChunk, bm25_score) sorted descending; only
        chunks sharing at least one query term are returned.
        """
        tokens = bm25_tokens(query_text)
        if not tokens:
            return []
        with self._lock:
            shard = self._shards.get(collection_id)
            if shard is None:
                return []
            if shard.bm25_dirty:
                shard.rebuild_bm25()
            if shard.bm25 is None:
                return []
            query_terms = set(tokens)
            hits = np.array(
                [i for i, vocab in enumerate(shard.bm25_vocab) if not vocab.isdisjoint(query_terms)],
                dtype=np.int64,
            )
            if hits.size == 0:
                return []
            bm25_scores = shard.bm25.get_scores(tokens)[hits]
            order = np.argsort(-bm25_scores, kind="stable")[:top_k]
            return [
                (shard.chunks[shard.bm25_ids[hits[j]]], float(bm25_scores[j]))
                for j in order
            ]

    # --- Introspection --------------------------------------------------------

    def collection_size(self, collection_id: str) -> int:
        with self._lock:
            shard = self._shards.get(collection_id)
            return 0 if shard is None else int(shard.faiss_index.ntotal)

    def document_chunk_count(self, document_id: str) -> int:
        with self._lock:
            collection_id = self._document_collection.get(document_id)
            if collection_id is None:
                return 0
            return len(self._shards[collection_id].document_ids.get(document_id, []))

    @property
    def total_vectors(self) -> int:
        with self._lock:
            return sum(int(s.faiss_index.ntotal) for s in self._shards.values())

    @property
    def is_built(self) -> bool:
        return self.total_vectors > 0

    # --- Persistence ----------------------------------------------------------

    def save(self, index_dir: Path) -> None:
        """Persist every shard's FAISS index plus chunk metadata to disk."""
        self.write_snapshot(self.snapshot(), index_dir)

    def snapshot(self) -> IndexSnapshot:
        """Serialise all shards in memory under the lock; no disk I/O."""
        with self._lock:
            shards_manifest = []
            chunk_records = []
            blobs: dict[str, bytes] = {}
            for n, (collection_id, shard) in enumerate(sorted(self._shards.items())):
                file_name = f"faiss_{n}.index"
                blobs[file_name] = faiss.serialize_index(shard.faiss_index).tobytes()
                shards_manifest.append(
                    {
                        "collection_id": collection_id,
                        "file": file_name,
                        "vectors": int(shard.faiss_index.ntotal),
                    }
                )
                for faiss_id, chunk in shard.chunks.items():
                    chunk_records.append({"faiss_id": faiss_id, "chunk": chunk.model_dump(mode="json")})

            manifest = {
                "dimensions": self.dimensions,
                "next_id": self._next_id,
                "total_vectors": sum(s["vectors"] for s in shards_manifest),
                "shards": shards_manifest,
            }
        return IndexSnapshot(manifest=manifest, chunk_records=chunk_records, blobs=blobs)

    @staticmethod
    def write_snapshot(snapshot: IndexSnapshot, index_dir: Path) -> None:
        """Write shard files first and the manifest last; each file is swapped in atomically."""
        index_dir = Path(index_dir)
        for file_name, blob in snapshot.blobs.items():
            write_bytes_atomic(blob, index_dir / file_name)
        save_json(snapshot.chunk_records, index_dir / "chunks.json")
        save_json(snapshot.manifest, index_dir / "index_manifest.json")

        logger.info(
            f"[FAISSIndex] Saved {len(snapshot.blobs)} shard(s), "
            f"{len(snapshot.chunk_records)} chunk records -> {index_dir}"
        )

    @classmethod
    def load(cls, index_dir: Path) -> "FAISSIndex":
        """Load a persisted index from disk."""
        index_dir = Path(index_dir)
        manifest = load_json(index_dir / "index_manifest.json")
        instance = cls(dimensions=int(manifest["dimensions"]))
        instance._next_id = int(manifest["next_id"])

        for entry in manifest["shards"]:
            shard = _CollectionShard(instance.dimensions)
            shard.faiss_index = faiss.read_index(str(index_dir / entry["file"]))
            instance._shards[entry["collection_id"]] = shard

        for record in load_json(index_dir / "chunks.json"):
            chunk = ChildChunk(**record["chunk"])
            faiss_id = int(record["faiss_id"])
            shard = instance._shards[chunk.collection_id]
            shard.chunks[faiss_id] = chunk
            shard.tokens[faiss_id] = bm25_tokens(f"{chunk.section or ''} {chunk.content}")
            shard.document_ids.setdefault(chunk.document_id, []).append(faiss_id)
            instance._document_collection[chunk.document_id] = chunk.collection_id

        logger.info(
            f"[FAISSIndex] Loaded: {instance.total_vectors} vectors across "
            f"{len(instance._shards)} collection(s)"
        )
        return instance
