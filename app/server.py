"""
Course RAG - Web API Server
----------------------------
FastAPI server that wraps the RAGPipeline retrieval core.

Endpoints:
  GET    /api/health               -> pipeline status, index and store counts
  POST   /api/documents            -> ingest one document's extracted text
  DELETE /api/documents/{doc_id}   -> remove a document and all its chunks
  POST   /api/query                -> retrieve context blocks + citations

A query that matches nothing returns HTTP 200 with
status="no_relevant_materials"; a query that cannot be served returns 503.

Run from the project root:
    uvicorn app.server:app --reload --port 8000
"""
from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager
from typing import Union

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from pydantic import BaseModel

from course_rag.errors import CourseRAGError, QueryCancelled
from course_rag.schemas import (
    IngestionRequest,
    IngestionResult,
    NoRelevantMaterials,
    QueryRequest,
    RetrievedContext,
)

load_dotenv()

CONFIG_PATH = os.getenv("COURSE_RAG_CONFIG")
DISCONNECT_POLL_SECONDS = 0.1

# ---------------------------------------------------------------------------
# Pipeline singleton
# ---------------------------------------------------------------------------

_pipeline = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load the RAG pipeline once at startup; clean up on shutdown."""
    global _pipeline
    from course_rag.serving.pipeline import RAGPipeline
    from course_rag.settings import load_config
    from course_rag.utils.logger import setup_logger

    config = load_config(CONFIG_PATH)
    setup_logger(config.logging.level, config.logging.file)
    logger.info("[Server] Loading RAG pipeline...")
    _pipeline = RAGPipeline.from_config(config)
    logger.info(f"[Server] Pipeline ready | {_pipeline.index.total_vectors:,} vectors")
    yield
    _pipeline = None
    logger.info("[Server] Pipeline unloaded.")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Course RAG API",
    description="Retrieval core for answering student questions over class materials",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------

class DeleteResponse(BaseModel):
    document_id: str
    deleted: bool


def _require_pipeline():
    if _pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline not ready")
    return _pipeline


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.get("/api/health")
async def health():
    """Return pipeline status and index metadata."""
    pipeline = _require_pipeline()
    retrieval = pipeline.config.retrieval
    return {
        "status": "ok",
        "vectors": pipeline.index.total_vectors,
        "store": pipeline.store.stats(),
        "reranker": type(pipeline.reranker).__name__,
        "initial_k": retrieval.initial_k,
        "final_k": retrieval.final_k,
        "fusion": retrieval.fusion,
    }


@app.post("/api/documents", response_model=IngestionResult)
async def ingest_document(request: IngestionRequest):
    """
    Chunk, embed and index one document.

    Per-document failures come back as status="failed" with the reason;
    the document stays registered so the upload UI can show it.  The index
    is saved after every attempt: a failed re-ingest has already cleared the
    previous chunks, and disk must not keep serving them.
    """
    pipeline = _require_pipeline()
    logger.info(f"[API] Ingest | {request.document_id} -> {request.collection_id}")
    result = await pipeline.ingestion.ingest(request)
    await asyncio.to_thread(pipeline.save)
    return result


@app.delete("/api/documents/{document_id}", response_model=DeleteResponse)
async def delete_document(document_id: str):
    pipeline = _require_pipeline()
    deleted = await pipeline.ingestion.delete_document(document_id)
    if not deleted:
        raise HTTPException(status_code=404, detail=f"Document not found: {document_id}")
    await asyncio.to_thread(pipeline.save)
    return DeleteResponse(document_id=document_id, deleted=True)


async def watch_disconnect(
    http_request: Request,
    cancel_event: asyncio.Event,
    interval: float = DISCONNECT_POLL_SECONDS,
) -> None:
    """Set cancel_event once the client has gone away."""
    while not cancel_event.is_set():
        if await http_request.is_disconnected():
            logger.info("[API] Client disconnected; cancelling query")
            cancel_event.set()
            return
        await asyncio.sleep(interval)


@app.post("/api/query", response_model=Union[RetrievedContext, NoRelevantMaterials])
async def query(request: QueryRequest, http_request: Request):
    """
    Retrieve context for a student question.

    Returns RetrievedContext (context blocks + one citation per matching
    chunk) or NoRelevantMaterials with the reason nothing was found.  A
    client that disconnects mid-query cancels it before the next external
    call.
    """
    pipeline = _require_pipeline()
    logger.info(f"[API] Query | {request.collection_id} | {request.question[:80]!r}")
    cancel_event = asyncio.Event()
    watcher = asyncio.create_task(watch_disconnect(http_request, cancel_event))
    try:
        return await pipeline.retrieve_context(request, cancel_event=cancel_event)
    except QueryCancelled as exc:
        logger.info(f"[API] {exc}")
        raise HTTPException(status_code=499, detail="Client closed request") from exc
    except CourseRAGError as exc:
        logger.error(f"[API] Query failed: {exc}")
        raise HTTPException(status_code=503, detail=exc.user_message) from exc
    finally:
        watcher.cancel()
