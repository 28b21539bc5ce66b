"""
Course RAG - CLI Entry Point
-----------------------------
Typer commands over the retrieval core.  The index persists under
storage.index_dir between runs.

Usage:
    python -m course_rag.main ingest notes.txt slides.txt --collection bio-101
    python -m course_rag.main query --collection bio-101 -q "What is osmosis?"
    python -m course_rag.main query --collection bio-101        # interactive loop
    python -m course_rag.main delete notes
    python -m course_rag.main status
"""
from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from rich import box
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from course_rag.errors import CourseRAGError
from course_rag.generation.generator import format_citations
from course_rag.generation.prompts import NO_CONTEXT_RESPONSE
from course_rag.schemas import IngestionRequest, NoRelevantMaterials, QueryRequest
from course_rag.serving.pipeline import RAGPipeline
from course_rag.settings import RAGConfig, load_config
from course_rag.utils.helpers import truncate_text
from course_rag.utils.logger import setup_logger

app = typer.Typer(
    name="course-rag",
    help="Course materials RAG - retrieval core CLI",
    add_completion=False,
)
console = Console()

_CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to pipeline config YAML")


# --- Helpers ------------------------------------------------------------------

def _bootstrap(config_path: Optional[str]) -> tuple[RAGConfig, RAGPipeline]:
    load_dotenv()
    try:
        config = load_config(config_path)
    except CourseRAGError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)
    setup_logger(config.logging.level, config.logging.file)
    with console.status("[cyan]Loading FAISS + BM25 index...[/cyan]"):
        pipeline = RAGPipeline.from_config(config)
    return config, pipeline


# --- Commands -----------------------------------------------------------------

@app.command()
def ingest(
    files: list[Path] = typer.Argument(..., exists=True, dir_okay=False, help="Extracted text files"),
    collection: str = typer.Option(..., "--collection", help="Class the materials belong to"),
    config: Optional[str] = _CONFIG_OPTION,
) -> None:
    """
    Chunk, embed and index extracted-text files into one collection.

    \b
    The file stem is used as the document id, so re-ingesting a file
    replaces its previous chunks.
    """
    _, pipeline = _bootstrap(config)

    requests = [
        IngestionRequest(
            document_id=path.stem,
            collection_id=collection,
            display_name=path.name,
            raw_text=path.read_text(encoding="utf-8"),
        )
        for path in files
    ]
    with console.status(f"[cyan]Ingesting {len(requests)} file(s)...[/cyan]"):
        results = asyncio.run(pipeline.ingestion.ingest_many(requests))
    pipeline.save()

    table = Table("Document", "Status", "Parents", "Children", "Error", box=box.SIMPLE, header_style="bold dim")
    for result in results:
        colour = "green" if result.ok else "red"
        table.add_row(
            result.document_id,
            f"[{colour}]{result.status.value}[/{colour}]",
            str(result.parent_count),
            str(result.child_count),
            result.error or "",
        )
    console.print(table)
    if not all(r.ok for r in results):
        raise typer.Exit(1)


@app.command()
def query(
    collection: str = typer.Option(..., "--collection", help="Class to search"),
    question: Optional[str] = typer.Option(
        None, "--question", "-q", help="Single question (omit for interactive loop)"
    ),
    json_out: bool = typer.Option(
        False, "--json", help="Print result as JSON (single-question mode only)"
    ),
    config: Optional[str] = _CONFIG_OPTION,
) -> None:
    """
    Retrieve context blocks and citations for student questions.
    """
    _, pipeline = _bootstrap(config)
    console.print(
        f"[green][OK] Index loaded[/green] | {pipeline.index.total_vectors:,} vectors "
        f"| collection={collection}"
    )

    # --- Single-shot mode -----------------------------------------------------
    if question:
        _run_query(pipeline, collection, question, json_out)
        return

    # --- Interactive loop -----------------------------------------------------
    console.print("[dim]Type 'exit', 'quit', or press Ctrl+C to quit.[/dim]\n")
    while True:
        try:
            raw = console.input("[bold cyan]Student[/bold cyan] > ").strip()
        except (EOFError, KeyboardInterrupt):
            console.print("\n[dim]Goodbye.[/dim]")
            break
        if not raw:
            continue
        if raw.lower() in {"exit", "quit", "q"}:
            console.print("[dim]Goodbye.[/dim]")
            break
        _run_query(pipeline, collection, raw, json_out=False)


@app.command()
def delete(
    document_id: str = typer.Argument(..., help="Document to remove"),
    config: Optional[str] = _CONFIG_OPTION,
) -> None:
    """Remove a document together with its chunks and index entries."""
    _, pipeline = _bootstrap(config)
    deleted = asyncio.run(pipeline.ingestion.delete_document(document_id))
    if not deleted:
        console.print(f"[yellow]No such document: {document_id}[/yellow]")
        raise typer.Exit(1)
    pipeline.save()
    console.print(f"[green][OK] Deleted {document_id}[/green]")


@app.command()
def status(config: Optional[str] = _CONFIG_OPTION) -> None:
    """Show indexed documents grouped by collection."""
    _, pipeline = _bootstrap(config)
    stats = pipeline.store.stats()

    console.print()
    console.print("[bold]Index Status[/bold]")
    console.print(f"  Vectors     : [cyan]{pipeline.index.total_vectors:,}[/cyan]")
    console.print(f"  Documents   : {stats['documents']}")
    console.print(f"  Collections : {stats['collections']}")
    console.print(f"  Parents     : {stats['parents']}")
    console.print(f"  Children    : {stats['children']}")
    console.print()

    documents = pipeline.store.list_documents()
    if not documents:
        console.print("[yellow]No documents ingested yet.[/yellow]")
        return

    table = Table("Collection", "Document", "File", "Status", "Error", box=box.SIMPLE, header_style="bold dim")
    for document in sorted(documents, key=lambda d: (d.collection_id, d.sequence)):
        table.add_row(
            document.collection_id,
            document.document_id,
            document.display_name,
            document.status.value,
            truncate_text(document.error_message or "", 60),
        )
    console.print(table)


# --- Rendering ----------------------------------------------------------------

def _run_query(pipeline: RAGPipeline, collection: str, question: str, json_out: bool) -> None:
    try:
        request = QueryRequest(collection_id=collection, question=question)
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        return

    try:
        with console.status("[cyan]Searching class materials...[/cyan]"):
            result = asyncio.run(pipeline.retrieve_context(request))
    except CourseRAGError as exc:
        console.print(f"[red]{exc.user_message}[/red]")
        return

    if json_out:
        console.print_json(json.dumps(result.model_dump(mode="json"), indent=2))
        return

    if isinstance(result, NoRelevantMaterials):
        console.print(
            Panel(
                Markdown(NO_CONTEXT_RESPONSE),
                title=f"[yellow]No relevant materials ({result.reason})[/yellow]",
                border_style="yellow",
                expand=True,
            )
        )
        return

    for i, block in enumerate(result.context_blocks, start=1):
        console.print(
            Panel(
                truncate_text(block.content, 600),
                title=f"[bold green][{i}] {block.file_name}[/bold green]",
                subtitle=f"similarity {block.similarity:.2f}",
                border_style="green",
                expand=True,
            )
        )

    console.print("[bold dim]Sources[/bold dim]")
    for line in format_citations(result.sources):
        console.print(f"  {line}")

    fallback = "  [yellow]rerank fallback[/yellow]" if result.rerank_fallback else ""
    console.print(
        f"[dim]retrieve={result.retrieval_ms:.0f}ms  rerank={result.rerank_ms:.0f}ms[/dim]{fallback}\n"
    )


if __name__ == "__main__":
    app()
