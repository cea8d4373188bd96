"""Command line interface for ThesisRAG."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn
from rich.table import Table

from thesisrag.config import AppConfig
from thesisrag.errors import RAGError
from thesisrag.index.indexer import RAGService, create_rag_service
from thesisrag.index.storage import SQLiteVectorStore
from thesisrag.ingestion.pdf_loader import get_pdf_metadata
from thesisrag.llm.client import ChatClient, answer_question
from thesisrag.models import DocumentMetadata

console = Console()
app = typer.Typer(help="ThesisRAG - semantic search and Q&A over academic theses")

LOCAL_OPTION_HELP = "Use a local SQLite store at this path instead of the remote backend"


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")


def _ensure_db_parent(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)


def _load_config(local: Optional[Path]) -> AppConfig:
    config = AppConfig.from_env()
    if local is not None:
        config.supabase_url = None
        config.supabase_key = None
        config.db_path = local
        _ensure_db_parent(config.resolve_db_path(Path.cwd()))
    return config


def _build_service(local: Optional[Path], verbose: bool) -> RAGService:
    _setup_logging(verbose)
    service = create_rag_service(_load_config(local))
    console.print(f"Embedding mode: [bold]{service.mode}[/bold]")
    if service.mode == "mock":
        console.print(
            "[yellow]Mock embeddings are active: similarity scores are not meaningful. "
            "Set OPENAI_API_KEY to use real embeddings.[/yellow]"
        )
    return service


def _run(service: RAGService, coro):
    """Drive ``coro`` to completion and always release the store."""

    async def runner():
        try:
            return await coro
        finally:
            await service.aclose()

    try:
        return asyncio.run(runner())
    except RAGError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=1) from exc


@app.command()
def add(
    pdf: Path = typer.Argument(..., help="PDF file to register", exists=True, resolve_path=True),
    local: Path = typer.Option(..., "--local", help=LOCAL_OPTION_HELP),
    doc_id: Optional[str] = typer.Option(None, "--id", help="Document id (defaults to the file stem)"),
    title: Optional[str] = typer.Option(None, help="Title (defaults to the PDF metadata)"),
    author: Optional[str] = typer.Option(None, help="Author"),
    year: Optional[int] = typer.Option(None, help="Defence year"),
    domain: str = typer.Option("", help="Research domain"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Register a PDF in a local store so it can be processed."""
    _setup_logging(verbose)
    config = _load_config(local)
    try:
        embedded = get_pdf_metadata(pdf.read_bytes())
    except RAGError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=1) from exc

    document = DocumentMetadata(
        id=doc_id or pdf.stem,
        title=title or embedded["title"] or pdf.stem,
        author=author or embedded["author"],
        file_path=str(pdf),
        year=year,
        domain=domain,
    )
    store = SQLiteVectorStore(config.resolve_db_path(Path.cwd()))
    try:
        store.add_document(document)
    finally:
        store.close()
    console.print(f"Registered [bold]{document.title}[/bold] as {document.id}")


@app.command()
def process(
    doc_id: str = typer.Argument(..., help="Document id"),
    local: Optional[Path] = typer.Option(None, "--local", help=LOCAL_OPTION_HELP),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Extract, chunk, embed and store one document."""
    service = _build_service(local, verbose)
    count = _run(service, service.process_new_document(doc_id))
    console.print(f"[green]Processed {doc_id}:[/green] {count} chunks stored")


@app.command("process-all")
def process_all(
    local: Optional[Path] = typer.Option(None, "--local", help=LOCAL_OPTION_HELP),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Process every document that has no chunks yet."""
    service = _build_service(local, verbose)

    with Progress(
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        console=console,
    ) as progress:
        task = progress.add_task("Processing documents", total=None)

        def on_progress(current: int, total: int) -> None:
            progress.update(task, completed=current, total=total)

        stats = _run(service, service.process_all_documents(on_progress))

    console.print(
        f"Processed: {stats.processed}, failed: {stats.failed}, total: {stats.total}"
    )
    if stats.failed_ids:
        console.print(f"[yellow]Failed documents: {', '.join(stats.failed_ids)}[/yellow]")


@app.command()
def search(
    query: str = typer.Argument(..., help="Query text"),
    semantic: bool = typer.Option(False, "--semantic", help="Vector search only, no keyword blend"),
    max_chunks: int = typer.Option(5, "--max-chunks", help="Number of results to display"),
    local: Optional[Path] = typer.Option(None, "--local", help=LOCAL_OPTION_HELP),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Run a hybrid (or purely semantic) search."""
    service = _build_service(local, verbose)
    results = _run(
        service,
        service.search(query, max_chunks=max_chunks, use_hybrid_search=not semantic),
    )
    if not results:
        console.print("[yellow]No matches found.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Score")
    table.add_column("Thesis")
    table.add_column("Page")
    table.add_column("Snippet")

    for result in results:
        title = (result.metadata or {}).get("title") or result.document_id
        snippet = result.content.replace("\n", " ")
        table.add_row(f"{result.similarity:.4f}", title, str(result.page_number), snippet[:180])

    console.print(table)


@app.command()
def similar(
    doc_id: str = typer.Argument(..., help="Document id"),
    limit: int = typer.Option(5, help="Number of documents to display"),
    local: Optional[Path] = typer.Option(None, "--local", help=LOCAL_OPTION_HELP),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """List the theses closest to a given one."""
    service = _build_service(local, verbose)
    results = _run(service, service.find_similar_documents(doc_id, limit=limit))
    if not results:
        console.print("[yellow]No similar documents found.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Score")
    table.add_column("Document")
    table.add_column("Title")
    for result in results:
        table.add_row(
            f"{result.similarity:.4f}",
            result.document_id,
            (result.metadata or {}).get("title") or "",
        )
    console.print(table)


@app.command()
def stats(
    local: Optional[Path] = typer.Option(None, "--local", help=LOCAL_OPTION_HELP),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Show corpus statistics."""
    service = _build_service(local, verbose)
    rag_stats = _run(service, service.get_rag_stats())

    table = Table(show_header=False)
    table.add_row("Documents", str(rag_stats.total_documents))
    table.add_row("Processed", str(rag_stats.processed_documents))
    table.add_row("Chunks", str(rag_stats.total_chunks))
    table.add_row("Chunks per document", str(rag_stats.average_chunks_per_document))
    console.print(table)


@app.command()
def delete(
    doc_id: str = typer.Argument(..., help="Document id"),
    local: Optional[Path] = typer.Option(None, "--local", help=LOCAL_OPTION_HELP),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Delete a document's chunks so it can be processed again."""
    service = _build_service(local, verbose)
    _run(service, service.delete_document_chunks(doc_id))
    console.print(f"Deleted chunks of {doc_id}")


@app.command()
def ask(
    question: str = typer.Argument(..., help="Question about the theses"),
    max_chunks: int = typer.Option(5, "--max-chunks", help="Chunks of context to retrieve"),
    local: Optional[Path] = typer.Option(None, "--local", help=LOCAL_OPTION_HELP),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Answer a question from retrieved thesis excerpts."""
    service = _build_service(local, verbose)
    config = service.config
    if not config.api_key:
        asyncio.run(service.aclose())
        raise typer.BadParameter("OPENAI_API_KEY is required to ask questions")

    client = ChatClient(config.api_key, model=config.chat_model, timeout=config.request_timeout)
    answer = _run(service, answer_question(service, client, question, max_chunks=max_chunks))
    console.print(answer)


@app.command()
def web(
    host: str = typer.Option("127.0.0.1", help="Host interface"),
    port: int = typer.Option(8000, help="Server port"),
    local: Optional[Path] = typer.Option(None, "--local", help=LOCAL_OPTION_HELP),
) -> None:
    """Start the admin API."""
    try:
        import uvicorn
    except ImportError as exc:  # pragma: no cover - optional extra
        raise typer.BadParameter(
            "uvicorn is not installed. Install the web extras with \"python -m pip install '.[web]'\""
        ) from exc

    from thesisrag.web.app import app as web_app, configure

    configure(_load_config(local))
    console.print(f"Starting admin API on http://{host}:{port}")
    uvicorn.run(web_app, host=host, port=port, reload=False, log_level="info")


if __name__ == "__main__":  # pragma: no cover
    app()
