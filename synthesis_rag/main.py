"""
Synthesis RAG - CLI Entry Point
--------------------------------
Exposes Typer commands for ingestion, retrieval, synthesis and cost reporting.

Usage:
    synthesis-rag migrate                                   # Apply Postgres migrations
    synthesis-rag add-document docs/guide.md -c flutter     # Register a file
    synthesis-rag ingest <document-id>                      # Extract, chunk, embed, store
    synthesis-rag search "state management" -c flutter --rerank
    synthesis-rag synthesize "state management" -c flutter
    synthesis-rag costs                                     # Monthly spend + breakdown
"""
from __future__ import annotations

import asyncio
from typing import Optional

import orjson
import typer
from dotenv import load_dotenv
from loguru import logger
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from synthesis_rag.config import Settings, load_settings
from synthesis_rag.errors import SynthesisRAGError
from synthesis_rag.ingestion.orchestrator import IngestOptions
from synthesis_rag.serving.service import SearchOutcome, SynthesisRAGService
from synthesis_rag.synthesis.engine import SynthesisResponse
from synthesis_rag.utils.helpers import truncate_text
from synthesis_rag.utils.logger import setup_logger

app = typer.Typer(
    name="synthesis-rag",
    help="Synthesis RAG - retrieval, reranking and multi-source synthesis CLI",
    add_completion=False,
)
console = Console()


# --- Helpers ------------------------------------------------------------------

def _bootstrap(config: Optional[str]) -> Settings:
    load_dotenv()
    settings = load_settings(config)
    setup_logger(log_level=settings.log_level, log_file=settings.log_file)
    return settings


def _run(coro) -> None:
    try:
        asyncio.run(coro)
    except SynthesisRAGError as exc:
        console.print(f"[red]{type(exc).__name__}:[/red] {exc}")
        raise typer.Exit(1)


ConfigOption = typer.Option(None, "--config", help="Optional YAML config overlay")


# --- Commands -----------------------------------------------------------------

@app.command()
def migrate(config: Optional[str] = ConfigOption) -> None:
    """Apply the database migrations (no-op for the file-backed store)."""
    settings = _bootstrap(config)

    async def _migrate() -> None:
        async with SynthesisRAGService.from_settings(settings) as service:
            await service.store.migrate()
        console.print("[green][OK] Migrations applied[/green]")

    _run(_migrate())


@app.command("add-document")
def add_document(
    path: str = typer.Argument(..., help="Path of the file to register"),
    collection: str = typer.Option(..., "--collection", "-c", help="Collection name or id"),
    title: Optional[str] = typer.Option(None, "--title", help="Document title (default: file stem)"),
    content_type: Optional[str] = typer.Option(None, "--content-type", help="MIME type override"),
    source_url: Optional[str] = typer.Option(None, "--source-url", help="Canonical source URL"),
    ingest: bool = typer.Option(False, "--ingest", help="Ingest immediately after registering"),
    config: Optional[str] = ConfigOption,
) -> None:
    """Register a local file as a document in a collection."""
    settings = _bootstrap(config)

    async def _add() -> None:
        async with SynthesisRAGService.from_settings(settings) as service:
            target = await service.ensure_collection(collection)
            document = await service.add_document(
                target.id, path, title=title, content_type=content_type, source_url=source_url
            )
            console.print(
                f"[green][OK] Registered[/green] {document.title} "
                f"[dim]({document.id}, {document.content_type})[/dim]"
            )
            if ingest:
                document = await service.ingest(document.id)
                _print_document_status(document.title, document.status.value, document.metadata)

    _run(_add())


@app.command("ingest")
def ingest_cmd(
    document_id: str = typer.Argument(..., help="Id of a registered document"),
    max_chunk_size: int = typer.Option(800, "--max-chunk-size", help="Maximum chunk length in characters"),
    overlap: int = typer.Option(150, "--overlap", help="Overlap between consecutive chunks"),
    provider: Optional[str] = typer.Option(None, "--provider", help="Embedding provider override"),
    config: Optional[str] = ConfigOption,
) -> None:
    """Extract, chunk, embed and store one document."""
    from synthesis_rag.embedding.router import EmbedOptions

    settings = _bootstrap(config)
    options = IngestOptions(
        max_chunk_size=max_chunk_size,
        chunk_overlap=overlap,
        embed=EmbedOptions(provider=provider),
    )

    async def _ingest() -> None:
        async with SynthesisRAGService.from_settings(settings) as service:
            with console.status("[cyan]Ingesting...[/cyan]"):
                document = await service.ingest(document_id, options)
            _print_document_status(document.title, document.status.value, document.metadata)

    _run(_ingest())


@app.command()
def search(
    query: str = typer.Argument(..., help="Search query"),
    collection: str = typer.Option(..., "--collection", "-c", help="Collection name or id"),
    top_k: int = typer.Option(10, "--top-k", help="Results to return"),
    rerank: bool = typer.Option(False, "--rerank", help="Rerank the fused results"),
    rerank_provider: Optional[str] = typer.Option(
        None, "--rerank-provider", help="cohere | bge | none"
    ),
    json_out: bool = typer.Option(False, "--json", help="Print results as JSON"),
    config: Optional[str] = ConfigOption,
) -> None:
    """Hybrid (vector + lexical) search, optionally reranked."""
    settings = _bootstrap(config)

    async def _search() -> None:
        async with SynthesisRAGService.from_settings(settings) as service:
            target = await service.ensure_collection(collection)
            outcome = await service.search(
                query, target.id, top_k=top_k, rerank=rerank, rerank_provider=rerank_provider
            )
        if json_out:
            console.print_json(
                orjson.dumps([r.model_dump(mode="json") for r in outcome.results]).decode()
            )
        else:
            _print_search(outcome)

    _run(_search())


@app.command()
def synthesize(
    query: str = typer.Argument(..., help="Question to synthesize an answer landscape for"),
    collection: str = typer.Option(..., "--collection", "-c", help="Collection name or id"),
    top_k: int = typer.Option(15, "--top-k", help="Sources to synthesize from"),
    no_rerank: bool = typer.Option(False, "--no-rerank", help="Skip reranking before synthesis"),
    json_out: bool = typer.Option(False, "--json", help="Print the synthesis as JSON"),
    config: Optional[str] = ConfigOption,
) -> None:
    """Group results into approaches, score consensus and flag conflicts."""
    settings = _bootstrap(config)

    async def _synthesize() -> None:
        async with SynthesisRAGService.from_settings(settings) as service:
            target = await service.ensure_collection(collection)
            with console.status("[cyan]Synthesizing...[/cyan]"):
                response = await service.synthesize(query, target.id, top_k=top_k, rerank=not no_rerank)
        if json_out:
            console.print_json(response.model_dump_json())
        else:
            _print_synthesis(response)

    _run(_synthesize())


@app.command()
def costs(
    days: int = typer.Option(30, "--days", help="Breakdown window in days"),
    config: Optional[str] = ConfigOption,
) -> None:
    """Show monthly spend against budget and a per-provider breakdown."""
    from datetime import timedelta

    settings = _bootstrap(config)

    async def _costs() -> None:
        async with SynthesisRAGService.from_settings(settings) as service:
            tracker = service.cost_tracker
            monthly = await tracker.get_monthly_spend()
            daily = await tracker.get_daily_spend()
            now = tracker.clock()
            breakdown = await tracker.get_cost_breakdown(now - timedelta(days=days))

        budget = settings.monthly_budget_usd
        ratio = monthly / budget if budget else 0.0
        colour = "red" if ratio >= 1 else "yellow" if ratio >= 0.8 else "green"
        console.print()
        console.print(f"  Monthly spend : [{colour}]${monthly:.4f}[/{colour}] / ${budget:.2f} ({ratio:.0%})")
        console.print(f"  Today         : ${daily:.4f}")

        if not breakdown:
            console.print("[dim]  No usage recorded.[/dim]\n")
            return

        table = Table(
            "Provider", "Operation", "Requests", "Tokens", "Cost", "Avg / req",
            box=box.SIMPLE,
            header_style="bold dim",
        )
        for row in breakdown:
            table.add_row(
                row.provider,
                row.operation,
                str(row.request_count),
                f"{row.total_tokens:,}",
                f"${row.total_cost:.4f}",
                f"${row.avg_cost_per_request:.6f}",
            )
        console.print(table)

    _run(_costs())


# --- Rendering ----------------------------------------------------------------

def _print_document_status(title: str, status: str, metadata: dict) -> None:
    colour = "green" if status == "complete" else "red" if status == "error" else "yellow"
    console.print(f"  {title}: [{colour}]{status}[/{colour}]")
    if metadata.get("embedding_provider"):
        console.print(
            f"[dim]  provider={metadata.get('embedding_provider')} "
            f"model={metadata.get('embedding_model')}[/dim]"
        )


def _print_search(outcome: SearchOutcome) -> None:
    if not outcome.results:
        console.print("[yellow]No results.[/yellow]")
        return

    table = Table("No.", "Title", "Snippet", "Source", "Score", box=box.SIMPLE, header_style="bold dim")
    for i, result in enumerate(outcome.results, start=1):
        score = result.rerank_score if result.rerank_score is not None else result.fused_score
        table.add_row(
            str(i),
            truncate_text(result.doc_title or result.doc_id, 40),
            truncate_text(" ".join(result.text.split()), 70),
            result.rerank_provider or result.source or "-",
            f"{score or 0.0:.4f}",
        )
    console.print(table)
    console.print(
        f"[dim]vector={outcome.vector_count}  lexical={outcome.lexical_count}  "
        f"retrieve={outcome.retrieval_ms}ms  rerank={outcome.rerank_ms}ms[/dim]\n"
    )


def _print_synthesis(response: SynthesisResponse) -> None:
    if not response.approaches:
        console.print("[yellow]No sources found to synthesize.[/yellow]")
        return

    for approach in response.approaches:
        star = " [bold green](recommended)[/bold green]" if approach == response.recommended else ""
        console.print(
            Panel(
                f"{approach.summary}\n\n[dim]topic: {approach.topic} | "
                f"sources: {len(approach.sources)}[/dim]",
                title=f"[bold]{approach.method}[/bold]{star}  consensus {approach.consensus_score:.2f}",
                border_style="cyan",
                expand=True,
            )
        )

    for conflict in response.conflicts:
        console.print(
            Panel(
                f"{conflict.difference}\n\n[bold]Recommendation:[/bold] {conflict.recommendation}",
                title=f"[red]Conflict ({conflict.severity})[/red] {conflict.topic}",
                border_style="red",
                expand=True,
            )
        )

    meta = response.metadata
    console.print(
        f"[dim]sources={meta.total_sources}  approaches={meta.approaches_found}  "
        f"conflicts={meta.conflicts_found}  time={meta.synthesis_time_ms}ms[/dim]\n"
    )
    logger.debug(f"[CLI] Synthesis rendered for {response.query!r}")


# --- Entry Point --------------------------------------------------------------

if __name__ == "__main__":
    app()
