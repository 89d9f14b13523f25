"""
Synthesis RAG Service
----------------------
Composition root: builds every component once and wires the shared
collaborators (store, budget flags, cost tracker, provider clients) into
them.

    ingest:     IngestionOrchestrator -> TextExtractor -> TextChunker
                -> EmbeddingRouter -> ChunkStore
    search:     HybridRetriever (VectorSearcher + LexicalSearcher, RRF)
                -> Reranker (cohere | bge | none)
    synthesize: search -> SynthesisEngine -> ContradictionDetector

Store selection: DATABASE_URL set -> PostgresStore, otherwise an
InMemoryStore persisted to {STORAGE_DIR}/store.json.
"""
from __future__ import annotations

import mimetypes
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import httpx
from anthropic import AsyncAnthropic
from langsmith import traceable
from loguru import logger

from synthesis_rag.config import BudgetFlags, Settings, load_settings
from synthesis_rag.costs.tracker import CostTracker
from synthesis_rag.embedding.providers import build_embedding_clients
from synthesis_rag.embedding.router import EmbeddingRouter
from synthesis_rag.ingestion.chunk_store import ChunkStore
from synthesis_rag.ingestion.extract import TextExtractor
from synthesis_rag.ingestion.orchestrator import IngestionOrchestrator, IngestOptions
from synthesis_rag.retrieval.hybrid import DEFAULT_TOP_K, HybridRetriever, HybridSearchResponse
from synthesis_rag.retrieval.lexical import LexicalSearcher
from synthesis_rag.retrieval.reranker import Reranker, RerankOptions, build_rerank_clients
from synthesis_rag.retrieval.vector import VectorSearcher
from synthesis_rag.schemas import Collection, Document, SearchResult
from synthesis_rag.store.base import DocumentStore
from synthesis_rag.store.memory import InMemoryStore
from synthesis_rag.store.postgres import PostgresStore
from synthesis_rag.synthesis.contradictions import ContradictionDetector
from synthesis_rag.synthesis.engine import SynthesisEngine, SynthesisOptions, SynthesisResponse
from synthesis_rag.utils.helpers import ensure_dirs

HTTP_TIMEOUT_SECONDS = 30.0
STORE_FILENAME = "store.json"


def build_store(settings: Settings) -> DocumentStore:
    if settings.database_url:
        logger.info("[Service] Using Postgres store")
        return PostgresStore(settings.database_url)
    ensure_dirs(settings.storage_dir)
    path = Path(settings.storage_dir) / STORE_FILENAME
    logger.info(f"[Service] Using in-memory store persisted to {path}")
    return InMemoryStore.load(path)


@dataclass
class SearchOutcome:
    query: str
    results: list[SearchResult]
    retrieval_ms: int
    rerank_ms: int = 0
    vector_count: int = 0
    lexical_count: int = 0
    reranked: bool = False


class SynthesisRAGService:
    """
    Usage:
        service = SynthesisRAGService.from_settings(load_settings())
        outcome = await service.search("how do I cache queries", collection_id, rerank=True)
        await service.aclose()
    """

    def __init__(
        self,
        settings: Settings,
        store: DocumentStore,
        budget_flags: Optional[BudgetFlags] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        anthropic_client: Optional[AsyncAnthropic] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.budget_flags = budget_flags or BudgetFlags()
        self.http = http_client or httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS)

        self.cost_tracker = CostTracker(store, settings, self.budget_flags)

        self.embedding_clients = build_embedding_clients(settings, self.http)
        self.router = EmbeddingRouter(
            self.embedding_clients, settings, self.budget_flags, self.cost_tracker
        )

        self.chunk_store = ChunkStore(store, default_embedding_model=settings.embedding_model)
        self.orchestrator = IngestionOrchestrator(
            store, TextExtractor(), self.router, self.chunk_store
        )

        self.vector = VectorSearcher(store, self.router)
        self.lexical = LexicalSearcher(store, settings.fts_language)
        self.retriever = HybridRetriever(self.vector, self.lexical)

        self.rerank_clients = build_rerank_clients(settings, self.http)
        self.reranker = Reranker(self.rerank_clients, settings, self.budget_flags, self.cost_tracker)

        if anthropic_client is None and settings.anthropic_api_key:
            anthropic_client = AsyncAnthropic(api_key=settings.anthropic_api_key)
        self.anthropic = anthropic_client
        self.detector = ContradictionDetector(
            anthropic_client, settings, self.budget_flags, self.cost_tracker
        )
        self.synthesis = SynthesisEngine(self.router, self.detector)

        logger.info(
            f"[Service] Ready | reranker={self.reranker.select_provider().value} "
            f"| contradictions={'on' if self.detector.enabled else 'off'} "
            f"| budget=${settings.monthly_budget_usd:.2f}"
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, config_path: Optional[str] = None) -> "SynthesisRAGService":
        settings = settings or load_settings(config_path)
        return cls(settings, build_store(settings))

    async def aclose(self) -> None:
        await self.cost_tracker.wait_for_pending()
        await self.orchestrator.wait_for_background()
        if self.anthropic is not None:
            await self.anthropic.close()
        await self.http.aclose()
        await self.store.close()

    async def __aenter__(self) -> "SynthesisRAGService":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # --- Collections & documents ------------------------------------------------

    async def ensure_collection(self, name: str, description: Optional[str] = None) -> Collection:
        for collection in await self.store.list_collections():
            if collection.name == name or collection.id == name:
                return collection
        return await self.store.create_collection(name, description)

    async def add_document(
        self,
        collection_id: str,
        file_path: str,
        title: Optional[str] = None,
        content_type: Optional[str] = None,
        source_url: Optional[str] = None,
    ) -> Document:
        path = Path(file_path)
        document = Document(
            collection_id=collection_id,
            title=title or path.stem,
            file_path=str(path),
            content_type=content_type or _guess_content_type(path),
            file_size=path.stat().st_size if path.exists() else None,
            source_url=source_url,
        )
        return await self.store.create_document(document)

    async def ingest(self, document_id: str, options: Optional[IngestOptions] = None) -> Document:
        await self.orchestrator.ingest(document_id, options)
        return await self.store.get_document(document_id)

    # --- Query --------------------------------------------------------------------

    @traceable(name="search", run_type="chain")
    async def search(
        self,
        query: str,
        collection_id: str,
        top_k: int = DEFAULT_TOP_K,
        rerank: bool = False,
        rerank_provider: Optional[str] = None,
    ) -> SearchOutcome:
        start = time.perf_counter()
        hybrid: HybridSearchResponse = await self.retriever.search(query, collection_id, top_k=top_k)
        retrieval_ms = round((time.perf_counter() - start) * 1000)

        outcome = SearchOutcome(
            query=query,
            results=hybrid.results,
            retrieval_ms=retrieval_ms,
            vector_count=hybrid.vector_count,
            lexical_count=hybrid.lexical_count,
        )
        if rerank and hybrid.results:
            start = time.perf_counter()
            outcome.results = await self.reranker.rerank(
                query, hybrid.results, RerankOptions(provider=rerank_provider, top_k=top_k)
            )
            outcome.rerank_ms = round((time.perf_counter() - start) * 1000)
            outcome.reranked = True
        return outcome

    async def synthesize(
        self,
        query: str,
        collection_id: str,
        top_k: int = 15,
        rerank: bool = True,
    ) -> SynthesisResponse:
        outcome = await self.search(query, collection_id, top_k=top_k, rerank=rerank)
        return await self.synthesis.synthesize(query, outcome.results, SynthesisOptions(max_results=top_k))


def _guess_content_type(path: Path) -> str:
    guessed, _ = mimetypes.guess_type(path.name)
    if path.suffix.lower() in (".md", ".markdown"):
        return "text/markdown"
    return guessed or "text/plain"
