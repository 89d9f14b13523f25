"""
Ingestion Orchestrator
-----------------------
Drives one document through the ingestion state machine:

    pending -> extracting -> chunking -> embedding -> complete
                    \\____________\\____________\\______-> error

Each status is persisted before the work it names begins, so an observer
polling the document always sees the stage currently running. Any failure
is recorded as status=error with the exception message and then re-raised
unchanged.

Ingestion of the same document id is single-flight: a second call waits
for the first to finish. Different documents ingest concurrently.
"""
from __future__ import annotations

import asyncio
import re
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from loguru import logger

from synthesis_rag.chunking.chunker import DEFAULT_MAX_SIZE, DEFAULT_OVERLAP, TextChunker
from synthesis_rag.chunking.schemas import Chunk
from synthesis_rag.embedding.router import (
    ContentContext,
    EmbedOptions,
    EmbedResult,
    EmbeddingRouter,
    derive_context_from_metadata,
)
from synthesis_rag.errors import DocumentNotFound, DocumentNotReady
from synthesis_rag.ingestion.chunk_store import ChunkStore, StoreChunksOptions
from synthesis_rag.ingestion.extract import Extractor
from synthesis_rag.ingestion.metadata import MetadataBuilder, infer_language_from_path
from synthesis_rag.schemas import Document, DocumentStatus
from synthesis_rag.store.base import DocumentStore
from synthesis_rag.utils.helpers import read_metadata_str

FileReader = Callable[[str], Awaitable[bytes]]

_CODE_FILE = re.compile(r"\.(dart|ts|tsx|js|jsx|py|java|kt|c|cpp|go|rs)$")


async def read_file(path: str) -> bytes:
    """Read a file without blocking the event loop."""
    return await asyncio.to_thread(Path(path).read_bytes)


@dataclass
class IngestOptions:
    max_chunk_size: int = DEFAULT_MAX_SIZE
    chunk_overlap: int = DEFAULT_OVERLAP
    embed: EmbedOptions = field(default_factory=EmbedOptions)
    max_concurrent_upserts: Optional[int] = None


# --- Content inference ---------------------------------------------------------

def is_code_file(path: str) -> bool:
    return bool(_CODE_FILE.search(path.lower()))


def is_code_mime(content_type: str) -> bool:
    lower = content_type.lower()
    return "application/javascript" in lower or "text/x" in lower or "code" in lower


def infer_content_context(document: Document) -> ContentContext:
    """ContentContext from document metadata, file extension and MIME type."""
    metadata = document.metadata or {}
    derived = derive_context_from_metadata(metadata)

    language = (
        (derived.language if derived else None)
        or read_metadata_str(metadata, "language")
        or infer_language_from_path(document.file_path)
    )

    if derived and derived.type:
        content_type = derived.type
    elif metadata.get("doc_type") == "personal_writing":
        content_type = "personal"
    elif is_code_file(document.file_path or "") or is_code_mime(document.content_type or ""):
        content_type = "code"
    else:
        content_type = "docs"

    return ContentContext(
        type=content_type,
        language=language,
        collection_id=document.collection_id,
        is_personal_collection=content_type == "personal",
    )


def infer_doc_type(document: Document) -> str:
    metadata = document.metadata or {}
    doc_type = read_metadata_str(metadata, "doc_type")
    if doc_type:
        return doc_type
    if is_code_file(document.file_path or "") or metadata.get("content_category") == "snippet":
        return "code_sample"
    if "github.com" in (document.source_url or ""):
        return "repo"
    return "tutorial"


def decorate_chunks(chunks: list[Chunk], results: list[EmbedResult]) -> list[Chunk]:
    """Stamp each chunk with the provider/model/dimensions of its own embedding."""
    if not results:
        return chunks
    return [
        chunk.model_copy(
            update={
                "metadata": {
                    **chunk.metadata,
                    "embedding_provider": results[i].provider,
                    "embedding_model": results[i].model,
                    "embedding_dimensions": results[i].dimensions,
                }
            }
        )
        for i, chunk in enumerate(chunks)
    ]


def build_document_metadata(document: Document, first: EmbedResult) -> dict[str, Any]:
    base = dict(document.metadata or {})
    builder = MetadataBuilder().set_doc_type(infer_doc_type(document))

    source_url = document.source_url or read_metadata_str(base, "source_url")
    if source_url:
        builder.set_source_url(source_url)
    if read_metadata_str(base, "source_quality"):
        builder.set_source_quality(base["source_quality"])
    if document.file_path:
        builder.set_file_path(document.file_path)
    if read_metadata_str(base, "language"):
        builder.set_language(base["language"])
    if read_metadata_str(base, "content_category"):
        builder.set_content_category(base["content_category"])
    if read_metadata_str(base, "repo_name"):
        builder.set_repo(base["repo_name"], base.get("repo_stars"))

    builder.set_embedding(first.provider, first.model, first.dimensions)
    return builder.build(defaults=base)


# --- Orchestrator ----------------------------------------------------------------

class IngestionOrchestrator:
    """
    Usage:
        orchestrator = IngestionOrchestrator(store, extractor, router, chunk_store)
        await orchestrator.ingest(document.id)
    """

    def __init__(
        self,
        store: DocumentStore,
        extractor: Extractor,
        router: EmbeddingRouter,
        chunk_store: ChunkStore,
        file_reader: FileReader = read_file,
    ) -> None:
        self.store = store
        self.extractor = extractor
        self.router = router
        self.chunk_store = chunk_store
        self.file_reader = file_reader
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._lock_users: dict[str, int] = defaultdict(int)
        self._background: set[asyncio.Task] = set()

    @asynccontextmanager
    async def _document_lock(self, document_id: str) -> AsyncIterator[None]:
        self._lock_users[document_id] += 1
        lock = self._locks[document_id]
        try:
            async with lock:
                yield
        finally:
            self._lock_users[document_id] -= 1
            if self._lock_users[document_id] == 0:
                del self._lock_users[document_id]
                del self._locks[document_id]

    async def ingest(self, document_id: str, options: Optional[IngestOptions] = None) -> None:
        options = options or IngestOptions()
        async with self._document_lock(document_id):
            await self._ingest(document_id, options)

    def ingest_in_background(
        self, document_id: str, options: Optional[IngestOptions] = None
    ) -> asyncio.Task:
        """Schedule ingestion; failures are logged, the document row holds the error."""
        task = asyncio.create_task(self.ingest(document_id, options))
        self._background.add(task)

        def _done(t: asyncio.Task) -> None:
            self._background.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error(f"[Ingestion] Document {document_id} failed: {t.exception()}")

        task.add_done_callback(_done)
        return task

    async def wait_for_background(self) -> None:
        """Wait for every ingestion scheduled with ingest_in_background()."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _ingest(self, document_id: str, options: IngestOptions) -> None:
        document = await self.store.get_document(document_id)
        if document is None:
            raise DocumentNotFound(document_id)

        try:
            if not document.file_path:
                raise DocumentNotReady(document_id, "file_path")
            if not document.content_type:
                raise DocumentNotReady(document_id, "content_type")

            data = await self.file_reader(document.file_path)

            await self.store.update_document_status(document_id, DocumentStatus.EXTRACTING)
            extraction = await self.extractor.extract(data, document.content_type, document.title)

            await self.store.update_document_status(document_id, DocumentStatus.CHUNKING)
            chunker = TextChunker(max_size=options.max_chunk_size, overlap=options.chunk_overlap)
            chunks = chunker.chunk(extraction.text, {**extraction.metadata, "document_id": document_id})

            if not chunks:
                await self.chunk_store.store_chunks(document_id, [], [])
                await self.store.update_document_status(document_id, DocumentStatus.COMPLETE)
                logger.info(f"[Ingestion] {document_id} | no text, stored 0 chunks")
                return

            await self.store.update_document_status(document_id, DocumentStatus.EMBEDDING)
            embed_options = replace(
                options.embed,
                context=options.embed.context or infer_content_context(document),
                collection_id=options.embed.collection_id or document.collection_id,
            )
            results = await self.router.embed_batch([c.text for c in chunks], embed_options)

            first = results[0]
            await self.chunk_store.store_chunks(
                document_id,
                decorate_chunks(chunks, results),
                [r.embedding for r in results],
                StoreChunksOptions(
                    embedding_model=first.model,
                    embedding_provider=first.provider,
                    embedding_dimensions=first.dimensions,
                    max_concurrent_upserts=options.max_concurrent_upserts,
                ),
            )

            await self.store.update_document_metadata(
                document_id, build_document_metadata(document, first)
            )
            await self.store.update_document_status(document_id, DocumentStatus.COMPLETE)

            fallbacks = sum(1 for r in results if r.used_fallback)
            logger.info(
                f"[Ingestion] {document_id} | {len(chunks)} chunks | "
                f"provider={first.provider} model={first.model} | fallbacks={fallbacks}"
            )

        except Exception as exc:
            await self.store.update_document_status(document_id, DocumentStatus.ERROR, str(exc))
            logger.error(f"[Ingestion] {document_id} | {type(exc).__name__}: {exc}")
            raise
