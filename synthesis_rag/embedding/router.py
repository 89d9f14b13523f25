"""
Embedding Router
-----------------
Chooses an embedding provider per piece of content and falls back to the
local provider when the chosen one fails.

Resolution order:
  1. explicit provider in EmbedOptions
  2. content: code (context type or code heuristics) -> CODE_EMBEDDING_PROVIDER (voyage),
              personal writing                        -> WRITING_EMBEDDING_PROVIDER (openai)
  3. environment: DOC_EMBEDDING_PROVIDER for everything else
  4. built-in default: ollama

When the budget flags force local embeddings, every resolution, explicit
ones included, returns the local profile.

Vectors produced by different providers have different dimensions, which is
why each EmbedResult (and each stored chunk) carries its provider/model/dims.
"""
from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal, Optional

from langsmith import traceable
from loguru import logger

from synthesis_rag.config import BudgetFlags, Settings
from synthesis_rag.embedding.providers import (
    LOCAL_PROVIDER,
    PAID_PROVIDERS,
    PROFILES,
    EmbeddingClient,
    EmbeddingProfile,
    EmbeddingProvider,
    get_profile,
)
from synthesis_rag.errors import InvalidConfiguration, ProviderUnavailable
from synthesis_rag.utils.helpers import estimate_tokens, read_metadata_str

if TYPE_CHECKING:
    from synthesis_rag.costs.tracker import CostTracker

DEFAULT_BATCH_SIZE = 10

CODE_LANGUAGES = frozenset(
    {"dart", "typescript", "javascript", "c", "cpp", "python", "java", "kotlin"}
)

CODE_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"^\s*(import|export)\s+", re.MULTILINE),
    re.compile(r"^\s*(class|interface|enum)\s+\w+", re.MULTILINE),
    re.compile(r"^\s*(async\s+)?function\s+\w+", re.MULTILINE),
    re.compile(r"<\w+>\s*\(.*\)"),                 # generic calls
    re.compile(r"\bconst\s+\w+\s*="),
    re.compile(r"(?:^|\s)//", re.MULTILINE),        # line comments, not URLs
    re.compile(r"#include\s+<"),
]


# --- Options / results ----------------------------------------------------------

@dataclass
class ContentContext:
    type: Optional[Literal["code", "docs", "personal"]] = None
    language: Optional[str] = None
    collection_id: Optional[str] = None
    is_personal_collection: bool = False


@dataclass
class EmbedOptions:
    provider: Optional[str] = None
    model: Optional[str] = None
    context: Optional[ContentContext] = None
    batch_size: int = DEFAULT_BATCH_SIZE
    collection_id: Optional[str] = None


@dataclass
class EmbedResult:
    embedding: list[float] = field(repr=False)
    provider: str
    model: str
    dimensions: int
    used_fallback: bool = False


# --- Content classification -------------------------------------------------------

def is_code_content(text: str, language_hint: Optional[str] = None) -> bool:
    if not text:
        return False
    if (language_hint or "").lower() in CODE_LANGUAGES:
        return True
    return any(pattern.search(text) for pattern in CODE_PATTERNS)


def derive_context_from_metadata(metadata: Optional[dict[str, Any]]) -> Optional[ContentContext]:
    """Map document metadata (doc_type / framework / language) to a ContentContext."""
    if not metadata:
        return None

    doc_type = read_metadata_str(metadata, "doc_type")
    language = read_metadata_str(metadata, "language")
    framework = read_metadata_str(metadata, "framework")

    if doc_type in ("code_sample", "build_plan") or framework:
        return ContentContext(type="code", language=language)
    if doc_type == "personal_writing":
        return ContentContext(type="personal", language=language)
    return ContentContext(type="docs", language=language) if language else None


# --- Router -----------------------------------------------------------------------

class EmbeddingRouter:
    """
    Usage:
        router = EmbeddingRouter(build_embedding_clients(settings), settings, flags)
        results = await router.embed_batch(texts, EmbedOptions(context=ctx))
    """

    def __init__(
        self,
        clients: dict[EmbeddingProvider, EmbeddingClient],
        settings: Optional[Settings] = None,
        budget_flags: Optional[BudgetFlags] = None,
        cost_tracker: Optional["CostTracker"] = None,
    ) -> None:
        self.clients = clients
        self.settings = settings or Settings()
        self.budget_flags = budget_flags or BudgetFlags()
        self.cost_tracker = cost_tracker
        self.fallback_profile = PROFILES[LOCAL_PROVIDER].tagged("fallback")

    # --- Selection ----------------------------------------------------------------

    def select_profile(self, text: str, options: Optional[EmbedOptions] = None) -> EmbeddingProfile:
        options = options or EmbedOptions()

        if self.budget_flags.force_local_embeddings:
            return PROFILES[LOCAL_PROVIDER].tagged("budget")

        if options.provider:
            profile = get_profile(options.provider).tagged("explicit")
            if options.model:
                profile = EmbeddingProfile(
                    profile.provider, options.model, profile.dimensions, "explicit"
                )
            return profile

        context = options.context or ContentContext()
        if context.type == "code" or is_code_content(text, context.language):
            return self._env_profile(self.settings.code_embedding_provider, EmbeddingProvider.VOYAGE).tagged("content")
        if context.type == "personal" or context.is_personal_collection:
            return self._env_profile(self.settings.writing_embedding_provider, EmbeddingProvider.OPENAI).tagged("content")

        configured = EmbeddingProvider.parse(self.settings.doc_embedding_provider)
        if configured is not None:
            return PROFILES[configured].tagged("environment")
        return PROFILES[LOCAL_PROVIDER].tagged("default")

    @staticmethod
    def _env_profile(value: Optional[str], default: EmbeddingProvider) -> EmbeddingProfile:
        return PROFILES[EmbeddingProvider.parse(value) or default]

    # --- Embedding ----------------------------------------------------------------

    async def embed(self, text: str, options: Optional[EmbedOptions] = None) -> EmbedResult:
        """Embed one text with the selected provider, falling back to ollama on failure."""
        options = options or EmbedOptions()
        primary = self.select_profile(text, options)

        try:
            return await self._embed_with(primary, text, options, used_fallback=False)
        except Exception as exc:
            if primary.provider is self.fallback_profile.provider:
                raise
            logger.warning(
                f"[EmbeddingRouter] {primary.provider.value} failed ({exc}); "
                f"falling back to {self.fallback_profile.provider.value}"
            )
            return await self._embed_with(self.fallback_profile, text, options, used_fallback=True)

    @traceable(name="embed_batch", run_type="embedding")
    async def embed_batch(
        self, texts: list[str], options: Optional[EmbedOptions] = None
    ) -> list[EmbedResult]:
        """
        Embed texts in order. Items inside a batch run concurrently; batches
        run one after another. Output order equals input order.
        """
        if not texts:
            return []

        options = options or EmbedOptions()
        if options.batch_size <= 0:
            raise InvalidConfiguration("Embedding batch_size must be greater than zero")

        start = time.perf_counter()
        results: list[EmbedResult] = []
        for i in range(0, len(texts), options.batch_size):
            batch = texts[i: i + options.batch_size]
            results.extend(await asyncio.gather(*(self.embed(t, options) for t in batch)))

        fallbacks = sum(1 for r in results if r.used_fallback)
        logger.debug(
            f"[EmbeddingRouter] {len(texts)} texts embedded in "
            f"{time.perf_counter() - start:.2f}s | fallbacks={fallbacks}"
        )
        return results

    async def _embed_with(
        self,
        profile: EmbeddingProfile,
        text: str,
        options: EmbedOptions,
        used_fallback: bool,
    ) -> EmbedResult:
        client = self.clients.get(profile.provider)
        if client is None:
            raise ProviderUnavailable(f"No client registered for {profile.provider.value}")

        response = await client.embed(text, profile.model)

        if profile.provider in PAID_PROVIDERS:
            await self._record_usage(profile, text, response.tokens_used, options)

        return EmbedResult(
            embedding=response.embedding,
            provider=profile.provider.value,
            model=profile.model,
            dimensions=len(response.embedding),
            used_fallback=used_fallback,
        )

    async def _record_usage(
        self,
        profile: EmbeddingProfile,
        text: str,
        tokens_used: Optional[int],
        options: EmbedOptions,
    ) -> None:
        if self.cost_tracker is None:
            return
        collection_id = options.collection_id or (
            options.context.collection_id if options.context else None
        )
        try:
            await self.cost_tracker.track(
                provider=profile.provider.value,
                operation="embedding",
                tokens_used=tokens_used if tokens_used is not None else estimate_tokens(text),
                model=profile.model,
                collection_id=collection_id,
                metadata={"selection": profile.selection},
            )
        except Exception as exc:
            logger.error(f"[EmbeddingRouter] Failed to record usage: {exc}")
