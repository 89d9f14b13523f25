"""
Synthesis Engine
-----------------
Groups retrieved chunks into up to three distinct "approaches", scores each
one for consensus and, when enabled, asks the ContradictionDetector whether
any two approaches disagree.

Pipeline:
  results[:max_results] -> embed (600-char slices) -> greedy clustering
  -> Approach per cluster (topic, method, summary, consensus score)
  -> contradictions -> recommended approach (consensus minus conflict penalty)
"""
from __future__ import annotations

import re
import time
import zlib
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from langsmith import traceable
from loguru import logger
from pydantic import BaseModel, Field

from synthesis_rag.embedding.router import EmbeddingRouter, EmbedOptions
from synthesis_rag.schemas import SearchResult, utcnow
from synthesis_rag.synthesis.contradictions import (
    Conflict,
    ContradictionApproach,
    ContradictionDetector,
    ContradictionSource,
)
from synthesis_rag.utils.helpers import (
    average,
    clamp01,
    collapse_whitespace,
    cosine_similarity,
    read_metadata_str,
)

DEFAULT_MAX_RESULTS = 15
EMBEDDING_SLICE = 600
EMBED_BATCH_SIZE = 6
FALLBACK_DIMENSIONS = 64
CLUSTER_THRESHOLD = 0.75
MAX_APPROACHES = 3
MAX_SUMMARY_LENGTH = 360
MAX_SNIPPET_LENGTH = 420

QUALITY_WEIGHTS = {"official": 1.0, "verified": 0.85, "community": 0.6}
UNKNOWN_QUALITY = 0.5
UNKNOWN_FRESHNESS = 0.7
SEVERITY_PENALTY = {"high": 0.3, "medium": 0.15, "low": 0.05}


class SynthesizedSource(BaseModel):
    doc_id: str
    doc_title: Optional[str] = None
    source_url: Optional[str] = None
    snippet: str
    metadata: Optional[dict[str, Any]] = None


class Approach(BaseModel):
    method: str
    topic: str
    summary: str
    consensus_score: float
    sources: list[SynthesizedSource] = Field(default_factory=list)


class SynthesisMetadata(BaseModel):
    total_sources: int = 0
    approaches_found: int = 0
    conflicts_found: int = 0
    synthesis_time_ms: int = 0


class SynthesisResponse(BaseModel):
    query: str
    approaches: list[Approach] = Field(default_factory=list)
    conflicts: list[Conflict] = Field(default_factory=list)
    recommended: Optional[Approach] = None
    metadata: SynthesisMetadata = Field(default_factory=SynthesisMetadata)


@dataclass
class SynthesisOptions:
    max_results: int = DEFAULT_MAX_RESULTS


@dataclass
class _Cluster:
    indices: list[int]
    centroid: list[float]


# --- Pure helpers --------------------------------------------------------------

def hashed_embedding(text: str, dimensions: int = FALLBACK_DIMENSIONS) -> list[float]:
    """Deterministic bag-of-words vector used when no embedding provider answers."""
    vector = [0.0] * dimensions
    for token in re.findall(r"[a-z0-9]+", text.lower()):
        vector[zlib.crc32(token.encode("utf-8")) % dimensions] += 1.0
    return vector


def cluster_vectors(vectors: list[list[float]], threshold: float = CLUSTER_THRESHOLD,
                    max_clusters: int = MAX_APPROACHES) -> list[_Cluster]:
    """
    Greedy single pass: each vector joins the first cluster whose centroid is
    more similar than `threshold`, otherwise it opens a new one. Clusters
    beyond `max_clusters` are merged into their most similar kept cluster.
    """
    clusters: list[_Cluster] = []
    for index, vector in enumerate(vectors):
        target = next(
            (c for c in clusters if cosine_similarity(vector, c.centroid) > threshold), None
        )
        if target is None:
            clusters.append(_Cluster(indices=[index], centroid=list(vector)))
            continue
        n = len(target.indices)
        target.centroid = [(c * n + v) / (n + 1) for c, v in zip(target.centroid, vector)]
        target.indices.append(index)

    kept, overflow = clusters[:max_clusters], clusters[max_clusters:]
    for extra in overflow:
        best = max(kept, key=lambda c: cosine_similarity(extra.centroid, c.centroid))
        n, m = len(best.indices), len(extra.indices)
        best.centroid = [
            (c * n + e * m) / (n + m) for c, e in zip(best.centroid, extra.centroid)
        ]
        best.indices.extend(extra.indices)
    return kept


def quality_score(metadata: Optional[dict[str, Any]]) -> float:
    quality = (read_metadata_str(metadata, "source_quality") or "").lower()
    return QUALITY_WEIGHTS.get(quality, UNKNOWN_QUALITY)


def _parse_date(raw: str) -> Optional[datetime]:
    try:
        parsed = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def freshness_score(metadata: Optional[dict[str, Any]], now: datetime) -> float:
    raw = read_metadata_str(metadata, "last_verified") or read_metadata_str(metadata, "published_date")
    date = _parse_date(raw) if raw else None
    if date is None:
        return UNKNOWN_FRESHNESS

    months = (now.year - date.year) * 12 + (now.month - date.month)
    if now.day < date.day:
        months -= 1
    if months < 6:
        return 1.0
    if months <= 12:
        return 0.85
    if months <= 24:
        return 0.7
    return 0.5


def _first_metadata_label(results: list[SearchResult], keys: tuple[str, ...]) -> Optional[str]:
    for result in results:
        for key in keys:
            value = read_metadata_str(result.metadata, key)
            if value and len(value) > 3:
                return value
    return None


def derive_topic(members: list[SearchResult], query: str) -> str:
    return _first_metadata_label(members, ("topic",)) or members[0].doc_title or query


def derive_method(members: list[SearchResult], topic: str) -> str:
    return _first_metadata_label(members, ("approach", "method")) or members[0].doc_title or topic


def build_summary(members: list[SearchResult]) -> str:
    snippets = [s for s in (collapse_whitespace(m.text) for m in members) if s][:2]
    summary = " ".join(snippets)[:MAX_SUMMARY_LENGTH].strip()
    return summary or members[0].text[:MAX_SUMMARY_LENGTH]


def build_source(result: SearchResult) -> SynthesizedSource:
    snippet = collapse_whitespace(result.text) or result.doc_title or result.doc_id
    return SynthesizedSource(
        doc_id=result.doc_id,
        doc_title=result.doc_title,
        source_url=result.source_url,
        snippet=snippet[:MAX_SNIPPET_LENGTH],
        metadata=result.metadata,
    )


def conflict_penalty(approach: Approach, conflicts: list[Conflict]) -> float:
    """Largest penalty among conflicts that cite one of this approach's sources."""
    penalty = 0.0
    for conflict in conflicts:
        titles = {t for t in (conflict.source_a.title, conflict.source_b.title) if t}
        urls = {u for u in (conflict.source_a.url, conflict.source_b.url) if u}
        hit = any(
            (s.doc_title and s.doc_title in titles) or (s.source_url and s.source_url in urls)
            for s in approach.sources
        )
        if hit:
            penalty = max(penalty, SEVERITY_PENALTY.get(conflict.severity, 0.0))
    return penalty


def select_recommended(approaches: list[Approach], conflicts: list[Conflict]) -> Optional[Approach]:
    best: Optional[Approach] = None
    best_score = 0.0
    for approach in approaches:
        score = approach.consensus_score - conflict_penalty(approach, conflicts)
        if score > best_score:
            best, best_score = approach, score
    return best


def to_contradiction_input(approach: Approach) -> ContradictionApproach:
    return ContradictionApproach(
        method=approach.method,
        topic=approach.topic,
        summary=approach.summary,
        consensus_score=approach.consensus_score,
        sources=[
            ContradictionSource(
                title=s.doc_title,
                statement=s.snippet,
                quality=read_metadata_str(s.metadata, "source_quality"),
                date=read_metadata_str(s.metadata, "last_verified")
                or read_metadata_str(s.metadata, "published_date"),
                url=s.source_url,
            )
            for s in approach.sources
        ],
    )


# --- Engine ---------------------------------------------------------------------

class SynthesisEngine:
    """
    Usage:
        engine = SynthesisEngine(router, detector)
        response = await engine.synthesize(query, reranked_results)
    """

    def __init__(
        self,
        router: EmbeddingRouter,
        detector: Optional[ContradictionDetector] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.router = router
        self.detector = detector
        self.clock = clock

    @traceable(name="synthesize", run_type="chain")
    async def synthesize(
        self,
        query: str,
        results: list[SearchResult],
        options: Optional[SynthesisOptions] = None,
    ) -> SynthesisResponse:
        options = options or SynthesisOptions()
        start = time.perf_counter()
        limited = results[: max(0, options.max_results)]

        if not limited:
            return SynthesisResponse(
                query=query,
                metadata=SynthesisMetadata(
                    synthesis_time_ms=round((time.perf_counter() - start) * 1000)
                ),
            )

        vectors = await self._embed(limited)
        clusters = cluster_vectors(vectors)
        approaches = [self._build_approach(c, limited, vectors, query) for c in clusters]

        conflicts: list[Conflict] = []
        if self.detector is not None and len(approaches) >= 2:
            conflicts = await self.detector.detect([to_contradiction_input(a) for a in approaches])

        recommended = select_recommended(approaches, conflicts)
        elapsed_ms = round((time.perf_counter() - start) * 1000)

        logger.info(
            f"[Synthesis] {len(limited)} sources -> {len(approaches)} approach(es) "
            f"| {len(conflicts)} conflict(s) | {elapsed_ms}ms"
        )
        return SynthesisResponse(
            query=query,
            approaches=approaches,
            conflicts=conflicts,
            recommended=recommended,
            metadata=SynthesisMetadata(
                total_sources=len(limited),
                approaches_found=len(approaches),
                conflicts_found=len(conflicts),
                synthesis_time_ms=elapsed_ms,
            ),
        )

    async def _embed(self, results: list[SearchResult]) -> list[list[float]]:
        texts = [r.text[:EMBEDDING_SLICE] for r in results]
        try:
            embedded = await self.router.embed_batch(texts, EmbedOptions(batch_size=EMBED_BATCH_SIZE))
            vectors = [e.embedding for e in embedded]
            if len({len(v) for v in vectors}) == 1:
                return vectors
            logger.warning("[Synthesis] Mixed embedding dimensions, using hashed vectors")
        except Exception as exc:
            logger.warning(f"[Synthesis] Embedding failed, using hashed vectors: {exc}")
        return [hashed_embedding(t) for t in texts]

    def _build_approach(
        self,
        cluster: _Cluster,
        results: list[SearchResult],
        vectors: list[list[float]],
        query: str,
    ) -> Approach:
        members = [results[i] for i in cluster.indices]
        topic = derive_topic(members, query)
        return Approach(
            method=derive_method(members, topic),
            topic=topic,
            summary=build_summary(members),
            consensus_score=self._consensus(cluster, members, vectors),
            sources=[build_source(m) for m in members],
        )

    def _consensus(
        self, cluster: _Cluster, members: list[SearchResult], vectors: list[list[float]]
    ) -> float:
        now = self.clock()
        quality = average([quality_score(m.metadata) for m in members])
        freshness = average([freshness_score(m.metadata, now) for m in members])
        if len(cluster.indices) == 1:
            cohesion = 1.0
        else:
            cohesion = average(
                [clamp01(cosine_similarity(vectors[i], cluster.centroid)) for i in cluster.indices]
            )
        support = min(1.0, len(cluster.indices) / 3)
        return clamp01(0.4 * quality + 0.2 * freshness + 0.2 * cohesion + 0.2 * support)
