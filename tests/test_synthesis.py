"""
Tests for synthesis_rag/synthesis/*
Approach clustering, consensus scoring, recommendation and contradiction detection.
"""
from datetime import datetime, timezone

import pytest

from conftest import FakeAnthropic, FakeEmbeddingClient
from synthesis_rag.config import Settings
from synthesis_rag.costs.tracker import CostTracker
from synthesis_rag.embedding.providers import EmbeddingProvider
from synthesis_rag.embedding.router import EmbeddingRouter
from synthesis_rag.schemas import SearchResult
from synthesis_rag.synthesis.contradictions import (
    Conflict,
    ContradictionApproach,
    ContradictionDetector,
    ContradictionSource,
    build_comparison_pairs,
    clamp_confidence,
    extract_json,
    lexical_overlap,
    normalize_severity,
)
from synthesis_rag.synthesis.engine import (
    Approach,
    SynthesisEngine,
    SynthesisOptions,
    SynthesizedSource,
    cluster_vectors,
    freshness_score,
    hashed_embedding,
    select_recommended,
)

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)

PROVIDER_SUMMARY = "provider handles state management in flutter with change notifiers"
BLOC_SUMMARY = "bloc handles state management in flutter using streams and events"


def _result(chunk_id: int, text: str, title: str, **metadata) -> SearchResult:
    return SearchResult(
        chunk_id=chunk_id,
        text=text,
        doc_id=f"doc-{chunk_id}",
        doc_title=title,
        source_url=f"https://example.com/{chunk_id}",
        metadata=metadata or None,
    )


def _approach(method: str, summary: str, score: float, title: str) -> ContradictionApproach:
    return ContradictionApproach(
        method=method,
        topic="State management",
        summary=summary,
        consensus_score=score,
        sources=[ContradictionSource(title=title, statement=f"{method} statement", url=f"https://{method}.dev")],
    )


def _detector_settings(**overrides) -> Settings:
    return Settings(enable_contradiction_detection=True, enable_cost_alerts=False, log_file=None, **overrides)


# --- Clustering -----------------------------------------------------------------

class TestClustering:

    def test_similar_vectors_grouped(self):
        clusters = cluster_vectors([[1.0, 0.0], [0.9, 0.1], [0.0, 1.0]])
        assert [c.indices for c in clusters] == [[0, 1], [2]]
        assert clusters[0].centroid == pytest.approx([0.95, 0.05])

    def test_overflow_merged_into_nearest(self):
        vectors = [
            [1.0, 0.0, 0.0, 0.0],
            [0.0, 1.0, 0.0, 0.0],
            [0.0, 0.0, 1.0, 0.0],
            [0.6, 0.0, 0.0, 0.8],    # nearest to the first cluster
        ]
        clusters = cluster_vectors(vectors, max_clusters=3)
        assert [sorted(c.indices) for c in clusters] == [[0, 3], [1], [2]]

    def test_hashed_embedding_deterministic(self):
        assert hashed_embedding("Cache the Query") == hashed_embedding("cache the query!")
        assert len(hashed_embedding("x")) == 64
        assert sum(hashed_embedding("")) == 0


# --- Scoring --------------------------------------------------------------------

class TestFreshness:

    @pytest.mark.parametrize(
        "metadata, expected",
        [
            ({"last_verified": "2026-01-01"}, 1.0),
            ({"last_verified": "2025-09-16T00:00:00Z"}, 1.0),
            ({"last_verified": "2025-09-15"}, 0.85),
            ({"published_date": "2025-06-01"}, 0.85),
            ({"published_date": "2024-06-01"}, 0.7),
            ({"published_date": "2020-01-01"}, 0.5),
            ({"last_verified": "2026-02-01", "published_date": "2019-01-01"}, 1.0),
            ({"published_date": "not a date"}, 0.7),
            ({}, 0.7),
            (None, 0.7),
        ],
    )
    def test_tiers(self, metadata, expected):
        assert freshness_score(metadata, NOW) == expected


class TestRecommendation:

    def _approach(self, method: str, score: float, title: str) -> Approach:
        return Approach(
            method=method, topic="t", summary=method, consensus_score=score,
            sources=[SynthesizedSource(doc_id=title, doc_title=title, snippet="s")],
        )

    def _conflict(self, severity: str, title_a: str, title_b: str) -> Conflict:
        return Conflict(
            topic="t",
            source_a=ContradictionSource(title=title_a, statement="a"),
            source_b=ContradictionSource(title=title_b, statement="b"),
            severity=severity,
            difference="d",
            recommendation="r",
            confidence=0.9,
        )

    def test_highest_consensus_without_conflicts(self):
        a, b = self._approach("A", 0.8, "A doc"), self._approach("B", 0.7, "B doc")
        assert select_recommended([a, b], []) == a

    def test_conflict_penalty_changes_winner(self):
        a, b = self._approach("A", 0.8, "A doc"), self._approach("B", 0.7, "B doc")
        conflicts = [self._conflict("high", "A doc", "Other doc")]
        assert select_recommended([a, b], conflicts) == b

    def test_largest_penalty_applies_once(self):
        a, b = self._approach("A", 0.8, "A doc"), self._approach("B", 0.74, "B doc")
        conflicts = [self._conflict("low", "A doc", "X"), self._conflict("medium", "A doc", "Y")]
        # 0.8 - 0.15 = 0.65 < 0.74
        assert select_recommended([a, b], conflicts) == b

    def test_nothing_positive(self):
        assert select_recommended([self._approach("A", 0.0, "A doc")], []) is None
        assert select_recommended([], []) is None


# --- Engine ---------------------------------------------------------------------

class StubDetector(ContradictionDetector):
    def __init__(self, conflicts: list[Conflict]) -> None:
        super().__init__()
        self.conflicts = conflicts
        self.received: list[list[ContradictionApproach]] = []

    async def detect(self, approaches):
        self.received.append(approaches)
        return self.conflicts


CACHE_RESULTS = [
    _result(1, "cache query", "Cache guide"),
    _result(2, "cache cache query", "Cache guide"),
    _result(3, "query cache", "Cache guide"),
]
LAYOUT_RESULTS = [_result(4, "widget layout", "Layout guide")]


class TestSynthesisEngine:

    @pytest.mark.asyncio
    async def test_empty_results(self, router, clock):
        response = await SynthesisEngine(router, clock=clock).synthesize("state", [])
        assert response.approaches == []
        assert response.recommended is None
        assert response.metadata.total_sources == 0

    @pytest.mark.asyncio
    async def test_groups_into_approaches(self, router, clock):
        response = await SynthesisEngine(router, clock=clock).synthesize(
            "caching", CACHE_RESULTS + LAYOUT_RESULTS
        )

        assert response.metadata.approaches_found == 2
        assert [len(a.sources) for a in response.approaches] == [3, 1]
        assert response.approaches[0].method == "Cache guide"
        assert response.approaches[0].summary == "cache query cache cache query"
        assert response.recommended == response.approaches[0]
        assert all(0.0 <= a.consensus_score <= 1.0 for a in response.approaches)

    @pytest.mark.asyncio
    async def test_at_most_three_approaches(self, router, clock):
        results = [_result(i, word, f"Doc {i}") for i, word in enumerate(
            ["cache", "query", "state", "widget", "stream"], start=1
        )]
        response = await SynthesisEngine(router, clock=clock).synthesize("q", results)

        assert len(response.approaches) == 3
        assert sum(len(a.sources) for a in response.approaches) == 5

    @pytest.mark.asyncio
    async def test_max_results_respected(self, router, clock):
        response = await SynthesisEngine(router, clock=clock).synthesize(
            "q", CACHE_RESULTS + LAYOUT_RESULTS, SynthesisOptions(max_results=2)
        )
        assert response.metadata.total_sources == 2

    @pytest.mark.asyncio
    async def test_consensus_formula(self, router, clock):
        result = _result(1, "stream", "Official", source_quality="official", last_verified="2026-01-01")
        response = await SynthesisEngine(router, clock=clock).synthesize("q", [result])
        # 0.4 quality + 0.2 freshness + 0.2 cohesion + 0.2 * (1 / 3) support
        assert response.approaches[0].consensus_score == pytest.approx(0.8 + 0.2 / 3)

    @pytest.mark.asyncio
    async def test_metadata_labels_preferred(self, router, clock):
        result = _result(1, "stream", "Doc", topic="Reactive state", approach="BLoC pattern")
        approach = (await SynthesisEngine(router, clock=clock).synthesize("q", [result])).approaches[0]
        assert approach.topic == "Reactive state"
        assert approach.method == "BLoC pattern"

    @pytest.mark.asyncio
    async def test_embedding_failure_uses_hashed_vectors(self, settings, budget_flags, clock):
        failing = FakeEmbeddingClient(EmbeddingProvider.OLLAMA, fail=RuntimeError("ollama down"))
        router = EmbeddingRouter({EmbeddingProvider.OLLAMA: failing}, settings, budget_flags)
        results = [_result(1, "alpha beta", "A"), _result(2, "alpha beta", "B")]

        response = await SynthesisEngine(router, clock=clock).synthesize("q", results)

        assert response.metadata.approaches_found == 1
        assert len(response.approaches[0].sources) == 2

    @pytest.mark.asyncio
    async def test_conflicts_flow_into_recommendation(self, router, clock):
        conflict = Conflict(
            topic="caching",
            source_a=ContradictionSource(title="Cache guide", statement="a"),
            source_b=ContradictionSource(title="External doc", statement="b"),
            severity="high",
            difference="d",
            recommendation="r",
            confidence=0.8,
        )
        detector = StubDetector([conflict])

        response = await SynthesisEngine(router, detector, clock=clock).synthesize(
            "caching", CACHE_RESULTS + LAYOUT_RESULTS
        )

        assert len(detector.received[0]) == 2
        assert detector.received[0][0].sources[0].title == "Cache guide"
        assert response.conflicts == [conflict]
        assert response.metadata.conflicts_found == 1
        assert response.recommended.method == "Layout guide"

    @pytest.mark.asyncio
    async def test_single_approach_skips_detection(self, router, clock):
        detector = StubDetector([])
        await SynthesisEngine(router, detector, clock=clock).synthesize("q", CACHE_RESULTS)
        assert detector.received == []


# --- Contradiction detection ---------------------------------------------------------

class TestContradictionHelpers:

    def test_overlap(self):
        assert lexical_overlap(PROVIDER_SUMMARY, BLOC_SUMMARY) == pytest.approx(5 / 14)
        assert lexical_overlap("", "anything") == 0.0

    def test_extract_json(self):
        assert extract_json('Sure! {"contradiction": false} done') == {"contradiction": False}
        assert extract_json("no json here") is None
        assert extract_json("{broken") is None
        assert extract_json("[1, 2]") is None

    def test_normalize_severity(self):
        assert normalize_severity("HIGH") == "high"
        assert normalize_severity("Low") == "low"
        assert normalize_severity("critical") == "medium"
        assert normalize_severity(None) == "medium"

    def test_clamp_confidence(self):
        assert clamp_confidence(1.7) == 1.0
        assert clamp_confidence("0.4") == 0.4
        assert clamp_confidence(-1) == 0.6
        assert clamp_confidence("n/a") == 0.6

    def test_pairs_filtered_by_overlap(self):
        a = _approach("Provider", PROVIDER_SUMMARY, 0.8, "P")
        b = _approach("BLoC", BLOC_SUMMARY, 0.6, "B")
        c = _approach("Layout", "grid rows columns", 0.5, "L")
        d = _approach("Provider again", PROVIDER_SUMMARY, 0.7, "P2")

        pairs = build_comparison_pairs([a, b, c, d], max_pairs=6, min_overlap=0.2, max_overlap=0.7)

        names = [(x.method, y.method) for x, y in pairs]
        assert ("Provider", "BLoC") in names
        assert ("BLoC", "Provider again") in names
        assert all("Layout" not in pair for pair in names)
        # Identical summaries overlap 1.0, above the maximum
        assert ("Provider", "Provider again") not in names

    def test_pairs_ranked_and_capped(self):
        a = _approach("Provider", PROVIDER_SUMMARY, 0.9, "P")
        b = _approach("BLoC", BLOC_SUMMARY, 0.1, "B")
        c = _approach("BLoC 2", BLOC_SUMMARY + " extra", 0.85, "B2")
        pairs = build_comparison_pairs([a, b, c], max_pairs=1, min_overlap=0.2, max_overlap=0.7)
        assert [(x.method, y.method) for x, y in pairs] == [("Provider", "BLoC")]


class TestContradictionDetector:

    REPLY = (
        "Here is my analysis:\n"
        '{"contradiction": true, "topic": "State management", "difference": "Provider vs BLoC", '
        '"severity": "HIGH", "recommendation": "Prefer BLoC for event-heavy flows", "confidence": 1.7}\n'
        "Hope that helps."
    )

    def _pair(self):
        return [
            _approach("Provider", PROVIDER_SUMMARY, 0.8, "Provider guide"),
            _approach("BLoC", BLOC_SUMMARY, 0.7, "BLoC guide"),
        ]

    @pytest.mark.asyncio
    async def test_detects_conflict(self, store, budget_flags):
        client = FakeAnthropic([self.REPLY])
        settings = _detector_settings()
        tracker = CostTracker(store, settings, budget_flags)
        detector = ContradictionDetector(client, settings, budget_flags, tracker)

        conflicts = await detector.detect(self._pair())

        assert len(conflicts) == 1
        conflict = conflicts[0]
        assert conflict.topic == "State management"
        assert conflict.severity == "high"
        assert conflict.confidence == 1.0
        assert conflict.source_a.title == "Provider guide"
        assert conflict.source_a.statement == PROVIDER_SUMMARY
        assert conflict.source_b.url == "https://BLoC.dev"

        call = client.messages.calls[0]
        assert call["temperature"] == 0
        assert call["max_tokens"] == 400
        assert call["model"] == settings.contradiction_model
        assert "change notifiers" in call["messages"][0]["content"]

        assert store.usage[0].provider == "anthropic"
        assert store.usage[0].operation == "contradiction_detection"
        assert store.usage[0].tokens_used == 160

    @pytest.mark.asyncio
    async def test_missing_fields_defaulted(self):
        client = FakeAnthropic(['{"contradiction": true}'])
        conflicts = await ContradictionDetector(client, _detector_settings()).detect(self._pair())
        assert conflicts[0].severity == "medium"
        assert conflicts[0].confidence == 0.6
        assert conflicts[0].topic == "State management"

    @pytest.mark.asyncio
    async def test_no_contradiction(self):
        client = FakeAnthropic(['{"contradiction": false}'])
        assert await ContradictionDetector(client, _detector_settings()).detect(self._pair()) == []

    @pytest.mark.asyncio
    async def test_string_flag_is_not_a_contradiction(self):
        client = FakeAnthropic(['{"contradiction": "true", "severity": "high"}'])
        assert await ContradictionDetector(client, _detector_settings()).detect(self._pair()) == []

    @pytest.mark.asyncio
    async def test_client_failure_skipped(self):
        client = FakeAnthropic(fail=RuntimeError("overloaded"))
        detector = ContradictionDetector(client, _detector_settings())
        assert await detector.detect(self._pair()) == []
        assert len(client.messages.calls) == 1

    @pytest.mark.asyncio
    async def test_disabled_by_budget(self, budget_flags):
        budget_flags.enable_fallback_mode()
        client = FakeAnthropic([self.REPLY])
        detector = ContradictionDetector(client, _detector_settings(), budget_flags)

        assert detector.enabled is False
        assert await detector.detect(self._pair()) == []
        assert client.messages.calls == []

    @pytest.mark.asyncio
    async def test_disabled_by_setting_or_missing_client(self):
        assert ContradictionDetector(FakeAnthropic(), Settings()).enabled is False
        assert ContradictionDetector(None, _detector_settings()).enabled is False
        assert await ContradictionDetector(None, _detector_settings()).detect(self._pair()) == []
