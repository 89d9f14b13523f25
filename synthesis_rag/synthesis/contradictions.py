"""
Contradiction Detector
-----------------------
Asks an Anthropic model whether two synthesized approaches disagree.

Only pairs that talk about roughly the same thing are worth a call: their
summaries must share between CONTRADICTION_MIN_SIMILARITY and
CONTRADICTION_MAX_SIMILARITY of their terms (Jaccard). Pairs are ranked by
overlap + consensus gap and the top CONTRADICTION_MAX_PAIRS are analysed.

Detection is optional and best-effort: it is skipped when disabled, when the
budget flags turn it off or when no client is configured, and a failing pair
is logged and skipped.
"""
from __future__ import annotations

import math
import re
from typing import TYPE_CHECKING, Any, Literal, Optional

import orjson
from anthropic import AsyncAnthropic
from langsmith import traceable
from loguru import logger
from pydantic import BaseModel, Field

from synthesis_rag.config import BudgetFlags, Settings
from synthesis_rag.synthesis.prompts import (
    CONTRADICTION_SYSTEM,
    CONTRADICTION_USER,
    DEFAULT_DIFFERENCE,
    DEFAULT_RECOMMENDATION,
)

if TYPE_CHECKING:
    from synthesis_rag.costs.tracker import CostTracker

MAX_TOKENS = 400
PRIMARY_SUMMARY_LIMIT = 400
DEFAULT_CONFIDENCE = 0.6

Severity = Literal["high", "medium", "low"]


class ContradictionSource(BaseModel):
    title: Optional[str] = None
    statement: str
    quality: Optional[str] = None
    date: Optional[str] = None
    url: Optional[str] = None


class ContradictionApproach(BaseModel):
    method: str
    topic: Optional[str] = None
    summary: Optional[str] = None
    consensus_score: Optional[float] = None
    sources: list[ContradictionSource] = Field(default_factory=list)


class Conflict(BaseModel):
    topic: str
    source_a: ContradictionSource
    source_b: ContradictionSource
    severity: Severity
    difference: str
    recommendation: str
    confidence: float


# --- Pure helpers --------------------------------------------------------------

def _terms(text: str) -> set[str]:
    return {t for t in re.split(r"[^a-z0-9]+", text.lower()) if t}


def lexical_overlap(a: str, b: str) -> float:
    """Jaccard similarity of the two texts' lowercase alphanumeric terms."""
    terms_a, terms_b = _terms(a), _terms(b)
    if not terms_a or not terms_b:
        return 0.0
    return len(terms_a & terms_b) / len(terms_a | terms_b)


def approach_statement(approach: ContradictionApproach) -> str:
    if approach.summary and approach.summary.strip():
        return approach.summary
    return select_primary_source(approach).statement


def select_primary_source(approach: ContradictionApproach) -> ContradictionSource:
    if not approach.sources:
        return ContradictionSource(title=approach.method, statement=approach.summary or approach.method)

    first = approach.sources[0]
    if approach.summary and len(approach.summary) <= PRIMARY_SUMMARY_LIMIT:
        return first.model_copy(update={"statement": approach.summary})
    return first.model_copy(
        update={"statement": first.statement or approach.summary or approach.method}
    )


def extract_json(text: str) -> Optional[dict[str, Any]]:
    """Parse the span from the first `{` to the last `}`; None if that fails."""
    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        parsed = orjson.loads(text[start: end + 1])
    except orjson.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def normalize_severity(value: Any) -> Severity:
    lowered = value.lower() if isinstance(value, str) else ""
    if lowered in ("high", "low"):
        return lowered  # type: ignore[return-value]
    return "medium"


def clamp_confidence(value: Any, default: float = DEFAULT_CONFIDENCE) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(parsed) or parsed < 0:
        return default
    return min(1.0, parsed)


def build_comparison_pairs(
    approaches: list[ContradictionApproach],
    max_pairs: int,
    min_overlap: float,
    max_overlap: float,
) -> list[tuple[ContradictionApproach, ContradictionApproach]]:
    weighted: list[tuple[float, ContradictionApproach, ContradictionApproach]] = []
    for i in range(len(approaches) - 1):
        for j in range(i + 1, len(approaches)):
            a, b = approaches[i], approaches[j]
            overlap = lexical_overlap(approach_statement(a), approach_statement(b))
            if overlap < min_overlap or overlap > max_overlap:
                continue
            gap = abs((a.consensus_score if a.consensus_score is not None else 0.5)
                      - (b.consensus_score if b.consensus_score is not None else 0.5))
            weighted.append((overlap + gap, a, b))

    weighted.sort(key=lambda item: item[0], reverse=True)
    return [(a, b) for _, a, b in weighted[: max(1, max_pairs)]]


def build_prompt_payload(
    a: ContradictionApproach,
    b: ContradictionApproach,
    source_a: ContradictionSource,
    source_b: ContradictionSource,
) -> str:
    def side(approach: ContradictionApproach, source: ContradictionSource) -> dict[str, Any]:
        return {
            "method": approach.method,
            "topic": approach.topic,
            "summary": approach_statement(approach),
            "quality": source.quality,
            "date": source.date,
        }

    payload = {"approach_a": side(a, source_a), "approach_b": side(b, source_b)}
    return CONTRADICTION_USER.format(payload=orjson.dumps(payload, option=orjson.OPT_INDENT_2).decode())


# --- Detector -------------------------------------------------------------------

class ContradictionDetector:

    def __init__(
        self,
        client: Optional[AsyncAnthropic] = None,
        settings: Optional[Settings] = None,
        budget_flags: Optional[BudgetFlags] = None,
        cost_tracker: Optional["CostTracker"] = None,
    ) -> None:
        self.client = client
        self.settings = settings or Settings()
        self.budget_flags = budget_flags or BudgetFlags()
        self.cost_tracker = cost_tracker

    @property
    def enabled(self) -> bool:
        return (
            self.settings.enable_contradiction_detection
            and not self.budget_flags.disable_contradiction_detection
            and self.client is not None
        )

    @traceable(name="detect_contradictions", run_type="chain")
    async def detect(self, approaches: list[ContradictionApproach]) -> list[Conflict]:
        if not self.enabled or len(approaches) < 2:
            return []

        pairs = build_comparison_pairs(
            approaches,
            self.settings.contradiction_max_pairs,
            self.settings.contradiction_min_similarity,
            self.settings.contradiction_max_similarity,
        )
        conflicts: list[Conflict] = []
        for a, b in pairs:
            conflict = await self._analyze_pair(a, b)
            if conflict is not None:
                conflicts.append(conflict)

        logger.info(f"[Contradictions] {len(pairs)} pair(s) analysed | {len(conflicts)} conflict(s)")
        return conflicts

    async def _analyze_pair(
        self, a: ContradictionApproach, b: ContradictionApproach
    ) -> Optional[Conflict]:
        source_a = select_primary_source(a)
        source_b = select_primary_source(b)

        try:
            response = await self.client.messages.create(
                model=self.settings.contradiction_model,
                max_tokens=MAX_TOKENS,
                temperature=0,
                system=CONTRADICTION_SYSTEM,
                messages=[{"role": "user", "content": build_prompt_payload(a, b, source_a, source_b)}],
            )
        except Exception as exc:
            logger.warning(f"[Contradictions] Pair {a.method!r} vs {b.method!r} failed: {exc}")
            return None

        await self._record_usage(response)

        text = "\n".join(
            block.text for block in (response.content or [])
            if getattr(block, "type", None) == "text" and isinstance(getattr(block, "text", None), str)
        ).strip()
        parsed = extract_json(text) if text else None
        if not parsed or parsed.get("contradiction") is not True:
            return None

        topic = parsed.get("topic")
        difference = parsed.get("difference")
        recommendation = parsed.get("recommendation")
        return Conflict(
            topic=topic if isinstance(topic, str) else (a.topic or b.topic or a.method),
            source_a=source_a,
            source_b=source_b,
            severity=normalize_severity(parsed.get("severity")),
            difference=difference if isinstance(difference, str) else DEFAULT_DIFFERENCE,
            recommendation=recommendation if isinstance(recommendation, str) else DEFAULT_RECOMMENDATION,
            confidence=clamp_confidence(parsed.get("confidence")),
        )

    async def _record_usage(self, response: Any) -> None:
        if self.cost_tracker is None:
            return
        usage = getattr(response, "usage", None)
        tokens = (getattr(usage, "input_tokens", 0) or 0) + (getattr(usage, "output_tokens", 0) or 0)
        try:
            await self.cost_tracker.track(
                provider="anthropic",
                operation="contradiction_detection",
                tokens_used=int(tokens),
                model=self.settings.contradiction_model,
            )
        except Exception as exc:
            logger.error(f"[Contradictions] Cost tracking failed: {exc}")
