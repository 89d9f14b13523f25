"""
Cost Tracker
-------------
Records every paid API call and watches the monthly budget.

  track()        -> append a UsageRecord, then check the budget in the background
  check_budget() -> < 80%        nothing
                    80% .. 100%  one `warning` alert per 24 h
                    >= 100%      one `limit_reached` alert per 24 h, and the shared
                                 BudgetFlags switch every component to free providers

The flags stay set for the rest of the process; clearing them is a manual
operation (BudgetFlags.reset()).
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from loguru import logger

from synthesis_rag.config import BudgetFlags, Settings
from synthesis_rag.schemas import AlertType, BudgetAlert, CostBreakdown, UsageRecord, utcnow
from synthesis_rag.store.base import DocumentStore

WARNING_RATIO = 0.8
ALERT_DEDUP_WINDOW = timedelta(hours=24)
BREAKDOWN_DEFAULT_DAYS = 30

# ---------------------------------------------------------------------------
# Pricing table (USD). Token-billed models are priced per 1K tokens; Cohere
# rerank is priced per request. The first model of each provider is the
# fallback for unknown model names.
# ---------------------------------------------------------------------------

PRICING: dict[str, dict[str, float]] = {
    "openai": {
        "text-embedding-3-large": 0.00013,
        "gpt-4": 0.03,
    },
    "voyage": {
        "voyage-code-2": 0.00012,
    },
    "cohere": {
        "rerank-english-v3.0": 0.001,
        "rerank-v3.5": 0.001,
    },
    "anthropic": {
        "claude-3-haiku": 0.00025,
        "claude-3-haiku-20240307": 0.00025,
    },
}

PER_REQUEST_PROVIDERS = frozenset({"cohere"})


def calculate_cost(provider: str, tokens_used: int, model: Optional[str] = None) -> float:
    """Cost of one call. Unknown providers cost 0 and log a warning."""
    rates = PRICING.get(provider)
    if not rates:
        logger.warning(f"[CostTracker] Unknown provider for cost tracking: {provider}")
        return 0.0

    rate = rates.get(model) if model in rates else next(iter(rates.values()))
    if provider in PER_REQUEST_PROVIDERS:
        return rate * max(1, tokens_used)
    return tokens_used / 1000 * rate


def month_start(now: datetime) -> datetime:
    return now.astimezone(timezone.utc).replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def day_start(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


class CostTracker:
    """
    Usage:
        tracker = CostTracker(store, settings, flags)
        await tracker.track(provider="openai", operation="embedding", tokens_used=812,
                            model="text-embedding-3-large")
    """

    def __init__(
        self,
        store: DocumentStore,
        settings: Optional[Settings] = None,
        budget_flags: Optional[BudgetFlags] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings or Settings()
        self.budget_flags = budget_flags or BudgetFlags()
        self.clock = clock
        self._pending: set[asyncio.Task] = set()
        self._alert_lock = asyncio.Lock()

    @property
    def monthly_budget(self) -> float:
        return self.settings.monthly_budget_usd

    async def track(
        self,
        provider: str,
        operation: str,
        tokens_used: int,
        model: Optional[str] = None,
        collection_id: Optional[str] = None,
        user_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> UsageRecord:
        """Append a usage record; the budget check runs without blocking the caller."""
        cost = calculate_cost(provider, tokens_used, model)
        record = await self.store.insert_usage(
            UsageRecord(
                provider=provider,
                operation=operation,
                tokens_used=tokens_used,
                cost_usd=cost,
                model=model,
                collection_id=collection_id,
                user_id=user_id,
                metadata={**(metadata or {}), **({"model": model} if model else {})},
                created_at=self.clock(),
            )
        )
        logger.debug(
            f"[CostTracker] {provider}/{operation} | {tokens_used} units | ${cost:.6f}"
        )

        if self.settings.enable_cost_alerts:
            task = asyncio.create_task(self._safe_check_budget())
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        return record

    async def _safe_check_budget(self) -> None:
        try:
            await self.check_budget()
        except Exception as exc:
            logger.error(f"[CostTracker] Budget check failed: {exc}")

    async def wait_for_pending(self) -> None:
        """Wait for background budget checks scheduled by track()."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def check_budget(self) -> None:
        budget = self.monthly_budget
        spend = await self.get_monthly_spend()

        if spend >= budget:
            await self._send_alert(AlertType.LIMIT_REACHED, budget, spend)
            self._enable_fallback_mode()
        elif spend >= budget * WARNING_RATIO:
            await self._send_alert(AlertType.WARNING, budget, spend)

    async def get_monthly_spend(self) -> float:
        return await self.store.sum_spend(month_start(self.clock()))

    async def get_daily_spend(self, date: Optional[datetime] = None) -> float:
        start = day_start(date or self.clock())
        return await self.store.sum_spend(start, start + timedelta(days=1))

    async def get_cost_breakdown(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> list[CostBreakdown]:
        now = self.clock()
        start = start or now - timedelta(days=BREAKDOWN_DEFAULT_DAYS)
        end = end or now + timedelta(microseconds=1)
        return await self.store.cost_breakdown(start, end)

    async def _send_alert(self, alert_type: AlertType, budget: float, spend: float) -> None:
        # Read-then-insert must not interleave with other background checks.
        async with self._alert_lock:
            now = self.clock()
            recent = await self.store.latest_alert(alert_type, "monthly", now - ALERT_DEDUP_WINDOW)
            if recent is not None:
                return
            await self._write_alert(alert_type, budget, spend, now)

    async def _write_alert(
        self, alert_type: AlertType, budget: float, spend: float, now: datetime
    ) -> None:
        if alert_type is AlertType.WARNING:
            logger.warning(
                f"[CostTracker] Budget alert: {WARNING_RATIO:.0%} of monthly budget used "
                f"(${spend:.2f} / ${budget:.2f})"
            )
        else:
            logger.warning(f"[CostTracker] Budget limit reached: ${spend:.2f} / ${budget:.2f}")

        await self.store.insert_alert(
            BudgetAlert(
                alert_type=alert_type,
                threshold_usd=budget,
                current_spend_usd=spend,
                period="monthly",
                triggered_at=now,
            )
        )

    def _enable_fallback_mode(self) -> None:
        if self.budget_flags.enable_fallback_mode():
            logger.warning(
                "[CostTracker] Fallback mode enabled | embeddings: ollama | "
                "reranking: bge | contradiction detection: disabled"
            )
