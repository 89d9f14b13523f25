"""
Engine configuration
---------------------
Settings are read from environment variables (a `.env` file is loaded by the
entry points via python-dotenv) and can be overlaid on top of a YAML file:

    settings = load_settings("config/config.yaml")

Field names are the lower-cased environment variable names, so
`MONTHLY_BUDGET_USD` populates `settings.monthly_budget_usd`.

BudgetFlags is the process-wide switchboard the CostTracker flips once the
monthly budget is exhausted. One instance is created by the composition root
and handed to every component that has a paid provider.
"""
from __future__ import annotations

import math
import os
import threading
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from loguru import logger
from pydantic import BaseModel, Field, field_validator

DEFAULT_MONTHLY_BUDGET_USD = 10.0
MAX_RERANK_CANDIDATES = 50


def _positive_int(value: Any, default: int, maximum: Optional[int] = None) -> int:
    """Parse a positive int, falling back to default on junk; clamp to maximum."""
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        parsed = default
    if parsed <= 0:
        parsed = default
    if maximum is not None:
        parsed = min(parsed, maximum)
    return parsed


def _unit_float(value: Any, default: float) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(parsed) or parsed < 0:
        return default
    return min(1.0, parsed)


class Settings(BaseModel):
    """All tunables of the engine. Every field has a working default."""

    # Storage
    database_url: Optional[str] = None
    storage_dir: str = "storage"

    # Provider endpoints and credentials
    ollama_host: str = "http://localhost:11434"
    openai_api_key: Optional[str] = None
    voyage_api_key: Optional[str] = None
    cohere_api_key: Optional[str] = None
    anthropic_api_key: Optional[str] = None

    # Embeddings
    embedding_model: str = "nomic-embed-text"
    doc_embedding_provider: Optional[str] = None
    code_embedding_provider: Optional[str] = None
    writing_embedding_provider: Optional[str] = None
    embed_max_retries: int = 3
    embed_retry_delay: float = 0.25
    embed_batch_size: int = 10

    # Lexical search
    fts_language: str = "english"

    # Reranking
    reranker_provider: Optional[str] = None
    rerank_max_candidates: int = MAX_RERANK_CANDIDATES
    rerank_default_top_k: int = 15
    rerank_batch_size: int = 8

    # Cost tracking
    monthly_budget_usd: float = DEFAULT_MONTHLY_BUDGET_USD
    enable_cost_alerts: bool = True

    # Contradiction detection
    enable_contradiction_detection: bool = False
    contradiction_model: str = "claude-3-haiku-20240307"
    contradiction_max_pairs: int = 6
    contradiction_min_similarity: float = 0.2
    contradiction_max_similarity: float = 0.7

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = "logs/synthesis.log"

    @field_validator("monthly_budget_usd", mode="before")
    @classmethod
    def _parse_budget(cls, value: Any) -> float:
        # Malformed budgets mean "use the default", never an error.
        try:
            parsed = float(value)
        except (TypeError, ValueError):
            return DEFAULT_MONTHLY_BUDGET_USD
        if not math.isfinite(parsed) or parsed <= 0:
            return DEFAULT_MONTHLY_BUDGET_USD
        return parsed

    @field_validator("rerank_max_candidates", mode="before")
    @classmethod
    def _parse_max_candidates(cls, value: Any) -> int:
        return _positive_int(value, MAX_RERANK_CANDIDATES, MAX_RERANK_CANDIDATES)

    @field_validator("rerank_default_top_k", mode="before")
    @classmethod
    def _parse_rerank_top_k(cls, value: Any) -> int:
        return _positive_int(value, 15, MAX_RERANK_CANDIDATES)

    @field_validator("rerank_batch_size", mode="before")
    @classmethod
    def _parse_rerank_batch(cls, value: Any) -> int:
        return _positive_int(value, 8, MAX_RERANK_CANDIDATES)

    @field_validator("contradiction_max_pairs", mode="before")
    @classmethod
    def _parse_max_pairs(cls, value: Any) -> int:
        return _positive_int(value, 6, 6)

    @field_validator("contradiction_min_similarity", mode="before")
    @classmethod
    def _parse_min_similarity(cls, value: Any) -> float:
        return _unit_float(value, 0.2)

    @field_validator("contradiction_max_similarity", mode="before")
    @classmethod
    def _parse_max_similarity(cls, value: Any) -> float:
        return _unit_float(value, 0.7)

    @field_validator(
        "openai_api_key", "voyage_api_key", "cohere_api_key", "anthropic_api_key", mode="before"
    )
    @classmethod
    def _blank_key_is_none(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        if not text or text.lower() == "undefined":
            return None
        return text

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        base: Optional[dict[str, Any]] = None,
    ) -> "Settings":
        """Build settings from environment variables layered over `base`."""
        env = os.environ if environ is None else environ
        values: dict[str, Any] = dict(base or {})
        for name in cls.model_fields:
            raw = env.get(name.upper())
            if raw is not None and raw.strip() != "":
                values[name] = raw.strip()
        return cls(**values)


def load_settings(config_path: Optional[str] = None) -> Settings:
    """
    Load settings: defaults < YAML file (if given and present) < environment.
    """
    base: dict[str, Any] = {}
    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path, "r", encoding="utf-8") as f:
                base = yaml.safe_load(f) or {}
            logger.debug(f"[Config] Loaded {len(base)} key(s) from {path}")
        else:
            logger.warning(f"[Config] Config file not found: {path} (using environment only)")
    return Settings.from_env(base=base)


class BudgetFlags:
    """
    Thread-safe fallback switches shared by the router, reranker and
    synthesis engine. Once set they stay set for the life of the process;
    clearing them is a manual operational action (`reset()`).
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._force_local_embeddings = False
        self._force_local_rerank = False
        self._disable_contradiction_detection = False

    @property
    def force_local_embeddings(self) -> bool:
        with self._lock:
            return self._force_local_embeddings

    @property
    def force_local_rerank(self) -> bool:
        with self._lock:
            return self._force_local_rerank

    @property
    def disable_contradiction_detection(self) -> bool:
        with self._lock:
            return self._disable_contradiction_detection

    @property
    def active(self) -> bool:
        with self._lock:
            return (
                self._force_local_embeddings
                or self._force_local_rerank
                or self._disable_contradiction_detection
            )

    def enable_fallback_mode(self) -> bool:
        """Set every switch. Returns True if this call changed anything."""
        with self._lock:
            changed = not (
                self._force_local_embeddings
                and self._force_local_rerank
                and self._disable_contradiction_detection
            )
            self._force_local_embeddings = True
            self._force_local_rerank = True
            self._disable_contradiction_detection = True
            return changed

    def reset(self) -> None:
        with self._lock:
            self._force_local_embeddings = False
            self._force_local_rerank = False
            self._disable_contradiction_detection = False

    def snapshot(self) -> dict[str, bool]:
        with self._lock:
            return {
                "force_local_embeddings": self._force_local_embeddings,
                "force_local_rerank": self._force_local_rerank,
                "disable_contradiction_detection": self._disable_contradiction_detection,
            }
