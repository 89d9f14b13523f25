"""
Chunk schema - a contiguous slice of a document's extracted text.

Offsets refer to the newline-normalised, trimmed text the chunker worked on,
so `normalised[start_offset:end_offset] == chunk.text` always holds.
"""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class Chunk(BaseModel):
    """
    A single embeddable text window produced by the chunker.

    metadata always carries `start_offset` (inclusive), `end_offset`
    (exclusive) and `heading` (possibly None), on top of whatever
    document-level metadata was handed to the chunker. The ingestion
    orchestrator later adds `embedding_provider`, `embedding_model` and
    `embedding_dimensions`.
    """

    text: str                              # Trailing whitespace already removed
    index: int                             # 0-based position within the document
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def start_offset(self) -> int:
        return int(self.metadata["start_offset"])

    @property
    def end_offset(self) -> int:
        return int(self.metadata["end_offset"])

    @property
    def heading(self) -> str | None:
        return self.metadata.get("heading")
