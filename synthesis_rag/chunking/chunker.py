"""
Boundary-Aware Chunker
-----------------------
Splits normalised document text into overlapping character windows sized
for embedding, preferring natural boundaries so chunks read as complete
thoughts.

Boundary preference inside each window of `max_size` characters:
  1. the LAST paragraph break (two or more newlines), separator included
  2. the LAST sentence end (. ! ? plus optional closing quote/bracket, then whitespace)
  3. the FIRST sentence end in the `overlap` characters PAST the window,
     so an abnormally long sentence is extended rather than chopped
  4. a hard cut at `max_size`

Consecutive chunks overlap by `overlap` characters. The cursor always moves
strictly forward, so pathological input (whitespace runs, no punctuation)
cannot loop.
"""
from __future__ import annotations

import re
from typing import Any, Optional

from loguru import logger

from synthesis_rag.chunking.schemas import Chunk
from synthesis_rag.errors import InvalidConfiguration
from synthesis_rag.utils.helpers import normalise_newlines

# ── Constants ─────────────────────────────────────────────────────────────────

DEFAULT_MAX_SIZE = 800
DEFAULT_OVERLAP = 150
MAX_HEADING_LENGTH = 120

_PARAGRAPH_SEPARATOR = re.compile(r"\n{2,}")
_SENTENCE_END = re.compile(r"[.!?][\"')\]]*\s+")
_LEADING_NEWLINES = re.compile(r"\n+")
_HEADING_START = re.compile(r"[#A-Z]")


def extract_heading(text: str) -> Optional[str]:
    """First line of the chunk if it is short and looks like a title."""
    first_line = text.split("\n", 1)[0].strip()
    if not first_line:
        return None
    if len(first_line) <= MAX_HEADING_LENGTH and _HEADING_START.match(first_line):
        return first_line
    return None


# ── Main Chunker ──────────────────────────────────────────────────────────────

class TextChunker:
    """
    Usage:
        chunker = TextChunker(max_size=800, overlap=150)
        chunks = chunker.chunk(text, {"document_id": doc.id})
    """

    def __init__(
        self,
        max_size: int = DEFAULT_MAX_SIZE,
        overlap: int = DEFAULT_OVERLAP,
        paragraph_separator: Optional[re.Pattern[str] | str] = None,
    ) -> None:
        if max_size <= 0:
            raise InvalidConfiguration("chunk max_size must be greater than zero")
        if overlap < 0:
            raise InvalidConfiguration("chunk overlap cannot be negative")
        if overlap >= max_size:
            raise InvalidConfiguration("chunk overlap must be smaller than max_size")

        self.max_size = max_size
        self.overlap = overlap
        if paragraph_separator is None:
            self.paragraph_separator = _PARAGRAPH_SEPARATOR
        elif isinstance(paragraph_separator, str):
            self.paragraph_separator = re.compile(paragraph_separator)
        else:
            self.paragraph_separator = paragraph_separator

    def chunk(self, text: str, document_metadata: Optional[dict[str, Any]] = None) -> list[Chunk]:
        """
        Chunk `text`, copying `document_metadata` into every chunk.

        Returns an empty list when the normalised text is empty.
        """
        document_metadata = document_metadata or {}
        normalised = normalise_newlines(text).strip()
        if not normalised:
            return []

        chunks: list[Chunk] = []
        length = len(normalised)
        start = 0

        while start < length:
            end, hard_limit = self._find_chunk_end(normalised, start)
            trimmed = normalised[start:end].rstrip()

            if not trimmed:
                # Whitespace-only window: skip it entirely.
                start = hard_limit
                continue

            end_offset = start + len(trimmed)

            if chunks and end_offset <= chunks[-1].end_offset:
                start = end_offset
                continue

            heading = extract_heading(trimmed.lstrip()) or document_metadata.get("heading")
            chunks.append(
                Chunk(
                    text=trimmed,
                    index=len(chunks),
                    metadata={
                        **document_metadata,
                        "start_offset": start,
                        "end_offset": end_offset,
                        "heading": heading,
                    },
                )
            )

            if end >= length:
                break

            next_start = end - self.overlap
            start = next_start if next_start > start else end

        logger.debug(
            f"[Chunker] {document_metadata.get('document_id', '-')} | "
            f"{length} chars -> {len(chunks)} chunk(s)"
        )
        return chunks

    # --- Boundary search -------------------------------------------------------

    def _find_chunk_end(self, text: str, start: int) -> tuple[int, int]:
        """Return (end, hard_limit) for the chunk starting at `start`."""
        hard_limit = min(start + self.max_size, len(text))
        if hard_limit == len(text):
            return hard_limit, hard_limit

        paragraph_end = self._last_paragraph_break(text, start, hard_limit)
        if paragraph_end > start:
            return paragraph_end, hard_limit

        sentence_end = _last_sentence_boundary(text, start, hard_limit)
        if sentence_end > start:
            return sentence_end, hard_limit

        extended_limit = min(start + self.max_size + self.overlap, len(text))
        if extended_limit > hard_limit:
            forward_end = _first_sentence_boundary(text, hard_limit, extended_limit)
            if forward_end > hard_limit:
                return forward_end, extended_limit

        return hard_limit, hard_limit

    def _last_paragraph_break(self, text: str, start: int, limit: int) -> int:
        candidate = -1
        for match in self.paragraph_separator.finditer(text, start):
            if match.start() >= limit:
                break
            candidate = match.start()

        if candidate <= start:
            return -1

        # Keep the separator newlines in this chunk so the next one does not
        # start with blank lines.
        newlines = _LEADING_NEWLINES.match(text, candidate)
        return candidate + (len(newlines.group(0)) if newlines else 0)


def _last_sentence_boundary(text: str, start: int, limit: int) -> int:
    if limit <= start:
        return -1
    boundary = -1
    for match in _SENTENCE_END.finditer(text[start:limit]):
        boundary = start + match.end()
    return boundary


def _first_sentence_boundary(text: str, range_start: int, range_end: int) -> int:
    if range_end <= range_start:
        return -1
    match = _SENTENCE_END.search(text[range_start:range_end])
    if match is None:
        return -1
    return range_start + match.end()


def chunk_text(
    text: str,
    max_size: int = DEFAULT_MAX_SIZE,
    overlap: int = DEFAULT_OVERLAP,
    document_metadata: Optional[dict[str, Any]] = None,
    paragraph_separator: Optional[re.Pattern[str] | str] = None,
) -> list[Chunk]:
    """Functional shortcut for `TextChunker(...).chunk(text, document_metadata)`."""
    chunker = TextChunker(
        max_size=max_size, overlap=overlap, paragraph_separator=paragraph_separator
    )
    return chunker.chunk(text, document_metadata)
