"""
Text extraction boundary.

The orchestrator depends only on the Extractor protocol. PDF and DOCX
extraction live outside this package; TextExtractor covers plain text,
markdown and source files, which is everything the engine can ingest on
its own.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import PurePath
from typing import Any, Optional, Protocol

from synthesis_rag.errors import UnsupportedContentType

TEXT_EXTENSIONS = frozenset(
    {
        "txt", "text", "md", "markdown", "rst",
        "dart", "ts", "tsx", "js", "jsx", "py", "java", "kt", "c", "cpp", "h",
        "go", "rs", "json", "yaml", "yml", "toml",
    }
)
TEXT_MIME_TYPES = frozenset(
    {"application/json", "application/javascript", "application/x-yaml", "application/yaml"}
)


@dataclass
class ExtractionResult:
    text: str
    metadata: dict[str, Any] = field(default_factory=dict)


class Extractor(Protocol):
    async def extract(
        self, data: bytes, content_type: str, filename: Optional[str] = None
    ) -> ExtractionResult:
        ...


def word_count(text: str) -> int:
    return len([w for w in re.split(r"\s+", text) if w])


class TextExtractor:
    """Decodes UTF-8 text formats. Anything else raises UnsupportedContentType."""

    def supports(self, content_type: str, filename: Optional[str] = None) -> bool:
        mime = (content_type or "").lower().split(";", 1)[0].strip()
        if mime.startswith("text/") or mime in TEXT_MIME_TYPES:
            return True
        suffix = PurePath(filename).suffix.lower().lstrip(".") if filename else ""
        return suffix in TEXT_EXTENSIONS

    async def extract(
        self, data: bytes, content_type: str, filename: Optional[str] = None
    ) -> ExtractionResult:
        if not self.supports(content_type, filename):
            raise UnsupportedContentType(f"Unsupported content type: {content_type}")

        text = data.decode("utf-8", errors="replace")
        return ExtractionResult(text=text, metadata={"word_count": word_count(text)})
