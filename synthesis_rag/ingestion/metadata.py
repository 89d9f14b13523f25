"""
Document metadata builder.

Collects the document-level attributes the synthesis engine reads later
(source quality, doc type, language, embedding provenance) and merges them
over whatever metadata the document already carried.

Source quality resolution: explicit > inferred from URL / repo stars >
caller default > "community".
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from synthesis_rag.schemas import utcnow

REPO_VERIFIED_STARS = 1000
OFFICIAL_DOMAINS = ("flutter.dev", "dart.dev")

_LANGUAGE_BY_SUFFIX = {
    ".dart": "dart",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".js": "javascript",
    ".jsx": "javascript",
    ".py": "python",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".md": "markdown",
    ".markdown": "markdown",
}


def infer_source_quality(url: Optional[str]) -> str:
    if not url:
        return "community"
    lower = url.lower()
    if any(domain in lower for domain in OFFICIAL_DOMAINS):
        return "official"
    if "github.com" in lower:
        return "verified"
    return "community"


def infer_language_from_path(path: Optional[str]) -> Optional[str]:
    lower = (path or "").lower()
    for suffix, language in _LANGUAGE_BY_SUFFIX.items():
        if lower.endswith(suffix):
            return language
    return None


class MetadataBuilder:
    """
    Usage:
        metadata = (
            MetadataBuilder()
            .set_doc_type("tutorial")
            .set_source_url(doc.source_url)
            .set_embedding("ollama", "nomic-embed-text", 768)
            .build(defaults=doc.metadata)
        )
    """

    def __init__(self) -> None:
        self.metadata: dict[str, Any] = {}
        self._inferred_quality: Optional[str] = None
        self._explicit_quality: Optional[str] = None

    def set_doc_type(self, doc_type: str) -> "MetadataBuilder":
        self.metadata["doc_type"] = doc_type
        return self

    def set_source_url(self, url: str) -> "MetadataBuilder":
        self.metadata["source_url"] = url
        if self._inferred_quality is None:
            self._inferred_quality = infer_source_quality(url)
        return self

    def set_source_quality(self, quality: str) -> "MetadataBuilder":
        self._explicit_quality = quality
        return self

    def set_framework(self, framework: str, version: Optional[str] = None) -> "MetadataBuilder":
        self.metadata["framework"] = framework
        if version:
            self.metadata["framework_version"] = version
        return self

    def set_language(self, language: str) -> "MetadataBuilder":
        self.metadata["language"] = language
        return self

    def set_content_category(self, category: str) -> "MetadataBuilder":
        self.metadata["content_category"] = category
        return self

    def set_file_path(self, path: str) -> "MetadataBuilder":
        self.metadata["file_path"] = path
        if not self.metadata.get("language"):
            language = infer_language_from_path(path)
            if language:
                self.metadata["language"] = language
        return self

    def set_repo(self, name: str, stars: Optional[int] = None) -> "MetadataBuilder":
        self.metadata["repo_name"] = name
        if isinstance(stars, int) and not isinstance(stars, bool):
            self.metadata["repo_stars"] = stars
            if (
                stars >= REPO_VERIFIED_STARS
                and self._inferred_quality != "official"
                and self._explicit_quality != "official"
            ):
                self._inferred_quality = "verified"
        return self

    def set_embedding(self, provider: str, model: str, dimensions: int) -> "MetadataBuilder":
        self.metadata["embedding_provider"] = provider
        self.metadata["embedding_model"] = model
        self.metadata["embedding_dimensions"] = dimensions
        return self

    def set_published_date(self, date: datetime) -> "MetadataBuilder":
        self.metadata["published_date"] = date.isoformat()
        return self

    def set_last_verified(self, date: Optional[datetime] = None) -> "MetadataBuilder":
        self.metadata["last_verified"] = (date or utcnow()).isoformat()
        return self

    def add_tags(self, *tags: str) -> "MetadataBuilder":
        self.metadata["tags"] = [*self.metadata.get("tags", []), *tags]
        return self

    def build(self, defaults: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        defaults = dict(defaults or {})

        quality = (
            self._explicit_quality
            or self._inferred_quality
            or defaults.get("source_quality")
            or "community"
        )

        default_tags = defaults.get("tags") if isinstance(defaults.get("tags"), list) else []
        explicit_tags = self.metadata.get("tags", [])

        merged = {**defaults, **self.metadata}
        merged.update(
            source_quality=quality,
            embedding_model=self.metadata.get("embedding_model") or defaults.get("embedding_model") or "nomic-embed-text",
            embedding_provider=self.metadata.get("embedding_provider") or defaults.get("embedding_provider") or "ollama",
            embedding_dimensions=self.metadata.get("embedding_dimensions") or defaults.get("embedding_dimensions") or 768,
            doc_type=self.metadata.get("doc_type") or defaults.get("doc_type") or "tutorial",
        )
        if default_tags or explicit_tags:
            merged["tags"] = [*default_tags, *explicit_tags]
        return merged
