"""
Exception taxonomy shared by every stage of the engine.

Caller mistakes (configuration, queries) subclass ValueError so they can be
mapped to 4xx-style responses by whatever surface sits on top; provider and
store problems do not.
"""
from __future__ import annotations


class SynthesisRAGError(Exception):
    """Base class for all engine errors."""


class InvalidConfiguration(SynthesisRAGError, ValueError):
    """Bad caller-supplied parameters. Never retried."""


class InvalidQuery(SynthesisRAGError, ValueError):
    """Empty query, or one with no searchable terms."""


class InvalidTopK(SynthesisRAGError, ValueError):
    """Result count must be a positive integer."""


class InvalidProviderResponse(SynthesisRAGError):
    """A provider answered, but the payload is unusable."""


class ProviderUnavailable(SynthesisRAGError):
    """Provider cannot be called (no credentials, not registered)."""


class DocumentNotFound(SynthesisRAGError, LookupError):
    def __init__(self, document_id: str) -> None:
        super().__init__(f"Document {document_id} not found")
        self.document_id = document_id


class DocumentNotReady(SynthesisRAGError):
    """Document exists but lacks what ingestion needs (path, content type)."""

    def __init__(self, document_id: str, missing: str) -> None:
        super().__init__(f"Document {document_id} is missing {missing}")
        self.document_id = document_id
        self.missing = missing


class LengthMismatch(SynthesisRAGError):
    """Chunks and embeddings disagree in length."""


class UnsupportedContentType(SynthesisRAGError):
    """The extractor has no handler for the content type."""
