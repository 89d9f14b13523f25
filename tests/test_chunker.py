"""
Tests for synthesis_rag/chunking/chunker.py
Boundary-aware character chunking with overlap.
"""
import pytest

from synthesis_rag.chunking.chunker import TextChunker, chunk_text, extract_heading
from synthesis_rag.errors import InvalidConfiguration


class TestChunkerConfiguration:
    """Invalid sizes are rejected up front."""

    @pytest.mark.parametrize(
        "max_size, overlap",
        [(0, 0), (-10, 0), (100, -1), (100, 100), (100, 150)],
    )
    def test_invalid_configuration(self, max_size, overlap):
        with pytest.raises(InvalidConfiguration):
            chunk_text("some text", max_size=max_size, overlap=overlap)

    def test_invalid_configuration_is_value_error(self):
        with pytest.raises(ValueError):
            TextChunker(max_size=10, overlap=10)


class TestChunkerBasics:

    def test_empty_and_whitespace_input(self):
        assert chunk_text("") == []
        assert chunk_text("   \n\n\t  ") == []

    def test_short_text_single_chunk(self):
        chunks = chunk_text("Hello world.", document_metadata={"document_id": "d1"})
        assert len(chunks) == 1
        assert chunks[0].text == "Hello world."
        assert chunks[0].index == 0
        assert chunks[0].start_offset == 0
        assert chunks[0].end_offset == 12
        assert chunks[0].metadata["document_id"] == "d1"

    def test_crlf_normalised(self):
        chunks = chunk_text("Line one.\r\nLine two.\rLine three.")
        assert "\r" not in chunks[0].text
        assert chunks[0].text == "Line one.\nLine two.\nLine three."

    def test_identical_characters_hard_cut_with_overlap(self):
        """2,000 identical characters -> several chunks, each <= 800, overlapping by 150."""
        text = "a" * 2000
        chunks = chunk_text(text, max_size=800, overlap=150)

        assert len(chunks) > 1
        assert all(len(c.text) <= 800 for c in chunks)
        for prev, nxt in zip(chunks, chunks[1:]):
            assert prev.end_offset - nxt.start_offset == 150
        assert chunks[-1].end_offset == 2000


class TestBoundaryPreference:

    def test_paragraph_break_preferred(self):
        first = "First paragraph sentence. " * 10
        second = "Second paragraph sentence. " * 25
        text = first.strip() + "\n\n" + second.strip()

        chunks = chunk_text(text, max_size=800, overlap=50)
        assert chunks[0].text == first.strip()

    def test_sentence_boundary_used_without_paragraphs(self):
        text = "Sentence number one is here. " * 40
        chunks = chunk_text(text, max_size=100, overlap=20)

        assert len(chunks) > 1
        assert all(c.text.endswith(".") for c in chunks)

    def test_long_sentence_extended_forward(self):
        """No boundary inside the window: the first sentence end past it is used."""
        text = "word " * 170 + "end. More text follows here."
        chunks = chunk_text(text, max_size=800, overlap=150)

        assert chunks[0].text.endswith("end.")
        assert 800 < len(chunks[0].text) <= 950

    def test_custom_paragraph_separator(self):
        text = "alpha beta gamma ---- delta epsilon zeta " * 30
        chunks = chunk_text(text, max_size=200, overlap=20, paragraph_separator=r"-{4}")
        # Non-newline separators are left for the next chunk
        assert chunks[0].text.endswith("gamma")
        assert "----" in chunks[1].text[:30]


class TestChunkInvariants:

    def _text(self) -> str:
        parts = []
        for i in range(30):
            parts.append(f"Section {i}\n" + ("Caching keeps queries fast. " * (i % 5 + 1)))
        return "\n\n".join(parts)

    def test_offsets_match_normalised_text(self):
        text = self._text()
        normalised = text.strip()
        for chunk in chunk_text(text, max_size=300, overlap=60):
            assert normalised[chunk.start_offset:chunk.end_offset] == chunk.text
            assert chunk.end_offset > chunk.start_offset

    def test_chunks_cover_whole_text(self):
        text = self._text()
        chunks = chunk_text(text, max_size=300, overlap=60)

        assert chunks[0].start_offset == 0
        assert chunks[-1].end_offset == len(text.strip())
        for prev, nxt in zip(chunks, chunks[1:]):
            assert nxt.start_offset <= prev.end_offset
            assert nxt.end_offset > prev.end_offset

    def test_indices_sequential(self):
        chunks = chunk_text(self._text(), max_size=300, overlap=60)
        assert [c.index for c in chunks] == list(range(len(chunks)))

    def test_size_bound(self):
        chunks = chunk_text(self._text(), max_size=300, overlap=60)
        assert all(len(c.text) <= 300 + 60 for c in chunks)

    def test_whitespace_run_terminates(self):
        text = "a" + " " * 2000 + "b"
        chunks = chunk_text(text, max_size=800, overlap=150)

        assert chunks[0].text == "a"
        assert chunks[-1].text.endswith("b")
        assert len(chunks) < 10


class TestHeadings:

    def test_heading_from_first_line(self):
        chunks = chunk_text("# Caching Guide\nUse a TTL for every entry.")
        assert chunks[0].heading == "# Caching Guide"

    def test_inherited_heading(self):
        chunks = chunk_text(
            "lowercase start so no heading here.",
            document_metadata={"heading": "Parent Section"},
        )
        assert chunks[0].heading == "Parent Section"

    def test_extract_heading_rules(self):
        assert extract_heading("Overview\nbody") == "Overview"
        assert extract_heading("overview\nbody") is None
        assert extract_heading("A" * 121) is None
        assert extract_heading("") is None
