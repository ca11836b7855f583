"""
Tests for ComplianceBackend/services/chunking.py
Contiguous, bounded chunking of sanitized document text.
"""

import pytest

from ComplianceBackend.services import chunking
from ComplianceBackend.services.chunking import (
    DEFAULT_CHUNK_SIZE,
    MAX_CHUNKS,
    chunk_text,
    normalize_chunk_size,
    sanitize_text,
)


class TestSanitize:
    """NUL stripping before anything is stored."""

    def test_strips_nul_bytes(self):
        assert sanitize_text("a\u0000b\u0000c") == "abc"

    def test_non_string_becomes_empty(self):
        assert sanitize_text(None) == ""
        assert sanitize_text(42) == ""


class TestChunkSize:
    """Chunk size clamping."""

    @pytest.mark.parametrize(
        "requested, expected",
        [(None, DEFAULT_CHUNK_SIZE), (50, 200), (200, 200), (1500, 1500), (10_000, 2000), ("abc", DEFAULT_CHUNK_SIZE),
         (float("inf"), DEFAULT_CHUNK_SIZE), (float("nan"), DEFAULT_CHUNK_SIZE)],
    )
    def test_clamps_into_bounds(self, requested, expected):
        assert normalize_chunk_size(requested) == expected

    def test_bool_is_not_a_size(self):
        assert normalize_chunk_size(True) == DEFAULT_CHUNK_SIZE


class TestChunkText:
    """Slicing, counts and the hard chunk cap."""

    def test_sop_example_gives_three_chunks(self):
        chunks = chunk_text("A" * 2000)
        assert [c.character_count for c in chunks] == [800, 800, 400]
        assert [c.index for c in chunks] == [0, 1, 2]

    def test_concatenation_reproduces_sanitized_text(self):
        text = "Line one.\u0000\nSecond line with  extra   spaces.\t" * 97
        for size in (200, 333, 800, 2000):
            chunks = chunk_text(text, size)
            assert "".join(c.text for c in chunks) == sanitize_text(text)
            assert all(len(c.text) <= size for c in chunks)

    def test_word_count_ignores_empty_tokens(self):
        (chunk,) = chunk_text("  alpha   beta\n\ngamma  ", 200)
        assert chunk.word_count == 3
        assert chunk.character_count == len("  alpha   beta\n\ngamma  ")

    def test_empty_text_has_no_chunks(self):
        assert chunk_text("") == []
        assert chunk_text("\u0000\u0000") == []

    def test_stops_at_max_chunks(self, monkeypatch):
        monkeypatch.setattr(chunking, "MAX_CHUNKS", 3)
        chunks = chunk_text("x" * 1000, 200)
        assert len(chunks) == 3
        assert "".join(c.text for c in chunks) == "x" * 600

    def test_default_cap_is_5000(self):
        assert MAX_CHUNKS == 5000

    def test_to_dict_uses_camel_case(self):
        (chunk,) = chunk_text("hello world", 200)
        assert chunk.to_dict() == {"index": 0, "text": "hello world", "wordCount": 2, "characterCount": 11}
