from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Optional

DEFAULT_CHUNK_SIZE = 800
MIN_CHUNK_SIZE = 200
MAX_CHUNK_SIZE = 2000
MAX_CHUNKS = 5000


@dataclass(frozen=True)
class TextChunk:
    index: int
    text: str
    word_count: int
    character_count: int

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "text": self.text,
            "wordCount": self.word_count,
            "characterCount": self.character_count,
        }


# Postgres rejects NUL in text columns; strip it before anything is stored or chunked
def sanitize_text(text) -> str:
    if not isinstance(text, str):
        return ""
    return text.replace("\u0000", "")


# Clamps a requested chunk size into [MIN_CHUNK_SIZE, MAX_CHUNK_SIZE]; non-numeric input means the default
def normalize_chunk_size(chunk_size: Optional[int] = None) -> int:
    if isinstance(chunk_size, bool) or chunk_size is None:
        return DEFAULT_CHUNK_SIZE
    try:
        size = int(chunk_size)
    except (TypeError, ValueError, OverflowError):
        return DEFAULT_CHUNK_SIZE
    return max(MIN_CHUNK_SIZE, min(size, MAX_CHUNK_SIZE))


def iter_chunks(text, chunk_size: Optional[int] = None) -> Iterator[TextChunk]:
    safe_text = sanitize_text(text)
    size = normalize_chunk_size(chunk_size)
    for index, offset in enumerate(range(0, len(safe_text), size)):
        # Hard cap: the remainder is silently dropped
        if index >= MAX_CHUNKS:
            return
        piece = safe_text[offset:offset + size]
        yield TextChunk(
            index=index,
            text=piece,
            word_count=len(piece.split()),
            character_count=len(piece),
        )


# Splits sanitized text into contiguous, non-overlapping slices of `chunk_size` characters
def chunk_text(text, chunk_size: Optional[int] = None) -> list[TextChunk]:
    return list(iter_chunks(text, chunk_size))
